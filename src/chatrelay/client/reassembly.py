"""Client side of the relay: rebuild a reply from the streamed response.

The in-progress reply is kept apart from saved messages until the stream
reaches a terminal event. ``cancel()`` closes the message before aborting
the network read, so fragments already in flight are dropped.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import httpx

from ..domain.chat_models import CANCELLED_MARKER, INTERRUPTED_MARKER, NOT_SAVED_MARKER, StreamFormat
from ..services.streaming import parse_sse_block


logger = logging.getLogger(__name__)


class MessageStatus(str, Enum):
    STREAMING = "streaming"
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    CANCELLED = "cancelled"
    FAILED = "failed"


_TERMINAL_STATES = {
    "completed": MessageStatus.COMPLETED,
    "errored": MessageStatus.INTERRUPTED,
    "cancelled": MessageStatus.CANCELLED,
}


class StreamRequestError(Exception):
    def __init__(self, status_code: int, detail: str, retry_after: Optional[float] = None) -> None:
        super().__init__(f"{status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return self.status_code in (429, 502, 503, 504)

    @classmethod
    def from_response(cls, resp: httpx.Response) -> "StreamRequestError":
        detail = resp.text
        try:
            body = resp.json()
            if isinstance(body, dict) and body.get("detail"):
                detail = str(body["detail"])
        except ValueError:
            pass
        retry_after: Optional[float] = None
        raw = resp.headers.get("Retry-After")
        if raw:
            try:
                retry_after = float(raw)
            except ValueError:
                retry_after = None
        return cls(resp.status_code, detail, retry_after)


@dataclass
class InProgressMessage:
    chat_id: str
    parts: List[str] = field(default_factory=list)
    status: MessageStatus = MessageStatus.STREAMING
    stream_id: Optional[str] = None
    message_id: Optional[str] = None
    saved: bool = False
    accepting: bool = field(default=True, repr=False)

    @property
    def content(self) -> str:
        return "".join(self.parts)

    @property
    def final(self) -> bool:
        return self.status is not MessageStatus.STREAMING

    def append(self, text: str) -> bool:
        if not self.accepting or not text:
            return False
        self.parts.append(text)
        return True

    def close(self, status: MessageStatus, marker: Optional[str] = None) -> None:
        if not self.accepting:
            return
        self.accepting = False
        self.status = status
        if marker:
            self.parts.append(f" {marker}" if self.parts else marker)


class UpdateCoalescer:
    """Forward updates at most once per ``window`` seconds."""

    def __init__(
        self,
        on_update: Optional[Callable[[InProgressMessage], None]],
        window: float = 0.05,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._on_update = on_update
        self._window = window
        self._clock = clock
        self._last: Optional[float] = None
        self.pending = False

    def push(self, message: InProgressMessage) -> None:
        now = self._clock()
        if self._last is None or now - self._last >= self._window:
            self._emit(message, now)
        else:
            self.pending = True

    def flush(self, message: InProgressMessage) -> None:
        self._emit(message, self._clock())

    def _emit(self, message: InProgressMessage, now: float) -> None:
        self._last = now
        self.pending = False
        if self._on_update is not None:
            self._on_update(message)


class ChatStreamClient:
    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8000",
        token: Optional[str] = None,
        http: Optional[httpx.AsyncClient] = None,
        framing: StreamFormat = "sse",
        coalesce_window: float = 0.05,
        on_update: Optional[Callable[[InProgressMessage], None]] = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._http = http or httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=httpx.Timeout(None, connect=5.0),
        )
        self.framing = framing
        self.coalesce_window = coalesce_window
        self.on_update = on_update
        self._current: Optional[InProgressMessage] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._notify_task: Optional[asyncio.Task[None]] = None

    @property
    def current(self) -> Optional[InProgressMessage]:
        return self._current

    async def send(self, chat_id: str, content: str, **params: Any) -> InProgressMessage:
        """Post ``content`` and consume the streamed reply.

        Raises :class:`StreamRequestError` when the server refuses the request
        before any output.
        """
        message = InProgressMessage(chat_id=chat_id)
        self._current = message
        coalescer = UpdateCoalescer(self.on_update, self.coalesce_window)
        self._task = asyncio.create_task(self._consume(message, content, params, coalescer))
        try:
            await self._task
        except asyncio.CancelledError:
            if message.status is not MessageStatus.CANCELLED:
                raise
        finally:
            self._task = None
        coalescer.flush(message)
        return message

    def cancel(self) -> bool:
        """Abort the reply in progress; False when there is none."""
        message = self._current
        if message is None or message.final:
            return False
        message.close(MessageStatus.CANCELLED, CANCELLED_MARKER)
        if self._task is not None:
            self._task.cancel()
        if message.stream_id:
            self._notify_task = asyncio.create_task(self._notify_cancel(message.chat_id, message.stream_id))
        return True

    async def _notify_cancel(self, chat_id: str, stream_id: str) -> None:
        try:
            await self._http.post(f"/chats/{chat_id}/streams/{stream_id}/cancel")
        except httpx.HTTPError as exc:
            # The dropped connection already tells the server to stop.
            logger.debug("cancel_notify_failed", extra={"stream_id": stream_id, "err": str(exc)})

    async def _consume(
        self,
        message: InProgressMessage,
        content: str,
        params: Dict[str, Any],
        coalescer: UpdateCoalescer,
    ) -> None:
        body = {"content": content, **{k: v for k, v in params.items() if v is not None}}
        try:
            async with self._http.stream(
                "POST",
                f"/chats/{message.chat_id}/stream",
                params={"format": self.framing},
                json=body,
            ) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    message.close(MessageStatus.FAILED)
                    raise StreamRequestError.from_response(resp)
                message.stream_id = resp.headers.get("X-Stream-Id")
                if self.framing == "sse":
                    await self._read_sse(resp, message, coalescer)
                else:
                    await self._read_raw(resp, message, coalescer)
        except httpx.HTTPError as exc:
            logger.warning("stream_read_failed", extra={"chat_id": message.chat_id, "err": str(exc)})
            message.close(MessageStatus.INTERRUPTED, INTERRUPTED_MARKER)

    def _apply(self, message: InProgressMessage, text: str, coalescer: UpdateCoalescer) -> None:
        if message.append(text):
            coalescer.push(message)

    async def _read_raw(self, resp: httpx.Response, message: InProgressMessage, coalescer: UpdateCoalescer) -> None:
        async for text in resp.aiter_text():
            self._apply(message, text, coalescer)
        if not message.accepting:
            return
        text = message.content
        unsaved = text.endswith(NOT_SAVED_MARKER)
        if unsaved:
            text = text[: -len(NOT_SAVED_MARKER)].rstrip()
            message.parts = [text] if text else []
        # Raw framing has no done event; the server saved the reply unless it said otherwise.
        message.saved = not unsaved
        if text.endswith(CANCELLED_MARKER):
            status = MessageStatus.CANCELLED
        elif text.endswith(INTERRUPTED_MARKER):
            status = MessageStatus.INTERRUPTED
        else:
            status = MessageStatus.COMPLETED
        message.close(status)

    async def _read_sse(self, resp: httpx.Response, message: InProgressMessage, coalescer: UpdateCoalescer) -> None:
        lines: List[str] = []
        async for line in resp.aiter_lines():
            if line:
                lines.append(line)
                continue
            if not lines:
                continue
            event, payload = parse_sse_block("\n".join(lines))
            lines = []
            if event == "open":
                message.stream_id = payload.get("stream_id") or message.stream_id
            elif event == "delta":
                self._apply(message, str(payload.get("text", "")), coalescer)
            elif event == "done":
                self._finalize(message, payload)
                return
        # Body ended without a terminal event.
        message.close(MessageStatus.INTERRUPTED, INTERRUPTED_MARKER)

    @staticmethod
    def _finalize(message: InProgressMessage, payload: Dict[str, Any]) -> None:
        if not message.accepting:
            return
        final_text = payload.get("content")
        if isinstance(final_text, str):
            message.parts = [final_text] if final_text else []
        message.message_id = payload.get("message_id")
        message.saved = bool(payload.get("saved"))
        message.close(_TERMINAL_STATES.get(str(payload.get("state")), MessageStatus.INTERRUPTED))

    async def aclose(self) -> None:
        if self._notify_task is not None:
            await self._notify_task
        await self._http.aclose()
