"""Streaming completion relay.

A :class:`StreamSession` is created once the provider has accepted a request
(it produced a first fragment or ended cleanly). A background pump keeps
pulling fragments, appends each one to the session buffer and hands it to the
session outbox straight away. When the session reaches a terminal state the
upstream iterator is closed and exactly one assistant message is written
through the :class:`PersistenceSink`.

Failures before the session exists (rate limiting, rejected requests, a dead
upstream) propagate to the caller and nothing is persisted.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

from ..domain.chat_models import CANCELLED_MARKER, INTERRUPTED_MARKER, ChatMessage, ConversationTurn, GenerationParams
from ..domain.exceptions import (
    PersistenceFailure,
    StreamTimeout,
    UpstreamError,
    UpstreamRateLimited,
    UpstreamTransportFailure,
)
from ..observability.metrics import (
    FIRST_FRAGMENT_LATENCY,
    FRAGMENTS_RELAYED,
    PERSIST_FAILURES,
    STREAM_SESSIONS,
    UPSTREAM_ERRORS,
)
from .persistence import PersistenceSink
from .providers import CompletionProvider


LOG = logging.getLogger("chatrelay.relay")


_EOF = object()
_END = object()
_MAX_RETRY_DELAY = 10.0


class StreamState(str, Enum):
    OPEN = "open"
    COMPLETED = "completed"
    ERRORED = "errored"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self is not StreamState.OPEN


_MARKERS = {
    StreamState.ERRORED: INTERRUPTED_MARKER,
    StreamState.CANCELLED: CANCELLED_MARKER,
}


def final_content(text: str, state: StreamState) -> str:
    marker = _MARKERS.get(state)
    if not marker:
        return text
    return f"{text} {marker}" if text else marker


class StreamSession:
    def __init__(
        self,
        chat_id: str,
        provider: str = "",
        model: str = "",
        stream_id: Optional[str] = None,
    ) -> None:
        self.stream_id = stream_id or uuid.uuid4().hex
        self.chat_id = chat_id
        self.provider = provider
        self.model = model
        self.state = StreamState.OPEN
        self.error: Optional[BaseException] = None
        self.message: Optional[ChatMessage] = None
        self.persist_error: Optional[PersistenceFailure] = None
        self._fragments: List[str] = []
        self._outbox: asyncio.Queue[Any] = asyncio.Queue()
        self._cancel_requested = asyncio.Event()
        self._finished = asyncio.Event()
        self._completing = False
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def text(self) -> str:
        return "".join(self._fragments)

    @property
    def fragment_count(self) -> int:
        return len(self._fragments)

    @property
    def saved(self) -> bool:
        return self.message is not None

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested.is_set()

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    def final_content(self) -> str:
        return final_content(self.text, self.state)

    def cancel(self) -> bool:
        """Ask the pump to stop. Returns False once the session is terminal."""
        if self.state.terminal or self._cancel_requested.is_set():
            return False
        self._cancel_requested.set()
        return True

    def _relay(self, fragment: str) -> bool:
        # Nothing is accepted after a terminal state or a pending cancel.
        if self.state.terminal or self._cancel_requested.is_set():
            return False
        self._fragments.append(fragment)
        self._outbox.put_nowait(fragment)
        return True

    def _close(self, state: StreamState, error: Optional[BaseException] = None) -> None:
        if self.state.terminal:
            return
        self.state = state
        self.error = error

    def _finish(self) -> None:
        self._outbox.put_nowait(_END)
        self._finished.set()

    async def fragments(self) -> AsyncIterator[str]:
        """Yield relayed fragments in upstream order until the session is done."""
        while True:
            item = await self._outbox.get()
            if item is _END:
                return
            yield item

    async def wait(self) -> "StreamSession":
        await self._finished.wait()
        return self


class StreamRegistry:
    """Open stream sessions keyed by ``stream_id``."""

    def __init__(self) -> None:
        self._sessions: Dict[str, StreamSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def add(self, session: StreamSession) -> None:
        self._sessions[session.stream_id] = session

    def get(self, stream_id: str) -> Optional[StreamSession]:
        return self._sessions.get(stream_id)

    def discard(self, session: StreamSession) -> None:
        self._sessions.pop(session.stream_id, None)

    def active(self, chat_id: Optional[str] = None) -> List[StreamSession]:
        return [s for s in self._sessions.values() if chat_id is None or s.chat_id == chat_id]

    async def cancel_all(self) -> None:
        sessions = list(self._sessions.values())
        for session in sessions:
            session.cancel()
        await asyncio.gather(*(session.wait() for session in sessions))


async def _next_or_eof(upstream: AsyncIterator[str]) -> Any:
    try:
        return await upstream.__anext__()
    except StopAsyncIteration:
        return _EOF


async def _aclose(upstream: AsyncIterator[str]) -> None:
    aclose = getattr(upstream, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as exc:
        LOG.warning("upstream_close_failed", extra={"err": str(exc)})


async def _discard(pull: "asyncio.Future[Any]") -> None:
    pull.cancel()
    await asyncio.wait({pull})
    if not pull.cancelled():
        # A value or error that raced the cancel is not relayed.
        pull.exception()


class StreamRelay:
    def __init__(
        self,
        provider: CompletionProvider,
        sink: PersistenceSink,
        registry: Optional[StreamRegistry] = None,
        max_stream_seconds: float = 120.0,
        upstream_retries: int = 2,
        retry_backoff_seconds: float = 0.5,
    ) -> None:
        self.provider = provider
        self.registry = registry if registry is not None else StreamRegistry()
        self._sink = sink
        self._max_stream_seconds = max_stream_seconds
        self._upstream_retries = upstream_retries
        self._retry_backoff = retry_backoff_seconds
        self._reapers: Set["asyncio.Task[None]"] = set()

    async def start(
        self,
        chat_id: str,
        turns: Sequence[ConversationTurn],
        params: GenerationParams,
        on_accepted: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> StreamSession:
        """Open the upstream stream and return a live session.

        Raises the upstream error unchanged when the provider fails before
        producing output; no session exists and nothing is persisted then.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._max_stream_seconds
        started = time.perf_counter()
        upstream, first = await self._open(turns, params)
        if on_accepted is not None:
            try:
                await on_accepted()
            except BaseException:
                await _aclose(upstream)
                raise

        session = StreamSession(chat_id, provider=self.provider.name, model=params.model or self.provider.model)
        if first is _EOF:
            session._close(StreamState.COMPLETED)
        else:
            FIRST_FRAGMENT_LATENCY.observe(time.perf_counter() - started)
            if session._relay(first):
                FRAGMENTS_RELAYED.inc()
        self.registry.add(session)
        LOG.info("stream_opened", extra={"stream_id": session.stream_id, "chat_id": chat_id, "provider": session.provider})
        session._task = asyncio.create_task(self._pump(session, upstream, deadline))
        session._task.add_done_callback(lambda _task: self._on_pump_done(session, upstream))
        return session

    def _on_pump_done(self, session: StreamSession, upstream: AsyncIterator[str]) -> None:
        if session._completing:
            return
        # Cancelled before its first step, so the pump body never ran.
        session._close(StreamState.CANCELLED)
        reaper = asyncio.ensure_future(self._reap(session, upstream))
        self._reapers.add(reaper)
        reaper.add_done_callback(self._reapers.discard)

    async def _reap(self, session: StreamSession, upstream: AsyncIterator[str]) -> None:
        await _aclose(upstream)
        await self._complete(session)

    async def _open(self, turns: Sequence[ConversationTurn], params: GenerationParams) -> Tuple[AsyncIterator[str], Any]:
        attempt = 0
        while True:
            upstream = self.provider.stream(turns, params)
            try:
                first = await asyncio.wait_for(_next_or_eof(upstream), timeout=self._max_stream_seconds)
                return upstream, first
            except UpstreamRateLimited as exc:
                await _aclose(upstream)
                if attempt >= self._upstream_retries:
                    UPSTREAM_ERRORS.labels(kind=exc.kind, phase="open").inc()
                    raise
                delay = self._retry_backoff * (2 ** attempt)
                if exc.retry_after_seconds:
                    delay = max(delay, exc.retry_after_seconds)
                delay = min(delay, _MAX_RETRY_DELAY)
                attempt += 1
                LOG.info("upstream_rate_limited_retrying", extra={"attempt": attempt, "delay_s": delay})
                await asyncio.sleep(delay)
            except asyncio.TimeoutError as exc:
                await _aclose(upstream)
                UPSTREAM_ERRORS.labels(kind="timeout", phase="open").inc()
                raise StreamTimeout("Timed out waiting for the provider") from exc
            except asyncio.CancelledError:
                await _aclose(upstream)
                raise
            except UpstreamError as exc:
                await _aclose(upstream)
                UPSTREAM_ERRORS.labels(kind=exc.kind, phase="open").inc()
                raise
            except Exception as exc:
                await _aclose(upstream)
                UPSTREAM_ERRORS.labels(kind="transport", phase="open").inc()
                LOG.exception("upstream_open_failed")
                raise UpstreamTransportFailure(str(exc) or exc.__class__.__name__) from exc

    async def _pump(self, session: StreamSession, upstream: AsyncIterator[str], deadline: float) -> None:
        loop = asyncio.get_running_loop()
        cancel_wait = asyncio.ensure_future(session._cancel_requested.wait())
        pull: Optional["asyncio.Future[Any]"] = None
        try:
            while not session.state.terminal:
                if session.cancel_requested:
                    session._close(StreamState.CANCELLED)
                    break
                remaining = deadline - loop.time()
                if remaining <= 0:
                    session._close(StreamState.ERRORED, StreamTimeout("Stream exceeded its maximum duration"))
                    break
                pull = asyncio.ensure_future(_next_or_eof(upstream))
                done, _ = await asyncio.wait({pull, cancel_wait}, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
                if session.cancel_requested or pull not in done:
                    # Cancel wins a tie with upstream; the loop head settles it.
                    await _discard(pull)
                    continue
                try:
                    item = pull.result()
                except UpstreamError as exc:
                    session._close(StreamState.ERRORED, exc)
                    break
                except Exception as exc:
                    LOG.exception("upstream_stream_failed", extra={"stream_id": session.stream_id})
                    session._close(StreamState.ERRORED, UpstreamTransportFailure(str(exc) or exc.__class__.__name__))
                    break
                if item is _EOF:
                    session._close(StreamState.COMPLETED)
                    break
                if session._relay(item):
                    FRAGMENTS_RELAYED.inc()
        except asyncio.CancelledError:
            # Torn down from outside (loop shutdown, task group); still persist once.
            session._close(StreamState.CANCELLED)
            raise
        finally:
            cancel_wait.cancel()
            if pull is not None and not pull.done():
                await _discard(pull)
            await _aclose(upstream)
            await asyncio.shield(self._complete(session))

    async def _complete(self, session: StreamSession) -> None:
        if session._completing:
            return
        session._completing = True
        STREAM_SESSIONS.labels(state=session.state.value).inc()
        if session.state is StreamState.ERRORED:
            kind = getattr(session.error, "kind", "transport")
            UPSTREAM_ERRORS.labels(kind=kind, phase="stream").inc()
            LOG.warning(
                "stream_errored",
                extra={"stream_id": session.stream_id, "chat_id": session.chat_id, "err": str(session.error), "fragments": session.fragment_count},
            )
        else:
            LOG.info(
                "stream_closed",
                extra={"stream_id": session.stream_id, "state": session.state.value, "fragments": session.fragment_count},
            )
        try:
            session.message = await self._sink.write(session)
        except PersistenceFailure as exc:
            session.persist_error = exc
            PERSIST_FAILURES.inc()
            LOG.error(
                "stream_persist_failed",
                extra={"stream_id": session.stream_id, "chat_id": session.chat_id, "err": str(exc.cause)},
            )
        except Exception as exc:
            session.persist_error = PersistenceFailure(session.chat_id, exc)
            PERSIST_FAILURES.inc()
            LOG.exception("stream_persist_failed", extra={"stream_id": session.stream_id, "chat_id": session.chat_id})
        finally:
            self.registry.discard(session)
            session._finish()

    async def aclose(self) -> None:
        await self.registry.cancel_all()
        await self.provider.aclose()
