from __future__ import annotations

import logging
import math
from typing import Any, AsyncIterator, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from fastapi.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from ...config import Settings
from ...domain.chat_models import (
    NOT_SAVED_MARKER,
    Chat,
    ChatCreate,
    ChatMessage,
    ChatMessageCreate,
    ChatUpdate,
    ChatWithMessages,
    GenerationParams,
    StreamCancelResult,
    StreamFormat,
)
from ...domain.exceptions import UpstreamRateLimited, UpstreamRejected, UpstreamTransportFailure
from ...infrastructure.chat_store import ChatStore
from ...security.auth import User, get_current_user
from ...security.rate_limit import RateLimiter, RateLimitExceeded
from ...services.conversation import build_conversation
from ...services.relay import StreamRelay, StreamSession, StreamState
from ...services.streaming import STREAM_HEADERS, sse_event
from ..dependencies import get_limiter, get_owned_chat, get_relay, get_settings, get_store


logger = logging.getLogger(__name__)


RATE_LIMITED_DETAIL = "The assistant is handling too many requests. Please try again shortly."
UNAVAILABLE_DETAIL = "The assistant is unavailable right now. Please try again."

router = APIRouter(prefix="/chats", tags=["chats"])


@router.post("", response_model=Chat, status_code=status.HTTP_201_CREATED)
async def create_chat(
    req: ChatCreate,
    user: User = Depends(get_current_user),
    store: ChatStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
) -> Chat:
    prompt = req.system_prompt if req.system_prompt is not None else settings.default_system_prompt
    return await store.create_chat(user.user_id, req.title.strip(), system_prompt=prompt)


@router.get("", response_model=List[Chat])
async def list_chats(user: User = Depends(get_current_user), store: ChatStore = Depends(get_store)) -> List[Chat]:
    return await store.list_chats(user.user_id)


@router.get("/{chat_id}", response_model=ChatWithMessages)
async def get_chat(chat: Chat = Depends(get_owned_chat), store: ChatStore = Depends(get_store)) -> ChatWithMessages:
    return ChatWithMessages(chat=chat, messages=await store.list_messages(chat.chat_id))


@router.patch("/{chat_id}", response_model=Chat)
async def update_chat(
    req: ChatUpdate,
    chat: Chat = Depends(get_owned_chat),
    store: ChatStore = Depends(get_store),
) -> Chat:
    try:
        return await store.update_chat(chat.chat_id, title=req.title, system_prompt=req.system_prompt)
    except KeyError:
        raise HTTPException(status_code=404, detail="Chat not found")


@router.delete("/{chat_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_chat(
    chat: Chat = Depends(get_owned_chat),
    store: ChatStore = Depends(get_store),
    relay: StreamRelay = Depends(get_relay),
) -> Response:
    for session in relay.registry.active(chat.chat_id):
        session.cancel()
        await session.wait()
    await store.delete_chat(chat.chat_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{chat_id}/messages", response_model=List[ChatMessage])
async def list_messages(chat: Chat = Depends(get_owned_chat), store: ChatStore = Depends(get_store)) -> List[ChatMessage]:
    return await store.list_messages(chat.chat_id)


def _generation_params(msg: ChatMessageCreate, settings: Settings) -> GenerationParams:
    return GenerationParams(
        model=msg.model or settings.model,
        temperature=msg.temperature if msg.temperature is not None else settings.temperature,
        max_tokens=msg.max_tokens or settings.max_tokens,
    )


async def _open_session(
    chat: Chat,
    msg: ChatMessageCreate,
    user: User,
    store: ChatStore,
    relay: StreamRelay,
    limiter: RateLimiter,
    settings: Settings,
) -> StreamSession:
    try:
        limiter.hit("chat_reply", user.user_id)
    except RateLimitExceeded as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many messages. Please slow down.",
            headers={"Retry-After": str(exc.retry_after_seconds)},
        )

    history = await store.list_messages(chat.chat_id)
    turns = build_conversation(chat.system_prompt, history, msg.content)

    async def _store_user_turn() -> None:
        await store.add_message(chat.chat_id, role="user", content=msg.content)

    try:
        return await relay.start(chat.chat_id, turns, _generation_params(msg, settings), on_accepted=_store_user_turn)
    except UpstreamRateLimited as exc:
        headers: Dict[str, str] = {}
        if exc.retry_after_seconds:
            headers["Retry-After"] = str(max(1, math.ceil(exc.retry_after_seconds)))
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=RATE_LIMITED_DETAIL, headers=headers)
    except UpstreamRejected as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)
    except UpstreamTransportFailure as exc:
        logger.warning("upstream_unavailable", extra={"chat_id": chat.chat_id, "err": str(exc)})
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=UNAVAILABLE_DETAIL)


def _done_payload(session: StreamSession) -> Dict[str, object]:
    payload: Dict[str, object] = {
        "stream_id": session.stream_id,
        "state": session.state.value,
        "saved": session.saved,
        "message_id": session.message.message_id if session.message else None,
        "content": session.final_content(),
    }
    if session.state is StreamState.ERRORED:
        payload["error"] = "The response was interrupted."
    if session.persist_error is not None:
        payload["error"] = "Failed to save AI response"
    return payload


class SessionStreamingResponse(StreamingResponse):
    """Streams a relay session and cancels it if the response ends early.

    Covers disconnects that land before the body iterator is first pulled,
    where the iterator's own cleanup never runs.
    """

    def __init__(self, session: StreamSession, framing: StreamFormat, **kwargs: Any) -> None:
        super().__init__(_relay_body(session, framing), **kwargs)
        self.session = session

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            self.session.cancel()


async def _relay_body(session: StreamSession, framing: StreamFormat) -> AsyncIterator[str]:
    try:
        if framing == "sse":
            yield sse_event("open", {"stream_id": session.stream_id, "chat_id": session.chat_id})
        async for fragment in session.fragments():
            yield sse_event("delta", {"text": fragment}) if framing == "sse" else fragment
        if framing == "sse":
            yield sse_event("done", _done_payload(session))
        else:
            suffix = session.final_content()[len(session.text):]
            if session.persist_error is not None:
                suffix += f" {NOT_SAVED_MARKER}"
            if suffix:
                yield suffix
    finally:
        # Client went away mid-stream; no-op once the session is terminal.
        session.cancel()


@router.post("/{chat_id}/stream", response_class=StreamingResponse)
async def stream_reply(
    msg: ChatMessageCreate,
    framing: StreamFormat = Query("raw", alias="format"),
    chat: Chat = Depends(get_owned_chat),
    user: User = Depends(get_current_user),
    store: ChatStore = Depends(get_store),
    relay: StreamRelay = Depends(get_relay),
    limiter: RateLimiter = Depends(get_limiter),
    settings: Settings = Depends(get_settings),
) -> StreamingResponse:
    session = await _open_session(chat, msg, user, store, relay, limiter, settings)
    headers = dict(STREAM_HEADERS)
    headers["X-Stream-Id"] = session.stream_id
    return SessionStreamingResponse(
        session,
        framing,
        media_type="text/event-stream",
        headers=headers,
    )


@router.post("/{chat_id}/streams/{stream_id}/cancel", response_model=StreamCancelResult)
async def cancel_stream(
    stream_id: str,
    chat: Chat = Depends(get_owned_chat),
    relay: StreamRelay = Depends(get_relay),
) -> StreamCancelResult:
    session = relay.registry.get(stream_id)
    if session is None or session.chat_id != chat.chat_id:
        raise HTTPException(status_code=404, detail="Stream not found")
    cancelled = session.cancel()
    await session.wait()
    return StreamCancelResult(stream_id=stream_id, state=session.state.value, cancelled=cancelled)


@router.post("/{chat_id}/messages", response_model=ChatMessage)
async def post_message(
    msg: ChatMessageCreate,
    chat: Chat = Depends(get_owned_chat),
    user: User = Depends(get_current_user),
    store: ChatStore = Depends(get_store),
    relay: StreamRelay = Depends(get_relay),
    limiter: RateLimiter = Depends(get_limiter),
    settings: Settings = Depends(get_settings),
) -> ChatMessage:
    session = await _open_session(chat, msg, user, store, relay, limiter, settings)
    await session.wait()
    if session.message is None:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to save AI response")
    return session.message
