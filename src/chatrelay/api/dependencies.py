from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status

from ..config import Settings
from ..domain.chat_models import Chat
from ..infrastructure.chat_store import ChatStore
from ..security.auth import User, get_current_user
from ..security.rate_limit import RateLimiter
from ..services.relay import StreamRelay


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> ChatStore:
    return request.app.state.store


def get_relay(request: Request) -> StreamRelay:
    return request.app.state.relay


def get_limiter(request: Request) -> RateLimiter:
    return request.app.state.limiter


async def get_owned_chat(
    chat_id: str,
    user: User = Depends(get_current_user),
    store: ChatStore = Depends(get_store),
) -> Chat:
    chat = await store.get_chat(chat_id)
    if not chat:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat not found")
    if chat.user_id != user.user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Chat not found or access denied")
    return chat
