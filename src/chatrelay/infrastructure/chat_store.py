from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from threading import RLock
from typing import Any, Dict, List, Optional, Protocol
import uuid

from ..config import Settings
from ..domain.chat_models import Chat, ChatMessage


class ChatStore(Protocol):
    async def create_chat(self, user_id: str, title: str, system_prompt: Optional[str] = None) -> Chat: ...

    async def list_chats(self, user_id: str) -> List[Chat]: ...

    async def get_chat(self, chat_id: str) -> Optional[Chat]: ...

    async def update_chat(self, chat_id: str, title: Optional[str] = None, system_prompt: Optional[str] = None) -> Chat: ...

    async def delete_chat(self, chat_id: str) -> bool: ...

    async def add_message(self, chat_id: str, role: str, content: str, metadata: Optional[Dict[str, Any]] = None) -> ChatMessage: ...

    async def list_messages(self, chat_id: str) -> List[ChatMessage]: ...


def now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


@dataclass
class _Chat:
    chat_id: str
    user_id: str
    title: str
    system_prompt: Optional[str]
    created_at: str
    updated_at: str


@dataclass
class _Message:
    message_id: str
    chat_id: str
    role: str
    content: str
    created_at: str
    metadata: Dict[str, Any] | None = None


class InMemoryChatStore:
    def __init__(self) -> None:
        self._chats: Dict[str, _Chat] = {}
        self._by_user: Dict[str, List[str]] = {}
        self._messages: Dict[str, List[_Message]] = {}
        self._lock = RLock()

    def _chat_model(self, chat: _Chat) -> Chat:
        return Chat(**chat.__dict__)

    def _message_model(self, message: _Message) -> ChatMessage:
        return ChatMessage(**message.__dict__)

    async def create_chat(self, user_id: str, title: str, system_prompt: Optional[str] = None) -> Chat:
        with self._lock:
            cid = uuid.uuid4().hex
            now = now_iso()
            chat = _Chat(
                chat_id=cid,
                user_id=user_id,
                title=title,
                system_prompt=system_prompt,
                created_at=now,
                updated_at=now,
            )
            self._chats[cid] = chat
            self._by_user.setdefault(user_id, []).append(cid)
            self._messages[cid] = []
            return self._chat_model(chat)

    async def list_chats(self, user_id: str) -> List[Chat]:
        with self._lock:
            out: List[Chat] = []
            for cid in self._by_user.get(user_id, []):
                chat = self._chats.get(cid)
                if not chat:
                    continue
                out.append(self._chat_model(chat))
            # Newest first
            return sorted(out, key=lambda c: c.created_at, reverse=True)

    async def get_chat(self, chat_id: str) -> Optional[Chat]:
        with self._lock:
            chat = self._chats.get(chat_id)
            if not chat:
                return None
            return self._chat_model(chat)

    async def update_chat(
        self,
        chat_id: str,
        title: Optional[str] = None,
        system_prompt: Optional[str] = None,
    ) -> Chat:
        with self._lock:
            chat = self._chats.get(chat_id)
            if not chat:
                raise KeyError("Chat not found")
            if title is not None:
                chat.title = title
            if system_prompt is not None:
                chat.system_prompt = system_prompt
            chat.updated_at = now_iso()
            return self._chat_model(chat)

    async def delete_chat(self, chat_id: str) -> bool:
        with self._lock:
            chat = self._chats.pop(chat_id, None)
            if not chat:
                return False
            owned = self._by_user.get(chat.user_id, [])
            if chat_id in owned:
                owned.remove(chat_id)
            self._messages.pop(chat_id, None)
            return True

    async def add_message(
        self,
        chat_id: str,
        role: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChatMessage:
        with self._lock:
            if chat_id not in self._chats:
                raise KeyError("Chat not found")
            msg = _Message(
                message_id=uuid.uuid4().hex,
                chat_id=chat_id,
                role=role,
                content=content,
                created_at=now_iso(),
                metadata=dict(metadata) if metadata else None,
            )
            self._messages.setdefault(chat_id, []).append(msg)
            self._chats[chat_id].updated_at = msg.created_at
            return self._message_model(msg)

    async def list_messages(self, chat_id: str) -> List[ChatMessage]:
        with self._lock:
            return [self._message_model(m) for m in self._messages.get(chat_id, [])]


def build_chat_store(settings: Settings) -> ChatStore:
    if settings.store_impl == "mongo":
        from .chat_store_mongo import MongoChatStore

        return MongoChatStore(settings.mongo_url, settings.mongo_db)
    return InMemoryChatStore()
