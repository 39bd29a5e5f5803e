from __future__ import annotations

from typing import Any, Dict, List, Optional
import uuid

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from ..domain.chat_models import Chat, ChatMessage
from .chat_store import now_iso


class MongoChatStore:
    """Chat store backed by MongoDB through motor.

    Messages are read back ordered by ``created_at`` with the insertion
    ``_id`` as tie-breaker, which is the ordering the relay relies on.
    """

    def __init__(self, mongo_url: str, mongo_db: str, client: Optional[AsyncIOMotorClient] = None) -> None:
        self._client = client or AsyncIOMotorClient(mongo_url, serverSelectionTimeoutMS=500)
        db = self._client[mongo_db]
        self._chats = db["chats"]
        self._messages = db["messages"]
        self._indexes_ready = False

    async def _ensure_indexes(self) -> None:
        if self._indexes_ready:
            return
        await self._chats.create_index("chat_id", unique=True)
        await self._chats.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
        await self._messages.create_index([("chat_id", ASCENDING), ("created_at", ASCENDING)])
        self._indexes_ready = True

    @staticmethod
    def _to_chat(doc: Dict[str, Any]) -> Chat:
        return Chat(
            chat_id=str(doc.get("chat_id")),
            user_id=str(doc.get("user_id")),
            title=str(doc.get("title") or ""),
            system_prompt=doc.get("system_prompt"),
            created_at=str(doc.get("created_at")),
            updated_at=str(doc.get("updated_at") or doc.get("created_at")),
        )

    @staticmethod
    def _to_message(doc: Dict[str, Any]) -> ChatMessage:
        return ChatMessage(
            message_id=str(doc.get("message_id")),
            chat_id=str(doc.get("chat_id")),
            role=doc.get("role", "assistant"),
            content=str(doc.get("content", "")),
            created_at=str(doc.get("created_at")),
            metadata=doc.get("metadata") or None,
        )

    async def create_chat(self, user_id: str, title: str, system_prompt: Optional[str] = None) -> Chat:
        await self._ensure_indexes()
        now = now_iso()
        doc = {
            "chat_id": uuid.uuid4().hex,
            "user_id": user_id,
            "title": title,
            "system_prompt": system_prompt,
            "created_at": now,
            "updated_at": now,
        }
        await self._chats.insert_one(dict(doc))
        return self._to_chat(doc)

    async def list_chats(self, user_id: str) -> List[Chat]:
        cursor = self._chats.find({"user_id": user_id}).sort("created_at", DESCENDING)
        docs = await cursor.to_list(length=None)
        return [self._to_chat(doc) for doc in docs]

    async def get_chat(self, chat_id: str) -> Optional[Chat]:
        doc = await self._chats.find_one({"chat_id": chat_id})
        if not doc:
            return None
        return self._to_chat(doc)

    async def update_chat(
        self,
        chat_id: str,
        title: Optional[str] = None,
        system_prompt: Optional[str] = None,
    ) -> Chat:
        changes: Dict[str, Any] = {"updated_at": now_iso()}
        if title is not None:
            changes["title"] = title
        if system_prompt is not None:
            changes["system_prompt"] = system_prompt
        updated = await self._chats.find_one_and_update(
            {"chat_id": chat_id},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise KeyError("Chat not found")
        return self._to_chat(updated)

    async def delete_chat(self, chat_id: str) -> bool:
        result = await self._chats.delete_one({"chat_id": chat_id})
        if not result.deleted_count:
            return False
        await self._messages.delete_many({"chat_id": chat_id})
        return True

    async def add_message(
        self,
        chat_id: str,
        role: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChatMessage:
        chat = await self._chats.find_one({"chat_id": chat_id})
        if not chat:
            raise KeyError("Chat not found")
        now = now_iso()
        doc = {
            "message_id": uuid.uuid4().hex,
            "chat_id": chat_id,
            "role": role,
            "content": content,
            "created_at": now,
            "metadata": dict(metadata or {}),
        }
        await self._messages.insert_one(dict(doc))
        await self._chats.update_one({"chat_id": chat_id}, {"$set": {"updated_at": now}})
        return self._to_message(doc)

    async def list_messages(self, chat_id: str) -> List[ChatMessage]:
        cursor = self._messages.find({"chat_id": chat_id}).sort([("created_at", ASCENDING), ("_id", ASCENDING)])
        docs = await cursor.to_list(length=None)
        return [self._to_message(doc) for doc in docs]
