from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


Role = Literal["system", "user", "assistant"]
StreamFormat = Literal["raw", "sse"]


class ConversationTurn(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str


class ChatCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    system_prompt: Optional[str] = None


class ChatUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    system_prompt: Optional[str] = None


class Chat(BaseModel):
    chat_id: str
    user_id: str
    title: str
    system_prompt: Optional[str] = None
    created_at: str
    updated_at: str


class ChatMessage(BaseModel):
    message_id: str
    chat_id: str
    role: Role
    content: str
    created_at: str
    metadata: Optional[dict] = None


class ChatWithMessages(BaseModel):
    chat: Chat
    messages: List[ChatMessage]


class ChatMessageCreate(BaseModel):
    content: str = Field(min_length=1)
    model: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, ge=1, le=32000)


class GenerationParams(BaseModel):
    model: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 1000


class StreamCancelResult(BaseModel):
    stream_id: str
    state: str
    cancelled: bool


INTERRUPTED_MARKER = "[Response interrupted]"
CANCELLED_MARKER = "[Response cancelled]"
NOT_SAVED_MARKER = "[Response not saved]"
