from __future__ import annotations

import asyncio
from typing import Dict, List, Optional, Sequence

from src.chatrelay.domain.chat_models import ConversationTurn, GenerationParams
from src.chatrelay.infrastructure.chat_store import InMemoryChatStore
from src.chatrelay.security.auth import User, create_access_token


def auth_headers(user_id: str = "alice") -> Dict[str, str]:
    token = create_access_token(User(user_id=user_id, email=f"{user_id}@example.com", name=user_id.title()))
    return {"Authorization": f"Bearer {token}"}


class ScriptedProvider:
    """Completion provider that replays a fixed script.

    ``open_errors`` are raised (one per call) before any fragment; ``error``
    is raised after the fragments; ``hang`` keeps the stream open until
    ``release`` is set.
    """

    name = "scripted"

    def __init__(
        self,
        fragments: Sequence[str] = (),
        error: Optional[BaseException] = None,
        open_errors: Sequence[BaseException] = (),
        hang: bool = False,
        delay: float = 0.0,
        model: str = "scripted-model",
    ) -> None:
        self.fragments = list(fragments)
        self.error = error
        self.open_errors = list(open_errors)
        self.hang = hang
        self.delay = delay
        self.model = model
        self.release = asyncio.Event()
        self.calls: List[List[ConversationTurn]] = []
        self.params: List[GenerationParams] = []
        self.closed = 0
        self.closed_provider = False

    def stream(self, turns: Sequence[ConversationTurn], params: GenerationParams):
        self.calls.append(list(turns))
        self.params.append(params)
        return self._run(len(self.calls))

    async def _run(self, attempt: int):
        try:
            if attempt <= len(self.open_errors):
                raise self.open_errors[attempt - 1]
            for fragment in self.fragments:
                if self.delay:
                    await asyncio.sleep(self.delay)
                yield fragment
            if self.error is not None:
                raise self.error
            if self.hang:
                await self.release.wait()
        finally:
            self.closed += 1

    async def aclose(self) -> None:
        self.closed_provider = True


class FailingAssistantStore(InMemoryChatStore):
    """Stores user turns but fails every assistant write."""

    def __init__(self) -> None:
        super().__init__()
        self.assistant_attempts = 0

    async def add_message(self, chat_id, role, content, metadata=None):
        if role == "assistant":
            self.assistant_attempts += 1
            raise ConnectionError("database unavailable")
        return await super().add_message(chat_id, role, content, metadata)
