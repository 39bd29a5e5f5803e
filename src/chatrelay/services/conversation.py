from __future__ import annotations

from typing import Iterable, List, Optional, Union

from ..domain.chat_models import ChatMessage, ConversationTurn

_ROLES = ("system", "user", "assistant")

HistoryItem = Union[ChatMessage, ConversationTurn, dict]


def _as_turn(item: HistoryItem) -> ConversationTurn:
    if isinstance(item, dict):
        role = item.get("role") or "user"
        content = item.get("content") or ""
    else:
        role = item.role
        content = item.content
    if role not in _ROLES:
        role = "user"
    return ConversationTurn(role=role, content=str(content))


def build_conversation(
    system_prompt: Optional[str],
    history: Iterable[HistoryItem],
    user_turn: Union[str, ConversationTurn],
) -> List[ConversationTurn]:
    """Return ``[system?] + history + [user_turn]`` as provider input.

    ``history`` must already be in chronological order; it is copied, never
    mutated. A blank system prompt is left out.
    """
    turns: List[ConversationTurn] = []
    if system_prompt and system_prompt.strip():
        turns.append(ConversationTurn(role="system", content=system_prompt))
    turns.extend(_as_turn(item) for item in history)
    if isinstance(user_turn, ConversationTurn):
        turns.append(user_turn)
    else:
        turns.append(ConversationTurn(role="user", content=user_turn))
    return turns


def as_payload(turns: Iterable[ConversationTurn]) -> List[dict]:
    return [{"role": t.role, "content": t.content} for t in turns]
