from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

from ..domain.chat_models import ChatMessage
from ..domain.exceptions import PersistenceFailure
from ..infrastructure.chat_store import ChatStore
from ..infrastructure.events import EventPublisher

if TYPE_CHECKING:
    from .relay import StreamSession


logger = logging.getLogger(__name__)


class PersistenceSink:
    """Writes the single assistant message that closes a stream session.

    One call per session is a caller invariant (see ``StreamRelay``); the
    sink itself does no de-duplication.
    """

    def __init__(self, store: ChatStore, events: Optional[EventPublisher] = None) -> None:
        self._store = store
        self._events = events

    async def write(self, session: "StreamSession") -> ChatMessage:
        metadata: Dict[str, Any] = {
            "stream_id": session.stream_id,
            "stream_state": session.state.value,
            "provider": session.provider,
            "model": session.model,
        }
        try:
            message = await self._store.add_message(
                session.chat_id,
                role="assistant",
                content=session.final_content(),
                metadata=metadata,
            )
        except Exception as exc:
            raise PersistenceFailure(session.chat_id, exc) from exc
        if self._events is not None and self._events.enabled:
            try:
                await self._events.publish("message_created", message.model_dump())
            except Exception as exc:
                # The message is stored; a failed announcement does not undo that.
                logger.warning("message_event_failed", extra={"chat_id": session.chat_id, "err": str(exc)})
        logger.debug("stream_persisted", extra={"chat_id": session.chat_id, "message_id": message.message_id})
        return message
