from __future__ import annotations

"""Best-effort fan-out of store changes over Redis pub/sub.

Subscribers (other browser tabs, workers) listen on ``chatrelay.events.*``.
Publishing never blocks or fails the write that triggered it.
"""

import json
import logging
from typing import Any, Dict, Optional

import redis.asyncio as redis


logger = logging.getLogger(__name__)


class EventPublisher:
    def __init__(self, url: Optional[str], client: Any = None) -> None:
        self._url = url
        self._client = client

    @property
    def enabled(self) -> bool:
        return bool(self._url or self._client)

    def _connect(self) -> Any:
        if self._client is None and self._url:
            self._client = redis.Redis.from_url(self._url, socket_timeout=0.5)
        return self._client

    async def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        client = self._connect()
        if client is None:
            return
        channel = f"chatrelay.events.{event_type}"
        try:
            await client.publish(channel, json.dumps(payload))
        except redis.RedisError as exc:
            logger.warning("event_publish_failed", extra={"channel": channel, "err": str(exc)})
            self._client = None

    async def close(self) -> None:
        if self._client is not None and self._url:
            await self._client.aclose()
        self._client = None
