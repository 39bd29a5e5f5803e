from __future__ import annotations

"""Fixed-window rate limiting scoped to a limiter instance."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, Dict, Optional, Tuple

from ..config import Settings


@dataclass
class _RateLimitEntry:
    count: int
    window_end: datetime


class RateLimitExceeded(Exception):
    def __init__(self, retry_after_seconds: int) -> None:
        super().__init__("Rate limit exceeded")
        self.retry_after_seconds = retry_after_seconds


class RateLimiter:
    """Counts actions per ``(key, identifier)`` inside a rolling fixed window.

    Each instance owns its counters, so two apps (or two tests) never share
    state.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: int,
        disabled: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self.disabled = disabled
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._entries: Dict[Tuple[str, str], _RateLimitEntry] = {}
        self._lock = Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "RateLimiter":
        return cls(
            limit=settings.rate_limit,
            window_seconds=settings.rate_limit_window_seconds,
            disabled=settings.rate_limit_disabled,
        )

    def hit(self, key: str, identifier: str) -> None:
        """Track one action.

        Raises:
            RateLimitExceeded if the action should be blocked. retry_after_seconds
            indicates when the caller may retry.
        """

        if self.disabled:
            return
        now = self._clock()
        store_key = (key, identifier)
        with self._lock:
            entry = self._entries.get(store_key)
            if entry and entry.window_end > now:
                if entry.count >= self.limit:
                    retry_after = int((entry.window_end - now).total_seconds())
                    raise RateLimitExceeded(max(retry_after, 1))
                entry.count += 1
                return
            self._entries[store_key] = _RateLimitEntry(
                count=1,
                window_end=now + timedelta(seconds=self.window_seconds),
            )

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()
