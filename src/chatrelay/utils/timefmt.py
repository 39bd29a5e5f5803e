from __future__ import annotations

from datetime import UTC, datetime
from typing import Optional


def _parse(iso: str) -> datetime:
    dt = datetime.fromisoformat(iso.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def format_timestamp(iso: str) -> str:
    """Render an ISO timestamp as e.g. ``May 23, 2023 at 02:30 PM``."""
    dt = _parse(iso)
    return f"{dt.strftime('%b')} {dt.day}, {dt.year} at {dt.strftime('%I:%M %p')}"


def _plural(n: int, unit: str) -> str:
    return f"{n} {unit}{'s' if n > 1 else ''} ago"


def relative_time(iso: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(UTC)
    seconds = int((now - _parse(iso)).total_seconds())
    if seconds < 60:
        return "just now"
    minutes = seconds // 60
    if minutes < 60:
        return _plural(minutes, "minute")
    hours = minutes // 60
    if hours < 24:
        return _plural(hours, "hour")
    days = hours // 24
    if days < 30:
        return _plural(days, "day")
    months = days // 30
    if months < 12:
        return _plural(months, "month")
    return _plural(months // 12, "year")
