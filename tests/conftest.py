import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


@pytest.fixture
def settings():
    from src.chatrelay.config import Settings

    return Settings(rate_limit_disabled=True, max_stream_seconds=5.0, retry_backoff_seconds=0.0)


@pytest.fixture
def store():
    from src.chatrelay.infrastructure.chat_store import InMemoryChatStore

    return InMemoryChatStore()


@pytest.fixture
def make_app(settings, store):
    """Build an isolated app around a test provider."""
    from src.chatrelay.api.main import create_app

    def _make(provider, **kwargs):
        kwargs.setdefault("settings", settings)
        kwargs.setdefault("store", store)
        return create_app(provider=provider, **kwargs)

    return _make
