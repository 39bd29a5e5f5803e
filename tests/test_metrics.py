import pytest

from src.chatrelay.observability.metrics import sanitize_path


@pytest.mark.parametrize(
    "path,expected",
    [
        ("", "/"),
        ("/", "/"),
        ("/chats/abc123/stream", "/chats"),
        ("/api/chats/abc123/messages?x=1", "/api/chats"),
        ("/api", "/api"),
        ("/health", "/health"),
    ],
)
def test_sanitize_path_collapses_ids(path, expected):
    assert sanitize_path(path) == expected
