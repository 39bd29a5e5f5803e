from __future__ import annotations

import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from src.chatrelay.api.routers.chat import (
    RATE_LIMITED_DETAIL,
    UNAVAILABLE_DETAIL,
    SessionStreamingResponse,
    _relay_body,
)
from src.chatrelay.config import Settings
from src.chatrelay.domain.chat_models import ConversationTurn, GenerationParams
from src.chatrelay.domain.exceptions import UpstreamRateLimited, UpstreamRejected, UpstreamTransportFailure
from src.chatrelay.services.relay import StreamState
from src.chatrelay.services.streaming import parse_sse_block
from tests.utils import FailingAssistantStore, ScriptedProvider, auth_headers


TURNS = [ConversationTurn(role="user", content="hi")]


def _new_chat(client: TestClient, title: str = "Test chat", **extra) -> dict:
    resp = client.post("/chats", json={"title": title, **extra}, headers=auth_headers())
    assert resp.status_code == 201, resp.text
    return resp.json()


def _sse_events(body: str):
    return [parse_sse_block(block) for block in body.split("\n\n") if block.strip()]


def test_chat_crud_flow(make_app):
    with TestClient(make_app(ScriptedProvider())) as client:
        chat = _new_chat(client, "First")
        assert chat["system_prompt"] == "You are a helpful assistant."
        assert chat["user_id"] == "alice"

        listed = client.get("/chats", headers=auth_headers())
        assert listed.status_code == 200
        assert [c["chat_id"] for c in listed.json()] == [chat["chat_id"]]

        detail = client.get(f"/chats/{chat['chat_id']}", headers=auth_headers())
        assert detail.status_code == 200
        assert detail.json()["messages"] == []

        updated = client.patch(
            f"/chats/{chat['chat_id']}",
            json={"title": "Renamed", "system_prompt": "Answer in French."},
            headers=auth_headers(),
        )
        assert updated.status_code == 200
        assert updated.json()["title"] == "Renamed"
        assert updated.json()["system_prompt"] == "Answer in French."

        deleted = client.delete(f"/chats/{chat['chat_id']}", headers=auth_headers())
        assert deleted.status_code == 204
        assert client.get(f"/chats/{chat['chat_id']}", headers=auth_headers()).status_code == 404


def test_routes_are_also_served_under_api_prefix(make_app):
    with TestClient(make_app(ScriptedProvider())) as client:
        resp = client.post("/api/chats", json={"title": "Prefixed"}, headers=auth_headers())
        assert resp.status_code == 201
        assert client.get("/api/chats", headers=auth_headers()).json()[0]["title"] == "Prefixed"


def test_chat_access_requires_token_and_ownership(make_app):
    with TestClient(make_app(ScriptedProvider())) as client:
        chat = _new_chat(client)
        cid = chat["chat_id"]

        assert client.get("/chats").status_code == 401
        assert client.get("/chats", headers={"Authorization": "Bearer not-a-jwt"}).status_code == 401
        assert client.get(f"/chats/{cid}", headers=auth_headers("mallory")).status_code == 403
        assert client.post(
            f"/chats/{cid}/stream", json={"content": "hi"}, headers=auth_headers("mallory")
        ).status_code == 403
        assert client.get("/chats/missing", headers=auth_headers()).status_code == 404


def test_raw_stream_relays_text_and_stores_both_turns(make_app):
    provider = ScriptedProvider(["Hello", ", ", "world"])
    with TestClient(make_app(provider)) as client:
        chat = _new_chat(client, system_prompt="Be brief.")
        resp = client.post(f"/chats/{chat['chat_id']}/stream", json={"content": "hi"}, headers=auth_headers())

        assert resp.status_code == 200
        assert resp.text == "Hello, world"
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert resp.headers["cache-control"].startswith("no-cache")
        assert resp.headers["x-stream-id"]

        messages = client.get(f"/chats/{chat['chat_id']}/messages", headers=auth_headers()).json()
        assert [(m["role"], m["content"]) for m in messages] == [("user", "hi"), ("assistant", "Hello, world")]
        assert [t.role for t in provider.calls[0]] == ["system", "user"]
        assert provider.calls[0][0].content == "Be brief."


def test_follow_up_message_carries_history(make_app):
    provider = ScriptedProvider(["ok"])
    with TestClient(make_app(provider)) as client:
        chat = _new_chat(client)
        url = f"/chats/{chat['chat_id']}/stream"
        client.post(url, json={"content": "first"}, headers=auth_headers())
        client.post(url, json={"content": "second", "temperature": 0.2, "max_tokens": 50}, headers=auth_headers())

        second = provider.calls[1]
        assert [(t.role, t.content) for t in second[1:]] == [
            ("user", "first"),
            ("assistant", "ok"),
            ("user", "second"),
        ]
        assert provider.params[1].temperature == 0.2
        assert provider.params[1].max_tokens == 50
        assert provider.params[0].temperature == 0.7
        assert provider.params[0].max_tokens == 1000


def test_raw_stream_appends_interrupted_marker(make_app):
    provider = ScriptedProvider(["Par"], error=UpstreamTransportFailure("reset"))
    with TestClient(make_app(provider)) as client:
        chat = _new_chat(client)
        resp = client.post(f"/chats/{chat['chat_id']}/stream", json={"content": "hi"}, headers=auth_headers())

        assert resp.status_code == 200
        assert resp.text == "Par [Response interrupted]"
        messages = client.get(f"/chats/{chat['chat_id']}/messages", headers=auth_headers()).json()
        assert messages[-1]["content"] == "Par [Response interrupted]"


def test_sse_stream_emits_open_delta_done(make_app):
    with TestClient(make_app(ScriptedProvider(["Hel", "lo"]))) as client:
        chat = _new_chat(client)
        resp = client.post(
            f"/chats/{chat['chat_id']}/stream",
            params={"format": "sse"},
            json={"content": "hi"},
            headers=auth_headers(),
        )

        assert resp.status_code == 200
        events = _sse_events(resp.text)
        assert [name for name, _ in events] == ["open", "delta", "delta", "done"]
        assert events[0][1]["stream_id"] == resp.headers["x-stream-id"]
        assert [payload["text"] for name, payload in events if name == "delta"] == ["Hel", "lo"]
        done = events[-1][1]
        assert done["state"] == "completed"
        assert done["saved"] is True
        assert done["content"] == "Hello"
        assert done["message_id"]
        assert "error" not in done


def test_upstream_rejection_maps_to_400_and_stores_nothing(make_app):
    provider = ScriptedProvider(open_errors=[UpstreamRejected("This model's maximum context length is 8192 tokens")])
    with TestClient(make_app(provider)) as client:
        chat = _new_chat(client)
        resp = client.post(f"/chats/{chat['chat_id']}/stream", json={"content": "hi"}, headers=auth_headers())

        assert resp.status_code == 400
        assert "maximum context length" in resp.json()["detail"]
        assert client.get(f"/chats/{chat['chat_id']}/messages", headers=auth_headers()).json() == []


def test_upstream_rate_limit_maps_to_429_with_retry_after(make_app):
    provider = ScriptedProvider(open_errors=[UpstreamRateLimited(retry_after_seconds=2.5)])
    app = make_app(provider, settings=Settings(rate_limit_disabled=True, upstream_retries=0))
    with TestClient(app) as client:
        chat = _new_chat(client)
        resp = client.post(f"/chats/{chat['chat_id']}/stream", json={"content": "hi"}, headers=auth_headers())

        assert resp.status_code == 429
        assert resp.json()["detail"] == RATE_LIMITED_DETAIL
        assert resp.headers["retry-after"] == "3"
        assert client.get(f"/chats/{chat['chat_id']}/messages", headers=auth_headers()).json() == []


def test_upstream_outage_maps_to_502(make_app):
    provider = ScriptedProvider(open_errors=[UpstreamTransportFailure("connection refused")])
    with TestClient(make_app(provider)) as client:
        chat = _new_chat(client)
        resp = client.post(f"/chats/{chat['chat_id']}/stream", json={"content": "hi"}, headers=auth_headers())

        assert resp.status_code == 502
        assert resp.json()["detail"] == UNAVAILABLE_DETAIL
        assert "connection refused" not in resp.text


def test_local_rate_limit_is_per_user(make_app):
    app = make_app(ScriptedProvider(["ok"]), settings=Settings(rate_limit=1, rate_limit_window_seconds=60))
    with TestClient(app) as client:
        chat = _new_chat(client)
        url = f"/chats/{chat['chat_id']}/stream"

        assert client.post(url, json={"content": "one"}, headers=auth_headers()).status_code == 200
        blocked = client.post(url, json={"content": "two"}, headers=auth_headers())
        assert blocked.status_code == 429
        assert int(blocked.headers["retry-after"]) >= 1

        other = client.post("/chats", json={"title": "Bob's"}, headers=auth_headers("bob")).json()
        resp = client.post(f"/chats/{other['chat_id']}/stream", json={"content": "one"}, headers=auth_headers("bob"))
        assert resp.status_code == 200


def test_empty_message_is_rejected(make_app):
    with TestClient(make_app(ScriptedProvider(["ok"]))) as client:
        chat = _new_chat(client)
        resp = client.post(f"/chats/{chat['chat_id']}/stream", json={"content": ""}, headers=auth_headers())
        assert resp.status_code == 422


def test_non_streaming_reply_returns_saved_message(make_app):
    with TestClient(make_app(ScriptedProvider(["All ", "good"]))) as client:
        chat = _new_chat(client)
        resp = client.post(f"/chats/{chat['chat_id']}/messages", json={"content": "hi"}, headers=auth_headers())

        assert resp.status_code == 200
        body = resp.json()
        assert body["role"] == "assistant"
        assert body["content"] == "All good"
        assert body["metadata"]["provider"] == "scripted"


def test_unsaved_reply_is_flagged(make_app):
    app = make_app(ScriptedProvider(["lost"]), store=FailingAssistantStore())
    with TestClient(app) as client:
        chat = _new_chat(client)
        raw = client.post(f"/chats/{chat['chat_id']}/stream", json={"content": "hi"}, headers=auth_headers())
        assert raw.status_code == 200
        assert raw.text == "lost [Response not saved]"

        sse = client.post(
            f"/chats/{chat['chat_id']}/stream",
            params={"format": "sse"},
            json={"content": "hi"},
            headers=auth_headers(),
        )
        done = _sse_events(sse.text)[-1][1]
        assert done["saved"] is False
        assert done["error"] == "Failed to save AI response"

        plain = client.post(f"/chats/{chat['chat_id']}/messages", json={"content": "hi"}, headers=auth_headers())
        assert plain.status_code == 500
        assert plain.json()["detail"] == "Failed to save AI response"


def test_health_and_metrics(make_app):
    with TestClient(make_app(ScriptedProvider())) as client:
        for prefix in ("", "/api"):
            health = client.get(f"{prefix}/health")
            assert health.status_code == 200
            assert health.json()["components"]["provider"] == "scripted"
        metrics = client.get("/metrics")
        assert metrics.status_code == 200
        assert "chatrelay_request_latency_seconds" in metrics.text


@pytest.mark.asyncio
async def test_cancel_endpoint_stops_open_stream(make_app, store):
    app = make_app(ScriptedProvider(["The answer"], hang=True))
    chat = await store.create_chat("alice", "Live")
    session = await app.state.relay.start(chat.chat_id, TURNS, GenerationParams())

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        missing = await client.post(f"/chats/{chat.chat_id}/streams/nope/cancel", headers=auth_headers())
        forbidden = await client.post(
            f"/chats/{chat.chat_id}/streams/{session.stream_id}/cancel", headers=auth_headers("mallory")
        )
        resp = await client.post(f"/chats/{chat.chat_id}/streams/{session.stream_id}/cancel", headers=auth_headers())

    assert missing.status_code == 404
    assert forbidden.status_code == 403
    assert resp.status_code == 200
    assert resp.json() == {"stream_id": session.stream_id, "state": "cancelled", "cancelled": True}
    messages = await store.list_messages(chat.chat_id)
    assert [m.content for m in messages] == ["The answer [Response cancelled]"]


@pytest.mark.asyncio
async def test_deleting_chat_stops_its_streams(make_app, store):
    app = make_app(ScriptedProvider(["half"], hang=True))
    chat = await store.create_chat("alice", "Doomed")
    session = await app.state.relay.start(chat.chat_id, TURNS, GenerationParams())

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.delete(f"/chats/{chat.chat_id}", headers=auth_headers())

    assert resp.status_code == 204
    assert session.state is StreamState.CANCELLED
    assert await store.get_chat(chat.chat_id) is None
    assert len(app.state.relay.registry) == 0


@pytest.mark.asyncio
async def test_client_disconnect_cancels_session(make_app, store):
    app = make_app(ScriptedProvider(["first"], hang=True))
    chat = await store.create_chat("alice", "Gone")
    session = await app.state.relay.start(chat.chat_id, TURNS, GenerationParams())

    body = _relay_body(session, "raw")
    assert await body.__anext__() == "first"
    await body.aclose()
    await asyncio.wait_for(session.wait(), timeout=2)

    assert session.state is StreamState.CANCELLED
    assert session.message.content == "first [Response cancelled]"


@pytest.mark.asyncio
async def test_disconnect_before_body_is_read_cancels_session(make_app, store):
    app = make_app(ScriptedProvider(["first"], hang=True))
    chat = await store.create_chat("alice", "Gone early")
    session = await app.state.relay.start(chat.chat_id, TURNS, GenerationParams())
    response = SessionStreamingResponse(session, "raw", media_type="text/event-stream")
    blocked = asyncio.Event()

    async def receive():
        return {"type": "http.disconnect"}

    async def send(message):
        # The client is gone before the response head is written.
        await blocked.wait()

    scope = {"type": "http", "asgi": {"spec_version": "2.0"}}
    await asyncio.wait_for(response(scope, receive, send), timeout=2)
    await asyncio.wait_for(session.wait(), timeout=2)

    assert session.state is StreamState.CANCELLED
    assert session.message.content == "first [Response cancelled]"
    assert len(app.state.relay.registry) == 0
