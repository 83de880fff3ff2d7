"""End-to-end tests for the chat HTTP surface (SSE streaming, stop, resume)."""

from __future__ import annotations

import json

from fastapi.testclient import TestClient

from chatrelay.app import app
from chatrelay.service.runtime import get_runtime, reset_runtime_for_tests


def _user(tier: str = "pro", token: str = "token-pro", email: str = "pro@example.com"):
    return get_runtime().store.create_user(email, tier=tier, api_token=token)


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _body(chat_id: str = "chat-1", text: str = "hello there", **extra) -> dict:
    body = {
        "chatId": chat_id,
        "messages": [{"id": "u1", "role": "user", "parts": [{"type": "text", "text": text}]}],
    }
    body.update(extra)
    return body


def _events(raw: str):
    events = []
    for block in raw.strip().split("\n\n"):
        name = data = None
        for line in block.splitlines():
            if line.startswith("event: "):
                name = line[len("event: "):]
            elif line.startswith("data: "):
                data = json.loads(line[len("data: "):])
        if name:
            events.append((name, data))
    return events


def test_chat_streams_and_persists_turn():
    user = _user()
    with TestClient(app) as client:
        resp = client.post("/v1/chat", json=_body(), headers=_auth("token-pro"))

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["X-Stream-ID"]
    events = _events(resp.text)
    names = [name for name, _ in events]
    assert names[0] == "start"
    assert names[-1] == "finish"
    assert "text-delta" in names
    assert "data-title" in names

    finish = events[-1][1]
    assert finish["finishReason"] == "stop"
    assert finish["usage"]["outputTokens"] > 0

    store = get_runtime().store
    messages = store.list_messages("chat-1", user_id=user.id)
    assert [m.role for m in messages] == ["user", "assistant"]
    assert messages[1].id == finish["messageId"]
    conversation = store.get_conversation("chat-1")
    assert conversation.title
    assert conversation.finish_reason == "stop"
    assert conversation.active_stream_id is None


def test_follow_up_turn_reuses_conversation():
    user = _user()
    with TestClient(app) as client:
        client.post("/v1/chat", json=_body(), headers=_auth("token-pro"))
        body = _body(text="and again")
        body["messages"][0]["id"] = "u2"
        resp = client.post("/v1/chat", json=body, headers=_auth("token-pro"))

    assert resp.status_code == 200
    names = [name for name, _ in _events(resp.text)]
    assert "data-title" not in names
    messages = get_runtime().store.list_messages("chat-1", user_id=user.id)
    assert [m.role for m in messages] == ["user", "assistant", "user", "assistant"]


def test_regenerate_replaces_last_assistant_message():
    user = _user()
    with TestClient(app) as client:
        first = client.post("/v1/chat", json=_body(), headers=_auth("token-pro"))
        first_id = _events(first.text)[-1][1]["messageId"]
        resp = client.post("/v1/chat", json=_body(regenerate=True), headers=_auth("token-pro"))

    assert resp.status_code == 200
    messages = get_runtime().store.list_messages("chat-1", user_id=user.id)
    assert [m.role for m in messages] == ["user", "assistant"]
    assert messages[1].id != first_id


def test_temporary_chat_is_not_stored():
    _user()
    with TestClient(app) as client:
        resp = client.post("/v1/chat", json=_body(temporary=True), headers=_auth("token-pro"))

    assert resp.status_code == 200
    assert [name for name, _ in _events(resp.text)][-1] == "finish"
    assert get_runtime().store.get_conversation("chat-1") is None


def test_free_tier_agent_mode_is_forbidden():
    _user(tier="free", token="token-free", email="free@example.com")
    with TestClient(app) as client:
        resp = client.post("/v1/chat", json=_body(mode="agent"), headers=_auth("token-free"))

    assert resp.status_code == 403
    body = resp.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "forbidden"
    assert get_runtime().store.get_conversation("chat-1") is None


def test_exhausted_free_window_returns_rate_limit(monkeypatch):
    monkeypatch.setenv("FREE_RATE_LIMIT_REQUESTS", "1")
    reset_runtime_for_tests()
    _user(tier="free", token="token-free", email="free@example.com")
    with TestClient(app) as client:
        ok = client.post("/v1/chat", json=_body(), headers=_auth("token-free"))
        limited = client.post("/v1/chat", json=_body(chat_id="chat-2"), headers=_auth("token-free"))

    assert ok.status_code == 200
    assert limited.status_code == 429
    assert int(limited.headers["Retry-After"]) > 0
    error = limited.json()["error"]
    assert error["code"] == "rate_limit"
    assert error["details"]["window"] == "sliding"


def test_missing_token_is_unauthorized():
    with TestClient(app) as client:
        resp = client.post("/v1/chat", json=_body())
        bad = client.post("/v1/chat", json=_body(), headers=_auth("nope"))

    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"
    assert bad.status_code == 401


def test_empty_message_is_bad_request():
    _user()
    with TestClient(app) as client:
        resp = client.post("/v1/chat", json=_body(text="   "), headers=_auth("token-pro"))

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "bad_request"


def test_unknown_mode_is_rejected_by_schema():
    _user()
    with TestClient(app) as client:
        resp = client.post("/v1/chat", json=_body(mode="turbo"), headers=_auth("token-pro"))

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "bad_request"


def test_other_users_conversation_is_not_found():
    _user()
    _user(token="token-other", email="other@example.com")
    with TestClient(app) as client:
        client.post("/v1/chat", json=_body(), headers=_auth("token-pro"))
        resp = client.post("/v1/chat", json=_body(), headers=_auth("token-other"))
        stop = client.post("/v1/chat/chat-1/stop", headers=_auth("token-other"))

    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"
    assert stop.status_code == 404


def test_stop_records_cancellation():
    _user()
    with TestClient(app) as client:
        client.post("/v1/chat", json=_body(), headers=_auth("token-pro"))
        resp = client.post("/v1/chat/chat-1/stop", headers=_auth("token-pro"))

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["data"] == {"chat_id": "chat-1", "canceled": True}
    assert get_runtime().store.get_cancellation_status("chat-1") is not None


def test_next_stream_ignores_previous_stop():
    _user()
    with TestClient(app) as client:
        client.post("/v1/chat", json=_body(), headers=_auth("token-pro"))
        client.post("/v1/chat/chat-1/stop", headers=_auth("token-pro"))
        body = _body(text="new question")
        body["messages"][0]["id"] = "u2"
        resp = client.post("/v1/chat", json=body, headers=_auth("token-pro"))

    finish = _events(resp.text)[-1]
    assert finish[0] == "finish"
    assert finish[1]["finishReason"] == "stop"


def test_resume_without_active_stream_is_no_content():
    _user()
    with TestClient(app) as client:
        client.post("/v1/chat", json=_body(), headers=_auth("token-pro"))
        resp = client.get("/v1/chat/chat-1/stream", headers=_auth("token-pro"))
        missing = client.get("/v1/chat/unknown/stream", headers=_auth("token-pro"))

    assert resp.status_code == 204
    assert missing.status_code == 404


def test_health_and_request_id():
    with TestClient(app) as client:
        resp = client.get("/healthz", headers={"X-Request-ID": "req-123"})

    assert resp.status_code == 200
    assert resp.headers["X-Request-ID"] == "req-123"
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["checks"]["cache"]["status"] == "ok"
