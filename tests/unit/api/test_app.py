"""
Unit tests for the HTTP surface.

The app is driven through FastAPI's TestClient with a ChatService wired to
fake adapters and an in-memory database.
"""

import json

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from fakes import AdapterFactory, FakeAdapter, text_step, tool_step
from venuschat import __version__
from venuschat.api import create_app
from venuschat.chat.service import ChatService
from venuschat.db.models import Message


def chat_body(text: str = "What's the weather in Paris?", **extra) -> dict:
    return {"messages": [{"role": "user", "parts": [{"type": "text", "text": text}]}], **extra}


def sse_events(response) -> list:
    """Decode `data:` lines; the [DONE] marker is returned as a string."""
    events = []
    for line in response.text.splitlines():
        if not line.startswith("data: "):
            continue
        data = line[len("data: "):]
        events.append(data if data == "[DONE]" else json.loads(data))
    return events


@pytest.fixture
def factory():
    return AdapterFactory(chat=FakeAdapter([text_step("It is sunny in Paris.")]))


@pytest.fixture
def client(settings, db, cache, factory):
    service = ChatService(settings, db, cache, adapter_factory=factory)
    with TestClient(create_app(settings, service=service)) as test_client:
        yield test_client


class TestHealth:

    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "version": __version__}


class TestChatEndpoint:

    def test_streams_server_sent_events(self, client):
        response = client.post("/api/chat", json=chat_body(), headers={"X-User-Id": "user-1"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = sse_events(response)
        assert events[0]["type"] == "start"
        assert events[0]["messageMetadata"]["provider"] == "fake"
        assert events[-2]["type"] == "finish"
        assert events[-2]["messageMetadata"]["isFinished"] is True
        assert events[-1] == "[DONE]"
        text = "".join(e["delta"] for e in events if isinstance(e, dict) and e["type"] == "text-delta")
        assert text == "It is sunny in Paris."

    def test_user_id_from_body(self, client):
        response = client.post("/api/chat", json=chat_body(userId="user-1"))
        assert response.status_code == 200

    def test_missing_user_id(self, client):
        response = client.post("/api/chat", json=chat_body())

        assert response.status_code == 401
        assert response.json() == {"error": "User ID is required for billing tracking"}

    def test_invalid_body(self, client):
        response = client.post("/api/chat", json={"messages": []}, headers={"X-User-Id": "user-1"})

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request"
        assert response.json()["details"]

    def test_unknown_model(self, client):
        response = client.post("/api/chat", json=chat_body(modelId="gpt-9"), headers={"X-User-Id": "user-1"})

        assert response.status_code == 404
        assert response.json() == {"error": "Model not found or not accessible"}

    def test_unknown_conversation(self, client):
        response = client.post(
            "/api/chat", json=chat_body(conversationId="nope"), headers={"X-User-Id": "user-1"}
        )

        assert response.status_code == 404
        assert response.json() == {"error": "Conversation not found"}

    def test_billing_limit(self, client, add_user_model, add_pricing, set_billing, factory):
        add_user_model(model_id="gpt-4o")
        add_pricing("openai", "gpt-4o", "0.03", "0.06")
        set_billing(credits="0")

        response = client.post("/api/chat", json=chat_body(modelId="gpt-4o"), headers={"X-User-Id": "user-1"})

        assert response.status_code == 429
        body = response.json()
        assert body["error"] == "Usage limit exceeded"
        assert body["reason"] == "Insufficient credits"
        assert body["billing"]["credits"] == 0.0
        assert factory.chat.stream_calls == []

    def test_turn_is_persisted(self, settings, db, cache, factory, add_conversation):
        conv = add_conversation("user-1")
        service = ChatService(settings, db, cache, adapter_factory=factory)

        with TestClient(create_app(settings, service=service)) as client:
            response = client.post(
                "/api/chat", json=chat_body(conversationId=conv), headers={"X-User-Id": "user-1"}
            )
            assert response.status_code == 200
        # Leaving the client drains post-completion tasks

        with db.session() as session:
            roles = [m.role for m in session.scalars(select(Message).order_by(Message.created_at))]
        assert roles == ["user", "assistant"]


class TestQuickEndpoint:

    def test_single_step(self, settings, db, cache):
        factory = AdapterFactory(chat=FakeAdapter([
            tool_step(("call_1", "weather", {"location": "Paris"})),
            text_step("unused"),
        ]))
        service = ChatService(settings, db, cache, adapter_factory=factory)

        with TestClient(create_app(settings, service=service)) as client:
            response = client.post("/api/chat/quick", json=chat_body(), headers={"X-User-Id": "user-1"})

        events = sse_events(response)
        assert len(factory.chat.stream_calls) == 1
        finish = next(e for e in events if isinstance(e, dict) and e["type"] == "finish")
        assert finish["finishReason"] == "tool-calls"


class TestImageModels:

    def test_image_response_is_json(self, settings, db, cache, add_user_model):
        add_user_model(model_id="dall-e-3")
        image_adapter = FakeAdapter(provider="openai", model="dall-e-3", image="https://images.example/fox.png")
        service = ChatService(settings, db, cache, adapter_factory=AdapterFactory(user=image_adapter))

        with TestClient(create_app(settings, service=service)) as client:
            response = client.post(
                "/api/chat", json=chat_body("a red fox", modelId="dall-e-3"), headers={"X-User-Id": "user-1"}
            )

        assert response.status_code == 200
        body = response.json()
        assert body["role"] == "assistant"
        assert body["content"][0] == {"type": "image", "image": "https://images.example/fox.png"}


class TestBillingEndpoints:

    def test_info_requires_user(self, client):
        assert client.get("/api/billing/info").status_code == 401

    def test_info(self, client, set_billing):
        set_billing(credits="7.5")

        response = client.get("/api/billing/info", headers={"X-User-Id": "user-1"})

        assert response.status_code == 200
        assert response.json()["credits"] == 7.5
        assert response.json()["plan"] == "FREE"

    def test_usage(self, client, add_pricing, set_billing):
        response = client.get("/api/billing/usage?days=7", headers={"X-User-Id": "user-1"})

        assert response.status_code == 200
        assert response.json() == {"days": 7, "usage": []}
