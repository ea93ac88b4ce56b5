"""Tests for the FastAPI endpoints."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import intent_json
from fastapi.testclient import TestClient
from langchain_core.messages import AIMessage

from medcore.executor import ActionExecutor
from medcore.orchestrator import SessionManager, TurnOrchestrator
from medcore.server import app
from medcore.services.booking_store import BookingStore
from medcore.translator import IntentTranslator


@pytest.fixture
def mock_llm():
    """A chat model stub that always greets."""
    llm = MagicMock()
    llm.ainvoke = AsyncMock(
        return_value=AIMessage(content=intent_json("none", "Hello! How can I help?", suggestions=["Book"])),
    )
    return llm


@pytest.fixture
def client(mock_llm):
    """Test client with the lifespan run, then the model swapped for the stub."""
    with TestClient(app) as tc:
        store = BookingStore(latency_ms=0, availability_ratio=1.0)
        app.state.store = store
        app.state.sessions = SessionManager(
            TurnOrchestrator(IntentTranslator(mock_llm), ActionExecutor(store)),
        )
        yield tc


class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["service"] == "medcore-booking-assistant"


class TestChatEndpoint:
    def test_chat_returns_messages(self, client):
        response = client.post(
            "/api/chat",
            json={"message": "Hello!", "session_id": "test-session-1"},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["session_id"] == "test-session-1"
        assert data["reply"] == "Hello! How can I help?"
        assert data["messages"][0]["message_type"] == "text"
        assert data["messages"][0]["quick_replies"] == ["Book"]

    def test_chat_accepts_ui_action_without_text(self, client):
        response = client.post(
            "/api/chat",
            json={
                "message": "",
                "session_id": "s",
                "action": "select_service",
                "action_payload": {"service_id": "s1"},
            },
        )
        assert response.status_code == 200

    def test_chat_validates_empty_message(self, client):
        response = client.post(
            "/api/chat",
            json={"message": "   ", "session_id": "test-session"},
        )
        assert response.status_code == 422  # Pydantic validation error

    def test_chat_validates_missing_session(self, client):
        response = client.post(
            "/api/chat",
            json={"message": "Hello!"},
        )
        assert response.status_code == 422

    def test_chat_handles_unexpected_error(self, client):
        broken = MagicMock()
        broken.handle = AsyncMock(side_effect=RuntimeError("graph exploded"))
        app.state.sessions = broken
        response = client.post(
            "/api/chat",
            json={"message": "Hello!", "session_id": "test-session"},
        )
        assert response.status_code == 500
        # Verify we do NOT leak the internal error message to the client
        detail = response.json()["detail"]
        assert "graph exploded" not in detail
        assert "internal error" in detail.lower()

    def test_model_failure_is_a_normal_reply(self, client, mock_llm):
        mock_llm.ainvoke.side_effect = RuntimeError("anthropic down")
        response = client.post(
            "/api/chat",
            json={"message": "Hello!", "session_id": "test-session"},
        )
        assert response.status_code == 200
        assert "high traffic" in response.json()["reply"]

    def test_response_includes_request_id_header(self, client):
        response = client.post(
            "/api/chat",
            json={"message": "Hello!", "session_id": "test-session"},
        )
        assert "X-Request-ID" in response.headers

    def test_client_supplied_request_id_is_echoed(self, client):
        response = client.post(
            "/api/chat",
            json={"message": "Hello!", "session_id": "test-session"},
            headers={"X-Request-ID": "my-trace-id-123"},
        )
        assert response.headers["X-Request-ID"] == "my-trace-id-123"


class TestSessionEndpoints:
    def test_start_returns_greeting(self, client):
        response = client.post("/api/sessions/new-1/start")
        assert response.status_code == 200
        assert response.json()["reply"] == "Hello! How can I help?"

    def test_transcript_after_chat(self, client):
        client.post("/api/chat", json={"message": "Hi", "session_id": "t1"})
        response = client.get("/api/sessions/t1")
        assert response.status_code == 200
        data = response.json()
        assert [m["role"] for m in data["messages"]] == ["user", "assistant"]
        assert data["typing"] is False

    def test_unknown_session_is_404(self, client):
        assert client.get("/api/sessions/nobody").status_code == 404

    def test_reset_clears_transcript(self, client):
        client.post("/api/chat", json={"message": "Hi", "session_id": "r1"})
        assert client.delete("/api/sessions/r1").status_code == 204
        assert client.get("/api/sessions/r1").json()["messages"] == []


class TestCatalogAndAdmin:
    def test_services_listed(self, client):
        response = client.get("/api/services")
        assert [s["id"] for s in response.json()["services"]] == ["s1", "s2", "s3"]

    def test_admin_bookings_include_seed(self, client):
        bookings = client.get("/api/admin/bookings").json()["bookings"]
        assert bookings[0]["id"] == "b1"
        assert bookings[0]["user_details"]["email"] == "john@example.com"

    def test_admin_report(self, client):
        data = client.get("/api/admin/report").json()
        assert data["total"] == 1
        assert data["by_status"]["confirmed"] == 1
        assert data["revenue"] == 50.0
        assert len(data["per_day"]) == 1


class TestAssistantNotReady:
    def test_returns_503_when_sessions_not_initialised(self):
        """Before the lifespan has built the dialogue loop, return 503."""
        with TestClient(app) as tc:
            app.state.sessions = None
            response = tc.post(
                "/api/chat",
                json={"message": "Hello!", "session_id": "s1"},
            )
            assert response.status_code == 503
            assert "starting up" in response.json()["detail"].lower()


class TestRootEndpoint:
    def test_root_returns_service_info(self, client):
        response = client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "MedCore Booking Assistant"
        assert "docs" in data

    def test_root_lists_entry_points(self, client):
        endpoints = client.get("/").json()["endpoints"]
        assert endpoints["chat"] == "/api/chat"
        assert client.get(endpoints["services"]).status_code == 200
