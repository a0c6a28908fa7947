"""
Tests for the HTTP and WebSocket adapters.

The application is built around an injected service container so no external
service is contacted; the session store runs on the in-memory Redis double.
"""

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from news_rag.gateway import ConversationGateway
from news_rag.main import ServiceContainer, create_app
from news_rag.store import SessionStore


SESSION_ID = "9b1deb4d-3b7d-4bad-9bdd-2b0d7b3dcb6d"


@pytest.fixture
def orchestrator(rag_result):
    orchestrator = MagicMock()
    orchestrator.answer = AsyncMock(side_effect=lambda query, history=None, session_id=None: rag_result())
    return orchestrator


@pytest.fixture
def container(config, fake_redis, orchestrator, mock_embedding_client, mock_generator):
    store = SessionStore(fake_redis, config=config)
    retriever = MagicMock()
    retriever.thread_pool = None
    retriever.get_index_stats.return_value = {"index_name": "news-articles", "dimension": 768, "total_vector_count": 12}
    return ServiceContainer(
        config=config,
        store=store,
        embedding_client=mock_embedding_client,
        retriever=retriever,
        generator=mock_generator,
        orchestrator=orchestrator,
        gateway=ConversationGateway(store, orchestrator),
    )


@pytest.fixture
def client(container):
    with TestClient(create_app(container)) as test_client:
        yield test_client


def send(client, message="What happened in the markets?", session_id=SESSION_ID):
    return client.post("/api/chat/send", json={"sessionId": session_id, "message": message})


class TestChatEndpoints:

    def test_send_returns_answer_and_sources(self, client):
        response = send(client)

        assert response.status_code == 200
        body = response.json()
        assert body["answer"] == "Markets rallied after the central bank decision."
        assert body["sessionId"] == SESSION_ID
        assert body["sources"][0]["relevanceScore"] == 0.82
        assert body["metadata"]["modelUsed"] == "test-provider/test-model"
        assert body["metadata"]["totalSessionMessages"] == 2
        assert "X-Request-ID" in response.headers

    def test_history_lists_both_messages(self, client):
        send(client)

        body = client.get(f"/api/chat/history/{SESSION_ID}").json()

        assert body["messageCount"] == 2
        assert [m["role"] for m in body["messages"]] == ["user", "bot"]
        assert body["messages"][1]["sources"][0]["title"] == "Markets rally"

    def test_malformed_session_id_is_a_400(self, client):
        response = send(client, session_id="not-a-uuid")

        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"

    def test_short_message_is_a_400(self, client, orchestrator):
        response = send(client, message="hi")

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "INVALID_INPUT"
        assert "too short" in body["message"]
        assert body["details"]["field"] == "message"
        orchestrator.answer.assert_not_called()

    def test_unavailable_store_is_a_503(self, client, fake_redis):
        fake_redis.fail = True

        response = send(client)

        assert response.status_code == 503
        assert response.json()["error"] == "SESSION_STORE_UNAVAILABLE"

    def test_details_hidden_in_production(self, client, container):
        container.config["ENVIRONMENT"] = "production"

        body = send(client, message="hi").json()

        assert "details" not in body
        assert body["message"]

    def test_chat_info(self, client):
        assert client.get("/api/chat/").json()["status"] == "running"

    def test_unknown_route_uses_error_shape(self, client):
        response = client.get("/api/nope")

        assert response.status_code == 404
        body = response.json()
        assert body["error"] == "HTTP_ERROR"
        assert body["message"] == "Not Found"
        assert "X-Request-ID" in response.headers

    def test_wrong_method_uses_error_shape(self, client):
        response = client.delete("/api/chat/send")

        assert response.status_code == 405
        assert response.json()["error"] == "HTTP_ERROR"


class TestSessionEndpoints:

    def test_session_info(self, client):
        body = client.get("/api/session/").json()

        assert body["status"] == "running"
        assert body["endpoints"]["create"] == "POST /api/session/create"

    def test_create_session(self, client, fake_redis):
        response = client.post("/api/session/create")

        assert response.status_code == 201
        body = response.json()
        uuid.UUID(body["sessionId"])
        assert body["expiresIn"] == 3600
        assert f"session:{body['sessionId']}" in fake_redis.data

    def test_get_session_with_statistics(self, client):
        send(client)

        body = client.get(f"/api/session/{SESSION_ID}").json()

        assert body["sessionId"] == SESSION_ID
        assert len(body["messages"]) == 2
        assert body["statistics"]["totalMessages"] == 2
        assert body["statistics"]["botMessages"] == 1

    def test_get_session_rejects_bad_id(self, client):
        assert client.get("/api/session/session-123").status_code == 400

    def test_delete_session(self, client):
        send(client)

        first = client.delete(f"/api/session/{SESSION_ID}").json()
        second = client.delete(f"/api/session/{SESSION_ID}").json()

        assert first["deleted"] is True
        assert first["clearedMessages"] == 2
        assert second["deleted"] is False

    def test_stats(self, client):
        assert client.get(f"/api/session/{SESSION_ID}/stats").json()["exists"] is False

        send(client)
        body = client.get(f"/api/session/{SESSION_ID}/stats").json()

        assert body["exists"] is True
        assert body["messageCount"]["total"] == 2
        assert body["session"]["isActive"] is True

    def test_export(self, client):
        assert client.get(f"/api/session/{SESSION_ID}/export").status_code == 404

        send(client)
        response = client.get(f"/api/session/{SESSION_ID}/export")

        assert response.status_code == 200
        assert response.headers["content-disposition"] == f'attachment; filename="session-{SESSION_ID}.json"'
        assert response.json()["messageCount"] == 2

    def test_export_rejects_other_formats(self, client):
        send(client)

        assert client.get(f"/api/session/{SESSION_ID}/export", params={"format": "csv"}).status_code == 400


class TestHealth:

    def test_healthy(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["services"]["cache"] == "healthy"
        assert body["checks"]["vector_store"]["details"]["total_vector_count"] == 12
        assert body["memoryMb"] > 0

    def test_unreachable_index_degrades(self, client, container):
        container.retriever.get_index_stats.side_effect = ConnectionError("index unreachable")

        body = client.get("/health").json()

        assert body["status"] == "degraded"
        assert body["services"]["vector_store"] == "unhealthy"

    def test_cache_down_is_unhealthy(self, client, fake_redis):
        fake_redis.fail = True

        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"


class TestWebSocket:

    def test_join_then_send_streams_events(self, client):
        with client.websocket_connect("/ws") as websocket:
            websocket.send_json({"event": "join_session", "data": SESSION_ID})
            assert websocket.receive_json() == {"event": "session_history", "data": []}

            websocket.send_json({
                "event": "send_message",
                "data": {"sessionId": SESSION_ID, "message": "What happened in the markets?"},
            })

            events = [websocket.receive_json() for _ in range(4)]

        assert [e["event"] for e in events] == ["bot_typing", "new_message", "new_message", "bot_typing"]
        assert events[0]["data"] is True
        assert events[1]["data"]["role"] == "user"
        assert events[2]["data"]["role"] == "bot"
        assert events[2]["data"]["sources"][0]["relevanceScore"] == 0.82
        assert events[3]["data"] is False

    def test_history_matches_rest_channel(self, client):
        """Test messages sent over REST replay identically over the WebSocket."""
        send(client)
        rest_messages = client.get(f"/api/chat/history/{SESSION_ID}").json()["messages"]

        with client.websocket_connect("/ws") as websocket:
            websocket.send_json({"event": "join_session", "data": {"sessionId": SESSION_ID}})
            history = websocket.receive_json()

        assert history["event"] == "session_history"
        assert history["data"] == rest_messages

    def test_clear_session_broadcasts(self, client):
        send(client)

        with client.websocket_connect("/ws") as websocket:
            websocket.send_json({"event": "clear_session", "data": SESSION_ID})
            assert websocket.receive_json() == {"event": "session_cleared", "data": {"sessionId": SESSION_ID}}

        assert client.get(f"/api/chat/history/{SESSION_ID}").json()["messageCount"] == 0

    def test_invalid_send_reports_error(self, client):
        with client.websocket_connect("/ws") as websocket:
            websocket.send_json({"event": "send_message", "data": {"sessionId": "nope", "message": "hello"}})
            response = websocket.receive_json()

        assert response == {"event": "error", "data": "Invalid session ID format"}

    def test_unknown_event_and_bad_json(self, client):
        with client.websocket_connect("/ws") as websocket:
            websocket.send_json({"event": "dance", "data": None})
            assert websocket.receive_json()["event"] == "error"

            websocket.send_text("{not json")
            assert websocket.receive_json() == {"event": "error", "data": "Invalid JSON payload"}
