import random
import types

import pytest
from fastapi.testclient import TestClient

from send_guard.api import API_TOKEN_HEADER_NAME, create_app
from send_guard.core import DispatchCore
from send_guard.models import QueueConfig

API_TOKEN = "secret-token"
ADMIN_TOKEN = "admin-token"


class DummyService:
    def __init__(self):
        self.calls = []
        self.metrics = types.SimpleNamespace(generate_latest=lambda: b"metrics-data")
        self.responses = {}

    async def handle_command(self, cmd, payload):
        self.calls.append((cmd, payload))
        if cmd in self.responses:
            return self.responses[cmd]
        if cmd == "enqueue":
            return {"ok": True, "message_id": "m1", "status": "queued"}
        if cmd == "queueStatus":
            return {"ok": True, "pending": 2, "processing": 1, "total_queued": 3, "active": True}
        if cmd == "clearQueue":
            return {"ok": True, "cleared_messages": 0}
        if cmd in ("allHealth", "attention"):
            return {"ok": True, "devices": []}
        if cmd == "suspend":
            return {"ok": True, "active": False}
        return {"ok": True}


@pytest.fixture
def client_and_service():
    svc = DummyService()
    client = TestClient(create_app(svc, api_token=API_TOKEN, admin_token=ADMIN_TOKEN))
    client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN})
    return client, svc


def test_returns_500_when_service_missing():
    client = TestClient(create_app(None, api_token=API_TOKEN))
    response = client.post("/commands/run-now", headers={API_TOKEN_HEADER_NAME: API_TOKEN})
    assert response.status_code == 500
    assert response.json()["detail"] == "Service not initialized"


def test_health_endpoint_needs_no_token():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))
    assert client.get("/health").json() == {"status": "ok"}


def test_rejects_missing_or_wrong_token():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))
    response = client.get("/status")
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or missing API token"

    response = client.get("/queue/status", headers={API_TOKEN_HEADER_NAME: "wrong"})
    assert response.status_code == 401


def test_admin_endpoints_require_admin_token(client_and_service):
    client, svc = client_and_service

    response = client.post("/queue/clear")
    assert response.status_code == 403
    assert response.json()["detail"] == "Admin token required"
    assert client.put("/queue/config", json={"messagesPerMinute": 5}).status_code == 403
    assert client.post("/accounts/acc1/warmup").status_code == 403
    assert svc.calls == []

    svc.responses["clearQueue"] = {"ok": True, "cleared_messages": 4}
    response = client.post("/queue/clear", headers={API_TOKEN_HEADER_NAME: ADMIN_TOKEN})
    assert response.json() == {"ok": True, "clearedMessages": 4}
    # the admin token also opens regular endpoints
    assert client.get("/status", headers={API_TOKEN_HEADER_NAME: ADMIN_TOKEN}).status_code == 200


def test_no_tokens_configured_means_open_api():
    client = TestClient(create_app(DummyService()))
    assert client.get("/status").status_code == 200
    assert client.post("/queue/clear").status_code == 200
    assert client.post("/queue/clear").json() == {"ok": True, "clearedMessages": 0}


def test_enqueue_translates_camel_case(client_and_service):
    client, svc = client_and_service

    response = client.post(
        "/queue",
        json={
            "accountId": "acc1",
            "to": "393331",
            "text": "hi",
            "priority": "high",
            "quotedMessageId": "q1",
            "maxAttempts": 2,
        },
    )

    assert response.status_code == 202
    assert response.json() == {"ok": True, "messageId": "m1", "status": "queued"}
    assert svc.calls == [
        (
            "enqueue",
            {
                "account_id": "acc1",
                "to": "393331",
                "text": "hi",
                "priority": "high",
                "quoted_message_id": "q1",
                "max_attempts": 2,
            },
        )
    ]


def test_enqueue_schema_errors_are_422(client_and_service):
    client, svc = client_and_service
    response = client.post("/queue", json={"accountId": "acc1", "to": "393331", "priority": "urgent"})
    assert response.status_code == 422
    assert svc.calls == []


def test_command_errors_map_to_status_codes(client_and_service):
    client, svc = client_and_service

    svc.responses["enqueue"] = {"ok": False, "error": "recipient 'to' is required", "code": "validation_error", "field": "to"}
    response = client.post("/queue", json={"accountId": "acc1", "text": "hi"})
    assert response.status_code == 400
    assert response.json()["detail"] == {"error": "recipient 'to' is required", "code": "validation_error", "field": "to"}

    svc.responses["getMessage"] = {"ok": False, "error": "message 'x' not found", "code": "not_found"}
    response = client.get("/queue/messages/x")
    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "not_found"

    for cmd, method, path in [
        ("clearQueue", "POST", "/queue/clear"),
        ("queueStatus", "GET", "/queue/status"),
        ("getConfig", "GET", "/queue/config"),
        ("allHealth", "GET", "/health/accounts"),
        ("attention", "GET", "/health/attention"),
        ("dashboard", "GET", "/dashboard"),
    ]:
        svc.responses[cmd] = {"ok": False, "error": "unknown command"}
        response = client.request(method, path, headers={API_TOKEN_HEADER_NAME: ADMIN_TOKEN})
        assert response.status_code == 400, path
        assert response.json()["detail"] == {"error": "unknown command"}


def test_read_endpoints_dispatch_to_service(client_and_service):
    client, svc = client_and_service

    assert client.get("/status").json() == {"ok": True, "active": True}
    assert client.get("/queue/status").json()["totalQueued"] == 3
    assert client.get("/health/accounts").json() == {"ok": True, "devices": []}
    assert client.get("/health/attention").json() == {"ok": True, "devices": []}

    svc.responses["listMessages"] = {"ok": True, "messages": [{"id": "m1"}]}
    assert client.get("/queue/messages", params={"account_id": "acc1", "status": "sent"}).json()["messages"] == [
        {"id": "m1"}
    ]
    assert ("listMessages", {"account_id": "acc1", "status": "sent"}) in svc.calls

    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.content == b"metrics-data"


def test_scheduler_commands(client_and_service):
    client, svc = client_and_service

    assert client.post("/commands/run-now").json() == {"ok": True}
    assert client.post("/commands/suspend").json() == {"ok": True, "active": False}
    assert client.post("/commands/activate").json()["ok"] is True
    assert [cmd for cmd, _ in svc.calls] == ["run now", "suspend", "activate"]


def test_device_events(client_and_service):
    client, svc = client_and_service
    svc.responses["recordEvent"] = {"ok": True, "health": {"account_id": "acc1", "score": 90}}

    response = client.post("/accounts/acc1/events", json={"type": "disconnected", "detail": "qr expired"})
    assert response.status_code == 200
    assert svc.calls[-1] == ("recordEvent", {"account_id": "acc1", "type": "disconnected", "detail": "qr expired"})

    assert client.post("/accounts/acc1/events", json={"type": "sent"}).status_code == 422


async def _no_sleep(_seconds):
    return None


def test_end_to_end_with_real_core():
    core = DispatchCore(
        client=types.SimpleNamespace(),
        queue_config=QueueConfig(min_delay_ms=0, max_delay_ms=0),
        test_mode=True,
        sleep=_no_sleep,
        rng=random.Random(2),
    )
    app = create_app(core, api_token=API_TOKEN)

    with TestClient(app) as client:
        client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN})

        created = client.post("/queue", json={"accountId": "acc1", "to": "+39 333 1234567", "text": "hello"})
        assert created.status_code == 202
        msg_id = created.json()["messageId"]

        assert client.get(f"/queue/messages/{msg_id}").json()["message"]["status"] == "pending"
        assert client.get("/queue/status").json()["pending"] == 1

        invalid = client.post("/queue", json={"accountId": "acc1", "to": "393331", "text": "  "})
        assert invalid.status_code == 400
        assert invalid.json()["detail"]["field"] == "text"

        assert client.get("/accounts/acc1/health").status_code == 404

        updated = client.put("/queue/config", json={"messagesPerMinute": 5})
        assert updated.status_code == 200
        assert updated.json()["config"]["messages_per_minute"] == 5
        rejected = client.put("/queue/config", json={"messagesPerMinute": 0})
        assert rejected.status_code == 400
        assert rejected.json()["detail"]["code"] == "config_error"
        assert client.get("/queue/config").json()["config"]["messages_per_minute"] == 5

        warm = client.post("/accounts/acc1/warmup")
        assert warm.status_code == 200
        assert warm.json()["health"]["metrics"]["warmup_phase"] is True
        attention = client.get("/health/attention").json()["devices"]
        assert [d["account_id"] for d in attention] == ["acc1"]

        status = client.get("/accounts/acc1/queue-status").json()
        assert status["queue"]["queued_messages"] == 1
        assert status["safety"] == {"safe": True}

        board = client.get("/dashboard").json()
        assert board["queue"]["pending"] == 1
        assert board["health"]["warning"] == 1

        assert client.post("/queue/clear").json() == {"ok": True, "clearedMessages": 1}
        assert b"sg_pending_messages 0.0" in client.get("/metrics").content
