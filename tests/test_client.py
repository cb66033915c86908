import pytest

from send_guard.client import GuardClient, GuardClientError


class FakeResponse:
    def __init__(self, status=200, body=None):
        self.status = status
        self._body = body
        self.content_type = "application/json" if isinstance(body, dict) else "text/plain"

    async def json(self):
        return self._body

    async def text(self):
        return self._body or ""

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []
        self.closed = False

    def request(self, method, url, json=None, params=None, headers=None):
        self.requests.append({"method": method, "url": url, "json": json, "params": params, "headers": headers})
        return self.responses.pop(0)

    async def close(self):
        self.closed = True


@pytest.mark.asyncio
async def test_send_builds_request():
    session = FakeSession(FakeResponse(202, {"ok": True, "messageId": "m1", "status": "queued"}))
    async with GuardClient("http://guard/", token="secret", session=session) as guard:
        result = await guard.send("acc1", "393331", text="hi", priority="high", quoted_message_id="q1")

    assert result["messageId"] == "m1"
    request = session.requests[0]
    assert request["method"] == "POST"
    assert request["url"] == "http://guard/queue"
    assert request["json"] == {
        "account_id": "acc1",
        "to": "393331",
        "quoted_message_id": "q1",
        "text": "hi",
        "priority": "high",
    }
    assert request["headers"]["X-API-Token"] == "secret"
    assert session.closed is True


@pytest.mark.asyncio
async def test_helpers_unwrap_envelopes():
    session = FakeSession(
        FakeResponse(body={"ok": True, "message": {"id": "m1", "status": "sent"}}),
        FakeResponse(body={"ok": True, "messages": [{"id": "m1"}]}),
        FakeResponse(body={"ok": True, "clearedMessages": 3}),
        FakeResponse(body={"ok": True, "config": {"messages_per_minute": 5}}),
        FakeResponse(body={"ok": True, "health": {"account_id": "acc1"}}),
        FakeResponse(body={"ok": True, "devices": []}),
    )
    guard = GuardClient("http://guard", session=session)

    assert (await guard.message("m1"))["status"] == "sent"
    assert await guard.messages(account_id="acc1") == [{"id": "m1"}]
    assert session.requests[1]["params"] == {"account_id": "acc1"}
    assert await guard.clear() == 3
    assert await guard.update_config(messages_per_minute=5) == {"messages_per_minute": 5}
    assert session.requests[3]["method"] == "PUT"
    assert session.requests[3]["json"] == {"messages_per_minute": 5}
    assert (await guard.health("acc1"))["account_id"] == "acc1"
    assert await guard.attention() == []
    assert "X-API-Token" not in session.requests[0]["headers"]


@pytest.mark.asyncio
async def test_error_status_raises_with_detail():
    session = FakeSession(FakeResponse(404, {"detail": {"error": "message 'x' not found", "code": "not_found"}}))
    guard = GuardClient("http://guard", session=session)

    with pytest.raises(GuardClientError) as excinfo:
        await guard.message("x")

    assert excinfo.value.status == 404
    assert excinfo.value.detail == {"error": "message 'x' not found", "code": "not_found"}
