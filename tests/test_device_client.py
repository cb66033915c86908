import aiohttp
import pytest

from send_guard.device_client import AccountClient, HttpAccountClient, format_recipient
from send_guard.errors import TransportError


class FakeResponse:
    def __init__(self, status=200, body=None, text=""):
        self.status = status
        self._body = body
        self._text = text
        self.content_type = "application/json" if body is not None else "text/plain"

    async def json(self):
        return self._body

    async def text(self):
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class FakeSession:
    def __init__(self, *responses, error=None):
        self.responses = list(responses)
        self.error = error
        self.requests = []
        self.closed = False

    def request(self, method, url, json=None, headers=None):
        self.requests.append({"method": method, "url": url, "json": json, "headers": headers})
        if self.error is not None:
            raise self.error
        return self.responses.pop(0)

    async def close(self):
        self.closed = True


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("+39 333 123-4567", "393331234567@c.us"),
        ("393331234567", "393331234567@c.us"),
        ("393331234567@c.us", "393331234567@c.us"),
        ("120363025@g.us", "120363025@g.us"),
    ],
)
def test_format_recipient(raw, expected):
    assert format_recipient(raw) == expected


def test_http_client_implements_account_client():
    assert isinstance(HttpAccountClient("http://devices"), AccountClient)


@pytest.mark.asyncio
async def test_is_ready_reads_status():
    session = FakeSession(FakeResponse(body={"ready": True}), FakeResponse(body={"status": "qr_required"}))
    client = HttpAccountClient("http://devices/api/", token="t0k", session=session)

    assert await client.is_ready("acc1") is True
    assert await client.is_ready("acc1") is False
    assert session.requests[0]["method"] == "GET"
    assert session.requests[0]["url"] == "http://devices/api/devices/acc1/status"
    assert session.requests[0]["headers"] == {"Authorization": "Bearer t0k"}


@pytest.mark.asyncio
async def test_unreachable_service_is_not_ready():
    session = FakeSession(error=aiohttp.ClientConnectionError("refused"))
    client = HttpAccountClient("http://devices", session=session)

    assert await client.is_ready("acc1") is False


@pytest.mark.asyncio
async def test_send_posts_message():
    session = FakeSession(FakeResponse(body={"id": "wamid-1"}))
    client = HttpAccountClient("http://devices", session=session)

    result = await client.send("acc1", "39333@c.us", {"kind": "text", "text": "hi"}, {"mentions": ["1@c.us"]})

    assert result == {"id": "wamid-1"}
    request = session.requests[0]
    assert request["method"] == "POST"
    assert request["url"] == "http://devices/devices/acc1/messages"
    assert request["json"] == {
        "recipient": "39333@c.us",
        "payload": {"kind": "text", "text": "hi"},
        "options": {"mentions": ["1@c.us"]},
    }
    assert request["headers"] == {}


@pytest.mark.asyncio
async def test_send_errors_become_transport_errors():
    session = FakeSession(
        FakeResponse(status=429, text="slow down"),
        FakeResponse(status=502, text="bad gateway"),
    )
    client = HttpAccountClient("http://devices", session=session)

    with pytest.raises(TransportError) as throttled:
        await client.send("acc1", "39333@c.us", {"kind": "text", "text": "hi"}, {})
    assert throttled.value.status == 429
    assert throttled.value.provider_signal is True
    assert "slow down" in throttled.value.message

    with pytest.raises(TransportError) as gateway:
        await client.send("acc1", "39333@c.us", {"kind": "text", "text": "hi"}, {})
    assert gateway.value.status == 502
    assert gateway.value.provider_signal is False

    session.error = aiohttp.ServerDisconnectedError()
    with pytest.raises(TransportError):
        await client.send("acc1", "39333@c.us", {"kind": "text", "text": "hi"}, {})


@pytest.mark.asyncio
async def test_send_typing_and_close():
    session = FakeSession(FakeResponse(text="ok"))
    client = HttpAccountClient("http://devices", session=session)

    await client.send_typing("acc1", "39333@c.us", 250)
    assert session.requests[0]["json"] == {"recipient": "39333@c.us", "duration_ms": 250}

    await client.close()
    # an injected session belongs to the caller
    assert session.closed is False
