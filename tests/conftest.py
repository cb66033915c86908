from typing import Any, Awaitable, Callable, Dict, List, Optional

import pytest

T0 = 1_700_000_000_000


class FakeClock:
    """Epoch-milliseconds clock advanced by hand."""

    def __init__(self, start: int = T0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


class DummyClient:
    """Account client recording every call.

    ``fail_with`` is raised by every send while set; ``hook`` is awaited
    inside ``send`` before it returns, to observe the queue mid-flight.
    """

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.typing: List[tuple] = []
        self.ready: Dict[str, bool] = {}
        self.fail_with: Optional[BaseException] = None
        self.hook: Optional[Callable[[], Awaitable[None]]] = None

    async def is_ready(self, account_id: str) -> bool:
        return self.ready.get(account_id, True)

    async def send(self, account_id, recipient, payload, options):
        if self.hook is not None:
            await self.hook()
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(
            {"account_id": account_id, "recipient": recipient, "payload": payload, "options": options}
        )
        return {"id": f"wamid-{len(self.sent)}"}

    async def send_typing(self, account_id, recipient, duration_ms):
        self.typing.append((account_id, recipient, duration_ms))


class DummyMetrics:
    def __init__(self):
        self.sent: List[str] = []
        self.failed: List[str] = []
        self.retries: List[str] = []
        self.deferred: List[tuple] = []
        self.depth = None
        self.scores: Dict[str, int] = {}

    def inc_sent(self, account_id):
        self.sent.append(account_id)

    def inc_failed(self, account_id):
        self.failed.append(account_id)

    def inc_retry(self, account_id):
        self.retries.append(account_id)

    def inc_deferred(self, account_id, reason):
        self.deferred.append((account_id, reason))

    def set_queue_depth(self, pending, processing):
        self.depth = (pending, processing)

    def set_health_score(self, account_id, score):
        self.scores[account_id] = score

    def generate_latest(self):
        return b"sg_sent_total 0\n"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client():
    return DummyClient()


@pytest.fixture
def metrics():
    return DummyMetrics()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds):
        sleeps.append(seconds)

    return _sleep
