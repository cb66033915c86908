from send_guard.models import QueueConfig
from send_guard.rate_limit import MINUTE_MS, RateLimiter

T0 = 1_700_000_000_000


def _config(**overrides):
    return QueueConfig(**overrides)


def test_first_send_is_allowed():
    limiter = RateLimiter(clock=lambda: T0)
    assert limiter.check_and_wait("acc1", _config()) == 0


def test_per_minute_window_defers_until_oldest_send_expires():
    limiter = RateLimiter(clock=lambda: T0)
    cfg = _config(messages_per_minute=3, burst_limit=3, burst_window_ms=1)
    for offset in (0, 10_000, 20_000):
        limiter.record_send("acc1", T0 + offset)

    assert limiter.check_and_wait("acc1", cfg, now=T0 + 30_000) == 30_000


def test_burst_window_defers_independently_of_minute_cap():
    limiter = RateLimiter(clock=lambda: T0)
    cfg = _config(messages_per_minute=10, burst_limit=3, burst_window_ms=10_000)
    for offset in (0, 1000, 2000):
        limiter.record_send("acc1", T0 + offset)

    assert limiter.check_and_wait("acc1", cfg, now=T0 + 2500) == 7500
    # Once the burst window slides past the first send there is room again.
    assert limiter.check_and_wait("acc1", cfg, now=T0 + 10_000) == 0


def test_larger_constraint_wins():
    limiter = RateLimiter(clock=lambda: T0)
    cfg = _config(messages_per_minute=2, burst_limit=2, burst_window_ms=5000)
    limiter.record_send("acc1", T0)
    limiter.record_send("acc1", T0 + 1000)

    # burst frees at T0+5000, minute at T0+60000
    assert limiter.check_and_wait("acc1", cfg, now=T0 + 2000) == MINUTE_MS - 2000


def test_window_slides_and_prunes_old_sends():
    limiter = RateLimiter(clock=lambda: T0)
    cfg = _config(messages_per_minute=3, burst_limit=3, burst_window_ms=1)
    for offset in (0, 10_000, 20_000):
        limiter.record_send("acc1", T0 + offset)

    assert limiter.check_and_wait("acc1", cfg, now=T0 + MINUTE_MS + 1) == 0
    assert limiter.count_since("acc1", now=T0 + MINUTE_MS + 1) == 2


def test_check_is_a_pure_query():
    limiter = RateLimiter(clock=lambda: T0)
    cfg = _config(messages_per_minute=1, burst_limit=1)
    limiter.record_send("acc1", T0)

    first = limiter.check_and_wait("acc1", cfg, now=T0 + 100)
    second = limiter.check_and_wait("acc1", cfg, now=T0 + 100)
    assert first == second == MINUTE_MS - 100
    assert limiter.count_since("acc1", now=T0 + 100) == 1


def test_accounts_are_isolated():
    limiter = RateLimiter(clock=lambda: T0)
    cfg = _config(messages_per_minute=1, burst_limit=1)
    limiter.record_send("acc1", T0)

    assert limiter.check_and_wait("acc1", cfg, now=T0) > 0
    assert limiter.check_and_wait("acc2", cfg, now=T0) == 0


def test_out_of_order_records_and_last_send():
    limiter = RateLimiter(clock=lambda: T0)
    limiter.record_send("acc1", T0 + 5000)
    limiter.record_send("acc1", T0 + 1000)

    assert limiter.last_send("acc1") == T0 + 5000
    assert limiter.count_since("acc1", 10_000, now=T0 + 6000) == 2
    assert limiter.last_send("unknown") is None


def test_forget_drops_account_history():
    limiter = RateLimiter(clock=lambda: T0)
    limiter.record_send("acc1")
    limiter.forget("acc1")

    assert limiter.count_since("acc1") == 0
    assert limiter.last_send("acc1") is None
