"""Tests for tamma/engine/rate_limit.py."""

from tamma.engine.rate_limit import NotificationRateLimiter


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_allows_up_to_limit_per_window():
    clock = FakeClock()
    limiter = NotificationRateLimiter(limit=5, window=60.0, clock=clock)

    assert [limiter.try_acquire("transient-failure") for _ in range(6)] == [True] * 5 + [False]


def test_window_slides():
    clock = FakeClock()
    limiter = NotificationRateLimiter(limit=2, window=60.0, clock=clock)
    limiter.try_acquire("x")
    clock.now = 30.0
    limiter.try_acquire("x")

    clock.now = 59.0
    assert not limiter.try_acquire("x")
    clock.now = 60.0
    assert limiter.try_acquire("x")


def test_reason_types_are_independent():
    limiter = NotificationRateLimiter(limit=1, clock=FakeClock())

    assert limiter.try_acquire("transient-failure")
    assert limiter.try_acquire("critical-failure")
    assert not limiter.try_acquire("transient-failure")


def test_digest_collects_and_drains():
    limiter = NotificationRateLimiter(limit=1, clock=FakeClock())

    assert limiter.suppress("x", "esc-1") == 1
    assert limiter.suppress("x", "esc-2") == 2
    assert limiter.pending_digest("x") == 2
    assert limiter.take_digest("x") == ["esc-1", "esc-2"]
    assert limiter.take_digest("x") == []
