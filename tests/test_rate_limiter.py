"""
Tests for fleet_trip_sync.rate_limiter module.

Tests the shared fixed-window budget, published backoff and bounded waits.
"""

from datetime import timedelta

import pytest
from conftest import FakeClock
from sqlalchemy.orm import Session, sessionmaker

from fleet_trip_sync.errors import BudgetExhaustedError
from fleet_trip_sync.rate_limiter import SharedRateLimiter


class TestSharedRateLimiterBudget:
    """Test window accounting."""

    def test_calls_within_budget_do_not_wait(
        self,
        rate_limiter: SharedRateLimiter,
        fake_clock: FakeClock,
    ) -> None:
        """Up to max_calls acquisitions in a window should be immediate."""
        for _ in range(5):
            rate_limiter.acquire()

        assert fake_clock.sleeps == []
        assert rate_limiter.snapshot().calls_in_window == 5  # noqa: PLR2004

    def test_exceeding_budget_waits_for_next_window(
        self,
        rate_limiter: SharedRateLimiter,
        fake_clock: FakeClock,
    ) -> None:
        """The sixth call in a 1s window should wait out the window."""
        for _ in range(5):
            rate_limiter.acquire()
        fake_clock.advance(seconds=0.25)

        rate_limiter.acquire()

        assert fake_clock.sleeps == [0.75]
        assert rate_limiter.snapshot().calls_in_window == 1

    def test_budget_is_shared_between_instances(
        self,
        session_factory: sessionmaker[Session],
        fake_clock: FakeClock,
    ) -> None:
        """Two limiters on the same key should draw from one budget."""
        first = SharedRateLimiter(
            session_factory, max_calls=2, clock=fake_clock, sleep=fake_clock.sleep
        )
        second = SharedRateLimiter(
            session_factory, max_calls=2, clock=fake_clock, sleep=fake_clock.sleep
        )

        first.acquire()
        second.acquire()
        first.acquire()

        assert fake_clock.sleeps == [1.0]

    def test_different_keys_have_separate_budgets(
        self,
        session_factory: sessionmaker[Session],
        fake_clock: FakeClock,
    ) -> None:
        """Limiters with different keys should not interfere."""
        vendor_a = SharedRateLimiter(
            session_factory, max_calls=1, key='a', clock=fake_clock, sleep=fake_clock.sleep
        )
        vendor_b = SharedRateLimiter(
            session_factory, max_calls=1, key='b', clock=fake_clock, sleep=fake_clock.sleep
        )

        vendor_a.acquire()
        vendor_b.acquire()

        assert fake_clock.sleeps == []

    def test_invalid_arguments_rejected(self, session_factory: sessionmaker[Session]) -> None:
        """Should reject non-positive budgets."""
        with pytest.raises(ValueError, match='max_calls'):
            SharedRateLimiter(session_factory, max_calls=0)
        with pytest.raises(ValueError, match='window_seconds'):
            SharedRateLimiter(session_factory, window_seconds=0)


class TestSharedRateLimiterBackoff:
    """Test published backoff."""

    def test_acquire_honors_published_backoff(
        self,
        rate_limiter: SharedRateLimiter,
        fake_clock: FakeClock,
    ) -> None:
        """Acquire should sleep until the backoff instant."""
        rate_limiter.publish_backoff(fake_clock() + timedelta(seconds=4))

        rate_limiter.acquire()

        assert fake_clock.sleeps == [4.0]

    def test_backoff_only_moves_forward(
        self,
        rate_limiter: SharedRateLimiter,
        fake_clock: FakeClock,
    ) -> None:
        """A shorter backoff must not shorten a longer one."""
        longer = fake_clock() + timedelta(seconds=10)
        rate_limiter.publish_backoff(longer)

        effective = rate_limiter.publish_backoff(fake_clock() + timedelta(seconds=2))

        assert effective == longer
        assert rate_limiter.snapshot().backoff_until == longer

    def test_acquire_times_out(
        self,
        rate_limiter: SharedRateLimiter,
        fake_clock: FakeClock,
    ) -> None:
        """A backoff longer than the acquire timeout should raise, not block."""
        rate_limiter.publish_backoff(fake_clock() + timedelta(minutes=5))

        with pytest.raises(BudgetExhaustedError):
            rate_limiter.acquire()

        assert fake_clock.sleeps == []

    def test_record_success_keeps_active_backoff(
        self,
        rate_limiter: SharedRateLimiter,
        fake_clock: FakeClock,
    ) -> None:
        """A backoff published by another worker must survive a success."""
        rate_limiter.publish_backoff(fake_clock() + timedelta(seconds=5))

        rate_limiter.record_success()

        assert rate_limiter.snapshot().backoff_until is not None

    def test_record_success_clears_expired_backoff(
        self,
        rate_limiter: SharedRateLimiter,
        fake_clock: FakeClock,
    ) -> None:
        """An expired backoff and the throttle streak should be cleared."""
        rate_limiter.publish_backoff(fake_clock() + timedelta(seconds=5))
        fake_clock.advance(seconds=6)

        rate_limiter.record_success()

        snapshot = rate_limiter.snapshot()
        assert snapshot.backoff_until is None
        assert snapshot.consecutive_rate_limits == 0
