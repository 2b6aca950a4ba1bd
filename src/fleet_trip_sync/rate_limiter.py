# fleet_trip_sync/rate_limiter.py
"""
Cross-process vendor call budget backed by the shared database.

The vendor throttles by network origin, not by process, so every worker
that talks to it must draw from one budget. The budget is a fixed-window
token bucket stored in a single `rate_limit_state` row together with a
"backoff until" timestamp that any worker may publish after being
throttled.

Design Decisions:
-----------------
- Every write is a compare-and-set on the row's `version` column
  (`UPDATE ... WHERE key = :key AND version = :seen`). A worker that loses
  the race re-reads and tries again, so two workers can never both spend
  the last slot in a window.
- Waiting is always bounded: `acquire()` raises `BudgetExhaustedError` after
  `acquire_timeout_seconds` instead of blocking forever.
- Clock and sleep are injectable so the waiting logic is testable without
  real time passing.

Usage:
------
    limiter = SharedRateLimiter(session_factory, max_calls=5, window_seconds=1.0)
    limiter.acquire()          # blocks until a slot is free (bounded)
    ...issue the vendor call...
    limiter.record_success()   # clears an expired backoff
"""

import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, Final, cast

from pydantic import BaseModel, ConfigDict
from sqlalchemy import update
from sqlalchemy.engine import CursorResult
from sqlalchemy.orm import Session, sessionmaker

from fleet_trip_sync.common.timeutils import utc_now
from fleet_trip_sync.errors import BudgetExhaustedError
from fleet_trip_sync.storage import RateLimitStateRow, insert_ignore

__all__: list[str] = ['RateLimitSnapshot', 'SharedRateLimiter']

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_LIMITER_KEY: Final[str] = 'vendor'
# Pause between attempts after losing a compare-and-set race
CONTENTION_PAUSE_SECONDS: Final[float] = 0.01


class RateLimitSnapshot(BaseModel):
    """Point-in-time view of the shared limiter row."""

    model_config = ConfigDict(frozen=True)

    key: str
    window_started_at: datetime | None
    calls_in_window: int
    backoff_until: datetime | None
    last_call_at: datetime | None
    consecutive_rate_limits: int
    version: int


class SharedRateLimiter:
    """
    Token bucket and backoff record shared by every worker using the database.

    Attributes:
        key: Row key; workers calling the same vendor origin share one key.
        max_calls: Calls allowed per window.
        window: Length of the fixed window.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        max_calls: int = 5,
        window_seconds: float = 1.0,
        acquire_timeout_seconds: float = 30.0,
        key: str = DEFAULT_LIMITER_KEY,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_calls <= 0:
            raise ValueError(f'max_calls must be positive, got {max_calls}')
        if window_seconds <= 0:
            raise ValueError(f'window_seconds must be positive, got {window_seconds}')

        self._session_factory: sessionmaker[Session] = session_factory
        self.key: str = key
        self.max_calls: int = max_calls
        self.window: timedelta = timedelta(seconds=window_seconds)
        self._acquire_timeout: timedelta = timedelta(seconds=acquire_timeout_seconds)
        self._clock: Callable[[], datetime] = clock
        self._sleep: Callable[[float], None] = sleep

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def acquire(self) -> None:
        """
        Block until this worker may issue one vendor call.

        Honors any published backoff first, then waits for a free slot in the
        current window.

        Raises:
            BudgetExhaustedError: If no slot frees up within the acquire timeout.
        """
        deadline: datetime = self._clock() + self._acquire_timeout

        while True:
            now: datetime = self._clock()
            wait_seconds: float | None = self._try_consume(now)

            if wait_seconds is None:
                return

            if now + timedelta(seconds=wait_seconds) > deadline:
                logger.warning(
                    'Shared rate limit budget unavailable for %.1fs (limiter=%r)',
                    self._acquire_timeout.total_seconds(),
                    self.key,
                )
                raise BudgetExhaustedError(
                    'Shared vendor call budget exhausted; degraded, will retry '
                    f'(waited up to {self._acquire_timeout.total_seconds():.0f}s)'
                )

            self._sleep(max(wait_seconds, CONTENTION_PAUSE_SECONDS))

    def publish_backoff(self, until: datetime) -> datetime:
        """
        Publish a "do not call before" instant visible to every worker.

        The stored value only ever moves forward; a shorter backoff from a
        slower worker never shortens a longer one.

        Returns:
            The backoff instant now in effect.
        """
        while True:
            with self._session_factory.begin() as session:
                row: RateLimitStateRow = self._load_row(session)
                effective: datetime = until
                if row.backoff_until is not None and row.backoff_until > until:
                    effective = row.backoff_until

                if self._compare_and_set(
                    session,
                    row.version,
                    backoff_until=effective,
                    consecutive_rate_limits=row.consecutive_rate_limits + 1,
                ):
                    logger.info(
                        'Published vendor backoff until %s (limiter=%r)',
                        effective.isoformat(),
                        self.key,
                    )
                    return effective

    def record_success(self) -> None:
        """Clear the backoff once it has expired and reset the throttle streak."""
        now: datetime = self._clock()
        while True:
            with self._session_factory.begin() as session:
                row: RateLimitStateRow = self._load_row(session)
                backoff_active: bool = (
                    row.backoff_until is not None and row.backoff_until > now
                )
                if row.consecutive_rate_limits == 0 and row.backoff_until is None:
                    return
                if backoff_active:
                    # Another worker was throttled after this call started
                    return
                if self._compare_and_set(
                    session,
                    row.version,
                    backoff_until=None,
                    consecutive_rate_limits=0,
                ):
                    return

    def snapshot(self) -> RateLimitSnapshot:
        with self._session_factory.begin() as session:
            row: RateLimitStateRow = self._load_row(session)
            return RateLimitSnapshot(
                key=row.key,
                window_started_at=row.window_started_at,
                calls_in_window=row.calls_in_window,
                backoff_until=row.backoff_until,
                last_call_at=row.last_call_at,
                consecutive_rate_limits=row.consecutive_rate_limits,
                version=row.version,
            )

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _try_consume(self, now: datetime) -> float | None:
        """
        Attempt to take one slot.

        Returns:
            None when a slot was taken, otherwise seconds to wait before
            trying again (0.0 after losing a compare-and-set race).
        """
        with self._session_factory.begin() as session:
            row: RateLimitStateRow = self._load_row(session)

            if row.backoff_until is not None and row.backoff_until > now:
                return (row.backoff_until - now).total_seconds()

            window_start: datetime | None = row.window_started_at
            if window_start is None or now - window_start >= self.window or now < window_start:
                new_window_start: datetime = now
                new_calls: int = 1
            elif row.calls_in_window < self.max_calls:
                new_window_start = window_start
                new_calls = row.calls_in_window + 1
            else:
                return (window_start + self.window - now).total_seconds()

            if self._compare_and_set(
                session,
                row.version,
                window_started_at=new_window_start,
                calls_in_window=new_calls,
                last_call_at=now,
            ):
                return None

            logger.debug('Lost rate limiter compare-and-set race; retrying')
            return 0.0

    def _load_row(self, session: Session) -> RateLimitStateRow:
        row: RateLimitStateRow | None = session.get(RateLimitStateRow, self.key)
        if row is None:
            insert_ignore(
                session,
                RateLimitStateRow,
                [
                    {
                        'key': self.key,
                        'calls_in_window': 0,
                        'consecutive_rate_limits': 0,
                        'version': 0,
                    }
                ],
                conflict_columns=['key'],
            )
            row = session.get(RateLimitStateRow, self.key, populate_existing=True)
            if row is None:
                raise RuntimeError(f'Rate limiter row {self.key!r} could not be created')
        return row

    def _compare_and_set(self, session: Session, seen_version: int, **values: Any) -> bool:
        result = cast(
            CursorResult[Any],
            session.execute(
                update(RateLimitStateRow)
                .where(
                    RateLimitStateRow.key == self.key,
                    RateLimitStateRow.version == seen_version,
                )
                .values(version=seen_version + 1, **values)
                .execution_options(synchronize_session=False)
            ),
        )
        return result.rowcount == 1
