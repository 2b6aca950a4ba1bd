"""
Shared pytest fixtures for fleet_trip_sync tests.

This module provides reusable fixtures for common test scenarios across
all test modules. Fixtures are automatically discovered by pytest.
"""

from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import Mock

import httpx
import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from fleet_trip_sync.config import (
    ArchiveConfig,
    DatabaseConfig,
    FleetSyncConfig,
    LoggingConfig,
    PositionPolicyConfig,
    VendorConfig,
)
from fleet_trip_sync.models import IgnitionMethod, Reading
from fleet_trip_sync.position_store import PositionStore
from fleet_trip_sync.rate_limiter import SharedRateLimiter
from fleet_trip_sync.storage import build_session_factory, create_database_engine, init_database
from fleet_trip_sync.trip_store import TripStore

DEVICE_ID: str = '356600000000001'


# =============================================================================
# Time
# =============================================================================


class FakeClock:
    """Deterministic clock whose sleep advances time and records the delay."""

    def __init__(self, start: datetime) -> None:
        self.now: datetime = start
        self.sleeps: list[float] = []

    def __call__(self) -> datetime:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += timedelta(seconds=seconds)

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


@pytest.fixture
def sample_timestamp() -> datetime:
    """Fixed timestamp for deterministic testing: 2025-06-02 08:00:00 UTC."""
    return datetime(2025, 6, 2, 8, 0, 0, tzinfo=UTC)


@pytest.fixture
def fake_clock(sample_timestamp: datetime) -> FakeClock:
    """Clock frozen at `sample_timestamp` until advanced or slept."""
    return FakeClock(sample_timestamp)


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def vendor_config() -> VendorConfig:
    """VendorConfig with test credentials and fast retry delays."""
    return VendorConfig(
        base_url='https://api.gps51.test',
        token='test-token-123',  # pyright: ignore[reportArgumentType]
        max_transient_retries=2,
        transient_backoff_seconds=0.5,
        max_rate_limit_retries=3,
        rate_limit_base_delay_seconds=1.0,
        rate_limit_max_delay_seconds=30.0,
    )


@pytest.fixture
def database_config() -> DatabaseConfig:
    """In-memory SQLite (single shared connection)."""
    return DatabaseConfig(url='sqlite://')


@pytest.fixture
def archive_config(tmp_path: Path) -> ArchiveConfig:
    return ArchiveConfig(
        parquet_path=tmp_path / 'archive',
        parquet_compression='snappy',
        retention_days=30,
    )


@pytest.fixture
def logging_config(tmp_path: Path) -> LoggingConfig:
    return LoggingConfig(
        file_path=tmp_path / 'test.log',
        console_level='INFO',
        file_level='DEBUG',
    )


@pytest.fixture
def fleet_config(
    vendor_config: VendorConfig,
    database_config: DatabaseConfig,
    archive_config: ArchiveConfig,
    logging_config: LoggingConfig,
) -> FleetSyncConfig:
    """Complete FleetSyncConfig with every section populated."""
    return FleetSyncConfig(
        vendor=vendor_config,
        database=database_config,
        archive=archive_config,
        logging=logging_config,
        devices=[DEVICE_ID, '356600000000002'],
    )


# =============================================================================
# Persistence Fixtures
# =============================================================================


@pytest.fixture
def engine(database_config: DatabaseConfig) -> Iterator[Engine]:
    """Engine with the full schema created."""
    database_engine: Engine = create_database_engine(database_config)
    init_database(database_engine)
    yield database_engine
    database_engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return build_session_factory(engine)


@pytest.fixture
def position_store(session_factory: sessionmaker[Session]) -> PositionStore:
    """Position store that keeps every distinct reading."""
    return PositionStore(
        session_factory,
        PositionPolicyConfig(
            min_distance_meters=0.0,
            min_interval_seconds=0.0,
            stationary_min_distance_meters=0.0,
            stationary_min_interval_seconds=0.0,
        ),
    )


@pytest.fixture
def trip_store(session_factory: sessionmaker[Session]) -> TripStore:
    return TripStore(session_factory)


@pytest.fixture
def rate_limiter(
    session_factory: sessionmaker[Session],
    fake_clock: FakeClock,
) -> SharedRateLimiter:
    return SharedRateLimiter(
        session_factory,
        max_calls=5,
        window_seconds=1.0,
        acquire_timeout_seconds=30.0,
        clock=fake_clock,
        sleep=fake_clock.sleep,
    )


# =============================================================================
# Sample Data Fixtures
# =============================================================================


@pytest.fixture
def make_reading(sample_timestamp: datetime) -> Callable[..., Reading]:
    """
    Factory for Readings relative to `sample_timestamp`.

    Keyword `minutes` offsets recorded_at; other keywords override fields.
    """

    def factory(minutes: float = 0.0, **overrides: Any) -> Reading:
        fields: dict[str, Any] = {
            'device_id': DEVICE_ID,
            'recorded_at': sample_timestamp + timedelta(minutes=minutes),
            'latitude': 52.5200,
            'longitude': 13.4050,
            'speed_kmh': 0.0,
            'ignition': False,
            'ignition_confidence': 0.8,
            'ignition_method': IgnitionMethod.BIT_FIELD,
            'is_online': True,
        }
        fields.update(overrides)
        return Reading(**fields)

    return factory


def make_http_response(status_code: int = 200, json_body: Any = None, text: str = '') -> Mock:
    """Build a mock httpx.Response."""
    mock_response = Mock(spec=httpx.Response)
    mock_response.status_code = status_code
    mock_response.is_success = 200 <= status_code < 300  # noqa: PLR2004
    mock_response.text = text
    if json_body is None:
        mock_response.json.side_effect = ValueError('No JSON body')
    else:
        mock_response.json.return_value = json_body
    return mock_response


def epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)
