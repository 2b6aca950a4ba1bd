# fleet_trip_sync/service.py
"""
Service facade: the trigger surface for schedulers and operators.

Wires configuration, persistence, the vendor client and every job into one
object. Each trigger is an independent, stateless invocation; any number of
processes may run them concurrently against the same database because
per-device exclusion and the vendor call budget live in shared storage.

Usage:
------
    from fleet_trip_sync.service import FleetSyncService

    # One-liner for cron jobs
    with FleetSyncService.from_config('config/fleet_sync.yaml') as service:
        service.ingest_positions()
        service.sync_now()

    # Operator view
    status = service.device_status('3566...')
"""

import logging
import time
from collections.abc import Callable, Sequence
from datetime import datetime
from pathlib import Path
from types import TracebackType
from typing import Self

from pydantic import BaseModel, Field
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from fleet_trip_sync.archive import ArchiveResult, ReadingArchiver
from fleet_trip_sync.client import VendorClient
from fleet_trip_sync.common import setup_logger
from fleet_trip_sync.common.timeutils import to_display_time, utc_now
from fleet_trip_sync.config import FleetSyncConfig, load_config
from fleet_trip_sync.event_detector import EventDetector, EventStore
from fleet_trip_sync.ingest import IngestResult, PositionIngestor
from fleet_trip_sync.models import (
    CheckpointSnapshot,
    DeviceEvent,
    FleetSyncResult,
    Reading,
    ReconcileMode,
    ReconcileReport,
)
from fleet_trip_sync.normalizer import NormalizerSettings
from fleet_trip_sync.position_store import PositionStore
from fleet_trip_sync.rate_limiter import RateLimitSnapshot, SharedRateLimiter
from fleet_trip_sync.reconcile import ReconciliationJob
from fleet_trip_sync.storage import build_session_factory, create_database_engine, init_database
from fleet_trip_sync.trip_store import TripStore
from fleet_trip_sync.trip_sync import TripSyncEngine
from fleet_trip_sync.vendor_api import VendorApi

__all__: list[str] = ['DeviceStatus', 'FleetSyncService']

logger: logging.Logger = logging.getLogger(__name__)


class DeviceStatus(BaseModel):
    """Operational snapshot of one device."""

    device_id: str
    checkpoint: CheckpointSnapshot | None = None
    last_reading: Reading | None = None
    last_seen_local: datetime | None = None
    trips_stored: int = 0
    recent_events: list[DeviceEvent] = Field(default_factory=list)


class FleetSyncService:
    """
    Entry point for every scheduled or operator-triggered job.

    Attributes:
        config: The validated configuration (read-only).
    """

    def __init__(
        self,
        config: FleetSyncConfig,
        engine: Engine | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Build every component from configuration.

        Args:
            config: Validated configuration.
            engine: Pre-built engine; created from `config.database` if None.
            clock: Time source shared by all components.
            sleep: Sleep function for rate limiting and retries.

        Raises:
            RuntimeError: If use_truststore=True and truststore is missing.
        """
        self._config: FleetSyncConfig = config
        self._clock: Callable[[], datetime] = clock

        self._engine: Engine = engine or create_database_engine(config.database)
        init_database(self._engine)
        self._session_factory: sessionmaker[Session] = build_session_factory(self._engine)

        vendor = config.vendor
        self._rate_limiter: SharedRateLimiter = SharedRateLimiter(
            self._session_factory,
            max_calls=vendor.max_calls_per_window,
            window_seconds=vendor.burst_window_seconds,
            acquire_timeout_seconds=vendor.acquire_timeout_seconds,
            clock=clock,
            sleep=sleep,
        )
        self._client: VendorClient = VendorClient(
            vendor, self._rate_limiter, clock=clock, sleep=sleep
        )
        self._vendor_api: VendorApi = VendorApi(self._client)
        normalizer_settings: NormalizerSettings = NormalizerSettings.from_config(config)

        self.position_store: PositionStore = PositionStore(
            self._session_factory, config.positions
        )
        self.trip_store: TripStore = TripStore(self._session_factory)
        self.event_store: EventStore = EventStore(self._session_factory)

        self._event_detector: EventDetector = EventDetector(
            self.event_store, self.position_store, config.events
        )
        self._sync_engine: TripSyncEngine = TripSyncEngine(
            self._session_factory,
            self._vendor_api,
            self.position_store,
            self.trip_store,
            config.sync,
            clock=clock,
        )
        self._reconciliation: ReconciliationJob = ReconciliationJob(
            self._session_factory,
            self.trip_store,
            self.position_store,
            config.reconcile,
            vendor_api=self._vendor_api,
            normalizer_settings=normalizer_settings,
            clock=clock,
        )
        self._ingestor: PositionIngestor = PositionIngestor(
            self._vendor_api,
            self.position_store,
            self._event_detector,
            normalizer_settings=normalizer_settings,
            clock=clock,
        )
        self._archiver: ReadingArchiver | None = None

        logger.info(
            'FleetSyncService ready: vendor=%s, devices=%d',
            vendor.base_url,
            len(config.devices),
        )

    @classmethod
    def from_config(cls, config: FleetSyncConfig | Path | str | None = None) -> Self:
        """
        Build the service from a config object or YAML path, configuring logging.

        Args:
            config: A validated config, a path to a YAML file, or None for
                the default path.
        """
        if not isinstance(config, FleetSyncConfig):
            config = load_config(config)
        setup_logger(config=config.logging)
        return cls(config)

    @property
    def config(self) -> FleetSyncConfig:
        """The validated configuration (read-only)."""
        return self._config

    # -------------------------------------------------------------------------
    # Triggers
    # -------------------------------------------------------------------------

    def sync_now(
        self,
        device_ids: Sequence[str] | None = None,
        force_full: bool = False,
    ) -> FleetSyncResult:
        """Sync trips for `device_ids` (the configured fleet when None)."""
        return self._sync_engine.sync_devices(
            self._resolve_devices(device_ids), force_full=force_full
        )

    def reconcile(
        self,
        device_ids: Sequence[str] | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        mode: ReconcileMode | str = ReconcileMode.COORDINATES,
    ) -> ReconcileReport:
        """Backfill missing trip coordinates; `device_ids=None` is fleet-wide."""
        return self._reconciliation.run(device_ids=device_ids, start=start, end=end, mode=mode)

    def ingest_positions(self, device_ids: Sequence[str] | None = None) -> IngestResult:
        """Poll latest positions, store them and detect events."""
        return self._ingestor.run(self._resolve_devices(device_ids))

    def archive_readings(self, now: datetime | None = None) -> ArchiveResult:
        """Move readings past retention into the Parquet archive."""
        if self._archiver is None:
            self._archiver = ReadingArchiver(
                self.position_store, self._config.archive, clock=self._clock
            )
        return self._archiver.run(now=now)

    def reset_stale_runs(self) -> list[str]:
        return self._sync_engine.reset_stale_runs()

    # -------------------------------------------------------------------------
    # Operational views
    # -------------------------------------------------------------------------

    def device_status(self, device_id: str, event_limit: int = 10) -> DeviceStatus:
        """Checkpoint, last reading and recent events of one device."""
        last_reading: Reading | None = self.position_store.latest(device_id)
        return DeviceStatus(
            device_id=device_id,
            checkpoint=self._sync_engine.get_checkpoint(device_id),
            last_reading=last_reading,
            last_seen_local=(
                to_display_time(last_reading.recorded_at, self._config.display.utc_offset_hours)
                if last_reading is not None
                else None
            ),
            trips_stored=self.trip_store.count(device_id),
            recent_events=self.event_store.recent(device_id, limit=event_limit),
        )

    def rate_limit_status(self) -> RateLimitSnapshot:
        return self._rate_limiter.snapshot()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the vendor connection pool and dispose of the engine."""
        self._client.close()
        self._engine.dispose()
        logger.debug('FleetSyncService closed')

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    def _resolve_devices(self, device_ids: Sequence[str] | None) -> list[str]:
        resolved: list[str] = list(device_ids) if device_ids is not None else self._config.devices
        if not resolved:
            raise ValueError('No device ids given and none configured under `devices`')
        return resolved
