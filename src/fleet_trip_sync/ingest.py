# fleet_trip_sync/ingest.py
"""
Live position ingestion.

Polls the vendor for the latest position of each device, normalizes the
rows, stores the ones that pass the write policy and runs event detection
over every normalized reading.

Batching:
---------
Device ids are sent to the vendor in chunks of `batch_size`. Chunks fail
independently: a vendor error on one chunk is logged and the remaining
chunks still run. Only when every chunk fails does the run raise
`IngestError`, since nothing was ingested at all.

Usage:
------
    ingestor = PositionIngestor(vendor_api, position_store, event_detector)
    result = ingestor.run(config.devices)
"""

import logging
from collections.abc import Callable, Sequence
from datetime import datetime
from itertools import groupby
from typing import cast

from pydantic import BaseModel, Field

from fleet_trip_sync.common.timeutils import utc_now
from fleet_trip_sync.errors import VendorAPIError
from fleet_trip_sync.event_detector import EventDetector
from fleet_trip_sync.models import Reading, VendorPositionRecord
from fleet_trip_sync.normalizer import DEFAULT_SETTINGS, NormalizerSettings, normalize_batch
from fleet_trip_sync.position_store import PositionStore
from fleet_trip_sync.vendor_api import VendorApi

__all__: list[str] = ['IngestError', 'IngestResult', 'PositionIngestor']

logger: logging.Logger = logging.getLogger(__name__)


class IngestError(Exception):
    """
    Raised when every vendor batch of an ingestion run failed.

    Attributes:
        failed_batches: Number of batches attempted.
    """

    def __init__(self, message: str, failed_batches: int = 0) -> None:
        super().__init__(message)
        self.failed_batches: int = failed_batches


class IngestResult(BaseModel):
    """Counts from one ingestion run."""

    started_at: datetime
    devices_requested: int = 0
    records_received: int = 0
    readings_normalized: int = 0
    readings_stored: int = 0
    events_emitted: int = 0
    failed_batches: int = 0
    errors: list[str] = Field(default_factory=list)


class PositionIngestor:
    """Runs the vendor -> normalizer -> position store -> event detector flow."""

    def __init__(
        self,
        vendor_api: VendorApi,
        position_store: PositionStore,
        event_detector: EventDetector | None = None,
        normalizer_settings: NormalizerSettings = DEFAULT_SETTINGS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._vendor_api: VendorApi = vendor_api
        self._position_store: PositionStore = position_store
        self._event_detector: EventDetector | None = event_detector
        self._normalizer_settings: NormalizerSettings = normalizer_settings
        self._clock: Callable[[], datetime] = clock

    def run(self, device_ids: Sequence[str], batch_size: int = 100) -> IngestResult:
        """
        Ingest the latest positions of `device_ids`.

        Args:
            device_ids: Devices to poll.
            batch_size: Device ids per vendor call.

        Returns:
            Counts for the whole run.

        Raises:
            IngestError: Every batch failed.
            ValueError: `batch_size` is not positive.
        """
        if batch_size <= 0:
            raise ValueError(f'batch_size must be positive, got: {batch_size}')

        unique_ids: list[str] = list(dict.fromkeys(device_ids))
        result = IngestResult(started_at=self._clock(), devices_requested=len(unique_ids))
        if not unique_ids:
            logger.info('No devices to ingest')
            return result

        batches: list[list[str]] = [
            unique_ids[index : index + batch_size]
            for index in range(0, len(unique_ids), batch_size)
        ]

        for batch_index, batch in enumerate(batches, start=1):
            try:
                self._ingest_batch(batch, result)
            except VendorAPIError as error:
                result.failed_batches += 1
                result.errors.append(f'batch {batch_index}: {error}')
                logger.error(
                    'Position batch %d/%d (%d devices) failed: %s',
                    batch_index,
                    len(batches),
                    len(batch),
                    error,
                )

        if result.failed_batches == len(batches):
            raise IngestError(
                f'All {len(batches)} position batches failed: {result.errors[-1]}',
                failed_batches=result.failed_batches,
            )

        logger.info(
            'Ingestion complete: devices=%d received=%d normalized=%d stored=%d events=%d',
            result.devices_requested,
            result.records_received,
            result.readings_normalized,
            result.readings_stored,
            result.events_emitted,
        )
        return result

    def _ingest_batch(self, device_ids: list[str], result: IngestResult) -> None:
        records: list[VendorPositionRecord] = self._vendor_api.last_positions(device_ids)
        readings: list[Reading] = normalize_batch(
            records, now=self._clock(), settings=self._normalizer_settings
        )

        result.records_received += len(records)
        result.readings_normalized += len(readings)

        # Anchors are read before the append so a re-polled position that is
        # already stored is not compared against itself
        pending: list[tuple[str, Reading | None, list[Reading]]] = []
        if self._event_detector is not None:
            ordered: list[Reading] = sorted(readings, key=lambda reading: reading.device_id)
            for device_id, group in groupby(ordered, key=lambda reading: reading.device_id):
                previous: Reading | None = self._position_store.latest(device_id)
                fresh: list[Reading] = [
                    reading
                    for reading in group
                    if previous is None or reading.recorded_at > previous.recorded_at
                ]
                if fresh:
                    pending.append((device_id, previous, fresh))

        result.readings_stored += self._position_store.append(readings)

        for device_id, previous, fresh in pending:
            result.events_emitted += len(
                cast(EventDetector, self._event_detector).process(device_id, fresh, previous)
            )
