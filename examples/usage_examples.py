#!/usr/bin/env python3
"""
Usage examples for fleet_trip_sync abstraction layers.

This file demonstrates the different ways to interact with the vendor API
and the sync jobs, from low-level to high-level abstractions.
"""

from datetime import UTC, datetime, timedelta

from fleet_trip_sync.client import VendorClient
from fleet_trip_sync.config import FleetSyncConfig
from fleet_trip_sync.config.loader import load_config
from fleet_trip_sync.models import FleetSyncResult, ReconcileMode, ReconcileReport
from fleet_trip_sync.normalizer import NormalizerSettings, normalize_batch
from fleet_trip_sync.rate_limiter import SharedRateLimiter
from fleet_trip_sync.service import DeviceStatus, FleetSyncService
from fleet_trip_sync.storage import build_session_factory, create_database_engine, init_database
from fleet_trip_sync.vendor_api import VendorApi

DEVICE_ID: str = '356600000000001'

# =============================================================================
# Level 1: Raw Vendor Calls (Most Control)
# =============================================================================


def example_1_raw_vendor_calls() -> None:
    """
    Lowest level: the client and the typed action wrappers.

    Use this when you need vendor data without storing anything. Every call
    still draws from the shared call budget kept in the database.
    """
    config: FleetSyncConfig = load_config('config/fleet_sync.yaml')

    engine = create_database_engine(config.database)
    init_database(engine)
    limiter = SharedRateLimiter(
        build_session_factory(engine),
        max_calls=config.vendor.max_calls_per_window,
        window_seconds=config.vendor.burst_window_seconds,
    )

    with VendorClient(config.vendor, limiter) as client:
        vendor_api = VendorApi(client)

        end: datetime = datetime.now(UTC)
        trips = vendor_api.query_trips(DEVICE_ID, end - timedelta(days=1), end)
        print(f'Vendor reported {len(trips)} trips in the last day')

        records = vendor_api.last_positions([DEVICE_ID])
        for reading in normalize_batch(records, settings=NormalizerSettings.from_config(config)):
            print(
                f'{reading.device_id}: ignition={reading.ignition} '
                f'({reading.ignition_method.value}, {reading.ignition_confidence:.1f}) '
                f'online={reading.is_online}'
            )

    engine.dispose()


# =============================================================================
# Level 2: Service Facade (Recommended for Most Use Cases)
# =============================================================================


def example_2_service_facade() -> None:
    """
    High-level: the service wires every job from one config file.

    This is what a cron entry or scheduler task should call.
    """
    with FleetSyncService.from_config('config/fleet_sync.yaml') as service:
        service.ingest_positions()

        result: FleetSyncResult = service.sync_now()
        print(f'{result.trips_created} trips created, {result.trips_skipped} skipped')
        for device_id, error in result.errors.items():
            print(f'  {device_id}: {error}')


# =============================================================================
# Level 3: Operator Tasks
# =============================================================================


def example_3_operator_tasks() -> None:
    """Recovery and inspection tasks an operator runs by hand."""
    with FleetSyncService.from_config('config/fleet_sync.yaml') as service:
        # Release devices left RUNNING by a crashed worker
        released: list[str] = service.reset_stale_runs()
        print(f'Released {len(released)} stale runs')

        # Re-pull one device from the full lookback
        service.sync_now([DEVICE_ID], force_full=True)

        # Fill trip coordinates from vendor tracks for the last week
        end: datetime = datetime.now(UTC)
        report: ReconcileReport = service.reconcile(
            device_ids=[DEVICE_ID],
            start=end - timedelta(days=7),
            end=end,
            mode=ReconcileMode.GAPS,
        )
        print(f'Checked {report.trips_checked} trips, fixed {report.trips_fixed}')

        status: DeviceStatus = service.device_status(DEVICE_ID)
        print(f'Last seen (local): {status.last_seen_local}')
        if status.checkpoint is not None:
            print(f'Checkpoint: {status.checkpoint.status.value} at {status.checkpoint.last_synced_at}')

        print(service.rate_limit_status())


def example_4_retention() -> None:
    """Move readings past retention into the Parquet archive."""
    with FleetSyncService.from_config('config/fleet_sync.yaml') as service:
        result = service.archive_readings()
        print(
            f'Archived {result.readings_archived} readings into '
            f'{len(result.partitions_written)} partitions'
        )


if __name__ == '__main__':
    example_2_service_facade()
