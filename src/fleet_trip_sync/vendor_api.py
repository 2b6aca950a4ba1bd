# fleet_trip_sync/vendor_api.py
"""
Typed facade over the vendor actions this system uses.

`VendorClient` knows how to talk to the vendor; `VendorApi` knows what to
ask for. It owns the request shapes of each action, formats window bounds
in the vendor's fixed offset, and validates result rows into the models in
`models.vendor_models`.

Design Decisions:
-----------------
- Rows that fail validation are logged and skipped rather than failing the
  whole call; one malformed trip must not block a device's sync.
- The vendor offset is threaded through pydantic validation context so the
  models parse naive vendor strings in the right zone.

Usage:
------
    with VendorClient(config.vendor, limiter) as client:
        api = VendorApi(client)
        trips = api.query_trips('3566...', begin, end)
"""

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any, Final, TypeVar

from pydantic import BaseModel, ValidationError

from fleet_trip_sync.client import VendorClient
from fleet_trip_sync.common.timeutils import format_vendor_datetime
from fleet_trip_sync.models import VendorPositionRecord, VendorResponse, VendorTripRecord

__all__: list[str] = ['VendorApi']

logger: logging.Logger = logging.getLogger(__name__)

ModelT = TypeVar('ModelT', bound=BaseModel)

ACTION_QUERY_TRIPS: Final[str] = 'querytrips'
ACTION_LAST_POSITION: Final[str] = 'lastposition'
ACTION_QUERY_TRACK: Final[str] = 'querytrack'

# Coordinate system requested for track playback
TRACK_COORDINATE_SYSTEM: Final[str] = 'wgs84'


class VendorApi:
    """
    Action-level access to the vendor.

    Attributes:
        client: The rate-limited client every call goes through.
        utc_offset_hours: The vendor's fixed offset for date strings.
    """

    def __init__(self, client: VendorClient) -> None:
        self.client: VendorClient = client
        self.utc_offset_hours: int = client.config.vendor_utc_offset_hours

    def query_trips(
        self,
        device_id: str,
        begin: datetime,
        end: datetime,
    ) -> list[VendorTripRecord]:
        """
        Fetch vendor-computed trip summaries for one device.

        Args:
            device_id: Vendor device identifier.
            begin: Window start (any timezone; naive is UTC).
            end: Window end.

        Returns:
            Trip records in vendor order. Rows without parseable bounds are
            still returned; the caller decides what to skip.

        Raises:
            VendorAPIError: Any client failure, see `VendorClient.call`.
        """
        response: VendorResponse = self.client.call(
            ACTION_QUERY_TRIPS,
            {
                'deviceid': device_id,
                'begintime': format_vendor_datetime(begin, self.utc_offset_hours),
                'endtime': format_vendor_datetime(end, self.utc_offset_hours),
                'timezone': self.utc_offset_hours,
            },
        )
        rows: list[dict[str, Any]] = response.result_list('totaltrips')
        logger.debug('querytrips returned %d rows for device %s', len(rows), device_id)
        return self._validate_rows(VendorTripRecord, rows, ACTION_QUERY_TRIPS)

    def last_positions(
        self,
        device_ids: Sequence[str],
        last_query_time: int | None = None,
    ) -> list[VendorPositionRecord]:
        """
        Fetch the latest position of each device.

        Args:
            device_ids: Devices to query. An empty list short-circuits.
            last_query_time: Vendor cursor (epoch ms) from a previous call;
                0 asks for everything current.

        Returns:
            One record per device the vendor knows about.
        """
        if not device_ids:
            return []

        response: VendorResponse = self.client.call(
            ACTION_LAST_POSITION,
            {
                'deviceids': list(device_ids),
                'lastquerypositiontime': last_query_time or 0,
            },
        )
        return self._validate_rows(
            VendorPositionRecord, response.result_list(), ACTION_LAST_POSITION
        )

    def query_track(
        self,
        device_id: str,
        begin: datetime,
        end: datetime,
    ) -> list[VendorPositionRecord]:
        """
        Fetch the recorded track (historical positions) of one device.

        Track rows usually omit the device id; it is filled in here so the
        normalizer can process them like live positions.
        """
        response: VendorResponse = self.client.call(
            ACTION_QUERY_TRACK,
            {
                'deviceid': device_id,
                'starttime': format_vendor_datetime(begin, self.utc_offset_hours),
                'endtime': format_vendor_datetime(end, self.utc_offset_hours),
                'coordsys': TRACK_COORDINATE_SYSTEM,
            },
        )
        rows: list[dict[str, Any]] = [
            {'deviceid': device_id, **row} for row in response.result_list()
        ]
        return self._validate_rows(VendorPositionRecord, rows, ACTION_QUERY_TRACK)

    def _validate_rows(
        self,
        model: type[ModelT],
        rows: list[dict[str, Any]],
        action: str,
    ) -> list[ModelT]:
        records: list[ModelT] = []
        context: dict[str, Any] = {'utc_offset_hours': self.utc_offset_hours}

        for index, row in enumerate(rows):
            try:
                records.append(model.model_validate(row, context=context))
            except ValidationError as error:
                logger.warning(
                    'Skipping malformed %s row %d: %s',
                    action,
                    index,
                    error.errors()[0]['msg'] if error.errors() else error,
                )

        if len(records) < len(rows):
            logger.info(
                '%s: kept %d of %d rows after validation', action, len(records), len(rows)
            )
        return records
