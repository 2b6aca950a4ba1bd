# fleet_trip_sync/event_detector.py
"""
Lifecycle event detection from consecutive readings.

Transition Rules:
-----------------
    ignition   False -> True    ignition-on    info
    ignition   True  -> False   ignition-off   info
    online     False -> True    online         info
    online     True  -> False   offline        warning
    speed      crosses above overspeed_kmh     overspeed     warning
    battery    crosses below low_battery       low-battery   warning
                                               (critical below critical level)

Readings are evaluated in recorded-timestamp order, never arrival order;
the vendor may deliver late or batched samples. Each reading is compared
with the one immediately before it. For the first reading of a batch that
is the latest stored reading older than it, unless the caller passes one.

Cooldown:
---------
An event is suppressed when another event of the same (device, type)
occurred within `cooldown_minutes` of it, whether emitted earlier in the
same batch or already persisted. This absorbs flapping signals.
"""

import json
import logging
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from typing import Any, Final

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from fleet_trip_sync.common.timeutils import ensure_utc, utc_now
from fleet_trip_sync.config import EventConfig
from fleet_trip_sync.models import DeviceEvent, EventType, Reading, Severity
from fleet_trip_sync.position_store import PositionStore
from fleet_trip_sync.storage import DeviceEventRow

__all__: list[str] = ['EventDetector', 'EventStore']

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_RECENT_LIMIT: Final[int] = 100


# =============================================================================
# Event Store
# =============================================================================


class EventStore:
    """Persistence and lookup of device events."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory: sessionmaker[Session] = session_factory

    def record(self, events: Iterable[DeviceEvent]) -> int:
        """Persist events. Returns the number written."""
        created_at: datetime = utc_now()
        rows: list[DeviceEventRow] = [
            DeviceEventRow(
                device_id=event.device_id,
                event_type=event.event_type.value,
                severity=event.severity.value,
                occurred_at=event.occurred_at,
                latitude=event.latitude,
                longitude=event.longitude,
                message=event.message,
                metadata_json=json.dumps(event.metadata, default=str, sort_keys=True),
                created_at=created_at,
            )
            for event in events
        ]
        if not rows:
            return 0

        with self._session_factory.begin() as session:
            session.add_all(rows)
        return len(rows)

    def recent(
        self,
        device_id: str,
        event_type: EventType | None = None,
        since: datetime | None = None,
        limit: int = DEFAULT_RECENT_LIMIT,
    ) -> list[DeviceEvent]:
        """Most recent events of a device, newest first."""
        statement = select(DeviceEventRow).where(DeviceEventRow.device_id == device_id)
        if event_type is not None:
            statement = statement.where(DeviceEventRow.event_type == event_type.value)
        if since is not None:
            statement = statement.where(DeviceEventRow.occurred_at >= ensure_utc(since))

        with self._session_factory() as session:
            rows: Sequence[DeviceEventRow] = session.scalars(
                statement.order_by(DeviceEventRow.occurred_at.desc()).limit(limit)
            ).all()
        return [self._to_event(row) for row in rows]

    def last_occurrence(self, device_id: str, event_type: EventType) -> datetime | None:
        with self._session_factory() as session:
            return session.scalars(
                select(DeviceEventRow.occurred_at)
                .where(
                    DeviceEventRow.device_id == device_id,
                    DeviceEventRow.event_type == event_type.value,
                )
                .order_by(DeviceEventRow.occurred_at.desc())
                .limit(1)
            ).first()

    def exists_within(
        self,
        device_id: str,
        event_type: EventType,
        start: datetime,
        end: datetime,
    ) -> bool:
        """True when an event of this type occurred strictly between `start` and `end`."""
        with self._session_factory() as session:
            found: int | None = session.scalars(
                select(DeviceEventRow.id)
                .where(
                    DeviceEventRow.device_id == device_id,
                    DeviceEventRow.event_type == event_type.value,
                    DeviceEventRow.occurred_at > ensure_utc(start),
                    DeviceEventRow.occurred_at < ensure_utc(end),
                )
                .limit(1)
            ).first()
        return found is not None

    @staticmethod
    def _to_event(row: DeviceEventRow) -> DeviceEvent:
        metadata: Any = json.loads(row.metadata_json or '{}')
        return DeviceEvent(
            device_id=row.device_id,
            event_type=EventType(row.event_type),
            severity=Severity(row.severity),
            occurred_at=row.occurred_at,
            latitude=row.latitude,
            longitude=row.longitude,
            message=row.message,
            metadata=metadata if isinstance(metadata, dict) else {},
        )


# =============================================================================
# Detector
# =============================================================================


class EventDetector:
    """
    Turns reading sequences into deduplicated lifecycle events.

    Attributes:
        config: Cooldown and threshold settings.
    """

    def __init__(
        self,
        event_store: EventStore,
        position_store: PositionStore,
        config: EventConfig | None = None,
    ) -> None:
        self._event_store: EventStore = event_store
        self._position_store: PositionStore = position_store
        self.config: EventConfig = config or EventConfig()
        self._cooldown: timedelta = timedelta(minutes=self.config.cooldown_minutes)

    def process(
        self,
        device_id: str,
        readings: Iterable[Reading],
        previous: Reading | None = None,
    ) -> list[DeviceEvent]:
        """
        Detect and persist the events implied by a batch of readings.

        Args:
            device_id: Device the readings belong to; other devices' readings
                are ignored.
            readings: New readings in any order.
            previous: Reading preceding the batch. Looked up in the position
                store when omitted.

        Returns:
            The events that passed the cooldown and were recorded.
        """
        ordered: list[Reading] = sorted(
            (reading for reading in readings if reading.device_id == device_id),
            key=lambda reading: reading.recorded_at,
        )
        if not ordered:
            return []

        if previous is None:
            previous = self._position_store.latest(device_id, before=ordered[0].recorded_at)

        last_emitted: dict[EventType, datetime] = {}
        emitted: list[DeviceEvent] = []
        suppressed: int = 0

        for current in ordered:
            if previous is not None:
                for candidate in self._transitions(previous, current):
                    if self._in_cooldown(candidate, last_emitted):
                        suppressed += 1
                        continue
                    emitted.append(candidate)
                    last_emitted[candidate.event_type] = candidate.occurred_at
            previous = current

        self._event_store.record(emitted)
        if emitted or suppressed:
            logger.info(
                'Device %s: %d events recorded, %d suppressed by cooldown',
                device_id,
                len(emitted),
                suppressed,
            )
        return emitted

    # -------------------------------------------------------------------------
    # Rules
    # -------------------------------------------------------------------------

    def _transitions(self, previous: Reading, current: Reading) -> list[DeviceEvent]:
        events: list[DeviceEvent] = []

        if previous.ignition is not None and current.ignition is not None:
            if not previous.ignition and current.ignition:
                events.append(
                    self._event(
                        current,
                        EventType.IGNITION_ON,
                        Severity.INFO,
                        'Ignition turned on',
                        self._ignition_metadata(current),
                    )
                )
            elif previous.ignition and not current.ignition:
                events.append(
                    self._event(
                        current,
                        EventType.IGNITION_OFF,
                        Severity.INFO,
                        'Ignition turned off',
                        self._ignition_metadata(current),
                    )
                )

        if not previous.is_online and current.is_online:
            events.append(
                self._event(current, EventType.ONLINE, Severity.INFO, 'Device back online')
            )
        elif previous.is_online and not current.is_online:
            events.append(
                self._event(
                    current,
                    EventType.OFFLINE,
                    Severity.WARNING,
                    'Device went offline',
                    {'last_seen': previous.recorded_at.isoformat()},
                )
            )

        overspeed: float | None = self.config.overspeed_kmh
        if (
            overspeed is not None
            and previous.speed_kmh <= overspeed < current.speed_kmh
        ):
            events.append(
                self._event(
                    current,
                    EventType.OVERSPEED,
                    Severity.WARNING,
                    f'Speed {current.speed_kmh:.0f} km/h exceeds {overspeed:.0f} km/h',
                    {'speed_kmh': current.speed_kmh, 'limit_kmh': overspeed},
                )
            )

        low_battery: float | None = self.config.low_battery_percent
        if (
            low_battery is not None
            and previous.battery_percent is not None
            and current.battery_percent is not None
            and previous.battery_percent >= low_battery > current.battery_percent
        ):
            severity: Severity = (
                Severity.CRITICAL
                if current.battery_percent < self.config.critical_battery_percent
                else Severity.WARNING
            )
            events.append(
                self._event(
                    current,
                    EventType.LOW_BATTERY,
                    severity,
                    f'Battery at {current.battery_percent:.0f}%',
                    {'battery_percent': current.battery_percent},
                )
            )

        return events

    def _in_cooldown(
        self,
        candidate: DeviceEvent,
        last_emitted: dict[EventType, datetime],
    ) -> bool:
        last: datetime | None = last_emitted.get(candidate.event_type)
        if last is not None and abs(candidate.occurred_at - last) < self._cooldown:
            return True
        # Late batches can fall between stored events, so check both sides
        return self._event_store.exists_within(
            candidate.device_id,
            candidate.event_type,
            candidate.occurred_at - self._cooldown,
            candidate.occurred_at + self._cooldown,
        )

    @staticmethod
    def _ignition_metadata(reading: Reading) -> dict[str, Any]:
        return {
            'confidence': reading.ignition_confidence,
            'method': reading.ignition_method.value,
        }

    @staticmethod
    def _event(
        reading: Reading,
        event_type: EventType,
        severity: Severity,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> DeviceEvent:
        return DeviceEvent(
            device_id=reading.device_id,
            event_type=event_type,
            severity=severity,
            occurred_at=reading.recorded_at,
            latitude=reading.latitude,
            longitude=reading.longitude,
            message=message,
            metadata=metadata or {},
        )
