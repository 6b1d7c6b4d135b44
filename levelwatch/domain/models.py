"""
Domain models and enums.

This module defines the core domain-level types used across the service:
- Alarm status and alarm mode enums
- Sensor readings submitted by the water-level node
- Log rows written to (and read back from) the durable monthly log
- SystemState, the authoritative alarm/reading state owned by the engine
- Outcome descriptors returned to transport and command layers

These are frozen dataclasses so copies can be handed across threads safely.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional


class AlarmStatus(str, Enum):
    """
    Alarm output as written to the durable log.

    Members
    -------
    ON : str
        Alarm output is energized.
    OFF : str
        Alarm output is idle.
    """

    ON = "ON"
    OFF = "OFF"

    @classmethod
    def from_bool(cls, active: bool) -> "AlarmStatus":
        return cls.ON if active else cls.OFF


class AlarmMode(str, Enum):
    """
    Internal alarm state machine states.

    Externally these collapse into ``alarm_active`` plus ``manual_override``.

    Members
    -------
    INACTIVE : str
        Alarm is off.
    ACTIVE_AUTO : str
        Alarm was raised by the threshold policy.
    ACTIVE_MANUAL : str
        Alarm was forced on by an operator and is pending auto-expiry.
    """

    INACTIVE = "INACTIVE"
    ACTIVE_AUTO = "ACTIVE_AUTO"
    ACTIVE_MANUAL = "ACTIVE_MANUAL"


class EventTag(str, Enum):
    """Node ids used for log rows that do not come from a sensor reading."""

    TRIGGER_CHANGE = "manual_trigger_change"
    MANUAL_ON = "manual_on"
    MANUAL_OFF = "manual_off"
    AUTO_OFF = "auto_off"


UNKNOWN_NODE = "unknown"

LOG_HEADER: List[str] = [
    "timestamp",
    "water_level",
    "trigger_level",
    "alarm_status",
    "node_id",
    "wifi_rssi",
]


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def _iso(ts: datetime, timespec: str = "seconds") -> str:
    """
    Convert datetime to an ISO-8601 UTC string (second precision by default).

    Naive datetimes are assumed to be UTC.
    """
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec=timespec)


def _parse_iso(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        ts = datetime.fromisoformat(text)
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _parse_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(str(value).strip().replace(",", "."))
    except ValueError:
        return None


@dataclass(frozen=True)
class Reading:
    """
    One water-level measurement submitted by a sensor node.

    Parameters
    ----------
    water_level
        Measured water level in centimeters.
    node_id
        Identifier of the sensor node.
    observed_at
        Time the reading was accepted by the service.
    wifi_rssi
        Optional Wi-Fi signal strength reported by the node (dBm).
    """

    water_level: float
    node_id: str
    observed_at: datetime
    wifi_rssi: Optional[int] = None


@dataclass(frozen=True)
class LogRow:
    """
    Immutable row of the durable append-only log.

    Parameters
    ----------
    timestamp
        Append time (UTC).
    water_level
        Water level at write time, in centimeters.
    trigger_level
        Trigger level in force at write time, in centimeters.
    alarm_status
        Alarm output at write time.
    node_id
        Sensor node id, or one of the `EventTag` values for operator events.
    wifi_rssi
        Optional Wi-Fi RSSI of the reporting node.
    """

    timestamp: datetime
    water_level: float
    trigger_level: float
    alarm_status: AlarmStatus
    node_id: str
    wifi_rssi: Optional[int] = None

    def to_values(self) -> List[Any]:
        """
        Return cell values in `LOG_HEADER` order.

        Levels are rounded to two decimals; a missing RSSI is an empty cell.
        """
        return [
            _iso(self.timestamp),
            round(float(self.water_level), 2),
            round(float(self.trigger_level), 2),
            self.alarm_status.value,
            self.node_id or UNKNOWN_NODE,
            "" if self.wifi_rssi is None else int(self.wifi_rssi),
        ]

    def to_dict(self) -> Dict[str, Any]:
        return dict(zip(LOG_HEADER, self.to_values()))

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Optional["LogRow"]:
        """
        Parse a header-keyed record read back from a log backend.

        Parameters
        ----------
        record
            Mapping of header name -> cell value.

        Returns
        -------
        LogRow or None
            Parsed row, or None if the timestamp or levels cannot be parsed.
        """
        ts = _parse_iso(record.get("timestamp"))
        level = _parse_float(record.get("water_level"))
        trigger = _parse_float(record.get("trigger_level"))
        if ts is None or level is None or trigger is None:
            return None

        status_text = str(record.get("alarm_status", "")).strip().upper()
        rssi = _parse_float(record.get("wifi_rssi"))

        return cls(
            timestamp=ts,
            water_level=level,
            trigger_level=trigger,
            alarm_status=AlarmStatus.ON if status_text == "ON" else AlarmStatus.OFF,
            node_id=str(record.get("node_id") or UNKNOWN_NODE),
            wifi_rssi=None if rssi is None else int(rssi),
        )

    @property
    def alarm_active(self) -> bool:
        return self.alarm_status is AlarmStatus.ON


@dataclass(frozen=True)
class SystemState:
    """
    Authoritative service state, owned by `AlarmStateEngine`.

    Invariants
    ----------
    - ``alarm_started_at`` is set iff ``alarm_active`` is True.
    - ``connection_count`` only ever grows, once per accepted reading.
    - ``trigger_level`` is always ``> 0``.

    Parameters
    ----------
    current_water_level
        Last accepted reading, in centimeters.
    trigger_level
        Threshold in centimeters.
    alarm_active
        Whether the alarm output is on.
    manual_override
        True only while an operator-forced alarm is pending auto-expiry.
    last_reading_at
        Time of the last accepted reading.
    alarm_started_at
        Time the alarm last switched on.
    connection_count
        Number of accepted readings since process start (or snapshot).
    log_store_ready
        Last known health of the durable log.
    started_at
        Process start time.
    last_node_id
        Node id of the last accepted reading.
    """

    current_water_level: float = 0.0
    trigger_level: float = 50.0
    alarm_active: bool = False
    manual_override: bool = False
    last_reading_at: Optional[datetime] = None
    alarm_started_at: Optional[datetime] = None
    connection_count: int = 0
    log_store_ready: bool = False
    started_at: Optional[datetime] = None
    last_node_id: Optional[str] = None

    @property
    def mode(self) -> AlarmMode:
        if not self.alarm_active:
            return AlarmMode.INACTIVE
        return AlarmMode.ACTIVE_MANUAL if self.manual_override else AlarmMode.ACTIVE_AUTO

    @property
    def alarm_status(self) -> AlarmStatus:
        return AlarmStatus.from_bool(self.alarm_active)

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-friendly view with the public field names."""
        return {
            "current_water_level": self.current_water_level,
            "trigger_level": self.trigger_level,
            "alarm_active": self.alarm_active,
            "manual_override": self.manual_override,
            "last_reading_at": _iso(self.last_reading_at) if self.last_reading_at else None,
            "alarm_started_at": _iso(self.alarm_started_at) if self.alarm_started_at else None,
            "connection_count": self.connection_count,
            "log_store_ready": self.log_store_ready,
        }


@dataclass(frozen=True)
class IngestOutcome:
    """
    Result of one `AlarmStateEngine.ingest` call.

    ``accepted`` with ``sheets_logged=False`` is a partial success: the
    reading changed state but the durable log write failed.
    """

    accepted: bool
    alarm_active: bool
    sheets_logged: bool
    error: Optional[str] = None
    trigger_level: Optional[float] = None
    connection_count: int = 0
    row_ref: Optional[str] = None
    log_error: Optional[str] = None


@dataclass(frozen=True)
class CommandOutcome:
    """Result of an operator command (`set_trigger`, `force_alarm`)."""

    ok: bool
    error: Optional[str] = None
    sheets_logged: bool = False
