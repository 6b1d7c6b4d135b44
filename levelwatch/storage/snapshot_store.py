"""
Local snapshot store for fast warm start.

The snapshot holds the subset of `SystemState` needed to resume quickly as a
flat JSON record. It is a latency optimization only: the durable log
(`AlarmStateEngine.restore`) is the authoritative recovery path, so every
failure here is logged and swallowed.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from levelwatch.domain.errors import SnapshotWriteFailed
from levelwatch.domain.models import SystemState, _iso, _parse_iso, utc_now

logger = logging.getLogger(__name__)

SNAPSHOT_KEYS = (
    "currentWaterLevel",
    "triggerLevel",
    "alarmActive",
    "manualOverride",
    "lastReading",
    "alarmStartTime",
    "connectionCount",
)


class SnapshotStore(Protocol):
    """Single-record persistence used by the engine for warm start."""

    def save(self, state: SystemState) -> bool:
        ...

    def load(self, base: Optional[SystemState] = None) -> Optional[SystemState]:
        ...


def state_to_record(state: SystemState) -> Dict[str, Any]:
    """Project a `SystemState` onto the persisted snapshot layout."""
    return {
        "currentWaterLevel": state.current_water_level,
        "triggerLevel": state.trigger_level,
        "alarmActive": state.alarm_active,
        "manualOverride": state.manual_override,
        "lastReading": _iso(state.last_reading_at, "auto") if state.last_reading_at else None,
        "alarmStartTime": _iso(state.alarm_started_at, "auto") if state.alarm_started_at else None,
        "connectionCount": state.connection_count,
    }


def apply_record(base: SystemState, record: Dict[str, Any]) -> SystemState:
    """
    Overlay a snapshot record on ``base``.

    Volatile fields (``log_store_ready``, ``started_at``) keep their ``base``
    values. The ``alarm_started_at`` invariant is enforced on the result.

    Raises
    ------
    KeyError, ValueError, TypeError
        If the record is missing keys or holds values of the wrong type.
    """
    missing = [k for k in SNAPSHOT_KEYS if k not in record]
    if missing:
        raise KeyError(f"snapshot missing keys: {missing}")

    trigger = float(record["triggerLevel"])
    if trigger <= 0:
        raise ValueError(f"snapshot trigger level must be > 0, got {trigger}")

    active = bool(record["alarmActive"])
    started = _parse_iso(record["alarmStartTime"]) if active else None

    return replace(
        base,
        current_water_level=float(record["currentWaterLevel"]),
        trigger_level=trigger,
        alarm_active=active,
        manual_override=bool(record["manualOverride"]),
        last_reading_at=_parse_iso(record["lastReading"]),
        alarm_started_at=(started or utc_now()) if active else None,
        connection_count=max(int(record["connectionCount"]), 0),
    )


@dataclass
class JsonSnapshotStore:
    """
    Single-record snapshot persisted as a JSON file.

    Writes go to a sibling temp file which then replaces the target, so a
    crash mid-write never leaves a truncated snapshot.

    Parameters
    ----------
    path
        Snapshot file location. Parent folders are created on save.
    """

    path: Path

    def __post_init__(self) -> None:
        self.path = Path(self.path)

    def save(self, state: SystemState) -> bool:
        """
        Persist the snapshot subset of ``state``.

        Returns
        -------
        bool
            True on success; False if the write failed (logged).
        """
        try:
            self._write(state_to_record(state))
            return True
        except SnapshotWriteFailed as e:
            logger.warning("%s", e)
            return False

    def _write(self, record: Dict[str, Any]) -> None:
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tmp.open("w", encoding="utf-8") as f:
                json.dump(record, f, indent=2)
            os.replace(tmp, self.path)
        except OSError as e:
            raise SnapshotWriteFailed(f"snapshot write to {self.path} failed: {e!r}") from e

    def load_record(self) -> Optional[Dict[str, Any]]:
        """
        Load the raw snapshot record.

        Returns
        -------
        dict or None
            The record, or None if absent or unreadable (logged).
        """
        if not self.path.exists():
            return None
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Snapshot %s unreadable, ignoring: %r", self.path, e)
            return None
        if not isinstance(data, dict):
            logger.warning("Snapshot %s is not a JSON object, ignoring", self.path)
            return None
        return data

    def load(self, base: Optional[SystemState] = None) -> Optional[SystemState]:
        """
        Load the snapshot overlaid on ``base`` (defaults to `SystemState()`).

        Returns
        -------
        SystemState or None
            Restored state, or None if there is no usable snapshot.
        """
        record = self.load_record()
        if record is None:
            return None
        try:
            return apply_record(base or SystemState(), record)
        except (KeyError, ValueError, TypeError) as e:
            logger.warning("Snapshot %s invalid, ignoring: %s", self.path, e)
            return None
