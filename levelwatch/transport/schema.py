from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional

from levelwatch.domain.errors import InvalidReading
from levelwatch.domain.models import UNKNOWN_NODE, Reading, _parse_iso, utc_now

SENSOR_STATUS_OK = "ok"


@dataclass(frozen=True)
class SensorPayload:
    """
    Decoded ``POST /api/sensor/data`` body.

    ``sensor_timestamp`` and ``uptime_seconds`` are informational only; the
    reading is always stamped with the server clock.
    """
    reading: Reading
    sensor_timestamp: Optional[datetime] = None
    uptime_seconds: Optional[float] = None


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        return False


def parse_reading(body: Any, clock: Callable[[], datetime] = utc_now) -> SensorPayload:
    """
    Validate a sensor JSON body.

    Parameters
    ----------
    body
        Decoded JSON value.
    clock
        Server clock used to stamp the reading.

    Returns
    -------
    SensorPayload
        The reading plus informational fields.

    Raises
    ------
    InvalidReading
        If the body is not an object, ``water_level`` is not a finite number
        or ``sensor_status`` is not ``"ok"``. ``details`` carries the
        offending value for the 400 response.
    """
    if not isinstance(body, Mapping):
        raise InvalidReading("request body must be a JSON object")

    level = body.get("water_level")
    if not _is_number(level):
        raise InvalidReading(
            "water_level must be a number",
            details={"type": type(level).__name__, "value": level},
        )

    status = body.get("sensor_status")
    if status != SENSOR_STATUS_OK:
        raise InvalidReading('sensor_status must be "ok"', details=status)

    node_id = body.get("node_id")
    rssi = body.get("wifi_rssi")
    uptime = body.get("uptime_seconds")
    ts = body.get("timestamp")

    reading = Reading(
        water_level=float(level),
        node_id=str(node_id) if node_id else UNKNOWN_NODE,
        observed_at=clock(),
        wifi_rssi=int(rssi) if _is_number(rssi) else None,
    )
    return SensorPayload(
        reading=reading,
        sensor_timestamp=_parse_iso(ts) if isinstance(ts, str) else None,
        uptime_seconds=float(uptime) if _is_number(uptime) else None,
    )


def reading_summary(payload: SensorPayload) -> Dict[str, Any]:
    r = payload.reading
    return {
        "water_level": r.water_level,
        "node_id": r.node_id,
        "wifi_rssi": r.wifi_rssi,
        "uptime_seconds": payload.uptime_seconds,
    }
