"""
Plain-text message builders for operator notifications.

Timestamps are stored in UTC everywhere; these helpers render them in the
operator's display timezone.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from levelwatch.domain.events import AlarmEvent, AlarmTransition
from levelwatch.domain.models import Reading, SystemState

DEFAULT_DISPLAY_TZ = "Asia/Jakarta"


def format_time(ts: Optional[datetime], tz: str = DEFAULT_DISPLAY_TZ, missing: str = "-") -> str:
    """
    Render a timestamp in the display timezone, ``dd/mm/YYYY HH:MM:SS``.

    Naive datetimes are assumed to be UTC.
    """
    if ts is None:
        return missing
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(ZoneInfo(tz)).strftime("%d/%m/%Y %H:%M:%S")


def format_level(value: float) -> str:
    return f"{value:g}"


def alarm_event_text(ev: AlarmEvent, tz: str = DEFAULT_DISPLAY_TZ, expiry_s: float = 240.0) -> str:
    """
    Build the notification text for an alarm transition.

    Parameters
    ----------
    ev
        Alarm event.
    tz
        Display timezone name.
    expiry_s
        Override duration, quoted in the auto-off message.
    """
    when = format_time(ev.timestamp, tz)

    if ev.transition is AlarmTransition.RAISED:
        return (
            "🚨 ALARM ACTIVATED!\n"
            f"Water Level: {format_level(ev.water_level)} cm\n"
            f"Trigger Level: {format_level(ev.trigger_level)} cm\n"
            f"Node: {ev.node_id or 'unknown'}\n"
            f"Time: {when}"
        )

    if ev.transition is AlarmTransition.CLEARED:
        return (
            "✅ ALARM CLEARED\n"
            f"Water Level: {format_level(ev.water_level)} cm\n"
            f"Trigger Level: {format_level(ev.trigger_level)} cm\n"
            f"Time: {when}"
        )

    minutes = expiry_s / 60.0
    return f"⏰ Manual alarm automatically turned OFF after {minutes:g} minutes\nTime: {when}"


def reading_update_text(
    reading: Reading,
    state: SystemState,
    sheets_logged: bool,
    tz: str = DEFAULT_DISPLAY_TZ,
) -> str:
    """Per-reading "sensor data update" message."""
    status_icon = "🚨" if state.alarm_active else "✅"
    sheets_icon = "📊✅" if sheets_logged else "📊❌"
    rssi = "N/A" if reading.wifi_rssi is None else str(reading.wifi_rssi)

    return (
        f"{status_icon} SENSOR DATA UPDATE\n\n"
        f"💧 Water Level: {format_level(reading.water_level)} cm\n"
        f"⚡ Trigger Level: {format_level(state.trigger_level)} cm\n"
        f"🚨 Alarm Status: {state.alarm_status.value}\n"
        f"📡 Node ID: {reading.node_id or 'unknown'}\n"
        f"📶 WiFi RSSI: {rssi} dBm\n"
        f"{sheets_icon} Sheets: {'Logged' if sheets_logged else 'Failed'}\n"
        f"🕒 Time: {format_time(reading.observed_at, tz)}"
    )


def format_uptime(seconds: float, with_seconds: bool = True) -> str:
    """``3h 4m 5s`` style uptime."""
    total = max(int(seconds), 0)
    h, rem = divmod(total, 3600)
    m, s = divmod(rem, 60)
    if with_seconds:
        return f"{h}h {m}m {s}s"
    return f"{h}h {m}m"
