"""
Unit tests for levelwatch.notification.messages.
"""

from __future__ import annotations

from levelwatch.domain.events import AlarmEvent, AlarmTransition
from levelwatch.domain.models import Reading, SystemState
from levelwatch.notification.messages import alarm_event_text, format_time, format_uptime, reading_update_text

from conftest import T0


def test_format_time_uses_display_timezone() -> None:
    assert format_time(T0) == "10/03/2026 15:00:00"
    assert format_time(T0, "UTC") == "10/03/2026 08:00:00"
    assert format_time(None, missing="No data") == "No data"


def test_format_uptime() -> None:
    assert format_uptime(3725) == "1h 2m 5s"
    assert format_uptime(3725, with_seconds=False) == "1h 2m"


def test_alarm_texts() -> None:
    raised = alarm_event_text(AlarmEvent(AlarmTransition.RAISED, T0, 55.0, 50.0, "n1"))
    assert "ALARM ACTIVATED" in raised
    assert "Water Level: 55 cm" in raised
    assert "Node: n1" in raised

    cleared = alarm_event_text(AlarmEvent(AlarmTransition.CLEARED, T0, 40.0, 50.0))
    assert "ALARM CLEARED" in cleared

    expired = alarm_event_text(AlarmEvent(AlarmTransition.EXPIRED, T0, 40.0, 50.0), expiry_s=240)
    assert "after 4 minutes" in expired


def test_reading_update_text() -> None:
    reading = Reading(water_level=12.5, node_id="n1", observed_at=T0, wifi_rssi=None)
    text = reading_update_text(reading, SystemState(), sheets_logged=False)
    assert "WiFi RSSI: N/A" in text
    assert "Sheets: Failed" in text
    assert "Alarm Status: OFF" in text
