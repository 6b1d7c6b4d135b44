"""
Unit tests for levelwatch.core.engine.AlarmStateEngine.

These tests drive the engine through its public operations with:
- a settable clock
- a manual timer factory (expiry fires only when the test says so)
- an in-memory durable log backend
- a recording notification sink

They cover threshold transitions, re-logging while above threshold, manual
override with auto-expiry and cancellation, trigger validation, partial
success on log failure, and startup reconciliation from snapshot and log.
"""

from __future__ import annotations

import json
from dataclasses import replace

import pytest

from levelwatch.core.engine import INVALID_READING, INVALID_TRIGGER, AlarmStateEngine, EngineConfig
from levelwatch.domain.models import AlarmMode, AlarmStatus, _iso
from levelwatch.storage.durable_log import DurableLog
from levelwatch.storage.snapshot_store import JsonSnapshotStore

from conftest import T0, ingest_level


def _statuses(backend) -> list:
    return [r[3] for r in backend.rows()]


def _nodes(backend) -> list:
    return [r[4] for r in backend.rows()]


# --- threshold policy through the engine ---

def test_threshold_scenario_relogs_while_above_and_notifies_on_edges(engine, backend, sink) -> None:
    assert engine.status().trigger_level == 50.0

    assert ingest_level(engine, 30, "n1").alarm_active is False
    out = ingest_level(engine, 55, "n1")
    assert out.alarm_active is True
    assert sink.types() == ["alarm_raised"]

    out = ingest_level(engine, 60, "n1")
    assert out.alarm_active is True
    assert sink.types() == ["alarm_raised"]

    out = ingest_level(engine, 40, "n1")
    assert out.alarm_active is False
    assert sink.types() == ["alarm_raised", "alarm_cleared"]

    assert _statuses(backend) == ["OFF", "ON", "ON", "OFF"]
    assert [r[1] for r in backend.rows()] == [30.0, 55.0, 60.0, 40.0]


def test_level_equal_to_trigger_raises_alarm(engine) -> None:
    out = ingest_level(engine, 50.0, "n1")
    assert out.alarm_active is True
    assert engine.status().mode is AlarmMode.ACTIVE_AUTO


def test_raise_sets_and_clear_resets_alarm_started_at(engine, clock) -> None:
    ingest_level(engine, 70, "n1")
    assert engine.status().alarm_started_at == T0

    clock.advance(30)
    ingest_level(engine, 80, "n1")
    assert engine.status().alarm_started_at == T0

    clock.advance(30)
    ingest_level(engine, 10, "n1")
    s = engine.status()
    assert s.alarm_active is False
    assert s.alarm_started_at is None


def test_accepted_readings_update_state_and_counter(engine, clock) -> None:
    clock.advance(5)
    out = ingest_level(engine, 12.5, "node-a", wifi_rssi=-61)

    s = engine.status()
    assert out.accepted is True
    assert out.sheets_logged is True
    assert out.connection_count == 1
    assert out.row_ref == "2026-03!1"
    assert s.current_water_level == 12.5
    assert s.last_reading_at == clock.now
    assert s.last_node_id == "node-a"


def test_log_row_layout(engine, backend) -> None:
    ingest_level(engine, 12.3456, "node-a", wifi_rssi=-61)
    ingest_level(engine, 13, None)

    assert backend.headers["2026-03"] == [
        "timestamp", "water_level", "trigger_level", "alarm_status", "node_id", "wifi_rssi",
    ]
    assert backend.rows()[0] == [_iso(T0), 12.35, 50.0, "OFF", "node-a", -61]
    assert backend.rows()[1][4:] == ["unknown", ""]


@pytest.mark.parametrize("bad", ["abc", None, float("nan"), float("inf"), True, 10**400])
def test_invalid_reading_is_rejected_without_state_change(engine, backend, bad) -> None:
    before = engine.status()
    out = ingest_level(engine, bad, "n1")

    assert out.accepted is False
    assert out.error == INVALID_READING
    assert engine.status() == before
    assert backend.rows() == []


# --- durable log failures ---

def test_log_failure_is_partial_success(engine, backend) -> None:
    ingest_level(engine, 10, "n1")
    backend.fail_appends = 1

    out = ingest_level(engine, 70, "n1")

    assert out.accepted is True
    assert out.alarm_active is True
    assert out.sheets_logged is False
    assert out.log_error and "quota exceeded" in out.log_error
    assert engine.status().current_water_level == 70
    assert engine.status().log_store_ready is False
    assert len(backend.rows()) == 1


def test_stale_handle_is_reinitialized_and_retried_once(engine, backend) -> None:
    ingest_level(engine, 10, "n1")
    opens = backend.open_calls
    backend.stale_appends = 1

    out = ingest_level(engine, 11, "n1")

    assert out.sheets_logged is True
    assert backend.open_calls == opens + 1
    assert len(backend.rows()) == 2
    assert engine.status().log_store_ready is True


def test_log_recovers_after_failure(engine, backend) -> None:
    backend.fail_appends = 1
    assert ingest_level(engine, 10, "n1").sheets_logged is False
    assert ingest_level(engine, 11, "n1").sheets_logged is True
    assert engine.status().log_store_ready is True


# --- trigger level ---

@pytest.mark.parametrize("bad", [0, -5, float("nan"), "10", None, True, 10**400])
def test_set_trigger_rejects_invalid_levels(engine, backend, bad) -> None:
    out = engine.set_trigger(bad)
    assert out.ok is False
    assert out.error == INVALID_TRIGGER
    assert engine.status().trigger_level == 50.0
    assert backend.rows() == []


def test_set_trigger_logs_change_row(engine, backend) -> None:
    ingest_level(engine, 33, "n1")
    out = engine.set_trigger(80)

    assert out.ok is True
    assert out.sheets_logged is True
    assert engine.status().trigger_level == 80.0
    last = backend.rows()[-1]
    assert last[1:5] == [33.0, 80.0, "OFF", "manual_trigger_change"]


def test_set_trigger_upper_bound_is_optional(engine) -> None:
    assert engine.set_trigger(250, max_level=200).ok is False
    assert engine.set_trigger(200, max_level=200).ok is True
    assert engine.set_trigger(250).ok is True
    assert engine.status().trigger_level == 250.0


def test_new_trigger_applies_from_next_reading(engine, sink) -> None:
    ingest_level(engine, 40, "n1")
    engine.set_trigger(30)
    assert engine.status().alarm_active is False

    ingest_level(engine, 40, "n1")
    assert engine.status().alarm_active is True
    assert sink.types() == ["alarm_raised"]


# --- manual override and auto-expiry ---

def test_force_on_arms_timer_and_expires_after_configured_duration(engine, backend, sink, timers) -> None:
    out = engine.force_alarm(True)

    assert out.ok is True
    s = engine.status()
    assert s.alarm_active is True
    assert s.manual_override is True
    assert s.mode is AlarmMode.ACTIVE_MANUAL
    assert timers.last.delay_s == 240.0
    assert timers.last.started is True

    timers.last.fire()

    s = engine.status()
    assert s.alarm_active is False
    assert s.manual_override is False
    assert s.alarm_started_at is None
    assert _nodes(backend) == ["manual_on", "auto_off"]
    assert _statuses(backend) == ["ON", "OFF"]
    assert sink.types() == ["alarm_expired"]


def test_custom_expiry_duration(make_engine, timers) -> None:
    engine = make_engine(override_expiry_s=5.0)
    engine.force_alarm(True)
    assert timers.last.delay_s == 5.0


def test_force_off_before_expiry_neutralizes_stale_timer(engine, backend, sink, timers) -> None:
    engine.force_alarm(True)
    pending = timers.last
    engine.force_alarm(False)

    assert pending.cancelled is True
    pending.fire()

    s = engine.status()
    assert s.alarm_active is False
    assert s.manual_override is False
    assert _nodes(backend) == ["manual_on", "manual_off"]
    assert sink.types() == []


def test_second_force_on_supersedes_first_timer(engine, timers) -> None:
    engine.force_alarm(True)
    first = timers.last
    engine.force_alarm(True)
    second = timers.last

    assert first is not second
    assert first.cancelled is True

    first.fire()
    assert engine.status().alarm_active is True
    assert engine.status().manual_override is True

    second.fire()
    assert engine.status().alarm_active is False


def test_stale_timer_after_off_on_cycle_is_ignored(engine, timers) -> None:
    engine.force_alarm(True)
    stale = timers.last
    engine.force_alarm(False)
    engine.force_alarm(True)

    stale.fire()
    assert engine.status().manual_override is True


def test_override_suppresses_auto_clear_but_readings_still_logged(engine, backend) -> None:
    engine.force_alarm(True)
    out = ingest_level(engine, 10, "n1")

    s = engine.status()
    assert out.alarm_active is True
    assert s.alarm_active is True
    assert s.current_water_level == 10
    assert backend.rows()[-1][1] == 10.0
    assert backend.rows()[-1][3] == "ON"


def test_force_on_keeps_started_at_of_active_alarm(engine, clock) -> None:
    ingest_level(engine, 70, "n1")
    clock.advance(60)
    engine.force_alarm(True)
    assert engine.status().alarm_started_at == T0


def test_force_off_clears_auto_alarm(engine, sink) -> None:
    ingest_level(engine, 70, "n1")
    engine.force_alarm(False)
    s = engine.status()
    assert s.alarm_active is False
    assert s.alarm_started_at is None


def test_expiry_after_override_readings_returns_to_policy(engine, sink, timers) -> None:
    engine.force_alarm(True)
    ingest_level(engine, 70, "n1")
    timers.last.fire()
    assert engine.status().alarm_active is False

    ingest_level(engine, 70, "n1")
    assert engine.status().alarm_active is True
    assert sink.types() == ["alarm_expired", "alarm_raised"]


# --- queries ---

def test_status_is_idempotent(engine) -> None:
    ingest_level(engine, 20, "n1")
    a = engine.status()
    b = engine.status()
    assert a is b
    assert a == b


def test_history_returns_last_rows_oldest_first(engine) -> None:
    for level in (1, 2, 3, 4, 5, 6):
        ingest_level(engine, level, "n1")

    rows = engine.history(3)
    assert [r.water_level for r in rows] == [4.0, 5.0, 6.0]
    assert len(engine.history()) == 5


def test_history_empty_when_log_unavailable(engine, backend) -> None:
    backend.fail_open = True
    assert engine.history() == []
    assert engine.status().log_store_ready is False


def test_log_health_reports_connection(engine, backend) -> None:
    engine.reinit_log()
    assert engine.log_health() == {"connection": "ok", "title": "memory", "partition_count": 1}


def test_reinit_log_failure(engine, backend) -> None:
    backend.fail_open = True
    assert engine.reinit_log() is False
    assert engine.status().log_store_ready is False


# --- snapshot and restore ---

def test_every_mutation_is_snapshotted(engine, snapshot_path) -> None:
    ingest_level(engine, 42, "n1")
    record = json.loads(snapshot_path.read_text(encoding="utf-8"))
    assert record["currentWaterLevel"] == 42
    assert record["connectionCount"] == 1

    engine.set_trigger(40)
    record = json.loads(snapshot_path.read_text(encoding="utf-8"))
    assert record["triggerLevel"] == 40
    assert record["alarmActive"] is False


def test_load_snapshot_warm_starts_new_engine(engine, backend, sink, clock, timers, snapshot_path) -> None:
    ingest_level(engine, 70, "n1")
    ingest_level(engine, 71, "n1")
    saved = engine.status()

    other = AlarmStateEngine(
        log=DurableLog(backend),
        snapshots=JsonSnapshotStore(snapshot_path),
        notifier=sink,
        clock=clock,
        timer_factory=timers,
    )
    loaded = other.load_snapshot()

    assert loaded.current_water_level == saved.current_water_level
    assert loaded.trigger_level == saved.trigger_level
    assert loaded.alarm_active is True
    assert loaded.alarm_started_at == saved.alarm_started_at
    assert loaded.connection_count == 2


def test_load_snapshot_resumes_override_with_remaining_time(engine, backend, clock, timers, snapshot_path) -> None:
    engine.force_alarm(True)
    clock.advance(100)

    other = AlarmStateEngine(
        log=DurableLog(backend),
        snapshots=JsonSnapshotStore(snapshot_path),
        clock=clock,
        timer_factory=timers,
    )
    other.load_snapshot()

    assert other.status().manual_override is True
    assert timers.last.delay_s == pytest.approx(140.0)


def test_load_snapshot_without_file_keeps_defaults(engine) -> None:
    s = engine.load_snapshot()
    assert s.trigger_level == 50.0
    assert s.connection_count == 0


def _seed_rows(backend, *rows) -> None:
    backend.create_partition("2026-03", [
        "timestamp", "water_level", "trigger_level", "alarm_status", "node_id", "wifi_rssi",
    ])
    backend.partitions["2026-03"].extend(list(r) for r in rows)


def test_restore_takes_last_row_over_snapshot(engine, backend) -> None:
    _seed_rows(
        backend,
        ["2026-03-10T07:00:00+00:00", 20, 45, "OFF", "n1", ""],
        ["2026-03-10T07:30:00+00:00", 47.5, 45, "ON", "n1", "-70"],
    )

    s = engine.restore()

    assert s.alarm_active is True
    assert s.manual_override is False
    assert s.current_water_level == 47.5
    assert s.trigger_level == 45.0
    assert s.last_reading_at == T0.replace(hour=7, minute=30)
    assert s.alarm_started_at == T0.replace(hour=7, minute=30)
    assert s.log_store_ready is True


def test_restore_manual_on_row_resumes_override(engine, backend, clock, timers) -> None:
    _seed_rows(backend, ["2026-03-10T07:59:00+00:00", 10, 50, "ON", "manual_on", ""])

    s = engine.restore()

    assert s.manual_override is True
    assert timers.last.delay_s == pytest.approx(180.0)
    timers.last.fire()
    assert engine.status().alarm_active is False


def test_restart_mid_override_keeps_override_after_sensor_row(engine, backend, sink, clock, timers, snapshot_path) -> None:
    engine.force_alarm(True)
    clock.advance(60)
    ingest_level(engine, 10, "n1")
    assert _nodes(backend)[-1] == "n1"

    restarted = AlarmStateEngine(
        log=DurableLog(backend),
        snapshots=JsonSnapshotStore(snapshot_path),
        notifier=sink,
        clock=clock,
        timer_factory=timers,
    )
    restarted.load_snapshot()
    s = restarted.restore()

    assert s.alarm_active is True
    assert s.manual_override is True
    assert s.alarm_started_at == T0
    assert timers.last.delay_s == pytest.approx(180.0)

    ingest_level(restarted, 10, "n1")
    assert restarted.status().alarm_active is True
    assert "alarm_cleared" not in sink.types()

    timers.last.fire()
    s = restarted.status()
    assert s.alarm_active is False
    assert s.manual_override is False
    assert sink.types() == ["alarm_expired"]


def test_restore_off_row_clears_snapshot_override(engine, backend, timers) -> None:
    engine.force_alarm(True)
    backend.partitions["2026-03"].append(["2026-03-10T08:00:00+00:00", 5, 50, "OFF", "manual_off", ""])

    s = engine.restore()

    assert s.alarm_active is False
    assert s.manual_override is False
    assert timers.last.cancelled is True


def test_restore_expired_manual_override_fires_immediately(engine, backend, timers) -> None:
    _seed_rows(backend, ["2026-03-10T07:00:00+00:00", 10, 50, "ON", "manual_on", ""])
    engine.restore()
    assert timers.last.delay_s == 0.0


def test_restore_off_row_clears_snapshot_alarm(engine, backend) -> None:
    ingest_level(engine, 70, "n1")
    backend.partitions["2026-03"].append(["2026-03-10T08:00:00+00:00", 5, 50, "OFF", "n1", ""])

    s = engine.restore()
    assert s.alarm_active is False
    assert s.alarm_started_at is None


def test_restore_without_rows_is_skipped(engine) -> None:
    s = engine.restore()
    assert s.alarm_active is False
    assert s.trigger_level == 50.0
    assert s.log_store_ready is True


def test_restore_with_unavailable_log_is_skipped(engine, backend) -> None:
    backend.fail_open = True
    s = engine.restore()
    assert s.trigger_level == 50.0
    assert s.log_store_ready is False


def test_shutdown_cancels_pending_timer(engine, timers) -> None:
    engine.force_alarm(True)
    engine.shutdown()
    assert timers.last.cancelled is True


def test_reading_update_notifications_are_optional(make_engine, sink) -> None:
    engine = make_engine(notify_every_reading=True)
    ingest_level(engine, 10, "n1")
    assert sink.types() == ["reading_update"]
    assert sink.events[0].target == "chat-1"
    assert "Water Level: 10 cm" in sink.events[0].text


def test_engine_config_defaults() -> None:
    cfg = EngineConfig()
    assert cfg.default_trigger_level == 50.0
    assert cfg.override_expiry_s == 240.0
    assert replace(cfg, history_rows=3).history_rows == 3
    assert AlarmStatus.from_bool(True) is AlarmStatus.ON
