"""
Alarm state engine.

`AlarmStateEngine` owns the authoritative `SystemState` and is the only
component allowed to mutate it. It:
- applies the threshold/override policy (`levelwatch.core.policy`) to each
  reading,
- manages the manual-override auto-expiry timer,
- keeps the local snapshot in step with every mutation,
- appends one durable log row per reading or operator command,
- emits operator notifications for alarm transitions.

Concurrency Model
-----------------
All mutations, including the expiry timer's check-and-clear, run under one
re-entrant lock. Snapshot saves happen under the lock (local and fast). Log
appends and notifications happen after the lock is released, using values
copied while it was held, so a slow log store never blocks other requests.
A log row may therefore land after the state has already moved on; the log is
an audit trail, not a transaction log.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from levelwatch.core.override_timer import OverrideTimer, TimerFactory
from levelwatch.core.policy import evaluate_reading
from levelwatch.domain.errors import LogUnavailable, RestoreSkipped
from levelwatch.domain.events import AlarmEvent, AlarmTransition
from levelwatch.domain.models import (
    UNKNOWN_NODE,
    CommandOutcome,
    EventTag,
    IngestOutcome,
    LogRow,
    Reading,
    SystemState,
    _iso,
    utc_now,
)
from levelwatch.notification.base import NotificationEvent, NotificationSink
from levelwatch.notification.messages import DEFAULT_DISPLAY_TZ, alarm_event_text, reading_update_text
from levelwatch.storage.durable_log import DurableLog
from levelwatch.storage.snapshot_store import SnapshotStore

logger = logging.getLogger(__name__)

INVALID_READING = "InvalidReading"
INVALID_TRIGGER = "InvalidTrigger"


@dataclass(frozen=True)
class EngineConfig:
    """
    Engine tunables.

    Parameters
    ----------
    default_trigger_level
        Trigger level (cm) used until a snapshot, the log or an operator
        sets another.
    override_expiry_s
        Lifetime of an operator-forced alarm before it turns itself off.
    trigger_min_exclusive
        Trigger levels must be strictly greater than this.
    alert_target
        Notification target (chat id) for alarm transitions.
    notify_every_reading
        Also send a "sensor data update" message for every accepted reading.
    display_timezone
        Timezone used to render timestamps in messages.
    history_rows
        Default number of rows returned by :meth:`AlarmStateEngine.history`.
    """

    default_trigger_level: float = 50.0
    override_expiry_s: float = 240.0
    trigger_min_exclusive: float = 0.0
    alert_target: Optional[str] = None
    notify_every_reading: bool = False
    display_timezone: str = DEFAULT_DISPLAY_TZ
    history_rows: int = 5


def _is_finite_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        # int too large for a float
        return False


class AlarmStateEngine:
    """
    Single authoritative owner of the water-level alarm state.

    Build one instance at process start and pass it to the transport layers.

    Parameters
    ----------
    log
        Durable log adapter.
    snapshots
        Optional local snapshot store.
    notifier
        Optional fire-and-forget notification sink.
    cfg
        Engine configuration.
    clock
        Returns the current UTC time. Injected for tests.
    timer_factory
        Builds the override-expiry timer. Injected for tests.
    """

    def __init__(
        self,
        log: DurableLog,
        snapshots: Optional[SnapshotStore] = None,
        notifier: Optional[NotificationSink] = None,
        cfg: Optional[EngineConfig] = None,
        clock: Callable[[], datetime] = utc_now,
        timer_factory: Optional[TimerFactory] = None,
    ):
        self._cfg = cfg or EngineConfig()
        self._log = log
        self._snapshots = snapshots
        self._notifier = notifier
        self._clock = clock
        self._lock = threading.RLock()
        self._state = SystemState(trigger_level=self._cfg.default_trigger_level, started_at=clock())
        self._timer = OverrideTimer(self._cfg.override_expiry_s, self._on_override_expired, timer_factory)

    @property
    def config(self) -> EngineConfig:
        return self._cfg

    # --- Queries ---
    def status(self) -> SystemState:
        """Return the current state. Pure read; the value is immutable."""
        with self._lock:
            return self._state

    def history(self, n: Optional[int] = None) -> List[LogRow]:
        """
        Return up to the last ``n`` rows of the current month's log.

        Returns an empty list when the log is unavailable.
        """
        count = self._cfg.history_rows if n is None else max(int(n), 0)
        try:
            rows = self._log.tail(self._clock(), count)
        except LogUnavailable as e:
            logger.warning("History unavailable: %s", e)
            self._set_log_ready(False)
            return []
        self._set_log_ready(True)
        return rows

    def log_health(self) -> Dict[str, Any]:
        """Probe the durable log and describe it for health reports."""
        try:
            desc = self._log.describe()
        except LogUnavailable as e:
            return {"connection": "error", "error": str(e)}
        return {"connection": "ok", **desc}

    # --- Sensor ingestion ---
    def ingest(self, reading: Reading) -> IngestOutcome:
        """
        Accept one reading and apply the alarm policy.

        The reading is rejected (no state change) unless its water level is a
        finite number. Otherwise state is updated and the snapshot saved
        before the log append; a failed append only clears
        ``sheets_logged`` on the returned outcome.

        Parameters
        ----------
        reading
            Sensor reading.

        Returns
        -------
        IngestOutcome
            Acceptance plus durability flags.
        """
        if not _is_finite_number(reading.water_level):
            logger.warning("Rejected reading from %s: water_level=%r", reading.node_id, reading.water_level)
            with self._lock:
                current = self._state
            return IngestOutcome(
                accepted=False,
                alarm_active=current.alarm_active,
                sheets_logged=False,
                error=INVALID_READING,
                trigger_level=current.trigger_level,
                connection_count=current.connection_count,
            )

        level = float(reading.water_level)
        node = reading.node_id or UNKNOWN_NODE
        now = reading.observed_at
        event: Optional[AlarmEvent] = None

        with self._lock:
            prev = self._state
            decision = evaluate_reading(
                alarm_active=prev.alarm_active,
                manual_override=prev.manual_override,
                water_level=level,
                trigger_level=prev.trigger_level,
            )

            started = prev.alarm_started_at
            if decision.transition is AlarmTransition.RAISED:
                started = now
            elif decision.transition is AlarmTransition.CLEARED:
                started = None

            state = replace(
                prev,
                current_water_level=level,
                last_reading_at=now,
                connection_count=prev.connection_count + 1,
                alarm_active=decision.should_be_active,
                alarm_started_at=started,
                last_node_id=node,
            )
            self._commit_locked(state)

            row = LogRow(
                timestamp=now,
                water_level=level,
                trigger_level=state.trigger_level,
                alarm_status=state.alarm_status,
                node_id=node,
                wifi_rssi=reading.wifi_rssi,
            )
            if decision.transition is not None:
                event = AlarmEvent(
                    transition=decision.transition,
                    timestamp=now,
                    water_level=level,
                    trigger_level=state.trigger_level,
                    node_id=node,
                )

        logger.info(
            "Reading %.2f cm from %s (trigger %.2f cm, alarm %s, #%d)",
            level,
            node,
            state.trigger_level,
            state.alarm_status.value,
            state.connection_count,
        )
        if event is not None:
            logger.warning("Alarm %s at %.2f cm (trigger %.2f cm)", event.transition.value, level, state.trigger_level)
            self._notify_event(event)

        row_ref, log_error = self._append(row)

        if self._cfg.notify_every_reading:
            self._emit(
                "reading_update",
                reading_update_text(reading, state, row_ref is not None, self._cfg.display_timezone),
                now,
            )

        return IngestOutcome(
            accepted=True,
            alarm_active=state.alarm_active,
            sheets_logged=row_ref is not None,
            trigger_level=state.trigger_level,
            connection_count=state.connection_count,
            row_ref=row_ref,
            log_error=log_error,
        )

    # --- Operator commands ---
    def set_trigger(self, level: Any, max_level: Optional[float] = None) -> CommandOutcome:
        """
        Set the trigger level.

        Parameters
        ----------
        level
            New trigger level in centimeters. Must be a finite number above
            ``trigger_min_exclusive``.
        max_level
            Optional inclusive upper bound enforced by the caller's interface.

        Returns
        -------
        CommandOutcome
            ``ok=False, error="InvalidTrigger"`` if the level is rejected.
        """
        if (
            not _is_finite_number(level)
            or level <= self._cfg.trigger_min_exclusive
            or (max_level is not None and level > max_level)
        ):
            logger.warning("Rejected trigger level %r (max %r)", level, max_level)
            return CommandOutcome(ok=False, error=INVALID_TRIGGER)

        with self._lock:
            now = self._clock()
            state = replace(self._state, trigger_level=float(level))
            self._commit_locked(state)
            row = self._event_row_locked(now, EventTag.TRIGGER_CHANGE)

        logger.info("Trigger level changed to %.2f cm", state.trigger_level)
        row_ref, _ = self._append(row)
        return CommandOutcome(ok=True, sheets_logged=row_ref is not None)

    def force_alarm(self, on: bool) -> CommandOutcome:
        """
        Force the alarm on (with auto-expiry) or off.

        Forcing on sets ``manual_override`` and arms a fresh expiry timer,
        cancelling any earlier one. Forcing off clears both flags and
        cancels the pending timer.
        """
        with self._lock:
            now = self._clock()
            prev = self._state
            if on:
                state = replace(
                    prev,
                    alarm_active=True,
                    manual_override=True,
                    alarm_started_at=prev.alarm_started_at if prev.alarm_active else now,
                )
                self._timer.arm()
            else:
                state = replace(prev, alarm_active=False, manual_override=False, alarm_started_at=None)
                self._timer.disarm()
            self._commit_locked(state)
            row = self._event_row_locked(now, EventTag.MANUAL_ON if on else EventTag.MANUAL_OFF)

        logger.info("Alarm manually switched %s", "ON" if on else "OFF")
        row_ref, _ = self._append(row)
        return CommandOutcome(ok=True, sheets_logged=row_ref is not None)

    def _on_override_expired(self, epoch: int) -> None:
        with self._lock:
            if not self._timer.is_current(epoch):
                logger.debug("Ignoring superseded override timer (epoch %d)", epoch)
                return
            prev = self._state
            if not (prev.alarm_active and prev.manual_override):
                return

            now = self._clock()
            state = replace(prev, alarm_active=False, manual_override=False, alarm_started_at=None)
            self._commit_locked(state)
            row = self._event_row_locked(now, EventTag.AUTO_OFF)
            event = AlarmEvent(
                transition=AlarmTransition.EXPIRED,
                timestamp=now,
                water_level=state.current_water_level,
                trigger_level=state.trigger_level,
            )

        logger.info("Manual alarm expired after %.0f s", self._cfg.override_expiry_s)
        self._append(row)
        self._notify_event(event)

    # --- Startup reconciliation ---
    def load_snapshot(self) -> SystemState:
        """
        Warm start from the local snapshot, if any.

        A restored manual override is resumed with its remaining lifetime.
        """
        if self._snapshots is None:
            return self.status()

        with self._lock:
            loaded = self._snapshots.load(self._state)
            if loaded is None:
                logger.info("No usable snapshot; starting from defaults")
                return self._state

            if loaded.manual_override and not loaded.alarm_active:
                loaded = replace(loaded, manual_override=False)
            self._state = loaded
            self._resume_override_locked(loaded.alarm_started_at)

        logger.info(
            "Snapshot loaded: level %.2f cm, trigger %.2f cm, alarm %s",
            loaded.current_water_level,
            loaded.trigger_level,
            loaded.alarm_status.value,
        )
        return loaded

    def restore(self) -> SystemState:
        """
        Reconcile state with the last row of the current log partition.

        The log overrides the snapshot: alarm status, water level, trigger
        level and last reading time are taken from the row. An override kept
        by the snapshot survives an ``ON`` row, whichever node wrote it; a
        row written by a manual force-on also resumes one. Either way its
        timer resumes with the remaining lifetime. An ``OFF`` row clears it.
        Never raises; a missing row or unavailable log is logged and ignored.
        """
        try:
            last = self._last_logged_row()
        except RestoreSkipped as e:
            logger.info("Restore skipped: %s", e)
            return self.status()

        with self._lock:
            prev = self._state
            kept = prev.alarm_active and prev.manual_override
            manual = last.alarm_active and (kept or last.node_id == EventTag.MANUAL_ON.value)
            if last.alarm_active:
                started = prev.alarm_started_at if prev.alarm_active and prev.alarm_started_at else last.timestamp
            else:
                started = None

            state = replace(
                prev,
                alarm_active=last.alarm_active,
                manual_override=manual,
                current_water_level=last.water_level,
                trigger_level=last.trigger_level if last.trigger_level > 0 else prev.trigger_level,
                last_reading_at=last.timestamp,
                alarm_started_at=started,
                log_store_ready=True,
            )
            self._commit_locked(state)
            if manual:
                self._resume_override_locked(started if kept else last.timestamp)
            else:
                self._timer.disarm()

        logger.info(
            "State restored from log: level %.2f cm, trigger %.2f cm, alarm %s",
            state.current_water_level,
            state.trigger_level,
            state.alarm_status.value,
        )
        return state

    def _last_logged_row(self) -> LogRow:
        try:
            rows = self._log.tail(self._clock(), 1)
        except LogUnavailable as e:
            self._set_log_ready(False)
            raise RestoreSkipped(f"log unavailable: {e}") from e
        self._set_log_ready(True)
        if not rows:
            raise RestoreSkipped("no rows in current partition")
        return rows[-1]

    def _resume_override_locked(self, armed_at: Optional[datetime]) -> None:
        if not (self._state.alarm_active and self._state.manual_override):
            return
        remaining = self._cfg.override_expiry_s
        if armed_at is not None:
            elapsed = (self._clock() - armed_at).total_seconds()
            remaining = max(self._cfg.override_expiry_s - elapsed, 0.0)
        self._timer.arm(remaining)

    def reinit_log(self) -> bool:
        """
        Reload the durable log handle and resolve the current partition.

        Returns
        -------
        bool
            True if the log is usable afterwards.
        """
        try:
            self._log.reinit()
            self._log.ensure_partition(self._clock())
        except LogUnavailable as e:
            logger.error("Log reinitialization failed: %s", e)
            self._set_log_ready(False)
            return False
        logger.info("Log reinitialized")
        self._set_log_ready(True)
        return True

    def shutdown(self) -> None:
        """Cancel the pending override timer."""
        self._timer.cancel()

    # --- Internals ---
    def _commit_locked(self, state: SystemState) -> None:
        self._state = state
        if self._snapshots is not None:
            self._snapshots.save(state)

    def _event_row_locked(self, now: datetime, tag: EventTag) -> LogRow:
        s = self._state
        return LogRow(
            timestamp=now,
            water_level=s.current_water_level,
            trigger_level=s.trigger_level,
            alarm_status=s.alarm_status,
            node_id=tag.value,
        )

    def _set_log_ready(self, ready: bool) -> None:
        with self._lock:
            if self._state.log_store_ready != ready:
                self._state = replace(self._state, log_store_ready=ready)

    def _append(self, row: LogRow) -> Tuple[Optional[str], Optional[str]]:
        try:
            ref = self._log.append(row)
        except LogUnavailable as e:
            logger.error("Durable log write failed for %s row: %s", row.node_id, e)
            self._set_log_ready(False)
            return None, str(e)
        self._set_log_ready(True)
        return ref, None

    def _notify_event(self, ev: AlarmEvent) -> None:
        text = alarm_event_text(ev, self._cfg.display_timezone, self._cfg.override_expiry_s)
        self._emit(f"alarm_{ev.transition.value.lower()}", text, ev.timestamp)

    def _emit(self, kind: str, text: str, ts: datetime) -> None:
        if self._notifier is None:
            logger.info("Notification (%s): %s", kind, text)
            return
        try:
            self._notifier.emit(
                NotificationEvent(type=kind, target=self._cfg.alert_target, text=text, ts=_iso(ts))
            )
        except Exception as e:
            logger.error("Notification %s could not be queued: %r", kind, e)
