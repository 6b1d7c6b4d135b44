"""
Unit tests for levelwatch.core.override_timer.OverrideTimer.

A manual timer factory stands in for `threading.Timer`, so expiry only
happens when a test fires a timer explicitly. One test uses the real
thread timer with a short delay.
"""

from __future__ import annotations

import threading
from typing import List

from levelwatch.core.override_timer import OverrideTimer, thread_timer


def test_arm_starts_timer_with_configured_delay(timers) -> None:
    fired: List[int] = []
    t = OverrideTimer(240.0, fired.append, timers)

    epoch = t.arm()

    assert timers.last.delay_s == 240.0
    assert timers.last.started is True
    assert t.pending is True
    assert t.is_current(epoch)


def test_fire_passes_epoch_and_clears_pending(timers) -> None:
    fired: List[int] = []
    t = OverrideTimer(1.0, fired.append, timers)
    epoch = t.arm()

    timers.last.fire()

    assert fired == [epoch]
    assert t.pending is False


def test_rearm_cancels_previous_and_bumps_epoch(timers) -> None:
    t = OverrideTimer(1.0, lambda e: None, timers)
    e1 = t.arm()
    first = timers.last
    e2 = t.arm()

    assert first.cancelled is True
    assert e2 == e1 + 1
    assert not t.is_current(e1)
    assert t.is_current(e2)


def test_stale_fire_does_not_clear_current_handle(timers) -> None:
    fired: List[int] = []
    t = OverrideTimer(1.0, fired.append, timers)
    e1 = t.arm()
    stale = timers.last
    t.arm()

    stale.fire()

    assert fired == [e1]
    assert t.pending is True


def test_disarm_invalidates_epoch(timers) -> None:
    t = OverrideTimer(1.0, lambda e: None, timers)
    e1 = t.arm()
    t.disarm()

    assert timers.last.cancelled is True
    assert t.pending is False
    assert not t.is_current(e1)


def test_cancel_keeps_epoch(timers) -> None:
    t = OverrideTimer(1.0, lambda e: None, timers)
    e1 = t.arm()
    t.cancel()

    assert timers.last.cancelled is True
    assert t.is_current(e1)


def test_arm_with_explicit_delay_clamps_negative(timers) -> None:
    t = OverrideTimer(240.0, lambda e: None, timers)
    t.arm(30.0)
    assert timers.last.delay_s == 30.0
    t.arm(-5.0)
    assert timers.last.delay_s == 0.0


def test_thread_timer_fires_on_daemon_thread() -> None:
    done = threading.Event()
    t = OverrideTimer(0.01, lambda e: done.set(), thread_timer)
    t.arm()
    assert done.wait(2.0)


def test_thread_timer_is_daemon() -> None:
    handle = thread_timer(10.0, lambda: None)
    assert handle.daemon is True
    assert handle.name == "override-expiry"
