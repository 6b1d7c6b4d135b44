from __future__ import annotations

import threading
from typing import Callable, Optional, Protocol


class TimerHandle(Protocol):
    """Minimal interface of a single-shot timer (`threading.Timer` compatible)."""

    def start(self) -> None:
        ...

    def cancel(self) -> None:
        ...


TimerFactory = Callable[[float, Callable[[], None]], TimerHandle]


def thread_timer(delay_s: float, fn: Callable[[], None]) -> TimerHandle:
    """Default timer factory: a daemon `threading.Timer`."""
    t = threading.Timer(delay_s, fn)
    t.name = "override-expiry"
    t.daemon = True
    return t


class OverrideTimer:
    """
    Cancellable single-shot timer for manual-override auto-expiry.

    Every call to :meth:`arm` or :meth:`disarm` cancels the pending timer and
    bumps an epoch counter. The expiry callback receives the epoch it was
    armed with, so the owner can ignore a callback that was already
    superseded even if cancellation lost the race with the timer thread.

    Parameters
    ----------
    duration_s
        Delay between arming and expiry.
    on_expire
        Callback invoked from the timer thread with the arm epoch.
    timer_factory
        Builds the underlying timer. Defaults to :func:`thread_timer`; tests
        inject a manual timer.
    """

    def __init__(
        self,
        duration_s: float,
        on_expire: Callable[[int], None],
        timer_factory: Optional[TimerFactory] = None,
    ):
        self._duration_s = float(duration_s)
        self._on_expire = on_expire
        self._factory = timer_factory or thread_timer
        self._lock = threading.Lock()
        self._epoch = 0
        self._handle: Optional[TimerHandle] = None

    @property
    def duration_s(self) -> float:
        return self._duration_s

    @property
    def epoch(self) -> int:
        with self._lock:
            return self._epoch

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._handle is not None

    def arm(self, delay_s: Optional[float] = None) -> int:
        """
        Cancel any pending timer and arm a fresh one.

        Parameters
        ----------
        delay_s
            Delay before expiry. Defaults to the configured duration; used
            with the remaining time when resuming an override after restart.

        Returns
        -------
        int
            Epoch captured by the new timer.
        """
        delay = self._duration_s if delay_s is None else max(float(delay_s), 0.0)
        with self._lock:
            self._cancel_locked()
            self._epoch += 1
            epoch = self._epoch
            self._handle = self._factory(delay, lambda: self._fire(epoch))
            self._handle.start()
            return epoch

    def disarm(self) -> int:
        """Cancel any pending timer and invalidate its epoch."""
        with self._lock:
            self._cancel_locked()
            self._epoch += 1
            return self._epoch

    def is_current(self, epoch: int) -> bool:
        with self._lock:
            return epoch == self._epoch

    def cancel(self) -> None:
        """Cancel the pending timer without touching the epoch (shutdown)."""
        with self._lock:
            self._cancel_locked()

    def _cancel_locked(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self, epoch: int) -> None:
        with self._lock:
            if epoch == self._epoch:
                self._handle = None
        self._on_expire(epoch)
