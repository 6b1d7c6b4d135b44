from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import List

from levelwatch.notification.base import NotificationEvent, Notifier

logger = logging.getLogger(__name__)

_STOP = "__stop__"


@dataclass(frozen=True)
class NotificationThreadConfig:
    """
    Delivery tunables for `NotificationWorkerThread`.

    Parameters
    ----------
    max_queue
        Events held before `emit` starts dropping the newest.
    retry_count
        Extra attempts per notifier after the first failure.
    retry_backoff_s
        Base delay; attempt ``k`` waits ``retry_backoff_s * 2**k``.
    poll_timeout_s
        Queue poll interval, bounding how long `stop` waits for the loop.
    """

    max_queue: int = 2000
    retry_count: int = 3
    retry_backoff_s: float = 0.5
    poll_timeout_s: float = 0.5


class NotificationWorkerThread:
    """
    Background delivery of operator notifications (alarm raised, cleared or
    expired, optional per-reading updates).

    The engine and request handlers call `emit`, which only enqueues, so
    they never wait on Telegram. A single daemon thread drains the queue
    and offers each event to every notifier in order.

    Parameters
    ----------
    notifiers
        Delivery backends, typically one `TelegramNotifier`.
    cfg
        Queue size and retry policy.

    Notes
    -----
    Failed deliveries are retried with exponential backoff. After the last
    attempt the error is logged and the event is dropped; it is never
    re-queued, so a dead chat endpoint cannot grow the queue.
    """

    def __init__(self, notifiers: List[Notifier], cfg: NotificationThreadConfig | None = None):
        self._notifiers = notifiers
        self._cfg = cfg or NotificationThreadConfig()
        self._q: "queue.Queue[NotificationEvent]" = queue.Queue(maxsize=self._cfg.max_queue)
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name="notification-worker", daemon=True)

    def start(self) -> None:
        if not self._thread.is_alive():
            self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        try:
            self._q.put_nowait(NotificationEvent(type=_STOP, target=None, text=""))
        except queue.Full:
            pass
        if self._thread.is_alive():
            self._thread.join(timeout=2.0)

    def emit(self, event: NotificationEvent) -> None:
        try:
            self._q.put_nowait(event)
        except queue.Full:
            # Drop newest if overloaded to keep request handling responsive
            logger.warning("Notification queue full, dropping %s event", event.type)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                event = self._q.get(timeout=self._cfg.poll_timeout_s)
            except queue.Empty:
                continue

            if event.type == _STOP:
                break

            for notifier in self._notifiers:
                self._send_with_retries(notifier, event)

    def _send_with_retries(self, notifier: Notifier, event: NotificationEvent) -> None:
        for attempt in range(self._cfg.retry_count + 1):
            try:
                notifier.notify(event)
                return
            except Exception as e:
                if attempt >= self._cfg.retry_count:
                    logger.error("Notification %s to %s failed: %r", event.type, event.target, e)
                    return
                logger.debug("Notification %s attempt %d failed, retrying: %r", event.type, attempt + 1, e)
                time.sleep(self._cfg.retry_backoff_s * (2 ** attempt))
