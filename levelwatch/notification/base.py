from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol


@dataclass(frozen=True)
class NotificationEvent:
    """
    Notification event contract used by the notification layer.

    A 'NotificationEvent' represents *what should be communicated* and *to
    whom*, not *how* it is delivered.

    Parameters
    ----------
    type
        Event type identifier (e.g., "alarm_raised", "alarm_cleared",
        "override_expired", "reading_update").
    target
        Delivery target (a chat id for Telegram). None means "log only".
    text
        Plain-text message body.
    ts
        Optional timestamp string describing when the event occurred.
    """

    type: str
    target: Optional[str]
    text: str
    ts: Optional[str] = None


class Notifier(Protocol):
    """
    Protocol interface for notification delivery.

    Any notifier implementation can be used if it provides a 'notify(event)'
    method with the correct signature. Implementations may raise; the
    `NotificationWorkerThread` owns retries and swallows final failures.
    """

    def notify(self, event: NotificationEvent) -> None:
        ...


class NotificationSink(Protocol):
    """Fire-and-forget entry point used by the engine (`emit` never blocks)."""

    def emit(self, event: NotificationEvent) -> None:
        ...
