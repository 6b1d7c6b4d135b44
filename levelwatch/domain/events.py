"""
Alarm event domain models.

An `AlarmEvent` represents *what happened* at a specific time, while
`SystemState` (in models.py) represents *what is currently true*.

Events are used for:
- operator notifications (chat messages)
- log lines and audit trails
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class AlarmTransition(str, Enum):
    """
    Alarm lifecycle transition.

    Members
    -------
    RAISED : str
        Threshold policy switched the alarm on.
    CLEARED : str
        Threshold policy switched the alarm off.
    EXPIRED : str
        An operator-forced alarm reached its auto-off deadline.
    """

    RAISED = "RAISED"
    CLEARED = "CLEARED"
    EXPIRED = "EXPIRED"


@dataclass(frozen=True)
class AlarmEvent:
    """
    Alarm event emitted when the alarm output transitions.

    Parameters
    ----------
    transition
        Lifecycle transition.
    timestamp
        When the transition occurred.
    water_level
        Water level at the time of the transition.
    trigger_level
        Trigger level in force at the time of the transition.
    node_id
        Node that submitted the reading, if the transition came from one.
    """

    transition: AlarmTransition
    timestamp: datetime
    water_level: float
    trigger_level: float
    node_id: Optional[str] = None
