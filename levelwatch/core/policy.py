"""
Threshold/override alarm policy.

The policy is stateless: it maps the current alarm flags plus one reading to
an `AlarmDecision`. `AlarmStateEngine` applies the decision to its state and
performs the side effects (timestamps, notifications, log rows).

Transition table
----------------
=============  =====================================  =============
current        condition                              next
=============  =====================================  =============
INACTIVE       level >= trigger and not override      ACTIVE_AUTO
ACTIVE_AUTO    level >= trigger                       ACTIVE_AUTO
ACTIVE_AUTO    level < trigger and not override       INACTIVE
any            override                               unchanged
=============  =====================================  =============
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from levelwatch.domain.events import AlarmTransition


@dataclass(frozen=True)
class AlarmDecision:
    """
    Result of evaluating one reading against the policy.

    Parameters
    ----------
    should_be_active
        Alarm output after this reading.
    transition
        RAISED / CLEARED when the output flips, None otherwise.
    """

    should_be_active: bool
    transition: Optional[AlarmTransition] = None


def evaluate_reading(
    *,
    alarm_active: bool,
    manual_override: bool,
    water_level: float,
    trigger_level: float,
) -> AlarmDecision:
    """
    Evaluate the threshold policy for one reading.

    Parameters
    ----------
    alarm_active
        Current alarm output.
    manual_override
        Whether an operator-forced alarm is pending. Suppresses the policy.
    water_level
        Reading in centimeters.
    trigger_level
        Threshold in centimeters. Reaching it (``>=``) counts as above.

    Returns
    -------
    AlarmDecision
        Next alarm output and the transition, if any.
    """
    if manual_override:
        return AlarmDecision(should_be_active=alarm_active)

    above = water_level >= trigger_level

    if above and not alarm_active:
        return AlarmDecision(should_be_active=True, transition=AlarmTransition.RAISED)
    if not above and alarm_active:
        return AlarmDecision(should_be_active=False, transition=AlarmTransition.CLEARED)
    return AlarmDecision(should_be_active=alarm_active)
