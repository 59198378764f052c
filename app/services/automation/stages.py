"""Stage classification and the transition rule of the per-user state machine."""
from __future__ import annotations

from bisect import bisect_right
from enum import Enum
from typing import Sequence


class Transition(str, Enum):
    FORWARD = "forward"
    NOOP = "noop"
    RECOVERY = "recovery"
    INVALID_DECREASE = "invalid_decrease"


def classify(elapsed_days: float, thresholds: Sequence[int]) -> int:
    """Highest stage whose threshold is <= elapsed_days, or 0.

    ``thresholds`` must be strictly increasing; stage N is thresholds[N-1].
    ``elapsed_days`` may be math.inf for a user with no activity at all,
    which lands on the last stage.
    """
    return bisect_right(thresholds, elapsed_days)


def decide(current_stage: int, new_stage: int) -> Transition:
    if new_stage > current_stage:
        return Transition.FORWARD
    if new_stage == current_stage:
        return Transition.NOOP
    if new_stage == 0:
        return Transition.RECOVERY
    return Transition.INVALID_DECREASE
