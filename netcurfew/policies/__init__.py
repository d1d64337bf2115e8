"""Access-control policies: schedule evaluation and desired-state decisions."""

from netcurfew.policies.access import (
    AccessDecision,
    decide,
    should_be_blocked,
    should_be_blocked_ignoring_bonus,
)
from netcurfew.policies.schedule import active_window, is_blocked_by_schedule

__all__ = [
    "AccessDecision",
    "decide",
    "should_be_blocked",
    "should_be_blocked_ignoring_bonus",
    "active_window",
    "is_blocked_by_schedule",
]
