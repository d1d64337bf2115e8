"""Weekly schedule evaluation.

Pure functions: no I/O, no clock access. Callers pass ``now`` explicitly.
"""

from datetime import datetime
from typing import Optional

from netcurfew.models.devices import Schedule, TimeWindow


def is_blocked_by_schedule(schedule: Optional[Schedule], now: datetime) -> bool:
    """Check whether ``now`` falls inside any blocked window of its weekday.

    Bounds are inclusive at minute resolution (``start <= HH:MM <= end``).
    Windows are evaluated within a single calendar day only, so a window
    whose start is after its end (e.g. 22:00-06:00) never matches; split it
    into two same-day windows instead.

    Args:
        schedule: Weekly schedule (None means no schedule)
        now: Moment to evaluate, in the household's local time

    Returns:
        True if the schedule says the device is blocked at ``now``
    """
    return active_window(schedule, now) is not None


def active_window(schedule: Optional[Schedule], now: datetime) -> Optional[TimeWindow]:
    """Return the first window of ``now``'s weekday that contains ``now``."""
    if schedule is None:
        return None

    weekday = now.weekday()  # Monday=0, Sunday=6
    current_time = now.strftime("%H:%M")

    for window in schedule.windows_for(weekday):
        if window.contains(current_time):
            return window

    return None
