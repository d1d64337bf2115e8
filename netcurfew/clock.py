"""Clock used by the engine. Injected everywhere so tests can pin ``now``."""

from collections.abc import Callable
from datetime import datetime

Clock = Callable[[], datetime]


def local_now() -> datetime:
    """Current time as an aware datetime in the host's local timezone.

    Schedules are written in household wall-clock time, so the engine
    evaluates them against local time rather than UTC.
    """
    return datetime.now().astimezone()
