"""Data models for managed devices, schedules and bonus sessions."""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from netcurfew.errors import ValidationError

# Monday=0, matching datetime.weekday()
DAY_NAMES = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

DAY_MAP = {
    "mon": 0,
    "tue": 1,
    "wed": 2,
    "thu": 3,
    "fri": 4,
    "sat": 5,
    "sun": 6,
}

TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
MAC_HEX_PATTERN = re.compile(r"^[0-9a-f]{12}$")


def normalize_mac(mac: str) -> str:
    """Return the canonical lowercase, colon-separated form of a MAC address.

    Accepts colon, hyphen, dot (Cisco style) or no separators.

    Raises:
        ValidationError: If the value is not a 48-bit MAC address
    """
    if not isinstance(mac, str):
        raise ValidationError(f"Invalid MAC address: {mac!r}")

    hex_only = re.sub(r"[:\-.]", "", mac.strip().lower())
    if not MAC_HEX_PATTERN.match(hex_only):
        raise ValidationError(f"Invalid MAC address: {mac!r}")

    return ":".join(hex_only[i:i + 2] for i in range(0, 12, 2))


def parse_day(day: str) -> int:
    """Resolve a day name ("monday", "mon") or index ("0") to a weekday number."""
    key = str(day).strip().lower()
    if key.isdigit() and 0 <= int(key) <= 6:
        return int(key)
    if key[:3] in DAY_MAP and (key in DAY_NAMES or key in DAY_MAP):
        return DAY_MAP[key[:3]]
    raise ValidationError(f"Unknown day: {day!r}")


class BlockReason(Enum):
    """Why a device's block state was last changed."""

    MANUAL = "manual"
    SCHEDULE = "schedule"
    TEMPORARY = "temporary"
    BONUS = "bonus"
    SYNC = "sync"


class ActivityAction(Enum):
    """Actions recorded in the activity log."""

    BLOCKED = "blocked"
    UNBLOCKED = "unblocked"
    SCHEDULE_BLOCKED = "schedule_blocked"
    SCHEDULE_UNBLOCKED = "schedule_unblocked"
    BONUS_TIME_ADDED = "bonus_time_added"
    TEMPORARY_BLOCK = "temporary_block"
    SCHEDULE_CHANGED = "schedule_changed"
    BONUS_TIME_CANCELLED = "bonus_time_cancelled"
    BONUS_TIME_EXPIRED = "bonus_time_expired"


@dataclass(frozen=True)
class TimeWindow:
    """A blocked interval within a single day.

    Attributes:
        start: Start time in HH:MM format (24-hour)
        end: End time in HH:MM format (24-hour), inclusive
    """

    start: str  # "22:00"
    end: str  # "23:59"

    def __post_init__(self) -> None:
        for value in (self.start, self.end):
            if not isinstance(value, str) or not TIME_PATTERN.match(value):
                raise ValidationError(f"Invalid time {value!r}, expected HH:MM")

    @property
    def crosses_midnight(self) -> bool:
        """True when start > end, a window that same-day evaluation never matches."""
        return self.start > self.end

    def contains(self, time_of_day: str) -> bool:
        return self.start <= time_of_day <= self.end


@dataclass
class Schedule:
    """Weekly blocked windows, one independent list per weekday (Monday=0)."""

    days: dict[int, list[TimeWindow]] = field(default_factory=dict)

    def windows_for(self, weekday: int) -> list[TimeWindow]:
        return self.days.get(weekday, [])

    def add_window(self, weekday: int, start: str, end: str) -> None:
        if not 0 <= weekday <= 6:
            raise ValidationError(f"Invalid weekday: {weekday}")
        windows = self.days.setdefault(weekday, [])
        windows.append(TimeWindow(start, end))
        windows.sort(key=lambda w: (w.start, w.end))

    def is_empty(self) -> bool:
        return not any(self.days.values())

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the {"monday": {"blockedPeriods": [...]}} shape."""
        result: dict[str, Any] = {}
        for weekday in sorted(self.days):
            windows = self.days[weekday]
            if not windows:
                continue
            result[DAY_NAMES[weekday]] = {
                "blockedPeriods": [{"start": w.start, "end": w.end} for w in windows]
            }
        return result

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "Schedule":
        """Parse the {"monday": {"blockedPeriods": [...]}} shape.

        A plain list of periods per day is accepted as well.
        """
        schedule = cls()
        if not data:
            return schedule
        if not isinstance(data, dict):
            raise ValidationError("Schedule must be a mapping of day -> periods")

        for day, day_data in data.items():
            weekday = parse_day(day)
            if isinstance(day_data, dict):
                periods = day_data.get("blockedPeriods", [])
            else:
                periods = day_data or []
            for period in periods:
                try:
                    schedule.add_window(weekday, period["start"], period["end"])
                except (KeyError, TypeError):
                    raise ValidationError(
                        f"Invalid period for {day}: {period!r}, expected start/end"
                    ) from None
        return schedule


@dataclass
class BonusSession:
    """Time-boxed access override for one device."""

    mac: str
    started_at: datetime
    expires_at: datetime
    requested_minutes: int
    was_blocked_before_start: bool

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class ManagedDevice:
    """A device under access control, as recorded in the store."""

    mac: str
    display_name: str
    desired_blocked: bool = False
    block_reason: Optional[BlockReason] = None
    blocked_until: Optional[datetime] = None
    schedule: Schedule = field(default_factory=Schedule)
    last_known_actual_blocked: bool = False
    bonus_session: Optional[BonusSession] = None
    ip: Optional[str] = None
    vendor: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class ActivityLogEntry:
    """Append-only record of an access-control action."""

    mac: str
    action: ActivityAction
    reason: Optional[BlockReason]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    duration_minutes: Optional[int] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class ClientDevice:
    """A client as reported by the controller."""

    mac: str
    hostname: Optional[str] = None
    name: Optional[str] = None
    ip: Optional[str] = None
    vendor: Optional[str] = None
    is_wired: bool = False
    last_seen: Optional[datetime] = None
    is_blocked: bool = False
    is_managed: bool = False

    @property
    def display_name(self) -> str:
        return self.name or self.hostname or "Unknown Device"


@dataclass
class BonusStatus:
    """Bonus time status for one device."""

    active: bool
    remaining_minutes: int = 0
    expires_at: Optional[datetime] = None


@dataclass
class DeviceStatus:
    """Managed device enriched with live controller signals."""

    device: ManagedDevice
    is_blocked: bool
    is_online: bool
    should_be_blocked: bool
    bonus: BonusStatus
    controller_reachable: bool = True

    @property
    def mac(self) -> str:
        return self.device.mac
