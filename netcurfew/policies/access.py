"""Desired-state decision for a managed device."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from netcurfew.models.devices import BlockReason, ManagedDevice
from netcurfew.policies.schedule import is_blocked_by_schedule


@dataclass(frozen=True)
class AccessDecision:
    """Outcome of evaluating a device at a moment in time.

    Attributes:
        blocked: Whether the device should be blocked
        reason: Which rule decided (None when nothing blocks the device)
    """

    blocked: bool
    reason: Optional[BlockReason] = None


def has_active_bonus(device: ManagedDevice, now: datetime) -> bool:
    session = device.bonus_session
    return session is not None and not session.is_expired(now)


def decide(device: ManagedDevice, now: datetime, ignore_bonus: bool = False) -> AccessDecision:
    """Evaluate the access rules, first match wins.

    1. Active bonus session -> not blocked
    2. ``blocked_until`` in the future -> blocked (temporary)
    3. ``desired_blocked`` -> blocked (manual)
    4. Schedule window covering ``now`` -> blocked (schedule)
    5. Otherwise not blocked
    """
    if not ignore_bonus and has_active_bonus(device, now):
        return AccessDecision(blocked=False, reason=BlockReason.BONUS)

    if device.blocked_until is not None and now < device.blocked_until:
        return AccessDecision(blocked=True, reason=BlockReason.TEMPORARY)

    if device.desired_blocked:
        return AccessDecision(blocked=True, reason=BlockReason.MANUAL)

    if is_blocked_by_schedule(device.schedule, now):
        return AccessDecision(blocked=True, reason=BlockReason.SCHEDULE)

    return AccessDecision(blocked=False)


def should_be_blocked(device: ManagedDevice, now: datetime) -> bool:
    return decide(device, now).blocked


def should_be_blocked_ignoring_bonus(device: ManagedDevice, now: datetime) -> bool:
    return decide(device, now, ignore_bonus=True).blocked
