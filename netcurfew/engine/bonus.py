"""Bonus time sessions: time-boxed access that overrides schedules and blocks.

Each active session has exactly one timer task. Adding time to a device that
already has a session cancels the old timer before the new one is armed, so
a replaced session can never fire. Sessions are persisted, and ``recover()``
re-arms them (or finalizes the ones that ran out) after a restart.
"""

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from netcurfew.clock import Clock, local_now
from netcurfew.controller.gateway import EnforcementGateway, Sleep
from netcurfew.errors import ControllerError, UnknownDeviceError, ValidationError
from netcurfew.locks import KeyedLocks
from netcurfew.models.devices import (
    ActivityAction,
    ActivityLogEntry,
    BlockReason,
    BonusSession,
    BonusStatus,
    normalize_mac,
)
from netcurfew.policies.access import should_be_blocked_ignoring_bonus
from netcurfew.storage.db import DeviceStore

logger = logging.getLogger(__name__)

SessionEndCallback = Callable[[str], Awaitable[object]]
CommandCallback = Callable[[str, bool], None]


@dataclass
class BonusCancelResult:
    """Outcome of cancelling bonus time; ``cancelled`` is False when none was active."""

    cancelled: bool
    message: str


def validate_minutes(minutes: object) -> int:
    """Reject anything but a positive whole number of minutes."""
    if isinstance(minutes, bool) or not isinstance(minutes, int) or minutes <= 0:
        raise ValidationError(f"Bonus minutes must be a positive whole number, got {minutes!r}")
    return minutes


class BonusSessionManager:
    """Creates, cancels, expires and recovers bonus sessions."""

    def __init__(
        self,
        store: DeviceStore,
        gateway: EnforcementGateway,
        locks: KeyedLocks,
        clock: Clock = local_now,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize the manager.

        Args:
            store: Device store
            gateway: Enforcement gateway used for the immediate unblock
            locks: Per-device locks shared with the reconciler and service
            clock: Returns the current aware datetime
            sleep: Awaitable sleep used by the timers (tests pass a controllable one)
        """
        self.store = store
        self.gateway = gateway
        self.locks = locks
        self.clock = clock
        self._sleep = sleep
        self._timers: dict[str, asyncio.Task] = {}

        # Wired up by the reconciler
        self.on_session_end: Optional[SessionEndCallback] = None
        self.on_command: Optional[CommandCallback] = None

    def timer_for(self, mac: str) -> Optional[asyncio.Task]:
        return self._timers.get(mac)

    @property
    def active_timers(self) -> int:
        return len(self._timers)

    async def add_bonus_time(self, mac: str, minutes: int) -> BonusSession:
        """Grant ``minutes`` of unrestricted access, replacing any current session.

        Raises:
            ValidationError: minutes is not a positive integer, or bad MAC
            UnknownDeviceError: the device is not managed
            ControllerError: the controller could not be read or the immediate
                unblock failed; nothing is persisted
        """
        minutes = validate_minutes(minutes)
        mac = normalize_mac(mac)

        async with self.locks.lock_for(mac):
            device = self.store.get_managed_device(mac)
            if device is None:
                raise UnknownDeviceError(mac)

            # The stored state may lag behind changes made on the controller
            actually_blocked = mac in await self.gateway.list_blocked()

            await self._cancel_timer(mac)

            now = self.clock()
            session = BonusSession(
                mac=mac,
                started_at=now,
                expires_at=now + timedelta(minutes=minutes),
                requested_minutes=minutes,
                was_blocked_before_start=actually_blocked,
            )
            self.store.save_bonus_session(session)

            if actually_blocked or should_be_blocked_ignoring_bonus(device, now):
                try:
                    result = await self.gateway.unblock(mac)
                except ControllerError:
                    self.store.delete_bonus_session(mac, session.expires_at)
                    raise

                if result.ok:
                    self.store.update_block_status(
                        mac, False, BlockReason.BONUS, device.blocked_until
                    )
                    if self.on_command:
                        self.on_command(mac, False)

            self.store.append_activity_log(ActivityLogEntry(
                mac=mac,
                action=ActivityAction.BONUS_TIME_ADDED,
                reason=BlockReason.BONUS,
                duration_minutes=minutes,
            ))
            self._arm(session)

        logger.info(f"Bonus time for {mac}: {minutes} min, expires {session.expires_at:%H:%M}")
        return session

    async def cancel_bonus_time(self, mac: str) -> BonusCancelResult:
        """End a session early and re-evaluate the device immediately.

        Cancelling when no session exists is a no-op.
        """
        mac = normalize_mac(mac)

        async with self.locks.lock_for(mac):
            if self.store.get_bonus_session(mac) is None:
                return BonusCancelResult(False, f"No active bonus time for {mac}")
            await self.stop_session(mac, ActivityAction.BONUS_TIME_CANCELLED)

        logger.info(f"Bonus time for {mac} cancelled")
        if self.on_session_end:
            await self.on_session_end(mac)
        return BonusCancelResult(True, f"Bonus time for {mac} cancelled")

    async def stop_session(self, mac: str, action: Optional[ActivityAction] = None) -> bool:
        """Cancel the timer and delete the session without re-evaluating.

        The caller must hold the device lock.

        Returns:
            True if a stored session was removed
        """
        await self._cancel_timer(mac)
        removed = self.store.delete_bonus_session(mac)
        if removed and action is not None:
            self.store.append_activity_log(ActivityLogEntry(
                mac=mac, action=action, reason=BlockReason.BONUS,
            ))
        return removed

    def get_status(self, mac: str, now: Optional[datetime] = None) -> BonusStatus:
        mac = normalize_mac(mac)
        session = self.store.get_bonus_session(mac)
        if session is None:
            return BonusStatus(active=False)

        now = now or self.clock()
        seconds = (session.expires_at - now).total_seconds()
        return BonusStatus(
            active=session.expires_at > now,
            remaining_minutes=max(0, math.ceil(seconds / 60)),
            expires_at=session.expires_at,
        )

    async def expire_due(self, now: datetime) -> list[str]:
        """Drop sessions that ran out and adopt ones without a timer.

        Called at the start of every reconciliation tick, which re-evaluates
        the affected devices itself.

        Returns:
            MACs whose sessions were expired
        """
        expired = []
        for session in self.store.get_bonus_sessions():
            if session.is_expired(now):
                async with self.locks.lock_for(session.mac):
                    await self._cancel_timer(session.mac)
                    if self.store.delete_bonus_session(session.mac, session.expires_at):
                        self._log_expired(session)
                        expired.append(session.mac)
            elif session.mac not in self._timers:
                logger.info(f"Arming timer for untracked bonus session on {session.mac}")
                self._arm(session)
        return expired

    async def recover(self) -> None:
        """Re-arm persisted sessions after a restart.

        Sessions that expired while the process was down are finalized right
        away, including re-evaluation of the device.
        """
        now = self.clock()
        sessions = self.store.get_bonus_sessions()
        for session in sessions:
            if session.is_expired(now):
                logger.info(f"Bonus session for {session.mac} expired while stopped")
                await self._finish(session)
            else:
                self._arm(session)
        if sessions:
            logger.info(f"Recovered {len(sessions)} bonus session(s), {len(self._timers)} still active")

    async def shutdown(self) -> None:
        """Cancel all timers. Sessions stay persisted for ``recover()``."""
        for mac in list(self._timers):
            await self._cancel_timer(mac)

    def _arm(self, session: BonusSession) -> None:
        self._timers[session.mac] = asyncio.create_task(
            self._run_timer(session), name=f"bonus-{session.mac}"
        )

    async def _run_timer(self, session: BonusSession) -> None:
        delay = (session.expires_at - self.clock()).total_seconds()
        if delay > 0:
            await self._sleep(delay)
        await self._finish(session)

    async def _finish(self, session: BonusSession) -> None:
        mac = session.mac
        async with self.locks.lock_for(mac):
            if self._timers.get(mac) is asyncio.current_task():
                del self._timers[mac]
            # Matching on expires_at keeps a stale timer away from a newer session
            removed = self.store.delete_bonus_session(mac, session.expires_at)
            if removed:
                self._log_expired(session)

        if not removed or self.on_session_end is None:
            return
        try:
            await self.on_session_end(mac)
        except ControllerError as e:
            logger.warning(f"Re-evaluation after bonus expiry failed for {mac}, next tick will retry: {e}")

    def _log_expired(self, session: BonusSession) -> None:
        logger.info(f"Bonus time for {session.mac} expired")
        self.store.append_activity_log(ActivityLogEntry(
            mac=session.mac,
            action=ActivityAction.BONUS_TIME_EXPIRED,
            reason=BlockReason.BONUS,
            duration_minutes=session.requested_minutes,
        ))

    async def _cancel_timer(self, mac: str) -> None:
        task = self._timers.pop(mac, None)
        if task is None or task is asyncio.current_task() or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
