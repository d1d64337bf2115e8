"""Periodic reconciliation of desired access state against the controller.

One tick:

1. Expire bonus sessions that ran out
2. Refresh the blocked-state cache with a single ``list_blocked()`` call
3. For every managed device (concurrently, each isolated from the others):
   - clear an expired temporary-block deadline
   - if the controller disagrees with what we last recorded and we have not
     touched the device since the refresh, adopt the controller's state
     (reason "sync") instead of fighting it
   - otherwise compare the decided state with the actual one and issue at
     most one block/unblock command

A manual or externally synced block is never lifted automatically; only an
active bonus session overrides it.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from netcurfew.clock import Clock, local_now
from netcurfew.controller.gateway import CommandResult, EnforcementGateway
from netcurfew.engine.bonus import BonusSessionManager
from netcurfew.engine.cache import BlockedCache
from netcurfew.errors import ControllerError
from netcurfew.locks import KeyedLocks
from netcurfew.models.devices import (
    ActivityAction,
    ActivityLogEntry,
    BlockReason,
    ManagedDevice,
)
from netcurfew.notifiers.slack import SlackNotifier, is_fatal
from netcurfew.policies.access import decide, has_active_bonus
from netcurfew.storage.db import DeviceStore

logger = logging.getLogger(__name__)

# Reasons the loop must not undo on its own
STICKY_REASONS = {BlockReason.MANUAL, BlockReason.SYNC}

BLOCK_ACTIONS = {
    BlockReason.SCHEDULE: ActivityAction.SCHEDULE_BLOCKED,
    BlockReason.TEMPORARY: ActivityAction.TEMPORARY_BLOCK,
}


@dataclass
class TickReport:
    """What one reconciliation tick did."""

    started_at: datetime
    skipped: bool = False
    devices: int = 0
    blocked: list[str] = field(default_factory=list)
    unblocked: list[str] = field(default_factory=list)
    drift: list[str] = field(default_factory=list)
    expired_bonuses: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def commands(self) -> int:
        return len(self.blocked) + len(self.unblocked)


class Reconciler:
    """Drives the controller toward the decided state of every managed device."""

    def __init__(
        self,
        store: DeviceStore,
        gateway: EnforcementGateway,
        bonus: BonusSessionManager,
        locks: KeyedLocks,
        clock: Clock = local_now,
        tick_interval: float = 60.0,
        notifier: Optional[SlackNotifier] = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.bonus = bonus
        self.locks = locks
        self.clock = clock
        self.tick_interval = tick_interval
        self.notifier = notifier
        self.cache = BlockedCache()

        self._tick_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self.last_report: Optional[TickReport] = None

        bonus.on_session_end = self.reconcile_mac
        bonus.on_command = self.note_command

    def note_command(self, mac: str, blocked: bool) -> None:
        """Record a state the engine applied outside the loop (operator command)."""
        self.cache.record(mac, blocked)

    async def tick(self) -> TickReport:
        """Run one reconciliation pass.

        A tick that starts while another is still running is skipped.
        """
        now = self.clock()
        if self._tick_lock.locked():
            logger.warning("Previous reconciliation tick still running, skipping")
            return TickReport(started_at=now, skipped=True)

        async with self._tick_lock:
            report = TickReport(started_at=now)
            report.expired_bonuses = await self.bonus.expire_due(now)

            try:
                blocked = await self.gateway.list_blocked()
            except ControllerError as e:
                logger.error(f"Reconciliation skipped, cannot read controller state: {e}")
                report.skipped = True
                report.failures["*"] = str(e)
                await self._notify_failure(e)
                self.last_report = report
                return report

            self.cache.refresh(blocked, now)
            devices = self.store.get_managed_devices()
            report.devices = len(devices)

            await asyncio.gather(*(self._reconcile_isolated(d.mac, now, report) for d in devices))

            if report.commands or report.drift or report.failures:
                logger.info(
                    f"Tick: {report.devices} devices, {len(report.blocked)} blocked, "
                    f"{len(report.unblocked)} unblocked, {len(report.drift)} synced, "
                    f"{len(report.failures)} failed"
                )
            self.last_report = report
            return report

    async def reconcile_mac(self, mac: str) -> Optional[TickReport]:
        """Re-evaluate one device right now, outside the periodic loop.

        Reads the controller's blocked list first, so the decision is never
        made on a stale cache.
        """
        now = self.clock()
        report = TickReport(started_at=now, devices=1)
        async with self.locks.lock_for(mac):
            device = self.store.get_managed_device(mac)
            if device is None:
                return None
            blocked = await self.gateway.list_blocked()
            self.cache.observe(mac, mac in blocked)
            await self._reconcile_device(device, now, report)
        return report

    async def _reconcile_isolated(self, mac: str, now: datetime, report: TickReport) -> None:
        try:
            async with self.locks.lock_for(mac):
                # Reload under the lock, an operator command may have just landed
                device = self.store.get_managed_device(mac)
                if device is not None:
                    await self._reconcile_device(device, now, report)
        except ControllerError as e:
            logger.error(f"Reconciling {mac} failed: {e}")
            report.failures[mac] = str(e)
            await self._notify_failure(e)
        except Exception as e:
            logger.exception(f"Unexpected error reconciling {mac}: {e}")
            report.failures[mac] = str(e)

    async def _reconcile_device(self, device: ManagedDevice, now: datetime, report: TickReport) -> None:
        mac = device.mac

        if device.blocked_until is not None and device.blocked_until <= now:
            self.store.clear_blocked_until(mac)
            device.blocked_until = None

        actual = self.cache.is_blocked(mac)
        if actual is None:
            logger.debug(f"No controller state for {mac} yet")
            return

        if not self.cache.was_touched(mac) and actual != device.last_known_actual_blocked:
            self._adopt_drift(device, actual)
            report.drift.append(mac)
            return

        decision = decide(device, now)
        if decision.blocked == actual:
            return

        if decision.blocked:
            if await self._apply(device, True, decision.reason or BlockReason.SCHEDULE):
                report.blocked.append(mac)
            return

        if device.block_reason in STICKY_REASONS and not has_active_bonus(device, now):
            logger.debug(f"{mac} stays blocked ({device.block_reason.value})")
            return

        if decision.reason is BlockReason.BONUS or device.block_reason is BlockReason.TEMPORARY:
            reason = decision.reason or BlockReason.TEMPORARY
        else:
            reason = BlockReason.SCHEDULE
        if await self._apply(device, False, reason):
            report.unblocked.append(mac)

    async def _apply(self, device: ManagedDevice, blocked: bool, reason: BlockReason) -> bool:
        """Issue one command and record the result. Returns True if applied."""
        mac = device.mac
        if blocked:
            result = await self.gateway.block(mac)
        else:
            result = await self.gateway.unblock(mac)

        if result is CommandResult.NOT_FOUND:
            return False

        updated = self.store.update_block_status(
            mac,
            blocked,
            reason,
            device.blocked_until if blocked else None,
            expected_reason=device.block_reason,
        )
        self.cache.record(mac, blocked)
        if not updated:
            logger.warning(f"{mac} changed while {'blocking' if blocked else 'unblocking'}, next tick re-evaluates")
            return True

        if blocked:
            action = BLOCK_ACTIONS.get(reason, ActivityAction.BLOCKED)
        elif reason is BlockReason.SCHEDULE:
            action = ActivityAction.SCHEDULE_UNBLOCKED
        else:
            action = ActivityAction.UNBLOCKED

        entry = ActivityLogEntry(mac=mac, action=action, reason=reason)
        self.store.append_activity_log(entry)
        logger.info(f"{'Blocked' if blocked else 'Unblocked'} {device.display_name} ({mac}): {reason.value}")
        if self.notifier:
            await self.notifier.notify_activity(entry, device.display_name)
        return True

    def _adopt_drift(self, device: ManagedDevice, actual: bool) -> None:
        """Accept a state change made outside the engine."""
        mac = device.mac
        logger.info(
            f"{device.display_name} ({mac}) was {'blocked' if actual else 'unblocked'} "
            "outside netcurfew, syncing"
        )
        updated = self.store.update_block_status(
            mac,
            actual,
            BlockReason.SYNC,
            device.blocked_until if actual else None,
            expected_reason=device.block_reason,
        )
        if updated:
            self.store.append_activity_log(ActivityLogEntry(
                mac=mac,
                action=ActivityAction.BLOCKED if actual else ActivityAction.UNBLOCKED,
                reason=BlockReason.SYNC,
            ))

    async def _notify_failure(self, error: ControllerError) -> None:
        if self.notifier is None or not is_fatal(error):
            return
        device = self.store.get_managed_device(error.mac) if error.mac else None
        await self.notifier.notify_error(error, device.display_name if device else None)

    async def run_forever(self) -> None:
        """Tick every ``tick_interval`` seconds until cancelled."""
        logger.info(f"Reconciliation loop started (every {self.tick_interval:.0f}s)")
        while True:
            try:
                await self.tick()
            except Exception as e:
                logger.exception(f"Reconciliation tick crashed: {e}")
            await asyncio.sleep(self.tick_interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever(), name="reconciler")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
