"""Access control service: the operations exposed to the CLI and callers.

Operator commands take the device lock, talk to the controller through the
gateway, then record the outcome in the store. The activity log only gets an
entry when a command actually changes the stored state, so repeating a
command is harmless.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional, Union

from netcurfew.clock import Clock, local_now
from netcurfew.controller.gateway import CommandResult, EnforcementGateway, Sleep
from netcurfew.engine.bonus import BonusCancelResult, BonusSessionManager, validate_minutes
from netcurfew.engine.reconciler import Reconciler, TickReport
from netcurfew.errors import ControllerError, NotConfiguredError, UnknownDeviceError, ValidationError
from netcurfew.locks import KeyedLocks
from netcurfew.models.devices import (
    ActivityAction,
    ActivityLogEntry,
    BlockReason,
    BonusSession,
    BonusStatus,
    ClientDevice,
    DeviceStatus,
    ManagedDevice,
    Schedule,
    normalize_mac,
)
from netcurfew.notifiers.slack import SlackNotifier
from netcurfew.policies.access import should_be_blocked
from netcurfew.storage.db import DeviceStore

logger = logging.getLogger(__name__)


@dataclass
class ActionResult:
    """Outcome of an operator block/unblock command."""

    success: bool
    message: str
    changed: bool = False


def _parse_reason(reason: Union[str, BlockReason]) -> BlockReason:
    if isinstance(reason, BlockReason):
        return reason
    try:
        return BlockReason(str(reason).lower())
    except ValueError:
        valid = ", ".join(r.value for r in BlockReason)
        raise ValidationError(f"Unknown reason {reason!r}, expected one of: {valid}") from None


class AccessControlService:
    """Manages which devices are blocked, when, and why."""

    def __init__(
        self,
        store: DeviceStore,
        gateway: EnforcementGateway,
        clock: Clock = local_now,
        tick_interval: float = 60.0,
        notifier: Optional[SlackNotifier] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Wire the engine together.

        Args:
            store: Connected device store
            gateway: Enforcement gateway
            clock: Returns the current aware datetime
            tick_interval: Seconds between reconciliation ticks
            notifier: Optional Slack notifier for failures and activity
            sleep: Awaitable sleep for bonus timers
        """
        self.store = store
        self.gateway = gateway
        self.clock = clock
        self.notifier = notifier
        self.locks = KeyedLocks()
        self.bonus = BonusSessionManager(store, gateway, self.locks, clock=clock, sleep=sleep)
        self.reconciler = Reconciler(
            store,
            gateway,
            self.bonus,
            self.locks,
            clock=clock,
            tick_interval=tick_interval,
            notifier=notifier,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Recover bonus sessions and start the reconciliation loop."""
        await self.bonus.recover()
        self.reconciler.start()

    async def stop(self) -> None:
        await self.reconciler.stop()
        await self.bonus.shutdown()
        await self.gateway.close()
        if self.notifier:
            await self.notifier.close()

    async def reconcile_now(self) -> TickReport:
        return await self.reconciler.tick()

    # ------------------------------------------------------------------
    # Device discovery and the managed set
    # ------------------------------------------------------------------

    def _require_device(self, mac: str) -> ManagedDevice:
        device = self.store.get_managed_device(mac)
        if device is None:
            raise UnknownDeviceError(mac)
        return device

    async def get_available_devices(self) -> list[ClientDevice]:
        """List clients the controller knows, flagging the managed ones.

        Raises:
            NotConfiguredError: no controller configured
            ControllerError: controller unreachable or refused
        """
        if not self.gateway.is_configured():
            raise NotConfiguredError(operation="list_clients")

        clients = await self.gateway.list_clients()
        managed = {d.mac for d in self.store.get_managed_devices()}
        for client in clients:
            client.is_managed = client.mac in managed
        return clients

    def add_device_to_controls(self, device_info: Union[ClientDevice, dict[str, Any]]) -> ManagedDevice:
        """Put a device under access control.

        Adding a device that is already managed refreshes its name, IP and
        vendor and keeps its schedule and block state.
        """
        if isinstance(device_info, ClientDevice):
            mac = device_info.mac
            name = device_info.name or device_info.hostname
            ip, vendor = device_info.ip, device_info.vendor
        else:
            mac = device_info.get("mac", "")
            name = device_info.get("device_name") or device_info.get("name") or device_info.get("hostname")
            ip, vendor = device_info.get("ip"), device_info.get("vendor")
        mac = normalize_mac(mac)

        device = self.store.get_managed_device(mac)
        if device is None:
            device = ManagedDevice(mac=mac, display_name=name or mac, ip=ip, vendor=vendor)
            logger.info(f"Added {device.display_name} ({mac}) to access control")
        else:
            device.display_name = name or device.display_name
            device.ip = ip or device.ip
            device.vendor = vendor or device.vendor
            logger.info(f"Updated {device.display_name} ({mac})")

        self.store.upsert_managed_device(device)
        return self._require_device(mac)

    async def remove_device_from_controls(self, mac: str) -> ManagedDevice:
        """Stop managing a device, unblocking it first if we blocked it.

        Raises:
            UnknownDeviceError: the device is not managed
            ControllerError: the unblock failed; the device stays managed
        """
        mac = normalize_mac(mac)
        async with self.locks.lock_for(mac):
            device = self._require_device(mac)

            # Only a block this engine made is lifted, and only if the controller still has it
            ours = device.last_known_actual_blocked and device.block_reason is not BlockReason.SYNC
            if ours and mac in await self.gateway.list_blocked():
                await self.gateway.unblock(mac)
                self.store.append_activity_log(ActivityLogEntry(
                    mac=mac, action=ActivityAction.UNBLOCKED, reason=BlockReason.MANUAL,
                ))

            await self.bonus.stop_session(mac)
            self.store.remove_managed_device(mac)
            self.reconciler.cache.forget(mac)

        logger.info(f"Removed {device.display_name} ({mac}) from access control")
        return device

    # ------------------------------------------------------------------
    # Operator commands
    # ------------------------------------------------------------------

    async def block_device(
        self,
        mac: str,
        reason: Union[str, BlockReason] = BlockReason.MANUAL,
        duration_minutes: Optional[int] = None,
    ) -> ActionResult:
        """Block a device now.

        Args:
            mac: Device MAC
            reason: Recorded reason (manual unless given)
            duration_minutes: Make it a temporary block that lifts on its own

        A block ends any active bonus session once the controller accepted it;
        a failed block leaves the session running.
        """
        mac = normalize_mac(mac)
        reason = _parse_reason(reason)
        if duration_minutes is not None:
            duration_minutes = validate_minutes(duration_minutes)
            reason = BlockReason.TEMPORARY

        async with self.locks.lock_for(mac):
            device = self._require_device(mac)
            now = self.clock()

            result = await self.gateway.block(mac)

            if device.bonus_session is not None:
                await self.bonus.stop_session(mac, ActivityAction.BONUS_TIME_CANCELLED)
                logger.info(f"Bonus time for {mac} ended by block")

            blocked = result.ok
            blocked_until = now + timedelta(minutes=duration_minutes) if duration_minutes else None
            desired = True if reason is BlockReason.MANUAL else None

            changed = (
                blocked != device.last_known_actual_blocked
                or reason is not device.block_reason
                or blocked_until is not None
            )
            self.store.update_block_status(mac, blocked, reason, blocked_until, desired_blocked=desired)
            self.reconciler.note_command(mac, blocked)

            if changed:
                action = ActivityAction.TEMPORARY_BLOCK if duration_minutes else ActivityAction.BLOCKED
                entry = ActivityLogEntry(mac=mac, action=action, reason=reason, duration_minutes=duration_minutes)
                self.store.append_activity_log(entry)
                if self.notifier:
                    await self.notifier.notify_activity(entry, device.display_name)

        if result is CommandResult.NOT_FOUND:
            return ActionResult(
                False,
                f"{device.display_name} is not known to the controller; it will be blocked when it reappears",
                changed,
            )
        until = f" for {duration_minutes} minutes" if duration_minutes else ""
        logger.info(f"Blocked {device.display_name} ({mac}){until}: {reason.value}")
        return ActionResult(True, f"Blocked {device.display_name}{until}", changed)

    async def unblock_device(self, mac: str, reason: Union[str, BlockReason] = BlockReason.MANUAL) -> ActionResult:
        """Unblock a device now and clear any temporary block.

        A schedule window that is still active blocks the device again on the
        next tick; bonus time is the way to lift a schedule.
        """
        mac = normalize_mac(mac)
        reason = _parse_reason(reason)

        async with self.locks.lock_for(mac):
            device = self._require_device(mac)

            result = await self.gateway.unblock(mac)
            desired = False if reason is BlockReason.MANUAL else None
            changed = device.last_known_actual_blocked or reason is not device.block_reason
            self.store.update_block_status(mac, False, reason, None, desired_blocked=desired)
            self.reconciler.note_command(mac, False)

            if changed:
                entry = ActivityLogEntry(mac=mac, action=ActivityAction.UNBLOCKED, reason=reason)
                self.store.append_activity_log(entry)
                if self.notifier:
                    await self.notifier.notify_activity(entry, device.display_name)

        logger.info(f"Unblocked {device.display_name} ({mac}): {reason.value}")
        if result is CommandResult.NOT_FOUND:
            return ActionResult(True, f"{device.display_name} is not known to the controller", changed)
        return ActionResult(True, f"Unblocked {device.display_name}", changed)

    async def set_schedule(self, mac: str, schedule: Union[Schedule, dict[str, Any]]) -> Schedule:
        """Replace a device's weekly schedule; the next tick applies it."""
        mac = normalize_mac(mac)
        if not isinstance(schedule, Schedule):
            schedule = Schedule.from_dict(schedule)

        for windows in schedule.days.values():
            for window in windows:
                if window.crosses_midnight:
                    logger.warning(
                        f"Window {window.start}-{window.end} for {mac} crosses midnight and never "
                        "matches; split it into two windows on consecutive days"
                    )

        async with self.locks.lock_for(mac):
            self._require_device(mac)
            self.store.update_schedule(mac, schedule)
            self.store.append_activity_log(ActivityLogEntry(
                mac=mac, action=ActivityAction.SCHEDULE_CHANGED, reason=BlockReason.MANUAL,
            ))
        logger.info(f"Schedule updated for {mac}")
        return schedule

    # ------------------------------------------------------------------
    # Bonus time
    # ------------------------------------------------------------------

    async def add_bonus_time(self, mac: str, minutes: int) -> BonusSession:
        return await self.bonus.add_bonus_time(mac, minutes)

    async def cancel_bonus_time(self, mac: str) -> BonusCancelResult:
        return await self.bonus.cancel_bonus_time(mac)

    def get_bonus_status(self, mac: str) -> BonusStatus:
        return self.bonus.get_status(mac)

    # ------------------------------------------------------------------
    # Status and history
    # ------------------------------------------------------------------

    async def get_managed_devices_status(self) -> list[DeviceStatus]:
        """Managed devices with live blocked/online state.

        Falls back to the stored state when the controller cannot be reached.
        Differences are left for the reconciliation loop to sync.
        """
        devices = self.store.get_managed_devices()
        now = self.clock()

        online: set[str] = set()
        blocked: Optional[set[str]] = None
        if self.gateway.is_configured():
            try:
                online, blocked = await asyncio.gather(
                    self.gateway.list_known(), self.gateway.list_blocked()
                )
            except ControllerError as e:
                logger.warning(f"Controller unavailable, showing stored state: {e}")
                online, blocked = set(), None

        statuses = []
        for device in devices:
            is_blocked = device.mac in blocked if blocked is not None else device.last_known_actual_blocked
            statuses.append(DeviceStatus(
                device=device,
                is_blocked=is_blocked,
                is_online=device.mac in online,
                should_be_blocked=should_be_blocked(device, now),
                bonus=self.bonus.get_status(device.mac, now),
                controller_reachable=blocked is not None,
            ))
        return statuses

    def get_activity_log(self, mac: Optional[str] = None, limit: int = 100) -> list[ActivityLogEntry]:
        if mac:
            mac = normalize_mac(mac)
        return self.store.get_activity_log(mac, limit)
