"""Tests for the access control service operations."""

import pytest

from conftest import (
    MAC_A,
    MAC_B,
    FakeClock,
    FakeController,
    ManualSleep,
    RecordingSleep,
    add_device,
    at,
    evening_schedule,
)
from netcurfew.controller.gateway import EnforcementGateway
from netcurfew.engine.service import AccessControlService
from netcurfew.errors import (
    NotConfiguredError,
    NotFoundError,
    PermissionDeniedError,
    TransientError,
    UnknownDeviceError,
    ValidationError,
)
from netcurfew.models.devices import ActivityAction, BlockReason, ClientDevice, Schedule
from netcurfew.storage.db import DeviceStore


def actions(store: DeviceStore, mac: str = MAC_A) -> list[ActivityAction]:
    return [e.action for e in reversed(store.get_activity_log(mac))]


class TestBlockDevice:
    @pytest.mark.asyncio
    async def test_block_is_idempotent(
        self, service: AccessControlService, store: DeviceStore, controller: FakeController
    ) -> None:
        add_device(store, MAC_A)

        first = await service.block_device(MAC_A)
        second = await service.block_device(MAC_A)

        assert first.success and first.changed
        assert second.success and not second.changed
        assert controller.blocked == {MAC_A}
        assert actions(store) == [ActivityAction.BLOCKED]

        device = store.get_managed_device(MAC_A)
        assert device.desired_blocked
        assert device.last_known_actual_blocked
        assert device.block_reason is BlockReason.MANUAL

    @pytest.mark.asyncio
    async def test_permission_denied_surfaces(
        self,
        service: AccessControlService,
        store: DeviceStore,
        controller: FakeController,
        retry_sleep: RecordingSleep,
    ) -> None:
        add_device(store, MAC_A)
        controller.denied.add(MAC_A)

        with pytest.raises(PermissionDeniedError) as exc_info:
            await service.block_device(MAC_A)

        assert exc_info.value.mac == MAC_A
        assert exc_info.value.operation == "block"
        assert controller.commands == [("block", MAC_A)]
        assert retry_sleep.delays == []
        assert not store.get_managed_device(MAC_A).last_known_actual_blocked
        assert actions(store) == []

    @pytest.mark.asyncio
    async def test_temporary_block(
        self, service: AccessControlService, store: DeviceStore
    ) -> None:
        add_device(store, MAC_A)

        result = await service.block_device(MAC_A, duration_minutes=30)

        assert result.success
        device = store.get_managed_device(MAC_A)
        assert device.block_reason is BlockReason.TEMPORARY
        assert device.blocked_until == at(12, 30)
        assert not device.desired_blocked

        entry = store.get_activity_log(MAC_A)[0]
        assert entry.action is ActivityAction.TEMPORARY_BLOCK
        assert entry.duration_minutes == 30

    @pytest.mark.asyncio
    @pytest.mark.parametrize("minutes", [0, -1, 2.5])
    async def test_bad_duration_rejected(
        self, service: AccessControlService, store: DeviceStore, controller: FakeController, minutes
    ) -> None:
        add_device(store, MAC_A)
        with pytest.raises(ValidationError):
            await service.block_device(MAC_A, duration_minutes=minutes)
        assert controller.calls == []

    @pytest.mark.asyncio
    async def test_block_ends_bonus_time(
        self, service: AccessControlService, store: DeviceStore, timer_sleep: ManualSleep
    ) -> None:
        add_device(store, MAC_A)
        await service.add_bonus_time(MAC_A, 30)
        timer = service.bonus.timer_for(MAC_A)

        await service.block_device(MAC_A)

        assert store.get_bonus_session(MAC_A) is None
        assert service.bonus.timer_for(MAC_A) is None
        assert timer.cancelled()
        assert actions(store) == [
            ActivityAction.BONUS_TIME_ADDED,
            ActivityAction.BONUS_TIME_CANCELLED,
            ActivityAction.BLOCKED,
        ]

    @pytest.mark.asyncio
    async def test_failed_block_keeps_bonus_time(
        self,
        service: AccessControlService,
        store: DeviceStore,
        controller: FakeController,
        timer_sleep: ManualSleep,
    ) -> None:
        add_device(store, MAC_A)
        await service.add_bonus_time(MAC_A, 30)
        timer = service.bonus.timer_for(MAC_A)
        controller.denied.add(MAC_A)

        with pytest.raises(PermissionDeniedError):
            await service.block_device(MAC_A)

        device = store.get_managed_device(MAC_A)
        assert device.bonus_session is not None
        assert not device.desired_blocked
        assert service.bonus.timer_for(MAC_A) is timer
        assert not timer.cancelled()
        assert actions(store) == [ActivityAction.BONUS_TIME_ADDED]

        await service.stop()

    @pytest.mark.asyncio
    async def test_device_unknown_to_controller(
        self, service: AccessControlService, store: DeviceStore, controller: FakeController
    ) -> None:
        add_device(store, MAC_A)
        controller.fail("block", NotFoundError("api.err.UnknownStation", operation="block", mac=MAC_A))

        result = await service.block_device(MAC_A)

        assert not result.success
        device = store.get_managed_device(MAC_A)
        assert device.desired_blocked
        assert not device.last_known_actual_blocked

    @pytest.mark.asyncio
    async def test_unknown_reason_rejected(self, service: AccessControlService, store: DeviceStore) -> None:
        add_device(store, MAC_A)
        with pytest.raises(ValidationError):
            await service.block_device(MAC_A, reason="because")


class TestUnblockDevice:
    @pytest.mark.asyncio
    async def test_unblock_clears_manual_block(
        self, service: AccessControlService, store: DeviceStore, controller: FakeController
    ) -> None:
        add_device(store, MAC_A)
        await service.block_device(MAC_A)

        result = await service.unblock_device(MAC_A)

        assert result.success and result.changed
        assert controller.blocked == set()
        device = store.get_managed_device(MAC_A)
        assert not device.desired_blocked
        assert not device.last_known_actual_blocked
        assert actions(store) == [ActivityAction.BLOCKED, ActivityAction.UNBLOCKED]

    @pytest.mark.asyncio
    async def test_unblock_clears_temporary_block(
        self, service: AccessControlService, store: DeviceStore
    ) -> None:
        add_device(store, MAC_A)
        await service.block_device(MAC_A, duration_minutes=60)

        await service.unblock_device(MAC_A)

        assert store.get_managed_device(MAC_A).blocked_until is None

    @pytest.mark.asyncio
    async def test_unknown_device(self, service: AccessControlService, controller: FakeController) -> None:
        with pytest.raises(UnknownDeviceError):
            await service.unblock_device(MAC_A)
        assert controller.calls == []

    @pytest.mark.asyncio
    async def test_invalid_mac(self, service: AccessControlService, controller: FakeController) -> None:
        with pytest.raises(ValidationError):
            await service.unblock_device("not-a-mac")
        assert controller.calls == []

    @pytest.mark.asyncio
    async def test_schedule_reasserts_on_next_tick(
        self, service: AccessControlService, store: DeviceStore, controller: FakeController, clock: FakeClock
    ) -> None:
        add_device(store, MAC_A, schedule=evening_schedule())
        clock.set(at(22))
        await service.reconcile_now()

        await service.unblock_device(MAC_A)
        report = await service.reconcile_now()

        assert report.blocked == [MAC_A]
        assert controller.blocked == {MAC_A}


class TestManagedSet:
    def test_add_from_dict(self, service: AccessControlService, store: DeviceStore) -> None:
        device = service.add_device_to_controls({
            "mac": "AA-BB-CC-DD-EE-01",
            "hostname": "tablet",
            "ip": "192.168.1.20",
        })

        assert device.mac == MAC_A
        assert device.display_name == "tablet"
        assert store.get_managed_device(MAC_A).ip == "192.168.1.20"

    def test_add_without_name_uses_mac(self, service: AccessControlService) -> None:
        device = service.add_device_to_controls({"mac": MAC_A})
        assert device.display_name == MAC_A

    def test_re_adding_keeps_state(self, service: AccessControlService, store: DeviceStore) -> None:
        add_device(
            store, MAC_A, "tablet",
            schedule=evening_schedule(),
            block_reason=BlockReason.MANUAL,
            desired_blocked=True,
            last_known_actual_blocked=True,
        )

        device = service.add_device_to_controls(
            ClientDevice(mac=MAC_A, name="Kid Tablet", vendor="Apple")
        )

        assert device.display_name == "Kid Tablet"
        assert device.vendor == "Apple"
        assert device.schedule == evening_schedule()
        assert device.block_reason is BlockReason.MANUAL
        assert device.desired_blocked
        assert device.last_known_actual_blocked

    def test_add_invalid_mac(self, service: AccessControlService) -> None:
        with pytest.raises(ValidationError):
            service.add_device_to_controls({"mac": "12:34"})

    @pytest.mark.asyncio
    async def test_remove_unblocks_and_keeps_log(
        self, service: AccessControlService, store: DeviceStore, controller: FakeController
    ) -> None:
        add_device(store, MAC_A)
        await service.block_device(MAC_A)

        removed = await service.remove_device_from_controls(MAC_A)

        assert removed.mac == MAC_A
        assert store.get_managed_device(MAC_A) is None
        assert controller.commands == [("block", MAC_A), ("unblock", MAC_A)]
        assert actions(store) == [ActivityAction.BLOCKED, ActivityAction.UNBLOCKED]

    @pytest.mark.asyncio
    async def test_remove_leaves_external_block(
        self, service: AccessControlService, store: DeviceStore, controller: FakeController
    ) -> None:
        add_device(store, MAC_A, block_reason=BlockReason.SYNC, last_known_actual_blocked=True)
        controller.blocked.add(MAC_A)

        await service.remove_device_from_controls(MAC_A)

        assert controller.commands == []
        assert controller.blocked == {MAC_A}

    @pytest.mark.asyncio
    async def test_remove_skips_block_already_lifted_on_controller(
        self, service: AccessControlService, store: DeviceStore, controller: FakeController
    ) -> None:
        add_device(store, MAC_A, block_reason=BlockReason.MANUAL, last_known_actual_blocked=True)

        await service.remove_device_from_controls(MAC_A)

        assert controller.commands == []
        assert store.get_managed_device(MAC_A) is None
        assert actions(store) == []

    @pytest.mark.asyncio
    async def test_remove_stays_managed_when_unblock_fails(
        self, service: AccessControlService, store: DeviceStore, controller: FakeController
    ) -> None:
        add_device(store, MAC_A, block_reason=BlockReason.MANUAL, last_known_actual_blocked=True)
        controller.blocked.add(MAC_A)
        controller.fail("unblock", TransientError("down"), TransientError("down"))

        with pytest.raises(TransientError):
            await service.remove_device_from_controls(MAC_A)
        assert store.get_managed_device(MAC_A) is not None

    @pytest.mark.asyncio
    async def test_remove_unknown(self, service: AccessControlService) -> None:
        with pytest.raises(UnknownDeviceError):
            await service.remove_device_from_controls(MAC_A)


class TestSchedules:
    @pytest.mark.asyncio
    async def test_set_schedule_from_dict(self, service: AccessControlService, store: DeviceStore) -> None:
        add_device(store, MAC_A)

        schedule = await service.set_schedule(MAC_A, {
            "monday": {"blockedPeriods": [{"start": "21:00", "end": "23:59"}]},
        })

        assert schedule == evening_schedule()
        assert store.get_managed_device(MAC_A).schedule == evening_schedule()
        assert actions(store) == [ActivityAction.SCHEDULE_CHANGED]

    @pytest.mark.asyncio
    async def test_clear_schedule(self, service: AccessControlService, store: DeviceStore) -> None:
        add_device(store, MAC_A, schedule=evening_schedule())

        await service.set_schedule(MAC_A, Schedule())

        assert store.get_managed_device(MAC_A).schedule.is_empty()

    @pytest.mark.asyncio
    async def test_invalid_schedule(self, service: AccessControlService, store: DeviceStore) -> None:
        add_device(store, MAC_A)
        with pytest.raises(ValidationError):
            await service.set_schedule(MAC_A, {"funday": [{"start": "21:00", "end": "22:00"}]})
        with pytest.raises(ValidationError):
            await service.set_schedule(MAC_A, {"monday": [{"start": "25:00", "end": "26:00"}]})
        assert actions(store) == []

    @pytest.mark.asyncio
    async def test_unknown_device(self, service: AccessControlService) -> None:
        with pytest.raises(UnknownDeviceError):
            await service.set_schedule(MAC_A, evening_schedule())


class TestQueries:
    @pytest.mark.asyncio
    async def test_available_devices_flag_managed(
        self, service: AccessControlService, store: DeviceStore, controller: FakeController
    ) -> None:
        controller.clients = [ClientDevice(MAC_A, hostname="tablet"), ClientDevice(MAC_B, hostname="phone")]
        add_device(store, MAC_A)

        clients = {c.mac: c for c in await service.get_available_devices()}

        assert clients[MAC_A].is_managed
        assert not clients[MAC_B].is_managed

    @pytest.mark.asyncio
    async def test_available_devices_not_configured(
        self, store: DeviceStore, retry_sleep: RecordingSleep
    ) -> None:
        gateway = EnforcementGateway(FakeController(configured=False), sleep=retry_sleep)
        service = AccessControlService(store, gateway)

        with pytest.raises(NotConfiguredError):
            await service.get_available_devices()

    @pytest.mark.asyncio
    async def test_status_with_live_state(
        self, service: AccessControlService, store: DeviceStore, controller: FakeController, clock: FakeClock
    ) -> None:
        add_device(store, MAC_A, "Alpha", schedule=evening_schedule())
        add_device(store, MAC_B, "Beta")
        controller.known = {MAC_A}
        controller.blocked = {MAC_A}
        clock.set(at(22))

        statuses = {s.mac: s for s in await service.get_managed_devices_status()}

        alpha = statuses[MAC_A]
        assert alpha.is_blocked and alpha.is_online and alpha.should_be_blocked
        assert alpha.controller_reachable
        beta = statuses[MAC_B]
        assert not beta.is_blocked and not beta.is_online and not beta.should_be_blocked
        # Status never writes: the difference is left for the next tick
        assert not store.get_managed_device(MAC_A).last_known_actual_blocked

    @pytest.mark.asyncio
    async def test_status_falls_back_to_stored_state(
        self, service: AccessControlService, store: DeviceStore, controller: FakeController
    ) -> None:
        add_device(store, MAC_A, last_known_actual_blocked=True, block_reason=BlockReason.MANUAL)
        controller.fail("list_blocked", TransientError("down"), TransientError("down"))

        [status] = await service.get_managed_devices_status()

        assert status.is_blocked
        assert not status.controller_reachable

    @pytest.mark.asyncio
    async def test_activity_log_filter(self, service: AccessControlService, store: DeviceStore) -> None:
        add_device(store, MAC_A)
        add_device(store, MAC_B)
        await service.block_device(MAC_A)
        await service.block_device(MAC_B)

        assert len(service.get_activity_log()) == 2
        entries = service.get_activity_log("AA:BB:CC:DD:EE:02")
        assert [e.mac for e in entries] == [MAC_B]
        assert len(service.get_activity_log(limit=1)) == 1
