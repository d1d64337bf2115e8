"""Shared fixtures: in-memory store, scripted controller, pinned clock."""

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import pytest

from netcurfew.controller.gateway import EnforcementGateway
from netcurfew.engine.service import AccessControlService
from netcurfew.errors import PermissionDeniedError
from netcurfew.models.devices import ClientDevice, ManagedDevice, Schedule
from netcurfew.storage.db import DeviceStore

MAC_A = "aa:bb:cc:dd:ee:01"
MAC_B = "aa:bb:cc:dd:ee:02"
MAC_C = "aa:bb:cc:dd:ee:03"

# 2026-10-12 is a Monday
MONDAY = datetime(2026, 10, 12, tzinfo=timezone.utc)


def at(hour: int, minute: int = 0, day: int = 0) -> datetime:
    """Moment in the test week: day 0 is Monday."""
    return MONDAY + timedelta(days=day, hours=hour, minutes=minute)


def evening_schedule() -> Schedule:
    """Monday 21:00-23:59 blocked."""
    schedule = Schedule()
    schedule.add_window(0, "21:00", "23:59")
    return schedule


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock the test moves by hand."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class RecordingSleep:
    """Sleep that returns immediately and remembers the requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class ManualSleep:
    """Sleep that blocks until the test calls ``fire()``."""

    def __init__(self) -> None:
        self.delays: list[float] = []
        self._waiters: list[asyncio.Future] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        future = asyncio.get_running_loop().create_future()
        self._waiters.append(future)
        await future

    def fire(self) -> None:
        for future in self._waiters:
            if not future.done():
                future.set_result(None)
        self._waiters.clear()


class FakeController:
    """In-memory enforcement point with scriptable failures."""

    def __init__(self, configured: bool = True) -> None:
        self.configured = configured
        self.blocked: set[str] = set()
        self.known: set[str] = set()
        self.clients: list[ClientDevice] = []
        self.calls: list[tuple[str, Optional[str]]] = []
        self.login_count = 0
        self.denied: set[str] = set()
        self.list_gate: Optional[asyncio.Event] = None
        self._failures: dict[str, list[Exception]] = {}

    def fail(self, operation: str, *errors: Exception) -> None:
        """Raise ``errors`` (one per call) on the next calls of ``operation``."""
        self._failures.setdefault(operation, []).extend(errors)

    def _maybe_fail(self, operation: str) -> None:
        queue = self._failures.get(operation)
        if queue:
            raise queue.pop(0)

    @property
    def commands(self) -> list[tuple[str, Optional[str]]]:
        return [c for c in self.calls if c[0] in ("block", "unblock")]

    def is_configured(self) -> bool:
        return self.configured

    async def login(self) -> None:
        self.login_count += 1
        self._maybe_fail("login")

    async def block(self, mac: str) -> None:
        self.calls.append(("block", mac))
        if mac in self.denied:
            raise PermissionDeniedError("block", mac)
        self._maybe_fail("block")
        self.blocked.add(mac)

    async def unblock(self, mac: str) -> None:
        self.calls.append(("unblock", mac))
        self._maybe_fail("unblock")
        self.blocked.discard(mac)

    async def list_blocked(self) -> set[str]:
        self.calls.append(("list_blocked", None))
        if self.list_gate is not None:
            await self.list_gate.wait()
        self._maybe_fail("list_blocked")
        return set(self.blocked)

    async def list_known(self) -> set[str]:
        self.calls.append(("list_known", None))
        self._maybe_fail("list_known")
        return set(self.known)

    async def list_clients(self) -> list[ClientDevice]:
        self.calls.append(("list_clients", None))
        self._maybe_fail("list_clients")
        return list(self.clients)

    async def close(self) -> None:
        pass


class FakeNotifier:
    """Records what would have gone to Slack."""

    def __init__(self) -> None:
        self.errors: list = []
        self.activity: list = []

    async def notify_error(self, error, device_name=None) -> bool:
        self.errors.append((error, device_name))
        return True

    async def notify_activity(self, entry, device_name=None) -> bool:
        self.activity.append((entry, device_name))
        return True

    async def close(self) -> None:
        pass


def add_device(store: DeviceStore, mac: str, name: str = "Tablet", **fields) -> ManagedDevice:
    """Insert a managed device straight into the store."""
    store.upsert_managed_device(ManagedDevice(mac=mac, display_name=name, **fields))
    return store.get_managed_device(mac)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def store() -> DeviceStore:
    """Provide a connected in-memory DeviceStore."""
    device_store = DeviceStore(Path(":memory:"))
    device_store.connect()
    yield device_store  # type: ignore[misc]
    device_store.close()


@pytest.fixture()
def controller() -> FakeController:
    return FakeController()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(at(12))


@pytest.fixture()
def retry_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def timer_sleep() -> ManualSleep:
    return ManualSleep()


@pytest.fixture()
def gateway(controller: FakeController, retry_sleep: RecordingSleep) -> EnforcementGateway:
    return EnforcementGateway(controller, max_attempts=2, backoff_base=1.0, sleep=retry_sleep)


@pytest.fixture()
def service(
    store: DeviceStore,
    gateway: EnforcementGateway,
    clock: FakeClock,
    timer_sleep: ManualSleep,
) -> AccessControlService:
    return AccessControlService(store, gateway, clock=clock, sleep=timer_sleep)
