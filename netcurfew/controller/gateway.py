"""Enforcement gateway: retry, re-authentication and error classification.

Every controller command goes through ``EnforcementGateway._run``, which
applies the same policy:

- AuthExpiredError: force a re-login, back off, retry
- TransientError: back off, retry
- everything else: surface immediately
- attempts are bounded by ``max_attempts``; the last error is raised when
  they run out

Commands for the same MAC are serialized with a per-MAC lock so two
block/unblock calls for one device are never in flight together.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Optional, Protocol, TypeVar

from cachetools import TTLCache

from netcurfew.errors import (
    AlreadyInStateError,
    AuthExpiredError,
    ControllerError,
    NotConfiguredError,
    NotFoundError,
    TransientError,
)
from netcurfew.locks import KeyedLocks
from netcurfew.models.devices import ClientDevice

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


class EnforcementPoint(Protocol):
    """Command surface of the device that actually restricts access."""

    def is_configured(self) -> bool: ...

    async def login(self) -> None: ...

    async def block(self, mac: str) -> None: ...

    async def unblock(self, mac: str) -> None: ...

    async def list_blocked(self) -> set[str]: ...

    async def list_known(self) -> set[str]: ...

    async def list_clients(self) -> list[ClientDevice]: ...

    async def close(self) -> None: ...


class CommandResult(Enum):
    """Outcome of a successful block/unblock command."""

    APPLIED = "applied"
    ALREADY_IN_STATE = "already_in_state"
    NOT_FOUND = "not_found"

    @property
    def ok(self) -> bool:
        """True if the device is now in the requested state."""
        return self is not CommandResult.NOT_FOUND


class EnforcementGateway:
    """Issues commands to the enforcement point with uniform retry handling."""

    def __init__(
        self,
        point: EnforcementPoint,
        max_attempts: int = 2,
        backoff_base: float = 1.0,
        known_cache_ttl: float = 30.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize the gateway.

        Args:
            point: Enforcement point client (UnifiClient in production)
            max_attempts: Total attempts per command, including the first
            backoff_base: Wait before the first retry; doubles on each retry
            known_cache_ttl: Seconds to reuse the online-client list
            sleep: Awaitable sleep function (tests pass a recorder)
        """
        self.point = point
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self._sleep = sleep
        self._locks = KeyedLocks()
        self._known_cache: TTLCache = TTLCache(maxsize=1, ttl=known_cache_ttl)

    def is_configured(self) -> bool:
        return self.point.is_configured()

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        return self.backoff_base * (2 ** (attempt - 1))

    async def _run(
        self,
        operation: str,
        call: Callable[[], Awaitable[T]],
        mac: Optional[str] = None,
    ) -> T:
        """Run one controller call under the retry policy."""
        if not self.point.is_configured():
            raise NotConfiguredError(operation=operation, mac=mac)

        target = f" {mac}" if mac else ""
        attempt = 1
        relogin = False
        while True:
            try:
                if relogin:
                    # AuthFailureError from here is not retryable and propagates
                    await self.point.login()
                    relogin = False
                return await call()
            except (AuthExpiredError, TransientError) as e:
                if attempt >= self.max_attempts:
                    logger.warning(f"{operation}{target} failed after {attempt} attempts: {e}")
                    raise

                # A transient failure of the login itself keeps the re-login pending
                relogin = relogin or isinstance(e, AuthExpiredError)
                delay = self.backoff_delay(attempt)
                logger.info(
                    f"{operation}{target}: {e}; retrying in {delay:.1f}s "
                    f"(attempt {attempt + 1}/{self.max_attempts})"
                )
                await self._sleep(delay)
                attempt += 1

    async def _command(self, operation: str, mac: str, call: Callable[[str], Awaitable[None]]) -> CommandResult:
        async with self._locks.lock_for(mac):
            try:
                await self._run(operation, lambda: call(mac), mac)
            except AlreadyInStateError:
                logger.debug(f"{operation} {mac}: already in requested state")
                return CommandResult.ALREADY_IN_STATE
            except NotFoundError as e:
                logger.warning(f"{operation} {mac}: device not found on controller ({e})")
                return CommandResult.NOT_FOUND

        logger.info(f"{operation} {mac}: applied")
        return CommandResult.APPLIED

    async def block(self, mac: str) -> CommandResult:
        """Block a device. Blocking an already-blocked device succeeds."""
        return await self._command("block", mac, self.point.block)

    async def unblock(self, mac: str) -> CommandResult:
        """Unblock a device. Unblocking an unblocked device succeeds."""
        return await self._command("unblock", mac, self.point.unblock)

    async def list_blocked(self) -> set[str]:
        """Return the MACs the controller currently blocks (never cached)."""
        return await self._run("list_blocked", self.point.list_blocked)

    async def list_known(self) -> set[str]:
        """Return the MACs currently online, reusing a recent answer."""
        cached = self._known_cache.get("known")
        if cached is not None:
            return set(cached)
        known = await self._run("list_known", self.point.list_known)
        self._known_cache["known"] = frozenset(known)
        return known

    async def list_clients(self) -> list[ClientDevice]:
        return await self._run("list_clients", self.point.list_clients)

    async def check_connection(self) -> dict:
        """Log in and list clients, reporting what worked.

        Returns:
            Dict with "configured", "authenticated", "client_count" and "error"
        """
        result: dict = {
            "configured": self.point.is_configured(),
            "authenticated": False,
            "client_count": None,
            "error": None,
        }
        if not result["configured"]:
            result["error"] = str(NotConfiguredError())
            return result

        try:
            await self._run("login", self.point.login)
            result["authenticated"] = True
            result["client_count"] = len(await self.list_clients())
        except ControllerError as e:
            result["error"] = str(e)
        return result

    async def close(self) -> None:
        await self.point.close()
