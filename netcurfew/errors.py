"""Error taxonomy for netcurfew.

Controller errors are raised by the enforcement point client and the gateway;
everything the application surface raises derives from NetcurfewError so callers
(CLI, API layer) can catch one type and show its message.
"""

from typing import Optional


class NetcurfewError(Exception):
    """Base class for all netcurfew errors."""


class ValidationError(NetcurfewError):
    """Input rejected before any network call (bad MAC, bad minutes, bad schedule)."""


class UnknownDeviceError(NetcurfewError):
    """The MAC is not in the managed set."""

    def __init__(self, mac: str) -> None:
        self.mac = mac
        super().__init__(f"Device {mac} is not under access control")


class StorageError(NetcurfewError):
    """The device database could not be opened."""


class ControllerError(NetcurfewError):
    """Base class for errors coming from the enforcement point."""

    retryable = False

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        mac: Optional[str] = None,
    ) -> None:
        self.operation = operation
        self.mac = mac
        super().__init__(message)


class NotConfiguredError(ControllerError):
    """No controller host or credentials configured."""

    def __init__(self, message: str = "Controller not configured", **kwargs: Optional[str]) -> None:
        super().__init__(
            f"{message}. Set host, username and password in the [controller] "
            "config section or the UNIFI_* environment variables.",
            **kwargs,
        )


class AuthFailureError(ControllerError):
    """Login rejected (bad credentials)."""


class AuthExpiredError(ControllerError):
    """Session cookie/token is stale; recovered by re-login."""

    retryable = True


class PermissionDeniedError(ControllerError):
    """Authenticated account lacks rights for the command."""

    def __init__(self, operation: str, mac: Optional[str] = None, detail: str = "") -> None:
        target = f" for {mac}" if mac else ""
        message = (
            f"Controller denied '{operation}'{target}. The controller account needs "
            "full management rights on the site (a read-only or limited admin "
            "cannot block clients)."
        )
        if detail:
            message += f" Controller said: {detail}"
        super().__init__(message, operation=operation, mac=mac)


class NotFoundError(ControllerError):
    """Device unknown to the controller (offline, forgotten, or removed)."""


class TransientError(ControllerError):
    """Timeout, refused connection or server-side failure."""

    retryable = True


class AlreadyInStateError(ControllerError):
    """Controller reports the client is already blocked/unblocked.

    The gateway turns this into a successful result.
    """
