"""UniFi Network controller client.

Talks to the controller's JSON API over HTTPS with a session cookie:

- Classic controller: POST /api/login, API under /api/s/<site>/...
- UniFi OS consoles (UDM, Cloud Key Gen2+): POST /api/auth/login, API under
  /proxy/network/api/s/<site>/..., CSRF token echoed on every write

Only the narrow surface the engine needs is implemented: login, block-sta,
unblock-sta, and the client lists. Every failure is raised as a typed
ControllerError so the gateway can decide whether to retry.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from netcurfew.errors import (
    AlreadyInStateError,
    AuthExpiredError,
    AuthFailureError,
    ControllerError,
    NotConfiguredError,
    NotFoundError,
    PermissionDeniedError,
    TransientError,
    ValidationError,
)
from netcurfew.models.devices import ClientDevice, normalize_mac

logger = logging.getLogger(__name__)

# meta.msg values returned by the controller
LOGIN_REQUIRED_MESSAGES = {"api.err.LoginRequired", "api.err.Unauthorized"}
NO_PERMISSION_MESSAGES = {"api.err.NoPermission", "api.err.Forbidden"}
NOT_FOUND_MESSAGES = {
    "api.err.UnknownStation",
    "api.err.UnknownUser",
    "api.err.UnknownDevice",
    "api.err.NoSuchObject",
}
INVALID_LOGIN_MESSAGES = {"api.err.Invalid", "api.err.InvalidCredentials"}


@dataclass
class UnifiConfig:
    """Connection settings for the UniFi controller."""

    host: Optional[str] = None
    port: int = 8443
    username: Optional[str] = None
    password: Optional[str] = None
    site: str = "default"
    verify_ssl: bool = False  # Controllers ship self-signed certificates
    unifi_os: bool = False
    timeout: float = 10.0

    @property
    def base_url(self) -> str:
        return f"https://{self.host}:{self.port}"


def _meta_message(resp: httpx.Response) -> str:
    """Extract meta.msg from a controller response, or "" if absent."""
    try:
        data = resp.json()
    except ValueError:
        return ""
    if isinstance(data, dict):
        meta = data.get("meta") or {}
        if isinstance(meta, dict):
            return str(meta.get("msg") or "")
    return ""


def classify_response(resp: httpx.Response, operation: str, mac: Optional[str] = None) -> None:
    """Raise the typed error matching a failed controller response.

    Args:
        resp: Controller response
        operation: Command name, for error messages ("block", "list_blocked", ...)
        mac: Target device, if the command has one

    Raises:
        ControllerError subclass describing the failure; returns normally on success
    """
    msg = _meta_message(resp)
    status = resp.status_code

    if status == 200 and not msg.startswith("api.err."):
        return

    if status == 401 or msg in LOGIN_REQUIRED_MESSAGES:
        raise AuthExpiredError(f"Controller session expired during {operation}", operation=operation, mac=mac)

    if status == 403 or msg in NO_PERMISSION_MESSAGES:
        raise PermissionDeniedError(operation, mac, detail=msg or f"HTTP {status}")

    if "already" in msg.lower():
        raise AlreadyInStateError(f"{operation}: {msg}", operation=operation, mac=mac)

    if status == 404 or msg in NOT_FOUND_MESSAGES:
        raise NotFoundError(
            f"Controller does not know {mac or 'the target'} ({msg or 'HTTP 404'})",
            operation=operation,
            mac=mac,
        )

    if status == 429 or status >= 500:
        raise TransientError(f"Controller returned HTTP {status} for {operation}", operation=operation, mac=mac)

    raise ControllerError(
        f"Controller rejected {operation}: {msg or f'HTTP {status}'}",
        operation=operation,
        mac=mac,
    )


def _parse_client(entry: dict[str, Any], online: bool = False) -> Optional[ClientDevice]:
    """Convert a controller client record into a ClientDevice."""
    try:
        mac = normalize_mac(entry.get("mac", ""))
    except ValidationError:
        logger.debug(f"Skipping client with invalid MAC: {entry.get('mac')!r}")
        return None

    last_seen = None
    if entry.get("last_seen"):
        try:
            last_seen = datetime.fromtimestamp(int(entry["last_seen"]), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            pass

    return ClientDevice(
        mac=mac,
        hostname=entry.get("hostname"),
        name=entry.get("name"),
        ip=entry.get("ip") or entry.get("last_ip") or entry.get("fixed_ip"),
        vendor=entry.get("oui"),
        is_wired=bool(entry.get("is_wired", False)),
        last_seen=last_seen or (datetime.now(timezone.utc) if online else None),
        is_blocked=bool(entry.get("blocked", False)),
    )


class UnifiClient:
    """Async client for a UniFi Network controller."""

    def __init__(self, config: UnifiConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        """Initialize the client.

        Args:
            config: Controller connection settings
            transport: Optional httpx transport (tests pass httpx.MockTransport)
        """
        self.config = config
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._csrf_token: Optional[str] = None
        self.is_logged_in = False

    def is_configured(self) -> bool:
        return bool(self.config.host and self.config.username and self.config.password)

    def _require_configured(self, operation: str, mac: Optional[str] = None) -> None:
        if not self.is_configured():
            raise NotConfiguredError(operation=operation, mac=mac)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                verify=self.config.verify_ssl,
                timeout=self.config.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self.is_logged_in = False

    def _api_path(self, path: str) -> str:
        prefix = "/proxy/network" if self.config.unifi_os else ""
        return f"{prefix}/api/s/{self.config.site}/{path}"

    async def _send(
        self,
        method: str,
        path: str,
        operation: str,
        mac: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> httpx.Response:
        """Send a request, mapping transport failures to TransientError."""
        client = await self._get_client()
        headers = {}
        if self._csrf_token:
            headers["X-CSRF-Token"] = self._csrf_token

        try:
            resp = await client.request(method, path, json=payload, headers=headers)
        except httpx.TimeoutException:
            raise TransientError(f"Controller timeout during {operation}", operation=operation, mac=mac) from None
        except httpx.TransportError as e:
            raise TransientError(
                f"Controller unreachable during {operation}: {e}", operation=operation, mac=mac
            ) from None

        # UniFi OS rotates the CSRF token on some responses
        token = resp.headers.get("x-updated-csrf-token") or resp.headers.get("x-csrf-token")
        if token:
            self._csrf_token = token

        return resp

    async def login(self) -> None:
        """Authenticate and store the session cookie.

        Raises:
            NotConfiguredError: host or credentials missing
            AuthFailureError: credentials rejected
            TransientError: controller unreachable
        """
        self._require_configured("login")
        self.is_logged_in = False
        self._csrf_token = None

        path = "/api/auth/login" if self.config.unifi_os else "/api/login"
        resp = await self._send(
            "POST",
            path,
            "login",
            payload={
                "username": self.config.username,
                "password": self.config.password,
                "remember": True,
            },
        )

        msg = _meta_message(resp)
        if resp.status_code in (400, 401, 403) or msg in INVALID_LOGIN_MESSAGES:
            raise AuthFailureError(
                f"Controller rejected login for user '{self.config.username}'. Check the controller credentials.",
                operation="login",
            )
        classify_response(resp, "login")

        self.is_logged_in = True
        logger.info(f"Logged into UniFi controller at {self.config.host}")

    async def _ensure_logged_in(self) -> None:
        if not self.is_logged_in:
            await self.login()

    async def _api(
        self,
        method: str,
        path: str,
        operation: str,
        mac: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> list[dict[str, Any]]:
        """Call a site API endpoint and return its data list."""
        self._require_configured(operation, mac)
        await self._ensure_logged_in()

        resp = await self._send(method, self._api_path(path), operation, mac, payload)
        try:
            classify_response(resp, operation, mac)
        except AuthExpiredError:
            self.is_logged_in = False
            raise

        try:
            data = resp.json().get("data", [])
        except (ValueError, AttributeError):
            raise ControllerError(
                f"Unreadable controller response for {operation}", operation=operation, mac=mac,
            ) from None
        return data if isinstance(data, list) else []

    async def _station_command(self, cmd: str, operation: str, mac: str) -> None:
        await self._api("POST", "cmd/stamgr", operation, mac, payload={"cmd": cmd, "mac": mac})
        logger.debug(f"Controller accepted {cmd} for {mac}")

    async def block(self, mac: str) -> None:
        await self._station_command("block-sta", "block", mac)

    async def unblock(self, mac: str) -> None:
        await self._station_command("unblock-sta", "unblock", mac)

    async def list_blocked(self) -> set[str]:
        """Return MACs of all clients the controller currently blocks."""
        entries = await self._api("GET", "rest/user", "list_blocked")
        blocked = set()
        for entry in entries:
            if entry.get("blocked"):
                client = _parse_client(entry)
                if client:
                    blocked.add(client.mac)
        return blocked

    async def list_known(self) -> set[str]:
        """Return MACs of clients currently connected (online)."""
        entries = await self._api("GET", "stat/sta", "list_known")
        macs = set()
        for entry in entries:
            client = _parse_client(entry, online=True)
            if client:
                macs.add(client.mac)
        return macs

    async def list_clients(self) -> list[ClientDevice]:
        """Return online clients merged with known offline ones."""
        online = await self._api("GET", "stat/sta", "list_clients")
        known = await self._api("GET", "rest/user", "list_clients")

        clients: dict[str, ClientDevice] = {}
        for entry in known:
            client = _parse_client(entry)
            if client:
                clients[client.mac] = client
        for entry in online:
            client = _parse_client(entry, online=True)
            if client is None:
                continue
            previous = clients.get(client.mac)
            if previous:
                client.name = client.name or previous.name
                client.is_blocked = previous.is_blocked
            clients[client.mac] = client

        return sorted(clients.values(), key=lambda c: (c.display_name.lower(), c.mac))
