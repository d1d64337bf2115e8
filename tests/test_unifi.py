"""Tests for the UniFi controller client, against httpx.MockTransport."""

import json
from typing import Callable

import httpx
import pytest

from netcurfew.controller.unifi import UnifiClient, UnifiConfig
from netcurfew.errors import (
    AlreadyInStateError,
    AuthExpiredError,
    AuthFailureError,
    ControllerError,
    NotConfiguredError,
    NotFoundError,
    PermissionDeniedError,
    TransientError,
)

MAC = "aa:bb:cc:dd:ee:01"


def ok(data: list | None = None, **kwargs) -> httpx.Response:
    return httpx.Response(200, json={"meta": {"rc": "ok"}, "data": data or []}, **kwargs)


def error(status: int, msg: str) -> httpx.Response:
    return httpx.Response(status, json={"meta": {"rc": "error", "msg": msg}, "data": []})


class FakeUnifi:
    """Request recorder with a per-path response table."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[str, Callable[[httpx.Request], httpx.Response]] = {}

    def route(self, path: str, response: httpx.Response | Callable[[httpx.Request], httpx.Response]) -> None:
        self.routes[path] = response if callable(response) else (lambda _req: response)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get(request.url.path)
        if handler is None:
            return error(404, "api.err.NoSuchObject")
        return handler(request)

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]


def make_client(fake: FakeUnifi, **overrides) -> UnifiClient:
    settings = {"host": "unifi.local", "username": "admin", "password": "secret"}
    settings.update(overrides)
    return UnifiClient(UnifiConfig(**settings), transport=httpx.MockTransport(fake))


@pytest.fixture()
def fake() -> FakeUnifi:
    unifi = FakeUnifi()
    unifi.route("/api/login", ok())
    return unifi


class TestLogin:
    @pytest.mark.asyncio
    async def test_classic_login_then_command(self, fake: FakeUnifi) -> None:
        fake.route("/api/s/default/cmd/stamgr", ok())
        client = make_client(fake)

        await client.block(MAC)

        assert fake.paths() == ["/api/login", "/api/s/default/cmd/stamgr"]
        body = json.loads(fake.requests[1].content)
        assert body == {"cmd": "block-sta", "mac": MAC}
        assert client.is_logged_in
        await client.close()

    @pytest.mark.asyncio
    async def test_unifi_os_paths_and_csrf(self) -> None:
        fake = FakeUnifi()
        fake.route("/api/auth/login", ok(headers={"X-CSRF-Token": "token-1"}))
        fake.route("/proxy/network/api/s/home/cmd/stamgr", ok())
        client = make_client(fake, unifi_os=True, site="home")

        await client.unblock(MAC)

        assert fake.paths() == ["/api/auth/login", "/proxy/network/api/s/home/cmd/stamgr"]
        assert fake.requests[1].headers["x-csrf-token"] == "token-1"
        assert json.loads(fake.requests[1].content)["cmd"] == "unblock-sta"
        await client.close()

    @pytest.mark.asyncio
    async def test_bad_credentials(self, fake: FakeUnifi) -> None:
        fake.route("/api/login", error(400, "api.err.Invalid"))
        client = make_client(fake)

        with pytest.raises(AuthFailureError) as exc_info:
            await client.login()
        assert "secret" not in str(exc_info.value)
        assert not client.is_logged_in

    @pytest.mark.asyncio
    async def test_not_configured(self, fake: FakeUnifi) -> None:
        client = make_client(fake, host=None)

        assert not client.is_configured()
        with pytest.raises(NotConfiguredError):
            await client.block(MAC)
        assert fake.requests == []


class TestErrorClassification:
    @pytest.mark.asyncio
    async def test_expired_session(self, fake: FakeUnifi) -> None:
        fake.route("/api/s/default/cmd/stamgr", error(401, "api.err.LoginRequired"))
        client = make_client(fake)

        with pytest.raises(AuthExpiredError):
            await client.block(MAC)
        assert not client.is_logged_in

    @pytest.mark.asyncio
    async def test_permission_denied_names_operation_and_mac(self, fake: FakeUnifi) -> None:
        fake.route("/api/s/default/cmd/stamgr", error(403, "api.err.NoPermission"))
        client = make_client(fake)

        with pytest.raises(PermissionDeniedError) as exc_info:
            await client.block(MAC)
        assert exc_info.value.operation == "block"
        assert exc_info.value.mac == MAC
        assert MAC in str(exc_info.value)
        assert "'block'" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_error_message_with_http_200(self, fake: FakeUnifi) -> None:
        fake.route("/api/s/default/cmd/stamgr", error(200, "api.err.NoPermission"))
        client = make_client(fake)

        with pytest.raises(PermissionDeniedError):
            await client.unblock(MAC)

    @pytest.mark.asyncio
    async def test_already_in_state(self, fake: FakeUnifi) -> None:
        fake.route("/api/s/default/cmd/stamgr", error(400, "api.err.AlreadyBlocked"))
        client = make_client(fake)

        with pytest.raises(AlreadyInStateError):
            await client.block(MAC)

    @pytest.mark.asyncio
    async def test_unknown_station(self, fake: FakeUnifi) -> None:
        fake.route("/api/s/default/cmd/stamgr", error(400, "api.err.UnknownStation"))
        client = make_client(fake)

        with pytest.raises(NotFoundError):
            await client.block(MAC)

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, fake: FakeUnifi) -> None:
        fake.route("/api/s/default/cmd/stamgr", httpx.Response(502, text="Bad Gateway"))
        client = make_client(fake)

        with pytest.raises(TransientError) as exc_info:
            await client.block(MAC)
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_connection_failure_is_transient(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = UnifiClient(
            UnifiConfig(host="unifi.local", username="admin", password="secret"),
            transport=httpx.MockTransport(refuse),
        )
        with pytest.raises(TransientError):
            await client.login()

    @pytest.mark.asyncio
    async def test_other_rejection(self, fake: FakeUnifi) -> None:
        fake.route("/api/s/default/cmd/stamgr", error(400, "api.err.InvalidPayload"))
        client = make_client(fake)

        with pytest.raises(ControllerError) as exc_info:
            await client.block(MAC)
        assert type(exc_info.value) is ControllerError
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_unreadable_body(self, fake: FakeUnifi) -> None:
        fake.route("/api/s/default/rest/user", httpx.Response(200, text="<html>maintenance</html>"))
        client = make_client(fake)

        with pytest.raises(ControllerError, match="Unreadable controller response for list_blocked"):
            await client.list_blocked()


class TestClientLists:
    @pytest.mark.asyncio
    async def test_list_blocked(self, fake: FakeUnifi) -> None:
        fake.route("/api/s/default/rest/user", ok([
            {"mac": "AA:BB:CC:DD:EE:01", "blocked": True},
            {"mac": "aa:bb:cc:dd:ee:02", "blocked": False},
            {"mac": "aa:bb:cc:dd:ee:03"},
            {"mac": "not-a-mac", "blocked": True},
        ]))
        client = make_client(fake)

        assert await client.list_blocked() == {"aa:bb:cc:dd:ee:01"}

    @pytest.mark.asyncio
    async def test_list_known(self, fake: FakeUnifi) -> None:
        fake.route("/api/s/default/stat/sta", ok([
            {"mac": "aa:bb:cc:dd:ee:01", "hostname": "tablet"},
            {"mac": "aa:bb:cc:dd:ee:04", "hostname": "phone"},
        ]))
        client = make_client(fake)

        assert await client.list_known() == {"aa:bb:cc:dd:ee:01", "aa:bb:cc:dd:ee:04"}

    @pytest.mark.asyncio
    async def test_list_clients_merges_online_and_known(self, fake: FakeUnifi) -> None:
        fake.route("/api/s/default/stat/sta", ok([
            {"mac": "aa:bb:cc:dd:ee:01", "hostname": "tablet", "ip": "192.168.1.20", "oui": "Apple"},
        ]))
        fake.route("/api/s/default/rest/user", ok([
            {"mac": "aa:bb:cc:dd:ee:01", "name": "Kid Tablet", "blocked": True},
            {"mac": "aa:bb:cc:dd:ee:02", "hostname": "console", "last_seen": 1760000000},
        ]))
        client = make_client(fake)

        clients = {c.mac: c for c in await client.list_clients()}

        tablet = clients["aa:bb:cc:dd:ee:01"]
        assert tablet.display_name == "Kid Tablet"
        assert tablet.ip == "192.168.1.20"
        assert tablet.vendor == "Apple"
        assert tablet.is_blocked
        assert tablet.last_seen is not None

        console = clients["aa:bb:cc:dd:ee:02"]
        assert console.display_name == "console"
        assert not console.is_blocked
        assert console.last_seen is not None
