"""Command-line interface for netcurfew."""

import asyncio
import json
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.table import Table

from netcurfew.config import Config, find_config_file, load_config, merge_cli_options
from netcurfew.controller import EnforcementGateway, UnifiClient
from netcurfew.engine import AccessControlService
from netcurfew.errors import NetcurfewError, UnknownDeviceError
from netcurfew.models.devices import DAY_NAMES, Schedule, normalize_mac, parse_day
from netcurfew.notifiers import SlackNotifier
from netcurfew.storage import DeviceStore

console = Console()

T = TypeVar("T")


def build_service(cfg: Config, store: DeviceStore) -> AccessControlService:
    """Assemble the engine from configuration."""
    gateway = EnforcementGateway(
        UnifiClient(cfg.controller),
        max_attempts=cfg.max_attempts,
        backoff_base=cfg.backoff_base,
    )
    slack_config = cfg.slack_config()
    notifier = SlackNotifier(slack_config) if slack_config else None
    return AccessControlService(
        store,
        gateway,
        tick_interval=cfg.tick_interval,
        notifier=notifier,
    )


def run_with_service(
    ctx: click.Context,
    action: Callable[[AccessControlService], Awaitable[T]],
    read_only: bool = False,
) -> T:
    """Open the store, run one service call, and print errors the CLI way.

    Read-only commands keep working while the daemon holds the database.
    """
    cfg: Config = ctx.obj["config"]

    async def run() -> T:
        with DeviceStore(cfg.db_path, read_only=read_only) as store:
            service = build_service(cfg, store)
            try:
                return await action(service)
            finally:
                await service.stop()

    try:
        return asyncio.run(run())
    except NetcurfewError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


def _format_time(value: Any) -> str:
    if value is None:
        return ""
    return value.astimezone().strftime("%Y-%m-%d %H:%M")


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to config file (default: searches standard locations)",
)
@click.option(
    "--db",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to the DuckDB database file",
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.pass_context
def main(ctx: click.Context, config: Path | None, db: Path | None, verbose: bool) -> None:
    """netcurfew - Schedule-driven network access control for UniFi."""
    ctx.ensure_object(dict)

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    cfg = load_config(config)
    merge_cli_options(cfg, db=db)

    # Ensure parent directory exists
    cfg.db_path.parent.mkdir(parents=True, exist_ok=True)

    ctx.obj["config"] = cfg

    config_path = config or find_config_file()
    if config_path:
        ctx.obj["config_path"] = config_path


@main.command()
@click.option("--once", is_flag=True, help="Run a single reconciliation tick and exit")
@click.option("--tick-interval", type=float, default=None, help="Seconds between ticks (default: 60)")
@click.pass_context
def run(ctx: click.Context, once: bool, tick_interval: float | None) -> None:
    """Run the reconciliation daemon.

    Recovers persisted bonus sessions, then keeps the controller in line with
    every managed device's schedule until interrupted.
    """
    cfg: Config = ctx.obj["config"]
    merge_cli_options(cfg, tick_interval=tick_interval)

    if "config_path" in ctx.obj:
        console.print(f"[dim]Config: {ctx.obj['config_path']}[/dim]")

    async def daemon() -> None:
        with DeviceStore(cfg.db_path) as store:
            service = build_service(cfg, store)

            if once:
                try:
                    report = await service.reconcile_now()
                finally:
                    await service.stop()
                console.print(
                    f"[green]{report.devices} devices: {len(report.blocked)} blocked, "
                    f"{len(report.unblocked)} unblocked, {len(report.drift)} synced[/green]"
                )
                for mac, error in report.failures.items():
                    console.print(f"[red]{mac}: {error}[/red]")
                return

            stop_event = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, stop_event.set)

            devices = len(store.get_managed_devices())
            console.print(
                f"[green]Managing {devices} devices on {cfg.controller.host or '(no controller)'}, "
                f"tick every {cfg.tick_interval:.0f}s[/green]"
            )
            if service.notifier:
                console.print("[cyan]Slack notifications enabled[/cyan]")
            console.print("[dim]Press Ctrl+C to stop[/dim]")

            await service.start()
            try:
                await stop_event.wait()
            finally:
                await service.stop()
                console.print("[green]Stopped[/green]")

    try:
        asyncio.run(daemon())
    except NetcurfewError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


@main.command()
@click.pass_context
def check(ctx: click.Context) -> None:
    """Check the controller connection and credentials."""
    result = run_with_service(ctx, lambda service: service.gateway.check_connection(), read_only=True)

    if result["authenticated"]:
        console.print(f"[green]Connected, {result['client_count']} clients visible[/green]")
    else:
        console.print(f"[red]Connection failed: {result['error']}[/red]")
        sys.exit(1)


@main.command()
@click.option("--all", "show_all", is_flag=True, help="Include devices already under control")
@click.pass_context
def devices(ctx: click.Context, show_all: bool) -> None:
    """List clients known to the controller."""
    clients = run_with_service(ctx, lambda service: service.get_available_devices(), read_only=True)
    if not show_all:
        clients = [c for c in clients if not c.is_managed]

    if not clients:
        console.print("[yellow]No devices found[/yellow]")
        return

    table = Table(title="Controller Clients")
    table.add_column("Name")
    table.add_column("MAC", style="dim")
    table.add_column("IP")
    table.add_column("Vendor")
    table.add_column("Last Seen", style="dim")
    table.add_column("Status")

    for client in clients:
        status = []
        if client.is_managed:
            status.append("[cyan]managed[/cyan]")
        if client.is_blocked:
            status.append("[red]blocked[/red]")
        table.add_row(
            client.display_name[:30],
            client.mac,
            client.ip or "",
            (client.vendor or "")[:20],
            _format_time(client.last_seen),
            " ".join(status),
        )

    console.print(table)


@main.command()
@click.argument("mac")
@click.option("--name", type=str, default=None, help="Display name (default: controller name)")
@click.pass_context
def add(ctx: click.Context, mac: str, name: str | None) -> None:
    """Put a device under access control."""

    async def action(service: AccessControlService):
        info: dict[str, Any] = {"mac": mac, "device_name": name}
        if name is None and service.gateway.is_configured():
            clients = {c.mac: c for c in await service.get_available_devices()}
            device_mac = normalize_mac(mac)
            if device_mac in clients:
                client = clients[device_mac]
                info.update(device_name=client.display_name, ip=client.ip, vendor=client.vendor)
        return service.add_device_to_controls(info)

    device = run_with_service(ctx, action)
    console.print(f"[green]{device.display_name} ({device.mac}) is under access control[/green]")


@main.command()
@click.argument("mac")
@click.pass_context
def remove(ctx: click.Context, mac: str) -> None:
    """Stop controlling a device (unblocks it first)."""
    device = run_with_service(ctx, lambda service: service.remove_device_from_controls(mac))
    console.print(f"[green]Removed {device.display_name} ({device.mac})[/green]")


@main.command()
@click.argument("mac")
@click.option("--minutes", type=int, default=None, help="Temporary block that lifts after N minutes")
@click.pass_context
def block(ctx: click.Context, mac: str, minutes: int | None) -> None:
    """Block a device now."""
    result = run_with_service(ctx, lambda service: service.block_device(mac, duration_minutes=minutes))
    color = "green" if result.success else "yellow"
    console.print(f"[{color}]{result.message}[/{color}]")


@main.command()
@click.argument("mac")
@click.pass_context
def unblock(ctx: click.Context, mac: str) -> None:
    """Unblock a device now."""
    result = run_with_service(ctx, lambda service: service.unblock_device(mac))
    console.print(f"[green]{result.message}[/green]")


@main.command()
@click.argument("mac")
@click.option(
    "--add",
    "windows",
    multiple=True,
    help='Blocked window "DAY HH:MM-HH:MM", e.g. "mon 21:00-23:59" (repeatable)',
)
@click.option("--clear", is_flag=True, help="Remove all windows before adding")
@click.option(
    "--file",
    "schedule_file",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help='JSON schedule: {"monday": {"blockedPeriods": [{"start": ..., "end": ...}]}}',
)
@click.pass_context
def schedule(
    ctx: click.Context,
    mac: str,
    windows: tuple[str, ...],
    clear: bool,
    schedule_file: Path | None,
) -> None:
    """Show or change a device's weekly blocked windows."""

    async def action(service: AccessControlService) -> Schedule:
        device_mac = normalize_mac(mac)
        device = service.store.get_managed_device(device_mac)
        if device is None:
            raise UnknownDeviceError(device_mac)

        if not windows and not clear and schedule_file is None:
            return device.schedule

        if schedule_file is not None:
            with open(schedule_file) as f:
                new = Schedule.from_dict(json.load(f))
        else:
            new = Schedule() if clear else device.schedule

        for entry in windows:
            try:
                day, times = entry.split()
                start, end = times.split("-")
            except ValueError:
                raise click.BadParameter(f"Expected \"DAY HH:MM-HH:MM\", got {entry!r}") from None
            new.add_window(parse_day(day), start, end)

        return await service.set_schedule(mac, new)

    changing = bool(windows or clear or schedule_file is not None)
    result = run_with_service(ctx, action, read_only=not changing)

    if result.is_empty():
        console.print("[yellow]No blocked windows[/yellow]")
        return

    table = Table(title=f"Schedule for {mac}")
    table.add_column("Day")
    table.add_column("Blocked")
    for weekday, name in enumerate(DAY_NAMES):
        periods = result.windows_for(weekday)
        if periods:
            table.add_row(name.capitalize(), ", ".join(f"{w.start}-{w.end}" for w in periods))
    console.print(table)


@main.command()
@click.argument("mac")
@click.argument("minutes", type=int)
@click.pass_context
def bonus(ctx: click.Context, mac: str, minutes: int) -> None:
    """Grant bonus time: unrestricted access for MINUTES."""
    session = run_with_service(ctx, lambda service: service.add_bonus_time(mac, minutes))
    expires = session.expires_at.astimezone().strftime("%H:%M")
    console.print(f"[green]Bonus time for {session.mac}: {minutes} minutes (until {expires})[/green]")
    console.print("[dim]The running daemon ends the session when it expires[/dim]")


@main.command("cancel-bonus")
@click.argument("mac")
@click.pass_context
def cancel_bonus(ctx: click.Context, mac: str) -> None:
    """End bonus time early."""
    result = run_with_service(ctx, lambda service: service.cancel_bonus_time(mac))
    color = "green" if result.cancelled else "yellow"
    console.print(f"[{color}]{result.message}[/{color}]")


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show managed devices with live controller state."""
    statuses = run_with_service(ctx, lambda service: service.get_managed_devices_status(), read_only=True)

    if not statuses:
        console.print("[yellow]No devices under access control[/yellow]")
        return

    if not statuses[0].controller_reachable:
        console.print("[yellow]Controller unreachable, showing stored state[/yellow]")

    table = Table(title="Managed Devices")
    table.add_column("Name")
    table.add_column("MAC", style="dim")
    table.add_column("Online")
    table.add_column("Blocked")
    table.add_column("Reason")
    table.add_column("Bonus", justify="right")

    for st in statuses:
        blocked = "[red]yes[/red]" if st.is_blocked else "[green]no[/green]"
        if st.is_blocked != st.should_be_blocked:
            blocked += " [yellow]*[/yellow]"
        reason = st.device.block_reason.value if st.device.block_reason else ""
        if st.device.blocked_until:
            reason += f" until {_format_time(st.device.blocked_until)}"
        bonus_left = f"{st.bonus.remaining_minutes} min" if st.bonus.active else ""

        table.add_row(
            st.device.display_name[:30],
            st.mac,
            "yes" if st.is_online else "[dim]no[/dim]",
            blocked,
            reason,
            bonus_left,
        )

    console.print(table)
    if any(st.is_blocked != st.should_be_blocked for st in statuses):
        console.print("[dim]* differs from the decided state; fixed on the next tick[/dim]")


@main.command()
@click.option("--mac", type=str, default=None, help="Only this device")
@click.option("--limit", type=int, default=50)
@click.pass_context
def logs(ctx: click.Context, mac: str | None, limit: int) -> None:
    """Show recent access-control activity."""

    async def action(service: AccessControlService):
        return service.get_activity_log(mac, limit)

    entries = run_with_service(ctx, action, read_only=True)

    if not entries:
        console.print("[green]No activity recorded[/green]")
        return

    table = Table(title="Activity")
    table.add_column("Time", style="dim")
    table.add_column("MAC")
    table.add_column("Action")
    table.add_column("Reason")
    table.add_column("Duration", justify="right")

    for entry in entries:
        table.add_row(
            _format_time(entry.timestamp),
            entry.mac,
            entry.action.value,
            entry.reason.value if entry.reason else "",
            f"{entry.duration_minutes} min" if entry.duration_minutes else "",
        )

    console.print(table)


if __name__ == "__main__":
    main()
