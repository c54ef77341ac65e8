"""CLI commands for taskwarden."""

import click

from taskwarden.formatting import SORT_FIELDS


@click.group()
@click.version_option(package_name="taskwarden")
def main() -> None:
    """Watch host resource usage and terminate runaway processes."""
    pass


@main.command()
def daemon() -> None:
    """Run the monitoring service."""
    import asyncio

    from taskwarden.daemon import run_daemon

    asyncio.run(run_daemon())


@main.command()
def tui() -> None:
    """Launch interactive dashboard."""
    from taskwarden.config import Config
    from taskwarden.tui import run_tui

    config = Config.load()
    run_tui(config)


@main.command()
@click.option("--timeout", "-t", default=2.0, help="Seconds to wait for the daemon")
def status(timeout: float) -> None:
    """Liveness probe: exit 0 if the daemon answers, 1 otherwise."""
    import asyncio

    from taskwarden import logging
    from taskwarden.config import Config
    from taskwarden.socket_client import SocketClient

    config = Config.load()

    async def probe() -> dict:
        client = SocketClient(config.socket_path)
        await client.connect()
        try:
            return await client.probe_health(timeout=timeout)
        finally:
            await client.disconnect()

    try:
        reply = asyncio.run(probe())
    except FileNotFoundError:
        logging.daemon_not_running(str(config.socket_path))
        raise SystemExit(1)
    except (ConnectionError, OSError, TimeoutError, ValueError) as e:
        logging.health_failed(str(e) or type(e).__name__)
        raise SystemExit(1)

    if reply.get("status") != "ok":
        logging.health_failed(f"status {reply.get('status')!r}")
        raise SystemExit(1)
    logging.health_ok(reply.get("sessions", 0), reply.get("uptime", 0.0))


@main.command()
@click.option("--limit", "-n", default=15, help="Number of processes to show")
@click.option("--refresh", "-r", is_flag=True, help="Ask the daemon for fresh data first")
@click.option(
    "--sort",
    "-s",
    "sort_field",
    default="cpu",
    type=click.Choice(SORT_FIELDS),
    help="Column to sort on",
)
@click.option("--asc", is_flag=True, help="Sort ascending instead of descending")
@click.option("--filter", "-f", "query", default="", help="Only rows whose name, pid or user match")
def top(limit: int, refresh: bool, sort_field: str, asc: bool, query: str) -> None:
    """Print the daemon's current system usage and top processes."""
    import asyncio

    from taskwarden import logging, protocol
    from taskwarden.config import Config
    from taskwarden.formatting import (
        filter_processes,
        format_age,
        format_cpu_info,
        format_percent,
        sort_processes,
        system_summary,
    )
    from taskwarden.socket_client import SocketClient

    config = Config.load()

    async def fetch() -> tuple[dict, dict]:
        client = SocketClient(config.socket_path)
        await client.connect()
        try:
            # Both snapshots are pushed on connect, system first
            system = await client.wait_for_type(protocol.SYSTEM_INFO, timeout=5.0)
            processes = await client.wait_for_type(protocol.PROCESS_LIST, timeout=5.0)
            if refresh:
                await client.request_refresh("processes")
                processes = await client.wait_for_type(
                    protocol.PROCESS_LIST, timeout=config.cache.refresh_timeout
                )
            return system["snapshot"], processes["snapshot"]
        finally:
            await client.disconnect()

    try:
        system, processes = asyncio.run(fetch())
    except FileNotFoundError:
        logging.daemon_not_running(str(config.socket_path))
        raise SystemExit(1)
    except (ConnectionError, OSError, TimeoutError) as e:
        logging.error(f"Could not read from daemon: {e}")
        raise SystemExit(1)

    click.echo(system_summary(system))
    cpu_info = format_cpu_info(system.get("cpu", {}))
    if cpu_info:
        click.echo(cpu_info)
    click.echo(
        f"Processes: {processes.get('total_count', 0)} "
        f"[{processes.get('source')}, {format_age(processes.get('captured_at', 0))}]"
    )
    click.echo()
    click.echo(f"{'PID':>7}  {'Name':24}  {'CPU':>7}  {'MEM':>7}  {'User':12}")
    click.echo("-" * 64)
    rows = filter_processes(processes.get("processes", []), query)
    rows = sort_processes(rows, sort_field, descending=not asc)
    if not rows:
        click.echo("No processes found")
    for proc in rows[:limit]:
        marker = "" if proc.get("killable", True) else " *"
        click.echo(
            f"{proc['pid']:>7}  {proc['name'][:24]:24}  "
            f"{format_percent(proc['cpu']):>7}  {format_percent(proc['memory']):>7}  "
            f"{str(proc['user'])[:12]:12}{marker}"
        )


@main.command()
@click.argument("pid", type=int)
@click.option("--wait", "-w", "wait", default=None, type=float, help="Seconds to wait for result")
@click.option("--yes", "-y", is_flag=True, help="Don't ask for confirmation")
def kill(pid: int, wait: float | None, yes: bool) -> None:
    """Terminate process PID through the daemon."""
    import asyncio

    if not yes:
        click.confirm(f"Terminate process {pid}?", abort=True)

    from taskwarden import logging
    from taskwarden.config import Config
    from taskwarden.models import KillOutcome
    from taskwarden.socket_client import SocketClient

    config = Config.load()
    timeout = wait if wait is not None else config.kill.client_wait

    async def request() -> KillOutcome:
        client = SocketClient(config.socket_path)
        await client.connect()
        try:
            logging.kill_sent(pid)
            return await client.kill(pid, timeout=timeout, read=True)
        finally:
            await client.disconnect()

    try:
        outcome = asyncio.run(request())
    except FileNotFoundError:
        logging.daemon_not_running(str(config.socket_path))
        raise SystemExit(1)
    except (ConnectionError, OSError) as e:
        logging.error(f"Could not reach daemon: {e}")
        raise SystemExit(1)

    logging.kill_reported(outcome)
    if not outcome.succeeded:
        raise SystemExit(1)


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    from taskwarden.config import Config

    cfg = Config.load()

    click.echo(f"# Config file: {cfg.config_path}")
    click.echo(f"# Exists: {cfg.config_path.exists()}")
    click.echo()
    click.echo(cfg.to_toml())


@config.command("init")
@click.option("--force", is_flag=True, help="Overwrite an existing config file")
def config_init(force: bool) -> None:
    """Write a config file with default values."""
    from taskwarden import logging
    from taskwarden.config import Config

    cfg = Config()
    if cfg.config_path.exists() and not force:
        logging.config_exists(str(cfg.config_path))
        return
    cfg.save()
    logging.config_created(str(cfg.config_path))


@config.command("path")
def config_path() -> None:
    """Print config, log, PID and socket locations."""
    from taskwarden.config import Config

    cfg = Config()
    click.echo(f"config: {cfg.config_path}")
    click.echo(f"log:    {cfg.log_path}")
    click.echo(f"pid:    {cfg.pid_path}")
    click.echo(f"socket: {cfg.socket_path}")
