"""The taskwarden service process.

The daemon owns one of each long-lived component: the fallback chain that
samples the OS, the cache and refresh scheduler, the broadcast hub, the kill
pipeline and the Unix socket server. Everything interesting happens in their
tasks; the daemon itself only starts them in order, logs a periodic
heartbeat, and tears them down in reverse when SIGTERM/SIGINT arrives.
"""

import asyncio
import math
import os
import signal
from dataclasses import dataclass
from datetime import datetime
from importlib.metadata import PackageNotFoundError, version

import psutil
import structlog

from taskwarden.cache import RefreshScheduler, SampleCache
from taskwarden.collector import SystemCollector
from taskwarden.config import Config
from taskwarden.fallback import CommandRunner, FallbackChain, run_command
from taskwarden.hub import BroadcastHub
from taskwarden.killer import KillPipeline
from taskwarden.logging import configure
from taskwarden.models import ResourceKind
from taskwarden.socket_server import SocketServer

log = structlog.get_logger()


def _package_version() -> str:
    try:
        return version("taskwarden")
    except PackageNotFoundError:
        return "unknown"


@dataclass
class DaemonState:
    """Lifecycle bookkeeping, reported in heartbeats."""

    running: bool = False
    started_at: datetime | None = None
    heartbeat_count: int = 0

    def mark_started(self) -> None:
        self.running = True
        self.started_at = datetime.now()


class Daemon:
    """Starts, supervises and stops the taskwarden components."""

    def __init__(
        self,
        config: Config,
        collector: SystemCollector | None = None,
        *,
        runner: CommandRunner = run_command,
    ):
        self.config = config
        self.state = DaemonState()

        self.chain = FallbackChain.from_config(config, collector, runner=runner)
        self.cache = SampleCache()
        self.scheduler = RefreshScheduler.from_config(config, self.cache, self.chain)
        self.hub = BroadcastHub.from_config(config, self.scheduler)
        self.pipeline = KillPipeline.from_config(config, self.scheduler)

        self._socket_server: SocketServer | None = None
        self._owns_pid_file = False
        self._shutdown_event = asyncio.Event()

    @property
    def socket_server(self) -> SocketServer | None:
        return self._socket_server

    async def start(self) -> None:
        """Bring every component up, then block until shutdown is requested.

        Raises:
            RuntimeError: Another taskwarden daemon holds the PID file.
        """
        log.info("daemon_starting", version=_package_version(), pid=os.getpid())
        log.info(
            "daemon_config",
            system_max_age=self.config.cache.system_max_age,
            process_max_age=self.config.cache.process_max_age,
            system_interval=self.config.broadcast.system_interval,
            process_interval=self.config.broadcast.process_interval,
            top_n=self.config.collector.top_n,
            process_strategies=self.chain.strategies(ResourceKind.PROCESSES),
        )

        loop = asyncio.get_running_loop()
        for signum in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(signum, self._handle_signal, signum)

        if self._check_already_running():
            log.error("daemon_already_running", pid_file=str(self.config.pid_path))
            raise RuntimeError("Daemon is already running")
        self._write_pid_file()

        # First refresh of every kind; until it lands viewers see placeholders
        for kind in ResourceKind:
            self.scheduler.get(kind)
        await self.hub.start()

        self._socket_server = SocketServer(
            self.config.socket_path,
            hub=self.hub,
            pipeline=self.pipeline,
            scheduler=self.scheduler,
            outbox_size=self.config.broadcast.outbox_size,
        )
        await self._socket_server.start()

        self.state.mark_started()
        log.info("daemon_started", socket=str(self.config.socket_path))

        await self._main_loop()

    async def stop(self) -> None:
        """Tear components down in reverse order. Safe after a failed start."""
        log.info("daemon_stopping")
        self.state.running = False

        # Viewers go first so nothing new is requested during teardown
        if self._socket_server is not None:
            await self._socket_server.stop()
            self._socket_server = None

        await self.hub.stop()
        await self.scheduler.close()

        if self._owns_pid_file:
            self._remove_pid_file()
            self._owns_pid_file = False

        log.info("daemon_stopped", heartbeats=self.state.heartbeat_count)

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def _handle_signal(self, signum: signal.Signals) -> None:
        log.info("signal_received", signal=signal.Signals(signum).name)
        self._shutdown_event.set()

    # ─────────────────────────────────────────────────────────────────────
    # PID file
    # ─────────────────────────────────────────────────────────────────────

    def _write_pid_file(self) -> None:
        path = self.config.pid_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(str(os.getpid()))
        self._owns_pid_file = True
        log.debug("pid_file_written", path=str(path))

    def _remove_pid_file(self) -> None:
        path = self.config.pid_path
        if path.exists():
            path.unlink()
            log.debug("pid_file_removed", path=str(path))

    def _check_already_running(self) -> bool:
        """Whether the PID file points at a live taskwarden process.

        A PID file left behind by a crash (or a reboot) may name a pid that
        is gone or now belongs to something else; such files are deleted.
        """
        path = self.config.pid_path
        if not path.exists():
            return False

        try:
            pid = int(path.read_text().strip())
        except ValueError:
            log.warning("pid_file_stale", reason="unparseable", path=str(path))
            self._remove_pid_file()
            return False

        try:
            proc = psutil.Process(pid)
            cmdline = proc.cmdline()
        except psutil.NoSuchProcess:
            log.warning("pid_file_stale", reason="no such process", pid=pid)
            self._remove_pid_file()
            return False
        except psutil.AccessDenied:
            # Owned by another user; treat as a live daemon rather than clobber it
            log.warning("pid_file_uninspectable", pid=pid)
            return True

        if any("taskwarden" in part.lower() for part in cmdline):
            log.info("daemon_instance_found", pid=pid, cmdline=" ".join(cmdline[:3]))
            return True

        log.warning("pid_file_stale", reason="pid reused", pid=pid, process=proc.name())
        self._remove_pid_file()
        return False

    # ─────────────────────────────────────────────────────────────────────
    # Heartbeat
    # ─────────────────────────────────────────────────────────────────────

    def heartbeat(self) -> dict:
        """Daemon health summary for the periodic heartbeat event."""
        rss = psutil.Process().memory_info().rss
        stats: dict = {
            "sessions": self.hub.session_count,
            "rss_mb": round(rss / (1024 * 1024), 1),
        }
        for kind in ResourceKind:
            entry = self.cache.entry(kind)
            age = self.cache.age(kind)
            stats[kind.value] = {
                "version": entry.version,
                "age": None if math.isinf(age) else round(age, 1),
                "failures": entry.failures,
                "source": getattr(entry.payload, "source", None),
            }
        return stats

    async def _main_loop(self) -> None:
        """Wake every heartbeat interval to log health until shutdown."""
        interval = self.config.system.heartbeat_interval
        while True:
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass

            self.state.heartbeat_count += 1
            try:
                log.info("daemon_heartbeat", **self.heartbeat())
            except Exception:
                log.exception("heartbeat_failed")


async def run_daemon(config: Config | None = None) -> None:
    """Entry point for `taskwarden daemon`.

    Args:
        config: Configuration to run with; read from the config file when omitted
    """
    config = config or Config.load()
    configure(config)

    daemon = Daemon(config)
    try:
        await daemon.start()
    except Exception:
        log.exception("daemon_crashed")
        raise
    finally:
        await daemon.stop()
