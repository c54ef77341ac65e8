"""Process termination requested by viewers.

A kill request goes through three steps:

1. Validation - the pid must be a positive integer, not the daemon itself,
   and not marked protected in the latest process snapshot. Rejected
   requests never reach the platform call.
2. Execution - forceful termination (SIGKILL on POSIX, TerminateProcess on
   Windows) via psutil, followed by a bounded wait for the process to exit.
3. Refresh - once the platform call has been issued, the process cache is
   refreshed immediately so the next broadcast reflects the result.

The requesting viewer receives an acknowledgment first and exactly one
outcome afterwards.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import psutil
import structlog

from taskwarden.models import KillOutcome, KillRequest, KillStatus, ResourceKind
from taskwarden.protocol import kill_ack_message, kill_outcome_message

if TYPE_CHECKING:
    from taskwarden.cache import RefreshScheduler
    from taskwarden.config import Config

log = structlog.get_logger()

# Blocking call: terminate `pid` and wait up to the given seconds for it to exit
Terminator = Callable[[int, float], None]


class KillRejected(Exception):
    """A kill request that will not be (or was not) carried out."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def terminate_process(pid: int, confirm_timeout: float) -> None:
    """Forcefully terminate a process and wait for it to go away.

    Raises:
        psutil.NoSuchProcess: No process with this pid.
        psutil.AccessDenied: Not allowed to signal it.
        KillRejected: It was still alive after `confirm_timeout` seconds.
    """
    proc = psutil.Process(pid)
    proc.kill()
    try:
        proc.wait(timeout=confirm_timeout)
    except psutil.TimeoutExpired as e:
        raise KillRejected(f"process {pid} did not exit within {confirm_timeout}s") from e


class KillPipeline:
    """Validates, executes and reports kill requests."""

    def __init__(
        self,
        scheduler: RefreshScheduler,
        *,
        terminator: Terminator = terminate_process,
        kill_timeout: float = 5.0,
        confirm_timeout: float = 3.0,
        own_pid: int | None = None,
    ) -> None:
        self.scheduler = scheduler
        self._terminator = terminator
        self._kill_timeout = kill_timeout
        self._confirm_timeout = confirm_timeout
        self._own_pid = own_pid if own_pid is not None else os.getpid()

    @classmethod
    def from_config(cls, config: Config, scheduler: RefreshScheduler) -> KillPipeline:
        return cls(
            scheduler,
            kill_timeout=config.kill.kill_timeout,
            confirm_timeout=config.kill.confirm_timeout,
        )

    async def execute(
        self, request: KillRequest, respond: Callable[[dict[str, Any]], Any]
    ) -> KillOutcome:
        """Run a request, emitting the acknowledgment then the outcome via `respond`."""
        respond(kill_ack_message(request.pid, request.request_id))
        try:
            outcome = await self.kill(request.pid)
        except Exception as e:
            log.exception("kill_pipeline_failed", pid=request.pid, session=request.session_id)
            outcome = KillOutcome.failed(request.pid, f"internal error: {e}")
        outcome = outcome.with_request_id(request.request_id)
        respond(kill_outcome_message(outcome))
        return outcome

    async def kill(self, pid: Any) -> KillOutcome:
        """Terminate one process and report the result."""
        try:
            target = self._validate(pid)
        except KillRejected as e:
            log.info("kill_rejected", pid=pid, reason=e.reason)
            return KillOutcome.failed(pid, e.reason)

        log.info("kill_requested", pid=target)
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self._terminator, target, self._confirm_timeout),
                timeout=self._kill_timeout,
            )
        except psutil.ZombieProcess:
            outcome = KillOutcome.failed(target, "process already exited")
        except psutil.NoSuchProcess:
            outcome = KillOutcome.failed(target, f"process {target} not found")
        except psutil.AccessDenied:
            outcome = KillOutcome.failed(target, "permission denied")
        except KillRejected as e:
            outcome = KillOutcome.failed(target, e.reason)
        except asyncio.TimeoutError:
            outcome = KillOutcome.failed(target, f"timed out after {self._kill_timeout}s")
        except OSError as e:
            outcome = KillOutcome.failed(target, str(e) or type(e).__name__)
        else:
            outcome = KillOutcome(
                pid=target,
                status=KillStatus.SUCCEEDED,
                reason=f"process {target} terminated",
            )

        # Bypass the freshness budget so viewers see the process table as it is now
        await self.scheduler.refresh(ResourceKind.PROCESSES, force=True)

        if outcome.succeeded:
            log.info("kill_succeeded", pid=target)
        else:
            log.info("kill_failed", pid=target, reason=outcome.reason)
        return outcome

    def _validate(self, pid: Any) -> int:
        if isinstance(pid, bool) or not isinstance(pid, int):
            raise KillRejected(f"invalid pid: {pid!r}")
        if pid <= 0:
            raise KillRejected(f"invalid pid: {pid}")
        if pid == self._own_pid:
            raise KillRejected("refusing to terminate the monitor itself")

        entry = self.scheduler.cache.peek(ResourceKind.PROCESSES).find(pid)
        if entry is not None and not entry.killable:
            raise KillRejected(f"process {pid} ({entry.name}) is protected")
        return pid
