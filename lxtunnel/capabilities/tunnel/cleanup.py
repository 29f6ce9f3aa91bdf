"""Post-phase teardown of a detached tunnel process.

Escalates SIGINT -> SIGTERM -> SIGKILL with fixed waits in between.  LocalXpose
releases reserved subdomains on a graceful shutdown, so SIGINT always goes
first and SIGKILL is a last resort.  Nothing here ever raises: a failed
cleanup must not fail the job.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable

from lxtunnel.core.process import OsProcessSignaller, ProcessSignaller
from lxtunnel.storage.state_store import StateStore

logger = logging.getLogger(__name__)

GRACEFUL_WAIT = 2.0
TERMINATE_WAIT = 1.0

STATE_PID = "tunnelPid"
STATE_LOG_PATH = "tunnelLogPath"


async def _stop_process(
    pid: int,
    signaller: ProcessSignaller,
    sleep: Callable[[float], Awaitable[None]],
    log: logging.Logger,
) -> None:
    if not signaller.is_alive(pid):
        log.info("Tunnel process already stopped")
        return

    # Same as Ctrl+C; lets the tunnel deregister cleanly
    signaller.interrupt(pid)
    log.debug("Sent SIGINT to tunnel process")
    await sleep(GRACEFUL_WAIT)

    if not signaller.is_alive(pid):
        log.info("Tunnel process terminated gracefully")
        return

    signaller.terminate(pid)
    log.debug("Sent SIGTERM to tunnel process")
    await sleep(TERMINATE_WAIT)

    if not signaller.is_alive(pid):
        log.info("Tunnel process terminated after SIGTERM")
        return

    signaller.kill(pid)
    log.warning(
        "Had to force kill tunnel process - this may cause issues with "
        "reserved subdomains"
    )


async def cleanup_tunnel(
    pid: int | str | None,
    log_path: str | Path | None,
    *,
    signaller: ProcessSignaller | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    log: logging.Logger | None = None,
) -> None:
    """Stop the tunnel process *pid* and delete *log_path*.  Never raises."""
    log = log or logger
    try:
        signaller = signaller or OsProcessSignaller()

        if pid is not None and str(pid).strip():
            try:
                pid_num = int(str(pid).strip())
            except ValueError:
                pid_num = 0
            # 0 and negative pids address process groups, never one process
            if pid_num <= 0:
                log.warning("Ignoring invalid tunnel PID in saved state: %r", pid)
            else:
                log.info("Stopping tunnel process (PID: %d)...", pid_num)
                try:
                    await _stop_process(pid_num, signaller, sleep, log)
                except ProcessLookupError:
                    log.info("Tunnel process already stopped")

        if log_path:
            try:
                Path(log_path).unlink()
                log.info("Cleaned up log file: %s", log_path)
            except OSError as e:
                log.debug("Failed to clean up log file: %s", e)

        log.info("LocalXpose cleanup completed")
    except Exception as e:
        log.warning("Cleanup error: %s", e)


async def cleanup(store: StateStore, **kwargs) -> None:
    """Run :func:`cleanup_tunnel` for the tunnel recorded in *store*."""
    log = kwargs.get("log") or logger
    try:
        log.info("Running LocalXpose cleanup...")
        pid = store.get(STATE_PID)
        log_path = store.get(STATE_LOG_PATH)
    except Exception as e:
        log.warning("Cleanup error: %s", e)
        return
    await cleanup_tunnel(pid, log_path, **kwargs)
