"""OS process signalling for processes we only know by PID.

The tunnel outlives the step that started it, so by the time it is stopped
the only handle left is its PID.  :class:`ProcessSignaller` is the narrow
interface the shutdown sequence needs; :class:`OsProcessSignaller` maps it
onto POSIX signals, or onto ``tasklist``/``taskkill`` on Windows where
SIGINT and SIGTERM are not separately deliverable.

Spawned children that must keep running after we exit are handed to
:func:`detach`, which keeps their ``Popen`` objects referenced so they are
never reaped or warned about by the garbage collector.  Their
``returncode`` is set to 0 on detach, so ``poll()`` on them is meaningless.
"""
from __future__ import annotations

import logging
import os
import signal
import subprocess
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)

_IS_WINDOWS = os.name == "nt"

_detached: list[subprocess.Popen] = []


@runtime_checkable
class ProcessSignaller(Protocol):
    """Liveness probe plus three escalating stop requests."""

    def is_alive(self, pid: int) -> bool: ...

    def interrupt(self, pid: int) -> None: ...

    def terminate(self, pid: int) -> None: ...

    def kill(self, pid: int) -> None: ...


class OsProcessSignaller:
    """Signals real processes.  Send methods raise ``ProcessLookupError`` if *pid* is gone."""

    def is_alive(self, pid: int) -> bool:
        if _IS_WINDOWS:
            return _windows_pid_exists(pid)
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists, but owned by another user
            return True
        return True

    def interrupt(self, pid: int) -> None:
        if _IS_WINDOWS:
            # No deliverable SIGINT for a process in another console group
            os.kill(pid, signal.SIGTERM)
            return
        os.kill(pid, signal.SIGINT)

    def terminate(self, pid: int) -> None:
        os.kill(pid, signal.SIGTERM)

    def kill(self, pid: int) -> None:
        if _IS_WINDOWS:
            result = subprocess.run(
                ["taskkill", "/PID", str(pid), "/T", "/F"],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                check=False,
            )
            if result.returncode != 0 and not _windows_pid_exists(pid):
                raise ProcessLookupError(pid)
            return
        os.kill(pid, signal.SIGKILL)


def _windows_pid_exists(pid: int) -> bool:
    result = subprocess.run(
        ["tasklist", "/FI", f"PID eq {int(pid)}", "/NH"],
        stdout=subprocess.PIPE,
        stderr=subprocess.DEVNULL,
        text=True,
        check=False,
    )
    output = (result.stdout or "").strip().lower()
    return bool(output) and str(pid) in output


def detach_kwargs() -> dict:
    """``Popen`` keyword arguments that start a child outside our process group."""
    if _IS_WINDOWS:
        return {"creationflags": getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)}
    return {"start_new_session": True}


def detach(proc: subprocess.Popen) -> int:
    """Give up lifetime responsibility for *proc* and return its PID.

    After this call the caller must only refer to the process by PID.
    """
    _detached.append(proc)
    # Popen must not warn about, or try to reap, a child it no longer owns
    proc.returncode = 0
    logger.debug("Detached process PID %d", proc.pid)
    return proc.pid


def detached_pids() -> list[int]:
    """PIDs handed to :func:`detach` during this interpreter's lifetime."""
    return [proc.pid for proc in _detached]
