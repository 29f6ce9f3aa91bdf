from __future__ import annotations

import os
import signal
import subprocess
import time
from unittest.mock import patch

import pytest

from lxtunnel.core import process
from lxtunnel.core.process import (
    OsProcessSignaller,
    ProcessSignaller,
    detach,
    detach_kwargs,
    detached_pids,
)

posix_only = pytest.mark.skipif(os.name == "nt", reason="POSIX signals")


@pytest.fixture
def sleeper():
    proc = subprocess.Popen(["sleep", "30"], **detach_kwargs())
    yield proc
    if proc.pid in detached_pids():
        # Popen no longer tracks it; clean up by pid
        try:
            os.kill(proc.pid, signal.SIGKILL)
            os.waitpid(proc.pid, 0)
        except (ProcessLookupError, ChildProcessError):
            pass
        return
    if proc.poll() is None:
        proc.kill()
    proc.wait()


def _wait_exit(proc: subprocess.Popen, timeout: float = 5.0) -> int | None:
    deadline = time.monotonic() + timeout
    while proc.poll() is None and time.monotonic() < deadline:
        time.sleep(0.05)
    return proc.returncode


def test_os_signaller_satisfies_protocol():
    assert isinstance(OsProcessSignaller(), ProcessSignaller)


@posix_only
class TestOsProcessSignaller:
    def test_live_process_is_alive(self, sleeper):
        assert OsProcessSignaller().is_alive(sleeper.pid) is True

    def test_reaped_process_is_not_alive(self, sleeper):
        sleeper.kill()
        sleeper.wait()
        assert OsProcessSignaller().is_alive(sleeper.pid) is False

    def test_permission_error_counts_as_alive(self):
        with patch.object(process.os, "kill", side_effect=PermissionError):
            assert OsProcessSignaller().is_alive(1) is True

    def test_lookup_error_counts_as_dead(self):
        with patch.object(process.os, "kill", side_effect=ProcessLookupError):
            assert OsProcessSignaller().is_alive(999999) is False

    def test_interrupt_stops_sleep(self, sleeper):
        OsProcessSignaller().interrupt(sleeper.pid)
        assert _wait_exit(sleeper) is not None

    def test_terminate_stops_sleep(self, sleeper):
        OsProcessSignaller().terminate(sleeper.pid)
        assert _wait_exit(sleeper) == -15

    def test_kill_stops_sleep(self, sleeper):
        OsProcessSignaller().kill(sleeper.pid)
        assert _wait_exit(sleeper) == -9

    def test_signalling_dead_pid_raises_lookup_error(self, sleeper):
        sleeper.kill()
        sleeper.wait()
        with pytest.raises(ProcessLookupError):
            OsProcessSignaller().terminate(sleeper.pid)

    def test_detached_child_has_own_session(self, sleeper):
        assert os.getsid(sleeper.pid) == sleeper.pid


class TestDetach:
    @posix_only
    def test_detach_returns_pid_and_registers(self, sleeper):
        assert detach(sleeper) == sleeper.pid
        assert sleeper.pid in detached_pids()

    @posix_only
    def test_detached_child_keeps_running_untracked(self, sleeper):
        detach(sleeper)
        assert sleeper.returncode is not None
        assert OsProcessSignaller().is_alive(sleeper.pid)

    def test_detach_kwargs_for_platform(self):
        kwargs = detach_kwargs()
        if os.name == "nt":
            assert "creationflags" in kwargs
        else:
            assert kwargs == {"start_new_session": True}
