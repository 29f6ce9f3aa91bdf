from __future__ import annotations

import os
import socket
from pathlib import Path
from typing import Awaitable, Callable

import pytest
from aiohttp import web


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    """Provide an isolated directory for cross-phase state."""
    d = tmp_path / "state"
    d.mkdir()
    return d


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Strip runner variables so tests never write to a real runner's files."""
    for name in list(os.environ):
        if name.startswith("INPUT_"):
            monkeypatch.delenv(name)
    for name in (
        "GITHUB_OUTPUT", "GITHUB_ACTIONS", "RUNNER_TEMP", "RUNNER_DEBUG",
        "LX_ACCESS_TOKEN", "LX_CLI_PATH", "LXTUNNEL_STATE_DIR", "LXTUNNEL_DEBUG",
    ):
        monkeypatch.delenv(name, raising=False)
    # keep load_dotenv() from picking up a developer's .env
    monkeypatch.setattr("lxtunnel.config.load_dotenv", lambda *a, **kw: False)


class FakeSignaller:
    """Scripted ProcessSignaller.

    ``alive`` lists the answers to successive liveness probes; the last one
    repeats once the list runs out.
    """

    def __init__(self, alive: list[bool]) -> None:
        self._alive = list(alive)
        self.calls: list[tuple[str, int]] = []

    def is_alive(self, pid: int) -> bool:
        self.calls.append(("probe", pid))
        if len(self._alive) > 1:
            return self._alive.pop(0)
        return self._alive[0]

    def interrupt(self, pid: int) -> None:
        self.calls.append(("interrupt", pid))

    def terminate(self, pid: int) -> None:
        self.calls.append(("terminate", pid))

    def kill(self, pid: int) -> None:
        self.calls.append(("kill", pid))

    @property
    def sent(self) -> list[str]:
        return [name for name, _ in self.calls if name != "probe"]


@pytest.fixture
def fake_signaller() -> Callable[[list[bool]], FakeSignaller]:
    return FakeSignaller


def _find_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
async def http_server():
    """Start a local aiohttp app serving one handler on ``/``; yields its URL."""
    runners: list[web.AppRunner] = []

    async def _start(handler: Callable[[web.Request], Awaitable[web.StreamResponse]]) -> str:
        app = web.Application()
        app.router.add_route("*", "/", handler)
        runner = web.AppRunner(app)
        await runner.setup()
        port = _find_free_port()
        site = web.TCPSite(runner, "127.0.0.1", port)
        await site.start()
        runners.append(runner)
        return f"http://127.0.0.1:{port}/"

    yield _start

    for runner in runners:
        await runner.cleanup()
