"""LocalXpose tunnel process: spawn ``loclx`` and scrape its public address.

The tunnel has to keep running after the step that created it finishes, so
the process is started in its own session and, once its address has been
verified, detached: from then on it is known only by PID and log path, and
:mod:`lxtunnel.capabilities.tunnel.cleanup` stops it in the post phase.
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
import subprocess
import tempfile
import time
from pathlib import Path
from typing import IO, Awaitable, Callable

from lxtunnel.capabilities.tunnel.base import (
    TOKEN_ENV_VAR,
    TUNNEL_DOMAIN,
    TunnelAddress,
    TunnelError,
    TunnelProcessExitedError,
    TunnelRequest,
    TunnelResult,
    TunnelStartError,
    TunnelTimeoutError,
    TunnelType,
)
from lxtunnel.capabilities.tunnel.verify import wait_for_tunnel_ready
from lxtunnel.core.process import OsProcessSignaller, detach, detach_kwargs
from lxtunnel.core.retry import RetryError, RetryOptions, retry

logger = logging.getLogger(__name__)

# e.g. "2025/07/24 19:30:54 (http, us) msy1xmzeub.loclx.io => [running]"
_HOSTNAME_RE = re.compile(rf"([a-zA-Z0-9.-]+\.{re.escape(TUNNEL_DOMAIN)})")

_POLL_INTERVAL = 0.5
_STOP_TIMEOUT = 5.0


def build_command(cli_path: str, request: TunnelRequest) -> list[str]:
    """argv for *request*.  The token goes in the environment instead."""
    cmd = [cli_path, "tunnel", request.type.value, f"--to={request.port}"]
    if request.region:
        cmd.append(f"--region={request.region}")
    if request.subdomain:
        cmd.append(f"--subdomain={request.subdomain}")
    return cmd


def build_env(request: TunnelRequest) -> dict[str, str]:
    """Child environment; carries the token so it never shows up in ``ps``."""
    env = dict(os.environ)
    if request.token:
        env[TOKEN_ENV_VAR] = request.token
    return env


def _new_log_path(log_dir: str | Path | None) -> Path:
    base = Path(log_dir or os.environ.get("RUNNER_TEMP") or tempfile.gettempdir())
    base.mkdir(parents=True, exist_ok=True)
    return base / f"tunnel-{int(time.time() * 1000)}-{os.getpid()}.log"


class _OutputCapture:
    """Pumps the child's stdout/stderr into the log file and the debug log.

    After :meth:`redirect_to_log` the file is closed and output is only
    echoed to the debug log.
    """

    def __init__(self, sink: IO[bytes], log: logging.Logger) -> None:
        self._sink: IO[bytes] | None = sink
        self._log = log
        self._tasks: list[asyncio.Task] = []
        self._transports: list[asyncio.BaseTransport] = []

    async def attach(self, proc: subprocess.Popen) -> None:
        loop = asyncio.get_running_loop()
        for label, pipe in (("stdout", proc.stdout), ("stderr", proc.stderr)):
            if pipe is None:
                continue
            reader = asyncio.StreamReader()
            transport, _ = await loop.connect_read_pipe(
                lambda r=reader: asyncio.StreamReaderProtocol(r), pipe,
            )
            self._transports.append(transport)
            self._tasks.append(asyncio.create_task(self._pump(reader, label)))

    async def _pump(self, reader: asyncio.StreamReader, label: str) -> None:
        while True:
            try:
                chunk = await reader.read(4096)
            except OSError as e:
                self._log.debug("tunnel %s closed: %s", label, e)
                return
            if not chunk:
                return
            self._write(chunk, label)

    def _write(self, chunk: bytes, label: str) -> None:
        text = chunk.decode("utf-8", errors="replace").rstrip()
        sink = self._sink
        if sink is None:
            self._log.debug("[tunnel-%s] %s", label, text)
            return
        try:
            sink.write(chunk)
        except (OSError, ValueError):
            pass  # sink closed underneath us
        self._log.debug("%s", text)

    def redirect_to_log(self) -> None:
        """Stop writing to the log file and close it; keep echoing at DEBUG."""
        sink, self._sink = self._sink, None
        if sink is not None:
            sink.close()

    def close(self) -> None:
        """Stop pumping entirely."""
        self.redirect_to_log()
        for task in self._tasks:
            task.cancel()
        for transport in self._transports:
            transport.close()
        self._tasks.clear()
        self._transports.clear()


async def _stop_owned(proc: subprocess.Popen, log: logging.Logger) -> None:
    """Stop a child we still own (creation failed before it was detached)."""
    if proc.poll() is not None:
        return
    try:
        proc.terminate()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + _STOP_TIMEOUT
        while proc.poll() is None and loop.time() < deadline:
            await asyncio.sleep(0.1)
        if proc.poll() is None:
            proc.kill()
    except ProcessLookupError:
        pass
    log.info("Stopped tunnel process (PID %d)", proc.pid)


async def create_tunnel(
    cli_path: str,
    request: TunnelRequest,
    *,
    log_dir: str | Path | None = None,
    log: logging.Logger | None = None,
    url_timeout: float = 30.0,
    ready_timeout: float = 30.0,
) -> TunnelResult:
    """Start ``loclx``, wait for its public URL, verify it, and detach.

    Raises a :class:`TunnelError` subclass if any stage fails.
    """
    log = log or logger
    log_path = _new_log_path(log_dir)
    sink = open(log_path, "wb", buffering=0)

    if request.type is not TunnelType.HTTP:
        log.warning(
            "Tunnel type '%s' is not officially supported. Only 'http' tunnels "
            "have been tested. Other LocalXpose tunnel types (tls, tcp, udp) "
            "may work but are not guaranteed.",
            request.type.value,
        )

    cmd = build_command(cli_path, request)
    log.info("Starting tunnel with command: %s", " ".join(cmd))

    try:
        proc = subprocess.Popen(
            cmd,
            env=build_env(request),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            **detach_kwargs(),
        )
    except OSError as e:
        sink.close()
        raise TunnelStartError(f"Failed to start tunnel process: {e}") from e

    if not proc.pid:
        sink.close()
        raise TunnelStartError("Failed to start tunnel process")

    capture = _OutputCapture(sink, log)
    try:
        await capture.attach(proc)

        # Poll our own handle: it reaps the child, so an exited tunnel is
        # not mistaken for a live zombie.
        address = await wait_for_tunnel(
            log_path, proc.pid,
            timeout=url_timeout,
            is_alive=lambda _pid: proc.poll() is None,
            log=log,
        )

        log.info("Verifying tunnel is accessible...")
        await wait_for_tunnel_ready(address.url, ready_timeout, log=log)
    except Exception:
        capture.close()
        await _stop_owned(proc, log)
        raise

    capture.redirect_to_log()
    pid = detach(proc)

    return TunnelResult(
        url=address.url,
        hostname=address.hostname,
        pid=pid,
        log_path=log_path,
    )


async def wait_for_tunnel(
    log_path: str | Path,
    pid: int,
    timeout: float = 30.0,
    *,
    is_alive: Callable[[int], bool] | None = None,
    delay_provider: Callable[[float], Awaitable[None]] | None = None,
    time_provider: Callable[[], float] | None = None,
    log: logging.Logger | None = None,
) -> TunnelAddress:
    """Poll *log_path* until the tunnel's public hostname shows up.

    Raises :class:`TunnelProcessExitedError` as soon as *pid* is found dead,
    or :class:`TunnelTimeoutError` once *timeout* seconds have passed.
    """
    log = log or logger
    alive = is_alive or OsProcessSignaller().is_alive
    path = Path(log_path)

    def _attempt() -> TunnelAddress:
        # Re-read everything each time; the file grows while we look at it
        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            content = ""

        match = _HOSTNAME_RE.search(content)
        if match:
            hostname = match.group(1)
            url = f"https://{hostname}"
            log.info("Tunnel established: %s", url)
            return TunnelAddress(url=url, hostname=hostname)

        if not alive(pid):
            raise TunnelProcessExitedError("Tunnel process exited unexpectedly")

        raise TunnelError("Tunnel URL not found in log yet")

    options = RetryOptions(
        timeout=timeout,
        delay=_POLL_INTERVAL,
        silent=True,
        abort_on=(TunnelProcessExitedError,),
        logger=log,
    )
    if delay_provider is not None:
        options.delay_provider = delay_provider
    if time_provider is not None:
        options.time_provider = time_provider

    try:
        return await retry(_attempt, options)
    except RetryError as e:
        if isinstance(e.last_error, TunnelProcessExitedError):
            raise e.last_error from None
        raise TunnelTimeoutError(
            f"Timeout waiting for tunnel to establish after {timeout * 1000:.0f}ms"
        ) from e
