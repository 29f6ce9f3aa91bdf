"""Reachability checks for a freshly published tunnel URL.

The relay publishes the hostname a little before it routes traffic, and
while it is not routing it serves its own error pages.  A probe is a HEAD
request (redirects not followed) with a hard per-probe deadline; error
statuses are followed up with a GET to tell relay error pages apart from
errors produced by the tunnelled service.
"""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Awaitable, Callable

import aiohttp

from lxtunnel.capabilities.tunnel.base import (
    TunnelNotFoundError,
    TunnelProbeError,
    TunnelUnreachableError,
    UpstreamError,
)
from lxtunnel.core.retry import RetryError, RetryOptions, retry

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 5.0
MAX_PROBES = 10
PROBE_INTERVAL = 1.0

_NOT_FOUND_MARKER = "404 TUNNEL NOT FOUND"
_ERROR_TITLE_RE = re.compile(r"<title>\d{3}\s+[A-Z\s]+</title>")


async def _fetch_text(session: aiohttp.ClientSession, url: str) -> str:
    async with session.get(url) as response:
        return await response.text(errors="replace")


async def _probe(session: aiohttp.ClientSession, url: str, log: logging.Logger) -> bool:
    async with session.head(url, allow_redirects=False) as response:
        status = response.status

    if status == 404:
        if _NOT_FOUND_MARKER in await _fetch_text(session, url):
            raise TunnelNotFoundError(
                f"LocalXpose returned: {_NOT_FOUND_MARKER}", status=status,
            )

    if 200 <= status < 400:
        log.info("Tunnel is reachable (status: %d)", status)
        return True

    if status in (400, 502):
        if _ERROR_TITLE_RE.search(await _fetch_text(session, url)):
            raise UpstreamError(f"LocalXpose error: {status}", status=status)

    raise TunnelProbeError(f"Tunnel returned status {status}")


async def verify_tunnel_reachability(
    url: str,
    timeout: float = 30.0,
    *,
    delay_provider: Callable[[float], Awaitable[None]] | None = None,
    time_provider: Callable[[], float] | None = None,
    log: logging.Logger | None = None,
) -> bool:
    """Return True once *url* answers with a 2xx/3xx, False if it never does."""
    log = log or logger
    log.info("Verifying tunnel reachability: %s", url)

    options = RetryOptions(
        timeout=timeout,
        delay=PROBE_INTERVAL,
        max_retries=MAX_PROBES,
        silent=False,
        logger=log,
    )
    if delay_provider is not None:
        options.delay_provider = delay_provider
    if time_provider is not None:
        options.time_provider = time_provider

    try:
        async with aiohttp.ClientSession() as session:

            async def _attempt() -> bool:
                try:
                    return await asyncio.wait_for(
                        _probe(session, url, log), timeout=PROBE_TIMEOUT,
                    )
                except asyncio.TimeoutError:
                    raise TunnelProbeError("Request timeout - tunnel not responding")

            await retry(_attempt, options)
        return True
    except RetryError as e:
        log.warning("Tunnel verification failed: %s", e)
        return False


async def wait_for_tunnel_ready(url: str, timeout: float = 30.0, **kwargs) -> None:
    """Like :func:`verify_tunnel_reachability`, but raise instead of returning False."""
    if not await verify_tunnel_reachability(url, timeout, **kwargs):
        raise TunnelUnreachableError(
            "Tunnel URL was generated but is not reachable. "
            "This may indicate a LocalXpose service issue."
        )
