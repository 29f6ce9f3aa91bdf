"""Tests for tunnel reachability probing against a local aiohttp server."""
from __future__ import annotations

import asyncio
import logging
import socket
from unittest.mock import AsyncMock

import pytest
from aiohttp import web

from lxtunnel.capabilities.tunnel import verify
from lxtunnel.capabilities.tunnel.base import TunnelUnreachableError
from lxtunnel.capabilities.tunnel.verify import (
    verify_tunnel_reachability,
    wait_for_tunnel_ready,
)

_NOT_FOUND_PAGE = "<html><head><title>404 TUNNEL NOT FOUND</title></head></html>"
_BAD_GATEWAY_PAGE = "<html><head><title>502 BAD GATEWAY</title></head></html>"


def _handler(status: int, body: str = "", seen: list[str] | None = None):
    async def handle(request: web.Request) -> web.Response:
        if seen is not None:
            seen.append(request.method)
        return web.Response(status=status, text=body, content_type="text/html")
    return handle


def _warnings(caplog: pytest.LogCaptureFixture) -> list[str]:
    return [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]


class TestVerifyTunnelReachability:
    async def test_200_is_reachable_after_one_probe(self, http_server):
        seen: list[str] = []
        url = await http_server(_handler(200, "hello", seen))

        assert await verify_tunnel_reachability(url, delay_provider=AsyncMock()) is True
        assert seen == ["HEAD"]

    async def test_redirect_is_reachable_and_not_followed(self, http_server):
        seen: list[str] = []

        async def handle(request: web.Request) -> web.Response:
            seen.append(request.method)
            raise web.HTTPFound("/elsewhere")

        url = await http_server(handle)

        assert await verify_tunnel_reachability(url, delay_provider=AsyncMock()) is True
        assert seen == ["HEAD"]

    async def test_tunnel_not_found_exhausts_and_returns_false(self, http_server, caplog):
        seen: list[str] = []
        url = await http_server(_handler(404, _NOT_FOUND_PAGE, seen))
        delay = AsyncMock()

        with caplog.at_level(logging.WARNING):
            assert await verify_tunnel_reachability(url, delay_provider=delay) is False

        assert seen.count("HEAD") == verify.MAX_PROBES
        assert seen.count("GET") == verify.MAX_PROBES
        assert delay.await_count == verify.MAX_PROBES - 1
        assert any("404 TUNNEL NOT FOUND" in m for m in _warnings(caplog))

    async def test_plain_404_is_generic_status_failure(self, http_server, caplog):
        url = await http_server(_handler(404, "<h1>not here</h1>"))

        with caplog.at_level(logging.WARNING):
            assert await verify_tunnel_reachability(url, timeout=0) is False

        assert any("Tunnel returned status 404" in m for m in _warnings(caplog))

    async def test_502_error_page_reports_upstream_code(self, http_server, caplog):
        url = await http_server(_handler(502, _BAD_GATEWAY_PAGE))

        with caplog.at_level(logging.WARNING):
            assert await verify_tunnel_reachability(url, timeout=0) is False

        assert any("LocalXpose error: 502" in m for m in _warnings(caplog))

    async def test_400_without_error_title_is_generic(self, http_server, caplog):
        url = await http_server(_handler(400, "bad request from the app"))

        with caplog.at_level(logging.WARNING):
            assert await verify_tunnel_reachability(url, timeout=0) is False

        assert any("Tunnel returned status 400" in m for m in _warnings(caplog))

    async def test_500_is_generic_status_failure(self, http_server, caplog):
        url = await http_server(_handler(500))

        with caplog.at_level(logging.WARNING):
            assert await verify_tunnel_reachability(url, timeout=0) is False

        assert any("Tunnel returned status 500" in m for m in _warnings(caplog))

    async def test_recovers_once_tunnel_routes(self, http_server):
        seen: list[str] = []

        async def handle(request: web.Request) -> web.Response:
            seen.append(request.method)
            if seen.count("HEAD") < 3:
                return web.Response(status=502, text="starting")
            return web.Response(status=200, text="ok")

        url = await http_server(handle)
        delay = AsyncMock()

        assert await verify_tunnel_reachability(url, delay_provider=delay) is True
        assert seen.count("HEAD") == 3
        assert delay.await_count == 2
        delay.assert_awaited_with(verify.PROBE_INTERVAL)

    async def test_slow_response_is_request_timeout(self, http_server, caplog, monkeypatch):
        monkeypatch.setattr(verify, "PROBE_TIMEOUT", 0.05)

        async def handle(request: web.Request) -> web.Response:
            await asyncio.sleep(0.5)
            return web.Response(status=200)

        url = await http_server(handle)

        with caplog.at_level(logging.WARNING):
            assert await verify_tunnel_reachability(url, timeout=0) is False

        assert any("Request timeout - tunnel not responding" in m for m in _warnings(caplog))

    async def test_connection_refused_returns_false(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("127.0.0.1", 0))
            port = s.getsockname()[1]

        assert await verify_tunnel_reachability(
            f"http://127.0.0.1:{port}/", delay_provider=AsyncMock(),
        ) is False

    async def test_uses_injected_logger(self, http_server, caplog):
        url = await http_server(_handler(200))
        custom = logging.getLogger("tests.verify.custom")

        with caplog.at_level(logging.INFO):
            await verify_tunnel_reachability(url, log=custom)

        assert any(
            r.name == "tests.verify.custom" and "reachable (status: 200)" in r.getMessage()
            for r in caplog.records
        )


class TestWaitForTunnelReady:
    async def test_returns_when_reachable(self, http_server):
        url = await http_server(_handler(200))
        await wait_for_tunnel_ready(url, delay_provider=AsyncMock())

    async def test_raises_when_unreachable(self, http_server):
        url = await http_server(_handler(500))
        with pytest.raises(TunnelUnreachableError, match="not reachable"):
            await wait_for_tunnel_ready(url, timeout=0)
