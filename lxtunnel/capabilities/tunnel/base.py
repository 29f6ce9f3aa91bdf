"""Shared types for tunnel capability."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import NamedTuple

TUNNEL_DOMAIN = "loclx.io"
TOKEN_ENV_VAR = "LX_ACCESS_TOKEN"


class TunnelType(str, Enum):
    """Tunnel protocols the CLI accepts.  Only HTTP is tested end to end."""

    HTTP = "http"
    HTTPS = "https"
    TCP = "tcp"
    TLS = "tls"


@dataclass(frozen=True)
class TunnelRequest:
    """What to expose and how."""

    port: int
    type: TunnelType = TunnelType.HTTP
    region: str = "us"
    subdomain: str | None = None  # reserved subdomain, needs an authorised token
    token: str | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if isinstance(self.port, bool) or not isinstance(self.port, int):
            raise ValueError(f"Invalid port: {self.port!r}. Must be an integer.")
        if not 1 <= self.port <= 65535:
            raise ValueError(f"Invalid port: {self.port}. Must be between 1 and 65535.")
        object.__setattr__(self, "type", TunnelType(self.type))


@dataclass(frozen=True)
class TunnelProcessHandle:
    """The only reference kept to a running tunnel once it is detached."""

    pid: int
    log_path: Path


@dataclass(frozen=True)
class TunnelResult:
    """A live, verified tunnel."""

    url: str
    hostname: str
    pid: int
    log_path: Path

    @property
    def handle(self) -> TunnelProcessHandle:
        return TunnelProcessHandle(pid=self.pid, log_path=self.log_path)


class TunnelAddress(NamedTuple):
    url: str
    hostname: str


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class TunnelError(RuntimeError):
    """Base class for tunnel creation failures."""


class TunnelStartError(TunnelError):
    """The tunnel process could not be started."""


class TunnelProcessExitedError(TunnelError):
    """The tunnel process died before publishing its address."""


class TunnelTimeoutError(TunnelError):
    """No address appeared in the log before the deadline."""


class TunnelUnreachableError(TunnelError):
    """An address was published but never answered."""


class TunnelProbeError(TunnelError):
    """A single reachability probe failed; worth retrying."""


class UpstreamError(TunnelProbeError):
    """The relay answered with one of its own error pages."""

    def __init__(self, message: str, status: int) -> None:
        super().__init__(message)
        self.status = status


class TunnelNotFoundError(UpstreamError):
    """The relay does not know the tunnel (yet, or any more)."""
