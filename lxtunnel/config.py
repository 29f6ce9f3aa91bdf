from __future__ import annotations

import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from lxtunnel.capabilities.tunnel.base import TOKEN_ENV_VAR, TunnelRequest
from lxtunnel.core import actions
from lxtunnel.core.security import ValidationPatterns, validate_input


def _default_state_dir() -> Path:
    configured = os.environ.get("LXTUNNEL_STATE_DIR", "")
    if configured:
        return Path(configured)
    base = os.environ.get("RUNNER_TEMP") or tempfile.gettempdir()
    return Path(base) / "lxtunnel"


def state_dir_from_env() -> Path:
    """Where cross-phase state lives; needs no action inputs."""
    load_dotenv()
    return _default_state_dir()


@dataclass
class ActionConfig:
    port: int
    token: str = field(default="", repr=False)
    tunnel_type: str = "http"
    region: str = "us"
    subdomain: str = ""
    cli_path: str = ""
    state_dir: Path = field(default_factory=_default_state_dir)
    debug: bool = False

    @classmethod
    def from_env(cls) -> ActionConfig:
        load_dotenv()
        port = actions.get_input("port", required=True)
        try:
            port_num = int(port)
        except ValueError:
            port_num = 0
        if not 1 <= port_num <= 65535:
            raise ValueError(f"Invalid port: {port}. Must be between 1 and 65535.")

        return cls(
            port=port_num,
            token=actions.get_input("token") or os.environ.get(TOKEN_ENV_VAR, ""),
            tunnel_type=actions.get_input("type") or "http",
            region=actions.get_input("region") or "us",
            subdomain=actions.get_input("subdomain"),
            cli_path=os.environ.get("LX_CLI_PATH", ""),
            state_dir=_default_state_dir(),
            debug=debug_enabled(),
        )

    def validate(self) -> None:
        """Reject values that could smuggle extra arguments into the CLI call."""
        validate_input(str(self.port), ValidationPatterns.PORT, "port")
        validate_input(self.tunnel_type, ValidationPatterns.TYPE, "type")
        validate_input(self.region, ValidationPatterns.REGION, "region")
        if self.subdomain:
            validate_input(self.subdomain, ValidationPatterns.SUBDOMAIN, "subdomain")

    def resolve_cli_path(self) -> str:
        """Configured ``loclx`` path, else the one on PATH."""
        if self.cli_path:
            return self.cli_path
        found = shutil.which("loclx")
        if not found:
            raise RuntimeError(
                "loclx not found in PATH. Install the LocalXpose CLI or set LX_CLI_PATH"
            )
        return found

    def to_request(self) -> TunnelRequest:
        return TunnelRequest(
            port=self.port,
            type=self.tunnel_type,
            region=self.region,
            subdomain=self.subdomain or None,
            token=self.token or None,
        )


def debug_enabled() -> bool:
    """True when the runner (or the user) asked for debug logging."""
    if os.environ.get("RUNNER_DEBUG") == "1":
        return True
    return os.environ.get("LXTUNNEL_DEBUG", "").lower() in ("1", "true", "yes")
