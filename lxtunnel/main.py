from __future__ import annotations

import asyncio
import logging
import sys

from lxtunnel.capabilities.tunnel.cleanup import STATE_LOG_PATH, STATE_PID, cleanup
from lxtunnel.capabilities.tunnel.localxpose import create_tunnel
from lxtunnel.config import ActionConfig, debug_enabled, state_dir_from_env
from lxtunnel.core import actions
from lxtunnel.core.security import SecretMaskingFilter, mask_secrets
from lxtunnel.storage.state_store import StateStore

logger = logging.getLogger("lxtunnel")

STATE_IS_POST = "isPost"


def setup_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler()],
    )
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, SecretMaskingFilter) for f in handler.filters):
            handler.addFilter(SecretMaskingFilter())


async def run(config: ActionConfig, store: StateStore) -> None:
    """Main phase: create the tunnel and record it for the post phase."""
    try:
        mask_secrets([config.token])
        config.validate()
        request = config.to_request()

        logger.info("Locating LocalXpose CLI...")
        cli_path = config.resolve_cli_path()
        logger.info("LocalXpose CLI found at: %s", cli_path)

        logger.info("Creating %s tunnel for port %d...", request.type.value, request.port)
        tunnel = await create_tunnel(cli_path, request)

        actions.set_output("url", tunnel.url)
        actions.set_output("hostname", tunnel.hostname)
        actions.set_output("status", "running")

        logger.info("Tunnel created successfully!")
        logger.info("URL: %s", tunnel.url)
        logger.info("Hostname: %s", tunnel.hostname)

        store.save(STATE_PID, str(tunnel.pid))
        store.save(STATE_LOG_PATH, str(tunnel.log_path))

        # The process keeps running; the post phase stops it
        logger.info("Tunnel process PID: %d", tunnel.pid)
        logger.info("Tunnel will remain active for subsequent steps")
        if request.subdomain:
            logger.info(
                "Note: Using reserved subdomain - graceful shutdown will be attempted"
            )
    except Exception as e:
        actions.set_output("status", "failed")
        actions.set_failed(str(e))


async def run_action() -> None:
    """Run the main phase on first invocation in a job, cleanup on the second."""
    store = StateStore(state_dir_from_env())
    if store.get(STATE_IS_POST):
        await cleanup(store)
        try:
            store.clear()
        except OSError as e:
            logger.warning("Failed to clear saved state: %s", e)
        return

    store.save(STATE_IS_POST, "true")
    try:
        config = ActionConfig.from_env()
    except ValueError as e:
        actions.set_output("status", "failed")
        actions.set_failed(str(e))
        return
    await run(config, store)


def cli() -> None:
    setup_logging(debug=debug_enabled())
    asyncio.run(run_action())
    sys.exit(actions.exit_code)


if __name__ == "__main__":
    cli()
