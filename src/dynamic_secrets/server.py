"""FastMCP server initialization for dynamic-secrets.

This module initializes the MCP server and manages the VaultService via the
lifespan context. All tool implementations are in the tools module.
"""

import logging
import os
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP

from .context import AppContext
from .engine import VaultService
from .engine.client import SHUTDOWN_GRACE_PERIOD
from .engine.config import DynamicSecretsConfigLoader

logger = logging.getLogger(__name__)


def get_shutdown_grace_period() -> float:
    """Get the Vault client shutdown grace period from environment.

    Reads DYNAMIC_SECRETS_SHUTDOWN_GRACE_PERIOD (seconds).
    Default: 5, Valid range: 0-60 (clamped automatically)
    """
    try:
        grace = float(os.getenv("DYNAMIC_SECRETS_SHUTDOWN_GRACE_PERIOD", str(SHUTDOWN_GRACE_PERIOD)))
        return max(0.0, min(60.0, grace))
    except ValueError:
        return SHUTDOWN_GRACE_PERIOD


@asynccontextmanager
async def app_lifespan(_server: FastMCP) -> AsyncIterator[AppContext]:
    """Create the VaultService at startup and dispose it at shutdown.

    Environment Variables:
        DYNAMIC_SECRETS_CONFIG: Config file path (default: ~/.dynamic-secrets/config.yml)
        DYNAMIC_SECRETS_SHUTDOWN_GRACE_PERIOD: Seconds in-flight requests get at shutdown
        VAULT_ADDR / VAULT_CACERT: Used when the config file does not set them

    Args:
        _server: FastMCP server instance (unused, required by FastMCP signature)

    Yields:
        AppContext with the shared VaultService
    """
    logger.info("Initializing MCP server resources...")

    config_loader = DynamicSecretsConfigLoader()
    config = config_loader.load_config()
    vault_config = config.vault_config()

    if vault_config.vault_address:
        logger.info(f"Vault address: {vault_config.vault_address}")
    else:
        logger.warning("No Vault address configured. Set vault.address or VAULT_ADDR.")
    if vault_config.token_helper_path:
        logger.info(f"Token helper: {vault_config.token_helper_path}")
    if config.runs:
        logger.debug(f"Configured runs: {', '.join(sorted(config.runs))}")

    service = VaultService(vault_config)
    app_context = AppContext(service=service, config_loader=config_loader, config=config)

    try:
        yield app_context
    finally:
        logger.info("Shutting down MCP server...")
        await service.aclose(get_shutdown_grace_period())
        logger.info("Vault service closed")


# Initialize MCP server with lifespan management
mcp = FastMCP("dynamic_secrets", lifespan=app_lifespan)


LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def get_log_level() -> int:
    """Get the log level from DYNAMIC_SECRETS_LOG_LEVEL (default INFO).

    Unknown names fall back to INFO with a warning on stderr, since logging
    is not configured yet when this runs.
    """
    name = os.getenv("DYNAMIC_SECRETS_LOG_LEVEL", "INFO").strip().upper()
    if name not in LOG_LEVELS:
        print(
            f"Ignoring DYNAMIC_SECRETS_LOG_LEVEL={name!r}, expected one of {', '.join(LOG_LEVELS)}",
            file=sys.stderr,
        )
        name = "INFO"
    return logging.getLevelName(name)


def main() -> None:
    """Run the dynamic-secrets MCP server over stdio.

    Used by both `python -m dynamic_secrets` and the `dynamic-secrets` script.
    """
    # stdout carries the MCP protocol
    logging.basicConfig(
        level=get_log_level(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        stream=sys.stderr,
    )

    logger.info("Starting dynamic-secrets server")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    except Exception as e:
        logger.exception(f"dynamic-secrets server failed: {e}")
        sys.exit(1)

    logger.info("dynamic-secrets server stopped")


__all__ = [
    "mcp",
    "main",
    "get_log_level",
    "get_shutdown_grace_period",
]
