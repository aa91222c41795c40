"""Shared context types for MCP server.

This module contains context types used across server and tools modules,
separated to avoid circular imports.
"""

from dataclasses import dataclass

from mcp.server.fastmcp import Context
from mcp.server.session import ServerSession

from .engine import DynamicSecretsConfig, VaultService
from .engine.config import DynamicSecretsConfigLoader


@dataclass
class AppContext:
    """Shared resources for MCP tools, created at server startup.

    The VaultService lives as long as the server; leases of runs still alive
    at shutdown are revoked when the lifespan ends.
    """

    service: VaultService
    config_loader: DynamicSecretsConfigLoader
    config: DynamicSecretsConfig


# Type alias for MCP tool context parameter
AppContextType = Context[ServerSession, AppContext]


__all__ = ["AppContext", "AppContextType"]
