"""Process-wide owner of the dynamic secrets components.

VaultService is created once per application (the MCP server lifespan) and
passed by reference to whatever needs secrets. It owns:

- the shared VaultClient (one HTTP connection pool per store configuration)
- the LeaseRegistry of database connections
- the root CleanupScope; every cleanup handle still alive at shutdown is
  disposed through it, so leases of interrupted runs are revoked
- the ErrorNotifier receiving revocation failures

Shutdown order: revoke outstanding leases first, then close the client.
"""

from __future__ import annotations

import logging
from pathlib import Path

import httpx

from .client import SHUTDOWN_GRACE_PERIOD, VaultClient
from .database import DatabaseCredentialsProvider
from .exceptions import AggregateError, DynamicSecretsError
from .launcher import ProcessLauncher
from .leases import CleanupScope, LeaseRegistry
from .models import SecretConfiguration, SecretRequest, VaultConfig
from .notifications import ErrorNotifier
from .orchestrator import CancellationSignal, EnvVarsResult, FetchOrchestrator
from .revocation import RevocationCoordinator
from .token import TokenResolver

logger = logging.getLogger(__name__)

CONNECTION_TEST_SUCCESS = "Success!"


class VaultService:
    """Shared entry point for fetching secrets and revoking their leases.

    Usage:
        service = VaultService(config)
        try:
            result = await service.fetch(configuration)
            ...
            await result.cleanup.dispose()
        finally:
            await service.aclose()
    """

    def __init__(
        self,
        config: VaultConfig,
        home_dir: Path | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        notifier: ErrorNotifier | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            config: Store configuration
            home_dir: Directory holding .vault-token (default: user home)
            transport: Optional httpx transport for the Vault client (tests)
            notifier: Notification sink (default: a new ErrorNotifier)
        """
        self.config = config
        self._home_dir = home_dir
        self._transport = transport
        self.notifier = notifier if notifier is not None else ErrorNotifier()
        self.scope = CleanupScope("vault")
        self.registry = LeaseRegistry()
        self.client = VaultClient(config, transport=transport)
        self.token_resolver = TokenResolver(config, home_dir=home_dir)
        self.revocation = RevocationCoordinator(self.client, self.token_resolver)
        self.orchestrator = FetchOrchestrator(
            self.client, self.token_resolver, self.revocation, self.notifier, self.scope
        )
        self.launcher = ProcessLauncher(self.orchestrator)
        self.database = DatabaseCredentialsProvider(
            self.client,
            self.token_resolver,
            self.revocation,
            self.registry,
            self.notifier,
            self.scope,
        )

    async def fetch(
        self,
        configuration: SecretConfiguration,
        cancellation: CancellationSignal | None = None,
        run_id: str | None = None,
    ) -> EnvVarsResult:
        """Fetch the environment variables of configuration (see FetchOrchestrator.fetch)."""
        return await self.orchestrator.fetch(configuration, cancellation=cancellation, run_id=run_id)

    async def fetch_secret_keys(self, path: str) -> list[str]:
        """Return the sorted keys of the secret at path.

        A lease created by the read is revoked before returning.
        """
        request = SecretRequest(path=path)
        request.validate_request()
        run = self.orchestrator.new_run(run_id=f"keys:{request.normalized_path}")
        try:
            token = await self.token_resolver.resolve()
            secret = await self.client.fetch_secret(token, request.normalized_path)
            run.add(secret.lease_id)
        finally:
            await run.dispose()
        return sorted(secret.data)

    async def test_connection(self, config: VaultConfig | None = None) -> str:
        """Check that a token can be obtained and is accepted by the store.

        Uses a temporary client so unsaved settings can be tested.

        Returns:
            "Success!" or the error message
        """
        config = config if config is not None else self.config
        resolver = TokenResolver(config, home_dir=self._home_dir)
        try:
            async with VaultClient(config, transport=self._transport) as client:
                token = await resolver.resolve()
                await client.lookup_self(token)
        except DynamicSecretsError as e:
            logger.info(f"Vault connection test failed: {e}")
            return str(e)
        logger.info(f"Vault connection test to {config.vault_address} succeeded")
        return CONNECTION_TEST_SUCCESS

    async def aclose(self, grace_period: float = SHUTDOWN_GRACE_PERIOD) -> None:
        """Revoke all leases still owned by live runs, then close the client."""
        outstanding = len(self.scope)
        if outstanding:
            logger.info(f"Revoking leases of {outstanding} runs still alive at shutdown")
        try:
            await self.scope.dispose()
        except AggregateError as e:
            logger.error(f"Error disposing dynamic secrets at shutdown: {e}")
        finally:
            await self.client.aclose(grace_period)


__all__ = ["VaultService", "CONNECTION_TEST_SUCCESS"]
