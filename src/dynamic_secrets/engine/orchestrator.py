"""Fetching secrets for a run and mapping them to environment variables.

Execution model:
1. Validate the configuration (no network access on configuration errors)
2. Resolve the token once
3. Fetch the first secret alone, so an interactive TLS trust decision for the
   store happens once rather than once per parallel request
4. Fetch the remaining secrets concurrently, one task each, and join them
5. Record every lease as soon as its secret is parsed

If anything fails or the fetch is cancelled, the leases obtained so far are
revoked through the run's cleanup handle before the error propagates.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Protocol

from .client import VaultClient
from .exceptions import (
    DynamicSecretsError,
    FetchCancelledError,
    MissingSecretKeyError,
    ShutdownError,
)
from .leases import CleanupScope, RunLeases
from .models import SecretConfiguration, SecretRequest
from .notifications import ErrorNotifier
from .revocation import RevocationCoordinator
from .token import TokenResolver

logger = logging.getLogger(__name__)

# Seconds between polls of a CancellationSignal
CANCEL_CHECK_INTERVAL = 0.01


class CancellationSignal(Protocol):
    """Cancellation flag owned by the caller, e.g. a progress dialog."""

    def is_cancelled(self) -> bool: ...


class CancellationToken:
    """Thread-safe CancellationSignal that can be set from any thread."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class EnvVarsResult:
    """Environment variables for a run and the handle revoking its leases."""

    vars: dict[str, str] = field(default_factory=dict)
    cleanup: RunLeases | None = None


class FetchOrchestrator:
    """Fetches the secrets of a SecretConfiguration.

    Usage:
        orchestrator = FetchOrchestrator(client, resolver, revocation, notifier)
        result = await orchestrator.fetch(configuration)
        env.update(result.vars)
        ...  # run the process
        await result.cleanup.dispose()
    """

    def __init__(
        self,
        client: VaultClient,
        token_resolver: TokenResolver,
        revocation: RevocationCoordinator,
        notifier: ErrorNotifier | None = None,
        scope: CleanupScope | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            client: Shared Vault client
            token_resolver: Token source, used once per fetch
            revocation: Used by cleanup handles to revoke leases
            notifier: Sink for revocation failures
            scope: Owner scope of created cleanup handles (disposed at shutdown)
        """
        self.client = client
        self.token_resolver = token_resolver
        self.revocation = revocation
        self.notifier = notifier
        self.scope = scope

    def new_run(self, run_id: str | None = None) -> RunLeases:
        """Create an empty cleanup handle owned by this orchestrator's scope.

        Raises:
            ShutdownError: If the owning service has already been shut down
        """
        if self.scope is not None and self.scope.disposed:
            raise ShutdownError("Vault service is shut down")
        return RunLeases(self.revocation, self.notifier, self.scope, run_id=run_id)

    async def fetch(
        self,
        configuration: SecretConfiguration,
        cancellation: CancellationSignal | None = None,
        run: RunLeases | None = None,
        run_id: str | None = None,
    ) -> EnvVarsResult:
        """Fetch all secrets of configuration.

        Args:
            configuration: Secrets to fetch, in order
            cancellation: Optional caller-owned cancellation flag
            run: Cleanup handle to record leases in (default: a new one)
            run_id: Label for a newly created cleanup handle

        Returns:
            EnvVarsResult with the variables and the run's cleanup handle

        Raises:
            ConfigurationError: Invalid configuration, nothing was fetched
            AuthError: No token could be obtained
            StoreError / ParseError: A secret could not be read
            MissingSecretKeyError: A mapped key is not in its secret
            FetchCancelledError: The cancellation flag was set
        """
        configuration.validate_configuration()
        if run is None:
            run = self.new_run(run_id)

        if not configuration.secrets:
            return EnvVarsResult(vars={}, cleanup=run)

        try:
            token = await self.token_resolver.resolve()
            env_vars = await self.fetch_env_vars(token, configuration, run, cancellation)
        except BaseException as e:
            if isinstance(e, DynamicSecretsError):
                e.cleanup = run
            if run.lease_ids:
                logger.info(
                    f"Fetch failed after obtaining {len(run.lease_ids)} leases, revoking them"
                )
            await run.dispose()
            raise

        logger.info(
            f"Fetched {len(configuration.secrets)} secrets "
            f"({len(env_vars)} variables, {len(run.lease_ids)} leases)"
        )
        return EnvVarsResult(vars=env_vars, cleanup=run)

    async def fetch_env_vars(
        self,
        token: str,
        configuration: SecretConfiguration,
        run: RunLeases,
        cancellation: CancellationSignal | None = None,
    ) -> dict[str, str]:
        """Fetch secrets with an already resolved token.

        Leases are added to run as they are obtained; the caller owns cleanup.
        """
        if not configuration.secrets:
            return {}

        work = asyncio.create_task(self._fetch_all(token, configuration, run))
        watcher = None
        if cancellation is not None:
            watcher = asyncio.create_task(self._watch_cancellation(cancellation, work))

        try:
            return await work
        except asyncio.CancelledError:
            current = asyncio.current_task()
            own_cancel = current is not None and current.cancelling() > 0
            if cancellation is not None and cancellation.is_cancelled() and not own_cancel:
                raise FetchCancelledError() from None
            raise
        finally:
            if watcher is not None:
                watcher.cancel()
                await asyncio.gather(watcher, return_exceptions=True)

    async def _fetch_all(
        self, token: str, configuration: SecretConfiguration, run: RunLeases
    ) -> dict[str, str]:
        env_vars: dict[str, str] = {}
        first, *rest = configuration.secrets

        await self._fetch_single(token, first, run, env_vars)

        tasks = [
            asyncio.create_task(self._fetch_single(token, request, run, env_vars))
            for request in rest
        ]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return env_vars

    async def _fetch_single(
        self,
        token: str,
        request: SecretRequest,
        run: RunLeases,
        env_vars: dict[str, str],
    ) -> None:
        secret = await self.client.fetch_secret(token, request.normalized_path)
        if secret.has_lease:
            run.add(secret.lease_id)
            logger.debug(f"Obtained lease {secret.lease_id} for {request.path}")

        for mapping in request.mappings:
            if mapping.secret_key not in secret.data:
                raise MissingSecretKeyError(request.path, mapping.secret_key, secret.data.keys())
            env_vars[mapping.env_var_name] = secret.data[mapping.secret_key]

    @staticmethod
    async def _watch_cancellation(
        cancellation: CancellationSignal, work: asyncio.Task[dict[str, str]]
    ) -> None:
        # The signal is not awaitable, poll it
        while not work.done():
            if cancellation.is_cancelled():
                logger.info("Fetching vault secrets cancelled by caller")
                work.cancel()
                return
            await asyncio.sleep(CANCEL_CHECK_INTERVAL)


__all__ = [
    "FetchOrchestrator",
    "EnvVarsResult",
    "CancellationSignal",
    "CancellationToken",
    "CANCEL_CHECK_INTERVAL",
]
