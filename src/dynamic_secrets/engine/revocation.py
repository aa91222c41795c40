"""Concurrent, failure-isolated lease revocation."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

from .client import VaultClient
from .exceptions import AggregateError
from .token import TokenResolver

logger = logging.getLogger(__name__)


class RevocationCoordinator:
    """Revokes the leases of a finished run.

    Every lease is revoked in its own task. A failing revocation neither
    cancels nor delays the others; failures are collected and raised together
    once every attempt has finished.
    """

    def __init__(self, client: VaultClient, token_resolver: TokenResolver) -> None:
        self.client = client
        self.token_resolver = token_resolver

    async def revoke(self, token: str, lease_ids: Iterable[str]) -> None:
        """Revoke lease_ids with token.

        Raises:
            AggregateError: If one or more revocations failed. Its message has
                one line per failure.
        """
        ids = [lease_id for lease_id in lease_ids if lease_id]
        if not ids:
            return

        results = await asyncio.gather(
            *(self.client.revoke_lease(token, lease_id) for lease_id in ids),
            return_exceptions=True,
        )
        failures: list[BaseException] = []
        for lease_id, result in zip(ids, results):
            if isinstance(result, BaseException):
                logger.warning(f"Failed to revoke lease {lease_id}: {result}")
                failures.append(result)

        if failures:
            raise AggregateError(failures)
        logger.info(f"Revoked {len(ids)} leases")

    async def revoke_all(self, lease_ids: Iterable[str]) -> None:
        """Resolve a fresh token, then revoke lease_ids.

        If no token can be obtained nothing is revoked and the AuthError is
        raised; the leases stay alive until they expire.

        Raises:
            AuthError: If token resolution fails
            AggregateError: If one or more revocations failed
        """
        ids = [lease_id for lease_id in lease_ids if lease_id]
        if not ids:
            return
        token = await self.token_resolver.resolve()
        await self.revoke(token, ids)


__all__ = ["RevocationCoordinator"]
