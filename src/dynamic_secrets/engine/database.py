"""Database credentials backed by dynamic secrets.

A database connection is opened with a username and password read from one
Vault secret (typically a database secrets engine role). The lease of that
secret lives exactly as long as the connection:

1. intercept() fetches the secret before the connection is opened and queues
   its lease as pending for the connection's run id
2. connection_changed(added=True) binds the lease to the live connection
3. connection_changed(added=False) revokes the lease of the closed connection

Prefer passing the lease returned by intercept() to connection_changed():
binding through the per-run FIFO queue can mix up leases when two connections
of the same run are opened concurrently.
"""

from __future__ import annotations

import logging
from collections.abc import Hashable, Mapping
from dataclasses import dataclass, field

from pydantic import BaseModel, Field

from .client import VaultClient
from .exceptions import ConfigurationError, ExecutionError, ShutdownError
from .leases import CleanupScope, Lease, LeaseRegistry
from .notifications import ErrorNotifier
from .revocation import RevocationCoordinator
from .token import TokenResolver

logger = logging.getLogger(__name__)

# Keys of the data source properties holding a DatabaseSecretConfiguration
DATABASE_PATH_PROPERTY = "dynamic_secrets.path"
DATABASE_USERNAME_KEY_PROPERTY = "dynamic_secrets.username_key"
DATABASE_PASSWORD_KEY_PROPERTY = "dynamic_secrets.password_key"


class DatabaseSecretConfiguration(BaseModel):
    """Which secret holds the credentials of a data source."""

    path: str = Field(default="", description="Secret path, e.g. database/creds/readonly")
    username_key: str = Field(default="username", description="Secret key of the username")
    password_key: str = Field(default="password", description="Secret key of the password")

    @classmethod
    def from_properties(cls, properties: Mapping[str, str]) -> DatabaseSecretConfiguration:
        """Read the configuration from data source properties (defaults for missing keys)."""
        return cls(
            path=properties.get(DATABASE_PATH_PROPERTY, ""),
            username_key=properties.get(DATABASE_USERNAME_KEY_PROPERTY, "username"),
            password_key=properties.get(DATABASE_PASSWORD_KEY_PROPERTY, "password"),
        )

    def to_properties(self) -> dict[str, str]:
        return {
            DATABASE_PATH_PROPERTY: self.path,
            DATABASE_USERNAME_KEY_PROPERTY: self.username_key,
            DATABASE_PASSWORD_KEY_PROPERTY: self.password_key,
        }

    def validate_configuration(self) -> None:
        if not self.path:
            raise ConfigurationError("vault path is not specified")
        if not self.username_key:
            raise ConfigurationError("vault username key is not specified")
        if not self.password_key:
            raise ConfigurationError("vault password key is not specified")

    @property
    def normalized_path(self) -> str:
        return self.path[1:] if self.path.startswith("/") else self.path


@dataclass
class DatabaseCredentials:
    """Credentials for one connection and the lease that backs them."""

    user: str
    password: str = field(repr=False)
    lease: Lease | None = None


class DatabaseCredentialsProvider:
    """Supplies dynamic credentials to database connections."""

    def __init__(
        self,
        client: VaultClient,
        token_resolver: TokenResolver,
        revocation: RevocationCoordinator,
        registry: LeaseRegistry,
        notifier: ErrorNotifier | None = None,
        scope: CleanupScope | None = None,
    ) -> None:
        self.client = client
        self.token_resolver = token_resolver
        self.revocation = revocation
        self.registry = registry
        self.notifier = notifier
        self.scope = scope

    async def intercept(
        self, run_id: Hashable, configuration: DatabaseSecretConfiguration
    ) -> DatabaseCredentials:
        """Fetch credentials for a connection about to be opened for run_id.

        Returns:
            DatabaseCredentials; its lease (if the secret has one) is pending
            for run_id until connection_changed() binds it

        Raises:
            ConfigurationError: If the configuration is incomplete
            AuthError / StoreError / ParseError: If the secret cannot be read
            ExecutionError: If the username or password key is missing
            ShutdownError: If the owning service has already been shut down
        """
        configuration.validate_configuration()
        if self.scope is not None and self.scope.disposed:
            raise ShutdownError("Vault service is shut down")

        token = await self.token_resolver.resolve()
        secret = await self.client.fetch_secret(token, configuration.normalized_path)

        lease = None
        if secret.has_lease:
            lease = Lease(secret.lease_id, self.revocation, self.notifier, self.scope)

        for key in (configuration.username_key, configuration.password_key):
            if key not in secret.data:
                if lease is not None:
                    await lease.release()
                raise ExecutionError(f"key {key} is not present in secret")

        if lease is not None:
            self.registry.register_pending(run_id, lease)
        logger.info(f"Obtained database credentials from {configuration.path} for run {run_id}")

        return DatabaseCredentials(
            user=secret.data[configuration.username_key],
            password=secret.data[configuration.password_key],
            lease=lease,
        )

    async def connection_changed(
        self,
        run_id: Hashable,
        connection: Hashable,
        added: bool,
        lease: Lease | None = None,
    ) -> None:
        """Track a connection being opened (added) or closed.

        Args:
            run_id: Run the connection belongs to
            connection: Hashable identity of the connection
            added: True when the connection was opened, False when closed
            lease: Lease returned by intercept() for this connection; when
                omitted the oldest pending lease of run_id is bound
        """
        if added:
            if lease is not None:
                self.registry.bind(connection, lease)
            elif self.registry.bind_to_connection(run_id, connection) is None:
                logger.debug(f"No pending lease for connection of run {run_id}")
            return

        bound = self.registry.take_for_connection(connection)
        if bound is not None:
            await bound.release()


__all__ = [
    "DatabaseSecretConfiguration",
    "DatabaseCredentials",
    "DatabaseCredentialsProvider",
    "DATABASE_PATH_PROPERTY",
    "DATABASE_USERNAME_KEY_PROPERTY",
    "DATABASE_PASSWORD_KEY_PROPERTY",
]
