"""Dynamic secrets engine.

Fetches secrets from a Vault-like store, maps them to environment variables
and revokes the leases they produce when the consuming run ends.

Key Components:

- TokenResolver: token from a token helper program or ~/.vault-token
- VaultClient: HTTP access to secret read, lease revoke and token lookup
- parse_secret: KV v1 / KV v2 response normalization
- FetchOrchestrator: first request alone, the rest concurrently, cancellable
- RunLeases / Lease / CleanupScope: cleanup handles revoking leases once
- LeaseRegistry: leases pending for a run and bound to live connections
- RevocationCoordinator: concurrent, failure-isolated revocation
- ProcessLauncher: runs a process with secrets, revokes on exit
- DatabaseCredentialsProvider: per-connection database credentials
- VaultService: process-wide owner of all of the above
"""

from .client import VaultClient, join_url, secret_url
from .config import DynamicSecretsConfig, DynamicSecretsConfigLoader
from .database import DatabaseCredentials, DatabaseCredentialsProvider, DatabaseSecretConfiguration
from .exceptions import (
    AggregateError,
    AuthError,
    ConfigurationError,
    DynamicSecretsError,
    ExecutionError,
    FetchCancelledError,
    MissingSecretKeyError,
    ParseError,
    ShutdownError,
    StoreError,
)
from .launcher import ProcessLauncher, ProcessResult
from .leases import CleanupScope, Lease, LeaseRegistry, RunLeases
from .models import EnvVarMapping, Secret, SecretConfiguration, SecretRequest, VaultConfig
from .notifications import ErrorNotifier, Notification
from .orchestrator import CancellationToken, EnvVarsResult, FetchOrchestrator
from .parser import parse_secret
from .persistence import dump_secret_configuration, load_secret_configuration
from .redactor import SecretRedactor
from .revocation import RevocationCoordinator
from .service import VaultService
from .token import TokenResolver

__all__ = [
    # Models
    "VaultConfig",
    "EnvVarMapping",
    "SecretRequest",
    "SecretConfiguration",
    "Secret",
    # Errors
    "DynamicSecretsError",
    "AuthError",
    "ShutdownError",
    "StoreError",
    "ParseError",
    "ConfigurationError",
    "ExecutionError",
    "MissingSecretKeyError",
    "FetchCancelledError",
    "AggregateError",
    # Store access
    "TokenResolver",
    "VaultClient",
    "join_url",
    "secret_url",
    "parse_secret",
    # Fetch and leases
    "FetchOrchestrator",
    "EnvVarsResult",
    "CancellationToken",
    "CleanupScope",
    "RunLeases",
    "Lease",
    "LeaseRegistry",
    "RevocationCoordinator",
    "ErrorNotifier",
    "Notification",
    # Consumers
    "ProcessLauncher",
    "ProcessResult",
    "SecretRedactor",
    "DatabaseSecretConfiguration",
    "DatabaseCredentials",
    "DatabaseCredentialsProvider",
    "VaultService",
    # Configuration
    "DynamicSecretsConfig",
    "DynamicSecretsConfigLoader",
    "load_secret_configuration",
    "dump_secret_configuration",
]
