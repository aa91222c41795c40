"""Exception hierarchy for the dynamic secrets engine.

Exception Hierarchy:
    DynamicSecretsError (base)
    ├── AuthError (token acquisition failure)
    ├── StoreError (transport, TLS or HTTP failure talking to Vault)
    ├── ParseError (malformed secret payload)
    ├── ConfigurationError (missing or invalid configuration field)
    ├── ExecutionError (fetched secret does not satisfy the configuration)
    │   └── FetchCancelledError (fetch aborted by the caller)
    └── AggregateError (one or more lease revocations failed)

Fetch errors are raised to the caller and block the action that needed the
secrets. Revocation errors are collected into a single AggregateError and
reported through the notification sink.

Example:
    >>> try:
    ...     result = await orchestrator.fetch(configuration)
    ... except ExecutionError as e:
    ...     print(e)
    Secret db/creds does not have key password
    The following keys are available: [pwd, user]
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .leases import RunLeases


class DynamicSecretsError(Exception):
    """Base exception for all dynamic secrets errors.

    The cleanup attribute is set by the fetch orchestrator when the error
    aborted a fetch, so callers can inspect the leases that were obtained
    (and already handed over for revocation) before the failure.
    """

    cleanup: RunLeases | None = None


class AuthError(DynamicSecretsError):
    """Raised when no Vault token could be obtained.

    Attributes:
        exit_code: Exit code of the token helper, None when the helper was not
            used, timed out or could not be started
    """

    def __init__(self, message: str, exit_code: int | None = None) -> None:
        self.exit_code = exit_code
        super().__init__(message)


class StoreError(DynamicSecretsError):
    """Raised when a request to the secret store fails.

    All transport failures, TLS failures and non-2xx responses collapse into
    this error. Certificate verification failures set certificate_error so the
    user can be pointed at the trust configuration.

    Attributes:
        status_code: HTTP status code if a response was received
        certificate_error: True when the server certificate was rejected
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        certificate_error: bool = False,
    ) -> None:
        self.status_code = status_code
        self.certificate_error = certificate_error
        super().__init__(message)


class ParseError(DynamicSecretsError):
    """Raised when a secret response body does not have the expected shape.

    Attributes:
        reason: Short machine-readable tag (e.g. "missing_lease", "non_string_value")
        key: Offending secret key for "non_string_value", otherwise None
    """

    def __init__(self, message: str, reason: str, key: str | None = None) -> None:
        self.reason = reason
        self.key = key
        super().__init__(f"Parsing vault secret: {message}")


class ConfigurationError(DynamicSecretsError):
    """Raised when a required configuration field is missing or invalid."""

    pass


class ShutdownError(DynamicSecretsError):
    """Raised when work is started on a service or scope that was already disposed."""

    pass


class ExecutionError(DynamicSecretsError):
    """Raised when a fetched secret cannot satisfy the requested mappings."""

    pass


class MissingSecretKeyError(ExecutionError):
    """A mapping refers to a key that the fetched secret does not contain.

    The message lists the available keys sorted, which is what users see when
    a launch is blocked, so its format must stay stable.

    Attributes:
        path: Secret path that was fetched
        key: The requested key
        available_keys: Sorted keys present in the secret
    """

    def __init__(self, path: str, key: str, available_keys: Sequence[str]) -> None:
        self.path = path
        self.key = key
        self.available_keys = sorted(available_keys)
        super().__init__(
            f"Secret {path} does not have key {key}\n"
            f"The following keys are available: [{', '.join(self.available_keys)}]"
        )


class FetchCancelledError(ExecutionError):
    """Raised when a fetch is cancelled through its cancellation token."""

    def __init__(self, message: str = "Fetching vault secrets was cancelled") -> None:
        super().__init__(message)


class AggregateError(DynamicSecretsError):
    """Bundles failures of independent operations (lease revocations).

    Attributes:
        errors: The individual failures, in completion order
    """

    def __init__(self, errors: Sequence[BaseException]) -> None:
        self.errors = list(errors)
        super().__init__("\n".join(describe_error(e) for e in self.errors))

    def __repr__(self) -> str:
        """Developer-friendly representation."""
        return f"AggregateError(errors={len(self.errors)})"


def describe_error(error: BaseException) -> str:
    """Return a one-line description of an error for user-facing reports."""
    message = str(error)
    return message if message else error.__class__.__name__


__all__ = [
    "DynamicSecretsError",
    "AuthError",
    "StoreError",
    "ParseError",
    "ConfigurationError",
    "ShutdownError",
    "ExecutionError",
    "MissingSecretKeyError",
    "FetchCancelledError",
    "AggregateError",
    "describe_error",
]
