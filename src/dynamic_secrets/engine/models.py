"""Value objects shared by the dynamic secrets engine.

- VaultConfig: where the store lives and how to obtain a token
- EnvVarMapping / SecretRequest / SecretConfiguration: which secrets to fetch
  and which environment variables to fill from them
- Secret: a normalized secret read from the store
"""

from __future__ import annotations

from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .exceptions import ConfigurationError


class VaultConfig(BaseModel):
    """Connection settings for the secret store.

    If token_helper_path is set, the token is obtained by running the helper,
    otherwise it is read from ~/.vault-token.
    """

    vault_address: str = Field(default="", description="Vault base URL (http or https)")
    token_helper_path: str = Field(
        default="",
        description="Optional token helper program, invoked as '<helper> get'",
    )
    verify_ssl: bool = Field(default=True, description="Verify the server TLS certificate")
    ca_cert: str | None = Field(
        default=None,
        description="Path to a CA bundle used to verify the server certificate",
    )
    request_timeout: float = Field(
        default=30.0,
        gt=0,
        le=600,
        description="Per-request timeout in seconds",
    )

    @field_validator("vault_address")
    @classmethod
    def validate_vault_address(cls, v: str) -> str:
        """Accept an empty address (not configured yet) or an http(s) URL."""
        v = v.strip()
        if not v:
            return v
        try:
            parts = urlsplit(v)
        except ValueError:
            raise ValueError("Must be valid URL")
        if parts.scheme not in ("http", "https"):
            raise ValueError("Only http or https protocols are supported")
        if not parts.netloc:
            raise ValueError("Must be valid URL")
        return v

    def require_address(self) -> str:
        """Return the configured address or raise ConfigurationError."""
        if not self.vault_address:
            raise ConfigurationError(
                "Vault address is not configured. Set vault.address in the config file "
                "or the VAULT_ADDR environment variable."
            )
        return self.vault_address


class EnvVarMapping(BaseModel):
    """Fill environment variable env_var_name from secret key secret_key."""

    model_config = ConfigDict(frozen=True)

    env_var_name: str = Field(description="Environment variable to set")
    secret_key: str = Field(description="Key inside the secret data")


class SecretRequest(BaseModel):
    """One secret path and the environment variables taken from it.

    path never starts with a slash; it is relative to /v1/ on the store.
    """

    model_config = ConfigDict(frozen=True)

    path: str = Field(description="Secret path, e.g. database/creds/readonly")
    mappings: list[EnvVarMapping] = Field(default_factory=list)

    def validate_request(self) -> None:
        """Raise ConfigurationError if the request cannot be fetched."""
        if not self.path.strip("/"):
            raise ConfigurationError("secret path is not specified")
        for mapping in self.mappings:
            if not mapping.env_var_name:
                raise ConfigurationError(
                    f"environment variable name is not specified for secret {self.path}"
                )
            if not mapping.secret_key:
                raise ConfigurationError(
                    f"secret key name is not specified for variable {mapping.env_var_name} "
                    f"of secret {self.path}"
                )

    @property
    def normalized_path(self) -> str:
        """Path with one leading slash removed."""
        return self.path[1:] if self.path.startswith("/") else self.path


class SecretConfiguration(BaseModel):
    """Ordered list of secret requests for one run.

    The first request is fetched on its own before the rest are fetched
    concurrently.
    """

    model_config = ConfigDict(frozen=True)

    secrets: list[SecretRequest] = Field(default_factory=list)

    def validate_configuration(self) -> None:
        """Validate every request, raising on the first invalid one."""
        for request in self.secrets:
            request.validate_request()

    def __len__(self) -> int:
        return len(self.secrets)


class Secret(BaseModel):
    """A secret read from the store.

    lease_id is an empty string when the secret has no lease (static KV data).
    """

    model_config = ConfigDict(frozen=True)

    data: dict[str, str] = Field(default_factory=dict)
    lease_id: str = ""

    @property
    def has_lease(self) -> bool:
        return self.lease_id != ""


__all__ = [
    "VaultConfig",
    "EnvVarMapping",
    "SecretRequest",
    "SecretConfiguration",
    "Secret",
]
