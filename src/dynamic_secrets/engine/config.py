"""Configuration file for dynamic secrets.

Configuration file location priority:
1. Explicit path passed to DynamicSecretsConfigLoader
2. DYNAMIC_SECRETS_CONFIG environment variable
3. Standard location: ~/.dynamic-secrets/config.yml
4. Built-in defaults (if no config file found)

Example config file:
```yaml
version: "1.0"

vault:
  address: "https://vault.example.com:8200"
  token_helper: "/usr/local/bin/vault-token-helper"   # optional
  verify_ssl: true
  ca_cert: "/etc/ssl/certs/vault-ca.pem"               # optional
  request_timeout: 30

runs:
  api-dev:
    secrets:
      - path: database/creds/readonly
        env_vars:
          - name: DB_USER
            secret_value_name: username
          - name: DB_PASSWORD
            secret_value_name: password
```

The Vault CLI environment variables VAULT_ADDR and VAULT_CACERT fill in the
address and CA bundle when the file does not set them.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .exceptions import ConfigurationError
from .models import SecretConfiguration, VaultConfig
from .persistence import load_secret_configuration

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "DYNAMIC_SECRETS_CONFIG"


# ===========================================================================
# Configuration Models
# ===========================================================================


class VaultSection(BaseModel):
    """The vault: section of the config file."""

    address: str = Field(default="", description="Vault base URL")
    token_helper: str = Field(default="", description="Token helper program path")
    verify_ssl: bool = Field(default=True, description="Verify the server certificate")
    ca_cert: str | None = Field(default=None, description="CA bundle path")
    request_timeout: float = Field(default=30.0, gt=0, le=600, description="Seconds")


class DynamicSecretsConfig(BaseModel):
    """Root configuration model."""

    version: str = Field(default="1.0", description="Configuration schema version")
    vault: VaultSection = Field(default_factory=VaultSection)
    runs: dict[str, SecretConfiguration] = Field(
        default_factory=dict,
        description="Named secret configurations",
    )

    @field_validator("runs", mode="before")
    @classmethod
    def parse_runs(cls, v: Any) -> Any:  # noqa: ANN401
        """Read each run in the persisted secret configuration shape."""
        if v is None:
            return {}
        if not isinstance(v, dict):
            raise ValueError("runs must be a mapping of run name to secret configuration")
        return {
            name: value if isinstance(value, SecretConfiguration) else load_secret_configuration(value)
            for name, value in v.items()
        }

    def vault_config(self) -> VaultConfig:
        """Build the VaultConfig, falling back to the Vault CLI environment variables."""
        address = self.vault.address or os.getenv("VAULT_ADDR", "")
        ca_cert = self.vault.ca_cert or os.getenv("VAULT_CACERT") or None
        return VaultConfig(
            vault_address=address,
            token_helper_path=self.vault.token_helper,
            verify_ssl=self.vault.verify_ssl,
            ca_cert=ca_cert,
            request_timeout=self.vault.request_timeout,
        )

    def get_run(self, name: str) -> SecretConfiguration:
        """Return a named secret configuration.

        Raises:
            ConfigurationError: If no run with that name is configured
        """
        if name not in self.runs:
            available = ", ".join(sorted(self.runs)) or "none"
            raise ConfigurationError(f"Run '{name}' not found. Available runs: {available}")
        return self.runs[name]


# ===========================================================================
# Configuration Loader
# ===========================================================================


class DynamicSecretsConfigLoader:
    """Loader for the dynamic secrets configuration file.

    The loaded configuration is cached; call load_config() once at startup.
    """

    def __init__(self, config_path: str | Path | None = None):
        """Initialize config loader with optional explicit path.

        Args:
            config_path: Explicit path to config file (optional).
                If not provided, uses environment variable or standard location.
        """
        self._config: DynamicSecretsConfig | None = None
        self._explicit_path = Path(config_path).expanduser() if config_path else None

    def get_config_path(self) -> Path | None:
        """Determine config file path using priority order.

        Priority:
        1. Explicit config_path passed to the loader
        2. DYNAMIC_SECRETS_CONFIG environment variable
        3. ~/.dynamic-secrets/config.yml

        A missing explicit or environment path is logged and not replaced by
        a lower-priority file.

        Returns:
            Path to config file, or None if file doesn't exist
        """
        if self._explicit_path:
            if self._explicit_path.exists():
                return self._explicit_path
            logger.warning(f"Explicit config path does not exist: {self._explicit_path}")
            return None

        env_path_str = os.getenv(CONFIG_ENV_VAR)
        if env_path_str:
            env_path = Path(env_path_str).expanduser()
            if env_path.exists():
                return env_path
            logger.warning(f"{CONFIG_ENV_VAR} path does not exist: {env_path}")
            return None

        standard_path = Path.home() / ".dynamic-secrets" / "config.yml"
        if standard_path.exists():
            return standard_path

        return None

    def load_config(self) -> DynamicSecretsConfig:
        """Load and validate the configuration file.

        Returns:
            Validated configuration (defaults if no file was found)

        Raises:
            ConfigurationError: If the file is not valid YAML or fails validation
        """
        if self._config is not None:
            return self._config

        config_path = self.get_config_path()
        if config_path is None:
            logger.info("No dynamic secrets config file found, using defaults")
            self._config = DynamicSecretsConfig()
            return self._config

        logger.info(f"Loading dynamic secrets config from: {config_path}")

        try:
            with open(config_path, encoding="utf-8") as f:
                raw_config = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load config from {config_path}: {e}") from e

        if raw_config is None:
            raw_config = {}
        if not isinstance(raw_config, dict):
            raise ConfigurationError(
                f"Failed to load config from {config_path}: file must contain a YAML mapping"
            )

        try:
            config = DynamicSecretsConfig(**raw_config)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid config in {config_path}: {e}") from e

        logger.info(f"Loaded config: {len(config.runs)} runs")
        self._config = config
        return config


__all__ = ["DynamicSecretsConfig", "DynamicSecretsConfigLoader", "VaultSection", "CONFIG_ENV_VAR"]
