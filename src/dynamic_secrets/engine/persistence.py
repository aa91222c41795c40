"""Persisted form of a secret configuration.

The host stores, per run configuration, which secrets to fetch and which
environment variables to set from them:

```yaml
secrets:
  - path: database/creds/readonly
    env_vars:
      - name: DB_USER
        secret_value_name: username
      - name: DB_PASSWORD
        secret_value_name: password
  - path: kv/data/app
    env_vars:
      - name: API_KEY
        secret_value_name: api_key
```

A missing or empty "secrets" entry is an empty configuration.
"""

from __future__ import annotations

from typing import Any

from .exceptions import ConfigurationError
from .models import EnvVarMapping, SecretConfiguration, SecretRequest

SECRETS_KEY = "secrets"
PATH_KEY = "path"
ENV_VARS_KEY = "env_vars"
NAME_KEY = "name"
SECRET_VALUE_NAME_KEY = "secret_value_name"


def _require_str(data: dict[str, Any], key: str, field_name: str) -> str:
    value = data.get(key)
    if value is None:
        raise ConfigurationError(f"{field_name} is not present")
    if not isinstance(value, str):
        raise ConfigurationError(f"{field_name} must be a string, got {type(value).__name__}")
    return value


def parse_secret_request(data: Any) -> SecretRequest:  # noqa: ANN401
    """Read one persisted secret entry.

    Raises:
        ConfigurationError: If a required attribute is missing
    """
    if not isinstance(data, dict):
        raise ConfigurationError("secret entry must be a mapping")
    path = _require_str(data, PATH_KEY, "secret.path")

    mappings: list[EnvVarMapping] = []
    for env_var in data.get(ENV_VARS_KEY) or []:
        if not isinstance(env_var, dict):
            raise ConfigurationError("secret.envVar entry must be a mapping")
        name = _require_str(env_var, NAME_KEY, "secret.envVar.name")
        secret_value_name = _require_str(
            env_var, SECRET_VALUE_NAME_KEY, "secret.envVar.secretValueName"
        )
        mappings.append(EnvVarMapping(env_var_name=name, secret_key=secret_value_name))

    return SecretRequest(path=path, mappings=mappings)


def load_secret_configuration(data: dict[str, Any] | None) -> SecretConfiguration:
    """Read a persisted secret configuration (None means empty)."""
    if data is None:
        return SecretConfiguration()
    if not isinstance(data, dict):
        raise ConfigurationError("secret configuration must be a mapping")
    entries = data.get(SECRETS_KEY) or []
    if not isinstance(entries, list):
        raise ConfigurationError("secrets must be a list")
    return SecretConfiguration(secrets=[parse_secret_request(entry) for entry in entries])


def dump_secret_configuration(configuration: SecretConfiguration) -> dict[str, Any]:
    """Write configuration in the persisted shape; empty configurations write nothing."""
    if not configuration.secrets:
        return {}
    return {
        SECRETS_KEY: [
            {
                PATH_KEY: request.path,
                ENV_VARS_KEY: [
                    {NAME_KEY: m.env_var_name, SECRET_VALUE_NAME_KEY: m.secret_key}
                    for m in request.mappings
                ],
            }
            for request in configuration.secrets
        ]
    }


def cleaned(request: SecretRequest) -> SecretRequest:
    """Drop mappings with an empty variable name or key (incomplete edits)."""
    return SecretRequest(
        path=request.path,
        mappings=[m for m in request.mappings if m.env_var_name and m.secret_key],
    )


__all__ = [
    "load_secret_configuration",
    "dump_secret_configuration",
    "parse_secret_request",
    "cleaned",
]
