"""Decoding of Vault secret responses.

Vault returns secrets in two shapes:

KV v1 and dynamic engines:
    {"lease_id": "database/creds/ro/abc", "data": {"username": "u", "password": "p"}}

KV v2 (the secret is wrapped together with its metadata):
    {"lease_id": "", "data": {"data": {"username": "u"}, "metadata": {"version": 3}}}

parse_secret() accepts both and returns the effective key/value map.
"""

from __future__ import annotations

import json
from typing import Any

from .exceptions import ParseError
from .models import Secret

# Key set that identifies the KV v2 envelope
KV2_ENVELOPE_KEYS = frozenset({"data", "metadata"})


def parse_secret(text: str | bytes) -> Secret:
    """Parse a secret response body.

    Args:
        text: Raw JSON response body

    Returns:
        Secret with the effective data map and the lease id

    Raises:
        ParseError: If the body is not JSON or does not have the secret shape
    """
    try:
        root = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ParseError(f"invalid JSON: {e}", reason="invalid_json") from e

    if not isinstance(root, dict):
        raise ParseError("root not a JSON object", reason="root_not_object")

    if "lease_id" not in root:
        raise ParseError("lease key not found", reason="missing_lease")
    lease_id = root["lease_id"]
    if not isinstance(lease_id, str):
        raise ParseError("lease is not primitive string", reason="lease_not_string")

    if "data" not in root:
        raise ParseError("data object not found", reason="missing_data")
    data = root["data"]
    if not isinstance(data, dict):
        raise ParseError("data is not an object", reason="data_not_object")

    values: dict[str, Any] = data
    if data.keys() == KV2_ENVELOPE_KEYS:
        inner = data["data"]
        if not isinstance(inner, dict):
            raise ParseError("data.data is not an object", reason="nested_data_not_object")
        values = inner

    secret_data: dict[str, str] = {}
    for key, value in values.items():
        # bool and numbers are JSON primitives too, only strings are accepted
        if not isinstance(value, str):
            raise ParseError(f"value {key} is not a string", reason="non_string_value", key=key)
        secret_data[key] = value

    return Secret(data=secret_data, lease_id=lease_id)


__all__ = ["parse_secret", "KV2_ENVELOPE_KEYS"]
