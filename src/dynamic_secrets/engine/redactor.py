"""Redaction of fetched secret values from process output.

A process launched with secrets may print them. Before captured output is
handed to the MCP client, every fetched value is replaced with a marker.

Example:
    >>> redactor = SecretRedactor({"DB_PASSWORD": "my_secure_password"})
    >>> redactor.redact("connecting with my_secure_password")
    'connecting with ***REDACTED***'
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any


class SecretRedactor:
    """Replaces secret values in strings and nested structures.

    Values shorter than MIN_SECRET_LENGTH are not redacted to avoid masking
    common short strings. Longer values are matched first so that a secret
    containing another secret is masked as a whole.
    """

    MIN_SECRET_LENGTH = 8
    REDACTION_MARKER = "***REDACTED***"

    def __init__(self, secrets: Mapping[str, str] | None = None) -> None:
        """Initialize the redactor.

        Args:
            secrets: Environment variable name to secret value, as returned
                by FetchOrchestrator.fetch()
        """
        self.secrets: dict[str, str] = {}
        self._pattern: re.Pattern[str] | None = None
        for name, value in (secrets or {}).items():
            self.add_secret(name, value)

    def add_secret(self, name: str, value: str) -> None:
        """Redact value from now on (ignored if it is too short)."""
        if len(value) < self.MIN_SECRET_LENGTH:
            return
        self.secrets[name] = value
        self._compile()

    def _compile(self) -> None:
        values = sorted(set(self.secrets.values()), key=len, reverse=True)
        self._pattern = re.compile("|".join(re.escape(v) for v in values)) if values else None

    def redact(self, data: Any) -> Any:  # noqa: ANN401
        """Redact secrets from data, preserving its structure and types."""
        if isinstance(data, str):
            return self._redact_string(data)
        if isinstance(data, dict):
            return {key: self.redact(value) for key, value in data.items()}
        if isinstance(data, list):
            return [self.redact(item) for item in data]
        if isinstance(data, tuple):
            return tuple(self.redact(item) for item in data)
        return data

    def _redact_string(self, text: str) -> str:
        if self._pattern is None:
            return text
        return self._pattern.sub(self.REDACTION_MARKER, text)

    def __len__(self) -> int:
        return len(self.secrets)


__all__ = ["SecretRedactor"]
