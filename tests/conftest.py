"""Shared test configuration for dynamic-secrets tests.

Provides:
- fake_vault: a local Vault imitation served by pytest-httpserver
- FakeClient: in-process VaultClient stand-in with controllable timing
- token_home: home directory holding a .vault-token file
"""

import asyncio
import json
import re
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest
from pytest_httpserver import HTTPServer
from werkzeug.wrappers import Request, Response

from dynamic_secrets.engine import Secret, StoreError, VaultConfig, VaultService

TEST_TOKEN = "s.test-token"


class FakeVault:
    """Minimal Vault: secret read, lease revoke and token lookup.

    Every request is recorded in arrival order. Requests without the expected
    token are answered with 403.
    """

    def __init__(self, server: HTTPServer, token: str = TEST_TOKEN) -> None:
        self.server = server
        self.token = token
        self.secrets: dict[str, dict[str, Any]] = {}
        self.revoked: list[str] = []
        self.failing_revocations: set[str] = set()
        self.requests: list[tuple[str, str]] = []
        server.expect_request(re.compile(r"^/v1/.*")).respond_with_handler(self._handle)

    @property
    def address(self) -> str:
        return self.server.url_for("/").rstrip("/")

    def config(self, **kwargs: Any) -> VaultConfig:
        return VaultConfig(vault_address=self.address, **kwargs)

    def add_secret(
        self, path: str, data: dict[str, Any], lease_id: str = "", kv2: bool = False
    ) -> None:
        body_data: dict[str, Any] = {"data": data, "metadata": {"version": 1}} if kv2 else data
        self.secrets[path] = {"lease_id": lease_id, "renewable": bool(lease_id), "data": body_data}

    def _error(self, status: int, *errors: str) -> Response:
        return Response(
            json.dumps({"errors": list(errors)}), status=status, content_type="application/json"
        )

    def _handle(self, request: Request) -> Response:
        path = request.path
        self.requests.append((request.method, path))
        if request.headers.get("X-Vault-Token") != self.token:
            return self._error(403, "permission denied")

        if path == "/v1/sys/leases/revoke" and request.method == "PUT":
            lease_id = request.get_json()["lease_id"]
            self.revoked.append(lease_id)
            if lease_id in self.failing_revocations:
                return self._error(400, f"lease {lease_id} not found")
            return Response(status=204)

        if path == "/v1/auth/token/lookup-self":
            return Response(
                json.dumps({"data": {"display_name": "token", "ttl": 3600}}),
                content_type="application/json",
            )

        secret = self.secrets.get(path.removeprefix("/v1/"))
        if secret is None or request.method != "GET":
            return self._error(404)
        return Response(json.dumps(secret), content_type="application/json")


@pytest.fixture
def fake_vault(httpserver: HTTPServer) -> FakeVault:
    """Local Vault imitation accepting TEST_TOKEN."""
    return FakeVault(httpserver)


@pytest.fixture
def token_home(tmp_path: Path) -> Path:
    """Home directory with a .vault-token file containing TEST_TOKEN."""
    (tmp_path / ".vault-token").write_text(f"{TEST_TOKEN}\n")
    return tmp_path


class FakeClient:
    """VaultClient stand-in keeping secrets in memory.

    fetch_secret() waits on the gate of a path, if any, before answering, so
    tests control when each request completes.
    """

    def __init__(self, secrets: dict[str, Secret | Exception] | None = None) -> None:
        self.secrets = dict(secrets or {})
        self.gates: dict[str, asyncio.Event] = {}
        self.calls: list[str] = []
        self.revoked: list[str] = []
        self.revoke_errors: dict[str, Exception] = {}

    def gate(self, path: str) -> asyncio.Event:
        self.gates[path] = asyncio.Event()
        return self.gates[path]

    async def fetch_secret(self, token: str, path: str) -> Secret:
        self.calls.append(path)
        gate = self.gates.get(path)
        if gate is not None:
            await gate.wait()
        value = self.secrets.get(path)
        if value is None:
            raise StoreError(f"Fetch secret {path} from Vault: 404 Not Found", status_code=404)
        if isinstance(value, Exception):
            raise value
        return value

    async def revoke_lease(self, token: str, lease_id: str) -> None:
        self.revoked.append(lease_id)
        if lease_id in self.revoke_errors:
            raise self.revoke_errors[lease_id]


@pytest.fixture
def fake_client() -> FakeClient:
    return FakeClient()


@pytest.fixture
def resolver() -> AsyncMock:
    """TokenResolver stand-in returning TEST_TOKEN."""
    mock = AsyncMock()
    mock.resolve.return_value = TEST_TOKEN
    return mock


@pytest.fixture
async def service(fake_vault: FakeVault, token_home: Path) -> AsyncIterator[VaultService]:
    """VaultService talking to fake_vault with a token file in token_home."""
    vault_service = VaultService(fake_vault.config(), home_dir=token_home)
    yield vault_service
    await vault_service.aclose()
