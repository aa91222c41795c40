"""Tests for fetching secrets into environment variables."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from conftest import FakeClient

from dynamic_secrets.engine import (
    AuthError,
    CancellationToken,
    ConfigurationError,
    EnvVarMapping,
    ErrorNotifier,
    FetchCancelledError,
    FetchOrchestrator,
    MissingSecretKeyError,
    RevocationCoordinator,
    Secret,
    SecretConfiguration,
    SecretRequest,
    StoreError,
)
from dynamic_secrets.engine.leases import CleanupScope


def request(path: str, **mappings: str) -> SecretRequest:
    """SecretRequest mapping env var name -> secret key."""
    return SecretRequest(
        path=path,
        mappings=[EnvVarMapping(env_var_name=k, secret_key=v) for k, v in mappings.items()],
    )


def make_orchestrator(
    client: FakeClient, resolver: AsyncMock, scope: CleanupScope | None = None
) -> FetchOrchestrator:
    revocation = RevocationCoordinator(client, resolver)
    return FetchOrchestrator(client, resolver, revocation, ErrorNotifier(), scope)


async def wait_for_call(client: FakeClient, path: str) -> None:
    for _ in range(200):
        if path in client.calls:
            return
        await asyncio.sleep(0.005)
    raise AssertionError(f"{path} was never requested")


class TestFetch:
    async def test_maps_keys_and_collects_leases(
        self, fake_client: FakeClient, resolver: AsyncMock
    ) -> None:
        fake_client.secrets = {
            "db/creds": Secret(data={"user": "u", "pwd": "p"}, lease_id="L1"),
            "kv/app": Secret(data={"api_key": "k"}),
        }
        configuration = SecretConfiguration(
            secrets=[
                request("db/creds", DB_USER="user", DB_PASSWORD="pwd"),
                request("/kv/app", API_KEY="api_key"),
            ]
        )

        result = await make_orchestrator(fake_client, resolver).fetch(configuration)

        assert result.vars == {"DB_USER": "u", "DB_PASSWORD": "p", "API_KEY": "k"}
        assert result.cleanup is not None
        assert result.cleanup.lease_ids == {"L1"}
        assert fake_client.calls == ["db/creds", "kv/app"]
        resolver.resolve.assert_awaited_once()
        assert fake_client.revoked == []

        await result.cleanup.dispose()
        assert fake_client.revoked == ["L1"]

    async def test_empty_configuration_resolves_no_token(
        self, fake_client: FakeClient, resolver: AsyncMock
    ) -> None:
        result = await make_orchestrator(fake_client, resolver).fetch(SecretConfiguration())

        assert result.vars == {}
        assert result.cleanup is not None and result.cleanup.lease_ids == set()
        resolver.resolve.assert_not_awaited()
        assert fake_client.calls == []

    async def test_invalid_configuration_fetches_nothing(
        self, fake_client: FakeClient, resolver: AsyncMock
    ) -> None:
        configuration = SecretConfiguration(secrets=[request("", X="x")])

        with pytest.raises(ConfigurationError, match="secret path is not specified"):
            await make_orchestrator(fake_client, resolver).fetch(configuration)

        resolver.resolve.assert_not_awaited()
        assert fake_client.calls == []

    async def test_auth_error_aborts(self, fake_client: FakeClient, resolver: AsyncMock) -> None:
        resolver.resolve.side_effect = AuthError("Error getting token from cli file: missing")
        configuration = SecretConfiguration(secrets=[request("kv/app", X="x")])

        with pytest.raises(AuthError):
            await make_orchestrator(fake_client, resolver).fetch(configuration)
        assert fake_client.calls == []

    async def test_missing_key_lists_available_keys(
        self, fake_client: FakeClient, resolver: AsyncMock
    ) -> None:
        fake_client.secrets = {"db/creds": Secret(data={"user": "u", "pwd": "p"}, lease_id="L1")}
        configuration = SecretConfiguration(secrets=[request("db/creds", DB_PASSWORD="password")])

        with pytest.raises(MissingSecretKeyError) as exc_info:
            await make_orchestrator(fake_client, resolver).fetch(configuration)

        assert str(exc_info.value) == (
            "Secret db/creds does not have key password\n"
            "The following keys are available: [pwd, user]"
        )
        # The lease was recorded before the key check and is revoked
        assert exc_info.value.cleanup is not None
        assert exc_info.value.cleanup.lease_ids == {"L1"}
        assert fake_client.revoked == ["L1"]

    async def test_first_secret_is_fetched_alone(
        self, fake_client: FakeClient, resolver: AsyncMock
    ) -> None:
        fake_client.secrets = {
            "a": Secret(data={"k": "a"}, lease_id="LA"),
            "b": Secret(data={"k": "b"}, lease_id="LB"),
            "c": Secret(data={"k": "c"}, lease_id="LC"),
        }
        gate = fake_client.gate("a")
        configuration = SecretConfiguration(
            secrets=[request("a", A="k"), request("b", B="k"), request("c", C="k")]
        )

        fetch = asyncio.create_task(make_orchestrator(fake_client, resolver).fetch(configuration))
        await wait_for_call(fake_client, "a")
        await asyncio.sleep(0.05)
        assert fake_client.calls == ["a"]

        gate.set()
        result = await fetch

        assert fake_client.calls[0] == "a"
        assert sorted(fake_client.calls[1:]) == ["b", "c"]
        assert result.vars == {"A": "a", "B": "b", "C": "c"}
        assert result.cleanup is not None
        assert result.cleanup.lease_ids == {"LA", "LB", "LC"}

    async def test_rest_are_fetched_concurrently(
        self, fake_client: FakeClient, resolver: AsyncMock
    ) -> None:
        fake_client.secrets = {
            "a": Secret(data={"k": "a"}),
            "b": Secret(data={"k": "b"}),
            "c": Secret(data={"k": "c"}),
        }
        gate_b = fake_client.gate("b")
        configuration = SecretConfiguration(
            secrets=[request("a", A="k"), request("b", B="k"), request("c", C="k")]
        )

        fetch = asyncio.create_task(make_orchestrator(fake_client, resolver).fetch(configuration))
        # c is requested while b is still in flight
        await wait_for_call(fake_client, "c")
        assert not fetch.done()

        gate_b.set()
        result = await fetch
        assert result.vars == {"A": "a", "B": "b", "C": "c"}

    async def test_failure_revokes_leases_obtained_so_far(
        self, fake_client: FakeClient, resolver: AsyncMock
    ) -> None:
        fake_client.secrets = {
            "a": Secret(data={"k": "a"}, lease_id="L1"),
            "b": Secret(data={"k": "b"}, lease_id="L2"),
            "c": StoreError("Fetch secret c from Vault: 500 Internal Server Error"),
        }
        configuration = SecretConfiguration(
            secrets=[request("a", A="k"), request("b", B="k"), request("c", C="k")]
        )

        with pytest.raises(StoreError, match="Fetch secret c from Vault") as exc_info:
            await make_orchestrator(fake_client, resolver).fetch(configuration)

        assert exc_info.value.cleanup is not None
        assert exc_info.value.cleanup.lease_ids == {"L1", "L2"}
        assert sorted(fake_client.revoked) == ["L1", "L2"]

    async def test_failure_cancels_in_flight_siblings(
        self, fake_client: FakeClient, resolver: AsyncMock
    ) -> None:
        fake_client.secrets = {
            "a": Secret(data={"k": "a"}, lease_id="L1"),
            "b": Secret(data={"k": "b"}, lease_id="L2"),
            "c": StoreError("Fetch secret c from Vault: 500 Internal Server Error"),
        }
        fake_client.gate("b")  # never released
        configuration = SecretConfiguration(
            secrets=[request("a", A="k"), request("b", B="k"), request("c", C="k")]
        )

        with pytest.raises(StoreError):
            await asyncio.wait_for(
                make_orchestrator(fake_client, resolver).fetch(configuration), timeout=2
            )
        assert fake_client.revoked == ["L1"]


class TestCancellation:
    async def test_cancellation_token_revokes_partial_leases(
        self, fake_client: FakeClient, resolver: AsyncMock
    ) -> None:
        fake_client.secrets = {
            "a": Secret(data={"k": "a"}, lease_id="L1"),
            "b": Secret(data={"k": "b"}, lease_id="L2"),
        }
        fake_client.gate("b")  # in flight until cancelled
        configuration = SecretConfiguration(secrets=[request("a", A="k"), request("b", B="k")])
        token = CancellationToken()

        fetch = asyncio.create_task(
            make_orchestrator(fake_client, resolver).fetch(configuration, cancellation=token)
        )
        await wait_for_call(fake_client, "b")
        token.cancel()

        with pytest.raises(FetchCancelledError, match="Fetching vault secrets was cancelled") as exc_info:
            await asyncio.wait_for(fetch, timeout=2)

        assert exc_info.value.cleanup is not None
        assert exc_info.value.cleanup.lease_ids == {"L1"}
        assert fake_client.revoked == ["L1"]

    async def test_task_cancellation_revokes_partial_leases(
        self, fake_client: FakeClient, resolver: AsyncMock
    ) -> None:
        fake_client.secrets = {
            "a": Secret(data={"k": "a"}, lease_id="L1"),
            "b": Secret(data={"k": "b"}, lease_id="L2"),
        }
        fake_client.gate("b")
        configuration = SecretConfiguration(secrets=[request("a", A="k"), request("b", B="k")])

        fetch = asyncio.create_task(make_orchestrator(fake_client, resolver).fetch(configuration))
        await wait_for_call(fake_client, "b")
        fetch.cancel()

        with pytest.raises(asyncio.CancelledError):
            await fetch
        assert fake_client.revoked == ["L1"]

    async def test_token_cancelled_before_start(
        self, fake_client: FakeClient, resolver: AsyncMock
    ) -> None:
        fake_client.secrets = {"a": Secret(data={"k": "a"}, lease_id="L1")}
        fake_client.gate("a")
        token = CancellationToken()
        token.cancel()
        configuration = SecretConfiguration(secrets=[request("a", A="k")])

        with pytest.raises(FetchCancelledError):
            await asyncio.wait_for(
                make_orchestrator(fake_client, resolver).fetch(configuration, cancellation=token),
                timeout=2,
            )
        assert fake_client.revoked == []


class TestScope:
    async def test_live_runs_are_revoked_when_scope_is_disposed(
        self, fake_client: FakeClient, resolver: AsyncMock
    ) -> None:
        fake_client.secrets = {"a": Secret(data={"k": "a"}, lease_id="L1")}
        scope = CleanupScope("test")
        configuration = SecretConfiguration(secrets=[request("a", A="k")])

        result = await make_orchestrator(fake_client, resolver, scope).fetch(configuration)
        assert len(scope) == 1

        await scope.dispose()
        assert fake_client.revoked == ["L1"]

        # Disposing the run afterwards does not revoke again
        assert result.cleanup is not None
        await result.cleanup.dispose()
        assert fake_client.revoked == ["L1"]

    async def test_disposed_run_leaves_scope(
        self, fake_client: FakeClient, resolver: AsyncMock
    ) -> None:
        fake_client.secrets = {"a": Secret(data={"k": "a"}, lease_id="L1")}
        scope = CleanupScope("test")
        configuration = SecretConfiguration(secrets=[request("a", A="k")])

        result = await make_orchestrator(fake_client, resolver, scope).fetch(configuration)
        assert result.cleanup is not None
        await result.cleanup.dispose()

        assert len(scope) == 0
        assert resolver.resolve.await_count == 2  # fetch + revocation
