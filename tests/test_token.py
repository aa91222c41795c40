"""Tests for Vault token resolution."""

import stat
from pathlib import Path

import pytest
from conftest import TEST_TOKEN

from dynamic_secrets.engine import AuthError, TokenResolver, VaultConfig

VAULT_ADDRESS = "https://vault.example.com:8200"


def write_helper(directory: Path, body: str) -> Path:
    """Create an executable token helper script."""
    helper = directory / "token-helper"
    helper.write_text(f"#!/bin/sh\n{body}\n")
    helper.chmod(helper.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return helper


class TestTokenFile:
    async def test_reads_and_trims_token_file(self, token_home: Path) -> None:
        resolver = TokenResolver(VaultConfig(vault_address=VAULT_ADDRESS), home_dir=token_home)
        assert resolver.token_file == token_home / ".vault-token"
        assert await resolver.resolve() == TEST_TOKEN

    async def test_missing_token_file(self, tmp_path: Path) -> None:
        resolver = TokenResolver(VaultConfig(vault_address=VAULT_ADDRESS), home_dir=tmp_path)

        with pytest.raises(AuthError) as exc_info:
            await resolver.resolve()

        message = str(exc_info.value)
        assert message.startswith("Error getting token from cli file: ")
        assert message.endswith("\nUse `vault login` to create it or configure token helper.")
        assert exc_info.value.exit_code is None


class TestTokenHelper:
    async def test_helper_get_receives_vault_addr(self, tmp_path: Path) -> None:
        helper = write_helper(
            tmp_path,
            '[ "$1" = "get" ] || exit 3\nprintf "  token-for-%s\\n" "$VAULT_ADDR"',
        )
        config = VaultConfig(vault_address=VAULT_ADDRESS, token_helper_path=str(helper))

        token = await TokenResolver(config, home_dir=tmp_path).resolve()

        assert token == f"token-for-{VAULT_ADDRESS}"

    async def test_helper_takes_precedence_over_token_file(self, token_home: Path) -> None:
        helper = write_helper(token_home, "echo from-helper")
        config = VaultConfig(vault_address=VAULT_ADDRESS, token_helper_path=str(helper))

        assert await TokenResolver(config, home_dir=token_home).resolve() == "from-helper"

    async def test_helper_non_zero_exit(self, tmp_path: Path) -> None:
        helper = write_helper(tmp_path, "echo oops >&2\nexit 2")
        config = VaultConfig(vault_address=VAULT_ADDRESS, token_helper_path=str(helper))

        with pytest.raises(AuthError) as exc_info:
            await TokenResolver(config, home_dir=tmp_path).resolve()

        assert str(exc_info.value) == (
            "Error getting token from helper: Token helper returned non-zero exit code 2"
        )
        assert exc_info.value.exit_code == 2

    async def test_helper_timeout_kills_helper(self, tmp_path: Path) -> None:
        helper = write_helper(tmp_path, "exec sleep 10")
        config = VaultConfig(vault_address=VAULT_ADDRESS, token_helper_path=str(helper))
        resolver = TokenResolver(config, home_dir=tmp_path, helper_timeout=0.2)

        with pytest.raises(AuthError, match="timed out") as exc_info:
            await resolver.resolve()

        assert str(exc_info.value).startswith("Error getting token from helper: ")
        assert exc_info.value.exit_code is None

    async def test_missing_helper(self, tmp_path: Path) -> None:
        config = VaultConfig(
            vault_address=VAULT_ADDRESS, token_helper_path=str(tmp_path / "no-such-helper")
        )

        with pytest.raises(AuthError, match="Cannot start token helper"):
            await TokenResolver(config, home_dir=tmp_path).resolve()
