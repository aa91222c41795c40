"""Vault token acquisition.

Two strategies, chosen by VaultConfig.token_helper_path:

1. Token helper: run '<helper> get' with VAULT_ADDR set to the store address
   and read the token from stdout (same contract as the Vault CLI helpers).
2. Token file: read ~/.vault-token written by 'vault login'.

Each call makes a single attempt. Callers decide whether to surface the
AuthError to the user or abort the operation that needed the token.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

from .exceptions import AuthError
from .models import VaultConfig

logger = logging.getLogger(__name__)

TOKEN_FILE_NAME = ".vault-token"

# Seconds to wait for the token helper before giving up
TOKEN_HELPER_TIMEOUT = 1.0


class TokenResolver:
    """Resolves a Vault token for a VaultConfig.

    Usage:
        resolver = TokenResolver(config)
        token = await resolver.resolve()
    """

    def __init__(
        self,
        config: VaultConfig,
        home_dir: Path | None = None,
        helper_timeout: float = TOKEN_HELPER_TIMEOUT,
    ) -> None:
        """Initialize the resolver.

        Args:
            config: Store configuration (address and optional helper path)
            home_dir: Directory holding .vault-token (default: user home)
            helper_timeout: Seconds to wait for the token helper
        """
        self.config = config
        self._home_dir = home_dir
        self._helper_timeout = helper_timeout

    @property
    def token_file(self) -> Path:
        home = self._home_dir if self._home_dir is not None else Path.home()
        return home / TOKEN_FILE_NAME

    async def resolve(self) -> str:
        """Obtain a token using the configured strategy.

        Returns:
            Token with surrounding whitespace removed

        Raises:
            AuthError: If the helper fails or the token file cannot be read
        """
        if self.config.token_helper_path:
            try:
                return await self._token_from_helper()
            except AuthError as e:
                raise AuthError(f"Error getting token from helper: {e}", e.exit_code) from e
        try:
            return await asyncio.to_thread(self._token_from_file)
        except OSError as e:
            raise AuthError(
                f"Error getting token from cli file: {e}\n"
                "Use `vault login` to create it or configure token helper."
            ) from e

    def _token_from_file(self) -> str:
        token = self.token_file.read_bytes().decode("utf-8", errors="replace").strip()
        logger.debug(f"Read Vault token from {self.token_file}")
        return token

    async def _token_from_helper(self) -> str:
        helper = self.config.token_helper_path
        env = dict(os.environ)
        env["VAULT_ADDR"] = self.config.vault_address

        try:
            process = await asyncio.create_subprocess_exec(
                helper,
                "get",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            raise AuthError(f"Cannot start token helper {helper}: {e}") from e

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(), timeout=self._helper_timeout
            )
        except TimeoutError:
            process.kill()
            await process.wait()
            raise AuthError(f"Token helper timed out after {self._helper_timeout} seconds")

        exit_code = process.returncode
        if exit_code != 0:
            stderr = stderr_bytes.decode("utf-8", errors="replace").strip() if stderr_bytes else ""
            if stderr:
                logger.debug(f"Token helper stderr: {stderr}")
            raise AuthError(f"Token helper returned non-zero exit code {exit_code}", exit_code)

        logger.debug(f"Obtained Vault token from helper {helper}")
        return stdout_bytes.decode("utf-8", errors="replace").strip() if stdout_bytes else ""


__all__ = ["TokenResolver", "TOKEN_FILE_NAME", "TOKEN_HELPER_TIMEOUT"]
