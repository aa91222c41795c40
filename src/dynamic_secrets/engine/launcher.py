"""Launching processes with dynamic secrets in their environment.

The launch owns the cleanup handle of the secrets it fetched: when the
process exits, is killed after a timeout, fails to start or the launch is
cancelled, the leases are revoked. Nothing is shared between launches, so
concurrent launches of the same configuration cannot revoke each other's
leases.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
from collections.abc import Mapping, Sequence
from pathlib import Path

from pydantic import BaseModel, Field

from .exceptions import ConfigurationError, ExecutionError
from .models import SecretConfiguration
from .orchestrator import CancellationSignal, FetchOrchestrator
from .redactor import SecretRedactor

logger = logging.getLogger(__name__)

DEFAULT_PROCESS_TIMEOUT = 120.0
MAX_PROCESS_TIMEOUT = 3600.0


class ProcessResult(BaseModel):
    """Outcome of a process launched with secrets.

    stdout and stderr have every fetched secret value redacted.
    """

    exit_code: int = Field(description="Process exit code")
    stdout: str = Field(default="", description="Captured standard output (redacted)")
    stderr: str = Field(default="", description="Captured standard error (redacted)")
    env_vars: list[str] = Field(
        default_factory=list, description="Names of the variables set from secrets"
    )
    lease_count: int = Field(default=0, description="Leases obtained and revoked for the launch")


class ProcessLauncher:
    """Runs commands with the environment variables of a SecretConfiguration.

    Usage:
        launcher = ProcessLauncher(orchestrator)
        result = await launcher.run("./manage.py migrate", configuration)
    """

    def __init__(self, orchestrator: FetchOrchestrator) -> None:
        self.orchestrator = orchestrator

    async def run(
        self,
        command: str | Sequence[str],
        configuration: SecretConfiguration,
        *,
        shell: bool = False,
        working_dir: str | Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float = DEFAULT_PROCESS_TIMEOUT,
        cancellation: CancellationSignal | None = None,
        run_id: str | None = None,
    ) -> ProcessResult:
        """Fetch secrets, run command with them and revoke the leases afterwards.

        Variables from secrets override env, which overrides the current
        environment.

        Args:
            command: Command line (split with shlex unless shell) or argv list
            configuration: Secrets to fetch
            shell: Run command through the shell
            working_dir: Working directory (default: current directory)
            env: Additional environment variables
            timeout: Seconds before the process is killed
            cancellation: Optional cancellation flag for the fetch
            run_id: Label used in logs and revocation reports

        Returns:
            ProcessResult with redacted output

        Raises:
            ConfigurationError: Invalid configuration, command or working directory
            DynamicSecretsError: If the secrets cannot be fetched
            ExecutionError: If the process cannot be started
            TimeoutError: If the process did not finish in time (it is killed)
        """
        timeout = min(max(timeout, 1.0), MAX_PROCESS_TIMEOUT)
        cwd = Path(working_dir) if working_dir else Path.cwd()
        if not cwd.is_dir():
            raise ConfigurationError(f"Working directory does not exist: {cwd}")
        if isinstance(command, str):
            args = [command] if shell else shlex.split(command)
        else:
            args = list(command)
        if not args or not args[0]:
            raise ConfigurationError("command is not specified")

        fetched = await self.orchestrator.fetch(
            configuration, cancellation=cancellation, run_id=run_id
        )
        cleanup = fetched.cleanup
        try:
            process_env = dict(os.environ)
            if env:
                process_env.update(env)
            process_env.update(fetched.vars)

            exit_code, stdout, stderr = await self._execute(
                args, shell=shell, cwd=cwd, env=process_env, timeout=timeout
            )
        finally:
            if cleanup is not None:
                await cleanup.dispose()

        redactor = SecretRedactor(fetched.vars)
        return ProcessResult(
            exit_code=exit_code,
            stdout=redactor.redact(stdout),
            stderr=redactor.redact(stderr),
            env_vars=sorted(fetched.vars),
            lease_count=len(cleanup.lease_ids) if cleanup is not None else 0,
        )

    @staticmethod
    async def _execute(
        args: list[str],
        *,
        shell: bool,
        cwd: Path,
        env: dict[str, str],
        timeout: float,
    ) -> tuple[int, str, str]:
        try:
            if shell:
                process = await asyncio.create_subprocess_shell(
                    args[0],
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=cwd,
                    env=env,
                )
            else:
                process = await asyncio.create_subprocess_exec(
                    *args,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=cwd,
                    env=env,
                )
        except OSError as e:
            raise ExecutionError(f"Cannot start process {args[0]}: {e}") from e

        logger.info(f"Started process {args[0]} (pid {process.pid})")
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(), timeout=timeout
            )
        except TimeoutError:
            process.kill()
            await process.wait()
            raise TimeoutError(f"Command timed out after {timeout} seconds: {args[0]}")
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        stdout = stdout_bytes.decode("utf-8", errors="replace") if stdout_bytes else ""
        stderr = stderr_bytes.decode("utf-8", errors="replace") if stderr_bytes else ""
        exit_code = process.returncode or 0
        logger.info(f"Process {args[0]} exited with code {exit_code}")
        return exit_code, stdout, stderr


__all__ = ["ProcessLauncher", "ProcessResult", "DEFAULT_PROCESS_TIMEOUT"]
