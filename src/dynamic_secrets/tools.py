"""MCP tool implementations for dynamic secrets.

Tools let an MCP client run commands with short-lived Vault credentials in
their environment, inspect secrets without exposing their values, check the
Vault connection and read revocation failures that happened in the
background.

Secret values are never returned: command output is redacted and
fetch_secret_keys only returns key names.
"""

from typing import Annotated, Any, Literal

from mcp.types import ToolAnnotations
from pydantic import Field

from .context import AppContextType
from .engine import ConfigurationError, DynamicSecretsError, VaultConfig
from .engine.exceptions import describe_error
from .engine.launcher import DEFAULT_PROCESS_TIMEOUT
from .engine.persistence import dump_secret_configuration, load_secret_configuration
from .server import mcp


def _failure(error: str, **extra: Any) -> dict[str, Any]:
    return {"status": "failure", "error": error, **extra}


# =============================================================================
# MCP Tools
# =============================================================================


@mcp.tool(
    annotations=ToolAnnotations(
        title="Run Command With Secrets",
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=False,  # Every run obtains new leases
        openWorldHint=True,
    )
)
async def run_with_secrets(
    command: Annotated[
        str,
        Field(description="Command line to run", min_length=1, max_length=10000),
    ],
    run: Annotated[
        str | None,
        Field(description="Name of a configured run (use list_runs() to discover)"),
    ] = None,
    secrets: Annotated[
        list[dict[str, Any]] | None,
        Field(
            description=(
                "Inline secrets: [{path, env_vars: [{name, secret_value_name}]}]. "
                "Used instead of run."
            )
        ),
    ] = None,
    working_dir: Annotated[
        str | None,
        Field(description="Working directory (default: server working directory)"),
    ] = None,
    shell: Annotated[
        bool,
        Field(description="Run the command through the shell"),
    ] = False,
    timeout: Annotated[
        int,
        Field(description="Timeout in seconds", ge=1, le=3600),
    ] = int(DEFAULT_PROCESS_TIMEOUT),
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Run a command with Vault secrets as environment variables; leases are revoked when it exits."""
    if ctx is None:
        return _failure("Server context not available. Tool requires context to access resources.")
    app_ctx = ctx.request_context.lifespan_context

    try:
        if secrets is not None:
            configuration = load_secret_configuration({"secrets": secrets})
            run_id = "inline"
        elif run:
            configuration = app_ctx.config.get_run(run)
            run_id = run
        else:
            raise ConfigurationError("Either run or secrets must be specified")

        result = await app_ctx.service.launcher.run(
            command,
            configuration,
            shell=shell,
            working_dir=working_dir,
            timeout=timeout,
            run_id=run_id,
        )
    except (DynamicSecretsError, TimeoutError) as e:
        return _failure(describe_error(e))

    return {
        "status": "success" if result.exit_code == 0 else "failure",
        **result.model_dump(),
    }


@mcp.tool(
    annotations=ToolAnnotations(
        title="Fetch Secret Keys",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=False,  # Dynamic secrets create (and revoke) a lease per read
        openWorldHint=True,
    )
)
async def fetch_secret_keys(
    path: Annotated[
        str,
        Field(description="Secret path, e.g. database/creds/readonly", min_length=1),
    ],
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """List the keys of a secret (values are never returned)."""
    if ctx is None:
        return _failure("Server context not available. Tool requires context to access resources.")
    app_ctx = ctx.request_context.lifespan_context

    try:
        keys = await app_ctx.service.fetch_secret_keys(path)
    except DynamicSecretsError as e:
        return _failure(describe_error(e), path=path)
    return {"status": "success", "path": path, "keys": keys}


@mcp.tool(
    annotations=ToolAnnotations(
        title="Test Vault Connection",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=True,
    )
)
async def test_connection(
    vault_address: Annotated[
        str | None,
        Field(description="Vault address to test instead of the configured one"),
    ] = None,
    token_helper: Annotated[
        str | None,
        Field(description="Token helper to test instead of the configured one"),
    ] = None,
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Check that a token can be obtained and is accepted by Vault."""
    if ctx is None:
        return _failure("Server context not available. Tool requires context to access resources.")
    service = ctx.request_context.lifespan_context.service

    config = None
    if vault_address is not None or token_helper is not None:
        overrides: dict[str, Any] = {}
        if vault_address is not None:
            overrides["vault_address"] = vault_address
        if token_helper is not None:
            overrides["token_helper_path"] = token_helper
        try:
            config = VaultConfig(**{**service.config.model_dump(), **overrides})
        except ValueError as e:
            return _failure(str(e))

    message = await service.test_connection(config)
    return {"status": "success" if message == "Success!" else "failure", "message": message}


@mcp.tool(
    annotations=ToolAnnotations(
        title="List Runs",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def list_runs(*, ctx: AppContextType) -> dict[str, Any]:
    """List the named secret configurations from the config file."""
    if ctx is None:
        return _failure("Server context not available. Tool requires context to access resources.")
    config = ctx.request_context.lifespan_context.config
    return {
        "runs": {name: dump_secret_configuration(cfg) for name, cfg in sorted(config.runs.items())}
    }


@mcp.tool(
    annotations=ToolAnnotations(
        title="List Notifications",
        readOnlyHint=False,  # clear=True forgets notifications
        destructiveHint=False,
        idempotentHint=False,
        openWorldHint=False,
    )
)
async def list_notifications(
    level: Annotated[
        Literal["error", "warning"] | None,
        Field(description="Only return notifications of this level"),
    ] = None,
    clear: Annotated[
        bool,
        Field(description="Forget all notifications after returning them"),
    ] = False,
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Return background errors, such as failed lease revocations."""
    if ctx is None:
        return _failure("Server context not available. Tool requires context to access resources.")
    notifier = ctx.request_context.lifespan_context.service.notifier

    if clear:
        notifications = notifier.drain()
        if level is not None:
            notifications = [n for n in notifications if n.level == level]
    else:
        notifications = notifier.get_notifications(level)
    return {
        "count": len(notifications),
        "notifications": [n.model_dump() for n in notifications],
    }


__all__ = [
    "run_with_secrets",
    "fetch_secret_keys",
    "test_connection",
    "list_runs",
    "list_notifications",
]
