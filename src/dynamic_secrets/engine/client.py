"""HTTP client for the Vault API subset used by dynamic secrets.

Endpoints (relative to the configured address):
- GET  /v1/{path}                   read a secret
- PUT  /v1/sys/leases/revoke        revoke a lease
- GET  /v1/auth/token/lookup-self   connectivity test

Every request carries the X-Vault-Token header. Transport, TLS and HTTP
failures are collapsed into StoreError so callers deal with a single error
kind.

One VaultClient owns one httpx.AsyncClient. It is safe to share between
concurrent fetch and revoke operations and must be closed once with aclose().
"""

from __future__ import annotations

import asyncio
import logging
import ssl
from types import TracebackType
from typing import TYPE_CHECKING, Any
from urllib.parse import quote, urlsplit

import httpx

from .exceptions import ConfigurationError, StoreError
from .models import Secret, VaultConfig
from .parser import parse_secret

if TYPE_CHECKING:
    from typing import Self

logger = logging.getLogger(__name__)

TOKEN_HEADER = "X-Vault-Token"
REVOKE_LEASE_PATH = "/v1/sys/leases/revoke"
LOOKUP_SELF_PATH = "/v1/auth/token/lookup-self"

# Seconds aclose() waits for in-flight requests before cancelling them
SHUTDOWN_GRACE_PERIOD = 5.0

# Characters left unescaped in URL paths (RFC 3986 pchar plus "/")
_PATH_SAFE_CHARS = "/:@!$&'()*+,;="


def join_url(base_url: str, path: str) -> str:
    """Join a base URL and a path with exactly one slash between them.

    Only the scheme and authority of base_url are kept together with its path;
    query and fragment are dropped. One trailing slash is removed from the base
    path and one leading slash from path. The result is percent-encoded ASCII.

    Examples:
        >>> join_url("https://vault:8200/", "/v1/secret/app")
        'https://vault:8200/v1/secret/app'
        >>> join_url("https://proxy/vault", "v1/sys/leases/revoke")
        'https://proxy/vault/v1/sys/leases/revoke'
    """
    parts = urlsplit(base_url)
    base_path = parts.path[:-1] if parts.path.endswith("/") else parts.path
    relative = path[1:] if path.startswith("/") else path
    joined = quote(f"{base_path}/{relative}", safe=_PATH_SAFE_CHARS)
    return f"{parts.scheme}://{parts.netloc}{joined}"


def secret_url(base_url: str, secret_path: str) -> str:
    """URL for reading the secret at secret_path (which has no leading slash)."""
    return join_url(base_url, f"/v1/{secret_path}")


def _is_certificate_error(error: BaseException) -> bool:
    """Walk the exception chain looking for a certificate verification failure."""
    seen: set[int] = set()
    current: BaseException | None = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, ssl.SSLCertVerificationError):
            return True
        if "CERTIFICATE_VERIFY_FAILED" in str(current):
            return True
        current = current.__cause__ or current.__context__
    return False


def _describe_response_error(response: httpx.Response) -> str:
    """Build a cause message from a non-2xx Vault response."""
    message = f"{response.status_code} {response.reason_phrase}".strip()
    if response.is_redirect:
        # Redirects are not followed, the token must not leave the configured address
        location = response.headers.get("Location", "")
        return f"{message} (redirected to {location or 'unknown location'})"
    try:
        body = response.json()
    except ValueError:
        return message
    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            message += ": " + "; ".join(str(e) for e in errors)
    return message


class VaultClient:
    """Authenticated access to a single Vault server.

    Usage:
        async with VaultClient(config) as client:
            secret = await client.fetch_secret(token, "database/creds/readonly")
            await client.revoke_lease(token, secret.lease_id)
    """

    def __init__(
        self,
        config: VaultConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Store address and TLS settings
            transport: Optional httpx transport (used by tests)
        """
        self.config = config
        verify: bool | ssl.SSLContext = config.verify_ssl
        if config.verify_ssl and config.ca_cert:
            try:
                verify = ssl.create_default_context(cafile=config.ca_cert)
            except (OSError, ssl.SSLError) as e:
                raise ConfigurationError(f"Cannot load CA certificate {config.ca_cert}: {e}") from e
        self._http = httpx.AsyncClient(
            timeout=config.request_timeout,
            verify=verify,
            follow_redirects=False,
            transport=transport,
        )
        self._inflight: set[asyncio.Task[httpx.Response]] = set()
        self._closed = False

    @property
    def base_url(self) -> str:
        return self.config.require_address()

    @property
    def closed(self) -> bool:
        return self._closed

    async def fetch_secret(self, token: str, path: str) -> Secret:
        """Read the secret at path.

        Args:
            token: Vault token
            path: Secret path without leading slash (e.g. "kv/data/app")

        Returns:
            Parsed Secret (KV v2 envelope already unwrapped)

        Raises:
            StoreError: If the request fails
            ParseError: If the response is not a secret
        """
        operation = f"Fetch secret {path} from Vault"
        response = await self._request(operation, "GET", secret_url(self.base_url, path), token)
        return parse_secret(response.text)

    async def revoke_lease(self, token: str, lease_id: str) -> None:
        """Revoke a lease.

        Raises:
            StoreError: If the request fails
        """
        # https://developer.hashicorp.com/vault/api-docs/system/leases#revoke-lease
        await self._request(
            f"Revoke lease {lease_id}",
            "PUT",
            join_url(self.base_url, REVOKE_LEASE_PATH),
            token,
            json={"lease_id": lease_id},
            headers={"Content-Type": "application/json"},
        )
        logger.info(f"Revoked lease {lease_id}")

    async def lookup_self(self, token: str) -> None:
        """Look up the token itself; used to test connectivity and credentials."""
        await self._request(
            "Lookup information about token",
            "GET",
            join_url(self.base_url, LOOKUP_SELF_PATH),
            token,
        )

    async def _request(
        self,
        operation: str,
        method: str,
        url: str,
        token: str,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        if self._closed:
            raise StoreError(f"{operation}: client is closed")

        request_headers = {TOKEN_HEADER: token}
        if headers:
            request_headers.update(headers)

        # Each request runs in its own task so aclose() can cancel it
        request_task = asyncio.create_task(
            self._http.request(method, url, headers=request_headers, **kwargs)
        )
        self._inflight.add(request_task)
        try:
            response = await request_task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if self._closed and (current is None or current.cancelling() == 0):
                raise StoreError(f"{operation}: client was shut down") from None
            raise
        except (httpx.TransportError, ssl.SSLError) as e:
            if _is_certificate_error(e):
                raise StoreError(
                    f"Vault's TLS certificate check failed: {e}", certificate_error=True
                ) from e
            cause = str(e) or e.__class__.__name__
            raise StoreError(f"{operation}: {cause}") from e
        except httpx.InvalidURL as e:
            raise StoreError(f"{operation}: {e}") from e
        finally:
            self._inflight.discard(request_task)

        if not response.is_success:
            logger.debug(f"{operation} failed with HTTP {response.status_code}")
            raise StoreError(
                f"{operation}: {_describe_response_error(response)}",
                status_code=response.status_code,
            )
        return response

    async def aclose(self, grace_period: float = SHUTDOWN_GRACE_PERIOD) -> None:
        """Close the client.

        New requests are refused immediately. In-flight requests get up to
        grace_period seconds to finish, then they are cancelled and the
        transport is closed. Safe to call more than once.
        """
        if self._closed:
            return
        self._closed = True

        pending = set(self._inflight)
        if pending:
            logger.info(
                f"Waiting up to {grace_period}s for {len(pending)} in-flight Vault requests"
            )
            _, still_pending = await asyncio.wait(pending, timeout=grace_period)
            if still_pending:
                logger.warning(
                    f"Cancelling {len(still_pending)} Vault requests after shutdown grace period"
                )
                for task in still_pending:
                    task.cancel()
                await asyncio.gather(*still_pending, return_exceptions=True)

        await self._http.aclose()
        logger.debug("Vault client closed")

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()


__all__ = [
    "VaultClient",
    "join_url",
    "secret_url",
    "TOKEN_HEADER",
    "SHUTDOWN_GRACE_PERIOD",
]
