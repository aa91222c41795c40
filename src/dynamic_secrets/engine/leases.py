"""Lease ownership and cleanup handles.

A run (one process launch or one database connection) owns the leases of the
secrets fetched for it. When the run ends its leases are revoked exactly once.

- CleanupScope: explicit resource owner holding release callbacks; the
  process-wide VaultService owns the root scope so that runs still alive at
  shutdown are revoked too.
- RunLeases: cleanup handle for a set of leases fetched by one run
  (batch registration by the fetch orchestrator).
- Lease: cleanup handle for a single lease (database credentials flow).
- LeaseRegistry: maps pending leases and live connections to their Lease.

Revocation triggered by dispose() is shielded from cancellation of the caller,
because a cancelled cleanup would leave the leases alive until they expire.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from collections import deque
from collections.abc import Awaitable, Callable, Hashable, Iterable
from typing import TYPE_CHECKING

from .exceptions import AggregateError, DynamicSecretsError, ShutdownError

if TYPE_CHECKING:
    from .notifications import ErrorNotifier
    from .revocation import RevocationCoordinator

logger = logging.getLogger(__name__)

CleanupCallback = Callable[[], Awaitable[None]]

# Strong references to shielded revocations so they are not garbage collected
# while their original caller is being cancelled
_background_tasks: set[asyncio.Task[None]] = set()


class CleanupScope:
    """Ordered collection of release callbacks disposed together.

    Usage:
        scope = CleanupScope("vault")
        key = scope.add(run.dispose)
        ...
        await scope.dispose()  # runs every callback, failures isolated
    """

    def __init__(self, name: str = "scope") -> None:
        self.name = name
        self._callbacks: dict[int, CleanupCallback] = {}
        self._keys = itertools.count()
        self._lock = threading.Lock()
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def __len__(self) -> int:
        with self._lock:
            return len(self._callbacks)

    def add(self, callback: CleanupCallback) -> int:
        """Register a callback, returning a key for remove().

        Raises:
            ShutdownError: If the scope has already been disposed
        """
        with self._lock:
            if self._disposed:
                raise ShutdownError(f"CleanupScope '{self.name}' is already disposed")
            key = next(self._keys)
            self._callbacks[key] = callback
            return key

    def remove(self, key: int) -> None:
        """Forget a callback (no-op if it is unknown or already run)."""
        with self._lock:
            self._callbacks.pop(key, None)

    async def dispose(self) -> None:
        """Run all callbacks concurrently.

        Every callback runs even if others fail. Safe to call more than once.

        Raises:
            AggregateError: If any callback raised
        """
        with self._lock:
            if self._disposed:
                return
            self._disposed = True
            callbacks = list(self._callbacks.values())
            self._callbacks.clear()

        if not callbacks:
            return

        logger.debug(f"Disposing scope '{self.name}' with {len(callbacks)} callbacks")
        results = await asyncio.gather(*(cb() for cb in callbacks), return_exceptions=True)
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            raise AggregateError(failures)


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class RunLeases:
    """Cleanup handle for the leases obtained by one run.

    add() may be called from any thread. dispose() revokes the whole set
    once; later calls are ignored, and a lease added after teardown is revoked
    on its own on the loop that ran dispose(). Failures are reported to the
    notifier, never raised, so teardown of the consumer is never blocked.
    """

    def __init__(
        self,
        revocation: RevocationCoordinator,
        notifier: ErrorNotifier | None = None,
        scope: CleanupScope | None = None,
        run_id: str | None = None,
        lease_ids: Iterable[str] = (),
    ) -> None:
        self.run_id = run_id
        self.lease_ids: set[str] = set(lease_ids)
        self._revocation = revocation
        self._notifier = notifier
        self._scope = scope
        self._scope_key = scope.add(self.dispose) if scope is not None else None
        self._lock = threading.Lock()
        self._disposed = False
        self._task: asyncio.Task[None] | None = None
        self._loop = _running_loop()

    @property
    def disposed(self) -> bool:
        return self._disposed

    def add(self, lease_id: str) -> None:
        """Record a lease owned by this run; empty ids (no lease) are ignored."""
        if not lease_id:
            return
        with self._lock:
            self.lease_ids.add(lease_id)
            if not self._disposed:
                return
            loop = self._loop
        # Teardown already started, revoke the straggler on its own
        logger.warning(f"Lease {lease_id} registered after teardown of {self!r}, revoking it")
        running = _running_loop()
        if running is not None and (loop is None or running is loop):
            self._revoke_in_background(lease_id)
        elif loop is not None and not loop.is_closed():
            # Called from a host thread, hand the revocation to the owning loop
            loop.call_soon_threadsafe(self._revoke_in_background, lease_id)
        else:
            self._report(
                f"Error revoking leases: lease {lease_id} arrived after shutdown and was not revoked"
            )

    def _revoke_in_background(self, lease_id: str) -> None:
        task = asyncio.ensure_future(self._revoke({lease_id}))
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)

    async def dispose(self) -> None:
        """Revoke all leases of this run.

        The revocation keeps running if the awaiting task is cancelled.
        """
        with self._lock:
            if self._disposed:
                task = self._task
            else:
                self._disposed = True
                self._loop = asyncio.get_running_loop()
                lease_ids = set(self.lease_ids)
                task = None
                if lease_ids:
                    task = asyncio.ensure_future(self._revoke(lease_ids))
                    _background_tasks.add(task)
                    task.add_done_callback(_background_tasks.discard)
                    self._task = task
                if self._scope is not None and self._scope_key is not None:
                    self._scope.remove(self._scope_key)

        if task is not None:
            await asyncio.shield(task)

    async def _revoke(self, lease_ids: set[str]) -> None:
        label = f"run {self.run_id}" if self.run_id else "run"
        logger.info(f"Revoking {len(lease_ids)} leases of {label}")
        try:
            await self._revocation.revoke_all(lease_ids)
        except DynamicSecretsError as e:
            self._report(f"Error revoking leases: {e}")

    def _report(self, message: str) -> None:
        if self._notifier is not None:
            self._notifier.notify_error(message)
        else:
            logger.error(message)

    def __repr__(self) -> str:
        return f"RunLeases(run_id={self.run_id!r}, leases={len(self.lease_ids)})"


class Lease(RunLeases):
    """Cleanup handle for a single lease.

    release() revokes the lease once. Created for ad hoc fetches such as the
    database credentials flow.
    """

    def __init__(
        self,
        lease_id: str,
        revocation: RevocationCoordinator,
        notifier: ErrorNotifier | None = None,
        scope: CleanupScope | None = None,
    ) -> None:
        super().__init__(revocation, notifier, scope, run_id=None, lease_ids=[lease_id])
        self.lease_id = lease_id

    async def release(self) -> None:
        await self.dispose()

    def __repr__(self) -> str:
        return f"Lease({self.lease_id!r})"


class LeaseRegistry:
    """Thread-safe registry tying leases to runs and live connections.

    Leases created for a run id wait in a FIFO queue until the connection they
    were fetched for appears. bind() attaches a lease to a known connection
    directly and should be preferred: with the FIFO queue, two connections
    opened concurrently for the same run id may receive each other's lease.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: dict[Hashable, deque[Lease]] = {}
        self._by_connection: dict[Hashable, Lease] = {}

    def register_pending(self, run_id: Hashable, lease: Lease) -> None:
        """Queue a lease for the next connection of run_id."""
        with self._lock:
            self._pending.setdefault(run_id, deque()).append(lease)
        logger.debug(f"Lease {lease.lease_id} pending for run {run_id}")

    def bind_to_connection(self, run_id: Hashable, connection: Hashable) -> Lease | None:
        """Bind the oldest pending lease of run_id to connection.

        Returns:
            The bound lease, or None if no lease is pending for run_id
        """
        with self._lock:
            queue = self._pending.get(run_id)
            if not queue:
                return None
            lease = queue.popleft()
            if not queue:
                del self._pending[run_id]
            self._by_connection[connection] = lease
        logger.debug(f"Lease {lease.lease_id} bound to connection of run {run_id}")
        return lease

    def bind(self, connection: Hashable, lease: Lease) -> None:
        """Bind a specific lease to connection, removing it from any pending queue."""
        with self._lock:
            for run_id, queue in list(self._pending.items()):
                if lease in queue:
                    queue.remove(lease)
                    if not queue:
                        del self._pending[run_id]
            self._by_connection[connection] = lease

    def take_for_connection(self, connection: Hashable) -> Lease | None:
        """Remove and return the lease bound to connection, if any."""
        with self._lock:
            return self._by_connection.pop(connection, None)

    def pending_count(self, run_id: Hashable) -> int:
        with self._lock:
            queue = self._pending.get(run_id)
            return len(queue) if queue else 0

    def bound_count(self) -> int:
        with self._lock:
            return len(self._by_connection)


__all__ = ["CleanupScope", "RunLeases", "Lease", "LeaseRegistry"]
