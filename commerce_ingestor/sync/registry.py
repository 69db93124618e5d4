"""Registry of per-connection actors: request queues, sync state and locks."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from enum import Enum

import httpx

from ..adapters.base import ProviderAdapter
from ..exceptions import ConnectionInactiveError, ValidationFailedError
from ..models.connection import ConnectionSnapshot
from ..utils.config import GlobalSettings, get_settings
from ..utils.logging import setup_logger
from ..utils.retry import RetryConfig
from .rate_limiter import SlidingWindowLimiter
from .request_queue import RequestQueue

logger = setup_logger(__name__, context={"component": "registry"})

ClientFactory = Callable[[ConnectionSnapshot, ProviderAdapter], httpx.AsyncClient]


class SyncState(str, Enum):
    """In-process lifecycle of one connection."""

    IDLE = "idle"
    CONNECTION_TESTING = "connection_testing"
    BACKFILLING = "backfilling"
    ERROR = "error"
    DISCONNECTED = "disconnected"


_TRANSITIONS: dict[SyncState, frozenset[SyncState]] = {
    SyncState.IDLE: frozenset(
        {SyncState.CONNECTION_TESTING, SyncState.ERROR, SyncState.DISCONNECTED}
    ),
    SyncState.CONNECTION_TESTING: frozenset(
        {SyncState.BACKFILLING, SyncState.IDLE, SyncState.ERROR, SyncState.DISCONNECTED}
    ),
    SyncState.BACKFILLING: frozenset({SyncState.IDLE, SyncState.ERROR, SyncState.DISCONNECTED}),
    SyncState.ERROR: frozenset(
        {SyncState.CONNECTION_TESTING, SyncState.IDLE, SyncState.DISCONNECTED}
    ),
    SyncState.DISCONNECTED: frozenset(),
}


def can_transition(current: SyncState, target: SyncState) -> bool:
    return target in _TRANSITIONS[current]


class ConnectionRegistry:
    """Owns one :class:`RequestQueue` and one sync lock per connection.

    Queues are created lazily on first use and torn down on disconnect, after
    which the connection is pinned in ``DISCONNECTED`` for the life of the
    process.
    """

    def __init__(
        self,
        settings: GlobalSettings | None = None,
        *,
        client_factory: ClientFactory | None = None,
        retry_config: RetryConfig | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._client_factory = client_factory or self._default_client
        self._retry_config = retry_config or self.settings.retry
        self._queues: dict[str, tuple[str | None, RequestQueue]] = {}
        self._states: dict[str, SyncState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._backfills: dict[str, asyncio.Task] = {}

    def _default_client(
        self, connection: ConnectionSnapshot, adapter: ProviderAdapter
    ) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=adapter.base_url(connection),
            headers={"User-Agent": self.settings.user_agent, **adapter.auth_headers(connection)},
            timeout=self.settings.request_timeout_seconds,
        )

    # Queues -------------------------------------------------------------

    async def queue_for(
        self, connection: ConnectionSnapshot, adapter: ProviderAdapter
    ) -> RequestQueue:
        """Return the connection's queue, rebuilding it when the credential changed."""

        if self.state(connection.id) is SyncState.DISCONNECTED or not connection.is_active:
            raise ConnectionInactiveError(f"Connection '{connection.id}' is not active")

        existing = self._queues.get(connection.id)
        if existing is not None:
            credential, queue = existing
            if credential == connection.credential and not queue.closed:
                return queue
            await queue.close("credential rotated")

        limiter = SlidingWindowLimiter(adapter.settings.requests_per_second, 1.0)
        queue = RequestQueue(
            connection.id,
            adapter.provider,
            self._client_factory(connection, adapter),
            limiter=limiter,
            retry_config=self._retry_config,
            throttle_hint=adapter.throttle_hint,
        )
        self._queues[connection.id] = (connection.credential, queue)
        logger.debug(
            "Created request queue at %s req/s",
            adapter.settings.requests_per_second,
            extra={"connection_id": connection.id, "provider": adapter.provider},
        )
        return queue

    def has_queue(self, connection_id: str) -> bool:
        return connection_id in self._queues

    # State --------------------------------------------------------------

    def state(self, connection_id: str) -> SyncState:
        return self._states.get(connection_id, SyncState.IDLE)

    def transition(self, connection_id: str, target: SyncState) -> SyncState:
        """Move ``connection_id`` to ``target``.

        Raises:
            ConnectionInactiveError: The connection is already disconnected.
            ValidationFailedError: The transition is not allowed.
        """

        current = self.state(connection_id)
        if current is target:
            return current
        if current is SyncState.DISCONNECTED:
            raise ConnectionInactiveError(f"Connection '{connection_id}' is disconnected")
        if not can_transition(current, target):
            raise ValidationFailedError(
                f"Illegal sync state transition {current.value} -> {target.value}"
            )
        self._states[connection_id] = target
        logger.debug(
            "State %s -> %s",
            current.value,
            target.value,
            extra={"connection_id": connection_id},
        )
        return target

    def sync_lock(self, connection_id: str) -> asyncio.Lock:
        lock = self._locks.get(connection_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[connection_id] = lock
        return lock

    def is_syncing(self, connection_id: str) -> bool:
        return self.sync_lock(connection_id).locked()

    # Backfill tasks -----------------------------------------------------

    def register_backfill(self, connection_id: str, task: asyncio.Task) -> None:
        self._backfills[connection_id] = task
        task.add_done_callback(lambda _t: self._forget_backfill(connection_id, _t))

    def _forget_backfill(self, connection_id: str, task: asyncio.Task) -> None:
        if self._backfills.get(connection_id) is task:
            del self._backfills[connection_id]

    def active_backfill(self, connection_id: str) -> asyncio.Task | None:
        task = self._backfills.get(connection_id)
        return task if task is not None and not task.done() else None

    # Teardown -----------------------------------------------------------

    async def close(self, connection_id: str, reason: str = "connection disconnected") -> None:
        """Cancel any backfill, close the queue and pin the state to DISCONNECTED."""

        task = self.active_backfill(connection_id)
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        entry = self._queues.pop(connection_id, None)
        if entry is not None:
            await entry[1].close(reason)
        self._states[connection_id] = SyncState.DISCONNECTED
        self._locks.pop(connection_id, None)

    async def aclose(self) -> None:
        """Close every queue; used on application shutdown."""

        for task in list(self._backfills.values()):
            task.cancel()
        if self._backfills:
            await asyncio.gather(*self._backfills.values(), return_exceptions=True)
        for _, queue in list(self._queues.values()):
            await queue.close("service shutting down")
        self._queues.clear()
