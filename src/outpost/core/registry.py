"""Connection registry: the authoritative table of connected agents."""

from __future__ import annotations

import asyncio
import itertools
import time
from collections import deque
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from outpost.core.config import TransportMode
from outpost.observability.metrics import ACTIVE_CONNECTIONS, CONNECTIONS, EVICTIONS

if TYPE_CHECKING:
    from outpost.core.correlator import PendingRequest
    from outpost.protocol.messages import RequestDescriptor

logger = structlog.get_logger()

EvictionHook = Callable[["Connection", str], None]


@dataclass(eq=False)
class Connection:
    """One connected agent and everything outstanding on it."""

    id: int
    mode: TransportMode
    transport: Any = None
    source_ip: str = ""
    alive: bool = True
    last_seen: float = field(default_factory=time.monotonic)
    connected_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    pending_requests: dict[str, PendingRequest] = field(default_factory=dict)
    pending_polls: deque[asyncio.Future[RequestDescriptor]] = field(default_factory=deque)
    delivery_queue: deque[RequestDescriptor] = field(default_factory=deque)
    closed: bool = False

    def touch(self) -> None:
        self.alive = True
        self.last_seen = time.monotonic()

    @property
    def idle_seconds(self) -> float:
        return time.monotonic() - self.last_seen

    def snapshot(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "transport": self.mode.value,
            "pendingRequests": len(self.pending_requests),
            "queuedRequests": len(self.delivery_queue),
            "parkedPolls": len(self.pending_polls),
            "connectedAt": self.connected_at.isoformat(),
            "idleSeconds": round(self.idle_seconds, 3),
        }


class ConnectionRegistry:
    """Lifecycle bookkeeping for connections.

    Ids come from a monotonic counter and are never reused for the lifetime
    of the registry. Removal runs every eviction hook in the same synchronous
    step as the table update, so no caller can observe a connection that is
    gone from the table but still has unresolved work.
    """

    def __init__(self) -> None:
        self._connections: dict[int, Connection] = {}
        self._ids = itertools.count(1)
        self._eviction_hooks: list[EvictionHook] = []

    def add_eviction_hook(self, hook: EvictionHook) -> None:
        """Add a hook called with (connection, reason) when a connection is removed."""
        self._eviction_hooks.append(hook)

    def register(
        self,
        mode: TransportMode,
        transport: Any = None,
        source_ip: str = "",
    ) -> Connection:
        connection = Connection(
            id=next(self._ids),
            mode=mode,
            transport=transport,
            source_ip=source_ip,
        )
        self._connections[connection.id] = connection
        CONNECTIONS.labels(transport=mode.value).inc()
        ACTIVE_CONNECTIONS.labels(transport=mode.value).inc()
        logger.info(
            "Connection registered",
            connection_id=connection.id,
            transport=mode.value,
            source_ip=source_ip,
        )
        return connection

    def get(self, connection_id: int) -> Connection | None:
        return self._connections.get(connection_id)

    def touch(self, connection_id: int) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        connection.touch()
        return True

    def remove(self, connection_id: int, reason: str = "closed") -> Connection | None:
        """Remove a connection and force-resolve everything outstanding on it.

        Returns the removed connection, or None if it was already gone.
        """
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return None

        connection.closed = True
        ACTIVE_CONNECTIONS.labels(transport=connection.mode.value).dec()
        EVICTIONS.labels(reason=reason).inc()
        for hook in self._eviction_hooks:
            try:
                hook(connection, reason)
            except Exception as e:
                logger.error(
                    "Eviction hook error",
                    connection_id=connection_id,
                    error=str(e),
                )

        logger.info(
            "Connection removed",
            connection_id=connection_id,
            transport=connection.mode.value,
            reason=reason,
        )
        return connection

    def connections(self) -> list[Connection]:
        return list(self._connections.values())

    def __iter__(self) -> Iterator[Connection]:
        return iter(self.connections())

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._connections
