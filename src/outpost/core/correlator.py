"""Request correlation: pairs forwarded requests with their responses.

Each public request opened against a connection gets a correlation id and a
cancellable deadline. The entry resolves exactly once, whichever comes first:

- a matching response (``resolve``),
- its own deadline (synthetic 504),
- eviction of the connection (synthetic 502, via ``fail_all``).

Anything after the first resolution is a no-op reported as
``Resolution.ALREADY_HANDLED``; races between a timeout and a late response
are expected and harmless.
"""

from __future__ import annotations

import asyncio
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

import structlog

from outpost.core.exceptions import (
    ConnectionLostError,
    GatewayTimeoutError,
    UnknownConnectionError,
)
from outpost.core.registry import Connection, ConnectionRegistry
from outpost.observability.metrics import RESOLUTIONS
from outpost.protocol.messages import RequestDescriptor, ResponseDescriptor

logger = structlog.get_logger()

ResponseSink = Callable[[ResponseDescriptor], None]


class Resolution(Enum):
    """Outcome of an attempt to resolve a pending request."""

    RESOLVED = "resolved"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    ALREADY_HANDLED = "already_handled"


@dataclass(eq=False)
class PendingRequest:
    """One in-flight public exchange."""

    request_id: str
    connection_id: int
    descriptor: RequestDescriptor
    sink: ResponseSink
    deadline: float
    opened_at: float = field(default_factory=time.monotonic)
    timer: asyncio.TimerHandle | None = None

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


def new_request_id() -> str:
    """Monotonic nanosecond clock plus 48 bits of entropy."""
    return f"{time.monotonic_ns():x}-{secrets.token_hex(6)}"


class RequestCorrelator:
    """Tracks pending requests per connection and resolves each exactly once."""

    def __init__(self, registry: ConnectionRegistry) -> None:
        self._registry = registry
        registry.add_eviction_hook(self.fail_all)

    def open(
        self,
        connection_id: int,
        draft: RequestDescriptor,
        sink: ResponseSink,
        timeout: float,
    ) -> PendingRequest:
        """Open a pending request and arm its deadline.

        Returns the entry; ``entry.descriptor`` carries the allocated
        request id and is what the transport must deliver.

        Raises:
            UnknownConnectionError: If the connection is not registered.
        """
        connection = self._registry.get(connection_id)
        if connection is None:
            raise UnknownConnectionError(connection_id)

        request_id = new_request_id()
        while request_id in connection.pending_requests:
            request_id = new_request_id()

        now = time.monotonic()
        pending = PendingRequest(
            request_id=request_id,
            connection_id=connection_id,
            descriptor=draft.model_copy(update={"request_id": request_id}),
            sink=sink,
            deadline=now + timeout,
            opened_at=now,
        )
        loop = asyncio.get_running_loop()
        pending.timer = loop.call_later(timeout, self._expire, connection, request_id)
        connection.pending_requests[request_id] = pending

        logger.debug(
            "Request opened",
            connection_id=connection_id,
            request_id=request_id,
            method=draft.method,
            path=draft.path,
        )
        return pending

    def resolve(self, connection_id: int, response: ResponseDescriptor) -> Resolution:
        """Deliver a peer's response to the waiting caller."""
        connection = self._registry.get(connection_id)
        if connection is None:
            logger.debug(
                "Response for unknown connection ignored",
                connection_id=connection_id,
                request_id=response.request_id,
            )
            RESOLUTIONS.labels(outcome=Resolution.ALREADY_HANDLED.value).inc()
            return Resolution.ALREADY_HANDLED

        pending = connection.pending_requests.pop(response.request_id, None)
        if pending is None:
            logger.debug(
                "Response for unknown or resolved request ignored",
                connection_id=connection_id,
                request_id=response.request_id,
            )
            RESOLUTIONS.labels(outcome=Resolution.ALREADY_HANDLED.value).inc()
            return Resolution.ALREADY_HANDLED

        pending.cancel_timer()
        self._deliver(pending, response)
        logger.debug(
            "Request resolved",
            connection_id=connection_id,
            request_id=pending.request_id,
            status=response.status_code,
            elapsed_ms=int((time.monotonic() - pending.opened_at) * 1000),
        )
        RESOLUTIONS.labels(outcome=Resolution.RESOLVED.value).inc()
        return Resolution.RESOLVED

    def discard(self, connection_id: int, request_id: str) -> bool:
        """Drop an entry whose caller has gone away, without invoking its sink."""
        connection = self._registry.get(connection_id)
        if connection is None:
            return False
        pending = connection.pending_requests.pop(request_id, None)
        if pending is None:
            return False
        pending.cancel_timer()
        logger.debug("Request discarded", connection_id=connection_id, request_id=request_id)
        return True

    def fail_all(self, connection: Connection, reason: str) -> int:
        """Resolve every pending request on a connection with a failure.

        Registered as a registry eviction hook.
        """
        failed = 0
        while connection.pending_requests:
            _, pending = connection.pending_requests.popitem()
            pending.cancel_timer()
            error = ConnectionLostError(f"Remote client disconnected ({reason})")
            self._deliver(pending, ResponseDescriptor.from_error(pending.request_id, error))
            failed += 1

        if failed:
            logger.warning(
                "Pending requests failed on eviction",
                connection_id=connection.id,
                count=failed,
                reason=reason,
            )
            RESOLUTIONS.labels(outcome=Resolution.FAILED.value).inc(failed)
        return failed

    def _expire(self, connection: Connection, request_id: str) -> Resolution:
        pending = connection.pending_requests.pop(request_id, None)
        if pending is None:
            return Resolution.ALREADY_HANDLED

        pending.timer = None
        logger.warning(
            "Request timeout",
            connection_id=connection.id,
            request_id=request_id,
            method=pending.descriptor.method,
            path=pending.descriptor.path,
        )
        self._deliver(pending, ResponseDescriptor.from_error(request_id, GatewayTimeoutError()))
        RESOLUTIONS.labels(outcome=Resolution.TIMED_OUT.value).inc()
        return Resolution.TIMED_OUT

    def _deliver(self, pending: PendingRequest, response: ResponseDescriptor) -> None:
        try:
            pending.sink(response)
        except Exception as e:
            logger.error(
                "Response sink error",
                request_id=pending.request_id,
                error=str(e),
            )
