"""Transport adapter interface shared by the push and pull variants."""

from __future__ import annotations

from abc import ABC, abstractmethod

import structlog
from aiohttp import web

from outpost.core.config import ServerConfig, TransportMode
from outpost.core.correlator import RequestCorrelator
from outpost.core.exceptions import UnauthorizedError, UnknownConnectionError
from outpost.core.registry import Connection, ConnectionRegistry
from outpost.protocol.messages import RequestDescriptor
from outpost.security.apikey import APIKeyAuthenticator

logger = structlog.get_logger()


class TransportAdapter(ABC):
    """Moves request descriptors to agents and their responses back.

    Both variants share one registry and one correlator; the relay picks the
    adapter for a connection by ``Connection.mode``.
    """

    mode: TransportMode

    def __init__(
        self,
        config: ServerConfig,
        registry: ConnectionRegistry,
        correlator: RequestCorrelator,
        authenticator: APIKeyAuthenticator,
    ) -> None:
        self.config = config
        self.registry = registry
        self.correlator = correlator
        self.authenticator = authenticator

    @abstractmethod
    async def deliver(self, connection: Connection, descriptor: RequestDescriptor) -> None:
        """Hand a descriptor to the agent behind ``connection``."""

    @abstractmethod
    async def probe(self, connection: Connection) -> None:
        """Run one liveness check; evicts the connection if it is dead."""

    @abstractmethod
    async def close(self, connection: Connection, reason: str = "closed") -> None:
        """Tear the connection down and remove it from the registry."""

    @abstractmethod
    def register_routes(self, app: web.Application) -> None:
        """Mount this adapter's endpoints on the relay application."""

    async def shutdown(self) -> None:
        for connection in self.registry.connections():
            if connection.mode is self.mode:
                await self.close(connection, reason="shutdown")

    def authorize(self, request: web.Request) -> None:
        """Reject the request unless it carries the relay credential.

        Raises:
            UnauthorizedError: If the credential is missing or wrong.
        """
        result = self.authenticator.check(request.headers)
        if not result.allowed:
            logger.warning(
                "Agent authentication failed",
                transport=self.mode.value,
                ip=request.remote,
                path=request.path,
                reason=result.reason,
            )
            raise UnauthorizedError()


def parse_connection_id(raw: str) -> int:
    """Connection id from a path segment; anything non-numeric is unknown."""
    try:
        return int(raw)
    except (TypeError, ValueError) as e:
        raise UnknownConnectionError(raw) from e
