"""Pull transport: agents long-poll the relay over plain HTTP.

An agent registers once, then loops on ``GET /poll/{id}``. Each poll either
returns the oldest queued descriptor at once or parks until a descriptor
arrives or the wait runs out (204). Results go back with
``POST /response/{id}``; a separate heartbeat keeps the registration alive.
"""

from __future__ import annotations

import asyncio
import contextlib

import structlog
from aiohttp import web

from outpost.core.config import TransportMode
from outpost.core.correlator import Resolution
from outpost.core.exceptions import PeerGoneError, ProtocolError, UnknownConnectionError
from outpost.core.registry import Connection
from outpost.protocol.messages import RequestDescriptor, ResponseDescriptor, parse_response
from outpost.server.transport import TransportAdapter, parse_connection_id

logger = structlog.get_logger()


class PullAdapter(TransportAdapter):
    mode = TransportMode.PULL

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.registry.add_eviction_hook(self._release_polls)

    def register_routes(self, app: web.Application) -> None:
        app.router.add_post("/register", self._handle_register)
        app.router.add_post("/heartbeat/{connection_id}", self._handle_heartbeat)
        app.router.add_get("/poll/{connection_id}", self._handle_poll)
        app.router.add_post("/response/{connection_id}", self._handle_response)

    def register(self, source_ip: str = "") -> Connection:
        return self.registry.register(TransportMode.PULL, source_ip=source_ip)

    def heartbeat(self, connection_id: int) -> Connection:
        connection = self._get(connection_id)
        connection.touch()
        return connection

    async def poll(self, connection_id: int, wait: float) -> RequestDescriptor | None:
        """Next descriptor for the agent, or None once ``wait`` seconds pass.

        Raises:
            UnknownConnectionError: If the connection is not registered.
            PeerGoneError: If the connection is evicted while the poll is parked.
        """
        connection = self._get(connection_id)
        connection.touch()

        descriptor = self._next_queued(connection)
        if descriptor is not None or wait <= 0:
            return descriptor

        future: asyncio.Future[RequestDescriptor] = asyncio.get_running_loop().create_future()
        connection.pending_polls.append(future)
        handed_over = False
        try:
            async with asyncio.timeout(wait):
                descriptor = await future
            handed_over = True
            return descriptor
        except TimeoutError:
            return None
        finally:
            with contextlib.suppress(ValueError):
                connection.pending_polls.remove(future)
            # A descriptor reached this poller but its caller is gone.
            if (
                not handed_over
                and not connection.closed
                and future.done()
                and not future.cancelled()
                and future.exception() is None
            ):
                connection.delivery_queue.appendleft(future.result())
                logger.debug(
                    "Descriptor requeued",
                    connection_id=connection.id,
                    request_id=future.result().request_id,
                )

    def post_result(self, connection_id: int, response: ResponseDescriptor) -> Resolution:
        connection = self._get(connection_id)
        connection.touch()
        return self.correlator.resolve(connection_id, response)

    async def deliver(self, connection: Connection, descriptor: RequestDescriptor) -> None:
        while connection.pending_polls:
            future = connection.pending_polls.popleft()
            if not future.done():
                future.set_result(descriptor)
                return
        connection.delivery_queue.append(descriptor)

    async def probe(self, connection: Connection) -> None:
        limit = 2 * self.config.heartbeat_interval
        if connection.idle_seconds > limit:
            logger.warning(
                "Heartbeat missed",
                connection_id=connection.id,
                idle_seconds=round(connection.idle_seconds, 3),
                limit=limit,
            )
            await self.close(connection, reason="liveness")

    async def close(self, connection: Connection, reason: str = "closed") -> None:
        self.registry.remove(connection.id, reason=reason)

    def _get(self, connection_id: int) -> Connection:
        connection = self.registry.get(connection_id)
        if connection is None or connection.mode is not TransportMode.PULL:
            raise UnknownConnectionError(connection_id)
        return connection

    def _next_queued(self, connection: Connection) -> RequestDescriptor | None:
        queue = connection.delivery_queue
        while queue:
            descriptor = queue.popleft()
            if descriptor.request_id in connection.pending_requests:
                return descriptor
        return None

    def _release_polls(self, connection: Connection, reason: str) -> None:
        if connection.mode is not TransportMode.PULL:
            return
        while connection.pending_polls:
            future = connection.pending_polls.popleft()
            if not future.done():
                future.set_exception(PeerGoneError())
        connection.delivery_queue.clear()

    async def _handle_register(self, request: web.Request) -> web.Response:
        self.authorize(request)
        connection = self.register(source_ip=request.remote or "unknown")
        return web.json_response(
            {
                "connectionId": connection.id,
                "pollWait": self.config.poll_timeout,
                "heartbeatInterval": self.config.heartbeat_interval,
            }
        )

    async def _handle_heartbeat(self, request: web.Request) -> web.Response:
        self.authorize(request)
        connection = self.heartbeat(parse_connection_id(request.match_info["connection_id"]))
        return web.json_response({"status": "ok", "connectionId": connection.id})

    async def _handle_poll(self, request: web.Request) -> web.Response:
        self.authorize(request)
        connection_id = parse_connection_id(request.match_info["connection_id"])

        wait = self.config.poll_timeout
        if "wait" in request.query:
            try:
                wait = min(max(float(request.query["wait"]), 0.0), self.config.poll_timeout)
            except ValueError as e:
                raise ProtocolError("wait must be a number of seconds") from e

        descriptor = await self.poll(connection_id, wait)
        if descriptor is None:
            return web.Response(status=204)
        return web.json_response(descriptor.to_wire())

    async def _handle_response(self, request: web.Request) -> web.Response:
        self.authorize(request)
        connection_id = parse_connection_id(request.match_info["connection_id"])
        response = parse_response(await request.read())
        resolution = self.post_result(connection_id, response)
        return web.json_response({"accepted": resolution is Resolution.RESOLVED})
