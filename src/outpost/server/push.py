"""Push transport: agents hold one WebSocket to the relay.

Descriptors are sent as JSON text frames, responses come back the same way.
Many exchanges share the socket concurrently; the correlation id in each
envelope is the only thing tying a response to its request.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from enum import Enum

import structlog
from aiohttp import WSMsgType, web

from outpost.core.config import TransportMode
from outpost.core.exceptions import ProtocolError
from outpost.core.registry import Connection
from outpost.protocol.messages import RequestDescriptor, parse_response
from outpost.server.transport import TransportAdapter

logger = structlog.get_logger()

# Socket errors raised by aiohttp when writing to a closing WebSocket.
SEND_ERRORS = (ConnectionError, RuntimeError)


class ChannelState(Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


@dataclass(eq=False)
class PushChannel:
    """The WebSocket owned by one push connection."""

    ws: web.WebSocketResponse
    state: ChannelState = ChannelState.CONNECTING
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class PushAdapter(TransportAdapter):
    mode = TransportMode.PUSH

    def register_routes(self, app: web.Application) -> None:
        app.router.add_get(self.config.socket_path, self.handle_socket)

    async def handle_socket(self, request: web.Request) -> web.WebSocketResponse:
        """Accept an agent's WebSocket and pump its frames until it closes."""
        self.authorize(request)

        # base64 bodies grow by a third, leave room for the envelope
        ws = web.WebSocketResponse(autoping=False, max_msg_size=self.config.max_body_size * 2)
        channel = PushChannel(ws=ws)
        await ws.prepare(request)

        connection = self.registry.register(
            TransportMode.PUSH,
            transport=channel,
            source_ip=request.remote or "unknown",
        )
        channel.state = ChannelState.OPEN

        try:
            async for msg in ws:
                if channel.state is not ChannelState.OPEN:
                    break
                connection.touch()

                if msg.type == WSMsgType.TEXT:
                    self._handle_text(connection, msg.data)
                elif msg.type == WSMsgType.PING:
                    async with channel.send_lock:
                        await ws.pong(msg.data)
                elif msg.type == WSMsgType.PONG:
                    pass
                elif msg.type == WSMsgType.BINARY:
                    logger.warning(
                        "Binary frame dropped",
                        connection_id=connection.id,
                        size=len(msg.data),
                    )
                elif msg.type == WSMsgType.ERROR:
                    logger.warning(
                        "WebSocket error",
                        connection_id=connection.id,
                        error=str(ws.exception()),
                    )
                    break
        except SEND_ERRORS as e:
            logger.warning("Push channel failed", connection_id=connection.id, error=str(e))
        finally:
            await self.close(connection, reason="disconnected")

        return ws

    def _handle_text(self, connection: Connection, data: str) -> None:
        try:
            response = parse_response(data)
        except ProtocolError as e:
            logger.warning(
                "Malformed frame dropped",
                connection_id=connection.id,
                error=e.message,
            )
            return
        self.correlator.resolve(connection.id, response)

    async def deliver(self, connection: Connection, descriptor: RequestDescriptor) -> None:
        channel: PushChannel = connection.transport
        if channel.state is not ChannelState.OPEN:
            await self.close(connection, reason="send_failed")
            return

        try:
            async with channel.send_lock:
                await channel.ws.send_str(descriptor.to_json())
        except SEND_ERRORS as e:
            logger.warning(
                "Send failed",
                connection_id=connection.id,
                request_id=descriptor.request_id,
                error=str(e),
            )
            await self.close(connection, reason="send_failed")

    async def probe(self, connection: Connection) -> None:
        channel: PushChannel = connection.transport
        if not connection.alive:
            logger.warning(
                "Liveness probe unanswered",
                connection_id=connection.id,
                idle_seconds=round(connection.idle_seconds, 3),
            )
            await self.close(connection, reason="liveness")
            return

        connection.alive = False
        try:
            async with channel.send_lock:
                await channel.ws.ping()
        except SEND_ERRORS as e:
            logger.warning("Ping failed", connection_id=connection.id, error=str(e))
            await self.close(connection, reason="liveness")

    async def close(self, connection: Connection, reason: str = "closed") -> None:
        channel: PushChannel = connection.transport
        was_open = channel.state is not ChannelState.CLOSED
        channel.state = ChannelState.CLOSED
        # Eviction precedes the close handshake.
        self.registry.remove(connection.id, reason=reason)
        if was_open:
            with contextlib.suppress(Exception):
                await channel.ws.close()
