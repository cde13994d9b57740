"""Relay agent: runs inside the private network and serves the relay's requests.

The agent dials out to the relay (it never accepts inbound connections),
receives request descriptors over a push WebSocket or a pull long-poll
session, replays them against the internal target and ships the answers back
over the same session. A lost session is re-established after a constant
delay for as long as the agent runs.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import aiohttp
import httpx
import structlog

from outpost.client.outbound import OutboundForwarder
from outpost.core.config import AgentConfig, TransportMode
from outpost.core.exceptions import (
    OutpostError,
    ProtocolError,
    SessionLostError,
    UnauthorizedError,
)
from outpost.protocol.messages import RequestDescriptor, ResponseDescriptor, parse_request
from outpost.security.apikey import API_KEY_HEADER

logger = structlog.get_logger()

Reply = Callable[[ResponseDescriptor], Awaitable[None]]

# Failures that end one session; the supervisor loop reconnects after each.
SESSION_ERRORS = (
    OutpostError,
    aiohttp.ClientError,
    httpx.HTTPError,
    OSError,
    TimeoutError,
)

AUTH_HINT = "Check that the agent's API key matches the relay's OUTPOST_API_KEY"


class ConnectionState(Enum):
    """Agent connection state."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


def pull_base_url(server_url: str) -> str:
    """Relay base URL for pull mode.

    ``ws://`` and ``wss://`` URLs name the WebSocket endpoint, so their path is
    dropped along with the scheme change; ``http(s)://`` URLs are kept as given.
    """
    parts = urlsplit(server_url)
    if parts.scheme in ("ws", "wss"):
        scheme = "https" if parts.scheme == "wss" else "http"
        return urlunsplit((scheme, parts.netloc, "", "", ""))
    return urlunsplit((parts.scheme, parts.netloc, parts.path.rstrip("/"), "", ""))


def check_relay_status(response: httpx.Response) -> None:
    """Map a relay error status to the exception that ends the session."""
    status = response.status_code
    if status < 400:
        return
    if status == 401:
        raise UnauthorizedError()
    if status == 404:
        raise SessionLostError("Relay no longer knows this connection")
    if status == 410:
        raise SessionLostError("Connection was evicted by the relay")
    raise SessionLostError(f"Relay answered {status}")


class RelayAgent:
    """Agent that keeps a session with the relay and forwards its requests.

    Example:
        agent = RelayAgent(AgentConfig(server_url="ws://relay:3000/ws"))
        await agent.run()
    """

    def __init__(
        self,
        config: AgentConfig,
        forwarder: OutboundForwarder | None = None,
    ) -> None:
        self.config = config
        self.forwarder = forwarder or OutboundForwarder(
            config.target_url,
            timeout=config.request_timeout,
            verify=config.verify_tls,
        )

        self._state = ConnectionState.DISCONNECTED
        self._running = False
        self._run_task: asyncio.Task | None = None
        self._wake = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()
        self._state_hooks: list[Callable[[ConnectionState], None]] = []
        self._connection_id: int | None = None

        self._sessions = 0
        self._reconnect_attempt = 0
        self._requests_handled = 0
        self._connect_time: float | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def connection_id(self) -> int | None:
        """Relay-assigned id of the current pull session."""
        return self._connection_id

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "transport": self.config.transport.value,
            "connection_id": self._connection_id,
            "sessions": self._sessions,
            "reconnect_attempts": self._reconnect_attempt,
            "requests_handled": self._requests_handled,
            "in_flight": len(self._tasks),
            "uptime": (
                round(time.monotonic() - self._connect_time, 1)
                if self._connect_time and self.is_connected
                else None
            ),
            **self.forwarder.stats,
        }

    def add_state_hook(self, hook: Callable[[ConnectionState], None]) -> None:
        """Add a hook to be called on state changes."""
        self._state_hooks.append(hook)

    def _set_state(self, state: ConnectionState) -> None:
        if self._state != state:
            old_state = self._state
            self._state = state
            logger.debug("State changed", old=old_state.value, new=state.value)
            for hook in self._state_hooks:
                try:
                    hook(state)
                except Exception as e:
                    logger.warning("State hook error", error=str(e))

    async def run(self) -> None:
        """Keep a session with the relay until ``close()`` is called.

        Raises:
            RuntimeError: If the agent is already running.
        """
        if self._running:
            raise RuntimeError("Agent is already running")
        self._running = True
        self._run_task = asyncio.current_task()
        self._wake.clear()

        try:
            while self._running:
                self._set_state(
                    ConnectionState.RECONNECTING
                    if self._sessions or self._reconnect_attempt
                    else ConnectionState.CONNECTING
                )
                try:
                    await self._run_session()
                except UnauthorizedError:
                    logger.error("Relay rejected the API key", hint=AUTH_HINT)
                except SessionLostError as e:
                    logger.warning("Session lost", reason=e.message)
                except SESSION_ERRORS as e:
                    logger.warning(
                        "Connection to relay failed",
                        server=self.config.server_url,
                        error=str(e) or type(e).__name__,
                    )
                finally:
                    self._connection_id = None
                    await self._cancel_tasks()

                if not self._running:
                    break

                self._reconnect_attempt += 1
                self._set_state(ConnectionState.RECONNECTING)
                logger.info(
                    "Reconnecting",
                    attempt=self._reconnect_attempt,
                    delay_sec=self.config.reconnect_interval,
                )
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(self._wake.wait(), self.config.reconnect_interval)
        except asyncio.CancelledError:
            # Shutdown requested
            self._running = False
        finally:
            self._run_task = None
            if self._state != ConnectionState.CLOSED:
                self._set_state(ConnectionState.DISCONNECTED)

    async def _run_session(self) -> None:
        if self.config.transport is TransportMode.PULL:
            await self._run_pull_session()
        else:
            await self._run_push_session()

    def _auth_headers(self) -> dict[str, str]:
        if self.config.api_key:
            return {API_KEY_HEADER: self.config.api_key}
        return {}

    def _on_connected(self, **info: Any) -> None:
        self._sessions += 1
        self._connect_time = time.monotonic()
        self._set_state(ConnectionState.CONNECTED)
        logger.info(
            "Connected to relay",
            server=self.config.server_url,
            transport=self.config.transport.value,
            target=self.config.target_url,
            **info,
        )

    async def _run_push_session(self) -> None:
        async with aiohttp.ClientSession() as session:
            try:
                ws = await session.ws_connect(
                    self.config.server_url,
                    headers=self._auth_headers(),
                    max_msg_size=0,
                )
            except aiohttp.WSServerHandshakeError as e:
                if e.status == 401:
                    raise UnauthorizedError() from e
                raise SessionLostError(f"Handshake rejected with status {e.status}") from e

            async with ws:
                send_lock = asyncio.Lock()

                async def reply(response: ResponseDescriptor) -> None:
                    async with send_lock:
                        await ws.send_str(response.to_json())

                self._on_connected()
                async for msg in ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        self._dispatch(msg.data, reply)
                    elif msg.type == aiohttp.WSMsgType.ERROR:
                        raise SessionLostError(f"WebSocket error: {ws.exception()}")

            raise SessionLostError(f"Relay closed the connection (code {ws.close_code})")

    async def _run_pull_session(self) -> None:
        timeout = httpx.Timeout(
            self.config.request_timeout,
            read=self.config.poll_wait + 10.0,
        )
        async with httpx.AsyncClient(
            base_url=pull_base_url(self.config.server_url),
            headers=self._auth_headers(),
            timeout=timeout,
        ) as client:
            response = await client.post("/register")
            check_relay_status(response)
            try:
                data = response.json()
                connection_id = int(data["connectionId"])
            except (ValueError, KeyError, TypeError) as e:
                raise ProtocolError(f"Invalid registration answer: {e}") from e

            poll_wait = min(
                self.config.poll_wait,
                float(data.get("pollWait", self.config.poll_wait)),
            )
            heartbeat_interval = min(
                self.config.heartbeat_interval,
                float(data.get("heartbeatInterval", self.config.heartbeat_interval)),
            )
            self._connection_id = connection_id

            async def reply(result: ResponseDescriptor) -> None:
                answer = await client.post(
                    f"/response/{connection_id}",
                    content=result.to_json(),
                    headers={"Content-Type": "application/json"},
                )
                if answer.status_code != 200:
                    logger.warning(
                        "Response not accepted",
                        request_id=result.request_id,
                        status=answer.status_code,
                    )

            self._on_connected(connection_id=connection_id)
            heartbeat = asyncio.create_task(
                self._heartbeat_loop(client, connection_id, heartbeat_interval)
            )
            try:
                # One poll in flight at a time
                while self._running:
                    if heartbeat.done():
                        heartbeat.result()
                        raise SessionLostError("Heartbeat stopped")

                    polled = await client.get(
                        f"/poll/{connection_id}", params={"wait": poll_wait}
                    )
                    if polled.status_code == 204:
                        continue
                    check_relay_status(polled)
                    self._dispatch(polled.content, reply)
            finally:
                heartbeat.cancel()
                with contextlib.suppress(asyncio.CancelledError, *SESSION_ERRORS):
                    await heartbeat

    async def _heartbeat_loop(
        self, client: httpx.AsyncClient, connection_id: int, interval: float
    ) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                response = await client.post(f"/heartbeat/{connection_id}")
            except httpx.HTTPError as e:
                logger.warning("Heartbeat failed", connection_id=connection_id, error=str(e))
                continue
            check_relay_status(response)
            logger.debug("Heartbeat sent", connection_id=connection_id)

    def _dispatch(self, data: str | bytes, reply: Reply) -> None:
        try:
            descriptor = parse_request(data)
        except ProtocolError as e:
            logger.warning("Malformed request dropped", error=e.message)
            return

        task = asyncio.create_task(self._handle_request(descriptor, reply))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _handle_request(self, descriptor: RequestDescriptor, reply: Reply) -> None:
        try:
            response = await self.forwarder.forward(descriptor)
        except Exception as e:
            logger.error(
                "Forwarding error",
                request_id=descriptor.request_id,
                error=str(e),
                exc_info=True,
            )
            response = ResponseDescriptor.from_error(descriptor.request_id, OutpostError())

        try:
            await reply(response)
        except (aiohttp.ClientError, httpx.HTTPError, ConnectionError, RuntimeError) as e:
            logger.warning(
                "Failed to send response",
                request_id=descriptor.request_id,
                error=str(e),
            )
            return
        self._requests_handled += 1
        logger.debug(
            "Response sent",
            request_id=descriptor.request_id,
            status=response.status_code,
        )

    async def _cancel_tasks(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def close(self) -> None:
        """Stop the agent and release its HTTP clients."""
        self._running = False
        self._wake.set()
        self._set_state(ConnectionState.CLOSED)

        run_task = self._run_task
        if run_task is not None and run_task is not asyncio.current_task():
            run_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await run_task

        await self._cancel_tasks()
        await self.forwarder.close()
        self._state_hooks.clear()

        logger.info("Agent closed", stats=self.stats)

    async def __aenter__(self) -> RelayAgent:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
