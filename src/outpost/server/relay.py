"""Relay server: the public face of the tunnel.

Public callers hit ``/api/{connection_id}/...``; the relay wraps each call in a
request descriptor, hands it to the agent behind that connection through the
push or pull adapter, and waits for the correlated response.
"""

from __future__ import annotations

import asyncio
import re
import time

import structlog
from aiohttp import web
from multidict import CIMultiDict

from outpost.core.config import ServerConfig, TransportMode
from outpost.core.correlator import RequestCorrelator
from outpost.core.exceptions import (
    OutpostError,
    RateLimitedError,
    UnauthorizedError,
    UnknownConnectionError,
)
from outpost.core.registry import ConnectionRegistry
from outpost.observability.metrics import (
    FORWARDED_REQUESTS,
    REQUEST_DURATION,
    bucket_status,
    generate_metrics,
    get_content_type,
)
from outpost.protocol.messages import (
    RESPONSE_STRIP_HEADERS,
    RequestDescriptor,
    ResponseDescriptor,
    header_pairs,
    strip_headers,
)
from outpost.security.apikey import APIKeyAuthenticator, create_api_key_authenticator
from outpost.security.ratelimit import RateLimiter, create_rate_limiter
from outpost.server.liveness import LivenessMonitor
from outpost.server.pull import PullAdapter
from outpost.server.push import PushAdapter
from outpost.server.transport import TransportAdapter, parse_connection_id

logger = structlog.get_logger()

# Everything after the still-encoded connection id segment of /api/{id}
_API_TAIL = re.compile(r"^/api/[^/?]*(.*)$", re.DOTALL)


def forwarded_path(raw_path: str) -> str:
    """Path and query to hand to the agent for a raw /api/{id}... path."""
    match = _API_TAIL.match(raw_path)
    path = match.group(1) if match else ""
    if not path.startswith("/"):
        path = f"/{path}"
    return path


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Render every failure as a JSON ``{"error", "message"}`` envelope."""
    try:
        return await handler(request)
    except OutpostError as e:
        headers = None
        if isinstance(e, RateLimitedError):
            headers = {"Retry-After": str(int(e.retry_after) + 1)}
        return web.json_response(e.to_envelope(), status=e.status, headers=headers)
    except web.HTTPException:
        raise
    except Exception as e:
        logger.error(
            "Unhandled error",
            method=request.method,
            path=request.path,
            error=str(e),
            exc_info=True,
        )
        return web.json_response(OutpostError().to_envelope(), status=500)


class RelayServer:
    """Relay server holding the registry, the correlator and the adapters."""

    def __init__(self, config: ServerConfig):
        self.config = config
        self.registry = ConnectionRegistry()
        self.correlator = RequestCorrelator(self.registry)
        self.authenticator: APIKeyAuthenticator = create_api_key_authenticator(config.api_key)

        self._rate_limiter: RateLimiter | None = None
        if config.rate_limit_enabled:
            self._rate_limiter = create_rate_limiter(
                max_requests=config.rate_limit_max,
                window_seconds=config.rate_limit_window,
            )

        self.adapters: dict[TransportMode, TransportAdapter] = {}
        for mode in config.transports:
            adapter_cls = PushAdapter if mode is TransportMode.PUSH else PullAdapter
            self.adapters[mode] = adapter_cls(
                config, self.registry, self.correlator, self.authenticator
            )

        self.liveness = LivenessMonitor(self.registry, self.adapters, config.ping_interval)
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        """Create the aiohttp application with every route mounted."""
        app = web.Application(
            middlewares=[error_middleware],
            client_max_size=self.config.max_body_size,
        )
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/clients", self._handle_clients)
        app.router.add_get("/metrics", self._handle_metrics)
        app.router.add_route("*", "/api/{connection_id}", self._handle_proxy)
        app.router.add_route("*", "/api/{connection_id}/{tail:.*}", self._handle_proxy)

        for adapter in self.adapters.values():
            adapter.register_routes(app)

        app.on_startup.append(self._on_startup)
        app.on_shutdown.append(self._on_shutdown)
        app.on_cleanup.append(self._on_cleanup)
        return app

    async def start(self) -> None:
        self._app = self.build_app()
        # Callers that hang up cancel their handler
        self._runner = web.AppRunner(self._app, handler_cancellation=True)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.host, self.config.port)
        await site.start()
        logger.info(
            "Relay server started",
            host=self.config.host,
            port=self.config.port,
            transports=[mode.value for mode in self.adapters],
            socket_path=self.config.socket_path,
        )

    async def stop(self) -> None:
        logger.info("Stopping relay server...")
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        self._app = None
        logger.info("Relay server stopped")

    async def _on_startup(self, app: web.Application) -> None:
        if self.authenticator.open_mode:
            logger.warning("No API key configured, relay is running in open mode")
        self.liveness.start()

    async def _on_shutdown(self, app: web.Application) -> None:
        for adapter in self.adapters.values():
            await adapter.shutdown()

    async def _on_cleanup(self, app: web.Application) -> None:
        await self.liveness.stop()

    def _authorize(self, request: web.Request) -> None:
        result = self.authenticator.check(request.headers)
        if not result.allowed:
            logger.warning(
                "Unauthorized request",
                ip=request.remote,
                path=request.path,
                reason=result.reason,
            )
            raise UnauthorizedError()

    async def _handle_health(self, request: web.Request) -> web.Response:
        count = len(self.registry)
        return web.json_response(
            {
                "status": "ok",
                "connectedClients": count,
                "message": (
                    "Ready to proxy requests"
                    if count > 0
                    else "Waiting for remote clients to connect"
                ),
            }
        )

    async def _handle_clients(self, request: web.Request) -> web.Response:
        return web.json_response(
            {"connectedClients": [c.snapshot() for c in self.registry.connections()]}
        )

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        """Prometheus metrics endpoint - requires the relay credential."""
        self._authorize(request)
        return web.Response(body=generate_metrics(), content_type=get_content_type())

    async def _handle_proxy(self, request: web.Request) -> web.Response:
        """Forward a public request to an agent and relay its answer."""
        request_start = time.monotonic()
        client_ip = request.remote or "unknown"

        self._authorize(request)

        if self._rate_limiter:
            limit_result = await self._rate_limiter.allow(client_ip)
            if not limit_result.allowed:
                logger.warning(
                    "Rate limit exceeded",
                    ip=client_ip,
                    remaining=limit_result.remaining,
                    reset_after=limit_result.reset_after,
                )
                raise RateLimitedError(retry_after=limit_result.reset_after)

        raw_id = request.match_info["connection_id"]
        connection_id = parse_connection_id(raw_id)
        connection = self.registry.get(connection_id)
        if connection is None:
            raise UnknownConnectionError(connection_id)
        adapter = self.adapters[connection.mode]

        # raw_path keeps the query string and the caller's percent-encoding
        path = forwarded_path(request.raw_path)

        body = await request.read()
        draft = RequestDescriptor.build(
            request.method,
            path,
            request.headers,
            body,
            query=dict(request.query),
        )

        future: asyncio.Future[ResponseDescriptor] = asyncio.get_running_loop().create_future()

        def sink(response: ResponseDescriptor) -> None:
            if not future.done():
                future.set_result(response)

        pending = self.correlator.open(connection_id, draft, sink, self.config.request_timeout)
        try:
            await adapter.deliver(connection, pending.descriptor)
            response = await future
        finally:
            self.correlator.discard(connection_id, pending.request_id)

        duration = time.monotonic() - request_start
        REQUEST_DURATION.observe(duration)
        FORWARDED_REQUESTS.labels(
            method=request.method, status=bucket_status(response.status_code)
        ).inc()
        logger.info(
            "Request forwarded",
            connection_id=connection_id,
            request_id=pending.request_id,
            method=request.method,
            path=path,
            status=response.status_code,
            duration_ms=int(duration * 1000),
        )

        return web.Response(
            status=response.status_code,
            headers=CIMultiDict(
                header_pairs(strip_headers(response.headers, RESPONSE_STRIP_HEADERS))
            ),
            body=response.body_bytes,
        )
