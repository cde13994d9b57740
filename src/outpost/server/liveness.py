"""Periodic liveness checks over every registered connection."""

from __future__ import annotations

import asyncio
import contextlib

import structlog

from outpost.core.config import TransportMode
from outpost.core.registry import ConnectionRegistry
from outpost.server.transport import TransportAdapter

logger = structlog.get_logger()


class LivenessMonitor:
    """One background task probing each connection through its adapter.

    Push connections get a WebSocket ping per cycle and are evicted if the
    previous ping went unanswered. Pull connections are evicted once they
    have been silent for more than twice the heartbeat interval.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        adapters: dict[TransportMode, TransportAdapter],
        interval: float,
    ) -> None:
        self._registry = registry
        self._adapters = adapters
        self._interval = interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.debug("Liveness monitor started", interval=self._interval)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def check_once(self) -> None:
        """Probe every connection once, concurrently."""
        probes = []
        for connection in self._registry.connections():
            adapter = self._adapters.get(connection.mode)
            if adapter is not None:
                probes.append(adapter.probe(connection))
        if not probes:
            return

        results = await asyncio.gather(*probes, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error("Liveness probe error", error=str(result))

    async def _run(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._interval)
                await self.check_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Liveness check error", error=str(e))
