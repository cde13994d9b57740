"""Tests for the pull (long-poll) transport adapter."""

from __future__ import annotations

import asyncio
import time

import pytest

from outpost.core.config import ServerConfig
from outpost.core.correlator import RequestCorrelator, Resolution
from outpost.core.exceptions import PeerGoneError, UnknownConnectionError
from outpost.core.registry import ConnectionRegistry
from outpost.protocol.messages import RequestDescriptor, ResponseDescriptor
from outpost.security.apikey import create_api_key_authenticator
from outpost.server.pull import PullAdapter


def make_adapter(**config) -> PullAdapter:
    registry = ConnectionRegistry()
    correlator = RequestCorrelator(registry)
    return PullAdapter(
        ServerConfig(**config),
        registry,
        correlator,
        create_api_key_authenticator(None),
    )


async def open_request(adapter: PullAdapter, connection_id: int, path: str, timeout: float = 5):
    responses: list[ResponseDescriptor] = []
    pending = adapter.correlator.open(
        connection_id,
        RequestDescriptor.build("GET", path, {}),
        responses.append,
        timeout,
    )
    connection = adapter.registry.get(connection_id)
    await adapter.deliver(connection, pending.descriptor)
    return pending, responses


async def wait_until_parked(connection, count: int = 1) -> None:
    for _ in range(100):
        if len(connection.pending_polls) >= count:
            return
        await asyncio.sleep(0.001)
    raise AssertionError("poll never parked")


class TestPullAdapter:
    """Tests for PullAdapter."""

    @pytest.mark.asyncio
    async def test_register_assigns_connection(self):
        adapter = make_adapter()
        connection = adapter.register(source_ip="10.1.1.1")
        assert adapter.registry.get(connection.id) is connection
        assert connection.mode.value == "pull"
        assert connection.transport is None

    @pytest.mark.asyncio
    async def test_fifo_order(self):
        """Queued descriptors come back in the order they were opened."""
        adapter = make_adapter()
        connection = adapter.register()
        opened = [await open_request(adapter, connection.id, f"/{i}") for i in range(3)]

        polled = [await adapter.poll(connection.id, wait=0) for _ in range(3)]

        assert [d.request_id for d in polled] == [p.request_id for p, _ in opened]
        assert await adapter.poll(connection.id, wait=0) is None
        for pending, _ in opened:
            pending.cancel_timer()

    @pytest.mark.asyncio
    async def test_immediate_handoff_to_parked_poll(self):
        adapter = make_adapter()
        connection = adapter.register()
        poll = asyncio.create_task(adapter.poll(connection.id, wait=5))
        await wait_until_parked(connection)

        started = time.monotonic()
        pending, _ = await open_request(adapter, connection.id, "/now")
        descriptor = await poll

        assert time.monotonic() - started < 0.05
        assert descriptor.request_id == pending.request_id
        assert len(connection.delivery_queue) == 0
        assert len(connection.pending_polls) == 0
        pending.cancel_timer()

    @pytest.mark.asyncio
    async def test_oldest_parked_poll_served_first(self):
        adapter = make_adapter()
        connection = adapter.register()
        first = asyncio.create_task(adapter.poll(connection.id, wait=5))
        await wait_until_parked(connection, 1)
        second = asyncio.create_task(adapter.poll(connection.id, wait=5))
        await wait_until_parked(connection, 2)

        pending, _ = await open_request(adapter, connection.id, "/a")
        descriptor = await first

        assert descriptor.request_id == pending.request_id
        assert not second.done()
        second.cancel()
        with pytest.raises(asyncio.CancelledError):
            await second
        pending.cancel_timer()

    @pytest.mark.asyncio
    async def test_empty_poll_waits_full_period(self):
        """An empty poll answers at about 50ms, not earlier."""
        adapter = make_adapter()
        connection = adapter.register()

        started = time.monotonic()
        result = await adapter.poll(connection.id, wait=0.05)
        elapsed = time.monotonic() - started

        assert result is None
        assert 0.05 <= elapsed < 0.1
        assert len(connection.pending_polls) == 0

    @pytest.mark.asyncio
    async def test_resolved_descriptors_are_skipped(self):
        adapter = make_adapter()
        connection = adapter.register()
        stale, _ = await open_request(adapter, connection.id, "/stale", timeout=0.01)
        fresh, _ = await open_request(adapter, connection.id, "/fresh")
        await asyncio.sleep(0.03)

        descriptor = await adapter.poll(connection.id, wait=0)

        assert descriptor.request_id == fresh.request_id
        assert stale.request_id not in connection.pending_requests
        fresh.cancel_timer()

    @pytest.mark.asyncio
    async def test_cancelled_poll_is_removed(self):
        adapter = make_adapter()
        connection = adapter.register()
        poll = asyncio.create_task(adapter.poll(connection.id, wait=5))
        await wait_until_parked(connection)

        poll.cancel()
        with pytest.raises(asyncio.CancelledError):
            await poll

        assert len(connection.pending_polls) == 0
        pending, _ = await open_request(adapter, connection.id, "/later")
        assert [d.request_id for d in connection.delivery_queue] == [pending.request_id]
        pending.cancel_timer()

    @pytest.mark.asyncio
    async def test_descriptor_requeued_when_poller_vanishes(self):
        """A descriptor handed to a poller that is cancelled goes back to the head."""
        adapter = make_adapter()
        connection = adapter.register()
        queued, _ = await open_request(adapter, connection.id, "/queued")
        connection.delivery_queue.clear()

        poll = asyncio.create_task(adapter.poll(connection.id, wait=5))
        await wait_until_parked(connection)
        handed, _ = await open_request(adapter, connection.id, "/handed")
        poll.cancel()
        with pytest.raises(asyncio.CancelledError):
            await poll

        connection.delivery_queue.append(queued.descriptor)
        polled = [await adapter.poll(connection.id, wait=0) for _ in range(2)]
        assert [d.request_id for d in polled] == [handed.request_id, queued.request_id]
        handed.cancel_timer()
        queued.cancel_timer()

    @pytest.mark.asyncio
    async def test_eviction_clears_queue_and_fails_pending(self):
        adapter = make_adapter()
        connection = adapter.register()
        poll = asyncio.create_task(adapter.poll(connection.id, wait=5))
        await wait_until_parked(connection)
        pending, responses = await open_request(adapter, connection.id, "/x")
        connection.delivery_queue.append(pending.descriptor)

        adapter.registry.remove(connection.id, reason="liveness")

        assert (await poll).request_id == pending.request_id
        assert len(connection.delivery_queue) == 0
        assert responses[0].status_code == 502

    @pytest.mark.asyncio
    async def test_eviction_while_parked_raises_gone(self):
        adapter = make_adapter()
        connection = adapter.register()
        poll = asyncio.create_task(adapter.poll(connection.id, wait=5))
        await wait_until_parked(connection)

        await adapter.close(connection, reason="liveness")

        with pytest.raises(PeerGoneError):
            await poll
        assert len(connection.pending_polls) == 0

    @pytest.mark.asyncio
    async def test_unknown_connection(self):
        adapter = make_adapter()
        with pytest.raises(UnknownConnectionError):
            await adapter.poll(99, wait=0)
        with pytest.raises(UnknownConnectionError):
            adapter.heartbeat(99)

    @pytest.mark.asyncio
    async def test_post_result_resolves(self):
        adapter = make_adapter()
        connection = adapter.register()
        pending, responses = await open_request(adapter, connection.id, "/r")

        first = adapter.post_result(
            connection.id, ResponseDescriptor.build(pending.request_id, 201, {}, b"made")
        )
        second = adapter.post_result(
            connection.id, ResponseDescriptor.build(pending.request_id, 201, {}, b"made")
        )

        assert first is Resolution.RESOLVED
        assert second is Resolution.ALREADY_HANDLED
        assert [r.status_code for r in responses] == [201]


class TestPullLiveness:
    """Tests for heartbeat-based probing."""

    @pytest.mark.asyncio
    async def test_silent_connection_is_evicted(self):
        adapter = make_adapter(heartbeat_interval=0.01)
        connection = adapter.register()
        connection.last_seen -= 1

        await adapter.probe(connection)

        assert connection.id not in adapter.registry
        assert connection.closed is True

    @pytest.mark.asyncio
    async def test_heartbeat_keeps_connection(self):
        adapter = make_adapter(heartbeat_interval=0.05)
        connection = adapter.register()
        connection.last_seen -= 1

        adapter.heartbeat(connection.id)
        await adapter.probe(connection)

        assert connection.id in adapter.registry
