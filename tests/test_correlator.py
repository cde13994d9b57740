"""Tests for request correlation."""

from __future__ import annotations

import asyncio
import json
import re
import time

import pytest

from outpost.core.config import TransportMode
from outpost.core.correlator import RequestCorrelator, Resolution, new_request_id
from outpost.core.exceptions import UnknownConnectionError
from outpost.core.registry import ConnectionRegistry
from outpost.protocol.messages import RequestDescriptor, ResponseDescriptor


def make_correlator():
    registry = ConnectionRegistry()
    correlator = RequestCorrelator(registry)
    connection = registry.register(TransportMode.PUSH)
    return registry, correlator, connection


def draft(path: str = "/") -> RequestDescriptor:
    return RequestDescriptor.build("GET", path, {})


class RecordingSink:
    def __init__(self):
        self.responses: list[ResponseDescriptor] = []
        self.times: list[float] = []

    def __call__(self, response: ResponseDescriptor) -> None:
        self.responses.append(response)
        self.times.append(time.monotonic())


class TestRequestIds:
    """Tests for request id allocation."""

    def test_format(self):
        assert re.fullmatch(r"[0-9a-f]+-[0-9a-f]{12}", new_request_id())

    def test_unique(self):
        assert len({new_request_id() for _ in range(1000)}) == 1000


class TestRequestCorrelator:
    """Tests for RequestCorrelator."""

    @pytest.mark.asyncio
    async def test_open_stamps_request_id(self):
        _, correlator, connection = make_correlator()
        sink = RecordingSink()

        pending = correlator.open(connection.id, draft("/a"), sink, timeout=5)

        assert pending.request_id
        assert pending.descriptor.request_id == pending.request_id
        assert pending.descriptor.path == "/a"
        assert connection.pending_requests[pending.request_id] is pending
        pending.cancel_timer()

    @pytest.mark.asyncio
    async def test_open_unknown_connection(self):
        _, correlator, _ = make_correlator()
        with pytest.raises(UnknownConnectionError):
            correlator.open(42, draft(), RecordingSink(), timeout=5)

    @pytest.mark.asyncio
    async def test_resolve_invokes_sink_once(self):
        _, correlator, connection = make_correlator()
        sink = RecordingSink()
        pending = correlator.open(connection.id, draft(), sink, timeout=5)
        response = ResponseDescriptor.build(pending.request_id, 200, {}, b"ok")

        first = correlator.resolve(connection.id, response)
        second = correlator.resolve(connection.id, response)

        assert first is Resolution.RESOLVED
        assert second is Resolution.ALREADY_HANDLED
        assert sink.responses == [response]
        assert pending.timer is None
        assert connection.pending_requests == {}

    @pytest.mark.asyncio
    async def test_responses_out_of_order(self):
        _, correlator, connection = make_correlator()
        sinks = [RecordingSink() for _ in range(3)]
        entries = [
            correlator.open(connection.id, draft(f"/{i}"), sink, timeout=5)
            for i, sink in enumerate(sinks)
        ]

        for index in (2, 0, 1):
            correlator.resolve(
                connection.id,
                ResponseDescriptor.build(entries[index].request_id, 200, {}, str(index).encode()),
            )

        assert [s.responses[0].body_bytes for s in sinks] == [b"0", b"1", b"2"]

    @pytest.mark.asyncio
    async def test_timeout_yields_504(self):
        """A 100ms deadline resolves with a 504 between 100 and 150ms."""
        _, correlator, connection = make_correlator()
        sink = RecordingSink()
        started = time.monotonic()

        pending = correlator.open(connection.id, draft(), sink, timeout=0.1)
        await asyncio.sleep(0.2)

        assert len(sink.responses) == 1
        elapsed = sink.times[0] - started
        assert 0.1 <= elapsed < 0.15
        response = sink.responses[0]
        assert response.status_code == 504
        assert response.request_id == pending.request_id
        assert json.loads(response.body_bytes)["error"] == "Timeout"
        assert connection.pending_requests == {}

    @pytest.mark.asyncio
    async def test_late_response_after_timeout_is_ignored(self):
        _, correlator, connection = make_correlator()
        sink = RecordingSink()
        pending = correlator.open(connection.id, draft(), sink, timeout=0.01)
        await asyncio.sleep(0.05)

        result = correlator.resolve(
            connection.id, ResponseDescriptor.build(pending.request_id, 200, {}, b"late")
        )

        assert result is Resolution.ALREADY_HANDLED
        assert [r.status_code for r in sink.responses] == [504]

    @pytest.mark.asyncio
    async def test_eviction_fails_pending_with_502(self):
        registry, correlator, connection = make_correlator()
        sinks = [RecordingSink(), RecordingSink()]
        entries = [correlator.open(connection.id, draft(), s, timeout=5) for s in sinks]

        registry.remove(connection.id, reason="liveness")

        for sink, entry in zip(sinks, entries, strict=True):
            assert len(sink.responses) == 1
            assert sink.responses[0].status_code == 502
            assert sink.responses[0].request_id == entry.request_id
            assert entry.timer is None
        assert connection.pending_requests == {}

    @pytest.mark.asyncio
    async def test_late_response_after_eviction_is_noop(self):
        registry, correlator, connection = make_correlator()
        sink = RecordingSink()
        pending = correlator.open(connection.id, draft(), sink, timeout=5)
        registry.remove(connection.id)

        result = correlator.resolve(
            connection.id, ResponseDescriptor.build(pending.request_id, 200, {}, b"x")
        )

        assert result is Resolution.ALREADY_HANDLED
        assert len(sink.responses) == 1

    @pytest.mark.asyncio
    async def test_discard_cancels_without_sink(self):
        _, correlator, connection = make_correlator()
        sink = RecordingSink()
        pending = correlator.open(connection.id, draft(), sink, timeout=0.02)

        assert correlator.discard(connection.id, pending.request_id) is True
        assert correlator.discard(connection.id, pending.request_id) is False
        await asyncio.sleep(0.05)

        assert sink.responses == []

    @pytest.mark.asyncio
    async def test_sink_errors_are_contained(self):
        _, correlator, connection = make_correlator()

        def broken_sink(response):
            raise RuntimeError("caller vanished")

        pending = correlator.open(connection.id, draft(), broken_sink, timeout=5)

        result = correlator.resolve(
            connection.id, ResponseDescriptor.build(pending.request_id, 200, {}, None)
        )

        assert result is Resolution.RESOLVED
        assert connection.pending_requests == {}
