"""Outbound calls from the agent to the internal target API."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from outpost.core.exceptions import OutboundFailureError
from outpost.protocol.messages import (
    REQUEST_STRIP_HEADERS,
    RequestDescriptor,
    ResponseDescriptor,
    header_pairs,
    strip_headers,
)

logger = structlog.get_logger()


class OutboundForwarder:
    """Replays request descriptors against the target and captures the answers.

    Every status the target returns is forwarded verbatim; only a failure to
    get an answer at all (connection refused, DNS, timeout) turns into a
    synthetic 500 ``OutboundFailure`` envelope.
    """

    def __init__(
        self,
        target_url: str,
        timeout: float = 25.0,
        verify: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.target_url = target_url.rstrip("/")
        self._timeout = timeout
        self._verify = verify
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._forwarded = 0
        self._failures = 0

    @property
    def stats(self) -> dict[str, Any]:
        return {"forwarded": self._forwarded, "failures": self._failures}

    def _create_client(self) -> httpx.AsyncClient:
        # Redirects go back to the public caller untouched
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self._timeout),
            follow_redirects=False,
            verify=self._verify,
            transport=self._transport,
        )

    async def forward(self, descriptor: RequestDescriptor) -> ResponseDescriptor:
        """Send one descriptor to the target; never raises for network errors."""
        if self._client is None:
            self._client = self._create_client()

        logger.info(
            "Proxying request",
            request_id=descriptor.request_id,
            method=descriptor.method,
            path=descriptor.path,
        )

        try:
            response = await self._client.request(
                descriptor.method,
                self.target_url + descriptor.path,
                headers=header_pairs(strip_headers(descriptor.headers, REQUEST_STRIP_HEADERS)),
                content=descriptor.body_bytes or None,
            )
        except httpx.TimeoutException as e:
            self._failures += 1
            logger.warning(
                "Target timed out",
                request_id=descriptor.request_id,
                target=self.target_url,
                error=str(e),
            )
            return ResponseDescriptor.from_error(
                descriptor.request_id,
                OutboundFailureError(f"Timed out calling the internal target: {e}"),
            )
        except httpx.RequestError as e:
            self._failures += 1
            logger.warning(
                "Target unreachable",
                request_id=descriptor.request_id,
                target=self.target_url,
                error=str(e),
            )
            return ResponseDescriptor.from_error(
                descriptor.request_id,
                OutboundFailureError(str(e) or type(e).__name__),
            )

        self._forwarded += 1
        logger.debug(
            "Target responded",
            request_id=descriptor.request_id,
            status=response.status_code,
            size=len(response.content),
        )
        return ResponseDescriptor.build(
            descriptor.request_id,
            response.status_code,
            response.headers,
            response.content,
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
