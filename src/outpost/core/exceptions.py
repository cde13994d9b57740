"""Error taxonomy shared by the relay and the agent.

Every error that can reach a public caller carries a ``kind`` and an HTTP
``status`` and renders as a JSON envelope ``{"error": kind, "message": ...}``.
Message text is advisory, not protocol.
"""

from __future__ import annotations

from typing import Any


class OutpostError(Exception):
    """Base class for all Outpost errors."""

    kind: str = "InternalError"
    status: int = 500
    default_message: str = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_envelope(self) -> dict[str, Any]:
        return {"error": self.kind, "message": self.message}


class UnauthorizedError(OutpostError):
    kind = "Unauthorized"
    status = 401
    default_message = "Valid API key required"


class UnknownConnectionError(OutpostError):
    kind = "UnknownConnection"
    status = 404
    default_message = "The specified remote client is not connected to the server"

    def __init__(self, connection_id: Any = None, message: str | None = None) -> None:
        self.connection_id = connection_id
        super().__init__(message)


class PeerGoneError(OutpostError):
    kind = "Gone"
    status = 410
    default_message = "Connection was evicted while waiting for work"


class RateLimitedError(OutpostError):
    kind = "RateLimited"
    status = 429
    default_message = "Too many requests"

    def __init__(self, retry_after: float = 1.0, message: str | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(message)


class ConnectionLostError(OutpostError):
    kind = "ConnectionLost"
    status = 502
    default_message = "Remote client disconnected before responding"


class GatewayTimeoutError(OutpostError):
    kind = "Timeout"
    status = 504
    default_message = "Remote client did not respond in time"


class OutboundFailureError(OutpostError):
    kind = "OutboundFailure"
    status = 500
    default_message = "Failed to reach the internal target"


class ProtocolError(OutpostError):
    """Malformed or unexpected message on a transport."""

    kind = "ProtocolError"
    status = 400
    default_message = "Malformed message"


class SessionLostError(OutpostError):
    """Agent-side: the transport session ended and must be re-established."""

    kind = "SessionLost"
    status = 503
    default_message = "Transport session lost"
