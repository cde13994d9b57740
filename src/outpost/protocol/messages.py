"""Wire envelopes exchanged between the relay and its agents.

Envelopes are JSON objects with camelCase keys. Server to peer::

    {requestId, method, path, headers, body, bodyEncoding, query}

Peer to server::

    {requestId, statusCode, headers, body, bodyEncoding}

Header values are strings, or lists of strings for repeated headers.

Bodies travel as UTF-8 text when possible and base64 otherwise, so buffered
bodies survive the round trip byte for byte. A structured JSON body (as sent
by older agents) is accepted and re-serialised when read back as bytes.
"""

from __future__ import annotations

import base64
import json
from collections.abc import Iterable, Mapping
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from outpost.core.exceptions import OutpostError, ProtocolError

BodyEncoding = Literal["utf-8", "base64"]

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

# Removed from forwarded requests; the agent's HTTP client sets its own.
REQUEST_STRIP_HEADERS = HOP_BY_HOP_HEADERS | {"host", "content-length"}

# Removed from responses; bodies are re-framed (and already decoded) on each hop.
RESPONSE_STRIP_HEADERS = HOP_BY_HOP_HEADERS | {"content-length", "content-encoding"}


HeaderValue = str | list[str]


def _header_items(headers: Any) -> Iterable[tuple[Any, Any]]:
    # httpx.Headers.items() comma-joins repeats; multi_items() does not
    if hasattr(headers, "multi_items"):
        return headers.multi_items()
    return headers.items()


def strip_headers(
    headers: Any, unsafe: frozenset[str] | set[str]
) -> dict[str, HeaderValue]:
    """Copy a header mapping, dropping names in ``unsafe`` (case-insensitive).

    Repeated headers are collected into a list under the first spelling of
    the name, so ``Set-Cookie`` and friends survive as separate values.
    """
    result: dict[str, HeaderValue] = {}
    names: dict[str, str] = {}
    for key, value in _header_items(headers):
        if isinstance(key, bytes):
            key = key.decode("latin-1")
        key = str(key)
        lowered = key.lower()
        if lowered in unsafe:
            continue
        values = value if isinstance(value, list) else [value]
        for item in values:
            if isinstance(item, bytes):
                item = item.decode("latin-1")
            item = "" if item is None else str(item)
            name = names.setdefault(lowered, key)
            existing = result.get(name)
            if existing is None:
                result[name] = item
            elif isinstance(existing, list):
                existing.append(item)
            else:
                result[name] = [existing, item]
    return result


def header_pairs(headers: Mapping[str, HeaderValue]) -> list[tuple[str, str]]:
    """Flatten a header mapping into ``(name, value)`` pairs, one per value."""
    return [
        (name, item)
        for name, value in headers.items()
        for item in (value if isinstance(value, list) else [value])
    ]


def encode_body(data: bytes | None) -> tuple[str | None, BodyEncoding]:
    """Pick the wire form for a raw body."""
    if not data:
        return None, "utf-8"
    try:
        return data.decode("utf-8"), "utf-8"
    except UnicodeDecodeError:
        return base64.b64encode(data).decode("ascii"), "base64"


def decode_body(body: Any, encoding: BodyEncoding) -> bytes:
    """Turn a wire body back into bytes."""
    if body is None:
        return b""
    if isinstance(body, str):
        if encoding == "base64":
            try:
                return base64.b64decode(body, validate=True)
            except ValueError as e:
                raise ProtocolError(f"Invalid base64 body: {e}") from e
        return body.encode("utf-8")
    return json.dumps(body, separators=(",", ":")).encode("utf-8")


class _Envelope(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    @field_validator("headers", mode="before", check_fields=False)
    @classmethod
    def _stringify_headers(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {
                str(k): [str(item) for item in v] if isinstance(v, list) else str(v)
                for k, v in value.items()
                if v is not None and v != []
            }
        return value

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @property
    def body_bytes(self) -> bytes:
        return decode_body(self.body, self.body_encoding)  # type: ignore[attr-defined]


class RequestDescriptor(_Envelope):
    """A forwarded public request, addressed by its correlation id."""

    request_id: str = ""
    method: str
    path: str = "/"
    headers: dict[str, HeaderValue] = Field(default_factory=dict)
    body: Any = None
    body_encoding: BodyEncoding = "utf-8"
    query: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def build(
        cls,
        method: str,
        path: str,
        headers: Any,
        body: bytes | None = None,
        query: dict[str, str] | None = None,
    ) -> RequestDescriptor:
        """Build a draft descriptor (no request id yet) from raw request parts."""
        wire_body, encoding = encode_body(body)
        return cls(
            method=method.upper(),
            path=path or "/",
            headers=strip_headers(headers, REQUEST_STRIP_HEADERS),
            body=wire_body,
            body_encoding=encoding,
            query=dict(query or {}),
        )


class ResponseDescriptor(_Envelope):
    """A peer's answer to a RequestDescriptor."""

    request_id: str
    status_code: int = Field(default=200, ge=100, le=599)
    headers: dict[str, HeaderValue] = Field(default_factory=dict)
    body: Any = None
    body_encoding: BodyEncoding = "utf-8"

    @classmethod
    def build(
        cls,
        request_id: str,
        status_code: int,
        headers: Any,
        body: bytes | None = None,
    ) -> ResponseDescriptor:
        wire_body, encoding = encode_body(body)
        return cls(
            request_id=request_id,
            status_code=status_code,
            headers=strip_headers(headers, RESPONSE_STRIP_HEADERS),
            body=wire_body,
            body_encoding=encoding,
        )

    @classmethod
    def from_error(cls, request_id: str, error: OutpostError) -> ResponseDescriptor:
        """Synthetic response carrying an error envelope."""
        return cls(
            request_id=request_id,
            status_code=error.status,
            headers={"Content-Type": "application/json"},
            body=json.dumps(error.to_envelope()),
        )


def parse_response(data: str | bytes | dict[str, Any]) -> ResponseDescriptor:
    """Parse an inbound response envelope.

    Raises:
        ProtocolError: If the payload is not JSON or not a valid envelope.
    """
    try:
        payload = json.loads(data) if isinstance(data, (str, bytes)) else data
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise ProtocolError("Envelope must be a JSON object")
    try:
        descriptor = ResponseDescriptor.model_validate(payload)
    except ValidationError as e:
        raise ProtocolError(f"Invalid response envelope: {e.error_count()} error(s)") from e
    # Undecodable bodies are rejected here rather than at the public caller.
    decode_body(descriptor.body, descriptor.body_encoding)
    return descriptor


def parse_request(data: str | bytes | dict[str, Any]) -> RequestDescriptor:
    """Parse an inbound request envelope (agent side)."""
    try:
        payload = json.loads(data) if isinstance(data, (str, bytes)) else data
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise ProtocolError("Envelope must be a JSON object")
    try:
        descriptor = RequestDescriptor.model_validate(payload)
    except ValidationError as e:
        raise ProtocolError(f"Invalid request envelope: {e.error_count()} error(s)") from e
    if not descriptor.request_id:
        raise ProtocolError("Request envelope has no requestId")
    return descriptor
