from .messages import (
    HOP_BY_HOP_HEADERS,
    REQUEST_STRIP_HEADERS,
    RESPONSE_STRIP_HEADERS,
    RequestDescriptor,
    ResponseDescriptor,
    decode_body,
    encode_body,
    header_pairs,
    parse_request,
    parse_response,
    strip_headers,
)

__all__ = [
    "HOP_BY_HOP_HEADERS",
    "REQUEST_STRIP_HEADERS",
    "RESPONSE_STRIP_HEADERS",
    "RequestDescriptor",
    "ResponseDescriptor",
    "decode_body",
    "encode_body",
    "header_pairs",
    "parse_request",
    "parse_response",
    "strip_headers",
]
