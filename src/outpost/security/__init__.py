"""Credential checks and rate limiting for the relay."""

from .apikey import (
    API_KEY_HEADER,
    APIKeyAuthenticator,
    AuthResult,
    create_api_key_authenticator,
    extract_api_key,
)
from .ratelimit import (
    RateLimitConfig,
    RateLimiter,
    RateLimitResult,
    SlidingWindowCounter,
    create_rate_limiter,
)

__all__ = [
    "API_KEY_HEADER",
    "APIKeyAuthenticator",
    "AuthResult",
    "create_api_key_authenticator",
    "extract_api_key",
    "RateLimitConfig",
    "RateLimiter",
    "RateLimitResult",
    "SlidingWindowCounter",
    "create_rate_limiter",
]
