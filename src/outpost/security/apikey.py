from __future__ import annotations

import secrets
from collections.abc import Mapping
from dataclasses import dataclass

API_KEY_HEADER = "X-API-Key"
AUTHORIZATION_HEADER = "Authorization"


@dataclass
class AuthResult:
    allowed: bool
    reason: str


def extract_api_key(headers: Mapping[str, str]) -> str | None:
    """Credential from ``Authorization: Bearer <key>`` or ``X-API-Key``."""
    authorization = headers.get(AUTHORIZATION_HEADER)
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            return token.strip()
    return headers.get(API_KEY_HEADER) or None


class APIKeyAuthenticator:
    """Checks a shared API key. Without a configured key every request is allowed."""

    def __init__(self, api_key: str | None) -> None:
        self._api_key = api_key or None

    @property
    def open_mode(self) -> bool:
        return self._api_key is None

    def check(self, headers: Mapping[str, str]) -> AuthResult:
        if self._api_key is None:
            return AuthResult(allowed=True, reason="Open mode")

        provided = extract_api_key(headers)
        if not provided:
            return AuthResult(allowed=False, reason="Missing API key")

        if not secrets.compare_digest(provided.encode(), self._api_key.encode()):
            return AuthResult(allowed=False, reason="Invalid API key")

        return AuthResult(allowed=True, reason="Authenticated")


def create_api_key_authenticator(api_key: str | None) -> APIKeyAuthenticator:
    return APIKeyAuthenticator(api_key=api_key)
