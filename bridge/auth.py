"""Optional API-key allow list for the chat surface."""

from __future__ import annotations

from dataclasses import dataclass

from .errors import AuthError
from .security import bearer_token


@dataclass(frozen=True)
class AuthContext:
    api_key: str | None


def require_api_key(
    allowed_keys: tuple[str, ...],
    authorization: str | None,
) -> AuthContext:
    """An empty allow list accepts any caller, with or without a key."""
    key = bearer_token(authorization)
    if not allowed_keys:
        return AuthContext(api_key=key)

    if not key:
        raise AuthError("Missing API key", code="missing_api_key")

    if key not in allowed_keys:
        raise AuthError("Invalid API key", code="invalid_api_key")

    return AuthContext(api_key=key)
