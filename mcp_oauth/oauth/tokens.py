"""OAuth token data structures and utilities.

This module provides the TokenSet dataclass for representing OAuth tokens
with their metadata, including expiry handling and serialization, plus
the helpers that derive storage keys from provider names.
"""

import re
import time
from dataclasses import dataclass, field
from typing import Any


# Namespace prefix for every storage key
STORAGE_NAMESPACE = "mcp-oauth"


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


def create_storage_key(provider: str, suffix: str | None = None) -> str:
    """Build the storage key for a provider.

    Examples:
        - ``create_storage_key("github")`` -> ``"mcp-oauth:github"``
        - ``create_storage_key("github", "work")`` -> ``"mcp-oauth:github:work"``
    """
    key = f"{STORAGE_NAMESPACE}:{provider}"
    return f"{key}:{suffix}" if suffix else key


def provider_from_storage_key(key: str) -> str:
    """Strip the namespace prefix from a storage key."""
    prefix = f"{STORAGE_NAMESPACE}:"
    return key[len(prefix):] if key.startswith(prefix) else key


def is_token_expired(expires_at: int | None, now: int | None = None) -> bool:
    """Check an absolute expiry timestamp (epoch ms) against now.

    A missing expiry means the token never expires.
    """
    if expires_at is None:
        return False
    return (now if now is not None else now_ms()) >= expires_at


def parse_scope(value: Any) -> list[str] | None:
    """Parse a scope value from a token response.

    Accepts the RFC 6749 space-delimited string, comma-delimited strings
    (GitHub) and JSON lists. Returns None when no scopes are present.
    """
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        scopes = [str(s) for s in value if str(s)]
    else:
        scopes = [s for s in re.split(r"[\s,]+", str(value)) if s]
    return scopes or None


def validate_scopes(required: list[str], available: list[str]) -> bool:
    """Check that every required scope is in the available list."""
    return all(scope in available for scope in required)


@dataclass
class TokenSet:
    """OAuth token record.

    Records are never updated field by field: a refresh produces a new
    TokenSet that replaces the stored one wholesale.

    Attributes:
        access_token: The access token string
        refresh_token: Optional refresh token for obtaining new access tokens
        expires_at: Absolute expiry as epoch milliseconds (None = never expires)
        token_type: Token type (typically "Bearer")
        scope: Granted scopes, if the provider reported them
    """

    access_token: str = field(repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    expires_at: int | None = None
    token_type: str = "Bearer"
    scope: list[str] | None = None

    def is_expired(self, now: int | None = None) -> bool:
        """Check if the access token is past its expiry timestamp."""
        return is_token_expired(self.expires_at, now)

    def has_refresh_token(self) -> bool:
        """Check if this token set has a refresh token."""
        return self.refresh_token is not None and len(self.refresh_token) > 0

    def expires_in_ms(self, now: int | None = None) -> int | None:
        """Milliseconds until expiry (negative once expired), or None."""
        if self.expires_at is None:
            return None
        return self.expires_at - (now if now is not None else now_ms())

    def get_auth_header(self) -> str:
        """Get the Authorization header value for this token."""
        return f"{self.token_type or 'Bearer'} {self.access_token}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize token set to dictionary for storage."""
        data: dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
        }

        if self.refresh_token:
            data["refresh_token"] = self.refresh_token

        if self.expires_at is not None:
            data["expires_at"] = self.expires_at

        if self.scope is not None:
            data["scope"] = list(self.scope)

        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenSet":
        """Deserialize token set from dictionary (via to_dict)."""
        expires_at = data.get("expires_at")
        scope = data.get("scope")

        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=int(expires_at) if expires_at is not None else None,
            token_type=data.get("token_type") or "Bearer",
            scope=list(scope) if scope is not None else None,
        )

    @classmethod
    def from_token_response(
        cls,
        response: dict[str, Any],
        default_scope: list[str] | None = None,
        previous: "TokenSet | None" = None,
    ) -> "TokenSet":
        """Create TokenSet from an OAuth token endpoint response.

        Args:
            response: JSON response from token endpoint (must hold access_token)
            default_scope: Scopes to record when the response has none
            previous: Record being refreshed; its refresh token, token type
                and scope are kept when the response omits them

        Returns:
            TokenSet instance
        """
        now = now_ms()

        expires_at = None
        if response.get("expires_in") is not None:
            expires_at = now + int(float(response["expires_in"]) * 1000)

        scope = parse_scope(response.get("scope"))
        if scope is None:
            if previous is not None and previous.scope is not None:
                scope = list(previous.scope)
            elif default_scope is not None:
                scope = list(default_scope)

        refresh_token = response.get("refresh_token")
        if not refresh_token and previous is not None:
            refresh_token = previous.refresh_token

        token_type = response.get("token_type")
        if not token_type:
            token_type = previous.token_type if previous is not None else "Bearer"

        return cls(
            access_token=response["access_token"],
            refresh_token=refresh_token,
            expires_at=expires_at,
            token_type=token_type,
            scope=scope,
        )
