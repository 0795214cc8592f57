"""User-info retrieval and normalization.

Providers answer their user-info endpoints with differently shaped JSON.
Each known provider gets a normalizer that maps its fields onto the common
``UserInfo`` shape; everything else goes through a generic fallback that
tries the usual field names.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

from ..errors import (
    UserInfoNetworkError,
    UserInfoNotSupported,
    UserInfoRequestFailed,
)
from .providers import ProviderConfig
from .tokens import TokenSet

logger = logging.getLogger(__name__)

USER_AGENT = "mcp-oauth"

# Well-known user-info endpoints, keyed by lowercased provider name
USER_INFO_URLS: dict[str, str] = {
    "github": "https://api.github.com/user",
    "google": "https://www.googleapis.com/oauth2/v2/userinfo",
    "microsoft": "https://graph.microsoft.com/v1.0/me",
    "slack": "https://slack.com/api/users.identity",
}


@dataclass
class UserInfo:
    """Provider-independent view of the authenticated user."""

    id: str | None = None
    username: str | None = None
    email: str | None = None
    name: str | None = None
    avatar_url: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the normalized fields (raw payload excluded)."""
        data = {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "name": self.name,
            "avatar_url": self.avatar_url,
        }
        return {k: v for k, v in data.items() if v is not None}


def _text(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _first(data: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = _text(data.get(key))
        if value is not None:
            return value
    return None


def _normalize_github(data: dict[str, Any]) -> UserInfo:
    return UserInfo(
        id=_text(data.get("id")),
        username=_text(data.get("login")),
        email=_text(data.get("email")),
        name=_text(data.get("name")),
        avatar_url=_text(data.get("avatar_url")),
        raw=data,
    )


def _normalize_google(data: dict[str, Any]) -> UserInfo:
    return UserInfo(
        id=_first(data, "id", "sub"),
        username=_text(data.get("email")),
        email=_text(data.get("email")),
        name=_text(data.get("name")),
        avatar_url=_text(data.get("picture")),
        raw=data,
    )


def _normalize_microsoft(data: dict[str, Any]) -> UserInfo:
    # Graph only returns photo metadata here, never a usable URL
    photo = data.get("photo")
    return UserInfo(
        id=_text(data.get("id")),
        username=_text(data.get("userPrincipalName")),
        email=_first(data, "mail", "userPrincipalName"),
        name=_text(data.get("displayName")),
        avatar_url=photo if isinstance(photo, str) else None,
        raw=data,
    )


def _normalize_slack(data: dict[str, Any]) -> UserInfo:
    user = data.get("user") if isinstance(data.get("user"), dict) else data
    return UserInfo(
        id=_text(user.get("id")),
        username=_first(user, "name", "email"),
        email=_text(user.get("email")),
        name=_text(user.get("name")),
        avatar_url=_first(user, "image_192", "image_72", "image_48"),
        raw=data,
    )


def _normalize_generic(data: dict[str, Any]) -> UserInfo:
    return UserInfo(
        id=_first(data, "id", "sub"),
        username=_first(data, "username", "login", "preferred_username"),
        email=_text(data.get("email")),
        name=_first(data, "name", "displayName"),
        avatar_url=_first(data, "avatar_url", "picture", "photo"),
        raw=data,
    )


NORMALIZERS: dict[str, Callable[[dict[str, Any]], UserInfo]] = {
    "github": _normalize_github,
    "google": _normalize_google,
    "microsoft": _normalize_microsoft,
    "slack": _normalize_slack,
}


def normalize_user_info(provider_name: str, data: dict[str, Any]) -> UserInfo:
    """Map a provider's user-info payload onto ``UserInfo``."""
    normalizer = NORMALIZERS.get(provider_name.lower(), _normalize_generic)
    return normalizer(data)


def resolve_user_info_url(provider: ProviderConfig) -> str | None:
    """Configured endpoint first, then the well-known table."""
    return provider.user_info_url or USER_INFO_URLS.get(provider.name.lower())


async def fetch_user_info(
    provider: ProviderConfig,
    tokens: TokenSet,
    http_client: httpx.AsyncClient | None = None,
) -> UserInfo:
    """Fetch and normalize the user behind an access token.

    Args:
        provider: Provider configuration
        tokens: Token record whose access token authorizes the request
        http_client: Optional HTTP client

    Returns:
        Normalized UserInfo

    Raises:
        UserInfoNotSupported: No endpoint is known for the provider
        UserInfoRequestFailed: Non-2xx or unparseable response
        UserInfoNetworkError: Transport failure
    """
    url = resolve_user_info_url(provider)
    if not url:
        raise UserInfoNotSupported(
            f"Provider '{provider.name}' does not support user info retrieval",
            {"provider": provider.name},
        )

    http = http_client or httpx.AsyncClient(timeout=30.0)
    should_close = http_client is None

    try:
        response = await http.get(
            url,
            headers={
                "Authorization": tokens.get_auth_header(),
                "Accept": "application/json",
                "User-Agent": USER_AGENT,
            },
        )

        if not 200 <= response.status_code < 300:
            raise UserInfoRequestFailed(
                f"Failed to fetch user info: HTTP {response.status_code}",
                {"provider": provider.name, "status_code": response.status_code},
            )

        try:
            data = response.json()
        except ValueError as e:
            raise UserInfoRequestFailed(
                "User info endpoint returned invalid JSON",
                {"provider": provider.name, "status_code": response.status_code},
            ) from e

        if not isinstance(data, dict):
            raise UserInfoRequestFailed(
                "User info endpoint returned an unexpected payload",
                {"provider": provider.name, "status_code": response.status_code},
            )

        return normalize_user_info(provider.name, data)

    except httpx.RequestError as e:
        raise UserInfoNetworkError(
            "Network error while fetching user info",
            {"provider": provider.name, "original_error": str(e)},
        ) from e
    finally:
        if should_close:
            await http.aclose()
