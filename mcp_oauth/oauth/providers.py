"""OAuth provider configuration and registry.

A provider describes one third-party authorization server: where to send
the user, where to exchange codes, which client identity to present and
which scopes to request. The registry holds validated providers by name.

Adding and removing providers is not synchronized with in-flight flows;
the registry expects a single writer.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterator
from urllib.parse import urlparse

from ..errors import InvalidProvider

logger = logging.getLogger(__name__)

# Authorization request parameters the flow sets itself
RESERVED_AUTHORIZATION_PARAMS = frozenset({
    "response_type",
    "client_id",
    "redirect_uri",
    "scope",
    "state",
    "code_challenge",
    "code_challenge_method",
})


def is_valid_url(url: Any) -> bool:
    """Check that a value is an absolute URL with a scheme and host."""
    if not isinstance(url, str) or not url:
        return False
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return bool(parsed.scheme) and bool(parsed.netloc)


@dataclass(frozen=True)
class ProviderConfig:
    """OAuth client configuration for one provider.

    Attributes:
        name: Unique provider name (also selects user-info normalization)
        client_id: OAuth client identifier
        authorization_url: Authorization endpoint the browser is sent to
        token_url: Token endpoint for code exchange and refresh
        scope: Scopes to request, in order
        client_secret: Optional secret; sent only when set
        redirect_uri: Optional fixed redirect URI registered with the provider
        additional_params: Extra authorization-request query parameters
        user_info_url: Optional user-info endpoint overriding the built-in table
    """

    name: str
    client_id: str
    authorization_url: str
    token_url: str
    scope: tuple[str, ...] | list[str] = ()
    client_secret: str | None = field(default=None, repr=False)
    redirect_uri: str | None = None
    additional_params: dict[str, str] = field(default_factory=dict)
    user_info_url: str | None = None

    def is_confidential(self) -> bool:
        """Check if this is a confidential client (has a secret)."""
        return self.client_secret is not None and len(self.client_secret) > 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProviderConfig":
        """Build a provider from a config-file mapping.

        The result is not validated; pass it through ``validate_provider``
        or ``ProviderRegistry.add``.
        """
        scope = data.get("scope", data.get("scopes", []))
        if isinstance(scope, str):
            scope = scope.split()

        return cls(
            name=data.get("name", ""),
            client_id=data.get("client_id", ""),
            authorization_url=data.get("authorization_url", ""),
            token_url=data.get("token_url", ""),
            scope=tuple(scope) if isinstance(scope, (list, tuple)) else scope,
            client_secret=data.get("client_secret") or None,
            redirect_uri=data.get("redirect_uri") or None,
            additional_params=dict(data.get("additional_params") or {}),
            user_info_url=data.get("user_info_url") or None,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize non-secret fields for display."""
        data: dict[str, Any] = {
            "name": self.name,
            "client_id": self.client_id,
            "authorization_url": self.authorization_url,
            "token_url": self.token_url,
            "scope": list(self.scope),
            "confidential": self.is_confidential(),
        }
        if self.redirect_uri:
            data["redirect_uri"] = self.redirect_uri
        if self.additional_params:
            data["additional_params"] = dict(self.additional_params)
        if self.user_info_url:
            data["user_info_url"] = self.user_info_url
        return data


def validate_provider(provider: ProviderConfig) -> None:
    """Validate a provider configuration.

    Every rule is checked so the error lists all problems at once.

    Raises:
        InvalidProvider: If any rule is violated
    """
    errors: list[str] = []

    if not isinstance(provider.name, str) or not provider.name.strip():
        errors.append("Provider name is required")

    if not isinstance(provider.client_id, str) or not provider.client_id.strip():
        errors.append("Client ID is required")

    if not is_valid_url(provider.authorization_url):
        errors.append("Invalid authorization URL")

    if not is_valid_url(provider.token_url):
        errors.append("Invalid token URL")

    if (
        not isinstance(provider.scope, (list, tuple))
        or len(provider.scope) == 0
        or not all(isinstance(s, str) and s for s in provider.scope)
    ):
        errors.append("At least one scope is required")

    if provider.redirect_uri and not is_valid_url(provider.redirect_uri):
        errors.append("Invalid redirect URI")

    if provider.user_info_url and not is_valid_url(provider.user_info_url):
        errors.append("Invalid user info URL")

    reserved = sorted(RESERVED_AUTHORIZATION_PARAMS.intersection(provider.additional_params or {}))
    if reserved:
        errors.append(f"Additional params cannot override: {', '.join(reserved)}")

    if errors:
        raise InvalidProvider(
            f"Provider validation failed: {', '.join(errors)}",
            {"provider": provider.name, "errors": errors},
        )


class ProviderRegistry:
    """In-memory mapping of provider name to validated configuration."""

    def __init__(self, providers: list[ProviderConfig] | None = None):
        self._providers: dict[str, ProviderConfig] = {}
        for provider in providers or []:
            self.add(provider)

    def add(self, provider: ProviderConfig) -> None:
        """Validate and store a provider, replacing any with the same name."""
        validate_provider(provider)
        if provider.name in self._providers:
            logger.debug(f"Replacing provider configuration for {provider.name}")
        self._providers[provider.name] = provider

    def remove(self, name: str) -> None:
        """Remove a provider. Absent names are ignored."""
        self._providers.pop(name, None)

    def get(self, name: str) -> ProviderConfig | None:
        """Get a provider by name, or None if not registered."""
        return self._providers.get(name)

    def names(self) -> list[str]:
        """Registered provider names in registration order."""
        return list(self._providers)

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    def __iter__(self) -> Iterator[ProviderConfig]:
        return iter(list(self._providers.values()))

    def __len__(self) -> int:
        return len(self._providers)
