"""High-level authentication manager.

``AuthManager`` is the one object an embedding server talks to. It owns
the provider registry, a token storage backend and a flow engine, and
answers the question asked before every protected operation: "is there a
usable session for this provider, and does it carry these scopes?"

Refresh policy, applied the same way on every read path: a record with
no expiry never expires; an expired record with a refresh token is
refreshed when auto-refresh is on; anything else expired is deleted and
treated as absent. A refresh that fails deletes the record.
"""

import inspect
import logging
import webbrowser
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx

from ..errors import (
    AuthenticationFailed,
    InsufficientScope,
    NotAuthenticated,
    OAuthError,
    ProviderNotFound,
    UserInfoFailed,
)
from .callback import DEFAULT_CALLBACK_PATH, DEFAULT_HOST, DEFAULT_PORT
from .flow import DEFAULT_FLOW_TIMEOUT, OAuthFlow, request_token_refresh
from .providers import ProviderConfig, ProviderRegistry
from .store import FileTokenStore, TokenStorage
from .tokens import TokenSet, create_storage_key, now_ms, validate_scopes
from .userinfo import UserInfo, fetch_user_info

logger = logging.getLogger(__name__)

# on_token_refresh(provider, tokens) and on_authentication_required(provider, scopes);
# either may be a plain function or a coroutine function
TokenRefreshCallback = Callable[[str, TokenSet], Any]
AuthRequiredCallback = Callable[[str, list[str]], Any]


def _format_timedelta(td: timedelta) -> str:
    """Format a timedelta into a human-readable string.

    Examples:
        - "45 minutes"
        - "2 hours"
        - "3 days"
        - "2 weeks"
    """
    total_seconds = int(td.total_seconds())

    if total_seconds < 0:
        return "Expired"

    if total_seconds < 60:
        return f"{total_seconds} seconds"

    minutes = total_seconds // 60
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''}"

    hours = minutes // 60
    if hours < 24:
        return f"{hours} hour{'s' if hours != 1 else ''}"

    days = hours // 24
    if days < 14:
        return f"{days} day{'s' if days != 1 else ''}"

    weeks = days // 7
    return f"{weeks} week{'s' if weeks != 1 else ''}"


def _iso_from_ms(value: int) -> str:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).isoformat()


async def _notify(callback: Callable[..., Any] | None, *args: Any) -> None:
    """Invoke an event callback, awaiting it when it is a coroutine.

    Callback failures are logged and never propagate to the caller.
    """
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        name = getattr(callback, "__name__", type(callback).__name__)
        logger.warning(f"Event callback {name} raised: {e}")


@dataclass
class CallbackSettings:
    """Where the callback listener binds and how long a flow may wait.

    Attributes:
        host: Listener host
        port: Listener port (0 lets the OS choose)
        path: Callback path
        timeout: Seconds to wait for the browser round trip
    """

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    path: str = DEFAULT_CALLBACK_PATH
    timeout: float = DEFAULT_FLOW_TIMEOUT

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CallbackSettings":
        return cls(
            host=data.get("host") or DEFAULT_HOST,
            port=int(data.get("port", DEFAULT_PORT)),
            path=data.get("path") or DEFAULT_CALLBACK_PATH,
            timeout=float(data.get("timeout", DEFAULT_FLOW_TIMEOUT)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"host": self.host, "port": self.port, "path": self.path, "timeout": self.timeout}


@dataclass
class AuthStatus:
    """Authentication status for one provider.

    Attributes:
        provider: Provider name
        is_authenticated: Whether a usable (possibly refreshed) token exists
        expires_at: Token expiry as epoch ms (None = never expires)
        last_refresh: When the record was last obtained or refreshed, epoch ms
        has_refresh_token: Whether a refresh token is available
        scope: Granted scopes
        user: Normalized user info, when the best-effort fetch succeeded
        error: Why the status could not be determined, if it could not
    """

    provider: str
    is_authenticated: bool = False
    expires_at: int | None = None
    last_refresh: int | None = None
    has_refresh_token: bool = False
    scope: list[str] | None = None
    user: UserInfo | None = None
    error: str | None = None

    def expires_in_human(self, now: int | None = None) -> str | None:
        """Human-readable time until expiry (e.g., "45 minutes")."""
        if self.expires_at is None:
            return None
        remaining = self.expires_at - (now if now is not None else now_ms())
        return _format_timedelta(timedelta(milliseconds=remaining))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "provider": self.provider,
            "is_authenticated": self.is_authenticated,
            "expires_at": _iso_from_ms(self.expires_at) if self.expires_at is not None else None,
            "expires_in_human": self.expires_in_human(),
            "last_refresh": _iso_from_ms(self.last_refresh) if self.last_refresh is not None else None,
            "has_refresh_token": self.has_refresh_token,
            "scope": self.scope,
            "user": self.user.to_dict() if self.user else None,
            "error": self.error,
        }


@dataclass
class AuthenticatedRequest:
    """Fully usable authenticated context for one protected operation."""

    tokens: TokenSet
    user: UserInfo
    provider: str
    is_valid: bool = True

    @property
    def headers(self) -> dict[str, str]:
        """Authorization header for calls made on the user's behalf."""
        return {"Authorization": self.tokens.get_auth_header()}


class AuthManager:
    """Manages OAuth sessions for a set of providers.

    Usage:
        manager = AuthManager(providers=[github])

        context = await manager.get_authenticated_request("github", ["repo"])
        if context is None:
            await manager.authenticate("github")
            context = await manager.get_authenticated_request("github", ["repo"])

        await manager.cleanup()
    """

    def __init__(
        self,
        providers: list[ProviderConfig] | None = None,
        token_storage: TokenStorage | None = None,
        auto_refresh: bool = True,
        callback: CallbackSettings | None = None,
        on_token_refresh: TokenRefreshCallback | None = None,
        on_authentication_required: AuthRequiredCallback | None = None,
        http_client: httpx.AsyncClient | None = None,
        open_browser: Callable[[str], bool] = webbrowser.open,
        on_status: Callable[[str], None] | None = None,
    ):
        """Initialize the manager.

        Args:
            providers: Providers to register (each is validated)
            token_storage: Storage backend (default: encrypted files under ~/.mcp-oauth)
            auto_refresh: Refresh expired tokens transparently
            callback: Listener binding and flow timeout
            on_token_refresh: Called after every successful refresh
            on_authentication_required: Called when a registered provider has no usable session
            http_client: Optional HTTP client shared by all outbound requests
            open_browser: Function that opens the authorization URL
            on_status: Optional callback for flow status messages

        Raises:
            InvalidProvider: A provider failed validation
        """
        self.registry = ProviderRegistry(providers)
        self.token_storage = token_storage if token_storage is not None else FileTokenStore()
        self.auto_refresh = auto_refresh
        self.callback = callback or CallbackSettings()
        self.on_token_refresh = on_token_refresh
        self.on_authentication_required = on_authentication_required
        self.http_client = http_client

        self.flow = OAuthFlow(
            self.registry,
            http_client=http_client,
            open_browser=open_browser,
            on_status=on_status,
        )
        self._last_refresh: dict[str, int] = {}

    # Providers

    def add_provider(self, provider: ProviderConfig) -> None:
        """Register (or replace) a provider after validating it."""
        self.registry.add(provider)

    def remove_provider(self, name: str) -> None:
        self.registry.remove(name)

    def get_provider(self, name: str) -> ProviderConfig | None:
        return self.registry.get(name)

    def list_providers(self) -> list[ProviderConfig]:
        return list(self.registry)

    def _require_provider(self, name: str) -> ProviderConfig:
        provider = self.registry.get(name)
        if provider is None:
            raise ProviderNotFound(f"Provider '{name}' not found", {"provider": name})
        return provider

    # Authentication

    async def authenticate(
        self,
        provider_name: str,
        scopes: list[str] | None = None,
        host: str | None = None,
        port: int | None = None,
        callback_path: str | None = None,
        timeout: float | None = None,
    ) -> TokenSet:
        """Run the browser flow for a provider and store the resulting tokens.

        Args:
            provider_name: Registered provider name
            scopes: Scopes to request for this flow instead of the configured ones
            host: Listener host override
            port: Listener port override
            callback_path: Listener path override
            timeout: Flow timeout override, in seconds

        Returns:
            The stored TokenSet

        Raises:
            ProviderNotFound: Provider is not registered (nothing is started)
            AuthenticationFailed: Any failure of the flow or of storing its result
        """
        self._require_provider(provider_name)

        try:
            tokens = await self.flow.start_flow(
                provider_name,
                host=host or self.callback.host,
                port=port if port is not None else self.callback.port,
                callback_path=callback_path or self.callback.path,
                timeout=timeout if timeout is not None else self.callback.timeout,
                scopes=scopes,
            )
            await self.token_storage.store(create_storage_key(provider_name), tokens)
        except Exception as e:
            message = e.message if isinstance(e, OAuthError) else str(e)
            logger.warning(f"Authentication with {provider_name} failed: {message}")
            raise AuthenticationFailed(
                f"Authentication with '{provider_name}' failed: {message}",
                {
                    "provider": provider_name,
                    "original_error": message,
                    "original_code": getattr(e, "code", None),
                },
            ) from e

        self._last_refresh[provider_name] = now_ms()
        logger.info(f"Authenticated with {provider_name}")
        return tokens

    async def _load_tokens(self, provider_name: str) -> TokenSet | None:
        """Stored tokens for a provider with the refresh policy applied."""
        key = create_storage_key(provider_name)
        tokens = await self.token_storage.retrieve(key, allow_expired=True)
        if tokens is None:
            return None

        if not tokens.is_expired():
            return tokens

        if not tokens.has_refresh_token() or not self.auto_refresh:
            logger.debug(f"Discarding expired tokens for {provider_name}")
            await self.token_storage.remove(key)
            return None

        return await self.refresh_tokens(provider_name, tokens)

    async def get_authentication_status(self, provider_name: str) -> AuthStatus:
        """Report whether a provider has a usable session.

        Never raises for storage or refresh failures; they report as not
        authenticated. User info is fetched best effort.
        """
        provider = self.registry.get(provider_name)
        if provider is None:
            return AuthStatus(provider=provider_name)

        try:
            tokens = await self._load_tokens(provider_name)
        except OAuthError as e:
            logger.warning(f"Could not determine status for {provider_name}: {e}")
            return AuthStatus(provider=provider_name, error=e.message)

        if tokens is None:
            return AuthStatus(provider=provider_name)

        user: UserInfo | None = None
        try:
            user = await fetch_user_info(provider, tokens, http_client=self.http_client)
        except OAuthError as e:
            logger.debug(f"User info for {provider_name} unavailable: {e}")

        return AuthStatus(
            provider=provider_name,
            is_authenticated=True,
            expires_at=tokens.expires_at,
            last_refresh=self._last_refresh.get(provider_name),
            has_refresh_token=tokens.has_refresh_token(),
            scope=tokens.scope,
            user=user,
        )

    async def get_authenticated_request(
        self,
        provider_name: str,
        required_scopes: list[str] | None = None,
    ) -> AuthenticatedRequest | None:
        """Build the authenticated context for a protected operation.

        Returns:
            AuthenticatedRequest, or None when the provider is unregistered
            or has no usable session

        Raises:
            InsufficientScope: Session lacks a required scope
            UserInfoFailed: User info could not be fetched
        """
        provider = self.registry.get(provider_name)
        if provider is None:
            return None

        tokens = await self._load_tokens(provider_name)
        if tokens is None:
            await _notify(self.on_authentication_required, provider_name, list(required_scopes or []))
            return None

        if required_scopes and tokens.scope is not None:
            if not validate_scopes(required_scopes, tokens.scope):
                missing = [s for s in required_scopes if s not in tokens.scope]
                raise InsufficientScope(
                    f"Token does not have required scopes: {', '.join(missing)}",
                    {
                        "provider": provider_name,
                        "required_scopes": list(required_scopes),
                        "available_scopes": list(tokens.scope),
                    },
                )

        try:
            user = await fetch_user_info(provider, tokens, http_client=self.http_client)
        except OAuthError as e:
            raise UserInfoFailed(
                "Failed to get user information",
                {
                    "provider": provider_name,
                    "original_error": e.message,
                    "original_code": e.code,
                },
            ) from e

        return AuthenticatedRequest(tokens=tokens, user=user, provider=provider_name)

    async def get_user_info(self, provider_name: str) -> UserInfo:
        """Fetch normalized user info for a provider's current session.

        Raises:
            ProviderNotFound: Provider is not registered
            NotAuthenticated: No usable session
            UserInfoError: Endpoint unknown or request failed
        """
        provider = self._require_provider(provider_name)

        tokens = await self._load_tokens(provider_name)
        if tokens is None:
            raise NotAuthenticated(
                f"Not authenticated with provider '{provider_name}'",
                {"provider": provider_name},
            )

        return await fetch_user_info(provider, tokens, http_client=self.http_client)

    async def refresh_tokens(
        self,
        provider_name: str,
        tokens: TokenSet | None = None,
    ) -> TokenSet | None:
        """Exchange the stored refresh token for a new record.

        Args:
            provider_name: Registered provider name
            tokens: Current record, if already loaded

        Returns:
            The new TokenSet, or None when there is nothing to refresh or
            the refresh failed (the stored record is then deleted)
        """
        provider = self.registry.get(provider_name)
        if provider is None:
            return None

        key = create_storage_key(provider_name)
        current = tokens or await self.token_storage.retrieve(key, allow_expired=True)
        if current is None or not current.has_refresh_token():
            return None

        try:
            if self.token_storage.supports_refresh:
                new_tokens = await self.token_storage.refresh_token(
                    key,
                    current.refresh_token,  # type: ignore[arg-type]
                    provider,
                    http_client=self.http_client,
                )
            else:
                new_tokens = await request_token_refresh(
                    provider,
                    current.refresh_token,  # type: ignore[arg-type]
                    previous=current,
                    http_client=self.http_client,
                )
                await self.token_storage.store(key, new_tokens)
        except OAuthError as e:
            logger.warning(f"Token refresh for {provider_name} failed, discarding session: {e}")
            await self.token_storage.remove(key)
            return None

        if new_tokens is None:
            await self.token_storage.remove(key)
            return None

        self._last_refresh[provider_name] = now_ms()
        logger.info(f"Refreshed tokens for {provider_name}")
        await _notify(self.on_token_refresh, provider_name, new_tokens)
        return new_tokens

    async def revoke_authentication(self, provider_name: str) -> None:
        """Forget the stored session for a provider (local only)."""
        await self.token_storage.remove(create_storage_key(provider_name))
        self._last_refresh.pop(provider_name, None)
        logger.info(f"Removed stored tokens for {provider_name}")

    async def clear_all_authentications(self) -> None:
        await self.token_storage.clear()
        self._last_refresh.clear()
        logger.info("Removed all stored tokens")

    async def get_authenticated_providers(self) -> list[str]:
        """Registered providers that currently have a usable session."""
        authenticated = []
        for name in self.registry.names():
            status = await self.get_authentication_status(name)
            if status.is_authenticated:
                authenticated.append(name)
        return authenticated

    async def cleanup(self) -> None:
        """Cancel pending flows and stop the callback listener."""
        await self.flow.cleanup()
