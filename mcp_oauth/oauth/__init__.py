"""OAuth 2.0 authorization code + PKCE client for MCP servers.

Main Components:
    AuthManager: High-level session manager (the main entry point)
    OAuthFlow: Browser flow engine with a shared callback listener
    ProviderRegistry: Validated provider configurations
    FileTokenStore / MemoryTokenStore: Token storage backends
    TokenSet: Token data structure

Quick Start:
    from mcp_oauth.oauth import AuthManager, ProviderConfig

    manager = AuthManager(providers=[ProviderConfig(...)])

    context = await manager.get_authenticated_request("github", ["repo"])
    if context is None:
        await manager.authenticate("github")
"""

from .callback import CallbackResult, CallbackServer
from .flow import (
    FlowState,
    FlowStatus,
    OAuthFlow,
    build_authorization_url,
    exchange_code_for_tokens,
    request_token_refresh,
)
from .manager import AuthenticatedRequest, AuthManager, AuthStatus, CallbackSettings
from .pkce import PKCEPair, generate_code_challenge, generate_code_verifier, generate_pkce_pair, generate_state
from .providers import ProviderConfig, ProviderRegistry, validate_provider
from .store import FileTokenStore, MemoryTokenStore, TokenStorage, create_token_store
from .tokens import TokenSet, create_storage_key, is_token_expired, validate_scopes
from .userinfo import UserInfo, fetch_user_info, normalize_user_info

__all__ = [
    # Manager (main entry point)
    "AuthManager",
    "AuthStatus",
    "AuthenticatedRequest",
    "CallbackSettings",
    # Providers
    "ProviderConfig",
    "ProviderRegistry",
    "validate_provider",
    # Flow
    "OAuthFlow",
    "FlowState",
    "FlowStatus",
    "build_authorization_url",
    "exchange_code_for_tokens",
    "request_token_refresh",
    # Tokens
    "TokenSet",
    "create_storage_key",
    "is_token_expired",
    "validate_scopes",
    # Storage
    "TokenStorage",
    "FileTokenStore",
    "MemoryTokenStore",
    "create_token_store",
    # User info
    "UserInfo",
    "fetch_user_info",
    "normalize_user_info",
    # PKCE
    "generate_pkce_pair",
    "generate_code_verifier",
    "generate_code_challenge",
    "generate_state",
    "PKCEPair",
    # Callback
    "CallbackServer",
    "CallbackResult",
]
