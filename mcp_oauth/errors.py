"""Error types for mcp-oauth.

Every failure carries a machine-readable ``code``, a ``details`` dict with
structured context (provider name, status code, upstream OAuth error) and
an optional HTTP ``status_code`` used when the error is rendered by the
callback listener.

Hierarchy:
    OAuthError
    ├── InvalidProvider, ProviderNotFound
    ├── OAuthFlowError
    │   ├── OAuthSetupFailed ── PortInUse, ServerStartFailed
    │   ├── BrowserOpenFailed
    │   ├── OAuthAuthorizationFailed, OAuthInvalidCallback, OAuthInvalidState
    │   ├── TokenExchangeFailed, TokenExchangeError, TokenExchangeNetworkError
    │   └── OAuthTimeout, OAuthCancelled
    ├── AuthenticationFailed
    ├── AuthorizationError ── AuthenticationRequired, InsufficientScope
    ├── UserInfoError ── NotAuthenticated, UserInfoNotSupported,
    │                    UserInfoRequestFailed, UserInfoNetworkError, UserInfoFailed
    ├── TokenStorageError
    │   ├── TokenStoreFailed ── EncryptionFailed
    │   ├── TokenRetrieveFailed ── DecryptionFailed
    │   └── TokenRemoveFailed, TokenClearFailed, TokenListFailed
    ├── TokenRefreshFailed, TokenRefreshError, TokenRefreshNetworkError
    └── ToolNotFound, InvalidToolDefinition
"""

from typing import Any


def mask_token(value: str) -> str:
    """Mask a secret so only a short prefix and suffix remain visible.

    Args:
        value: Token, refresh token or storage key

    Returns:
        ``"abcd...wxyz"`` style string, or ``"***"`` for short values
    """
    if len(value) <= 8:
        return "***"
    return f"{value[:4]}...{value[-4:]}"


class OAuthError(Exception):
    """Base class for all mcp-oauth errors."""

    code = "OAUTH_ERROR"
    status_code: int | None = None

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details or {}
        if status_code is not None:
            self.status_code = status_code

    @property
    def provider(self) -> str | None:
        """Provider name this error relates to, if known."""
        return self.details.get("provider")

    def to_dict(self) -> dict[str, Any]:
        """Serialize error for JSON output."""
        data: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }
        if self.status_code is not None:
            data["status_code"] = self.status_code
        return data


# Provider registry


class InvalidProvider(OAuthError):
    """Provider configuration failed validation.

    ``details["errors"]`` lists every violated rule.
    """

    code = "INVALID_PROVIDER"

    @property
    def errors(self) -> list[str]:
        return list(self.details.get("errors", []))


class ProviderNotFound(OAuthError):
    code = "PROVIDER_NOT_FOUND"
    status_code = 404


# Authorization flow


class OAuthFlowError(OAuthError):
    """Error during the authorization code flow."""

    code = "OAUTH_FLOW_ERROR"


class OAuthSetupFailed(OAuthFlowError):
    code = "OAUTH_SETUP_FAILED"
    status_code = 500


class PortInUse(OAuthSetupFailed):
    code = "PORT_IN_USE"


class ServerStartFailed(OAuthSetupFailed):
    code = "SERVER_START_FAILED"


class BrowserOpenFailed(OAuthFlowError):
    code = "BROWSER_OPEN_FAILED"


class OAuthAuthorizationFailed(OAuthFlowError):
    """The provider denied or failed the authorization request."""

    code = "OAUTH_AUTHORIZATION_FAILED"


class OAuthInvalidCallback(OAuthFlowError):
    code = "OAUTH_INVALID_CALLBACK"


class OAuthInvalidState(OAuthFlowError):
    """Callback state matched no pending flow (replayed, forged or stale)."""

    code = "OAUTH_INVALID_STATE"


class TokenExchangeFailed(OAuthFlowError):
    """Token endpoint answered the code exchange with a non-2xx status."""

    code = "TOKEN_EXCHANGE_FAILED"


class TokenExchangeError(OAuthFlowError):
    """Token endpoint answered with an OAuth ``error`` field."""

    code = "TOKEN_EXCHANGE_ERROR"


class TokenExchangeNetworkError(OAuthFlowError):
    code = "TOKEN_EXCHANGE_NETWORK_ERROR"
    status_code = 502


class OAuthTimeout(OAuthFlowError):
    code = "OAUTH_TIMEOUT"


class OAuthCancelled(OAuthFlowError):
    code = "OAUTH_CANCELLED"


class AuthenticationFailed(OAuthError):
    """Umbrella error raised by ``AuthManager.authenticate``."""

    code = "AUTHENTICATION_FAILED"


# Request-time authorization


class AuthorizationError(OAuthError):
    """A protected operation cannot proceed with the current session."""

    code = "AUTHORIZATION_ERROR"


class AuthenticationRequired(AuthorizationError):
    code = "AUTHENTICATION_REQUIRED"
    status_code = 401


class InsufficientScope(AuthorizationError):
    """The session is valid but lacks a required scope.

    ``details`` holds both ``required_scopes`` and ``available_scopes``.
    """

    code = "INSUFFICIENT_SCOPE"
    status_code = 403


# User info


class UserInfoError(OAuthError):
    code = "USER_INFO_ERROR"


class NotAuthenticated(UserInfoError):
    code = "NOT_AUTHENTICATED"
    status_code = 401


class UserInfoNotSupported(UserInfoError):
    code = "USER_INFO_NOT_SUPPORTED"


class UserInfoRequestFailed(UserInfoError):
    code = "USER_INFO_REQUEST_FAILED"


class UserInfoNetworkError(UserInfoError):
    code = "USER_INFO_NETWORK_ERROR"


class UserInfoFailed(UserInfoError):
    code = "USER_INFO_FAILED"


# Token storage


class TokenStorageError(OAuthError):
    code = "TOKEN_STORAGE_ERROR"


class TokenStoreFailed(TokenStorageError):
    code = "TOKEN_STORE_FAILED"


class EncryptionFailed(TokenStoreFailed):
    code = "ENCRYPTION_FAILED"


class TokenRetrieveFailed(TokenStorageError):
    code = "TOKEN_RETRIEVE_FAILED"


class DecryptionFailed(TokenRetrieveFailed):
    """Stored tokens could not be decrypted.

    Usually the encryption key changed (storage copied to a different
    machine or home directory) or the file is corrupted. Clearing the
    stored tokens and re-authenticating recovers.
    """

    code = "DECRYPTION_FAILED"


class TokenRemoveFailed(TokenStorageError):
    code = "TOKEN_REMOVE_FAILED"


class TokenClearFailed(TokenStorageError):
    code = "TOKEN_CLEAR_FAILED"


class TokenListFailed(TokenStorageError):
    code = "TOKEN_LIST_FAILED"


# Token refresh


class TokenRefreshFailed(OAuthError):
    """Token endpoint answered the refresh grant with a non-2xx status."""

    code = "TOKEN_REFRESH_FAILED"


class TokenRefreshError(TokenRefreshFailed):
    """Token endpoint answered the refresh grant with an OAuth ``error``."""

    code = "TOKEN_REFRESH_ERROR"


class TokenRefreshNetworkError(TokenRefreshFailed):
    code = "TOKEN_REFRESH_NETWORK_ERROR"


# Tool dispatch


class ToolNotFound(OAuthError):
    code = "TOOL_NOT_FOUND"
    status_code = 404


class InvalidToolDefinition(OAuthError):
    """Tool definition failed validation; ``details["errors"]`` lists why."""

    code = "INVALID_TOOL_DEFINITION"
