"""OAuth authorization code flow with PKCE.

This module drives one browser-based authorization per ``start_flow`` call:
1. Resolve the provider from the registry
2. Start (or reuse) the shared localhost callback listener
3. Generate PKCE pair and state
4. Build authorization URL and open browser
5. Wait for the callback carrying the authorization code
6. Exchange code for tokens

Several flows may be in flight at once. Each is keyed by its state value,
which is single-use: the first callback that presents it consumes it.
"""

import asyncio
import logging
import webbrowser
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable
from urllib.parse import urlencode

import httpx

from ..errors import (
    BrowserOpenFailed,
    OAuthAuthorizationFailed,
    OAuthCancelled,
    OAuthError,
    OAuthFlowError,
    OAuthInvalidCallback,
    OAuthInvalidState,
    OAuthSetupFailed,
    OAuthTimeout,
    ProviderNotFound,
    TokenExchangeError,
    TokenExchangeFailed,
    TokenExchangeNetworkError,
    TokenRefreshError,
    TokenRefreshFailed,
    TokenRefreshNetworkError,
)
from .callback import (
    DEFAULT_CALLBACK_PATH,
    DEFAULT_HOST,
    DEFAULT_PORT,
    CallbackResult,
    CallbackServer,
    build_callback_url,
    render_error_page,
    render_success_page,
)
from .pkce import generate_pkce_pair, generate_state
from .providers import ProviderConfig, ProviderRegistry
from .tokens import TokenSet, now_ms

logger = logging.getLogger(__name__)

# Seconds to wait for the browser round trip
DEFAULT_FLOW_TIMEOUT = 300.0

# Seconds per token endpoint request
DEFAULT_HTTP_TIMEOUT = 30.0

TOKEN_REQUEST_HEADERS = {
    "Accept": "application/json",
    "Content-Type": "application/x-www-form-urlencoded",
}


class FlowStatus(str, Enum):
    """Lifecycle of one authorization attempt."""

    IDLE = "idle"
    AWAITING_BROWSER_AUTHORIZATION = "awaiting_browser_authorization"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING_CODE = "exchanging_code"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class FlowState:
    """Pending authorization attempt, keyed by its state value."""

    state: str
    code_verifier: str = field(repr=False)
    provider: str
    redirect_uri: str
    scopes: list[str] | None = None
    created_at: int = field(default_factory=now_ms)
    status: FlowStatus = FlowStatus.IDLE


def _safe_error_fields(response: httpx.Response) -> dict[str, Any]:
    """Extract only the OAuth error fields from an upstream error body.

    Raw bodies are never kept since they may echo tokens or secrets.
    """
    try:
        data = response.json()
    except Exception:
        return {}
    if not isinstance(data, dict):
        return {}
    return {
        key: data[key]
        for key in ("error", "error_description")
        if isinstance(data.get(key), str)
    }


def _describe(fields: dict[str, Any]) -> str:
    if not fields:
        return ""
    return f": {fields.get('error', '')} - {fields.get('error_description', '')}"


def build_authorization_url(
    provider: ProviderConfig,
    state: str,
    code_challenge: str,
    redirect_uri: str,
    scopes: list[str] | None = None,
) -> str:
    """Build the authorization URL for browser redirect.

    Args:
        provider: Provider configuration
        state: State parameter for CSRF protection
        code_challenge: PKCE code challenge
        redirect_uri: The callback URI
        scopes: Scopes to request instead of the provider's configured ones

    Returns:
        Complete authorization URL
    """
    params: dict[str, str] = {
        "response_type": "code",
        "client_id": provider.client_id,
        "redirect_uri": redirect_uri,
        "scope": " ".join(scopes if scopes else provider.scope),
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    }
    params.update(provider.additional_params)

    separator = "&" if "?" in provider.authorization_url else "?"
    return f"{provider.authorization_url}{separator}{urlencode(params)}"


async def exchange_code_for_tokens(
    provider: ProviderConfig,
    code: str,
    redirect_uri: str,
    code_verifier: str,
    http_client: httpx.AsyncClient | None = None,
    default_scope: list[str] | None = None,
) -> TokenSet:
    """Exchange authorization code for tokens.

    Args:
        provider: Provider configuration
        code: Authorization code from callback
        redirect_uri: The redirect URI used in authorization
        code_verifier: PKCE code verifier
        http_client: Optional HTTP client
        default_scope: Scopes to record when the response has none
            (the provider's configured scopes when omitted)

    Returns:
        TokenSet built from the token endpoint response

    Raises:
        TokenExchangeFailed: Non-2xx response
        TokenExchangeError: Response carries an OAuth error or no access token
        TokenExchangeNetworkError: Transport failure
    """
    http = http_client or httpx.AsyncClient(timeout=DEFAULT_HTTP_TIMEOUT)
    should_close = http_client is None

    try:
        token_request: dict[str, str] = {
            "grant_type": "authorization_code",
            "client_id": provider.client_id,
            "code": code,
            "redirect_uri": redirect_uri,
            "code_verifier": code_verifier,
        }

        # Add client_secret for confidential clients
        if provider.is_confidential():
            token_request["client_secret"] = provider.client_secret  # type: ignore

        response = await http.post(
            provider.token_url,
            data=token_request,
            headers=TOKEN_REQUEST_HEADERS,
        )

        if not 200 <= response.status_code < 300:
            fields = _safe_error_fields(response)
            raise TokenExchangeFailed(
                f"Token exchange failed (HTTP {response.status_code}){_describe(fields)}",
                {"provider": provider.name, "status_code": response.status_code, **fields},
            )

        try:
            data = response.json()
        except ValueError as e:
            raise TokenExchangeError(
                "Token endpoint returned invalid JSON",
                {"provider": provider.name},
            ) from e

        if not isinstance(data, dict) or "error" in data:
            fields = data if isinstance(data, dict) else {}
            raise TokenExchangeError(
                f"Token exchange error: {fields.get('error_description') or fields.get('error', 'invalid response')}",
                {
                    "provider": provider.name,
                    "error": fields.get("error"),
                    "error_description": fields.get("error_description"),
                },
            )

        if not data.get("access_token"):
            raise TokenExchangeError(
                "Token response missing access_token",
                {"provider": provider.name},
            )

        try:
            return TokenSet.from_token_response(
                data, default_scope=list(default_scope or provider.scope)
            )
        except (TypeError, ValueError) as e:
            raise TokenExchangeError(
                f"Token response could not be parsed: {e}",
                {"provider": provider.name},
            ) from e

    except httpx.RequestError as e:
        raise TokenExchangeNetworkError(
            f"Network error during token exchange: {e}",
            {"provider": provider.name, "original_error": str(e)},
        ) from e
    finally:
        if should_close:
            await http.aclose()


async def request_token_refresh(
    provider: ProviderConfig,
    refresh_token: str,
    previous: TokenSet | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> TokenSet:
    """Refresh an access token with the refresh_token grant.

    Args:
        provider: Provider configuration
        refresh_token: The refresh token
        previous: Record being replaced; fields the response omits are kept
        http_client: Optional HTTP client

    Returns:
        New TokenSet

    Raises:
        TokenRefreshFailed: Non-2xx response
        TokenRefreshError: Response carries an OAuth error or no access token
        TokenRefreshNetworkError: Transport failure
    """
    http = http_client or httpx.AsyncClient(timeout=DEFAULT_HTTP_TIMEOUT)
    should_close = http_client is None

    try:
        token_request: dict[str, str] = {
            "grant_type": "refresh_token",
            "client_id": provider.client_id,
            "refresh_token": refresh_token,
        }

        if provider.is_confidential():
            token_request["client_secret"] = provider.client_secret  # type: ignore

        response = await http.post(
            provider.token_url,
            data=token_request,
            headers=TOKEN_REQUEST_HEADERS,
        )

        if not 200 <= response.status_code < 300:
            fields = _safe_error_fields(response)
            raise TokenRefreshFailed(
                f"Token refresh failed (HTTP {response.status_code}){_describe(fields)}",
                {"provider": provider.name, "status_code": response.status_code, **fields},
            )

        try:
            data = response.json()
        except ValueError as e:
            raise TokenRefreshError(
                "Token endpoint returned invalid JSON",
                {"provider": provider.name},
            ) from e

        if not isinstance(data, dict) or "error" in data:
            fields = data if isinstance(data, dict) else {}
            raise TokenRefreshError(
                f"Token refresh error: {fields.get('error_description') or fields.get('error', 'invalid response')}",
                {
                    "provider": provider.name,
                    "error": fields.get("error"),
                    "error_description": fields.get("error_description"),
                },
            )

        if not data.get("access_token"):
            raise TokenRefreshError(
                "Token refresh response missing access_token",
                {"provider": provider.name},
            )

        if previous is None:
            previous = TokenSet(access_token="", refresh_token=refresh_token)

        try:
            return TokenSet.from_token_response(
                data, default_scope=list(provider.scope), previous=previous
            )
        except (TypeError, ValueError) as e:
            raise TokenRefreshError(
                f"Token refresh response could not be parsed: {e}",
                {"provider": provider.name},
            ) from e

    except httpx.RequestError as e:
        raise TokenRefreshNetworkError(
            f"Network error during token refresh: {e}",
            {"provider": provider.name, "original_error": str(e)},
        ) from e
    finally:
        if should_close:
            await http.aclose()


@dataclass
class _PendingFlow:
    flow_state: FlowState
    future: "asyncio.Future[TokenSet]"
    timer: asyncio.TimerHandle | None = None


class OAuthFlow:
    """Runs PKCE authorization code flows over one shared callback listener.

    Usage:
        flow = OAuthFlow(registry)
        tokens = await flow.start_flow("github")
        ...
        await flow.cleanup()
    """

    def __init__(
        self,
        providers: ProviderRegistry,
        http_client: httpx.AsyncClient | None = None,
        open_browser: Callable[[str], bool] = webbrowser.open,
        on_status: Callable[[str], None] | None = None,
    ):
        """Initialize the flow engine.

        Args:
            providers: Registry consulted at flow start and again at callback time
            http_client: Optional HTTP client for token requests
            open_browser: Function that opens a URL in the user's browser
            on_status: Optional callback for status messages
        """
        self.providers = providers
        self.http_client = http_client
        self.open_browser = open_browser
        self.on_status = on_status or (lambda msg: None)

        self._server: CallbackServer | None = None
        self._pending: dict[str, _PendingFlow] = {}

    @property
    def server(self) -> CallbackServer | None:
        return self._server

    def pending_states(self) -> list[str]:
        """State values of flows still waiting for a callback."""
        return list(self._pending)

    def get_flow_state(self, state: str) -> FlowState | None:
        pending = self._pending.get(state)
        return pending.flow_state if pending else None

    def _emit_status(self, message: str) -> None:
        """Emit a status message."""
        logger.info(message)
        self.on_status(message)

    async def _ensure_server(self, host: str, port: int, callback_path: str) -> CallbackServer:
        """Start the shared listener, or reuse the one already running."""
        if self._server is not None and self._server.is_running:
            # port 0 asks for any free port, which the running listener satisfies
            port_differs = port != 0 and port != self._server.port
            if port_differs or (self._server.host, self._server.path) != (host, callback_path):
                logger.warning(
                    f"Callback listener already running on {self._server.redirect_uri}; "
                    f"ignoring requested {build_callback_url(host, port, callback_path)}"
                )
            return self._server

        server = CallbackServer(self._handle_callback, host=host, port=port, path=callback_path)
        try:
            await server.start()
        except OAuthSetupFailed:
            raise
        except Exception as e:
            raise OAuthSetupFailed(
                f"Failed to start callback listener: {e}",
                {"host": host, "port": port, "original_error": str(e)},
            ) from e

        self._server = server
        return server

    async def start_flow(
        self,
        provider_name: str,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        callback_path: str = DEFAULT_CALLBACK_PATH,
        timeout: float = DEFAULT_FLOW_TIMEOUT,
        scopes: list[str] | None = None,
    ) -> TokenSet:
        """Run one authorization attempt to completion.

        Args:
            provider_name: Registered provider to authorize against
            host: Listener host (ignored when a listener is already running)
            port: Listener port (0 lets the OS choose)
            callback_path: Listener callback path
            timeout: Seconds to wait for the callback
            scopes: Scopes to request instead of the provider's configured ones

        Returns:
            TokenSet from the code exchange

        Raises:
            ProviderNotFound: Provider is not registered
            OAuthSetupFailed: Listener could not be started
            BrowserOpenFailed: Browser launcher raised
            OAuthTimeout: No callback within the timeout
            OAuthFlowError: Callback or exchange failure
        """
        provider = self.providers.get(provider_name)
        if provider is None:
            raise ProviderNotFound(
                f"Provider '{provider_name}' not found",
                {"provider": provider_name},
            )

        server = await self._ensure_server(host, port, callback_path)

        state = generate_state()
        pkce = generate_pkce_pair()
        redirect_uri = provider.redirect_uri or server.redirect_uri

        loop = asyncio.get_running_loop()
        flow_state = FlowState(
            state=state,
            code_verifier=pkce.verifier,
            provider=provider.name,
            redirect_uri=redirect_uri,
            scopes=list(scopes) if scopes else None,
            status=FlowStatus.AWAITING_BROWSER_AUTHORIZATION,
        )
        pending = _PendingFlow(flow_state=flow_state, future=loop.create_future())
        pending.timer = loop.call_later(timeout, self._on_timeout, state, timeout)
        self._pending[state] = pending

        auth_url = build_authorization_url(
            provider,
            state=state,
            code_challenge=pkce.challenge,
            redirect_uri=redirect_uri,
            scopes=scopes,
        )

        self._emit_status(f"Opening browser to authorize {provider.name}...")
        try:
            opened = self.open_browser(auth_url)
        except Exception as e:
            self._discard(state)
            raise BrowserOpenFailed(
                f"Failed to open browser: {e}",
                {"provider": provider.name, "original_error": str(e)},
            ) from e

        if not opened:
            logger.warning(f"Could not open browser. Open this URL to continue: {auth_url}")
            self._emit_status(f"Open this URL in your browser:\n  {auth_url}")

        flow_state.status = FlowStatus.AWAITING_CALLBACK
        self._emit_status("Waiting for authorization callback...")

        try:
            tokens = await pending.future
        except asyncio.CancelledError:
            self._discard(state)
            raise

        self._emit_status(f"Authorization complete for {provider.name}")
        return tokens

    def _discard(self, state: str) -> _PendingFlow | None:
        """Forget a pending flow and cancel its timer."""
        pending = self._pending.pop(state, None)
        if pending is not None and pending.timer is not None:
            pending.timer.cancel()
        return pending

    def _fail(self, pending: _PendingFlow, error: Exception, status: FlowStatus = FlowStatus.FAILED) -> None:
        pending.flow_state.status = status
        if not pending.future.done():
            pending.future.set_exception(error)

    def _on_timeout(self, state: str, timeout: float) -> None:
        pending = self._discard(state)
        if pending is None:
            return
        logger.warning(f"Authorization for {pending.flow_state.provider} timed out after {timeout:g}s")
        self._fail(
            pending,
            OAuthTimeout(
                f"Authorization timed out after {timeout:g} seconds",
                {"provider": pending.flow_state.provider, "timeout": timeout},
            ),
            status=FlowStatus.TIMED_OUT,
        )

    async def _handle_callback(self, result: CallbackResult) -> tuple[int, str]:
        """Process a callback request from the listener.

        Returns:
            HTTP status and HTML page for the browser
        """
        if result.error:
            pending = self._discard(result.state) if result.state else None
            error = OAuthAuthorizationFailed(
                f"Authorization failed: {result.error_description or result.error}",
                {
                    "provider": pending.flow_state.provider if pending else None,
                    "error": result.error,
                    "error_description": result.error_description,
                },
            )
            if pending is not None:
                self._fail(pending, error)
            return 400, render_error_page(error.message)

        if not result.code or not result.state:
            pending = self._discard(result.state) if result.state else None
            error = OAuthInvalidCallback(
                "Missing authorization code or state parameter",
                {"provider": pending.flow_state.provider if pending else None},
            )
            if pending is not None:
                self._fail(pending, error)
            return 400, render_error_page(error.message)

        # Single-use: consumed before the exchange starts
        pending = self._discard(result.state)
        if pending is None:
            logger.warning("Callback state matched no pending authorization")
            error = OAuthInvalidState("Invalid or expired state parameter")
            return 400, render_error_page(error.message)

        flow_state = pending.flow_state
        flow_state.status = FlowStatus.EXCHANGING_CODE

        try:
            provider = self.providers.get(flow_state.provider)
            if provider is None:
                raise ProviderNotFound(
                    f"Provider '{flow_state.provider}' not found",
                    {"provider": flow_state.provider},
                )

            tokens = await exchange_code_for_tokens(
                provider,
                code=result.code,
                redirect_uri=flow_state.redirect_uri,
                code_verifier=flow_state.code_verifier,
                http_client=self.http_client,
                default_scope=flow_state.scopes,
            )
        except OAuthError as e:
            logger.warning(f"Token exchange for {flow_state.provider} failed: {e}")
            self._fail(pending, e)
            return e.status_code or 400, render_error_page(e.message)
        except Exception as e:
            # The flow is no longer pending, so its waiter must be settled here
            logger.exception(f"Unexpected error completing authorization for {flow_state.provider}")
            error = OAuthFlowError(
                f"Failed to complete authorization: {e}",
                {"provider": flow_state.provider, "original_error": str(e)},
            )
            self._fail(pending, error)
            return 500, render_error_page(error.message)

        flow_state.status = FlowStatus.COMPLETED
        if not pending.future.done():
            pending.future.set_result(tokens)
        return 200, render_success_page()

    async def cleanup(self) -> None:
        """Cancel every pending flow and stop the listener."""
        for state in list(self._pending):
            pending = self._discard(state)
            if pending is not None:
                self._fail(
                    pending,
                    OAuthCancelled(
                        "Authorization cancelled",
                        {"provider": pending.flow_state.provider},
                    ),
                )

        if self._server is not None:
            await self._server.stop()
            self._server = None
