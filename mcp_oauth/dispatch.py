"""Authorization-gated tool dispatch.

A ``ToolRegistry`` holds tool definitions for an MCP server. Tools that
declare an ``AuthRequirement`` only run once ``AuthManager`` hands back a
usable authenticated context for their provider and scopes; the context
is passed to the handler so it can call the provider's API.

``call_tool`` is the transport-facing entry point: it never raises and
turns every failure into an error-flagged ``CallToolResult``.
"""

import inspect
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable

from mcp.types import CallToolResult, TextContent, Tool

from .errors import (
    AuthenticationRequired,
    InsufficientScope,
    InvalidToolDefinition,
    OAuthError,
    ToolNotFound,
)
from .oauth.manager import AuthenticatedRequest, AuthManager
from .oauth.tokens import now_ms

logger = logging.getLogger(__name__)

# Lowercase, starts with a letter, no trailing separator
TOOL_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*[a-z0-9]$")

# Executions kept for get_execution_history / get_tool_stats
MAX_HISTORY = 100


@dataclass
class AuthRequirement:
    """What a tool needs before its handler may run.

    Attributes:
        required: Whether the tool needs an authenticated session at all
        provider: Provider the session must belong to
        scopes: Scopes the session must carry
        message: Custom text for the authentication-required error
    """

    required: bool = True
    provider: str | None = None
    scopes: list[str] = field(default_factory=list)
    message: str | None = None

    def describe(self) -> str:
        """One-line summary appended to the tool description."""
        text = f"Requires {self.provider} authentication" if self.provider else "Requires authentication"
        if self.scopes:
            text += f" with scopes: {', '.join(self.scopes)}"
        return text


@dataclass
class RequestContext:
    """Passed to every handler alongside its parameters."""

    tools: dict[str, "ToolDefinition"]
    auth: AuthenticatedRequest | None = None


# handler(params, context) -> result; may be a coroutine function
ToolHandler = Callable[[dict[str, Any], RequestContext], Any]


@dataclass
class ToolDefinition:
    name: str
    description: str
    handler: ToolHandler
    input_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )
    auth: AuthRequirement | None = None

    @property
    def requires_auth(self) -> bool:
        return self.auth is not None and self.auth.required


@dataclass
class ToolExecution:
    """One recorded execution. Holds the provider name, never tokens."""

    tool_name: str
    started_at: int
    duration_ms: int
    success: bool
    provider: str | None = None
    error: str | None = None


def _format_result(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, indent=2, default=str)


class ToolRegistry:
    """Registry of tools gated by OAuth sessions.

    Usage:
        registry = ToolRegistry(manager)
        registry.register_tool(ToolDefinition(
            name="list-repos",
            description="List repositories",
            handler=list_repos,
            auth=AuthRequirement(provider="github", scopes=["repo"]),
        ))

        result = await registry.call_tool("list-repos", {})
    """

    def __init__(self, auth_manager: AuthManager, auto_authenticate: bool = False):
        """Initialize the registry.

        Args:
            auth_manager: Source of authenticated contexts
            auto_authenticate: Start the browser flow when a protected tool
                has no session, instead of failing with AuthenticationRequired
        """
        self.auth_manager = auth_manager
        self.auto_authenticate = auto_authenticate

        self._tools: dict[str, ToolDefinition] = {}
        self._history: list[ToolExecution] = []

    # Registration

    def _validate(self, definition: ToolDefinition) -> None:
        errors: list[str] = []

        name = definition.name if isinstance(definition.name, str) else ""
        if not name.strip():
            errors.append("Tool name is required")
        elif not TOOL_NAME_PATTERN.match(name):
            errors.append(
                "Tool name must be lowercase, start with a letter, and contain only "
                "letters, numbers, hyphens, and underscores"
            )

        if not isinstance(definition.description, str) or not definition.description.strip():
            errors.append("Tool description is required")

        if not callable(definition.handler):
            errors.append("Tool handler must be a function")

        if name in self._tools:
            errors.append(f"Tool '{name}' is already registered")

        auth = definition.auth
        if auth is not None:
            if auth.required and not auth.provider:
                errors.append("Provider must be specified when authentication is required")
            if not isinstance(auth.scopes, (list, tuple)):
                errors.append("Scopes must be an array of strings")
            elif not all(isinstance(scope, str) for scope in auth.scopes):
                errors.append("All scopes must be strings")

        if errors:
            raise InvalidToolDefinition(
                f"Tool definition validation failed: {', '.join(errors)}",
                {"tool_name": definition.name, "errors": errors},
            )

    def register_tool(self, definition: ToolDefinition) -> None:
        """Validate and add a tool.

        Raises:
            InvalidToolDefinition: Lists every violated rule
        """
        self._validate(definition)
        self._tools[definition.name] = definition
        logger.debug(f"Tool registered: {definition.name}")

    def register_tools(self, definitions: list[ToolDefinition]) -> None:
        for definition in definitions:
            self.register_tool(definition)

    def unregister_tool(self, name: str) -> bool:
        """Remove a tool. Returns False if it was not registered."""
        removed = self._tools.pop(name, None) is not None
        if removed:
            logger.debug(f"Tool unregistered: {name}")
        return removed

    def unregister_tools(self, names: list[str]) -> int:
        return sum(1 for name in names if self.unregister_tool(name))

    def get_tool(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def clear(self) -> None:
        count = len(self._tools)
        self._tools.clear()
        self._history.clear()
        logger.debug(f"Cleared {count} tools from registry")

    # Discovery

    def list_tools(self) -> list[Tool]:
        """MCP tool descriptors, sorted by name."""
        tools = []
        for definition in self._sorted(self._tools.values()):
            description = definition.description
            if definition.requires_auth:
                description += f"\n\n{definition.auth.describe()}"  # type: ignore[union-attr]
            tools.append(
                Tool(
                    name=definition.name,
                    description=description,
                    inputSchema=definition.input_schema,
                )
            )
        return tools

    @staticmethod
    def _sorted(definitions: Any) -> list[ToolDefinition]:
        return sorted(definitions, key=lambda d: d.name)

    def get_tools_by_provider(self, provider: str | None = None) -> list[ToolDefinition]:
        """Tools bound to a provider (all tools when provider is None)."""
        return self._sorted(
            d for d in self._tools.values()
            if provider is None or (d.auth is not None and d.auth.provider == provider)
        )

    def get_authenticated_tools(self) -> list[ToolDefinition]:
        return self._sorted(d for d in self._tools.values() if d.requires_auth)

    def get_public_tools(self) -> list[ToolDefinition]:
        return self._sorted(d for d in self._tools.values() if not d.requires_auth)

    # Execution

    async def _authorize(self, definition: ToolDefinition) -> AuthenticatedRequest:
        """Resolve the authenticated context a protected tool needs.

        Raises:
            AuthenticationRequired: No usable session (and none was obtained)
            InsufficientScope: Session lacks a required scope
        """
        auth = definition.auth
        if auth is None or auth.provider is None:
            raise AuthenticationRequired(
                f"Tool '{definition.name}' has no provider to authenticate with",
                {"tool_name": definition.name},
            )
        scopes = list(auth.scopes) or None

        try:
            context = await self.auth_manager.get_authenticated_request(auth.provider, scopes)
            if context is None and self.auto_authenticate and self.auth_manager.get_provider(auth.provider):
                logger.info(f"Tool '{definition.name}' needs {auth.provider}; starting authentication")
                await self.auth_manager.authenticate(auth.provider, scopes=scopes)
                context = await self.auth_manager.get_authenticated_request(auth.provider, scopes)
        except InsufficientScope as e:
            e.details.setdefault("tool_name", definition.name)
            raise

        if context is None:
            raise AuthenticationRequired(
                auth.message or f"Authentication required for {auth.provider} to use '{definition.name}'",
                {"tool_name": definition.name, "provider": auth.provider, "scopes": list(auth.scopes)},
            )
        return context

    async def execute_tool(self, name: str, params: dict[str, Any] | None = None) -> Any:
        """Run a tool, authorizing first when it requires a session.

        Returns:
            Whatever the handler returns

        Raises:
            ToolNotFound: Unknown tool name
            AuthorizationError: Session missing or lacking scopes
            Exception: Anything the handler raises
        """
        definition = self._tools.get(name)
        if definition is None:
            raise ToolNotFound(f"Tool '{name}' not found", {"tool_name": name})

        params = params or {}
        started_at = now_ms()
        provider = definition.auth.provider if definition.auth else None

        try:
            context = RequestContext(tools=dict(self._tools))
            if definition.requires_auth:
                context.auth = await self._authorize(definition)

            logger.debug(f"Executing tool: {name}")
            result = definition.handler(params, context)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.warning(f"Tool execution failed: {name} - {e}")
            self._record(ToolExecution(name, started_at, now_ms() - started_at, False, provider, str(e)))
            raise

        self._record(ToolExecution(name, started_at, now_ms() - started_at, True, provider))
        return result

    async def call_tool(self, name: str, params: dict[str, Any] | None = None) -> CallToolResult:
        """Run a tool and wrap the outcome for an MCP transport."""
        try:
            result = await self.execute_tool(name, params)
        except AuthenticationRequired as e:
            text = f"Error: {e.message}. Authenticate with {e.details.get('provider')} and try again."
            return CallToolResult(content=[TextContent(type="text", text=text)], isError=True)
        except InsufficientScope as e:
            required = ", ".join(e.details.get("required_scopes", []))
            text = f"Error: {e.message}. Re-authenticate to grant: {required}"
            return CallToolResult(content=[TextContent(type="text", text=text)], isError=True)
        except OAuthError as e:
            return CallToolResult(content=[TextContent(type="text", text=f"Error: {e.message}")], isError=True)
        except Exception as e:
            return CallToolResult(content=[TextContent(type="text", text=f"Error: {e}")], isError=True)

        return CallToolResult(content=[TextContent(type="text", text=_format_result(result))])

    # History

    def _record(self, execution: ToolExecution) -> None:
        self._history.append(execution)
        if len(self._history) > MAX_HISTORY:
            del self._history[: len(self._history) - MAX_HISTORY]

    def get_execution_history(self) -> list[ToolExecution]:
        return list(self._history)

    def clear_execution_history(self) -> None:
        self._history.clear()

    def get_tool_stats(self) -> dict[str, dict[str, Any]]:
        """Per-tool execution counts and last use (epoch ms) from the history."""
        stats: dict[str, dict[str, Any]] = {name: {"executions": 0, "last_used": None} for name in self._tools}
        for execution in self._history:
            entry = stats.setdefault(execution.tool_name, {"executions": 0, "last_used": None})
            entry["executions"] += 1
            entry["last_used"] = max(entry["last_used"] or 0, execution.started_at)
        return stats
