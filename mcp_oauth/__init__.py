"""mcp-oauth - OAuth 2.0 PKCE authentication for MCP servers."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("mcp-oauth")
except PackageNotFoundError:
    __version__ = "0.1.0"  # Fallback for development

__all__ = [
    "__version__",
    # Core
    "AuthManager",
    "ProviderConfig",
    "TokenSet",
    "OAuthError",
    # Configuration
    "AuthConfig",
    "load_config",
    # Dispatch
    "ToolRegistry",
    "ToolDefinition",
    "AuthRequirement",
    "OutputHandler",
]

# Lazy imports to avoid circular dependencies
def __getattr__(name: str) -> object:
    """Lazy import module components."""
    if name in ("AuthManager", "ProviderConfig", "TokenSet"):
        from .oauth import AuthManager, ProviderConfig, TokenSet
        return {"AuthManager": AuthManager, "ProviderConfig": ProviderConfig, "TokenSet": TokenSet}[name]
    elif name == "OAuthError":
        from .errors import OAuthError
        return OAuthError
    elif name in ("AuthConfig", "load_config"):
        from .config import AuthConfig, load_config
        return {"AuthConfig": AuthConfig, "load_config": load_config}[name]
    elif name in ("ToolRegistry", "ToolDefinition", "AuthRequirement"):
        from .dispatch import AuthRequirement, ToolDefinition, ToolRegistry
        return {"ToolRegistry": ToolRegistry, "ToolDefinition": ToolDefinition, "AuthRequirement": AuthRequirement}[name]
    elif name == "OutputHandler":
        from .output import OutputHandler
        return OutputHandler
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
