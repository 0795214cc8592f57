"""Config discovery and loading for mcp-oauth."""

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from dotenv import load_dotenv

from .oauth.manager import AuthManager, CallbackSettings
from .oauth.providers import ProviderConfig, validate_provider
from .oauth.store import TokenStorage, create_token_store

CONFIG_FILENAME = "mcp-oauth.json"

# Directories to search for the config file, in priority order
CONFIG_SEARCH_DIRS = [
    Path("."),                      # Current directory
    Path(".mcp-oauth"),             # Project-level directory
    Path.home() / ".mcp-oauth",     # User-level directory
]

# Env file search paths in priority order
ENV_SEARCH_PATHS = [
    Path(".env"),
    Path.home() / ".mcp-oauth" / ".env",
]


def _resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} patterns in a string from environment variables.

    Handles:
    - Full replacement: "${VAR}" -> "value"
    - Partial replacement: "prefix_${VAR}_suffix" -> "prefix_value_suffix"
    - Multiple vars: "${VAR1}_${VAR2}" -> "value1_value2"
    - Missing vars resolve to empty string
    """
    if "${" not in value:
        return value

    result = value
    for match in re.finditer(r'\$\{([^}]+)\}', value):
        env_var = match.group(1)
        env_value = os.environ.get(env_var, "")
        result = result.replace(match.group(0), env_value)
    return result


def _resolve_tree(value: Any) -> Any:
    """Apply ``_resolve_env_vars`` to every string in a JSON structure."""
    if isinstance(value, str):
        return _resolve_env_vars(value)
    if isinstance(value, list):
        return [_resolve_tree(item) for item in value]
    if isinstance(value, dict):
        return {key: _resolve_tree(item) for key, item in value.items()}
    return value


@dataclass
class StorageSettings:
    """Token storage selection."""

    type: str = "file"
    dir: Path | None = None
    encrypt: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StorageSettings":
        storage_dir = data.get("dir")
        storage_type = data.get("type", "file")
        if storage_type not in ("file", "memory"):
            raise ValueError(f"Unknown storage type '{storage_type}' (expected 'file' or 'memory')")
        return cls(
            type=storage_type,
            dir=Path(storage_dir).expanduser() if storage_dir else None,
            encrypt=bool(data.get("encrypt", True)),
        )

    def create_store(self) -> TokenStorage:
        return create_token_store(
            use_memory=self.type == "memory",
            storage_dir=self.dir,
            encrypt=self.encrypt,
        )


@dataclass
class AuthConfig:
    """Complete mcp-oauth configuration."""

    providers: list[ProviderConfig] = field(default_factory=list)
    callback: CallbackSettings = field(default_factory=CallbackSettings)
    auto_refresh: bool = True
    storage: StorageSettings = field(default_factory=StorageSettings)
    config_path: Path | None = None
    env_path: Path | None = None

    def get_provider(self, name: str) -> ProviderConfig | None:
        for provider in self.providers:
            if provider.name == name:
                return provider
        return None

    def create_manager(
        self,
        token_storage: TokenStorage | None = None,
        on_status: Callable[[str], None] | None = None,
        **kwargs: Any,
    ) -> AuthManager:
        """Build an AuthManager from this configuration.

        Extra keyword arguments are passed to ``AuthManager``.
        """
        return AuthManager(
            providers=list(self.providers),
            token_storage=token_storage if token_storage is not None else self.storage.create_store(),
            auto_refresh=self.auto_refresh,
            callback=self.callback,
            on_status=on_status,
            **kwargs,
        )


def find_config_file(explicit_path: Path | None = None) -> Path | None:
    """Find the config file, checking project then user level."""
    if explicit_path:
        if explicit_path.exists():
            return explicit_path
        return None

    for search_dir in CONFIG_SEARCH_DIRS:
        candidate = search_dir / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
    return None


def find_env_file(explicit_path: Path | None = None) -> Path | None:
    """Find the .env file, checking project then user level."""
    if explicit_path:
        if explicit_path.exists():
            return explicit_path
        return None

    for path in ENV_SEARCH_PATHS:
        if path.exists():
            return path
    return None


def parse_providers(data: Any) -> list[ProviderConfig]:
    """Parse and validate the ``providers`` section.

    Accepts a list of provider objects, or a mapping of name to provider
    object (the key supplies the name).

    Raises:
        InvalidProvider: If any provider fails validation
    """
    if isinstance(data, dict):
        entries = [{**entry, "name": entry.get("name") or name} for name, entry in data.items()]
    else:
        entries = list(data or [])

    providers = []
    for entry in entries:
        provider = ProviderConfig.from_dict(entry)
        validate_provider(provider)
        providers.append(provider)
    return providers


def parse_config(data: dict[str, Any]) -> AuthConfig:
    """Build an AuthConfig from already-loaded JSON (``${VAR}`` resolved here)."""
    data = _resolve_tree(data)
    return AuthConfig(
        providers=parse_providers(data.get("providers", [])),
        callback=CallbackSettings.from_dict(data.get("callback") or {}),
        auto_refresh=bool(data.get("auto_refresh", True)),
        storage=StorageSettings.from_dict(data.get("storage") or {}),
    )


def load_config(
    config_path: Path | None = None,
    env_path: Path | None = None,
) -> AuthConfig:
    """Load configuration from a discovered or explicit path.

    Args:
        config_path: Explicit path to config file (optional)
        env_path: Explicit path to .env file (optional)

    Returns:
        AuthConfig with validated providers

    Raises:
        FileNotFoundError: If no config file is found
        json.JSONDecodeError: If the config file is invalid JSON
        InvalidProvider: If a provider fails validation
    """
    # Find and load .env file first
    env_file = find_env_file(env_path)
    if env_file:
        load_dotenv(env_file)

    config_file = find_config_file(config_path)
    if config_file is None:
        searched = ", ".join(str(p / CONFIG_FILENAME) for p in CONFIG_SEARCH_DIRS)
        raise FileNotFoundError(
            f"No mcp-oauth config file found.\n\n"
            f"Searched:\n"
            f"  {config_path if config_path else searched}\n\n"
            f"Create a config file with your OAuth providers. Example ({CONFIG_FILENAME}):\n\n"
            f'{{\n  "providers": [\n'
            f"    {{\n"
            f'      "name": "github",\n'
            f'      "client_id": "${{GITHUB_CLIENT_ID}}",\n'
            f'      "client_secret": "${{GITHUB_CLIENT_SECRET}}",\n'
            f'      "authorization_url": "https://github.com/login/oauth/authorize",\n'
            f'      "token_url": "https://github.com/login/oauth/access_token",\n'
            f'      "scope": ["read:user", "repo"]\n'
            f"    }}\n  ]\n}}"
        )

    with open(config_file) as f:
        data = json.load(f)

    config = parse_config(data)
    config.config_path = config_file
    config.env_path = env_file
    return config
