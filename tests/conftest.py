"""Shared fixtures and utilities for mcp-oauth tests."""

import asyncio
import json
import os
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from mcp_oauth.oauth.providers import ProviderConfig
from mcp_oauth.oauth.store import FileTokenStore, MemoryTokenStore


# ============================================================================
# Helpers
# ============================================================================


class FakeBrowser:
    """Stands in for webbrowser.open: records URLs instead of opening them."""

    def __init__(self, result: bool = True):
        self.result = result
        self.urls: list[str] = []
        self._opened = asyncio.Event()

    def __call__(self, url: str) -> bool:
        self.urls.append(url)
        self._opened.set()
        return self.result

    async def wait_for_urls(self, count: int = 1, timeout: float = 5.0) -> list[str]:
        """Wait until at least ``count`` authorization URLs were opened."""

        async def poll() -> None:
            while len(self.urls) < count:
                await self._opened.wait()
                self._opened.clear()

        await asyncio.wait_for(poll(), timeout)
        return list(self.urls)


def query_params(url: str) -> dict[str, str]:
    """First value of each query parameter in a URL."""
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


def form_data(request: httpx.Request) -> dict[str, str]:
    """Decode a form-encoded request body."""
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


async def hit_callback(redirect_uri: str, **params: str) -> httpx.Response:
    """Play the browser's part: follow the provider redirect to the listener."""
    async with httpx.AsyncClient(trust_env=False) as client:
        return await client.get(redirect_uri, params=params)


def json_response(status_code: int, data: Any) -> httpx.Response:
    return httpx.Response(status_code, json=data)


def mock_http_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    """AsyncClient whose requests are answered by ``handler``."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ============================================================================
# Sample Data Fixtures
# ============================================================================


@pytest.fixture
def acme_provider() -> ProviderConfig:
    """Create a public-client provider."""
    return ProviderConfig(
        name="acme",
        client_id="abc",
        authorization_url="https://acme.example/authorize",
        token_url="https://acme.example/token",
        scope=("read",),
        user_info_url="https://acme.example/userinfo",
    )


@pytest.fixture
def globex_provider() -> ProviderConfig:
    """Create a confidential-client provider."""
    return ProviderConfig(
        name="globex",
        client_id="globex-client",
        client_secret="globex-secret",
        authorization_url="https://globex.example/oauth/authorize",
        token_url="https://globex.example/oauth/token",
        scope=("profile", "email"),
        user_info_url="https://globex.example/me",
    )


@pytest.fixture
def provider_dict() -> dict[str, Any]:
    """Provider entry as it appears in a config file."""
    return {
        "name": "github",
        "client_id": "${GITHUB_CLIENT_ID}",
        "client_secret": "${GITHUB_CLIENT_SECRET}",
        "authorization_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "scope": ["read:user", "repo"],
    }


# ============================================================================
# Storage Fixtures
# ============================================================================


@pytest.fixture
def memory_store() -> MemoryTokenStore:
    return MemoryTokenStore()


@pytest.fixture
def file_store(tmp_path: Path) -> FileTokenStore:
    """Encrypted file store in a temporary directory."""
    return FileTokenStore(storage_dir=tmp_path / "tokens", encryption_key="test-key")


@pytest.fixture
def config_file(tmp_path: Path, provider_dict: dict[str, Any]) -> Path:
    """Create a valid config file."""
    config_data = {
        "providers": [provider_dict],
        "callback": {"host": "127.0.0.1", "port": 0, "timeout": 5},
        "storage": {"type": "memory"},
    }
    config_path = tmp_path / "mcp-oauth.json"
    config_path.write_text(json.dumps(config_data))
    return config_path


# ============================================================================
# Environment Fixtures
# ============================================================================


@pytest.fixture
def env_with_credentials() -> Generator[None, None, None]:
    """Set up environment with provider credentials."""
    old_env = os.environ.copy()
    os.environ["GITHUB_CLIENT_ID"] = "gh-client-id"
    os.environ["GITHUB_CLIENT_SECRET"] = "gh-client-secret"
    yield
    os.environ.clear()
    os.environ.update(old_env)


@pytest.fixture
def clean_env() -> Generator[None, None, None]:
    """Temporarily clear provider credential variables."""
    old_env = os.environ.copy()
    for key in list(os.environ.keys()):
        if key.startswith("GITHUB_"):
            del os.environ[key]
    yield
    os.environ.clear()
    os.environ.update(old_env)
