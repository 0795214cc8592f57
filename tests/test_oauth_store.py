"""Tests for token storage backends."""

import json
import os
import stat
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import form_data, json_response, mock_http_client
from mcp_oauth.errors import (
    DecryptionFailed,
    TokenRefreshFailed,
    TokenRetrieveFailed,
    TokenStoreFailed,
)
from mcp_oauth.oauth.store import (
    FileTokenStore,
    MemoryTokenStore,
    create_token_store,
    derive_machine_key,
    sanitize_key,
)
from mcp_oauth.oauth.tokens import TokenSet, create_storage_key, now_ms

KEY = create_storage_key("acme")


def make_tokens(**overrides) -> TokenSet:
    data = {
        "access_token": "access-token-value",
        "refresh_token": "refresh-token-value",
        "expires_at": now_ms() + 3_600_000,
        "token_type": "Bearer",
        "scope": ["read", "write"],
    }
    data.update(overrides)
    return TokenSet(**data)


class TestMachineKey:
    """Tests for key derivation."""

    def test_key_is_32_bytes_and_stable(self):
        """The machine key is a full AES-256 key and deterministic."""
        key = derive_machine_key()
        assert len(key) == 32
        assert derive_machine_key() == key

    def test_key_depends_on_home(self, tmp_path):
        """A different home directory yields a different key."""
        original = derive_machine_key()
        with patch("mcp_oauth.oauth.store.Path.home", return_value=tmp_path):
            assert derive_machine_key() != original

    def test_sanitize_key(self):
        """Unsafe filename characters become underscores."""
        assert sanitize_key("mcp-oauth:github") == "mcp-oauth_github"
        assert sanitize_key("a/b\\c") == "a_b_c"


class TestFileTokenStore:
    """Tests for FileTokenStore."""

    @pytest.mark.asyncio
    async def test_store_and_retrieve(self, file_store):
        """A stored record reads back deep-equal."""
        tokens = make_tokens()
        await file_store.store(KEY, tokens)

        assert await file_store.retrieve(KEY) == tokens

    @pytest.mark.asyncio
    async def test_retrieve_missing(self, file_store):
        """Absent keys return None."""
        assert await file_store.retrieve(KEY) is None

    @pytest.mark.asyncio
    async def test_encryption_at_rest(self, file_store):
        """File contents are iv:ciphertext hex, never plaintext tokens."""
        await file_store.store(KEY, make_tokens())

        path = file_store.storage_dir / "mcp-oauth_acme.token"
        content = path.read_text()

        assert "access-token-value" not in content
        iv_hex, _, ciphertext_hex = content.partition(":")
        assert len(bytes.fromhex(iv_hex)) == 16
        assert len(bytes.fromhex(ciphertext_hex)) % 16 == 0

    @pytest.mark.asyncio
    async def test_fresh_iv_per_write(self, file_store):
        """Writing the same record twice produces different ciphertext."""
        tokens = make_tokens()
        path = file_store.storage_dir / "mcp-oauth_acme.token"

        await file_store.store(KEY, tokens)
        first = path.read_text()
        await file_store.store(KEY, tokens)

        assert path.read_text() != first

    @pytest.mark.asyncio
    async def test_unencrypted_mode_writes_json(self, tmp_path):
        """With encryption off the file holds raw JSON."""
        store = FileTokenStore(storage_dir=tmp_path, encrypt=False)
        await store.store(KEY, make_tokens())

        data = json.loads((tmp_path / "mcp-oauth_acme.token").read_text())
        assert data["access_token"] == "access-token-value"
        assert await store.retrieve(KEY) == TokenSet.from_dict(data)

    @pytest.mark.asyncio
    async def test_wrong_key_fails_decryption(self, tmp_path):
        """A store with a different key cannot read the record."""
        await FileTokenStore(storage_dir=tmp_path, encryption_key="key-one").store(KEY, make_tokens())

        other = FileTokenStore(storage_dir=tmp_path, encryption_key="key-two")
        with pytest.raises(DecryptionFailed) as exc_info:
            await other.retrieve(KEY)

        assert isinstance(exc_info.value, TokenRetrieveFailed)
        assert exc_info.value.code == "DECRYPTION_FAILED"

    @pytest.mark.asyncio
    async def test_corrupted_file_fails_decryption(self, file_store):
        """Garbage in a token file surfaces as DecryptionFailed."""
        (file_store.storage_dir / "mcp-oauth_acme.token").write_text("not-encrypted")

        with pytest.raises(DecryptionFailed):
            await file_store.retrieve(KEY)

    @pytest.mark.asyncio
    async def test_expired_record_is_evicted(self, file_store):
        """retrieve deletes and hides a record once it has expired."""
        await file_store.store(KEY, make_tokens(expires_at=now_ms() - 1))

        assert await file_store.retrieve(KEY) is None
        assert not (file_store.storage_dir / "mcp-oauth_acme.token").exists()

    @pytest.mark.asyncio
    async def test_allow_expired_returns_record(self, file_store):
        """allow_expired exposes an expired record for refresh."""
        tokens = make_tokens(expires_at=now_ms() - 1)
        await file_store.store(KEY, tokens)

        assert await file_store.retrieve(KEY, allow_expired=True) == tokens
        assert (file_store.storage_dir / "mcp-oauth_acme.token").exists()

    @pytest.mark.asyncio
    async def test_record_without_expiry_never_evicted(self, file_store):
        """No expires_at means the record stays."""
        tokens = make_tokens(expires_at=None)
        await file_store.store(KEY, tokens)
        assert await file_store.retrieve(KEY) == tokens

    @pytest.mark.asyncio
    async def test_remove_is_idempotent(self, file_store):
        """Removing twice, or removing an absent key, never raises."""
        await file_store.store(KEY, make_tokens())

        await file_store.remove(KEY)
        await file_store.remove(KEY)

        assert await file_store.retrieve(KEY) is None

    @pytest.mark.asyncio
    async def test_clear_removes_token_files_only(self, file_store):
        """clear deletes every token file and leaves other files alone."""
        await file_store.store(create_storage_key("a"), make_tokens())
        await file_store.store(create_storage_key("b"), make_tokens())
        unrelated = file_store.storage_dir / "notes.txt"
        unrelated.write_text("keep")

        await file_store.clear()

        assert await file_store.list_stored_providers() == []
        assert unrelated.exists()

    @pytest.mark.asyncio
    async def test_list_stored_providers(self, file_store):
        """Provider names are recovered from file names."""
        await file_store.store(create_storage_key("github"), make_tokens())
        await file_store.store(create_storage_key("google"), make_tokens())

        assert await file_store.list_stored_providers() == ["github", "google"]

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    @pytest.mark.asyncio
    async def test_permissions(self, file_store):
        """Directory is 0700 and token files are 0600."""
        await file_store.store(KEY, make_tokens())

        dir_mode = stat.S_IMODE(os.stat(file_store.storage_dir).st_mode)
        file_mode = stat.S_IMODE(os.stat(file_store.storage_dir / "mcp-oauth_acme.token").st_mode)

        assert dir_mode == 0o700
        assert file_mode == 0o600

    def test_unwritable_directory_raises(self, tmp_path):
        """A storage dir that cannot be created raises TokenStoreFailed."""
        blocker = tmp_path / "file"
        blocker.write_text("x")

        with pytest.raises(TokenStoreFailed):
            FileTokenStore(storage_dir=blocker / "tokens")

    @pytest.mark.asyncio
    async def test_refresh_token_replaces_record(self, file_store, acme_provider):
        """The store-level refresh calls the token endpoint and persists the result."""
        await file_store.store(KEY, make_tokens(expires_at=now_ms() - 1))
        requests = []

        def handler(request):
            requests.append(form_data(request))
            return json_response(200, {"access_token": "refreshed", "expires_in": 60})

        async with mock_http_client(handler) as client:
            new_tokens = await file_store.refresh_token(
                KEY, "refresh-token-value", acme_provider, http_client=client
            )

        assert new_tokens.access_token == "refreshed"
        assert new_tokens.refresh_token == "refresh-token-value"
        assert new_tokens.scope == ["read", "write"]
        assert await file_store.retrieve(KEY) == new_tokens
        assert requests[0]["grant_type"] == "refresh_token"
        assert requests[0]["client_id"] == "abc"

    @pytest.mark.asyncio
    async def test_refresh_token_propagates_failure(self, file_store, acme_provider):
        """Refresh errors are raised; the caller decides about the record."""
        await file_store.store(KEY, make_tokens())

        async with mock_http_client(lambda r: json_response(400, {"error": "invalid_grant"})) as client:
            with pytest.raises(TokenRefreshFailed):
                await file_store.refresh_token(KEY, "refresh-token-value", acme_provider, http_client=client)

        assert await file_store.retrieve(KEY) is not None


class TestMemoryTokenStore:
    """Tests for MemoryTokenStore."""

    @pytest.mark.asyncio
    async def test_store_and_retrieve(self, memory_store):
        """Records read back equal."""
        tokens = make_tokens()
        await memory_store.store(KEY, tokens)
        assert await memory_store.retrieve(KEY) == tokens

    @pytest.mark.asyncio
    async def test_returns_copies(self, memory_store):
        """Mutating a returned record does not change the stored one."""
        await memory_store.store(KEY, make_tokens())

        retrieved = await memory_store.retrieve(KEY)
        retrieved.scope.append("admin")

        assert (await memory_store.retrieve(KEY)).scope == ["read", "write"]

    @pytest.mark.asyncio
    async def test_expired_record_is_evicted(self, memory_store):
        """Expired records are removed on read."""
        await memory_store.store(KEY, make_tokens(expires_at=now_ms() - 1))

        assert await memory_store.retrieve(KEY) is None
        assert await memory_store.retrieve(KEY, allow_expired=True) is None

    @pytest.mark.asyncio
    async def test_remove_clear_and_list(self, memory_store):
        """remove and clear delete records; list strips the namespace."""
        await memory_store.store(create_storage_key("a"), make_tokens())
        await memory_store.store(create_storage_key("b"), make_tokens())

        await memory_store.remove(create_storage_key("a"))
        await memory_store.remove(create_storage_key("a"))
        assert await memory_store.list_stored_providers() == ["b"]

        await memory_store.clear()
        assert await memory_store.list_stored_providers() == []

    def test_does_not_support_refresh(self, memory_store):
        """The memory store leaves refresh to the orchestrator."""
        assert memory_store.supports_refresh is False


class TestCreateTokenStore:
    """Tests for the factory."""

    def test_memory(self):
        """use_memory selects the memory backend."""
        assert isinstance(create_token_store(use_memory=True), MemoryTokenStore)

    def test_file(self, tmp_path: Path):
        """The default is the encrypted file backend."""
        store = create_token_store(storage_dir=tmp_path, encryption_key="k")
        assert isinstance(store, FileTokenStore)
        assert store.encrypt is True
        assert store.supports_refresh is True
