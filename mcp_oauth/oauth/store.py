"""Token storage backends.

Two backends share the ``TokenStorage`` contract:

- ``FileTokenStore``: one file per storage key under ``~/.mcp-oauth``,
  encrypted with AES-256-CBC under a key derived from stable machine
  attributes, written with owner-only permissions and guarded by file
  locks so several processes can share the directory.
- ``MemoryTokenStore``: process-local, unencrypted, for tests and
  ephemeral use.

Expired records are evicted lazily: ``retrieve`` deletes a record whose
expiry has passed and reports it as absent.
"""

import asyncio
import dataclasses
import hashlib
import json
import logging
import os
import platform
import re
import secrets
import stat
import sys
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Generator

import httpx
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from ..errors import (
    DecryptionFailed,
    EncryptionFailed,
    TokenClearFailed,
    TokenListFailed,
    TokenRemoveFailed,
    TokenRetrieveFailed,
    TokenStoreFailed,
    mask_token,
)
from .flow import request_token_refresh
from .tokens import STORAGE_NAMESPACE, TokenSet

if TYPE_CHECKING:
    from .providers import ProviderConfig

logger = logging.getLogger(__name__)

# File locking support
if sys.platform != "win32":
    import fcntl

    @contextmanager
    def _file_lock(filepath: Path, exclusive: bool = True) -> Generator[None, None, None]:
        """Acquire a file lock (Unix implementation using fcntl).

        Args:
            filepath: Path to the file to lock
            exclusive: If True, acquire exclusive lock; otherwise shared lock
        """
        lock_path = filepath.with_suffix(filepath.suffix + ".lock")
        lock_path.touch(mode=stat.S_IRUSR | stat.S_IWUSR, exist_ok=True)

        with open(lock_path, "r") as lock_file:
            try:
                if exclusive:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
                else:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_SH)
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
else:
    # Windows: use msvcrt for file locking
    import msvcrt

    @contextmanager
    def _file_lock(filepath: Path, exclusive: bool = True) -> Generator[None, None, None]:
        """Acquire a file lock (Windows implementation using msvcrt).

        msvcrt has no shared locks, so readers lock exclusively too.
        """
        lock_path = filepath.with_suffix(filepath.suffix + ".lock")
        lock_path.touch(exist_ok=True)

        with open(lock_path, "r+") as lock_file:
            try:
                msvcrt.locking(lock_file.fileno(), msvcrt.LK_LOCK, 1)
                yield
            finally:
                try:
                    msvcrt.locking(lock_file.fileno(), msvcrt.LK_UNLCK, 1)
                except OSError:
                    pass


# Default storage location
DEFAULT_STORAGE_DIR = Path.home() / ".mcp-oauth"

# Token file naming
TOKEN_FILE_SUFFIX = ".token"
LOCK_FILE_SUFFIX = ".lock"

# IV and ciphertext are stored as hex joined by this delimiter
CIPHERTEXT_DELIMITER = ":"

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def derive_machine_key() -> bytes:
    """Derive the default encryption key from machine attributes.

    Home directory, OS platform and CPU architecture are joined and hashed
    with SHA-256, giving a 32-byte AES-256 key that is stable for one user
    on one machine. Tokens copied to a different machine or home
    directory will not decrypt.

    Returns:
        32-byte key
    """
    machine_info = f"{Path.home()}-{sys.platform}-{platform.machine()}"
    return hashlib.sha256(machine_info.encode("utf-8")).digest()


def _coerce_key(key: bytes | str) -> bytes:
    """Turn caller-supplied key material into a 32-byte AES key."""
    if isinstance(key, bytes) and len(key) == 32:
        return key
    material = key if isinstance(key, bytes) else key.encode("utf-8")
    return hashlib.sha256(material).digest()


def sanitize_key(key: str) -> str:
    """Make a storage key safe to use as a file name on every platform."""
    return _UNSAFE_KEY_CHARS.sub("_", key)


class TokenStorage(ABC):
    """Storage backend for token records keyed by storage key.

    Backends that can perform the refresh grant themselves set
    ``supports_refresh = True`` and implement ``refresh_token``; the
    orchestrator checks the flag instead of probing for the method.
    """

    name: str = "storage"
    supports_refresh: bool = False

    @abstractmethod
    async def store(self, key: str, tokens: TokenSet) -> None:
        """Write a record, replacing any previous one for the key."""

    @abstractmethod
    async def retrieve(self, key: str, allow_expired: bool = False) -> TokenSet | None:
        """Read a record.

        Expired records are deleted and reported as None unless
        ``allow_expired`` is set, which lets the orchestrator see an
        expired record that may still be refreshed.
        """

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Delete a record. Absent keys are not an error."""

    @abstractmethod
    async def clear(self) -> None:
        """Delete every record this store manages."""

    @abstractmethod
    async def list_stored_providers(self) -> list[str]:
        """Provider names that currently have a stored record."""

    async def refresh_token(
        self,
        key: str,
        refresh_token: str,
        provider: "ProviderConfig",
        http_client: httpx.AsyncClient | None = None,
    ) -> TokenSet | None:
        """Run the refresh grant and replace the stored record.

        Only called when ``supports_refresh`` is True. Failures raise
        ``TokenRefreshFailed`` (or a subclass); the caller decides what
        happens to the stored record.
        """
        raise NotImplementedError(f"{type(self).__name__} does not implement refresh")


class FileTokenStore(TokenStorage):
    """Encrypted, file-per-key token storage.

    File contents are ``<iv hex>:<ciphertext hex>`` when encryption is on
    (the default) and raw JSON otherwise. Files are 0600, the directory
    0700.
    """

    name = "file"
    supports_refresh = True

    def __init__(
        self,
        storage_dir: Path | None = None,
        encrypt: bool = True,
        encryption_key: bytes | str | None = None,
    ):
        """Initialize token store.

        Args:
            storage_dir: Optional custom storage directory
            encrypt: Encrypt records at rest (default True)
            encryption_key: Optional key material replacing the machine-derived key
        """
        self.storage_dir = Path(storage_dir) if storage_dir else DEFAULT_STORAGE_DIR
        self.encrypt = encrypt
        self._key = _coerce_key(encryption_key) if encryption_key is not None else derive_machine_key()

        self._init_storage()

    def _init_storage(self) -> None:
        """Initialize storage directory with secure permissions."""
        try:
            self.storage_dir.mkdir(parents=True, exist_ok=True, mode=stat.S_IRWXU)
        except OSError as e:
            raise TokenStoreFailed(
                "Failed to create token storage directory",
                {"storage_dir": str(self.storage_dir), "original_error": str(e)},
            ) from e

        try:
            self.storage_dir.chmod(stat.S_IRWXU)
        except OSError as e:
            logger.warning(f"Could not set directory permissions: {e}")

    # Encryption

    def _encrypt(self, plaintext: str) -> str:
        """Encrypt a string with AES-256-CBC under a fresh random IV.

        Returns:
            ``"<iv hex>:<ciphertext hex>"``
        """
        try:
            iv = secrets.token_bytes(16)
            padder = padding.PKCS7(algorithms.AES.block_size).padder()
            padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
            encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
            ciphertext = encryptor.update(padded) + encryptor.finalize()
        except Exception as e:
            raise EncryptionFailed(
                "Failed to encrypt token data", {"original_error": str(e)}
            ) from e

        return f"{iv.hex()}{CIPHERTEXT_DELIMITER}{ciphertext.hex()}"

    def _decrypt(self, data: str) -> str:
        """Decrypt ``"<iv hex>:<ciphertext hex>"`` back to plaintext.

        Raises:
            DecryptionFailed: Malformed data, wrong key or corrupted file
        """
        try:
            iv_hex, _, ciphertext_hex = data.strip().partition(CIPHERTEXT_DELIMITER)
            if not iv_hex or not ciphertext_hex:
                raise ValueError("Invalid encrypted data format")

            iv = bytes.fromhex(iv_hex)
            ciphertext = bytes.fromhex(ciphertext_hex)
            decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            return (unpadder.update(padded) + unpadder.finalize()).decode("utf-8")
        except Exception as e:
            raise DecryptionFailed(
                "Failed to decrypt token data. The encryption key may have changed.",
                {"original_error": str(e)},
            ) from e

    # File handling

    def _token_path(self, key: str) -> Path:
        return self.storage_dir / f"{sanitize_key(key)}{TOKEN_FILE_SUFFIX}"

    def _write_record(self, key: str, tokens: TokenSet) -> None:
        """Serialize, encrypt and write a record with file locking."""
        filepath = self._token_path(key)
        payload = json.dumps(tokens.to_dict())
        data = self._encrypt(payload) if self.encrypt else payload

        with _file_lock(filepath, exclusive=True):
            # Create with 0600 so the record is never readable by others
            fd = os.open(filepath, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, stat.S_IRUSR | stat.S_IWUSR)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data)
            try:
                filepath.chmod(stat.S_IRUSR | stat.S_IWUSR)
            except OSError as e:
                logger.warning(f"Could not set file permissions: {e}")

    def _read_record(self, key: str) -> TokenSet | None:
        """Read and decrypt a record with a shared lock."""
        filepath = self._token_path(key)

        if not filepath.exists():
            return None

        with _file_lock(filepath, exclusive=False):
            try:
                data = filepath.read_text(encoding="utf-8")
            except FileNotFoundError:
                return None

        if self.encrypt:
            plaintext = self._decrypt(data)
            try:
                return TokenSet.from_dict(json.loads(plaintext))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                raise DecryptionFailed(
                    "Decrypted token data is not a valid token record",
                    {"key": mask_token(key), "original_error": str(e)},
                ) from e

        return TokenSet.from_dict(json.loads(data))

    def _delete_record(self, key: str) -> None:
        filepath = self._token_path(key)
        with _file_lock(filepath, exclusive=True):
            filepath.unlink(missing_ok=True)

    def _clear_files(self) -> None:
        for path in self.storage_dir.iterdir():
            if not (path.name.endswith(TOKEN_FILE_SUFFIX) or path.name.endswith(TOKEN_FILE_SUFFIX + LOCK_FILE_SUFFIX)):
                continue
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                # Best effort: keep clearing the remaining files
                logger.debug(f"Could not remove {path.name}: {e}")

    def _list_files(self) -> list[str]:
        prefix = sanitize_key(f"{STORAGE_NAMESPACE}:")
        names = []
        for path in sorted(self.storage_dir.iterdir()):
            if not path.name.endswith(TOKEN_FILE_SUFFIX):
                continue
            name = path.name[: -len(TOKEN_FILE_SUFFIX)]
            names.append(name[len(prefix):] if name.startswith(prefix) else name)
        return names

    # TokenStorage contract

    async def store(self, key: str, tokens: TokenSet) -> None:
        try:
            await asyncio.to_thread(self._write_record, key, tokens)
        except TokenStoreFailed:
            raise
        except Exception as e:
            raise TokenStoreFailed(
                "Failed to store tokens",
                {"key": mask_token(key), "original_error": str(e)},
            ) from e

        logger.debug(f"Stored tokens for {mask_token(key)}")

    async def retrieve(self, key: str, allow_expired: bool = False) -> TokenSet | None:
        try:
            tokens = await asyncio.to_thread(self._read_record, key)
        except TokenRetrieveFailed:
            raise
        except Exception as e:
            raise TokenRetrieveFailed(
                "Failed to retrieve tokens",
                {"key": mask_token(key), "original_error": str(e)},
            ) from e

        if tokens is None:
            return None

        if tokens.is_expired() and not allow_expired:
            logger.debug(f"Evicting expired tokens for {mask_token(key)}")
            await self.remove(key)
            return None

        return tokens

    async def remove(self, key: str) -> None:
        try:
            await asyncio.to_thread(self._delete_record, key)
        except Exception as e:
            raise TokenRemoveFailed(
                "Failed to remove tokens",
                {"key": mask_token(key), "original_error": str(e)},
            ) from e

    async def clear(self) -> None:
        try:
            await asyncio.to_thread(self._clear_files)
        except FileNotFoundError:
            return
        except OSError as e:
            raise TokenClearFailed(
                "Failed to clear all tokens", {"original_error": str(e)}
            ) from e

        logger.info("Cleared all stored tokens")

    async def list_stored_providers(self) -> list[str]:
        try:
            return await asyncio.to_thread(self._list_files)
        except FileNotFoundError:
            return []
        except OSError as e:
            raise TokenListFailed(
                "Failed to list stored providers", {"original_error": str(e)}
            ) from e

    async def refresh_token(
        self,
        key: str,
        refresh_token: str,
        provider: "ProviderConfig",
        http_client: httpx.AsyncClient | None = None,
    ) -> TokenSet | None:
        """Refresh via the provider's token endpoint and store the result."""
        if not refresh_token or not provider.token_url:
            return None

        previous = await self.retrieve(key, allow_expired=True)
        new_tokens = await request_token_refresh(
            provider, refresh_token, previous=previous, http_client=http_client
        )
        await self.store(key, new_tokens)
        return new_tokens


class MemoryTokenStore(TokenStorage):
    """Process-local token storage without encryption or persistence."""

    name = "memory"

    def __init__(self) -> None:
        self._tokens: dict[str, TokenSet] = {}

    @staticmethod
    def _copy(tokens: TokenSet) -> TokenSet:
        scope = list(tokens.scope) if tokens.scope is not None else None
        return dataclasses.replace(tokens, scope=scope)

    async def store(self, key: str, tokens: TokenSet) -> None:
        self._tokens[key] = self._copy(tokens)

    async def retrieve(self, key: str, allow_expired: bool = False) -> TokenSet | None:
        tokens = self._tokens.get(key)
        if tokens is None:
            return None

        if tokens.is_expired() and not allow_expired:
            del self._tokens[key]
            return None

        return self._copy(tokens)

    async def remove(self, key: str) -> None:
        self._tokens.pop(key, None)

    async def clear(self) -> None:
        self._tokens.clear()

    async def list_stored_providers(self) -> list[str]:
        prefix = f"{STORAGE_NAMESPACE}:"
        return [key[len(prefix):] if key.startswith(prefix) else key for key in self._tokens]


def create_token_store(
    use_memory: bool = False,
    storage_dir: Path | None = None,
    encrypt: bool = True,
    encryption_key: bytes | str | None = None,
) -> TokenStorage:
    """Create a token store backend.

    Args:
        use_memory: Return a MemoryTokenStore instead of a file store
        storage_dir: Directory for the file store
        encrypt: Encrypt file store records at rest
        encryption_key: Optional key material for the file store
    """
    if use_memory:
        return MemoryTokenStore()
    return FileTokenStore(storage_dir=storage_dir, encrypt=encrypt, encryption_key=encryption_key)
