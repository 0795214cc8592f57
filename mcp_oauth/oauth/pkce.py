"""PKCE (Proof Key for Code Exchange) implementation per RFC 7636.

Every authorization attempt gets a fresh verifier/challenge pair and a
fresh state value. The challenge travels with the authorization request,
the verifier with the later token request, binding the two together.
"""

import base64
import hashlib
import secrets
from dataclasses import dataclass


# Random bytes behind each generated value
VERIFIER_BYTES = 32
STATE_BYTES = 32


@dataclass
class PKCEPair:
    """PKCE code verifier and challenge pair.

    The verifier is a cryptographically random string sent in the token request.
    The challenge is a SHA256 hash of the verifier sent in the authorization request.
    """

    verifier: str
    challenge: str
    method: str = "S256"


def base64url_encode(data: bytes) -> str:
    """Base64URL-encode bytes without padding."""
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def generate_code_verifier(num_bytes: int = VERIFIER_BYTES) -> str:
    """Generate a cryptographically random code verifier.

    32 random bytes encode to a 43-character verifier, the minimum length
    RFC 7636 Section 4.1 allows.

    Args:
        num_bytes: Number of random bytes (must be 32-96)

    Returns:
        Base64URL-encoded verifier without padding

    Raises:
        ValueError: If the resulting verifier would fall outside 43-128 chars
    """
    if num_bytes < 32 or num_bytes > 96:
        raise ValueError(f"Code verifier needs 32-96 random bytes, got {num_bytes}")

    return base64url_encode(secrets.token_bytes(num_bytes))


def generate_code_challenge(verifier: str) -> str:
    """Generate S256 code challenge from verifier.

    Per RFC 7636 Section 4.2:
    code_challenge = BASE64URL(SHA256(code_verifier))

    Args:
        verifier: The code verifier string

    Returns:
        Base64URL-encoded SHA256 hash of the verifier
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64url_encode(digest)


def generate_pkce_pair() -> PKCEPair:
    """Generate a complete PKCE pair (verifier + challenge)."""
    verifier = generate_code_verifier()
    return PKCEPair(verifier=verifier, challenge=generate_code_challenge(verifier))


def generate_state(num_bytes: int = STATE_BYTES) -> str:
    """Generate a cryptographically random state parameter.

    The state correlates the browser callback with the flow that started
    it and protects against CSRF.

    Returns:
        Hex string (64 characters for the default 32 bytes)
    """
    return secrets.token_hex(num_bytes)
