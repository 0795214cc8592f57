"""Tests for PKCE (Proof Key for Code Exchange) implementation."""

import base64
import hashlib
import re

import pytest

from mcp_oauth.oauth.pkce import (
    PKCEPair,
    base64url_encode,
    generate_code_challenge,
    generate_code_verifier,
    generate_pkce_pair,
    generate_state,
)

UNRESERVED = re.compile(r"^[A-Za-z0-9_-]+$")


class TestGenerateCodeVerifier:
    """Tests for code verifier generation."""

    def test_default_length(self):
        """32 random bytes encode to 43 characters."""
        assert len(generate_code_verifier()) == 43

    def test_maximum_bytes(self):
        """96 random bytes encode to 128 characters, the RFC maximum."""
        assert len(generate_code_verifier(96)) == 128

    def test_out_of_range_raises_error(self):
        """Byte counts outside 32-96 are rejected."""
        with pytest.raises(ValueError, match="32-96"):
            generate_code_verifier(31)
        with pytest.raises(ValueError, match="32-96"):
            generate_code_verifier(97)

    def test_uses_url_safe_characters(self):
        """Verifier is base64url without padding."""
        verifier = generate_code_verifier()
        assert UNRESERVED.match(verifier)
        assert "=" not in verifier

    def test_verifiers_are_unique(self):
        """Each call produces a fresh verifier."""
        assert len({generate_code_verifier() for _ in range(50)}) == 50


class TestGenerateCodeChallenge:
    """Tests for S256 challenge computation."""

    def test_rfc7636_appendix_b_vector(self):
        """Matches the worked example from RFC 7636 Appendix B."""
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert generate_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_matches_manual_computation(self):
        """challenge == base64url(sha256(verifier)) with padding stripped."""
        verifier = generate_code_verifier()
        expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).decode().rstrip("=")
        assert generate_code_challenge(verifier) == expected

    def test_base64url_encode_strips_padding(self):
        """Padding is removed from encoded output."""
        assert base64url_encode(b"\xff") == "_w"


class TestGeneratePkcePair:
    """Tests for pair generation."""

    def test_pair_is_consistent(self):
        """The pair's challenge is derived from its verifier."""
        pair = generate_pkce_pair()

        assert isinstance(pair, PKCEPair)
        assert pair.method == "S256"
        assert pair.challenge == generate_code_challenge(pair.verifier)


class TestGenerateState:
    """Tests for state generation."""

    def test_state_is_64_hex_chars(self):
        """Default state is 32 random bytes as hex."""
        state = generate_state()
        assert re.fullmatch(r"[0-9a-f]{64}", state)

    def test_states_are_unique(self):
        """Each flow gets a distinct state."""
        assert len({generate_state() for _ in range(50)}) == 50
