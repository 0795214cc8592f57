"""Tests for output module."""

import json

import pytest

from mcp_oauth.errors import InsufficientScope, mask_token
from mcp_oauth.output import (
    OutputHandler,
    format_error_json,
    format_json,
)


class TestFormatJson:
    """Tests for format_json function."""

    def test_format_success(self):
        """Test formatting successful response."""
        parsed = json.loads(format_json({"key": "value"}))
        assert parsed["success"] is True
        assert parsed["data"] == {"key": "value"}

    def test_format_success_with_list(self):
        """Test formatting list data."""
        parsed = json.loads(format_json([1, 2, 3]))
        assert parsed["data"] == [1, 2, 3]

    def test_format_success_false(self):
        """Test formatting with success=False."""
        error_data = {"success": False, "error": "message"}
        assert json.loads(format_json(error_data, success=False)) == error_data


class TestFormatErrorJson:
    """Tests for format_error_json function."""

    def test_oauth_error_code_and_details(self):
        """Test that OAuth errors carry their code and details."""
        error = InsufficientScope(
            "Token does not have required scopes: write",
            {"provider": "acme", "required_scopes": ["write"], "available_scopes": ["read"]},
        )

        parsed = json.loads(format_error_json(error, help_text="Run: mcp-oauth login acme"))

        assert parsed["success"] is False
        assert parsed["error"]["type"] == "INSUFFICIENT_SCOPE"
        assert parsed["error"]["message"] == "Token does not have required scopes: write"
        assert parsed["error"]["details"]["available_scopes"] == ["read"]
        assert parsed["error"]["help"] == "Run: mcp-oauth login acme"

    def test_plain_exception(self):
        """Test that other exceptions use their class name."""
        parsed = json.loads(format_error_json(ValueError("bad value")))

        assert parsed["error"]["type"] == "ValueError"
        assert parsed["error"]["message"] == "bad value"
        assert "details" not in parsed["error"]
        assert "traceback" not in parsed["error"]

    def test_explicit_type_wins(self):
        """Test that an explicit error type overrides the code."""
        parsed = json.loads(format_error_json(ValueError("x"), error_type="ConfigError"))
        assert parsed["error"]["type"] == "ConfigError"

    def test_masked_values_stay_masked(self):
        """Test that masked secrets are printed as given."""
        error = InsufficientScope("denied", {"key": mask_token("secret-token-value")})
        output = format_error_json(error)
        assert "secret-token-value" not in output
        assert "secr...alue" in output


class TestOutputHandler:
    """Tests for OutputHandler class."""

    def test_json_mode_success(self, capsys):
        """Test success output in JSON mode."""
        OutputHandler(json_mode=True).success({"key": "value"}, "Human message")
        parsed = json.loads(capsys.readouterr().out)
        assert parsed["data"] == {"key": "value"}

    def test_human_mode_success(self, capsys):
        """Test success output in human mode."""
        OutputHandler(json_mode=False).success({"key": "value"}, "Human message")
        assert capsys.readouterr().out.strip() == "Human message"

    def test_status_goes_to_stderr(self, capsys):
        """Test that progress messages keep stdout clean."""
        OutputHandler(json_mode=True).status("Waiting for authorization callback...")
        captured = capsys.readouterr()
        assert captured.out == ""
        assert "Waiting" in captured.err

    def test_json_mode_error_exits(self, capsys):
        """Test that errors exit with status 1."""
        with pytest.raises(SystemExit) as exc_info:
            OutputHandler(json_mode=True).error(ValueError("boom"))

        assert exc_info.value.code == 1
        assert json.loads(capsys.readouterr().out)["error"]["message"] == "boom"

    def test_human_mode_error(self, capsys):
        """Test that human errors go to stderr with help text."""
        with pytest.raises(SystemExit):
            OutputHandler(json_mode=False).error(ValueError("boom"), help_text="Try again")

        captured = capsys.readouterr()
        assert "Error: boom" in captured.err
        assert "Try again" in captured.err

    def test_table_human(self, capsys):
        """Test table rendering in human mode."""
        OutputHandler(json_mode=False).table(["Provider", "Authenticated"], [["acme", "yes"]])
        out = capsys.readouterr().out
        assert "Provider" in out
        assert "acme" in out

    def test_table_json(self, capsys):
        """Test table rendering in JSON mode."""
        OutputHandler(json_mode=True).table(["Provider", "Authenticated"], [["acme", "yes"]])
        parsed = json.loads(capsys.readouterr().out)
        assert parsed["data"] == [{"Provider": "acme", "Authenticated": "yes"}]
