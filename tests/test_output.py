"""Tests for output module."""

import json

import pytest

from mirim_oauth.errors import AuthorizationError, RequestFailedError, StateMismatchError
from mirim_oauth.output import OutputHandler, format_error_json, format_json


class TestFormatJson:
    """Tests for format_json function."""

    def test_format_success(self):
        """Test formatting successful response."""
        parsed = json.loads(format_json({"key": "value"}))
        assert parsed == {"success": True, "data": {"key": "value"}}

    def test_format_success_wraps_lists(self):
        assert json.loads(format_json([1, 2, 3])) == {"success": True, "data": [1, 2, 3]}


class TestFormatErrorJson:
    """Tests for format_error_json function."""

    def test_plain_exception(self):
        parsed = json.loads(format_error_json(ValueError("bad"), help_text="Try again"))
        assert parsed == {
            "success": False,
            "error": {"type": "ValueError", "message": "bad", "help": "Try again"},
        }

    def test_classified_error_carries_kind_and_code(self):
        parsed = json.loads(format_error_json(RequestFailedError(404, "Not Found")))
        error = parsed["error"]
        assert error["type"] == "RequestFailedError"
        assert error["kind"] == "RequestFailed"
        assert error["code"] == 404
        assert error["message"] == "Request failed with status 404: Not Found (Code: 404)"

    def test_error_type_override(self):
        parsed = json.loads(format_error_json(StateMismatchError("nope"), error_type="Custom"))
        assert parsed["error"]["type"] == "Custom"
        assert parsed["error"]["kind"] == "StateMismatch"
        assert parsed["error"]["code"] is None


class TestErrorMessages:
    def test_authorization_error_message(self):
        error = AuthorizationError("access_denied", "User denied")
        assert str(error) == "Authentication failed: access_denied: User denied"
        assert error.kind.value == "CallbackError"


class TestOutputHandler:
    """Tests for OutputHandler class."""

    def test_json_success(self, capsys):
        OutputHandler(json_mode=True).success({"key": "value"})
        assert json.loads(capsys.readouterr().out)["data"] == {"key": "value"}

    def test_human_success_with_message(self, capsys):
        OutputHandler(json_mode=False).success({"key": "value"}, human_message="Done")
        assert capsys.readouterr().out.strip() == "Done"

    def test_human_success_without_message_prints_data(self, capsys):
        OutputHandler(json_mode=False).success({"key": "value"})
        assert json.loads(capsys.readouterr().out) == {"key": "value"}

    def test_json_error_exits(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            OutputHandler(json_mode=True).error(ValueError("bad"))
        assert exc_info.value.code == 1
        assert json.loads(capsys.readouterr().out)["success"] is False

    def test_human_error_to_stderr(self, capsys):
        with pytest.raises(SystemExit):
            OutputHandler(json_mode=False).error(ValueError("bad"), help_text="Hint")
        err = capsys.readouterr().err
        assert "Error: bad" in err
        assert "Hint" in err

    def test_status_suppressed_in_json_mode(self, capsys):
        OutputHandler(json_mode=True).status("Opening browser")
        OutputHandler(json_mode=False).status("Opening browser")
        captured = capsys.readouterr()
        assert captured.out == ""
        assert captured.err.count("Opening browser") == 1
