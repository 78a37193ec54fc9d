"""Tests for signing identity validation.

This module tests:
- Developer ID validation (validate_developer_id)
- Identity resolution (resolve_identity)
- Argument passing to external tools
"""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from bundlesign import (
    ADHOC_IDENTITY,
    CommandError,
    ValidationError,
    resolve_identity,
    run_command,
    validate_developer_id,
)


class TestValidateDeveloperId:
    """Tests for validate_developer_id function."""

    def test_valid_name_only(self) -> None:
        """Test valid Developer ID with name only."""
        validate_developer_id("John Doe")

    def test_valid_name_with_team_id(self) -> None:
        """Test valid Developer ID with Team ID."""
        validate_developer_id("John Doe (ABCD123456)")

    def test_valid_with_punctuation(self) -> None:
        """Test names with periods, hyphens, commas and apostrophes."""
        validate_developer_id("Acme, Inc.")
        validate_developer_id("Jean-Luc O'Brien")

    def test_empty(self) -> None:
        """Test empty Developer ID is rejected."""
        with pytest.raises(ValidationError, match="cannot be empty"):
            validate_developer_id("")
        with pytest.raises(ValidationError, match="cannot be empty"):
            validate_developer_id("   ")

    def test_too_short(self) -> None:
        """Test single character Developer ID is rejected."""
        with pytest.raises(ValidationError, match="too short"):
            validate_developer_id("J")

    def test_too_long(self) -> None:
        """Test overly long Developer ID is rejected."""
        with pytest.raises(ValidationError, match="too long"):
            validate_developer_id("A" * 101)

    def test_bad_team_id(self) -> None:
        """Test a Team ID that is not 10 uppercase alphanumerics."""
        with pytest.raises(ValidationError, match="invalid format"):
            validate_developer_id("John Doe (abc)")

    def test_shell_metacharacters(self) -> None:
        """Test shell injection attempts are rejected."""
        for bad in ("John; rm -rf /", "John `id`", "John $(id)", "John | cat"):
            with pytest.raises(ValidationError):
                validate_developer_id(bad)


class TestResolveIdentity:
    """Tests for resolve_identity function."""

    def test_adhoc_values(self) -> None:
        """Test None, empty and '-' all select ad-hoc signing."""
        assert resolve_identity(None) == ADHOC_IDENTITY
        assert resolve_identity("") == ADHOC_IDENTITY
        assert resolve_identity(" - ") == ADHOC_IDENTITY

    def test_bare_name_expanded(self) -> None:
        """Test a bare name becomes a Developer ID Application identity."""
        assert (
            resolve_identity("Jane Doe (ABCDE12345)")
            == "Developer ID Application: Jane Doe (ABCDE12345)"
        )

    def test_known_prefixes_kept(self) -> None:
        """Test full certificate names are passed through."""
        for name in (
            "Developer ID Application: Jane Doe (ABCDE12345)",
            "Apple Development: jane@example.com (ABCDE12345)",
            "Apple Distribution: Acme, Inc. (ABCDE12345)",
            "Mac Developer: Jane Doe (ABCDE12345)",
            "3rd Party Mac Developer Application: Acme (ABCDE12345)",
        ):
            assert resolve_identity(name) == name

    def test_sha1_fingerprint_kept(self) -> None:
        """Test a certificate fingerprint is passed through."""
        fingerprint = "0123456789abcdef0123456789ABCDEF01234567"
        assert resolve_identity(fingerprint) == fingerprint

    def test_invalid_name(self) -> None:
        """Test a malformed bare name is rejected."""
        with pytest.raises(ValidationError):
            resolve_identity("; rm -rf ~")


class TestRunCommand:
    """Tests for run_command."""

    @patch("subprocess.run")
    def test_no_shell(self, mock_run) -> None:
        """Test arguments reach the tool unmodified and without a shell."""
        mock_run.return_value = MagicMock(returncode=0, stdout="out", stderr="")
        path = str(Path("/tmp/My App; rm -rf ~.app"))
        assert run_command(["codesign", "--sign", "-", path]) == "out"
        args, kwargs = mock_run.call_args
        assert args[0] == ["codesign", "--sign", "-", path]
        assert kwargs["shell"] is False

    @patch("subprocess.run")
    def test_dry_run(self, mock_run) -> None:
        """Test dry-run does not execute."""
        assert run_command(["lipo", "-info", "x"], dry_run=True) == ""
        mock_run.assert_not_called()

    @patch("subprocess.run", side_effect=FileNotFoundError("lipo"))
    def test_missing_tool(self, mock_run) -> None:
        """Test a missing tool raises CommandError."""
        with pytest.raises(CommandError) as excinfo:
            run_command(["lipo", "-info", "x"])
        assert excinfo.value.returncode == 127
