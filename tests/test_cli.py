"""Tests for the command-line interface."""

import os
import plistlib
import subprocess
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

import bundlesign
from bundlesign import main

MACHO_MAGIC_64 = b"\xcf\xfa\xed\xfe"
PROJECT_ROOT = Path(bundlesign.__file__).resolve().parent


def create_fake_macho(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(MACHO_MAGIC_64 + b"\x00" * 100)
    return path


def make_app(path: Path, name: str) -> Path:
    (path / "Contents").mkdir(parents=True, exist_ok=True)
    with open(path / "Contents" / "Info.plist", "wb") as f:
        plistlib.dump({"CFBundleExecutable": name}, f)
    create_fake_macho(path / "Contents" / "MacOS" / name)
    return path


def run_cli(*args, cwd=None):
    """Run `python -m bundlesign` without any inherited signing identity."""
    env = {k: v for k, v in os.environ.items() if k != "CODESIGN_IDENTITY"}
    env["PYTHONPATH"] = os.pathsep.join(
        p for p in (str(PROJECT_ROOT), env.get("PYTHONPATH")) if p
    )
    return subprocess.run(
        [sys.executable, "-m", "bundlesign", *args],
        capture_output=True,
        text=True,
        cwd=cwd,
        env=env,
    )


@pytest.fixture
def sample_bundle(tmp_path):
    bundle = make_app(tmp_path / "Test.app", "Test")
    create_fake_macho(bundle / "Contents" / "Frameworks" / "libfoo.dylib")
    make_app(bundle / "Contents" / "Helpers" / "Helper.app", "Helper")
    return bundle


class TestCLIGeneral:
    """Tests for top-level CLI behaviour."""

    def test_help(self):
        """Test that --help lists both commands."""
        result = run_cli("--help")
        assert result.returncode == 0
        assert "sign" in result.stdout
        assert "merge-universal" in result.stdout

    def test_version(self):
        """Test that --version prints the version."""
        result = run_cli("--version")
        assert result.returncode == 0
        assert bundlesign.__version__ in result.stdout

    def test_requires_command(self):
        """Test that a command is required."""
        result = run_cli()
        assert result.returncode == 2
        assert "required" in result.stderr.lower()


class TestCLISign:
    """Tests for the 'sign' subcommand."""

    def test_sign_requires_bundle(self):
        """Test that sign requires a bundle argument."""
        result = run_cli("sign")
        assert result.returncode == 2
        assert "usage" in result.stderr.lower()

    def test_sign_requires_identity(self, sample_bundle, tmp_path):
        """Test a missing identity is a usage error."""
        result = run_cli("sign", str(sample_bundle), cwd=tmp_path)
        assert result.returncode == 2
        assert "identity is required" in result.stderr

    def test_sign_nonexistent_bundle(self, tmp_path):
        """Test signing a missing bundle fails."""
        result = run_cli("sign", str(tmp_path / "Missing.app"), "-", cwd=tmp_path)
        assert result.returncode == 1
        assert "does not exist" in result.stderr

    def test_sign_invalid_identity(self, sample_bundle, tmp_path):
        """Test a malformed identity fails validation."""
        result = run_cli("sign", str(sample_bundle), "bad;id", cwd=tmp_path)
        assert result.returncode == 1
        assert "invalid format" in result.stderr

    def test_sign_dry_run(self, sample_bundle, tmp_path):
        """Test the dry run prints the plan, innermost first."""
        result = run_cli(
            "sign", str(sample_bundle), "-", "--dry-run", "--no-color", cwd=tmp_path
        )
        assert result.returncode == 0, result.stderr
        out = result.stdout
        assert "SIGNING PLAN" in out
        assert out.index("libfoo.dylib") < out.index("Helper.app")
        assert "seals Contents/MacOS/Test" in out

    def test_sign_identity_from_config(self, sample_bundle, tmp_path):
        """Test the identity may come from the config file."""
        (tmp_path / ".bundlesign.toml").write_text('[sign]\nidentity = "Jane Doe"\n')
        result = run_cli("sign", str(sample_bundle), "--dry-run", cwd=tmp_path)
        assert result.returncode == 0, result.stderr
        assert "Developer ID Application: Jane Doe" in result.stdout

    def test_sign_identity_from_dotenv(self, sample_bundle, tmp_path):
        """Test a .env file in the working directory supplies the identity."""
        (tmp_path / ".env").write_text("CODESIGN_IDENTITY=-\n")
        result = run_cli("sign", str(sample_bundle), "--dry-run", cwd=tmp_path)
        assert result.returncode == 0, result.stderr
        assert "SIGNING PLAN" in result.stdout

    def test_sign_missing_config_file(self, sample_bundle, tmp_path):
        """Test an explicit config that does not exist fails."""
        result = run_cli(
            "sign", str(sample_bundle), "-", "--config", str(tmp_path / "nope.toml")
        )
        assert result.returncode == 1
        assert "Config file not found" in result.stderr


class TestCLIMerge:
    """Tests for the 'merge-universal' subcommand."""

    def test_merge_requires_three_paths(self, tmp_path):
        """Test that merge-universal needs both inputs and an output."""
        result = run_cli("merge-universal", str(tmp_path))
        assert result.returncode == 2

    def test_merge_missing_input(self, tmp_path):
        """Test a missing input directory fails."""
        a = tmp_path / "a.app"
        a.mkdir()
        result = run_cli(
            "merge-universal", str(a), str(tmp_path / "b.app"), str(tmp_path / "o.app")
        )
        assert result.returncode == 1
        assert "does not exist" in result.stderr

    def test_merge_dry_run(self, tmp_path):
        """Test a dry run creates nothing."""
        a = make_app(tmp_path / "arm64" / "Test.app", "Test")
        b = make_app(tmp_path / "x86_64" / "Test.app", "Test")
        out = tmp_path / "Test.app"
        result = run_cli(
            "merge-universal", str(a), str(b), str(out), "--dry-run", "-j", "2"
        )
        assert result.returncode == 0, result.stderr
        assert not out.exists()
        assert "merged 1" in result.stderr


class TestMainInProcess:
    """Tests calling main() directly with external tools mocked."""

    @patch("subprocess.run")
    def test_sign_success(self, mock_run, sample_bundle, monkeypatch):
        """Test a successful signing run exits 0."""
        monkeypatch.delenv("CODESIGN_IDENTITY", raising=False)
        monkeypatch.chdir(sample_bundle.parent)
        mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
        with pytest.raises(SystemExit) as excinfo:
            main(["sign", str(sample_bundle), "-", "--no-color"])
        assert excinfo.value.code == 0
        targets = [Path(c.args[0][-1]).name for c in mock_run.call_args_list]
        assert targets[-2:] == ["Test.app", "Test.app"]

    @patch("subprocess.run")
    def test_sign_failure_exit_code(self, mock_run, sample_bundle, monkeypatch):
        """Test a failed signing step exits 1."""
        monkeypatch.chdir(sample_bundle.parent)
        mock_run.side_effect = subprocess.CalledProcessError(
            1, ["codesign"], stderr="errSecInternalComponent"
        )
        with pytest.raises(SystemExit) as excinfo:
            main(["sign", str(sample_bundle), "-", "--no-strip-xattrs"])
        assert excinfo.value.code == 1

    @patch("subprocess.run")
    def test_merge_failure_exit_code(self, mock_run, tmp_path, monkeypatch):
        """Test any failed merge exits 1."""
        monkeypatch.chdir(tmp_path)
        a = make_app(tmp_path / "arm64" / "Test.app", "Test")
        b = make_app(tmp_path / "x86_64" / "Test.app", "Test")
        mock_run.side_effect = subprocess.CalledProcessError(1, ["lipo"], stderr="x")
        with pytest.raises(SystemExit) as excinfo:
            main(["merge-universal", str(a), str(b), str(tmp_path / "Test.app")])
        assert excinfo.value.code == 1

    def test_keyboard_interrupt(self, sample_bundle, monkeypatch):
        """Test an interrupt exits 130."""
        monkeypatch.chdir(sample_bundle.parent)
        with patch("bundlesign.Codesigner", side_effect=KeyboardInterrupt):
            with pytest.raises(SystemExit) as excinfo:
                main(["sign", str(sample_bundle), "-"])
        assert excinfo.value.code == 130
