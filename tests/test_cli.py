"""Tests for cli module."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest

from mcp_proxy.cli import build_config, main, parse_args


class TestParseArgs:
    """Tests for argument parsing."""

    def test_defaults(self):
        """Test defaults match stdio mode on the default profile."""
        args = parse_args([])
        assert args.profile == "default"
        assert args.mode == "stdio"
        assert args.port == 3000
        assert args.host == "localhost"
        assert args.config_dir is None

    def test_sse_options(self):
        args = parse_args(["-p", "developer", "-m", "sse", "--port", "8080", "-c", "/etc/mcp"])
        assert args.profile == "developer"
        assert args.mode == "sse"
        assert args.port == 8080
        assert args.config_dir == Path("/etc/mcp")

    def test_invalid_mode(self):
        """Test unknown modes are rejected by argparse."""
        with pytest.raises(SystemExit):
            parse_args(["--mode", "websocket"])


class TestBuildConfig:
    """Tests for turning arguments into a ProxyConfig."""

    def test_build_config(self, tmp_path):
        config = build_config(parse_args(["--profile", "research", "-c", str(tmp_path)]))
        assert config.profile == "research"
        assert config.config_dir == tmp_path

    def test_default_config_dir_is_cwd(self):
        assert build_config(parse_args([])).config_dir == Path.cwd()


class TestMain:
    """Tests for the entry point."""

    def test_missing_config_dir(self, tmp_path, capsys):
        """Test a missing config directory exits with an error."""
        assert main(["-c", str(tmp_path / "absent")]) == 1
        assert "Config directory not found" in capsys.readouterr().err

    def test_invalid_port(self, capsys):
        """Test out-of-range ports fail validation."""
        assert main(["--port", "70000"]) == 1
        assert "Error" in capsys.readouterr().err

    def test_missing_profile_is_fatal(self, tmp_path, capsys):
        """Test a profile without a config file stops the process."""
        with patch("signal.signal"):
            assert main(["-c", str(tmp_path), "--profile", "ghost"]) == 1
        assert "Failed to load profile ghost" in capsys.readouterr().err
