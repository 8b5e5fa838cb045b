"""Tests for TunnelSettings."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from ssh_tunnels.common.exceptions import ConfigurationError
from ssh_tunnels.config import TunnelSettings


class TestTunnelSettings:
    """Test defaults, validation and environment overrides."""

    def test_defaults(self):
        settings = TunnelSettings()

        assert settings.default_start_port == 4000
        assert settings.base_dir == Path("~/.ssh-tunnels").expanduser()
        assert settings.registry_dir == settings.base_dir / "registry"
        assert settings.sockets_dir == settings.base_dir / "sockets"
        assert settings.profiles_dir == settings.base_dir / "profiles"

    def test_from_env(self, tmp_path):
        settings = TunnelSettings.from_env(
            {
                "SSH_TUNNELS_HOME": str(tmp_path),
                "SSH_TUNNELS_START_PORT": "5500",
                "SSH_TUNNELS_SSH": "/opt/ssh",
            }
        )

        assert settings.base_dir == tmp_path
        assert settings.default_start_port == 5500
        assert settings.ssh_binary == "/opt/ssh"

    def test_from_env_empty(self):
        assert TunnelSettings.from_env({}).default_start_port == 4000

    @pytest.mark.parametrize("value", ["abc", "0", "70000"])
    def test_from_env_invalid_start_port(self, value):
        with pytest.raises(ConfigurationError):
            TunnelSettings.from_env({"SSH_TUNNELS_START_PORT": value})

    def test_rejects_unknown_fields(self):
        with pytest.raises(ValidationError):
            TunnelSettings(unknown=True)

    def test_rejects_malformed_ssh_option(self):
        with pytest.raises(ValidationError):
            TunnelSettings(ssh_options=["BatchMode"])

    def test_ensure_dirs(self, tmp_path):
        settings = TunnelSettings(base_dir=tmp_path / "state")
        settings.ensure_dirs()

        for directory in (
            settings.sockets_dir,
            settings.registry_dir,
            settings.profiles_dir,
            settings.locks_dir,
        ):
            assert directory.is_dir()
