"""Settings for the tunnel registry and control channels."""

import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .common.exceptions import ConfigurationError

ENV_HOME = "SSH_TUNNELS_HOME"
ENV_START_PORT = "SSH_TUNNELS_START_PORT"
ENV_SSH_BINARY = "SSH_TUNNELS_SSH"
ENV_LOG_FILE = "SSH_TUNNELS_LOG"

DEFAULT_BASE_DIR = Path("~/.ssh-tunnels")
DEFAULT_START_PORT = 4000


class TunnelSettings(BaseModel):
    """Configuration for the durable layout and the ssh transport."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    base_dir: Path = Field(
        default=DEFAULT_BASE_DIR,
        validate_default=True,
        description="Root of sockets, registry and profiles",
    )
    default_start_port: int = Field(
        default=DEFAULT_START_PORT,
        ge=1,
        le=65535,
        description="First local port tried when add is given no start port",
    )
    ssh_binary: str = Field(default="ssh", min_length=1, description="ssh client")
    ssh_options: list[str] = Field(
        default_factory=lambda: ["ServerAliveInterval=15", "ExitOnForwardFailure=yes"],
        description="Extra -o options used when establishing a channel",
    )
    bind_address: str = Field(
        default="127.0.0.1", min_length=1, description="Local bind address"
    )
    lock_timeout: float = Field(
        default=30.0, ge=0.0, le=600.0, description="Seconds to wait for a host lock"
    )

    @field_validator("base_dir")
    @classmethod
    def expand_base_dir(cls, v: Path) -> Path:
        """Expand ~ in the base directory."""
        return v.expanduser()

    @field_validator("ssh_options")
    @classmethod
    def validate_ssh_options(cls, v: list[str]) -> list[str]:
        """Require Key=Value pairs."""
        for option in v:
            if "=" not in option:
                raise ValueError(f"ssh option must be Key=Value: {option!r}")
        return v

    @property
    def sockets_dir(self) -> Path:
        return self.base_dir / "sockets"

    @property
    def registry_dir(self) -> Path:
        return self.base_dir / "registry"

    @property
    def profiles_dir(self) -> Path:
        return self.base_dir / "profiles"

    @property
    def locks_dir(self) -> Path:
        return self.base_dir / "locks"

    def ensure_dirs(self) -> None:
        """Create the durable layout directories if missing."""
        for directory in (
            self.sockets_dir,
            self.registry_dir,
            self.profiles_dir,
            self.locks_dir,
        ):
            directory.mkdir(mode=0o700, parents=True, exist_ok=True)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "TunnelSettings":
        """Build settings from environment variables.

        Args:
            environ: Environment mapping (defaults to os.environ)

        Returns:
            Validated settings

        Raises:
            ConfigurationError: If an environment value is invalid
        """
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}

        if env.get(ENV_HOME):
            values["base_dir"] = Path(env[ENV_HOME])
        if env.get(ENV_SSH_BINARY):
            values["ssh_binary"] = env[ENV_SSH_BINARY]
        if env.get(ENV_START_PORT):
            raw = env[ENV_START_PORT]
            try:
                values["default_start_port"] = int(raw)
            except ValueError:
                raise ConfigurationError(
                    f"{ENV_START_PORT} must be a port number, got {raw!r}"
                ) from None

        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid settings: {e}") from e
