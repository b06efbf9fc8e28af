"""Runtime settings for frp-fleet."""

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

ENV_PREFIX = "FRP_FLEET_"

# Environment variable suffix -> settings field
_ENV_FIELDS = {
    "HOME": "config_dir",
    "FRP_DIR": "frp_dir",
    "TIMEOUT": "default_timeout",
    "STARTUP_GRACE": "startup_grace",
    "STOP_TIMEOUT": "stop_timeout",
    "KILL_TIMEOUT": "kill_timeout",
    "PROBE_TIMEOUT": "probe_timeout",
    "MAX_BACKUPS": "max_backups",
}


class FleetSettings(BaseModel):
    """Pydantic configuration for paths and timing of the engine."""

    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True,
        extra="forbid",
    )

    config_dir: Path = Field(
        default_factory=lambda: Path.home() / ".frp-fleet",
        description="Root directory for registry, backups and runtime state",
    )
    frp_dir: Path = Field(default=Path("/opt/frp"), description="FRP installation directory")
    server_binary: str = Field(default="frps", min_length=1, description="Server binary name")
    client_binary: str = Field(default="frpc", min_length=1, description="Client binary name")

    default_timeout: float = Field(default=60.0, gt=0, le=3600, description="Default operation deadline")
    startup_grace: float = Field(default=1.0, ge=0, le=60, description="Seconds a process must survive to count as running")
    stop_timeout: float = Field(default=10.0, gt=0, le=300, description="Graceful stop wait before SIGKILL")
    kill_timeout: float = Field(default=5.0, gt=0, le=60, description="Wait after SIGKILL")
    probe_timeout: float = Field(default=0.5, gt=0, le=10, description="Version probe subprocess timeout")
    max_backups: int = Field(default=10, ge=1, le=1000, description="Registry backups to keep")

    @field_validator("config_dir", "frp_dir")
    @classmethod
    def expand_path(cls, v: Path) -> Path:
        """Expand ``~`` in configured paths."""
        return Path(v).expanduser()

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides: Any) -> "FleetSettings":
        """Build settings from ``FRP_FLEET_*`` environment variables.

        Explicit keyword overrides win over the environment.
        """
        environ = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for suffix, field_name in _ENV_FIELDS.items():
            raw = environ.get(ENV_PREFIX + suffix)
            if raw:
                values[field_name] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    @property
    def registry_path(self) -> Path:
        return self.config_dir / "registry.json"

    @property
    def lock_path(self) -> Path:
        return self.config_dir / "registry.lock"

    @property
    def backup_dir(self) -> Path:
        return self.config_dir / "backups"

    @property
    def run_dir(self) -> Path:
        return self.config_dir / "run"

    @property
    def log_dir(self) -> Path:
        return self.config_dir / "logs"

    @property
    def template_dir(self) -> Path:
        return self.config_dir / "templates"

    def binary_name(self, role: str) -> str:
        """Binary name for a tunnel role (``server`` or ``client``)."""
        return self.server_binary if role == "server" else self.client_binary
