"""Tunnel and process models using Pydantic for type safety and validation."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .common.logging import get_logger
from .common.utils import validate_tunnel_name
from .exceptions import ConfigValidationError, NotFoundError

logger = get_logger(__name__)

BASELINE_CONFIG_VERSION = "v0.52.0"


class Role(str, Enum):
    """Tunnel role: which FRP binary implements it."""

    SERVER = "server"
    CLIENT = "client"


class Protocol(str, Enum):
    """Transport protocol between frpc and frps."""

    TCP = "tcp"
    KCP = "kcp"
    QUIC = "quic"
    WEBSOCKET = "websocket"
    WSS = "wss"


class ProxyType(str, Enum):
    """Proxy types an frpc tunnel can expose."""

    TCP = "tcp"
    UDP = "udp"
    HTTP = "http"
    HTTPS = "https"
    STCP = "stcp"
    XTCP = "xtcp"
    SUDP = "sudp"
    TCPMUX = "tcpmux"


class ProcessState(str, Enum):
    """Supervision state of a tunnel process."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    CRASHED = "crashed"
    UNKNOWN = "unknown"


# States in which a pid is expected to point at a live process
LIVE_STATES = frozenset(
    {ProcessState.STARTING, ProcessState.RUNNING, ProcessState.STOPPING, ProcessState.UNKNOWN}
)


class ProxySpec(BaseModel):
    """One proxy exposed by a client tunnel."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    name: str = Field(min_length=1, description="Proxy name, unique within the tunnel")
    type: ProxyType = Field(default=ProxyType.TCP)
    local_ip: str = Field(default="127.0.0.1")
    local_port: int = Field(description="Local port to expose")
    remote_port: int | None = Field(default=None, description="Port opened on the server")
    custom_domains: list[str] = Field(default_factory=list)


class ConnectionParams(BaseModel):
    """Endpoint, port and auth settings of a tunnel.

    Fields are optional at the type level; which ones are required depends on
    the tunnel role and is checked by :mod:`frp_fleet.validation`.
    """

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True, extra="forbid")

    # Client side
    server_addr: str | None = None
    server_port: int | None = None
    proxies: list[ProxySpec] = Field(default_factory=list)

    # Server side
    bind_addr: str = "0.0.0.0"
    bind_port: int | None = None
    vhost_http_port: int | None = None
    vhost_https_port: int | None = None
    dashboard_port: int | None = None

    # Shared
    auth_token: str | None = None
    protocol: Protocol = Protocol.TCP
    extra: dict[str, Any] = Field(default_factory=dict, description="Raw settings passed through to FRP")


class TunnelConfig(BaseModel):
    """One declared tunnel (immutable; mutate via ``model_copy``)."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True, extra="forbid")

    name: str = Field(description="Unique tunnel identifier")
    role: Role
    connection: ConnectionParams = Field(default_factory=ConnectionParams)
    tags: list[str] = Field(default_factory=list, description="Ordered set of labels")
    enabled: bool = True
    config_version: str = Field(default=BASELINE_CONFIG_VERSION)
    description: str | None = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_tunnel_name(v)

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, v: list[str]) -> list[str]:
        """Strip, drop empties and de-duplicate while keeping order."""
        seen: dict[str, None] = {}
        for tag in v:
            tag = tag.strip()
            if tag:
                seen.setdefault(tag, None)
        return list(seen)

    @field_validator("config_version")
    @classmethod
    def normalize_config_version(cls, v: str) -> str:
        v = v.strip()
        if v and not v.startswith("v"):
            v = "v" + v
        return v

    def has_tag(self, tag: str) -> bool:
        """Match a label exactly, or a bare key against ``key:value`` labels."""
        if tag in self.tags:
            return True
        if ":" not in tag:
            return any(label.startswith(tag + ":") for label in self.tags)
        return False

    def with_tag(self, tag: str) -> "TunnelConfig":
        return self._touch(tags=[*self.tags, tag])

    def without_tag(self, tag: str) -> "TunnelConfig":
        """Remove a label; a bare key also removes its ``key:value`` labels."""
        remaining = [
            label for label in self.tags
            if label != tag and not (":" not in tag and label.startswith(tag + ":"))
        ]
        return self._touch(tags=remaining)

    def with_enabled(self, enabled: bool) -> "TunnelConfig":
        return self._touch(enabled=enabled)

    def _touch(self, **update: Any) -> "TunnelConfig":
        update["updated_at"] = datetime.now()
        # model_copy skips validation, so re-validate to normalize tags
        return TunnelConfig.model_validate({**self.model_dump(), **update})


class ProcessRecord(BaseModel):
    """Runtime supervision state for one tunnel."""

    model_config = ConfigDict(validate_assignment=True)

    tunnel_name: str
    state: ProcessState = ProcessState.STOPPED
    pid: int | None = None
    started_at: datetime | None = None
    last_exit_code: int | None = None
    last_exit_reason: str | None = None
    binary: str | None = None
    config_path: str | None = None
    process_create_time: float | None = None

    @property
    def is_live(self) -> bool:
        return self.state in LIVE_STATES and self.pid is not None


class QuarantinedEntry(BaseModel):
    """A registry entry that failed to parse; kept verbatim so it is not lost."""

    index: int
    name: str | None = None
    error: str
    raw: Any = None
    # Set when the entry parsed but repeats an earlier tunnel name
    duplicate: bool = False


class Registry(BaseModel):
    """Ordered set of tunnel definitions; the unit of atomic persistence."""

    tunnels: dict[str, TunnelConfig] = Field(default_factory=dict)
    quarantined: list[QuarantinedEntry] = Field(default_factory=list)

    def __len__(self) -> int:
        return len(self.tunnels)

    def __contains__(self, name: object) -> bool:
        return name in self.tunnels

    def names(self) -> list[str]:
        return list(self.tunnels)

    def list_tunnels(
        self, role: Role | None = None, enabled: bool | None = None
    ) -> list[TunnelConfig]:
        """List tunnels in insertion order with optional filtering."""
        tunnels = list(self.tunnels.values())
        if role is not None:
            tunnels = [t for t in tunnels if t.role == role]
        if enabled is not None:
            tunnels = [t for t in tunnels if t.enabled == enabled]
        return tunnels

    def get(self, name: str) -> TunnelConfig | None:
        return self.tunnels.get(name)

    def require(self, name: str) -> TunnelConfig:
        """Get tunnel by name.

        Raises:
            NotFoundError: If no tunnel has that name
        """
        tunnel = self.tunnels.get(name)
        if tunnel is None:
            raise NotFoundError(f"Tunnel '{name}' not found")
        return tunnel

    def add(self, tunnel: TunnelConfig) -> None:
        """Add a new tunnel.

        Raises:
            ConfigValidationError: If the name is already taken
        """
        if tunnel.name in self.tunnels:
            raise ConfigValidationError(f"Tunnel '{tunnel.name}' already exists")
        self.tunnels[tunnel.name] = tunnel
        logger.debug("Added tunnel to registry", name=tunnel.name)

    def update(self, tunnel: TunnelConfig) -> TunnelConfig:
        """Replace an existing tunnel in place, keeping its position.

        Raises:
            NotFoundError: If the tunnel does not exist
            ConfigValidationError: If the update changes the tunnel's role
        """
        current = self.require(tunnel.name)
        if current.role != tunnel.role:
            raise ConfigValidationError(
                f"Tunnel '{tunnel.name}' role is immutable "
                f"({current.role.value} -> {tunnel.role.value}); remove and re-add it instead"
            )
        updated = tunnel.model_copy(update={"created_at": current.created_at})
        self.tunnels[tunnel.name] = updated
        self._drop_duplicates(tunnel.name)
        logger.debug("Updated tunnel in registry", name=tunnel.name)
        return updated

    def remove(self, name: str) -> TunnelConfig:
        """Remove and return a tunnel.

        Raises:
            NotFoundError: If the tunnel does not exist
        """
        tunnel = self.require(name)
        del self.tunnels[name]
        self._drop_duplicates(name)
        logger.debug("Removed tunnel from registry", name=name)
        return tunnel

    def _drop_duplicates(self, name: str) -> None:
        """Forget hand-edited copies of a tunnel once it is explicitly changed."""
        kept = [e for e in self.quarantined if not (e.duplicate and e.name == name)]
        if len(kept) != len(self.quarantined):
            logger.info("Dropped duplicate registry entries", name=name, count=len(self.quarantined) - len(kept))
            self.quarantined = kept

    def clear(self) -> None:
        self.tunnels.clear()
        self.quarantined.clear()
