"""Validation of tunnel configurations against their role and the installed FRP."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, ValidationError

from .common.logging import get_logger
from .common.utils import is_valid_port, is_valid_server_addr
from .exceptions import ConfigValidationError
from .models import Protocol, ProxyType, Registry, Role, TunnelConfig
from .version import NOT_INSTALLED, UNKNOWN, compare_versions, parse_version

logger = get_logger(__name__)

MIN_SERVER_TOKEN_LENGTH = 8

# Oldest FRP release that reads the TOML syntax we render
TOML_SYNTAX_VERSION = "v0.52.0"

# First FRP release supporting each feature
PROTOCOL_SINCE: dict[Protocol, str] = {
    Protocol.TCP: "v0.1.0",
    Protocol.KCP: "v0.12.0",
    Protocol.WEBSOCKET: "v0.21.0",
    Protocol.QUIC: "v0.46.0",
    Protocol.WSS: "v0.50.0",
}
PROXY_TYPE_SINCE: dict[ProxyType, str] = {
    ProxyType.TCP: "v0.1.0",
    ProxyType.UDP: "v0.1.0",
    ProxyType.HTTP: "v0.1.0",
    ProxyType.HTTPS: "v0.1.0",
    ProxyType.STCP: "v0.10.0",
    ProxyType.XTCP: "v0.15.0",
    ProxyType.TCPMUX: "v0.36.0",
    ProxyType.SUDP: "v0.37.0",
}


class Severity(str, Enum):
    """Issue severity; only errors fail validation."""

    ERROR = "error"
    WARNING = "warning"


class ValidationIssue(BaseModel):
    """One problem found in a tunnel configuration."""

    model_config = ConfigDict(frozen=True)

    severity: Severity
    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.severity.value}: {self.field}: {self.message}"


def _error(field: str, message: str) -> ValidationIssue:
    return ValidationIssue(severity=Severity.ERROR, field=field, message=message)


def _warning(field: str, message: str) -> ValidationIssue:
    return ValidationIssue(severity=Severity.WARNING, field=field, message=message)


def errors_only(issues: list[ValidationIssue]) -> list[ValidationIssue]:
    return [issue for issue in issues if issue.severity == Severity.ERROR]


def issues_from_pydantic(error: ValidationError) -> list[ValidationIssue]:
    """One error issue per pydantic error, keyed by its dotted location."""
    return [
        _error(".".join(str(part) for part in err["loc"]) or "entry", err["msg"])
        for err in error.errors()
    ]


def _check_port(value: int | None, field: str, required: bool) -> list[ValidationIssue]:
    if value is None:
        return [_error(field, "required field is missing")] if required else []
    if not is_valid_port(value):
        return [_error(field, f"invalid port {value}; must be between 1 and 65535")]
    return []


def _check_server(tunnel: TunnelConfig) -> list[ValidationIssue]:
    conn = tunnel.connection
    issues = _check_port(conn.bind_port, "connection.bind_port", required=True)
    for field in ("vhost_http_port", "vhost_https_port", "dashboard_port"):
        issues += _check_port(getattr(conn, field), f"connection.{field}", required=False)
    if not conn.auth_token:
        issues.append(_error("connection.auth_token", "required field is missing"))
    elif len(conn.auth_token) < MIN_SERVER_TOKEN_LENGTH:
        issues.append(
            _error(
                "connection.auth_token",
                f"must be at least {MIN_SERVER_TOKEN_LENGTH} characters long",
            )
        )
    return issues


def _check_client(tunnel: TunnelConfig) -> list[ValidationIssue]:
    conn = tunnel.connection
    issues: list[ValidationIssue] = []
    if not conn.server_addr:
        issues.append(_error("connection.server_addr", "required field is missing"))
    elif not is_valid_server_addr(conn.server_addr):
        issues.append(
            _error(
                "connection.server_addr",
                f"'{conn.server_addr}' is not a valid IP address or domain name",
            )
        )
    issues += _check_port(conn.server_port, "connection.server_port", required=True)
    if not conn.auth_token:
        issues.append(_error("connection.auth_token", "required field is missing"))

    if not conn.proxies:
        issues.append(_warning("connection.proxies", "no proxy definitions"))
    seen: set[str] = set()
    for index, proxy in enumerate(conn.proxies):
        prefix = f"connection.proxies[{index}]"
        if proxy.name in seen:
            issues.append(_error(f"{prefix}.name", f"duplicate proxy name '{proxy.name}'"))
        seen.add(proxy.name)
        issues += _check_port(proxy.local_port, f"{prefix}.local_port", required=True)
        issues += _check_port(proxy.remote_port, f"{prefix}.remote_port", required=False)
        if proxy.type in (ProxyType.HTTP, ProxyType.HTTPS) and not proxy.custom_domains:
            issues.append(_error(f"{prefix}.custom_domains", f"{proxy.type.value} proxies need a custom domain"))
        if proxy.type in (ProxyType.TCP, ProxyType.UDP) and proxy.remote_port is None:
            issues.append(_warning(f"{prefix}.remote_port", "not set; the server will pick one"))
    return issues


def _check_version(tunnel: TunnelConfig, installed: str | None) -> list[ValidationIssue]:
    if installed is None:
        return []
    if installed in (UNKNOWN, NOT_INSTALLED) or parse_version(installed) is None:
        return [_warning("config_version", f"cannot verify compatibility: FRP version is {installed}")]

    issues: list[ValidationIssue] = []
    if compare_versions(installed, TOML_SYNTAX_VERSION) == -1:
        issues.append(
            _error(
                "config_version",
                f"installed FRP {installed} predates the TOML syntax ({TOML_SYNTAX_VERSION})",
            )
        )

    protocol = tunnel.connection.protocol
    if compare_versions(installed, PROTOCOL_SINCE[protocol]) == -1:
        issues.append(
            _error(
                "connection.protocol",
                f"protocol '{protocol.value}' needs FRP {PROTOCOL_SINCE[protocol]} (installed {installed})",
            )
        )
    for index, proxy in enumerate(tunnel.connection.proxies):
        since = PROXY_TYPE_SINCE[proxy.type]
        if compare_versions(installed, since) == -1:
            issues.append(
                _error(
                    f"connection.proxies[{index}].type",
                    f"proxy type '{proxy.type.value}' needs FRP {since} (installed {installed})",
                )
            )

    declared = parse_version(tunnel.config_version)
    actual = parse_version(installed)
    if declared is None:
        issues.append(_warning("config_version", f"'{tunnel.config_version}' is not a version"))
    elif actual is not None and declared[:2] != actual[:2]:
        issues.append(
            _warning(
                "config_version",
                f"authored for {tunnel.config_version} but FRP {installed} is installed",
            )
        )
    return issues


def validate_tunnel(
    tunnel: TunnelConfig,
    registry: Registry | None = None,
    installed_version: str | None = None,
    *,
    updating: bool = False,
) -> list[ValidationIssue]:
    """Validate a tunnel configuration.

    Args:
        tunnel: Tunnel to check
        registry: Registry the tunnel belongs to (or will be added to), for name uniqueness
        installed_version: Result of the version probe; None skips compatibility checks
        updating: True when the tunnel replaces the registry entry of the same name

    Returns:
        List of issues; empty when the configuration is clean
    """
    issues: list[ValidationIssue] = []
    if registry is not None and not updating and tunnel.name in registry:
        issues.append(_error("name", f"tunnel '{tunnel.name}' already exists"))
    if registry is not None and updating:
        current = registry.get(tunnel.name)
        if current is not None and current.role != tunnel.role:
            issues.append(_error("role", "role is immutable; remove and re-add the tunnel instead"))

    if tunnel.role == Role.SERVER:
        issues += _check_server(tunnel)
    else:
        issues += _check_client(tunnel)
    issues += _check_version(tunnel, installed_version)

    if issues:
        logger.debug("Validation issues found", name=tunnel.name, count=len(issues))
    return issues


def ensure_valid(
    tunnel: TunnelConfig,
    registry: Registry | None = None,
    installed_version: str | None = None,
    *,
    updating: bool = False,
) -> list[ValidationIssue]:
    """Validate and raise on errors; returns the remaining warnings.

    Raises:
        ConfigValidationError: If any error-level issue is found
    """
    issues = validate_tunnel(tunnel, registry, installed_version, updating=updating)
    errors = errors_only(issues)
    if errors:
        raise ConfigValidationError(f"Tunnel '{tunnel.name}' failed validation", errors)
    return issues
