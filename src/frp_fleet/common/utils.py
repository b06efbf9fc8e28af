"""Utility functions shared across frp-fleet."""

import re
from typing import Any

# Port range constants
MIN_PORT = 1
MAX_PORT = 65535

TUNNEL_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,63}$")
_HOSTNAME_LABEL = re.compile(r"^[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?$")
_DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def is_valid_port(port: Any) -> bool:
    """Check that a value is an integer port in the 1-65535 range."""
    return isinstance(port, int) and not isinstance(port, bool) and MIN_PORT <= port <= MAX_PORT


def validate_port(port: int, port_name: str = "Port") -> None:
    """Validate port number range.

    Args:
        port: Port number to validate
        port_name: Name of the port for error messages

    Raises:
        ValueError: If port is not in valid range (1-65535)
    """
    if not is_valid_port(port):
        raise ValueError(f"{port_name} must be between {MIN_PORT} and {MAX_PORT}")


def is_valid_ipv4(value: str) -> bool:
    """Check for a dotted-quad IPv4 address."""
    parts = value.split(".")
    if len(parts) != 4:
        return False
    for part in parts:
        if not part.isdigit() or int(part) > 255:
            return False
    return True


def is_valid_hostname(value: str) -> bool:
    """Check for an RFC-1123 host name (labels of letters, digits and hyphens)."""
    if not value or len(value) > 253:
        return False
    return all(_HOSTNAME_LABEL.match(label) for label in value.split("."))


def is_valid_server_addr(value: str) -> bool:
    """A server address is either an IPv4 address or a host name."""
    if re.fullmatch(r"[0-9.]+", value):
        return is_valid_ipv4(value)
    return is_valid_hostname(value)


def validate_tunnel_name(name: str) -> str:
    """Validate a tunnel name.

    Names double as file names for runtime artifacts, so they are limited to
    letters, digits, dots, underscores and hyphens.

    Raises:
        ValueError: If the name is empty or contains other characters
    """
    if not name or not name.strip():
        raise ValueError("Tunnel name cannot be empty")
    name = name.strip()
    if not TUNNEL_NAME_PATTERN.match(name):
        raise ValueError(
            f"Invalid tunnel name '{name}': use up to 64 letters, digits, '.', '_' or '-', "
            "starting with a letter or digit"
        )
    return name


def parse_duration(value: str | float | int) -> float:
    """Parse a duration such as ``30``, ``2.5s``, ``500ms``, ``2m`` or ``1h`` into seconds.

    Raises:
        ValueError: If the value is not a positive duration
    """
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value)
    else:
        match = _DURATION_PATTERN.match(str(value))
        if not match:
            raise ValueError(f"Invalid duration: {value!r}")
        seconds = float(match.group(1)) * _DURATION_UNITS[match.group(2) or "s"]
    if seconds <= 0:
        raise ValueError(f"Duration must be positive: {value!r}")
    return seconds


def mask_sensitive_data(
    value: str | None, mask_char: str = "*", show_chars: int = 4
) -> str:
    """Mask sensitive data for logging while preserving some characters for debugging.

    Args:
        value: Sensitive string to mask (e.g., auth token, password)
        mask_char: Character to use for masking
        show_chars: Number of characters to show at the end

    Returns:
        Masked string safe for logging
    """
    if not value:
        return "<None>"

    if len(value) <= show_chars:
        return mask_char * len(value)

    masked_length = len(value) - show_chars
    return mask_char * masked_length + value[-show_chars:]


def sanitize_log_data(data: dict[str, Any]) -> dict[str, Any]:
    """Sanitize dictionary data for safe logging by masking sensitive fields.

    Nested dictionaries are sanitized recursively.
    """
    sensitive_fields = {"token", "password", "secret", "api_key"}

    sanitized: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            sanitized[key] = sanitize_log_data(value)
        elif any(field in key.lower() for field in sensitive_fields):
            sanitized[key] = mask_sensitive_data(str(value) if value else None)
        else:
            sanitized[key] = value

    return sanitized
