"""Common utilities and shared functionality."""

from .atomic import atomic_write_text
from .deadline import Deadline
from .locking import file_lock
from .logging import get_logger, setup_logging
from .utils import (
    MAX_PORT,
    MIN_PORT,
    mask_sensitive_data,
    parse_duration,
    sanitize_log_data,
    validate_port,
    validate_tunnel_name,
)

__all__ = [
    # Files and locks
    "atomic_write_text",
    "file_lock",
    # Deadlines
    "Deadline",
    # Logging
    "get_logger",
    "setup_logging",
    # Utils
    "validate_port",
    "validate_tunnel_name",
    "parse_duration",
    "mask_sensitive_data",
    "sanitize_log_data",
    "MIN_PORT",
    "MAX_PORT",
]
