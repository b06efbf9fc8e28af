"""Detection of the installed FRP binary version.

Detection runs an explicit, ordered list of probe strategies and falls back
to ``"unknown"`` when every strategy fails. It never raises: callers always
get a ``v``-prefixed version string, ``"unknown"`` or ``"not installed"``.
"""

import os
import re
import shutil
import subprocess
from collections.abc import Callable
from pathlib import Path

from .common.logging import get_logger
from .models import Role
from .settings import FleetSettings

logger = get_logger(__name__)

UNKNOWN = "unknown"
NOT_INSTALLED = "not installed"
VERSION_MARKER_FILE = ".version"

VERSION_PATTERN = re.compile(r"v?(\d+)\.(\d+)\.(\d+)(\+[0-9A-Za-z.-]+)?")

ProbeStrategy = Callable[[FleetSettings, Role], str | None]


def find_binary(name: str, settings: FleetSettings) -> str | None:
    """Locate an FRP binary in the installation directory, then on PATH."""
    candidate = settings.frp_dir / name
    if candidate.is_file() and os.access(candidate, os.X_OK):
        return str(candidate)
    return shutil.which(name)


def _alternate(role: Role) -> Role:
    return Role.CLIENT if role == Role.SERVER else Role.SERVER


def normalize_version(text: str) -> str | None:
    """Extract the first ``major.minor.patch[+build]`` from text, ``v``-prefixed."""
    match = VERSION_PATTERN.search(text)
    if not match:
        return None
    major, minor, patch, build = match.groups()
    return f"v{major}.{minor}.{patch}{build or ''}"


def parse_version(version: str) -> tuple[int, int, int] | None:
    """Parse a version string into a comparable tuple, ignoring build metadata."""
    match = VERSION_PATTERN.fullmatch(version.strip())
    if not match:
        return None
    return int(match.group(1)), int(match.group(2)), int(match.group(3))


def compare_versions(left: str, right: str) -> int | None:
    """Return -1, 0 or 1 like ``cmp``; None if either side is not a version."""
    a, b = parse_version(left), parse_version(right)
    if a is None or b is None:
        return None
    return (a > b) - (a < b)


def _run_version_flag(binary: str | None, settings: FleetSettings) -> str | None:
    if binary is None:
        return None
    try:
        result = subprocess.run(
            [binary, "--version"],
            capture_output=True,
            text=True,
            timeout=settings.probe_timeout,
            check=False,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("Version flag probe failed", binary=binary, error=str(e))
        return None
    return normalize_version(result.stdout or "") or normalize_version(result.stderr or "")


def probe_primary_flag(settings: FleetSettings, role: Role) -> str | None:
    """Ask the role's own binary for ``--version``."""
    return _run_version_flag(find_binary(settings.binary_name(role), settings), settings)


def probe_alternate_flag(settings: FleetSettings, role: Role) -> str | None:
    """Ask the other binary of the pair (frpc for frps and vice versa).

    Only consulted when the role's own binary is absent.
    """
    if find_binary(settings.binary_name(role), settings) is not None:
        return None
    return _run_version_flag(find_binary(settings.binary_name(_alternate(role)), settings), settings)


def probe_marker_file(settings: FleetSettings, role: Role) -> str | None:
    """Read the ``.version`` marker left next to the binaries by the installer."""
    marker: Path = settings.frp_dir / VERSION_MARKER_FILE
    try:
        return normalize_version(marker.read_text(encoding="utf-8"))
    except OSError:
        return None


PROBE_STRATEGIES: tuple[ProbeStrategy, ...] = (
    probe_primary_flag,
    probe_alternate_flag,
    probe_marker_file,
)


def is_installed(role: Role, settings: FleetSettings) -> bool:
    """Whether the binary implementing a role can be found."""
    return find_binary(settings.binary_name(role), settings) is not None


def installed_binaries(settings: FleetSettings | None = None) -> dict[Role, str | None]:
    """Map each role to its binary path, or None when absent."""
    settings = settings or FleetSettings.from_env()
    return {role: find_binary(settings.binary_name(role), settings) for role in Role}


def detect_version(role: Role | str, settings: FleetSettings | None = None) -> str:
    """Detect the installed FRP version for a binary kind.

    Args:
        role: Which binary to probe (``server`` -> frps, ``client`` -> frpc)
        settings: Engine settings; read from the environment when omitted

    Returns:
        ``"v<major>.<minor>.<patch>[+build]"``, ``"unknown"`` or ``"not installed"``
    """
    try:
        role = Role(role)
        settings = settings or FleetSettings.from_env()
        if not any(installed_binaries(settings).values()):
            return NOT_INSTALLED
        for strategy in PROBE_STRATEGIES:
            version = strategy(settings, role)
            if version:
                logger.debug("Detected FRP version", role=role.value, version=version, strategy=strategy.__name__)
                return version
    except Exception as e:
        logger.warning("Version detection failed", error=str(e))
    return UNKNOWN
