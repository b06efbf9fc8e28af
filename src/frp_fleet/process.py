"""OS-level helpers for FRP processes: spawning, signalling and liveness."""

import errno
import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

import psutil

from .common.logging import get_logger
from .exceptions import BinaryNotFoundError, PermissionDeniedError, ProcessError

logger = get_logger(__name__)

POLL_INTERVAL = 0.05
LOG_TAIL_BYTES = 8192

# psutil create_time() is derived from boot time and clock ticks
CREATE_TIME_TOLERANCE = 0.5


@dataclass
class FoundProcess:
    """An FRP process discovered in the OS process table."""

    pid: int
    config_path: str
    create_time: float


def spawn(binary: str, config_path: Path, log_path: Path) -> subprocess.Popen[bytes]:
    """Start ``<binary> -c <config_path>`` detached from our session.

    Output goes to ``log_path`` (appended).

    Raises:
        BinaryNotFoundError: If the binary does not exist
        PermissionDeniedError: If the binary is not executable
        ProcessError: For any other spawn failure
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logger.info("Starting FRP process", binary=binary, config_path=str(config_path))
    try:
        with log_path.open("ab") as log_fh:
            process = subprocess.Popen(
                [binary, "-c", str(config_path)],
                stdin=subprocess.DEVNULL,
                stdout=log_fh,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
    except FileNotFoundError as e:
        raise BinaryNotFoundError(f"Binary not found: {binary}") from e
    except PermissionError as e:
        raise PermissionDeniedError(f"Cannot execute {binary}: {e}") from e
    except OSError as e:
        if e.errno == errno.EACCES:
            raise PermissionDeniedError(f"Cannot execute {binary}: {e}") from e
        raise ProcessError(f"Failed to start {binary}: {e}") from e
    logger.debug("FRP process spawned", pid=process.pid)
    return process


def is_alive(pid: int) -> bool:
    """Whether ``pid`` is a running (non-zombie) process."""
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


def create_time(pid: int) -> float | None:
    try:
        return psutil.Process(pid).create_time()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None


def matches(pid: int, config_path: str | None, expected_create_time: float | None = None) -> bool:
    """Check that ``pid`` is alive and still the process we started.

    The command line must reference ``config_path`` and, when known, the
    create time must match, so a recycled PID is never mistaken for ours.
    """
    try:
        proc = psutil.Process(pid)
        with proc.oneshot():
            if proc.status() == psutil.STATUS_ZOMBIE:
                return False
            if expected_create_time is not None:
                if abs(proc.create_time() - expected_create_time) > CREATE_TIME_TOLERANCE:
                    logger.debug("PID reused by another process", pid=pid)
                    return False
            cmdline = proc.cmdline()
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        logger.debug("Cannot inspect process, assuming it is ours", pid=pid)
        return True
    return config_path is None or config_path in cmdline


def send_signal(pid: int, sig: int) -> bool:
    """Signal a process, or its whole group when it leads one.

    Returns:
        False if the process no longer exists

    Raises:
        PermissionDeniedError: If we may not signal the process
    """
    try:
        if os.getpgid(pid) == pid:
            os.killpg(pid, sig)
        else:
            os.kill(pid, sig)
    except ProcessLookupError:
        return False
    except PermissionError as e:
        raise PermissionDeniedError(f"Not allowed to signal process {pid}: {e}") from e
    logger.debug("Signal sent", pid=pid, signal=signal.Signals(sig).name)
    return True


def wait_for_exit(pid: int, timeout: float, child: subprocess.Popen[bytes] | None = None) -> bool:
    """Wait until the process has exited.

    ``child`` is polled as well so our own children get reaped.

    Returns:
        True if the exit was confirmed within ``timeout``
    """
    end = time.monotonic() + max(0.0, timeout)
    while True:
        if child is not None and child.poll() is not None:
            return True
        if not is_alive(pid):
            if child is not None:
                child.poll()
            return True
        if time.monotonic() >= end:
            return False
        time.sleep(POLL_INTERVAL)


def find_config_processes(run_dir: Path) -> list[FoundProcess]:
    """List live processes started with ``-c <run_dir>/<something>.toml``."""
    run_dir = run_dir.resolve()
    found: list[FoundProcess] = []
    for proc in psutil.process_iter(["pid", "cmdline", "create_time", "status"]):
        info = proc.info
        cmdline = info.get("cmdline") or []
        if info.get("status") == psutil.STATUS_ZOMBIE or "-c" not in cmdline:
            continue
        index = cmdline.index("-c")
        if index + 1 >= len(cmdline):
            continue
        config = Path(cmdline[index + 1])
        if config.suffix == ".toml" and config.parent.resolve() == run_dir:
            found.append(FoundProcess(info["pid"], str(config), info.get("create_time") or 0.0))
    return found


def read_log_tail(path: Path, lines: int = 10) -> str:
    """Last lines of a process log, or an empty string."""
    if lines <= 0 or not path.exists():
        return ""
    try:
        size = path.stat().st_size
        to_read = min(size, LOG_TAIL_BYTES)
        with path.open("rb") as fh:
            fh.seek(-to_read, os.SEEK_END)
            data = fh.read().decode("utf-8", errors="replace")
    except OSError as e:
        logger.debug("Cannot read process log", path=str(path), error=str(e))
        return ""
    return "\n".join(data.splitlines()[-lines:])
