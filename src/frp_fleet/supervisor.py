"""Lifecycle supervision of FRP tunnel processes.

Each tunnel owns a handful of runtime files under ``<config_dir>/run``:

- ``<name>.json``: the :class:`ProcessRecord` (only this module writes it)
- ``<name>.toml``: the rendered FRP configuration the process was started with
- ``<name>.lock``: serializes start/stop of the tunnel across invocations

Nothing is kept in memory between invocations; every call re-reads the record
and checks it against the OS process table.
"""

import signal
import subprocess
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from .common.atomic import atomic_write_text
from .common.deadline import Deadline
from .common.locking import file_lock
from .common.logging import get_logger
from .exceptions import BinaryNotFoundError, OperationTimeoutError, ProcessError
from .models import ProcessRecord, ProcessState, Registry, TunnelConfig
from .process import (
    POLL_INTERVAL,
    FoundProcess,
    create_time,
    find_config_processes,
    matches,
    read_log_tail,
    send_signal,
    spawn,
    wait_for_exit,
)
from .render import ConfigBuilder
from .store import ConfigStore
from .validation import ensure_valid
from .version import find_binary

logger = get_logger(__name__)


@dataclass
class OrphanScan:
    """Runtime leftovers that no registry entry accounts for."""

    orphan_records: list[str] = field(default_factory=list)
    orphan_processes: list[FoundProcess] = field(default_factory=list)
    stale_files: list[Path] = field(default_factory=list)


class Supervisor:
    """Starts, stops and tracks the FRP processes behind registry tunnels."""

    def __init__(self, store: ConfigStore):
        self.store = store
        self.settings = store.settings
        # Popen handles of processes spawned by this invocation, for reaping
        self._children: dict[str, subprocess.Popen[bytes]] = {}

    # Paths

    def record_path(self, name: str) -> Path:
        return self.settings.run_dir / f"{name}.json"

    def config_path(self, name: str) -> Path:
        return self.settings.run_dir / f"{name}.toml"

    def log_path(self, name: str) -> Path:
        return self.settings.log_dir / f"{name}.log"

    def lock_path(self, name: str) -> Path:
        return self.settings.run_dir / f"{name}.lock"

    # Record persistence

    def _load_record(self, name: str) -> ProcessRecord | None:
        path = self.record_path(name)
        if not path.exists():
            return None
        try:
            return ProcessRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, ValidationError) as e:
            logger.warning("Ignoring unreadable process record", name=name, error=str(e))
            return None

    def _save_record(self, record: ProcessRecord) -> None:
        atomic_write_text(self.record_path(record.tunnel_name), record.model_dump_json(indent=2), mode=0o644)

    def _clear_record(self, name: str) -> ProcessRecord:
        for path in (self.record_path(name), self.config_path(name)):
            path.unlink(missing_ok=True)
        self._children.pop(name, None)
        return ProcessRecord(tunnel_name=name)

    def _mark_crashed(self, record: ProcessRecord, reason: str) -> ProcessRecord:
        child = self._children.pop(record.tunnel_name, None)
        exit_code = child.poll() if child is not None else None
        logger.warning("Tunnel process crashed", name=record.tunnel_name, pid=record.pid, exit_code=exit_code)
        record.state = ProcessState.CRASHED
        record.pid = None
        record.last_exit_code = exit_code
        record.last_exit_reason = reason
        self._save_record(record)
        return record

    def _is_ours(self, record: ProcessRecord) -> bool:
        return record.pid is not None and matches(record.pid, record.config_path, record.process_create_time)

    def _refresh(self, record: ProcessRecord) -> ProcessRecord:
        """Liveness check; heals records whose process is gone."""
        if not record.is_live or self._is_ours(record):
            return record
        if record.state == ProcessState.STOPPING:
            logger.debug("Stopping tunnel exited", name=record.tunnel_name)
            return self._clear_record(record.tunnel_name)
        return self._mark_crashed(record, "process disappeared")

    # Queries

    def status(self, name: str) -> ProcessRecord:
        """Current record for a tunnel after a liveness check."""
        record = self._load_record(name)
        if record is None:
            return ProcessRecord(tunnel_name=name)
        return self._refresh(record)

    def status_all(self, registry: Registry | None = None) -> list[ProcessRecord]:
        registry = registry if registry is not None else self.store.load()
        return [self.status(name) for name in registry.names()]

    # Lifecycle

    def start(self, name: str, deadline: Deadline | None = None) -> ProcessRecord:
        """Start a tunnel; a running tunnel is returned as is.

        Raises:
            NotFoundError: If the tunnel is not in the registry
            ConfigValidationError: If the tunnel fails validation
            BinaryNotFoundError: If the role's FRP binary is missing
            ProcessError: If the process exits during the startup grace period
            OperationTimeoutError: If the deadline expires before startup is confirmed
        """
        deadline = deadline or Deadline(self.settings.default_timeout)
        registry = self.store.load()
        tunnel = registry.require(name)
        ensure_valid(tunnel, registry, self.store.installed_version(tunnel.role), updating=True)

        with file_lock(self.lock_path(name), deadline):
            record = self.status(name)
            if record.state == ProcessState.RUNNING:
                logger.info("Tunnel already running", name=name, pid=record.pid)
                return record
            if record.is_live:
                if record.state == ProcessState.STOPPING:
                    raise ProcessError(f"Tunnel '{name}' is stopping (pid {record.pid}); stop it first")
                record.state = ProcessState.RUNNING
                self._save_record(record)
                return record
            if record.state == ProcessState.CRASHED:
                self.acknowledge(name)
            return self._spawn(tunnel, deadline)

    def _spawn(self, tunnel: TunnelConfig, deadline: Deadline) -> ProcessRecord:
        name = tunnel.name
        binary_name = self.settings.binary_name(tunnel.role)
        binary = find_binary(binary_name, self.settings)
        if binary is None:
            raise BinaryNotFoundError(f"FRP binary '{binary_name}' not found in {self.settings.frp_dir} or PATH")

        config_path = ConfigBuilder(tunnel).write(self.config_path(name))
        deadline.check(f"start {name}")
        process = spawn(binary, config_path, self.log_path(name))
        self._children[name] = process

        record = ProcessRecord(
            tunnel_name=name,
            state=ProcessState.STARTING,
            pid=process.pid,
            started_at=datetime.now(),
            binary=binary,
            config_path=str(config_path),
            process_create_time=create_time(process.pid),
        )
        self._save_record(record)
        return self._await_startup(record, process, deadline)

    def _await_startup(
        self, record: ProcessRecord, process: subprocess.Popen[bytes], deadline: Deadline
    ) -> ProcessRecord:
        name = record.tunnel_name
        grace_end = time.monotonic() + self.settings.startup_grace
        while True:
            exit_code = process.poll()
            if exit_code is not None:
                tail = read_log_tail(self.log_path(name))
                self._children.pop(name, None)
                record.state = ProcessState.CRASHED
                record.pid = None
                record.last_exit_code = exit_code
                record.last_exit_reason = tail or f"exited during startup with code {exit_code}"
                self._save_record(record)
                logger.error("Tunnel exited during startup", name=name, exit_code=exit_code)
                detail = tail.splitlines()[-1] if tail else "no output"
                raise ProcessError(f"Tunnel '{name}' exited during startup with code {exit_code}: {detail}")

            remaining_grace = grace_end - time.monotonic()
            if remaining_grace <= 0:
                break
            if deadline.expired():
                logger.warning("Start timed out, killing process", name=name, pid=process.pid)
                send_signal(process.pid, signal.SIGKILL)
                wait_for_exit(process.pid, self.settings.kill_timeout, process)
                self._clear_record(name)
                raise OperationTimeoutError(f"Start of '{name}' timed out after {deadline.timeout:.1f}s")
            time.sleep(deadline.bound(min(POLL_INTERVAL, remaining_grace)))

        record.state = ProcessState.RUNNING
        self._save_record(record)
        logger.info("Tunnel started", name=name, pid=record.pid)
        return record

    def stop(self, name: str, graceful: bool = True, deadline: Deadline | None = None) -> ProcessRecord:
        """Stop a tunnel; stopping a stopped tunnel succeeds.

        Raises:
            OperationTimeoutError: If exit is not confirmed in time (record stays ``stopping``)
            PermissionDeniedError: If the process may not be signalled
        """
        deadline = deadline or Deadline(self.settings.default_timeout)
        with file_lock(self.lock_path(name), deadline):
            record = self.status(name)
            pid = record.pid
            if not record.is_live or pid is None:
                if record.state == ProcessState.CRASHED:
                    logger.info("Clearing crashed tunnel", name=name)
                return self._clear_record(name)

            record.state = ProcessState.STOPPING
            self._save_record(record)
            child = self._children.get(name)
            logger.info("Stopping tunnel", name=name, pid=pid, graceful=graceful)

            exited = False
            if graceful:
                if send_signal(pid, signal.SIGTERM):
                    exited = wait_for_exit(pid, deadline.bound(self.settings.stop_timeout), child)
                else:
                    exited = True
            if not exited and not deadline.expired():
                if graceful:
                    logger.warning("Tunnel ignored SIGTERM, killing", name=name, pid=pid)
                if send_signal(pid, signal.SIGKILL):
                    exited = wait_for_exit(pid, deadline.bound(self.settings.kill_timeout), child)
                else:
                    exited = True
            if not exited:
                raise OperationTimeoutError(f"Tunnel '{name}' (pid {pid}) did not exit in time")

            logger.info("Tunnel stopped", name=name, pid=pid)
            return self._clear_record(name)

    def restart(self, name: str, deadline: Deadline | None = None) -> ProcessRecord:
        """Stop then start; fails without starting if the stop is not confirmed."""
        deadline = deadline or Deadline(self.settings.default_timeout)
        self.stop(name, deadline=deadline)
        return self.start(name, deadline=deadline)

    def acknowledge(self, name: str) -> ProcessRecord:
        """Move a crashed tunnel back to stopped."""
        record = self.status(name)
        if record.state != ProcessState.CRASHED:
            return record
        logger.info("Crash acknowledged", name=name, exit_code=record.last_exit_code)
        return self._clear_record(name)

    def forget(self, name: str) -> None:
        """Drop every runtime file of a (stopped) tunnel."""
        record = self.status(name)
        if record.is_live:
            raise ProcessError(f"Tunnel '{name}' is still {record.state.value} (pid {record.pid})")
        self._clear_record(name)
        self.lock_path(name).unlink(missing_ok=True)

    # Reconciliation

    def reconcile(self, registry: Registry | None = None) -> dict[str, ProcessRecord]:
        """Rebuild every tunnel's record from the OS process table.

        Live records are marked ``unknown`` and then confirmed as running or
        crashed; live FRP processes on a tunnel's runtime config that have no
        record are adopted.
        """
        registry = registry if registry is not None else self.store.load()
        found: dict[str, list[FoundProcess]] = {}
        for proc in find_config_processes(self.settings.run_dir):
            found.setdefault(proc.config_path, []).append(proc)

        records: dict[str, ProcessRecord] = {}
        for name in registry.names():
            record = self._load_record(name)
            if record is not None and record.is_live:
                record.state = ProcessState.UNKNOWN
                if self._is_ours(record):
                    record.state = ProcessState.RUNNING
                    self._save_record(record)
                else:
                    record = self._mark_crashed(record, "process not found during reconcile")
            else:
                candidates = found.get(str(self.config_path(name)), [])
                if candidates:
                    proc = candidates[0]
                    logger.info("Adopting running process", name=name, pid=proc.pid)
                    record = ProcessRecord(
                        tunnel_name=name,
                        state=ProcessState.RUNNING,
                        pid=proc.pid,
                        started_at=datetime.fromtimestamp(proc.create_time),
                        config_path=proc.config_path,
                        process_create_time=proc.create_time,
                    )
                    self._save_record(record)
            records[name] = record or ProcessRecord(tunnel_name=name)
        logger.debug("Reconciled process records", tunnels=len(records))
        return records

    def scan_orphans(self, known_names: set[str]) -> OrphanScan:
        """Find records, processes and runtime files not owned by a known tunnel.

        A process is also an orphan when it runs a known tunnel's config but is
        not the process that tunnel's record points at (a duplicate).
        """
        scan = OrphanScan()
        run_dir = self.settings.run_dir
        if not run_dir.is_dir():
            return scan

        live_pids: dict[str, int | None] = {}
        recorded: set[str] = set()
        for name in known_names:
            record = self._load_record(name)
            if record is not None:
                recorded.add(name)
            live_pids[name] = record.pid if record is not None and record.is_live else None

        busy_configs: set[str] = set()
        for proc in find_config_processes(run_dir):
            name = Path(proc.config_path).stem
            busy_configs.add(proc.config_path)
            if name not in known_names or live_pids.get(name) != proc.pid:
                scan.orphan_processes.append(proc)

        for path in sorted(run_dir.iterdir()):
            name = path.stem
            if path.suffix == ".json" and name not in known_names:
                scan.orphan_records.append(name)
            elif path.suffix == ".toml" and str(path) not in busy_configs and name not in recorded:
                scan.stale_files.append(path)
            elif path.suffix == ".lock" and name not in known_names and not self.record_path(name).exists():
                scan.stale_files.append(path)
        return scan

    def kill_orphan(self, proc: FoundProcess) -> bool:
        """Kill a stray process if it is still the one that was scanned."""
        if not matches(proc.pid, proc.config_path, proc.create_time):
            return True
        logger.info("Killing orphan process", pid=proc.pid, config_path=proc.config_path)
        if not send_signal(proc.pid, signal.SIGKILL):
            return True
        return wait_for_exit(proc.pid, self.settings.kill_timeout)

    def drop_record(self, name: str) -> None:
        """Delete the record and runtime files of a tunnel no longer in the registry."""
        self._clear_record(name)
        self.lock_path(name).unlink(missing_ok=True)
