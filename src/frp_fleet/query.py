"""Search, selection, bulk operations and maintenance over the registry."""

import fnmatch
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field

from .common.deadline import Deadline
from .common.logging import get_logger
from .common.utils import is_valid_ipv4, is_valid_port
from .exceptions import ConfigValidationError, NotFoundError
from .models import ProcessRecord, ProcessState, Registry, Role, TunnelConfig
from .process import FoundProcess
from .store import ConfigStore
from .supervisor import Supervisor
from .version import installed_binaries

logger = get_logger(__name__)

SEARCH_FIELDS = ("name", "tag", "role", "state", "port", "addr")
GLOB_CHARS = "*?["


class SearchQuery(BaseModel):
    """Conjunction of filters over tunnels; empty matches everything."""

    names: list[str] = Field(default_factory=list, description="Case-insensitive name substrings")
    tags: list[str] = Field(default_factory=list)
    role: Role | None = None
    state: ProcessState | None = None
    port: int | None = None
    addr: str | None = None

    @classmethod
    def parse(cls, text: str) -> "SearchQuery":
        """Parse ``field:value`` tokens; bare tokens are classified by shape.

        A bare IPv4 address filters by address, a bare port number by port,
        anything with a colon by tag and everything else by name.

        Raises:
            ConfigValidationError: If a role, state or port value is invalid
        """
        values: dict = {"names": [], "tags": []}
        for token in text.split():
            key, sep, value = token.partition(":")
            if not (sep and key in SEARCH_FIELDS and value):
                if is_valid_ipv4(token):
                    key, value = "addr", token
                elif token.isdigit() and is_valid_port(int(token)):
                    key, value = "port", token
                elif ":" in token:
                    key, value = "tag", token
                else:
                    key, value = "name", token

            if key == "name":
                values["names"].append(value)
            elif key == "tag":
                values["tags"].append(value)
            elif key == "role":
                try:
                    values["role"] = Role(value.lower())
                except ValueError:
                    raise ConfigValidationError(f"Unknown role '{value}' in search query") from None
            elif key == "state":
                try:
                    values["state"] = ProcessState(value.lower())
                except ValueError:
                    raise ConfigValidationError(f"Unknown state '{value}' in search query") from None
            elif key == "port":
                if not value.isdigit() or not is_valid_port(int(value)):
                    raise ConfigValidationError(f"Invalid port '{value}' in search query")
                values["port"] = int(value)
            else:
                values["addr"] = value
        return cls(**values)

    def _ports(self, tunnel: TunnelConfig) -> set[int]:
        conn = tunnel.connection
        ports = {conn.bind_port, conn.server_port, conn.vhost_http_port, conn.vhost_https_port}
        for proxy in conn.proxies:
            ports.update({proxy.local_port, proxy.remote_port})
        ports.discard(None)
        return ports  # type: ignore[return-value]

    def matches(self, tunnel: TunnelConfig, state: Callable[[str], ProcessState] | None = None) -> bool:
        lowered = tunnel.name.lower()
        if any(term.lower() not in lowered for term in self.names):
            return False
        if any(not tunnel.has_tag(tag) for tag in self.tags):
            return False
        if self.role is not None and tunnel.role != self.role:
            return False
        if self.port is not None and self.port not in self._ports(tunnel):
            return False
        if self.addr is not None:
            conn = tunnel.connection
            if tunnel.role == Role.SERVER:
                addresses = {conn.bind_addr}
            else:
                addresses = {conn.server_addr} | {p.local_ip for p in conn.proxies}
            if self.addr not in addresses:
                return False
        if self.state is not None:
            if state is None or state(tunnel.name) != self.state:
                return False
        return True


class BulkOperation(str, Enum):
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    TAG = "tag"
    UNTAG = "untag"
    REMOVE = "remove"


PROCESS_OPERATIONS = frozenset({BulkOperation.START, BulkOperation.STOP, BulkOperation.RESTART})


class BulkOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class ItemResult:
    """Result of a bulk operation for one tunnel."""

    name: str
    ok: bool
    message: str = ""
    error: Exception | None = None
    record: ProcessRecord | None = None


@dataclass
class BulkResult:
    """Per-item results of a bulk operation, in selection order."""

    operation: BulkOperation
    items: list[ItemResult] = field(default_factory=list)

    @property
    def succeeded(self) -> list[ItemResult]:
        return [item for item in self.items if item.ok]

    @property
    def failed(self) -> list[ItemResult]:
        return [item for item in self.items if not item.ok]

    @property
    def outcome(self) -> BulkOutcome:
        if not self.failed:
            return BulkOutcome.SUCCEEDED
        if not self.succeeded:
            return BulkOutcome.FAILED
        return BulkOutcome.PARTIAL


class OrphanProcess(BaseModel):
    pid: int
    config_path: str
    create_time: float = 0.0


class OptimizationReport(BaseModel):
    """Findings of a maintenance pass and whether cleanup was applied."""

    orphan_records: list[str] = Field(default_factory=list)
    orphan_processes: list[OrphanProcess] = Field(default_factory=list)
    stale_files: list[str] = Field(default_factory=list)
    crashed: list[str] = Field(default_factory=list)
    dangling: list[str] = Field(default_factory=list)
    applied: bool = False

    @property
    def is_empty(self) -> bool:
        return not (
            self.orphan_records or self.orphan_processes or self.stale_files or self.crashed or self.dangling
        )

    def actions(self) -> list[str]:
        """Human readable cleanup proposal."""
        actions = [f"kill orphan process {p.pid} ({p.config_path})" for p in self.orphan_processes]
        actions += [f"delete orphan record '{name}'" for name in self.orphan_records]
        actions += [f"delete stale file {path}" for path in self.stale_files]
        actions += [f"acknowledge crashed tunnel '{name}'" for name in self.crashed]
        actions += [f"disable tunnel '{name}' (binary not installed)" for name in self.dangling]
        return actions


class QueryEngine:
    """Read and bulk-write access to the registry, joined with process state."""

    def __init__(self, store: ConfigStore, supervisor: Supervisor):
        self.store = store
        self.supervisor = supervisor

    def _registry(self, registry: Registry | None) -> Registry:
        return registry if registry is not None else self.store.load()

    def search(self, query: SearchQuery | str, registry: Registry | None = None) -> list[TunnelConfig]:
        """Tunnels matching a query, in registry order."""
        if isinstance(query, str):
            query = SearchQuery.parse(query)
        registry = self._registry(registry)
        state_of = (lambda name: self.supervisor.status(name).state) if query.state is not None else None
        return [tunnel for tunnel in registry.list_tunnels() if query.matches(tunnel, state_of)]

    def select_by_tag(self, tag: str, registry: Registry | None = None) -> list[TunnelConfig]:
        return [tunnel for tunnel in self._registry(registry).list_tunnels() if tunnel.has_tag(tag)]

    def resolve(self, selector: str, registry: Registry | None = None) -> list[str]:
        """Resolve a selector to tunnel names.

        Selectors: ``all`` (enabled tunnels), ``tag:<tag>``, ``role:<role>``,
        an exact name (even if disabled) or a glob over names. Comma separated
        selectors are unioned in order.

        Raises:
            NotFoundError: If any part of the selector matches nothing
        """
        registry = self._registry(registry)
        names: dict[str, None] = {}
        for part in (p.strip() for p in selector.split(",")):
            if not part:
                continue
            matched = self._resolve_one(part, registry)
            if not matched:
                raise NotFoundError(f"No tunnel matches '{part}'")
            names.update(dict.fromkeys(matched))
        if not names:
            raise NotFoundError(f"No tunnel matches '{selector}'")
        return list(names)

    def _resolve_one(self, selector: str, registry: Registry) -> list[str]:
        if selector == "all":
            return [t.name for t in registry.list_tunnels(enabled=True)]
        if selector.startswith("tag:"):
            return [t.name for t in self.select_by_tag(selector[4:], registry)]
        if selector.startswith("role:"):
            try:
                role = Role(selector[5:].lower())
            except ValueError:
                raise ConfigValidationError(f"Unknown role in selector '{selector}'") from None
            return [t.name for t in registry.list_tunnels(role=role)]
        if selector in registry:
            return [selector]
        if any(ch in selector for ch in GLOB_CHARS):
            return [name for name in registry.names() if fnmatch.fnmatchcase(name, selector)]
        return []

    # Bulk operations

    def bulk_apply(
        self,
        selection: list[str],
        operation: BulkOperation | str,
        *,
        tag: str | None = None,
        graceful: bool = True,
        max_parallel: int = 1,
        deadline: Deadline | None = None,
    ) -> BulkResult:
        """Apply one operation to every selected tunnel independently.

        Always returns exactly one :class:`ItemResult` per selected name, in
        selection order; a failing item never aborts the others.
        """
        operation = BulkOperation(operation)
        deadline = deadline or Deadline(self.store.settings.default_timeout)
        if operation in (BulkOperation.TAG, BulkOperation.UNTAG) and not tag:
            raise ConfigValidationError(f"Bulk {operation.value} needs a tag")

        logger.info("Bulk operation", operation=operation.value, count=len(selection), parallel=max_parallel)
        if operation in PROCESS_OPERATIONS:
            def run(name: str) -> ItemResult:
                return self._process_item(name, operation, graceful, deadline)

            if max_parallel > 1 and len(selection) > 1:
                with ThreadPoolExecutor(max_workers=max_parallel) as pool:
                    items = list(pool.map(run, selection))
            else:
                items = [run(name) for name in selection]
        else:
            items = self._registry_items(selection, operation, tag, graceful, deadline)

        result = BulkResult(operation=operation, items=items)
        logger.info(
            "Bulk operation finished",
            operation=operation.value,
            outcome=result.outcome.value,
            failed=len(result.failed),
        )
        return result

    def _process_item(
        self, name: str, operation: BulkOperation, graceful: bool, deadline: Deadline
    ) -> ItemResult:
        try:
            if operation == BulkOperation.START:
                record = self.supervisor.start(name, deadline=deadline)
            elif operation == BulkOperation.STOP:
                record = self.supervisor.stop(name, graceful=graceful, deadline=deadline)
            else:
                record = self.supervisor.restart(name, deadline=deadline)
        except Exception as e:
            logger.error("Bulk item failed", name=name, operation=operation.value, error=str(e))
            return ItemResult(name=name, ok=False, message=str(e), error=e)
        return ItemResult(name=name, ok=True, message=record.state.value, record=record)

    def _registry_items(
        self,
        selection: list[str],
        operation: BulkOperation,
        tag: str | None,
        graceful: bool,
        deadline: Deadline,
    ) -> list[ItemResult]:
        items: list[ItemResult] = []
        with self.store.transaction(deadline) as registry:
            for name in selection:
                try:
                    tunnel = registry.require(name)
                    if operation == BulkOperation.TAG:
                        registry.update(tunnel.with_tag(tag or ""))
                        message = f"tagged {tag}"
                    elif operation == BulkOperation.UNTAG:
                        registry.update(tunnel.without_tag(tag or ""))
                        message = f"untagged {tag}"
                    else:
                        self.supervisor.stop(name, graceful=graceful, deadline=deadline)
                        self.supervisor.forget(name)
                        registry.remove(name)
                        message = "removed"
                except Exception as e:
                    logger.error("Bulk item failed", name=name, operation=operation.value, error=str(e))
                    items.append(ItemResult(name=name, ok=False, message=str(e), error=e))
                    continue
                items.append(ItemResult(name=name, ok=True, message=message))
        return items

    # Maintenance

    def optimize(self, apply: bool = False, deadline: Deadline | None = None) -> OptimizationReport:
        """Reconcile, then report (and optionally clean up) runtime drift."""
        registry = self.store.load()
        records = self.supervisor.reconcile(registry)
        scan = self.supervisor.scan_orphans(set(registry.names()))
        installed = installed_binaries(self.store.settings)

        report = OptimizationReport(
            orphan_records=scan.orphan_records,
            orphan_processes=[
                OrphanProcess(pid=p.pid, config_path=p.config_path, create_time=p.create_time)
                for p in scan.orphan_processes
            ],
            stale_files=[str(path) for path in scan.stale_files],
            crashed=[name for name, record in records.items() if record.state == ProcessState.CRASHED],
            dangling=[
                tunnel.name
                for tunnel in registry.list_tunnels(enabled=True)
                if installed.get(tunnel.role) is None
            ],
        )
        logger.info("Optimization scan finished", findings=len(report.actions()))

        if apply and not report.is_empty:
            self._apply_cleanup(report, set(registry.names()), deadline)
            report.applied = True
        return report

    def _apply_cleanup(self, report: OptimizationReport, known: set[str], deadline: Deadline | None) -> None:
        supervisor = self.supervisor
        for orphan in report.orphan_processes:
            supervisor.kill_orphan(FoundProcess(orphan.pid, orphan.config_path, orphan.create_time))
            config = Path(orphan.config_path)
            if config.stem not in known:
                config.unlink(missing_ok=True)
        for name in report.orphan_records:
            supervisor.drop_record(name)
        for path in report.stale_files:
            Path(path).unlink(missing_ok=True)
        for name in report.crashed:
            supervisor.acknowledge(name)
        if report.dangling:
            with self.store.transaction(deadline) as registry:
                for name in report.dangling:
                    tunnel = registry.get(name)
                    if tunnel is not None:
                        registry.update(tunnel.with_enabled(False))
        logger.info("Optimization cleanup applied", actions=len(report.actions()))
