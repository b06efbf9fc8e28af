"""Command dispatch: verbs mapped onto engine operations.

Each handler takes the run's :class:`Deadline` first and returns a plain
value; rendering and exit codes are left to the caller and the execution
context.
"""

from collections.abc import Callable
from pathlib import Path
from typing import Any

from .common.atomic import atomic_write_text
from .common.deadline import Deadline
from .common.logging import get_logger
from .exceptions import ConfigValidationError, StorageError
from .execution import ExecutionContext, Outcome
from .models import ProcessRecord, Role, TunnelConfig
from .query import BulkOperation, BulkResult, OptimizationReport, QueryEngine
from .settings import FleetSettings
from .store import ConfigStore, ImportMode, ImportReport
from .supervisor import Supervisor
from .templates import InstantiationReport, Template, TemplateStore, load_rows, parse_variables
from .validation import Severity, ValidationIssue
from .version import detect_version, installed_binaries

logger = get_logger(__name__)

CONFIRM_OPERATIONS = frozenset({BulkOperation.STOP, BulkOperation.REMOVE})


def _preview(names: list[str], limit: int = 5) -> str:
    shown = ", ".join(names[:limit])
    return shown + (f" and {len(names) - limit} more" if len(names) > limit else "")


class Fleet:
    """Engine facade used by the CLI."""

    def __init__(self, settings: FleetSettings, context: ExecutionContext):
        self.settings = settings
        self.context = context
        self.store = ConfigStore(settings)
        self.supervisor = Supervisor(self.store)
        self.query = QueryEngine(self.store, self.supervisor)
        self.templates = TemplateStore(self.store)
        self.commands: dict[str, Callable[..., Any]] = {
            "start": self.start,
            "stop": self.stop,
            "restart": self.restart,
            "status": self.status,
            "export": self.export,
            "import": self.import_,
            "validate": self.validate,
            "bulk": self.bulk,
            "search": self.search,
            "tag": self.tag,
            "optimize": self.optimize,
            "add": self.add,
            "remove": self.remove,
            "backups": self.backups,
            "version": self.version,
            "template-list": self.template_list,
            "template-show": self.template_show,
            "template-create": self.template_create,
            "template-delete": self.template_delete,
            "template-instantiate": self.template_instantiate,
            "template-bulk": self.template_bulk,
        }

    def dispatch(self, verb: str, **params: Any) -> Outcome[Any]:
        """Run a verb through the execution context."""
        handler = self.commands.get(verb)
        if handler is None:
            raise ValueError(f"Unknown command '{verb}'")
        logger.debug("Dispatching command", verb=verb)
        return self.context.run(lambda deadline: handler(deadline, **params))

    def _confirm_bulk(self, operation: BulkOperation, names: list[str]) -> None:
        if operation in CONFIRM_OPERATIONS:
            self.context.confirm(f"{operation.value.capitalize()} {len(names)} tunnel(s): {_preview(names)}?")

    # Lifecycle

    def start(self, deadline: Deadline, selector: str, parallel: int = 1) -> BulkResult:
        return self.bulk(deadline, BulkOperation.START, selector, parallel=parallel)

    def stop(self, deadline: Deadline, selector: str, graceful: bool = True, parallel: int = 1) -> BulkResult:
        return self.bulk(deadline, BulkOperation.STOP, selector, graceful=graceful, parallel=parallel)

    def restart(self, deadline: Deadline, selector: str, parallel: int = 1) -> BulkResult:
        return self.bulk(deadline, BulkOperation.RESTART, selector, parallel=parallel)

    def remove(self, deadline: Deadline, selector: str) -> BulkResult:
        return self.bulk(deadline, BulkOperation.REMOVE, selector)

    def bulk(
        self,
        deadline: Deadline,
        operation: BulkOperation | str,
        selector: str,
        tag: str | None = None,
        graceful: bool = True,
        parallel: int = 1,
    ) -> BulkResult:
        operation = BulkOperation(operation)
        names = self.query.resolve(selector)
        self._confirm_bulk(operation, names)
        return self.query.bulk_apply(
            names,
            operation,
            tag=tag,
            graceful=graceful,
            max_parallel=parallel,
            deadline=deadline,
        )

    def status(self, deadline: Deadline, selector: str | None = None) -> list[tuple[TunnelConfig, ProcessRecord]]:
        registry = self.store.load()
        names = self.query.resolve(selector, registry) if selector else registry.names()
        return [(registry.require(name), self.supervisor.status(name)) for name in names]

    # Registry

    def add(self, deadline: Deadline, tunnel: TunnelConfig | dict[str, Any]) -> list[ValidationIssue]:
        if not isinstance(tunnel, TunnelConfig):
            tunnel = TunnelConfig.model_validate(tunnel)
        return self.store.add(tunnel, deadline)

    def tag(self, deadline: Deadline, selector: str, tag: str, remove: bool = False) -> BulkResult:
        operation = BulkOperation.UNTAG if remove else BulkOperation.TAG
        return self.bulk(deadline, operation, selector, tag=tag)

    def search(self, deadline: Deadline, query: str) -> list[TunnelConfig]:
        return self.query.search(query)

    def validate(self, deadline: Deadline, target: str) -> dict[str, list[ValidationIssue]]:
        """Validate an export blob file, or the tunnels a selector resolves to.

        Returns the warnings per tunnel.

        Raises:
            ConfigValidationError: If any tunnel has errors
        """
        path = Path(target)
        results: dict[str, list[ValidationIssue]] = {}
        errors: list[ValidationIssue] = []
        if path.is_file():
            report = self.store.import_(path.read_text(encoding="utf-8"), ImportMode.MERGE, dry_run=True)
            results.update(report.warnings)
            for name, issues in report.failed.items():
                errors += [issue.model_copy(update={"field": f"{name}.{issue.field}"}) for issue in issues]
        else:
            registry = self.store.load()
            for name in self.query.resolve(target, registry):
                issues = self.store.validate(registry.require(name), registry, updating=True)
                results[name] = [issue for issue in issues if issue.severity == Severity.WARNING]
                errors += [
                    issue.model_copy(update={"field": f"{name}.{issue.field}"})
                    for issue in issues
                    if issue.severity == Severity.ERROR
                ]
        if errors:
            raise ConfigValidationError("Validation failed", errors)
        return results

    def export(self, deadline: Deadline, path: Path | None = None, selector: str | None = None) -> str:
        names = self.query.resolve(selector) if selector else None
        blob = self.store.export(names)
        if path is not None:
            atomic_write_text(path, blob, mode=0o600)
            logger.info("Export written", path=str(path))
        return blob

    def import_(
        self,
        deadline: Deadline,
        path: Path,
        mode: ImportMode | str = ImportMode.MERGE,
        dry_run: bool = False,
    ) -> ImportReport:
        mode = ImportMode(mode)
        try:
            blob = path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise StorageError(f"Import file {path} does not exist") from e
        except UnicodeDecodeError as e:
            raise StorageError(f"Import file {path} is not UTF-8 text: {e}") from e
        if mode == ImportMode.REPLACE and not dry_run:
            self.context.confirm(f"Replace the whole registry with the contents of {path}?")
        return self.store.import_(blob, mode, dry_run=dry_run, deadline=deadline)

    def backups(self, deadline: Deadline, restore: str | None = None) -> list[Path]:
        """List backups, or restore one (by file name or path) and list again."""
        if restore:
            self.context.confirm(f"Replace the registry with backup {restore}?")
            self.store.restore_backup(Path(restore), deadline)
        return self.store.list_backups()

    # Maintenance

    def optimize(self, deadline: Deadline, apply: bool = False) -> OptimizationReport:
        report = self.query.optimize(apply=False, deadline=deadline)
        if apply and not report.is_empty:
            self.context.confirm(f"Apply {len(report.actions())} cleanup action(s)?")
            report = self.query.optimize(apply=True, deadline=deadline)
        return report

    def version(self, deadline: Deadline) -> dict[Role, tuple[str | None, str]]:
        """Binary path and detected version per role."""
        binaries = installed_binaries(self.settings)
        return {role: (binaries[role], detect_version(role, self.settings)) for role in Role}

    # Templates

    def template_list(self, deadline: Deadline) -> list[Template]:
        return [self.templates.get(name) for name in self.templates.list_templates()]

    def template_show(self, deadline: Deadline, name: str) -> Template:
        return self.templates.get(name)

    def template_create(self, deadline: Deadline, name: str, source: Path, overwrite: bool = False) -> Template:
        if overwrite and self.templates.path(name).exists():
            self.context.confirm(f"Overwrite template '{name}'?")
        return self.templates.create_from_file(name, source, overwrite=overwrite)

    def template_delete(self, deadline: Deadline, name: str) -> str:
        self.templates.get(name)
        self.context.confirm(f"Delete template '{name}'?")
        self.templates.delete(name)
        return name

    def template_instantiate(
        self, deadline: Deadline, name: str, variables: list[str]
    ) -> tuple[TunnelConfig, list[ValidationIssue]]:
        return self.templates.instantiate(name, parse_variables(variables), deadline)

    def template_bulk(self, deadline: Deadline, name: str, rows: Path) -> InstantiationReport:
        """Instantiate a template once per row of a CSV or YAML file."""
        return self.templates.bulk_instantiate(name, load_rows(rows), deadline)
