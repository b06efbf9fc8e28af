"""Durable registry of tunnel definitions.

The registry lives in one JSON file under the configuration directory. Every
save is atomic (temporary file, fsync, ``os.replace``) and keeps a timestamped
backup of the previous file. Entries that fail to parse are quarantined
rather than dropped, so one corrupt entry never takes the rest down with it.
"""

import json
import shutil
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from .common.atomic import atomic_write_text
from .common.deadline import Deadline
from .common.locking import file_lock
from .common.logging import get_logger
from .common.utils import sanitize_log_data
from .exceptions import PermissionDeniedError, RegistryImportError, StorageError
from .models import QuarantinedEntry, Registry, Role, TunnelConfig
from .settings import FleetSettings
from .validation import (
    Severity,
    ValidationIssue,
    ensure_valid,
    errors_only,
    issues_from_pydantic,
    validate_tunnel,
)
from .version import detect_version

logger = get_logger(__name__)

FORMAT_VERSION = 1
BACKUP_GLOB = "registry.json.*.bak"


class ImportMode(str, Enum):
    MERGE = "merge"
    REPLACE = "replace"


class ImportReport(BaseModel):
    """What an import did (or would do, for a dry run)."""

    mode: ImportMode
    dry_run: bool = False
    added: list[str] = Field(default_factory=list)
    updated: list[str] = Field(default_factory=list)
    failed: dict[str, list[ValidationIssue]] = Field(default_factory=dict)
    warnings: dict[str, list[ValidationIssue]] = Field(default_factory=dict)

    @property
    def committed(self) -> int:
        return len(self.added) + len(self.updated)

    @property
    def ok(self) -> bool:
        return not self.failed


def _raw_name(raw: Any) -> str | None:
    if isinstance(raw, dict) and isinstance(raw.get("name"), str):
        return raw["name"]
    return None


class ConfigStore:
    """Loads, validates and atomically persists the tunnel registry."""

    def __init__(self, settings: FleetSettings | None = None):
        self.settings = settings or FleetSettings.from_env()
        self._versions: dict[Role, str] = {}

    @property
    def path(self) -> Path:
        return self.settings.registry_path

    def installed_version(self, role: Role) -> str:
        """Version probe result for a role, cached for this invocation."""
        if role not in self._versions:
            self._versions[role] = detect_version(role, self.settings)
        return self._versions[role]

    # Loading

    def load(self) -> Registry:
        """Load the registry; a missing file is an empty registry.

        Raises:
            StorageError: If the file is unreadable or not a registry document
            PermissionDeniedError: If the file cannot be read
        """
        if not self.path.exists():
            logger.debug("No registry file yet", path=str(self.path))
            return Registry()
        return self._read(self.path)

    def _read(self, path: Path) -> Registry:
        try:
            text = path.read_text(encoding="utf-8")
        except PermissionError as e:
            raise PermissionDeniedError(f"Cannot read registry {path}: {e}") from e
        except UnicodeDecodeError as e:
            raise StorageError(self._corrupt_message(path, f"not UTF-8: {e}")) from e
        except OSError as e:
            raise StorageError(f"Cannot read registry {path}: {e}") from e

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise StorageError(self._corrupt_message(path, str(e))) from e
        if not isinstance(data, dict) or not isinstance(data.get("tunnels"), list):
            raise StorageError(self._corrupt_message(path, "missing 'tunnels' list"))
        version = data.get("format_version", FORMAT_VERSION)
        if not isinstance(version, int) or version > FORMAT_VERSION:
            raise StorageError(f"Registry {path} has unsupported format_version {version!r}")
        return self._parse_entries(data["tunnels"])

    def _corrupt_message(self, path: Path, reason: str) -> str:
        backups = self.list_backups()
        hint = f"; newest backup is {backups[0]}" if backups else ""
        return f"Registry {path} is corrupt ({reason}){hint}"

    def _parse_entries(self, entries: list[Any]) -> Registry:
        registry = Registry()
        for index, raw in enumerate(entries):
            name = _raw_name(raw)
            duplicate = False
            try:
                if not isinstance(raw, dict):
                    raise ValueError(f"entry is a {type(raw).__name__}, not a mapping")
                tunnel = TunnelConfig.model_validate(raw)
                if tunnel.name in registry:
                    duplicate = True
                    raise ValueError(f"duplicate tunnel name '{tunnel.name}'")
            except (ValidationError, ValueError) as e:
                logger.warning("Quarantined registry entry", index=index, name=name, error=str(e))
                registry.quarantined.append(
                    QuarantinedEntry(index=index, name=name, error=str(e), raw=raw, duplicate=duplicate)
                )
                continue
            registry.tunnels[tunnel.name] = tunnel
        return registry

    # Saving

    def save(self, registry: Registry) -> None:
        """Persist the registry atomically, keeping a backup of the old file."""
        document = {
            "format_version": FORMAT_VERSION,
            "tunnels": [tunnel.model_dump(mode="json") for tunnel in registry.tunnels.values()]
            + [entry.raw for entry in registry.quarantined],
        }
        content = json.dumps(document, indent=2) + "\n"
        self._backup_current()
        atomic_write_text(self.path, content, mode=0o600)
        logger.info(
            "Registry saved",
            tunnels=len(registry),
            quarantined=len(registry.quarantined),
        )

    def _backup_current(self) -> Path | None:
        if not self.path.exists():
            return None
        backup_dir = self.settings.backup_dir
        stamp = f"{datetime.now():%Y%m%d-%H%M%S-%f}"
        backup = backup_dir / f"{self.path.name}.{stamp}.bak"
        suffix = 1
        while backup.exists():
            backup = backup_dir / f"{self.path.name}.{stamp}-{suffix}.bak"
            suffix += 1
        try:
            backup_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(self.path, backup)
        except PermissionError as e:
            raise PermissionDeniedError(f"Cannot write backup {backup}: {e}") from e
        except OSError as e:
            raise StorageError(f"Cannot write backup {backup}: {e}") from e
        self._prune_backups()
        return backup

    def _prune_backups(self) -> None:
        for stale in self.list_backups()[self.settings.max_backups:]:
            try:
                stale.unlink()
            except OSError as e:
                logger.warning("Cannot prune backup", path=str(stale), error=str(e))

    def list_backups(self) -> list[Path]:
        """Registry backups, newest first."""
        backup_dir = self.settings.backup_dir
        if not backup_dir.is_dir():
            return []
        return sorted(backup_dir.glob(BACKUP_GLOB), key=lambda p: p.name, reverse=True)

    def restore_backup(self, backup: Path, deadline: Deadline | None = None) -> Registry:
        """Swap a backup in as the current registry.

        The backup must load cleanly first; the current file is itself backed up.
        """
        if not backup.is_absolute() and not backup.exists():
            backup = self.settings.backup_dir / backup
        if not backup.is_file():
            raise StorageError(f"Backup {backup} does not exist")
        with file_lock(self.settings.lock_path, deadline):
            registry = self._read(backup)
            self.save(registry)
        logger.info("Registry restored from backup", backup=str(backup))
        return registry

    @contextmanager
    def transaction(self, deadline: Deadline | None = None) -> Iterator[Registry]:
        """Lock, load, hand the registry to the block, then save it.

        Nothing is saved if the block raises or the deadline expires first.
        """
        with file_lock(self.settings.lock_path, deadline):
            registry = self.load()
            yield registry
            if deadline is not None:
                deadline.check("registry save")
            self.save(registry)

    # Validation

    def validate(
        self,
        tunnel: TunnelConfig,
        registry: Registry | None = None,
        *,
        updating: bool = False,
    ) -> list[ValidationIssue]:
        """Validate a tunnel against the registry and the installed FRP version."""
        return validate_tunnel(
            tunnel,
            registry,
            self.installed_version(tunnel.role),
            updating=updating,
        )

    def add(self, tunnel: TunnelConfig, deadline: Deadline | None = None) -> list[ValidationIssue]:
        """Validate and add a new tunnel; returns validation warnings.

        Raises:
            ConfigValidationError: If validation finds errors
        """
        with self.transaction(deadline) as registry:
            warnings = ensure_valid(tunnel, registry, self.installed_version(tunnel.role))
            registry.add(tunnel)
        logger.info(
            "Tunnel added",
            name=tunnel.name,
            role=tunnel.role.value,
            connection=sanitize_log_data(tunnel.connection.model_dump(mode="json", exclude={"proxies"})),
        )
        return warnings

    def update(self, tunnel: TunnelConfig, deadline: Deadline | None = None) -> TunnelConfig:
        """Validate and replace an existing tunnel (role must not change)."""
        with self.transaction(deadline) as registry:
            ensure_valid(tunnel, registry, self.installed_version(tunnel.role), updating=True)
            updated = registry.update(tunnel)
        return updated

    def remove(self, name: str, deadline: Deadline | None = None) -> TunnelConfig:
        with self.transaction(deadline) as registry:
            removed = registry.remove(name)
        logger.info("Tunnel removed", name=name)
        return removed

    # Export / import

    def export(self, names: list[str] | None = None) -> str:
        """Serialize tunnels (all when ``names`` is None) into a YAML blob."""
        registry = self.load()
        tunnels = registry.list_tunnels() if names is None else [registry.require(n) for n in names]
        document = {
            "format_version": FORMAT_VERSION,
            "exported_at": datetime.now().isoformat(),
            "tunnels": [tunnel.model_dump(mode="json") for tunnel in tunnels],
        }
        logger.info("Registry exported", tunnels=len(tunnels))
        return yaml.safe_dump(document, sort_keys=False, allow_unicode=True)

    def _parse_blob(self, blob: str) -> list[Any]:
        try:
            data = yaml.safe_load(blob)
        except yaml.YAMLError as e:
            raise RegistryImportError(f"Import blob is not valid YAML or JSON: {e}") from e
        if not isinstance(data, dict):
            raise RegistryImportError("Import blob must be a mapping with 'format_version' and 'tunnels'")
        version = data.get("format_version")
        if version is None:
            raise RegistryImportError("Import blob has no format_version")
        if not isinstance(version, int) or version > FORMAT_VERSION:
            raise RegistryImportError(
                f"Import blob format_version {version!r} is not supported (max {FORMAT_VERSION})"
            )
        tunnels = data.get("tunnels") or []
        if not isinstance(tunnels, list):
            raise RegistryImportError("Import blob 'tunnels' must be a list")
        return tunnels

    def import_(
        self,
        blob: str,
        mode: ImportMode | str = ImportMode.MERGE,
        *,
        dry_run: bool = False,
        deadline: Deadline | None = None,
    ) -> ImportReport:
        """Import tunnels from an exported blob.

        Args:
            blob: YAML (or JSON) document produced by :meth:`export`
            mode: ``merge`` adds/updates by name; ``replace`` swaps the whole registry
            dry_run: Compute the report without saving

        Raises:
            RegistryImportError: If the blob is unusable, or any entry fails in replace mode
        """
        mode = ImportMode(mode)
        report = ImportReport(mode=mode, dry_run=dry_run)
        parsed: list[TunnelConfig] = []
        failures: dict[str, list[ValidationIssue]] = {}
        seen: set[str] = set()

        for index, raw in enumerate(self._parse_blob(blob)):
            key = _raw_name(raw) or f"#{index}"
            if key in seen:
                failures.setdefault(key, []).append(
                    ValidationIssue(severity=Severity.ERROR, field="name", message="duplicate name in import blob")
                )
                continue
            seen.add(key)
            try:
                if not isinstance(raw, dict):
                    raise RegistryImportError(f"entry #{index} is not a mapping")
                parsed.append(TunnelConfig.model_validate(raw))
            except ValidationError as e:
                failures[key] = issues_from_pydantic(e)
            except RegistryImportError as e:
                failures[key] = [ValidationIssue(severity=Severity.ERROR, field="entry", message=str(e))]

        if dry_run:
            self._apply_import(self.load(), parsed, failures, report)
        else:
            with self.transaction(deadline) as registry:
                self._apply_import(registry, parsed, failures, report)

        logger.info(
            "Registry import finished",
            mode=mode.value,
            dry_run=dry_run,
            added=len(report.added),
            updated=len(report.updated),
            failed=len(report.failed),
        )
        return report

    def _apply_import(
        self,
        registry: Registry,
        parsed: list[TunnelConfig],
        failures: dict[str, list[ValidationIssue]],
        report: ImportReport,
    ) -> None:
        replace = report.mode == ImportMode.REPLACE
        target = Registry() if replace else registry

        for tunnel in parsed:
            updating = tunnel.name in target
            issues = self.validate(tunnel, target, updating=updating)
            errors = errors_only(issues)
            if errors:
                failures[tunnel.name] = errors
                continue
            if issues:
                report.warnings[tunnel.name] = issues
            if updating:
                target.update(tunnel)
                report.updated.append(tunnel.name)
            else:
                target.add(tunnel)
                report.added.append(tunnel.name)

        report.failed = dict(failures)
        if replace:
            if failures and report.dry_run:
                return
            if failures:
                raise RegistryImportError(
                    f"Replace import rejected: {len(failures)} entries failed validation",
                    failures,
                )
            registry.clear()
            registry.tunnels.update(target.tunnels)
