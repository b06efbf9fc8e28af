"""Reusable tunnel templates with ``${VAR}`` placeholders.

A template is a YAML mapping describing one tunnel, stored as
``<template_dir>/<name>.yaml.tmpl``. Header comments carry metadata::

    # Template: Edge client for a region
    # Version: 1.2
    # Tags: env:prod, type:client
    name: edge-${REGION}
    role: client
    connection:
      server_addr: ${SERVER}
      ...

Instantiation substitutes the variables, refuses leftovers, applies the
template tags and adds the result through :meth:`ConfigStore.add`, so a
templated tunnel passes exactly the validation of a hand-added one.
"""

import csv
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .common.atomic import atomic_write_text
from .common.deadline import Deadline
from .common.logging import get_logger
from .common.utils import validate_tunnel_name
from .exceptions import ConfigValidationError, NotFoundError, StorageError
from .models import TunnelConfig
from .store import ConfigStore
from .validation import Severity, ValidationIssue, issues_from_pydantic

logger = get_logger(__name__)

TEMPLATE_SUFFIX = ".yaml.tmpl"
DEFAULT_TEMPLATE_VERSION = "1.0"

VARIABLE_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)\}")
VARIABLE_NAME = re.compile(r"[A-Z_][A-Z0-9_]*")
METADATA_PATTERN = re.compile(r"^#\s*(Template|Version|Tags?)\s*:\s*(.*?)\s*$", re.MULTILINE)


def _template_error(message: str) -> ValidationIssue:
    return ValidationIssue(severity=Severity.ERROR, field="template", message=message)


def template_variables(content: str) -> list[str]:
    """Placeholder names used in the content, sorted and unique."""
    return sorted(set(VARIABLE_PATTERN.findall(content)))


def substitute_variables(content: str, variables: dict[str, str]) -> str:
    """Replace ``${NAME}`` for every provided name; others are left as is."""

    def replace(match: re.Match[str]) -> str:
        return variables.get(match.group(1), match.group(0))

    return VARIABLE_PATTERN.sub(replace, content)


def check_unsubstituted_variables(content: str) -> None:
    """Raises ConfigValidationError if any placeholder is left."""
    leftover = template_variables(content)
    if leftover:
        names = ", ".join(f"${{{name}}}" for name in leftover)
        raise ConfigValidationError(
            "Template has unsubstituted variables",
            [_template_error(f"no value for {names}")],
        )


def parse_variables(pairs: list[str]) -> dict[str, str]:
    """Parse ``KEY=VALUE`` pairs.

    Raises:
        ConfigValidationError: If a pair has no ``=`` or the key is not an upper-case name
    """
    variables: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        key = key.strip()
        if not sep or not VARIABLE_NAME.fullmatch(key):
            raise ConfigValidationError(f"Invalid variable '{pair}': expected KEY=VALUE with an upper-case KEY")
        variables[key] = value
    return variables


def load_rows(path: Path) -> list[dict[str, str]]:
    """Variable rows for bulk instantiation.

    ``.csv`` files have a header row of variable names; YAML or JSON files
    hold a list of mappings. Values are stripped and empty rows skipped.

    Raises:
        StorageError: If the file cannot be read or parsed
    """
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise StorageError(f"Cannot read rows file {path}: {e}") from e

    if path.suffix.lower() == ".csv":
        reader = csv.DictReader(text.splitlines())
        raw_rows: list[Any] = list(reader)
    else:
        try:
            raw_rows = yaml.safe_load(text) or []
        except yaml.YAMLError as e:
            raise StorageError(f"Rows file {path} is not valid YAML: {e}") from e
        if not isinstance(raw_rows, list):
            raise StorageError(f"Rows file {path} must hold a list of mappings")

    rows: list[dict[str, str]] = []
    for index, raw in enumerate(raw_rows, start=1):
        if not isinstance(raw, dict):
            raise StorageError(f"Row {index} of {path} is not a mapping")
        row = {
            str(key).strip(): "" if value is None else str(value).strip()
            for key, value in raw.items()
            if key is not None
        }
        if any(row.values()):
            rows.append(row)
    return rows


class Template(BaseModel):
    """A stored template and the metadata from its header comments."""

    model_config = ConfigDict(frozen=True)

    name: str
    content: str
    description: str = ""
    version: str = DEFAULT_TEMPLATE_VERSION
    tags: list[str] = Field(default_factory=list)

    @classmethod
    def parse(cls, name: str, content: str) -> "Template":
        metadata: dict[str, Any] = {}
        for key, value in METADATA_PATTERN.findall(content):
            if key == "Template":
                metadata["description"] = value
            elif key == "Version" and value:
                metadata["version"] = value
            else:
                metadata["tags"] = [tag.strip() for tag in value.split(",") if tag.strip()]
        return cls(name=name, content=content, **metadata)

    @property
    def variables(self) -> list[str]:
        return template_variables(self.content)

    def render(self, variables: dict[str, str]) -> TunnelConfig:
        """Substitute variables and build the tunnel; template tags come first.

        Raises:
            ConfigValidationError: If variables are missing or the result is not a valid tunnel
        """
        text = substitute_variables(self.content, variables)
        check_unsubstituted_variables(text)
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ConfigValidationError(
                f"Template '{self.name}' does not render to valid YAML", [_template_error(str(e))]
            ) from e
        if not isinstance(data, dict):
            raise ConfigValidationError(
                f"Template '{self.name}' does not render to a mapping",
                [_template_error("expected a tunnel mapping")],
            )
        own_tags = data.get("tags") or []
        if not isinstance(own_tags, list):
            own_tags = [own_tags]
        data["tags"] = [*self.tags, *own_tags]
        try:
            return TunnelConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigValidationError(
                f"Template '{self.name}' renders an invalid tunnel", issues_from_pydantic(e)
            ) from e


class InstantiationReport(BaseModel):
    """Outcome of a bulk instantiation; rows are reported as ``row N``."""

    template: str
    added: list[str] = Field(default_factory=list)
    failed: dict[str, list[ValidationIssue]] = Field(default_factory=dict)
    warnings: dict[str, list[ValidationIssue]] = Field(default_factory=dict)

    @property
    def committed(self) -> int:
        return len(self.added)

    @property
    def ok(self) -> bool:
        return not self.failed


class TemplateStore:
    """Template files plus instantiation into the registry."""

    def __init__(self, store: ConfigStore):
        self.store = store
        self.settings = store.settings

    @property
    def directory(self) -> Path:
        return self.settings.template_dir

    def path(self, name: str) -> Path:
        return self.directory / f"{name}{TEMPLATE_SUFFIX}"

    def list_templates(self) -> list[str]:
        if not self.directory.is_dir():
            return []
        return sorted(p.name[: -len(TEMPLATE_SUFFIX)] for p in self.directory.glob(f"*{TEMPLATE_SUFFIX}"))

    def get(self, name: str) -> Template:
        """Load a template.

        Raises:
            NotFoundError: If no template has that name
        """
        path = self.path(name)
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise NotFoundError(f"Template '{name}' not found") from None
        except (OSError, UnicodeDecodeError) as e:
            raise StorageError(f"Cannot read template {path}: {e}") from e
        return Template.parse(name, content)

    def create(self, name: str, content: str, *, overwrite: bool = False) -> Template:
        """Store a new template.

        Raises:
            ConfigValidationError: If the name is invalid, the template exists,
                or the content is not a YAML mapping
        """
        try:
            name = validate_tunnel_name(name)
        except ValueError as e:
            raise ConfigValidationError(f"Invalid template name: {e}") from e
        if not content.strip():
            raise ConfigValidationError(f"Template '{name}' is empty")
        path = self.path(name)
        if path.exists() and not overwrite:
            raise ConfigValidationError(f"Template '{name}' already exists")
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ConfigValidationError(f"Template '{name}' is not valid YAML", [_template_error(str(e))]) from e
        if not isinstance(data, dict):
            raise ConfigValidationError(
                f"Template '{name}' must describe one tunnel", [_template_error("expected a mapping")]
            )

        self.directory.mkdir(parents=True, exist_ok=True)
        atomic_write_text(path, content if content.endswith("\n") else content + "\n", mode=0o600)
        template = Template.parse(name, content)
        logger.info("Template created", template=name, variables=template.variables)
        return template

    def create_from_file(self, name: str, source: Path, *, overwrite: bool = False) -> Template:
        try:
            content = source.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise StorageError(f"Template source {source} does not exist") from None
        except (OSError, UnicodeDecodeError) as e:
            raise StorageError(f"Cannot read template source {source}: {e}") from e
        return self.create(name, content, overwrite=overwrite)

    def delete(self, name: str) -> None:
        path = self.path(name)
        if not path.exists():
            raise NotFoundError(f"Template '{name}' not found")
        path.unlink()
        logger.info("Template deleted", template=name)

    # Instantiation

    def instantiate(
        self,
        name: str,
        variables: dict[str, str],
        deadline: Deadline | None = None,
    ) -> tuple[TunnelConfig, list[ValidationIssue]]:
        """Render a template and add the tunnel; returns it with its warnings.

        Raises:
            NotFoundError: If the template does not exist
            ConfigValidationError: If rendering or registry validation fails
        """
        tunnel = self.get(name).render(variables)
        warnings = self.store.add(tunnel, deadline)
        logger.info("Template instantiated", template=name, tunnel=tunnel.name)
        return tunnel, warnings

    def bulk_instantiate(
        self,
        name: str,
        rows: list[dict[str, str]],
        deadline: Deadline | None = None,
    ) -> InstantiationReport:
        """Instantiate once per row; a failing row never stops the others.

        Storage and deadline errors still abort the batch; rows added before
        that stay committed.
        """
        template = self.get(name)
        report = InstantiationReport(template=name)
        for number, row in enumerate(rows, start=1):
            key = f"row {number}"
            try:
                unknown = [var for var in row if not VARIABLE_NAME.fullmatch(var)]
                if unknown:
                    raise ConfigValidationError(
                        "Invalid variable names", [_template_error(f"not an upper-case name: {', '.join(unknown)}")]
                    )
                tunnel = template.render(row)
                warnings = self.store.add(tunnel, deadline)
            except ConfigValidationError as e:
                logger.warning("Template row failed", template=name, row=number, error=str(e))
                report.failed[key] = e.issues or [_template_error(str(e))]
                continue
            report.added.append(tunnel.name)
            if warnings:
                report.warnings[tunnel.name] = warnings

        logger.info(
            "Bulk instantiation finished",
            template=name,
            added=len(report.added),
            failed=len(report.failed),
        )
        return report
