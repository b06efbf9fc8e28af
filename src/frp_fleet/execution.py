"""Execution context for scripted and interactive use.

Every command runs through :meth:`ExecutionContext.run`, which owns the
deadline, the confirmation policy, quiet-mode output and, alone in the
code base, the translation of results and errors into exit codes.
"""

import sys
from collections.abc import Callable
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Generic, TypeVar

import typer
from pydantic import BaseModel, Field
from rich.console import Console
from rich.markup import escape

from .common.deadline import Deadline
from .common.logging import get_logger
from .exceptions import (
    ConfigValidationError,
    ConfirmationRequiredError,
    NotFoundError,
    OperationAbortedError,
    OperationTimeoutError,
    PermissionDeniedError,
)
from .query import BulkOutcome, BulkResult
from .store import ImportReport
from .templates import InstantiationReport

logger = get_logger(__name__)

T = TypeVar("T")


class ExitCode(IntEnum):
    SUCCESS = 0
    GENERAL = 1
    VALIDATION = 2
    PERMISSION = 3
    NOT_FOUND = 4
    TIMEOUT = 5


# Aggregate exit code of a fully failed bulk operation: highest rank wins
SEVERITY_RANK = {
    ExitCode.TIMEOUT: 5,
    ExitCode.PERMISSION: 4,
    ExitCode.GENERAL: 3,
    ExitCode.VALIDATION: 2,
    ExitCode.NOT_FOUND: 1,
}


def classify(error: BaseException) -> ExitCode:
    """Map an error to its exit code."""
    if isinstance(error, (OperationTimeoutError, TimeoutError)):
        return ExitCode.TIMEOUT
    if isinstance(error, (PermissionDeniedError, PermissionError)):
        return ExitCode.PERMISSION
    if isinstance(error, NotFoundError):
        return ExitCode.NOT_FOUND
    if isinstance(error, (ConfirmationRequiredError, OperationAbortedError)):
        return ExitCode.GENERAL
    if isinstance(error, (ConfigValidationError, ValueError)):
        return ExitCode.VALIDATION
    return ExitCode.GENERAL


def worst(codes: list[ExitCode]) -> ExitCode:
    return max(codes, key=lambda code: SEVERITY_RANK.get(code, 0), default=ExitCode.GENERAL)


def result_exit_code(value: Any) -> ExitCode:
    """Exit code of a successful call whose result may carry per-item failures."""
    if isinstance(value, BulkResult):
        if value.outcome == BulkOutcome.SUCCEEDED:
            return ExitCode.SUCCESS
        if value.outcome == BulkOutcome.PARTIAL:
            return ExitCode.GENERAL
        return worst([classify(item.error) if item.error else ExitCode.GENERAL for item in value.failed])
    if isinstance(value, (ImportReport, InstantiationReport)) and value.failed:
        return ExitCode.GENERAL if value.committed else ExitCode.VALIDATION
    return ExitCode.SUCCESS


class ExecutionOptions(BaseModel):
    """Per-invocation execution settings."""

    assume_yes: bool = Field(default=False, description="Confirm every prompt automatically")
    quiet: bool = Field(default=False, description="Suppress non-error output")
    timeout: float | None = Field(default=None, gt=0, description="Deadline for the whole operation")
    interactive: bool | None = Field(default=None, description="Prompt on stdin; detected from the TTY when None")


@dataclass
class Outcome(Generic[T]):
    exit_code: ExitCode
    value: T | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.exit_code == ExitCode.SUCCESS


class ExecutionContext:
    """Runs operations with a deadline, confirmation policy and exit code mapping."""

    def __init__(
        self,
        options: ExecutionOptions | None = None,
        console: Console | None = None,
        err_console: Console | None = None,
    ):
        self.options = options or ExecutionOptions()
        self.interactive = (
            self.options.interactive if self.options.interactive is not None else sys.stdin.isatty()
        )
        self.console = console or Console()
        self.err_console = err_console or Console(stderr=True)
        self.console.quiet = self.options.quiet

    # Output

    def print(self, *objects: Any, **kwargs: Any) -> None:
        """Regular output; dropped in quiet mode."""
        self.console.print(*objects, **kwargs)

    def warn(self, message: str) -> None:
        if not self.options.quiet:
            self.err_console.print(f"[yellow]Warning:[/yellow] {escape(message)}")

    def error(self, message: str) -> None:
        """Errors are shown even in quiet mode."""
        self.err_console.print(f"[red]Error:[/red] {escape(message)}")

    # Confirmation

    def confirm(self, message: str) -> bool:
        """Ask before a destructive step.

        Raises:
            ConfirmationRequiredError: If no one can answer and ``--yes`` was not given
            OperationAbortedError: If the user declines
        """
        if self.options.assume_yes:
            logger.debug("Confirmation bypassed", prompt=message)
            return True
        if not self.interactive:
            raise ConfirmationRequiredError(f"{message} Confirmation required; re-run with --yes")
        if not typer.confirm(message, default=False, err=True):
            raise OperationAbortedError("Aborted")
        return True

    # Running

    def run(self, operation: Callable[[Deadline], T]) -> Outcome[T]:
        """Run an operation under a fresh deadline and classify its outcome."""
        try:
            with Deadline(self.options.timeout) as deadline:
                value = operation(deadline)
        except Exception as e:
            code = classify(e)
            logger.debug("Operation failed", error=str(e), error_type=type(e).__name__, exit_code=int(code))
            self.error(str(e))
            return Outcome(exit_code=code, error=e)
        return Outcome(exit_code=result_exit_code(value), value=value)
