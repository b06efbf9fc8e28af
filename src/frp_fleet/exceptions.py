"""Custom exceptions for frp-fleet."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .validation import ValidationIssue


class FleetError(Exception):
    """Base exception for all frp-fleet errors."""
    pass


class ConfigValidationError(FleetError):
    """Raised when a tunnel configuration fails validation."""

    def __init__(self, message: str, issues: "list[ValidationIssue] | None" = None):
        super().__init__(message)
        self.issues = list(issues or [])

    def __str__(self) -> str:
        base = super().__str__()
        if not self.issues:
            return base
        details = "; ".join(str(issue) for issue in self.issues)
        return f"{base}: {details}"


class PermissionDeniedError(FleetError):
    """Raised when the filesystem or a process signal denies permission."""
    pass


class NotFoundError(FleetError):
    """Raised when a tunnel name or selector matches nothing."""
    pass


class OperationTimeoutError(FleetError):
    """Raised when an operation exceeds its deadline."""
    pass


class ProcessError(FleetError):
    """Raised when spawning or signalling an FRP process fails."""
    pass


class BinaryNotFoundError(ProcessError):
    """Raised when the FRP binary is not found or not executable."""
    pass


class StorageError(FleetError):
    """Raised when the registry cannot be read or written."""
    pass


class RegistryImportError(FleetError):
    """Raised when an import blob is rejected as a whole."""

    def __init__(self, message: str, failures: "dict[str, list[ValidationIssue]] | None" = None):
        super().__init__(message)
        self.failures = dict(failures or {})


class ConfirmationRequiredError(FleetError):
    """Raised when an operation needs confirmation and nobody can give it."""
    pass


class OperationAbortedError(FleetError):
    """Raised when the user declines a confirmation prompt."""
    pass
