"""frp-fleet - configuration and process supervision for fleets of FRP tunnels."""

from .commands import Fleet
from .common.deadline import Deadline
from .common.logging import get_logger, setup_logging
from .exceptions import (
    BinaryNotFoundError,
    ConfigValidationError,
    ConfirmationRequiredError,
    FleetError,
    NotFoundError,
    OperationAbortedError,
    OperationTimeoutError,
    PermissionDeniedError,
    ProcessError,
    RegistryImportError,
    StorageError,
)
from .execution import ExecutionContext, ExecutionOptions, ExitCode, Outcome
from .models import (
    ConnectionParams,
    ProcessRecord,
    ProcessState,
    Protocol,
    ProxySpec,
    ProxyType,
    Registry,
    Role,
    TunnelConfig,
)
from .query import BulkOperation, BulkResult, OptimizationReport, QueryEngine, SearchQuery
from .settings import FleetSettings
from .store import ConfigStore, ImportMode, ImportReport
from .supervisor import Supervisor
from .templates import InstantiationReport, Template, TemplateStore
from .validation import ValidationIssue, validate_tunnel
from .version import detect_version

# Library users get warnings on stderr until the CLI reconfigures logging
setup_logging(level="WARNING")

logger = get_logger(__name__)

__version__ = "0.1.0"


__all__ = [
    # Engine
    "Fleet",
    "ConfigStore",
    "Supervisor",
    "QueryEngine",
    "TemplateStore",
    "ExecutionContext",
    "ExecutionOptions",
    "ExitCode",
    "Outcome",
    "Deadline",
    "FleetSettings",
    "detect_version",
    "validate_tunnel",
    # Models
    "TunnelConfig",
    "ConnectionParams",
    "ProxySpec",
    "ProxyType",
    "Protocol",
    "Role",
    "ProcessRecord",
    "ProcessState",
    "Registry",
    "SearchQuery",
    "BulkOperation",
    "BulkResult",
    "OptimizationReport",
    "ImportMode",
    "ImportReport",
    "Template",
    "InstantiationReport",
    "ValidationIssue",
    # Exceptions
    "FleetError",
    "ConfigValidationError",
    "PermissionDeniedError",
    "NotFoundError",
    "OperationTimeoutError",
    "ProcessError",
    "BinaryNotFoundError",
    "StorageError",
    "RegistryImportError",
    "ConfirmationRequiredError",
    "OperationAbortedError",
    # Logging
    "get_logger",
    "setup_logging",
]
