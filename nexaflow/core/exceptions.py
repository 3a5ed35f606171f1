"""Exception hierarchy for Nexaflow.

Each error carries a category, which decides the HTTP status it maps to,
and a severity. Keyword arguments that are not part of the base signature
(``node_id``, ``resource_id``, ``tool_name`` ...) are recorded as context.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    EXECUTION = "execution"
    STORAGE = "storage"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


class NexaflowError(Exception):
    """Base class for every error raised by the service."""

    category = ErrorCategory.EXECUTION
    severity = ErrorSeverity.MEDIUM
    recoverable = False
    retry_after: Optional[int] = None
    default_message = "Nexaflow error"

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        recoverable: Optional[bool] = None,
        **context
    ):
        self.message = message or self.default_message
        super().__init__(self.message)
        self.error_code = type(self).__name__
        self.details = dict(details or {})
        self.context = {k: v for k, v in context.items() if v is not None}
        if recoverable is not None:
            self.recoverable = recoverable
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Everything known about the error, for structured logs."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    def add_context(self, **kwargs) -> "NexaflowError":
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs) -> "NexaflowError":
        self.details.update(kwargs)
        return self


class ValidationError(NexaflowError):
    """A request or definition is malformed."""

    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.LOW

    def __init__(self, message: str, validation_errors: Optional[List[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.validation_errors = list(validation_errors or [])
        if self.validation_errors:
            self.details["validation_errors"] = self.validation_errors


class AuthError(NexaflowError):
    """Identity failures."""


class AuthenticationError(AuthError):
    """The caller could not be identified."""

    category = ErrorCategory.AUTHENTICATION
    default_message = "Unauthorized"


class AuthorizationError(AuthError):
    """The caller is known but may not touch the resource."""

    category = ErrorCategory.AUTHORIZATION
    default_message = "Access denied"


class NotFoundError(NexaflowError):
    category = ErrorCategory.NOT_FOUND
    severity = ErrorSeverity.LOW


class ConflictError(NexaflowError):
    """A write contradicts existing state."""

    category = ErrorCategory.CONFLICT
    severity = ErrorSeverity.LOW


class ExecutionError(NexaflowError):
    """A unit of work failed inside an engine.

    These end up in Step and node records; they never escape
    ``execute_workflow`` or ``AgentExecutor.execute``.
    """

    severity = ErrorSeverity.HIGH
    recoverable = True


class NodeExecutionError(ExecutionError):
    """A workflow node failed."""


class NodeTimeoutError(NodeExecutionError):
    def __init__(self, node_id: str, timeout: float, **kwargs):
        super().__init__(f"Node '{node_id}' timed out after {timeout:g}s", node_id=node_id, **kwargs)
        self.timeout = timeout
        self.details["timeout"] = timeout


class ToolExecutionError(ExecutionError):
    """A tool could not complete; its message is reported back to the agent."""


class ReasoningBackendError(ExecutionError):
    """The reasoning backend could not produce a decision."""

    recoverable = False


class StorageError(NexaflowError):
    """A database operation failed. Retried by ``with_retry``."""

    category = ErrorCategory.STORAGE
    severity = ErrorSeverity.HIGH
    recoverable = True
    retry_after = 3


class ToolRegistryError(NexaflowError):
    """A tool could not be registered or looked up."""

    category = ErrorCategory.CONFIGURATION


class StreamClosedError(NexaflowError):
    """Emitting into a step stream that was closed or cancelled."""

    severity = ErrorSeverity.LOW
    default_message = "Step stream is closed"


class InternalError(NexaflowError):
    """An unexpected failure; answered with a generic 500 that hides the cause."""

    category = ErrorCategory.INTERNAL
    severity = ErrorSeverity.CRITICAL
    default_message = "Internal server error"


_STATUS_BY_CATEGORY = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.AUTHENTICATION: 401,
    ErrorCategory.AUTHORIZATION: 403,
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.CONFLICT: 409,
}


def http_status_for_error(error: NexaflowError) -> int:
    return _STATUS_BY_CATEGORY.get(error.category, 500)


def create_error_response(error: NexaflowError) -> Dict[str, Any]:
    """JSON body for an error: ``{"error", "message", "details", "context"}``."""
    details = dict(error.details)
    details.update(
        severity=error.severity.value,
        category=error.category.value,
        recoverable=error.recoverable,
        retry_after=error.retry_after,
        timestamp=error.timestamp.isoformat(),
    )
    return {
        "error": error.error_code,
        "message": error.message,
        "details": details,
        "context": error.context,
    }
