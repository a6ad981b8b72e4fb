"""Custom exceptions for the flow engine with detailed error information."""

from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for better classification."""
    VALIDATION = "validation"
    STATE = "state"
    DATA_MAPPING = "data_mapping"
    EXECUTION = "execution"
    STORAGE = "storage"
    CONFIGURATION = "configuration"
    CONCURRENCY = "concurrency"


class FlowEngineError(Exception):
    """Base exception for all flow engine errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.context = context or {}
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__
        }

    def add_context(self, **kwargs):
        """Add additional context to the exception."""
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        """Add additional details to the exception."""
        self.details.update(kwargs)
        return self


class ValidationError(FlowEngineError):
    """Raised when a graph or a node configuration is malformed."""

    def __init__(
        self,
        message: str,
        issues: Optional[List[Dict[str, Any]]] = None,
        **kwargs
    ):
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        super().__init__(message, **kwargs)
        self.issues = issues or []
        if issues:
            self.add_details(issues=issues)


class GraphStructureError(ValidationError):
    """Raised when a graph mutation would break a structural invariant."""

    def __init__(self, message: str, node_id: Optional[str] = None, edge_id: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        if node_id:
            self.add_context(node_id=node_id)
        if edge_id:
            self.add_context(edge_id=edge_id)


class DuplicateIdError(GraphStructureError):
    """Raised when a node or edge id is already used in the graph."""


class UnknownNodeError(GraphStructureError):
    """Raised when an operation references a node that is not in the graph."""


class UnknownEdgeError(GraphStructureError):
    """Raised when an operation references an edge that is not in the graph."""


class SelfLoopError(GraphStructureError):
    """Raised when an edge would connect a node to itself."""


class WouldCreateCycleError(GraphStructureError):
    """Raised when an edge would close a cycle."""


class InvalidConnectionError(GraphStructureError):
    """Raised when an edge is not allowed by the endpoint node types."""


class NodeTypeImmutableError(GraphStructureError):
    """Raised when an update tries to change a node's type."""


class NodeTypeError(FlowEngineError):
    """Raised for unknown node types or invalid operation registrations."""

    def __init__(self, message: str, node_type: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if node_type:
            self.add_context(node_type=node_type)


class InvalidTransitionError(FlowEngineError):
    """Raised when a flow status change is not an allowed edge of the state machine."""

    def __init__(
        self,
        message: str,
        flow_id: Optional[str] = None,
        current_status: Optional[str] = None,
        requested_status: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.STATE,
            **kwargs
        )
        if flow_id:
            self.add_context(flow_id=flow_id)
        if current_status:
            self.add_details(current_status=current_status)
        if requested_status:
            self.add_details(requested_status=requested_status)


class ConcurrentTransitionError(FlowEngineError):
    """Raised when a second command arrives while another is in flight for the same flow."""

    def __init__(self, message: str, flow_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.CONCURRENCY,
            recoverable=True,
            **kwargs
        )
        if flow_id:
            self.add_context(flow_id=flow_id)


class DataMappingError(FlowEngineError):
    """Base class for failures while resolving a data path."""

    def __init__(self, message: str, path: Optional[str] = None, segment: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.DATA_MAPPING,
            **kwargs
        )
        self.path = path
        self.segment = segment
        if path:
            self.add_details(path=path)
        if segment:
            self.add_details(segment=segment)


class PathNotFoundError(DataMappingError):
    """Raised when a path segment does not exist on the current value."""


class IndexOutOfRangeError(DataMappingError):
    """Raised when a fixed array index is past the end of the array."""


class UnknownTransformError(DataMappingError):
    """Raised when a mapping names a transform that does not exist."""


class OperationError(FlowEngineError):
    """Raised when an external node operation fails."""

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        node_type: Optional[str] = None,
        code: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        self.code = code
        if node_id:
            self.add_context(node_id=node_id)
        if node_type:
            self.add_context(node_type=node_type)
        if code:
            self.add_details(code=code)


class PersistenceError(FlowEngineError):
    """Raised when a store write fails; the in-memory change has been rolled back."""

    def __init__(self, message: str, operation: Optional[str] = None, flow_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STORAGE,
            recoverable=True,
            **kwargs
        )
        if operation:
            self.add_context(operation=operation)
        if flow_id:
            self.add_context(flow_id=flow_id)


class TransientError(FlowEngineError):
    """Raised for transient storage errors that should be retried."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.STORAGE,
            recoverable=True,
            **kwargs
        )


class FlowNotFoundError(FlowEngineError):
    """Raised when a flow id is not known to the store."""

    def __init__(self, flow_id: str, **kwargs):
        super().__init__(
            f"Flow '{flow_id}' not found",
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.STATE,
            **kwargs
        )
        self.add_context(flow_id=flow_id)


class TemplateNotFoundError(FlowEngineError):
    """Raised when a workflow template id is not known."""

    def __init__(self, template_id: str, **kwargs):
        super().__init__(
            f"Template '{template_id}' not found",
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.STORAGE,
            **kwargs
        )
        self.add_context(template_id=template_id)


class ConfigurationError(FlowEngineError):
    """Raised when configuration is invalid or missing."""

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if config_key:
            self.add_context(config_key=config_key)


def create_error_response(error: FlowEngineError) -> Dict[str, Any]:
    """Create a standardized error response from a FlowEngineError."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
