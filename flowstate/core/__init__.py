"""Core flow engine components."""

from .exceptions import (
    FlowEngineError,
    ValidationError,
    GraphStructureError,
    NodeTypeError,
    InvalidTransitionError,
    ConcurrentTransitionError,
    DataMappingError,
    PathNotFoundError,
    IndexOutOfRangeError,
    OperationError,
    PersistenceError,
    FlowNotFoundError,
    TemplateNotFoundError,
)
from .logging import setup_logging, get_logger
from .path_resolver import resolve
from .interpolator import interpolate, interpolate_value
from .node_registry import NodeTypeRegistry
from .workflow_graph import WorkflowGraph

__all__ = [
    "FlowEngineError",
    "ValidationError",
    "GraphStructureError",
    "NodeTypeError",
    "InvalidTransitionError",
    "ConcurrentTransitionError",
    "DataMappingError",
    "PathNotFoundError",
    "IndexOutOfRangeError",
    "OperationError",
    "PersistenceError",
    "FlowNotFoundError",
    "TemplateNotFoundError",
    "setup_logging",
    "get_logger",
    "resolve",
    "interpolate",
    "interpolate_value",
    "NodeTypeRegistry",
    "WorkflowGraph",
]
