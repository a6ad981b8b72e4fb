"""Pydantic models for workflow graphs and flow instances."""

from .core import (
    WorkflowNodeType,
    IssueSeverity,
    Position,
    NodeDefinition,
    EdgeDefinition,
    GraphDefinition,
    ValidationIssue,
    ValidationResult,
)
from .flow import (
    FlowStatus,
    StepStatus,
    ExecutionMode,
    ReviewerRole,
    ReviewRequest,
    StandardNodeResponse,
    OperationResult,
    StepExecution,
    FlowInstance,
    FlowCard,
    EditableField,
    WorkflowTemplate,
    CreateFlowRequest,
    CreateTemplateRequest,
    Integration,
)

__all__ = [
    "WorkflowNodeType",
    "IssueSeverity",
    "Position",
    "NodeDefinition",
    "EdgeDefinition",
    "GraphDefinition",
    "ValidationIssue",
    "ValidationResult",
    "FlowStatus",
    "StepStatus",
    "ExecutionMode",
    "ReviewerRole",
    "ReviewRequest",
    "StandardNodeResponse",
    "OperationResult",
    "StepExecution",
    "FlowInstance",
    "FlowCard",
    "EditableField",
    "WorkflowTemplate",
    "CreateFlowRequest",
    "CreateTemplateRequest",
    "Integration",
]
