"""Core Pydantic models for workflow graph definitions."""

import re
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


class WorkflowNodeType(str, Enum):
    """Capability tag of a workflow node."""
    TRIGGER = "trigger"
    EMAIL = "email"
    WEBHOOK = "webhook"
    DELAY = "delay"
    AI_TASK = "ai_task"
    SERP_ANALYZE = "serp_analyze"
    CONTENT_EXTRACT = "content_extract"
    DATA_FILTER = "data_filter"
    CLIENT_PROFILE = "client_profile"
    REVIEW = "review"
    OPTIONS_SELECT = "options_select"


class IssueSeverity(str, Enum):
    """Severity of a validation issue."""
    ERROR = "error"
    WARNING = "warning"


class Position(BaseModel):
    """Canvas position of a node. Layout only."""
    x: float = 0.0
    y: float = 0.0


class NodeDefinition(BaseModel):
    """Definition of a workflow node."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Unique identifier for the node within its graph")
    type: WorkflowNodeType = Field(..., description="Node capability tag")
    label: str = Field(..., description="Display label")
    description: Optional[str] = Field(None, description="Optional description")
    config: Dict[str, Any] = Field(default_factory=dict, description="Type-specific configuration")
    position: Position = Field(default_factory=Position, description="Canvas position")

    @field_validator('id')
    @classmethod
    def validate_id_format(cls, id_value):
        """Ensure node ID can be addressed by data paths."""
        if not id_value or not id_value.strip():
            raise ValueError("Node ID cannot be empty")

        if not re.match(r'^[a-zA-Z0-9_-]+$', id_value.strip()):
            raise ValueError("Node ID must contain only alphanumeric characters, underscores, and hyphens")

        return id_value.strip()

    @field_validator('label')
    @classmethod
    def validate_label(cls, label):
        if not label or not label.strip():
            raise ValueError("Node label cannot be empty")
        return label.strip()


class EdgeDefinition(BaseModel):
    """Definition of a directed edge between two nodes."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Unique identifier for the edge")
    source_node_id: str = Field(..., alias="sourceNodeId", description="Source node ID")
    target_node_id: str = Field(..., alias="targetNodeId", description="Target node ID")

    @field_validator('source_node_id', 'target_node_id')
    @classmethod
    def validate_node_ids(cls, node_id):
        """Ensure node IDs are non-empty."""
        if not node_id or not node_id.strip():
            raise ValueError("Node ID cannot be empty")
        return node_id.strip()


class GraphDefinition(BaseModel):
    """Serialized workflow graph: ``{nodes: [...], edges: [...]}``."""
    nodes: List[NodeDefinition] = Field(default_factory=list, description="Nodes in the graph")
    edges: List[EdgeDefinition] = Field(default_factory=list, description="Edges connecting nodes")

    @field_validator('nodes')
    @classmethod
    def validate_unique_node_ids(cls, nodes):
        """Ensure all node IDs are unique."""
        node_ids = [node.id for node in nodes]
        if len(node_ids) != len(set(node_ids)):
            raise ValueError("All node IDs must be unique")
        return nodes

    def find_node(self, node_id: str) -> Optional[NodeDefinition]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def to_json_dict(self) -> Dict[str, Any]:
        """Dump with the wire aliases (``sourceNodeId``/``targetNodeId``)."""
        return self.model_dump(mode="json", by_alias=True)


class ValidationIssue(BaseModel):
    """A single finding from graph or config validation."""
    severity: IssueSeverity = Field(..., description="error blocks execution, warning does not")
    code: str = Field(..., description="Machine-readable issue code")
    message: str = Field(..., description="Human-readable message")
    node_id: Optional[str] = Field(None, description="Node the issue refers to")
    edge_id: Optional[str] = Field(None, description="Edge the issue refers to")
    field: Optional[str] = Field(None, description="Config key the issue refers to")


class ValidationResult(BaseModel):
    """Result of graph validation."""
    issues: List[ValidationIssue] = Field(default_factory=list)

    @property
    def errors(self) -> List[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == IssueSeverity.ERROR]

    @property
    def warnings(self) -> List[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == IssueSeverity.WARNING]

    @property
    def is_valid(self) -> bool:
        """True when the graph has no errors (warnings are allowed)."""
        return not self.errors
