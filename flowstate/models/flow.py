"""Pydantic models for flow instances, step executions and node responses."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from .core import GraphDefinition, WorkflowNodeType


class FlowStatus(str, Enum):
    """Lifecycle status of a flow instance (Kanban column)."""
    NEW = "new"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    IN_REVIEW = "in_review"
    INPUT_REQUIRED = "input_required"
    COMPLETE = "complete"
    ERROR = "error"


class StepStatus(str, Enum):
    """Status of a single step execution."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class NodeResponseStatus(str, Enum):
    """Status carried by a node response envelope."""
    SUCCESS = "success"
    ERROR = "error"
    PENDING = "pending"


class ExecutionMode(str, Enum):
    """How node operations are dispatched for a flow."""
    SIMULATE = "simulate"
    RECORD = "record"
    LIVE = "live"


class ReviewerRole(str, Enum):
    """Who is expected to act on a review gate."""
    AGENCY = "agency"
    CLIENT = "client"
    ADMIN = "admin"


class ReviewRequest(BaseModel):
    """A pending approval on a review step."""
    model_config = ConfigDict(frozen=True)

    step_id: str = Field(..., description="Review step awaiting a decision")
    reviewer_needed: ReviewerRole = Field(ReviewerRole.AGENCY, description="Role expected to decide")
    submitted_at: datetime = Field(..., description="When the gate was reached")
    auto_approve_after: Optional[float] = Field(None, description="Hours before a non-blocking gate auto-approves")
    blocking_review: bool = Field(True, description="Whether the gate ignores the auto-approve timeout")


class NodeResponseData(BaseModel):
    """Payload section of a node response."""
    processed: Any = None
    raw: Any = None
    summary: Dict[str, Any] = Field(default_factory=dict)


class NodeError(BaseModel):
    """Error section of a node response."""
    message: str
    code: Optional[str] = None
    details: Any = None


class ApiMetadata(BaseModel):
    """Metadata about the external call behind a node response."""
    provider: str
    endpoint: Optional[str] = None
    credits_used: Optional[float] = None
    request_id: Optional[str] = None


class StandardNodeResponse(BaseModel):
    """Uniform envelope produced by every node execution.

    Data paths address this structure, e.g. ``serp-1.data.processed.items[*].url``.
    """
    execution_id: str = Field(..., description="Unique id of this execution")
    node_id: str = Field(..., description="Node that produced the response")
    node_type: WorkflowNodeType = Field(..., description="Type of the node")
    status: NodeResponseStatus = Field(..., description="Outcome")
    executed_at: datetime = Field(..., description="Completion timestamp")
    execution_time_ms: int = Field(0, description="Wall time spent in the operation")
    data: NodeResponseData = Field(default_factory=NodeResponseData)
    error: Optional[NodeError] = None
    input_data: Optional[Dict[str, Any]] = None
    api_metadata: Optional[ApiMetadata] = None


class OperationResult(BaseModel):
    """What a node operation hands back to the engine."""
    processed: Any = None
    raw: Any = None
    summary: Dict[str, Any] = Field(default_factory=dict)
    credits_used: float = 0.0
    api_metadata: Optional[ApiMetadata] = None


class StepExecution(BaseModel):
    """One runtime attempt of a node within a flow pass. Append-only once started."""
    model_config = ConfigDict(frozen=True)

    execution_id: str = Field(..., description="Unique id, shared with the step's node response")
    pass_number: int = Field(..., description="Run pass this row belongs to")
    step_id: str = Field(..., description="Node id")
    step_name: str = Field(..., description="Node label")
    step_type: WorkflowNodeType = Field(..., description="Node type")
    status: StepStatus = Field(..., description="Step status")
    input_data: Dict[str, Any] = Field(default_factory=dict, description="Resolved configuration")
    output_data: Optional[Dict[str, Any]] = Field(None, description="Node response envelope")
    error_data: Optional[Dict[str, Any]] = Field(None, description="Failure details")
    execution_time_ms: int = Field(0, description="Wall time spent on the step")
    credits_used: float = Field(0.0, description="Credits consumed by the step")
    started_at: datetime = Field(..., description="Start timestamp")
    completed_at: Optional[datetime] = Field(None, description="Completion timestamp")


class FlowInstance(BaseModel):
    """A runtime execution of a workflow graph bound to one business.

    Instances are immutable; every change produces a new instance that replaces
    the previous one in the flow store as a whole.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Flow id")
    template_id: str = Field(..., description="Template the flow was created from")
    business_id: str = Field(..., description="Owning business")
    title: str = Field(..., description="User-facing name")
    status: FlowStatus = Field(FlowStatus.NEW, description="Current status")
    execution_mode: ExecutionMode = Field(ExecutionMode.LIVE, description="Operation dispatch mode")
    custom_field_values: Dict[str, Any] = Field(default_factory=dict)
    graph: GraphDefinition = Field(..., description="Graph snapshot taken at creation")
    step_order: List[str] = Field(default_factory=list, description="Reachable node ids in execution order")
    current_step_id: Optional[str] = None
    pending_reviews: List[ReviewRequest] = Field(default_factory=list)
    error_message: Optional[str] = None
    error_data: Optional[Dict[str, Any]] = None
    pass_number: int = Field(0, description="Number of run passes started so far")
    step_executions: List[StepExecution] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    scheduled_for: Optional[datetime] = None

    def current_pass_steps(self) -> List[StepExecution]:
        """Step rows of the latest pass; earlier passes are kept for audit only."""
        return [step for step in self.step_executions if step.pass_number == self.pass_number]

    def latest_step(self, step_id: str) -> Optional[StepExecution]:
        for step in reversed(self.current_pass_steps()):
            if step.step_id == step_id:
                return step
        return None

    @computed_field
    @property
    def total_steps(self) -> int:
        return len(self.step_order)

    @computed_field
    @property
    def completed_steps(self) -> int:
        reachable = set(self.step_order)
        done = {
            step.step_id for step in self.current_pass_steps()
            if step.status == StepStatus.SUCCESS and step.step_id in reachable
        }
        return len(done)

    @computed_field
    @property
    def progress(self) -> int:
        """Percentage of reachable steps that succeeded in the current pass."""
        if not self.step_order:
            return 0
        return round(self.completed_steps / self.total_steps * 100)

    @computed_field
    @property
    def credits_used(self) -> float:
        return sum(step.credits_used for step in self.step_executions)

    def to_card(self) -> "FlowCard":
        """Summary used by list and board views."""
        current_step = self.graph.find_node(self.current_step_id) if self.current_step_id else None
        return FlowCard(
            id=self.id,
            title=self.title,
            template_id=self.template_id,
            business_id=self.business_id,
            status=self.status,
            progress=self.progress,
            current_step=current_step.label if current_step else None,
            current_step_id=self.current_step_id,
            total_steps=self.total_steps,
            completed_steps=self.completed_steps,
            credits_used=self.credits_used,
            pending_reviews=list(self.pending_reviews),
            error_message=self.error_message,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class FlowCard(BaseModel):
    """Compact flow representation for the Kanban board."""
    id: str
    title: str
    template_id: str
    business_id: str
    status: FlowStatus
    progress: int
    current_step: Optional[str] = None
    current_step_id: Optional[str] = None
    total_steps: int
    completed_steps: int
    credits_used: float
    pending_reviews: List[ReviewRequest] = Field(default_factory=list)
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class EditableField(BaseModel):
    """A node config key that users may set when creating a flow."""
    step_id: str = Field(..., description="Node the field belongs to")
    path: str = Field(..., description="Config key on that node")
    label: str = Field(..., description="Human-readable label")
    type: str = Field("text", description="Input kind shown in the wizard")
    required: bool = False

    @property
    def key(self) -> str:
        return f"{self.step_id}.{self.path}"


class WorkflowTemplate(BaseModel):
    """A reusable, validated workflow graph."""
    id: str = Field(..., description="Template id")
    name: str = Field(..., description="Template name")
    description: str = Field("", description="Template description")
    category: str = Field("general", description="Marketplace category")
    tags: List[str] = Field(default_factory=list)
    credit_cost: float = Field(0.0, description="Estimated credits per run")
    estimated_duration: Optional[int] = Field(None, description="Expected duration in minutes")
    graph: GraphDefinition = Field(..., description="Workflow graph")
    editable_fields: List[EditableField] = Field(default_factory=list)
    created_at: Optional[datetime] = None

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        """Ensure template name is not empty."""
        if not name.strip():
            raise ValueError("Template name cannot be empty")
        return name.strip()


class CreateFlowRequest(BaseModel):
    """Input for creating a flow from a template."""
    template_id: str
    title: Optional[str] = None
    custom_field_values: Dict[str, Any] = Field(default_factory=dict)
    execution_mode: ExecutionMode = ExecutionMode.LIVE
    scheduled_for: Optional[datetime] = None


class UpdateFlowRequest(BaseModel):
    """Input for a Kanban status change."""
    status: FlowStatus


class ApproveReviewRequest(BaseModel):
    """Decision on a review gate."""
    approved: bool
    comments: Optional[str] = None
    reviewer: Optional[str] = None


class OptionsSelectionRequest(BaseModel):
    """Selection submitted for an options gate."""
    selected_options: List[Any] = Field(default_factory=list)
    selection_metadata: Dict[str, Any] = Field(default_factory=dict)


class Integration(BaseModel):
    """A configured external provider (OpenAI account, DataForSEO login, mail server)."""
    id: str
    business_id: Optional[str] = Field(None, description="Owning business; None for agency-wide")
    type: str = Field(..., description="Capability it provides, e.g. openai or dataforseo")
    name: str
    config: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True


class CreateTemplateRequest(BaseModel):
    """Input for saving a workflow template."""
    id: Optional[str] = Field(None, description="Template id; generated when omitted")
    name: str
    description: str = ""
    category: str = "general"
    tags: List[str] = Field(default_factory=list)
    credit_cost: float = 0.0
    estimated_duration: Optional[int] = None
    graph: GraphDefinition
    editable_fields: List[EditableField] = Field(default_factory=list)
