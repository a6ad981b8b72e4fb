"""FastAPI REST endpoints for flows, templates and node types."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, Field

from ..core.exceptions import FlowEngineError, create_error_response
from ..core.flow_engine import FlowEngine
from ..core.flow_store import FlowStore
from ..core.logging import get_logger
from ..core.node_registry import NodeTypeRegistry
from ..core.path_resolver import DISPLAY_MAX_DEPTH
from ..core.template_manager import TemplateManager
from ..models.core import GraphDefinition, ValidationIssue, WorkflowNodeType
from ..models.flow import (
    ApproveReviewRequest,
    CreateFlowRequest,
    CreateTemplateRequest,
    ExecutionMode,
    FlowCard,
    FlowInstance,
    FlowStatus,
    OptionsSelectionRequest,
    StandardNodeResponse,
    UpdateFlowRequest,
    WorkflowTemplate,
)
from .middleware import status_code_for_error

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["flows"])

# Global instances (initialized in main.py)
_flow_engine: Optional[FlowEngine] = None
_template_manager: Optional[TemplateManager] = None
_registry: Optional[NodeTypeRegistry] = None
_flow_store: Optional[FlowStore] = None


def init_dependencies(
    flow_engine: FlowEngine,
    template_manager: TemplateManager,
    registry: NodeTypeRegistry,
    flow_store: FlowStore
):
    """Initialize the global dependencies."""
    global _flow_engine, _template_manager, _registry, _flow_store
    _flow_engine = flow_engine
    _template_manager = template_manager
    _registry = registry
    _flow_store = flow_store


def _not_initialized(component: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"{component} not initialized"
    )


def get_flow_engine() -> FlowEngine:
    """Dependency to get the flow engine."""
    if _flow_engine is None:
        raise _not_initialized("Flow engine")
    return _flow_engine


def get_template_manager() -> TemplateManager:
    """Dependency to get the template manager."""
    if _template_manager is None:
        raise _not_initialized("Template manager")
    return _template_manager


def get_registry() -> NodeTypeRegistry:
    """Dependency to get the node type registry."""
    if _registry is None:
        raise _not_initialized("Node type registry")
    return _registry


def get_flow_store() -> FlowStore:
    """Dependency to get the flow store."""
    if _flow_store is None:
        raise _not_initialized("Flow store")
    return _flow_store


def _engine_error(error: FlowEngineError, action: str) -> HTTPException:
    status_code = status_code_for_error(error)
    if status_code >= 500:
        logger.error(f"Flow engine error while trying to {action}: {error.message}")
    else:
        logger.warning(f"Rejected request to {action}: {error.message}")
    return HTTPException(status_code=status_code, detail=create_error_response(error))


def _internal_error(error: Exception, action: str) -> HTTPException:
    logger.error(f"Unexpected error while trying to {action}: {str(error)}", exc_info=True)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "error": "InternalError",
            "message": f"An unexpected error occurred while trying to {action}",
            "details": {"original_error": str(error)},
            "timestamp": datetime.utcnow().isoformat()
        }
    )


# Request/Response models

class ScheduleFlowRequest(BaseModel):
    """Request model for scheduling a new flow."""
    scheduled_for: Optional[datetime] = Field(None, description="When the flow should start")


class TestNodeRequest(BaseModel):
    """Request model for a single-node dry run."""
    config: Dict[str, Any] = Field(default_factory=dict, description="Node configuration")
    sample_outputs: Dict[str, Any] = Field(
        default_factory=dict, description="Upstream node envelopes keyed by node id, used for {{path}} tokens"
    )
    execution_mode: ExecutionMode = Field(ExecutionMode.LIVE, description="Operation dispatch mode")
    business_id: Optional[str] = Field(None, description="Business whose integrations are used")


class CreateTemplateResponse(BaseModel):
    """Response model for template creation."""
    template: WorkflowTemplate
    message: str
    validation_warnings: List[ValidationIssue] = Field(default_factory=list)


class GraphValidationResponse(BaseModel):
    """Response model for graph validation."""
    is_valid: bool
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)


# Flow endpoints

@router.get(
    "/businesses/{business_id}/flows",
    response_model=List[FlowCard],
    summary="List a business's flows"
)
def list_flows(
    business_id: str,
    status_filter: Optional[FlowStatus] = Query(None, alias="status", description="Only flows in this status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    store: FlowStore = Depends(get_flow_store)
) -> List[FlowCard]:
    flows = store.list_by_business(business_id, status=status_filter)
    return [flow.to_card() for flow in flows[skip:skip + limit]]


@router.get(
    "/businesses/{business_id}/board",
    response_model=Dict[str, List[FlowCard]],
    summary="Kanban board of a business's flows"
)
def get_board(
    business_id: str,
    store: FlowStore = Depends(get_flow_store)
) -> Dict[str, List[FlowCard]]:
    """Every status column, in board order, with the flow cards in it."""
    buckets = store.bucket_by_status(business_id)
    return {column.value: [flow.to_card() for flow in flows] for column, flows in buckets.items()}


@router.post(
    "/businesses/{business_id}/flows",
    response_model=FlowInstance,
    status_code=status.HTTP_201_CREATED,
    summary="Create a flow from a template"
)
def create_flow(
    business_id: str,
    request: CreateFlowRequest,
    engine: FlowEngine = Depends(get_flow_engine)
) -> FlowInstance:
    """
    Create a flow from a template.

    Args:
        business_id: Business the flow runs for
        request: Template id, title, custom field values and execution mode
        engine: Flow engine dependency

    Returns:
        The new flow, in ``new`` or ``scheduled`` status

    Raises:
        HTTPException: If the template is unknown or the custom field values are invalid
    """
    try:
        return engine.create_flow(business_id, request)
    except FlowEngineError as e:
        raise _engine_error(e, "create flow")
    except Exception as e:
        raise _internal_error(e, "create flow")


@router.get(
    "/flows/{flow_id}",
    response_model=FlowInstance,
    summary="Get flow details",
    description="Current flow instance with its step executions; clients poll this while a flow runs"
)
def get_flow(flow_id: str, engine: FlowEngine = Depends(get_flow_engine)) -> FlowInstance:
    try:
        return engine.get_flow_details(flow_id)
    except FlowEngineError as e:
        raise _engine_error(e, "get flow")


@router.patch(
    "/flows/{flow_id}",
    response_model=FlowInstance,
    summary="Change a flow's status",
    description="Status change from the Kanban board; only allowed transitions are accepted"
)
def update_flow(
    flow_id: str,
    request: UpdateFlowRequest,
    engine: FlowEngine = Depends(get_flow_engine)
) -> FlowInstance:
    try:
        return engine.update_flow(flow_id, request.status)
    except FlowEngineError as e:
        raise _engine_error(e, "update flow")
    except Exception as e:
        raise _internal_error(e, "update flow")


@router.delete(
    "/flows/{flow_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a flow"
)
def delete_flow(flow_id: str, engine: FlowEngine = Depends(get_flow_engine)) -> Response:
    """Delete a flow. Flows in progress cannot be deleted."""
    try:
        engine.delete_flow(flow_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except FlowEngineError as e:
        raise _engine_error(e, "delete flow")
    except Exception as e:
        raise _internal_error(e, "delete flow")


@router.post("/flows/{flow_id}/start", response_model=FlowInstance, summary="Start a flow")
def start_flow(flow_id: str, engine: FlowEngine = Depends(get_flow_engine)) -> FlowInstance:
    try:
        return engine.start_flow(flow_id)
    except FlowEngineError as e:
        raise _engine_error(e, "start flow")
    except Exception as e:
        raise _internal_error(e, "start flow")


@router.post("/flows/{flow_id}/rerun", response_model=FlowInstance, summary="Rerun a flow as a new pass")
def rerun_flow(flow_id: str, engine: FlowEngine = Depends(get_flow_engine)) -> FlowInstance:
    try:
        return engine.rerun_flow(flow_id)
    except FlowEngineError as e:
        raise _engine_error(e, "rerun flow")
    except Exception as e:
        raise _internal_error(e, "rerun flow")


@router.post("/flows/{flow_id}/schedule", response_model=FlowInstance, summary="Schedule a new flow")
def schedule_flow(
    flow_id: str,
    request: ScheduleFlowRequest,
    engine: FlowEngine = Depends(get_flow_engine)
) -> FlowInstance:
    try:
        return engine.schedule_flow(flow_id, request.scheduled_for)
    except FlowEngineError as e:
        raise _engine_error(e, "schedule flow")


@router.post(
    "/flows/{flow_id}/reviews/{step_id}",
    response_model=FlowInstance,
    summary="Approve or reject a pending review"
)
def approve_review(
    flow_id: str,
    step_id: str,
    request: ApproveReviewRequest,
    engine: FlowEngine = Depends(get_flow_engine)
) -> FlowInstance:
    try:
        return engine.approve_review(
            flow_id, step_id, request.approved, comments=request.comments, reviewer=request.reviewer
        )
    except FlowEngineError as e:
        raise _engine_error(e, "resolve review")
    except Exception as e:
        raise _internal_error(e, "resolve review")


@router.get("/flows/{flow_id}/options/{step_id}", summary="Options offered by a waiting options step")
def get_options(
    flow_id: str,
    step_id: str,
    engine: FlowEngine = Depends(get_flow_engine)
) -> Dict[str, Any]:
    try:
        return engine.get_options_data(flow_id, step_id)
    except FlowEngineError as e:
        raise _engine_error(e, "get options")


@router.post(
    "/flows/{flow_id}/options/{step_id}",
    response_model=FlowInstance,
    summary="Submit an options selection"
)
def submit_options(
    flow_id: str,
    step_id: str,
    request: OptionsSelectionRequest,
    engine: FlowEngine = Depends(get_flow_engine)
) -> FlowInstance:
    try:
        return engine.submit_options_selection(
            flow_id, step_id, request.selected_options, request.selection_metadata
        )
    except FlowEngineError as e:
        raise _engine_error(e, "submit options")
    except Exception as e:
        raise _internal_error(e, "submit options")


@router.get("/flows/{flow_id}/data", summary="Paths available to downstream steps")
def get_available_data(
    flow_id: str,
    max_depth: int = Query(DISPLAY_MAX_DEPTH, ge=1, le=10),
    engine: FlowEngine = Depends(get_flow_engine)
) -> Dict[str, List[Dict[str, Any]]]:
    try:
        return engine.available_data(flow_id, max_depth=max_depth)
    except FlowEngineError as e:
        raise _engine_error(e, "describe flow data")


# Template endpoints

@router.post(
    "/templates",
    response_model=CreateTemplateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a workflow template"
)
def create_template(
    request: CreateTemplateRequest,
    templates: TemplateManager = Depends(get_template_manager)
) -> CreateTemplateResponse:
    """
    Validate and store a workflow template.

    Graphs with errors are refused; warnings are returned alongside the template.
    """
    try:
        template, result = templates.create_template(request)
        return CreateTemplateResponse(
            template=template,
            message=f"Template '{template.name}' created successfully",
            validation_warnings=result.warnings
        )
    except FlowEngineError as e:
        raise _engine_error(e, "create template")
    except Exception as e:
        raise _internal_error(e, "create template")


@router.get("/templates", response_model=List[WorkflowTemplate], summary="List workflow templates")
def list_templates(
    category: Optional[str] = Query(None),
    templates: TemplateManager = Depends(get_template_manager)
) -> List[WorkflowTemplate]:
    try:
        return templates.list_templates(category)
    except FlowEngineError as e:
        raise _engine_error(e, "list templates")


@router.get("/templates/{template_id}", response_model=WorkflowTemplate, summary="Get a workflow template")
def get_template(
    template_id: str,
    templates: TemplateManager = Depends(get_template_manager)
) -> WorkflowTemplate:
    try:
        return templates.get_template(template_id)
    except FlowEngineError as e:
        raise _engine_error(e, "get template")


@router.get("/templates/{template_id}/preview", summary="Ordered steps of a template")
def preview_template(
    template_id: str,
    templates: TemplateManager = Depends(get_template_manager)
) -> Dict[str, Any]:
    try:
        return templates.preview(template_id)
    except FlowEngineError as e:
        raise _engine_error(e, "preview template")


@router.delete(
    "/templates/{template_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a workflow template"
)
def delete_template(
    template_id: str,
    templates: TemplateManager = Depends(get_template_manager)
) -> Response:
    try:
        if not templates.delete_template(template_id):
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={
                    "error": "TemplateNotFound",
                    "message": f"Template '{template_id}' not found",
                    "details": {"template_id": template_id}
                }
            )
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except FlowEngineError as e:
        raise _engine_error(e, "delete template")


# Graph and node type endpoints

@router.post(
    "/graphs/validate",
    response_model=GraphValidationResponse,
    summary="Validate a workflow graph",
    description="Report errors and warnings without storing anything"
)
def validate_graph(
    graph: GraphDefinition,
    templates: TemplateManager = Depends(get_template_manager)
) -> GraphValidationResponse:
    result = templates.validate_graph(graph)
    return GraphValidationResponse(is_valid=result.is_valid, errors=result.errors, warnings=result.warnings)


@router.get("/node-types", summary="List node types with their config schemas")
def list_node_types(registry: NodeTypeRegistry = Depends(get_registry)) -> List[Dict[str, Any]]:
    return [
        {**spec.to_dict(), "has_operation": registry.has_operation(spec.type)}
        for spec in registry.list_types()
    ]


@router.post(
    "/node-types/{node_type}/test",
    response_model=StandardNodeResponse,
    summary="Dry-run a single node"
)
def test_node(
    node_type: WorkflowNodeType,
    request: TestNodeRequest,
    engine: FlowEngine = Depends(get_flow_engine)
) -> StandardNodeResponse:
    """
    Run one node's operation outside of any flow.

    Operation failures come back as an error envelope with status 200;
    unresolvable ``{{path}}`` tokens in the config are reported as 422.
    """
    try:
        return engine.test_node(
            node_type,
            request.config,
            sample_outputs=request.sample_outputs,
            execution_mode=request.execution_mode,
            business_id=request.business_id
        )
    except FlowEngineError as e:
        raise _engine_error(e, "test node")
    except Exception as e:
        raise _internal_error(e, "test node")


@router.get("/health", summary="Service health")
def health(
    store: FlowStore = Depends(get_flow_store),
    registry: NodeTypeRegistry = Depends(get_registry)
) -> Dict[str, Any]:
    return {
        "status": "healthy",
        "flows_loaded": len(store.all()),
        "node_types": len(registry.list_types()),
        "timestamp": datetime.utcnow().isoformat()
    }
