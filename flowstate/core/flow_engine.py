"""Flow engine: drives flow instances through their lifecycle and runs their steps."""

import copy
import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Tuple

from ..models.core import NodeDefinition, WorkflowNodeType
from ..models.flow import (
    ApiMetadata,
    CreateFlowRequest,
    ExecutionMode,
    FlowInstance,
    FlowStatus,
    Integration,
    NodeError,
    NodeResponseData,
    NodeResponseStatus,
    OperationResult,
    ReviewRequest,
    ReviewerRole,
    StandardNodeResponse,
    StepExecution,
    StepStatus,
    WorkflowTemplate,
)
from ..storage.repository import IntegrationRepository
from .exceptions import (
    DataMappingError,
    FlowEngineError,
    InvalidTransitionError,
    OperationError,
    PersistenceError,
    ValidationError,
)
from .flow_store import FlowStore
from .interpolator import interpolate_value
from .logging import get_logger, log_with_context, logging_context
from .node_registry import NodeConfig, NodeTypeRegistry, NodeTypeSpec, OperationContext
from .path_resolver import DISPLAY_MAX_DEPTH, describe_structure
from .state_machine import RERUNNABLE, STARTABLE, ensure_transition
from .workflow_graph import WorkflowGraph

logger = get_logger(__name__)


class FlowEngine:
    """Creates flows from templates and executes them one run pass at a time.

    Every command on a flow holds that flow's lock for its whole duration, run
    pass included, so a second command arriving meanwhile is rejected with
    ConcurrentTransitionError instead of interleaving with the first.
    """

    def __init__(
        self,
        store: FlowStore,
        registry: NodeTypeRegistry,
        templates=None,
        integrations: Optional[IntegrationRepository] = None,
        run_in_background: bool = False,
        max_concurrent_executions: int = 4
    ):
        """Initialize the flow engine.

        Args:
            store: Flow store owning the flow instances
            registry: Node type registry with the registered operations
            templates: Anything with ``get_template(template_id)``, usually a TemplateManager
            integrations: Optional integration repository; when given, steps whose
                type needs an external capability require a matching integration
            run_in_background: Run passes on a worker pool instead of inline
            max_concurrent_executions: Worker pool size for background passes
        """
        self.store = store
        self.registry = registry
        self.templates = templates
        self.integrations = integrations
        self._executor = ThreadPoolExecutor(max_workers=max_concurrent_executions) if run_in_background else None
        self._active_runs: Dict[str, Future] = {}
        self._active_lock = threading.Lock()
        self._recordings: Dict[WorkflowNodeType, Dict[str, Any]] = {}

        logger.info(f"FlowEngine initialized (background={run_in_background})")

    # Creation and scheduling

    def create_flow(self, business_id: str, request: CreateFlowRequest) -> FlowInstance:
        """
        Create a flow from a template for one business.

        Custom field values are keyed ``"<step_id>.<config_key>"`` and written
        into the flow's own copy of the template graph.

        Raises:
            TemplateNotFoundError: If the template does not exist
            ValidationError: If a custom field value targets an unknown or non-editable field
        """
        if self.templates is None:
            raise ValidationError("No template source configured")
        template = self.templates.get_template(request.template_id)
        graph_definition = self._apply_custom_fields(template, request.custom_field_values)

        graph = WorkflowGraph.from_definition(graph_definition, self.registry)
        try:
            step_order = graph.execution_order()
        except ValidationError:
            step_order = []

        now = datetime.utcnow()
        flow = FlowInstance(
            id=str(uuid.uuid4()),
            template_id=template.id,
            business_id=business_id,
            title=request.title or template.name,
            status=FlowStatus.SCHEDULED if request.scheduled_for else FlowStatus.NEW,
            execution_mode=request.execution_mode,
            custom_field_values=dict(request.custom_field_values),
            graph=graph_definition,
            step_order=step_order,
            created_at=now,
            updated_at=now,
            scheduled_for=request.scheduled_for,
        )
        self.store.add(flow)

        log_with_context(
            logger, logging.INFO,
            f"Created flow {flow.id} from template {template.id}",
            flow_id=flow.id, business_id=business_id, status=flow.status.value
        )
        return flow

    def _apply_custom_fields(self, template: WorkflowTemplate, values: Dict[str, Any]):
        editable = {field.key: field for field in template.editable_fields}
        graph = template.graph.model_copy(deep=True)
        issues = []

        for key, value in values.items():
            step_id, _, config_key = key.partition(".")
            node = graph.find_node(step_id)
            if node is None or not config_key:
                issues.append({"field": key, "message": f"'{key}' does not name a step config key"})
                continue
            if editable and key not in editable:
                issues.append({"field": key, "message": f"'{key}' is not an editable field of this template"})
                continue
            node.config[config_key] = value

        for key, field in editable.items():
            node = graph.find_node(field.step_id)
            if field.required and node is not None and node.config.get(field.path) in (None, ""):
                issues.append({"field": key, "message": f"'{field.label}' is required"})

        if issues:
            raise ValidationError("Invalid custom field values", issues=issues)
        return graph

    def schedule_flow(self, flow_id: str, scheduled_for: Optional[datetime] = None) -> FlowInstance:
        """Move a new flow to scheduled."""
        with self.store.lock(flow_id):
            flow = self.store.get(flow_id)
            return self._transition(flow, FlowStatus.SCHEDULED, scheduled_for=scheduled_for or flow.scheduled_for)

    # Commands

    def start_flow(self, flow_id: str) -> FlowInstance:
        """Start a new, scheduled or failed flow with a fresh run pass.

        Raises:
            InvalidTransitionError: If the flow is not startable
            ValidationError: If the flow's graph has errors; nothing is run
            ConcurrentTransitionError: If another command is in flight for the flow
        """
        return self._begin_pass(flow_id, STARTABLE, "start")

    def rerun_flow(self, flow_id: str) -> FlowInstance:
        """Run a complete or failed flow again from the top as a new pass.

        Step rows of earlier passes are kept but no longer count towards progress.
        """
        return self._begin_pass(flow_id, RERUNNABLE, "rerun")

    def _begin_pass(self, flow_id: str, allowed: frozenset, command: str) -> FlowInstance:
        lock = self.store.acquire(flow_id)
        handed_off = False
        try:
            flow = self.store.get(flow_id)
            if flow.status not in allowed:
                raise InvalidTransitionError(
                    f"Cannot {command} a flow that is {flow.status.value}",
                    flow_id=flow_id,
                    current_status=flow.status.value,
                    requested_status=FlowStatus.IN_PROGRESS.value
                )

            graph = WorkflowGraph.from_definition(flow.graph, self.registry)
            result = graph.validate()
            if not result.is_valid:
                messages = "; ".join(issue.message for issue in result.errors)
                log_with_context(
                    logger, logging.WARNING,
                    f"Refused to {command} flow {flow_id}: {messages}",
                    flow_id=flow_id
                )
                raise ValidationError(
                    f"Flow graph is not executable: {messages}",
                    issues=[issue.model_dump(mode="json") for issue in result.errors]
                )
            step_order = graph.execution_order()

            now = datetime.utcnow()
            flow = self._transition(
                flow, FlowStatus.IN_PROGRESS,
                pass_number=flow.pass_number + 1,
                step_order=step_order,
                current_step_id=step_order[0] if step_order else None,
                pending_reviews=[],
                error_message=None,
                error_data=None,
                started_at=now,
                completed_at=None,
            )
            handed_off = self._dispatch(flow_id, lock)
            return self.store.get(flow_id)
        finally:
            if not handed_off:
                lock.release()

    def approve_review(
        self,
        flow_id: str,
        step_id: str,
        approved: bool,
        comments: Optional[str] = None,
        reviewer: Optional[str] = None
    ) -> FlowInstance:
        """Resolve a pending review.

        Approval records the decision as the review step's output and resumes
        the flow once no reviews remain. Rejection fails the flow with the
        reviewer's comments; only a rerun continues from there.
        """
        lock = self.store.acquire(flow_id)
        handed_off = False
        try:
            flow = self.store.get(flow_id)
            if flow.status != FlowStatus.IN_REVIEW:
                raise InvalidTransitionError(
                    f"Flow is {flow.status.value}, not in review",
                    flow_id=flow_id, current_status=flow.status.value
                )
            request = next((review for review in flow.pending_reviews if review.step_id == step_id), None)
            pending_row = flow.latest_step(step_id)
            if request is None or pending_row is None:
                raise InvalidTransitionError(f"No pending review for step '{step_id}'", flow_id=flow_id)

            decision = {"approved": approved, "comments": comments, "reviewer": reviewer}
            remaining = [review for review in flow.pending_reviews if review.step_id != step_id]
            now = datetime.utcnow()

            if approved:
                row = self._resolve_gate_row(pending_row, StepStatus.SUCCESS, processed=decision, now=now)
                steps = flow.step_executions + [row]
                if remaining:
                    self.store.commit(flow.model_copy(update={
                        "step_executions": steps, "pending_reviews": remaining, "updated_at": now
                    }))
                    return self.store.get(flow_id)
                self._transition(flow, FlowStatus.IN_PROGRESS, step_executions=steps, pending_reviews=remaining)
                handed_off = self._dispatch(flow_id, lock)
                return self.store.get(flow_id)

            message = comments or "Review rejected"
            row = self._resolve_gate_row(
                pending_row, StepStatus.ERROR, processed=decision, now=now,
                error=NodeError(message=message, code="review_rejected")
            )
            return self._transition(
                flow, FlowStatus.ERROR,
                step_executions=flow.step_executions + [row],
                pending_reviews=[],
                current_step_id=step_id,
                error_message=message,
                error_data=row.error_data,
            )
        finally:
            if not handed_off:
                lock.release()

    def get_options_data(self, flow_id: str, step_id: str) -> Dict[str, Any]:
        """Options offered by a waiting options gate."""
        flow = self.store.get(flow_id)
        row = self._pending_options_row(flow, step_id)
        return {
            "flow_id": flow_id,
            "step_id": step_id,
            "available_options": row.input_data.get("options_source", []),
            "selection_mode": row.input_data.get("selection_mode"),
            "instructions": row.input_data.get("instructions"),
        }

    def _pending_options_row(self, flow: FlowInstance, step_id: str) -> StepExecution:
        row = flow.latest_step(step_id)
        if row is None or row.status != StepStatus.PENDING or row.step_type != WorkflowNodeType.OPTIONS_SELECT:
            raise InvalidTransitionError(f"Step '{step_id}' is not waiting for a selection", flow_id=flow.id)
        return row

    def submit_options_selection(
        self,
        flow_id: str,
        step_id: str,
        selected_options: List[Any],
        selection_metadata: Optional[Dict[str, Any]] = None
    ) -> FlowInstance:
        """Record a selection as the options step's output and resume the flow.

        Raises:
            InvalidTransitionError: If the flow is not waiting on that step
            ValidationError: If the selection does not fit the offered options
        """
        lock = self.store.acquire(flow_id)
        handed_off = False
        try:
            flow = self.store.get(flow_id)
            if flow.status != FlowStatus.INPUT_REQUIRED:
                raise InvalidTransitionError(
                    f"Flow is {flow.status.value}, not waiting for input",
                    flow_id=flow_id, current_status=flow.status.value
                )
            row = self._pending_options_row(flow, step_id)
            available = row.input_data.get("options_source", [])
            mode = row.input_data.get("selection_mode", "single")

            if mode == "single" and len(selected_options) != 1:
                raise ValidationError("Exactly one option must be selected")
            if not selected_options:
                raise ValidationError("At least one option must be selected")
            unknown = [option for option in selected_options if option not in available]
            if unknown:
                raise ValidationError(
                    "Selected options are not among the offered options",
                    issues=[{"field": "selected_options", "message": f"Unknown option: {option!r}"} for option in unknown]
                )

            processed = {"selected_options": list(selected_options), "selection_metadata": selection_metadata or {}}
            resolved = self._resolve_gate_row(row, StepStatus.SUCCESS, processed=processed, now=datetime.utcnow())
            self._transition(flow, FlowStatus.IN_PROGRESS, step_executions=flow.step_executions + [resolved])
            handed_off = self._dispatch(flow_id, lock)
            return self.store.get(flow_id)
        finally:
            if not handed_off:
                lock.release()

    def update_flow(self, flow_id: str, status: FlowStatus) -> FlowInstance:
        """Apply a status change requested from the board.

        Moving to in_progress starts (or reruns) the flow; every other target
        must be an allowed edge of the state machine.
        """
        status = FlowStatus(status)
        flow = self.store.get(flow_id)
        if status == flow.status:
            return flow

        if status == FlowStatus.IN_PROGRESS:
            if flow.status in STARTABLE:
                return self.start_flow(flow_id)
            if flow.status == FlowStatus.COMPLETE:
                return self.rerun_flow(flow_id)
            if flow.status == FlowStatus.IN_REVIEW:
                raise InvalidTransitionError(
                    "Flow has pending reviews; approve or reject them instead",
                    flow_id=flow_id, current_status=flow.status.value, requested_status=status.value
                )
            raise InvalidTransitionError(
                "Flow is waiting for an options selection; submit it instead",
                flow_id=flow_id, current_status=flow.status.value, requested_status=status.value
            )

        if status == FlowStatus.SCHEDULED:
            return self.schedule_flow(flow_id)

        with self.store.lock(flow_id):
            flow = self.store.get(flow_id)
            ensure_transition(flow.status, status, flow_id)
            changes: Dict[str, Any] = {}
            if status == FlowStatus.COMPLETE:
                if not flow.step_order or flow.completed_steps != flow.total_steps:
                    raise InvalidTransitionError(
                        f"Only {flow.completed_steps}/{flow.total_steps} steps have succeeded",
                        flow_id=flow_id, current_status=flow.status.value, requested_status=status.value
                    )
                changes.update(completed_at=datetime.utcnow(), current_step_id=None)
            elif status == FlowStatus.ERROR:
                changes.update(error_message=flow.error_message or "Marked as failed", pending_reviews=[])
            return self._transition(flow, status, **changes)

    def delete_flow(self, flow_id: str) -> None:
        """Delete a flow unless it is in progress."""
        with self.store.lock(flow_id):
            self.store.delete(flow_id)

    def get_flow_details(self, flow_id: str) -> FlowInstance:
        """Current instance, step executions included. This is the read pollers repeat."""
        return self.store.get(flow_id)

    def available_data(self, flow_id: str, max_depth: int = DISPLAY_MAX_DEPTH) -> Dict[str, List[Dict[str, Any]]]:
        """Addressable paths of every output of the current pass, keyed by step id."""
        flow = self.store.get(flow_id)
        return {
            step_id: describe_structure(envelope, prefix=step_id, max_depth=max_depth)
            for step_id, envelope in self._output_store(flow).items()
        }

    def overdue_reviews(self, now: Optional[datetime] = None) -> List[Tuple[str, ReviewRequest]]:
        """Non-blocking reviews whose auto-approve timeout has passed.

        The caller (an external scheduler) is expected to approve each one
        through ``approve_review`` with reviewer ``system``.
        """
        now = now or datetime.utcnow()
        overdue = []
        for flow in self.store.all():
            if flow.status != FlowStatus.IN_REVIEW:
                continue
            for review in flow.pending_reviews:
                if review.blocking_review or review.auto_approve_after is None:
                    continue
                if review.submitted_at + timedelta(hours=review.auto_approve_after) <= now:
                    overdue.append((flow.id, review))
        return overdue

    # Node dry run

    def test_node(
        self,
        node_type: WorkflowNodeType,
        config: Dict[str, Any],
        sample_outputs: Optional[Dict[str, Any]] = None,
        execution_mode: ExecutionMode = ExecutionMode.LIVE,
        business_id: Optional[str] = None
    ) -> StandardNodeResponse:
        """Run one node's operation outside of any flow.

        Data-mapping failures in the config are raised; failures of the
        operation itself come back as an error envelope.
        """
        spec = self.registry.get(node_type)
        node = NodeDefinition(id=f"test-{spec.type.value}", type=spec.type, label=spec.label, config=config)
        outputs = sample_outputs or {}
        interpolate_value(node.config, outputs, strict=True)

        if spec.is_review_gate or spec.is_options_gate:
            return StandardNodeResponse(
                execution_id=str(uuid.uuid4()),
                node_id=node.id,
                node_type=spec.type,
                status=NodeResponseStatus.PENDING,
                executed_at=datetime.utcnow(),
                input_data=config,
            )

        response, _, _ = self._execute_node(
            node, spec, outputs,
            flow_id=None, business_id=business_id, execution_mode=execution_mode, custom_field_values={}
        )
        return response

    # Run pass

    def _dispatch(self, flow_id: str, lock: threading.Lock) -> bool:
        """Run a pass inline, or hand it and the lock to the worker pool.

        Returns True when the lock now belongs to the worker.
        """
        if self._executor is None:
            self._run_pass_safely(flow_id)
            return False

        # Registered before the worker can finish and remove it
        with self._active_lock:
            self._active_runs[flow_id] = self._executor.submit(self._background_pass, flow_id, lock)
        return True

    def _background_pass(self, flow_id: str, lock: threading.Lock) -> None:
        try:
            self._run_pass_safely(flow_id)
        except Exception as e:
            logger.error(f"Background pass for flow {flow_id} failed: {e}")
        finally:
            with self._active_lock:
                self._active_runs.pop(flow_id, None)
            lock.release()

    def _run_pass_safely(self, flow_id: str) -> None:
        flow = self.store.get(flow_id)
        with logging_context(flow_id=flow_id, business_id=flow.business_id, pass_number=flow.pass_number):
            try:
                self._run_pass(flow_id)
            except PersistenceError as e:
                log_with_context(logger, logging.ERROR, f"Persistence failed during run of flow {flow_id}", flow_id=flow_id)
                self._fail_run(flow_id, f"Persistence failed: {e.message}", self._error_data(e))
                raise
            except Exception as e:
                logger.exception(f"Unhandled error while running flow {flow_id}")
                self._fail_run(
                    flow_id, f"Unhandled error: {e}",
                    {"type": "exception", "exception_type": type(e).__name__, "message": str(e)},
                )

    def _fail_run(self, flow_id: str, message: str, error_data: Dict[str, Any]) -> None:
        """Move a flow whose pass broke off out of in_progress, if the store accepts the write."""
        flow = self.store.get(flow_id)
        if flow.status != FlowStatus.IN_PROGRESS:
            return
        try:
            self._transition(
                flow, FlowStatus.ERROR,
                pending_reviews=[], error_message=message, error_data=error_data,
            )
        except PersistenceError as e:
            logger.error(f"Could not mark flow {flow_id} as failed, it stays in_progress: {e.message}")

    def _run_pass(self, flow_id: str) -> None:
        """Execute every runnable step of the current pass in topological order.

        Steps that already succeeded in this pass are skipped, so the same
        routine resumes a flow after a gate is resolved. Steps downstream of
        a waiting gate are held back; the first failing step fails the flow.
        """
        flow = self.store.get(flow_id)
        graph = WorkflowGraph.from_definition(flow.graph, self.registry)

        for node_id in flow.step_order:
            flow = self.store.get(flow_id)
            latest = flow.latest_step(node_id)
            if latest is not None and latest.status in (StepStatus.SUCCESS, StepStatus.PENDING):
                continue
            if graph.ancestors(node_id) & self._waiting_gates(flow):
                continue

            node = graph.get_node(node_id)
            spec = self.registry.get(node.type)
            outputs = self._output_store(flow)

            with logging_context(step_id=node.id, step_type=node.type.value):
                if spec.is_review_gate or spec.is_options_gate:
                    step, review = self._open_gate(flow, node, spec, outputs)
                else:
                    flow = self.store.commit(flow.model_copy(update={
                        "current_step_id": node.id, "updated_at": datetime.utcnow()
                    }))
                    step, review = self._execute_step(flow, node, spec, outputs), None

            flow = self.store.get(flow_id)
            if step.status == StepStatus.ERROR:
                error_data = step.error_data or {}
                # Reviews opened on parallel branches die with the pass
                self._transition(
                    flow, FlowStatus.ERROR,
                    step_executions=flow.step_executions + [step],
                    pending_reviews=[],
                    current_step_id=node.id,
                    error_message=f"Step '{node.label}' failed: {error_data.get('message', 'unknown error')}",
                    error_data=error_data,
                )
                return

            updates: Dict[str, Any] = {
                "step_executions": flow.step_executions + [step],
                "current_step_id": node.id,
                "updated_at": datetime.utcnow(),
            }
            if review is not None:
                updates["pending_reviews"] = flow.pending_reviews + [review]
            self.store.commit(flow.model_copy(update=updates))

        self._settle(flow_id)

    def _settle(self, flow_id: str) -> None:
        """Leave in_progress once the pass has nothing left to run."""
        flow = self.store.get(flow_id)
        waiting = [node_id for node_id in flow.step_order if node_id in self._waiting_gates(flow)]
        if not waiting:
            self._transition(flow, FlowStatus.COMPLETE, completed_at=datetime.utcnow(), current_step_id=None)
            return

        if flow.pending_reviews:
            self._transition(flow, FlowStatus.IN_REVIEW, current_step_id=flow.pending_reviews[0].step_id)
        else:
            self._transition(flow, FlowStatus.INPUT_REQUIRED, current_step_id=waiting[0])

    @staticmethod
    def _waiting_gates(flow: FlowInstance) -> Set[str]:
        latest: Dict[str, StepExecution] = {}
        for step in flow.current_pass_steps():
            latest[step.step_id] = step
        return {step_id for step_id, step in latest.items() if step.status == StepStatus.PENDING}

    @staticmethod
    def _output_store(flow: FlowInstance) -> Dict[str, Any]:
        """Envelopes of this pass's successful steps keyed by node id."""
        outputs: Dict[str, Any] = {}
        for step in flow.current_pass_steps():
            if step.status == StepStatus.SUCCESS and step.output_data is not None:
                outputs[step.step_id] = step.output_data
        return outputs

    def _open_gate(
        self,
        flow: FlowInstance,
        node: NodeDefinition,
        spec: NodeTypeSpec,
        outputs: Dict[str, Any]
    ) -> Tuple[StepExecution, Optional[ReviewRequest]]:
        """Record a waiting gate step; returns the step row and, for reviews, the review request."""
        now = datetime.utcnow()
        execution_id = str(uuid.uuid4())
        base = dict(
            execution_id=execution_id,
            pass_number=flow.pass_number,
            step_id=node.id,
            step_name=node.label,
            step_type=node.type,
            started_at=now,
        )

        try:
            resolved = interpolate_value(node.config, outputs, strict=True)
            config = self.registry.parse_config(node.type, resolved)
            if spec.is_options_gate and not isinstance(config.options_source, list):
                raise ValidationError(
                    f"Options for '{node.label}' must resolve to a list, got {type(config.options_source).__name__}"
                )
        except (DataMappingError, ValidationError) as e:
            error_data = self._error_data(e)
            return StepExecution(
                **base, status=StepStatus.ERROR, input_data=node.config, error_data=error_data, completed_at=now,
                output_data=self._envelope(
                    execution_id, node, NodeResponseStatus.ERROR, now, 0,
                    error=NodeError(message=e.message, code=e.error_code, details=error_data)
                ).model_dump(mode="json"),
            ), None

        input_data = config.model_dump(mode="json")
        step = StepExecution(
            **base, status=StepStatus.PENDING, input_data=input_data,
            output_data=self._envelope(execution_id, node, NodeResponseStatus.PENDING, now, 0).model_dump(mode="json"),
        )
        log_with_context(
            logger, logging.DEBUG,
            f"Flow {flow.id} waiting at gate '{node.id}'",
            flow_id=flow.id, step_id=node.id, step_type=node.type.value
        )

        if not spec.is_review_gate:
            return step, None
        review = ReviewRequest(
            step_id=node.id,
            reviewer_needed=ReviewerRole(config.reviewer_type),
            submitted_at=now,
            auto_approve_after=config.auto_approve_after,
            blocking_review=config.blocking_review,
        )
        return step, review

    def _resolve_gate_row(
        self,
        pending: StepExecution,
        status: StepStatus,
        processed: Dict[str, Any],
        now: datetime,
        error: Optional[NodeError] = None
    ) -> StepExecution:
        elapsed = int((now - pending.started_at).total_seconds() * 1000)
        envelope = StandardNodeResponse(
            execution_id=pending.execution_id,
            node_id=pending.step_id,
            node_type=pending.step_type,
            status=NodeResponseStatus.SUCCESS if status == StepStatus.SUCCESS else NodeResponseStatus.ERROR,
            executed_at=now,
            execution_time_ms=elapsed,
            data=NodeResponseData(processed=processed, raw=processed, summary={}),
            error=error,
            input_data=pending.input_data,
        )
        return pending.model_copy(update={
            "status": status,
            "output_data": envelope.model_dump(mode="json"),
            "error_data": {"type": "review", "message": error.message, "code": error.code, **processed} if error else None,
            "execution_time_ms": elapsed,
            "completed_at": now,
        })

    def _execute_step(
        self,
        flow: FlowInstance,
        node: NodeDefinition,
        spec: NodeTypeSpec,
        outputs: Dict[str, Any]
    ) -> StepExecution:
        started_at = datetime.utcnow()
        response, input_data, error_data = self._execute_node(
            node, spec, outputs,
            flow_id=flow.id,
            business_id=flow.business_id,
            execution_mode=flow.execution_mode,
            custom_field_values=flow.custom_field_values,
        )
        status = StepStatus.SUCCESS if response.status == NodeResponseStatus.SUCCESS else StepStatus.ERROR
        credits = response.api_metadata.credits_used if response.api_metadata and response.api_metadata.credits_used else 0.0

        log_with_context(
            logger, logging.DEBUG,
            f"Step '{node.id}' of flow {flow.id} finished with {status.value}",
            flow_id=flow.id, step_id=node.id, status=status.value,
            execution_time_ms=response.execution_time_ms
        )
        return StepExecution(
            execution_id=response.execution_id,
            pass_number=flow.pass_number,
            step_id=node.id,
            step_name=node.label,
            step_type=node.type,
            status=status,
            input_data=input_data,
            output_data=response.model_dump(mode="json"),
            error_data=error_data,
            execution_time_ms=response.execution_time_ms,
            credits_used=credits,
            started_at=started_at,
            completed_at=response.executed_at,
        )

    def _execute_node(
        self,
        node: NodeDefinition,
        spec: NodeTypeSpec,
        outputs: Dict[str, Any],
        flow_id: Optional[str],
        business_id: Optional[str],
        execution_mode: ExecutionMode,
        custom_field_values: Dict[str, Any]
    ) -> Tuple[StandardNodeResponse, Dict[str, Any], Optional[Dict[str, Any]]]:
        """Resolve a node's config, run its operation and wrap the outcome in an envelope.

        Returns:
            The envelope, the resolved input data and, on failure, the error data
        """
        execution_id = str(uuid.uuid4())
        started = time.perf_counter()
        input_data: Dict[str, Any] = dict(node.config)

        try:
            input_data = interpolate_value(node.config, outputs, strict=True)
            config = self.registry.parse_config(node.type, input_data)
            result = self._invoke(node, spec, config, outputs, flow_id, business_id, execution_mode, custom_field_values)
        except (DataMappingError, ValidationError, OperationError) as e:
            error_data = self._error_data(e)
            elapsed = int((time.perf_counter() - started) * 1000)
            return self._envelope(
                execution_id, node, NodeResponseStatus.ERROR, datetime.utcnow(), elapsed,
                error=NodeError(message=e.message, code=e.error_code, details=error_data),
                input_data=input_data,
            ), input_data, error_data
        except Exception as e:
            logger.exception(f"Operation for node '{node.id}' raised")
            error_data = {"type": "exception", "exception_type": type(e).__name__, "message": str(e)}
            elapsed = int((time.perf_counter() - started) * 1000)
            return self._envelope(
                execution_id, node, NodeResponseStatus.ERROR, datetime.utcnow(), elapsed,
                error=NodeError(message=str(e), code=type(e).__name__, details=error_data),
                input_data=input_data,
            ), input_data, error_data

        elapsed = int((time.perf_counter() - started) * 1000)
        api_metadata = result.api_metadata
        if result.credits_used and api_metadata is None:
            api_metadata = ApiMetadata(provider=spec.required_capability or "internal", credits_used=result.credits_used)
        elif api_metadata is not None and api_metadata.credits_used is None:
            api_metadata = api_metadata.model_copy(update={"credits_used": result.credits_used})

        response = self._envelope(
            execution_id, node, NodeResponseStatus.SUCCESS, datetime.utcnow(), elapsed,
            data=NodeResponseData(processed=result.processed, raw=result.raw, summary=result.summary),
            api_metadata=api_metadata,
            input_data=input_data,
        )
        return response, input_data, None

    def _invoke(
        self,
        node: NodeDefinition,
        spec: NodeTypeSpec,
        config: NodeConfig,
        outputs: Dict[str, Any],
        flow_id: Optional[str],
        business_id: Optional[str],
        execution_mode: ExecutionMode,
        custom_field_values: Dict[str, Any]
    ) -> OperationResult:
        executor = self.registry.get_operation(node.type)

        if executor is None:
            if execution_mode == ExecutionMode.SIMULATE:
                sample = copy.deepcopy(self._recordings.get(node.type, spec.output_shape))
                return OperationResult(processed=sample, raw=None, summary={"simulated": True})
            raise OperationError(
                f"No operation is registered for {spec.type.value} nodes",
                node_id=node.id, node_type=spec.type.value, code="no_executor"
            )

        integration = None
        if spec.required_capability and execution_mode != ExecutionMode.SIMULATE:
            integration = self._find_integration(node, spec, config, business_id)

        context = OperationContext(
            flow_id=flow_id,
            node=node,
            config=config,
            outputs=outputs,
            business_id=business_id,
            execution_mode=execution_mode,
            custom_field_values=custom_field_values,
            integration=integration,
        )
        result = executor(context)
        if isinstance(result, dict):
            result = OperationResult(processed=result)
        elif not isinstance(result, OperationResult):
            raise OperationError(
                f"Operation for {spec.type.value} returned {type(result).__name__}",
                node_id=node.id, node_type=spec.type.value, code="invalid_result"
            )

        if execution_mode == ExecutionMode.RECORD and isinstance(result.processed, dict):
            self._recordings[node.type] = copy.deepcopy(result.processed)
        return result

    def _find_integration(
        self,
        node: NodeDefinition,
        spec: NodeTypeSpec,
        config: NodeConfig,
        business_id: Optional[str]
    ) -> Optional[Integration]:
        if self.integrations is None:
            return None
        candidates = self.integrations.list_by_type(spec.required_capability, business_id)
        wanted = getattr(config, "integration_id", None)
        if wanted:
            candidates = [integration for integration in candidates if integration.id == wanted]
        if not candidates:
            raise OperationError(
                f"No active {spec.required_capability} integration is configured",
                node_id=node.id, node_type=spec.type.value, code="missing_integration"
            )
        return candidates[0]

    @staticmethod
    def _envelope(
        execution_id: str,
        node: NodeDefinition,
        status: NodeResponseStatus,
        executed_at: datetime,
        execution_time_ms: int,
        data: Optional[NodeResponseData] = None,
        error: Optional[NodeError] = None,
        api_metadata: Optional[ApiMetadata] = None,
        input_data: Optional[Dict[str, Any]] = None
    ) -> StandardNodeResponse:
        return StandardNodeResponse(
            execution_id=execution_id,
            node_id=node.id,
            node_type=node.type,
            status=status,
            executed_at=executed_at,
            execution_time_ms=execution_time_ms,
            data=data or NodeResponseData(),
            error=error,
            input_data=input_data,
            api_metadata=api_metadata,
        )

    @staticmethod
    def _error_data(error: FlowEngineError) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": error.category.value,
            "code": error.error_code,
            "message": error.message,
        }
        if isinstance(error, DataMappingError):
            data["path"] = error.path
            data["segment"] = error.segment
        if isinstance(error, ValidationError) and error.issues:
            data["issues"] = error.issues
        if isinstance(error, OperationError) and error.code:
            data["operation_code"] = error.code
        return data

    # State changes

    def _transition(self, flow: FlowInstance, status: FlowStatus, **changes) -> FlowInstance:
        """Validate and commit a status change as one replace of the instance."""
        ensure_transition(flow.status, status, flow.id)
        updated = flow.model_copy(update={**changes, "status": status, "updated_at": datetime.utcnow()})
        self.store.commit(updated)
        log_with_context(
            logger, logging.INFO,
            f"Flow {flow.id}: {flow.status.value} -> {status.value}",
            flow_id=flow.id, from_status=flow.status.value, to_status=status.value,
            pass_number=updated.pass_number
        )
        return updated

    # Lifecycle

    def wait_for(self, flow_id: str, timeout: Optional[float] = None) -> None:
        """Block until a background pass for the flow has finished."""
        with self._active_lock:
            future = self._active_runs.get(flow_id)
        if future is not None:
            future.result(timeout=timeout)

    def is_running(self, flow_id: str) -> bool:
        with self._active_lock:
            return flow_id in self._active_runs

    def shutdown(self) -> None:
        """Wait for background passes and stop the worker pool."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
        logger.info("FlowEngine shut down")
