"""Node Type Registry: config schemas, output shapes and operation executors per node type."""

import inspect
from enum import Enum
from typing import Any, Callable, Dict, List, Literal, Optional, Tuple, Type, Union, get_args, get_origin
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from ..models.core import IssueSeverity, NodeDefinition, ValidationIssue, WorkflowNodeType
from ..models.flow import ExecutionMode, Integration, OperationResult
from .exceptions import NodeTypeError, ValidationError
from .interpolator import contains_template, to_text
from .logging import get_logger

logger = get_logger(__name__)


class FieldKind(str, Enum):
    """Input kind of a config field."""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    SELECT = "select"
    TEXTAREA = "textarea"
    JSON = "json"


def _kind(kind: FieldKind) -> Dict[str, Any]:
    return {"kind": kind.value}


# Typed configuration per node type

class NodeConfig(BaseModel):
    """Base for typed node configs. Unknown keys are kept but not interpreted."""
    model_config = ConfigDict(extra="allow")


class TriggerConfig(NodeConfig):
    trigger_type: Literal["manual", "schedule", "webhook"] = Field("manual", description="What starts the flow")
    schedule: Optional[str] = Field(None, description="Cron expression for scheduled triggers")


class EmailConfig(NodeConfig):
    to: str = Field(..., description="Recipient address")
    subject: str = Field(..., description="Subject line")
    body: str = Field(..., description="Message body", json_schema_extra=_kind(FieldKind.TEXTAREA))
    from_name: Optional[str] = Field(None, description="Sender display name")
    integration_id: Optional[str] = Field(None, description="Email integration to send through")


class WebhookConfig(NodeConfig):
    url: str = Field(..., description="Endpoint to call")
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = Field("POST", description="HTTP method")
    payload: Optional[Any] = Field(None, description="Request body", json_schema_extra=_kind(FieldKind.JSON))


class DelayConfig(NodeConfig):
    duration: float = Field(1, description="How long to wait")
    unit: Literal["minutes", "hours", "days"] = Field("minutes", description="Unit of the duration")


class AiTaskConfig(NodeConfig):
    prompt: str = Field(..., description="User prompt", json_schema_extra=_kind(FieldKind.TEXTAREA))
    system_prompt: Optional[str] = Field(None, description="System prompt", json_schema_extra=_kind(FieldKind.TEXTAREA))
    model: str = Field("gpt-4o-mini", description="Model name")
    temperature: float = Field(0.7, description="Sampling temperature")
    max_tokens: int = Field(1000, description="Completion token limit")
    integration_id: Optional[str] = Field(None, description="OpenAI integration to use")


class SerpAnalyzeConfig(NodeConfig):
    keyword: str = Field(..., description="Search keyword")
    location: str = Field("United States", description="Search location")
    language: str = Field("en", description="Search language code")
    result_count: int = Field(10, description="Number of results to fetch")
    integration_id: Optional[str] = Field(None, description="DataForSEO integration to use")


class ContentExtractConfig(NodeConfig):
    urls: Union[str, List[str]] = Field(..., description="URL or URLs to extract", json_schema_extra=_kind(FieldKind.JSON))
    extract_type: Literal["text", "markdown", "html"] = Field("text", description="Output format")
    max_length: int = Field(5000, description="Maximum characters per page")


class DataFilterConfig(NodeConfig):
    source: Any = Field(..., description="List to filter, usually a {{path}} reference", json_schema_extra=_kind(FieldKind.JSON))
    field: Optional[str] = Field(None, description="Item field to compare; the item itself when empty")
    operator: Literal["equals", "not_equals", "contains", "greater_than", "less_than", "exists"] = Field(
        "contains", description="Comparison operator"
    )
    value: Optional[Any] = Field(None, description="Value to compare against", json_schema_extra=_kind(FieldKind.JSON))
    limit: Optional[int] = Field(None, description="Maximum number of items kept")


class ClientProfileConfig(NodeConfig):
    business_name: str = Field(..., description="Client business name")
    industry: Optional[str] = Field(None, description="Industry")
    website: Optional[str] = Field(None, description="Website URL")
    target_audience: Optional[str] = Field(None, description="Audience description", json_schema_extra=_kind(FieldKind.TEXTAREA))
    tone: Optional[str] = Field(None, description="Brand voice")


class ReviewConfig(NodeConfig):
    reviewer_type: Literal["agency", "client", "admin"] = Field("agency", description="Who approves")
    instructions: Optional[str] = Field(None, description="Notes for the reviewer", json_schema_extra=_kind(FieldKind.TEXTAREA))
    auto_approve_after: Optional[float] = Field(None, description="Hours before auto-approval")
    blocking_review: bool = Field(True, description="Never auto-approve when set")


class OptionsSelectConfig(NodeConfig):
    options_source: Any = Field(..., description="Options to offer, usually a {{path}} reference", json_schema_extra=_kind(FieldKind.JSON))
    selection_mode: Literal["single", "multiple"] = Field(..., description="How many options may be chosen")
    instructions: Optional[str] = Field(None, description="Notes shown with the options", json_schema_extra=_kind(FieldKind.TEXTAREA))


class ConfigField(BaseModel):
    """Schema entry for one config key, as rendered by the settings panel."""
    key: str
    kind: FieldKind
    required: bool = False
    default_value: Any = None
    options: Optional[List[Any]] = None
    description: Optional[str] = None


def _infer_kind(annotation: Any) -> Tuple[FieldKind, Optional[List[Any]]]:
    origin = get_origin(annotation)
    if origin is Literal:
        return FieldKind.SELECT, list(get_args(annotation))
    if origin is Union:
        args = [arg for arg in get_args(annotation) if arg is not type(None)]
        if len(args) == 1:
            return _infer_kind(args[0])
        return FieldKind.JSON, None
    if annotation is bool:
        return FieldKind.BOOLEAN, None
    if annotation in (int, float):
        return FieldKind.NUMBER, None
    if annotation is str:
        return FieldKind.STRING, None
    return FieldKind.JSON, None


def config_fields_for(model: Type[BaseModel]) -> List[ConfigField]:
    """Derive the field schema of a typed config model."""
    fields = []
    for key, info in model.model_fields.items():
        kind, options = _infer_kind(info.annotation)
        extra = info.json_schema_extra if isinstance(info.json_schema_extra, dict) else {}
        if "kind" in extra:
            kind = FieldKind(extra["kind"])
        fields.append(ConfigField(
            key=key,
            kind=kind,
            required=info.is_required(),
            default_value=None if info.is_required() else info.default,
            options=options,
            description=info.description,
        ))
    return fields


class NodeTypeSpec(BaseModel):
    """Declarative description of a node type."""
    type: WorkflowNodeType
    label: str
    description: str = ""
    category: str = "action"
    config_model: Type[NodeConfig] = Field(..., exclude=True)
    required_capability: Optional[str] = None
    output_shape: Dict[str, Any] = Field(default_factory=dict, description="Sample of data.processed")
    accepts_incoming: bool = True
    is_review_gate: bool = False
    is_options_gate: bool = False

    @property
    def config_fields(self) -> List[ConfigField]:
        return config_fields_for(self.config_model)

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        data["config_fields"] = [field.model_dump(mode="json") for field in self.config_fields]
        return data


class OperationContext:
    """Everything an operation executor gets to see about the step it runs."""

    def __init__(
        self,
        flow_id: Optional[str],
        node: NodeDefinition,
        config: NodeConfig,
        outputs: Dict[str, Any],
        business_id: Optional[str] = None,
        execution_mode: ExecutionMode = ExecutionMode.LIVE,
        custom_field_values: Optional[Dict[str, Any]] = None,
        integration: Optional[Integration] = None
    ):
        self.flow_id = flow_id
        self.node = node
        self.config = config
        self.outputs = outputs
        self.business_id = business_id
        self.execution_mode = execution_mode
        self.custom_field_values = custom_field_values or {}
        self.integration = integration


OperationExecutor = Callable[[OperationContext], OperationResult]


_SERP_ITEM = {"title": "Example result", "url": "https://example.com", "domain": "example.com", "position": 1}

DEFAULT_NODE_TYPES: List[NodeTypeSpec] = [
    NodeTypeSpec(
        type=WorkflowNodeType.TRIGGER, label="Trigger", category="trigger",
        description="Starts the flow and exposes its custom field values",
        config_model=TriggerConfig, accepts_incoming=False,
        output_shape={"trigger_type": "manual", "fields": {}},
    ),
    NodeTypeSpec(
        type=WorkflowNodeType.EMAIL, label="Send Email", category="communication",
        config_model=EmailConfig, required_capability="email",
        output_shape={"message_id": "msg-1", "to": "client@example.com", "sent": True},
    ),
    NodeTypeSpec(
        type=WorkflowNodeType.WEBHOOK, label="Webhook", category="integration",
        config_model=WebhookConfig,
        output_shape={"status_code": 200, "body": {}},
    ),
    NodeTypeSpec(
        type=WorkflowNodeType.DELAY, label="Delay", category="control",
        config_model=DelayConfig,
        output_shape={"waited": 1, "unit": "minutes"},
    ),
    NodeTypeSpec(
        type=WorkflowNodeType.AI_TASK, label="AI Task", category="ai",
        config_model=AiTaskConfig, required_capability="openai",
        output_shape={"content": "Generated text", "model": "gpt-4o-mini", "tokens_used": 0},
    ),
    NodeTypeSpec(
        type=WorkflowNodeType.SERP_ANALYZE, label="SERP Analysis", category="seo",
        config_model=SerpAnalyzeConfig, required_capability="dataforseo",
        output_shape={"keyword": "example", "total_results": 1, "items": [_SERP_ITEM]},
    ),
    NodeTypeSpec(
        type=WorkflowNodeType.CONTENT_EXTRACT, label="Content Extraction", category="seo",
        config_model=ContentExtractConfig, required_capability="dataforseo",
        output_shape={"pages": [{"url": "https://example.com", "title": "Example", "content": "Page text"}]},
    ),
    NodeTypeSpec(
        type=WorkflowNodeType.DATA_FILTER, label="Data Filter", category="data",
        config_model=DataFilterConfig,
        output_shape={"items": [], "count": 0},
    ),
    NodeTypeSpec(
        type=WorkflowNodeType.CLIENT_PROFILE, label="Client Profile", category="data",
        config_model=ClientProfileConfig,
        output_shape={"business_name": "Example Co", "industry": None, "website": None},
    ),
    NodeTypeSpec(
        type=WorkflowNodeType.REVIEW, label="Review", category="approval",
        description="Pauses the flow until a reviewer approves or rejects",
        config_model=ReviewConfig, is_review_gate=True,
        output_shape={"approved": True, "comments": None, "reviewer": None},
    ),
    NodeTypeSpec(
        type=WorkflowNodeType.OPTIONS_SELECT, label="Options Selection", category="approval",
        description="Pauses the flow until options are picked from a dynamic list",
        config_model=OptionsSelectConfig, is_options_gate=True,
        output_shape={"selected_options": [], "selection_metadata": {}},
    ),
]


class NodeTypeRegistry:
    """Table-driven mapping from node type to its spec and operation executor."""

    def __init__(self, specs: Optional[List[NodeTypeSpec]] = None):
        self._specs: Dict[WorkflowNodeType, NodeTypeSpec] = {}
        self._operations: Dict[WorkflowNodeType, OperationExecutor] = {}
        for spec in specs if specs is not None else DEFAULT_NODE_TYPES:
            self.register_type(spec)

    def register_type(self, spec: NodeTypeSpec) -> None:
        self._specs[spec.type] = spec
        logger.debug(f"Registered node type '{spec.type.value}'")

    def _coerce_type(self, node_type: Union[str, WorkflowNodeType]) -> WorkflowNodeType:
        try:
            return WorkflowNodeType(node_type)
        except ValueError:
            raise NodeTypeError(f"Unknown node type '{node_type}'", node_type=str(node_type))

    def get(self, node_type: Union[str, WorkflowNodeType]) -> NodeTypeSpec:
        """Look up the spec of a node type.

        Raises:
            NodeTypeError: If the type is unknown or not registered
        """
        resolved = self._coerce_type(node_type)
        spec = self._specs.get(resolved)
        if spec is None:
            raise NodeTypeError(f"Node type '{resolved.value}' is not registered", node_type=resolved.value)
        return spec

    def list_types(self) -> List[NodeTypeSpec]:
        return list(self._specs.values())

    def validate_config(
        self,
        node_type: Union[str, WorkflowNodeType],
        config: Dict[str, Any],
        node_id: Optional[str] = None
    ) -> List[ValidationIssue]:
        """Structural check of a node config against its type's field schema.

        Only presence and kind are checked. Values holding ``{{...}}``
        templates are accepted for any kind since they resolve at run time.
        """
        spec = self.get(node_type)
        issues = []

        for field in spec.config_fields:
            value = config.get(field.key)
            if value is None or (isinstance(value, str) and not value.strip()):
                if field.required:
                    issues.append(ValidationIssue(
                        severity=IssueSeverity.ERROR, code="missing_field", node_id=node_id, field=field.key,
                        message=f"'{field.key}' is required for {spec.label} nodes",
                    ))
                continue

            if contains_template(value):
                continue

            problem = self._check_kind(field, value)
            if problem:
                issues.append(ValidationIssue(
                    severity=IssueSeverity.ERROR, code="invalid_field", node_id=node_id, field=field.key,
                    message=f"'{field.key}' {problem}",
                ))

        return issues

    @staticmethod
    def _check_kind(field: ConfigField, value: Any) -> Optional[str]:
        if field.kind == FieldKind.NUMBER:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return "must be a number"
        elif field.kind == FieldKind.BOOLEAN:
            if not isinstance(value, bool):
                return "must be a boolean"
        elif field.kind == FieldKind.SELECT:
            if value not in (field.options or []):
                return f"must be one of {field.options}"
        elif field.kind in (FieldKind.STRING, FieldKind.TEXTAREA):
            if not isinstance(value, str):
                return "must be a string"
        return None

    def parse_config(self, node_type: Union[str, WorkflowNodeType], config: Dict[str, Any]) -> NodeConfig:
        """Parse a resolved config into the type's config model.

        Raises:
            ValidationError: If the resolved config does not fit the model
        """
        spec = self.get(node_type)
        # Whole-token values keep their resolved type; text fields get them rendered
        text_keys = {
            field.key for field in spec.config_fields
            if field.kind in (FieldKind.STRING, FieldKind.TEXTAREA)
        }
        config = {
            key: to_text(value) if key in text_keys and value is not None and not isinstance(value, str) else value
            for key, value in config.items()
        }
        try:
            return spec.config_model.model_validate(config)
        except PydanticValidationError as e:
            issues = [
                {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
                for error in e.errors()
            ]
            raise ValidationError(
                f"Invalid configuration for {spec.label} node",
                issues=issues
            )

    def register_operation(self, node_type: Union[str, WorkflowNodeType], executor: Callable) -> None:
        """Register the executor that performs a node type's operation.

        Args:
            node_type: Node type the executor handles
            executor: Callable taking an OperationContext and returning an OperationResult

        Raises:
            NodeTypeError: If the type is unknown, is a gate, or the callable has the wrong signature
        """
        spec = self.get(node_type)
        if spec.is_review_gate or spec.is_options_gate:
            raise NodeTypeError(
                f"'{spec.type.value}' nodes are gates and cannot have an operation", node_type=spec.type.value
            )
        if not callable(executor):
            raise NodeTypeError(f"Executor for '{spec.type.value}' must be callable", node_type=spec.type.value)

        try:
            sig = inspect.signature(executor)
        except (ValueError, TypeError) as e:
            raise NodeTypeError(f"Cannot inspect executor for '{spec.type.value}': {e}", node_type=spec.type.value)

        positional = [
            param for param in sig.parameters.values()
            if param.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
        ]
        has_varargs = any(param.kind == inspect.Parameter.VAR_POSITIONAL for param in sig.parameters.values())
        required = [param for param in positional if param.default is inspect.Parameter.empty]
        if len(required) > 1 or (not positional and not has_varargs):
            raise NodeTypeError(
                f"Executor for '{spec.type.value}' must accept exactly one context argument",
                node_type=spec.type.value
            )

        self._operations[spec.type] = executor
        logger.info(f"Registered operation for node type '{spec.type.value}'")

    def get_operation(self, node_type: Union[str, WorkflowNodeType]) -> Optional[OperationExecutor]:
        return self._operations.get(self._coerce_type(node_type))

    def has_operation(self, node_type: Union[str, WorkflowNodeType]) -> bool:
        return self.get_operation(node_type) is not None
