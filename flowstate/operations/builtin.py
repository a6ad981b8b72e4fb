"""Operations for the node types the engine can run without an external provider."""

from datetime import datetime
from typing import Any, Dict, List

from ..core.exceptions import OperationError
from ..core.logging import get_logger
from ..core.node_registry import NodeTypeRegistry, OperationContext
from ..models.core import WorkflowNodeType
from ..models.flow import OperationResult

logger = get_logger(__name__)


def trigger_operation(context: OperationContext) -> OperationResult:
    """Expose the flow's custom field values, nested by step id, to downstream steps."""
    fields: Dict[str, Any] = {}
    for key, value in context.custom_field_values.items():
        step_id, _, config_key = key.partition(".")
        if config_key:
            fields.setdefault(step_id, {})[config_key] = value
        else:
            fields[key] = value
    logger.debug(f"Trigger {context.node.id} emitting {len(context.custom_field_values)} custom fields")
    return OperationResult(
        processed={
            "trigger_type": context.config.trigger_type,
            "triggered_at": datetime.utcnow().isoformat(),
            "fields": fields,
        },
        summary={"field_count": len(context.custom_field_values)},
    )


def _matches(item_value: Any, operator: str, expected: Any) -> bool:
    if operator == "exists":
        return item_value is not None
    if operator == "equals":
        return item_value == expected
    if operator == "not_equals":
        return item_value != expected
    if operator == "contains":
        if item_value is None or expected is None:
            return False
        if isinstance(item_value, (list, dict)):
            return expected in item_value
        return str(expected).lower() in str(item_value).lower()

    try:
        left, right = float(item_value), float(expected)
    except (TypeError, ValueError):
        return False
    if operator == "greater_than":
        return left > right
    return left < right


def data_filter_operation(context: OperationContext) -> OperationResult:
    """Keep the items of a resolved list that satisfy the configured condition.

    Args:
        context: Step context; ``context.config`` is a DataFilterConfig

    Returns:
        OperationResult with ``processed = {"items": [...], "count": n}``

    Raises:
        OperationError: If the source did not resolve to a list
    """
    config = context.config
    source = config.source
    if not isinstance(source, list):
        raise OperationError(
            f"Data filter source must be a list, got {type(source).__name__}",
            node_id=context.node.id,
            node_type=WorkflowNodeType.DATA_FILTER.value,
            code="invalid_source"
        )

    kept: List[Any] = []
    for item in source:
        item_value = item.get(config.field) if config.field and isinstance(item, dict) else item
        if _matches(item_value, config.operator, config.value):
            kept.append(item)
            if config.limit is not None and len(kept) >= config.limit:
                break

    logger.debug(f"Data filter {context.node.id} kept {len(kept)} of {len(source)} items")
    return OperationResult(
        processed={"items": kept, "count": len(kept)},
        raw=source,
        summary={"input_count": len(source), "output_count": len(kept), "operator": config.operator},
    )


def client_profile_operation(context: OperationContext) -> OperationResult:
    profile: Dict[str, Any] = context.config.model_dump(exclude_none=True)
    return OperationResult(processed=profile, summary={"business_name": profile.get("business_name")})


def delay_operation(context: OperationContext) -> OperationResult:
    # Waiting is left to the external scheduler; the step only records the delay
    config = context.config
    return OperationResult(
        processed={"waited": config.duration, "unit": config.unit},
        summary={"delay": f"{config.duration} {config.unit}"},
    )


BUILTIN_OPERATIONS = {
    WorkflowNodeType.TRIGGER: trigger_operation,
    WorkflowNodeType.DATA_FILTER: data_filter_operation,
    WorkflowNodeType.CLIENT_PROFILE: client_profile_operation,
    WorkflowNodeType.DELAY: delay_operation,
}


def register_builtin_operations(registry: NodeTypeRegistry) -> None:
    """Register every built-in operation on ``registry``."""
    for node_type, executor in BUILTIN_OPERATIONS.items():
        registry.register_operation(node_type, executor)
