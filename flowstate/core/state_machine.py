"""Allowed status transitions of a flow instance."""

from typing import Dict, FrozenSet, Optional

from ..models.flow import FlowStatus
from .exceptions import InvalidTransitionError

TRANSITIONS: Dict[FlowStatus, FrozenSet[FlowStatus]] = {
    FlowStatus.NEW: frozenset({FlowStatus.SCHEDULED, FlowStatus.IN_PROGRESS}),
    FlowStatus.SCHEDULED: frozenset({FlowStatus.IN_PROGRESS}),
    FlowStatus.IN_PROGRESS: frozenset({
        FlowStatus.IN_REVIEW, FlowStatus.INPUT_REQUIRED, FlowStatus.COMPLETE, FlowStatus.ERROR
    }),
    FlowStatus.IN_REVIEW: frozenset({FlowStatus.IN_PROGRESS, FlowStatus.ERROR}),
    FlowStatus.INPUT_REQUIRED: frozenset({FlowStatus.IN_PROGRESS, FlowStatus.ERROR}),
    FlowStatus.COMPLETE: frozenset({FlowStatus.IN_PROGRESS}),
    FlowStatus.ERROR: frozenset({FlowStatus.IN_PROGRESS}),
}

# Statuses the start command accepts; complete is restarted through rerun
STARTABLE = frozenset({FlowStatus.NEW, FlowStatus.SCHEDULED, FlowStatus.ERROR})
RERUNNABLE = frozenset({FlowStatus.COMPLETE, FlowStatus.ERROR})

# Statuses a poller can stop at
SETTLED = frozenset({FlowStatus.COMPLETE, FlowStatus.ERROR, FlowStatus.IN_REVIEW, FlowStatus.INPUT_REQUIRED})

# Kanban column order
BOARD_COLUMNS = (
    FlowStatus.NEW,
    FlowStatus.SCHEDULED,
    FlowStatus.IN_PROGRESS,
    FlowStatus.IN_REVIEW,
    FlowStatus.INPUT_REQUIRED,
    FlowStatus.COMPLETE,
    FlowStatus.ERROR,
)


def can_transition(current: FlowStatus, requested: FlowStatus) -> bool:
    return FlowStatus(requested) in TRANSITIONS[FlowStatus(current)]


def ensure_transition(current: FlowStatus, requested: FlowStatus, flow_id: Optional[str] = None) -> None:
    """Raise InvalidTransitionError unless ``current -> requested`` is an allowed edge."""
    if not can_transition(current, requested):
        current_value = FlowStatus(current).value
        requested_value = FlowStatus(requested).value
        raise InvalidTransitionError(
            f"Cannot move flow from '{current_value}' to '{requested_value}'",
            flow_id=flow_id,
            current_status=current_value,
            requested_status=requested_value
        )
