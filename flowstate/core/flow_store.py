"""In-memory collection of flow instances with optimistic, atomically replaced writes."""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from ..models.flow import FlowInstance, FlowStatus
from ..storage.repository import FlowRepository, InMemoryFlowRepository
from .exceptions import (
    ConcurrentTransitionError,
    FlowNotFoundError,
    InvalidTransitionError,
    PersistenceError,
)
from .logging import get_logger, log_with_context
from .state_machine import BOARD_COLUMNS

logger = get_logger(__name__)


class FlowStore:
    """Owns the flow instances of every business.

    Each write swaps the whole instance record under a short lock, then
    persists it. If persistence fails the previous record is put back before
    the error reaches the caller, so readers only ever observe the
    pre-update or the post-update instance.
    """

    def __init__(self, repository: Optional[FlowRepository] = None):
        self._repository = repository or InMemoryFlowRepository()
        self._flows: Dict[str, FlowInstance] = {}
        self._store_lock = threading.RLock()
        self._flow_locks: Dict[str, threading.Lock] = {}
        self._lock_manager = threading.Lock()

    def load(self) -> int:
        """Warm the collection from the repository. Returns the number of flows loaded."""
        flows = self._repository.load_all()
        with self._store_lock:
            for flow in flows:
                self._flows[flow.id] = flow
        logger.info(f"Loaded {len(flows)} flows from storage")
        return len(flows)

    # Reads

    def find(self, flow_id: str) -> Optional[FlowInstance]:
        with self._store_lock:
            return self._flows.get(flow_id)

    def get(self, flow_id: str) -> FlowInstance:
        flow = self.find(flow_id)
        if flow is None:
            raise FlowNotFoundError(flow_id)
        return flow

    def list_by_business(self, business_id: str, status: Optional[FlowStatus] = None) -> List[FlowInstance]:
        with self._store_lock:
            flows = [flow for flow in self._flows.values() if flow.business_id == business_id]
        if status is not None:
            flows = [flow for flow in flows if flow.status == status]
        return sorted(flows, key=lambda flow: flow.created_at)

    def bucket_by_status(self, business_id: str) -> Dict[FlowStatus, List[FlowInstance]]:
        """Group a business's flows by status; every column is present, in board order."""
        buckets: Dict[FlowStatus, List[FlowInstance]] = {status: [] for status in BOARD_COLUMNS}
        for flow in self.list_by_business(business_id):
            buckets[flow.status].append(flow)
        return buckets

    def all(self) -> List[FlowInstance]:
        with self._store_lock:
            return list(self._flows.values())

    # Writes

    def commit(self, updated: FlowInstance) -> FlowInstance:
        """Replace the stored instance with ``updated`` and persist it.

        Raises:
            PersistenceError: If the repository write fails; the previous
                instance (or absence) has been restored by then
        """
        with self._store_lock:
            previous = self._flows.get(updated.id)
            self._flows[updated.id] = updated

        try:
            self._repository.save(updated)
        except Exception as e:
            self._rollback(updated, previous)
            if isinstance(e, PersistenceError):
                raise
            raise PersistenceError(f"Failed to save flow {updated.id}: {e}", operation="save", flow_id=updated.id)

        return updated

    def _rollback(self, attempted: FlowInstance, previous: Optional[FlowInstance]) -> None:
        with self._store_lock:
            # A later write has already replaced ours; leave it alone
            if self._flows.get(attempted.id) is not attempted:
                return
            if previous is None:
                del self._flows[attempted.id]
            else:
                self._flows[attempted.id] = previous
        log_with_context(
            logger, logging.WARNING,
            f"Rolled back flow {attempted.id} after failed write",
            flow_id=attempted.id,
            attempted_status=attempted.status.value,
            restored_status=previous.status.value if previous else None
        )

    def add(self, flow: FlowInstance) -> FlowInstance:
        return self.commit(flow)

    def update_status(self, flow_id: str, status: FlowStatus, **changes) -> FlowInstance:
        """Optimistically set a flow's status (plus any other fields) as one replace."""
        current = self.get(flow_id)
        updated = current.model_copy(update={**changes, "status": status, "updated_at": datetime.utcnow()})
        return self.commit(updated)

    def delete(self, flow_id: str) -> None:
        """Remove a flow.

        Raises:
            InvalidTransitionError: If the flow is in progress
            PersistenceError: If the repository delete fails; the flow is restored
        """
        with self._store_lock:
            flow = self._flows.get(flow_id)
            if flow is None:
                raise FlowNotFoundError(flow_id)
            if flow.status == FlowStatus.IN_PROGRESS:
                raise InvalidTransitionError(
                    "Cannot delete a flow while it is in progress",
                    flow_id=flow_id,
                    current_status=flow.status.value
                )
            del self._flows[flow_id]

        try:
            self._repository.delete(flow_id)
        except Exception as e:
            with self._store_lock:
                self._flows.setdefault(flow_id, flow)
            logger.warning(f"Restored flow {flow_id} after failed delete")
            if isinstance(e, PersistenceError):
                raise
            raise PersistenceError(f"Failed to delete flow {flow_id}: {e}", operation="delete", flow_id=flow_id)

        with self._lock_manager:
            self._flow_locks.pop(flow_id, None)
        logger.info(f"Deleted flow {flow_id}")

    # Per-flow command serialization

    def _get_flow_lock(self, flow_id: str) -> threading.Lock:
        with self._lock_manager:
            if flow_id not in self._flow_locks:
                self._flow_locks[flow_id] = threading.Lock()
            return self._flow_locks[flow_id]

    def acquire(self, flow_id: str) -> threading.Lock:
        """Take the flow's command lock without waiting.

        Raises:
            ConcurrentTransitionError: If another command holds it
        """
        lock = self._get_flow_lock(flow_id)
        if not lock.acquire(blocking=False):
            raise ConcurrentTransitionError(
                f"Another command is already running for flow {flow_id}", flow_id=flow_id
            )
        return lock

    @contextmanager
    def lock(self, flow_id: str) -> Iterator[None]:
        lock = self.acquire(flow_id)
        try:
            yield
        finally:
            lock.release()

    def is_locked(self, flow_id: str) -> bool:
        return self._get_flow_lock(flow_id).locked()
