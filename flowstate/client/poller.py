"""Client-side polling of flow details while a flow is running."""

import threading
from typing import Callable, Optional

from ..config import get_config
from ..core.logging import get_logger
from ..core.state_machine import SETTLED
from ..models.flow import FlowInstance

logger = get_logger(__name__)


class FlowPoller:
    """Re-reads a flow on a fixed interval until it settles.

    A flow has settled once it is complete, failed, or waiting at a review or
    options gate. ``on_update`` is called with every instance read, the
    settled one included. The poller runs on a daemon thread and is torn
    down with ``cancel()``.
    """

    def __init__(
        self,
        flow_id: str,
        get_details: Callable[[str], FlowInstance],
        on_update: Optional[Callable[[FlowInstance], None]] = None,
        interval: Optional[float] = None
    ):
        self.flow_id = flow_id
        self._get_details = get_details
        self._on_update = on_update
        self.interval = interval if interval is not None else get_config().poll_interval_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_seen: Optional[FlowInstance] = None
        self.error: Optional[Exception] = None

    def poll_once(self) -> FlowInstance:
        """Read the flow once and report it. Returns the instance read."""
        flow = self._get_details(self.flow_id)
        self.last_seen = flow
        if self._on_update is not None:
            self._on_update(flow)
        return flow

    @property
    def settled(self) -> bool:
        return self.last_seen is not None and self.last_seen.status in SETTLED

    def start(self) -> "FlowPoller":
        if self._thread is not None and self._thread.is_alive():
            return self
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=f"flow-poller-{self.flow_id}", daemon=True)
        self._thread.start()
        logger.debug(f"Started polling flow {self.flow_id} every {self.interval}s")
        return self

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                flow = self.poll_once()
            except Exception as e:
                # A failed read ends polling; the caller inspects ``error``
                logger.error(f"Polling flow {self.flow_id} failed: {e}")
                self.error = e
                return
            if flow.status in SETTLED:
                logger.debug(f"Flow {self.flow_id} settled at {flow.status.value}")
                return
            self._stop_event.wait(self.interval)

    def cancel(self) -> None:
        """Stop polling. Safe to call more than once."""
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.interval + 1.0)
        logger.debug(f"Stopped polling flow {self.flow_id}")

    def wait(self, timeout: Optional[float] = None) -> Optional[FlowInstance]:
        """Block until polling ends. Returns the last instance read."""
        if self._thread is not None:
            self._thread.join(timeout)
        return self.last_seen

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
