"""Tests for the flow detail poller."""

import threading
from datetime import datetime

from flowstate.client import FlowPoller
from flowstate.core.exceptions import FlowNotFoundError
from flowstate.core.flow_engine import FlowEngine
from flowstate.models.core import WorkflowNodeType
from flowstate.models.flow import CreateFlowRequest, FlowInstance, FlowStatus

from conftest import chain, node


def _flow(status):
    return FlowInstance(
        id="flow-1", template_id="t", business_id="biz-1", title="Flow", status=status,
        graph=chain(node("t", WorkflowNodeType.TRIGGER)),
        created_at=datetime(2024, 1, 1), updated_at=datetime(2024, 1, 1),
    )


class ScriptedReads:
    """Returns the given statuses one read at a time, repeating the last."""

    def __init__(self, *statuses):
        self.statuses = list(statuses)
        self.calls = 0

    def __call__(self, flow_id):
        status = self.statuses[min(self.calls, len(self.statuses) - 1)]
        self.calls += 1
        return _flow(status)


class TestFlowPoller:
    """Test cases for polling until a flow settles."""

    def test_polls_until_settled(self):
        reads = ScriptedReads(FlowStatus.IN_PROGRESS, FlowStatus.IN_PROGRESS, FlowStatus.IN_REVIEW)
        seen = []

        poller = FlowPoller("flow-1", reads, on_update=lambda flow: seen.append(flow.status), interval=0.01)
        final = poller.start().wait(timeout=5)

        assert final.status == FlowStatus.IN_REVIEW
        assert seen == [FlowStatus.IN_PROGRESS, FlowStatus.IN_PROGRESS, FlowStatus.IN_REVIEW]
        assert poller.settled
        assert not poller.running

    def test_cancel_stops_polling(self):
        reads = ScriptedReads(FlowStatus.IN_PROGRESS)
        poller = FlowPoller("flow-1", reads, interval=0.01).start()
        poller.cancel()
        calls = reads.calls

        assert not poller.running
        assert not poller.settled
        assert reads.calls == calls
        poller.cancel()

    def test_read_errors_end_polling(self):
        def missing(flow_id):
            raise FlowNotFoundError(flow_id)

        poller = FlowPoller("flow-1", missing, interval=0.01)
        poller.start().wait(timeout=5)
        assert isinstance(poller.error, FlowNotFoundError)
        assert poller.last_seen is None

    def test_default_interval_comes_from_config(self, monkeypatch):
        monkeypatch.setenv("FLOWSTATE_POLL_INTERVAL_SECONDS", "0.25")
        assert FlowPoller("flow-1", ScriptedReads(FlowStatus.NEW)).interval == 0.25

    def test_poll_once(self):
        poller = FlowPoller("flow-1", ScriptedReads(FlowStatus.COMPLETE), interval=1)
        assert poller.poll_once().status == FlowStatus.COMPLETE
        assert poller.settled

    def test_follows_a_background_pass(self, store, registry, template_manager, simple_template):
        release = threading.Event()

        def slow(context):
            release.wait(timeout=5)
            return {"content": "done"}

        registry.register_operation(WorkflowNodeType.AI_TASK, slow)
        engine = FlowEngine(store, registry, templates=template_manager, run_in_background=True)
        try:
            flow = engine.create_flow("biz-1", CreateFlowRequest(template_id=simple_template.id))
            engine.start_flow(flow.id)

            statuses = []
            poller = FlowPoller(flow.id, engine.get_flow_details, lambda f: statuses.append(f.status), interval=0.01)
            poller.start()
            release.set()
            final = poller.wait(timeout=5)

            assert final.status == FlowStatus.COMPLETE
            assert statuses[-1] == FlowStatus.COMPLETE
        finally:
            release.set()
            engine.shutdown()
