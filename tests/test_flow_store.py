"""Tests for the flow store: listing, bucketing, optimistic writes and locking."""

import threading
from datetime import datetime, timedelta

import pytest

from flowstate.core.exceptions import (
    ConcurrentTransitionError,
    FlowNotFoundError,
    InvalidTransitionError,
    PersistenceError,
)
from flowstate.core.flow_store import FlowStore
from flowstate.models.core import WorkflowNodeType
from flowstate.models.flow import FlowInstance, FlowStatus

from conftest import FlakyRepository, chain, node


def make_flow(flow_id, business_id="biz-1", status=FlowStatus.NEW, created_offset=0):
    created = datetime(2024, 1, 1) + timedelta(minutes=created_offset)
    return FlowInstance(
        id=flow_id,
        template_id="tpl",
        business_id=business_id,
        title=f"Flow {flow_id}",
        status=status,
        graph=chain(node("t", WorkflowNodeType.TRIGGER), node("d", WorkflowNodeType.DELAY)),
        step_order=["t", "d"],
        created_at=created,
        updated_at=created,
    )


@pytest.fixture
def repository():
    return FlakyRepository()


@pytest.fixture
def flaky_store(repository):
    return FlowStore(repository)


class TestQueries:
    """Test cases for reads and Kanban bucketing."""

    def test_list_by_business_sorted_by_creation(self, store):
        store.add(make_flow("late", created_offset=5))
        store.add(make_flow("early", created_offset=1))
        store.add(make_flow("other", business_id="biz-2"))
        assert [flow.id for flow in store.list_by_business("biz-1")] == ["early", "late"]

    def test_list_by_business_with_status(self, store):
        store.add(make_flow("a"))
        store.add(make_flow("b", status=FlowStatus.ERROR))
        assert [flow.id for flow in store.list_by_business("biz-1", FlowStatus.ERROR)] == ["b"]

    def test_bucket_by_status_has_every_column(self, store):
        store.add(make_flow("a"))
        store.add(make_flow("b", status=FlowStatus.COMPLETE))
        store.add(make_flow("c", status=FlowStatus.COMPLETE, created_offset=1))

        buckets = store.bucket_by_status("biz-1")
        assert list(buckets) == [
            FlowStatus.NEW, FlowStatus.SCHEDULED, FlowStatus.IN_PROGRESS, FlowStatus.IN_REVIEW,
            FlowStatus.INPUT_REQUIRED, FlowStatus.COMPLETE, FlowStatus.ERROR,
        ]
        assert [flow.id for flow in buckets[FlowStatus.NEW]] == ["a"]
        assert [flow.id for flow in buckets[FlowStatus.COMPLETE]] == ["b", "c"]
        assert buckets[FlowStatus.ERROR] == []

    def test_get_unknown_flow(self, store):
        assert store.find("missing") is None
        with pytest.raises(FlowNotFoundError):
            store.get("missing")

    def test_load_warms_from_repository(self, repository):
        repository.save(make_flow("persisted"))
        store = FlowStore(repository)
        assert store.load() == 1
        assert store.get("persisted").title == "Flow persisted"


class TestOptimisticWrites:
    """Test cases for atomic replace with rollback."""

    def test_update_status_replaces_instance(self, store):
        original = store.add(make_flow("a"))
        updated = store.update_status("a", FlowStatus.SCHEDULED)
        assert store.get("a") is updated
        assert original.status == FlowStatus.NEW
        assert updated.updated_at >= original.updated_at

    def test_failed_write_restores_previous_instance(self, flaky_store, repository):
        original = flaky_store.add(make_flow("a"))
        repository.failing = True

        with pytest.raises(PersistenceError):
            flaky_store.update_status("a", FlowStatus.SCHEDULED)

        assert flaky_store.get("a") is original
        assert flaky_store.get("a").status == FlowStatus.NEW

    def test_failed_insert_leaves_nothing_behind(self, flaky_store, repository):
        repository.failing = True
        with pytest.raises(PersistenceError):
            flaky_store.add(make_flow("a"))
        assert flaky_store.find("a") is None

    def test_unexpected_repository_errors_become_persistence_errors(self, flaky_store, repository):
        flaky_store.add(make_flow("a"))
        repository.failing = True
        repository.error = OSError("disk full")
        with pytest.raises(PersistenceError) as exc_info:
            flaky_store.update_status("a", FlowStatus.SCHEDULED)
        assert "disk full" in exc_info.value.message
        assert flaky_store.get("a").status == FlowStatus.NEW

    def test_rollback_does_not_clobber_a_later_write(self, repository):
        store = FlowStore(repository)
        store.add(make_flow("a"))
        later = make_flow("a", status=FlowStatus.ERROR)

        class InterleavingRepository(FlakyRepository):
            def save(self, flow):
                if flow.status == FlowStatus.SCHEDULED:
                    # Another writer lands before this write fails
                    store._flows[flow.id] = later
                    raise PersistenceError("conflict")
                super().save(flow)

        store._repository = InterleavingRepository()
        with pytest.raises(PersistenceError):
            store.update_status("a", FlowStatus.SCHEDULED)
        assert store.get("a") is later

    def test_readers_never_see_torn_updates(self, store):
        store.add(make_flow("a"))
        seen = []
        stop = threading.Event()

        def reader():
            while not stop.is_set():
                flow = store.get("a")
                seen.append((flow.status, flow.error_message))

        thread = threading.Thread(target=reader)
        thread.start()
        for _ in range(200):
            store.update_status("a", FlowStatus.ERROR, error_message="boom")
            store.update_status("a", FlowStatus.NEW, error_message=None)
        stop.set()
        thread.join()

        assert set(seen) <= {(FlowStatus.NEW, None), (FlowStatus.ERROR, "boom")}


class TestDelete:
    """Test cases for deleting flows."""

    def test_delete(self, store):
        store.add(make_flow("a"))
        store.delete("a")
        assert store.find("a") is None

    def test_delete_in_progress_is_refused(self, store):
        store.add(make_flow("a", status=FlowStatus.IN_PROGRESS))
        with pytest.raises(InvalidTransitionError):
            store.delete("a")
        assert store.find("a") is not None

    def test_failed_delete_restores_flow(self, flaky_store, repository):
        original = flaky_store.add(make_flow("a"))
        repository.failing = True
        with pytest.raises(PersistenceError):
            flaky_store.delete("a")
        assert flaky_store.get("a") is original

    def test_delete_unknown(self, store):
        with pytest.raises(FlowNotFoundError):
            store.delete("missing")


class TestLocking:
    """Test cases for per-flow command serialization."""

    def test_second_acquire_is_rejected(self, store):
        lock = store.acquire("a")
        try:
            assert store.is_locked("a")
            with pytest.raises(ConcurrentTransitionError):
                store.acquire("a")
            # Other flows are independent
            with store.lock("b"):
                pass
        finally:
            lock.release()
        assert not store.is_locked("a")

    def test_lock_context_releases_on_error(self, store):
        with pytest.raises(RuntimeError):
            with store.lock("a"):
                raise RuntimeError("fail")
        assert not store.is_locked("a")
