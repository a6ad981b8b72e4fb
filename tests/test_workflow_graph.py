"""Tests for the workflow graph model."""

import itertools

import pytest

from flowstate.core.exceptions import (
    DuplicateIdError,
    InvalidConnectionError,
    NodeTypeError,
    NodeTypeImmutableError,
    SelfLoopError,
    UnknownEdgeError,
    UnknownNodeError,
    ValidationError,
    WouldCreateCycleError,
)
from flowstate.core.node_registry import NodeTypeRegistry
from flowstate.core.workflow_graph import WorkflowGraph
from flowstate.models.core import EdgeDefinition, GraphDefinition, NodeDefinition, WorkflowNodeType

from conftest import chain, edge, node


@pytest.fixture
def graph():
    return WorkflowGraph(NodeTypeRegistry())


def _codes(result):
    return {issue.code for issue in result.issues}


class TestMutation:
    """Test cases for adding, removing and connecting nodes."""

    def test_add_node_returns_id(self, graph):
        assert graph.add_node(node("t", WorkflowNodeType.TRIGGER)) == "t"
        assert graph.get_node("t").type == WorkflowNodeType.TRIGGER

    def test_duplicate_node_id(self, graph):
        graph.add_node(node("t", WorkflowNodeType.TRIGGER))
        with pytest.raises(DuplicateIdError):
            graph.add_node(node("t", WorkflowNodeType.DELAY))

    def test_add_node_of_unregistered_type(self):
        graph = WorkflowGraph(NodeTypeRegistry(specs=[]))
        with pytest.raises(NodeTypeError):
            graph.add_node(node("t", WorkflowNodeType.TRIGGER))

    def test_remove_node_cascades_edges(self, graph):
        for node_id in ("t", "a", "b"):
            graph.add_node(node(node_id, WorkflowNodeType.TRIGGER if node_id == "t" else WorkflowNodeType.DELAY))
        graph.connect("t", "a")
        graph.connect("a", "b")
        graph.connect("t", "b")

        removed = graph.remove_node("a")
        assert sorted(removed) == ["e-a-b", "e-t-a"]
        assert [e.id for e in graph.edges] == ["e-t-b"]

    def test_update_node_keeps_type(self, graph):
        graph.add_node(node("d", WorkflowNodeType.DELAY, duration=1))
        updated = graph.update_node("d", label="Wait", config={"duration": 5, "unit": "hours"})
        assert updated.label == "Wait"
        assert updated.config == {"duration": 5, "unit": "hours"}
        with pytest.raises(NodeTypeImmutableError):
            graph.update_node("d", type=WorkflowNodeType.EMAIL)

    def test_connect_unknown_node(self, graph):
        graph.add_node(node("t", WorkflowNodeType.TRIGGER))
        with pytest.raises(UnknownNodeError):
            graph.connect("t", "ghost")

    def test_self_loop(self, graph):
        graph.add_node(node("d", WorkflowNodeType.DELAY))
        with pytest.raises(SelfLoopError):
            graph.connect("d", "d")

    def test_trigger_cannot_be_a_target(self, graph):
        graph.add_node(node("t", WorkflowNodeType.TRIGGER))
        graph.add_node(node("d", WorkflowNodeType.DELAY))
        with pytest.raises(InvalidConnectionError):
            graph.connect("d", "t")

    def test_duplicate_edge(self, graph):
        graph.add_node(node("t", WorkflowNodeType.TRIGGER))
        graph.add_node(node("d", WorkflowNodeType.DELAY))
        graph.connect("t", "d")
        with pytest.raises(InvalidConnectionError):
            graph.connect("t", "d")

    def test_duplicate_edge_id(self, graph):
        for node_id in ("t", "a", "b"):
            graph.add_node(node(node_id, WorkflowNodeType.TRIGGER if node_id == "t" else WorkflowNodeType.DELAY))
        graph.connect("t", "a", edge_id="link")
        with pytest.raises(DuplicateIdError):
            graph.connect("t", "b", edge_id="link")

    def test_cycle_is_refused(self, graph):
        for node_id in ("a", "b", "c"):
            graph.add_node(node(node_id, WorkflowNodeType.DELAY))
        graph.connect("a", "b")
        graph.connect("b", "c")
        with pytest.raises(WouldCreateCycleError):
            graph.connect("c", "a")
        assert len(graph.edges) == 2

    def test_disconnect(self, graph):
        graph.add_node(node("t", WorkflowNodeType.TRIGGER))
        graph.add_node(node("d", WorkflowNodeType.DELAY))
        edge_id = graph.connect("t", "d")
        graph.disconnect(edge_id)
        assert graph.edges == []
        with pytest.raises(UnknownEdgeError):
            graph.disconnect(edge_id)


class TestAcyclicity:
    """Any sequence of connect calls leaves the graph acyclic."""

    def test_random_connect_sequences_never_produce_a_cycle(self):
        node_ids = ["a", "b", "c", "d", "e"]
        pairs = list(itertools.permutations(node_ids, 2))
        # Several deterministic orderings of every possible edge
        for offset in range(0, len(pairs), 3):
            graph = WorkflowGraph(NodeTypeRegistry())
            for node_id in node_ids:
                graph.add_node(node(node_id, WorkflowNodeType.DELAY))
            for source, target in pairs[offset:] + pairs[:offset]:
                try:
                    graph.connect(source, target)
                except WouldCreateCycleError:
                    continue
            assert not graph.has_cycle()
            assert "cycle" not in _codes(graph.validate())

    def test_dag_validates_as_cycle_free(self):
        definition = GraphDefinition(
            nodes=[
                node("t", WorkflowNodeType.TRIGGER),
                node("a", WorkflowNodeType.DELAY),
                node("b", WorkflowNodeType.DELAY),
                node("c", WorkflowNodeType.DELAY),
            ],
            edges=[edge("t", "a"), edge("t", "b"), edge("a", "c"), edge("b", "c")],
        )
        graph = WorkflowGraph.from_definition(definition, NodeTypeRegistry())
        result = graph.validate()
        assert result.is_valid
        assert result.issues == []

    def test_loaded_cycle_is_reported(self):
        definition = GraphDefinition(
            nodes=[node("t", WorkflowNodeType.TRIGGER), node("a", WorkflowNodeType.DELAY),
                   node("b", WorkflowNodeType.DELAY)],
            edges=[edge("t", "a"), edge("a", "b"), edge("b", "a")],
        )
        graph = WorkflowGraph.from_definition(definition, NodeTypeRegistry())
        result = graph.validate()
        assert not result.is_valid
        assert "cycle" in _codes(result)
        with pytest.raises(ValidationError):
            graph.execution_order()


class TestValidate:
    """Test cases for graph validation issues."""

    def test_no_trigger_is_an_error(self):
        graph = WorkflowGraph.from_definition(
            GraphDefinition(nodes=[node("d", WorkflowNodeType.DELAY)]), NodeTypeRegistry()
        )
        result = graph.validate()
        assert not result.is_valid
        assert "no_trigger" in {issue.code for issue in result.errors}

    def test_unreachable_node_is_a_warning(self):
        definition = GraphDefinition(nodes=[node("t", WorkflowNodeType.TRIGGER), node("d", WorkflowNodeType.DELAY)])
        result = WorkflowGraph.from_definition(definition, NodeTypeRegistry()).validate()
        assert result.is_valid
        assert [(issue.code, issue.node_id) for issue in result.warnings] == [("unreachable_node", "d")]

    def test_config_errors_block_execution(self):
        definition = chain(node("t", WorkflowNodeType.TRIGGER), node("ai", WorkflowNodeType.AI_TASK))
        result = WorkflowGraph.from_definition(definition, NodeTypeRegistry()).validate()
        assert not result.is_valid
        assert [(issue.code, issue.field) for issue in result.errors] == [("missing_field", "prompt")]

    def test_dangling_edge_and_trigger_incoming(self):
        definition = GraphDefinition(
            nodes=[node("t", WorkflowNodeType.TRIGGER), node("d", WorkflowNodeType.DELAY)],
            edges=[edge("t", "d"), edge("d", "t"), edge("d", "ghost")],
        )
        codes = {issue.code for issue in WorkflowGraph.from_definition(definition, NodeTypeRegistry()).validate().errors}
        assert {"dangling_edge", "trigger_incoming", "cycle"} <= codes

    def test_reference_warnings(self):
        definition = chain(
            node("t", WorkflowNodeType.TRIGGER),
            node("ai", WorkflowNodeType.AI_TASK, prompt="{{later.data.processed.content}} {{ghost.data}}"),
            node("later", WorkflowNodeType.AI_TASK, prompt="{{ai.data.processed.content}}"),
        )
        result = WorkflowGraph.from_definition(definition, NodeTypeRegistry()).validate()
        assert result.is_valid
        assert {(issue.code, issue.node_id) for issue in result.warnings} == {
            ("not_upstream", "ai"),
            ("unknown_reference", "ai"),
        }


class TestExecutionOrder:
    """Test cases for topological ordering."""

    def test_order_respects_edges_and_insertion_order(self):
        definition = GraphDefinition(
            nodes=[
                node("t", WorkflowNodeType.TRIGGER),
                node("b", WorkflowNodeType.DELAY),
                node("a", WorkflowNodeType.DELAY),
                node("join", WorkflowNodeType.DELAY),
                node("orphan", WorkflowNodeType.DELAY),
            ],
            edges=[edge("t", "a"), edge("t", "b"), edge("a", "join"), edge("b", "join")],
        )
        graph = WorkflowGraph.from_definition(definition, NodeTypeRegistry())
        assert graph.execution_order() == ["t", "b", "a", "join"]

    def test_ancestors(self):
        graph = WorkflowGraph.from_definition(
            chain(node("t", WorkflowNodeType.TRIGGER), node("a", WorkflowNodeType.DELAY),
                  node("b", WorkflowNodeType.DELAY)),
            NodeTypeRegistry()
        )
        assert graph.ancestors("b") == {"t", "a"}
        assert graph.ancestors("t") == set()

    def test_round_trip_with_wire_aliases(self):
        definition = chain(node("t", WorkflowNodeType.TRIGGER), node("d", WorkflowNodeType.DELAY))
        wire = definition.to_json_dict()
        assert wire["edges"][0]["sourceNodeId"] == "t"
        assert wire["edges"][0]["targetNodeId"] == "d"
        loaded = GraphDefinition.model_validate(wire)
        assert loaded.edges == [EdgeDefinition(id="e-t-d", sourceNodeId="t", targetNodeId="d")]
        assert loaded.nodes[0] == NodeDefinition(id="t", type="trigger", label="t")
