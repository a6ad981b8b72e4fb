"""Workflow graph model: typed nodes joined by directed edges forming a DAG."""

import uuid
from collections import deque
from typing import Any, Dict, List, Optional, Set

from ..models.core import (
    EdgeDefinition,
    GraphDefinition,
    IssueSeverity,
    NodeDefinition,
    Position,
    ValidationIssue,
    ValidationResult,
    WorkflowNodeType,
)
from .exceptions import (
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
from .interpolator import find_references
from .logging import get_logger
from .node_registry import NodeTypeRegistry

logger = get_logger(__name__)


class WorkflowGraph:
    """Mutable workflow graph that re-checks its invariants on every mutation.

    Mutations refuse anything that would break the graph's structure (unknown
    endpoints, self-loops, cycles, edges into triggers). Graphs loaded from a
    serialized definition are taken as-is so that ``validate()`` can report
    what is wrong with them.
    """

    def __init__(self, registry: NodeTypeRegistry):
        self.registry = registry
        self._nodes: Dict[str, NodeDefinition] = {}
        self._edges: Dict[str, EdgeDefinition] = {}

    @classmethod
    def from_definition(cls, definition: GraphDefinition, registry: NodeTypeRegistry) -> "WorkflowGraph":
        graph = cls(registry)
        for node in definition.nodes:
            graph._nodes[node.id] = node
        for edge in definition.edges:
            graph._edges[edge.id] = edge
        return graph

    def to_definition(self) -> GraphDefinition:
        return GraphDefinition(nodes=list(self._nodes.values()), edges=list(self._edges.values()))

    @property
    def nodes(self) -> List[NodeDefinition]:
        return list(self._nodes.values())

    @property
    def edges(self) -> List[EdgeDefinition]:
        return list(self._edges.values())

    def get_node(self, node_id: str) -> NodeDefinition:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise UnknownNodeError(f"Node '{node_id}' does not exist", node_id=node_id)

    def trigger_ids(self) -> List[str]:
        return [node.id for node in self._nodes.values() if node.type == WorkflowNodeType.TRIGGER]

    def successors(self, node_id: str) -> List[str]:
        return [edge.target_node_id for edge in self._edges.values() if edge.source_node_id == node_id]

    def predecessors(self, node_id: str) -> List[str]:
        return [edge.source_node_id for edge in self._edges.values() if edge.target_node_id == node_id]

    # Mutation

    def add_node(self, node: NodeDefinition) -> str:
        """Add a node to the graph.

        Raises:
            DuplicateIdError: If a node with the same id already exists
            NodeTypeError: If the node type is not registered
        """
        if node.id in self._nodes:
            raise DuplicateIdError(f"Node id '{node.id}' is already used", node_id=node.id)
        self.registry.get(node.type)
        self._nodes[node.id] = node
        logger.debug(f"Added node '{node.id}' ({node.type.value})")
        return node.id

    def remove_node(self, node_id: str) -> List[str]:
        """Remove a node and every edge touching it. Returns the removed edge ids."""
        self.get_node(node_id)
        incident = [
            edge_id for edge_id, edge in self._edges.items()
            if edge.source_node_id == node_id or edge.target_node_id == node_id
        ]
        for edge_id in incident:
            del self._edges[edge_id]
        del self._nodes[node_id]
        logger.debug(f"Removed node '{node_id}' and {len(incident)} edges")
        return incident

    def update_node(
        self,
        node_id: str,
        label: Optional[str] = None,
        description: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        position: Optional[Position] = None,
        type: Optional[WorkflowNodeType] = None
    ) -> NodeDefinition:
        """Replace editable attributes of a node. The node type cannot change."""
        node = self.get_node(node_id)
        if type is not None and WorkflowNodeType(type) != node.type:
            raise NodeTypeImmutableError(
                f"Node '{node_id}' is a {node.type.value} node; its type cannot change", node_id=node_id
            )

        updates: Dict[str, Any] = {}
        if label is not None:
            updates["label"] = label
        if description is not None:
            updates["description"] = description
        if config is not None:
            updates["config"] = dict(config)
        if position is not None:
            updates["position"] = position

        updated = NodeDefinition.model_validate({**node.model_dump(), **updates})
        self._nodes[node_id] = updated
        return updated

    def connect(self, source_id: str, target_id: str, edge_id: Optional[str] = None) -> str:
        """Add an edge from ``source_id`` to ``target_id``.

        Raises:
            UnknownNodeError: If either endpoint is missing
            SelfLoopError: If both endpoints are the same node
            InvalidConnectionError: If the target is a trigger or the edge already exists
            DuplicateIdError: If ``edge_id`` is already used
            WouldCreateCycleError: If the edge would close a cycle
        """
        for node_id in (source_id, target_id):
            if node_id not in self._nodes:
                raise UnknownNodeError(f"Node '{node_id}' does not exist", node_id=node_id)

        if source_id == target_id:
            raise SelfLoopError(f"Node '{source_id}' cannot connect to itself", node_id=source_id)

        target = self._nodes[target_id]
        if not self.registry.get(target.type).accepts_incoming:
            raise InvalidConnectionError(
                f"{target.type.value} node '{target_id}' cannot have incoming edges", node_id=target_id
            )

        if any(e.source_node_id == source_id and e.target_node_id == target_id for e in self._edges.values()):
            raise InvalidConnectionError(f"Edge {source_id} -> {target_id} already exists", node_id=target_id)

        if edge_id is not None and edge_id in self._edges:
            raise DuplicateIdError(f"Edge id '{edge_id}' is already used", edge_id=edge_id)

        # Adding source -> target closes a cycle iff source is reachable from target
        if source_id in self._descendants(target_id):
            raise WouldCreateCycleError(
                f"Edge {source_id} -> {target_id} would create a cycle", node_id=target_id
            )

        if edge_id is None:
            edge_id = f"e-{source_id}-{target_id}"
            if edge_id in self._edges:
                edge_id = f"e-{uuid.uuid4().hex[:8]}"

        self._edges[edge_id] = EdgeDefinition(id=edge_id, source_node_id=source_id, target_node_id=target_id)
        logger.debug(f"Connected {source_id} -> {target_id} as '{edge_id}'")
        return edge_id

    def disconnect(self, edge_id: str) -> None:
        if edge_id not in self._edges:
            raise UnknownEdgeError(f"Edge '{edge_id}' does not exist", edge_id=edge_id)
        del self._edges[edge_id]

    # Traversal

    def _descendants(self, start: str) -> Set[str]:
        """Nodes reachable from ``start`` (inclusive) by depth-first search."""
        seen: Set[str] = set()
        stack = [start]
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.successors(current))
        return seen

    def ancestors(self, node_id: str) -> Set[str]:
        """Nodes with a path to ``node_id`` (exclusive)."""
        seen: Set[str] = set()
        stack = list(self.predecessors(node_id))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.predecessors(current))
        return seen

    def reachable_nodes(self) -> Set[str]:
        """Nodes reachable from any trigger, triggers included."""
        reachable: Set[str] = set()
        for trigger_id in self.trigger_ids():
            reachable |= self._descendants(trigger_id)
        return reachable

    def has_cycle(self) -> bool:
        return self._topological(set(self._nodes)) is None

    def _topological(self, node_ids: Set[str]) -> Optional[List[str]]:
        """Kahn's algorithm over ``node_ids``; None when they contain a cycle.

        Ties are broken by node insertion order so the order is deterministic.
        """
        order_index = {node_id: index for index, node_id in enumerate(self._nodes)}
        in_degree = {node_id: 0 for node_id in node_ids}
        for edge in self._edges.values():
            if edge.source_node_id in node_ids and edge.target_node_id in node_ids:
                in_degree[edge.target_node_id] += 1

        ready = deque(sorted((n for n, d in in_degree.items() if d == 0), key=order_index.get))
        order = []
        while ready:
            current = ready.popleft()
            order.append(current)
            released = []
            for target in self.successors(current):
                if target not in in_degree:
                    continue
                in_degree[target] -= 1
                if in_degree[target] == 0:
                    released.append(target)
            ready.extend(sorted(released, key=order_index.get))

        if len(order) != len(node_ids):
            return None
        return order

    def execution_order(self) -> List[str]:
        """Reachable nodes in topological order.

        Raises:
            ValidationError: If the reachable part of the graph contains a cycle
        """
        order = self._topological(self.reachable_nodes())
        if order is None:
            raise ValidationError("Graph contains a cycle and has no execution order")
        return order

    # Validation

    def validate(self) -> ValidationResult:
        """Check the whole graph and report every issue found.

        Errors make the graph non-executable; warnings do not.
        """
        issues: List[ValidationIssue] = []

        def error(code: str, message: str, **refs):
            issues.append(ValidationIssue(severity=IssueSeverity.ERROR, code=code, message=message, **refs))

        def warning(code: str, message: str, **refs):
            issues.append(ValidationIssue(severity=IssueSeverity.WARNING, code=code, message=message, **refs))

        if not self.trigger_ids():
            error("no_trigger", "Workflow needs at least one trigger node")

        for edge in self._edges.values():
            dangling = [n for n in (edge.source_node_id, edge.target_node_id) if n not in self._nodes]
            if dangling:
                error("dangling_edge", f"Edge '{edge.id}' references missing node(s): {', '.join(dangling)}",
                      edge_id=edge.id)
                continue
            if edge.source_node_id == edge.target_node_id:
                error("self_loop", f"Edge '{edge.id}' connects '{edge.source_node_id}' to itself", edge_id=edge.id)
            target = self._nodes[edge.target_node_id]
            if target.type == WorkflowNodeType.TRIGGER:
                error("trigger_incoming", f"Trigger node '{target.id}' cannot have incoming edges",
                      edge_id=edge.id, node_id=target.id)

        if self.has_cycle():
            error("cycle", "Workflow graph contains a cycle")

        reachable = self.reachable_nodes()
        for node in self._nodes.values():
            try:
                issues.extend(self.registry.validate_config(node.type, node.config, node_id=node.id))
            except NodeTypeError as e:
                error("unknown_type", e.message, node_id=node.id)
                continue

            if node.type != WorkflowNodeType.TRIGGER and node.id not in reachable:
                warning("unreachable_node", f"Node '{node.label}' is not reachable from a trigger", node_id=node.id)

            upstream = self.ancestors(node.id)
            for key, value in node.config.items():
                for path in _collect_references(value):
                    referenced = path.split('.')[0].split('[')[0]
                    if referenced not in self._nodes:
                        warning("unknown_reference", f"'{key}' references unknown node '{referenced}'",
                                node_id=node.id, field=key)
                    elif referenced not in upstream:
                        warning("not_upstream", f"'{key}' references '{referenced}', which does not run before this node",
                                node_id=node.id, field=key)

        result = ValidationResult(issues=issues)
        logger.debug(f"Graph validation completed. Valid: {result.is_valid}, "
                     f"Errors: {len(result.errors)}, Warnings: {len(result.warnings)}")
        return result


def _collect_references(value: Any) -> List[str]:
    if isinstance(value, str):
        return find_references(value)
    if isinstance(value, dict):
        return [path for item in value.values() for path in _collect_references(item)]
    if isinstance(value, list):
        return [path for item in value for path in _collect_references(item)]
    return []
