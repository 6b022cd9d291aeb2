"""Workflow graph navigation and definition-time validation."""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence

from apscheduler.triggers.cron import CronTrigger

from ..models import TriggerType
from ..schemas import NodeType, WorkflowEdge, WorkflowNode, WorkflowTrigger
from ..schemas.workflows import ConditionNode, SplitNode, TriggerNode
from .exceptions import DefinitionError

__all__ = ["WorkflowGraph", "validate_definition", "validate_for_activation"]

CONDITION_BRANCHES = ("yes", "no")


class WorkflowGraph:
    """Read-only view over a workflow's nodes and edges."""

    def __init__(self, nodes: Sequence[WorkflowNode], edges: Sequence[WorkflowEdge]) -> None:
        self._nodes: dict[str, WorkflowNode] = {node.id: node for node in nodes}
        self._outgoing: dict[str, list[WorkflowEdge]] = {}
        for edge in edges:
            self._outgoing.setdefault(edge.source, []).append(edge)

    def node(self, node_id: str | None) -> WorkflowNode | None:
        if node_id is None:
            return None
        return self._nodes.get(node_id)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    @property
    def trigger_node(self) -> TriggerNode | None:
        for node in self._nodes.values():
            if isinstance(node, TriggerNode):
                return node
        return None

    def outgoing(self, node_id: str) -> list[WorkflowEdge]:
        return list(self._outgoing.get(node_id, []))

    def next_node_id(self, node_id: str, branch_label: str | None = None) -> str | None:
        """Resolve the node reached from ``node_id``.

        A matching branch label wins; otherwise the first outgoing edge is
        taken. ``None`` means the run reached a natural end.
        """

        edges = self._outgoing.get(node_id, [])
        if not edges:
            return None
        if branch_label is not None:
            for edge in edges:
                if edge.matches_branch(branch_label):
                    return edge.target
        return edges[0].target

    def entry_node_id(self) -> str | None:
        """First executable node: the target of the trigger's first edge, or the trigger itself."""

        trigger = self.trigger_node
        if trigger is None:
            return None
        return self.next_node_id(trigger.id) or trigger.id


def validate_definition(
    trigger: WorkflowTrigger,
    nodes: Sequence[WorkflowNode],
    edges: Sequence[WorkflowEdge],
) -> None:
    """Structural checks applied every time a definition is saved."""

    problems: list[str] = []

    node_counts = Counter(node.id for node in nodes)
    problems.extend(f"Duplicate node id '{node_id}'" for node_id, n in node_counts.items() if n > 1)

    edge_counts = Counter(edge.id for edge in edges)
    problems.extend(f"Duplicate edge id '{edge_id}'" for edge_id, n in edge_counts.items() if n > 1)

    trigger_count = sum(1 for node in nodes if node.type == NodeType.TRIGGER)
    if trigger_count != 1:
        problems.append(f"Workflow must have exactly one trigger node (found {trigger_count})")

    for edge in edges:
        if edge.source not in node_counts:
            problems.append(f"Edge '{edge.id}' originates from non-existent node '{edge.source}'")
        if edge.target not in node_counts:
            problems.append(f"Edge '{edge.id}' points to non-existent node '{edge.target}'")

    for node in nodes:
        if isinstance(node, SplitNode):
            for variant in node.config.variants:
                if variant.weight < 0:
                    problems.append(
                        f"Split node '{node.id}' variant '{variant.id}' has a negative weight"
                    )

    if trigger.type == TriggerType.SCHEDULED and trigger.config.schedule:
        try:
            CronTrigger.from_crontab(trigger.config.schedule)
        except ValueError as exc:
            problems.append(f"Invalid cron schedule '{trigger.config.schedule}': {exc}")

    if problems:
        raise DefinitionError(problems)


def validate_for_activation(
    trigger: WorkflowTrigger,
    nodes: Sequence[WorkflowNode],
    edges: Sequence[WorkflowEdge],
) -> None:
    """Stricter checks required before a workflow may start enrolling leads."""

    validate_definition(trigger, nodes, edges)

    problems: list[str] = []
    graph = WorkflowGraph(nodes, edges)

    if len(nodes) < 2:
        problems.append("Workflow must have at least one node after the trigger")

    if trigger.type == TriggerType.SCHEDULED and not trigger.config.schedule:
        problems.append("Scheduled workflows require a cron schedule")

    for node in nodes:
        if isinstance(node, ConditionNode):
            expected = set(CONDITION_BRANCHES)
        elif isinstance(node, SplitNode):
            expected = {variant.id for variant in node.config.variants}
            if not expected:
                problems.append(f"Split node '{node.id}' has no variants")
                continue
        else:
            continue

        covered = {
            label
            for edge in graph.outgoing(node.id)
            for label in (edge.label, edge.source_handle)
            if label is not None
        }
        missing = sorted(expected - covered)
        if missing:
            problems.append(
                f"Node '{node.id}' is missing outgoing edges for branches: {', '.join(missing)}"
            )

    if problems:
        raise DefinitionError(problems)
