"""Topological scheduling of workflow nodes (Kahn's algorithm).

Malformed graphs degrade instead of failing: nodes caught in a cycle are
left out of the order and reported, and edges pointing at unknown nodes are
ignored for ordering and reported separately.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Sequence

from constants import is_trigger_node
from core.logging import get_logger
from models.workflow import WorkflowEdge, WorkflowNode

logger = get_logger(__name__)


@dataclass
class ScheduleResult:
    """Execution plan for one run."""
    order: List[WorkflowNode]
    unscheduled: List[str] = field(default_factory=list)
    dangling_edges: List[WorkflowEdge] = field(default_factory=list)

    @property
    def has_cycle(self) -> bool:
        return bool(self.unscheduled)


def find_dangling_edges(nodes: Sequence[WorkflowNode],
                        edges: Sequence[WorkflowEdge]) -> List[WorkflowEdge]:
    """Edges whose source or target is not in the node set."""
    node_ids = {node.id for node in nodes}
    return [e for e in edges if e.source not in node_ids or e.target not in node_ids]


def order(nodes: Sequence[WorkflowNode],
          edges: Sequence[WorkflowEdge]) -> List[WorkflowNode]:
    """Order nodes so every node follows all of its predecessors.

    The queue is FIFO and seeded in declaration order, so siblings that
    become ready together keep their declared order. When the graph has a
    cycle the partial order is returned and a warning is logged.
    """
    node_map: Dict[str, WorkflowNode] = {}
    in_degree: Dict[str, int] = {}
    adjacency: Dict[str, List[str]] = {}

    for node in nodes:
        node_map[node.id] = node
        in_degree[node.id] = 0
        adjacency[node.id] = []

    for edge in edges:
        if edge.source not in node_map or edge.target not in node_map:
            continue
        adjacency[edge.source].append(edge.target)
        in_degree[edge.target] += 1

    queue: Deque[str] = deque(node_id for node_id, degree in in_degree.items() if degree == 0)

    for node_id in queue:
        if not is_trigger_node(node_map[node_id].type):
            logger.debug("Non-trigger node at graph entry point",
                         node_id=node_id, node_type=node_map[node_id].type)

    result: List[WorkflowNode] = []
    while queue:
        node_id = queue.popleft()
        result.append(node_map[node_id])
        for successor in adjacency[node_id]:
            in_degree[successor] -= 1
            if in_degree[successor] == 0:
                queue.append(successor)

    if len(result) != len(node_map):
        scheduled = {node.id for node in result}
        logger.warning("Detected cycle in workflow graph, some nodes will not execute",
                       unscheduled=[nid for nid in node_map if nid not in scheduled])

    return result


def plan(nodes: Sequence[WorkflowNode], edges: Sequence[WorkflowEdge]) -> ScheduleResult:
    """Compute the order together with cycle and dangling edge diagnostics."""
    ordered = order(nodes, edges)
    scheduled = {node.id for node in ordered}
    dangling = find_dangling_edges(nodes, edges)
    if dangling:
        logger.warning("Edges reference unknown nodes",
                       edges=[f"{e.source}->{e.target}" for e in dangling])
    return ScheduleResult(
        order=ordered,
        unscheduled=[node.id for node in nodes if node.id not in scheduled],
        dangling_edges=dangling,
    )
