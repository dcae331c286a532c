"""Node input gathering and context construction."""

from typing import Any, Dict, Mapping, Sequence

from core.logging import get_logger
from models.workflow import WorkflowEdge, WorkflowNode
from services.execution.paths import MISSING, get_path, set_path
from services.execution.substitution import build_substitution_context, substitute
from services.execution.types import (
    ConnectionCallback, LogCallback, NodeExecutionContext, RunVariables,
)

logger = get_logger(__name__)


def gather_inputs(node_id: str, edges: Sequence[WorkflowEdge],
                  node_outputs: Mapping[str, Any]) -> Dict[str, Any]:
    """Collect inputs for a node from the outputs of its upstream nodes.

    Edges are applied in declaration order and later edges overwrite keys
    written by earlier ones. An edge with a mapping copies individual fields;
    otherwise the whole upstream output lands under the edge's target handle.
    Upstream nodes without output contribute nothing.
    """
    inputs: Dict[str, Any] = {}
    for edge in edges:
        if edge.target != node_id or edge.source not in node_outputs:
            continue
        source_output = node_outputs[edge.source]

        if edge.mapping:
            for mapping in edge.mapping:
                value = get_path(source_output, mapping.source_field, MISSING)
                if value is MISSING:
                    logger.debug("Mapped field not found in upstream output",
                                 node_id=node_id, source=edge.source,
                                 source_field=mapping.source_field)
                    continue
                set_path(inputs, mapping.target_field, value)
        else:
            inputs[edge.input_key] = source_output
    return inputs


def build_node_context(
    *,
    workflow_id: str,
    execution_id: str,
    org_id: str,
    node: WorkflowNode,
    edges: Sequence[WorkflowEdge],
    node_outputs: Mapping[str, Any],
    trigger: Dict[str, Any],
    variables: RunVariables,
    log_callback: LogCallback,
    connection_callback: ConnectionCallback,
) -> NodeExecutionContext:
    """Resolve the node's config templates and assemble its context.

    The substitution context and ``node_outputs`` are snapshots taken now,
    so the handler only ever sees nodes that completed before it.
    """
    snapshot = dict(node_outputs)
    substitution_context = build_substitution_context(snapshot, trigger, variables)
    resolved_config = substitute(node.config, substitution_context)

    return NodeExecutionContext(
        workflow_id=workflow_id,
        execution_id=execution_id,
        node_id=node.id,
        org_id=org_id,
        node_type=node.type,
        inputs=gather_inputs(node.id, edges, snapshot),
        config=node.config,
        resolved_config=resolved_config,
        variables=variables,
        node_outputs=snapshot,
        trigger=trigger,
        log_callback=log_callback,
        connection_callback=connection_callback,
    )
