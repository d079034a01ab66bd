"""Configuration checks for workflow nodes.

These never block compilation; the compiler logs each issue as a warning
and editors can surface them next to the node.
"""

import logging
from dataclasses import dataclass

from workflow_engine.graph.workflow import NodeKind, Workflow, WorkflowEdge, WorkflowNode

logger = logging.getLogger(__name__)


@dataclass
class ValidationIssue:
    """One problem found on a node."""

    node_id: str
    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.node_id}.{self.field}: {self.message}"


def _check_node(node: WorkflowNode) -> list[ValidationIssue]:
    config = node.config
    issues: list[ValidationIssue] = []

    if node.kind == NodeKind.AGENT and not config.get("instructions"):
        issues.append(ValidationIssue(node.id, "instructions", "Agent must have instructions"))
    elif node.kind == NodeKind.IF_ELSE and not config.get("condition"):
        issues.append(ValidationIssue(node.id, "condition", "If/Else must have a condition"))
    elif node.kind == NodeKind.WHILE and not (
        config.get("whileCondition") or config.get("condition")
    ):
        issues.append(
            ValidationIssue(node.id, "whileCondition", "While loop must have a condition")
        )
    elif node.kind == NodeKind.TRANSFORM and not (
        config.get("transformScript") or config.get("transformation")
    ):
        issues.append(ValidationIssue(node.id, "transformScript", "Transform must have a script"))
    elif node.kind == NodeKind.SET_STATE and not config.get("stateKey"):
        issues.append(
            ValidationIssue(node.id, "stateKey", "Set State must have a variable name")
        )
    elif node.kind == NodeKind.HTTP and not config.get("httpUrl"):
        issues.append(ValidationIssue(node.id, "httpUrl", "HTTP node must have a URL"))

    return issues


def validate_workflow(workflow: Workflow) -> list[ValidationIssue]:
    """Check every node's configuration.

    Structural problems (entry node, reachability) are the compiler's job.
    """
    issues: list[ValidationIssue] = []
    for node in workflow.nodes:
        if node.is_note:
            continue
        issues.extend(_check_node(node))
    return issues


def cleanup_invalid_edges(
    nodes: list[WorkflowNode], edges: list[WorkflowEdge]
) -> tuple[list[WorkflowEdge], int]:
    """Drop edges whose source or target node does not exist.

    Returns:
        Tuple of (valid edges, number removed)
    """
    valid_ids = {n.id for n in nodes}
    valid: list[WorkflowEdge] = []
    removed = 0
    for edge in edges:
        source_ok = edge.source in valid_ids
        target_ok = edge.target in valid_ids
        if not (source_ok and target_ok):
            logger.warning(
                f"🧹 Removing invalid edge {edge.id}: "
                f"source={edge.source} (exists: {source_ok}), "
                f"target={edge.target} (exists: {target_ok})"
            )
            removed += 1
            continue
        valid.append(edge)
    return valid, removed
