"""
Graph Compiler - turns a Workflow into routing tables the executor walks.

Compilation:
1. Drops note nodes and every edge touching them
2. Drops edges that reference unknown nodes (warning, not fatal)
3. Requires exactly one entry node
4. Verifies every node is reachable from the entry (breadth-first)
5. Builds one Route per node:
   - terminal nodes and nodes without outgoing edges end the run
   - if-else nodes route by "if"/"else" handle
   - while nodes route by "continue"/"break" handle
   - approval gates route by "approved"/"rejected" handle when labelled
   - any other node with several distinct targets fans out in parallel

Compilation is pure: the input workflow is never modified and compiling
the same workflow twice gives equal results.
"""

import logging
from collections import deque
from dataclasses import dataclass, field

from workflow_engine.errors import CompilationError
from workflow_engine.graph.validator import ValidationIssue, cleanup_invalid_edges, validate_workflow
from workflow_engine.graph.workflow import NodeKind, Workflow, WorkflowEdge, WorkflowNode

logger = logging.getLogger(__name__)

# Pseudo node id for "the run ends here" when no terminal node is wired
END = "__end__"

IF_HANDLES = frozenset({"if", "true", "yes"})
ELSE_HANDLES = frozenset({"else", "false", "no"})
CONTINUE_HANDLES = frozenset({"continue", "true", "yes", "loop", "next"})
BREAK_HANDLES = frozenset({"break", "false", "no", "exit", "stop", "end", "complete"})
APPROVED_HANDLES = frozenset({"approved", "approve", "yes", "true"})
REJECTED_HANDLES = frozenset({"rejected", "reject", "no", "false"})


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EndRoute:
    """The run finishes after this node."""


@dataclass(frozen=True)
class DirectRoute:
    target: str


@dataclass(frozen=True)
class ConditionalRoute:
    if_target: str
    else_target: str


@dataclass(frozen=True)
class LoopRoute:
    continue_target: str
    break_target: str


@dataclass(frozen=True)
class ApprovalRoute:
    approved_target: str
    rejected_target: str


@dataclass(frozen=True)
class FanOutRoute:
    """Start every target concurrently; branches stop at ``join``."""

    targets: tuple[str, ...]
    join: str | None = None


Route = EndRoute | DirectRoute | ConditionalRoute | LoopRoute | ApprovalRoute | FanOutRoute


@dataclass
class CompiledGraph:
    """Executable form of a workflow."""

    workflow: Workflow
    entry_id: str
    nodes: dict[str, WorkflowNode]
    edges: list[WorkflowEdge]
    routes: dict[str, Route]
    warnings: list[str] = field(default_factory=list)
    issues: list[ValidationIssue] = field(default_factory=list)

    def node(self, node_id: str) -> WorkflowNode:
        return self.nodes[node_id]

    def is_terminal(self, node_id: str) -> bool:
        return node_id == END or self.nodes[node_id].is_terminal


# ---------------------------------------------------------------------------
# Route builders
# ---------------------------------------------------------------------------


def _slot_route(
    node: WorkflowNode,
    edges: list[WorkflowEdge],
    first_handles: frozenset[str],
    second_handles: frozenset[str],
    names: tuple[str, str],
    warnings: list[str],
) -> tuple[str, str]:
    """Assign edges to a two-way route by handle, then positionally."""
    first: str | None = None
    second: str | None = None
    unlabelled: list[WorkflowEdge] = []

    for edge in edges:
        handle = edge.handle
        if handle in first_handles and first is None:
            first = edge.target
        elif handle in second_handles and second is None:
            second = edge.target
        else:
            unlabelled.append(edge)

    for edge in unlabelled:
        if first is None:
            first = edge.target
        elif second is None:
            second = edge.target
        else:
            msg = f"{node.id}: ignoring extra outgoing edge {edge.id} -> {edge.target}"
            logger.warning(msg)
            warnings.append(msg)

    if first is None:
        msg = f"{node.id}: no '{names[0]}' path, routing it to run end"
        logger.warning(msg)
        warnings.append(msg)
        first = END
    if second is None:
        msg = f"{node.id}: no '{names[1]}' path, routing it to run end"
        logger.warning(msg)
        warnings.append(msg)
        second = END
    return first, second


def _plain_route(
    node: WorkflowNode,
    edges: list[WorkflowEdge],
    nodes: dict[str, WorkflowNode],
    warnings: list[str],
) -> Route:
    targets: list[str] = []
    for edge in edges:
        if edge.target not in targets:
            targets.append(edge.target)

    if not targets:
        return EndRoute()
    if len(targets) == 1:
        return DirectRoute(targets[0])

    non_terminal = [t for t in targets if not nodes[t].is_terminal]
    if len(non_terminal) == 0:
        return DirectRoute(targets[0])
    if len(non_terminal) == 1:
        # a terminal sibling adds nothing to run; follow the only real branch
        return DirectRoute(non_terminal[0])

    if any(e.handle for e in edges):
        msg = f"{node.id}: labelled edges on a {node.kind} node are treated as parallel fan-out"
        logger.warning(msg)
        warnings.append(msg)
    return FanOutRoute(targets=tuple(non_terminal))


def _distances(start: str, adjacency: dict[str, list[str]]) -> dict[str, int]:
    dist = {start: 0}
    queue = deque([start])
    while queue:
        current = queue.popleft()
        for nxt in adjacency.get(current, []):
            if nxt not in dist:
                dist[nxt] = dist[current] + 1
                queue.append(nxt)
    return dist


def find_join_node(
    targets: tuple[str, ...],
    adjacency: dict[str, list[str]],
    nodes: dict[str, WorkflowNode],
) -> str | None:
    """
    Find the node where parallel branches converge (fan-in).

    Prefers a node every branch reaches, closest by the longest branch
    distance; falls back to the node reached by the most branches. A branch
    target counts as a join once another branch reaches it. Terminal nodes
    are never joins.

    Returns:
        Node ID where branches converge, or None if they never meet
    """
    per_target = [_distances(t, adjacency) for t in targets]
    candidates: dict[str, list[int]] = {}
    for dist in per_target:
        for node_id, d in dist.items():
            if nodes[node_id].is_terminal:
                continue
            candidates.setdefault(node_id, []).append(d)

    shared = {n: ds for n, ds in candidates.items() if len(ds) >= 2}
    if not shared:
        return None
    # most branches first, then the nearest
    return min(shared, key=lambda n: (-len(shared[n]), max(shared[n]), sum(shared[n])))


# ---------------------------------------------------------------------------
# Compilation
# ---------------------------------------------------------------------------


def _reachable_from(entry_id: str, adjacency: dict[str, list[str]]) -> list[str]:
    order = [entry_id]
    seen = {entry_id}
    queue = deque([entry_id])
    while queue:
        current = queue.popleft()
        for nxt in adjacency.get(current, []):
            if nxt not in seen:
                seen.add(nxt)
                order.append(nxt)
                queue.append(nxt)
    return order


def compile_workflow(workflow: Workflow) -> CompiledGraph:
    """
    Compile a workflow into a CompiledGraph.

    Raises:
        CompilationError: No/multiple entry nodes, duplicate node ids or
            nodes unreachable from the entry.
    """
    warnings: list[str] = []

    seen_ids: set[str] = set()
    for node in workflow.nodes:
        if node.id in seen_ids:
            raise CompilationError(f"Duplicate node id '{node.id}'", node_id=node.id)
        seen_ids.add(node.id)

    note_ids = {n.id for n in workflow.nodes if n.is_note}
    nodes = {n.id: n for n in workflow.nodes if n.id not in note_ids}
    kept_edges = [e for e in workflow.edges if e.source not in note_ids and e.target not in note_ids]
    edges, removed = cleanup_invalid_edges(list(nodes.values()), kept_edges)
    if removed:
        warnings.append(f"Removed {removed} edge(s) referencing unknown nodes")

    entries = workflow.entry_nodes()
    if not entries:
        raise CompilationError("Workflow must have a Start node")
    if len(entries) > 1:
        raise CompilationError(
            f"Workflow must have exactly one Start node, found {len(entries)}: "
            f"{', '.join(n.id for n in entries)}"
        )
    entry_id = entries[0].id

    adjacency: dict[str, list[str]] = {}
    outgoing: dict[str, list[WorkflowEdge]] = {}
    for edge in edges:
        adjacency.setdefault(edge.source, []).append(edge.target)
        outgoing.setdefault(edge.source, []).append(edge)

    reachable = _reachable_from(entry_id, adjacency)
    reached = set(reachable)
    unreachable = [n for n in nodes if n not in reached]
    if unreachable:
        names = ", ".join(f"{nodes[n].name} ({n})" if nodes[n].name != n else n for n in unreachable)
        raise CompilationError(
            f"Node(s) not reachable from the Start node: {names}. "
            f"Reachable nodes: {', '.join(reachable)}",
            unreachable_node_ids=unreachable,
            reachable_node_ids=reachable,
            node_id=unreachable[0],
        )

    routes: dict[str, Route] = {}
    for node_id, node in nodes.items():
        node_edges = outgoing.get(node_id, [])
        if node.is_terminal:
            routes[node_id] = EndRoute()
        elif node.kind == NodeKind.IF_ELSE:
            if_t, else_t = _slot_route(
                node, node_edges, IF_HANDLES, ELSE_HANDLES, ("if", "else"), warnings
            )
            routes[node_id] = ConditionalRoute(if_target=if_t, else_target=else_t)
        elif node.kind == NodeKind.WHILE:
            cont, brk = _slot_route(
                node, node_edges, CONTINUE_HANDLES, BREAK_HANDLES, ("continue", "break"), warnings
            )
            routes[node_id] = LoopRoute(continue_target=cont, break_target=brk)
        elif node.kind == NodeKind.USER_APPROVAL and any(
            e.handle in APPROVED_HANDLES | REJECTED_HANDLES for e in node_edges
        ):
            ok, rejected = _slot_route(
                node,
                node_edges,
                APPROVED_HANDLES,
                REJECTED_HANDLES,
                ("approved", "rejected"),
                warnings,
            )
            routes[node_id] = ApprovalRoute(approved_target=ok, rejected_target=rejected)
        elif node.kind == NodeKind.USER_APPROVAL:
            targets = list(dict.fromkeys(e.target for e in node_edges))
            if len(targets) > 1:
                msg = f"{node_id}: approval gate has several unlabelled edges, following {targets[0]}"
                logger.warning(msg)
                warnings.append(msg)
            routes[node_id] = DirectRoute(targets[0]) if targets else EndRoute()
        else:
            route = _plain_route(node, node_edges, nodes, warnings)
            if isinstance(route, FanOutRoute):
                route = FanOutRoute(
                    targets=route.targets,
                    join=find_join_node(route.targets, adjacency, nodes),
                )
            routes[node_id] = route

    issues = validate_workflow(workflow)
    for issue in issues:
        logger.warning(f"⚠ {issue}")

    logger.debug(
        f"Compiled workflow '{workflow.id}': {len(nodes)} nodes, {len(edges)} edges, "
        f"{sum(isinstance(r, FanOutRoute) for r in routes.values())} fan-out(s)"
    )

    return CompiledGraph(
        workflow=workflow,
        entry_id=entry_id,
        nodes=nodes,
        edges=edges,
        routes=routes,
        warnings=warnings,
        issues=issues,
    )
