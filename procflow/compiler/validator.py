"""Graph static validator: structural checks before a graph can be used."""

from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass, field

from procflow.compiler.ir import IREdge, NodeKind, ProcedureGraph


class ValidationErrorKind:
    UNREACHABLE_NODE = "unreachable_node"
    DEAD_END = "dead_end"
    CYCLE = "cycle"
    DANGLING_EDGE = "dangling_edge"
    MISSING_START = "missing_start"
    MULTIPLE_START = "multiple_start"
    ENTRY_NOT_START = "entry_not_start"
    NO_EXIT_NODE = "no_exit_node"
    NO_EXIT_PATH = "no_exit_path"
    EDGE_FROM_EXIT = "edge_from_exit"
    SELF_DEPENDENCY = "self_dependency"
    INVALID_RETRY_POLICY = "invalid_retry_policy"


@dataclass(frozen=True)
class ValidationIssue:
    kind: str
    message: str
    node_id: str | None = None

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, str | None]:
        return {"kind": self.kind, "message": self.message, "node_id": self.node_id}


@dataclass
class ValidationResult:
    errors: list[ValidationIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def kinds(self) -> set[str]:
        return {e.kind for e in self.errors}


def validate_graph(graph: ProcedureGraph) -> ValidationResult:
    """Run every structural check and collect all issues (never raises)."""
    result = ValidationResult()
    errors = result.errors
    node_ids = set(graph.nodes)

    # ── Start / entry ───────────────────────────────────────────
    starts = sorted(nid for nid, n in graph.nodes.items() if n.kind == NodeKind.START)
    if not starts:
        errors.append(ValidationIssue(ValidationErrorKind.MISSING_START, "Graph has no start node."))
    elif len(starts) > 1:
        errors.append(
            ValidationIssue(
                ValidationErrorKind.MULTIPLE_START,
                f"Graph has {len(starts)} start nodes ({', '.join(starts)}); exactly one is allowed.",
            )
        )

    entry_valid = bool(graph.entry_node) and graph.entry_node in node_ids
    if not graph.entry_node:
        errors.append(ValidationIssue(ValidationErrorKind.DANGLING_EDGE, "Graph has no entry_node."))
    elif not entry_valid:
        errors.append(
            ValidationIssue(
                ValidationErrorKind.DANGLING_EDGE,
                f"entry_node '{graph.entry_node}' does not exist in nodes.",
                graph.entry_node,
            )
        )
    elif graph.nodes[graph.entry_node].kind != NodeKind.START:
        errors.append(
            ValidationIssue(
                ValidationErrorKind.ENTRY_NOT_START,
                f"entry_node '{graph.entry_node}' is a '{graph.nodes[graph.entry_node].kind}' node, not a start node.",
                graph.entry_node,
            )
        )

    # ── Dangling edges ──────────────────────────────────────────
    valid_edges: list[IREdge] = []
    for edge in graph.edges:
        missing = [end for end in (edge.source, edge.target) if end not in node_ids]
        if missing:
            for end in missing:
                errors.append(
                    ValidationIssue(
                        ValidationErrorKind.DANGLING_EDGE,
                        f"Edge '{edge.source}' -> '{edge.target}': endpoint '{end}' not found.",
                        edge.source if edge.source in node_ids else None,
                    )
                )
            continue
        valid_edges.append(edge)

    successors: dict[str, list[str]] = defaultdict(list)
    predecessors: dict[str, list[str]] = defaultdict(list)
    for edge in valid_edges:
        successors[edge.source].append(edge.target)
        predecessors[edge.target].append(edge.source)

    # ── Per-node checks ─────────────────────────────────────────
    for nid, node in graph.nodes.items():
        outgoing = [e for e in valid_edges if e.source == nid]
        if node.is_exit:
            if outgoing:
                errors.append(
                    ValidationIssue(
                        ValidationErrorKind.EDGE_FROM_EXIT,
                        f"Node '{nid}' is a {node.kind} node but has outgoing edges.",
                        nid,
                    )
                )
        elif not [e for e in outgoing if not e.is_self_loop]:
            errors.append(
                ValidationIssue(
                    ValidationErrorKind.DEAD_END,
                    f"Node '{nid}' ({node.kind}) has no outgoing edge and is not an end/terminal node.",
                    nid,
                )
            )

        for dep in node.dependencies:
            for candidate in dep.candidates:
                if candidate.graph_id == graph.graph_id:
                    errors.append(
                        ValidationIssue(
                            ValidationErrorKind.SELF_DEPENDENCY,
                            f"Node '{nid}': dependency '{candidate.key}' references its own graph "
                            f"(direct self-recursion).",
                            nid,
                        )
                    )

        rp = node.retry_policy
        if rp.max_attempts < 1 or rp.backoff_base_s < 0 or rp.backoff_factor < 1 or not 0 <= rp.jitter <= 1:
            errors.append(
                ValidationIssue(
                    ValidationErrorKind.INVALID_RETRY_POLICY,
                    f"Node '{nid}': invalid retry_policy {rp} (need max_attempts >= 1, "
                    f"backoff_base_s >= 0, backoff_factor >= 1, 0 <= jitter <= 1).",
                    nid,
                )
            )

    # ── Self-loops (only one explicit retry loop per action/gate node) ──
    loops_by_node: dict[str, list[int]] = defaultdict(list)
    for idx, edge in enumerate(valid_edges):
        if edge.is_self_loop:
            loops_by_node[edge.source].append(idx)
    for nid, idxs in loops_by_node.items():
        node = graph.nodes[nid]
        annotated = [i for i in idxs if valid_edges[i].is_recovery]
        if node.kind in NodeKind.SELF_LOOP_KINDS and len(idxs) == 1 and annotated:
            continue
        errors.append(
            ValidationIssue(
                ValidationErrorKind.CYCLE,
                f"Node '{nid}' has {len(idxs)} self-loop(s); only a single recovery self-loop "
                f"on action/dependency_gate nodes is allowed.",
                nid,
            )
        )

    # ── Cycles through more than one node ───────────────────────
    dag_successors: dict[str, list[str]] = defaultdict(list)
    for edge in valid_edges:
        if edge.is_self_loop:
            continue
        dag_successors[edge.source].append(edge.target)
    for cycle in _find_cycles(sorted(node_ids), dag_successors):
        errors.append(
            ValidationIssue(
                ValidationErrorKind.CYCLE,
                f"Cycle detected: {' -> '.join(cycle + [cycle[0]])}.",
                cycle[0],
            )
        )

    # ── Reachability from entry ─────────────────────────────────
    if entry_valid:
        reachable = _bfs(graph.entry_node, successors)
        for nid in sorted(node_ids - reachable):
            errors.append(
                ValidationIssue(
                    ValidationErrorKind.UNREACHABLE_NODE,
                    f"Node '{nid}' is unreachable from entry_node '{graph.entry_node}'.",
                    nid,
                )
            )

    # ── Every node must reach an end/terminal node ──────────────
    exits = [nid for nid, n in graph.nodes.items() if n.is_exit]
    if not exits:
        errors.append(
            ValidationIssue(ValidationErrorKind.NO_EXIT_NODE, "Graph has no end or terminal node.")
        )
    else:
        can_finish: set[str] = set()
        for exit_id in exits:
            can_finish |= _bfs(exit_id, predecessors)
        for nid in sorted(node_ids - can_finish):
            errors.append(
                ValidationIssue(
                    ValidationErrorKind.NO_EXIT_PATH,
                    f"Node '{nid}' has no path to any end or terminal node.",
                    nid,
                )
            )

    return result


def _bfs(origin: str, adjacency: dict[str, list[str]]) -> set[str]:
    seen: set[str] = set()
    queue: deque[str] = deque([origin])
    while queue:
        current = queue.popleft()
        if current in seen:
            continue
        seen.add(current)
        for nxt in adjacency.get(current, []):
            if nxt not in seen:
                queue.append(nxt)
    return seen


def _find_cycles(order: list[str], successors: dict[str, list[str]]) -> list[list[str]]:
    """Iterative DFS; returns one node path per back edge, each node set reported once."""
    WHITE, GRAY, BLACK = 0, 1, 2
    color: dict[str, int] = {nid: WHITE for nid in order}
    cycles: list[list[str]] = []
    seen_sets: set[frozenset[str]] = set()

    for root in order:
        if color[root] != WHITE:
            continue
        path: list[str] = [root]
        stack: list[tuple[str, int]] = [(root, 0)]
        color[root] = GRAY
        while stack:
            nid, i = stack[-1]
            nexts = successors.get(nid, [])
            if i < len(nexts):
                stack[-1] = (nid, i + 1)
                nxt = nexts[i]
                if nxt not in color:
                    continue
                if color[nxt] == GRAY:
                    cycle = path[path.index(nxt):]
                    key = frozenset(cycle)
                    if key not in seen_sets:
                        seen_sets.add(key)
                        cycles.append(list(cycle))
                elif color[nxt] == WHITE:
                    color[nxt] = GRAY
                    path.append(nxt)
                    stack.append((nxt, 0))
            else:
                color[nid] = BLACK
                path.pop()
                stack.pop()
    return cycles
