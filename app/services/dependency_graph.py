"""
Dependency Graph.

Owns the dependency edges of one scope (the milestones of a booking, or
the tasks of a booking) and answers:

    - would inserting (source → depends_on) close a cycle?
    - is node X's predecessor constraint satisfied right now?
    - which nodes lie on the critical path?

Edge direction: an edge's ``source_id`` depends on its ``depends_on_id``.
"Outgoing" edges of X are the ones X depends on; the nodes that depend on
X (its dependents) are read off the same edge set, never stored.

Satisfaction semantics per dependency_type (event = what the dependent
wants to do):

    finish_to_start   start   predecessor completed, completed_at + lag elapsed
    start_to_start    start   predecessor started,   started_at + lag elapsed
    finish_to_finish  finish  predecessor completed, completed_at + lag elapsed
    start_to_finish   finish  predecessor started,   started_at + lag elapsed

"Started" means in_progress or completed, or on_hold with a recorded
started_at (paused after it began).

A missing reference timestamp only passes when lag_days is 0; with a lag
there is nothing to measure from, so the constraint stays unsatisfied.
"""

from __future__ import annotations

import math
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import NamedTuple

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models.milestone import DEPENDENCY_TYPES

START = "start"
FINISH = "finish"

# dependency_type → (event of the dependent it gates, predecessor event it waits for)
CONSTRAINT_EVENTS = {
    "finish_to_start":  (START, FINISH),
    "start_to_start":   (START, START),
    "finish_to_finish": (FINISH, FINISH),
    "start_to_finish":  (FINISH, START),
}

_STARTED_STATUSES = {"in_progress", "completed"}


def _has_started(node) -> bool:
    """A paused node that was already running still counts as started."""
    if node.status in _STARTED_STATUSES:
        return True
    return node.status == "on_hold" and node.started_at is not None


class Edge(NamedTuple):
    """Candidate or snapshot edge; ORM dependency rows expose the same attributes."""

    source_id: int
    depends_on_id: int
    dependency_type: str = "finish_to_start"
    lag_days: int = 0


# ── Timestamp helpers ────────────────────────────────────────────────────────


def _as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _label(node) -> str:
    title = getattr(node, "title", None)
    return f"'{title}'" if title else f"#{node.id}"


def _lag_reason(reference: datetime | None, lag_days: int, now: datetime, what: str, node) -> str | None:
    """Return a blocking reason if ``reference + lag_days`` is still in the future."""
    if lag_days == 0:
        return None
    reference = _as_utc(reference)
    if reference is None:
        return (
            f"{_label(node)} has no recorded {what} time, "
            f"cannot measure the {lag_days}-day lag"
        )
    ready_at = reference + timedelta(days=lag_days)
    if now < ready_at:
        return (
            f"lag of {lag_days} day(s) after {_label(node)} {what} "
            f"has not elapsed (ready at {ready_at.isoformat()})"
        )
    return None


def check_constraint(edge, predecessor, now: datetime | None = None) -> str | None:
    """
    Evaluate one edge against its predecessor's current state.

    Returns None when satisfied, otherwise a human-readable reason.
    """
    now = _as_utc(now) or datetime.now(timezone.utc)
    _gated, waits_for = CONSTRAINT_EVENTS[edge.dependency_type]

    if waits_for == FINISH:
        if predecessor.status != "completed":
            return (
                f"predecessor not finished ({_label(predecessor)} is "
                f"{predecessor.status}, {edge.dependency_type})"
            )
        return _lag_reason(predecessor.completed_at, edge.lag_days, now, "finished", predecessor)

    if not _has_started(predecessor):
        return (
            f"predecessor not started ({_label(predecessor)} is "
            f"{predecessor.status}, {edge.dependency_type})"
        )
    return _lag_reason(predecessor.started_at, edge.lag_days, now, "started", predecessor)


def unmet_constraints(constraints, event: str, now: datetime | None = None) -> list[str]:
    """
    Check every ``(edge, predecessor)`` pair that gates ``event``.

    Args:
        constraints: Iterable of (edge, predecessor entity) pairs where the
            edge's source is the node being evaluated.
        event: START (entering in_progress) or FINISH (entering completed).
        now: Evaluation instant; defaults to the current UTC time.

    Returns:
        List of blocking reasons, empty when every constraint holds.
    """
    reasons = []
    for edge, predecessor in constraints:
        gated, _waits_for = CONSTRAINT_EVENTS[edge.dependency_type]
        if gated != event:
            continue
        reason = check_constraint(edge, predecessor, now)
        if reason:
            reasons.append(reason)
    return reasons


# ── Graph ────────────────────────────────────────────────────────────────────


class DependencyGraph:
    """Dependency edges for one scope, indexed both ways."""

    def __init__(self, node_ids, edges=()) -> None:
        self.nodes: set = set(node_ids)
        self._outgoing: dict = defaultdict(list)
        self._incoming: dict = defaultdict(list)
        for edge in edges:
            if edge.source_id not in self.nodes or edge.depends_on_id not in self.nodes:
                raise ValidationError(
                    f"Dangling dependency {edge.source_id} → {edge.depends_on_id}: "
                    "both ends must exist in the same scope",
                )
            self._link(edge)

    @classmethod
    def from_entities(cls, nodes) -> "DependencyGraph":
        """Build from ORM nodes that carry a ``dependencies`` edge list."""
        nodes = list(nodes)
        edges = [e for n in nodes for e in n.dependencies]
        return cls((n.id for n in nodes), edges)

    def _link(self, edge) -> None:
        self._outgoing[edge.source_id].append(edge)
        self._incoming[edge.depends_on_id].append(edge)

    # ── Queries ──────────────────────────────────────────────────────────

    def predecessors(self, node_id) -> list:
        """Edges from ``node_id`` to the nodes it depends on."""
        return list(self._outgoing.get(node_id, ()))

    def dependents_of(self, node_id) -> list:
        """Ids of nodes that depend on ``node_id``."""
        return sorted(e.source_id for e in self._incoming.get(node_id, ()))

    def has_edge(self, source_id, depends_on_id) -> bool:
        return any(e.depends_on_id == depends_on_id for e in self._outgoing.get(source_id, ()))

    def edge_count(self) -> int:
        return sum(len(v) for v in self._outgoing.values())

    def _reachable(self, start, target) -> bool:
        """Iterative DFS from ``start`` along outgoing edges; True if ``target`` is hit."""
        visited = set()
        stack = [start]
        while stack:
            current = stack.pop()
            if current == target:
                return True
            if current in visited:
                continue
            visited.add(current)
            for edge in self._outgoing.get(current, ()):
                stack.append(edge.depends_on_id)
        return False

    def would_create_cycle(self, source_id, depends_on_id) -> bool:
        """True if adding source → depends_on closes a cycle (self-loops included)."""
        if source_id == depends_on_id:
            return True
        return self._reachable(depends_on_id, source_id)

    # ── Validation ───────────────────────────────────────────────────────

    def validate_edge(self, candidate) -> None:
        """
        ValidateDependency(graph, newEdge): raise unless the edge may be stored.

        Raises:
            NotFoundError: an endpoint is not a node of this scope.
            ValidationError: self-reference, cycle, unknown type or negative lag.
            ConflictError: the same (source, depends_on) pair already exists.
        """
        for node_id in (candidate.source_id, candidate.depends_on_id):
            if node_id not in self.nodes:
                raise NotFoundError("Dependency endpoint", node_id)

        if not isinstance(candidate.dependency_type, str) or candidate.dependency_type not in DEPENDENCY_TYPES:
            raise ValidationError(
                f"Invalid dependency_type '{candidate.dependency_type}'",
                details={"dependency_type": sorted(DEPENDENCY_TYPES)},
            )
        lag = candidate.lag_days
        if not isinstance(lag, int) or isinstance(lag, bool) or lag < 0:
            raise ValidationError(
                "lag_days must be a non-negative integer",
                details={"lag_days": str(candidate.lag_days)},
            )
        if candidate.source_id == candidate.depends_on_id:
            raise ValidationError(
                "A node cannot depend on itself (self-reference would create a cycle)",
                details={"source_id": candidate.source_id},
            )
        if self.would_create_cycle(candidate.source_id, candidate.depends_on_id):
            raise ValidationError(
                "Adding this dependency would create a cycle",
                details={
                    "source_id": candidate.source_id,
                    "depends_on_id": candidate.depends_on_id,
                },
            )
        if self.has_edge(candidate.source_id, candidate.depends_on_id):
            raise ConflictError(
                "Dependency", "source_id,depends_on_id",
                f"{candidate.source_id},{candidate.depends_on_id}",
            )

    def add_edge(self, edge) -> None:
        """Validate then link; the graph is unchanged when validation fails."""
        self.validate_edge(edge)
        self._link(edge)

    # ── Ordering / critical path ─────────────────────────────────────────

    def topological_order(self) -> list:
        """Nodes ordered so every node comes after everything it depends on."""
        remaining = {n: len(self._outgoing.get(n, ())) for n in self.nodes}
        ready = sorted(n for n, deg in remaining.items() if deg == 0)
        order = []
        while ready:
            node = ready.pop(0)
            order.append(node)
            for edge in self._incoming.get(node, ()):
                remaining[edge.source_id] -= 1
                if remaining[edge.source_id] == 0:
                    ready.append(edge.source_id)
        if len(order) != len(self.nodes):
            raise ValidationError("Dependency graph contains a cycle")
        return order

    def _chain_lengths(self, durations: dict):
        """Longest chain ending at (head) and starting from (tail) every node."""
        order = self.topological_order()

        def dur(n):
            return max(float(durations.get(n) or 0.0), 0.0)

        head = {}
        for node in order:
            before = max((head[e.depends_on_id] for e in self._outgoing.get(node, ())), default=0.0)
            head[node] = before + dur(node)

        tail = {}
        for node in reversed(order):
            after = max((tail[e.source_id] for e in self._incoming.get(node, ())), default=0.0)
            tail[node] = after + dur(node)

        return order, head, tail, dur

    def longest_chain(self, durations: dict) -> float:
        """Length of the longest duration chain in the graph."""
        _order, head, _tail, _dur = self._chain_lengths(durations)
        return max(head.values(), default=0.0)

    def critical_path(self, durations: dict) -> set:
        """
        Simplified CPM over estimated durations.

        A node is critical when the longest duration chain running through
        it (its predecessors' longest chain + itself + its dependents'
        longest chain) equals the longest chain of the whole graph.  A graph
        with no positive duration has no critical path.
        """
        order, head, tail, dur = self._chain_lengths(durations)
        longest = max(head.values(), default=0.0)
        if longest <= 0:
            return set()

        return {
            n for n in order
            if math.isclose(head[n] + tail[n] - dur(n), longest, rel_tol=1e-9, abs_tol=1e-9)
        }


# ── Module-level helpers ─────────────────────────────────────────────────────


def dependents_of(node_id, edges) -> list:
    """Ids of the nodes whose edges point at ``node_id``."""
    return sorted({e.source_id for e in edges if e.depends_on_id == node_id})


def critical_path(nodes, edges, duration=None) -> set:
    """
    Ids of the nodes lying on the longest duration chain.

    Args:
        nodes: Entities (or snapshots) with an ``id``.
        edges: Dependency edges between those nodes.
        duration: Callable node → hours; defaults to ``estimated_hours``.
    """
    nodes = list(nodes)
    duration = duration or (lambda n: getattr(n, "estimated_hours", 0) or 0)
    graph = DependencyGraph((n.id for n in nodes), edges)
    return graph.critical_path({n.id: duration(n) for n in nodes})
