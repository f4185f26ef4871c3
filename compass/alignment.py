"""Contribution graph between objectives.

An edge ``(parent, child)`` means *child contributes to parent*. The tenant's
edge set must stay a DAG: no self links, and no edge whose insertion would
close a cycle. Reachability is computed in memory over the whole tenant edge
set, since a new edge can close a loop several hops away.

Callers are expected to run :meth:`AlignmentGraph.link` inside the same
transaction as the rest of their write; concurrent edits are last-writer-wins.
"""
from __future__ import annotations

import logging
from collections import defaultdict, deque
from typing import Protocol

from compass.errors import ValidationError

log = logging.getLogger(__name__)

OK = "ok"
SELF_LINK = "self_link"
CYCLE_DETECTED = "cycle_detected"


class GraphStore(Protocol):
    def edges_for_tenant(self, tenant_id: str) -> set[tuple[str, str]]: ...
    def add_edge(self, tenant_id: str, parent_id: str, child_id: str) -> None: ...
    def remove_edge(self, tenant_id: str, parent_id: str, child_id: str) -> None: ...
    def has_edge(self, tenant_id: str, parent_id: str, child_id: str) -> bool: ...


def _key(objective_id: str) -> str:
    return objective_id.strip().lower()


def adjacency(edges: set[tuple[str, str]]) -> dict[str, set[str]]:
    """Map each parent to the children that contribute to it."""
    adj: dict[str, set[str]] = defaultdict(set)
    for parent, child in edges:
        adj[_key(parent)].add(_key(child))
    return adj


def path_exists(adj: dict[str, set[str]], start: str, goal: str) -> bool:
    """BFS from *start* following parent -> child edges; True if *goal* is reached."""
    start, goal = _key(start), _key(goal)
    seen = {start}
    queue = deque([start])
    while queue:
        node = queue.popleft()
        for nxt in adj.get(node, ()):
            if nxt == goal:
                return True
            if nxt not in seen:
                seen.add(nxt)
                queue.append(nxt)
    return False


def validate_new_edge(parent_id: str, child_id: str, reachable_child_to_parent: bool) -> str:
    """Classify a proposed edge as ``ok``, ``self_link`` or ``cycle_detected``."""
    if _key(parent_id) == _key(child_id):
        return SELF_LINK
    if reachable_child_to_parent:
        return CYCLE_DETECTED
    return OK


class AlignmentGraph:
    def __init__(self, store: GraphStore):
        self.store = store

    def reachable(self, tenant_id: str, from_id: str, to_id: str) -> bool:
        return path_exists(adjacency(self.store.edges_for_tenant(tenant_id)), from_id, to_id)

    def check(self, tenant_id: str, parent_id: str, child_id: str) -> str:
        return validate_new_edge(parent_id, child_id, self.reachable(tenant_id, child_id, parent_id))

    def link(self, tenant_id: str, parent_id: str, child_id: str) -> None:
        """Add ``child -> parent`` contribution, rejecting self links and cycles."""
        if self.store.has_edge(tenant_id, parent_id, child_id):
            return
        verdict = self.check(tenant_id, parent_id, child_id)
        if verdict != OK:
            log.info("Rejected alignment %s -> %s: %s", child_id, parent_id, verdict)
            raise ValidationError(verdict)
        self.store.add_edge(tenant_id, parent_id, child_id)

    def unlink(self, tenant_id: str, parent_id: str, child_id: str) -> None:
        self.store.remove_edge(tenant_id, parent_id, child_id)

    def parents_of(self, tenant_id: str, objective_id: str) -> list[str]:
        """Objectives that *objective_id* contributes to."""
        key = _key(objective_id)
        return sorted(p for p, c in self.store.edges_for_tenant(tenant_id) if _key(c) == key)

    def children_of(self, tenant_id: str, objective_id: str) -> list[str]:
        """Objectives contributing to *objective_id*."""
        key = _key(objective_id)
        return sorted(c for p, c in self.store.edges_for_tenant(tenant_id) if _key(p) == key)
