"""
Kind ordering.

Backends declare constraints such as "repository-source before package".
Together they form a directed graph over intent kinds. The graph must be
acyclic; a cycle is reported as one canonical closed path so the message is
the same whichever backend introduced the last edge.

Intents are ordered over the transitive closure of that graph, so a
constraint chain still applies when the document has no intent of the
intermediate kind. Among intents that are free to run, the one earliest in
the document goes first.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from heapq import heapify, heappop, heappush

from host_orchestrator.core.errors import OrderingCycle
from host_orchestrator.core.types import Intent, OrderingConstraint


class KindGraph:
    """Directed graph over intent kinds with deterministic traversal."""

    __slots__ = ("_nodes", "_children", "_parents")

    def __init__(self, constraints: Iterable[OrderingConstraint] = ()) -> None:
        self._nodes: set[str] = set()
        self._children: dict[str, set[str]] = {}
        self._parents: dict[str, set[str]] = {}

        for constraint in constraints:
            self.add_edge(constraint.before, constraint.after)

    @property
    def edges(self) -> tuple[tuple[str, str], ...]:
        """All edges as (before, after) pairs in deterministic order."""
        ordered: list[tuple[str, str]] = []
        for parent in sorted(self._nodes):
            for child in sorted(self._children[parent]):
                ordered.append((parent, child))
        return tuple(ordered)

    def add_node(self, kind: str) -> None:
        if not kind:
            raise ValueError("kind must be non-empty")
        if kind in self._nodes:
            return
        self._nodes.add(kind)
        self._children[kind] = set()
        self._parents[kind] = set()

    def add_edge(self, before: str, after: str) -> None:
        self.add_node(before)
        self.add_node(after)
        self._children[before].add(after)
        self._parents[after].add(before)

    def detect_cycles(self) -> tuple[tuple[str, ...], ...]:
        """
        Detect directed cycles.

        Returns closed paths such as ("a", "b", "a"), rotated so the smallest
        kind comes first, sorted.
        """
        state: dict[str, int] = {}
        stack: list[str] = []
        stack_index: dict[str, int] = {}
        cycles: dict[tuple[str, ...], None] = {}

        for start in sorted(self._nodes):
            if state.get(start, 0) != 0:
                continue

            state[start] = 1
            stack.append(start)
            stack_index[start] = 0
            frames: list[tuple[str, Iterator[str]]] = [(start, iter(sorted(self._children[start])))]

            while frames:
                node, child_iter = frames[-1]

                try:
                    child = next(child_iter)
                except StopIteration:
                    frames.pop()
                    state[node] = 2
                    stack.pop()
                    del stack_index[node]
                    continue

                child_state = state.get(child, 0)
                if child_state == 0:
                    state[child] = 1
                    stack_index[child] = len(stack)
                    stack.append(child)
                    frames.append((child, iter(sorted(self._children[child]))))
                elif child_state == 1:
                    cycle = tuple(stack[stack_index[child] :] + [child])
                    cycles[_canonicalize_cycle(cycle)] = None

        return tuple(sorted(cycles))

    def assert_acyclic(self) -> None:
        """Raise OrderingCycle for the first canonical cycle, if any."""
        cycles = self.detect_cycles()
        if cycles:
            raise OrderingCycle(cycles[0])

    def ancestors(self, kind: str) -> frozenset[str]:
        """Every kind that must run before kind, directly or transitively."""
        if kind not in self._nodes:
            return frozenset()

        visited: set[str] = set()
        pending = list(self._parents[kind])
        while pending:
            node = pending.pop()
            if node in visited:
                continue
            visited.add(node)
            pending.extend(n for n in self._parents[node] if n not in visited)

        visited.discard(kind)
        return frozenset(visited)


def _canonicalize_cycle(cycle: Sequence[str]) -> tuple[str, ...]:
    core = tuple(cycle[:-1])
    if len(core) == 1:
        return (core[0], core[0])

    best = core
    for offset in range(1, len(core)):
        rotated = core[offset:] + core[:offset]
        if rotated < best:
            best = rotated
    return best + (best[0],)


def order_intents(intents: Sequence[Intent], graph: KindGraph) -> list[tuple[int, tuple[int, ...]]]:
    """
    Return execution order as (position in intents, plan positions depended on).

    An intent of kind k waits for every intent whose kind is an ancestor of k.
    Ready intents are taken by smallest document index, then by position, so
    intents built without a document index keep their input order. The graph
    must be acyclic; call assert_acyclic first.
    """
    ancestors = {kind: graph.ancestors(kind) for kind in {i.kind for i in intents}}

    waits_on: list[list[int]] = []
    blocks: list[list[int]] = [[] for _ in intents]

    for pos, intent in enumerate(intents):
        required = ancestors[intent.kind]
        before = [other for other, candidate in enumerate(intents) if candidate.kind in required]
        waits_on.append(before)
        for other in before:
            blocks[other].append(pos)

    indegree = [len(before) for before in waits_on]
    ready = [(intents[pos].index, pos) for pos, degree in enumerate(indegree) if degree == 0]
    heapify(ready)

    placed: dict[int, int] = {}
    ordered: list[tuple[int, tuple[int, ...]]] = []
    while ready:
        _, pos = heappop(ready)
        placed[pos] = len(ordered)
        ordered.append((pos, tuple(sorted(placed[b] for b in waits_on[pos]))))

        for dependent in blocks[pos]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                heappush(ready, (intents[dependent].index, dependent))

    if len(ordered) != len(intents):
        graph.assert_acyclic()
        raise OrderingCycle(sorted({i.kind for pos, i in enumerate(intents) if pos not in placed}))

    return ordered
