# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Graph traversal algorithms.

All algorithms work on any graph view exposing ``outgoing(id)``,
``incoming(id)`` and ``entity_ids()`` (both the mutable CodeGraph and the
published GraphSnapshot do). They never raise on budget exhaustion: results
carry flags telling the caller whether the search was cut short by a depth
bound, a path-count bound or cancellation.

- breadth_first: depth-bounded dependency / dependent trees
- find_cycles: strongly connected components (networkx)
- shortest_path / all_simple_paths: path queries between two entities (networkx)
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

import networkx as nx

from codegraph_engine.models import Relationship

logger = logging.getLogger(__name__)

DIRECTION_DEPENDENCIES = "dependencies"
DIRECTION_DEPENDENTS = "dependents"


class CancellationToken:
    """Cooperative cancellation for long traversals.

    The token is checked at every visited node, and between the components
    or paths networkx yields. It is cancelled either
    explicitly via ``cancel()`` or implicitly once its deadline (a
    ``time.monotonic()`` value) has passed.

    Usage:
        token = CancellationToken.with_timeout(0.5)
        report = graph.find_cycles(token=token)
        if report.cancelled:
            ...
    """

    def __init__(self, deadline: Optional[float] = None):
        self._event = threading.Event()
        self.deadline = deadline

    @classmethod
    def with_timeout(cls, seconds: float) -> "CancellationToken":
        """Create a token that cancels itself after ``seconds``."""
        return cls(deadline=time.monotonic() + seconds)

    def cancel(self) -> None:
        """Request cancellation. Safe to call from any thread."""
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self.deadline is not None and time.monotonic() >= self.deadline:
            self._event.set()
            return True
        return False


def _cancelled(token: Optional[CancellationToken]) -> bool:
    return token is not None and token.is_cancelled


def _kind_filter(kinds: Optional[Iterable[str]]) -> Callable[[Relationship], bool]:
    if kinds is None:
        return lambda edge: True
    allowed = frozenset(kinds)
    return lambda edge: edge.kind in allowed


@dataclass
class DependencyTree:
    """Result of a depth-bounded breadth-first traversal.

    Attributes:
        root: Identifier the traversal started from.
        direction: "dependencies" (follow outgoing edges) or "dependents".
        max_depth: Depth bound the traversal was run with.
        depths: Every reached identifier mapped to its BFS depth (root is 0).
        edges: Every edge traversed from an expanded node, in visit order.
        depth_limited: True when nodes at the depth bound had unexplored edges.
        cancelled: True when the cancellation token fired mid-traversal.
    """

    root: str
    direction: str
    max_depth: int
    depths: Dict[str, int] = field(default_factory=dict)
    edges: List[Relationship] = field(default_factory=list)
    depth_limited: bool = False
    cancelled: bool = False

    @property
    def complete(self) -> bool:
        return not (self.depth_limited or self.cancelled)

    def nodes(self, depth: Optional[int] = None) -> List[str]:
        """Reached identifiers (excluding the root), optionally at one depth."""
        return sorted(
            node
            for node, node_depth in self.depths.items()
            if node != self.root and (depth is None or node_depth == depth)
        )

    def neighbors(self) -> List[str]:
        """Identifiers reached at depth one."""
        return self.nodes(depth=1)

    def children(self, node: str) -> List[str]:
        """Distinct identifiers directly reached from ``node``."""
        result: Set[str] = set()
        for edge in self.edges:
            if self.direction == DIRECTION_DEPENDENCIES and edge.source_id == node:
                result.add(edge.target_id or "")
            elif self.direction == DIRECTION_DEPENDENTS and edge.target_id == node:
                result.add(edge.source_id)
        return sorted(result)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        return {
            "root": self.root,
            "direction": self.direction,
            "max_depth": self.max_depth,
            "nodes": {node: self.depths[node] for node in sorted(self.depths)},
            "edges": [edge.to_dict() for edge in self.edges],
            "complete": self.complete,
            "depth_limited": self.depth_limited,
            "cancelled": self.cancelled,
        }


def breadth_first(
    graph: Any,
    root: str,
    max_depth: int,
    direction: str = DIRECTION_DEPENDENCIES,
    kinds: Optional[Iterable[str]] = None,
    token: Optional[CancellationToken] = None,
) -> DependencyTree:
    """Collect every entity within ``max_depth`` hops of ``root``.

    Args:
        graph: Graph view to traverse.
        root: Identifier to start from.
        max_depth: Maximum number of hops (0 returns only the root).
        direction: DIRECTION_DEPENDENCIES follows outgoing edges,
            DIRECTION_DEPENDENTS follows incoming edges.
        kinds: Optional relationship kinds to follow (default: all).
        token: Optional cancellation token checked at every visited node.

    Returns:
        DependencyTree describing reached nodes and traversed edges.
    """
    if direction not in (DIRECTION_DEPENDENCIES, DIRECTION_DEPENDENTS):
        raise ValueError(f"Unknown traversal direction: {direction}")
    if max_depth < 0:
        raise ValueError(f"max_depth must be non-negative, got {max_depth}")

    follow = _kind_filter(kinds)
    forward = direction == DIRECTION_DEPENDENCIES
    tree = DependencyTree(root=root, direction=direction, max_depth=max_depth)
    tree.depths[root] = 0
    queue = deque([root])

    while queue:
        if _cancelled(token):
            tree.cancelled = True
            break

        node = queue.popleft()
        depth = tree.depths[node]
        edges = graph.outgoing(node) if forward else graph.incoming(node)
        edges = [edge for edge in edges if follow(edge)]

        if depth >= max_depth:
            if edges:
                tree.depth_limited = True
            continue

        for edge in edges:
            neighbor = edge.target_id if forward else edge.source_id
            tree.edges.append(edge)
            if neighbor not in tree.depths:
                tree.depths[neighbor] = depth + 1
                queue.append(neighbor)

    return tree


@dataclass
class Cycle:
    """One strongly connected component that forms a cycle."""

    members: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {"members": list(self.members), "size": len(self.members)}


@dataclass
class CycleReport:
    """All cycles found in a graph view."""

    cycles: List[Cycle] = field(default_factory=list)
    cancelled: bool = False

    @property
    def complete(self) -> bool:
        return not self.cancelled

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycles": [cycle.to_dict() for cycle in self.cycles],
            "complete": self.complete,
            "cancelled": self.cancelled,
        }


def to_digraph(
    graph: Any,
    kinds: Optional[Iterable[str]] = None,
    include_external: bool = True,
    token: Optional[CancellationToken] = None,
) -> Optional[nx.DiGraph]:
    """Project a graph view onto a networkx DiGraph.

    Parallel edges of different kinds collapse into one arc. Nodes and arcs
    are inserted in identifier order, so networkx visits successors in a
    deterministic order.

    Returns:
        The projected graph, or None when the token fired while building it.
    """
    follow = _kind_filter(kinds)
    digraph = nx.DiGraph()
    for node in sorted(graph.entity_ids()):
        if _cancelled(token):
            return None
        digraph.add_node(node)
        targets = sorted(
            {
                edge.target_id
                for edge in graph.outgoing(node)
                if follow(edge) and edge.target_id and (include_external or not edge.external)
            }
        )
        digraph.add_edges_from((node, target) for target in targets)
    return digraph


def find_cycles(
    graph: Any,
    kinds: Optional[Iterable[str]] = None,
    token: Optional[CancellationToken] = None,
) -> CycleReport:
    """Find every cycle as a strongly connected component.

    Components come from networkx's non-recursive Tarjan variant, so deep
    graphs do not hit the interpreter recursion limit. Each component with
    more than one member, or a single member with a self-loop, is reported
    exactly once. Members are sorted by identifier and cycles are sorted by
    members, so the report is independent of insertion order.
    """
    report = CycleReport()
    digraph = to_digraph(graph, kinds, include_external=False, token=token)
    if digraph is None:
        report.cancelled = True
        return report

    for component in nx.strongly_connected_components(digraph):
        if _cancelled(token):
            report.cancelled = True
            break
        if len(component) > 1:
            report.cycles.append(Cycle(members=tuple(sorted(component))))
        else:
            (node,) = component
            if digraph.has_edge(node, node):
                report.cycles.append(Cycle(members=(node,)))

    report.cycles.sort(key=lambda cycle: cycle.members)
    if report.cycles:
        logger.debug(f"Found {len(report.cycles)} cycles")
    return report


@dataclass
class PathResult:
    """Paths between two entities.

    ``complete`` is False whenever a bound or cancellation may have hidden
    additional paths; ``paths`` then holds what was found before the cut.
    """

    source: str
    target: str
    paths: List[List[str]] = field(default_factory=list)
    depth_limited: bool = False
    count_limited: bool = False
    cancelled: bool = False

    @property
    def found(self) -> bool:
        return bool(self.paths)

    @property
    def complete(self) -> bool:
        return not (self.depth_limited or self.count_limited or self.cancelled)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "target": self.target,
            "paths": [list(path) for path in self.paths],
            "complete": self.complete,
            "depth_limited": self.depth_limited,
            "count_limited": self.count_limited,
            "cancelled": self.cancelled,
        }



def shortest_path(
    graph: Any,
    source: str,
    target: str,
    max_depth: int,
    kinds: Optional[Iterable[str]] = None,
    token: Optional[CancellationToken] = None,
) -> PathResult:
    """Find one shortest path from ``source`` to ``target`` along outgoing edges.

    Among several shortest paths, the one whose nodes come first in
    identifier order at each hop wins.
    """
    result = PathResult(source=source, target=target)
    if source == target:
        result.paths.append([source])
        return result

    digraph = to_digraph(graph, kinds, token=token)
    if digraph is None:
        result.cancelled = True
        return result
    if source not in digraph:
        return result
    if max_depth <= 0:
        result.depth_limited = digraph.out_degree(source) > 0
        return result

    predecessor: Dict[str, Optional[str]] = {source: None}
    depth: Dict[str, int] = {source: 0}
    for parent, child in nx.bfs_edges(digraph, source, depth_limit=max_depth):
        if _cancelled(token):
            result.cancelled = True
            return result
        predecessor[child] = parent
        depth[child] = depth[parent] + 1
        if child == target:
            path: List[str] = [child]
            step = predecessor[child]
            while step is not None:
                path.append(step)
                step = predecessor[step]
            path.reverse()
            result.paths.append(path)
            return result

    # Nodes on the bound with unvisited successors may hide a longer path
    result.depth_limited = any(
        node_depth == max_depth and any(succ not in depth for succ in digraph.successors(node))
        for node, node_depth in depth.items()
    )
    return result


def all_simple_paths(
    graph: Any,
    source: str,
    target: str,
    max_depth: int,
    max_paths: int,
    kinds: Optional[Iterable[str]] = None,
    token: Optional[CancellationToken] = None,
) -> PathResult:
    """Enumerate simple paths from ``source`` to ``target``.

    The search is bounded both by path length (``max_depth`` edges) and by the
    number of paths returned (``max_paths``). Paths are sorted by length, then
    lexicographically. ``depth_limited`` is set when the nodes lying between
    source and target are numerous enough for a simple path to exceed the
    length bound.
    """
    result = PathResult(source=source, target=target)
    if max_paths <= 0:
        result.count_limited = True
        return result
    if source == target:
        result.paths.append([source])
        return result

    digraph = to_digraph(graph, kinds, token=token)
    if digraph is None:
        result.cancelled = True
        return result
    if source not in digraph or target not in digraph:
        return result

    reachable = nx.descendants(digraph, source)
    if target not in reachable:
        return result
    between = (reachable & nx.ancestors(digraph, target)) | {source, target}
    result.depth_limited = len(between) - 1 > max_depth
    if max_depth <= 0:
        return result

    paths = nx.all_simple_paths(digraph, source, target, cutoff=max_depth)
    while True:
        if _cancelled(token):
            result.cancelled = True
            break
        path = next(paths, None)
        if path is None:
            break
        if len(result.paths) >= max_paths:
            result.count_limited = True
            break
        result.paths.append(path)

    result.paths.sort(key=lambda p: (len(p), p))
    return result
