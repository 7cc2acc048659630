# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Query API for read-only access to an analyzed graph.

Every query runs against one immutable GraphSnapshot, so queries may run
concurrently with updates: they see the last fully merged state, never a
partially merged one.

API Methods:
- get_entity(entity_id): Entity lookup
- dependencies(entity_id, depth) / dependents(entity_id, depth): BFS trees
- shortest_path(source, target) / all_paths(source, target): path tracing
- find_cycles(): Strongly connected components
- external_references(): Edges whose target lies outside the repository
- entities_in_file(path) / file_records() / diagnostics(): file-level views
- get_graph_statistics() / export_graph(): whole-graph summaries

Bounded searches never raise when a budget is exhausted: results carry
``complete=False`` and a TraversalBudgetExceeded diagnostic is recorded on
the facade.
"""

import logging
import threading
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Set, Union

from codegraph_engine.graph import GraphSnapshot
from codegraph_engine.models import (
    Diagnostic,
    DiagnosticKind,
    Entity,
    FileRecord,
    Relationship,
)
from codegraph_engine.traversal import (
    CancellationToken,
    CycleReport,
    DependencyTree,
    PathResult,
    all_simple_paths,
    shortest_path,
)

if TYPE_CHECKING:
    from codegraph_engine.engine import CodeGraphEngine

logger = logging.getLogger(__name__)

# Budget diagnostics kept per facade
MAX_BUDGET_DIAGNOSTICS = 100


class QueryAPI:
    """Read-only query facade over a graph snapshot.

    The facade can be created from an engine (recommended) or from individual
    pieces (for testing).

    Usage with engine:
        engine = CodeGraphEngine(repo_root=root)
        engine.analyze()
        api = QueryAPI.from_engine(engine)
        tree = api.dependencies("pkg/mod.py::Service.run", depth=2)

    Usage with a snapshot:
        api = QueryAPI(graph.snapshot())
        report = api.find_cycles()
    """

    def __init__(
        self,
        snapshot: GraphSnapshot,
        file_records: Optional[Union[Dict[str, FileRecord], Iterable[FileRecord]]] = None,
        diagnostics: Optional[Iterable[Diagnostic]] = None,
        default_depth: int = 3,
        max_path_depth: int = 10,
        max_paths: int = 100,
    ) -> None:
        """Initialize the Query API.

        Args:
            snapshot: Immutable graph snapshot to query.
            file_records: Per-file records matching the snapshot.
            diagnostics: Diagnostics collected while building the snapshot.
            default_depth: Traversal depth used when a query gives none.
            max_path_depth: Maximum path length (in edges) for path searches.
            max_paths: Maximum number of paths all_paths() enumerates.
        """
        self._snapshot = snapshot
        if file_records is None:
            records: Dict[str, FileRecord] = {}
        elif isinstance(file_records, dict):
            records = dict(file_records)
        else:
            records = {record.path: record for record in file_records}
        self._records = records
        self._diagnostics = sorted(diagnostics or [], key=lambda d: d.sort_key())
        self.default_depth = default_depth
        self.max_path_depth = max_path_depth
        self.max_paths = max_paths

        self._budget_lock = threading.Lock()
        self._budget_diagnostics: List[Diagnostic] = []
        self._budget_messages: Set[str] = set()

    @classmethod
    def from_engine(cls, engine: "CodeGraphEngine") -> "QueryAPI":
        """Create a QueryAPI over the engine's last published snapshot."""
        config = engine.config
        snapshot, records, diagnostics = engine.published_state()
        return cls(
            snapshot=snapshot,
            file_records=records,
            diagnostics=diagnostics,
            default_depth=config.get("default_traversal_depth", 3),
            max_path_depth=config.get("max_path_depth", 10),
            max_paths=config.get("max_paths", 100),
        )

    @property
    def snapshot(self) -> GraphSnapshot:
        return self._snapshot

    def get_entity(self, entity_id: str) -> Optional[Entity]:
        return self._snapshot.get_entity(entity_id)

    def dependencies(
        self,
        entity_id: str,
        depth: Optional[int] = None,
        kinds: Optional[Iterable[str]] = None,
        token: Optional[CancellationToken] = None,
    ) -> DependencyTree:
        """Entities ``entity_id`` depends on, breadth-first to ``depth`` hops.

        Args:
            entity_id: Entity to start from.
            depth: Maximum number of hops (default: default_depth).
            kinds: Optional relationship kinds to follow.
            token: Optional cancellation token.

        Returns:
            DependencyTree; ``complete`` is False when the depth bound or
            cancellation cut the traversal.
        """
        tree = self._snapshot.dependencies(
            entity_id, self.default_depth if depth is None else depth, kinds, token
        )
        self._note_budget(tree.complete, f"dependencies of {entity_id}", tree.cancelled)
        return tree

    def dependents(
        self,
        entity_id: str,
        depth: Optional[int] = None,
        kinds: Optional[Iterable[str]] = None,
        token: Optional[CancellationToken] = None,
    ) -> DependencyTree:
        """Entities depending on ``entity_id``, breadth-first to ``depth`` hops."""
        tree = self._snapshot.dependents(
            entity_id, self.default_depth if depth is None else depth, kinds, token
        )
        self._note_budget(tree.complete, f"dependents of {entity_id}", tree.cancelled)
        return tree

    def shortest_path(
        self,
        source_id: str,
        target_id: str,
        max_depth: Optional[int] = None,
        kinds: Optional[Iterable[str]] = None,
        token: Optional[CancellationToken] = None,
    ) -> PathResult:
        """One shortest path along outgoing edges, at most ``max_depth`` edges long."""
        result = shortest_path(
            self._snapshot,
            source_id,
            target_id,
            self.max_path_depth if max_depth is None else max_depth,
            kinds,
            token,
        )
        self._note_budget(result.complete, f"path {source_id} -> {target_id}", result.cancelled)
        return result

    def all_paths(
        self,
        source_id: str,
        target_id: str,
        max_depth: Optional[int] = None,
        max_paths: Optional[int] = None,
        kinds: Optional[Iterable[str]] = None,
        token: Optional[CancellationToken] = None,
    ) -> PathResult:
        """All simple paths between two entities, bounded by length and count.

        Returns:
            PathResult with paths ordered by length, then lexicographically.
            ``complete`` is False when a bound or cancellation may have hidden
            further paths.
        """
        result = all_simple_paths(
            self._snapshot,
            source_id,
            target_id,
            self.max_path_depth if max_depth is None else max_depth,
            self.max_paths if max_paths is None else max_paths,
            kinds,
            token,
        )
        self._note_budget(result.complete, f"paths {source_id} -> {target_id}", result.cancelled)
        return result

    def find_cycles(
        self,
        kinds: Optional[Iterable[str]] = None,
        token: Optional[CancellationToken] = None,
    ) -> CycleReport:
        """Dependency cycles, one per strongly connected component."""
        report = self._snapshot.find_cycles(kinds, token)
        self._note_budget(report.complete, "cycle detection", report.cancelled)
        return report

    def external_references(
        self, kind: Optional[str] = None, origin: Optional[str] = None
    ) -> List[Relationship]:
        """Edges whose target lies outside the repository, sorted.

        Args:
            kind: Optional relationship kind filter.
            origin: Optional ExternalOrigin filter ("stdlib", "unresolved").
        """
        edges = [
            edge
            for external_id in self._snapshot.external_ids()
            for edge in self._snapshot.incoming(external_id)
            if (kind is None or edge.kind == kind)
            and (origin is None or edge.metadata.origin == origin)
        ]
        return sorted(edges, key=lambda edge: edge.edge_key())

    def entities_in_file(self, path: str) -> List[Entity]:
        """Entities declared by a file, in source order."""
        entities = [e for e in self._snapshot.entities() if e.file_path == path]
        return sorted(entities, key=lambda e: (e.span.start_line, e.span.start_col, e.id))

    def file_records(self) -> List[FileRecord]:
        return [self._records[path] for path in sorted(self._records)]

    def get_file_record(self, path: str) -> Optional[FileRecord]:
        return self._records.get(path)

    def diagnostics(self, path: Optional[str] = None, kind: Optional[str] = None) -> List[Diagnostic]:
        """Diagnostics of the snapshot plus traversal budget diagnostics of this facade."""
        with self._budget_lock:
            collected = self._diagnostics + self._budget_diagnostics
        return [
            d
            for d in collected
            if (path is None or d.path == path) and (kind is None or d.kind == kind)
        ]

    def get_graph_statistics(self) -> Dict[str, Any]:
        """Counts of entities, edges, files and diagnostics by kind."""
        entity_kinds: Dict[str, int] = {}
        for entity in self._snapshot.entities():
            entity_kinds[entity.kind] = entity_kinds.get(entity.kind, 0) + 1

        edge_kinds: Dict[str, int] = {}
        external = 0
        ambiguous = 0
        for edge in self._snapshot.edges():
            edge_kinds[edge.kind] = edge_kinds.get(edge.kind, 0) + 1
            external += edge.external
            ambiguous += edge.ambiguous

        file_states: Dict[str, int] = {}
        for record in self._records.values():
            file_states[record.status] = file_states.get(record.status, 0) + 1

        diagnostic_kinds: Dict[str, int] = {}
        for diagnostic in self._diagnostics:
            diagnostic_kinds[diagnostic.kind] = diagnostic_kinds.get(diagnostic.kind, 0) + 1

        return {
            "version": self._snapshot.version,
            "entities": self._snapshot.entity_count,
            "edges": self._snapshot.edge_count,
            "external_edges": external,
            "ambiguous_edges": ambiguous,
            "external_targets": len(self._snapshot.external_ids()),
            "files": len(self._records),
            "entity_kinds": dict(sorted(entity_kinds.items())),
            "edge_kinds": dict(sorted(edge_kinds.items())),
            "file_states": dict(sorted(file_states.items())),
            "diagnostic_kinds": dict(sorted(diagnostic_kinds.items())),
        }

    def export_graph(self) -> Dict[str, Any]:
        """Full JSON-compatible export of the snapshot."""
        data = self._snapshot.to_dict()
        data["files"] = [record.to_dict() for record in self.file_records()]
        data["diagnostics"] = [d.to_dict() for d in self._diagnostics]
        data["statistics"] = self.get_graph_statistics()
        return data

    def _note_budget(self, complete: bool, description: str, cancelled: bool) -> None:
        if complete:
            return
        reason = "cancelled" if cancelled else "bound reached"
        logger.debug(f"Incomplete traversal ({reason}): {description}")
        message = f"Traversal incomplete ({reason}): {description}"
        with self._budget_lock:
            # One diagnostic per distinct query, up to a fixed number per facade
            if message in self._budget_messages:
                return
            if len(self._budget_diagnostics) >= MAX_BUDGET_DIAGNOSTICS:
                return
            self._budget_messages.add(message)
            self._budget_diagnostics.append(
                Diagnostic(
                    kind=DiagnosticKind.TRAVERSAL_BUDGET_EXCEEDED,
                    path="",
                    message=message,
                )
            )
