# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Incremental graph updater for source changes.

This module implements incremental update logic:
- On modify: Retract the file's entities and edges, re-analyze, merge
- On delete: Retract the file's entities and edges, drop its record
- On create: Analyze and merge
- Dependents: Edges from unchanged files into entities that survive an
  edit are kept as they are; unchanged files whose resolution looked up a
  name whose declaration or import binding changed get their edges rebuilt
  from their stored analysis, without reparsing
- Directories: directory entities and their compose edges follow the
  set of analyzed files

Design:
- Files are analyzed in a thread pool, outside the merge lock
- Whole updates (classification, analysis, merge) are serialized by the
  writer lock, so a classification is never invalidated before its merge
- The merge lock guards the live state; readers take it only to copy the
  published snapshot with its records and diagnostics
- Readers use the last published immutable snapshot, never the live graph
- FileRecords are immutable and replaced on every change
- The incremental result equals a full analysis of the final file set
"""

import logging
import posixpath
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from codegraph_engine.analyzers.registry import AnalyzerRegistry
from codegraph_engine.graph import CodeGraph, GraphSnapshot
from codegraph_engine.models import (
    Diagnostic,
    Entity,
    EntityKind,
    EntityMetadata,
    FileAnalysis,
    FileRecord,
    FileState,
    Relationship,
    RelationshipKind,
    SourceFile,
    SourceSpan,
    make_directory_id,
)
from codegraph_engine.relationship_builder import RelationshipBuilder

logger = logging.getLogger(__name__)


@dataclass
class UpdateResult:
    """Outcome of one incremental update.

    Attributes:
        created: Paths analyzed for the first time.
        modified: Paths whose content changed and were re-analyzed.
        deleted: Paths removed from the graph.
        unchanged: Paths present in the input whose fingerprint matched.
        reresolved: Unchanged paths whose edges were rebuilt because a name
            they depend on changed.
        elapsed_ms: Wall-clock duration of the update.
    """

    created: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    reresolved: List[str] = field(default_factory=list)
    elapsed_ms: float = 0.0

    @property
    def changed(self) -> bool:
        return bool(self.created or self.modified or self.deleted)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        return {
            "created": list(self.created),
            "modified": list(self.modified),
            "deleted": list(self.deleted),
            "unchanged": list(self.unchanged),
            "reresolved": list(self.reresolved),
            "elapsed_ms": self.elapsed_ms,
        }


def _parent_dir(path: str) -> str:
    return posixpath.dirname(path.rstrip("/"))


def _ancestors(path: str) -> List[str]:
    """Directories containing ``path``, innermost first, root ("") last."""
    result = []
    current = _parent_dir(path)
    while True:
        result.append(current)
        if not current:
            return result
        current = _parent_dir(current)


class GraphUpdater:
    """Coordinates analysis, resolution and merging into the graph store.

    State per file follows FileState: unanalyzed -> parsed | partial |
    unsupported | corrupted -> stale (on change) -> reanalyzed. Deleted
    files lose their record. Illegal transitions raise ValueError.

    Atomicity Guarantee:
    - Every update is merged under one lock and published as a new snapshot
      only once the merge has finished
    - Readers holding an older snapshot keep a consistent view

    Thread Safety:
    - update()/sync()/restore()/reset() may be called from any thread; they
      run one at a time under the writer lock
    - published_state()/records()/diagnostics() never wait for analysis,
      only for an ongoing merge
    - Analysis runs in worker threads; analyzers hold no per-file state
    """

    def __init__(
        self,
        graph: CodeGraph,
        registry: AnalyzerRegistry,
        relationship_builder: Optional[RelationshipBuilder] = None,
        max_workers: int = 4,
        trust_mtime: bool = False,
    ):
        """Initialize graph updater.

        Args:
            graph: CodeGraph to update (owned by the updater from now on).
            registry: AnalyzerRegistry choosing an analyzer per file.
            relationship_builder: RelationshipBuilder for cross-file
                resolution (default: a new builder).
            max_workers: Worker threads used to analyze changed files.
            trust_mtime: Skip fingerprint comparison when a file's mtime hint
                equals the recorded one.
        """
        self.graph = graph
        self.registry = registry
        self.relationship_builder = (
            relationship_builder if relationship_builder is not None else RelationshipBuilder()
        )
        self.max_workers = max(1, max_workers)
        self.trust_mtime = trust_mtime

        self._records: Dict[str, FileRecord] = {}
        self._resolution_diagnostics: Dict[str, List[Diagnostic]] = {}
        self._files_by_dir: Dict[str, Set[str]] = {}
        self._subdirs: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()
        self._writer_lock = threading.RLock()
        self._snapshot: GraphSnapshot = graph.snapshot()

    @property
    def published_snapshot(self) -> GraphSnapshot:
        """The last fully merged snapshot (safe to read concurrently)."""
        return self._snapshot

    def records(self) -> Dict[str, FileRecord]:
        """Copy of the per-file records."""
        with self._lock:
            return dict(self._records)

    def published_state(self) -> Tuple[GraphSnapshot, Dict[str, FileRecord], List[Diagnostic]]:
        """The published snapshot with the records and diagnostics merged with it."""
        with self._lock:
            return self._snapshot, dict(self._records), self._collect_diagnostics()

    def diagnostics(self) -> List[Diagnostic]:
        """All per-file diagnostics (analysis and resolution), sorted."""
        with self._lock:
            return self._collect_diagnostics()

    def _collect_diagnostics(self) -> List[Diagnostic]:
        collected: List[Diagnostic] = []
        for path in self.relationship_builder.paths():
            analysis = self.relationship_builder.get_file_analysis(path)
            if analysis is not None:
                collected.extend(analysis.diagnostics)
            collected.extend(self._resolution_diagnostics.get(path, ()))
        return sorted(collected, key=lambda d: d.sort_key())

    def export_state(self) -> Tuple[GraphSnapshot, List[FileRecord], List[FileAnalysis]]:
        """Consistent copy of everything the cache persists.

        Later updates replace records and analyses instead of mutating them,
        so the export stays a matching set while it is written out.
        """
        with self._lock:
            analyses = []
            for path in self.relationship_builder.paths():
                analysis = self.relationship_builder.get_file_analysis(path)
                if analysis is not None:
                    analyses.append(analysis)
            records = [self._records[path] for path in sorted(self._records)]
            return self._snapshot, records, analyses

    # Change detection

    def _has_changed(self, record: FileRecord, source: SourceFile) -> bool:
        if record.status == FileState.STALE:
            return True
        if self.trust_mtime and source.mtime is not None and record.mtime == source.mtime:
            return False
        return record.fingerprint != source.fingerprint

    def _transition(self, record: FileRecord, new_status: str) -> FileRecord:
        if not FileState.can_transition(record.status, new_status):
            raise ValueError(
                f"Illegal state transition for {record.path}: {record.status} -> {new_status}"
            )
        return replace(record, status=new_status)

    def mark_stale(self, paths: Iterable[str]) -> List[str]:
        """Force the given files to be re-analyzed on the next update.

        Returns:
            Paths that were marked stale (unknown or already stale are skipped).
        """
        marked = []
        with self._lock:
            for path in paths:
                record = self._records.get(path)
                if record is None or record.status == FileState.STALE:
                    continue
                self._records[path] = self._transition(record, FileState.STALE)
                marked.append(path)
        return marked

    # Analysis

    def _analyze_one(self, source: SourceFile) -> FileAnalysis:
        analyzer = self.registry.analyzer_for(source)
        try:
            return analyzer.analyze(source)
        except Exception as e:
            logger.error(f"Analyzer '{analyzer.language()}' failed on {source.path}: {e}")
            return analyzer.corrupted(source, f"analyzer failure: {type(e).__name__}: {e}")

    def _analyze_all(self, sources: List[SourceFile]) -> List[FileAnalysis]:
        if len(sources) <= 1 or self.max_workers == 1:
            return [self._analyze_one(source) for source in sources]
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            return list(executor.map(self._analyze_one, sources))

    # Updates

    def update(
        self,
        changed_sources: Iterable[SourceFile] = (),
        deleted_paths: Iterable[str] = (),
    ) -> UpdateResult:
        """Apply created/modified/deleted files to the graph.

        Sources whose fingerprint matches their record are left untouched.
        A path listed both as changed and deleted is treated as changed.

        Args:
            changed_sources: Current content of created or modified files.
            deleted_paths: Paths of files that no longer exist.

        Returns:
            UpdateResult describing what happened.
        """
        start_time = time.time()
        sources = {source.path: source for source in changed_sources}
        deleted = set(deleted_paths)
        result = UpdateResult()
        to_analyze: List[SourceFile] = []

        with self._writer_lock:
            with self._lock:
                for path in sorted(sources):
                    record = self._records.get(path)
                    if record is None:
                        result.created.append(path)
                        to_analyze.append(sources[path])
                    elif self._has_changed(record, sources[path]):
                        result.modified.append(path)
                        to_analyze.append(sources[path])
                    else:
                        result.unchanged.append(path)
                        if sources[path].mtime is not None:
                            self._records[path] = replace(record, mtime=sources[path].mtime)
                result.deleted = sorted(
                    path for path in deleted if path in self._records and path not in sources
                )

            if not to_analyze and not result.deleted:
                result.elapsed_ms = (time.time() - start_time) * 1000
                return result

            analyses = self._analyze_all(to_analyze)

            with self._lock:
                result.reresolved = self._merge(
                    sources, analyses, result.created, result.modified, result.deleted
                )
                self._snapshot = self.graph.snapshot()

        result.elapsed_ms = (time.time() - start_time) * 1000
        logger.info(
            f"Graph update: {len(result.created)} created, {len(result.modified)} modified, "
            f"{len(result.deleted)} deleted, {len(result.reresolved)} re-resolved "
            f"in {result.elapsed_ms:.1f}ms"
        )
        return result

    def sync(self, manifest: Iterable[SourceFile]) -> UpdateResult:
        """Bring the graph in line with a complete manifest.

        Files recorded but absent from the manifest are treated as deleted.
        """
        sources = list(manifest)
        present = {source.path for source in sources}
        with self._writer_lock:
            with self._lock:
                missing = [path for path in self._records if path not in present]
            return self.update(sources, missing)

    def _merge(
        self,
        sources: Dict[str, SourceFile],
        analyses: List[FileAnalysis],
        created: List[str],
        modified: List[str],
        deleted: List[str],
    ) -> List[str]:
        """Serialized merge step. Caller holds the lock.

        Returns:
            Unchanged paths whose edges were rebuilt.
        """
        builder = self.relationship_builder
        retracted = set(modified) | set(deleted)
        old_keys: Dict[str, Set[Tuple[str, Optional[str]]]] = {}
        kept_incoming: List[Relationship] = []
        touched_dirs: Set[str] = set()

        # Stage 1: Mark stale and retract old entities with their edges
        for path in modified + deleted:
            record = self._records[path]
            old_keys[path] = builder.resolution_keys(builder.get_file_analysis(path))
            if path in sources:
                if record.status != FileState.STALE:
                    self._records[path] = self._transition(record, FileState.STALE)
                kept_incoming.extend(self._incoming_from_others(record.declared_ids, retracted))
            self.graph.remove_entities(record.declared_ids)
            builder.remove_file_analysis(path)
            self._resolution_diagnostics.pop(path, None)

        for path in deleted:
            del self._records[path]
            self._files_by_dir.get(_parent_dir(path), set()).discard(path)
            touched_dirs.update(_ancestors(path))

        # Stage 2: Add new entities and register analyses for resolution
        names: Set[str] = set()
        for analysis in analyses:
            names |= builder.changed_names(
                old_keys.pop(analysis.path, set()), builder.resolution_keys(analysis)
            )
            self.graph.add_entities(analysis.entities)
            builder.add_file_analysis(analysis)
            self._files_by_dir.setdefault(_parent_dir(analysis.path), set()).add(analysis.path)
            touched_dirs.update(_ancestors(analysis.path))
        for keys in old_keys.values():
            names |= builder.changed_names(keys, set())

        # Edges from untouched files into entities that survived the edit
        self.graph.add_edges(
            edge for edge in kept_incoming if self.graph.has_entity(edge.target_id or "")
        )

        # Stage 3: Directory entities and compose edges
        self._sync_directories(touched_dirs)

        # Stage 4: Edges of changed files, then of files that looked up changed names
        changed = set(created) | set(modified)
        affected = builder.consumers_of(names) - changed - set(deleted)
        for path in sorted(changed):
            self._rebuild_edges(path)
        for path in sorted(affected):
            self._rebuild_edges(path)

        # Stage 5: Records
        now = time.time()
        for analysis in analyses:
            record = self._records.get(analysis.path)
            if record is None:
                record = FileRecord(
                    path=analysis.path,
                    fingerprint=analysis.fingerprint,
                    declared_ids=(),
                    status=FileState.UNANALYZED,
                )
            self._records[analysis.path] = replace(
                self._transition(record, analysis.status),
                fingerprint=analysis.fingerprint,
                declared_ids=analysis.declared_ids,
                language=analysis.language,
                mtime=sources[analysis.path].mtime,
                analyzed_at=now,
            )

        if affected:
            logger.debug(f"Re-resolved {len(affected)} dependent file(s): {sorted(affected)}")
        return sorted(affected)

    def _incoming_from_others(
        self, entity_ids: Iterable[str], excluded_paths: Set[str]
    ) -> List[Relationship]:
        """Edges into ``entity_ids`` whose source belongs to another analyzed file.

        Directory compose edges are excluded: directories are rebuilt separately.
        """
        edges = []
        for entity_id in entity_ids:
            for edge in self.graph.incoming(entity_id):
                source = self.graph.get_entity(edge.source_id)
                if (
                    source is not None
                    and source.file_path in self._records
                    and source.file_path not in excluded_paths
                ):
                    edges.append(edge)
        return edges

    def _rebuild_edges(self, path: str) -> None:
        """Replace the edges sourced at a file's entities with freshly resolved ones."""
        analysis = self.relationship_builder.get_file_analysis(path)
        if analysis is None:
            return
        for entity_id in analysis.declared_ids:
            self.graph.remove_edges_for_source(entity_id)
        edges, diagnostics = self.relationship_builder.build_relationships_for_file(path)
        self.graph.add_edges(edges)
        if diagnostics:
            self._resolution_diagnostics[path] = diagnostics
        else:
            self._resolution_diagnostics.pop(path, None)

    def _sync_directories(self, touched: Set[str]) -> None:
        """Create, refresh or remove directory entities, deepest first."""
        for directory in sorted(touched, key=lambda d: (-d.count("/") - bool(d), d)):
            directory_id = make_directory_id(directory)
            files = self._files_by_dir.get(directory, set())
            subdirs = self._subdirs.get(directory, set())
            parent = _parent_dir(directory) if directory else None

            if not files and not subdirs:
                self.graph.remove_entities([directory_id])
                self._files_by_dir.pop(directory, None)
                self._subdirs.pop(directory, None)
                if parent is not None:
                    self._subdirs.get(parent, set()).discard(directory)
                continue

            if parent is not None:
                self._subdirs.setdefault(parent, set()).add(directory)
            if not self.graph.has_entity(directory_id):
                self.graph.add_entities([self._directory_entity(directory)])
            self.graph.remove_edges_for_source(directory_id)
            children = [make_directory_id(d) for d in sorted(subdirs)]
            children.extend(
                entity_id
                for entity_id in sorted(files)
                if self.graph.has_entity(entity_id)
            )
            self.graph.add_edges(
                Relationship(
                    source_id=directory_id,
                    kind=RelationshipKind.COMPOSE,
                    target_id=child,
                    target_ref=child,
                )
                for child in children
            )

    @staticmethod
    def _directory_entity(directory: str) -> Entity:
        directory_id = make_directory_id(directory)
        return Entity(
            id=directory_id,
            name=posixpath.basename(directory) or ".",
            qualified_name=directory or ".",
            kind=EntityKind.DIRECTORY,
            file_path=directory_id,
            span=SourceSpan(start_line=0),
            metadata=EntityMetadata(),
        )

    def restore(
        self,
        graph: CodeGraph,
        records: Iterable[FileRecord],
        analyses: Iterable[FileAnalysis],
    ) -> None:
        """Load previously persisted state (cache warm start).

        The cached graph is copied into the live graph as is; resolution is
        re-run on the stored analyses only to rebuild lookup indices and
        resolution diagnostics, not to change edges.
        """
        with self._writer_lock, self._lock:
            self.graph.clear()
            self.graph.add_entities(graph.entities())
            self.graph.add_edges(graph.edges())

            builder = self.relationship_builder
            builder.clear()
            self._records = {record.path: record for record in records}
            self._resolution_diagnostics.clear()
            self._files_by_dir.clear()
            self._subdirs.clear()

            for analysis in analyses:
                builder.add_file_analysis(analysis)
            for path in builder.paths():
                _, diagnostics = builder.build_relationships_for_file(path)
                if diagnostics:
                    self._resolution_diagnostics[path] = diagnostics

            for path in self._records:
                self._files_by_dir.setdefault(_parent_dir(path), set()).add(path)
                ancestors = _ancestors(path)
                for child, parent in zip(ancestors, ancestors[1:]):
                    self._subdirs.setdefault(parent, set()).add(child)

            self._snapshot = self.graph.snapshot()
        logger.info(
            f"Restored {len(self._records)} file records, {self._snapshot.entity_count} entities, "
            f"{self._snapshot.edge_count} edges"
        )

    def reset(self) -> None:
        """Drop every entity, edge and record."""
        with self._writer_lock, self._lock:
            self.graph.clear()
            self.relationship_builder.clear()
            self._records.clear()
            self._resolution_diagnostics.clear()
            self._files_by_dir.clear()
            self._subdirs.clear()
            self._snapshot = self.graph.snapshot()
