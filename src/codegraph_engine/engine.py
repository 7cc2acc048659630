# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""CodeGraphEngine - owner of one repository analysis session.

The engine creates and wires every component for one repository and exposes
the session lifecycle:

- analyze(): full pass over a manifest (warm-started from the cache when a
  valid cached graph exists)
- apply_changes() / refresh_paths(): incremental updates
- start_watching() / process_pending_changes(): file-watcher driven updates
- persist() / invalidate_cache(): cache management
- snapshot() / query(): read access for collaborators

There is no process-wide state: every engine owns its graph store, updater
and cache handle, and several engines may run side by side.
"""

import logging
import threading
from pathlib import Path
from typing import Iterable, List, Optional, Tuple, Union

from codegraph_engine.analyzers.registry import AnalyzerRegistry, default_registry
from codegraph_engine.cache import GraphCache
from codegraph_engine.config import Config
from codegraph_engine.file_watcher import FileWatcher
from codegraph_engine.graph import CodeGraph, GraphSnapshot
from codegraph_engine.graph_updater import GraphUpdater, UpdateResult
from codegraph_engine.log_config import ensure_data_directories, get_cache_dir
from codegraph_engine.logging_setup import setup_logging
from codegraph_engine.models import Diagnostic, FileRecord, SourceFile
from codegraph_engine.query_api import QueryAPI
from codegraph_engine.relationship_builder import RelationshipBuilder
from codegraph_engine.scanner import SourceScanner

logger = logging.getLogger(__name__)


class CodeGraphEngine:
    """Coordinates scanning, analysis, incremental updates, caching and queries.

    Supports dependency injection for testing while providing sensible
    defaults for production use.

    Usage:
        engine = CodeGraphEngine(config=Config(), repo_root="/path/to/repo")
        engine.analyze()
        api = engine.query()
        tree = api.dependencies("pkg/mod.py::Service")
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        repo_root: Optional[Union[str, Path]] = None,
        registry: Optional[AnalyzerRegistry] = None,
        cache: Optional[GraphCache] = None,
        scanner: Optional[SourceScanner] = None,
    ):
        """Initialize the engine with its dependencies.

        Args:
            config: Configuration object (default: loaded from the current
                directory, defaults when absent).
            repo_root: Root directory of the repository (default: cwd).
            registry: AnalyzerRegistry (default: Python analyzer plus opaque
                fallback, configured from ``config``).
            cache: GraphCache (default: one in the configured cache directory,
                or none when caching is disabled).
            scanner: SourceScanner (default: one over ``repo_root``).
        """
        self.config = config if config is not None else Config()
        if self.config.log_to_file:
            setup_logging(self.config.log_dir, console_output=False)
        self.repo_root = Path(repo_root).resolve() if repo_root else Path.cwd().resolve()
        self.repo_key = str(self.repo_root)

        self.registry = (
            registry
            if registry is not None
            else default_registry(
                max_file_lines=self.config.max_file_lines,
                max_file_size_bytes=self.config.max_file_size_bytes,
                max_recursion_depth=self.config.max_recursion_depth,
                language_extensions=self.config.language_extensions,
                source_roots=self.config.source_roots,
            )
        )

        self.scanner = (
            scanner
            if scanner is not None
            else SourceScanner(
                self.repo_root,
                ignore_patterns=self.config.ignore_patterns,
                extension_map=self.registry.extension_map(),
            )
        )

        if cache is not None:
            self.cache: Optional[GraphCache] = cache
        elif self.config.cache_enabled and self.config.cache_dir is not None:
            self.cache = GraphCache(self.config.cache_dir)
        elif self.config.cache_enabled:
            ensure_data_directories()
            self.cache = GraphCache(get_cache_dir())
        else:
            self.cache = None

        # One graph store per session, written only through the updater
        self._graph = CodeGraph()
        self._relationship_builder = RelationshipBuilder()
        self._graph_updater = GraphUpdater(
            graph=self._graph,
            registry=self.registry,
            relationship_builder=self._relationship_builder,
            max_workers=self.config.max_workers,
            trust_mtime=self.config.trust_mtime,
        )

        self._session_diagnostics: List[Diagnostic] = []
        self._file_watcher: Optional[FileWatcher] = None
        # Cache writes land in export order
        self._persist_lock = threading.Lock()

    @property
    def updater(self) -> GraphUpdater:
        return self._graph_updater

    # Analysis

    def analyze(
        self, manifest: Optional[Iterable[SourceFile]] = None, use_cache: bool = True
    ) -> UpdateResult:
        """Analyze the repository (or a given manifest) and publish the graph.

        On the first call, a valid cached graph is restored and only files
        whose fingerprint changed are re-analyzed. Corrupted or outdated
        caches are reported as session diagnostics and ignored.

        Args:
            manifest: Files to analyze (default: scanned from repo_root).
            use_cache: Whether to try a cache warm start.

        Returns:
            UpdateResult relative to the state before the call.
        """
        sources = list(manifest) if manifest is not None else self.scanner.manifest()

        if use_cache and self.cache is not None and not self._graph_updater.records():
            cached = self.cache.retrieve(self.repo_key, self._session_diagnostics)
            if cached is not None:
                valid, stale = self.cache.validate(cached, sources)
                logger.info(
                    f"Graph cache hit for {self.repo_key}: {len(valid)} valid, "
                    f"{len(stale)} stale file(s)"
                )
                self._graph_updater.restore(
                    cached.graph, cached.records.values(), cached.analyses
                )

        result = self._graph_updater.sync(sources)
        if result.changed:
            self.persist()
        return result

    def apply_changes(
        self,
        changed_sources: Iterable[SourceFile] = (),
        deleted_paths: Iterable[str] = (),
    ) -> UpdateResult:
        """Apply created/modified/deleted files supplied by a collaborator."""
        result = self._graph_updater.update(changed_sources, deleted_paths)
        if result.changed:
            self.persist()
        return result

    def refresh_paths(self, paths: Iterable[Union[str, Path]]) -> UpdateResult:
        """Re-read the given files from disk and apply whatever changed.

        Paths that no longer exist (or are now ignored) are treated as deleted.
        """
        changed: List[SourceFile] = []
        deleted: List[str] = []
        for path in paths:
            rel_path = self.scanner.relative_path(path)
            if rel_path is None:
                logger.warning(f"⚠️ Ignoring path outside repository: {path}")
                continue
            source = self.scanner.load(rel_path) if self.scanner.classify(rel_path) else None
            if source is None:
                deleted.append(rel_path)
            else:
                changed.append(source)
        return self.apply_changes(changed, deleted)

    # File watching

    def start_watching(self) -> None:
        """Start the file watcher for monitoring changes."""
        if self._file_watcher is not None and self._file_watcher.is_running():
            return
        self._file_watcher = FileWatcher(self.scanner)
        if self.cache is not None:
            self._file_watcher.register_invalidation_callback(self._invalidate_cached_file)
        self._file_watcher.start()

    def stop_watching(self) -> None:
        if self._file_watcher is not None:
            self._file_watcher.stop()

    def process_pending_changes(self) -> UpdateResult:
        """Apply every change the file watcher recorded since the last call."""
        if self._file_watcher is None:
            return UpdateResult()
        return self.refresh_paths(self._file_watcher.drain_changes())

    def _invalidate_cached_file(self, rel_path: str) -> None:
        if self.cache is not None:
            self.cache.invalidate(self.repo_key, [rel_path])

    # Cache

    def persist(self) -> Optional[str]:
        """Store the current graph in the cache (outside the merge lock).

        The exported snapshot, records and analyses come from one merge, so a
        concurrent update can make the stored graph older but never mixed.

        Returns:
            The cache key, or None when caching is disabled or the write failed.
        """
        if self.cache is None:
            return None
        with self._persist_lock:
            snapshot, records, analyses = self._graph_updater.export_state()
            try:
                return self.cache.store(self.repo_key, snapshot, records, analyses)
            except OSError as e:
                logger.warning(f"⚠️ Failed to persist graph cache for {self.repo_key}: {e}")
                return None

    def invalidate_cache(self, paths: Optional[Iterable[str]] = None) -> bool:
        """Invalidate the cached graph, entirely or for some files only."""
        if self.cache is None:
            return False
        return self.cache.invalidate(self.repo_key, None if paths is None else list(paths))

    # Read access

    def snapshot(self) -> GraphSnapshot:
        """The last fully merged graph snapshot."""
        return self._graph_updater.published_snapshot

    def query(self) -> QueryAPI:
        return QueryAPI.from_engine(self)

    def file_records(self) -> List[FileRecord]:
        records = self._graph_updater.records()
        return [records[path] for path in sorted(records)]

    def diagnostics(self) -> List[Diagnostic]:
        """Session diagnostics (cache) followed by per-file diagnostics."""
        return list(self._session_diagnostics) + self._graph_updater.diagnostics()

    def published_state(self) -> Tuple[GraphSnapshot, List[FileRecord], List[Diagnostic]]:
        """Snapshot, file records and diagnostics read under one merge lock."""
        snapshot, records, diagnostics = self._graph_updater.published_state()
        return (
            snapshot,
            [records[path] for path in sorted(records)],
            list(self._session_diagnostics) + diagnostics,
        )

    def shutdown(self) -> None:
        """Stop watching and persist the final graph."""
        logger.info("CodeGraphEngine shutting down...")
        self.stop_watching()
        if self._graph_updater.records():
            self.persist()
        logger.info("CodeGraphEngine shutdown complete")
