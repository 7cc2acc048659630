# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Persistent graph cache keyed by repository.

One JSON document per repository holds everything needed to skip a cold
analysis: the graph (entities and edges), the per-file records and the
per-file analyses (so dependents can be re-resolved without reparsing).

Key features:
- Versioned schema: documents written by another schema version are dropped
- Atomic writes (temporary file + os.replace), so readers never observe a
  half-written document
- Corrupted documents are reported as diagnostics and deleted; callers fall
  back to a full analysis
- Per-file validation by content fingerprint
- Thread-safe operations

Usage:
    cache = GraphCache(cache_dir)
    cached = cache.retrieve(repo_key, diagnostics)
    if cached is None:
        ...  # full analysis
    else:
        valid, stale = cache.validate(cached, manifest)
"""

import hashlib
import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from codegraph_engine.graph import CodeGraph, GraphSnapshot
from codegraph_engine.models import (
    Diagnostic,
    DiagnosticKind,
    FileAnalysis,
    FileRecord,
    FileState,
    SourceFile,
)

logger = logging.getLogger(__name__)


class CacheCorruptionError(Exception):
    """Raised when a cache document cannot be read back."""

    pass


class CacheVersionMismatchError(Exception):
    """Raised when a cache document was written with another schema version."""

    pass


@dataclass
class CachedSnapshot:
    """Everything restored from one cache document."""

    repo_key: str
    cache_key: str
    graph: CodeGraph
    records: Dict[str, FileRecord] = field(default_factory=dict)
    analyses: List[FileAnalysis] = field(default_factory=list)
    created_at: float = 0.0


class GraphCache:
    """File-backed cache of analyzed graphs.

    Thread Safety:
        All public methods are thread-safe using a reentrant lock.

    Cache Invalidation:
        - invalidate(repo_key): the document is deleted
        - invalidate(repo_key, files): those file records are marked stale,
          so the next validation sends them back to the updater
        - A file whose fingerprint differs from its record is stale
    """

    SCHEMA_VERSION = 1

    def __init__(self, cache_dir: Union[str, Path]):
        """Initialize the graph cache.

        Args:
            cache_dir: Directory holding cache documents (created on demand).
        """
        self.cache_dir = Path(cache_dir)
        self._lock = threading.RLock()

        # Statistics
        self._hits = 0
        self._misses = 0
        self._stores = 0
        self._corruptions = 0

    def cache_key(self, repo_key: str) -> str:
        """Stable document name for a repository key."""
        return hashlib.sha256(repo_key.encode("utf-8")).hexdigest()[:24]

    def _path_for(self, repo_key: str) -> Path:
        return self.cache_dir / f"{self.cache_key(repo_key)}.json"

    def store(
        self,
        repo_key: str,
        graph: Union[CodeGraph, GraphSnapshot],
        records: Iterable[FileRecord],
        analyses: Iterable[FileAnalysis],
    ) -> str:
        """Persist a graph with its records and analyses.

        Args:
            repo_key: Identifier of the repository (e.g. its absolute root).
            graph: Graph or snapshot to persist.
            records: Per-file records matching the graph.
            analyses: Per-file analyses matching the graph.

        Returns:
            The cache key the document was stored under.

        Raises:
            OSError: If the cache directory cannot be written.
        """
        key = self.cache_key(repo_key)
        data: Dict[str, Any] = {
            "schema_version": self.SCHEMA_VERSION,
            "repo_key": repo_key,
            "created_at": time.time(),
            "graph": graph.to_dict(),
            "records": [record.to_dict() for record in sorted(records, key=lambda r: r.path)],
            "analyses": [analysis.to_dict() for analysis in sorted(analyses, key=lambda a: a.path)],
        }

        with self._lock:
            self._write(self._path_for(repo_key), data)
            self._stores += 1

        logger.debug(
            f"Stored graph cache for {repo_key} ({len(data['graph']['entities'])} entities, "
            f"{len(data['graph']['edges'])} edges)"
        )
        return key

    def retrieve(
        self, repo_key: str, diagnostics: Optional[List[Diagnostic]] = None
    ) -> Optional[CachedSnapshot]:
        """Load the cached graph of a repository.

        Corrupted or version-mismatched documents are deleted and reported
        through ``diagnostics``; the caller then runs a full analysis.

        Args:
            repo_key: Identifier of the repository.
            diagnostics: Optional list receiving CacheCorruption or
                CacheVersionMismatch diagnostics.

        Returns:
            CachedSnapshot, or None on a miss, corruption or version mismatch.
        """
        path = self._path_for(repo_key)
        with self._lock:
            if not path.exists():
                self._misses += 1
                return None
            try:
                cached = self._load(path, repo_key)
            except CacheVersionMismatchError as e:
                self._reject(path, repo_key, DiagnosticKind.CACHE_VERSION_MISMATCH, str(e), diagnostics)
                return None
            except CacheCorruptionError as e:
                self._corruptions += 1
                self._reject(path, repo_key, DiagnosticKind.CACHE_CORRUPTION, str(e), diagnostics)
                return None
            self._hits += 1
            return cached

    def invalidate(self, repo_key: str, changed_files: Optional[Iterable[str]] = None) -> bool:
        """Invalidate a repository's cache entry, or only some of its files.

        Args:
            repo_key: Identifier of the repository.
            changed_files: Files to mark stale. None deletes the whole entry.

        Returns:
            True if an entry existed.
        """
        path = self._path_for(repo_key)
        with self._lock:
            if not path.exists():
                return False
            if changed_files is None:
                path.unlink(missing_ok=True)
                logger.debug(f"Invalidated graph cache for {repo_key}")
                return True

            try:
                data = self._read(path)
                records = data["records"]
            except (CacheCorruptionError, KeyError, TypeError) as e:
                logger.warning(f"⚠️ Dropping unreadable graph cache for {repo_key}: {e}")
                path.unlink(missing_ok=True)
                return True

            changed = set(changed_files)
            for record in records:
                if record.get("path") in changed:
                    record["status"] = FileState.STALE
            self._write(path, data)
            logger.debug(f"Marked {len(changed)} cached file(s) stale for {repo_key}")
            return True

    def validate(
        self, snapshot: CachedSnapshot, manifest: Iterable[SourceFile]
    ) -> Tuple[List[str], List[str]]:
        """Compare cached records with the current manifest.

        Returns:
            Tuple of (valid_paths, stale_paths). Stale paths are new files,
            files whose fingerprint changed, files marked stale and recorded
            files missing from the manifest.
        """
        valid: List[str] = []
        stale: List[str] = []
        present = set()
        for source in manifest:
            present.add(source.path)
            record = snapshot.records.get(source.path)
            if (
                record is not None
                and record.status != FileState.STALE
                and record.fingerprint == source.fingerprint
            ):
                valid.append(source.path)
            else:
                stale.append(source.path)
        stale.extend(path for path in snapshot.records if path not in present)
        return sorted(valid), sorted(stale)

    def clear(self) -> int:
        """Delete every cache document.

        Returns:
            Number of documents deleted.
        """
        with self._lock:
            if not self.cache_dir.exists():
                return 0
            removed = 0
            for path in self.cache_dir.glob("*.json"):
                path.unlink(missing_ok=True)
                removed += 1
            return removed

    def get_statistics(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            total_requests = self._hits + self._misses
            entries = len(list(self.cache_dir.glob("*.json"))) if self.cache_dir.exists() else 0
            return {
                "entries": entries,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / total_requests if total_requests > 0 else 0.0,
                "stores": self._stores,
                "corruptions": self._corruptions,
            }

    def _write(self, path: Path, data: Dict[str, Any]) -> None:
        """Write a document atomically."""
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _read(self, path: Path) -> Dict[str, Any]:
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CacheCorruptionError(f"unreadable cache document: {e}") from e
        if not isinstance(data, dict):
            raise CacheCorruptionError("cache document is not a JSON object")
        return data

    def _load(self, path: Path, repo_key: str) -> CachedSnapshot:
        data = self._read(path)
        version = data.get("schema_version")
        if version != self.SCHEMA_VERSION:
            raise CacheVersionMismatchError(
                f"cache schema version {version!r}, expected {self.SCHEMA_VERSION}"
            )

        try:
            graph = CodeGraph.from_dict(data["graph"])
            records = [FileRecord.from_dict(r) for r in data["records"]]
            analyses = [FileAnalysis.from_dict(a) for a in data["analyses"]]
            created_at = float(data.get("created_at", 0.0))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise CacheCorruptionError(f"malformed cache document: {type(e).__name__}: {e}") from e

        if data.get("repo_key") != repo_key:
            raise CacheCorruptionError(f"cache document belongs to {data.get('repo_key')!r}")

        is_valid, errors = graph.validate()
        if not is_valid:
            raise CacheCorruptionError(f"inconsistent cached graph: {errors[0]}")

        return CachedSnapshot(
            repo_key=repo_key,
            cache_key=path.stem,
            graph=graph,
            records={record.path: record for record in records},
            analyses=analyses,
            created_at=created_at,
        )

    def _reject(
        self,
        path: Path,
        repo_key: str,
        kind: str,
        reason: str,
        diagnostics: Optional[List[Diagnostic]],
    ) -> None:
        logger.warning(f"⚠️ Discarding graph cache for {repo_key}: {reason}")
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"Failed to delete cache document {path}: {e}")
        if diagnostics is not None:
            diagnostics.append(
                Diagnostic(kind=kind, path=repo_key, message=f"Graph cache discarded: {reason}")
            )
