# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Relationship builder: cross-file resolution of pending relationships.

This module implements phase 2 of the two-phase analysis approach:
Phase 1: SourceFile -> FileAnalysis (done by language analyzers)
Phase 2: FileAnalysis (all files) -> resolved graph edges (done here)

A pending relationship carries the qualified names it may refer to
("pkg.util.helper"). The builder matches them against:
- declarations of every analyzed file (definition index)
- module-level import bindings, so that re-exports resolve
  ("pkg.helper" bound in pkg/__init__.py to "pkg.util.helper")
- wildcard bindings ("pkg.*" bound to "pkg.core")

Outcomes per pending relationship:
- exactly one match: a resolved edge
- several matches: one edge per match, each tagged ambiguous, plus an
  AmbiguousReference diagnostic (no guessing)
- no match: an external edge ("external:<name>"), tagged with origin
  stdlib or unresolved; unresolved ones also get an UnresolvedReference
  diagnostic

The builder remembers which qualified names each file's resolution looked
up. The incremental updater uses that to find the unchanged files whose
edges may change when another file is edited.
"""

import logging
import sys
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Set, Tuple

from codegraph_engine.models import (
    Diagnostic,
    DiagnosticKind,
    EntityKind,
    ExternalOrigin,
    FileAnalysis,
    Relationship,
    make_external_id,
)

logger = logging.getLogger(__name__)

STDLIB_MODULES = frozenset(sys.stdlib_module_names)


class RelationshipBuilder:
    """Resolves pending relationships against all analyzed files.

    The builder:
    1. Stores the FileAnalysis of every file
    2. Indexes declarations by qualified name and import bindings by the
       name they bind
    3. Turns a file's pending relationships into graph edges on request

    Thread Safety:
    - NOT thread-safe: the incremental updater calls it under its merge lock

    Usage:
        builder = RelationshipBuilder()
        builder.add_file_analysis(analysis_a)
        builder.add_file_analysis(analysis_b)
        edges, diagnostics = builder.build_relationships_for_file("b.py")
    """

    MAX_ALIAS_DEPTH = 8  # Re-export chains longer than this are not followed

    def __init__(self) -> None:
        # Map path -> FileAnalysis for all analyzed files
        self._analyses: Dict[str, FileAnalysis] = {}

        # Index: qualified name -> sorted entity ids declaring it
        self._definitions: Dict[str, List[str]] = {}

        # Index: binding name -> list of (path, bound target), sorted by path
        self._aliases: Dict[str, List[Tuple[str, str]]] = {}

        # Names each file's last resolution looked up, and the reverse index
        self._lookups: Dict[str, Set[str]] = {}
        self._consumers: Dict[str, Set[str]] = {}

        self._tried: Optional[Set[str]] = None

    def add_file_analysis(self, analysis: FileAnalysis) -> None:
        """Add (or replace) the analysis of a file and index its names."""
        if analysis.path in self._analyses:
            self.remove_file_analysis(analysis.path)
        self._analyses[analysis.path] = analysis

        for entity in analysis.entities:
            if entity.kind not in EntityKind.RESOLVABLE or not entity.qualified_name:
                continue
            ids = self._definitions.setdefault(entity.qualified_name, [])
            ids.append(entity.id)
            ids.sort()

        for binding, target in self._bindings(analysis):
            entries = self._aliases.setdefault(binding, [])
            entries.append((analysis.path, target))
            entries.sort()

    def remove_file_analysis(self, path: str) -> None:
        """Remove a file's analysis, its index entries and its lookups."""
        analysis = self._analyses.pop(path, None)
        if analysis is None:
            return

        for entity in analysis.entities:
            ids = self._definitions.get(entity.qualified_name)
            if ids is None:
                continue
            self._definitions[entity.qualified_name] = [i for i in ids if i != entity.id]
            if not self._definitions[entity.qualified_name]:
                del self._definitions[entity.qualified_name]

        for binding, _ in self._bindings(analysis):
            entries = self._aliases.get(binding)
            if entries is None:
                continue
            self._aliases[binding] = [entry for entry in entries if entry[0] != path]
            if not self._aliases[binding]:
                del self._aliases[binding]

        self._forget_lookups(path)

    def get_file_analysis(self, path: str) -> Optional[FileAnalysis]:
        return self._analyses.get(path)

    def paths(self) -> List[str]:
        return sorted(self._analyses)

    def clear(self) -> None:
        """Clear all stored analyses and indices."""
        self._analyses.clear()
        self._definitions.clear()
        self._aliases.clear()
        self._lookups.clear()
        self._consumers.clear()

    @staticmethod
    def _bindings(analysis: FileAnalysis) -> List[Tuple[str, str]]:
        return [
            (rel.metadata.binding, rel.metadata.binding_target)
            for rel in analysis.relationships
            if rel.metadata.binding and rel.metadata.binding_target
        ]

    def resolution_keys(self, analysis: Optional[FileAnalysis]) -> Set[Tuple[str, Optional[str]]]:
        """What this analysis contributes to name resolution in other files.

        Declarations appear as (qualified_name, None), import bindings as
        (binding, bound target).
        """
        if analysis is None:
            return set()
        keys: Set[Tuple[str, Optional[str]]] = {
            (entity.qualified_name, None)
            for entity in analysis.entities
            if entity.kind in EntityKind.RESOLVABLE and entity.qualified_name
        }
        keys.update(self._bindings(analysis))
        return keys

    @staticmethod
    def changed_names(
        old: Set[Tuple[str, Optional[str]]], new: Set[Tuple[str, Optional[str]]]
    ) -> Set[str]:
        """Names whose declarations or bindings differ between two key sets.

        Used by the incremental updater: only files that looked up one of
        these names can resolve differently after the edit.
        """
        return {name for name, _ in old ^ new}

    def consumers_of(self, names: Iterable[str]) -> Set[str]:
        """Paths whose last resolution looked up any of ``names``."""
        consumers: Set[str] = set()
        for name in names:
            consumers.update(self._consumers.get(name, ()))
        return consumers

    def lookups_of(self, path: str) -> Set[str]:
        return set(self._lookups.get(path, ()))

    def _forget_lookups(self, path: str) -> None:
        for name in self._lookups.pop(path, ()):
            consumers = self._consumers.get(name)
            if consumers is None:
                continue
            consumers.discard(path)
            if not consumers:
                del self._consumers[name]

    def build_relationships_for_file(
        self, path: str
    ) -> Tuple[List[Relationship], List[Diagnostic]]:
        """Build the graph edges of a single file.

        Local relationships pass through unchanged; pending ones are resolved
        against the current indices. The names looked up along the way replace
        the file's previous lookup set.

        Args:
            path: Path of an analyzed file.

        Returns:
            Tuple of (edges ready for the graph store, resolution diagnostics).
            Both are empty for unknown paths.
        """
        analysis = self._analyses.get(path)
        if analysis is None:
            return [], []

        self._forget_lookups(path)
        self._tried = set()
        edges: List[Relationship] = []
        diagnostics: List[Diagnostic] = []
        try:
            for rel in analysis.relationships:
                if not rel.is_pending:
                    edges.append(rel)
                    continue
                resolved, diagnostic = self._resolve_relationship(path, rel)
                edges.extend(resolved)
                if diagnostic is not None:
                    diagnostics.append(diagnostic)
            tried = self._tried
        finally:
            self._tried = None

        self._lookups[path] = tried
        for name in tried:
            self._consumers.setdefault(name, set()).add(path)
        return edges, diagnostics

    def _resolve_relationship(
        self, path: str, rel: Relationship
    ) -> Tuple[List[Relationship], Optional[Diagnostic]]:
        targets = self._match(rel.candidates)
        depth = int(rel.metadata.extra.get("attribute_depth", "0"))
        # Attribute chains through an import: os.path.join -> os.path -> os
        for dropped in range(1, depth + 1):
            if targets:
                break
            shorter = [c.rsplit(".", dropped)[0] for c in rel.candidates if c.count(".") >= dropped]
            targets = self._match(shorter)

        if len(targets) == 1:
            return [replace(rel, target_id=targets[0], candidates=())], None

        if targets:
            metadata = replace(rel.metadata, candidate_count=len(targets))
            edges = [
                replace(rel, target_id=target, ambiguous=True, candidates=(), metadata=metadata)
                for target in targets
            ]
            diagnostic = Diagnostic(
                kind=DiagnosticKind.AMBIGUOUS_REFERENCE,
                path=path,
                message=f"Ambiguous reference '{rel.target_ref}' matches {len(targets)} entities",
                line=rel.metadata.line,
                detail=", ".join(targets),
            )
            return edges, diagnostic

        reference = rel.candidates[0] if rel.candidates else (rel.target_ref or "?")
        origin = (
            ExternalOrigin.STDLIB
            if reference.split(".")[0] in STDLIB_MODULES
            else ExternalOrigin.UNRESOLVED
        )
        edge = replace(
            rel,
            target_id=make_external_id(reference),
            external=True,
            candidates=(),
            metadata=replace(rel.metadata, origin=origin),
        )
        if origin == ExternalOrigin.STDLIB:
            return [edge], None
        diagnostic = Diagnostic(
            kind=DiagnosticKind.UNRESOLVED_REFERENCE,
            path=path,
            message=f"Unresolved reference '{rel.target_ref or reference}'",
            line=rel.metadata.line,
            detail=f"{rel.kind} from {rel.source_id}",
        )
        return [edge], diagnostic

    def _match(self, candidates: Iterable[str]) -> List[str]:
        found: Set[str] = set()
        for candidate in candidates:
            found.update(self._resolve_name(candidate, 0, frozenset()))
        return sorted(found)

    def _resolve_name(self, name: str, depth: int, visited: frozenset) -> List[str]:
        """Resolve a qualified name to entity ids, following import bindings.

        Order: exact declaration, exact binding, then bindings of successively
        shorter prefixes ("pkg.sub.Cls.method" via "pkg.sub"). The prefix walk
        stops at the first prefix that is itself declared: a declared module
        or class does not have undeclared members.
        """
        self._record(name)
        ids = self._definitions.get(name)
        if ids:
            return list(ids)
        if depth >= self.MAX_ALIAS_DEPTH or name in visited:
            return []
        visited = visited | {name}

        found: Set[str] = set()
        for _, target in self._aliases.get(name, ()):
            found.update(self._resolve_name(target, depth + 1, visited))
        if found:
            return sorted(found)

        parts = name.split(".")
        for size in range(len(parts) - 1, 0, -1):
            prefix = ".".join(parts[:size])
            rest = ".".join(parts[size:])
            self._record(prefix)
            self._record(f"{prefix}.*")
            for _, target in self._aliases.get(prefix, ()):
                found.update(self._resolve_name(f"{target}.{rest}", depth + 1, visited))
            for _, target in self._aliases.get(f"{prefix}.*", ()):
                found.update(self._resolve_name(f"{target}.{rest}", depth + 1, visited))
            if found:
                return sorted(found)
            if prefix in self._definitions:
                break
        return []

    def _record(self, name: str) -> None:
        if self._tried is not None:
            self._tried.add(name)
