# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Graph store for entities and relationships.

CodeGraph keeps entities by identifier plus a forward index (source -> edges)
and a reverse index (target -> edges). Both indices hold the same Relationship
objects, so every forward edge has exactly one reverse entry. Removing an
entity cascades to every edge where it is source or target.

CodeGraph is the single mutable store and is only written by the incremental
updater while it holds its merge lock. Readers work on GraphSnapshot objects,
immutable copies published after each merge.
"""

import logging
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from codegraph_engine.models import Entity, Relationship, is_external_id
from codegraph_engine.traversal import (
    DIRECTION_DEPENDENCIES,
    DIRECTION_DEPENDENTS,
    CancellationToken,
    CycleReport,
    DependencyTree,
    breadth_first,
    find_cycles,
)

logger = logging.getLogger(__name__)


class EntityCollisionError(Exception):
    """Raised when a file declares an identifier another file already owns."""

    pass


class _GraphReader:
    """Read operations shared by CodeGraph and GraphSnapshot.

    Subclasses provide ``_entities``, ``_outgoing`` and ``_incoming`` mappings.
    """

    _entities: Mapping[str, Entity]
    _outgoing: Mapping[str, Sequence[Relationship]]
    _incoming: Mapping[str, Sequence[Relationship]]

    def get_entity(self, entity_id: str) -> Optional[Entity]:
        return self._entities.get(entity_id)

    def has_entity(self, entity_id: str) -> bool:
        return entity_id in self._entities

    def entity_ids(self) -> List[str]:
        return list(self._entities)

    def entities(self) -> List[Entity]:
        return list(self._entities.values())

    def outgoing(self, entity_id: str) -> Tuple[Relationship, ...]:
        """Edges whose source is ``entity_id``."""
        return tuple(self._outgoing.get(entity_id, ()))

    def incoming(self, entity_id: str) -> Tuple[Relationship, ...]:
        """Edges whose target is ``entity_id``."""
        return tuple(self._incoming.get(entity_id, ()))

    def edges(self) -> List[Relationship]:
        """Every edge in the graph, grouped by source."""
        result: List[Relationship] = []
        for bucket in self._outgoing.values():
            result.extend(bucket)
        return result

    def external_ids(self) -> List[str]:
        """Identifiers of external targets referenced by at least one edge."""
        return sorted(key for key in self._incoming if is_external_id(key))

    @property
    def entity_count(self) -> int:
        return len(self._entities)

    @property
    def edge_count(self) -> int:
        return sum(len(bucket) for bucket in self._outgoing.values())

    def dependencies(
        self,
        entity_id: str,
        depth: int = 1,
        kinds: Optional[Iterable[str]] = None,
        token: Optional[CancellationToken] = None,
    ) -> DependencyTree:
        """Entities reachable from ``entity_id`` within ``depth`` hops."""
        return breadth_first(self, entity_id, depth, DIRECTION_DEPENDENCIES, kinds, token)

    def dependents(
        self,
        entity_id: str,
        depth: int = 1,
        kinds: Optional[Iterable[str]] = None,
        token: Optional[CancellationToken] = None,
    ) -> DependencyTree:
        """Entities that reach ``entity_id`` within ``depth`` hops."""
        return breadth_first(self, entity_id, depth, DIRECTION_DEPENDENTS, kinds, token)

    def find_cycles(
        self,
        kinds: Optional[Iterable[str]] = None,
        token: Optional[CancellationToken] = None,
    ) -> CycleReport:
        return find_cycles(self, kinds, token)

    def validate(self) -> Tuple[bool, List[str]]:
        """Check index consistency.

        Verifies that every edge endpoint is a known entity or an external
        target, and that each forward edge appears exactly once in the
        reverse index.

        Returns:
            Tuple of (is_valid, error_messages).
        """
        errors: List[str] = []
        forward_total = 0

        for source_id, bucket in self._outgoing.items():
            if not bucket:
                errors.append(f"Empty forward bucket for {source_id}")
            if source_id not in self._entities:
                errors.append(f"Edge source {source_id} is not a known entity")
            for edge in bucket:
                forward_total += 1
                target_id = edge.target_id
                if target_id is None:
                    errors.append(f"Pending edge from {source_id} stored in graph")
                    continue
                if edge.external:
                    if not is_external_id(target_id):
                        errors.append(f"External edge {source_id} -> {target_id} lacks prefix")
                elif target_id not in self._entities:
                    errors.append(f"Edge target {target_id} is neither known nor external")
                matches = sum(1 for rev in self._incoming.get(target_id, ()) if rev is edge)
                if matches != 1:
                    errors.append(
                        f"Edge {source_id} -> {target_id} has {matches} reverse entries"
                    )

        reverse_total = sum(len(bucket) for bucket in self._incoming.values())
        if reverse_total != forward_total:
            errors.append(
                f"Reverse index holds {reverse_total} entries for {forward_total} edges"
            )

        return (len(errors) == 0, errors)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict (entities and edges sorted)."""
        entities = sorted(self._entities.values(), key=lambda e: e.id)
        edges = sorted(self.edges(), key=lambda e: e.edge_key())
        return {
            "entities": [entity.to_dict() for entity in entities],
            "edges": [edge.to_dict() for edge in edges],
        }


class GraphSnapshot(_GraphReader):
    """Immutable view of the graph at one point in time.

    Snapshots are safe to share between threads: their mappings are read-only
    proxies over containers no writer holds a reference to.
    """

    def __init__(
        self,
        entities: Dict[str, Entity],
        outgoing: Dict[str, Tuple[Relationship, ...]],
        incoming: Dict[str, Tuple[Relationship, ...]],
        version: int = 0,
    ):
        self._entities = MappingProxyType(entities)
        self._outgoing = MappingProxyType(outgoing)
        self._incoming = MappingProxyType(incoming)
        self.version = version

    @classmethod
    def empty(cls) -> "GraphSnapshot":
        return cls({}, {}, {}, version=0)


class CodeGraph(_GraphReader):
    """Mutable graph store with forward and reverse edge indices.

    Thread Safety:
    - NOT thread-safe: all writes go through the incremental updater,
      which serializes them with its merge lock
    - Readers should use snapshot() instead of the live store
    """

    def __init__(self) -> None:
        self._entities: Dict[str, Entity] = {}
        self._outgoing: Dict[str, List[Relationship]] = {}
        self._incoming: Dict[str, List[Relationship]] = {}
        self._version = 0

    @property
    def version(self) -> int:
        """Counter incremented by every mutation."""
        return self._version

    def add_entities(self, entities: Iterable[Entity]) -> None:
        """Add or replace entities.

        Raises:
            EntityCollisionError: If an identifier is already owned by an
                entity declared in a different file.
        """
        for entity in entities:
            existing = self._entities.get(entity.id)
            if existing is not None and existing.file_path != entity.file_path:
                raise EntityCollisionError(
                    f"Identifier {entity.id} declared by {entity.file_path} "
                    f"is already owned by {existing.file_path}"
                )
            self._entities[entity.id] = entity
        self._version += 1

    def remove_entities(self, entity_ids: Iterable[str]) -> int:
        """Remove entities together with every edge touching them.

        Returns:
            Number of entities removed. Unknown identifiers are skipped.
        """
        removed = 0
        for entity_id in entity_ids:
            if entity_id not in self._entities:
                continue
            for edge in list(self._outgoing.get(entity_id, ())):
                self._remove_edge(edge)
            for edge in list(self._incoming.get(entity_id, ())):
                self._remove_edge(edge)
            del self._entities[entity_id]
            removed += 1
        if removed:
            self._version += 1
        return removed

    def add_edges(self, edges: Iterable[Relationship]) -> None:
        """Add resolved edges to both indices.

        Raises:
            ValueError: If an edge is still pending, its source is unknown, or
                its target is neither a known entity nor an external target.
        """
        for edge in edges:
            if edge.target_id is None:
                raise ValueError(f"Cannot store pending relationship from {edge.source_id}")
            if edge.source_id not in self._entities:
                raise ValueError(f"Unknown edge source: {edge.source_id}")
            if edge.external:
                if not is_external_id(edge.target_id):
                    raise ValueError(f"External edge target lacks prefix: {edge.target_id}")
            elif edge.target_id not in self._entities:
                raise ValueError(f"Unknown edge target: {edge.target_id}")

            self._outgoing.setdefault(edge.source_id, []).append(edge)
            self._incoming.setdefault(edge.target_id, []).append(edge)
        self._version += 1

    def remove_edges_for_source(self, entity_id: str) -> List[Relationship]:
        """Remove every outgoing edge of ``entity_id``.

        Returns:
            The removed edges.
        """
        removed = list(self._outgoing.get(entity_id, ()))
        for edge in removed:
            self._remove_edge(edge)
        if removed:
            self._version += 1
        return removed

    def clear(self) -> None:
        self._entities.clear()
        self._outgoing.clear()
        self._incoming.clear()
        self._version += 1

    def snapshot(self) -> GraphSnapshot:
        """Publish an immutable copy of the current state."""
        return GraphSnapshot(
            entities=dict(self._entities),
            outgoing={key: tuple(bucket) for key, bucket in self._outgoing.items()},
            incoming={key: tuple(bucket) for key, bucket in self._incoming.items()},
            version=self._version,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CodeGraph":
        """Deserialize a graph written by to_dict()."""
        graph = cls()
        graph.add_entities(Entity.from_dict(e) for e in data.get("entities", []))
        graph.add_edges(Relationship.from_dict(r) for r in data.get("edges", []))
        return graph

    def _remove_edge(self, edge: Relationship) -> None:
        self._discard(self._outgoing, edge.source_id, edge)
        if edge.target_id is not None:
            self._discard(self._incoming, edge.target_id, edge)

    @staticmethod
    def _discard(index: Dict[str, List[Relationship]], key: str, edge: Relationship) -> None:
        # Identity, not equality: equal edges on the same line are distinct entries
        bucket = index.get(key)
        if not bucket:
            return
        for position, candidate in enumerate(bucket):
            if candidate is edge:
                del bucket[position]
                break
        if not bucket:
            del index[key]
