# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Core data models for the code graph engine.

This module defines the foundational data structures used throughout the system:
- EntityKind / RelationshipKind: Kinds of graph nodes and edges
- SourceFile: A manifest entry handed to the engine
- Entity: A node of the graph (file, module, directory or declaration)
- Relationship: A directed, typed edge between two entities
- Diagnostic: A recovered problem attached to a file or to the session
- FileAnalysis: Everything one analyzer pass produced for one file
- FileRecord: Bookkeeping the incremental updater keeps per file

All models use JSON-compatible primitives for serialization, so that analyses
and whole graphs can be written to the cache and read back unchanged.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

# Identifier prefix for targets that live outside the analyzed file set
EXTERNAL_PREFIX = "external:"

# Separator between the file path and the in-file qualified name of a symbol
SYMBOL_SEPARATOR = "::"


class EntityKind:
    """Kinds of graph entities.

    Design: Using class constants (not Enum) for JSON-compatible strings.
    """

    FILE = "file"  # opaque file (unsupported language or corrupted content)
    MODULE = "module"  # parsed source file
    DIRECTORY = "directory"  # folder holding analyzed files
    CLASS = "class"  # class Foo:
    FUNCTION = "function"  # module-level def foo():
    METHOD = "method"  # def foo(self): inside a class
    VARIABLE = "variable"  # module- or class-level assignment

    ALL = (FILE, MODULE, DIRECTORY, CLASS, FUNCTION, METHOD, VARIABLE)

    # Kinds that cross-file references can resolve to
    RESOLVABLE = (MODULE, CLASS, FUNCTION, METHOD, VARIABLE)


class RelationshipKind:
    """Kinds of relationships between entities.

    Design: Using class constants (not Enum) for JSON-compatible strings.
    """

    IMPORT = "import"  # import foo / from foo import bar
    CALL = "call"  # foo() or module.foo()
    INHERIT = "inherit"  # class Foo(Bar)
    COMPOSE = "compose"  # structural containment (directory, module, class)
    DATA_FLOW = "data_flow"  # CONFIG = load_config()
    REFERENCE = "reference"  # any other use of a name, including decorators

    ALL = (IMPORT, CALL, INHERIT, COMPOSE, DATA_FLOW, REFERENCE)


class Visibility:
    """Visibility of a declaration, derived from naming conventions."""

    PUBLIC = "public"
    PROTECTED = "protected"  # _name
    PRIVATE = "private"  # __name (but not __dunder__)


class ParseStatus:
    """Outcome of analyzing one file."""

    PARSED = "parsed"
    PARTIAL = "partial"
    UNSUPPORTED = "unsupported"
    CORRUPTED = "corrupted"


class FileState:
    """States of the per-file lifecycle kept by the incremental updater.

    A file is removed from the record set entirely when it is deleted, so
    there is no explicit "removed" state.
    """

    UNANALYZED = "unanalyzed"
    PARSED = ParseStatus.PARSED
    PARTIAL = ParseStatus.PARTIAL
    STALE = "stale"
    UNSUPPORTED = ParseStatus.UNSUPPORTED
    CORRUPTED = ParseStatus.CORRUPTED

    ANALYZED = (PARSED, PARTIAL, UNSUPPORTED, CORRUPTED)

    TRANSITIONS: Dict[str, Tuple[str, ...]] = {
        UNANALYZED: ANALYZED,
        PARSED: (STALE,),
        PARTIAL: (STALE,),
        UNSUPPORTED: (STALE,),
        CORRUPTED: (STALE,),
        STALE: ANALYZED,
    }

    @classmethod
    def can_transition(cls, current: str, new: str) -> bool:
        """Check whether a file may move from one state to another."""
        return new in cls.TRANSITIONS.get(current, ())


class DiagnosticKind:
    """Kinds of recovered problems reported to callers."""

    PARSE_ERROR = "ParseError"
    UNSUPPORTED_LANGUAGE = "UnsupportedLanguage"
    CORRUPTED_FILE = "CorruptedFile"
    UNRESOLVED_REFERENCE = "UnresolvedReference"
    AMBIGUOUS_REFERENCE = "AmbiguousReference"
    CACHE_CORRUPTION = "CacheCorruption"
    CACHE_VERSION_MISMATCH = "CacheVersionMismatch"
    TRAVERSAL_BUDGET_EXCEEDED = "TraversalBudgetExceeded"


class ExternalOrigin:
    """Why a relationship target lies outside the analyzed file set."""

    STDLIB = "stdlib"  # import json
    UNRESOLVED = "unresolved"  # name with no known declaration


def compute_fingerprint(content: bytes) -> str:
    """Compute the content fingerprint used for change detection.

    Args:
        content: Raw file bytes.

    Returns:
        SHA-256 hex digest of the content.
    """
    return hashlib.sha256(content).hexdigest()


def make_entity_id(file_path: str, qualified_name: Optional[str] = None) -> str:
    """Build a stable entity identifier.

    File and module entities are identified by their path alone; symbols
    append their in-file qualified name (e.g. "pkg/mod.py::Service.run").
    Identifiers never contain line numbers, so edits that only move code
    keep every identifier stable.
    """
    if not qualified_name:
        return file_path
    return f"{file_path}{SYMBOL_SEPARATOR}{qualified_name}"


def make_directory_id(dir_path: str) -> str:
    """Build the identifier of a directory entity ("pkg/sub/", root is "./")."""
    if not dir_path or dir_path == ".":
        return "./"
    return f"{dir_path.rstrip('/')}/"


def make_external_id(reference: str) -> str:
    """Build the identifier of a target outside the analyzed file set."""
    return f"{EXTERNAL_PREFIX}{reference}"


def is_external_id(identifier: str) -> bool:
    """Check whether an identifier names an external target."""
    return identifier.startswith(EXTERNAL_PREFIX)


def visibility_for_name(name: str) -> str:
    """Derive declaration visibility from Python naming conventions."""
    if name.startswith("__") and not name.endswith("__"):
        return Visibility.PRIVATE
    if name.startswith("_"):
        return Visibility.PROTECTED
    return Visibility.PUBLIC


@dataclass(frozen=True)
class SourceFile:
    """One manifest entry: a file and its current content.

    The fingerprint is derived from the content bytes on construction; the
    modification time is only a hint and never decides whether a file changed
    unless the updater is configured to trust it.
    """

    path: str  # repository-relative POSIX path
    content: bytes
    language: Optional[str] = None
    mtime: Optional[float] = None
    fingerprint: str = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "fingerprint", compute_fingerprint(self.content))


@dataclass(frozen=True)
class SourceSpan:
    """Source location of an entity (1-based lines, 0-based columns)."""

    start_line: int
    start_col: int = 0
    end_line: int = 0
    end_col: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        return {
            "start_line": self.start_line,
            "start_col": self.start_col,
            "end_line": self.end_line,
            "end_col": self.end_col,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceSpan":
        """Deserialize from JSON-compatible dict."""
        return cls(
            start_line=data["start_line"],
            start_col=data.get("start_col", 0),
            end_line=data.get("end_line", 0),
            end_col=data.get("end_col", 0),
        )


@dataclass(frozen=True)
class EntityMetadata:
    """Optional typed attributes of an entity.

    Only the fields relevant to the entity kind are set; anything a language
    analyzer wants to attach beyond these goes into ``extra``.
    """

    signature: Optional[str] = None  # e.g. "def run(self, timeout=None)"
    docstring: Optional[str] = None  # first line only
    decorators: Tuple[str, ...] = ()
    bases: Tuple[str, ...] = ()
    parent: Optional[str] = None  # in-file qualified name of the container
    is_async: bool = False
    language: Optional[str] = None
    module_name: Optional[str] = None
    degraded: bool = False  # set on partially parsed or corrupted files
    extra: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict, omitting unset fields."""
        result: Dict[str, Any] = {}
        if self.signature is not None:
            result["signature"] = self.signature
        if self.docstring is not None:
            result["docstring"] = self.docstring
        if self.decorators:
            result["decorators"] = list(self.decorators)
        if self.bases:
            result["bases"] = list(self.bases)
        if self.parent is not None:
            result["parent"] = self.parent
        if self.is_async:
            result["is_async"] = True
        if self.language is not None:
            result["language"] = self.language
        if self.module_name is not None:
            result["module_name"] = self.module_name
        if self.degraded:
            result["degraded"] = True
        if self.extra:
            result["extra"] = dict(self.extra)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntityMetadata":
        """Deserialize from JSON-compatible dict."""
        return cls(
            signature=data.get("signature"),
            docstring=data.get("docstring"),
            decorators=tuple(data.get("decorators", ())),
            bases=tuple(data.get("bases", ())),
            parent=data.get("parent"),
            is_async=data.get("is_async", False),
            language=data.get("language"),
            module_name=data.get("module_name"),
            degraded=data.get("degraded", False),
            extra=dict(data.get("extra", {})),
        )


@dataclass(frozen=True)
class Entity:
    """A node of the code graph.

    ``qualified_name`` is the language-level dotted name other files use to
    refer to the entity (e.g. "pkg.mod.Service.run"), while ``id`` is unique
    within the repository and derived from the file path.
    """

    id: str
    name: str
    qualified_name: str
    kind: str  # EntityKind value
    file_path: str
    span: SourceSpan
    visibility: str = Visibility.PUBLIC
    metadata: EntityMetadata = field(default_factory=EntityMetadata)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        result: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "qualified_name": self.qualified_name,
            "kind": self.kind,
            "file_path": self.file_path,
            "span": self.span.to_dict(),
            "visibility": self.visibility,
        }
        metadata = self.metadata.to_dict()
        if metadata:
            result["metadata"] = metadata
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Entity":
        """Deserialize from JSON-compatible dict."""
        return cls(
            id=data["id"],
            name=data["name"],
            qualified_name=data["qualified_name"],
            kind=data["kind"],
            file_path=data["file_path"],
            span=SourceSpan.from_dict(data["span"]),
            visibility=data.get("visibility", Visibility.PUBLIC),
            metadata=EntityMetadata.from_dict(data.get("metadata", {})),
        )


@dataclass(frozen=True)
class RelationshipMetadata:
    """Optional typed attributes of a relationship."""

    line: Optional[int] = None
    column: Optional[int] = None
    alias: Optional[str] = None  # import foo as bar -> "bar"
    import_style: Optional[str] = None  # "import", "from", "wildcard"
    is_conditional: bool = False  # inside if TYPE_CHECKING / try / if
    role: Optional[str] = None  # e.g. "decorator", "metaclass", "base"
    origin: Optional[str] = None  # ExternalOrigin value on external edges
    candidate_count: Optional[int] = None  # set on ambiguous edges
    binding: Optional[str] = None  # qualified name a module-level import binds
    binding_target: Optional[str] = None  # qualified name that binding points to
    extra: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict, omitting unset fields."""
        result: Dict[str, Any] = {}
        for key in (
            "line",
            "column",
            "alias",
            "import_style",
            "role",
            "origin",
            "candidate_count",
            "binding",
            "binding_target",
        ):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.is_conditional:
            result["is_conditional"] = True
        if self.extra:
            result["extra"] = dict(self.extra)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RelationshipMetadata":
        """Deserialize from JSON-compatible dict."""
        return cls(
            line=data.get("line"),
            column=data.get("column"),
            alias=data.get("alias"),
            import_style=data.get("import_style"),
            is_conditional=data.get("is_conditional", False),
            role=data.get("role"),
            origin=data.get("origin"),
            candidate_count=data.get("candidate_count"),
            binding=data.get("binding"),
            binding_target=data.get("binding_target"),
            extra=dict(data.get("extra", {})),
        )


@dataclass(frozen=True)
class Relationship:
    """A directed, typed edge between two entities.

    A relationship without ``target_id`` is *pending*: the analyzer could not
    resolve it inside the file and recorded the qualified names it may refer
    to in ``candidates``. Pending relationships never enter the graph; the
    relationship builder turns them into resolved, ambiguous or external edges.

    Several relationships may share (source, target, kind), e.g. two calls to
    the same function on different lines.
    """

    source_id: str
    kind: str  # RelationshipKind value
    target_id: Optional[str] = None
    external: bool = False
    ambiguous: bool = False
    target_ref: Optional[str] = None  # reference text as written in the source
    candidates: Tuple[str, ...] = ()
    metadata: RelationshipMetadata = field(default_factory=RelationshipMetadata)

    @property
    def is_pending(self) -> bool:
        """Whether the relationship still awaits cross-file resolution."""
        return self.target_id is None

    def edge_key(self) -> Tuple[Any, ...]:
        """Comparable key used to compare edge multisets between graphs."""
        return (
            self.source_id,
            self.target_id or "",
            self.kind,
            self.external,
            self.ambiguous,
            self.target_ref or "",
            self.metadata.line or 0,
            self.metadata.column or 0,
            self.metadata.role or "",
            self.metadata.origin or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        result: Dict[str, Any] = {
            "source_id": self.source_id,
            "kind": self.kind,
        }
        if self.target_id is not None:
            result["target_id"] = self.target_id
        if self.external:
            result["external"] = True
        if self.ambiguous:
            result["ambiguous"] = True
        if self.target_ref is not None:
            result["target_ref"] = self.target_ref
        if self.candidates:
            result["candidates"] = list(self.candidates)
        metadata = self.metadata.to_dict()
        if metadata:
            result["metadata"] = metadata
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Relationship":
        """Deserialize from JSON-compatible dict."""
        return cls(
            source_id=data["source_id"],
            kind=data["kind"],
            target_id=data.get("target_id"),
            external=data.get("external", False),
            ambiguous=data.get("ambiguous", False),
            target_ref=data.get("target_ref"),
            candidates=tuple(data.get("candidates", ())),
            metadata=RelationshipMetadata.from_dict(data.get("metadata", {})),
        )


@dataclass
class Diagnostic:
    """A recovered problem reported alongside analysis results."""

    kind: str  # DiagnosticKind value
    path: str  # file path, or repository key for session diagnostics
    message: str
    line: Optional[int] = None
    detail: Optional[str] = None

    def sort_key(self) -> Tuple[str, int, str, str]:
        return (self.path, self.line or 0, self.kind, self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        result: Dict[str, Any] = {
            "kind": self.kind,
            "path": self.path,
            "message": self.message,
        }
        if self.line is not None:
            result["line"] = self.line
        if self.detail is not None:
            result["detail"] = self.detail
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Diagnostic":
        """Deserialize from JSON-compatible dict."""
        return cls(
            kind=data["kind"],
            path=data["path"],
            message=data["message"],
            line=data.get("line"),
            detail=data.get("detail"),
        )


@dataclass
class FileAnalysis:
    """Everything a language analyzer produced for one file.

    Entities are ordered with the file (or module) entity first. Relationships
    hold both edges resolved inside the file and pending cross-file ones.
    The analysis is kept after merging so that edges can be rebuilt when a
    dependency changes, without parsing the file again.
    """

    path: str
    language: Optional[str]
    fingerprint: str
    status: str  # ParseStatus value
    entities: List[Entity] = field(default_factory=list)
    relationships: List[Relationship] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)

    @property
    def declared_ids(self) -> Tuple[str, ...]:
        """Identifiers of every entity declared by this file."""
        return tuple(entity.id for entity in self.entities)

    @property
    def file_entity(self) -> Optional[Entity]:
        """The file or module entity, if analysis produced one."""
        return self.entities[0] if self.entities else None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        return {
            "path": self.path,
            "language": self.language,
            "fingerprint": self.fingerprint,
            "status": self.status,
            "entities": [entity.to_dict() for entity in self.entities],
            "relationships": [rel.to_dict() for rel in self.relationships],
            "diagnostics": [diag.to_dict() for diag in self.diagnostics],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileAnalysis":
        """Deserialize from JSON-compatible dict."""
        return cls(
            path=data["path"],
            language=data.get("language"),
            fingerprint=data["fingerprint"],
            status=data["status"],
            entities=[Entity.from_dict(e) for e in data.get("entities", [])],
            relationships=[Relationship.from_dict(r) for r in data.get("relationships", [])],
            diagnostics=[Diagnostic.from_dict(d) for d in data.get("diagnostics", [])],
        )


@dataclass(frozen=True)
class FileRecord:
    """Per-file bookkeeping kept by the incremental updater.

    Records are values: the updater replaces a file's record on every state
    change, so a record handed out earlier keeps describing the snapshot it
    was read with.

    Attributes:
        path: Repository-relative POSIX path.
        fingerprint: Content fingerprint at the last analysis.
        declared_ids: Entity identifiers the file contributed to the graph.
        status: Current FileState value.
        language: Language the file was analyzed as (None when unknown).
        mtime: Modification time hint at the last analysis.
        analyzed_at: Wall-clock time of the last analysis.
    """

    path: str
    fingerprint: str
    declared_ids: Tuple[str, ...]
    status: str
    language: Optional[str] = None
    mtime: Optional[float] = None
    analyzed_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        result: Dict[str, Any] = {
            "path": self.path,
            "fingerprint": self.fingerprint,
            "declared_ids": list(self.declared_ids),
            "status": self.status,
            "analyzed_at": self.analyzed_at,
        }
        if self.language is not None:
            result["language"] = self.language
        if self.mtime is not None:
            result["mtime"] = self.mtime
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileRecord":
        """Deserialize from JSON-compatible dict."""
        return cls(
            path=data["path"],
            fingerprint=data["fingerprint"],
            declared_ids=tuple(data.get("declared_ids", ())),
            status=data["status"],
            language=data.get("language"),
            mtime=data.get("mtime"),
            analyzed_at=data.get("analyzed_at", 0.0),
        )
