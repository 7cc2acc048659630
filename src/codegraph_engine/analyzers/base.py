# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Base interface for language analyzer plugins.

Every language the engine understands is handled by a LanguageAnalyzer. An
analyzer turns one SourceFile into a FileAnalysis in three stages:

1. parse(): source text -> SyntaxTree (or PartialTree when only part of the
   file could be parsed)
2. extract_symbols(): tree -> ordered entities, file/module entity first
3. detect_relationships(): tree + entities -> relationships, either resolved
   inside the file or pending cross-file resolution

analyze() drives those stages and converts recoverable failures into
diagnostics, so a bad file never aborts analysis of the others. Analyzers
hold no per-file state and may be shared between worker threads.
"""

import logging
import posixpath
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

from codegraph_engine.models import (
    Diagnostic,
    DiagnosticKind,
    Entity,
    EntityKind,
    EntityMetadata,
    FileAnalysis,
    ParseStatus,
    Relationship,
    SourceFile,
    SourceSpan,
    make_entity_id,
)

logger = logging.getLogger(__name__)


class CorruptedSourceError(Exception):
    """Raised by parse() when the input cannot be treated as source text."""

    pass


@dataclass
class SyntaxTree:
    """Parsed representation of one file.

    Attributes:
        source: The manifest entry that was parsed.
        text: Decoded source text.
        root: Language-specific tree (an ast.Module for Python).
        diagnostics: Problems found while parsing.
    """

    source: SourceFile
    text: str
    root: Any
    diagnostics: List[Diagnostic] = field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        return False

    @property
    def path(self) -> str:
        return self.source.path


@dataclass
class PartialTree(SyntaxTree):
    """Tree holding only the parts of a file that parsed successfully."""

    @property
    def is_partial(self) -> bool:
        return True


def line_count(content: bytes) -> int:
    """Number of lines in raw content (a trailing newline ends the last line)."""
    if not content:
        return 0
    return content.count(b"\n") + (0 if content.endswith(b"\n") else 1)


def opaque_file_entity(source: SourceFile, degraded: bool = False) -> Entity:
    """Build the single entity that represents a file whose contents are not analyzed."""
    lines = max(line_count(source.content), 1)
    return Entity(
        id=make_entity_id(source.path),
        name=posixpath.basename(source.path),
        qualified_name=source.path,
        kind=EntityKind.FILE,
        file_path=source.path,
        span=SourceSpan(start_line=1, end_line=lines),
        metadata=EntityMetadata(language=source.language, degraded=degraded),
    )


def opaque_analysis(source: SourceFile, status: str, diagnostic: Diagnostic) -> FileAnalysis:
    """Analysis for a file represented only by an opaque file entity."""
    return FileAnalysis(
        path=source.path,
        language=source.language,
        fingerprint=source.fingerprint,
        status=status,
        entities=[opaque_file_entity(source, degraded=status == ParseStatus.CORRUPTED)],
        relationships=[],
        diagnostics=[diagnostic],
    )


class LanguageAnalyzer(ABC):
    """Abstract base class for language analyzer plugins.

    Subclasses implement the three stages for one language. New languages are
    registered in an AnalyzerRegistry without touching the graph store or the
    incremental updater.
    """

    MAX_FILE_LINES = 10000  # Files longer than this are treated as corrupted
    MAX_FILE_SIZE_BYTES = 10 * 1024 * 1024  # 10MB: Prevent memory exhaustion

    def __init__(
        self,
        max_file_lines: int = MAX_FILE_LINES,
        max_file_size_bytes: int = MAX_FILE_SIZE_BYTES,
    ):
        self.max_file_lines = max_file_lines
        self.max_file_size_bytes = max_file_size_bytes

    @abstractmethod
    def language(self) -> str:
        """Return the language identifier (e.g. "python")."""
        pass

    @abstractmethod
    def extensions(self) -> Tuple[str, ...]:
        """Return the file extensions handled by this analyzer (e.g. (".py",))."""
        pass

    @abstractmethod
    def parse(self, source: SourceFile) -> SyntaxTree:
        """Parse source into a tree.

        Returns:
            SyntaxTree, or PartialTree when only part of the file parsed.

        Raises:
            CorruptedSourceError: If the content cannot be parsed at all.
        """
        pass

    @abstractmethod
    def extract_symbols(self, tree: SyntaxTree) -> List[Entity]:
        """Extract entities from a tree, file/module entity first."""
        pass

    @abstractmethod
    def detect_relationships(self, tree: SyntaxTree, symbols: List[Entity]) -> List[Relationship]:
        """Detect relationships originating in this file."""
        pass

    def analyze(self, source: SourceFile) -> FileAnalysis:
        """Run the full pipeline for one file.

        Error Recovery:
        - Oversized or binary content: opaque entity, status corrupted
        - Parser failure: opaque entity, status corrupted
        - Syntax errors: handled by parse() returning a PartialTree
        """
        problem = self.check_corruption(source)
        if problem is not None:
            logger.warning(f"⚠️ Skipping analysis of {source.path}: {problem}")
            return self.corrupted(source, problem)

        try:
            tree = self.parse(source)
        except CorruptedSourceError as e:
            logger.warning(f"⚠️ Could not parse {source.path}: {e}")
            return self.corrupted(source, str(e))

        symbols = self.extract_symbols(tree)
        relationships = self.detect_relationships(tree, symbols)
        status = ParseStatus.PARTIAL if tree.is_partial else ParseStatus.PARSED

        logger.debug(
            f"Analyzed {source.path}: {len(symbols)} entities, "
            f"{len(relationships)} relationships ({status})"
        )
        return FileAnalysis(
            path=source.path,
            language=self.language(),
            fingerprint=source.fingerprint,
            status=status,
            entities=symbols,
            relationships=relationships,
            diagnostics=list(tree.diagnostics),
        )

    def check_corruption(self, source: SourceFile) -> Optional[str]:
        """Return a reason when content must not be parsed, else None."""
        size = len(source.content)
        if size > self.max_file_size_bytes:
            return f"{size} bytes exceeds limit ({self.max_file_size_bytes})"
        if b"\x00" in source.content:
            return "binary content (NUL bytes)"
        lines = line_count(source.content)
        if lines > self.max_file_lines:
            return f"{lines} lines exceeds limit ({self.max_file_lines})"
        return None

    def corrupted(self, source: SourceFile, reason: str) -> FileAnalysis:
        """Analysis for a file whose content could not be processed."""
        diagnostic = Diagnostic(
            kind=DiagnosticKind.CORRUPTED_FILE,
            path=source.path,
            message=f"File could not be analyzed: {reason}",
        )
        return opaque_analysis(source, ParseStatus.CORRUPTED, diagnostic)

    def decode(self, source: SourceFile) -> str:
        """Decode content as UTF-8, falling back to latin-1."""
        try:
            return source.content.decode("utf-8")
        except UnicodeDecodeError:
            # latin-1 accepts all byte values
            logger.warning(f"⚠️ File {source.path} is not UTF-8, using latin-1 fallback encoding")
            return source.content.decode("latin-1")
