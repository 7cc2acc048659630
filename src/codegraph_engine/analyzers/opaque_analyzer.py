# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Fallback analyzer for languages without a dedicated analyzer.

Files in unsupported languages are still part of the repository: they get a
single opaque file entity (no symbols, no relationships of their own) so that
directory containment and file counts stay complete.
"""

import logging
from typing import List, Tuple

from codegraph_engine.analyzers.base import LanguageAnalyzer, SyntaxTree, opaque_analysis, opaque_file_entity
from codegraph_engine.models import (
    Diagnostic,
    DiagnosticKind,
    Entity,
    FileAnalysis,
    ParseStatus,
    Relationship,
    SourceFile,
)

logger = logging.getLogger(__name__)

OPAQUE_LANGUAGE = "opaque"


class OpaqueAnalyzer(LanguageAnalyzer):
    """Analyzer that represents any file as one opaque entity."""

    def language(self) -> str:
        return OPAQUE_LANGUAGE

    def extensions(self) -> Tuple[str, ...]:
        return ()

    def parse(self, source: SourceFile) -> SyntaxTree:
        return SyntaxTree(source=source, text="", root=None)

    def extract_symbols(self, tree: SyntaxTree) -> List[Entity]:
        return [opaque_file_entity(tree.source)]

    def detect_relationships(self, tree: SyntaxTree, symbols: List[Entity]) -> List[Relationship]:
        return []

    def analyze(self, source: SourceFile) -> FileAnalysis:
        language = source.language or "unknown"
        logger.debug(f"No analyzer for {source.path} (language: {language})")
        diagnostic = Diagnostic(
            kind=DiagnosticKind.UNSUPPORTED_LANGUAGE,
            path=source.path,
            message=f"No analyzer registered for language '{language}'",
        )
        return opaque_analysis(source, ParseStatus.UNSUPPORTED, diagnostic)
