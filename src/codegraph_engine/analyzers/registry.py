# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Registry mapping languages and file extensions to analyzers.

Languages without a registered analyzer fall back to the OpaqueAnalyzer, so
every file in the manifest is represented in the graph.
"""

import logging
import posixpath
from typing import Dict, List, Optional, Sequence

from codegraph_engine.analyzers.base import LanguageAnalyzer
from codegraph_engine.analyzers.opaque_analyzer import OpaqueAnalyzer
from codegraph_engine.analyzers.python_analyzer import PythonAnalyzer
from codegraph_engine.models import SourceFile

logger = logging.getLogger(__name__)

# Extensions recognized even when no analyzer handles the language yet
KNOWN_EXTENSIONS: Dict[str, str] = {
    ".c": "c",
    ".cc": "cpp",
    ".cpp": "cpp",
    ".cs": "csharp",
    ".go": "go",
    ".h": "c",
    ".hpp": "cpp",
    ".java": "java",
    ".js": "javascript",
    ".jsx": "javascript",
    ".kt": "kotlin",
    ".php": "php",
    ".rb": "ruby",
    ".rs": "rust",
    ".scala": "scala",
    ".swift": "swift",
    ".ts": "typescript",
    ".tsx": "typescript",
}


class AnalyzerRegistry:
    """Registry of language analyzers.

    Thread Safety:
    - Register all analyzers during initialization; lookups afterwards are
      read-only and safe from worker threads
    """

    def __init__(self, fallback: Optional[LanguageAnalyzer] = None) -> None:
        self._analyzers: Dict[str, LanguageAnalyzer] = {}
        self._extensions: Dict[str, str] = dict(KNOWN_EXTENSIONS)
        self._fallback = fallback if fallback is not None else OpaqueAnalyzer()

    def register(self, analyzer: LanguageAnalyzer) -> None:
        """Register an analyzer for its language and extensions.

        Raises:
            TypeError: If analyzer is not a LanguageAnalyzer instance.
        """
        if not isinstance(analyzer, LanguageAnalyzer):
            raise TypeError(f"Analyzer must be a LanguageAnalyzer instance, got {type(analyzer)}")

        language = analyzer.language()
        if language in self._analyzers:
            logger.warning(f"Replacing analyzer for language '{language}'")
        self._analyzers[language] = analyzer
        for extension in analyzer.extensions():
            self._extensions[extension.lower()] = language

        logger.debug(f"Registered analyzer for '{language}' ({', '.join(analyzer.extensions())})")

    def register_extension(self, extension: str, language: str) -> None:
        """Map an additional file extension to a language."""
        if not extension.startswith("."):
            extension = f".{extension}"
        self._extensions[extension.lower()] = language

    def language_for_path(self, path: str) -> Optional[str]:
        _, extension = posixpath.splitext(path)
        return self._extensions.get(extension.lower())

    def get(self, language: Optional[str]) -> Optional[LanguageAnalyzer]:
        if language is None:
            return None
        return self._analyzers.get(language)

    def analyzer_for(self, source: SourceFile) -> LanguageAnalyzer:
        """Pick the analyzer for a manifest entry (opaque fallback)."""
        language = source.language or self.language_for_path(source.path)
        analyzer = self.get(language)
        return analyzer if analyzer is not None else self._fallback

    def extension_map(self) -> Dict[str, str]:
        """Copy of the extension -> language mapping."""
        return dict(self._extensions)

    def languages(self) -> List[str]:
        return sorted(self._analyzers)

    def count(self) -> int:
        return len(self._analyzers)

    def clear(self) -> None:
        """Remove all registered analyzers. Used for testing and reconfiguration."""
        self._analyzers.clear()
        self._extensions = dict(KNOWN_EXTENSIONS)


def default_registry(
    max_file_lines: int = LanguageAnalyzer.MAX_FILE_LINES,
    max_file_size_bytes: int = LanguageAnalyzer.MAX_FILE_SIZE_BYTES,
    max_recursion_depth: int = PythonAnalyzer.AST_MAX_RECURSION_DEPTH,
    language_extensions: Optional[Dict[str, str]] = None,
    source_roots: Sequence[str] = ("src",),
) -> AnalyzerRegistry:
    """Build a registry with the Python analyzer and any extra extensions."""
    registry = AnalyzerRegistry()
    python = PythonAnalyzer(
        max_file_lines=max_file_lines,
        max_file_size_bytes=max_file_size_bytes,
        max_recursion_depth=max_recursion_depth,
        source_roots=source_roots,
    )
    registry.register(python)
    for extension, language in (language_extensions or {}).items():
        registry.register_extension(extension, language)
    return registry
