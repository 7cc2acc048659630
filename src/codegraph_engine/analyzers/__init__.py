# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Language analyzers turning source files into entities and relationships."""

from codegraph_engine.analyzers.base import (
    CorruptedSourceError,
    LanguageAnalyzer,
    PartialTree,
    SyntaxTree,
)
from codegraph_engine.analyzers.opaque_analyzer import OpaqueAnalyzer
from codegraph_engine.analyzers.python_analyzer import PythonAnalyzer
from codegraph_engine.analyzers.registry import AnalyzerRegistry, default_registry

__all__ = [
    "AnalyzerRegistry",
    "CorruptedSourceError",
    "LanguageAnalyzer",
    "OpaqueAnalyzer",
    "PartialTree",
    "PythonAnalyzer",
    "SyntaxTree",
    "default_registry",
]
