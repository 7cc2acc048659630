# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Code Graph Engine: incremental code graph of a source repository."""

from .analyzers import AnalyzerRegistry, LanguageAnalyzer, PythonAnalyzer, default_registry
from .cache import CachedSnapshot, GraphCache
from .config import Config, ConfigurationError
from .engine import CodeGraphEngine
from .graph import CodeGraph, EntityCollisionError, GraphSnapshot
from .graph_updater import GraphUpdater, UpdateResult
from .models import (
    Diagnostic,
    DiagnosticKind,
    Entity,
    EntityKind,
    ExternalOrigin,
    FileAnalysis,
    FileRecord,
    FileState,
    Relationship,
    RelationshipKind,
    SourceFile,
)
from .query_api import QueryAPI
from .relationship_builder import RelationshipBuilder
from .scanner import SourceScanner
from .traversal import CancellationToken, CycleReport, DependencyTree, PathResult

__version__ = "0.1.0"

__all__ = [
    "CodeGraphEngine",
    "QueryAPI",
    "Config",
    "ConfigurationError",
    "CodeGraph",
    "GraphSnapshot",
    "EntityCollisionError",
    "GraphUpdater",
    "UpdateResult",
    "RelationshipBuilder",
    "GraphCache",
    "CachedSnapshot",
    "SourceScanner",
    "AnalyzerRegistry",
    "LanguageAnalyzer",
    "PythonAnalyzer",
    "default_registry",
    "CancellationToken",
    "CycleReport",
    "DependencyTree",
    "PathResult",
    "Diagnostic",
    "DiagnosticKind",
    "Entity",
    "EntityKind",
    "ExternalOrigin",
    "FileAnalysis",
    "FileRecord",
    "FileState",
    "Relationship",
    "RelationshipKind",
    "SourceFile",
]
