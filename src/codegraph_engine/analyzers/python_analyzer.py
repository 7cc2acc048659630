# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Python AST analyzer for symbol and relationship extraction.

This module implements the analysis pipeline for Python files with:
- UTF-8 decoding with latin-1 fallback
- File size and line limits (oversized files are treated as corrupted)
- AST parsing with recovery of the top-level blocks that still parse
- Symbol extraction for modules, classes, functions, methods and variables
- A single AST traversal dispatching every node to detector plugins
- Recursion depth limits during traversal
"""

import ast
import logging
import posixpath
import re
from dataclasses import dataclass, field, replace
from typing import List, Optional, Sequence, Tuple

from codegraph_engine.analyzers.base import (
    CorruptedSourceError,
    LanguageAnalyzer,
    PartialTree,
    SyntaxTree,
    line_count,
)
from codegraph_engine.detectors.base import RelationshipDetector
from codegraph_engine.detectors.context import (
    Declaration,
    ModuleContext,
    Scope,
    comprehension_frame,
    function_frame,
    iter_declarations,
    module_name_for_path,
)
from codegraph_engine.detectors.registry import DetectorRegistry, default_detector_registry
from codegraph_engine.models import (
    Diagnostic,
    DiagnosticKind,
    Entity,
    EntityKind,
    EntityMetadata,
    Relationship,
    RelationshipKind,
    RelationshipMetadata,
    SourceFile,
    SourceSpan,
    make_entity_id,
    visibility_for_name,
)

logger = logging.getLogger(__name__)

PYTHON_LANGUAGE = "python"

# Lines that continue the previous top-level block instead of starting one
_CONTINUATION = re.compile(r"^(else|elif|except|finally)\b|^[)\]}]")

_COMPREHENSIONS = (ast.ListComp, ast.SetComp, ast.DictComp, ast.GeneratorExp)


@dataclass
class _Traversal:
    """Per-call traversal state (the analyzer itself stays stateless)."""

    path: str
    context: ModuleContext
    detectors: Sequence[RelationshipDetector]
    relationships: List[Relationship] = field(default_factory=list)
    truncated: bool = False


def _first_line(docstring: Optional[str]) -> Optional[str]:
    if not docstring:
        return None
    return docstring.strip().splitlines()[0]


def _unparse(node: Optional[ast.AST]) -> str:
    if node is None:
        return ""
    try:
        return ast.unparse(node)
    except (ValueError, AttributeError, RecursionError):
        return ""


class PythonAnalyzer(LanguageAnalyzer):
    """AST-based analyzer for Python files.

    Pipeline:
    1. parse(): decode and build the AST; on syntax errors, keep every
       top-level block that parses on its own (PartialTree + ParseError)
    2. extract_symbols(): module entity first, then declarations in source
       order; the first declaration of a qualified name owns its identifier
    3. detect_relationships(): containment edges plus one traversal of the
       AST dispatching nodes to detector plugins in priority order

    Error Recovery:
    - Syntax errors: partial analysis, module entity flagged degraded
    - Encoding errors: UTF-8 first, latin-1 fallback
    - Parser crashes (recursion, memory): file treated as corrupted
    - Detector exceptions: logged, other detectors continue
    """

    AST_MAX_RECURSION_DEPTH = 100  # Maximum AST traversal depth

    def __init__(
        self,
        detector_registry: Optional[DetectorRegistry] = None,
        max_recursion_depth: int = AST_MAX_RECURSION_DEPTH,
        max_file_lines: int = LanguageAnalyzer.MAX_FILE_LINES,
        max_file_size_bytes: int = LanguageAnalyzer.MAX_FILE_SIZE_BYTES,
        source_roots: Sequence[str] = ("src",),
    ):
        """Initialize Python analyzer.

        Args:
            detector_registry: Registry of detector plugins (default: all
                built-in detectors).
            max_recursion_depth: Maximum AST traversal depth (default: 100).
            max_file_lines: Maximum file size in lines (default: 10000).
            max_file_size_bytes: Maximum file size in bytes (default: 10MB).
            source_roots: Leading directories that are not part of module
                names (default: ("src",)).
        """
        super().__init__(max_file_lines=max_file_lines, max_file_size_bytes=max_file_size_bytes)
        self.detector_registry = (
            detector_registry if detector_registry is not None else default_detector_registry()
        )
        self.max_recursion_depth = max_recursion_depth
        self.source_roots = tuple(source_roots)

    def language(self) -> str:
        return PYTHON_LANGUAGE

    def extensions(self) -> Tuple[str, ...]:
        return (".py", ".pyi")

    def module_name(self, path: str) -> Tuple[str, bool]:
        """Dotted module name of a file and whether it is a package __init__."""
        return module_name_for_path(path, self.source_roots)

    # Stage 1: parsing

    def parse(self, source: SourceFile) -> SyntaxTree:
        """Parse source code into an AST.

        Raises:
            CorruptedSourceError: If the parser itself fails (recursion,
                memory, invalid input).
        """
        text = self.decode(source)
        try:
            module = ast.parse(text, filename=source.path, mode="exec")
            return SyntaxTree(source=source, text=text, root=module)
        except SyntaxError as e:
            logger.warning(
                f"⚠️ Syntax error in {source.path} at line {e.lineno}: {e.msg}, "
                f"recovering parsable blocks"
            )
            module, dropped = self._recover_blocks(text, source.path)
            diagnostic = Diagnostic(
                kind=DiagnosticKind.PARSE_ERROR,
                path=source.path,
                message=f"Syntax error: {e.msg}",
                line=e.lineno,
                detail=f"{dropped} top-level block(s) skipped",
            )
            return PartialTree(source=source, text=text, root=module, diagnostics=[diagnostic])
        except (ValueError, RecursionError, MemoryError) as e:
            raise CorruptedSourceError(f"parser failure: {type(e).__name__}: {e}") from e

    def _recover_blocks(self, text: str, path: str) -> Tuple[ast.Module, int]:
        """Parse each top-level block on its own, keeping the ones that parse.

        A block starts at every non-indented line that is not a comment, a
        continuation keyword (else/elif/except/finally) or a closing bracket.
        Decorators stay attached to the definition that follows them.

        Returns:
            Tuple of (module holding the recovered statements, number of
            blocks that failed to parse).
        """
        blocks: List[Tuple[int, List[str]]] = []
        current: List[str] = []
        start = 0
        after_decorator = False

        for index, line in enumerate(text.splitlines(keepends=True)):
            opens_block = (
                bool(line[:1].strip())
                and not line.startswith("#")
                and not _CONTINUATION.match(line)
            )
            if opens_block and current and not after_decorator:
                blocks.append((start, current))
                current = []
            if not current:
                start = index
            current.append(line)
            if opens_block:
                after_decorator = line.startswith("@")
        if current:
            blocks.append((start, current))

        body: List[ast.stmt] = []
        dropped = 0
        for offset, lines in blocks:
            try:
                chunk = ast.parse("".join(lines), filename=path, mode="exec")
            except (SyntaxError, ValueError, RecursionError, MemoryError):
                dropped += 1
                continue
            ast.increment_lineno(chunk, offset)
            body.extend(chunk.body)

        logger.debug(f"Recovered {len(body)} statements from {path}, {dropped} block(s) dropped")
        return ast.Module(body=body, type_ignores=[]), dropped

    # Stage 2: symbols

    def extract_symbols(self, tree: SyntaxTree) -> List[Entity]:
        """Extract the module entity followed by every declaration."""
        path = tree.path
        module_ast: ast.Module = tree.root
        module_name, _ = self.module_name(path)

        module_entity = Entity(
            id=make_entity_id(path),
            name=module_name.rsplit(".", 1)[-1] if module_name else posixpath.basename(path),
            qualified_name=module_name,
            kind=EntityKind.MODULE,
            file_path=path,
            span=SourceSpan(start_line=1, end_line=max(line_count(tree.source.content), 1)),
            visibility=visibility_for_name(module_name.rsplit(".", 1)[-1]),
            metadata=EntityMetadata(
                docstring=_first_line(ast.get_docstring(module_ast)) if module_ast.body else None,
                language=PYTHON_LANGUAGE,
                module_name=module_name,
                degraded=tree.is_partial,
            ),
        )

        entities = [module_entity]
        seen = set()
        for declaration in iter_declarations(module_ast.body):
            if declaration.qualname in seen:
                logger.debug(
                    f"Duplicate declaration of {declaration.qualname} in {path} "
                    f"(line {getattr(declaration.node, 'lineno', '?')}), keeping the first"
                )
                continue
            seen.add(declaration.qualname)
            entities.append(self._declaration_entity(declaration, path, module_name))

        return entities

    def _declaration_entity(self, declaration: Declaration, path: str, module_name: str) -> Entity:
        node = declaration.node
        span = SourceSpan(
            start_line=node.lineno,
            start_col=node.col_offset,
            end_line=node.end_lineno or node.lineno,
            end_col=node.end_col_offset or 0,
        )

        if isinstance(node, ast.ClassDef):
            metadata = EntityMetadata(
                docstring=_first_line(ast.get_docstring(node)),
                decorators=tuple(_unparse(d) for d in node.decorator_list),
                bases=tuple(_unparse(b) for b in node.bases),
                parent=declaration.parent,
            )
        elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            is_async = isinstance(node, ast.AsyncFunctionDef)
            signature = f"{'async ' if is_async else ''}def {node.name}({_unparse(node.args)})"
            if node.returns is not None:
                signature += f" -> {_unparse(node.returns)}"
            metadata = EntityMetadata(
                signature=signature,
                docstring=_first_line(ast.get_docstring(node)),
                decorators=tuple(_unparse(d) for d in node.decorator_list),
                parent=declaration.parent,
                is_async=is_async,
            )
        else:
            extra = {}
            if isinstance(node, ast.AnnAssign):
                extra["annotation"] = _unparse(node.annotation)
            metadata = EntityMetadata(parent=declaration.parent, extra=extra)

        return Entity(
            id=make_entity_id(path, declaration.qualname),
            name=declaration.name,
            qualified_name=f"{module_name}.{declaration.qualname}" if module_name else declaration.qualname,
            kind=declaration.kind,
            file_path=path,
            span=span,
            visibility=visibility_for_name(declaration.name),
            metadata=replace(metadata, language=PYTHON_LANGUAGE),
        )

    # Stage 3: relationships

    def detect_relationships(self, tree: SyntaxTree, symbols: List[Entity]) -> List[Relationship]:
        """Detect containment edges and dispatch AST nodes to detectors.

        Error Recovery:
        - Detector exceptions: Log error, continue with other detectors
        - Depth limit: Log warning once, skip the deeper subtree
        """
        path = tree.path
        module_name, is_package = self.module_name(path)
        context = ModuleContext(path, module_name, is_package, tree.root, symbols)
        state = _Traversal(
            path=path,
            context=context,
            detectors=self.detector_registry.get_detectors(),
        )
        state.relationships.extend(self._containment(path, symbols))

        scope = Scope(entity_id=context.module_id)
        for statement in tree.root.body:
            self._visit(statement, scope, 1, state)

        return state.relationships

    def _containment(self, path: str, symbols: List[Entity]) -> List[Relationship]:
        module_id = make_entity_id(path)
        relationships = []
        for entity in symbols[1:]:
            parent = entity.metadata.parent
            relationships.append(
                Relationship(
                    source_id=make_entity_id(path, parent) if parent else module_id,
                    kind=RelationshipKind.COMPOSE,
                    target_id=entity.id,
                    target_ref=entity.name,
                    metadata=RelationshipMetadata(line=entity.span.start_line),
                )
            )
        return relationships

    def _visit(self, node: ast.AST, scope: Scope, depth: int, state: _Traversal) -> None:
        """Invoke detectors on a node, then visit its children in the right scope."""
        if depth > self.max_recursion_depth:
            if not state.truncated:
                logger.warning(
                    f"⚠️ AST traversal depth limit ({self.max_recursion_depth}) "
                    f"exceeded in {state.path}, skipping subtree"
                )
                state.truncated = True
            return

        for detector in state.detectors:
            try:
                state.relationships.extend(detector.detect(node, state.context, scope))
            except Exception as e:
                logger.error(f"Error in detector '{detector.name()}' for {state.path}: {e}")

        depth += 1
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            entity = state.context.entity_for_node(node)
            header = scope.with_entity(entity.id) if entity is not None else scope
            header_nodes: List[ast.AST] = list(node.decorator_list) + [node.args]
            if node.returns is not None:
                header_nodes.append(node.returns)
            for child in header_nodes:
                self._visit(child, header, depth, state)
            body_scope = header.push(function_frame(node))
            for statement in node.body:
                self._visit(statement, body_scope, depth, state)

        elif isinstance(node, ast.ClassDef):
            entity = state.context.entity_for_node(node)
            header = scope.with_entity(entity.id) if entity is not None else scope
            for child in list(node.decorator_list) + list(node.bases) + list(node.keywords):
                self._visit(child, header, depth, state)
            body_scope = Scope(
                entity_id=header.entity_id,
                class_qualname=state.context.qualname_for_node(node) if entity is not None else None,
                locals=scope.locals,
                in_class_body=True,
            )
            for statement in node.body:
                self._visit(statement, body_scope, depth, state)

        elif isinstance(node, ast.Lambda):
            self._visit(node.args, scope, depth, state)
            self._visit(node.body, scope.push(function_frame(node)), depth, state)

        elif isinstance(node, _COMPREHENSIONS):
            inner = scope.push(comprehension_frame(node))
            for child in ast.iter_child_nodes(node):
                self._visit(child, inner, depth, state)

        else:
            for child in ast.iter_child_nodes(node):
                self._visit(child, scope, depth, state)
