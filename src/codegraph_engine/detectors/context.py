# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Per-file resolution context shared by Python relationship detectors.

Detectors are stateless plugins; everything they need to know about the file
being analyzed lives in a ModuleContext built once per file:

- declared symbols (first declaration of a qualified name wins)
- import bindings, with relative imports made absolute
- which statements are module-level and which imports are conditional
- nodes already turned into relationships by a higher-priority detector

Name resolution follows Python scoping closely enough for a static graph:
function locals shadow everything, then class-body names, then module-level
declarations, then imports. Builtins produce no relationships.
"""

import ast
import builtins
import logging
import posixpath
from dataclasses import dataclass, replace
from typing import Dict, FrozenSet, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from codegraph_engine.models import (
    SYMBOL_SEPARATOR,
    Entity,
    EntityKind,
    Relationship,
    RelationshipMetadata,
    make_entity_id,
)

logger = logging.getLogger(__name__)

BUILTIN_NAMES: FrozenSet[str] = frozenset(dir(builtins))
SELF_NAMES = ("self", "cls")

_FUNCTION_NODES = (ast.FunctionDef, ast.AsyncFunctionDef)
_SCOPE_NODES = (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef, ast.Lambda)
_TRY_NODES: Tuple[type, ...] = tuple(
    node_type for node_type in (ast.Try, getattr(ast, "TryStar", None)) if node_type is not None
)
_CONDITIONAL_NODES = (ast.If,) + _TRY_NODES


@dataclass(frozen=True)
class Declaration:
    """A named declaration found while walking module and class bodies."""

    node: ast.AST
    name: str
    qualname: str  # in-file qualified name, e.g. "Service.run"
    kind: str  # EntityKind value
    parent: Optional[str]


def _join(parent: Optional[str], name: str) -> str:
    return f"{parent}.{name}" if parent else name


def assigned_names(targets: Iterable[ast.AST]) -> List[str]:
    """Plain names bound by assignment targets (tuples are unpacked)."""
    names: List[str] = []
    for target in targets:
        if isinstance(target, ast.Name):
            names.append(target.id)
        elif isinstance(target, (ast.Tuple, ast.List)):
            names.extend(assigned_names(target.elts))
        elif isinstance(target, ast.Starred):
            names.extend(assigned_names([target.value]))
    return names


def nested_blocks(stmt: ast.AST) -> List[List[ast.stmt]]:
    """Statement blocks whose declarations belong to the enclosing scope."""
    if isinstance(stmt, (ast.If, ast.For, ast.AsyncFor, ast.While)):
        return [stmt.body, stmt.orelse]
    if isinstance(stmt, (ast.With, ast.AsyncWith)):
        return [stmt.body]
    if isinstance(stmt, _TRY_NODES):
        blocks = [stmt.body]
        blocks.extend(handler.body for handler in stmt.handlers)
        blocks.extend([stmt.orelse, stmt.finalbody])
        return blocks
    return []


def iter_declarations(
    body: Sequence[ast.stmt], parent: Optional[str] = None, in_class: bool = False
) -> Iterator[Declaration]:
    """Yield module- and class-level declarations in source order.

    Functions are not descended into: names local to a function body are not
    addressable from other files and are not graph entities.
    """
    for stmt in body:
        if isinstance(stmt, ast.ClassDef):
            qualname = _join(parent, stmt.name)
            yield Declaration(stmt, stmt.name, qualname, EntityKind.CLASS, parent)
            yield from iter_declarations(stmt.body, qualname, in_class=True)
        elif isinstance(stmt, _FUNCTION_NODES):
            kind = EntityKind.METHOD if in_class else EntityKind.FUNCTION
            yield Declaration(stmt, stmt.name, _join(parent, stmt.name), kind, parent)
        elif isinstance(stmt, (ast.Assign, ast.AnnAssign)):
            targets = stmt.targets if isinstance(stmt, ast.Assign) else [stmt.target]
            for name in assigned_names(targets):
                yield Declaration(stmt, name, _join(parent, name), EntityKind.VARIABLE, parent)
        else:
            for block in nested_blocks(stmt):
                yield from iter_declarations(block, parent, in_class)


def module_name_for_path(path: str, source_roots: Sequence[str] = ("src",)) -> Tuple[str, bool]:
    """Derive the dotted module name of a Python file from its path.

    Examples:
        "pkg/mod.py" -> ("pkg.mod", False)
        "pkg/__init__.py" -> ("pkg", True)
        "src/pkg/mod.py" -> ("pkg.mod", False)

    Returns:
        Tuple of (module_name, is_package).
    """
    stem, _ = posixpath.splitext(path)
    parts = [part for part in stem.split("/") if part and part != "."]
    if len(parts) > 1 and parts[0] in source_roots:
        parts = parts[1:]
    is_package = bool(parts) and parts[-1] == "__init__"
    if is_package and len(parts) > 1:
        parts = parts[:-1]
    return ".".join(parts), is_package


def dotted_parts(node: ast.AST) -> Optional[List[str]]:
    """Split a Name/Attribute chain ("a.b.c") into parts; None for anything else."""
    parts: List[str] = []
    while isinstance(node, ast.Attribute):
        parts.append(node.attr)
        node = node.value
    if isinstance(node, ast.Name):
        parts.append(node.id)
        parts.reverse()
        return parts
    return None


def bound_names(nodes: Iterable[ast.AST]) -> Set[str]:
    """Names stored by any node under ``nodes``, without entering nested scopes."""
    names: Set[str] = set()
    stack = list(nodes)
    while stack:
        node = stack.pop()
        if isinstance(node, ast.Name) and isinstance(node.ctx, (ast.Store, ast.Del)):
            names.add(node.id)
        elif isinstance(node, ast.ExceptHandler) and node.name:
            names.add(node.name)
        elif isinstance(node, _SCOPE_NODES):
            if not isinstance(node, ast.Lambda):
                names.add(node.name)
            continue
        elif isinstance(node, (ast.MatchAs, ast.MatchStar)) and node.name:
            names.add(node.name)
        stack.extend(ast.iter_child_nodes(node))
    return names


def function_frame(node: ast.AST) -> FrozenSet[str]:
    """Names local to a function or lambda body (parameters included)."""
    args = node.args
    names = {arg.arg for arg in args.posonlyargs + args.args + args.kwonlyargs}
    if args.vararg is not None:
        names.add(args.vararg.arg)
    if args.kwarg is not None:
        names.add(args.kwarg.arg)

    body = node.body if isinstance(node.body, list) else [node.body]
    declared_global: Set[str] = set()
    for child in ast.walk(ast.Module(body=list(body), type_ignores=[])):
        if isinstance(child, (ast.Global, ast.Nonlocal)):
            declared_global.update(child.names)
    names |= bound_names(body)
    return frozenset(names - declared_global)


def comprehension_frame(node: ast.AST) -> FrozenSet[str]:
    """Names bound by the ``for`` targets of a comprehension."""
    names: Set[str] = set()
    for generator in getattr(node, "generators", ()):
        names.update(bound_names([generator.target]))
    return frozenset(names)


@dataclass(frozen=True)
class Scope:
    """Lexical position of the node a detector is looking at.

    Attributes:
        entity_id: Entity relationships found here originate from.
        class_qualname: In-file qualified name of the enclosing class, used to
            resolve ``self.name``.
        locals: Frames of names bound by enclosing functions, lambdas and
            comprehensions (innermost last).
        in_class_body: True directly inside a class body, where class-level
            names are visible.
    """

    entity_id: str
    class_qualname: Optional[str] = None
    locals: Tuple[FrozenSet[str], ...] = ()
    in_class_body: bool = False

    def binds(self, name: str) -> bool:
        return any(name in frame for frame in self.locals)

    def with_entity(self, entity_id: str) -> "Scope":
        return replace(self, entity_id=entity_id)

    def push(self, frame: FrozenSet[str]) -> "Scope":
        return replace(self, locals=self.locals + (frame,), in_class_body=False)


@dataclass(frozen=True)
class NameResolution:
    """What a name or attribute chain refers to.

    Exactly one of these holds:
    - ``target_id`` is set: resolved to an entity of this file
    - ``candidates`` is non-empty: cross-file, resolved later
    - ``unknown`` is True: no declaration, import or builtin binds the name
    """

    ref: str
    target_id: Optional[str] = None
    candidates: Tuple[str, ...] = ()
    unknown: bool = False
    attribute_depth: int = 0  # trailing attributes that may be dropped when resolving


class ModuleContext:
    """Everything detectors need to know about the file being analyzed."""

    def __init__(
        self,
        path: str,
        module_name: str,
        is_package: bool,
        module_ast: ast.Module,
        entities: Sequence[Entity],
    ):
        self.path = path
        self.module_name = module_name
        self.is_package = is_package
        self.module_id = make_entity_id(path)

        # In-file qualified name -> entity (first declaration wins)
        self.symbols: Dict[str, Entity] = {}
        for entity in entities:
            if SYMBOL_SEPARATOR not in entity.id:
                continue
            qualname = entity.id.split(SYMBOL_SEPARATOR, 1)[1]
            self.symbols.setdefault(qualname, entity)
        self.top_level: Dict[str, Entity] = {
            qualname: entity for qualname, entity in self.symbols.items() if "." not in qualname
        }

        self._node_entities: Dict[int, Entity] = {}
        self._node_qualnames: Dict[int, str] = {}
        self._statement_variables: Dict[int, List[Entity]] = {}
        self._index_declarations(module_ast)

        self.imports: Dict[str, Tuple[str, ...]] = {}
        self.star_modules: List[str] = []
        self.module_level: Set[int] = set()
        self.conditional: Set[int] = set()
        self._collect_imports(module_ast)

        self.module_frame: FrozenSet[str] = frozenset(
            bound_names(module_ast.body) - set(self.top_level) - set(self.imports)
        )

        self._claimed: Set[int] = set()
        self._seen: Set[Tuple[str, str, str]] = set()

    def _index_declarations(self, module_ast: ast.Module) -> None:
        for declaration in iter_declarations(module_ast.body):
            entity = self.symbols.get(declaration.qualname)
            if entity is None:
                continue
            node_id = id(declaration.node)
            if declaration.kind == EntityKind.VARIABLE:
                if entity.kind == EntityKind.VARIABLE:
                    self._statement_variables.setdefault(node_id, []).append(entity)
            else:
                self._node_entities.setdefault(node_id, entity)
                self._node_qualnames.setdefault(node_id, declaration.qualname)

    def _collect_imports(self, module_ast: ast.Module) -> None:
        """Record import bindings and mark module-level / conditional statements."""
        pending: List[Tuple[ast.stmt, bool]] = [(stmt, False) for stmt in module_ast.body]
        while pending:
            stmt, conditional = pending.pop(0)
            self.module_level.add(id(stmt))
            if isinstance(stmt, (ast.Import, ast.ImportFrom)):
                if conditional:
                    self.conditional.add(id(stmt))
                self._bind_import(stmt)
                continue
            nested_conditional = conditional or isinstance(stmt, _CONDITIONAL_NODES)
            for block in nested_blocks(stmt):
                pending.extend((child, nested_conditional) for child in block)

        # Imports inside functions and classes bind names too; module-level ones win
        stack: List[Tuple[ast.AST, bool]] = [(module_ast, False)]
        while stack:
            node, conditional = stack.pop()
            for child in ast.iter_child_nodes(node):
                child_conditional = conditional or isinstance(node, _CONDITIONAL_NODES)
                if isinstance(child, (ast.Import, ast.ImportFrom)) and id(child) not in self.module_level:
                    if child_conditional:
                        self.conditional.add(id(child))
                    self._bind_import(child, overwrite=False)
                stack.append((child, child_conditional))

    def _bind_import(self, node: ast.AST, overwrite: bool = True) -> None:
        if isinstance(node, ast.Import):
            for alias in node.names:
                bound = alias.asname or alias.name.split(".")[0]
                target = alias.name if alias.asname else bound
                if overwrite or bound not in self.imports:
                    self.imports[bound] = (target,)
            return

        base = self.absolute_module(node.module, node.level)
        for alias in node.names:
            if alias.name == "*":
                if base and base not in self.star_modules:
                    self.star_modules.append(base)
                continue
            bound = alias.asname or alias.name
            if overwrite or bound not in self.imports:
                self.imports[bound] = (f"{base}.{alias.name}",) if base else ()

    def absolute_module(self, module: Optional[str], level: int) -> Optional[str]:
        """Make a (possibly relative) ``from`` import target absolute.

        Returns:
            Absolute dotted module name, or None when the relative import
            climbs above the top-level package.
        """
        if level == 0:
            return module
        package = self.module_name.split(".") if self.module_name else []
        if not self.is_package:
            package = package[:-1]
        if level - 1 > len(package):
            return None
        if level > 1:
            package = package[: len(package) - (level - 1)]
        base = ".".join(package)
        if module:
            return f"{base}.{module}" if base else module
        return base or None

    def binding_name(self, bound: str) -> str:
        """Qualified name a module-level binding is visible under from other files."""
        return f"{self.module_name}.{bound}" if self.module_name else bound

    def is_module_level(self, node: ast.AST) -> bool:
        return id(node) in self.module_level

    def is_conditional(self, node: ast.AST) -> bool:
        return id(node) in self.conditional

    def entity_for_node(self, node: ast.AST) -> Optional[Entity]:
        """Entity declared by a class or function definition node."""
        return self._node_entities.get(id(node))

    def qualname_for_node(self, node: ast.AST) -> Optional[str]:
        return self._node_qualnames.get(id(node))

    def variables_for_statement(self, node: ast.AST) -> List[Entity]:
        """Variable entities declared by a module- or class-level assignment."""
        return self._statement_variables.get(id(node), [])

    def claim(self, node: ast.AST) -> None:
        """Mark a node as already represented by a relationship."""
        self._claimed.add(id(node))

    def claim_chain(self, node: ast.AST) -> None:
        """Claim a Name/Attribute chain and all of its inner links."""
        while isinstance(node, ast.Attribute):
            self._claimed.add(id(node))
            node = node.value
        self._claimed.add(id(node))

    def is_claimed(self, node: ast.AST) -> bool:
        return id(node) in self._claimed

    def first_use(self, source_id: str, kind: str, ref: str) -> bool:
        """True the first time (source, kind, ref) is seen in this file."""
        key = (source_id, kind, ref)
        if key in self._seen:
            return False
        self._seen.add(key)
        return True

    def resolve_name(self, name: str, scope: Scope) -> Optional[NameResolution]:
        """Resolve a bare name; None when no relationship should be emitted."""
        if scope.binds(name):
            return None
        if scope.in_class_body and scope.class_qualname:
            member = self.symbols.get(f"{scope.class_qualname}.{name}")
            if member is not None:
                return NameResolution(ref=name, target_id=member.id)
        entity = self.top_level.get(name)
        if entity is not None:
            return NameResolution(ref=name, target_id=entity.id)
        if name in self.imports:
            return NameResolution(ref=name, candidates=self.imports[name], unknown=not self.imports[name])
        if name in BUILTIN_NAMES or name in self.module_frame:
            return None
        if self.star_modules:
            return NameResolution(
                ref=name, candidates=tuple(f"{module}.{name}" for module in self.star_modules)
            )
        return NameResolution(ref=name, unknown=True)

    def resolve_expression(self, node: ast.AST, scope: Scope) -> Optional[NameResolution]:
        """Resolve a Name or Attribute chain; None for other expressions."""
        parts = dotted_parts(node)
        if parts is None:
            return None
        if len(parts) == 1:
            return self.resolve_name(parts[0], scope)

        head, rest = parts[0], parts[1:]
        dotted = ".".join(parts)

        if head in SELF_NAMES and scope.class_qualname and scope.binds(head):
            member = self.symbols.get(f"{scope.class_qualname}.{rest[0]}")
            if member is not None:
                return NameResolution(ref=dotted, target_id=member.id)
            return None
        if scope.binds(head):
            return None

        if scope.in_class_body and scope.class_qualname:
            member = self.symbols.get(f"{scope.class_qualname}.{head}")
            if member is not None:
                return NameResolution(ref=dotted, target_id=member.id)

        if head in self.top_level:
            # Longest declared prefix: Service.run -> method, CONFIG.get -> variable
            for size in range(len(parts), 0, -1):
                entity = self.symbols.get(".".join(parts[:size]))
                if entity is not None:
                    return NameResolution(ref=dotted, target_id=entity.id)

        if head in self.imports:
            bases = self.imports[head]
            suffix = ".".join(rest)
            return NameResolution(
                ref=dotted,
                candidates=tuple(f"{base}.{suffix}" for base in bases),
                unknown=not bases,
                attribute_depth=len(rest),
            )
        if head in BUILTIN_NAMES or head in self.module_frame:
            return None
        if self.star_modules:
            return NameResolution(
                ref=dotted,
                candidates=tuple(f"{module}.{dotted}" for module in self.star_modules),
                attribute_depth=len(rest),
            )
        return NameResolution(ref=dotted, unknown=True)

    def make_relationship(
        self,
        source_id: str,
        kind: str,
        resolution: NameResolution,
        node: ast.AST,
        role: Optional[str] = None,
    ) -> Relationship:
        """Build a resolved or pending relationship from a resolution."""
        metadata = RelationshipMetadata(
            line=getattr(node, "lineno", None),
            column=getattr(node, "col_offset", None),
            role=role,
            extra={"attribute_depth": str(resolution.attribute_depth)}
            if resolution.attribute_depth
            else {},
        )
        if resolution.target_id is not None:
            return Relationship(
                source_id=source_id,
                kind=kind,
                target_id=resolution.target_id,
                target_ref=resolution.ref,
                metadata=metadata,
            )
        return Relationship(
            source_id=source_id,
            kind=kind,
            target_ref=resolution.ref,
            candidates=resolution.candidates,
            metadata=metadata,
        )
