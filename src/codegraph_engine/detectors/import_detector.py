# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Import relationship detector plugin.

Supports:
- import module / import package.submodule / import module as alias
- from module import name / from module import name as alias
- Relative imports: from . import name, from ..pkg import name
- Wildcard imports: from module import *
- Conditional imports (if TYPE_CHECKING:, try/except ImportError)

Import targets are never resolved here: each import becomes a pending
relationship whose candidate is the absolute qualified name, and the
relationship builder later matches it against declarations of all files.
Module-level imports also record the name they bind in this module
(``binding`` / ``binding_target``), which lets other files import through
re-exports.
"""

import ast
import logging
from typing import List, Optional, Tuple

from codegraph_engine.detectors.base import RelationshipDetector
from codegraph_engine.detectors.context import ModuleContext, Scope
from codegraph_engine.models import Relationship, RelationshipKind, RelationshipMetadata

logger = logging.getLogger(__name__)


class ImportDetector(RelationshipDetector):
    """Detector for import statements.

    Priority: 100 (Foundation detector)
    """

    def detect(self, node: ast.AST, context: ModuleContext, scope: Scope) -> List[Relationship]:
        """Detect import relationships in an AST node.

        Returns:
            One pending relationship per imported name. Empty list for any
            other node.
        """
        if isinstance(node, ast.Import):
            return [self._plain_import(node, alias, context, scope) for alias in node.names]
        if isinstance(node, ast.ImportFrom):
            return [self._from_import(node, alias, context, scope) for alias in node.names]
        return []

    def _plain_import(
        self, node: ast.Import, alias: ast.alias, context: ModuleContext, scope: Scope
    ) -> Relationship:
        module_name = alias.name
        # import a.b binds "a"; import a.b as m binds "m" to a.b
        bound = alias.asname or module_name.split(".")[0]
        bound_target = module_name if alias.asname else bound

        return self._relationship(
            node,
            context,
            scope,
            target_ref=module_name,
            candidates=(module_name,),
            alias=alias.asname,
            import_style="import_as" if alias.asname else "import",
            binding=(bound, bound_target),
        )

    def _from_import(
        self, node: ast.ImportFrom, alias: ast.alias, context: ModuleContext, scope: Scope
    ) -> Relationship:
        base = context.absolute_module(node.module, node.level)
        written = "." * node.level + (node.module or "")

        if alias.name == "*":
            return self._relationship(
                node,
                context,
                scope,
                target_ref=base or written,
                candidates=(base,) if base else (),
                alias=None,
                import_style="wildcard",
                binding=("*", base) if base else None,
            )

        target = f"{base}.{alias.name}" if base else None
        if target is None:
            separator = "." if node.module else ""
            logger.debug(
                f"Relative import {written}{separator}{alias.name} in {context.path} "
                f"climbs above the top-level package"
            )
        bound = alias.asname or alias.name
        return self._relationship(
            node,
            context,
            scope,
            target_ref=target or f"{written}{'.' if node.module else ''}{alias.name}",
            candidates=(target,) if target else (),
            alias=alias.asname,
            import_style="from_import_as" if alias.asname else "from_import",
            binding=(bound, target) if target else None,
        )

    def _relationship(
        self,
        node: ast.AST,
        context: ModuleContext,
        scope: Scope,
        target_ref: str,
        candidates: Tuple[str, ...],
        alias: Optional[str],
        import_style: str,
        binding: Optional[Tuple[str, Optional[str]]],
    ) -> Relationship:
        binding_name = None
        binding_target = None
        # Only module-level bindings are visible to other files
        if binding is not None and binding[1] and context.is_module_level(node):
            binding_name = context.binding_name(binding[0])
            binding_target = binding[1]

        return Relationship(
            source_id=scope.entity_id,
            kind=RelationshipKind.IMPORT,
            target_ref=target_ref,
            candidates=candidates,
            metadata=RelationshipMetadata(
                line=node.lineno,
                column=node.col_offset,
                alias=alias,
                import_style=import_style,
                is_conditional=context.is_conditional(node),
                binding=binding_name,
                binding_target=binding_target,
            ),
        )

    def priority(self) -> int:
        """ImportDetector has high priority (100) as a foundation detector."""
        return 100

    def name(self) -> str:
        return "ImportDetector"
