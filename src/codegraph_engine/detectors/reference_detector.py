# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Name reference detector plugin.

Catches every remaining use of a declared or imported name that no
higher-priority detector turned into a relationship: type annotations,
names passed as arguments, attribute reads on imported modules, and so on.
References are deduplicated per (scope, name): a function that mentions
``Config`` ten times gets one reference edge.

Names that resolve to nothing known (no declaration, import or builtin) are
skipped; only calls and bases report unresolved names.
"""

import ast
import logging
from typing import List

from codegraph_engine.detectors.base import RelationshipDetector
from codegraph_engine.detectors.context import ModuleContext, Scope
from codegraph_engine.models import Relationship, RelationshipKind

logger = logging.getLogger(__name__)


class ReferenceDetector(RelationshipDetector):
    """Detector for plain name references.

    Priority: 10 (Fallback detector, runs last)
    """

    def detect(self, node: ast.AST, context: ModuleContext, scope: Scope) -> List[Relationship]:
        if not isinstance(node, (ast.Name, ast.Attribute)):
            return []
        if not isinstance(node.ctx, ast.Load) or context.is_claimed(node):
            return []

        resolution = context.resolve_expression(node, scope)
        if resolution is None or resolution.unknown:
            # Inner links of the chain get their own chance when visited
            return []

        context.claim_chain(node)
        if resolution.target_id == scope.entity_id:
            return []
        if not context.first_use(scope.entity_id, RelationshipKind.REFERENCE, resolution.ref):
            return []
        return [
            context.make_relationship(scope.entity_id, RelationshipKind.REFERENCE, resolution, node)
        ]

    def priority(self) -> int:
        return 10

    def name(self) -> str:
        return "ReferenceDetector"
