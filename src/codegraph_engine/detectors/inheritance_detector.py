# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Class inheritance detector plugin.

Patterns Detected:
- Single inheritance: class Child(Parent)
- Multiple inheritance: class Child(Parent1, Parent2)
- Qualified bases: class Child(module.Parent)
- Generic bases: class Child(Base[T]) (the subscripted class is the base)
- Metaclasses: class Model(metaclass=Meta) (reference with role "metaclass")

Builtin bases such as ``object`` or ``Exception`` produce no relationship.
"""

import ast
import logging
from typing import List

from codegraph_engine.detectors.base import RelationshipDetector
from codegraph_engine.detectors.context import ModuleContext, Scope
from codegraph_engine.models import Relationship, RelationshipKind

logger = logging.getLogger(__name__)


class InheritanceDetector(RelationshipDetector):
    """Detector for class inheritance.

    Priority: 60 (Core detector, runs before calls and references)
    """

    def detect(self, node: ast.AST, context: ModuleContext, scope: Scope) -> List[Relationship]:
        if not isinstance(node, ast.ClassDef):
            return []

        entity = context.entity_for_node(node)
        source_id = entity.id if entity is not None else scope.entity_id
        relationships: List[Relationship] = []

        for base in node.bases:
            expression = base.value if isinstance(base, ast.Subscript) else base
            resolution = context.resolve_expression(expression, scope)
            if resolution is None:
                continue
            context.claim_chain(expression)
            relationships.append(
                context.make_relationship(
                    source_id, RelationshipKind.INHERIT, resolution, base, role="base"
                )
            )

        for keyword in node.keywords:
            if keyword.arg != "metaclass":
                continue
            resolution = context.resolve_expression(keyword.value, scope)
            if resolution is None:
                continue
            context.claim_chain(keyword.value)
            relationships.append(
                context.make_relationship(
                    source_id, RelationshipKind.REFERENCE, resolution, keyword.value, role="metaclass"
                )
            )

        return relationships

    def priority(self) -> int:
        return 60

    def name(self) -> str:
        return "InheritanceDetector"
