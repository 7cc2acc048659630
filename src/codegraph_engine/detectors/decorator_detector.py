# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Decorator detector plugin.

Each decorator applied to a function, method or class becomes a reference
relationship with role "decorator", from the decorated entity to the
decorator. Decorator factories (``@route("/x")``) are recorded the same way
and claimed so they are not counted again as calls.

Patterns Detected:
- @decorator
- @module.decorator
- @decorator(args)
- @Class.method / @property_name.setter
"""

import ast
import logging
from typing import List

from codegraph_engine.detectors.base import RelationshipDetector
from codegraph_engine.detectors.context import ModuleContext, Scope
from codegraph_engine.models import Relationship, RelationshipKind

logger = logging.getLogger(__name__)

DECORATOR_ROLE = "decorator"


class DecoratorDetector(RelationshipDetector):
    """Detector for decorators.

    Priority: 55 (Core detector, runs before calls)
    """

    def detect(self, node: ast.AST, context: ModuleContext, scope: Scope) -> List[Relationship]:
        if not isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            return []

        entity = context.entity_for_node(node)
        source_id = entity.id if entity is not None else scope.entity_id
        relationships: List[Relationship] = []

        for decorator in node.decorator_list:
            expression = decorator.func if isinstance(decorator, ast.Call) else decorator
            resolution = context.resolve_expression(expression, scope)
            if resolution is None:
                continue
            if isinstance(decorator, ast.Call):
                context.claim(decorator)
            context.claim_chain(expression)
            # @size.setter redefines the property it decorates
            if resolution.target_id == source_id:
                continue
            relationships.append(
                context.make_relationship(
                    source_id, RelationshipKind.REFERENCE, resolution, decorator, role=DECORATOR_ROLE
                )
            )

        return relationships

    def priority(self) -> int:
        return 55

    def name(self) -> str:
        return "DecoratorDetector"
