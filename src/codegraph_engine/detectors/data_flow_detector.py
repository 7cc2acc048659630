# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Data flow detector plugin.

Module- and class-level assignments declare variables. For each such
assignment, every name or attribute chain used in the assigned value becomes
a data_flow relationship from the variable to what it was computed from:

    DEFAULT_TIMEOUT = settings.TIMEOUT * 2   # DEFAULT_TIMEOUT -> settings.TIMEOUT
    handler = make_handler(Registry)         # handler -> make_handler, Registry

Calls inside the value are still reported as calls from the enclosing scope.
"""

import ast
import logging
from typing import Iterator, List

from codegraph_engine.detectors.base import RelationshipDetector
from codegraph_engine.detectors.context import ModuleContext, Scope, dotted_parts
from codegraph_engine.models import Relationship, RelationshipKind

logger = logging.getLogger(__name__)


def iter_name_chains(expression: ast.AST) -> Iterator[ast.AST]:
    """Yield the outermost loaded Name/Attribute chains of an expression, in source order."""
    stack = [expression]
    while stack:
        node = stack.pop()
        if isinstance(node, (ast.Name, ast.Attribute)) and isinstance(node.ctx, ast.Load):
            if dotted_parts(node) is not None:
                yield node
                continue
        if isinstance(node, ast.Lambda):
            continue
        stack.extend(reversed(list(ast.iter_child_nodes(node))))


class DataFlowDetector(RelationshipDetector):
    """Detector for value flow into module- and class-level variables.

    Priority: 40 (Fallback detector)
    """

    def detect(self, node: ast.AST, context: ModuleContext, scope: Scope) -> List[Relationship]:
        if not isinstance(node, (ast.Assign, ast.AnnAssign)) or node.value is None:
            return []

        variables = context.variables_for_statement(node)
        if not variables:
            return []

        relationships: List[Relationship] = []
        for expression in iter_name_chains(node.value):
            resolution = context.resolve_expression(expression, scope)
            if resolution is None or resolution.unknown:
                continue
            context.claim_chain(expression)
            for variable in variables:
                if resolution.target_id == variable.id:
                    continue
                if not context.first_use(variable.id, RelationshipKind.DATA_FLOW, resolution.ref):
                    continue
                relationships.append(
                    context.make_relationship(
                        variable.id, RelationshipKind.DATA_FLOW, resolution, expression
                    )
                )
        return relationships

    def priority(self) -> int:
        return 40

    def name(self) -> str:
        return "DataFlowDetector"
