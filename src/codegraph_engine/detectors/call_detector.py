# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Call relationship detector plugin.

Patterns Detected:
- Simple calls: function_name()
- Module-qualified calls: module.function_name()
- Method calls on the enclosing instance: self.method() / cls.method()
- Class instantiation: ClassName()
- Class-qualified calls: ClassName.method()

Calls on arbitrary expressions (``obj.method()`` where ``obj`` is a local
variable, ``factory().run()``) are not tracked: their receiver type is not
known statically. Calls to builtins produce no relationship. Calls to names
no declaration, import or builtin binds become pending relationships with no
candidates, which the relationship builder reports as unresolved.
"""

import ast
import logging
from typing import List

from codegraph_engine.detectors.base import RelationshipDetector
from codegraph_engine.detectors.context import ModuleContext, Scope
from codegraph_engine.models import Relationship, RelationshipKind

logger = logging.getLogger(__name__)


class CallDetector(RelationshipDetector):
    """Detector for function and method calls.

    Priority: 50 (Core detector)
    """

    def detect(self, node: ast.AST, context: ModuleContext, scope: Scope) -> List[Relationship]:
        if not isinstance(node, ast.Call) or context.is_claimed(node):
            return []

        resolution = context.resolve_expression(node.func, scope)
        if resolution is None:
            return []

        context.claim_chain(node.func)
        return [context.make_relationship(scope.entity_id, RelationshipKind.CALL, resolution, node)]

    def priority(self) -> int:
        return 50

    def name(self) -> str:
        return "CallDetector"
