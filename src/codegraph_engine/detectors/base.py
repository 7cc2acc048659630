# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Base interface for relationship detector plugins.

The Python analyzer walks each syntax tree once and offers every node to all
registered detectors in priority order. A detector recognizes one pattern
(imports, calls, inheritance, ...) and returns the relationships it implies.
"""

import ast
from abc import ABC, abstractmethod
from typing import List

from codegraph_engine.detectors.context import ModuleContext, Scope
from codegraph_engine.models import Relationship


class RelationshipDetector(ABC):
    """Abstract base class for relationship detector plugins.

    Design Pattern:
    - Each detector is independent and stateless; per-file state lives in the
      ModuleContext passed to detect()
    - Detectors are registered with priority values
    - Higher priority detectors execute first, so they can claim nodes
      (ModuleContext.claim) before lower priority detectors see them
    - New detectors can be added without modifying existing code

    Lifecycle:
    1. Detector is registered in DetectorRegistry with priority
    2. AST traversal invokes detect() for each node
    3. Detector returns 0 or more Relationship objects, resolved inside the
       file or pending cross-file resolution
    """

    @abstractmethod
    def detect(self, node: ast.AST, context: ModuleContext, scope: Scope) -> List[Relationship]:
        """Detect relationships in an AST node.

        Args:
            node: AST node to analyze.
            context: Resolution context of the file being analyzed.
            scope: Lexical position of the node.

        Returns:
            List of detected relationships. Empty list if no matches found.

        Design Notes:
        - Detectors MUST NOT keep per-file state on the instance
        - Detectors MUST preserve line number information
        """
        pass

    @abstractmethod
    def priority(self) -> int:
        """Return detector priority for execution order.

        Priority Guidelines:
        - 100+: Foundation detectors (imports)
        - 50-99: Core detectors (inheritance, decorators, calls)
        - 0-49: Fallback detectors (data flow, plain name references)

        Returns:
            Integer priority value. Higher values execute first.
        """
        pass

    @abstractmethod
    def name(self) -> str:
        """Return detector name for logging and debugging."""
        pass
