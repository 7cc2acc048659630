# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Registry for relationship detector plugins with priority-based dispatch."""

import logging
from typing import List, Tuple

from codegraph_engine.detectors.base import RelationshipDetector
from codegraph_engine.detectors.call_detector import CallDetector
from codegraph_engine.detectors.data_flow_detector import DataFlowDetector
from codegraph_engine.detectors.decorator_detector import DecoratorDetector
from codegraph_engine.detectors.import_detector import ImportDetector
from codegraph_engine.detectors.inheritance_detector import InheritanceDetector
from codegraph_engine.detectors.reference_detector import ReferenceDetector

logger = logging.getLogger(__name__)


class DetectorRegistry:
    """Registry for relationship detector plugins.

    Detectors are kept sorted by priority (highest first, then by name for
    stability). The sorted order is computed once after registration changes
    and returned as an immutable tuple, so worker threads analyzing different
    files can share one registry.

    Thread Safety:
    - Register all detectors during initialization before processing
    - get_detectors() is safe to call concurrently afterwards
    """

    def __init__(self) -> None:
        self._detectors: List[RelationshipDetector] = []
        self._ordered: Tuple[RelationshipDetector, ...] = ()

    def register(self, detector: RelationshipDetector) -> None:
        """Register a detector plugin.

        Raises:
            TypeError: If detector is not a RelationshipDetector instance.
        """
        if not isinstance(detector, RelationshipDetector):
            raise TypeError(
                f"Detector must be a RelationshipDetector instance, got {type(detector)}"
            )

        self._detectors.append(detector)
        self._ordered = tuple(sorted(self._detectors, key=lambda d: (-d.priority(), d.name())))

        logger.debug(f"Registered detector '{detector.name()}' with priority {detector.priority()}")

    def get_detectors(self) -> Tuple[RelationshipDetector, ...]:
        """Get all registered detectors in priority order (highest first)."""
        return self._ordered

    def clear(self) -> None:
        """Remove all registered detectors. Used for testing and reconfiguration."""
        self._detectors.clear()
        self._ordered = ()

    def count(self) -> int:
        return len(self._detectors)


def default_detector_registry() -> DetectorRegistry:
    """Registry holding every built-in Python detector."""
    registry = DetectorRegistry()
    for detector in (
        ImportDetector(),
        InheritanceDetector(),
        DecoratorDetector(),
        CallDetector(),
        DataFlowDetector(),
        ReferenceDetector(),
    ):
        registry.register(detector)
    return registry
