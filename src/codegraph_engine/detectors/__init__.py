# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Detector plugins for relationship extraction from Python AST nodes.

Components:
- RelationshipDetector: Abstract base class for detector plugins
- DetectorRegistry: Priority-based registry for detector plugins
- ModuleContext / Scope: Per-file resolution state handed to detectors
- ImportDetector: import and from-import statements
- InheritanceDetector: class bases and metaclasses
- DecoratorDetector: decorators on functions, methods and classes
- CallDetector: function, method and constructor calls
- DataFlowDetector: values flowing into module- and class-level variables
- ReferenceDetector: any other use of a known name
"""

from codegraph_engine.detectors.base import RelationshipDetector
from codegraph_engine.detectors.call_detector import CallDetector
from codegraph_engine.detectors.context import ModuleContext, NameResolution, Scope
from codegraph_engine.detectors.data_flow_detector import DataFlowDetector
from codegraph_engine.detectors.decorator_detector import DecoratorDetector
from codegraph_engine.detectors.import_detector import ImportDetector
from codegraph_engine.detectors.inheritance_detector import InheritanceDetector
from codegraph_engine.detectors.reference_detector import ReferenceDetector
from codegraph_engine.detectors.registry import DetectorRegistry, default_detector_registry

__all__ = [
    # Base classes
    "RelationshipDetector",
    "DetectorRegistry",
    "default_detector_registry",
    "ModuleContext",
    "NameResolution",
    "Scope",
    # Relationship detectors
    "ImportDetector",
    "InheritanceDetector",
    "DecoratorDetector",
    "CallDetector",
    "DataFlowDetector",
    "ReferenceDetector",
]
