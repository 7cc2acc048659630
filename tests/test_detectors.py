# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Tests for relationship detector plugins."""

import textwrap

import pytest

from codegraph_engine.analyzers.python_analyzer import PythonAnalyzer
from codegraph_engine.detectors.registry import DetectorRegistry, default_detector_registry
from codegraph_engine.models import RelationshipKind, SourceFile


def analyze(code: str, path: str = "pkg/mod.py"):
    source = SourceFile(path=path, content=textwrap.dedent(code).encode("utf-8"), language="python")
    return PythonAnalyzer().analyze(source)


def edges_of(analysis, kind, source_id=None):
    return [
        rel
        for rel in analysis.relationships
        if rel.kind == kind and (source_id is None or rel.source_id == source_id)
    ]


class TestDetectorRegistry:
    """Test detector registration and ordering."""

    def test_default_priority_order(self):
        names = [d.name() for d in default_detector_registry().get_detectors()]
        assert names == [
            "ImportDetector",
            "InheritanceDetector",
            "DecoratorDetector",
            "CallDetector",
            "DataFlowDetector",
            "ReferenceDetector",
        ]

    def test_register_rejects_non_detector(self):
        with pytest.raises(TypeError):
            DetectorRegistry().register(object())  # type: ignore[arg-type]

    def test_clear(self):
        registry = default_detector_registry()
        registry.clear()
        assert registry.count() == 0
        assert registry.get_detectors() == ()


class TestImportDetector:
    """Test import relationships and the bindings they record."""

    CODE = """
        import os
        import json as j
        from . import sibling
        from .sub import thing as other
        from ... import z
        from base import *

        if TYPE_CHECKING:
            from typing import Any

        def f():
            import re
    """

    @pytest.fixture
    def imports(self):
        analysis = analyze(self.CODE)
        return {rel.target_ref: rel for rel in edges_of(analysis, RelationshipKind.IMPORT)}

    def test_all_imports_pending(self, imports):
        assert all(rel.is_pending for rel in imports.values())

    def test_plain_import(self, imports):
        rel = imports["os"]
        assert rel.source_id == "pkg/mod.py"
        assert rel.candidates == ("os",)
        assert rel.metadata.import_style == "import"
        assert rel.metadata.binding == "pkg.mod.os"
        assert rel.metadata.binding_target == "os"
        assert rel.metadata.line == 2

    def test_import_alias(self, imports):
        rel = imports["json"]
        assert rel.metadata.alias == "j"
        assert rel.metadata.import_style == "import_as"
        assert rel.metadata.binding == "pkg.mod.j"
        assert rel.metadata.binding_target == "json"

    def test_relative_imports_made_absolute(self, imports):
        assert imports["pkg.sibling"].candidates == ("pkg.sibling",)
        other = imports["pkg.sub.thing"]
        assert other.metadata.import_style == "from_import_as"
        assert other.metadata.binding == "pkg.mod.other"
        assert other.metadata.binding_target == "pkg.sub.thing"

    def test_relative_import_above_top_level(self, imports):
        rel = imports["...z"]
        assert rel.candidates == ()
        assert rel.metadata.binding is None

    def test_wildcard_import(self, imports):
        rel = imports["base"]
        assert rel.metadata.import_style == "wildcard"
        assert rel.metadata.binding == "pkg.mod.*"
        assert rel.metadata.binding_target == "base"

    def test_conditional_import(self, imports):
        assert imports["typing.Any"].metadata.is_conditional
        assert not imports["os"].metadata.is_conditional

    def test_function_import_has_no_binding(self, imports):
        rel = imports["re"]
        assert rel.source_id == "pkg/mod.py::f"
        assert rel.metadata.binding is None

    def test_package_relative_import(self):
        analysis = analyze("from .core import run\n", path="pkg/__init__.py")
        rel = edges_of(analysis, RelationshipKind.IMPORT)[0]
        assert rel.candidates == ("pkg.core.run",)
        assert rel.metadata.binding == "pkg.run"


class TestCallDetector:
    """Test call relationships."""

    CODE = """
        import helpers
        from .models import Model

        def helper(x):
            return x

        class Service:
            def run(self):
                self.stop()
                helpers.util.go()
                Model()
                print("x")
                missing()
                local = len
                local()
                return [helper(x) for x in range(3)]

            def stop(self):
                pass

        def main():
            Service.run(None)
    """

    @pytest.fixture
    def analysis(self):
        return analyze(self.CODE, path="pkg/svc.py")

    def test_calls_from_method(self, analysis):
        calls = {rel.target_ref: rel for rel in edges_of(analysis, RelationshipKind.CALL, "pkg/svc.py::Service.run")}

        assert set(calls) == {"self.stop", "helpers.util.go", "Model", "missing", "helper"}
        assert calls["self.stop"].target_id == "pkg/svc.py::Service.stop"
        assert calls["helper"].target_id == "pkg/svc.py::helper"

    def test_cross_file_calls_pending(self, analysis):
        calls = {rel.target_ref: rel for rel in edges_of(analysis, RelationshipKind.CALL)}

        assert calls["Model"].candidates == ("pkg.models.Model",)
        assert calls["helpers.util.go"].candidates == ("helpers.util.go",)
        assert calls["helpers.util.go"].metadata.extra == {"attribute_depth": "2"}

    def test_unknown_call_has_no_candidates(self, analysis):
        calls = {rel.target_ref: rel for rel in edges_of(analysis, RelationshipKind.CALL)}
        assert calls["missing"].is_pending
        assert calls["missing"].candidates == ()

    def test_class_qualified_call(self, analysis):
        calls = edges_of(analysis, RelationshipKind.CALL, "pkg/svc.py::main")
        assert [rel.target_id for rel in calls] == ["pkg/svc.py::Service.run"]

    def test_builtins_and_locals_ignored(self, analysis):
        refs = {rel.target_ref for rel in analysis.relationships}
        assert "print" not in refs
        assert "local" not in refs
        assert "x" not in refs

    def test_call_line_numbers(self, analysis):
        calls = {rel.target_ref: rel for rel in edges_of(analysis, RelationshipKind.CALL)}
        assert calls["self.stop"].metadata.line == 10


class TestInheritanceDetector:
    """Test base classes and metaclasses."""

    CODE = """
        from abc import ABCMeta
        from .base import Base

        class Local:
            pass

        class Child(Local, Base, object, metaclass=ABCMeta):
            pass

        class Box(Base[int]):
            pass
    """

    @pytest.fixture
    def analysis(self):
        return analyze(self.CODE)

    def test_bases(self, analysis):
        bases = edges_of(analysis, RelationshipKind.INHERIT, "pkg/mod.py::Child")

        assert [rel.target_ref for rel in bases] == ["Local", "Base"]
        assert bases[0].target_id == "pkg/mod.py::Local"
        assert bases[1].candidates == ("pkg.base.Base",)
        assert all(rel.metadata.role == "base" for rel in bases)

    def test_subscripted_base(self, analysis):
        bases = edges_of(analysis, RelationshipKind.INHERIT, "pkg/mod.py::Box")
        assert [rel.candidates for rel in bases] == [("pkg.base.Base",)]

    def test_metaclass_is_reference(self, analysis):
        refs = edges_of(analysis, RelationshipKind.REFERENCE, "pkg/mod.py::Child")

        assert len(refs) == 1
        assert refs[0].metadata.role == "metaclass"
        assert refs[0].candidates == ("abc.ABCMeta",)


class TestDecoratorDetector:
    """Test decorator references."""

    CODE = """
        import functools
        from .routing import route

        def local_deco(fn):
            return fn

        class Thing:
            @property
            def size(self):
                return 1

            @size.setter
            def size(self, value):
                pass

        @local_deco
        @route("/x")
        @functools.lru_cache(maxsize=None)
        def handler():
            pass
    """

    @pytest.fixture
    def analysis(self):
        return analyze(self.CODE)

    def test_decorators_become_references(self, analysis):
        refs = edges_of(analysis, RelationshipKind.REFERENCE, "pkg/mod.py::handler")

        assert [rel.target_ref for rel in refs] == ["local_deco", "route", "functools.lru_cache"]
        assert all(rel.metadata.role == "decorator" for rel in refs)
        assert refs[0].target_id == "pkg/mod.py::local_deco"
        assert refs[1].candidates == ("pkg.routing.route",)

    def test_decorator_factories_not_counted_as_calls(self, analysis):
        assert edges_of(analysis, RelationshipKind.CALL, "pkg/mod.py::handler") == []

    def test_property_setter_is_not_a_self_reference(self, analysis):
        for rel in analysis.relationships:
            assert rel.source_id != rel.target_id


class TestDataFlowDetector:
    """Test value flow into module- and class-level variables."""

    CODE = """
        import settings
        from .factory import make_handler

        class Registry:
            pass

        DEFAULT_TIMEOUT = settings.TIMEOUT * 2
        handler = make_handler(Registry)
        ALIAS = Registry
        count = unknown_name + 1

        class Config:
            base = Registry
    """

    @pytest.fixture
    def analysis(self):
        return analyze(self.CODE)

    def flows(self, analysis, variable):
        return [rel.target_ref for rel in edges_of(analysis, RelationshipKind.DATA_FLOW, f"pkg/mod.py::{variable}")]

    def test_flow_from_attribute(self, analysis):
        assert self.flows(analysis, "DEFAULT_TIMEOUT") == ["settings.TIMEOUT"]

    def test_flow_from_call_and_argument(self, analysis):
        assert self.flows(analysis, "handler") == ["make_handler", "Registry"]

    def test_call_in_value_still_reported(self, analysis):
        calls = edges_of(analysis, RelationshipKind.CALL, "pkg/mod.py")
        assert [rel.target_ref for rel in calls] == ["make_handler"]

    def test_unknown_names_skipped(self, analysis):
        assert self.flows(analysis, "count") == []

    def test_class_level_variable(self, analysis):
        flows = edges_of(analysis, RelationshipKind.DATA_FLOW, "pkg/mod.py::Config.base")
        assert [rel.target_id for rel in flows] == ["pkg/mod.py::Registry"]

    def test_no_duplicate_reference_for_flowed_names(self, analysis):
        refs = edges_of(analysis, RelationshipKind.REFERENCE, "pkg/mod.py")
        assert "Registry" not in [rel.target_ref for rel in refs]


class TestReferenceDetector:
    """Test plain name references."""

    CODE = """
        from .types import Config

        def build(config: Config) -> Config:
            value = Config
            other = Config.DEFAULT
            print(undefined_thing)
            return value

        def recurse():
            return recurse
    """

    @pytest.fixture
    def analysis(self):
        return analyze(self.CODE)

    def test_deduplicated_per_scope_and_name(self, analysis):
        refs = edges_of(analysis, RelationshipKind.REFERENCE, "pkg/mod.py::build")
        assert sorted(rel.target_ref for rel in refs) == ["Config", "Config.DEFAULT"]

    def test_attribute_chain_keeps_depth(self, analysis):
        refs = {rel.target_ref: rel for rel in edges_of(analysis, RelationshipKind.REFERENCE)}
        assert refs["Config.DEFAULT"].candidates == ("pkg.types.Config.DEFAULT",)
        assert refs["Config.DEFAULT"].metadata.extra == {"attribute_depth": "1"}

    def test_unknown_names_skipped(self, analysis):
        assert "undefined_thing" not in {rel.target_ref for rel in analysis.relationships}

    def test_no_self_reference(self, analysis):
        assert edges_of(analysis, RelationshipKind.REFERENCE, "pkg/mod.py::recurse") == []
