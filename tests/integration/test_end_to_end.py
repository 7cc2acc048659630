# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""End-to-end tests: scan, analyze, update, cache and query a repository on disk.

These tests drive CodeGraphEngine the way a collaborator would and verify:
- cross-file resolution through re-exports, inheritance and cycles
- recovered failures surface as diagnostics, never as exceptions
- incremental updates agree with a from-scratch analysis
- a warm start from the cache reproduces the stored graph
"""

from pathlib import Path

import pytest

from codegraph_engine.models import (
    DiagnosticKind,
    EntityKind,
    ExternalOrigin,
    FileState,
    RelationshipKind,
)

from .conftest import SAMPLE_FILES, write_files


def graph_state(engine):
    snapshot = engine.snapshot()
    return (
        sorted(snapshot.entity_ids()),
        sorted(edge.edge_key() for edge in snapshot.edges()),
    )


def targets(engine, source_id, kind):
    return sorted(e.target_id for e in engine.snapshot().outgoing(source_id) if e.kind == kind)


@pytest.fixture
def analyzed(sample_project, make_engine):
    engine = make_engine(sample_project)
    engine.analyze()
    return engine


class TestSampleProject:
    """Test the graph built for the sample project."""

    def test_every_file_has_a_record(self, analyzed):
        records = {r.path: r.status for r in analyzed.file_records()}

        assert sorted(records) == sorted(SAMPLE_FILES)
        assert records["broken.py"] == FileState.PARTIAL
        assert records["web/app.js"] == FileState.UNSUPPORTED
        assert records["app/core.py"] == FileState.PARSED

    def test_calls_resolve_through_reexports(self, analyzed):
        assert targets(analyzed, "app/core.py::run", RelationshipKind.CALL) == [
            "app/models/user.py::User",
            "app/services.py::notify",
        ]

    def test_inheritance_across_files(self, analyzed):
        assert targets(analyzed, "app/models/user.py::User", RelationshipKind.INHERIT) == [
            "app/models/base.py::BaseModel"
        ]

    def test_directory_structure(self, analyzed):
        snapshot = analyzed.snapshot()

        assert snapshot.get_entity("./").kind == EntityKind.DIRECTORY
        assert "app/models/" in targets(analyzed, "app/", RelationshipKind.COMPOSE)
        assert snapshot.get_entity("web/app.js").kind == EntityKind.FILE

    def test_partial_file_keeps_valid_prefix(self, analyzed):
        assert analyzed.snapshot().has_entity("broken.py::ok")
        assert not analyzed.snapshot().has_entity("broken.py::broken")

    def test_diagnostics(self, analyzed):
        by_path = {}
        for diagnostic in analyzed.diagnostics():
            by_path.setdefault(diagnostic.path, []).append(diagnostic.kind)

        assert by_path == {
            "broken.py": [DiagnosticKind.PARSE_ERROR],
            "missing.py": [DiagnosticKind.UNRESOLVED_REFERENCE],
            "web/app.js": [DiagnosticKind.UNSUPPORTED_LANGUAGE],
        }

    def test_stdlib_references_are_external(self, analyzed):
        stdlib = analyzed.query().external_references(origin=ExternalOrigin.STDLIB)
        assert {edge.source_id for edge in stdlib} >= {"app/services.py", "app/services.py::notify"}
        assert all(edge.external for edge in stdlib)

    def test_graph_is_consistent(self, analyzed):
        assert analyzed.snapshot().validate() == (True, [])


class TestTraversalProperties:
    """Test traversal properties over the whole sample graph."""

    def test_dependencies_and_dependents_include_direct_neighbors(self, analyzed):
        api = analyzed.query()
        for edge in analyzed.snapshot().edges():
            assert edge.target_id in api.dependencies(edge.source_id, depth=1).neighbors()
            if not edge.external:
                assert edge.source_id in api.dependents(edge.target_id, depth=1).neighbors()

    def test_cycle_reported_once(self, analyzed):
        members = {"cyc/a.py::a_step", "cyc/b.py::b_step", "cyc/c.py::c_step"}

        calls = analyzed.query().find_cycles(kinds=[RelationshipKind.CALL])
        assert [set(cycle.members) for cycle in calls.cycles] == [members]

        report = analyzed.query().find_cycles()
        assert sum(1 for cycle in report.cycles if members <= set(cycle.members)) == 1

    def test_cycle_independent_of_analysis_order(self, sample_project, make_engine):
        engine = make_engine(sample_project, cache_enabled=False)
        for rel_path in ["cyc/c.py", "cyc/b.py", "cyc/a.py"]:
            engine.apply_changes([engine.scanner.load(rel_path)])

        report = engine.query().find_cycles(kinds=[RelationshipKind.CALL])
        assert [cycle.members for cycle in report.cycles] == [
            ("cyc/a.py::a_step", "cyc/b.py::b_step", "cyc/c.py::c_step")
        ]

    def test_path_through_cycle(self, analyzed):
        result = analyzed.query().shortest_path("cyc/a.py::a_step", "cyc/c.py::c_step")
        assert result.paths == [["cyc/a.py::a_step", "cyc/b.py::b_step", "cyc/c.py::c_step"]]


class TestIncrementalUpdates:
    """Test incremental updates against from-scratch analysis."""

    def test_edit_sequence_matches_full_analysis(self, sample_project, make_engine, tmp_path):
        engine = make_engine(sample_project, cache_enabled=False)
        engine.analyze()

        edits = [
            ("app/services.py", "def notify(user, channel=None):\n    return channel\n"),
            ("app/models/user.py", "class User:\n    pass\n"),
            ("broken.py", "def ok():\n    return 2\n"),
            ("cyc/b.py", "def b_step():\n    return None\n"),
        ]
        for rel_path, content in edits:
            (sample_project / rel_path).write_text(content)
            engine.refresh_paths([sample_project / rel_path])
        (sample_project / "missing.py").unlink()
        engine.refresh_paths([sample_project / "missing.py"])

        full = make_engine(sample_project, cache_enabled=False)
        full.analyze()

        assert graph_state(engine) == graph_state(full)
        assert engine.diagnostics() == full.diagnostics()

    def test_reanalysis_of_unchanged_files_is_idempotent(self, analyzed, sample_project):
        state = graph_state(analyzed)
        result = analyzed.refresh_paths(sorted(sample_project.rglob("*.py")))

        assert not result.changed
        assert graph_state(analyzed) == state

    def test_watcher_driven_update(self, analyzed, sample_project):
        analyzed.start_watching()
        (sample_project / "app/services.py").write_text("def notify(user):\n    return user\n")
        analyzed._file_watcher.record_event("app/services.py")

        result = analyzed.process_pending_changes()
        assert result.modified == ["app/services.py"]
        assert not analyzed.query().external_references(origin=ExternalOrigin.STDLIB)


class TestCacheRoundTrip:
    """Test persisting and restoring the sample graph."""

    def test_warm_start_reproduces_graph(self, analyzed, sample_project, make_engine):
        restored = make_engine(sample_project)
        result = restored.analyze()

        assert not result.changed
        assert graph_state(restored) == graph_state(analyzed)
        assert restored.diagnostics() == analyzed.diagnostics()

    def test_version_mismatch_triggers_full_analysis(self, analyzed, sample_project, make_engine):
        document = analyzed.cache.cache_dir / f"{analyzed.cache.cache_key(analyzed.repo_key)}.json"
        document.write_text(document.read_text().replace('"schema_version": 1', '"schema_version": 999', 1))

        fresh = make_engine(sample_project)
        result = fresh.analyze()

        assert sorted(result.created) == sorted(SAMPLE_FILES)
        assert fresh.diagnostics()[0].kind == DiagnosticKind.CACHE_VERSION_MISMATCH
        assert graph_state(fresh) == graph_state(analyzed)


class TestScenarios:
    """Test the two-file scenarios."""

    @pytest.fixture
    def two_files(self, tmp_path) -> Path:
        return write_files(
            tmp_path / "two_files",
            {
                "a.py": "def f():\n    return 1\n",
                "b.py": "from a import f\n\n\ndef caller():\n    return f()\n",
            },
        )

    def test_call_between_files(self, two_files, make_engine):
        engine = make_engine(two_files)
        engine.analyze()
        snapshot = engine.snapshot()

        assert snapshot.has_entity("a.py::f")
        assert snapshot.has_entity("b.py::caller")
        calls = [e for e in snapshot.edges() if e.kind == RelationshipKind.CALL]
        assert [(e.source_id, e.target_id) for e in calls] == [("b.py::caller", "a.py::f")]
        assert not [e for e in snapshot.edges() if e.external]

    def test_undefined_call(self, tmp_path, make_engine):
        repo = write_files(
            tmp_path / "undefined",
            {"a.py": "def f():\n    return 1\n", "b.py": "def caller():\n    return g()\n"},
        )
        engine = make_engine(repo)
        engine.analyze()

        external = [e for e in engine.snapshot().edges() if e.external]
        assert [(e.source_id, e.target_ref) for e in external] == [("b.py::caller", "g")]
        assert external[0].metadata.origin == ExternalOrigin.UNRESOLVED
        assert [d.kind for d in engine.diagnostics()] == [DiagnosticKind.UNRESOLVED_REFERENCE]

    def test_body_only_edit(self, two_files, make_engine):
        engine = make_engine(two_files)
        engine.analyze()
        before = {r.path: r for r in engine.file_records()}
        b_entities = [e for e in engine.snapshot().entities() if e.file_path == "b.py"]

        (two_files / "a.py").write_text("def f():\n    return 42\n")
        result = engine.refresh_paths([two_files / "a.py"])
        after = {r.path: r for r in engine.file_records()}

        assert result.modified == ["a.py"]
        assert result.reresolved == []
        assert after["b.py"].fingerprint == before["b.py"].fingerprint
        assert after["a.py"].fingerprint != before["a.py"].fingerprint
        assert [e for e in engine.snapshot().entities() if e.file_path == "b.py"] == b_entities
        assert targets(engine, "b.py::caller", RelationshipKind.CALL) == ["a.py::f"]
