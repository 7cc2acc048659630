# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Tests for incremental graph updates."""

import textwrap
import threading
import time
from unittest.mock import patch

import pytest

from codegraph_engine.analyzers.python_analyzer import PythonAnalyzer
from codegraph_engine.analyzers.registry import default_registry
from codegraph_engine.cache import GraphCache
from codegraph_engine.graph import CodeGraph
from codegraph_engine.graph_updater import GraphUpdater
from codegraph_engine.models import (
    DiagnosticKind,
    FileState,
    RelationshipKind,
    SourceFile,
)

A = "def f():\n    return 1\n"
B = "from a import f\n\ndef g():\n    return f()\n"


def src(path: str, code: str, mtime=None) -> SourceFile:
    return SourceFile(path=path, content=textwrap.dedent(code).encode("utf-8"), mtime=mtime)


def make_updater(**kwargs) -> GraphUpdater:
    kwargs.setdefault("max_workers", 1)
    return GraphUpdater(CodeGraph(), default_registry(), **kwargs)


def call_targets(snapshot, source_id):
    return [e.target_id for e in snapshot.outgoing(source_id) if e.kind == RelationshipKind.CALL]


def graph_state(updater):
    snapshot = updater.published_snapshot
    return (
        sorted(snapshot.entity_ids()),
        sorted(edge.edge_key() for edge in snapshot.edges()),
    )


@pytest.fixture
def updater():
    updater = make_updater()
    updater.update([src("a.py", A), src("b.py", B)])
    return updater


class TestCreateAndUnchanged:
    """Test first analysis and fingerprint-based skipping."""

    def test_create(self):
        updater = make_updater()
        result = updater.update([src("a.py", A), src("b.py", B)])
        snapshot = updater.published_snapshot

        assert result.created == ["a.py", "b.py"]
        assert result.changed
        assert call_targets(snapshot, "b.py::g") == ["a.py::f"]
        assert updater.records()["a.py"].status == FileState.PARSED
        assert updater.records()["a.py"].declared_ids == ("a.py", "a.py::f")

    def test_unchanged_files_skipped(self, updater):
        snapshot = updater.published_snapshot
        result = updater.update([src("a.py", A), src("b.py", B)])

        assert result.unchanged == ["a.py", "b.py"]
        assert not result.changed
        assert updater.published_snapshot is snapshot

    def test_mtime_ignored_by_default(self, updater):
        result = updater.update([src("a.py", "def f():\n    return 9\n", mtime=1.0)])
        assert result.modified == ["a.py"]

    def test_trusted_mtime_skips_fingerprint(self):
        updater = make_updater(trust_mtime=True)
        updater.update([src("a.py", A, mtime=1.0)])

        result = updater.update([src("a.py", "def f():\n    return 9\n", mtime=1.0)])
        assert result.unchanged == ["a.py"]

    def test_changed_and_deleted_treated_as_changed(self, updater):
        result = updater.update([src("a.py", "def f():\n    return 2\n")], deleted_paths=["a.py"])
        assert result.modified == ["a.py"]
        assert result.deleted == []


class TestModify:
    """Test re-analysis of modified files and re-resolution of dependents."""

    def test_body_only_edit_keeps_dependents(self, updater):
        before = updater.records()["b.py"]
        analyzed_at, fingerprint = before.analyzed_at, before.fingerprint

        result = updater.update([src("a.py", "def f():\n    return 2\n")])
        snapshot = updater.published_snapshot

        assert result.modified == ["a.py"]
        assert result.reresolved == []
        assert updater.records()["b.py"].analyzed_at == analyzed_at
        assert updater.records()["b.py"].fingerprint == fingerprint
        assert call_targets(snapshot, "b.py::g") == ["a.py::f"]
        assert sorted(e.source_id for e in snapshot.incoming("a.py::f")) == ["a.py", "b.py", "b.py::g"]

    def test_rename_re_resolves_dependents(self, updater):
        result = updater.update([src("a.py", "def h():\n    return 1\n")])
        snapshot = updater.published_snapshot

        assert result.reresolved == ["b.py"]
        assert call_targets(snapshot, "b.py::g") == ["external:a.f"]
        kinds = {(d.path, d.kind) for d in updater.diagnostics()}
        assert ("b.py", DiagnosticKind.UNRESOLVED_REFERENCE) in kinds

    def test_restored_name_resolves_again(self, updater):
        updater.update([src("a.py", "def h():\n    return 1\n")])
        result = updater.update([src("a.py", A)])

        assert result.reresolved == ["b.py"]
        assert call_targets(updater.published_snapshot, "b.py::g") == ["a.py::f"]
        assert updater.diagnostics() == []

    def test_new_definition_resolves_previously_unresolved(self):
        updater = make_updater()
        updater.update([src("a.py", "X = 1\n"), src("b.py", B)])
        assert call_targets(updater.published_snapshot, "b.py::g") == ["external:a.f"]

        result = updater.update([src("a.py", A)])
        assert result.reresolved == ["b.py"]
        assert call_targets(updater.published_snapshot, "b.py::g") == ["a.py::f"]

    def test_syntax_error_gives_partial_state(self, updater):
        updater.update([src("a.py", "def f():\n    return 1\n\ndef broken(:\n    pass\n")])

        assert updater.records()["a.py"].status == FileState.PARTIAL
        assert call_targets(updater.published_snapshot, "b.py::g") == ["a.py::f"]
        assert [d.kind for d in updater.diagnostics()] == [DiagnosticKind.PARSE_ERROR]

    def test_analyzer_crash_marks_file_corrupted(self, updater, monkeypatch):
        def explode(self, source):
            raise RuntimeError("boom")

        monkeypatch.setattr(PythonAnalyzer, "analyze", explode)
        updater.update([src("a.py", "def f():\n    return 3\n")])

        assert updater.records()["a.py"].status == FileState.CORRUPTED
        assert not updater.published_snapshot.has_entity("a.py::f")

    def test_old_snapshot_unaffected(self, updater):
        snapshot = updater.published_snapshot
        updater.update([src("a.py", "def h():\n    return 1\n")])

        assert snapshot.has_entity("a.py::f")
        assert call_targets(snapshot, "b.py::g") == ["a.py::f"]


class TestDelete:
    """Test deletion of files."""

    def test_delete_retracts_entities(self, updater):
        result = updater.update(deleted_paths=["a.py"])
        snapshot = updater.published_snapshot

        assert result.deleted == ["a.py"]
        assert result.reresolved == ["b.py"]
        assert not snapshot.has_entity("a.py")
        assert not snapshot.has_entity("a.py::f")
        assert "a.py" not in updater.records()
        assert call_targets(snapshot, "b.py::g") == ["external:a.f"]

    def test_delete_unknown_path_is_noop(self, updater):
        result = updater.update(deleted_paths=["missing.py"])
        assert result.deleted == []
        assert not result.changed

    def test_sync_deletes_missing_files(self, updater):
        result = updater.sync([src("b.py", B)])
        assert result.deleted == ["a.py"]
        assert result.unchanged == ["b.py"]


class TestDirectories:
    """Test directory entities and their containment edges."""

    @pytest.fixture
    def tree_updater(self):
        updater = make_updater()
        updater.update(
            [src("pkg/sub/m.py", "X = 1\n"), src("pkg/n.py", "Y = 2\n"), src("top.py", "Z = 3\n")]
        )
        return updater

    def compose_children(self, updater, directory_id):
        return [
            e.target_id
            for e in updater.published_snapshot.outgoing(directory_id)
            if e.kind == RelationshipKind.COMPOSE
        ]

    def test_directory_entities_created(self, tree_updater):
        assert self.compose_children(tree_updater, "./") == ["pkg/", "top.py"]
        assert self.compose_children(tree_updater, "pkg/") == ["pkg/sub/", "pkg/n.py"]
        assert self.compose_children(tree_updater, "pkg/sub/") == ["pkg/sub/m.py"]

    def test_empty_directory_removed(self, tree_updater):
        tree_updater.update(deleted_paths=["pkg/sub/m.py"])

        assert not tree_updater.published_snapshot.has_entity("pkg/sub/")
        assert self.compose_children(tree_updater, "pkg/") == ["pkg/n.py"]

    def test_modified_file_reattached(self, tree_updater):
        tree_updater.update([src("pkg/n.py", "Y = 3\n")])
        assert self.compose_children(tree_updater, "pkg/") == ["pkg/sub/", "pkg/n.py"]


class TestStateMachine:
    """Test file lifecycle transitions."""

    def test_illegal_transition_raises(self, updater):
        record = updater.records()["a.py"]
        with pytest.raises(ValueError, match="Illegal state transition"):
            updater._transition(record, FileState.PARTIAL)

    def test_mark_stale_forces_reanalysis(self, updater):
        assert updater.mark_stale(["a.py", "unknown.py"]) == ["a.py"]
        assert updater.mark_stale(["a.py"]) == []
        assert updater.records()["a.py"].status == FileState.STALE

        result = updater.update([src("a.py", A)])
        assert result.modified == ["a.py"]
        assert updater.records()["a.py"].status == FileState.PARSED


class TestEquivalence:
    """Incremental updates end in the same graph as a full analysis."""

    INITIAL = {
        "a.py": A,
        "b.py": B,
        "pkg/__init__.py": "from .util import helper\n",
        "pkg/util.py": "def helper():\n    pass\n",
        "app.py": "from pkg import helper\n\ndef main():\n    helper()\n",
    }

    def test_incremental_equals_full(self):
        incremental = make_updater(max_workers=4)
        incremental.update([src(path, code) for path, code in self.INITIAL.items()])
        incremental.update([src("a.py", "def f():\n    return 2\n")])
        incremental.update([src("pkg/util.py", "def helper2():\n    pass\n")])
        incremental.update([src("c.py", "import app\n\napp.main()\n")], deleted_paths=["b.py"])
        incremental.update([src("pkg/util.py", "def helper():\n    pass\n")])

        final = dict(self.INITIAL)
        del final["b.py"]
        final["a.py"] = "def f():\n    return 2\n"
        final["c.py"] = "import app\n\napp.main()\n"
        full = make_updater()
        full.update([src(path, code) for path, code in final.items()])

        assert graph_state(incremental) == graph_state(full)
        assert incremental.diagnostics() == full.diagnostics()
        assert incremental.published_snapshot.validate() == (True, [])

    def test_idempotent(self, updater):
        state = graph_state(updater)
        updater.update([src("a.py", A), src("b.py", B)])
        assert graph_state(updater) == state


class TestRestore:
    """Test warm start from exported state."""

    def test_restore_round_trip(self, updater):
        updater.update([src("a.py", "def h():\n    return 1\n")])
        snapshot, records, analyses = updater.export_state()

        restored = make_updater()
        restored.restore(CodeGraph.from_dict(snapshot.to_dict()), records, analyses)

        assert graph_state(restored) == graph_state(updater)
        assert restored.diagnostics() == updater.diagnostics()
        assert sorted(restored.records()) == ["a.py", "b.py"]

    def test_restored_updater_keeps_working(self, updater):
        snapshot, records, analyses = updater.export_state()
        restored = make_updater()
        restored.restore(CodeGraph.from_dict(snapshot.to_dict()), records, analyses)

        result = restored.update([src("a.py", "def h():\n    return 1\n")])
        assert result.reresolved == ["b.py"]

        restored.update(deleted_paths=["a.py", "b.py"])
        assert restored.published_snapshot.entity_count == 0

    def test_reset(self, updater):
        updater.reset()
        assert updater.records() == {}
        assert updater.published_snapshot.entity_count == 0


class TestConcurrency:
    """Readers and writers sharing one updater."""

    def test_held_record_keeps_its_values(self, updater):
        held = updater.records()["a.py"]
        fingerprint = held.fingerprint

        updater.update([src("a.py", "def f():\n    return 2\n")])

        assert held.fingerprint == fingerprint
        assert held.status == FileState.PARSED
        assert updater.records()["a.py"].fingerprint != fingerprint

    def test_published_state_survives_update(self, updater):
        snapshot, records, _ = updater.published_state()

        updater.update([src("a.py", "def h():\n    return 1\n")])

        assert snapshot.has_entity("a.py::f")
        assert not snapshot.has_entity("a.py::h")
        assert records["a.py"].fingerprint == src("a.py", A).fingerprint
        assert set(records["a.py"].declared_ids) <= set(snapshot.entity_ids())

    def test_export_stored_after_update_stays_consistent(self, updater, tmp_path):
        snapshot, records, analyses = updater.export_state()
        edited = src("a.py", "def h():\n    return 1\n")
        updater.update([edited])

        cache = GraphCache(tmp_path / "cache")
        cache.store("repo", snapshot, records, analyses)
        cached = cache.retrieve("repo")

        valid, stale = cache.validate(cached, [edited, src("b.py", B)])
        assert valid == ["b.py"]
        assert stale == ["a.py"]
        assert cached.graph.has_entity("a.py::f")
        assert not cached.graph.has_entity("a.py::h")

    def test_interleaved_updates_of_same_file(self, updater):
        first = src("a.py", "def g():\n    return 1\n")
        second = src("a.py", "def f():\n    return 3\n")
        original = updater._analyze_all
        errors = []
        started = []

        def run_second():
            try:
                updater.update([second])
            except Exception as e:
                errors.append(e)

        def analyze_all(sources):
            # Start the competing update while the first one is analyzing
            if not started:
                thread = threading.Thread(target=run_second)
                started.append(thread)
                thread.start()
                time.sleep(0.1)
            return original(sources)

        with patch.object(updater, "_analyze_all", side_effect=analyze_all):
            updater.update([first])
            started[0].join(timeout=10)

        assert not started[0].is_alive()
        assert errors == []
        snapshot = updater.published_snapshot
        assert snapshot.validate() == (True, [])
        assert snapshot.has_entity("a.py::f")
        assert not snapshot.has_entity("a.py::g")
        record = updater.records()["a.py"]
        assert record.fingerprint == second.fingerprint
        assert sorted(record.declared_ids) == ["a.py", "a.py::f"]
        assert call_targets(snapshot, "b.py::g") == ["a.py::f"]

    def test_parallel_updates_of_distinct_files(self, updater):
        changes = [
            [src("a.py", "def f():\n    return 2\n")],
            [src("c.py", "from a import f\n\ndef c():\n    f()\n")],
            [src("d.py", "import c\n\nc.c()\n")],
            [src("e.py", "def e():\n    missing()\n")],
        ]
        errors = []

        def run(sources):
            try:
                updater.update(sources)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=run, args=(sources,)) for sources in changes]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        full = make_updater()
        full.update([src("b.py", B)] + [sources[0] for sources in changes])

        assert errors == []
        assert graph_state(updater) == graph_state(full)
        assert updater.diagnostics() == full.diagnostics()
        assert updater.published_snapshot.validate() == (True, [])
