# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Tests for the persistent graph cache."""

import json

import pytest

from codegraph_engine.analyzers.registry import default_registry
from codegraph_engine.cache import GraphCache
from codegraph_engine.graph import CodeGraph
from codegraph_engine.graph_updater import GraphUpdater
from codegraph_engine.models import DiagnosticKind, FileState, SourceFile

REPO = "/repo/project"


def sources():
    return [
        SourceFile(path="a.py", content=b"def f():\n    return 1\n"),
        SourceFile(path="b.py", content=b"from a import f\n\ndef g():\n    return f()\n"),
    ]


@pytest.fixture
def state():
    """(snapshot, records, analyses) of a small analyzed repository."""
    updater = GraphUpdater(CodeGraph(), default_registry(), max_workers=1)
    updater.update(sources())
    return updater.export_state()


@pytest.fixture
def cache(tmp_path):
    return GraphCache(tmp_path / "cache")


@pytest.fixture
def stored(cache, state):
    snapshot, records, analyses = state
    cache.store(REPO, snapshot, records, analyses)
    return cache


class TestStoreAndRetrieve:
    """Test persistence round trips."""

    def test_round_trip(self, stored, state):
        snapshot, records, analyses = state
        cached = stored.retrieve(REPO)

        assert cached is not None
        assert cached.repo_key == REPO
        assert sorted(cached.graph.entity_ids()) == sorted(snapshot.entity_ids())
        assert sorted(e.edge_key() for e in cached.graph.edges()) == sorted(
            e.edge_key() for e in snapshot.edges()
        )
        assert sorted(cached.records) == ["a.py", "b.py"]
        assert cached.records["a.py"] == records[0]
        assert [a.path for a in cached.analyses] == ["a.py", "b.py"]
        assert cached.analyses[1] == analyses[1]

    def test_document_location(self, stored, cache):
        key = cache.cache_key(REPO)
        assert (cache.cache_dir / f"{key}.json").exists()
        assert cache.cache_key(REPO) == key
        assert cache.cache_key("/other") != key

    def test_no_temporary_files_left(self, stored, cache):
        assert [p.name for p in cache.cache_dir.iterdir() if p.name.startswith(".tmp-")] == []

    def test_miss(self, cache):
        assert cache.retrieve(REPO) is None
        assert cache.get_statistics()["misses"] == 1

    def test_repositories_are_separate(self, stored):
        assert stored.retrieve("/repo/other") is None


class TestCorruption:
    """Test rejection of unreadable or foreign documents."""

    def path(self, cache):
        return cache.cache_dir / f"{cache.cache_key(REPO)}.json"

    def test_truncated_document(self, stored):
        path = self.path(stored)
        path.write_text(path.read_text()[:50])
        diagnostics = []

        assert stored.retrieve(REPO, diagnostics) is None
        assert [d.kind for d in diagnostics] == [DiagnosticKind.CACHE_CORRUPTION]
        assert not path.exists()
        assert stored.get_statistics()["corruptions"] == 1

    def test_malformed_structure(self, stored):
        path = self.path(stored)
        data = json.loads(path.read_text())
        del data["records"]
        path.write_text(json.dumps(data))
        diagnostics = []

        assert stored.retrieve(REPO, diagnostics) is None
        assert diagnostics[0].kind == DiagnosticKind.CACHE_CORRUPTION

    def test_inconsistent_graph(self, stored):
        path = self.path(stored)
        data = json.loads(path.read_text())
        data["graph"]["entities"] = [e for e in data["graph"]["entities"] if e["id"] != "a.py::f"]
        path.write_text(json.dumps(data))

        assert stored.retrieve(REPO, []) is None

    def test_version_mismatch(self, stored):
        path = self.path(stored)
        data = json.loads(path.read_text())
        data["schema_version"] = GraphCache.SCHEMA_VERSION + 1
        path.write_text(json.dumps(data))
        diagnostics = []

        assert stored.retrieve(REPO, diagnostics) is None
        assert [d.kind for d in diagnostics] == [DiagnosticKind.CACHE_VERSION_MISMATCH]
        assert not path.exists()

    def test_not_a_json_object(self, stored):
        self.path(stored).write_text("[1, 2, 3]")
        assert stored.retrieve(REPO) is None


class TestInvalidateAndValidate:
    """Test invalidation and fingerprint validation."""

    def test_invalidate_whole_entry(self, stored):
        assert stored.invalidate(REPO)
        assert stored.retrieve(REPO) is None
        assert not stored.invalidate(REPO)

    def test_invalidate_files_marks_stale(self, stored):
        assert stored.invalidate(REPO, ["a.py"])
        cached = stored.retrieve(REPO)

        assert cached.records["a.py"].status == FileState.STALE
        assert cached.records["b.py"].status == FileState.PARSED

    def test_validate(self, stored):
        cached = stored.retrieve(REPO)
        manifest = [
            SourceFile(path="a.py", content=b"def f():\n    return 2\n"),
            SourceFile(path="c.py", content=b"X = 1\n"),
        ]

        valid, stale = stored.validate(cached, manifest)
        assert valid == []
        assert stale == ["a.py", "b.py", "c.py"]

    def test_validate_unchanged(self, stored):
        cached = stored.retrieve(REPO)
        valid, stale = stored.validate(cached, sources())
        assert valid == ["a.py", "b.py"]
        assert stale == []

    def test_validate_respects_stale_marks(self, stored):
        stored.invalidate(REPO, ["b.py"])
        cached = stored.retrieve(REPO)
        assert stored.validate(cached, sources()) == (["a.py"], ["b.py"])


class TestMaintenance:
    """Test clearing and statistics."""

    def test_clear(self, stored):
        assert stored.clear() == 1
        assert stored.get_statistics()["entries"] == 0

    def test_clear_missing_directory(self, cache):
        assert cache.clear() == 0

    def test_statistics(self, stored):
        stored.retrieve(REPO)
        stored.retrieve("/missing")
        stats = stored.get_statistics()

        assert stats["entries"] == 1
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5
        assert stats["stores"] == 1
