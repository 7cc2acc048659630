# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Tests for the source scanner (manifest building and ignore rules)."""

import pytest

from codegraph_engine.analyzers.registry import default_registry
from codegraph_engine.scanner import SourceScanner


def write(root, rel_path, content="x = 1\n"):
    path = root / rel_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


@pytest.fixture
def repo(tmp_path):
    for rel_path in [
        "pkg/__init__.py",
        "pkg/mod.py",
        "pkg/stubs.pyi",
        "web/app.js",
        "README.md",
        ".venv/lib/site.py",
        "node_modules/left-pad/index.js",
        "build/gen.py",
        "pkg.egg-info/top.py",
        ".env",
        "keys/server.pem",
        "docs/conf.py",
        "pkg/cache.tmp.py",
        "generated_models.py",
    ]:
        write(tmp_path, rel_path)
    (tmp_path / ".gitignore").write_text("# build output\n\ndocs/\n*.tmp.py\n" + "x" * 1001 + "\n")
    return tmp_path


class TestScan:
    """Test manifest discovery."""

    def test_scan_with_registry_extensions(self, repo):
        scanner = SourceScanner(
            repo,
            ignore_patterns=["generated_*"],
            extension_map=default_registry().extension_map(),
        )
        assert scanner.scan() == ["pkg/__init__.py", "pkg/mod.py", "pkg/stubs.pyi", "web/app.js"]

    def test_default_extensions_are_python_only(self, repo):
        scanner = SourceScanner(repo)
        assert "web/app.js" not in scanner.scan()
        assert "generated_models.py" in scanner.scan()

    def test_manifest_loads_content(self, repo):
        manifest = SourceScanner(repo, ignore_patterns=["generated_*"]).manifest()

        assert [source.path for source in manifest] == ["pkg/__init__.py", "pkg/mod.py", "pkg/stubs.pyi"]
        assert manifest[0].content == b"x = 1\n"
        assert manifest[0].language == "python"
        assert manifest[0].mtime is not None

    def test_custom_gitignore_path(self, repo, tmp_path_factory):
        gitignore = tmp_path_factory.mktemp("elsewhere") / "ignore"
        gitignore.write_text("pkg/\n")
        scanner = SourceScanner(repo, gitignore_path=gitignore)
        assert scanner.scan() == ["docs/conf.py", "generated_models.py"]


class TestIgnoreRules:
    """Test individual ignore decisions."""

    @pytest.fixture
    def scanner(self, repo):
        return SourceScanner(repo, ignore_patterns=["generated_*"])

    @pytest.mark.parametrize(
        "rel_path",
        [
            ".git/config",
            "src/__pycache__/mod.cpython-312.pyc",
            "venv/lib/site.py",
            "dist/pkg.py",
            "pkg.egg-info/top.py",
            ".env.local",
            "config/credentials.json",
            "deploy/id_rsa",
            "deploy/api_secret",
            ".aws/config",
            "docs/conf.py",
            "pkg/cache.tmp.py",
            "generated_models.py",
        ],
    )
    def test_ignored(self, scanner, repo, rel_path):
        assert scanner.should_ignore(repo / rel_path)

    @pytest.mark.parametrize("rel_path", ["pkg/mod.py", "environment.py", "src/builder.py"])
    def test_not_ignored(self, scanner, repo, rel_path):
        assert not scanner.should_ignore(repo / rel_path)

    def test_outside_root_ignored(self, scanner, tmp_path_factory):
        outside = tmp_path_factory.mktemp("outside") / "mod.py"
        assert scanner.should_ignore(outside)

    def test_classify(self, scanner, repo):
        assert scanner.classify(repo / "pkg/mod.py") == "python"
        assert scanner.classify(repo / "README.md") is None
        assert scanner.classify(repo / "build/gen.py") is None


class TestPaths:
    """Test path normalization and loading."""

    def test_relative_path(self, repo):
        scanner = SourceScanner(repo)
        assert scanner.relative_path(repo / "pkg" / "mod.py") == "pkg/mod.py"
        assert scanner.relative_path("pkg/mod.py") == "pkg/mod.py"
        assert scanner.relative_path(repo / "pkg" / ".." / "pkg" / "mod.py") == "pkg/mod.py"
        assert scanner.relative_path(repo) is None
        assert scanner.relative_path(repo.parent / "other.py") is None

    def test_load_missing_file(self, repo):
        assert SourceScanner(repo).load("pkg/missing.py") is None

    def test_load_sets_fingerprint(self, repo):
        first = SourceScanner(repo).load("pkg/mod.py")
        write(repo, "pkg/mod.py", "x = 2\n")
        second = SourceScanner(repo).load("pkg/mod.py")
        assert first.fingerprint != second.fingerprint
