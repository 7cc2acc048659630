# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Shared fixtures for integration tests.

Provides a representative repository on disk and an engine factory bound to a
private cache directory.
"""

from pathlib import Path
from typing import Dict

import pytest

from codegraph_engine.config import Config
from codegraph_engine.engine import CodeGraphEngine

SAMPLE_FILES: Dict[str, str] = {
    "app/__init__.py": '''"""Application package."""

from .core import run
from .models.base import BaseModel
''',
    "app/core.py": '''"""Entry points."""

from app.models import User
from app.services import notify


def run():
    user = User("x")
    notify(user)
    return user
''',
    "app/services.py": '''import json


def notify(user):
    return json.dumps({"user": str(user)})
''',
    "app/models/__init__.py": '''from .base import BaseModel
from .user import User
''',
    "app/models/base.py": '''class BaseModel:
    def save(self):
        return True
''',
    "app/models/user.py": '''from app.models.base import BaseModel


class User(BaseModel):
    def __init__(self, name):
        self.name = name
''',
    "cyc/__init__.py": "",
    "cyc/a.py": '''from cyc.b import b_step


def a_step():
    return b_step()
''',
    "cyc/b.py": '''from cyc.c import c_step


def b_step():
    return c_step()
''',
    "cyc/c.py": '''from cyc.a import a_step


def c_step():
    return a_step()
''',
    "broken.py": '''def ok():
    return 1


def broken(:
    pass
''',
    "missing.py": '''def g():
    return undefined_thing()
''',
    "web/app.js": 'console.log("hello");\n',
}


def write_files(root: Path, files: Dict[str, str]) -> Path:
    for rel_path, content in files.items():
        path = root / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return root


@pytest.fixture
def sample_project(tmp_path: Path) -> Path:
    """Create a representative project for integration testing.

    Contains:
    - Package re-exports through __init__.py files
    - Cross-file calls and class inheritance
    - A three-function call cycle across modules
    - A file with a syntax error and a call to an undefined name
    - A JavaScript file no analyzer supports

    Returns:
        Path to the project root directory
    """
    return write_files(tmp_path / "sample_project", SAMPLE_FILES)


@pytest.fixture
def make_engine(tmp_path: Path):
    """Factory for engines sharing one cache directory under tmp_path."""
    engines = []

    def factory(repo_root: Path, **overrides) -> CodeGraphEngine:
        values = {"cache_dir": str(tmp_path / "cache"), "max_workers": 4}
        values.update(overrides)
        engine = CodeGraphEngine(config=Config.from_dict(values), repo_root=repo_root)
        engines.append(engine)
        return engine

    yield factory
    for engine in engines:
        engine.stop_watching()
