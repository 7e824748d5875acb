"""Shared pytest fixtures for the scaffolding test suite.

Provides reusable fixtures for:
- Sample domain model sources and a temporary Dart package
- A ready-to-use Config pointing at temporary directories
- A minimal local brick and a recording fake template engine
- Mock subprocess helpers
"""

from __future__ import annotations

import textwrap
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import yaml

from scaffolding.config import Config
from scaffolding.errors import TemplateResolutionError
from scaffolding.scaffolder import ConflictPolicy, GeneratedFile, GeneratedFileSet
from scaffolding.utils import set_verbose

FIXTURES_DIR = Path(__file__).parent / "fixtures"


@pytest.fixture(autouse=True)
def _quiet_output():
    """Keep debug output off unless a test turns it on."""
    set_verbose(False)
    yield
    set_verbose(False)


# ---------------------------------------------------------------------------
# Domain model sources
# ---------------------------------------------------------------------------

@pytest.fixture
def contact_source() -> str:
    """Text of the Contact domain model fixture."""
    path = FIXTURES_DIR / "contact.dart"
    assert path.exists(), f"Contact fixture not found at {path}"
    return path.read_text(encoding="utf-8")


@pytest.fixture
def dart_project(tmp_path: Path, contact_source: str) -> Path:
    """A minimal Dart package named ``my_app`` with one domain model.

    Layout::

        my_app/
            pubspec.yaml
            lib/features/contact.dart
    """
    root = tmp_path / "my_app"
    features = root / "lib" / "features"
    features.mkdir(parents=True)
    (root / "pubspec.yaml").write_text(
        textwrap.dedent("""\
            name: my_app
            description: Scaffolding test package
            environment:
              sdk: ">=3.0.0 <4.0.0"
        """),
        encoding="utf-8",
    )
    (features / "contact.dart").write_text(contact_source, encoding="utf-8")
    return root


@pytest.fixture
def config(dart_project: Path, tmp_path: Path) -> Config:
    """Config for ``dart_project`` with scratch and cache dirs under tmp_path."""
    return Config(
        project_root=dart_project,
        input_glob="lib/features/*.dart",
        scratch_root=tmp_path / "scratch",
        brick_cache_dir=tmp_path / "cache",
    )


# ---------------------------------------------------------------------------
# Bricks & engines
# ---------------------------------------------------------------------------

@pytest.fixture
def make_brick(tmp_path: Path):
    """Factory that writes a brick directory and returns its path.

    Usage:
        def test_brick(make_brick):
            path = make_brick({"{{ name }}.txt.j2": "Hello {{ name }}"},
                              vars={"name": {"type": "string"}})
    """
    def factory(
        templates: dict[str, str],
        vars: dict[str, Any] | None = None,
        hooks: dict[str, str] | None = None,
        name: str = "greeting",
    ) -> Path:
        root = tmp_path / "bricks" / name
        (root / "__brick__").mkdir(parents=True)
        manifest = {"name": name, "description": "test brick", "version": "0.1.0"}
        if vars:
            manifest["vars"] = vars
        (root / "brick.yaml").write_text(yaml.safe_dump(manifest), encoding="utf-8")
        for relative, content in templates.items():
            target = root / "__brick__" / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        for stage, source in (hooks or {}).items():
            hook = root / "hooks" / f"{stage}.py"
            hook.parent.mkdir(parents=True, exist_ok=True)
            hook.write_text(textwrap.dedent(source), encoding="utf-8")
        return root

    return factory


class FakeEngine:
    """Template engine double that records calls and writes canned files."""

    def __init__(self, outputs: dict[str, dict[str, str]] | None = None, fail_on: str = ""):
        self.outputs = outputs or {}
        self.fail_on = fail_on
        self.calls: list[dict[str, Any]] = []

    async def generate(
        self,
        reference: str,
        variables: dict[str, Any],
        target_dir: Path,
        conflict_policy: ConflictPolicy = ConflictPolicy.OVERWRITE,
    ) -> GeneratedFileSet:
        self.calls.append(
            {"reference": reference, "variables": variables, "target_dir": target_dir}
        )
        if reference == self.fail_on:
            raise TemplateResolutionError(reference, "not found")
        files = []
        for relative, content in self.outputs.get(reference, {}).items():
            path = target_dir / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
            files.append(GeneratedFile(path, content))
        return GeneratedFileSet(files)


@pytest.fixture
def fake_engine_cls() -> type[FakeEngine]:
    """The FakeEngine class, for tests that need custom outputs or failures."""
    return FakeEngine


@pytest.fixture
def fake_engine() -> FakeEngine:
    """A FakeEngine producing one small feature file and one index file."""
    return FakeEngine(
        outputs={
            "bundled:scaffolding": {
                "contact/contact.dart": (
                    "import 'package:equatable/equatable.dart';\n"
                    "import 'package:my_app/features/contact/contact_model.dart';\n"
                    "\n"
                    "class Contact {}\n"
                ),
            },
            "bundled:scaffolding_home": {
                "scaffold_app.dart": (
                    "import 'package:flutter/material.dart';\n"
                    "\n"
                    "void main() {}\n"
                ),
            },
        }
    )


# ---------------------------------------------------------------------------
# Subprocess
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_subprocess():
    """Factory for fake ``asyncio`` child processes.

    The fake answers ``communicate()`` with the given output, so patching
    ``asyncio.create_subprocess_exec`` with it lets ``git clone`` calls run
    without git::

        proc = mock_subprocess(stderr="fatal: repository not found", returncode=128)
        with patch("asyncio.create_subprocess_exec", return_value=proc):
            ...
    """
    def factory(stdout: str = "", stderr: str = "", returncode: int = 0) -> MagicMock:
        proc = MagicMock(returncode=returncode)
        proc.communicate = AsyncMock(return_value=(stdout.encode(), stderr.encode()))
        proc.wait = AsyncMock(return_value=returncode)
        return proc

    return factory
