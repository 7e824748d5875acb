"""Scaffolding generator configuration.

Centralised, typed configuration for the build step.  Settings use a Pydantic
v2 model so they are validated at construction time and can be serialised to
and from JSON, environment variables or a Dart ``build.yaml``.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

BUILDER_NAME = "scaffolding"


class Config(BaseModel):
    """Global scaffolding configuration.

    Instances are created once by the CLI entry point (or by a host build
    system) and then passed explicitly to ``ScaffoldBuilder``.
    """

    enabled: bool = Field(default=True, description="Whether the builder runs at all")
    project_root: Path = Field(default=Path("."), description="Root of the Dart package")
    input_glob: str = Field(
        default="lib/**/*.dart", description="Glob (relative to project_root) selecting domain files"
    )
    package_name: str = Field(
        default="", description="Dart package name; read from pubspec.yaml when empty"
    )
    feature_brick: str = Field(
        default="bundled:scaffolding", description="Brick reference for the feature scaffold"
    )
    index_brick: str = Field(
        default="bundled:scaffolding_home", description="Brick reference for the home/index view"
    )
    output_marker: str = Field(
        default=".scaffold", description="Marker inserted before the output extension"
    )
    aggregator_filename: str = Field(
        default="scaffold_app.dart", description="Index module excluded from bundled imports"
    )
    scratch_root: Path | None = Field(
        default=None, description="Parent of per-invocation scratch dirs (system temp if unset)"
    )
    keep_scratch: bool = Field(default=False, description="Keep scratch dirs for debugging")
    brick_cache_dir: Path = Field(
        default_factory=lambda: Path.home() / ".cache" / "scaffolding" / "bricks",
        description="Where remote bricks are cloned or extracted",
    )
    parallel_generation: bool = Field(
        default=False, description="Run the feature and index bricks concurrently"
    )
    max_parallel_builds: int = Field(
        default=4, ge=1, description="Maximum concurrent build invocations"
    )
    command_timeout: int = Field(default=120, ge=10, description="Timeout for git/hook commands")
    verbose: bool = Field(default=False)

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def pubspec_path(self) -> Path:
        return self.project_root / "pubspec.yaml"

    @property
    def scratch_parent(self) -> Path:
        """Directory under which per-invocation scratch dirs are created."""
        return self.scratch_root or Path(tempfile.gettempdir())

    @property
    def build_extensions(self) -> dict[str, list[str]]:
        """Input extension -> output extension mapping, one to one."""
        return {".dart": [f"{self.output_marker}.dart"]}

    def resolve_package_name(self) -> str:
        """Return ``package_name``, falling back to the ``name`` in pubspec.yaml.

        Falls back to the project directory name when no pubspec exists.
        """
        if self.package_name:
            return self.package_name
        if self.pubspec_path.exists():
            data = yaml.safe_load(self.pubspec_path.read_text(encoding="utf-8")) or {}
            name = data.get("name") if isinstance(data, dict) else None
            if name:
                return str(name)
        return self.project_root.resolve().name

    def output_path_for(self, input_path: Path) -> Path:
        """``contact.dart`` -> ``contact.scaffold.dart`` beside the input."""
        return input_path.with_name(f"{input_path.stem}{self.output_marker}{input_path.suffix}")

    def is_output(self, path: Path) -> bool:
        return path.name.endswith(f"{self.output_marker}{path.suffix}")

    def find_inputs(self) -> list[Path]:
        """Return the sorted domain files matched by ``input_glob``, excluding outputs."""
        return sorted(
            p
            for p in self.project_root.glob(self.input_glob)
            if p.is_file() and not self.is_output(p)
        )

    # ------------------------------------------------------------------
    # Serialisation helpers
    # ------------------------------------------------------------------

    def save(self, path: Path) -> Path:
        """Persist the configuration to a JSON file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        return path

    @classmethod
    def load(cls, path: Path) -> "Config":
        """Load a previously-saved configuration from JSON."""
        raw = Path(path).read_text(encoding="utf-8")
        return cls.model_validate_json(raw)

    @classmethod
    def from_env(cls, **overrides: Any) -> "Config":
        """Build a ``Config`` from environment variables.

        Recognised variables (all optional):
            SCAFFOLD_ENABLED, SCAFFOLD_PROJECT_ROOT, SCAFFOLD_INPUT_GLOB,
            SCAFFOLD_PACKAGE, SCAFFOLD_FEATURE_BRICK, SCAFFOLD_INDEX_BRICK,
            SCAFFOLD_SCRATCH_ROOT, SCAFFOLD_KEEP_SCRATCH, SCAFFOLD_BRICK_CACHE,
            SCAFFOLD_PARALLEL_GENERATION, SCAFFOLD_MAX_PARALLEL_BUILDS,
            SCAFFOLD_VERBOSE.
        """
        kwargs: dict[str, Any] = {}
        if os.environ.get("SCAFFOLD_ENABLED"):
            kwargs["enabled"] = _env_flag("SCAFFOLD_ENABLED")
        if os.environ.get("SCAFFOLD_PROJECT_ROOT"):
            kwargs["project_root"] = Path(os.environ["SCAFFOLD_PROJECT_ROOT"])
        if os.environ.get("SCAFFOLD_INPUT_GLOB"):
            kwargs["input_glob"] = os.environ["SCAFFOLD_INPUT_GLOB"]
        if os.environ.get("SCAFFOLD_PACKAGE"):
            kwargs["package_name"] = os.environ["SCAFFOLD_PACKAGE"]
        if os.environ.get("SCAFFOLD_FEATURE_BRICK"):
            kwargs["feature_brick"] = os.environ["SCAFFOLD_FEATURE_BRICK"]
        if os.environ.get("SCAFFOLD_INDEX_BRICK"):
            kwargs["index_brick"] = os.environ["SCAFFOLD_INDEX_BRICK"]
        if os.environ.get("SCAFFOLD_SCRATCH_ROOT"):
            kwargs["scratch_root"] = Path(os.environ["SCAFFOLD_SCRATCH_ROOT"])
        if os.environ.get("SCAFFOLD_KEEP_SCRATCH"):
            kwargs["keep_scratch"] = _env_flag("SCAFFOLD_KEEP_SCRATCH")
        if os.environ.get("SCAFFOLD_BRICK_CACHE"):
            kwargs["brick_cache_dir"] = Path(os.environ["SCAFFOLD_BRICK_CACHE"])
        if os.environ.get("SCAFFOLD_PARALLEL_GENERATION"):
            kwargs["parallel_generation"] = _env_flag("SCAFFOLD_PARALLEL_GENERATION")
        if os.environ.get("SCAFFOLD_MAX_PARALLEL_BUILDS"):
            kwargs["max_parallel_builds"] = int(os.environ["SCAFFOLD_MAX_PARALLEL_BUILDS"])
        if os.environ.get("SCAFFOLD_VERBOSE"):
            kwargs["verbose"] = _env_flag("SCAFFOLD_VERBOSE")
        kwargs.update(overrides)
        return cls(**kwargs)

    @classmethod
    def from_build_yaml(cls, path: Path, **overrides: Any) -> "Config":
        """Read the builder's enable flag and input globs from a Dart ``build.yaml``.

        Looks at ``targets.$default.builders.<name>`` where ``<name>`` is
        ``scaffolding`` optionally prefixed by a package (``pkg:scaffolding``)::

            targets:
              $default:
                builders:
                  scaffolding:
                    enabled: true
                    generate_for:
                      - lib/features/*.dart
        """
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        builders = (
            data.get("targets", {}).get("$default", {}).get("builders", {})
            if isinstance(data, dict)
            else {}
        ) or {}
        kwargs: dict[str, Any] = {"project_root": Path(path).parent}
        for key, options in builders.items():
            if key.split(":")[-1] != BUILDER_NAME or not isinstance(options, dict):
                continue
            if "enabled" in options:
                kwargs["enabled"] = bool(options["enabled"])
            generate_for = options.get("generate_for")
            if isinstance(generate_for, dict):
                generate_for = generate_for.get("include")
            if isinstance(generate_for, list) and generate_for:
                kwargs["input_glob"] = str(generate_for[0])
            elif isinstance(generate_for, str):
                kwargs["input_glob"] = generate_for
            break
        kwargs.update(overrides)
        return cls(**kwargs)


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")
