"""Brick-based template engine.

Resolves bricks (bundled, local, git or archive), renders their Jinja2
templates with the variables derived from a domain model, and returns the
generated files.

Quick usage::

    from scaffolding.scaffolder import BrickEngine, build_feature_variables

    engine = BrickEngine(cache_dir=Path("~/.cache/scaffolding").expanduser())
    files = await engine.generate(
        "bundled:scaffolding",
        build_feature_variables("my_app", info),
        Path("/tmp/out"),
    )
"""

from scaffolding.scaffolder.brick import (
    Brick,
    BrickEngine,
    BrickGenerator,
    BrickRef,
    ConflictPolicy,
    GeneratedFile,
    GeneratedFileSet,
    TemplateEngine,
)
from scaffolding.scaffolder.templates import TemplateRenderer
from scaffolding.scaffolder.variables import build_feature_variables, build_index_variables

__all__ = [
    "Brick",
    "BrickEngine",
    "BrickGenerator",
    "BrickRef",
    "ConflictPolicy",
    "GeneratedFile",
    "GeneratedFileSet",
    "TemplateEngine",
    "TemplateRenderer",
    "build_feature_variables",
    "build_index_variables",
]
