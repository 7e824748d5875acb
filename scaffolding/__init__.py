"""Scaffolding -- generates bundled CRUD feature code from Dart domain models.

Reads a Dart file declaring one domain class, renders the feature and home
bricks with the extracted fields and bundles every generated file into a
single ``<name>.scaffold.dart`` beside the input.

Quick usage::

    from scaffolding import Config, ScaffoldBuilder

    builder = ScaffoldBuilder(Config(project_root=Path("my_app")))
    result = await builder.build("my_app/lib/features/contact.dart")
"""

from scaffolding.config import Config
from scaffolding.errors import (
    BuildCancelled,
    BundlingError,
    MalformedDomainError,
    ScaffoldError,
    TemplateResolutionError,
    WriteError,
)
from scaffolding.pipeline import BuildResult, BuildScheduler, BuildState, CancelToken, ScaffoldBuilder

__all__ = [
    "BuildCancelled",
    "BuildResult",
    "BuildScheduler",
    "BuildState",
    "BundlingError",
    "CancelToken",
    "Config",
    "MalformedDomainError",
    "ScaffoldBuilder",
    "ScaffoldError",
    "TemplateResolutionError",
    "WriteError",
]

__version__ = "0.2.0"
