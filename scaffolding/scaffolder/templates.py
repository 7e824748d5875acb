"""Jinja2 template rendering for brick files.

Provides the TemplateRenderer class which loads the templates of one brick
(its ``__brick__`` directory) and renders them, and their file paths, with
the brick variables.  Rendered values are written as Dart literals so that
``True`` becomes ``true`` and ``None`` becomes ``null``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from scaffolding.utils import camel_case, pascal_case, snake_case, title_case

TEMPLATE_SUFFIX = ".j2"


# ---------------------------------------------------------------------------
# TemplateRenderer
# ---------------------------------------------------------------------------


class TemplateRenderer:
    """Renders the Jinja2 templates of a brick.

    Every file under *template_dir* is a template; a trailing ``.j2`` is
    dropped from the output name.  Undefined variables are errors rather
    than silently empty strings.
    """

    def __init__(self, template_dir: str | Path) -> None:
        self.template_dir = Path(template_dir)
        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=select_autoescape([]),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
            finalize=_dart_literal,
        )
        self.env.filters["snake_case"] = snake_case
        self.env.filters["pascal_case"] = pascal_case
        self.env.filters["camel_case"] = camel_case
        self.env.filters["title_case"] = title_case
        self.env.filters["dart"] = _dart_literal

    # -- Rendering ---------------------------------------------------------

    def render(self, template_path: str, context: dict[str, Any]) -> str:
        """Render the template at *template_path* (relative to the template dir)."""
        return self.env.get_template(template_path).render(context)

    def render_string(self, template_string: str, context: dict[str, Any]) -> str:
        """Render an inline template string with the provided context."""
        return self.env.from_string(template_string).render(context)

    def render_path(self, template_path: str, context: dict[str, Any]) -> Path:
        """Render each segment of a template path and drop the ``.j2`` suffix.

        ``{{ feature }}/{{ feature }}_bloc.dart.j2`` with ``feature=contact``
        becomes ``contact/contact_bloc.dart``.
        """
        segments = [
            self.render_string(segment, context) if "{" in segment else segment
            for segment in Path(template_path).parts
        ]
        if segments and segments[-1].endswith(TEMPLATE_SUFFIX):
            segments[-1] = segments[-1][: -len(TEMPLATE_SUFFIX)]
        if not segments or any(not s or s in (".", "..") for s in segments):
            raise ValueError(f"template path {template_path!r} renders to an invalid path")
        return Path(*segments)

    # -- Discovery ---------------------------------------------------------

    def list_templates(self) -> list[str]:
        """Return a sorted list of all template paths, relative to the template dir."""
        if not self.template_dir.is_dir():
            return []
        return sorted(
            p.relative_to(self.template_dir).as_posix()
            for p in self.template_dir.rglob("*")
            if p.is_file()
        )


# ---------------------------------------------------------------------------
# Dart literal rendering
# ---------------------------------------------------------------------------


def _dart_literal(value: Any) -> Any:
    """Render Python booleans and ``None`` the way Dart spells them."""
    if value is True:
        return "true"
    if value is False:
        return "false"
    if value is None:
        return "null"
    return value
