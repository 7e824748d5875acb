"""Bundle generated Dart files into one module.

Consumers import a single ``*.scaffold.dart`` file instead of many
interdependent generated files.  Import directives from every file are
collected, deduplicated and sorted so the output does not depend on the order
the files were enumerated in; imports that point back into the package being
generated (or at the index module) are dropped to avoid self-imports.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from pathlib import Path

from scaffolding.errors import BundlingError
from scaffolding.utils import print_debug

DEFAULT_AGGREGATOR = "scaffold_app.dart"

_IMPORT_LINE = re.compile(r"^[ \t]*(import\s+['\"].*;)[ \t]*$", re.MULTILINE)
_EXPORT_LINE = re.compile(r"^[ \t]*export\s+['\"].*;[ \t]*$", re.MULTILINE)
_PART_LINE = re.compile(r"^[ \t]*part\s+(?:of\s+)?\S.*;[ \t]*$", re.MULTILINE)
_LIBRARY_LINE = re.compile(r"^[ \t]*library\b[^;]*;[ \t]*$", re.MULTILINE)
_BLANK_RUN = re.compile(r"\n[ \t]*\n(?:[ \t]*\n)+")


def _is_self_import(statement: str, package_name: str, aggregator: str) -> bool:
    """Return ``True`` for imports that would point back into the bundle."""
    uri = re.match(r"import\s+['\"]([^'\"]*)['\"]", statement)
    if uri is None:
        return False
    target = uri.group(1)
    return target.startswith(f"package:{package_name}/") or target == aggregator


def strip_directives(content: str) -> str:
    """Remove import, export and part directives and trim the result."""
    body = _IMPORT_LINE.sub("", content)
    body = _EXPORT_LINE.sub("", body)
    body = _PART_LINE.sub("", body)
    return _BLANK_RUN.sub("\n\n", body).strip()


def collect_imports(content: str) -> set[str]:
    """Return every import directive in *content*, trimmed."""
    return {match.group(1).strip() for match in _IMPORT_LINE.finditer(content)}


def bundle(
    package_name: str,
    files: Iterable[tuple[str | Path, str]],
    aggregator: str = DEFAULT_AGGREGATOR,
) -> str:
    """Merge generated files into one Dart source text.

    Args:
        package_name: Dart package the bundle will live in; imports of
            ``package:<package_name>/...`` are dropped.
        files: ``(path, content)`` pairs.  Files whose name starts with a
            dot are ignored.
        aggregator: Filename of the index module, whose import is dropped.

    Returns:
        Sorted unique imports, a blank line, then the stripped bodies in
        path order, each followed by a newline.

    Raises:
        BundlingError: If no bundleable file is given, or a file declares
            a library, which a bundled part cannot do.
    """
    imports: set[str] = set()
    bodies: list[str] = []

    entries = sorted(((Path(p), c) for p, c in files), key=lambda item: item[0].as_posix())
    for path, content in entries:
        if path.name.startswith("."):
            continue
        if not isinstance(content, str):
            raise BundlingError(f"{path} has no text content", {"path": str(path)})

        print_debug(f"Reading {path.name}")
        imports.update(collect_imports(content))
        body = strip_directives(content)
        if _LIBRARY_LINE.search(body):
            raise BundlingError(
                f"{path} declares a library and cannot be bundled", {"path": str(path)}
            )
        bodies.append(body + "\n")

    if not bodies:
        raise BundlingError("no generated files to bundle")

    kept = sorted(i for i in imports if not _is_self_import(i, package_name, aggregator))
    return "\n".join(kept) + "\n\n" + "".join(bodies) + "\n"
