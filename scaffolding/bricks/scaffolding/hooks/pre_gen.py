"""Normalise the feature brick variables before rendering.

``properties`` may be a list of property mappings (as produced by the build
step) or a compact string for quick use from the ``make`` command::

    String firstname|'Scott',String lastname|'Horn',int age|21,bool favourite|true

A missing ``|default`` falls back to the empty value of the type.  Derived
names (``feature_pascal``, ``feature_camel``, per-property ``label`` and
``pascal``) are added so the templates stay free of naming logic.
"""

from __future__ import annotations

import re
from typing import Any

from scaffolding.errors import MalformedDomainError
from scaffolding.parser.models import PropertyDescriptor
from scaffolding.utils import camel_case, pascal_case, snake_case, title_case

_EMPTY_LITERALS = {"String": "''", "int": "0", "double": "0", "bool": "false"}

# Commas outside single- or double-quoted strings.
_ENTRY_SEPARATOR = re.compile(r""",(?=(?:[^'"]*(?:'[^']*'|"[^"]*"))*[^'"]*$)""")


def parse_properties(text: str) -> list[dict[str, Any]]:
    """Parse the compact ``"<type> <name>|<default>,..."`` form."""
    properties: list[dict[str, Any]] = []
    for entry in _ENTRY_SEPARATOR.split(text):
        entry = entry.strip()
        if not entry:
            continue
        declaration, _, default = entry.partition("|")
        parts = declaration.split()
        if len(parts) != 2:
            raise MalformedDomainError(f"expected '<type> <name>[|default]', got {entry!r}")
        type_tag, name = parts
        properties.append(
            {
                "name": name,
                "type": type_tag,
                "defaultValue": default.strip() or _EMPTY_LITERALS.get(type_tag, "''"),
            }
        )
    return properties


def _normalise(prop: dict[str, Any]) -> dict[str, Any]:
    mapping = PropertyDescriptor.model_validate(prop).to_map()
    mapping["label"] = title_case(mapping["name"])
    mapping["pascal"] = pascal_case(mapping["name"])
    return mapping


def run(context) -> dict[str, Any]:
    variables = dict(context.vars)

    properties = variables.get("properties") or []
    if isinstance(properties, str):
        properties = parse_properties(properties)
    variables["properties"] = [_normalise(p) for p in properties]

    feature = snake_case(str(variables["feature"]))
    variables["feature"] = feature
    variables["feature_pascal"] = pascal_case(feature)
    variables["feature_camel"] = camel_case(feature)
    return variables
