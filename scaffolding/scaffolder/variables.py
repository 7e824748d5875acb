"""Template variables for the feature and index bricks.

Both builders are pure: the same inputs always produce equal mappings, so
regenerating from an unchanged domain model reproduces identical files.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from scaffolding.parser.models import DomainInfo
from scaffolding.utils import snake_case


def build_feature_variables(package_name: str, info: DomainInfo) -> dict[str, Any]:
    """Variables for the feature brick.

    Returns::

        {
            "package": "my_app",
            "feature": "contact_form",
            "properties": [
                {"name": ..., "type": ..., "defaultValue": ...,
                 "emptyValue": ..., "testValue": ...},
                ...
            ],
        }
    """
    return {
        "package": package_name,
        "feature": snake_case(info.name),
        "properties": [prop.to_map() for prop in info.fields],
    }


def build_index_variables(package_name: str, feature_names: Iterable[str]) -> dict[str, Any]:
    """Variables for the index (home view) brick listing every feature."""
    return {
        "package": package_name,
        "features": [snake_case(name) for name in feature_names],
    }
