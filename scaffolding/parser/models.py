"""Pydantic v2 models for parsed domain models.

A ``DomainInfo`` is the structured form of one Dart domain class: its name
and the ordered list of its fields, each described by a
``PropertyDescriptor`` carrying the per-type values the templates need.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from scaffolding.errors import MalformedDomainError
from scaffolding.utils import snake_case


# ---------------------------------------------------------------------------
# Supported field types
# ---------------------------------------------------------------------------

# type tag -> (empty value, test value).  String values are Dart literal text.
_TYPE_VALUES: dict[str, tuple[Any, Any]] = {
    "String": ("''", "'testString'"),
    "int": (0, 1),
    "double": (0, 1),
    "bool": (False, True),
}

SUPPORTED_TYPES: tuple[str, ...] = tuple(_TYPE_VALUES)


def _unsupported_type_reason(name: Any, type_tag: Any) -> str:
    reason = (
        f"unsupported type '{type_tag}' for property '{name}' "
        f"(supported: {', '.join(SUPPORTED_TYPES)})"
    )
    if isinstance(type_tag, str) and type_tag.rstrip("?") in _TYPE_VALUES:
        reason += "; nullable fields are not supported, give the field a non-null default"
    return reason


# ---------------------------------------------------------------------------
# Property & domain models
# ---------------------------------------------------------------------------


class PropertyDescriptor(BaseModel):
    """One field of a domain model plus its derived template values.

    ``empty_value`` and ``test_value`` are derived from ``type`` when the
    model is built and cannot be supplied by the caller; the instance is
    frozen afterwards.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(..., description="Field name as declared")
    type: str = Field(..., description="Declared type tag, e.g. 'String'")
    default_value: str = Field(
        ..., alias="defaultValue", description="Initializer source text, verbatim"
    )
    empty_value: Any = Field(
        default=None, alias="emptyValue", description="Fallback when no value is present"
    )
    test_value: Any = Field(
        default=None, alias="testValue", description="Non-default value used to seed tests"
    )

    @model_validator(mode="before")
    @classmethod
    def _derive_type_values(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        type_tag = data.get("type")
        if type_tag not in _TYPE_VALUES:
            raise MalformedDomainError(_unsupported_type_reason(data.get("name"), type_tag))
        empty_value, test_value = _TYPE_VALUES[type_tag]
        derived = {
            k: v
            for k, v in data.items()
            if k not in ("empty_value", "emptyValue", "test_value", "testValue")
        }
        derived["emptyValue"] = empty_value
        derived["testValue"] = test_value
        return derived

    @field_validator("default_value")
    @classmethod
    def _strip_default(cls, value: str) -> str:
        return value.strip()

    def to_map(self) -> dict[str, Any]:
        """Return the template-facing mapping with camelCase keys."""
        return self.model_dump(by_alias=True)


class DomainInfo(BaseModel):
    """The single class found in a domain model file."""

    name: str = Field(..., description="Declared class name, e.g. 'Contact'")
    fields: list[PropertyDescriptor] = Field(
        default_factory=list, description="Fields in declaration order"
    )

    @property
    def feature(self) -> str:
        """Path-safe feature identifier, e.g. ``ContactForm`` -> ``contact_form``."""
        return snake_case(self.name)

    @property
    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]
