"""Domain model parser.

Reads a Dart domain model (one class with typed, initialized fields) and
extracts the class name and field metadata the scaffold templates need.

Usage::

    from scaffolding.parser import parse_domain

    info = parse_domain("class Contact { String firstname = 'Scott'; }")
    print(info.name, [f.name for f in info.fields])
"""

from scaffolding.parser.domain import parse_domain, parse_domain_file
from scaffolding.parser.models import SUPPORTED_TYPES, DomainInfo, PropertyDescriptor

__all__ = [
    "parse_domain",
    "parse_domain_file",
    "DomainInfo",
    "PropertyDescriptor",
    "SUPPORTED_TYPES",
]
