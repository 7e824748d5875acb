"""Domain model parser.

Turns the source text of a Dart domain model file into a ``DomainInfo``.
The source is parsed with tree-sitter's Dart grammar; from the syntax tree
only the single top-level class definition and its field declarations
(declared type, variable names, initializer text) are read.  Directives,
functions, constructors, methods, getters and annotations are ignored.
"""

from __future__ import annotations

import asyncio
import re
from pathlib import Path

from tree_sitter import Node
from tree_sitter_language_pack import get_parser

from scaffolding.errors import MalformedDomainError

from .models import DomainInfo, PropertyDescriptor


# ---------------------------------------------------------------------------
# Grammar node types
# ---------------------------------------------------------------------------

_CLASS = "class_definition"
_CLASS_BODY = "class_body"
_DECLARATOR_LISTS = frozenset({"initialized_identifier_list", "static_final_declaration_list"})
_DECLARATORS = frozenset({"initialized_identifier", "static_final_declaration"})
_COMMENTS = frozenset({"comment", "documentation_comment"})
_ANNOTATIONS = frozenset({"annotation", "marker_annotation"})
_STRINGS = frozenset({"string_literal"})

# Keywords that may precede the type of a field declaration.
_FIELD_MODIFIERS = frozenset(
    {"static", "final", "late", "const", "covariant", "external", "abstract", "var"}
)

_WHITESPACE = re.compile(r"\s+")


# ---------------------------------------------------------------------------
# Syntax tree helpers
# ---------------------------------------------------------------------------


class _Source:
    """UTF-8 source bytes plus node text helpers."""

    def __init__(self, text: str) -> None:
        self.data = text.encode("utf-8")

    def text(self, node: Node) -> str:
        return self.data[node.start_byte : node.end_byte].decode("utf-8")

    def span(self, first: Node, last: Node) -> str:
        return self.data[first.start_byte : last.end_byte].decode("utf-8")

    def expression(self, nodes: list[Node]) -> str:
        """Source text of *nodes* with comments dropped and layout collapsed.

        Tokens separated by whitespace or a comment are joined by one space;
        string literals are kept verbatim.
        """
        parts: list[str] = []
        last_end: int | None = None
        for token in _tokens(nodes):
            if last_end is not None and token.start_byte > last_end:
                parts.append(" ")
            parts.append(self.text(token))
            last_end = token.end_byte
        return "".join(parts)


def _tokens(nodes: list[Node]):
    """Yield the leaves under *nodes* in source order, strings as one leaf."""
    for node in nodes:
        if node.type in _COMMENTS:
            continue
        if node.child_count == 0 or node.type in _STRINGS:
            yield node
        else:
            yield from _tokens(node.children)


def _first_error(node: Node) -> Node | None:
    if node.type == "ERROR" or node.is_missing:
        return node
    for child in node.children:
        if child.has_error or child.is_missing:
            found = _first_error(child)
            if found is not None:
                return found
    return None


def _syntax_error(source: _Source, node: Node) -> MalformedDomainError:
    line = node.start_point[0] + 1
    if node.is_missing:
        problem = f"missing '{node.type}'"
    else:
        problem = f"unexpected '{_WHITESPACE.sub(' ', source.text(node)).strip()[:40]}'"
    return MalformedDomainError(f"source does not parse as Dart: {problem} at line {line}")


# ---------------------------------------------------------------------------
# Classes & fields
# ---------------------------------------------------------------------------


def _class_body(node: Node) -> Node | None:
    """The body of a class definition; ``None`` for ``class A = B with M;``."""
    body = node.child_by_field_name("body")
    if body is not None:
        return body
    return next((c for c in node.children if c.type == _CLASS_BODY), None)


def _class_name(source: _Source, node: Node) -> str:
    name = node.child_by_field_name("name")
    if name is None:
        name = next((c for c in node.children if c.type == "identifier"), None)
    if name is None:
        raise MalformedDomainError("class declaration without a name")
    return source.text(name)


def _declared_type(source: _Source, declaration: Node, declarators: Node) -> str | None:
    """Text of the type written before *declarators*, modifiers excluded."""
    type_nodes = [
        child
        for child in declaration.children
        if child.end_byte <= declarators.start_byte
        and child.type not in _COMMENTS
        and child.type not in _ANNOTATIONS
        and source.text(child) not in _FIELD_MODIFIERS
    ]
    if not type_nodes:
        return None
    return source.span(type_nodes[0], type_nodes[-1])


def _field_properties(
    source: _Source, declaration: Node, declarators: Node
) -> list[PropertyDescriptor]:
    """One descriptor per variable of a field declaration, in order."""
    variables = [c for c in declarators.named_children if c.type in _DECLARATORS]
    type_text = _declared_type(source, declaration, declarators)

    properties: list[PropertyDescriptor] = []
    for variable in variables:
        name_node = next((c for c in variable.named_children if c.type == "identifier"), None)
        if name_node is None:
            raise MalformedDomainError(f"malformed declarator '{source.text(variable)}'")
        name = source.text(name_node)
        if type_text is None:
            raise MalformedDomainError(f"field '{name}' has no declared type")

        children = variable.children
        assign = next((i for i, c in enumerate(children) if c.type == "="), None)
        if assign is None or assign == len(children) - 1:
            raise MalformedDomainError(f"field '{name}' has no initializer")

        properties.append(
            PropertyDescriptor(
                name=name,
                type=type_text,
                default_value=source.expression(children[assign + 1 :]),
            )
        )
    return properties


def _fields(source: _Source, body: Node) -> list[PropertyDescriptor]:
    fields: list[PropertyDescriptor] = []
    for member in body.named_children:
        declarators = next((c for c in member.children if c.type in _DECLARATOR_LISTS), None)
        if declarators is not None:
            fields.extend(_field_properties(source, member, declarators))
    return fields


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def parse_domain(source: str, path: str | Path | None = None) -> DomainInfo:
    """Parse Dart domain model *source* into a ``DomainInfo``.

    Args:
        source: Full text of the domain model file.
        path: Optional file path, used only to attribute errors.

    Returns:
        The class name and its fields in declaration order.

    Raises:
        MalformedDomainError: If the source has syntax errors, does not
            contain exactly one top-level class definition, or a field has
            no type, no initializer, or a type outside
            ``String``/``int``/``double``/``bool``.
    """
    text = _Source(source)
    try:
        tree = get_parser("dart").parse(text.data)
        root = tree.root_node
        if root.has_error:
            error = _first_error(root)
            raise _syntax_error(text, error if error is not None else root)

        classes = [
            (node, body)
            for node in root.named_children
            if node.type == _CLASS and (body := _class_body(node)) is not None
        ]
        if len(classes) != 1:
            raise MalformedDomainError(
                f"a domain model must contain exactly one class declaration, found {len(classes)}"
            )

        node, body = classes[0]
        return DomainInfo(name=_class_name(text, node), fields=_fields(text, body))
    except MalformedDomainError as exc:
        if path is not None and exc.path is None:
            raise exc.with_path(path) from exc
        raise


async def parse_domain_file(path: str | Path) -> DomainInfo:
    """Read *path* and parse it with :func:`parse_domain`."""
    file_path = Path(path)
    try:
        source = await asyncio.to_thread(file_path.read_text, encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise MalformedDomainError(f"cannot read source: {exc}", file_path) from exc
    return parse_domain(source, file_path)
