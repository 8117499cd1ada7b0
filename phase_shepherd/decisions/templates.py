"""
Decision prompt template language.

A deliberately small, closed template language compiled once at load time:

    {{issue.title}}                 value lookup (dotted path)
    {{this}}                        the current item inside a block
    {{#each list}}...{{/each}}      repeat for every item; the item is in scope
    {{#name}}...{{/name}}           render once, with ``name`` in scope, when truthy
    {{^name}}...{{/name}}           render when ``name`` is falsy or missing

Lookups search the innermost scope first. Missing values render as empty
text; booleans render as ``true``/``false``. A line holding nothing but a
block tag is removed entirely so blocks do not leave blank lines behind.
Anything else inside ``{{ }}`` is a TemplateSyntaxError.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from phase_shepherd.errors import TemplateSyntaxError

_TAG_RE = re.compile(r"{{\s*(.*?)\s*}}", re.DOTALL)
_STANDALONE_RE = re.compile(
    r"^[ \t]*({{\s*[#^/][^}]*}})[ \t]*(?:\r?\n|\Z)", re.MULTILINE
)
_PATH_RE = re.compile(r"^(this|[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*)$")

_MISSING = object()


@dataclass
class _Text:
    text: str


@dataclass
class _Var:
    path: str


@dataclass
class _Block:
    kind: str                                  # each | section | inverted
    path: str
    children: list[Node] = field(default_factory=list)


Node = Union[_Text, _Var, _Block]


def _check_path(path: str, template: Optional[str]) -> str:
    if not _PATH_RE.match(path):
        raise TemplateSyntaxError(f"invalid tag '{{{{{path}}}}}'", template)
    return path


def _parse(source: str, template: Optional[str]) -> list[Node]:
    """Parse template source into a node tree."""
    source = _STANDALONE_RE.sub(r"\1", source)

    root: list[Node] = []
    stack: list[_Block] = []
    current = root
    position = 0

    for match in _TAG_RE.finditer(source):
        if match.start() > position:
            current.append(_Text(source[position:match.start()]))
        position = match.end()

        tag = match.group(1)
        if not tag:
            raise TemplateSyntaxError("empty tag", template)

        sigil, body = tag[0], tag[1:].strip()
        if sigil == "#":
            if body.startswith("each ") or body == "each":
                block = _Block("each", _check_path(body[4:].strip(), template))
            else:
                block = _Block("section", _check_path(body, template))
        elif sigil == "^":
            block = _Block("inverted", _check_path(body, template))
        elif sigil == "/":
            if not stack:
                raise TemplateSyntaxError(f"unexpected closing tag '{{{{/{body}}}}}'", template)
            open_block = stack.pop()
            expected = "each" if open_block.kind == "each" else open_block.path
            if body != expected:
                raise TemplateSyntaxError(
                    f"closing tag '{{{{/{body}}}}}' does not match open block '{expected}'",
                    template,
                )
            current = stack[-1].children if stack else root
            continue
        else:
            current.append(_Var(_check_path(tag, template)))
            continue

        current.append(block)
        stack.append(block)
        current = block.children

    if stack:
        raise TemplateSyntaxError(f"unclosed block '{stack[-1].path}'", template)

    if position < len(source):
        current.append(_Text(source[position:]))
    return root


def _lookup_key(value: Any, key: str) -> Any:
    if isinstance(value, dict):
        return value.get(key, _MISSING)
    return _MISSING


def _resolve(path: str, scopes: list[Any]) -> Any:
    """Resolve a dotted path against the scope stack, innermost first."""
    if path == "this":
        return scopes[-1] if scopes else None

    head, *rest = path.split(".")
    for scope in reversed(scopes):
        value = _lookup_key(scope, head)
        if value is _MISSING:
            continue
        for key in rest:
            value = _lookup_key(value, key)
            if value is _MISSING:
                return None
        return value
    return None


def _format(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ", ".join(_format(item) for item in value)
    return str(value)


class CompiledTemplate:
    """A parsed template ready to render against a context mapping."""

    def __init__(self, source: str, name: Optional[str] = None) -> None:
        self.source = source
        self.name = name
        self._nodes = _parse(source, name)

    def render(self, context: dict[str, Any]) -> str:
        out: list[str] = []
        self._render_nodes(self._nodes, [context], out)
        return "".join(out)

    def _render_nodes(self, nodes: list[Node], scopes: list[Any], out: list[str]) -> None:
        for node in nodes:
            if isinstance(node, _Text):
                out.append(node.text)
            elif isinstance(node, _Var):
                out.append(_format(_resolve(node.path, scopes)))
            else:
                self._render_block(node, scopes, out)

    def _render_block(self, block: _Block, scopes: list[Any], out: list[str]) -> None:
        value = _resolve(block.path, scopes)
        if block.kind == "each":
            for item in value or []:
                self._render_nodes(block.children, scopes + [item], out)
        elif block.kind == "section":
            if value:
                self._render_nodes(block.children, scopes + [value], out)
        elif not value:
            self._render_nodes(block.children, scopes, out)


def compile_template(source: str, name: Optional[str] = None) -> CompiledTemplate:
    """
    Compile template source.

    Raises:
        TemplateSyntaxError: If the template is malformed.
    """
    return CompiledTemplate(source, name)
