"""Action template parsing.

A template is a command line with placeholders::

    git push {REMOTE_NAME} {GIT_CONFIG:init.defaultBranch} $1

``{NAME}`` refers to a context value, ``{GIT_CONFIG:key}`` and
``{GIT_EXEC:args}`` are looked up dynamically, and ``$N`` is the N-th
positional argument. Templates are split into fragments at ``&&``, ``||``
and ``;`` appearing outside quotes and placeholders.

Every balanced ``{...}`` is a placeholder, so git revision selectors such as
``stash@{0}`` or ``HEAD@{1}`` cannot be written literally; pass them as a
context value instead (``git stash show {STASH_NAME}`` with
``STASH_NAME=stash@{0}``). Substituted values are never parsed again.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Union

from .constants import CONFIG_PLACEHOLDER_PREFIX, EXEC_PLACEHOLDER_PREFIX
from .errors import ErrorCode, GitGraphError

OPERATORS = ("&&", "||", ";")


class TemplateSyntaxError(GitGraphError):
    """Raised when a template cannot be parsed."""

    def __init__(self, message: str, position: int, template: str) -> None:
        super().__init__(
            ErrorCode.TEMPLATE_SYNTAX_ERROR,
            f"{message} at position {position}",
            "Balance the braces and use {NAME}, {GIT_CONFIG:key}, {GIT_EXEC:args} or $N.",
            {"position": position, "template": template},
        )
        self.position = position


@dataclass(frozen=True)
class Literal:
    text: str


@dataclass(frozen=True)
class ContextRef:
    name: str

    @property
    def marker(self) -> str:
        return "{" + self.name + "}"


@dataclass(frozen=True)
class ConfigLookup:
    key: str

    @property
    def marker(self) -> str:
        return "{" + CONFIG_PLACEHOLDER_PREFIX + self.key + "}"


@dataclass(frozen=True)
class ExecLookup:
    subcommand: str

    @property
    def marker(self) -> str:
        return "{" + EXEC_PLACEHOLDER_PREFIX + self.subcommand + "}"


@dataclass(frozen=True)
class Positional:
    index: int

    @property
    def marker(self) -> str:
        return f"${self.index}"


Node = Union[Literal, ContextRef, ConfigLookup, ExecLookup, Positional]


@dataclass(frozen=True)
class Fragment:
    """One command of a template and the operator that follows it, if any."""

    nodes: tuple[Node, ...]
    operator: str | None = None


@dataclass(frozen=True)
class Template:
    source: str
    fragments: tuple[Fragment, ...]

    @property
    def composite(self) -> bool:
        return len(self.fragments) > 1

    def nodes(self) -> list[Node]:
        return [node for fragment in self.fragments for node in fragment.nodes]

    def context_names(self) -> list[str]:
        names: list[str] = []
        for node in self.nodes():
            if isinstance(node, ContextRef) and node.name not in names:
                names.append(node.name)
        return names

    def positional_indices(self) -> list[int]:
        return sorted({node.index for node in self.nodes() if isinstance(node, Positional)})

    def leading_words(self) -> list[str]:
        if not self.fragments:
            return []
        first = self.fragments[0].nodes
        if not first or not isinstance(first[0], Literal):
            return []
        return first[0].text.split()


@lru_cache(maxsize=512)
def parse_template(source: str) -> Template:
    """Parse ``source`` into fragments of nodes."""
    fragments: list[Fragment] = []
    nodes: list[Node] = []
    literal: list[str] = []
    quote: str | None = None
    fragment_start = 0
    index = 0
    length = len(source)

    def flush_literal() -> None:
        if literal:
            nodes.append(Literal("".join(literal)))
            literal.clear()

    def end_fragment(operator: str | None, position: int) -> None:
        flush_literal()
        trimmed = _trim(nodes)
        nodes.clear()
        if not trimmed:
            if operator is None and fragments and fragments[-1].operator == ";":
                last = fragments.pop()
                fragments.append(Fragment(last.nodes, None))
                return
            raise TemplateSyntaxError("Empty command", position, source)
        fragments.append(Fragment(trimmed, operator))

    while index < length:
        char = source[index]

        if char == "{":
            close = _find_close(source, index)
            flush_literal()
            nodes.append(_placeholder(source, index, close))
            index = close + 1
            continue

        if char == "}":
            raise TemplateSyntaxError("Unmatched '}'", index, source)

        if char == "$" and index + 1 < length and source[index + 1].isdigit():
            end = index + 1
            while end < length and source[end].isdigit():
                end += 1
            position = int(source[index + 1 : end])
            if position < 1:
                raise TemplateSyntaxError("Positional placeholders start at $1", index, source)
            flush_literal()
            nodes.append(Positional(position))
            index = end
            continue

        if quote is not None:
            if char == quote:
                quote = None
            literal.append(char)
            index += 1
            continue

        if char in ("'", '"'):
            quote = char
            literal.append(char)
            index += 1
            continue

        operator = _operator_at(source, index)
        if operator is not None:
            end_fragment(operator, fragment_start)
            index += len(operator)
            fragment_start = index
            continue

        literal.append(char)
        index += 1

    end_fragment(None, fragment_start)
    return Template(source=source, fragments=tuple(fragments))


def _find_close(source: str, start: int) -> int:
    index = start + 1
    while index < len(source):
        char = source[index]
        if char == "}":
            return index
        if char == "{":
            raise TemplateSyntaxError("Nested '{'", index, source)
        index += 1
    raise TemplateSyntaxError("Unterminated '{'", start, source)


def _placeholder(source: str, start: int, close: int) -> Node:
    body = source[start + 1 : close].strip()
    if not body:
        raise TemplateSyntaxError("Empty placeholder", start, source)
    if body.startswith(CONFIG_PLACEHOLDER_PREFIX):
        key = body[len(CONFIG_PLACEHOLDER_PREFIX) :].strip()
        if not key:
            raise TemplateSyntaxError("Empty config key", start, source)
        return ConfigLookup(key)
    if body.startswith(EXEC_PLACEHOLDER_PREFIX):
        subcommand = body[len(EXEC_PLACEHOLDER_PREFIX) :].strip()
        if not subcommand:
            raise TemplateSyntaxError("Empty exec command", start, source)
        return ExecLookup(subcommand)
    return ContextRef(body)


def _operator_at(source: str, index: int) -> str | None:
    for operator in OPERATORS:
        if source.startswith(operator, index):
            return operator
    return None


def _trim(nodes: list[Node]) -> tuple[Node, ...]:
    trimmed = list(nodes)
    if trimmed and isinstance(trimmed[0], Literal):
        text = trimmed[0].text.lstrip()
        if text:
            trimmed[0] = Literal(text)
        else:
            trimmed.pop(0)
    if trimmed and isinstance(trimmed[-1], Literal):
        text = trimmed[-1].text.rstrip()
        if text:
            trimmed[-1] = Literal(text)
        else:
            trimmed.pop()
    return tuple(trimmed)
