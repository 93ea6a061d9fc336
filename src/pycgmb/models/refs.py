"""Typed references between step inputs and upstream step outputs.

A step input may point at the output of an earlier step in two ways:

- ``StepOutputRef("search")`` is replaced by the whole ``data`` payload of
  the ``search`` step, structure preserved.
- ``StepOutputRef("search", "sources")`` projects into that payload
  (dotted paths walk nested mappings and sequences).

``TemplateString`` holds text with references embedded in it; each
reference is rendered as text when resolved.

Plain strings written as ``"{{search}}"`` or ``"Summarize: {{search.content}}"``
are turned into these types once, by ``parse_input()``, when a step is
built from plain data. ``Literal`` keeps a value out of that parsing, so a
string that only looks like a template stays a string.

Example:
    ```python
    parse_template("{{search}}")
    # StepOutputRef(step_id='search', field=None)

    parse_template("Sources: {{search.sources}}")
    # TemplateString(parts=('Sources: ', StepOutputRef('search', 'sources')))
    ```
"""

from __future__ import annotations

import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from typing import Any

TEMPLATE_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_\-]+)(?:\.([A-Za-z0-9_\-.]+))?\s*\}\}")


@dataclass(frozen=True)
class StepOutputRef:
    """Reference to the output of another step.

    Attributes:
        step_id: Id of the referenced step
        field: Optional dotted path into the referenced step's data
    """

    step_id: str
    field: str | None = None

    @property
    def path(self) -> tuple[str, ...]:
        return tuple(self.field.split(".")) if self.field else ()

    def __str__(self) -> str:
        if self.field:
            return f"{{{{{self.step_id}.{self.field}}}}}"
        return f"{{{{{self.step_id}}}}}"


@dataclass(frozen=True)
class TemplateString:
    """Text with embedded step references, rendered as text on resolution."""

    parts: tuple[str | StepOutputRef, ...]

    @property
    def references(self) -> tuple[StepOutputRef, ...]:
        return tuple(part for part in self.parts if isinstance(part, StepOutputRef))

    def __str__(self) -> str:
        return "".join(str(part) for part in self.parts)


@dataclass(frozen=True)
class Literal:
    """A value passed through verbatim, never parsed or resolved."""

    value: Any


def parse_template(value: str) -> str | StepOutputRef | TemplateString:
    """Parse one string into a reference, a template or itself."""
    matches = list(TEMPLATE_PATTERN.finditer(value))
    if not matches:
        return value

    if len(matches) == 1 and matches[0].span() == (0, len(value)):
        match = matches[0]
        return StepOutputRef(match.group(1), match.group(2))

    parts: list[str | StepOutputRef] = []
    cursor = 0
    for match in matches:
        start, end = match.span()
        if start > cursor:
            parts.append(value[cursor:start])
        parts.append(StepOutputRef(match.group(1), match.group(2)))
        cursor = end
    if cursor < len(value):
        parts.append(value[cursor:])
    return TemplateString(tuple(parts))


def parse_input(value: Any) -> Any:
    """Recursively turn template strings inside a structure into references."""
    if isinstance(value, str):
        return parse_template(value)
    if isinstance(value, (StepOutputRef, TemplateString, Literal)):
        return value
    if isinstance(value, Mapping):
        return {key: parse_input(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(parse_input(item) for item in value)
    return value


def iter_references(value: Any) -> Iterator[StepOutputRef]:
    """Yield every reference found inside a (possibly nested) input value."""
    if isinstance(value, StepOutputRef):
        yield value
    elif isinstance(value, TemplateString):
        yield from value.references
    elif isinstance(value, Literal):
        return
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


def unparse(value: Any) -> Any:
    """Inverse of parse_input(): render references back to template strings."""
    if isinstance(value, (StepOutputRef, TemplateString)):
        return str(value)
    if isinstance(value, Literal):
        return value.value
    if isinstance(value, Mapping):
        return {key: unparse(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [unparse(item) for item in value]
    return value


__all__ = [
    "TEMPLATE_PATTERN",
    "StepOutputRef",
    "TemplateString",
    "Literal",
    "parse_template",
    "parse_input",
    "iter_references",
    "unparse",
]
