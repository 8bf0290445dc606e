"""Path expressions over nested payloads.

A path such as ``summary[0]["MHS av"].value`` is compiled once into a tuple of
segments: string keys and non-negative integer indices. An index keeps the text
it was written as, so ``"007"`` still finds a dict key spelled that way.
Resolution walks the payload one segment at a time and yields ``None`` as soon
as a segment is missing; it never raises.
"""
from __future__ import annotations

import math
import re
from typing import Any, Tuple, Union


class Index(int):
    """List index that remembers its source text for dict lookups."""

    text: str

    def __new__(cls, text: str) -> "Index":
        index = super().__new__(cls, text)
        index.text = text
        return index


Segment = Union[str, int]
CompiledPath = Tuple[Segment, ...]

_BRACKET_RE = re.compile(r"\[([^\]]*)\]")
_QUOTES = "\"'"


def _is_index(text: str) -> bool:
    return text.isascii() and text.isdecimal()


def compile_path(expression: str) -> CompiledPath:
    dotted = _BRACKET_RE.sub(lambda match: "." + match.group(1), expression)
    segments: list[Segment] = []
    for part in dotted.split("."):
        cleaned = part.strip().strip(_QUOTES)
        if not cleaned:
            continue
        segments.append(Index(cleaned) if _is_index(cleaned) else cleaned)
    return tuple(segments)


def coerce_number(value: Any) -> Any:
    """Turn numeric-looking strings into numbers; leave everything else alone."""

    if not isinstance(value, str):
        return value
    text = value.strip()
    if not text or "_" in text:
        return value
    try:
        return int(text)
    except ValueError:
        pass
    try:
        parsed = float(text)
    except ValueError:
        return value
    return parsed if math.isfinite(parsed) else value


def _step(node: Any, segment: Segment) -> Tuple[bool, Any]:
    if isinstance(node, dict):
        key = segment.text if isinstance(segment, Index) else str(segment)
        if key in node:
            return True, node[key]
        return False, None
    if isinstance(node, (list, tuple)):
        if isinstance(segment, int):
            index = segment
        elif _is_index(segment):
            index = int(segment)
        else:
            return False, None
        if 0 <= index < len(node):
            return True, node[index]
    return False, None


def resolve(tree: Any, path: Union[CompiledPath, str]) -> Any:
    segments = compile_path(path) if isinstance(path, str) else path
    if not segments:
        return None
    node = tree
    for segment in segments:
        found, node = _step(node, segment)
        if not found:
            return None
    return coerce_number(node)


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
