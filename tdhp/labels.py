"""Label key parsing.

A label key such as ``traefik.http.middlewares.test.headers.customresponseheaders[0]``
is turned into a path of segments: names (``str``) and list indexes (``int``).
The root prefix is consumed and not part of the path.
"""
from __future__ import annotations

from typing import NamedTuple, Union

Segment = Union[str, int]
LabelKey = tuple[Segment, ...]


class LabelParseError(ValueError):
    """The key is in our namespace but its segment syntax is malformed."""

    def __init__(self, key: str, reason: str):
        super().__init__(f"{reason} in label key {key!r}")
        self.key = key
        self.reason = reason


class ParsedLabel(NamedTuple):
    path: LabelKey
    value: str


def _split_segments(key: str, body: str) -> list[str]:
    """Split on '.' that are not inside a bracket group."""
    parts: list[str] = []
    current: list[str] = []
    depth = 0
    for ch in body:
        if ch == "[":
            if depth:
                raise LabelParseError(key, "nested '['")
            depth = 1
        elif ch == "]":
            if not depth:
                raise LabelParseError(key, "unmatched ']'")
            depth = 0
        elif ch == "." and not depth:
            parts.append("".join(current))
            current = []
            continue
        current.append(ch)
    if depth:
        raise LabelParseError(key, "unmatched '['")
    parts.append("".join(current))
    return parts


def _parse_segment(key: str, raw: str) -> list[Segment]:
    if not raw:
        raise LabelParseError(key, "empty segment")

    # Peel trailing [N] groups off the right end: name[0][1] -> name, 0, 1
    indexes: list[int] = []
    rest = raw
    while rest.endswith("]"):
        open_at = rest.rfind("[")
        digits = rest[open_at + 1 : -1]
        if not digits:
            raise LabelParseError(key, "empty index")
        if not (digits.isascii() and digits.isdigit()):
            raise LabelParseError(key, f"non-numeric index {digits!r}")
        indexes.append(int(digits))
        rest = rest[:open_at]

    if not rest:
        raise LabelParseError(key, "index without a name")
    if "[" in rest or "]" in rest:
        raise LabelParseError(key, f"misplaced bracket in segment {raw!r}")

    return [rest, *reversed(indexes)]


def parse_label(key: str, value: str, prefix: str = "traefik") -> ParsedLabel | None:
    """Parse one label.

    Returns None for keys outside ``prefix`` (they belong to someone else),
    raises LabelParseError for keys inside it that cannot be addressed.
    """
    root = prefix + "."
    if not key.startswith(root):
        return None

    path: list[Segment] = []
    for raw in _split_segments(key, key[len(root):]):
        path.extend(_parse_segment(key, raw))
    return ParsedLabel(tuple(path), value)


def parse_bool(raw: str) -> bool:
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False
    raise ValueError(f"not a boolean: {raw!r}")


def parse_port(raw: str) -> int:
    port = int(raw.strip())
    if not 1 <= port <= 65535:
        raise ValueError(f"port out of range: {port}")
    return port
