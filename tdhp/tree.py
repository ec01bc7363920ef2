from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, NamedTuple, Union

from .containers import ContainerDescriptor
from .labels import LabelKey, LabelParseError, Segment, parse_label


class BuildWarning(NamedTuple):
    container_id: str
    key: str
    message: str

    def __str__(self) -> str:
        return f"[{self.container_id[:12]}] {self.key}: {self.message}"


@dataclass(frozen=True)
class Leaf:
    value: str


@dataclass
class ObjectNode:
    children: dict[str, "ConfigNode"] = field(default_factory=dict)


@dataclass
class ListNode:
    items: list["ConfigNode"] = field(default_factory=list)


ConfigNode = Union[Leaf, ObjectNode, ListNode]


def _is_placeholder(node: ConfigNode) -> bool:
    return isinstance(node, ObjectNode) and not node.children


def _container_for(segment: Segment) -> ConfigNode:
    return ListNode() if isinstance(segment, int) else ObjectNode()


def _get_slot(parent: ConfigNode, segment: Segment) -> ConfigNode | None:
    if isinstance(parent, ObjectNode):
        return parent.children.get(segment)  # type: ignore[arg-type]
    if not isinstance(parent, ListNode):
        raise TypeError(f"cannot index into config node {parent!r}")
    if segment < len(parent.items):  # type: ignore[operator]
        return parent.items[segment]  # type: ignore[index]
    return None


def _set_slot(parent: ConfigNode, segment: Segment, node: ConfigNode) -> None:
    if isinstance(parent, ObjectNode):
        parent.children[segment] = node  # type: ignore[index]
        return
    if not isinstance(parent, ListNode):
        raise TypeError(f"cannot index into config node {parent!r}")
    while len(parent.items) <= segment:  # type: ignore[operator]
        parent.items.append(ObjectNode())
    parent.items[segment] = node  # type: ignore[index]


def _fits(node: ConfigNode, segment: Segment) -> bool:
    if isinstance(segment, int):
        return isinstance(node, ListNode)
    return isinstance(node, ObjectNode)


def insert(root: ObjectNode, path: LabelKey, value: str) -> str | None:
    """Place ``value`` at ``path`` under ``root``, creating intermediate nodes.

    The last write wins. Returns a warning message when something already
    present had to be replaced, otherwise None.
    """
    replaced: str | None = None
    node: ConfigNode = root
    for i, segment in enumerate(path):
        last = i == len(path) - 1
        existing = _get_slot(node, segment)

        if last:
            if existing is not None and not _is_placeholder(existing):
                if isinstance(existing, Leaf):
                    replaced = f"overrides earlier value {existing.value!r}"
                else:
                    replaced = "overrides a nested definition with a plain value"
            _set_slot(node, segment, Leaf(value))
            break

        nxt = path[i + 1]
        if existing is None or (_is_placeholder(existing) and not _fits(existing, nxt)):
            existing = _container_for(nxt)
            _set_slot(node, segment, existing)
        elif not _fits(existing, nxt):
            replaced = "replaces an earlier definition of a different shape"
            existing = _container_for(nxt)
            _set_slot(node, segment, existing)
        node = existing
    return replaced


def build_container_tree(
    container: ContainerDescriptor, prefix: str = "traefik"
) -> tuple[ObjectNode, list[BuildWarning]]:
    """Fold every label of one container into a single tree.

    Labels are applied in lexicographic key order, so when two keys address the
    same leaf the lexicographically greater key wins.
    """
    root = ObjectNode()
    warnings: list[BuildWarning] = []
    for key in sorted(container.labels):
        value = container.labels[key]
        try:
            parsed = parse_label(key, value, prefix=prefix)
        except LabelParseError as e:
            warnings.append(BuildWarning(container.id, key, f"ignored: {e.reason}"))
            continue
        if parsed is None:
            continue
        note = insert(root, parsed.path, parsed.value)
        if note:
            warnings.append(BuildWarning(container.id, key, note))
    return root, warnings


def to_data(node: ConfigNode) -> Any:
    """Render a node as plain JSON-compatible data (str / dict / list)."""
    if isinstance(node, Leaf):
        return node.value
    if isinstance(node, ObjectNode):
        return {k: to_data(v) for k, v in sorted(node.children.items())}
    if isinstance(node, ListNode):
        return [to_data(v) for v in node.items]
    raise TypeError(f"unknown config node {node!r}")


def child(node: ConfigNode | None, *path: str) -> ConfigNode | None:
    for name in path:
        if not isinstance(node, ObjectNode):
            return None
        node = node.children.get(name)
    return node
