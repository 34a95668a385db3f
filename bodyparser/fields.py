"""
Assignment of flat form field names into a nested structure.

Form decoders hand us one field at a time, named with a small path language::

    user.name           -> {"user": {"name": ...}}
    tags[]              -> {"tags": [..., value]}
    items[0].title      -> {"items": [{"title": ...}]}
    grid[1][0]          -> {"grid": [None, [...]]}

Fields may arrive in any order, so ``[]`` appends in decode order and
``[N]`` places the value at an explicit slot, padding with ``None``.
Nothing here raises: a segment that does not parse is used as a literal key,
and a path running through a value of the wrong shape replaces that value.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from typing import Any, Union

    Segment = Union[str, int, "_Append"]


class _Append:
    """Marker for the ``[]`` segment."""

    def __repr__(self) -> str:
        return "APPEND"


APPEND = _Append()

# Indices above this are treated as part of a literal key, so a single field
# can't allocate an arbitrarily large list.
MAX_LIST_INDEX = 10000

# A key followed by one or more bracket groups, each empty or numeric.
SEGMENT_RE = re.compile(r"^(?P<key>[^\[\]]+)(?P<brackets>(?:\[\d*\])+)$")
BRACKET_RE = re.compile(r"\[(\d*)\]")


def parse_field_path(name: str) -> list[Segment]:
    """
    Parses a raw field name into a list of path segments: ``str`` keys,
    ``int`` indices and the :data:`APPEND` marker.

    :param name: the field name as sent by the client.
    """
    path: list[Segment] = []
    for part in name.split("."):
        match = SEGMENT_RE.match(part)
        if match is None:
            path.append(part)
            continue

        indices: list[Segment] = []
        for group in BRACKET_RE.findall(match.group("brackets")):
            if group == "":
                indices.append(APPEND)
            elif int(group) <= MAX_LIST_INDEX:
                indices.append(int(group))
            else:
                break
        else:
            path.append(match.group("key"))
            path.extend(indices)
            continue

        # An index was out of range; keep the whole segment as a key.
        path.append(part)

    return path


def _wants_list(segment: Segment) -> bool:
    return not isinstance(segment, str)


def _get(node: dict[str, Any] | list[Any], segment: Segment) -> Any:
    if isinstance(segment, str):
        return node.get(segment)  # type: ignore[union-attr]
    if segment is APPEND:
        return None
    assert isinstance(segment, int)
    if segment < len(node):
        return node[segment]  # type: ignore[index]
    return None


def _put(node: dict[str, Any] | list[Any], segment: Segment, value: Any) -> Any:
    if isinstance(segment, str):
        node[segment] = value  # type: ignore[index]
    elif segment is APPEND:
        node.append(value)  # type: ignore[union-attr]
    else:
        assert isinstance(segment, int) and isinstance(node, list)
        if segment >= len(node):
            node.extend([None] * (segment + 1 - len(node)))
        node[segment] = value
    return value


def set_field(tree: dict[str, Any], name: str, value: Any) -> dict[str, Any]:
    """
    Assigns ``value`` into ``tree`` at the path described by ``name``.

    Intermediate containers are created as needed: a list when the next
    segment is an index or ``[]``, a dict otherwise.  If an existing value
    doesn't have the needed shape (a scalar where a dict is needed, a dict
    where a list is needed, ...) it is replaced, so the last shape wins.

    The tree is modified in place and returned.
    """
    path = parse_field_path(name)

    node: dict[str, Any] | list[Any] = tree
    for segment, following in zip(path, path[1:]):
        child = _get(node, segment)
        if _wants_list(following):
            if not isinstance(child, list):
                child = _put(node, segment, [])
        elif not isinstance(child, dict):
            child = _put(node, segment, {})
        node = child

    _put(node, path[-1], value)
    return tree
