"""
Decoding of ``application/json`` bodies with a total size limit and a limit on
the length of every string value.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from .exceptions import MalformedBodyError
from .limits import check_field_size, check_json_size

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import AsyncIterable
    from typing import Any

    from .limits import Violation

logger = logging.getLogger(__name__)


async def read_json_body(chunks: AsyncIterable[bytes], max_size: int | None) -> tuple[bytes, bool]:
    """
    Buffers the body up to ``max_size`` bytes.  Past the limit the rest of the
    body is still read, but discarded.

    Returns the buffered bytes and whether the limit was exceeded.
    """
    buffer = bytearray()
    exceeded = False
    async for chunk in chunks:
        if exceeded:
            continue
        if max_size is not None and len(buffer) + len(chunk) > max_size:
            logger.warning("JSON body exceeds %d bytes, discarding the rest", max_size)
            exceeded = True
            buffer.clear()
            continue
        buffer.extend(chunk)
    return bytes(buffer), exceeded


def find_long_strings(value: Any, limit: int) -> list[Violation]:
    """
    Walks a decoded JSON value and reports every string longer than ``limit``.

    A string is named by the key holding it.  Items of a list are named
    ``<key>.<index>``, using the key of the nearest enclosing object, so
    ``{"tags": ["a", "..."]}`` reports ``tags.1``.
    """
    violations: list[Violation] = []

    def walk(value: Any, name: str) -> None:
        if isinstance(value, dict):
            for child_key, child in value.items():
                walk(child, child_key)
        elif isinstance(value, list):
            for index, child in enumerate(value):
                if isinstance(child, (dict, list)):
                    walk(child, name)
                else:
                    walk(child, f"{name}.{index}" if name else str(index))
        elif isinstance(value, str):
            violation = check_field_size(name, len(value), limit)
            if violation is not None:
                violations.append(violation)

    walk(value, "")
    return violations


def decode_json(raw: bytes, max_field_size: int | None = None) -> tuple[Any, list[Violation]]:
    """
    Parses ``raw`` and checks its string values against ``max_field_size``.

    An empty body decodes to an empty dict.  Raises :class:`MalformedBodyError`
    for anything that isn't valid JSON.
    """
    if not raw.strip():
        return {}, []

    try:
        value = json.loads(raw)
    except (ValueError, UnicodeDecodeError) as e:
        logger.warning("Invalid JSON body: %s", e)
        raise MalformedBodyError(f"Invalid JSON body: {e}") from e

    violations: list[Violation] = []
    if max_field_size is not None:
        violations = find_long_strings(value, max_field_size)
    return value, violations


async def parse_json_body(
    chunks: AsyncIterable[bytes], max_size: int | None = None, max_field_size: int | None = None
) -> tuple[Any, list[Violation]]:
    """
    Reads and decodes a JSON body.  If the body is over ``max_size`` it isn't
    parsed and a single ``JSON_SIZE_EXCEEDED`` violation is returned.
    """
    raw, exceeded = await read_json_body(chunks, max_size)

    violation = check_json_size(exceeded, max_size)
    if violation is not None:
        return None, [violation]

    return decode_json(raw, max_field_size)
