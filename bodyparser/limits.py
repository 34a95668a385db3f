"""
Limits applied while decoding a body, and the violation records produced when
they are exceeded.

The check functions never raise and never stop the decode.  Each returns a
:class:`Violation` or ``None``; the caller collects them and decides the
outcome once the body has been consumed.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Mapping
    from typing import Any

    from .bodyparser import File

logger = logging.getLogger(__name__)

# Sizes use 1024-based units, so "10mb" is 10485760 bytes.
SIZE_UNITS = {
    "b": 1,
    "kb": 1 << 10,
    "mb": 1 << 20,
    "gb": 1 << 30,
    "tb": 1 << 40,
    "pb": 1 << 50,
}

SIZE_RE = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*(kb|mb|gb|tb|pb|b)?\s*$", re.IGNORECASE)

# Default upper bound on field names, in bytes.
DEFAULT_MAX_FIELD_NAME_SIZE = 100


class ViolationKind(str, Enum):
    FIELD_SIZE_EXCEEDED = "FIELD_SIZE_EXCEEDED"
    FILE_SIZE_EXCEEDED = "FILE_SIZE_EXCEEDED"
    FILE_COUNT_EXCEEDED = "FILE_COUNT_EXCEEDED"
    FILE_TYPE_REJECTED = "FILE_TYPE_REJECTED"
    JSON_SIZE_EXCEEDED = "JSON_SIZE_EXCEEDED"


@dataclass(frozen=True)
class Violation:
    """A limit or type breach recorded during a decode."""

    kind: ViolationKind
    message: str

    def as_dict(self) -> dict[str, str]:
        return {"name": self.kind.value, "message": self.message}


def parse_size(value: int | str | None) -> int | None:
    """
    Converts a size given as a number of bytes or as a string such as
    ``"10mb"`` or ``"1.5kb"`` into a number of bytes.

    ``None``, empty strings, zero, negative sizes and anything that can't be
    parsed all return ``None``, which means "unbounded".
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        size = int(value)
    else:
        match = SIZE_RE.match(value)
        if match is None:
            if value:
                logger.warning("Ignoring unparsable size: %r", value)
            return None
        number, unit = match.groups()
        size = int(float(number) * SIZE_UNITS[(unit or "b").lower()])

    return size if size > 0 else None


def format_size(size: int | None) -> str:
    """Formats a number of bytes for messages, e.g. ``1536`` -> ``"1.5KB"``."""
    size = size or 0
    unit = "b"
    for name, factor in SIZE_UNITS.items():
        if size >= factor:
            unit = name

    value = round(size / SIZE_UNITS[unit], 2)
    text = ("%.2f" % value).rstrip("0").rstrip(".")
    return text + unit.upper()


def accepts(file_name: str, content_type: str, accept: str | None) -> bool:
    """
    Checks a file against an HTML ``accept`` attribute style pattern, a comma
    separated list of extensions (``.png``), wildcard types (``image/*``) and
    full mime types (``application/pdf``).

    An empty pattern accepts everything.
    """
    if not accept:
        return True

    file_name = (file_name or "").lower()
    content_type = (content_type or "").lower().strip()
    base_type = content_type.split("/", 1)[0]

    for entry in accept.split(","):
        entry = entry.strip().lower()
        if not entry:
            continue
        if entry.startswith("."):
            if file_name.endswith(entry):
                return True
        elif entry.endswith("/*"):
            if base_type == entry[:-2]:
                return True
        elif content_type == entry:
            return True

    return False


@dataclass(frozen=True)
class Limits:
    """
    Limits for one decode, normalized to byte counts.  ``None`` means
    unbounded.
    """

    max_file_count: int | None = None
    max_file_size: int | None = None
    max_field_size: int | None = None
    max_field_name_size: int = DEFAULT_MAX_FIELD_NAME_SIZE
    max_json_size: int | None = None
    accept: str | None = None

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> Limits:
        """Builds the limits from the upper-case config keys."""
        max_file_count = config.get("MAX_FILE_COUNT")
        return cls(
            max_file_count=int(max_file_count) if max_file_count else None,
            max_file_size=parse_size(config.get("MAX_FILE_SIZE")),
            max_field_size=parse_size(config.get("MAX_FIELD_SIZE")),
            max_field_name_size=(
                parse_size(config.get("MAX_FIELD_NAME_SIZE")) or DEFAULT_MAX_FIELD_NAME_SIZE
            ),
            max_json_size=parse_size(config.get("MAX_JSON_SIZE")),
            accept=config.get("ACCEPT") or None,
        )


def check_field_size(field_name: str, byte_length: int, limit: int | None, truncated: bool = False) -> Violation | None:
    """Flags a field that was truncated by the decoder or is over ``limit``."""
    if truncated or (limit is not None and byte_length > limit):
        return Violation(
            ViolationKind.FIELD_SIZE_EXCEEDED,
            f'field "{field_name}" exceeds {format_size(limit)}',
        )
    return None


def check_file_size(file_name: str, truncated: bool, limit: int | None) -> Violation | None:
    # The decoder enforces the limit by truncating the stream; we only report.
    if truncated:
        return Violation(
            ViolationKind.FILE_SIZE_EXCEEDED,
            f'file "{file_name}" exceeds {format_size(limit)}',
        )
    return None


def check_file_count(truncated: bool, limit: int | None) -> Violation | None:
    if truncated:
        return Violation(ViolationKind.FILE_COUNT_EXCEEDED, f"file count exceeds {limit}")
    return None


def check_mime_type(file: File, accept: str | None) -> Violation | None:
    """
    Flags a file whose name and declared type don't match ``accept``.  The
    caller is still responsible for draining the file's stream.
    """
    if accepts(file.name, file.content_type, accept):
        return None
    return Violation(
        ViolationKind.FILE_TYPE_REJECTED,
        f'file "{file.name}" is not of type "{accept}"',
    )


def check_json_size(exceeded: bool, limit: int | None) -> Violation | None:
    if exceeded:
        return Violation(ViolationKind.JSON_SIZE_EXCEEDED, f"json object exceeds {format_size(limit)}")
    return None
