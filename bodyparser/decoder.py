"""
Event-level form decoding on top of the ``python-multipart`` tokenizers.

:class:`FormDecoder` turns a ``multipart/form-data`` or
``application/x-www-form-urlencoded`` body into four events:

* ``on_field(name, value, FieldInfo)`` once per complete text field,
* ``on_file(field_name, FileStream, FileInfo)`` when a file part starts; the
  bytes follow through the :class:`FileStream`,
* ``on_files_limit()`` once, when the file count limit is hit,
* ``on_end()`` when the body is complete.

Limits are applied here by truncation and flagged on the events; deciding what
a truncation means is left to the listener.
"""

from __future__ import annotations

import codecs
import logging
from typing import TYPE_CHECKING, NamedTuple
from urllib.parse import unquote_to_bytes

from python_multipart.decoders import Base64Decoder, QuotedPrintableDecoder
from python_multipart.exceptions import FormParserError
from python_multipart.multipart import MultipartParser, QuerystringParser, parse_options_header

from .exceptions import BodyParserError, MalformedBodyError
from .limits import Limits

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable, Mapping
    from typing import Any, Literal, TypedDict

    class FormDecoderCallbacks(TypedDict, total=False):
        on_field: Callable[[str, str, FieldInfo], None]
        on_file: Callable[[str, FileStream, FileInfo], None]
        on_files_limit: Callable[[], None]
        on_end: Callable[[], None]

    DecoderEvent = Literal["field", "file", "files_limit", "end"]
    StreamEvent = Literal["data", "limit", "end", "abort"]

logger = logging.getLogger(__name__)

DEFAULT_CHARSET = "utf-8"
DEFAULT_PART_TYPE = "text/plain"


class FieldInfo(NamedTuple):
    name_truncated: bool
    value_truncated: bool
    content_type: str


class FileInfo(NamedTuple):
    file_name: str
    content_type: str
    transfer_encoding: str


def get_header(headers: Mapping[str, Any], name: str) -> Any:
    """Case-insensitive header lookup."""
    value = headers.get(name)
    if value is not None:
        return value
    lower = name.lower()
    for key, value in headers.items():
        if key.lower() == lower:
            return value
    return None


def lookup_charset(value: bytes | str | None, default: str = DEFAULT_CHARSET) -> str:
    if not value:
        return default
    if isinstance(value, bytes):
        value = value.decode("latin-1")
    try:
        return codecs.lookup(value).name
    except LookupError:
        logger.warning("Unknown charset %r, using %s", value, default)
        return default


def decode_header_value(value: bytes) -> str:
    # Header parameters come back as raw bytes; browsers send file names as
    # UTF-8, anything else is kept byte for byte.
    try:
        return value.decode("utf-8")
    except UnicodeDecodeError:
        return value.decode("latin-1")


def unquote_plus_bytes(value: bytes) -> bytes:
    return unquote_to_bytes(value.replace(b"+", b" "))


class FileStream:
    """
    The contents of one uploaded file, pushed chunk by chunk by the decoder.

    Listeners subscribe with :meth:`add_callback`:

    * ``data``: called with each chunk,
    * ``limit``: called once the file size limit is hit; the stream is then
      :attr:`truncated` and further bytes are dropped,
    * ``end``: called once the part is complete,
    * ``abort``: called if decoding stops before the part is complete.

    Chunks that arrive while nobody listens on ``data`` are discarded, which is
    how a stream gets drained.  A paused stream holds its chunks, and its end,
    until :meth:`resume` is called.
    """

    def __init__(self, field_name: str, file_name: str, content_type: str) -> None:
        self.logger = logging.getLogger(__name__)
        self.field_name = field_name
        self.file_name = file_name
        self.content_type = content_type
        self.callbacks: dict[str, list[Callable[..., Any]]] = {}

        self.truncated = False
        self.bytes_received = 0

        self._paused = False
        self._buffer: list[bytes] = []
        self._finished = False
        self._ended = False
        self._aborted = False

    def add_callback(self, name: StreamEvent, func: Callable[..., Any]) -> None:
        self.callbacks.setdefault(name, []).append(func)

    def remove_callback(self, name: StreamEvent, func: Callable[..., Any]) -> None:
        funcs = self.callbacks.get(name, [])
        if func in funcs:
            funcs.remove(func)

    def callback(self, name: StreamEvent, *args: Any) -> None:
        for func in list(self.callbacks.get(name, ())):
            func(*args)

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def ended(self) -> bool:
        return self._ended

    @property
    def aborted(self) -> bool:
        return self._aborted

    def pause(self) -> None:
        if not self._ended and not self._aborted:
            self._paused = True

    def resume(self) -> None:
        """
        Unpauses the stream, delivering any held chunks and a held end.  With
        no ``data`` listener this simply drains the stream.
        """
        if not self._paused:
            return
        self._paused = False

        while self._buffer and not self._paused:
            self.callback("data", self._buffer.pop(0))

        if self._finished and not self._paused:
            self._emit_end()

    def push(self, data: bytes) -> None:
        if self._finished or self._aborted or not data:
            return
        self.bytes_received += len(data)
        if self._paused:
            self._buffer.append(data)
        else:
            self.callback("data", data)

    def truncate(self) -> None:
        if self.truncated:
            return
        self.truncated = True
        self.logger.warning("File %r hit its size limit after %d bytes", self.file_name, self.bytes_received)
        self.callback("limit")

    def finish(self) -> None:
        if self._finished or self._aborted:
            return
        self._finished = True
        if not self._paused:
            self._emit_end()

    def abort(self) -> None:
        if self._ended or self._aborted:
            return
        self._aborted = True
        self._buffer = []
        self.logger.debug("Aborting stream for %r", self.file_name)
        self.callback("abort")

    def _emit_end(self) -> None:
        if self._ended:
            return
        self._ended = True
        self.callback("end")

    def __repr__(self) -> str:
        return "{}(field_name={!r}, file_name={!r}, content_type={!r})".format(
            self.__class__.__name__, self.field_name, self.file_name, self.content_type
        )


class _FieldPart:
    """Collects the value of a multipart text field up to the field size limit."""

    def __init__(self, decoder: FormDecoder, name: bytes, content_type: str, charset: str) -> None:
        self._decoder = decoder
        self._name = name
        self._content_type = content_type
        self._charset = charset
        self._value: list[bytes] = []
        self._size = 0
        self._truncated = False

    def write(self, data: bytes) -> int:
        length = len(data)
        if self._truncated:
            return length

        limit = self._decoder.limits.max_field_size
        if limit is not None and self._size + length > limit:
            data = data[: limit - self._size]
            self._truncated = True

        self._value.append(data)
        self._size += len(data)
        return length

    def finalize(self) -> None:
        self._decoder.emit_field(
            self._name, b"".join(self._value), self._truncated, self._content_type, self._charset
        )


class _FilePart:
    """Forwards the bytes of a file part to its stream, truncating at the limit."""

    def __init__(self, stream: FileStream, limit: int | None) -> None:
        self.stream = stream
        self._limit = limit
        self._size = 0

    def write(self, data: bytes) -> int:
        length = len(data)
        if self.stream.truncated:
            return length

        if self._limit is not None and self._size + length > self._limit:
            keep = self._limit - self._size
            if keep > 0:
                self._size += keep
                self.stream.push(data[:keep])
            self.stream.truncate()
            return length

        self._size += length
        self.stream.push(data)
        return length

    def finalize(self) -> None:
        self.stream.finish()


class _SkippedPart:
    """Swallows a part that isn't reported to the listener."""

    def write(self, data: bytes) -> int:
        return len(data)

    def finalize(self) -> None:
        pass


class FormDecoder:
    """
    Decodes a form body into field and file events.

    :param content_type: the bare content type, e.g. ``multipart/form-data``.

    :param callbacks: a dict of ``on_field``, ``on_file``, ``on_files_limit``
                      and ``on_end`` callables.

    :param boundary: the multipart boundary, required for multipart bodies.

    :param charset: charset of text fields when a part doesn't declare one.

    :param limits: the :class:`~bodyparser.limits.Limits` to enforce.
    """

    def __init__(
        self,
        content_type: str,
        callbacks: FormDecoderCallbacks = {},
        boundary: bytes | str | None = None,
        charset: str | None = None,
        limits: Limits | None = None,
    ) -> None:
        self.logger = logging.getLogger(__name__)
        self.content_type = content_type
        self.callbacks = callbacks
        self.limits = limits or Limits()
        self.charset = lookup_charset(charset)

        self._file_count = 0
        self._files_limit_reached = False
        self._stream: FileStream | None = None
        self._finished = False

        parser: MultipartParser | QuerystringParser

        if content_type == "application/x-www-form-urlencoded":
            parser = self._create_querystring_parser()

        elif content_type == "multipart/form-data":
            if boundary is None:
                self.logger.error("No boundary given")
                raise MalformedBodyError("No boundary given")
            parser = self._create_multipart_parser(boundary)

        else:
            self.logger.warning("Unknown Content-Type: %r", content_type)
            raise BodyParserError(f"Unknown Content-Type: {content_type}")

        self.parser = parser

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def file_count(self) -> int:
        return self._file_count

    def callback(self, name: DecoderEvent, *args: Any) -> None:
        func = self.callbacks.get("on_" + name)
        if func is None:
            return
        self.logger.debug("Calling on_%s", name)
        func(*args)  # type: ignore[operator]

    def emit_field(self, raw_name: bytes, raw_value: bytes, value_truncated: bool, content_type: str, charset: str) -> None:
        max_name_size = self.limits.max_field_name_size
        name_truncated = len(raw_name) > max_name_size
        if name_truncated:
            raw_name = raw_name[:max_name_size]

        if name_truncated or value_truncated:
            self.logger.warning("Field %r was truncated", raw_name)

        self.callback(
            "field",
            raw_name.decode(charset, "replace"),
            raw_value.decode(charset, "replace"),
            FieldInfo(name_truncated, value_truncated, content_type),
        )

    def start_file(self, raw_field_name: bytes, raw_file_name: bytes, content_type: str, transfer_encoding: str) -> _FilePart | _SkippedPart:
        field_name = decode_header_value(raw_field_name)
        file_name = decode_header_value(raw_file_name)

        # Parts with an empty file name are empty file inputs; they are still
        # reported but don't count as files.
        if file_name:
            max_file_count = self.limits.max_file_count
            if max_file_count is not None and self._file_count >= max_file_count:
                if not self._files_limit_reached:
                    self._files_limit_reached = True
                    self.logger.warning("File count limit of %d reached, skipping remaining files", max_file_count)
                    self.callback("files_limit")
                return _SkippedPart()
            self._file_count += 1

        stream = FileStream(field_name, file_name, content_type)
        self._stream = stream
        self.callback("file", field_name, stream, FileInfo(file_name, content_type, transfer_encoding))
        return _FilePart(stream, self.limits.max_file_size)

    def _create_querystring_parser(self) -> QuerystringParser:
        charset = self.charset
        max_field_size = self.limits.max_field_size

        # Percent-encoding at most triples a value, so anything longer than
        # this is over the limit once decoded.
        raw_limit = None if max_field_size is None else 3 * max_field_size + 3
        raw_name_limit = 3 * self.limits.max_field_name_size + 3

        name_buffer: list[bytes] = []
        value_buffer: list[bytes] = []
        name_size = 0
        value_size = 0
        value_truncated = False
        in_field = False

        def on_field_start() -> None:
            nonlocal name_size, value_size, value_truncated, in_field
            del name_buffer[:]
            del value_buffer[:]
            name_size = value_size = 0
            value_truncated = False
            in_field = True

        def on_field_name(data: bytes, start: int, end: int) -> None:
            nonlocal name_size
            chunk = data[start:end][: max(raw_name_limit - name_size, 0)]
            name_buffer.append(chunk)
            name_size += len(chunk)

        def on_field_data(data: bytes, start: int, end: int) -> None:
            nonlocal value_size, value_truncated
            if value_truncated:
                return
            chunk = data[start:end]
            if raw_limit is not None and value_size + len(chunk) > raw_limit:
                chunk = chunk[: raw_limit - value_size]
                value_truncated = True
            value_buffer.append(chunk)
            value_size += len(chunk)

        def on_field_end() -> None:
            nonlocal in_field
            in_field = False

            name = unquote_plus_bytes(b"".join(name_buffer))
            value = unquote_plus_bytes(b"".join(value_buffer))
            truncated = value_truncated
            if max_field_size is not None and len(value) > max_field_size:
                value = value[:max_field_size]
                truncated = True

            self.emit_field(name, value, truncated, DEFAULT_PART_TYPE, charset)

        def _on_end() -> None:
            # A trailing name without "=" never gets its own field_end.
            if in_field:
                on_field_end()
            self._finished = True
            self.callback("end")

        return QuerystringParser(
            callbacks={
                "on_field_start": on_field_start,
                "on_field_name": on_field_name,
                "on_field_data": on_field_data,
                "on_field_end": on_field_end,
                "on_end": _on_end,
            },
        )

    def _create_multipart_parser(self, boundary: bytes | str) -> MultipartParser:
        header_name: list[bytes] = []
        header_value: list[bytes] = []
        headers: dict[bytes, bytes] = {}

        writer: _FieldPart | _FilePart | _SkippedPart | Base64Decoder | QuotedPrintableDecoder | None = None

        def on_part_begin() -> None:
            nonlocal headers
            headers = {}

        def on_part_data(data: bytes, start: int, end: int) -> None:
            if writer is not None:
                writer.write(data[start:end])

        def on_part_end() -> None:
            nonlocal writer
            if writer is not None:
                writer.finalize()
            writer = None
            self._stream = None

        def on_header_field(data: bytes, start: int, end: int) -> None:
            header_name.append(data[start:end])

        def on_header_value(data: bytes, start: int, end: int) -> None:
            header_value.append(data[start:end])

        def on_header_end() -> None:
            headers[b"".join(header_name).strip().lower()] = b"".join(header_value)
            del header_name[:]
            del header_value[:]

        def on_headers_finished() -> None:
            nonlocal writer

            # Get the field and file names.
            disp, options = parse_options_header(headers.get(b"content-disposition"))
            field_name = options.get(b"name", b"")
            file_name = options.get(b"filename")

            part_type, part_options = parse_options_header(headers.get(b"content-type"))
            content_type = part_type.decode("latin-1") or DEFAULT_PART_TYPE

            transfer_encoding = headers.get(b"content-transfer-encoding", b"7bit").strip().lower()

            part: _FieldPart | _FilePart | _SkippedPart
            if file_name is None:
                charset = lookup_charset(part_options.get(b"charset"), self.charset)
                part = _FieldPart(self, field_name, content_type, charset)
            else:
                part = self.start_file(field_name, file_name, content_type, transfer_encoding.decode("latin-1"))

            if transfer_encoding in (b"binary", b"8bit", b"7bit"):
                writer = part
            elif transfer_encoding == b"base64":
                writer = Base64Decoder(part)
            elif transfer_encoding == b"quoted-printable":
                writer = QuotedPrintableDecoder(part)
            else:
                self.logger.warning("Unknown Content-Transfer-Encoding: %r", transfer_encoding)
                writer = part

        def _on_end() -> None:
            nonlocal writer
            if writer is not None:
                writer.finalize()
                writer = None
            self._finished = True
            self.callback("end")

        return MultipartParser(
            boundary,
            callbacks={
                "on_part_begin": on_part_begin,
                "on_part_data": on_part_data,
                "on_part_end": on_part_end,
                "on_header_field": on_header_field,
                "on_header_value": on_header_value,
                "on_header_end": on_header_end,
                "on_headers_finished": on_headers_finished,
                "on_end": _on_end,
            },
        )

    def write(self, data: bytes) -> int:
        try:
            return self.parser.write(data)
        except (FormParserError, UnicodeError) as e:
            self.logger.warning("Error decoding form body: %s", e)
            raise MalformedBodyError(str(e)) from e

    def finalize(self) -> None:
        """
        Signals the end of the body.  Raises :class:`MalformedBodyError` if the
        body stopped before the form was complete.
        """
        try:
            self.parser.finalize()
        except (FormParserError, UnicodeError) as e:
            raise MalformedBodyError(str(e)) from e

        if not self._finished:
            self.logger.warning("Body ended before the form was complete")
            raise MalformedBodyError("Unexpected end of form")

    def close(self) -> None:
        """Aborts a file stream that is still in progress."""
        if self._stream is not None:
            self._stream.abort()
            self._stream = None

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(content_type={self.content_type!r}, parser={self.parser!r})"


def create_form_decoder(
    headers: Mapping[str, Any],
    callbacks: FormDecoderCallbacks,
    limits: Limits | None = None,
    content_type: str | None = None,
) -> FormDecoder:
    """
    Creates a :class:`FormDecoder` from the request headers, taking the
    boundary and charset from the ``Content-Type`` parameters.

    :param content_type: the form type to decode, when the caller already
                         picked one; defaults to the type named by the header.
    """
    header = get_header(headers, "Content-Type")
    if header is None:
        logger.warning("No Content-Type header given")
        raise ValueError("No Content-Type header given!")

    ctype, params = parse_options_header(header)
    charset = params.get(b"charset")

    return FormDecoder(
        content_type or ctype.decode("latin-1"),
        callbacks,
        boundary=params.get(b"boundary"),
        charset=charset.decode("latin-1") if charset else None,
        limits=limits,
    )
