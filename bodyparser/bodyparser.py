from __future__ import annotations

import asyncio
import inspect
import logging
import tempfile
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import TYPE_CHECKING

from .decoder import create_form_decoder, get_header
from .exceptions import MalformedBodyError
from .fields import set_field
from .jsonbody import parse_json_body
from .limits import Limits, check_field_size, check_file_count, check_file_size, check_mime_type
from .storage import DiskWriter, ensure_upload_dir, unique_upload_path

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable, Iterable, Mapping
    from typing import Any, Protocol, TypedDict, Union

    from .decoder import FieldInfo, FileInfo, FileStream, FormDecoderCallbacks
    from .limits import Violation

    class SupportsRead(Protocol):
        def read(self, __n: int) -> bytes: ...

    Body = Union[bytes, AsyncIterable[bytes], Iterable[bytes], SupportsRead]

    OnFileCallback = Callable[[str, "File", FileStream], Union[None, Awaitable[None]]]

    class BodyParserConfig(TypedDict, total=False):
        MAX_FILE_COUNT: int | None
        MAX_FILE_SIZE: int | str | None
        MAX_FIELD_SIZE: int | str | None
        MAX_FIELD_NAME_SIZE: int | str | None
        MAX_JSON_SIZE: int | str | None
        ACCEPT: str | None
        UPLOAD_DIR: str | None
        CHUNK_SIZE: int


class Route(Enum):
    JSON = "application/json"
    URLENCODED = "application/x-www-form-urlencoded"
    MULTIPART = "multipart/form-data"


def dispatch(content_type: str | None) -> Route | None:
    """
    Picks the decoder for a ``Content-Type`` header by a case-sensitive prefix
    match, ignoring any parameters.  Returns ``None`` when no decoder applies.
    """
    if not content_type:
        return None
    for route in Route:
        if content_type.startswith(route.value):
            return route
    return None


@dataclass(frozen=True)
class Success:
    """The body was decoded without violations."""

    body: Any


@dataclass(frozen=True)
class Failure:
    """The body was consumed, but one or more limits were violated."""

    errors: tuple[Violation, ...]

    def as_dict(self) -> dict[str, list[dict[str, str]]]:
        return {"errors": [error.as_dict() for error in self.errors]}


@dataclass(frozen=True)
class Skip:
    """The request's content type isn't one we decode; there is no body value."""

    content_type: str | None = None


class File:
    """
    An uploaded file as it appears in the decoded body.

    ``size`` is updated as chunks arrive and holds the length of the most
    recent chunk, not a running total.  Once the file's stream has ended the
    file is finalized and no longer changes.
    """

    def __init__(self, name: str, content_type: str, field_name: str | None = None, path: str | None = None) -> None:
        self._name = name
        self._content_type = content_type
        self._field_name = field_name
        self._path = path
        self._size = 0
        self._finalized = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def content_type(self) -> str:
        return self._content_type

    @property
    def field_name(self) -> str | None:
        return self._field_name

    @property
    def path(self) -> str | None:
        """Where the file was written, or ``None`` if it was handed to an
        ``on_file`` callback instead."""
        return self._path

    @property
    def size(self) -> int:
        return self._size

    @property
    def finalized(self) -> bool:
        return self._finalized

    def set_path(self, path: str) -> None:
        if not self._finalized:
            self._path = path

    def on_data(self, data: bytes) -> None:
        if not self._finalized:
            self._size = len(data)

    def finalize(self) -> None:
        self._finalized = True

    def as_dict(self) -> dict[str, Any]:
        return {"name": self._name, "size": self._size, "type": self._content_type, "path": self._path}

    def __eq__(self, other: object) -> bool:
        if isinstance(other, File):
            return self.as_dict() == other.as_dict()
        else:
            return NotImplemented

    def __repr__(self) -> str:
        return "{}(name={!r}, size={!r}, content_type={!r}, path={!r})".format(
            self.__class__.__name__, self._name, self._size, self._content_type, self._path
        )


class CollectorState(IntEnum):
    OPEN = 0
    DRAINING = 1
    SETTLED = 2


class FormCollector:
    """
    Builds the decoded body from the events of a
    :class:`~bodyparser.decoder.FormDecoder`.

    Fields and finished files are assigned into :attr:`body` by their field
    path.  Limit violations are collected in :attr:`errors` rather than raised,
    so the whole body is always consumed.  Once the decoder signals the end,
    :meth:`wait` settles the collector into exactly one outcome:
    a :class:`Failure` if anything was violated, a :class:`Success` otherwise.

    Files are written to ``upload_dir`` unless an ``on_file`` callback is
    given, in which case it receives ``(field_name, file, stream)`` and owns
    the stream.  A callback may be a coroutine function; its stream is then
    paused until the coroutine returns (or resumes it itself), and the
    collector waits for it before settling.
    """

    def __init__(self, limits: Limits, upload_dir: str, on_file: OnFileCallback | None = None) -> None:
        self.logger = logging.getLogger(__name__)
        self.limits = limits
        self.upload_dir = upload_dir
        self.on_file_callback = on_file

        self.state = CollectorState.OPEN
        self.body: dict[str, Any] = {}
        self.errors: list[Violation] = []

        self._tasks: list[asyncio.Future[None]] = []
        self._outcome: Success | Failure | None = None

    @property
    def callbacks(self) -> FormDecoderCallbacks:
        return {
            "on_field": self.on_field,
            "on_file": self.on_file,
            "on_files_limit": self.on_files_limit,
            "on_end": self.on_end,
        }

    @property
    def pending(self) -> bool:
        """Whether any ``on_file`` coroutine is still running."""
        return any(not task.done() for task in self._tasks)

    def record(self, violation: Violation | None) -> None:
        if violation is None:
            return
        self.logger.warning("%s: %s", violation.kind.value, violation.message)
        self.errors.append(violation)

    def on_field(self, name: str, value: str, info: FieldInfo) -> None:
        if self.state != CollectorState.OPEN:
            self.logger.debug("Ignoring field %r after the end of the form", name)
            return

        if info.name_truncated or info.value_truncated:
            limit = self.limits.max_field_name_size if info.name_truncated else self.limits.max_field_size
            self.record(check_field_size(name, len(value.encode()), limit, truncated=True))
            return

        set_field(self.body, name, value)

    def on_file(self, field_name: str, stream: FileStream, info: FileInfo) -> None:
        if self.state != CollectorState.OPEN:
            self.logger.debug("Ignoring file %r after the end of the form", info.file_name)
            stream.resume()
            return

        file = File(info.file_name, info.content_type, field_name)

        # An empty file input still sends a part, with an empty file name.
        if not file.name:
            self.logger.debug("Skipping empty file field %r", field_name)
            stream.resume()
            return

        violation = check_mime_type(file, self.limits.accept)
        if violation is not None:
            self.record(violation)
            stream.resume()
            return

        if self.on_file_callback is not None:
            self._hand_off(field_name, file, stream)
        else:
            ensure_upload_dir(self.upload_dir)
            file.set_path(unique_upload_path(self.upload_dir, field_name))
            self.logger.info("Writing %r to %r", file.name, file.path)
            DiskWriter.pipe(stream, file.path)  # type: ignore[arg-type]

        stream.add_callback("data", file.on_data)
        stream.add_callback("end", lambda: self.on_file_end(field_name, file, stream))

    def _hand_off(self, field_name: str, file: File, stream: FileStream) -> None:
        assert self.on_file_callback is not None
        result = self.on_file_callback(field_name, file, stream)
        if not inspect.isawaitable(result):
            return

        # Hold the data until the coroutine had a chance to subscribe.
        stream.pause()
        self._tasks.append(asyncio.ensure_future(self._run_callback(result, stream)))

    async def _run_callback(self, result: Awaitable[None], stream: FileStream) -> None:
        try:
            await result
        finally:
            stream.resume()

    def on_file_end(self, field_name: str, file: File, stream: FileStream) -> None:
        file.finalize()
        if self.state == CollectorState.SETTLED:
            self.logger.debug("Ignoring file %r that ended after settlement", file.name)
            return

        violation = check_file_size(file.name, stream.truncated, self.limits.max_file_size)
        if violation is not None:
            # Truncated files are left out of the body entirely.
            self.record(violation)
            return

        set_field(self.body, field_name, file)

    def on_files_limit(self) -> None:
        if self.state == CollectorState.OPEN:
            self.record(check_file_count(True, self.limits.max_file_count))

    def on_end(self) -> None:
        if self.state == CollectorState.OPEN:
            self.logger.debug("Form complete, %d pending file callbacks", len(self._tasks))
            self.state = CollectorState.DRAINING

    async def wait(self) -> Success | Failure:
        """
        Waits for the pending file callbacks and returns the outcome.  Must be
        called after the decoder signalled the end of the form.
        """
        if self._outcome is not None:
            return self._outcome
        if self.state == CollectorState.OPEN:
            raise RuntimeError("The form hasn't ended yet")

        try:
            # Let continuations scheduled by the last events run first.
            await asyncio.sleep(0)
            if self._tasks:
                await asyncio.gather(*self._tasks)
        finally:
            self.state = CollectorState.SETTLED

        if self.errors:
            self._outcome = Failure(tuple(self.errors))
        else:
            self._outcome = Success(self.body)
        return self._outcome

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(state={self.state.name}, errors={len(self.errors)})"


DEFAULT_CONFIG: BodyParserConfig = {
    "MAX_FILE_COUNT": None,
    "MAX_FILE_SIZE": None,
    "MAX_FIELD_SIZE": None,
    "MAX_FIELD_NAME_SIZE": 100,
    "MAX_JSON_SIZE": None,
    "ACCEPT": None,
    "UPLOAD_DIR": None,
    "CHUNK_SIZE": 1048576,
}


async def iter_body(
    body: Body, content_length: int | None = None, chunk_size: int = 1048576
) -> AsyncIterator[bytes]:
    """
    Yields the request body in chunks.  ``body`` may be ``bytes``, an async or
    plain iterable of ``bytes``, or a file-like object with ``read()``, which
    is read up to ``content_length`` bytes if that is known.
    """
    if isinstance(body, (bytes, bytearray, memoryview)):
        if body:
            yield bytes(body)
        return

    if hasattr(body, "__aiter__"):
        async for chunk in body:  # type: ignore[union-attr]
            if chunk:
                yield bytes(chunk)
        return

    if hasattr(body, "read"):
        length = float("inf") if content_length is None else content_length
        bytes_read = 0
        while True:
            max_readable = int(min(length - bytes_read, chunk_size))
            buff = body.read(max_readable)  # type: ignore[union-attr]
            if buff:
                yield bytes(buff)
            bytes_read += len(buff)

            if len(buff) != max_readable or bytes_read == length:
                break
        return

    for chunk in body:  # type: ignore[union-attr]
        if chunk:
            yield bytes(chunk)


async def parse_body(
    headers: Mapping[str, Any],
    body: Body,
    on_file: OnFileCallback | None = None,
    config: BodyParserConfig = {},
) -> Success | Failure | Skip:
    """
    Decodes a request body according to its ``Content-Type``.

    JSON, url-encoded and multipart bodies are decoded into a nested dict;
    form field names like ``a.b[]`` or ``a[0].c`` are expanded into nested
    dicts and lists.  Uploaded files appear as :class:`File` objects and are
    written to ``config["UPLOAD_DIR"]`` (the system temp directory by default),
    or passed to ``on_file`` if it is given.

    Returns :class:`Success` with the decoded body, :class:`Failure` with the
    violated limits, or :class:`Skip` for any other content type.  Raises
    :class:`~bodyparser.exceptions.MalformedBodyError` for a body that can't
    be decoded at all.

    :param headers: the request headers; only ``Content-Type`` and
                    ``Content-Length`` are used.

    :param body: the request body, see :func:`iter_body`.

    :param on_file: optional ``(field_name, file, stream)`` callback that
                    takes over storing uploaded files.

    :param config: limits and options, see :data:`DEFAULT_CONFIG`.
    """
    logger = logging.getLogger(__name__)

    cfg: BodyParserConfig = DEFAULT_CONFIG.copy()
    cfg.update(config)

    content_type = get_header(headers, "Content-Type")
    if isinstance(content_type, bytes):
        content_type = content_type.decode("latin-1")

    route = dispatch(content_type)
    if route is None:
        logger.debug("Not decoding body with Content-Type %r", content_type)
        return Skip(content_type)

    limits = Limits.from_config(cfg)

    content_length = get_header(headers, "Content-Length")
    if content_length is not None:
        try:
            content_length = int(content_length)
        except ValueError as e:
            logger.warning("Invalid Content-Length: %r", content_length)
            raise MalformedBodyError(f"Invalid Content-Length: {content_length!r}") from e

    chunks = iter_body(
        body,
        content_length=content_length,
        chunk_size=cfg["CHUNK_SIZE"],
    )

    if route == Route.JSON:
        value, errors = await parse_json_body(chunks, limits.max_json_size, limits.max_field_size)
        if errors:
            return Failure(tuple(errors))
        return Success(value)

    collector = FormCollector(limits, cfg["UPLOAD_DIR"] or tempfile.gettempdir(), on_file=on_file)
    decoder = create_form_decoder(headers, collector.callbacks, limits, content_type=route.value)
    try:
        async for chunk in chunks:
            decoder.write(chunk)
            if collector.pending:
                # Let new file handlers subscribe before more data is buffered.
                await asyncio.sleep(0)
        decoder.finalize()
    finally:
        decoder.close()

    return await collector.wait()
