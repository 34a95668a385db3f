from __future__ import annotations

import logging
import os
import secrets
from typing import TYPE_CHECKING

from .exceptions import FileError

if TYPE_CHECKING:  # pragma: no cover
    from typing import BinaryIO

    from .decoder import FileStream

logger = logging.getLogger(__name__)

# URL-safe alphabet for upload name suffixes.
ID_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz_-"
ID_LENGTH = 17


def random_id(length: int = ID_LENGTH) -> str:
    return "".join(secrets.choice(ID_ALPHABET) for _ in range(length))


def ensure_upload_dir(upload_dir: str) -> None:
    """Creates the upload directory (and its parents) if it doesn't exist."""
    try:
        os.makedirs(upload_dir, exist_ok=True)
    except OSError:
        logger.exception("Error creating upload directory")
        raise FileError("Error creating upload directory: %r" % upload_dir)


def unique_upload_path(upload_dir: str, field_name: str) -> str:
    """
    Builds a destination path inside ``upload_dir`` from the field name and a
    random suffix.  Only the basename of the field is used, so a field name
    can't point outside the upload directory.
    """
    base = os.path.basename(field_name.replace("\\", "/"))
    return os.path.join(upload_dir, base + "_" + random_id())


class DiskWriter:
    """
    Writes the chunks of a :class:`~bodyparser.decoder.FileStream` to a file on
    disk, closing it when the stream ends or is aborted.
    """

    def __init__(self, path: str) -> None:
        self.logger = logging.getLogger(__name__)
        self.path = path
        self._bytes_written = 0
        try:
            self.logger.info("Opening file: %r", path)
            self._fileobj: BinaryIO = open(path, "wb")
        except OSError:
            self.logger.exception("Error opening upload file")
            raise FileError("Error opening upload file: %r" % path)

    @classmethod
    def pipe(cls, stream: FileStream, path: str) -> DiskWriter:
        """Opens ``path`` and subscribes a new writer to ``stream``."""
        writer = cls(path)
        stream.add_callback("data", writer.write)
        stream.add_callback("end", writer.close)
        stream.add_callback("abort", writer.close)
        return writer

    @property
    def bytes_written(self) -> int:
        return self._bytes_written

    @property
    def closed(self) -> bool:
        return self._fileobj.closed

    def write(self, data: bytes) -> int:
        bwritten = self._fileobj.write(data)
        self._bytes_written += bwritten
        return bwritten

    def close(self) -> None:
        if not self._fileobj.closed:
            self.logger.debug("Closing %r after %d bytes", self.path, self._bytes_written)
            self._fileobj.close()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(path={self.path!r})"
