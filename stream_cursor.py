"""
Stream Cursor

Thin wrapper around a binary file object giving the engine one place where
positions are tracked and where failures of the underlying object are turned
into IoError.
"""

import io
import logging
import os
from contextlib import contextmanager
from typing import BinaryIO, Iterator, Union

from format_errors import IoError


logger = logging.getLogger(__name__)


class StreamCursor:
    """Seekable byte source/sink with absolute position tracking."""

    def __init__(self, source: Union[str, bytes, bytearray, BinaryIO, None] = None, mode: str = 'rb'):
        """
        Args:
            source: Can be one of:
                - None, for an empty in-memory stream to write into
                - Bytes object containing binary data
                - Path to a binary file (opened with ``mode``)
                - An already opened binary file object
        """
        self._owned = False
        if source is None:
            self.handle = io.BytesIO()
        elif isinstance(source, (bytes, bytearray)):
            self.handle = io.BytesIO(bytes(source))
        elif isinstance(source, (str, os.PathLike)):
            logger.debug("opening path '%s'", source)
            try:
                self.handle = open(source, mode)
            except OSError as e:
                raise IoError(e) from e
            self._owned = True
        else:
            self.handle = source

    def __repr__(self):
        return f'<{self.__class__.__name__}({self.handle!r})>'

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def close(self) -> None:
        if self._owned:
            self.handle.close()

    def tell(self) -> int:
        try:
            return self.handle.tell()
        except (OSError, ValueError) as e:
            raise IoError(e) from e

    def _failed_at(self):
        try:
            return self.handle.tell()
        except (OSError, ValueError):
            return None

    def seek(self, position: int, whence: int = os.SEEK_SET) -> int:
        try:
            return self.handle.seek(position, whence)
        except (OSError, ValueError) as e:
            raise IoError(e, self._failed_at() if whence != os.SEEK_SET else None) from e

    def size(self) -> int:
        current = self.tell()
        end = self.seek(0, os.SEEK_END)
        self.seek(current)
        return end

    def remaining(self) -> int:
        return max(0, self.size() - self.tell())

    def read(self, n: int = -1) -> bytes:
        try:
            return self.handle.read(n)
        except (OSError, ValueError) as e:
            raise IoError(e, self._failed_at()) from e

    def read_exact(self, n: int) -> bytes:
        """Read exactly n bytes or raise IoError wrapping an EOFError."""
        position = self.tell()
        data = self.read(n)
        if len(data) < n:
            raise IoError(EOFError(f"expected {n} bytes, found {len(data)}"), position)
        return data

    def write(self, data: bytes) -> int:
        try:
            return self.handle.write(data)
        except (OSError, ValueError) as e:
            raise IoError(e, self._failed_at()) from e

    def truncate(self, position: int) -> None:
        """Drop everything from position on and move there."""
        try:
            self.handle.truncate(position)
        except (OSError, ValueError) as e:
            raise IoError(e, position) from e
        self.seek(position)

    def skip(self, n: int, writing: bool = False, fill: bytes = b'\x00') -> None:
        """Move forward n bytes; when writing, the gap is filled explicitly."""
        if n <= 0:
            return
        if writing:
            self.write(fill * n)
        else:
            self.seek(n, os.SEEK_CUR)

    def align(self, alignment: int, writing: bool = False) -> None:
        adjustment = self.tell() % alignment
        if adjustment:
            self.skip(alignment - adjustment, writing=writing)

    def getvalue(self) -> bytes:
        return self.handle.getvalue()

    @contextmanager
    def seeking(self, position: int, whence: int = os.SEEK_SET) -> Iterator['StreamCursor']:
        """Temporarily move to position, always coming back to where we were."""
        old_position = self.tell()
        self.seek(position, whence)
        try:
            yield self
        finally:
            self.seek(old_position)


def as_cursor(source) -> StreamCursor:
    """Wrap source into a StreamCursor unless it already is one."""
    if isinstance(source, StreamCursor):
        return source
    return StreamCursor(source)
