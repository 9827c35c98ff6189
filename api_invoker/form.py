"""Form bodies - streamable resources and the ordered form field map.

Every file-like argument (an existing FormResource, a binary stream, a
filesystem path, or a text reader) is normalized into a FormResource. Nothing
here reads the payload: paths are opened on first access and text readers are
transcoded to UTF-8 chunk by chunk while the transport pulls bytes.
"""

from __future__ import annotations

import io
import os
from typing import IO, Any, Iterator

from api_invoker.errors import BindingError
from api_invoker.models import FileKind


class Utf8ReaderStream(io.RawIOBase):
    """Binary view of a text reader, encoded to UTF-8 on demand.

    At most chars_per_read characters are pulled from the reader per refill,
    so memory use is bounded regardless of the reader's total size.
    """

    def __init__(self, reader: IO[str], chars_per_read: int = 8192) -> None:
        super().__init__()
        self._reader = reader
        self._chars_per_read = chars_per_read
        self._pending = b""
        self._offset = 0

    def readable(self) -> bool:
        return True

    def readinto(self, buffer: Any) -> int:
        while self._offset >= len(self._pending):
            text = self._reader.read(self._chars_per_read)
            if not text:
                return 0
            self._pending = text.encode("utf-8")
            self._offset = 0
        count = min(len(buffer), len(self._pending) - self._offset)
        buffer[:count] = self._pending[self._offset:self._offset + count]
        self._offset += count
        return count

    def close(self) -> None:
        if self.closed:
            return
        try:
            self._reader.close()
        finally:
            super().close()


class FormResource:
    """A named, streamable form part.

    Owns its underlying stream: close() closes it exactly once, and is safe
    to call again. Path-backed resources open their file on first access of
    .stream, so a resource that is never sent never opens a descriptor.
    """

    def __init__(
        self,
        stream: IO[bytes] | None = None,
        *,
        path: str | os.PathLike[str] | None = None,
        filename: str | None = None,
        content_type: str | None = None,
    ) -> None:
        if (stream is None) == (path is None):
            raise ValueError("FormResource needs exactly one of stream or path")
        self._stream = stream
        self._path = path
        self.filename = filename or (os.path.basename(os.fspath(path)) if path is not None else "upload")
        self.content_type = content_type
        self._closed = False

    @classmethod
    def from_path(
        cls,
        path: str | os.PathLike[str],
        filename: str | None = None,
        content_type: str | None = None,
    ) -> FormResource:
        return cls(path=path, filename=filename, content_type=content_type)

    @classmethod
    def from_argument(cls, value: Any, file_kind: FileKind, default_name: str) -> FormResource:
        """Normalize a file-like argument according to its declared kind.

        Raises:
            BindingError: If the value does not fit the declared kind.
        """
        if file_kind == FileKind.RESOURCE:
            if not isinstance(value, FormResource):
                raise BindingError(
                    f"'{default_name}' expects a FormResource, got {type(value).__name__}"
                )
            return value

        if file_kind == FileKind.PATH:
            if not isinstance(value, (str, os.PathLike)):
                raise BindingError(
                    f"'{default_name}' expects a filesystem path, got {type(value).__name__}"
                )
            return cls.from_path(value)

        if not hasattr(value, "read"):
            raise BindingError(
                f"'{default_name}' expects a readable stream, got {type(value).__name__}"
            )
        filename = _stream_filename(value) or default_name
        if file_kind == FileKind.READER:
            return cls(
                Utf8ReaderStream(value),
                filename=filename,
                content_type="text/plain; charset=utf-8",
            )
        return cls(value, filename=filename)

    @property
    def stream(self) -> IO[bytes]:
        """The payload stream; path-backed resources are opened here.

        Raises:
            BindingError: If the path cannot be opened for reading.
        """
        if self._closed:
            raise ValueError(f"FormResource '{self.filename}' is closed")
        if self._stream is None:
            try:
                self._stream = open(self._path, "rb")
            except OSError as e:
                raise BindingError(f"Cannot read file argument '{self._path}': {e}") from e
        return self._stream

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._stream is not None:
            self._stream.close()

    def __repr__(self) -> str:
        return f"FormResource(filename={self.filename!r}, closed={self._closed})"


def close_file_argument(value: Any) -> None:
    """Close an argument that was handed over as a file-like object.

    Used on build failure paths for arguments that never got wrapped in a
    FormResource. Paths own no descriptor and are left alone.
    """
    if isinstance(value, FormResource):
        value.close()
    elif hasattr(value, "close") and hasattr(value, "read"):
        value.close()


def _stream_filename(stream: Any) -> str | None:
    name = getattr(stream, "name", None)
    if isinstance(name, str) and name:
        return os.path.basename(name)
    return None


class FormFields:
    """Ordered multi-valued map of form fields.

    Insertion order is kept across all entries, so distinct names come out
    in declaration order and repeated names keep every value.
    """

    def __init__(self) -> None:
        self._items: list[tuple[str, Any]] = []

    def add(self, name: str, value: Any) -> None:
        self._items.append((name, value))

    def items(self) -> list[tuple[str, Any]]:
        return list(self._items)

    def getlist(self, name: str) -> list[Any]:
        return [value for key, value in self._items if key == name]

    def names(self) -> list[str]:
        """Distinct names in first-seen order."""
        return list(dict.fromkeys(key for key, _ in self._items))

    @property
    def has_files(self) -> bool:
        return any(isinstance(value, FormResource) for _, value in self._items)

    def resources(self) -> list[FormResource]:
        return [value for _, value in self._items if isinstance(value, FormResource)]

    def __iter__(self) -> Iterator[tuple[str, Any]]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, name: object) -> bool:
        return any(key == name for key, _ in self._items)

    def __repr__(self) -> str:
        return f"FormFields({self._items!r})"
