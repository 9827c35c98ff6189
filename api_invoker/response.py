"""Response wrappers around streamed httpx responses.

RawResponse is what the dispatcher hands to the decoder; the body is still
on the wire until something reads it. ResponseStream is what callers get back
for operations declared to return a stream: the open body, plus the bits of
metadata a download needs.
"""

from __future__ import annotations

import io
import re
from contextlib import contextmanager
from typing import Any, Iterator
from urllib.parse import unquote

import httpx

from api_invoker.errors import TransportError

_FILENAME_STAR = re.compile(r"filename\*\s*=\s*(?:[\w-]+'[\w-]*')?([^;]+)", re.IGNORECASE)
_FILENAME = re.compile(r'filename\s*=\s*"?([^";]+)"?', re.IGNORECASE)


@contextmanager
def body_read_errors() -> Iterator[None]:
    """Map httpx failures while reading a streamed body to TransportError.

    The dispatcher maps errors raised while sending; the body is read later,
    after send() has returned, so reads need the same mapping.
    """
    try:
        yield
    except httpx.TimeoutException as e:
        raise TransportError(f"Response body read timeout: {e}") from e
    except httpx.RequestError as e:
        raise TransportError(f"Response body read error: {e}") from e


class _ChunkReader(io.RawIOBase):
    """Read-only file view over an iterator of byte chunks."""

    def __init__(self, chunks: Iterator[bytes]) -> None:
        super().__init__()
        self._chunks = chunks
        self._pending = b""

    def readable(self) -> bool:
        return True

    def readinto(self, buffer: Any) -> int:
        while not self._pending:
            try:
                self._pending = next(self._chunks)
            except StopIteration:
                return 0
        count = min(len(buffer), len(self._pending))
        buffer[:count] = self._pending[:count]
        self._pending = self._pending[count:]
        return count


class RawResponse:
    """A dispatched response whose body has not been consumed yet.

    Whoever holds it must either read it to the end or close it.
    """

    def __init__(self, response: httpx.Response) -> None:
        self._response = response

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def headers(self) -> httpx.Headers:
        return self._response.headers

    @property
    def is_success(self) -> bool:
        return 200 <= self._response.status_code < 300

    @property
    def media_type(self) -> str:
        """Content-Type without parameters, lowercased; empty if absent."""
        content_type = self._response.headers.get("content-type", "")
        return content_type.split(";", 1)[0].strip().lower()

    @property
    def charset(self) -> str | None:
        return self._response.charset_encoding

    @property
    def is_closed(self) -> bool:
        return self._response.is_closed

    def iter_bytes(self, chunk_size: int | None = None) -> Iterator[bytes]:
        with body_read_errors():
            yield from self._response.iter_bytes(chunk_size)

    def as_file(self) -> io.BufferedReader:
        """Buffered file object reading the body as it arrives."""
        return io.BufferedReader(_ChunkReader(self.iter_bytes()))

    def read(self) -> bytes:
        with body_read_errors():
            return self._response.read()

    def close(self) -> None:
        self._response.close()

    def __enter__(self) -> RawResponse:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"RawResponse(status_code={self.status_code}, media_type={self.media_type!r})"


class ResponseStream:
    """An open response body handed to the caller.

    Usage:
        with executor.execute(get_media, [media_id]) as media:
            with open(media.filename or media_id, "wb") as f:
                for chunk in media.iter_bytes():
                    f.write(chunk)
    """

    def __init__(self, raw: RawResponse) -> None:
        self._raw = raw

    @property
    def media_type(self) -> str:
        return self._raw.media_type

    @property
    def headers(self) -> httpx.Headers:
        return self._raw.headers

    @property
    def content_length(self) -> int | None:
        value = self._raw.headers.get("content-length")
        return int(value) if value and value.isdigit() else None

    @property
    def filename(self) -> str | None:
        """Filename from Content-Disposition, if the upstream sent one."""
        disposition = self._raw.headers.get("content-disposition")
        if not disposition:
            return None
        match = _FILENAME_STAR.search(disposition)
        if match:
            return unquote(match.group(1).strip().strip('"'))
        match = _FILENAME.search(disposition)
        return match.group(1).strip() if match else None

    @property
    def closed(self) -> bool:
        return self._raw.is_closed

    def iter_bytes(self, chunk_size: int | None = 64 * 1024) -> Iterator[bytes]:
        try:
            yield from self._raw.iter_bytes(chunk_size)
        finally:
            self.close()

    def read(self) -> bytes:
        try:
            return self._raw.read()
        finally:
            self.close()

    def close(self) -> None:
        self._raw.close()

    def __iter__(self) -> Iterator[bytes]:
        return self.iter_bytes()

    def __enter__(self) -> ResponseStream:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
