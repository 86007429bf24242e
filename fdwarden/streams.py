"""Free-standing helpers for reading, writing, accepting and connecting."""

from __future__ import annotations

import errno
import os
import socket
from collections.abc import AsyncIterator
from typing import Any

from .posix import native_handle
from .warden import Iop, Warden

DEFAULT_READ_BUFFER_SIZE = 2 << 10


def _readable_view(data: Any) -> memoryview:
    if isinstance(data, str):
        data = data.encode()
    return memoryview(data).cast("B")


def _writable_view(buffer: Any) -> memoryview:
    view = memoryview(buffer)
    if view.readonly:
        raise TypeError("read buffer must be writable")
    return view.cast("B")


async def accept(warden: Warden, sock: Any) -> AsyncIterator[int]:
    """Yield descriptors for incoming connections until the listener closes."""
    handle = native_handle(sock)
    while True:
        result = await warden.accept(handle)
        if result >= 0:
            yield result
        elif result == -errno.EBADF:
            return
        else:
            raise OSError(-result, "accept")


def connect(warden: Warden, sock: Any, address: Any, timeout: Any = None) -> Iop:
    """Connect ``sock`` to ``address`` through the warden."""
    return warden.connect(sock, address, timeout)


def read_some(warden: Warden, sock: Any, buffer: Any, timeout: Any = None) -> Any:
    """Read some bytes into ``buffer``; awaiting gives the count read.

    Connection objects that provide their own ``read_some`` are used directly.
    """
    reader = getattr(sock, "read_some", None)
    if callable(reader):
        return reader(warden, buffer, timeout)
    return warden.read_some(sock, buffer, timeout)


def write_some(warden: Warden, sock: Any, data: Any, timeout: Any = None) -> Any:
    """Write some bytes from ``data``; awaiting gives the count written.

    Connection objects that provide their own ``write_some`` are used directly.
    """
    writer = getattr(sock, "write_some", None)
    if callable(writer):
        return writer(warden, data, timeout)
    return warden.write_some(sock, data, timeout)


def write_some_now(sock: Any, data: Any) -> int:
    """Write as much of ``data`` as the descriptor takes right now."""
    view = _readable_view(data)
    handle = native_handle(sock)
    try:
        if os.name == "nt":
            wrapped = socket.socket(fileno=handle)
            try:
                return wrapped.send(view)
            finally:
                wrapped.detach()
        return os.write(handle, view)
    except OSError as exc:
        raise OSError(exc.errno, f"Writing to socket\n{len(view)}") from exc


class ReadBuffer:
    """A fixed-size buffer that data is read into and consumed from over time."""

    def __init__(self, size: int = DEFAULT_READ_BUFFER_SIZE) -> None:
        if size <= 0:
            raise ValueError(f"read buffer size must be positive, not {size}")
        self._storage = bytearray(size)
        self._start = 0
        self._end = 0

    def __repr__(self) -> str:
        return f"ReadBuffer(pending={len(self)}, capacity={self.capacity})"

    @property
    def capacity(self) -> int:
        """The total size of the buffer."""
        return len(self._storage)

    def __len__(self) -> int:
        return self._end - self._start

    async def do_read_some(
        self, warden: Warden, sock: Any, timeout: Any = None
    ) -> int:
        """Read more data into the free space; return the number of bytes."""
        count = await read_some(warden, sock, self.remaining(), timeout)
        self._end += count
        return count

    def consume(self, count: int) -> bytes:
        """Take ``count`` bytes from the front of the unconsumed data."""
        if not 0 <= count <= len(self):
            raise ValueError(
                f"cannot consume {count} bytes, only {len(self)} are available"
            )
        chunk = bytes(self._storage[self._start : self._start + count])
        if count == len(self):
            self._start = self._end = 0
        else:
            self._start += count
        return chunk

    def not_consumed(self) -> bytes:
        """The data read so far and not yet consumed."""
        return bytes(self._storage[self._start : self._end])

    def remaining(self) -> memoryview:
        """The free space that the next read fills."""
        return memoryview(self._storage)[self._end :]

    def find(self, value: Any) -> int:
        """Offset of ``value`` in the unconsumed data, or -1."""
        if isinstance(value, str):
            value = value.encode()
        position = self._storage.find(value, self._start, self._end)
        return -1 if position < 0 else position - self._start


async def read_exactly(
    warden: Warden, sock: Any, buffer: Any, timeout: Any = None
) -> int:
    """Fill ``buffer``; return the bytes read, fewer only at end of stream."""
    view = _writable_view(buffer)
    done = 0
    while done < len(view):
        count = await read_some(warden, sock, view[done:], timeout)
        if not count:
            return done
        done += count
    return len(view)


async def read_until_lf_strip_cr(
    warden: Warden, sock: Any, buffer: ReadBuffer, timeout: Any = None
) -> bytes:
    """Read one line up to the next LF and drop a trailing CR."""
    while (position := buffer.find(b"\n")) < 0:
        if not len(buffer.remaining()):
            raise BufferError("Line does not fit in the read buffer")
        if not await buffer.do_read_some(warden, sock, timeout):
            raise EOFError("Stream ended before the end of the line")
    line = buffer.consume(position + 1)[:position]
    if line.endswith(b"\r"):
        return line[:-1]
    return line


async def write_all(warden: Warden, sock: Any, data: Any, timeout: Any = None) -> int:
    """Write all of ``data``; return the bytes written, fewer if writes stop."""
    view = _readable_view(data)
    out = view
    while len(out):
        count = await write_some(warden, sock, out, timeout)
        if not count:
            return len(view) - len(out)
        out = out[count:]
    return len(view)