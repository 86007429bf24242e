"""Thin, exception-raising helpers around POSIX style socket descriptors."""

from __future__ import annotations

import operator
import os
import socket
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator

try:
    import resource
except ImportError:  # pragma: no cover - not available on every platform
    resource = None  # type: ignore[assignment]

INVALID_HANDLE = -1
INADDR_ANY: int = socket.INADDR_ANY
INADDR_LOOPBACK: int = socket.INADDR_LOOPBACK


def _close_handle(handle: int) -> None:
    if handle == INVALID_HANDLE:
        return
    try:
        if os.name == "nt":
            socket.socket(fileno=handle).close()
        else:
            os.close(handle)
    except OSError:
        pass


class Fd:
    """Owns a file descriptor and closes it when no longer needed."""

    def __init__(self, handle: int = INVALID_HANDLE) -> None:
        self._handle = operator.index(handle)

    def __repr__(self) -> str:
        return f"Fd({self._handle})"

    def __bool__(self) -> bool:
        """True if the descriptor looks valid."""
        return self._handle != INVALID_HANDLE

    def fileno(self) -> int:
        """The descriptor number, without giving up ownership."""
        return self._handle

    def release(self) -> int:
        """Give up ownership and return the descriptor."""
        handle, self._handle = self._handle, INVALID_HANDLE
        return handle

    def close(self) -> None:
        """Close the descriptor with a blocking close."""
        _close_handle(self.release())

    def __enter__(self) -> Fd:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def __del__(self) -> None:
        if getattr(self, "_handle", INVALID_HANDLE) != INVALID_HANDLE:
            self.close()


@dataclass
class Pipe:
    """The two ends of a pipe."""

    read: Fd
    write: Fd


def native_handle(sock: Any) -> int:
    """Return the descriptor number behind an int, Fd or socket-like object."""
    if isinstance(sock, int):
        return sock
    fileno = getattr(sock, "fileno", None)
    if fileno is None:
        raise TypeError(f"cannot get a descriptor from {type(sock).__name__}")
    return fileno()


@contextmanager
def _socket_for(sock: Any) -> Iterator[socket.socket]:
    if isinstance(sock, socket.socket):
        yield sock
        return
    wrapped = socket.socket(fileno=native_handle(sock))
    try:
        yield wrapped
    finally:
        wrapped.detach()


def promise_to_never_use_select() -> tuple[int, int]:
    """Raise the open-file limit to its maximum; return the old and new limits."""
    if resource is None:
        return (0, 0)
    try:
        soft, hard = resource.getrlimit(resource.RLIMIT_NOFILE)
    except OSError as exc:
        raise OSError(exc.errno, "getrlimit RLIMIT_NOFILE error") from exc

    def _as_number(limit: int) -> float:
        return float("inf") if limit == resource.RLIM_INFINITY else limit

    if _as_number(soft) < _as_number(hard):
        try:
            resource.setrlimit(resource.RLIMIT_NOFILE, (hard, hard))
        except OSError as exc:
            raise OSError(exc.errno, "setrlimit RLIMIT_NOFILE error") from exc
        except ValueError as exc:
            import errno

            raise OSError(errno.EINVAL, "setrlimit RLIMIT_NOFILE error") from exc
        return (soft, hard)
    return (soft, hard)


def listen(sock: Any, backlog: int) -> None:
    """Set the listen queue length for the socket."""
    try:
        with _socket_for(sock) as s:
            s.listen(backlog)
    except OSError as exc:
        raise OSError(exc.errno, "listen error") from exc


def set_non_blocking(sock: Any) -> None:
    """Put a descriptor into non-blocking mode."""
    try:
        if os.name == "nt":
            with _socket_for(sock) as s:
                s.setblocking(False)
        else:
            os.set_blocking(native_handle(sock), False)
    except OSError as exc:
        raise OSError(exc.errno, "fcntl F_SETFL error") from exc


def set_reuse_port(sock: Any) -> None:
    """Allow the socket's port to be reused."""
    flag = getattr(socket, "SO_REUSEPORT", socket.SO_REUSEADDR)
    try:
        with _socket_for(sock) as s:
            s.setsockopt(socket.SOL_SOCKET, flag, 1)
    except OSError as exc:
        raise OSError(exc.errno, "setsockopt SO_REUSEPORT failed") from exc


def bind(sock: Any, addr: int, port: int) -> None:
    """Bind an IPv4 socket to a host-order address and a port."""
    if not 0 <= addr <= 0xFFFFFFFF:
        raise ValueError(f"IPv4 address out of range: {addr}")
    if not 0 <= port <= 0xFFFF:
        raise ValueError(f"port out of range: {port}")
    host = socket.inet_ntoa(addr.to_bytes(4, "big"))
    try:
        with _socket_for(sock) as s:
            s.bind((host, port))
    except OSError as exc:
        raise OSError(exc.errno, "Binding server socket") from exc


def bind_to_any_address(sock: Any, port: int) -> None:
    """Bind an IPv4 socket to every local address on the given port."""
    bind(sock, INADDR_ANY, port)