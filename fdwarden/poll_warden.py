"""A warden that multiplexes IO with ``poll`` (or ``select`` where needed)."""

from __future__ import annotations

import bisect
import errno
import itertools
import os
import select
import signal
import socket
import threading
import time
from abc import abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator

from .errors import Timeout
from .posix import set_non_blocking
from .warden import Completion, Iop, Resume, Task, Warden

_POLLIN: int = getattr(select, "POLLIN", 0x001)
_POLLOUT: int = getattr(select, "POLLOUT", 0x004)
_POLLERR: int = getattr(select, "POLLERR", 0x008)
_POLLHUP: int = getattr(select, "POLLHUP", 0x010)
_POLLNVAL: int = getattr(select, "POLLNVAL", 0x020)

_READ_EVENTS = _POLLIN | _POLLERR | _POLLHUP | _POLLNVAL
_WRITE_EVENTS = _POLLOUT | _POLLERR | _POLLHUP | _POLLNVAL

_WOULD_BLOCK = frozenset(
    code
    for code in (
        errno.EAGAIN,
        errno.EWOULDBLOCK,
        getattr(errno, "WSAEWOULDBLOCK", None),
    )
    if code is not None
)
_IN_PROGRESS = _WOULD_BLOCK | {errno.EINPROGRESS, errno.EALREADY}

# A closed listening socket makes accept complete with this value.
ACCEPT_BAD_FD = -errno.EBADF


@contextmanager
def _borrow(fd: int) -> Iterator[socket.socket]:
    """Wrap a descriptor in a socket object without taking ownership."""
    sock = socket.socket(fileno=fd)
    try:
        yield sock
    finally:
        sock.detach()


def _read_into(fd: int, buffer: memoryview) -> int:
    if os.name == "nt":
        with _borrow(fd) as sock:
            return sock.recv_into(buffer)
    return os.readv(fd, [buffer])


def _write_from(fd: int, data: memoryview) -> int:
    if os.name == "nt":
        with _borrow(fd) as sock:
            return sock.send(data)
    return os.write(fd, data)


def _close_descriptor(fd: int) -> None:
    try:
        if os.name == "nt":
            socket.socket(fileno=fd).close()
        else:
            os.close(fd)
    except OSError:
        pass


def _ignore_sigpipe() -> None:
    sigpipe = getattr(signal, "SIGPIPE", None)
    if sigpipe is None:
        return
    if threading.current_thread() is threading.main_thread():
        signal.signal(sigpipe, signal.SIG_IGN)


@dataclass
class _Request:
    reads: list[_PollCompletion] = field(default_factory=list)
    writes: list[_PollCompletion] = field(default_factory=list)


class _PollCompletion(Completion):
    """A completion that is retried whenever its descriptor becomes ready."""

    def __init__(
        self,
        warden: PollWarden,
        timeout: float | None,
        *,
        returns_value: bool = True,
    ) -> None:
        super().__init__(returns_value=returns_value)
        self.warden = warden
        self.timeout = timeout
        self.active = True
        self._timeout_entry: tuple[float, int, _PollCompletion] | None = None

    @abstractmethod
    def try_or_resume(self) -> bool:
        """Attempt the operation; True when the awaiter can be resumed."""

    def cancel_iop(self) -> None:
        """Withdraw any readiness registration."""

    def insert_timeout(self) -> None:
        if self.timeout is not None and self._timeout_entry is None:
            self._timeout_entry = self.warden._add_timeout(self.timeout, self)

    def cancel_timeout(self) -> None:
        entry, self._timeout_entry = self._timeout_entry, None
        if entry is not None:
            self.warden._remove_timeout(entry)

    def finish(self) -> bool:
        self.cancel_timeout()
        return True

    def await_suspend(self, handle: Resume) -> bool:
        self.handle = handle
        self.insert_timeout()
        return self.try_or_resume()

    def iop_timedout(self) -> bool:
        self._timeout_entry = None
        self.cancel_iop()
        self.fail(Timeout.error, "IOP timed out")
        return True

    def cancel(self) -> None:
        self.active = False
        self.cancel_timeout()
        self.cancel_iop()


class _CloseCompletion(_PollCompletion):
    def __init__(self, warden: PollWarden, fd: int) -> None:
        super().__init__(warden, None, returns_value=False)
        self.fd = fd

    def try_or_resume(self) -> bool:
        _close_descriptor(self.fd)
        return self.finish()


class _SleepCompletion(_PollCompletion):
    def __init__(self, warden: PollWarden, seconds: float) -> None:
        super().__init__(warden, seconds, returns_value=False)

    def try_or_resume(self) -> bool:
        return False

    def iop_timedout(self) -> bool:
        self._timeout_entry = None
        return True


class _ReadSomeCompletion(_PollCompletion):
    def __init__(
        self, warden: PollWarden, fd: int, buffer: memoryview, timeout: float | None
    ) -> None:
        super().__init__(warden, timeout)
        self.fd = fd
        self.buffer = buffer

    def cancel_iop(self) -> None:
        self.warden._withdraw(self.fd, self)

    def try_or_resume(self) -> bool:
        try:
            count = _read_into(self.fd, self.buffer)
        except BlockingIOError:
            self.warden._want_read(self.fd, self)
            return False
        except OSError as exc:
            self.fail(exc.errno or errno.EIO, "read")
            return self.finish()
        self.succeed(count)
        return self.finish()


class _WriteSomeCompletion(_PollCompletion):
    def __init__(
        self, warden: PollWarden, fd: int, data: memoryview, timeout: float | None
    ) -> None:
        super().__init__(warden, timeout)
        self.fd = fd
        self.data = data

    def cancel_iop(self) -> None:
        self.warden._withdraw(self.fd, self)

    def try_or_resume(self) -> bool:
        try:
            count = _write_from(self.fd, self.data)
        except BlockingIOError:
            self.warden._want_write(self.fd, self)
            return False
        except OSError as exc:
            self.fail(exc.errno or errno.EIO, "write")
            return self.finish()
        self.succeed(count)
        return self.finish()


class _AcceptCompletion(_PollCompletion):
    def __init__(self, warden: PollWarden, fd: int, timeout: float | None) -> None:
        super().__init__(warden, timeout)
        self.fd = fd

    def cancel_iop(self) -> None:
        self.warden._withdraw(self.fd, self)

    def try_or_resume(self) -> bool:
        try:
            with _borrow(self.fd) as listener:
                connection, _ = listener.accept()
        except BlockingIOError:
            self.warden._want_read(self.fd, self)
            return False
        except OSError as exc:
            if exc.errno == errno.EBADF and os.name != "nt":
                self.succeed(ACCEPT_BAD_FD)
            else:
                self.fail(exc.errno or errno.EIO, "accept")
            return self.finish()
        handle = connection.detach()
        try:
            set_non_blocking(handle)
        except OSError as exc:
            _close_descriptor(handle)
            self.fail(exc.errno or errno.EIO, "accept")
            return self.finish()
        self.succeed(handle)
        return self.finish()


class _ConnectCompletion(_PollCompletion):
    def __init__(
        self, warden: PollWarden, fd: int, address: Any, timeout: float | None
    ) -> None:
        super().__init__(warden, timeout, returns_value=False)
        self.fd = fd
        self.address = address

    def cancel_iop(self) -> None:
        self.warden._withdraw(self.fd, self)

    def await_suspend(self, handle: Resume) -> bool:
        self.handle = handle
        with _borrow(self.fd) as sock:
            error = sock.connect_ex(self.address)
        if error == 0:
            return True
        if error in _IN_PROGRESS:
            self.warden._want_write(self.fd, self)
            self.insert_timeout()
            return False
        self.fail(error, "connect failure in initial call")
        return True

    def try_or_resume(self) -> bool:
        try:
            with _borrow(self.fd) as sock:
                error = sock.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
        except OSError as exc:
            self.fail(exc.errno or errno.EIO, "connect/getsockopt")
            return self.finish()
        if error == 0:
            return self.finish()
        if error in _IN_PROGRESS:
            self.warden._want_write(self.fd, self)
            return False
        self.fail(error, "connect in follow up call")
        return self.finish()


class _ReadReadyCompletion(_PollCompletion):
    def __init__(self, warden: PollWarden, fd: int, timeout: float | None) -> None:
        super().__init__(warden, timeout, returns_value=False)
        self.fd = fd

    def cancel_iop(self) -> None:
        self.warden._withdraw(self.fd, self)

    def await_suspend(self, handle: Resume) -> bool:
        self.handle = handle
        self.warden._want_read(self.fd, self)
        self.insert_timeout()
        return False

    def try_or_resume(self) -> bool:
        return self.finish()


class _WriteReadyCompletion(_PollCompletion):
    def __init__(self, warden: PollWarden, fd: int, timeout: float | None) -> None:
        super().__init__(warden, timeout, returns_value=False)
        self.fd = fd

    def cancel_iop(self) -> None:
        self.warden._withdraw(self.fd, self)

    def await_suspend(self, handle: Resume) -> bool:
        self.handle = handle
        self.warden._want_write(self.fd, self)
        self.insert_timeout()
        return False

    def try_or_resume(self) -> bool:
        return self.finish()


class PollWarden(Warden):
    """A warden that waits for descriptor readiness with ``poll``.

    Creating one turns on ignoring of SIGPIPE, so failed writes report
    errors instead of ending the process.
    """

    def __init__(self) -> None:
        self._requests: dict[int, _Request] = {}
        self._timeouts: list[tuple[float, int, _PollCompletion]] = []
        self._sequence = itertools.count()
        _ignore_sigpipe()

    def run_batch(self) -> None:
        """Expire timeouts and process ready descriptors without waiting."""
        self._clear_timeouts()
        self._do_poll(0)

    # Loop machinery

    def _run_until(self, task: Task) -> None:
        while True:
            timeout = self._clear_timeouts()
            if task.done():
                return
            if timeout < 0 and not self._has_waiters():
                raise RuntimeError("No IO is pending, so the task can never finish")
            self._do_poll(timeout)

    def _has_waiters(self) -> bool:
        return any(req.reads or req.writes for req in self._requests.values())

    def _add_timeout(
        self, seconds: float, completion: _PollCompletion
    ) -> tuple[float, int, _PollCompletion]:
        entry = (time.monotonic() + seconds, next(self._sequence), completion)
        bisect.insort(self._timeouts, entry)
        return entry

    def _remove_timeout(self, entry: tuple[float, int, _PollCompletion]) -> None:
        index = bisect.bisect_left(self._timeouts, entry)
        if index < len(self._timeouts) and self._timeouts[index] is entry:
            del self._timeouts[index]

    def _clear_timeouts(self) -> int:
        """Fire expired timeouts; return milliseconds to the next, or -1."""
        while self._timeouts:
            deadline, _, completion = self._timeouts[0]
            remaining = deadline - time.monotonic()
            if remaining < 0.001:
                del self._timeouts[0]
                if completion.iop_timedout():
                    completion.resume_awaiter()
            else:
                return int(remaining * 1000)
        return -1

    def _want_read(self, fd: int, completion: _PollCompletion) -> None:
        self._requests.setdefault(fd, _Request()).reads.append(completion)

    def _want_write(self, fd: int, completion: _PollCompletion) -> None:
        self._requests.setdefault(fd, _Request()).writes.append(completion)

    def _withdraw(self, fd: int, completion: _PollCompletion) -> None:
        request = self._requests.get(fd)
        if request is not None:
            request.reads = [c for c in request.reads if c is not completion]
            request.writes = [c for c in request.writes if c is not completion]

    def _wait(self, interest: dict[int, int], timeout: int) -> list[tuple[int, int]]:
        if hasattr(select, "poll"):
            poller = select.poll()
            for fd, flags in interest.items():
                poller.register(fd, flags)
            return poller.poll(timeout if timeout >= 0 else None)
        readers = [fd for fd, flags in interest.items() if flags & _POLLIN]
        writers = [fd for fd, flags in interest.items() if flags & _POLLOUT]
        readable, writable, broken = select.select(
            readers,
            writers,
            list(interest),
            None if timeout < 0 else timeout / 1000,
        )
        events: dict[int, int] = {}
        for fd in readable:
            events[fd] = events.get(fd, 0) | _POLLIN
        for fd in writable:
            events[fd] = events.get(fd, 0) | _POLLOUT
        for fd in broken:
            events[fd] = events.get(fd, 0) | _POLLERR
        return list(events.items())

    def _do_poll(self, timeout: int) -> None:
        interest: dict[int, int] = {}
        for fd, request in list(self._requests.items()):
            flags = (_POLLIN if request.reads else 0) | (
                _POLLOUT if request.writes else 0
            )
            if flags:
                interest[fd] = flags
            else:
                del self._requests[fd]
        if not interest:
            if timeout > 0:
                time.sleep(timeout / 1000)
            return
        try:
            ready = self._wait(interest, timeout)
        except OSError as exc:
            raise OSError(exc.errno, "poll") from exc
        continuations: list[_PollCompletion] = []
        for fd, revents in ready:
            request = self._requests.get(fd)
            if request is None:
                continue
            if revents & _READ_EVENTS:
                continuations.extend(request.reads)
                request.reads = []
            if revents & _WRITE_EVENTS:
                continuations.extend(request.writes)
                request.writes = []
        for completion in continuations:
            if completion.active and completion.try_or_resume():
                completion.resume_awaiter()

    # Operations

    def _do_close(self, fd: int) -> Iop:
        return Iop(_CloseCompletion(self, fd))

    def _do_sleep(self, seconds: float) -> Iop:
        return Iop(_SleepCompletion(self, seconds))

    def _do_read_some(
        self, fd: int, buffer: memoryview, timeout: float | None
    ) -> Iop:
        return Iop(_ReadSomeCompletion(self, fd, buffer, timeout))

    def _do_write_some(
        self, fd: int, data: memoryview, timeout: float | None
    ) -> Iop:
        return Iop(_WriteSomeCompletion(self, fd, data, timeout))

    def _do_prepare_socket(self, fd: int) -> None:
        set_non_blocking(fd)

    def _do_accept(self, fd: int, timeout: float | None) -> Iop:
        return Iop(_AcceptCompletion(self, fd, timeout))

    def _do_connect(self, fd: int, address: Any, timeout: float | None) -> Iop:
        return Iop(_ConnectCompletion(self, fd, address, timeout))

    def _do_read_ready(self, fd: int, timeout: float | None) -> Iop:
        return Iop(_ReadReadyCompletion(self, fd, timeout))

    def _do_write_ready(self, fd: int, timeout: float | None) -> Iop:
        return Iop(_WriteReadyCompletion(self, fd, timeout))