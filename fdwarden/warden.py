"""The warden: drives IO coroutines and hands out awaitable IO operations."""

from __future__ import annotations

import os
import socket
from abc import ABC, abstractmethod
from collections.abc import Callable, Generator
from datetime import timedelta
from typing import Any

from .errors import Outcome
from .posix import Fd, Pipe, native_handle

Resume = Callable[[], None]


def _seconds(value: Any) -> float | None:
    """Normalise a duration given as seconds or a timedelta."""
    if value is None:
        return None
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


class Completion(ABC):
    """Tracks one IO operation from submission until its awaiter resumes.

    ``await_suspend`` is handed the callable that resumes the awaiting task.
    It returns True when the outcome is already known and the task should
    carry on at once, or False when the completion will call the handle
    later (through ``resume_awaiter``).
    """

    def __init__(self, *, returns_value: bool = True) -> None:
        self.handle: Resume | None = None
        self.outcome = Outcome() if returns_value else Outcome(result=None)

    @abstractmethod
    def await_suspend(self, handle: Resume) -> bool:
        """Start the operation; return True to resume the awaiter now."""

    def cancel(self) -> None:
        """Withdraw the operation because nobody waits for it any more."""

    def succeed(self, value: Any = None) -> None:
        """Record a successful result."""
        self.outcome = Outcome(result=value)

    def fail(self, error: int, message: str) -> None:
        """Record an error code and message."""
        self.outcome = Outcome(error=error, message=message)

    def resume_awaiter(self) -> None:
        """Resume the task waiting on this completion, once."""
        handle, self.handle = self.handle, None
        if handle is not None:
            handle()


class Iop:
    """The awaitable returned by every IO operation of a warden."""

    def __init__(self, completion: Completion) -> None:
        self.completion = completion
        self._awaited = False

    def _suspend(self) -> Generator[Completion, None, Outcome]:
        if self._awaited:
            raise RuntimeError("IOP has already been awaited")
        self._awaited = True
        completion = self.completion
        try:
            yield completion
        except GeneratorExit:
            completion.cancel()
            raise
        return completion.outcome

    def __await__(self) -> Generator[Any, None, Any]:
        outcome = yield from self._suspend()
        return outcome.value()


class _Ec:
    def __init__(self, iop: Iop) -> None:
        self._iop = iop

    def __await__(self) -> Generator[Any, None, Outcome]:
        return (yield from self._iop._suspend())


def ec(iop: Iop) -> _Ec:
    """Wrap an IOP so that awaiting it gives its Outcome instead of raising."""
    if not isinstance(iop, Iop):
        raise TypeError(f"expected an Iop, not {type(iop).__name__}")
    return _Ec(iop)


class _Join:
    def __init__(self, task: Task) -> None:
        self.task = task
        self.handle: Resume | None = None

    def await_suspend(self, handle: Resume) -> bool:
        if self.task.done():
            return True
        self.handle = handle
        self.task._waiters.append(handle)
        return False

    def withdraw(self) -> None:
        if self.handle is not None and self.handle in self.task._waiters:
            self.task._waiters.remove(self.handle)
        self.handle = None


class Task:
    """Drives a coroutine that awaits warden IO operations."""

    def __init__(self, coro: Any) -> None:
        if not all(hasattr(coro, name) for name in ("send", "throw", "close")):
            raise TypeError(f"expected a coroutine, not {type(coro).__name__}")
        self._coro = coro
        self._started = False
        self._running = False
        self._again = False
        self._done = False
        self._value: Any = None
        self._exception: BaseException | None = None
        self._waiters: list[Resume] = []

    def __repr__(self) -> str:
        state = "done" if self._done else "running" if self._started else "new"
        return f"<Task {state}>"

    def done(self) -> bool:
        """True once the coroutine has finished or been cancelled."""
        return self._done

    def result(self) -> Any:
        """Return the coroutine's value, or raise what it raised."""
        if not self._done:
            raise RuntimeError("Task has not completed")
        if self._exception is not None:
            raise self._exception
        return self._value

    def close(self) -> None:
        """Cancel the task, withdrawing any IO operation it waits on."""
        if self._done:
            return
        if self._running:
            raise RuntimeError("cannot cancel a task while it is running")
        self._coro.close()
        self._finish(None, RuntimeError("Task was cancelled"))

    def _start(self) -> None:
        if not self._started:
            self._started = True
            self._resume()

    def _finish(self, value: Any, exception: BaseException | None) -> None:
        self._done = True
        self._value = value
        self._exception = exception
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            waiter()

    def _resume(self) -> None:
        if self._done:
            return
        if self._running:
            self._again = True
            return
        self._running = True
        pending: BaseException | None = None
        try:
            while True:
                try:
                    if pending is None:
                        awaited = self._coro.send(None)
                    else:
                        exc, pending = pending, None
                        awaited = self._coro.throw(exc)
                except StopIteration as stop:
                    self._running = False
                    self._finish(stop.value, None)
                    return
                except Exception as exc:
                    self._running = False
                    self._finish(None, exc)
                    return
                suspend = getattr(awaited, "await_suspend", None)
                if suspend is None:
                    pending = TypeError(
                        f"cannot await {awaited!r} inside a warden task"
                    )
                    continue
                try:
                    if suspend(self._resume):
                        continue
                except Exception as exc:
                    pending = exc
                    continue
                if self._again:
                    self._again = False
                    continue
                return
        finally:
            self._running = False
            self._again = False

    def __await__(self) -> Generator[Any, None, Any]:
        self._start()
        if not self._done:
            join = _Join(self)
            try:
                yield join
            except GeneratorExit:
                join.withdraw()
                raise
        return self.result()


class Starter:
    """Starts tasks straight away and keeps them until they are collected."""

    def __init__(self) -> None:
        self._tasks: list[Task] = []

    def __len__(self) -> int:
        return len(self._tasks)

    def post(self, func: Callable[..., Any], *args: Any) -> Task:
        """Call ``func(*args)`` and start the coroutine it returns."""
        task = Task(func(*args))
        self._tasks.append(task)
        task._start()
        return task

    def garbage_collect_completed(self) -> int:
        """Forget the tasks that have finished; return how many there were."""
        before = len(self._tasks)
        self._tasks = [task for task in self._tasks if not task.done()]
        return before - len(self._tasks)

    def close(self) -> None:
        """Cancel every task still held."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.close()

    def __enter__(self) -> Starter:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class Eager:
    """Holds a single task that starts as soon as it is posted."""

    def __init__(self) -> None:
        self._task: Task | None = None

    def post(self, func: Callable[..., Any], *args: Any) -> Task:
        """Call ``func(*args)`` and start it, cancelling any earlier task."""
        self.close()
        task = Task(func(*args))
        self._task = task
        task._start()
        return task

    def release(self) -> Task:
        """Hand over the task; it is no longer cancelled by this holder."""
        if self._task is None:
            raise RuntimeError("No task has been posted")
        task, self._task = self._task, None
        return task

    def close(self) -> None:
        """Cancel the held task, if any."""
        task, self._task = self._task, None
        if task is not None:
            task.close()

    def __enter__(self) -> Eager:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


def _writable_view(buffer: Any) -> memoryview:
    view = memoryview(buffer)
    if view.readonly:
        raise TypeError("read buffer must be writable")
    return view.cast("B")


class Warden(ABC):
    """Runs coroutines and issues the IO operations they await."""

    def run(self, func: Callable[..., Any], *args: Any) -> Any:
        """Run ``func(self, *args)`` to completion and return its value."""
        task = Task(func(self, *args))
        try:
            task._start()
            self._run_until(task)
        except BaseException:
            task.close()
            raise
        return task.result()

    @abstractmethod
    def run_batch(self) -> None:
        """Process ready IO once and resume ready tasks, without waiting."""

    # File descriptors

    def close(self, fd: Any) -> Iop:
        """Close a descriptor; an Fd gives up ownership of it."""
        handle = fd.release() if isinstance(fd, Fd) else native_handle(fd)
        return self._do_close(handle)

    # Time management

    def sleep(self, seconds: Any) -> Iop:
        """Suspend the awaiting task for the given duration."""
        return self._do_sleep(_seconds(seconds))

    # Reading and writing

    def read_some(self, fd: Any, buffer: Any, timeout: Any = None) -> Iop:
        """Read into ``buffer``; the IOP gives the number of bytes read."""
        return self._do_read_some(
            native_handle(fd), _writable_view(buffer), _seconds(timeout)
        )

    def write_some(self, fd: Any, data: Any, timeout: Any = None) -> Iop:
        """Write from ``data``; the IOP gives the number of bytes written."""
        return self._do_write_some(
            native_handle(fd), memoryview(data).cast("B"), _seconds(timeout)
        )

    # Sockets

    def create_socket(self, domain: int, sock_type: int, protocol: int = 0) -> Fd:
        """Create a socket set up as this warden needs it."""
        try:
            sock = socket.socket(domain, sock_type, protocol)
        except OSError as exc:
            raise OSError(exc.errno, "Error creating socket") from exc
        fd = Fd(sock.detach())
        self._do_prepare_socket(fd.fileno())
        return fd

    def create_tcp_socket(self) -> Fd:
        """Create an IPv4 TCP socket."""
        return self.create_socket(
            socket.AF_INET, socket.SOCK_STREAM, socket.IPPROTO_TCP
        )

    def create_pipe(self) -> Pipe:
        """Create a non-blocking pipe, emulated by a socket pair if needed."""
        try:
            if hasattr(os, "pipe2"):
                read, write = os.pipe2(os.O_NONBLOCK)
            elif os.name == "nt":
                left, right = socket.socketpair()
                left.setblocking(False)
                right.setblocking(False)
                return Pipe(Fd(left.detach()), Fd(right.detach()))
            else:
                read, write = os.pipe()
                os.set_blocking(read, False)
                os.set_blocking(write, False)
        except OSError as exc:
            raise OSError(exc.errno, "Creating pipe") from exc
        return Pipe(Fd(read), Fd(write))

    def accept(self, fd: Any, timeout: Any = None) -> Iop:
        """Accept a connection; the IOP gives the new descriptor."""
        return self._do_accept(native_handle(fd), _seconds(timeout))

    def connect(self, fd: Any, address: Any, timeout: Any = None) -> Iop:
        """Connect a socket to ``address``."""
        return self._do_connect(native_handle(fd), address, _seconds(timeout))

    # Readiness

    def read_ready(self, fd: Any, timeout: Any = None) -> Iop:
        """Wait until the descriptor can be read."""
        return self._do_read_ready(native_handle(fd), _seconds(timeout))

    def write_ready(self, fd: Any, timeout: Any = None) -> Iop:
        """Wait until the descriptor can be written."""
        return self._do_write_ready(native_handle(fd), _seconds(timeout))

    # Hooks for concrete wardens

    @abstractmethod
    def _run_until(self, task: Task) -> None:
        """Process IO until the already started task is done."""

    @abstractmethod
    def _do_close(self, fd: int) -> Iop: ...

    @abstractmethod
    def _do_sleep(self, seconds: float) -> Iop: ...

    @abstractmethod
    def _do_read_some(
        self, fd: int, buffer: memoryview, timeout: float | None
    ) -> Iop: ...

    @abstractmethod
    def _do_write_some(
        self, fd: int, data: memoryview, timeout: float | None
    ) -> Iop: ...

    def _do_prepare_socket(self, fd: int) -> None:
        """Adjust a freshly created socket; nothing by default."""

    @abstractmethod
    def _do_accept(self, fd: int, timeout: float | None) -> Iop: ...

    @abstractmethod
    def _do_connect(self, fd: int, address: Any, timeout: float | None) -> Iop: ...

    @abstractmethod
    def _do_read_ready(self, fd: int, timeout: float | None) -> Iop: ...

    @abstractmethod
    def _do_write_ready(self, fd: int, timeout: float | None) -> Iop: ...