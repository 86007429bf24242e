# fdwarden

`fdwarden` runs coroutines that wait on sockets, pipes and timers. A *warden*
owns the event loop. You give it a coroutine function, and it drives that
coroutine and every I/O operation the coroutine awaits until it finishes.

The package ships one event loop, `fdwarden.poll_warden.PollWarden`. It is
built on `select.poll`, and falls back to `select.select` where `poll` is not
available. When a `PollWarden` is created in the main thread, it sets SIGPIPE
to be ignored. A write to a closed peer then raises an error instead of ending
the process.

Durations and timeouts are given in seconds, either as a number or as a
`datetime.timedelta`. `None` means no timeout. When an operation runs out of
time it raises `fdwarden.errors.Timeout`, which is a subclass of
`TimeoutError`.

## Installing

```
pip install fdwarden
```

Python 3.10 or later is needed. The package uses only the standard library.

## A first program

```python
from fdwarden.poll_warden import PollWarden
from fdwarden.streams import read_exactly, write_all


async def main(warden):
    pipe = warden.create_pipe()
    await write_all(warden, pipe.write, b"\x01\x02\x03\x04\x05\x06", 0.02)
    buffer = bytearray(6)
    count = await read_exactly(warden, pipe.read, buffer, 0.02)
    return count, bytes(buffer)


print(PollWarden().run(main))
```

`Warden.run(func, *args)` calls `func(warden, *args)`. It runs the loop until
that coroutine returns, then gives back what it returned. If the coroutine
raises, `run` raises the same exception. If the coroutine is still waiting
while no I/O and no timer is pending, it can never finish, so `run` raises
`RuntimeError`.

## What a warden offers

`fdwarden.warden.Warden` has these awaitable operations. Each returns an `Iop`:

- `sleep(seconds)`
- `read_some(fd, buffer, timeout=None)` gives the number of bytes read into a
  writable buffer.
- `write_some(fd, data, timeout=None)` gives the number of bytes written.
- `accept(fd, timeout=None)` gives the descriptor of the new connection. If the
  listening socket has been closed, it gives `-errno.EBADF` instead.
- `connect(fd, address, timeout=None)`
- `read_ready(fd, timeout=None)` and `write_ready(fd, timeout=None)`
- `close(fd)`. When `fd` is an `Fd`, the `Fd` gives up ownership of the
  descriptor.

A descriptor can be an `int`, an `Fd`, or any object with a `fileno()` method.

A warden also creates descriptors that are set up for its loop:

- `create_socket(domain, sock_type, protocol=0)` returns an `Fd`. A
  `PollWarden` makes the socket non-blocking.
- `create_tcp_socket()` creates an IPv4 TCP socket.
- `create_pipe()` returns a `Pipe` holding non-blocking `read` and `write` ends.

`run_batch()` does one round of work without waiting. It fires any expired
timeouts and resumes the operations whose descriptors are ready.

### Running several coroutines

`fdwarden.warden.Task` drives one coroutine. `done()` reports whether it has
finished, and `result()` returns its value or raises what it raised. A task can
also be awaited from another coroutine.

- `Starter.post(func, *args)` starts `func(*args)` at once and keeps the
  resulting task. `garbage_collect_completed()` drops the finished tasks and
  returns how many it dropped. `close()` cancels the tasks that are still held;
  leaving a `with Starter()` block does the same.
- `Eager.post(func, *args)` holds a single started task. `release()` hands it
  over as a `Task`. `close()`, or leaving a `with` block, cancels a task that
  has not been released.

When a task is cancelled, any I/O operation or timer it was waiting on is
withdrawn.

## Errors as values

An operation normally raises when it fails. Wrap it in `fdwarden.warden.ec`
to get an `fdwarden.errors.Outcome` back instead:

```python
from fdwarden.errors import Timeout
from fdwarden.warden import ec

outcome = await ec(warden.write_some(fd, data, 0.01))
if not outcome and outcome.error == Timeout.error:
    ...
```

An `Outcome` is false when an error was recorded. `value()` returns the result
or raises the error. `throw_exception()` raises `Timeout` for a timeout and
`OSError` for any other error.

## Descriptors and sockets

`fdwarden.posix.Fd` owns a file descriptor. It closes the descriptor when the
`Fd` is garbage collected, when its `with` block ends, or when `close()` is
called. `release()` gives up ownership and returns the number. `fileno()`
returns the number and keeps ownership. An `Fd` is false once it no longer
holds a descriptor.

The same module has these helpers for setting up sockets. Each raises `OSError`
on failure.

- `listen(sock, backlog)`
- `set_non_blocking(sock)`
- `set_reuse_port(sock)` sets `SO_REUSEPORT`, or `SO_REUSEADDR` where that is
  not available.
- `bind(sock, addr, port)` binds an IPv4 address, given as a host-order
  integer. `bind_to_any_address(sock, port)` binds every local address.
- `native_handle(sock)` returns the descriptor number behind an object.
- `promise_to_never_use_select()` raises the soft limit on open files to the
  hard limit. It returns the limits as they were before the call.

## Streams

`fdwarden.streams` builds on the warden's operations:

- `accept(warden, sock)` is an async iterator over the descriptors of incoming
  connections. It ends when the listening socket is closed.
- `connect`, `read_some` and `write_some` are free-standing forms of the
  warden's operations. `read_some` and `write_some` also accept a connection
  object, such as `Tls`, that has methods of its own with those names.
- `read_exactly(warden, sock, buffer, timeout=None)` fills the whole buffer.
  It returns fewer bytes only if the stream ends first.
- `write_all(warden, sock, data, timeout=None)` writes all of `data` (bytes or
  str). It returns fewer bytes only if a write accepts nothing.
- `ReadBuffer(size=2048)` is a fixed-size buffer that is filled by
  `do_read_some` and emptied by `consume`.
- `read_until_lf_strip_cr(warden, sock, buffer, timeout=None)` reads one line
  into a `ReadBuffer` and returns it without the LF or a trailing CR. It raises
  `EOFError` if the stream ends mid-line. It raises `BufferError` if the line
  does not fit in the buffer.
- `write_some_now(sock, data)` writes synchronously. It takes as much as the
  descriptor accepts at that moment.

## TLS

`fdwarden.tls.Tls.connect(warden, sni_hostname, address, timeout=None)` opens
an IPv4 TCP connection and completes a TLS handshake over it, using
`sni_hostname` for SNI. The `Tls` object it returns has
`read_some(warden, buffer, timeout=None)` and
`write_some(warden, data, timeout=None)`, which run through the same warden.

The connection does not verify the server's certificate or hostname.

## HTTP benchmark server

```
fdwarden-benchmark [--port PORT]
```

This command starts a small HTTP/1.0 server on port 4040 by default. For each
connection it reads the request line and the headers, answers with 10 KiB of
random bytes, and closes the connection. The random body is generated once per
process. The server runs until it fails. It then prints the error and exits
with status -1.

## What the package does not do

- `PollWarden` is the only event loop. There is no completion-queue based
  loop.
- The benchmark server does not look at the request. It serves no files, and
  it sends the same response to every request.
- There is no TLS server side, and TLS certificates are not checked.