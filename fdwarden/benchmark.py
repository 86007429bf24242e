"""A tiny HTTP server that answers every request with a fixed response."""

from __future__ import annotations

import argparse
import functools
import os
import socket
import sys
from typing import Any

from .poll_warden import PollWarden
from .posix import (
    Fd,
    bind_to_any_address,
    listen,
    promise_to_never_use_select,
    set_reuse_port,
)
from .streams import ReadBuffer, accept, read_until_lf_strip_cr, write_all
from .warden import Starter, Warden

PORT = 4040
BACKLOG = 64
BIG_BODY_SIZE = 10 << 10
_PREFIX = b"HTTP/1.0 200 OK\r\nContent-Length: "


def short_text() -> bytes:
    """A minimal response carrying a short text body."""
    return b"HTTP/1.0 200 OK\r\nContent-Length: 3\r\n\r\nOK\n"


@functools.lru_cache(maxsize=None)
def big_octets() -> bytes:
    """A response carrying a body of random bytes, made once per process."""
    body = os.urandom(BIG_BODY_SIZE)
    return _PREFIX + str(len(body)).encode() + b"\r\n\r\n" + body


async def http_request(warden: Warden, fd: Any, response: bytes) -> None:
    """Read one request with its headers, send the response, then close."""
    buffer = ReadBuffer(2 << 10)
    await read_until_lf_strip_cr(warden, fd, buffer)
    while await read_until_lf_strip_cr(warden, fd, buffer):
        pass
    await write_all(warden, fd, response)
    await warden.close(fd)


async def accept_loop(warden: Warden, sock: Any) -> None:
    """Serve every incoming connection with the large response."""
    connections = Starter()
    async for handle in accept(warden, sock):
        connections.post(http_request, warden, Fd(handle), big_octets())
        connections.garbage_collect_completed()


async def _co_main(warden: Warden, port: int) -> int:
    fd = warden.create_socket(socket.AF_INET, socket.SOCK_STREAM, 0)
    set_reuse_port(fd)
    bind_to_any_address(fd, port)
    listen(fd, BACKLOG)
    await accept_loop(warden, fd)
    return 0


def main(argv: list[str] | None = None) -> int:
    """Run the web server until it fails; return the exit status."""
    parser = argparse.ArgumentParser(
        description="Answer HTTP requests with a fixed response."
    )
    parser.add_argument("--port", type=int, default=PORT, help="port to listen on")
    args = parser.parse_args(argv)
    try:
        print("Starting web server for current directory", flush=True)
        promise_to_never_use_select()
        return PollWarden().run(_co_main, args.port)
    except Exception as exc:
        print(f"Caught an exception: {exc}", file=sys.stderr)
        return -1


if __name__ == "__main__":
    raise SystemExit(main())