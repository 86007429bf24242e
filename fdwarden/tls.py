"""TLS secured TCP connections driven by a warden.

The TLS engine works on in-memory buffers. Encrypted bytes are moved between
those buffers and the socket with the warden's own non-blocking IO.
"""

from __future__ import annotations

import socket
import ssl
from collections.abc import Callable
from typing import Any

from .posix import Fd
from .streams import write_all
from .warden import Warden

# A TLS record is at most 16KB, so the transfer buffer is a little bigger.
TRANSFER_BUFFER_SIZE = 17 << 10


def _client_context() -> ssl.SSLContext:
    """A client context that, like a bare TLS method, checks no certificates."""
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


def _writable_view(buffer: Any) -> memoryview:
    view = memoryview(buffer)
    if view.readonly:
        raise TypeError("read buffer must be writable")
    return view.cast("B")


class _Connection:
    """The TLS engine, its memory buffers and the socket they feed."""

    def __init__(self, fd: Fd, sni_hostname: str | None) -> None:
        self.incoming = ssl.MemoryBIO()
        self.outgoing = ssl.MemoryBIO()
        self.engine = _client_context().wrap_bio(
            self.incoming,
            self.outgoing,
            server_side=False,
            server_hostname=sni_hostname or None,
        )
        self.fd = fd
        self.buffer = bytearray(TRANSFER_BUFFER_SIZE)

    async def service(
        self,
        warden: Warden,
        timeout: Any,
        operation: Callable[[ssl.SSLObject], Any],
    ) -> Any:
        """Run ``operation`` until it completes, moving bytes as it asks."""
        while True:
            try:
                result = operation(self.engine)
            except ssl.SSLWantReadError:
                await self._send_pending(warden, timeout)
                if not await self._receive(warden, timeout):
                    return 0
                continue
            except ssl.SSLWantWriteError:
                await self._send_pending(warden, timeout)
                continue
            except ssl.SSLZeroReturnError:
                return 0
            except ssl.SSLError as exc:
                raise RuntimeError(
                    f"Unknown openssl error {exc.reason or exc}"
                ) from exc
            await self._send_pending(warden, timeout)
            return result

    async def _send_pending(self, warden: Warden, timeout: Any) -> None:
        """Write everything the engine has produced to the socket."""
        data = self.outgoing.read()
        if data:
            await write_all(warden, self.fd, data, timeout)

    async def _receive(self, warden: Warden, timeout: Any) -> int:
        """Read from the socket into the engine; zero at end of stream."""
        count = await warden.read_some(self.fd, self.buffer, timeout)
        if count == 0:
            return 0
        written = self.incoming.write(memoryview(self.buffer)[:count])
        if written != count:
            raise RuntimeError("Not all bytes written to BIO")
        return written


class Tls:
    """A TLS secured TCP connection."""

    def __init__(self, connection: _Connection | None = None) -> None:
        self._connection = connection

    def __repr__(self) -> str:
        state = "connected" if self._connection is not None else "unconnected"
        return f"<Tls {state}>"

    def _require(self) -> _Connection:
        if self._connection is None:
            raise RuntimeError("TLS connection is not established")
        return self._connection

    @staticmethod
    async def connect(
        warden: Warden, sni_hostname: str, address: Any, timeout: Any = None
    ) -> Tls:
        """Connect to a TLS server over TCP and complete the handshake."""
        fd = warden.create_socket(socket.AF_INET, socket.SOCK_STREAM, 0)
        await warden.connect(fd, address, timeout)
        connection = _Connection(fd, sni_hostname)
        await connection.service(warden, timeout, lambda engine: engine.do_handshake())
        return Tls(connection)

    async def read_some(self, warden: Warden, buffer: Any, timeout: Any = None) -> int:
        """Read decrypted bytes into ``buffer``; zero at end of stream."""
        connection = self._require()
        view = _writable_view(buffer)
        result = await connection.service(
            warden, timeout, lambda engine: engine.read(len(view), view)
        )
        if result < 0:
            raise RuntimeError(f"Error performing SSL_read: {result}")
        return result

    async def write_some(self, warden: Warden, data: Any, timeout: Any = None) -> int:
        """Encrypt and send bytes from ``data``; return the count taken."""
        connection = self._require()
        if isinstance(data, str):
            data = data.encode()
        view = memoryview(data).cast("B")
        result = await connection.service(
            warden, timeout, lambda engine: engine.write(view)
        )
        if not result or result <= 0:
            raise RuntimeError("Error performing SSL_write")
        return result