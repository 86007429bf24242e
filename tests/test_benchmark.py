import socket

import pytest

from fdwarden.benchmark import accept_loop, big_octets, http_request, main, short_text
from fdwarden.poll_warden import PollWarden
from fdwarden.posix import INADDR_LOOPBACK, Fd, bind, listen
from fdwarden.streams import connect, read_some, write_all
from fdwarden.warden import Eager

REQUEST = b"GET / HTTP/1.0\r\nHost: example.com\r\n\r\n"


async def _read_to_end(ward, sock):
    received = bytearray()
    chunk = bytearray(4096)
    while count := await read_some(ward, sock, chunk, 2.0):
        received += chunk[:count]
    return bytes(received)


async def _wait(ward, task):
    return await task


def _socket_pair():
    left, right = socket.socketpair()
    left.setblocking(False)
    right.setblocking(False)
    return Fd(left.detach()), right


def test_short_text_is_fixed_response():
    assert short_text() == b"HTTP/1.0 200 OK\r\nContent-Length: 3\r\n\r\nOK\n"


def test_big_octets_header_matches_body():
    response = big_octets()
    assert response.startswith(b"HTTP/1.0 200 OK\r\nContent-Length: ")
    head, body = response.split(b"\r\n\r\n", 1)
    length = int(head.rsplit(b": ", 1)[1])
    assert length == len(body)
    assert big_octets() is response


def test_http_request_answers_and_closes():
    ward = PollWarden()
    server_end, client = _socket_pair()

    async def client_body(ward, sock):
        await write_all(ward, sock, REQUEST, 2.0)
        return await _read_to_end(ward, sock)

    holder = Eager()
    holder.post(http_request, ward, server_end, short_text())
    with client:
        assert ward.run(client_body, client) == short_text()
    assert bool(server_end) is False


def test_http_request_fails_when_stream_ends_early():
    ward = PollWarden()
    server_end, client = _socket_pair()
    holder = Eager()
    task = holder.post(http_request, ward, server_end, short_text())
    client.sendall(b"GET")
    client.close()
    with pytest.raises(EOFError):
        ward.run(_wait, holder.release())
    assert task.done() is True


def test_accept_loop_serves_big_response():
    ward = PollWarden()
    listener = ward.create_socket(socket.AF_INET, socket.SOCK_STREAM, 0)
    bind(listener, INADDR_LOOPBACK, 0)
    listen(listener, 8)
    probe = socket.socket(fileno=listener.fileno())
    port = probe.getsockname()[1]
    probe.detach()

    async def client(ward):
        fd = ward.create_socket(socket.AF_INET, socket.SOCK_STREAM, 0)
        with fd:
            await connect(ward, fd, ("127.0.0.1", port), 2.0)
            await write_all(ward, fd, REQUEST, 2.0)
            return await _read_to_end(ward, fd)

    holder = Eager()
    holder.post(accept_loop, ward, listener)
    assert ward.run(client) == big_octets()


def test_main_reports_failure(capsys):
    assert main(["--port", "70000"]) == -1
    captured = capsys.readouterr()
    assert "Starting web server for current directory" in captured.out
    assert "Caught an exception" in captured.err