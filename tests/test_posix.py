import os
import socket

import pytest

from fdwarden.posix import (
    INADDR_LOOPBACK,
    INVALID_HANDLE,
    Fd,
    Pipe,
    bind,
    bind_to_any_address,
    listen,
    native_handle,
    promise_to_never_use_select,
    set_non_blocking,
    set_reuse_port,
)


def _is_open(handle):
    try:
        os.fstat(handle)
    except OSError:
        return False
    return True


@pytest.fixture
def tcp():
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    yield s
    s.close()


def test_default_fd_is_invalid():
    fd = Fd()
    assert not fd
    assert fd.fileno() == INVALID_HANDLE


def test_release_gives_up_ownership():
    r, w = os.pipe()
    fd = Fd(r)
    assert fd
    assert fd.release() == r
    assert not fd
    del fd
    assert _is_open(r)
    os.close(r)
    os.close(w)


def test_close_closes_descriptor():
    r, w = os.pipe()
    fd = Fd(r)
    fd.close()
    assert not fd
    assert not _is_open(r)
    os.close(w)


def test_context_manager_closes():
    r, w = os.pipe()
    with Fd(w) as fd:
        assert fd.fileno() == w
    assert not _is_open(w)
    os.close(r)


def test_pipe_holds_both_ends():
    r, w = os.pipe()
    pipe = Pipe(read=Fd(r), write=Fd(w))
    assert pipe.read.fileno() == r
    assert pipe.write.fileno() == w
    pipe.read.close()
    pipe.write.close()
    assert not _is_open(r)


def test_native_handle(tcp):
    assert native_handle(7) == 7
    assert native_handle(tcp) == tcp.fileno()
    fd = Fd()
    assert native_handle(fd) == INVALID_HANDLE
    with pytest.raises(TypeError):
        native_handle("socket")


def test_bind_and_listen_accepts_connections(tcp):
    bind(tcp, INADDR_LOOPBACK, 0)
    host, port = tcp.getsockname()
    assert host == "127.0.0.1"
    assert port > 0
    listen(tcp.fileno(), 8)
    with socket.create_connection((host, port), timeout=2) as client:
        conn, _ = tcp.accept()
        conn.close()
        assert client.getpeername()[1] == port


def test_bind_to_any_address(tcp):
    bind_to_any_address(tcp, 0)
    assert tcp.getsockname()[0] == "0.0.0.0"


def test_bind_twice_raises(tcp):
    bind(tcp, INADDR_LOOPBACK, 0)
    with pytest.raises(OSError) as info:
        bind(tcp, INADDR_LOOPBACK, 0)
    assert info.value.strerror == "Binding server socket"


def test_bind_rejects_out_of_range_values(tcp):
    with pytest.raises(ValueError):
        bind(tcp, INADDR_LOOPBACK, 70000)
    with pytest.raises(ValueError):
        bind(tcp, -1, 0)


def test_listen_on_non_socket_raises():
    r, w = os.pipe()
    try:
        with pytest.raises(OSError) as info:
            listen(r, 1)
        assert info.value.strerror == "listen error"
    finally:
        os.close(r)
        os.close(w)


def test_set_non_blocking_on_pipe():
    r, w = os.pipe()
    with Fd(r) as rd, Fd(w):
        set_non_blocking(rd)
        assert os.get_blocking(r) is False
        with pytest.raises(BlockingIOError):
            os.read(r, 1)


def test_set_reuse_port(tcp):
    set_reuse_port(tcp.fileno())
    flag = getattr(socket, "SO_REUSEPORT", socket.SO_REUSEADDR)
    assert tcp.getsockopt(socket.SOL_SOCKET, flag) != 0
    assert tcp.fileno() >= 0


def test_promise_to_never_use_select_raises_soft_limit():
    import resource

    old, new = promise_to_never_use_select()
    soft, hard = resource.getrlimit(resource.RLIMIT_NOFILE)
    assert new == hard
    assert soft == new
    again_old, again_new = promise_to_never_use_select()
    assert again_old == again_new == new
    assert old == new or old < new