import errno

import pytest

from fdwarden.errors import Outcome, Timeout


def test_timeout_is_an_os_timeout_error():
    exc = Timeout("IOP timed out")
    assert isinstance(exc, TimeoutError)
    assert exc.errno == Timeout.error
    assert exc.strerror == "IOP timed out"


def test_outcome_with_result_returns_it():
    outcome = Outcome(result=6)
    assert bool(outcome) is True
    assert outcome.value() == 6


def test_outcome_with_none_result_is_void_success():
    outcome = Outcome(result=None)
    assert outcome.has_result
    assert outcome.value() is None


def test_empty_outcome_is_a_logic_error():
    outcome = Outcome()
    assert bool(outcome) is True
    with pytest.raises(RuntimeError, match="Optional in outcome was empty"):
        outcome.value()


def test_error_outcome_raises_system_error():
    outcome = Outcome(error=errno.ECONNREFUSED, message="connect")
    assert bool(outcome) is False
    with pytest.raises(OSError) as info:
        outcome.value()
    assert info.value.errno == errno.ECONNREFUSED
    assert info.value.strerror == "connect"
    assert not isinstance(info.value, Timeout)


def test_timeout_error_outcome_raises_timeout():
    outcome = Outcome(error=Timeout.error, message="IOP timed out")
    assert bool(outcome) is False
    with pytest.raises(Timeout) as info:
        outcome.value()
    assert info.value.strerror == "IOP timed out"


def test_error_wins_over_result():
    outcome = Outcome(result=3, error=errno.EPIPE, message="write")
    with pytest.raises(OSError) as info:
        outcome.value()
    assert info.value.errno == errno.EPIPE


def test_throw_exception_raises_recorded_error():
    outcome = Outcome(error=errno.EBADF, message="read")
    with pytest.raises(OSError) as info:
        outcome.throw_exception()
    assert info.value.errno == errno.EBADF