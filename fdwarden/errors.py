"""Error types and the outcome record that every IO operation produces."""

from __future__ import annotations

import errno
from dataclasses import dataclass, field
from typing import Any, ClassVar

_ETIME: int = getattr(errno, "ETIME", 62)

_EMPTY: Any = object()


class Timeout(TimeoutError):
    """Raised when an IO operation does not finish within its time limit."""

    error: ClassVar[int] = _ETIME

    def __init__(self, message: str = "IOP timed out") -> None:
        super().__init__(self.error, message)


@dataclass
class Outcome:
    """The result of an IO operation: either a value or an error code.

    An ``error`` of zero means success. An outcome built with no result and
    no error is empty, and asking it for its value is a logic error.
    """

    result: Any = field(default=_EMPTY, repr=False)
    error: int = 0
    message: str = ""

    def __bool__(self) -> bool:
        """True when no error was recorded."""
        return not self.error

    @property
    def has_result(self) -> bool:
        """True when a result value was recorded."""
        return self.result is not _EMPTY

    def throw_exception(self) -> None:
        """Raise the exception that matches the recorded error."""
        if self.error == Timeout.error:
            raise Timeout(self.message)
        raise OSError(self.error, self.message)

    def value(self) -> Any:
        """Return the result, or raise the recorded error."""
        if self.error:
            self.throw_exception()
        if not self.has_result:
            raise RuntimeError("Optional in outcome was empty")
        return self.result