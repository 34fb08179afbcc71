"""Exception hierarchy for the multiplexer."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .types import TaggedData


class MuxError(Exception):
    """
    Base exception for all multiplexer errors.

    Attributes:
        message: Human-readable error description.
    """

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r})"


class MuxClosedError(MuxError):
    """Raised by every operation on a multiplexer that has been closed."""

    def __init__(self) -> None:
        super().__init__("mux has been closed")


class MuxNoConnectionsError(MuxError):
    """Raised by a read when no tag has been registered yet."""

    def __init__(self) -> None:
        super().__init__("no senders have been connected")


class MuxEndOfStream(MuxError, EOFError):
    """
    Signals that a cancellation scope has drained every connection.

    This is not a failure. Session operations catch it and return what they
    accumulated; direct callers of `Mux.read` use it to stop their loop.
    """

    def __init__(self) -> None:
        super().__init__("end of stream")


class MuxOperationError(MuxError):
    """
    Raised by `Mux.read_while` when the background operation raised.

    The session still completed, so the captured output is kept on the
    exception. The operation's own exception is the `__cause__`.

    Attributes:
        chunks: Tagged chunks read while the operation ran.
    """

    def __init__(self, chunks: list[TaggedData[Any]], cause: BaseException) -> None:
        self.chunks = chunks
        super().__init__(f"operation failed: {cause!r}")
