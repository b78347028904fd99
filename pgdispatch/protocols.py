"""Runtime-checkable protocols for the collaborators the dispatcher drives.

``WireConnection`` is one physical server connection speaking the extended
query protocol; ``ConnectionSource`` hands them out and takes them back.
"""

from enum import Enum
from typing import TYPE_CHECKING, Any, Optional, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Sequence

    from pgdispatch.core.result import Result
    from pgdispatch.core.statement import Statement

__all__ = ("ConnectionSource", "TransactionStatus", "WireConnection")


class TransactionStatus(str, Enum):
    """Server-side transaction status of a connection."""

    IDLE = "idle"
    ACTIVE = "active"
    INTRANS = "intrans"
    INERROR = "inerror"
    UNKNOWN = "unknown"


@runtime_checkable
class WireConnection(Protocol):
    """One physical connection.

    Methods raise :class:`~pgdispatch.exceptions.DatabaseError` for errors
    reported by the server, :class:`~pgdispatch.exceptions.ConnectionLostError`
    when the connection breaks and :class:`~pgdispatch.exceptions.ParameterError`
    when parameters cannot be encoded.
    """

    @property
    def connection_id(self) -> Optional[int]:
        """Backend process id."""
        ...

    @property
    def broken(self) -> bool:
        """True once the connection can no longer be used."""
        ...

    def prepare(self, statement: "Statement") -> "Statement":
        """Parse and describe ``statement`` under its name."""
        ...

    def execute(self, statement: "Statement", params: "Sequence[Any]") -> "Result":
        """Bind and execute an already prepared statement."""
        ...

    def prepare_execute(self, statement: "Statement", params: "Sequence[Any]") -> "tuple[Statement, Result]":
        """Prepare (or reuse a cached prepared statement) and execute it."""
        ...

    def close(self, statement: "Statement") -> None:
        """Release the server-side statement."""
        ...

    def begin(self) -> "Result": ...

    def commit(self) -> "Result":
        """Commit; the result command is ``rollback`` when the transaction had failed."""
        ...

    def rollback(self) -> "Result": ...

    def savepoint(self, name: str) -> "Result": ...

    def release_savepoint(self, name: str) -> "Result": ...

    def rollback_to_savepoint(self, name: str) -> "Result": ...

    def copy_out(self, statement: "Statement") -> "Iterator[bytes]":
        """Run a ``COPY ... TO STDOUT`` and yield each data row."""
        ...

    def copy_in(self, statement: "Statement", chunks: "Iterable[Any]") -> "Result":
        """Run a ``COPY ... FROM STDIN`` sending every chunk as copy data."""
        ...

    def declare(self, cursor_name: str, statement: "Statement", params: "Sequence[Any]") -> None: ...

    def fetch(self, cursor_name: str, max_rows: int) -> "Result": ...

    def close_cursor(self, cursor_name: str) -> None: ...

    def transaction_status(self) -> TransactionStatus: ...

    def parameters(self) -> "dict[str, str]":
        """Server parameters reported at startup or since (no round trip)."""
        ...

    def cancel(self) -> None:
        """Ask the server to cancel the statement in flight; callable from any thread."""
        ...

    def disconnect(self) -> None:
        """Close the connection so that it is discarded instead of reused."""
        ...


@runtime_checkable
class ConnectionSource(Protocol):
    """The pooling engine behind a :class:`~pgdispatch.driver.Pool`."""

    def acquire(self, *, queue: bool, timeout: float) -> WireConnection:
        """Check out a connection.

        Raises:
            ConnectionUnavailableError: If none is available within ``timeout``,
                or immediately when ``queue`` is False and none is idle.
        """
        ...

    def release(self, connection: WireConnection) -> None:
        """Return a connection; broken or disconnected ones are replaced."""
        ...

    def close(self) -> None: ...
