from enum import Enum, auto
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from pgdispatch.driver._pool import Session

__all__ = (
    "ConnectionLostError",
    "ConnectionUnavailableError",
    "DatabaseError",
    "ErrorKind",
    "ImproperConfigurationError",
    "OwnershipError",
    "ParameterError",
    "PgDispatchError",
    "QueryTimeoutError",
    "RollbackSignal",
    "StreamBusyError",
    "TransactionRollbackError",
    "TransactionStateError",
    "kind_for_sqlstate",
)


class ErrorKind(Enum):
    """Classification of every error the dispatcher can observe."""

    DATABASE = auto()
    FEATURE_NOT_SUPPORTED = auto()
    CONNECTION = auto()
    OWNERSHIP = auto()
    PROGRAMMING = auto()

    def __str__(self) -> str:
        return self.name.lower()


class PgDispatchError(Exception):
    """Base exception class from which all pgdispatch exceptions inherit."""

    detail: str
    kind: ErrorKind = ErrorKind.DATABASE

    def __init__(self, *args: Any, detail: str = "") -> None:
        """Initialize ``PgDispatchError``.

        Args:
            *args: args are converted to :class:`str` before passing to :class:`Exception`
            detail: detail of the exception.
        """
        str_args = [str(arg) for arg in args if arg]
        if not detail:
            if str_args:
                detail, *str_args = str_args
            elif hasattr(self, "detail"):
                detail = self.detail
        self.detail = detail
        super().__init__(*str_args)

    def __repr__(self) -> str:
        if self.detail:
            return f"{self.__class__.__name__} - {self.detail}"
        return self.__class__.__name__

    def __str__(self) -> str:
        return " ".join((*self.args, self.detail)).strip()


class ImproperConfigurationError(PgDispatchError):
    """Improper Configuration error.

    Raised when connection parameters or request options hold values that cannot be used.
    """

    kind = ErrorKind.PROGRAMMING


# -- Server errors --
class DatabaseError(PgDispatchError):
    """Error reported by the PostgreSQL server.

    ``code`` is the condition name of the SQLSTATE (``feature_not_supported``,
    ``read_only_sql_transaction``, ...) and ``kind`` is derived from it unless given.
    """

    code: Optional[str]
    sqlstate: Optional[str]
    severity: Optional[str]
    message: str

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        sqlstate: Optional[str] = None,
        severity: Optional[str] = None,
        detail: Optional[str] = None,
        kind: Optional[ErrorKind] = None,
    ) -> None:
        self.message = message
        self.code = code
        self.sqlstate = sqlstate
        self.severity = severity or "ERROR"
        self.kind = kind or kind_for_sqlstate(sqlstate)
        label = f"{self.severity} {sqlstate} ({code})" if sqlstate else self.severity
        detail_message = f"{label} {message}"
        if detail:
            detail_message = f"{detail_message}\n\n{detail}"
        super().__init__(detail=detail_message)

    def matches(self, codes: "frozenset[str]") -> bool:
        """Check whether the error is identified by any of ``codes`` (condition names or SQLSTATEs)."""
        return bool(codes) and (self.code in codes or self.sqlstate in codes)


def kind_for_sqlstate(sqlstate: Optional[str]) -> ErrorKind:
    """Map a SQLSTATE to the error kind the dispatcher reacts to."""
    if sqlstate is None:
        return ErrorKind.DATABASE
    if sqlstate == "0A000":
        return ErrorKind.FEATURE_NOT_SUPPORTED
    if sqlstate.startswith("08"):
        return ErrorKind.CONNECTION
    return ErrorKind.DATABASE


# -- Transport errors --
class ConnectionLostError(PgDispatchError):
    """The physical connection was closed or became unusable."""

    kind = ErrorKind.CONNECTION


class ConnectionUnavailableError(PgDispatchError):
    """No connection could be checked out of the pool in time."""

    kind = ErrorKind.CONNECTION


class QueryTimeoutError(PgDispatchError):
    """A request did not complete before its timeout and was cancelled."""

    kind = ErrorKind.CONNECTION


# -- Usage errors --
class OwnershipError(PgDispatchError):
    """A connection handle was used outside of the scope that owns it."""

    kind = ErrorKind.OWNERSHIP


class StreamBusyError(OwnershipError):
    """A request was issued on a session while a stream is in flight on it."""


class ParameterError(PgDispatchError):
    """Parameters could not be encoded for the statement."""

    kind = ErrorKind.PROGRAMMING

    sql: Optional[str]

    def __init__(self, message: str, sql: Optional[str] = None) -> None:
        """Initialize with optional SQL context."""
        detail_message = message
        if sql:
            detail_message = f"{message}\nSQL: {sql}"
        super().__init__(detail=detail_message)
        self.sql = sql


# -- Transaction errors --
class TransactionStateError(PgDispatchError):
    """The server transaction status did not match what a strict transaction expected."""


class TransactionRollbackError(PgDispatchError):
    """The transaction was rolled back instead of committed.

    ``reason`` is ``"rollback"`` when a failed nested call forced the rollback,
    otherwise the value given to :func:`pgdispatch.rollback`.
    """

    def __init__(self, reason: Any = "rollback") -> None:
        self.reason = reason
        super().__init__(f"transaction rolled back: {reason!r}")


class RollbackSignal(BaseException):  # noqa: N818
    """Unwinds every transaction scope up to the top level of ``session``.

    Derives from ``BaseException`` so that ``except Exception`` blocks in caller
    code do not intercept it.
    """

    def __init__(self, session: "Session", reason: Any) -> None:
        super().__init__(reason)
        self.session = session
        self.reason = reason
