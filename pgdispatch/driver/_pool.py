"""Pool and session handles, and single-flight execution of requests on them.

A :class:`Pool` checks a connection out for each request. A :class:`Session`
is the connection pinned to a running transaction; it is handed to the
transaction function and becomes unusable once that function returns.
"""

import threading
import time
from contextlib import contextmanager
from enum import Enum
from functools import partial
from typing import TYPE_CHECKING, Any, Callable, Optional, TypeVar, Union

from pgdispatch.adapters.psycopg.config import PsycopgConnectionSource
from pgdispatch.config import ConnectionSettings, default_params
from pgdispatch.core.options import DEFAULT_TIMEOUT, RequestOptions, TransactionMode
from pgdispatch.core.outcome import Err, Ok
from pgdispatch.exceptions import (
    ConnectionLostError,
    ConnectionUnavailableError,
    DatabaseError,
    ErrorKind,
    OwnershipError,
    PgDispatchError,
    QueryTimeoutError,
    StreamBusyError,
)
from pgdispatch.protocols import TransactionStatus
from pgdispatch.utils.logging import get_logger, request_scope

if TYPE_CHECKING:
    from collections.abc import Generator, Mapping

    from pgdispatch.core.outcome import Outcome
    from pgdispatch.protocols import ConnectionSource, WireConnection

__all__ = (
    "QUERY_SAVEPOINT",
    "Handle",
    "Pool",
    "Session",
    "SessionState",
    "cancel_after",
    "disconnect_on_error_code",
    "guarded",
    "request",
    "run",
    "run_control",
    "start",
    "status",
)

logger = get_logger("driver")

T = TypeVar("T")

QUERY_SAVEPOINT = "pgdispatch_query"
QUERY_CANCELED = "57014"

# Errors in these categories come back as Err, the others are raised
RETURNED_KINDS = frozenset({ErrorKind.DATABASE, ErrorKind.FEATURE_NOT_SUPPORTED, ErrorKind.CONNECTION})


class Pool:
    """Handle to a set of connections; every request checks one out."""

    __slots__ = ("_closed", "settings", "source")

    def __init__(self, source: "ConnectionSource", settings: Optional[ConnectionSettings] = None) -> None:
        self.source = source
        self.settings = settings or ConnectionSettings()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def acquire(self, *, queue: bool = True, timeout: float = DEFAULT_TIMEOUT) -> "WireConnection":
        if self._closed:
            msg = "Pool is closed"
            raise ConnectionUnavailableError(msg)
        return self.source.acquire(queue=queue, timeout=timeout)

    def release(self, wire: "WireConnection") -> None:
        self.source.release(wire)

    @contextmanager
    def checkout(self, *, queue: bool = True, timeout: float = DEFAULT_TIMEOUT) -> "Generator[WireConnection, None, None]":
        wire = self.acquire(queue=queue, timeout=timeout)
        try:
            yield wire
        finally:
            self.release(wire)

    def status(self) -> str:
        return "ok"

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.source.close()

    def __enter__(self) -> "Pool":
        return self

    def __exit__(self, *_: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"Pool(size={self.settings.pool_size}, closed={self._closed})"


class SessionState(Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class Session:
    """A connection pinned to a transaction.

    Only valid inside the transaction function it was passed to. ``depth`` counts
    the nested transaction scopes currently open; ``failed`` is set once a
    request fails in transaction mode, which dooms the enclosing transaction.
    """

    __slots__ = ("_state", "_stream", "deadline", "depth", "failed", "lock", "mode", "pool", "wire")

    def __init__(
        self,
        pool: Pool,
        wire: "WireConnection",
        *,
        mode: TransactionMode = TransactionMode.TRANSACTION,
        deadline: Optional[float] = None,
    ) -> None:
        self.pool = pool
        self.wire = wire
        self.mode = mode
        self.deadline = deadline
        self.depth = 0
        self.failed = False
        self.lock = threading.RLock()
        self._state = SessionState.ACTIVE
        self._stream: Any = None

    @property
    def closed(self) -> bool:
        return self._state is SessionState.CLOSED

    @property
    def stream_in_flight(self) -> bool:
        return self._stream is not None

    def close(self) -> None:
        self._state = SessionState.CLOSED
        self._stream = None

    def status(self) -> str:
        """``"error"`` when the transaction can no longer succeed, ``"ok"`` otherwise."""
        if self.failed or self.wire.broken:
            return "error"
        if self.wire.transaction_status() is TransactionStatus.INERROR:
            return "error"
        return "ok"

    def check(self, owner: Any = None) -> None:
        """Raise unless the session can take a request from ``owner``.

        Raises:
            OwnershipError: The transaction that owned the session has ended.
            ConnectionLostError: The connection is gone.
            StreamBusyError: Another stream is still running on the session.
        """
        if self._state is SessionState.CLOSED:
            msg = "Session used outside of the transaction that owns it"
            raise OwnershipError(msg)
        if self.wire.broken:
            msg = "Connection was lost"
            raise ConnectionLostError(msg)
        if self._stream is not None and self._stream is not owner:
            msg = "A stream is in flight on this session; consume or close it first"
            raise StreamBusyError(msg)

    @contextmanager
    def stream_slot(self, stream: Any) -> "Generator[None, None, None]":
        with self.lock:
            self.check(stream)
            self._stream = stream
        try:
            yield
        finally:
            if self._stream is stream:
                self._stream = None

    def request_timeout(self, timeout: Optional[float]) -> float:
        """Time left for a request.

        With a transaction deadline the remaining time applies and ``timeout``
        is ignored.

        Raises:
            QueryTimeoutError: If the transaction deadline has passed.
        """
        if self.deadline is None:
            return DEFAULT_TIMEOUT if timeout is None else timeout
        remaining = self.deadline - time.monotonic()
        if remaining <= 0:
            msg = "Transaction timeout exceeded"
            raise QueryTimeoutError(msg)
        return remaining

    def __repr__(self) -> str:
        return (
            f"Session(connection_id={self.wire.connection_id}, state={self._state.value}, "
            f"depth={self.depth}, failed={self.failed})"
        )


Handle = Union[Pool, Session]


@contextmanager
def cancel_after(wire: "WireConnection", timeout: float) -> "Generator[None, None, None]":
    """Cancel the statement in flight on ``wire`` if the block outlives ``timeout``.

    A cancelled request surfaces as :class:`QueryTimeoutError`. Once a cancel
    has been sent the connection is disconnected, even when the block finished
    first, so that a late cancel never reaches the next request on it.
    """
    fired = threading.Event()
    finished = threading.Event()
    lock = threading.Lock()

    def _cancel() -> None:
        with lock:
            if finished.is_set():
                return
            fired.set()
            logger.warning("Request exceeded %.3fs timeout, cancelling", timeout)
            wire.cancel()

    timer = threading.Timer(timeout, _cancel)
    timer.daemon = True
    timer.start()
    try:
        yield
    except DatabaseError as error:
        if fired.is_set() and error.sqlstate == QUERY_CANCELED:
            wire.disconnect()
            msg = f"Request cancelled after exceeding its {timeout:.3f}s timeout"
            raise QueryTimeoutError(msg) from error
        raise
    finally:
        timer.cancel()
        with lock:
            finished.set()
        if fired.is_set() and not wire.broken:
            logger.warning(
                "Cancel sent to connection %s after its request completed, disconnecting",
                wire.connection_id,
                extra={"extra_fields": {"connection_id": wire.connection_id}},
            )
            wire.disconnect()


def disconnect_on_error_code(pool: Pool, wire: "WireConnection", error: DatabaseError) -> None:
    """Disconnect ``wire`` if ``error`` matches the pool's ``disconnect_on_error_codes``."""
    if not error.matches(pool.settings.disconnect_on_error_codes):
        return
    logger.error(
        "Disconnecting connection %s after %s error: %s",
        wire.connection_id,
        error.code or error.sqlstate,
        error.message,
        extra={"extra_fields": {"sqlstate": error.sqlstate, "connection_id": wire.connection_id}},
    )
    wire.disconnect()


@contextmanager
def guarded(pool: Pool, wire: "WireConnection", timeout: float) -> "Generator[None, None, None]":
    """Apply the request timeout and the disconnect policy to the block."""
    try:
        with cancel_after(wire, timeout):
            yield
    except DatabaseError as error:
        disconnect_on_error_code(pool, wire, error)
        raise


def _guarded(pool: Pool, wire: "WireConnection", fn: "Callable[[WireConnection], T]", timeout: float) -> T:
    with guarded(pool, wire, timeout):
        return fn(wire)


def _in_query_savepoint(fn: "Callable[[WireConnection], T]", wire: "WireConnection") -> T:
    wire.savepoint(QUERY_SAVEPOINT)
    try:
        value = fn(wire)
    except BaseException:
        if not wire.broken:
            wire.rollback_to_savepoint(QUERY_SAVEPOINT)
            wire.release_savepoint(QUERY_SAVEPOINT)
        raise
    wire.release_savepoint(QUERY_SAVEPOINT)
    return value


def _run_on_pool(pool: Pool, fn: "Callable[[WireConnection], T]", options: RequestOptions) -> T:
    timeout = options.effective_timeout
    started = time.monotonic()
    with pool.checkout(queue=options.queue, timeout=timeout) as wire:
        remaining = timeout - (time.monotonic() - started)
        if remaining <= 0:
            msg = f"Request timed out after {timeout:.3f}s waiting for a connection"
            raise QueryTimeoutError(msg)
        return _guarded(pool, wire, fn, remaining)


def _run_on_session(session: Session, fn: "Callable[[WireConnection], T]", options: RequestOptions, owner: Any) -> T:
    with session.lock:
        session.check(owner)
        wire = session.wire
        mode = options.mode or session.mode
        try:
            timeout = session.request_timeout(options.timeout)
            work = fn
            if mode is TransactionMode.SAVEPOINT and wire.transaction_status() is TransactionStatus.INTRANS:
                work = partial(_in_query_savepoint, fn)
            return _guarded(session.pool, wire, work, timeout)
        except PgDispatchError as error:
            if error.kind in RETURNED_KINDS and (mode is TransactionMode.TRANSACTION or wire.broken):
                session.failed = True
            raise


def run_control(session: Session, fn: "Callable[[WireConnection], T]", *, timeout: Optional[float] = None) -> T:
    """Run a transaction control command (BEGIN, COMMIT, SAVEPOINT, ...) on ``session``.

    Unlike :func:`run` this ignores request modes and streams in flight. An
    explicit ``timeout`` overrides the transaction deadline.
    """
    with session.lock:
        if session.closed:
            msg = "Session used outside of the transaction that owns it"
            raise OwnershipError(msg)
        if session.wire.broken:
            msg = "Connection was lost"
            raise ConnectionLostError(msg)
        budget = session.request_timeout(None) if timeout is None else timeout
        return _guarded(session.pool, session.wire, fn, budget)


def run(handle: Handle, fn: "Callable[[WireConnection], T]", options: RequestOptions, *, owner: Any = None) -> T:
    """Run ``fn`` against the connection behind ``handle``, one request at a time.

    Errors are raised; see :func:`request` for the non-raising form.
    """
    if isinstance(handle, Session):
        return _run_on_session(handle, fn, options, owner)
    if isinstance(handle, Pool):
        return _run_on_pool(handle, fn, options)
    msg = f"Expected a Pool or a Session, got {type(handle).__name__}"
    raise OwnershipError(msg)


def request(
    handle: Handle, fn: "Callable[[WireConnection], T]", options: RequestOptions, *, owner: Any = None
) -> "Outcome[T]":
    """Like :func:`run`, returning server and transport errors as ``Err``.

    Ownership and programming errors are still raised.
    """
    with request_scope():
        try:
            return Ok(run(handle, fn, options, owner=owner))
        except PgDispatchError as error:
            if error.kind in RETURNED_KINDS:
                return Err(error)
            raise


def status(handle: Handle) -> str:
    """``"ok"`` or ``"error"``; a session reports ``"error"`` once its transaction is doomed."""
    if isinstance(handle, (Pool, Session)):
        return handle.status()
    msg = f"Expected a Pool or a Session, got {type(handle).__name__}"
    raise OwnershipError(msg)


def start(params: "Optional[Mapping[str, Any]]" = None, /, *, wait: bool = False, **kwargs: Any) -> Pool:
    """Start a pool of connections.

    Args:
        params: Connection parameters, see :class:`~pgdispatch.config.PostgresConnectionParams`.
        wait: Block until every connection is established.
        **kwargs: Connection parameters, overriding ``params``.

    Raises:
        ImproperConfigurationError: If the parameters are invalid.
        ConnectionUnavailableError: If ``wait`` is set and the pool could not fill up in time.

    Returns:
        The pool handle.
    """
    merged = default_params({**(params or {}), **kwargs})
    settings = ConnectionSettings.from_params(merged)
    source = PsycopgConnectionSource(merged, settings)
    if wait:
        try:
            source.wait(settings.timeout)
        except ConnectionUnavailableError:
            source.close()
            raise
    return Pool(source, settings)
