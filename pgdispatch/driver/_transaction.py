"""Transaction scopes, nesting and explicit rollback.

A top-level :func:`transaction` checks out a connection, issues ``BEGIN`` and
passes a :class:`~pgdispatch.driver.Session` to the transaction function.
Calling :func:`transaction` again with that session opens a nested scope:
in transaction mode it joins the outer transaction, in savepoint mode it is
wrapped in a savepoint so that its failure does not doom the outer one.
:func:`rollback` unwinds every scope up to the top level.
"""

import logging
import time
from functools import partial
from typing import TYPE_CHECKING, Any, NoReturn, Optional, TypeVar, Union

from pgdispatch.config import TransactionStrictness
from pgdispatch.core.options import DEFAULT_TIMEOUT, RequestOptions, TransactionMode
from pgdispatch.core.outcome import Err, Ok
from pgdispatch.driver._pool import RETURNED_KINDS, Pool, Session, run_control
from pgdispatch.exceptions import (
    OwnershipError,
    PgDispatchError,
    RollbackSignal,
    TransactionRollbackError,
    TransactionStateError,
)
from pgdispatch.protocols import TransactionStatus
from pgdispatch.utils.logging import get_logger, log_with_context, request_scope

if TYPE_CHECKING:
    from collections.abc import Callable

    from pgdispatch.core.outcome import Outcome
    from pgdispatch.core.result import Result
    from pgdispatch.protocols import WireConnection

__all__ = ("rollback", "savepoint_name", "transaction")

logger = get_logger("driver.transaction")

T = TypeVar("T")


def savepoint_name(depth: int) -> str:
    return f"pgdispatch_savepoint_{depth}"


def _begin(strict: bool, wire: "WireConnection") -> "Result":
    if strict:
        current = wire.transaction_status()
        if current is not TransactionStatus.IDLE:
            wire.disconnect()
            msg = f"Cannot begin a transaction, connection is {current.value} instead of idle"
            raise TransactionStateError(msg)
    return wire.begin()


def _commit(strict: bool, wire: "WireConnection") -> "Result":
    if strict:
        current = wire.transaction_status()
        if current not in {TransactionStatus.INTRANS, TransactionStatus.INERROR}:
            wire.disconnect()
            msg = f"Cannot commit, connection is {current.value} instead of in a transaction"
            raise TransactionStateError(msg)
    return wire.commit()


def _abort(session: Session) -> None:
    """Roll back the top-level transaction, disconnecting if that is not possible."""
    wire = session.wire
    if wire.broken or wire.transaction_status() is TransactionStatus.IDLE:
        return
    try:
        run_control(session, lambda w: w.rollback(), timeout=DEFAULT_TIMEOUT)
    except PgDispatchError as error:
        logger.warning("Rollback failed on connection %s, disconnecting: %s", wire.connection_id, error)
        wire.disconnect()


def _top_level(pool: Pool, fn: "Callable[[Session], T]", options: RequestOptions) -> "Outcome[T]":
    timeout = options.effective_timeout
    deadline = time.monotonic() + timeout
    try:
        wire = pool.acquire(queue=options.queue, timeout=timeout)
    except PgDispatchError as error:
        if error.kind not in RETURNED_KINDS:
            raise
        return Err(error)

    session = Session(pool, wire, mode=options.mode or TransactionMode.TRANSACTION, deadline=deadline)
    log_with_context(
        logger,
        logging.DEBUG,
        "Starting transaction",
        connection_id=wire.connection_id,
        mode=session.mode.value,
        timeout=timeout,
    )
    try:
        return _run_top_level(session, fn)
    finally:
        session.close()
        pool.release(wire)


def _run_top_level(session: Session, fn: "Callable[[Session], T]") -> "Outcome[T]":
    strict = session.pool.settings.transactions is TransactionStrictness.STRICT
    try:
        run_control(session, partial(_begin, strict))
    except PgDispatchError as error:
        if error.kind not in RETURNED_KINDS:
            raise
        return Err(error)

    try:
        value = fn(session)
    except RollbackSignal as signal:
        _abort(session)
        if signal.session is not session:
            raise
        logger.debug("Transaction rolled back on request: %r", signal.reason)
        return Err(signal.reason)
    except BaseException:
        _abort(session)
        raise

    if session.failed:
        _abort(session)
        return Err(TransactionRollbackError())

    try:
        result = run_control(session, partial(_commit, strict))
    except PgDispatchError as error:
        if error.kind not in RETURNED_KINDS:
            raise
        _abort(session)
        return Err(error)
    if result.command == "rollback":
        return Err(TransactionRollbackError())
    return Ok(value)


def _nested_transaction(session: Session, fn: "Callable[[Session], T]") -> "Outcome[T]":
    session.depth += 1
    try:
        value = fn(session)
    except RollbackSignal:
        raise
    except BaseException:
        session.failed = True
        raise
    finally:
        session.depth -= 1
    if session.failed:
        return Err(TransactionRollbackError())
    return Ok(value)


def _rollback_to(session: Session, name: str) -> Optional[PgDispatchError]:
    def _undo(wire: "WireConnection") -> None:
        wire.rollback_to_savepoint(name)
        wire.release_savepoint(name)

    try:
        run_control(session, _undo)
    except PgDispatchError as error:
        if error.kind not in RETURNED_KINDS:
            raise
        session.failed = True
        return error
    return None


def _nested_savepoint(session: Session, fn: "Callable[[Session], T]") -> "Outcome[T]":
    name = savepoint_name(session.depth + 1)
    try:
        run_control(session, lambda w: w.savepoint(name))
    except PgDispatchError as error:
        if error.kind not in RETURNED_KINDS:
            raise
        session.failed = True
        return Err(error)

    failed_before = session.failed
    session.depth += 1
    try:
        value = fn(session)
    except RollbackSignal:
        raise
    except BaseException:
        if _rollback_to(session, name) is None:
            session.failed = failed_before
        raise
    finally:
        session.depth -= 1

    if session.failed and not failed_before:
        error = _rollback_to(session, name)
        if error is None:
            session.failed = failed_before
        return Err(TransactionRollbackError())

    try:
        run_control(session, lambda w: w.release_savepoint(name))
    except PgDispatchError as error:
        if error.kind not in RETURNED_KINDS:
            raise
        session.failed = True
        return Err(error)
    return Ok(value)


def transaction(
    handle: "Union[Pool, Session]",
    fn: "Callable[[Session], T]",
    *,
    queue: bool = True,
    timeout: Optional[float] = None,
    mode: "Union[TransactionMode, str, None]" = None,
) -> "Outcome[T]":
    """Run ``fn`` inside a transaction.

    With a pool, a connection is checked out for the whole call and ``BEGIN`` is
    issued; ``fn`` receives the :class:`Session` to issue requests on. With a
    session, ``fn`` runs in a nested scope of the running transaction.

    Args:
        handle: A pool for a top-level transaction, or the session of a running one.
        fn: The transaction function.
        queue: Wait for a connection if none is idle.
        timeout: Seconds the whole transaction may take, checkout included.
        mode: ``"transaction"`` or ``"savepoint"``. At the top level this is the
            default mode of every request in the transaction; for a nested
            scope ``"savepoint"`` isolates the scope's failure.

    Returns:
        ``Ok(value)`` with the value ``fn`` returned once committed,
        ``Err(reason)`` after :func:`rollback`, ``Err(TransactionRollbackError())``
        when a failure forced a rollback, or ``Err(error)`` when the transaction
        could not be started or committed.
    """
    options = RequestOptions(queue=queue, timeout=timeout, mode=mode)
    if isinstance(handle, Session):
        with handle.lock:
            handle.check()
        if (options.mode or handle.mode) is TransactionMode.SAVEPOINT:
            return _nested_savepoint(handle, fn)
        return _nested_transaction(handle, fn)
    if isinstance(handle, Pool):
        with request_scope():
            return _top_level(handle, fn, options)
    msg = f"Expected a Pool or a Session, got {type(handle).__name__}"
    raise OwnershipError(msg)


def rollback(session: Session, reason: Any = "rollback") -> NoReturn:
    """Abort the running transaction; the top-level :func:`transaction` returns ``Err(reason)``.

    Raises:
        OwnershipError: If ``session`` is not the session of a running transaction.
    """
    if not isinstance(session, Session) or session.closed:
        msg = "rollback() requires the session of a running transaction"
        raise OwnershipError(msg)
    raise RollbackSignal(session, reason)
