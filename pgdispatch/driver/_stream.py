"""Lazy result streams and COPY sinks bound to a transaction session."""

import itertools
from typing import TYPE_CHECKING, Any, Optional, Union

from pgdispatch.core.options import RequestOptions, TransactionMode
from pgdispatch.core.result import Result
from pgdispatch.core.statement import UNNAMED, Statement
from pgdispatch.driver._pool import Session, guarded, run, run_control
from pgdispatch.exceptions import OwnershipError, ParameterError, PgDispatchError
from pgdispatch.protocols import TransactionStatus
from pgdispatch.utils.logging import get_logger
from pgdispatch.utils.sql_text import CopyDirection

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Sequence

    from pgdispatch.protocols import WireConnection

__all__ = ("Stream", "stream")

logger = get_logger("driver.stream")

_cursor_ids = itertools.count(1)


class Stream:
    """Lazy sequence of result chunks of at most ``max_rows`` rows each.

    Nothing is sent to the server until iteration starts. A stream can be
    iterated once; iterating again yields nothing. While it is being iterated
    no other request may run on its session.
    """

    __slots__ = ("_consumed", "options", "params", "session", "statement")

    def __init__(
        self, session: Session, statement: Statement, params: "Sequence[Any]", options: RequestOptions
    ) -> None:
        self.session = session
        self.statement = statement
        self.params = params
        self.options = options
        self._consumed = False

    def __iter__(self) -> "Iterator[Result]":
        return self._produce()

    def _produce(self) -> "Iterator[Result]":
        if self._consumed:
            return
        self._consumed = True
        direction = self.statement.copy_direction
        if direction is CopyDirection.FROM_STDIN:
            msg = "A COPY FROM STDIN stream only accepts data, use Stream.into()"
            raise OwnershipError(msg)
        with self.session.stream_slot(self):
            if direction is CopyDirection.TO_STDOUT:
                yield from self._copy_out_chunks()
            else:
                yield from self._cursor_chunks()

    def _copy_out_chunks(self) -> "Iterator[Result]":
        session = self.session
        max_rows = self.options.max_rows
        with session.lock:
            session.check(self)
            timeout = session.request_timeout(self.options.timeout)
        wire = session.wire
        connection_id = wire.connection_id
        chunk: list[bytes] = []
        try:
            with guarded(session.pool, wire, timeout):
                for data in wire.copy_out(self.statement):
                    chunk.append(data)
                    if len(chunk) >= max_rows:
                        yield Result("copy", rows=chunk, num_rows=len(chunk), connection_id=connection_id)
                        chunk = []
        except PgDispatchError:
            session.failed = True
            raise
        if chunk:
            yield Result("copy", rows=chunk, num_rows=len(chunk), connection_id=connection_id)

    def _cursor_chunks(self) -> "Iterator[Result]":
        name = f"pgdispatch_cursor_{next(_cursor_ids)}"
        max_rows = self.options.max_rows
        fetch_options = self.options.replace(mode=TransactionMode.TRANSACTION)
        run(self.session, lambda wire: wire.declare(name, self.statement, self.params), fetch_options, owner=self)
        try:
            while True:
                result = run(self.session, lambda wire: wire.fetch(name, max_rows), fetch_options, owner=self)
                if result.rows:
                    yield result.map_rows(self.options.decode_mapper)
                if len(result) < max_rows:
                    break
        finally:
            self._close_cursor(name)

    def _close_cursor(self, name: str) -> None:
        session = self.session
        if session.closed or session.wire.broken:
            return
        if session.wire.transaction_status() is not TransactionStatus.INTRANS:
            return
        run_control(session, lambda wire: wire.close_cursor(name))

    def into(self, chunks: "Iterable[Any]") -> Result:
        """Send ``chunks`` as COPY data.

        For a ``COPY ... FROM STDIN`` statement every chunk is written to the
        server. Any other statement is executed as is and the chunks are
        consumed and discarded.
        """
        session = self.session
        statement = self.statement
        with session.stream_slot(self):
            if statement.copy_direction is CopyDirection.FROM_STDIN:
                return run(session, lambda wire: wire.copy_in(statement, chunks), self.options, owner=self)
            result = run(session, lambda wire: _execute(wire, statement, self.params), self.options, owner=self)
        discarded = sum(1 for _ in chunks)
        logger.debug("Discarded %d copy data chunks sent to a statement that does not read COPY data", discarded)
        return result.map_rows(self.options.decode_mapper)

    def __repr__(self) -> str:
        return f"Stream(statement={self.statement.statement!r}, max_rows={self.options.max_rows})"


def _execute(wire: "WireConnection", statement: Statement, params: "Sequence[Any]") -> Result:
    if statement.is_unnamed:
        return wire.prepare_execute(statement, params)[1]
    return wire.execute(statement, params)


def stream(
    session: Session,
    statement: "Union[str, Statement]",
    params: "Optional[Sequence[Any]]" = None,
    *,
    max_rows: Optional[int] = None,
    timeout: Optional[float] = None,
    decode_mapper: Any = None,
) -> Stream:
    """Create a lazy stream over ``statement``; only valid inside a transaction.

    Args:
        session: Session of the running transaction.
        statement: SQL text or a prepared :class:`~pgdispatch.core.Statement`.
        params: Statement parameters.
        max_rows: Rows per chunk.
        timeout: Seconds each round trip may take.
        decode_mapper: Called with every row.

    Raises:
        OwnershipError: If ``session`` is not the session of a running transaction.
        ParameterError: If ``params`` is not a sequence.
    """
    if not isinstance(session, Session):
        msg = "stream() requires the session of a running transaction"
        raise OwnershipError(msg)
    with session.lock:
        session.check()
    if isinstance(statement, str):
        statement = Statement(UNNAMED, statement)
    params = [] if params is None else params
    if isinstance(params, (str, bytes, dict)) or not hasattr(params, "__len__"):
        msg = f"Parameters must be a list or tuple, got {type(params).__name__}"
        raise ParameterError(msg, statement.statement)
    options = RequestOptions(timeout=timeout, decode_mapper=decode_mapper)
    if max_rows is not None:
        options = options.replace(max_rows=max_rows)
    return Stream(session, statement, params, options)
