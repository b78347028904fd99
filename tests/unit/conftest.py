"""In-memory stand-ins for a server connection and the pool behind it.

``FakeWire`` keeps just enough server state to exercise the orchestration:
transaction status, the savepoint stack, named statements and open cursors.
Statement responses are registered per SQL text with :meth:`FakeWire.respond`.
"""

from __future__ import annotations

import itertools
import threading
from collections.abc import Callable, Iterable, Iterator, Sequence
from queue import Empty, Queue
from typing import Any

import pytest

from pgdispatch.config import ConnectionSettings
from pgdispatch.core.result import Result
from pgdispatch.core.statement import CacheMode, Statement
from pgdispatch.driver import Pool
from pgdispatch.exceptions import ConnectionLostError, ConnectionUnavailableError, DatabaseError
from pgdispatch.protocols import TransactionStatus

_backend_pids = itertools.count(1000)


def server_error(code: str, sqlstate: str, message: str = "server error") -> DatabaseError:
    return DatabaseError(message, code=code, sqlstate=sqlstate)


def in_failed_transaction() -> DatabaseError:
    return server_error(
        "in_failed_sql_transaction",
        "25P02",
        "current transaction is aborted, commands ignored until end of transaction block",
    )


class FakeWire:
    def __init__(self) -> None:
        self.pid = next(_backend_pids)
        self.status = TransactionStatus.IDLE
        self.is_broken = False
        self.calls: list[tuple[Any, ...]] = []
        self.responses: dict[str, Any] = {}
        self.prepared: dict[str, str] = {}
        self.prepare_count: dict[str, int] = {}
        self.reject_named: DatabaseError | None = None
        self.savepoints: list[str] = []
        self.cursors: dict[str, list[Any]] = {}
        self.copied: list[Any] = []
        self.cancel_event = threading.Event()
        self.server_parameters = {"server_version": "16.2", "TimeZone": "UTC"}

    # -- test helpers --
    def respond(self, sql: str, response: Any) -> None:
        """Register a Result, an exception or a callable taking the params."""
        self.responses[sql] = response

    def slow(self, sql: str, seconds: float) -> None:
        def _sleep(_: Sequence[Any]) -> Result:
            if self.cancel_event.wait(seconds):
                raise server_error("query_canceled", "57014", "canceling statement due to user request")
            return Result("select", ["pg_sleep"], [[None]], 1)

        self.responses[sql] = _sleep

    def commands(self) -> list[str]:
        return [call[0] for call in self.calls]

    # -- internals --
    def _guard(self) -> None:
        if self.is_broken:
            raise ConnectionLostError("Connection was lost")
        if self.status is TransactionStatus.INERROR:
            raise in_failed_transaction()

    def _fail(self, error: DatabaseError) -> DatabaseError:
        if self.status is TransactionStatus.INTRANS:
            self.status = TransactionStatus.INERROR
        return error

    def _run(self, sql: str, params: Sequence[Any]) -> Result:
        self._guard()
        response = self.responses.get(sql)
        if response is None:
            rows = [list(params)] if params else [[1]]
            return Result("select", ["?column?"], rows, len(rows), connection_id=self.pid)
        try:
            if isinstance(response, BaseException):
                raise response
            if callable(response):
                response = response(params)
        except DatabaseError as error:
            raise self._fail(error) from None
        return response

    # -- WireConnection --
    @property
    def connection_id(self) -> int | None:
        return self.pid

    @property
    def broken(self) -> bool:
        return self.is_broken

    def prepare(self, statement: Statement) -> Statement:
        self.calls.append(("prepare", statement.name))
        self._guard()
        if statement.name and self.reject_named is not None:
            raise self._fail(self.reject_named)
        if statement.name:
            self.prepared[statement.name] = statement.statement
            self.prepare_count[statement.name] = self.prepare_count.get(statement.name, 0) + 1
        return statement.with_metadata(
            param_types=tuple(0 for _ in range(statement.statement.count("$"))), columns=None, connection_id=self.pid
        )

    def execute(self, statement: Statement, params: Sequence[Any]) -> Result:
        self.calls.append(("execute", statement.name, statement.statement))
        if statement.name and self.prepared.get(statement.name) is None:
            self._guard()
            raise self._fail(server_error("invalid_sql_statement_name", "26000", "prepared statement does not exist"))
        if statement.copy_direction.name == "FROM_STDIN":
            return self.copy_in(statement, params)
        return self._run(statement.statement, params)

    def prepare_execute(self, statement: Statement, params: Sequence[Any]) -> tuple[Statement, Result]:
        if not statement.name:
            self.calls.append(("prepare_execute", "", statement.statement))
            if statement.copy_direction.name == "FROM_STDIN":
                return statement, self.copy_in(statement, params)
            return statement, self._run(statement.statement, params)
        cached = self.prepared.get(statement.name)
        if statement.cache is CacheMode.STATEMENT and cached == statement.statement:
            prepared = statement.with_metadata(param_types=(), columns=None, connection_id=self.pid)
        else:
            prepared = self.prepare(statement)
        return prepared, self.execute(prepared, params)

    def close(self, statement: Statement) -> None:
        self.calls.append(("close", statement.name))
        if not statement.name:
            return
        self._guard()
        if statement.name not in self.prepared:
            raise self._fail(server_error("invalid_sql_statement_name", "26000", "prepared statement does not exist"))
        del self.prepared[statement.name]

    def begin(self) -> Result:
        self.calls.append(("begin",))
        if self.is_broken:
            raise ConnectionLostError("Connection was lost")
        self.status = TransactionStatus.INTRANS
        return Result("begin")

    def commit(self) -> Result:
        self.calls.append(("commit",))
        failed = self.status is TransactionStatus.INERROR
        self.status = TransactionStatus.IDLE
        self.savepoints.clear()
        return Result("rollback" if failed else "commit")

    def rollback(self) -> Result:
        self.calls.append(("rollback",))
        self.status = TransactionStatus.IDLE
        self.savepoints.clear()
        return Result("rollback")

    def savepoint(self, name: str) -> Result:
        self.calls.append(("savepoint", name))
        self._guard()
        self.savepoints.append(name)
        return Result("savepoint")

    def release_savepoint(self, name: str) -> Result:
        self.calls.append(("release_savepoint", name))
        self._guard()
        index = len(self.savepoints) - 1 - self.savepoints[::-1].index(name)
        del self.savepoints[index:]
        return Result("release")

    def rollback_to_savepoint(self, name: str) -> Result:
        self.calls.append(("rollback_to_savepoint", name))
        index = len(self.savepoints) - 1 - self.savepoints[::-1].index(name)
        del self.savepoints[index + 1 :]
        self.status = TransactionStatus.INTRANS
        return Result("rollback")

    def copy_out(self, statement: Statement) -> Iterator[bytes]:
        self.calls.append(("copy_out", statement.statement))
        result = self._run(statement.statement, [])
        yield from result.rows or []

    def copy_in(self, statement: Statement, chunks: Iterable[Any]) -> Result:
        self.calls.append(("copy_in", statement.statement))
        self._guard()
        received = list(chunks)
        self.copied.extend(received)
        return Result("copy", num_rows=len(received), connection_id=self.pid)

    def declare(self, cursor_name: str, statement: Statement, params: Sequence[Any]) -> None:
        self.calls.append(("declare", cursor_name))
        result = self._run(statement.statement, params)
        self.cursors[cursor_name] = list(result.rows or [])

    def fetch(self, cursor_name: str, max_rows: int) -> Result:
        self.calls.append(("fetch", cursor_name, max_rows))
        self._guard()
        remaining = self.cursors[cursor_name]
        rows, self.cursors[cursor_name] = remaining[:max_rows], remaining[max_rows:]
        return Result("fetch", ["value"], rows, len(rows), connection_id=self.pid)

    def close_cursor(self, cursor_name: str) -> None:
        self.calls.append(("close_cursor", cursor_name))
        self._guard()
        del self.cursors[cursor_name]

    def transaction_status(self) -> TransactionStatus:
        return TransactionStatus.UNKNOWN if self.is_broken else self.status

    def parameters(self) -> dict[str, str]:
        self._guard()
        return dict(self.server_parameters)

    def cancel(self) -> None:
        self.calls.append(("cancel",))
        self.cancel_event.set()

    def disconnect(self) -> None:
        self.calls.append(("disconnect",))
        self.is_broken = True


class FakeSource:
    def __init__(self, size: int = 1) -> None:
        self.wires = [FakeWire() for _ in range(size)]
        self.idle: Queue[FakeWire] = Queue()
        for wire in self.wires:
            self.idle.put(wire)
        self.replaced: list[FakeWire] = []
        self.closed = False

    @property
    def wire(self) -> FakeWire:
        """The most recently created connection."""
        return self.wires[-1]

    def acquire(self, *, queue: bool, timeout: float) -> FakeWire:
        try:
            return self.idle.get(timeout=timeout) if queue else self.idle.get_nowait()
        except Empty as e:
            raise ConnectionUnavailableError("No connection available") from e

    def release(self, connection: FakeWire) -> None:
        if connection.broken:
            self.replaced.append(connection)
            connection = FakeWire()
            self.wires.append(connection)
        self.idle.put(connection)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def wire(source: FakeSource) -> FakeWire:
    return source.wire


@pytest.fixture
def make_pool() -> Callable[..., Pool]:
    def _make(size: int = 1, **settings: Any) -> Pool:
        return Pool(FakeSource(size), ConnectionSettings.from_params({"pool_size": size, **settings}))

    return _make


@pytest.fixture
def pool(source: FakeSource) -> Pool:
    return Pool(source, ConnectionSettings())


@pytest.fixture
def fake_wire_factory() -> Callable[[], FakeWire]:
    return FakeWire


@pytest.fixture
def server_error_factory() -> Callable[..., DatabaseError]:
    return server_error
