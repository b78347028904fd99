"""PostgreSQL wire connection on top of psycopg 3.

Statements go through the low-level ``PGconn`` extended-protocol calls so that
named and unnamed prepared statements map one to one onto server statements.
Values are encoded and decoded with psycopg's ``Transformer`` using the
adapters configured on the connection; COPY uses ``Cursor.copy``.
"""

import re
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Optional

import psycopg
from psycopg import errors as pg_errors
from psycopg import pq
from psycopg import sql as pg_sql
from psycopg.adapt import PyFormat, Transformer

from pgdispatch.config import ConnectionSettings, PrepareMode
from pgdispatch.core.result import Result, parse_command_tag
from pgdispatch.core.statement import CacheMode, Statement
from pgdispatch.exceptions import ConnectionLostError, DatabaseError, ParameterError, PgDispatchError
from pgdispatch.protocols import TransactionStatus
from pgdispatch.utils.logging import get_logger
from pgdispatch.utils.sql_text import CopyDirection

if TYPE_CHECKING:
    from collections.abc import Generator, Iterable, Iterator, Sequence

    from pgdispatch.adapters.psycopg._types import PsycopgConnection

__all__ = ("SERVER_PARAMETERS", "PsycopgWireConnection", "condition_name", "to_database_error")

logger = get_logger("adapters.psycopg")

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")

# Parameters the server reports on its own (GUC_REPORT)
SERVER_PARAMETERS = (
    "application_name",
    "client_encoding",
    "DateStyle",
    "default_transaction_read_only",
    "in_hot_standby",
    "integer_datetimes",
    "IntervalStyle",
    "is_superuser",
    "server_encoding",
    "server_version",
    "session_authorization",
    "standard_conforming_strings",
    "TimeZone",
)


def condition_name(error: psycopg.Error, sqlstate: Optional[str]) -> Optional[str]:
    """Condition name of the error class psycopg picked for ``sqlstate`` (``UndefinedTable`` -> ``undefined_table``)."""
    error_class = type(error)
    if sqlstate is None or getattr(error_class, "sqlstate", None) != sqlstate:
        return None
    return _CAMEL_BOUNDARY.sub("_", error_class.__name__).lower()


def to_database_error(error: psycopg.Error) -> DatabaseError:
    diag = error.diag
    sqlstate = diag.sqlstate or error.sqlstate
    return DatabaseError(
        diag.message_primary or str(error),
        code=condition_name(error, sqlstate),
        sqlstate=sqlstate,
        severity=diag.severity_nonlocalized or diag.severity,
        detail=diag.message_detail,
    )


class PsycopgWireConnection:
    """One psycopg connection driven through the extended query protocol.

    Named statements prepared with ``CacheMode.STATEMENT`` are remembered per
    connection and reused as long as their text does not change. A cached
    statement whose execution fails is marked stale and parsed again next time.
    """

    __slots__ = ("__weakref__", "_connection", "_notices", "_settings", "_stale", "_statements")

    def __init__(self, connection: "PsycopgConnection", settings: Optional[ConnectionSettings] = None) -> None:
        self._connection = connection
        self._settings = settings or ConnectionSettings()
        self._statements: dict[str, Statement] = {}
        self._stale: set[str] = set()
        self._notices: list[dict[str, Any]] = []
        connection.add_notice_handler(self._on_notice)

    @property
    def connection(self) -> "PsycopgConnection":
        return self._connection

    @property
    def connection_id(self) -> Optional[int]:
        if self._connection.closed:
            return None
        return self._connection.info.backend_pid

    @property
    def broken(self) -> bool:
        return self._connection.closed or self._connection.broken

    @property
    def cached_statements(self) -> "dict[str, Statement]":
        return dict(self._statements)

    @property
    def _pgconn(self) -> "pq.abc.PGconn":
        return self._connection.pgconn

    @property
    def _encoding(self) -> str:
        return self._connection.info.encoding

    def _on_notice(self, diag: "pg_errors.Diagnostic") -> None:
        self._notices.append({"severity": diag.severity, "code": diag.sqlstate, "message": diag.message_primary})

    def _take_notices(self) -> "list[dict[str, Any]]":
        notices, self._notices = self._notices, []
        return notices

    def _connection_error_message(self, error: Exception) -> str:
        if self._settings.show_sensitive_data_on_connection_error:
            return f"Connection lost: {error}"
        return "Connection lost (set show_sensitive_data_on_connection_error=True for details)"

    @contextmanager
    def handle_database_exceptions(self) -> "Generator[None, None, None]":
        """Translate psycopg exceptions into pgdispatch errors."""
        try:
            yield
        except psycopg.Error as e:
            self._notices.clear()
            if self.broken:
                raise ConnectionLostError(self._connection_error_message(e)) from e
            if e.diag.sqlstate or e.sqlstate:
                raise to_database_error(e) from e
            if isinstance(e, (psycopg.OperationalError, psycopg.InterfaceError)):
                raise ConnectionLostError(self._connection_error_message(e)) from e
            msg = f"PostgreSQL client error: {e}"
            raise PgDispatchError(msg) from e

    def _check(self, result: "pq.abc.PGresult") -> "pq.abc.PGresult":
        if result.status == pq.ExecStatus.FATAL_ERROR:
            raise pg_errors.error_from_result(result, encoding=self._encoding)
        return result

    def _server_name(self, statement: Statement) -> str:
        if self._settings.prepare is PrepareMode.UNNAMED:
            return ""
        return statement.name

    def _ident(self, name: str) -> bytes:
        return pg_sql.Identifier(name).as_bytes(self._connection)

    def _dump(
        self, params: "Sequence[Any]", sql: str
    ) -> "tuple[Optional[list[Any]], Optional[list[int]], Optional[list[int]]]":
        if not params:
            return None, None, None
        transformer = Transformer(self._connection)
        try:
            values = transformer.dump_sequence(params, [PyFormat.TEXT] * len(params))
        except (psycopg.ProgrammingError, psycopg.DataError) as e:
            raise ParameterError(str(e), sql) from e
        return list(values), list(transformer.types), list(transformer.formats)

    def _build_result(self, result: "pq.abc.PGresult") -> Result:
        status = result.command_status
        command, count = parse_command_tag(status.decode(self._encoding) if status else None)
        messages = self._take_notices()
        if result.status != pq.ExecStatus.TUPLES_OK:
            return Result(command, num_rows=count or 0, connection_id=self.connection_id, messages=messages)
        columns = [(result.fname(i) or b"").decode(self._encoding) for i in range(result.nfields)]
        rows: list[Any] = []
        if result.ntuples:
            transformer = Transformer(self._connection)
            transformer.set_pgresult(result)
            rows = transformer.load_rows(0, result.ntuples, list)
        return Result(
            command, columns, rows, num_rows=result.ntuples, connection_id=self.connection_id, messages=messages
        )

    def _simple(self, command: bytes) -> Result:
        with self.handle_database_exceptions():
            result = self._check(self._pgconn.exec_(command))
        return self._build_result(result)

    def _deallocate(self, name: str) -> None:
        self._statements.pop(name, None)
        self._stale.discard(name)
        self._check(self._pgconn.exec_(b"DEALLOCATE " + self._ident(name)))

    def prepare(self, statement: Statement) -> Statement:
        name = self._server_name(statement)
        encoded_name = name.encode(self._encoding)
        logger.debug("Preparing statement %r", name)
        with self.handle_database_exceptions():
            if name and name in self._statements:
                self._deallocate(name)
            self._check(self._pgconn.prepare(encoded_name, statement.statement.encode(self._encoding)))
            description = self._check(self._pgconn.describe_prepared(encoded_name))
        self._take_notices()
        columns = None
        if description.nfields:
            columns = tuple((description.fname(i) or b"").decode(self._encoding) for i in range(description.nfields))
        prepared = statement.with_metadata(
            param_types=tuple(description.param_type(i) for i in range(description.nparams)),
            columns=columns,
            connection_id=self.connection_id,
        )
        if name:
            self._statements[name] = prepared
        return prepared

    def execute(self, statement: Statement, params: "Sequence[Any]") -> Result:
        direction = statement.copy_direction
        if direction is CopyDirection.FROM_STDIN:
            return self.copy_in(statement, params)
        if direction is CopyDirection.TO_STDOUT:
            return self._copy_out_result(statement)

        name = self._server_name(statement)
        sql = statement.statement
        if name and statement.param_types is not None and len(params) != len(statement.param_types):
            msg = f"Statement {name!r} expects {len(statement.param_types)} parameters, got {len(params)}"
            raise ParameterError(msg, sql)
        values, types, formats = self._dump(params, sql)
        logger.debug("Executing statement %r", name or sql)
        with self.handle_database_exceptions():
            if not name:
                result = self._check(self._pgconn.exec_params(sql.encode(self._encoding), values, types, formats))
            else:
                try:
                    result = self._check(self._pgconn.exec_prepared(name.encode(self._encoding), values, formats))
                except psycopg.Error:
                    if name in self._statements:
                        self._stale.add(name)
                    raise
        return self._build_result(result)

    def prepare_execute(self, statement: Statement, params: "Sequence[Any]") -> "tuple[Statement, Result]":
        name = self._server_name(statement)
        if not name or statement.copy_direction is not CopyDirection.NONE:
            return statement, self.execute(statement, params)
        cached = self._statements.get(name)
        if (
            statement.cache is CacheMode.STATEMENT
            and cached is not None
            and cached.statement == statement.statement
            and name not in self._stale
        ):
            prepared = cached
        else:
            prepared = self.prepare(statement)
        return prepared, self.execute(prepared, params)

    def close(self, statement: Statement) -> None:
        name = self._server_name(statement)
        if not name:
            return
        with self.handle_database_exceptions():
            self._deallocate(name)
        self._take_notices()

    def begin(self) -> Result:
        return self._simple(b"BEGIN")

    def commit(self) -> Result:
        return self._simple(b"COMMIT")

    def rollback(self) -> Result:
        return self._simple(b"ROLLBACK")

    def savepoint(self, name: str) -> Result:
        return self._simple(b"SAVEPOINT " + self._ident(name))

    def release_savepoint(self, name: str) -> Result:
        return self._simple(b"RELEASE SAVEPOINT " + self._ident(name))

    def rollback_to_savepoint(self, name: str) -> Result:
        return self._simple(b"ROLLBACK TO SAVEPOINT " + self._ident(name))

    def copy_out(self, statement: Statement) -> "Iterator[bytes]":
        with self.handle_database_exceptions(), self._connection.cursor() as cursor:
            with cursor.copy(statement.statement) as copy:
                for data in copy:
                    yield bytes(data)

    def _copy_out_result(self, statement: Statement) -> Result:
        with self.handle_database_exceptions(), self._connection.cursor() as cursor:
            with cursor.copy(statement.statement) as copy:
                rows = [bytes(data) for data in copy]
            num_rows = cursor.rowcount if cursor.rowcount >= 0 else len(rows)
        return Result(
            "copy", rows=rows, num_rows=num_rows, connection_id=self.connection_id, messages=self._take_notices()
        )

    def copy_in(self, statement: Statement, chunks: "Iterable[Any]") -> Result:
        with self.handle_database_exceptions(), self._connection.cursor() as cursor:
            with cursor.copy(statement.statement) as copy:
                for chunk in chunks:
                    copy.write(chunk)
            num_rows = max(cursor.rowcount, 0)
        return Result("copy", num_rows=num_rows, connection_id=self.connection_id, messages=self._take_notices())

    def declare(self, cursor_name: str, statement: Statement, params: "Sequence[Any]") -> None:
        sql = statement.statement
        values, types, formats = self._dump(params, sql)
        command = b"DECLARE " + self._ident(cursor_name) + b" NO SCROLL CURSOR FOR " + sql.encode(self._encoding)
        with self.handle_database_exceptions():
            self._check(self._pgconn.exec_params(command, values, types, formats))
        self._take_notices()

    def fetch(self, cursor_name: str, max_rows: int) -> Result:
        return self._simple(b"FETCH FORWARD %d FROM " % max_rows + self._ident(cursor_name))

    def close_cursor(self, cursor_name: str) -> None:
        self._simple(b"CLOSE " + self._ident(cursor_name))

    def transaction_status(self) -> TransactionStatus:
        if self._connection.closed:
            return TransactionStatus.UNKNOWN
        return TransactionStatus[pq.TransactionStatus(self._pgconn.transaction_status).name]

    def parameters(self) -> "dict[str, str]":
        found: dict[str, str] = {}
        for name in SERVER_PARAMETERS:
            value = self._pgconn.parameter_status(name.encode())
            if value is not None:
                found[name] = value.decode(self._encoding)
        return found

    def cancel(self) -> None:
        try:
            self._connection.cancel()
        except psycopg.Error:
            logger.warning("Could not cancel request on connection %s", self.connection_id, exc_info=True)

    def disconnect(self) -> None:
        if not self._connection.closed:
            logger.debug("Disconnecting connection %s", self.connection_id)
            self._connection.close()

    def __repr__(self) -> str:
        return f"PsycopgWireConnection(connection_id={self.connection_id}, broken={self.broken})"
