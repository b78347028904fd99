"""Public request entry points.

Every entry point takes a handle, either a :class:`~pgdispatch.driver.Pool` or the
:class:`~pgdispatch.driver.Session` of a running transaction, and returns an
``Ok``/``Err`` outcome. The ``*_or_raise`` variants return the value or raise
the error instead.
"""

import logging
from typing import TYPE_CHECKING, Any, Optional, Union

from pgdispatch.core.options import RequestOptions, TransactionMode
from pgdispatch.core.statement import UNNAMED, Statement
from pgdispatch.driver._cache import cached_prepare_execute, cached_query, prepare_execute_unnamed, run_prepare_execute
from pgdispatch.driver._pool import request
from pgdispatch.exceptions import ParameterError
from pgdispatch.utils.logging import get_logger, log_with_context, request_scope

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from pgdispatch.core.outcome import Outcome
    from pgdispatch.core.result import Result
    from pgdispatch.driver._pool import Handle

__all__ = (
    "close",
    "close_or_raise",
    "execute",
    "execute_or_raise",
    "parameters",
    "prepare",
    "prepare_execute",
    "prepare_execute_or_raise",
    "prepare_or_raise",
    "query",
    "query_or_raise",
)

logger = get_logger("driver.dispatch")


def _check_params(params: Any, sql: str) -> "Sequence[Any]":
    if params is None:
        return []
    if isinstance(params, (str, bytes, bytearray, dict)) or not isinstance(params, (list, tuple)):
        msg = f"Parameters must be a list or tuple, got {type(params).__name__}"
        raise ParameterError(msg, sql)
    return params


def _check_sql(sql: Any) -> str:
    if not isinstance(sql, str):
        msg = f"Statement must be a string, got {type(sql).__name__}"
        raise ParameterError(msg)
    return sql


def _check_statement(statement: Any) -> Statement:
    if not isinstance(statement, Statement):
        msg = f"Expected a prepared Statement, got {type(statement).__name__}"
        raise ParameterError(msg)
    return statement


def query(
    handle: "Handle",
    statement: str,
    params: "Optional[Sequence[Any]]" = None,
    *,
    queue: bool = True,
    timeout: Optional[float] = None,
    mode: "Union[TransactionMode, str, None]" = None,
    decode_mapper: "Optional[Callable[[list[Any]], Any]]" = None,
    cache_statement: Optional[str] = None,
) -> "Outcome[Result]":
    """Run ``statement`` with ``params`` in a single request.

    The statement is parsed unnamed unless ``cache_statement`` names it, in
    which case it is prepared once per connection and reused. For
    ``COPY ... FROM STDIN``, ``params`` holds the copy data chunks.

    Example::

        match pgdispatch.query(pool, "SELECT $1::int + 1", [41]):
            case Ok(result):
                assert result.rows == [[42]]
    """
    sql = _check_sql(statement)
    params = _check_params(params, sql)
    options = RequestOptions(
        queue=queue, timeout=timeout, mode=mode, decode_mapper=decode_mapper, cache_statement=cache_statement
    )
    with request_scope():
        log_with_context(
            logger, logging.DEBUG, "Dispatching query", handle=type(handle).__name__, statement_name=cache_statement
        )
        if options.cache_statement:
            return cached_query(handle, sql, params, options)
        return prepare_execute_unnamed(handle, Statement(UNNAMED, sql), params, options)


def query_or_raise(handle: "Handle", statement: str, params: "Optional[Sequence[Any]]" = None, **kwargs: Any) -> "Result":
    return query(handle, statement, params, **kwargs).unwrap()


def prepare(
    handle: "Handle",
    name: str,
    statement: str,
    *,
    queue: bool = True,
    timeout: Optional[float] = None,
    mode: "Union[TransactionMode, str, None]" = None,
) -> "Outcome[Statement]":
    """Prepare ``statement`` under ``name`` on the connection.

    A statement prepared through a pool lives on whichever connection served the
    request; execute it in the same transaction to be sure to reach it.
    """
    sql = _check_sql(statement)
    prepared = Statement(name=name, statement=sql)
    options = RequestOptions(queue=queue, timeout=timeout, mode=mode)
    return request(handle, lambda wire: wire.prepare(prepared), options)


def prepare_or_raise(handle: "Handle", name: str, statement: str, **kwargs: Any) -> Statement:
    return prepare(handle, name, statement, **kwargs).unwrap()


def prepare_execute(
    handle: "Handle",
    name: str,
    statement: str,
    params: "Optional[Sequence[Any]]" = None,
    *,
    queue: bool = True,
    timeout: Optional[float] = None,
    mode: "Union[TransactionMode, str, None]" = None,
    decode_mapper: "Optional[Callable[[list[Any]], Any]]" = None,
    cache_statement: Optional[str] = None,
) -> "Outcome[tuple[Statement, Result]]":
    """Prepare ``statement`` under ``name`` and execute it in one request.

    With ``cache_statement`` the statement is prepared under that name once per
    connection and reused, falling back to the unnamed statement when the
    server refuses named statements. The returned statement is then the
    unnamed one.
    """
    sql = _check_sql(statement)
    params = _check_params(params, sql)
    options = RequestOptions(
        queue=queue, timeout=timeout, mode=mode, decode_mapper=decode_mapper, cache_statement=cache_statement
    )
    if options.cache_statement:
        return cached_prepare_execute(handle, sql, params, options)
    return run_prepare_execute(handle, Statement(name=name, statement=sql), params, options)


def prepare_execute_or_raise(
    handle: "Handle", name: str, statement: str, params: "Optional[Sequence[Any]]" = None, **kwargs: Any
) -> "tuple[Statement, Result]":
    return prepare_execute(handle, name, statement, params, **kwargs).unwrap()


def execute(
    handle: "Handle",
    statement: Statement,
    params: "Optional[Sequence[Any]]" = None,
    *,
    queue: bool = True,
    timeout: Optional[float] = None,
    mode: "Union[TransactionMode, str, None]" = None,
    decode_mapper: "Optional[Callable[[list[Any]], Any]]" = None,
) -> "Outcome[Result]":
    """Execute a statement returned by :func:`prepare`."""
    prepared = _check_statement(statement)
    params = _check_params(params, prepared.statement)
    options = RequestOptions(queue=queue, timeout=timeout, mode=mode, decode_mapper=decode_mapper)
    outcome = request(handle, lambda wire: wire.execute(prepared, params), options)
    return outcome.map(lambda result: result.map_rows(options.decode_mapper))


def execute_or_raise(
    handle: "Handle", statement: Statement, params: "Optional[Sequence[Any]]" = None, **kwargs: Any
) -> "Result":
    return execute(handle, statement, params, **kwargs).unwrap()


def close(
    handle: "Handle",
    statement: Statement,
    *,
    queue: bool = True,
    timeout: Optional[float] = None,
    mode: "Union[TransactionMode, str, None]" = None,
) -> "Outcome[None]":
    """Release a prepared statement on the server.

    Closing a statement the connection does not know is an error; closing the
    unnamed statement always succeeds.
    """
    prepared = _check_statement(statement)
    options = RequestOptions(queue=queue, timeout=timeout, mode=mode)
    return request(handle, lambda wire: wire.close(prepared), options)


def close_or_raise(handle: "Handle", statement: Statement, **kwargs: Any) -> None:
    close(handle, statement, **kwargs).unwrap()


def parameters(handle: "Handle", *, queue: bool = True, timeout: Optional[float] = None) -> "dict[str, str]":
    """Return the server parameters reported by the connection (``server_version``, ``TimeZone``, ...).

    Raises:
        PgDispatchError: If no connection could be checked out.
    """
    options = RequestOptions(queue=queue, timeout=timeout)
    return request(handle, lambda wire: wire.parameters(), options).unwrap()
