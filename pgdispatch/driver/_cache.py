"""Named statement caching with an unnamed fallback.

A request run with ``cache_statement=name`` is prepared once per connection and
reused while its text stays the same. Some servers and proxies refuse named
statements with ``feature_not_supported``; the request is then retried as an
unnamed statement, unless it ran inside a transaction that the failure has
already doomed.
"""

from typing import TYPE_CHECKING, Any

from pgdispatch.core.outcome import Err, Ok
from pgdispatch.core.statement import CacheMode, Statement
from pgdispatch.driver._pool import Session, request
from pgdispatch.exceptions import ErrorKind, PgDispatchError
from pgdispatch.utils.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Sequence

    from pgdispatch.core.options import RequestOptions
    from pgdispatch.core.outcome import Outcome
    from pgdispatch.core.result import Result
    from pgdispatch.driver._pool import Handle

__all__ = ("cached_prepare_execute", "cached_query", "prepare_execute_unnamed", "run_prepare_execute")

logger = get_logger("driver.cache")


def run_prepare_execute(
    handle: "Handle", statement: Statement, params: "Sequence[Any]", options: "RequestOptions"
) -> "Outcome[tuple[Statement, Result]]":
    outcome = request(handle, lambda wire: wire.prepare_execute(statement, params), options)
    return outcome.map(lambda pair: (pair[0], pair[1].map_rows(options.decode_mapper)))


def prepare_execute_unnamed(
    handle: "Handle", statement: Statement, params: "Sequence[Any]", options: "RequestOptions"
) -> "Outcome[Result]":
    return run_prepare_execute(handle, statement, params, options).map(lambda pair: pair[1])


def _in_failed_transaction(handle: "Handle") -> bool:
    return isinstance(handle, Session) and handle.status() == "error"


def cached_prepare_execute(
    handle: "Handle", sql: str, params: "Sequence[Any]", options: "RequestOptions"
) -> "Outcome[tuple[Statement, Result]]":
    """Prepare and execute ``sql`` through the per-connection cache under ``options.cache_statement``.

    On fallback the returned statement is the unnamed one.
    """
    name = options.cache_statement or ""
    statement = Statement(name=name, statement=sql, cache=CacheMode.STATEMENT)
    outcome = run_prepare_execute(handle, statement, params, options)
    match outcome:
        case Ok(_):
            return outcome
        case Err(PgDispatchError() as error):
            match error.kind:
                case ErrorKind.FEATURE_NOT_SUPPORTED:
                    if _in_failed_transaction(handle):
                        return outcome
                    logger.warning(
                        "Named statement %r not supported, retrying unnamed: %s",
                        name,
                        error,
                        extra={"extra_fields": {"statement_name": name, "sqlstate": error.sqlstate}},
                    )
                    return run_prepare_execute(handle, statement.as_unnamed(), params, options)
                case ErrorKind.DATABASE | ErrorKind.CONNECTION | ErrorKind.OWNERSHIP | ErrorKind.PROGRAMMING:
                    return outcome
    return outcome


def cached_query(handle: "Handle", sql: str, params: "Sequence[Any]", options: "RequestOptions") -> "Outcome[Result]":
    return cached_prepare_execute(handle, sql, params, options).map(lambda pair: pair[1])
