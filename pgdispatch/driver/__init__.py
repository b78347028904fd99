from pgdispatch.driver._dispatch import (
    close,
    close_or_raise,
    execute,
    execute_or_raise,
    parameters,
    prepare,
    prepare_execute,
    prepare_execute_or_raise,
    prepare_or_raise,
    query,
    query_or_raise,
)
from pgdispatch.driver._pool import Handle, Pool, Session, start, status
from pgdispatch.driver._stream import Stream, stream
from pgdispatch.driver._transaction import rollback, transaction

__all__ = (
    "Handle",
    "Pool",
    "Session",
    "Stream",
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
    "rollback",
    "start",
    "status",
    "stream",
    "transaction",
)
