"""pgdispatch: request orchestration for PostgreSQL connections."""

from pgdispatch import adapters, config, core, driver, exceptions, utils
from pgdispatch.__metadata__ import __version__
from pgdispatch.config import ConnectionSettings, PostgresConnectionParams, PrepareMode, TransactionStrictness
from pgdispatch.core import (
    DEFAULT_MAX_ROWS,
    DEFAULT_TIMEOUT,
    CacheMode,
    Err,
    Ok,
    Outcome,
    RequestOptions,
    Result,
    Statement,
    TransactionMode,
)
from pgdispatch.driver import (
    Pool,
    Session,
    Stream,
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
    rollback,
    start,
    status,
    stream,
    transaction,
)
from pgdispatch.exceptions import (
    ConnectionLostError,
    ConnectionUnavailableError,
    DatabaseError,
    ErrorKind,
    ImproperConfigurationError,
    OwnershipError,
    ParameterError,
    PgDispatchError,
    QueryTimeoutError,
    StreamBusyError,
    TransactionRollbackError,
    TransactionStateError,
)

__all__ = (
    "DEFAULT_MAX_ROWS",
    "DEFAULT_TIMEOUT",
    "CacheMode",
    "ConnectionLostError",
    "ConnectionSettings",
    "ConnectionUnavailableError",
    "DatabaseError",
    "Err",
    "ErrorKind",
    "ImproperConfigurationError",
    "Ok",
    "Outcome",
    "OwnershipError",
    "ParameterError",
    "PgDispatchError",
    "Pool",
    "PostgresConnectionParams",
    "PrepareMode",
    "QueryTimeoutError",
    "RequestOptions",
    "Result",
    "Session",
    "Statement",
    "Stream",
    "StreamBusyError",
    "TransactionMode",
    "TransactionRollbackError",
    "TransactionStateError",
    "TransactionStrictness",
    "__version__",
    "adapters",
    "close",
    "close_or_raise",
    "config",
    "core",
    "driver",
    "exceptions",
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
    "utils",
)
