from pgdispatch.adapters.psycopg._types import PsycopgConnection
from pgdispatch.adapters.psycopg.config import PsycopgConnectionSource, RedactedConnection
from pgdispatch.adapters.psycopg.driver import PsycopgWireConnection, condition_name, to_database_error

__all__ = (
    "PsycopgConnection",
    "PsycopgConnectionSource",
    "PsycopgWireConnection",
    "RedactedConnection",
    "condition_name",
    "to_database_error",
)
