from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import TypeAlias

    from psycopg import Connection
    from psycopg.rows import TupleRow

    PsycopgConnection: TypeAlias = Connection[TupleRow]
else:
    from psycopg import Connection

    PsycopgConnection = Connection

__all__ = ("PsycopgConnection",)
