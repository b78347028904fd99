"""Result of a single request or stream chunk."""

from typing import TYPE_CHECKING, Any, Optional

from mypy_extensions import mypyc_attr

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

__all__ = ("Result", "parse_command_tag")

# Tags whose trailing integer is not a row count ("INSERT oid rows" keeps the last one)
_TAGS_WITHOUT_COUNT = frozenset({"BEGIN", "COMMIT", "ROLLBACK", "SAVEPOINT", "RELEASE", "DEALLOCATE", "PREPARE"})


def parse_command_tag(tag: Optional[str]) -> "tuple[str, Optional[int]]":
    """Split a command status such as ``INSERT 0 3`` into ``("insert", 3)``.

    Commands without a row count (``CREATE TABLE``) return ``None`` for it.
    """
    if not tag:
        return "", None
    words = tag.split()
    count: Optional[int] = None
    if words[-1].isdigit() and words[0].upper() not in _TAGS_WITHOUT_COUNT:
        count = int(words[-1])
        words = [w for w in words if not w.isdigit()]
    return "_".join(words).lower(), count


@mypyc_attr(allow_interpreted_subclasses=True)
class Result:
    """Rows, columns and row count of a completed request.

    Args:
        command: Lowercased command tag (``select``, ``insert``, ``copy``, ...).
        columns: Column names, or None for commands that return no rows.
        rows: Row values as lists, or None for commands that return no rows.
        num_rows: Rows returned or affected.
        connection_id: Backend process id that served the request.
        messages: Notices emitted by the server while running the request.
    """

    __slots__ = ("columns", "command", "connection_id", "messages", "num_rows", "rows")

    def __init__(
        self,
        command: str,
        columns: "Optional[list[str]]" = None,
        rows: "Optional[list[Any]]" = None,
        num_rows: int = 0,
        connection_id: Optional[int] = None,
        messages: "Optional[list[dict[str, Any]]]" = None,
    ) -> None:
        self.command = command
        self.columns = columns
        self.rows = rows
        self.num_rows = num_rows
        self.connection_id = connection_id
        self.messages = messages if messages is not None else []

    def __repr__(self) -> str:
        return (
            f"Result(command={self.command!r}, columns={self.columns!r}, rows={self.rows!r}, "
            f"num_rows={self.num_rows!r}, connection_id={self.connection_id!r})"
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Result):
            return NotImplemented
        return (
            self.command == other.command
            and self.columns == other.columns
            and self.rows == other.rows
            and self.num_rows == other.num_rows
        )

    __hash__ = None  # type: ignore[assignment]

    def __iter__(self) -> "Iterator[Any]":
        return iter(self.rows or ())

    def __len__(self) -> int:
        return len(self.rows or ())

    def map_rows(self, decode_mapper: "Optional[Callable[[list[Any]], Any]]") -> "Result":
        """Apply ``decode_mapper`` to every row and return a new result."""
        if decode_mapper is None or self.rows is None:
            return self
        return Result(
            command=self.command,
            columns=self.columns,
            rows=[decode_mapper(row) for row in self.rows],
            num_rows=self.num_rows,
            connection_id=self.connection_id,
            messages=self.messages,
        )

    def one(self) -> Any:
        """Return the single row of the result.

        Raises:
            ValueError: If the result does not hold exactly one row.
        """
        if self.rows is None or len(self.rows) != 1:
            msg = f"Expected exactly one row, got {0 if self.rows is None else len(self.rows)}"
            raise ValueError(msg)
        return self.rows[0]
