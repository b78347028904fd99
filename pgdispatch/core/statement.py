"""Prepared statement handles."""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from pgdispatch.utils.sql_text import CopyDirection, copy_direction

__all__ = ("UNNAMED", "CacheMode", "Statement")

UNNAMED = ""


class CacheMode(str, Enum):
    """Whether the wire keeps a named statement in its per-connection cache."""

    NONE = "none"
    STATEMENT = "statement"


@dataclass(frozen=True)
class Statement:
    """A statement identified by ``(name, cache)``.

    An empty ``name`` is the unnamed statement: it is parsed again on every
    execution and never outlives a single request. Named statements live on the
    connection that prepared them until closed or until that connection is lost.

    ``param_types``, ``columns`` and ``connection_id`` are filled in by the wire
    when the statement is prepared.
    """

    name: str
    statement: str
    cache: CacheMode = CacheMode.NONE
    param_types: "Optional[tuple[int, ...]]" = None
    columns: "Optional[tuple[str, ...]]" = None
    connection_id: Optional[int] = None

    @property
    def is_unnamed(self) -> bool:
        return self.name == UNNAMED

    @property
    def is_prepared(self) -> bool:
        return self.param_types is not None

    @property
    def copy_direction(self) -> CopyDirection:
        return copy_direction(self.statement)

    def with_metadata(
        self,
        *,
        param_types: "tuple[int, ...]",
        columns: "Optional[tuple[str, ...]]",
        connection_id: Optional[int],
    ) -> "Statement":
        return replace(self, param_types=param_types, columns=columns, connection_id=connection_id)

    def as_unnamed(self) -> "Statement":
        """Same text, no name and no caching."""
        return Statement(name=UNNAMED, statement=self.statement)
