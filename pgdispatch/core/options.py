"""Per-request options shared by every entry point."""

from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional, Union

from pgdispatch.exceptions import ImproperConfigurationError

if TYPE_CHECKING:
    from collections.abc import Callable

__all__ = ("DEFAULT_MAX_ROWS", "DEFAULT_TIMEOUT", "RequestOptions", "TransactionMode")

DEFAULT_MAX_ROWS = 500
DEFAULT_TIMEOUT = 15.0
"""Seconds."""


class TransactionMode(str, Enum):
    """How a request or nested transaction behaves inside a transaction.

    ``TRANSACTION`` joins the surrounding transaction, so a failure aborts all of it.
    ``SAVEPOINT`` wraps the work in a savepoint that is rolled back on failure.
    """

    TRANSACTION = "transaction"
    SAVEPOINT = "savepoint"


def coerce_mode(mode: "Union[TransactionMode, str, None]") -> Optional[TransactionMode]:
    if mode is None or isinstance(mode, TransactionMode):
        return mode
    try:
        return TransactionMode(mode)
    except ValueError:
        msg = f"Invalid mode {mode!r}, expected 'transaction' or 'savepoint'"
        raise ImproperConfigurationError(msg) from None


@dataclass(frozen=True)
class RequestOptions:
    """Options accepted by every request.

    ``timeout`` and ``mode`` default to None, meaning: use the surrounding
    transaction's remaining time and mode, or ``DEFAULT_TIMEOUT`` and
    ``TransactionMode.TRANSACTION`` outside of one.
    """

    queue: bool = True
    timeout: Optional[float] = None
    mode: Optional[TransactionMode] = None
    decode_mapper: "Optional[Callable[[list[Any]], Any]]" = None
    cache_statement: Optional[str] = None
    max_rows: int = DEFAULT_MAX_ROWS

    def __post_init__(self) -> None:
        object.__setattr__(self, "mode", coerce_mode(self.mode))
        if self.timeout is not None and self.timeout <= 0:
            msg = f"timeout must be a positive number of seconds, got {self.timeout!r}"
            raise ImproperConfigurationError(msg)
        if self.max_rows <= 0:
            msg = f"max_rows must be positive, got {self.max_rows!r}"
            raise ImproperConfigurationError(msg)

    @property
    def effective_timeout(self) -> float:
        return DEFAULT_TIMEOUT if self.timeout is None else self.timeout

    def replace(self, **changes: Any) -> "RequestOptions":
        return replace(self, **changes)
