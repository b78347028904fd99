"""Discriminated success/failure values returned by the non-raising entry points.

Usage::

    match pgdispatch.query(pool, "SELECT 1", []):
        case Ok(result):
            print(result.rows)
        case Err(error):
            log.warning("query failed: %s", error)
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar, Union

from pgdispatch.exceptions import TransactionRollbackError

if TYPE_CHECKING:
    from collections.abc import Callable

__all__ = ("Err", "Ok", "Outcome")

T = TypeVar("T")
U = TypeVar("U")


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """Successful outcome holding ``value``."""

    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_or(self, default: T) -> T:
        return self.value

    def map(self, f: "Callable[[T], U]") -> "Ok[U]":
        return Ok(f(self.value))

    def __repr__(self) -> str:
        return f"Ok({self.value!r})"


@dataclass(frozen=True, slots=True)
class Err:
    """Failed outcome.

    ``error`` is usually an exception; for a transaction ended by
    :func:`pgdispatch.rollback` it is the reason the caller passed.
    """

    error: Any

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> Any:
        """Raise the error.

        A non-exception rollback reason is raised as :class:`TransactionRollbackError`.
        """
        if isinstance(self.error, BaseException):
            raise self.error
        raise TransactionRollbackError(self.error)

    def unwrap_or(self, default: T) -> T:
        return default

    def map(self, f: "Callable[[Any], Any]") -> "Err":
        return self

    def __repr__(self) -> str:
        return f"Err({self.error!r})"


Outcome = Union[Ok[T], Err]
