"""Data model shared by the dispatcher, the pool and the wire adapters."""

from pgdispatch.core.options import DEFAULT_MAX_ROWS, DEFAULT_TIMEOUT, RequestOptions, TransactionMode
from pgdispatch.core.outcome import Err, Ok, Outcome
from pgdispatch.core.result import Result, parse_command_tag
from pgdispatch.core.statement import UNNAMED, CacheMode, Statement

__all__ = (
    "DEFAULT_MAX_ROWS",
    "DEFAULT_TIMEOUT",
    "UNNAMED",
    "CacheMode",
    "Err",
    "Ok",
    "Outcome",
    "RequestOptions",
    "Result",
    "Statement",
    "TransactionMode",
    "parse_command_tag",
)
