"""Lightweight inspection of statement text.

Only COPY statements need to be recognized before they reach the server, since
they switch the connection into the COPY sub-protocol.
"""

import re
from enum import Enum
from functools import lru_cache

import sqlglot
from sqlglot import exp
from sqlglot.errors import SqlglotError

__all__ = ("CopyDirection", "copy_direction", "strip_leading_comments")

_LEADING_COMMENTS = re.compile(r"^(\s*(--[^\n]*(\n|$)|/\*.*?\*/))*\s*", re.DOTALL)
_COPY_KEYWORD = re.compile(r"COPY\b", re.IGNORECASE)
_COPY_FROM_STDIN = re.compile(r"\bFROM\s+STDIN\b", re.IGNORECASE)
_COPY_TO_STDOUT = re.compile(r"\bTO\s+STDOUT\b", re.IGNORECASE)


class CopyDirection(Enum):
    NONE = "none"
    FROM_STDIN = "from_stdin"
    TO_STDOUT = "to_stdout"
    FILE = "file"


def strip_leading_comments(sql: str) -> str:
    return _LEADING_COMMENTS.sub("", sql, count=1)


@lru_cache(maxsize=512)
def copy_direction(sql: str) -> CopyDirection:
    """Classify ``sql`` as a COPY statement and its data direction.

    Args:
        sql: Statement text.

    Returns:
        ``CopyDirection.NONE`` for anything that is not a COPY statement.
    """
    text = strip_leading_comments(sql)
    if not _COPY_KEYWORD.match(text):
        return CopyDirection.NONE

    try:
        expression = sqlglot.parse_one(text, dialect="postgres")
    except SqlglotError:
        expression = None

    if isinstance(expression, exp.Copy):
        files = expression.args.get("files") or []
        if any(str(f).upper() == "STDIN" for f in files):
            return CopyDirection.FROM_STDIN
        if any(str(f).upper() == "STDOUT" for f in files):
            return CopyDirection.TO_STDOUT

    # COPY (query) TO STDOUT and other forms sqlglot does not parse or classify
    if _COPY_FROM_STDIN.search(text):
        return CopyDirection.FROM_STDIN
    if _COPY_TO_STDOUT.search(text):
        return CopyDirection.TO_STDOUT
    return CopyDirection.FILE
