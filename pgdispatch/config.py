"""Connection configuration.

Parameters are accepted as a :class:`PostgresConnectionParams` mapping,
completed from the standard libpq environment variables and normalized into
:class:`ConnectionSettings` for the pool, plus the keyword arguments passed to
``psycopg.connect``.
"""

import math
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, TypedDict

from typing_extensions import NotRequired

from pgdispatch.core.options import DEFAULT_TIMEOUT
from pgdispatch.exceptions import ImproperConfigurationError

__all__ = (
    "ConnectionSettings",
    "PostgresConnectionParams",
    "PrepareMode",
    "TransactionStrictness",
    "default_params",
    "to_psycopg_kwargs",
)

DEFAULT_PORT = 5432
_SOCKET_PORT = re.compile(r"\.s\.PGSQL\.(\d+)$")
_SSL_OPTION_KEYS = frozenset({"sslmode", "sslcert", "sslkey", "sslrootcert", "sslcrl", "sslpassword", "sslcompression"})


class PrepareMode(str, Enum):
    """``NAMED`` keeps prepared statements on the server, ``UNNAMED`` re-parses every request."""

    NAMED = "named"
    UNNAMED = "unnamed"


class TransactionStrictness(str, Enum):
    """``STRICT`` fails on unexpected server transaction status, ``NAIVE`` trusts the caller."""

    STRICT = "strict"
    NAIVE = "naive"


class PostgresConnectionParams(TypedDict, total=False):
    """Connection parameters accepted by :func:`pgdispatch.start`."""

    hostname: NotRequired[str]
    """Server hostname (default: ``PGHOST``, then ``localhost``)."""

    socket_dir: NotRequired[str]
    """Directory holding the server's UNIX socket; takes precedence over ``hostname``."""

    socket: NotRequired[str]
    """Full path of the UNIX socket; takes precedence over ``socket_dir`` and ``hostname``."""

    port: NotRequired[int]
    """Server port (default: ``PGPORT``, then 5432)."""

    database: NotRequired[str]
    """Database name (default: ``PGDATABASE``; required)."""

    username: NotRequired[str]
    """User name (default: ``PGUSER``, then ``USER``)."""

    password: NotRequired[str]
    """Password (default: ``PGPASSWORD``)."""

    parameters: NotRequired[dict[str, str]]
    """Run-time parameters set on every new connection (``application_name``, ``search_path``, ...)."""

    timeout: NotRequired[float]
    """Default request timeout in seconds."""

    connect_timeout: NotRequired[float]
    """Connect timeout in seconds (defaults to ``timeout``)."""

    ssl: NotRequired[bool]
    """Require an SSL connection."""

    ssl_opts: NotRequired[dict[str, str]]
    """libpq SSL options (``sslrootcert``, ``sslcert``, ``sslkey``, ...)."""

    prepare: NotRequired[str]
    """``"named"`` (default) or ``"unnamed"``; use unnamed behind transaction-pooling proxies."""

    transactions: NotRequired[str]
    """``"strict"`` (default) or ``"naive"``."""

    disconnect_on_error_codes: NotRequired[list[str]]
    """Condition names or SQLSTATEs that close the connection when returned by the server."""

    pool_size: NotRequired[int]
    """Number of connections kept by the pool (default: 1)."""

    show_sensitive_data_on_connection_error: NotRequired[bool]
    """Keep server and host details in connection error messages."""


@dataclass(frozen=True)
class ConnectionSettings:
    """Normalized settings the pool and the wire adapters act on."""

    prepare: PrepareMode = PrepareMode.NAMED
    transactions: TransactionStrictness = TransactionStrictness.STRICT
    disconnect_on_error_codes: "frozenset[str]" = frozenset()
    pool_size: int = 1
    timeout: float = DEFAULT_TIMEOUT
    show_sensitive_data_on_connection_error: bool = False

    @classmethod
    def from_params(cls, params: "Mapping[str, Any]") -> "ConnectionSettings":
        pool_size = params.get("pool_size", 1)
        if not isinstance(pool_size, int) or pool_size < 1:
            msg = f"pool_size must be a positive integer, got {pool_size!r}"
            raise ImproperConfigurationError(msg)
        return cls(
            prepare=_enum_option(PrepareMode, "prepare", params.get("prepare", PrepareMode.NAMED)),
            transactions=_enum_option(
                TransactionStrictness, "transactions", params.get("transactions", TransactionStrictness.STRICT)
            ),
            disconnect_on_error_codes=frozenset(params.get("disconnect_on_error_codes") or ()),
            pool_size=pool_size,
            timeout=float(params.get("timeout", DEFAULT_TIMEOUT)),
            show_sensitive_data_on_connection_error=bool(params.get("show_sensitive_data_on_connection_error", False)),
        )


def _enum_option(enum_type: Any, key: str, value: Any) -> Any:
    try:
        return enum_type(value)
    except ValueError:
        choices = ", ".join(repr(m.value) for m in enum_type)
        msg = f"Invalid {key} option {value!r}, expected one of {choices}"
        raise ImproperConfigurationError(msg) from None


def default_params(
    params: "Mapping[str, Any]", environ: "Optional[Mapping[str, str]]" = None
) -> PostgresConnectionParams:
    """Fill in missing connection parameters from the environment.

    Args:
        params: Parameters given by the caller; they always win.
        environ: Environment to read from (default: ``os.environ``).

    Raises:
        ImproperConfigurationError: If no database name can be determined.

    Returns:
        A new parameter mapping.
    """
    env = os.environ if environ is None else environ
    merged: dict[str, Any] = {k: v for k, v in params.items() if v is not None}

    if "hostname" not in merged and "socket_dir" not in merged and "socket" not in merged:
        merged["hostname"] = env.get("PGHOST", "localhost")
    if "port" not in merged:
        merged["port"] = int(env.get("PGPORT", DEFAULT_PORT))
    if "database" not in merged and "PGDATABASE" in env:
        merged["database"] = env["PGDATABASE"]
    if "username" not in merged:
        username = env.get("PGUSER") or env.get("USER")
        if username:
            merged["username"] = username
    if "password" not in merged and "PGPASSWORD" in env:
        merged["password"] = env["PGPASSWORD"]

    if "database" not in merged:
        msg = "A database name is required: pass database= or set PGDATABASE"
        raise ImproperConfigurationError(msg)
    return PostgresConnectionParams(**merged)  # type: ignore[typeddict-item]


def _escape_option_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace(" ", "\\ ")


def to_psycopg_kwargs(params: "Mapping[str, Any]") -> "dict[str, Any]":
    """Translate connection parameters into ``psycopg.connect`` keyword arguments."""
    kwargs: dict[str, Any] = {"autocommit": True}

    if socket := params.get("socket"):
        directory, _, filename = str(socket).rpartition("/")
        kwargs["host"] = directory or "/"
        if match := _SOCKET_PORT.search(filename):
            kwargs["port"] = int(match.group(1))
    elif socket_dir := params.get("socket_dir"):
        kwargs["host"] = str(socket_dir)
    elif hostname := params.get("hostname"):
        kwargs["host"] = hostname

    if "port" not in kwargs and params.get("port") is not None:
        kwargs["port"] = int(params["port"])
    if database := params.get("database"):
        kwargs["dbname"] = database
    if username := params.get("username"):
        kwargs["user"] = username
    if (password := params.get("password")) is not None:
        kwargs["password"] = password

    connect_timeout = params.get("connect_timeout", params.get("timeout"))
    if connect_timeout is not None:
        # libpq only accepts whole seconds and treats 0 as "wait forever"
        kwargs["connect_timeout"] = max(int(math.ceil(connect_timeout)), 2)

    kwargs["sslmode"] = "require" if params.get("ssl", False) else "disable"
    for key, value in (params.get("ssl_opts") or {}).items():
        if key not in _SSL_OPTION_KEYS:
            msg = f"Unsupported ssl option {key!r}"
            raise ImproperConfigurationError(msg)
        kwargs[key] = value

    runtime = dict(params.get("parameters") or {})
    if application_name := runtime.pop("application_name", None):
        kwargs["application_name"] = application_name
    if runtime:
        kwargs["options"] = " ".join(f"-c {key}={_escape_option_value(str(value))}" for key, value in runtime.items())
    return kwargs
