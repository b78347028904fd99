"""Connection source backed by a ``psycopg_pool.ConnectionPool``."""

import threading
import weakref
from typing import TYPE_CHECKING, Any, Optional

import psycopg
from psycopg import Connection
from psycopg_pool import ConnectionPool, PoolClosed, PoolTimeout, TooManyRequests

from pgdispatch.adapters.psycopg.driver import PsycopgWireConnection
from pgdispatch.config import ConnectionSettings, to_psycopg_kwargs
from pgdispatch.exceptions import ConnectionUnavailableError
from pgdispatch.utils.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Mapping

    from pgdispatch.adapters.psycopg._types import PsycopgConnection

__all__ = ("PsycopgConnectionSource", "RedactedConnection")

logger = get_logger("adapters.psycopg")

# psycopg_pool waits on a condition; a near-zero timeout returns an idle connection or fails
_NO_QUEUE_TIMEOUT = 0.001


class RedactedConnection(Connection):  # type: ignore[type-arg]
    """Connection whose connect errors omit hosts, users and server messages."""

    @classmethod
    def connect(cls, *args: Any, **kwargs: Any) -> Any:  # type: ignore[override]
        try:
            return super().connect(*args, **kwargs)
        except psycopg.OperationalError:
            msg = "Connection failed (set show_sensitive_data_on_connection_error=True for details)"
            raise psycopg.OperationalError(msg) from None


class PsycopgConnectionSource:
    """Hands out :class:`PsycopgWireConnection` objects from a psycopg pool.

    Every physical connection keeps one wire object for its lifetime, so its
    prepared statement cache survives across checkouts.
    """

    __slots__ = ("_lock", "_pool", "_wires", "settings")

    def __init__(self, params: "Mapping[str, Any]", settings: Optional[ConnectionSettings] = None) -> None:
        self.settings = settings or ConnectionSettings.from_params(params)
        self._wires: weakref.WeakKeyDictionary[Any, PsycopgWireConnection] = weakref.WeakKeyDictionary()
        self._lock = threading.Lock()
        self._pool = self._create_pool(params)

    def _create_pool(self, params: "Mapping[str, Any]") -> ConnectionPool:
        logger.info("Creating psycopg connection pool", extra={"extra_fields": {"pool_size": self.settings.pool_size}})
        connection_class = Connection if self.settings.show_sensitive_data_on_connection_error else RedactedConnection
        try:
            pool = ConnectionPool(
                kwargs=to_psycopg_kwargs(params),
                connection_class=connection_class,
                min_size=self.settings.pool_size,
                max_size=self.settings.pool_size,
                timeout=self.settings.timeout,
                name="pgdispatch",
                open=False,
            )
            pool.open(wait=False)
        except Exception:
            logger.exception("Failed to create psycopg connection pool")
            raise
        logger.info("Psycopg connection pool created")
        return pool

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    def wait(self, timeout: float) -> None:
        """Block until the pool holds ``pool_size`` connections."""
        try:
            self._pool.wait(timeout=timeout)
        except PoolTimeout as e:
            msg = f"Pool could not establish {self.settings.pool_size} connection(s) within {timeout}s"
            raise ConnectionUnavailableError(msg) from e

    def _wire_for(self, connection: "PsycopgConnection") -> PsycopgWireConnection:
        with self._lock:
            wire = self._wires.get(connection)
            if wire is None:
                wire = self._wires[connection] = PsycopgWireConnection(connection, self.settings)
            return wire

    def acquire(self, *, queue: bool, timeout: float) -> PsycopgWireConnection:
        try:
            connection = self._pool.getconn(timeout=timeout if queue else _NO_QUEUE_TIMEOUT)
        except PoolTimeout as e:
            if queue:
                msg = f"No connection available after {timeout:.3f}s"
            else:
                msg = "No idle connection available and queue=False"
            raise ConnectionUnavailableError(msg) from e
        except (PoolClosed, TooManyRequests) as e:
            raise ConnectionUnavailableError(str(e)) from e
        return self._wire_for(connection)

    def release(self, connection: PsycopgWireConnection) -> None:
        self._pool.putconn(connection.connection)

    def close(self) -> None:
        logger.info("Closing psycopg connection pool")
        try:
            self._pool.close()
        except Exception:
            logger.exception("Failed to close psycopg connection pool")
            raise
        logger.info("Psycopg connection pool closed")
