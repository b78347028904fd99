"""Unit tests for the psycopg_pool backed connection source."""

from unittest.mock import MagicMock

import psycopg
import pytest
from psycopg_pool import PoolClosed, PoolTimeout

import pgdispatch
from pgdispatch.adapters.psycopg import PsycopgConnectionSource, PsycopgWireConnection, RedactedConnection
from pgdispatch.adapters.psycopg import config as psycopg_config
from pgdispatch.driver import _pool
from pgdispatch.exceptions import ConnectionUnavailableError, ImproperConfigurationError

PARAMS = {"hostname": "db", "port": 5432, "database": "app", "username": "svc", "pool_size": 2, "timeout": 3}


@pytest.fixture
def pool_class(monkeypatch) -> MagicMock:
    """Replace ``ConnectionPool`` with a mock class."""
    mock_class = MagicMock()
    monkeypatch.setattr(psycopg_config, "ConnectionPool", mock_class)
    return mock_class


@pytest.fixture
def mock_pool(pool_class) -> MagicMock:
    return pool_class.return_value


@pytest.fixture
def source(pool_class) -> PsycopgConnectionSource:
    return PsycopgConnectionSource(PARAMS)


def test_pool_is_created_from_params(source, pool_class, mock_pool):
    kwargs = pool_class.call_args.kwargs

    assert kwargs["min_size"] == kwargs["max_size"] == 2
    assert kwargs["timeout"] == 3.0
    assert kwargs["open"] is False
    assert kwargs["connection_class"] is RedactedConnection
    assert kwargs["kwargs"]["host"] == "db"
    assert kwargs["kwargs"]["dbname"] == "app"
    assert kwargs["kwargs"]["autocommit"] is True
    mock_pool.open.assert_called_once_with(wait=False)


def test_sensitive_connection_errors_use_plain_connection(pool_class):
    PsycopgConnectionSource({**PARAMS, "show_sensitive_data_on_connection_error": True})

    assert pool_class.call_args.kwargs["connection_class"] is psycopg.Connection


def test_acquire_wraps_connection_once(source, mock_pool):
    connection = MagicMock()
    mock_pool.getconn.return_value = connection

    first = source.acquire(queue=True, timeout=5)
    second = source.acquire(queue=True, timeout=5)

    assert isinstance(first, PsycopgWireConnection)
    assert first is second
    assert first.connection is connection
    mock_pool.getconn.assert_called_with(timeout=5)


def test_acquire_without_queue_uses_minimal_timeout(source, mock_pool):
    source.acquire(queue=False, timeout=5)

    mock_pool.getconn.assert_called_once_with(timeout=0.001)


@pytest.mark.parametrize(
    ("error", "match"), [(PoolTimeout("timed out"), "after"), (PoolClosed("the pool is closed"), "closed")]
)
def test_acquire_errors(source, mock_pool, error, match):
    mock_pool.getconn.side_effect = error

    with pytest.raises(ConnectionUnavailableError, match=match):
        source.acquire(queue=True, timeout=1)


def test_acquire_without_queue_reports_busy_pool(source, mock_pool):
    mock_pool.getconn.side_effect = PoolTimeout("timed out")

    with pytest.raises(ConnectionUnavailableError, match="queue=False"):
        source.acquire(queue=False, timeout=1)


def test_release_returns_connection(source, mock_pool):
    connection = MagicMock()
    mock_pool.getconn.return_value = connection

    source.release(source.acquire(queue=True, timeout=1))

    mock_pool.putconn.assert_called_once_with(connection)


def test_wait_timeout(source, mock_pool):
    mock_pool.wait.side_effect = PoolTimeout("timed out")

    with pytest.raises(ConnectionUnavailableError, match="2 connection"):
        source.wait(1)


def test_close(source, mock_pool):
    source.close()

    mock_pool.close.assert_called_once()


def test_redacted_connection_hides_connect_details(monkeypatch):
    def _refuse(cls, *args, **kwargs):
        raise psycopg.OperationalError('password authentication failed for user "svc"')

    monkeypatch.setattr(psycopg.Connection, "connect", classmethod(_refuse))

    with pytest.raises(psycopg.OperationalError) as exc_info:
        RedactedConnection.connect("host=db user=svc")

    assert "svc" not in str(exc_info.value)
    assert exc_info.value.__cause__ is None


def test_start_builds_pool(pool_class):
    pool = pgdispatch.start(PARAMS, prepare="unnamed")

    assert isinstance(pool, pgdispatch.Pool)
    assert isinstance(pool.source, PsycopgConnectionSource)
    assert pool.settings.pool_size == 2
    assert pool.settings.prepare is pgdispatch.PrepareMode.UNNAMED


def test_start_validates_params(pool_class):
    with pytest.raises(ImproperConfigurationError):
        pgdispatch.start(PARAMS, transactions="sometimes")


def test_start_wait_closes_source_on_failure(monkeypatch):
    created = []

    class _Source:
        def __init__(self, params, settings):
            self.closed = False
            created.append(self)

        def wait(self, timeout):
            raise ConnectionUnavailableError("Pool could not establish 2 connection(s)")

        def close(self):
            self.closed = True

    monkeypatch.setattr(_pool, "PsycopgConnectionSource", _Source)

    with pytest.raises(ConnectionUnavailableError):
        pgdispatch.start(PARAMS, wait=True)

    assert created[0].closed
