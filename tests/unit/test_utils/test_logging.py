"""Request-scoped logging."""

import io
import logging

import pytest

import pgdispatch
from pgdispatch._serialization import decode_json
from pgdispatch.utils.logging import (
    JSONLogFormatter,
    RequestIDFilter,
    configure_logging,
    current_request_id,
    get_logger,
    log_with_context,
    request_scope,
)


@pytest.fixture
def restore_package_logger():
    logger = logging.getLogger("pgdispatch")
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield logger
    logger.handlers[:] = handlers
    logger.setLevel(level)
    logger.propagate = propagate


def test_get_logger_namespaces_names():
    assert get_logger().name == "pgdispatch"
    assert get_logger("driver").name == "pgdispatch.driver"
    assert get_logger("pgdispatch.adapters").name == "pgdispatch.adapters"


def test_get_logger_adds_filter_once():
    get_logger("driver")
    logger = get_logger("driver")

    assert sum(isinstance(f, RequestIDFilter) for f in logger.filters) == 1


def test_request_scope_sets_and_clears_id():
    assert current_request_id() is None

    with request_scope() as outer:
        assert current_request_id() == outer
        with request_scope() as inner:
            assert inner == outer

    assert current_request_id() is None


def test_json_formatter_includes_request_id_and_fields():
    record = logging.LogRecord("pgdispatch.driver", logging.ERROR, __file__, 10, "failed %s", ("insert",), None)
    record.extra_fields = {"connection_id": 42, "sqlstate": "25006"}

    with request_scope() as request_id:
        entry = decode_json(JSONLogFormatter().format(record))

    assert entry["message"] == "failed insert"
    assert entry["level"] == "ERROR"
    assert entry["logger"] == "pgdispatch.driver"
    assert entry["request_id"] == request_id
    assert entry["connection_id"] == 42
    assert entry["sqlstate"] == "25006"


def test_log_with_context_attaches_fields(caplog):
    logger = get_logger("tests")

    with caplog.at_level(logging.DEBUG, logger="pgdispatch"):
        log_with_context(logger, logging.DEBUG, "Executing query", statement_name="users", cached=False)

    record = caplog.records[-1]
    assert record.getMessage() == "Executing query"
    assert record.extra_fields == {"statement_name": "users", "cached": False}


def test_log_with_context_skips_disabled_levels(caplog):
    logger = get_logger("tests")

    with caplog.at_level(logging.WARNING, logger="pgdispatch"):
        log_with_context(logger, logging.DEBUG, "hidden")

    assert caplog.records == []


def test_requests_of_a_transaction_share_request_id(pool, caplog):
    def work(session):
        pgdispatch.query_or_raise(session, "SELECT 1")
        pgdispatch.query_or_raise(session, "SELECT 2")

    with caplog.at_level(logging.DEBUG, logger="pgdispatch"):
        pgdispatch.transaction(pool, work)
        pgdispatch.query_or_raise(pool, "SELECT 3")

    ids = [record.request_id for record in caplog.records if record.getMessage() == "Dispatching query"]
    assert len(ids) == 3
    assert ids[0] is not None
    assert ids[0] == ids[1]
    assert ids[2] not in {None, ids[0]}


def test_configure_logging_writes_json(restore_package_logger):
    stream = io.StringIO()
    configure_logging(level="debug", stream=stream)

    logger = restore_package_logger
    with request_scope() as request_id:
        get_logger("driver").warning("Request exceeded timeout", extra={"extra_fields": {"connection_id": 7}})

    entry = decode_json(stream.getvalue().splitlines()[-1])
    assert logger.level == logging.DEBUG
    assert logger.propagate is False
    assert entry["request_id"] == request_id
    assert entry["connection_id"] == 7


def test_configure_logging_plain_text(restore_package_logger):
    stream = io.StringIO()
    configure_logging(json=False, stream=stream)

    with request_scope() as request_id:
        get_logger("driver").info("Pool opened")

    assert f"[{request_id}] pgdispatch.driver: Pool opened" in stream.getvalue()
