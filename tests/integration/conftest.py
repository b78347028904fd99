from __future__ import annotations

from collections.abc import Generator

import docker
import pytest
from docker.errors import DockerException
from pytest_databases.docker.postgres import PostgresService

import pgdispatch

TABLE = "pgdispatch_items"


def _docker_available() -> bool:
    try:
        docker.from_env().ping()
    except DockerException:
        return False
    return True


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if _docker_available():
        return
    skip = pytest.mark.skip(reason="Docker is required for integration tests")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


@pytest.fixture
def pool(postgres_service: PostgresService) -> Generator[pgdispatch.Pool, None, None]:
    """A single-connection pool with an empty ``pgdispatch_items`` table."""
    pool = pgdispatch.start(
        hostname=postgres_service.host,
        port=postgres_service.port,
        username=postgres_service.user,
        password=postgres_service.password,
        database=postgres_service.database,
        parameters={"application_name": "pgdispatch-tests"},
        timeout=10,
        wait=True,
    )
    pgdispatch.query_or_raise(pool, f"CREATE TABLE IF NOT EXISTS {TABLE} (id integer PRIMARY KEY, name text)")
    pgdispatch.query_or_raise(pool, f"TRUNCATE {TABLE}")
    yield pool
    pool.close()
