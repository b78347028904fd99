"""Result containers and command tag parsing."""

import pytest

from pgdispatch import Result
from pgdispatch.core.result import parse_command_tag


@pytest.mark.parametrize(
    ("tag", "expected"),
    [
        ("SELECT 3", ("select", 3)),
        ("INSERT 0 5", ("insert", 5)),
        ("UPDATE 0", ("update", 0)),
        ("DELETE 2", ("delete", 2)),
        ("COPY 10", ("copy", 10)),
        ("FETCH 4", ("fetch", 4)),
        ("CREATE TABLE", ("create_table", None)),
        ("BEGIN", ("begin", None)),
        ("ROLLBACK", ("rollback", None)),
        ("", ("", None)),
        (None, ("", None)),
    ],
)
def test_parse_command_tag(tag, expected) -> None:
    assert parse_command_tag(tag) == expected


def test_result_length_and_iteration() -> None:
    result = Result("select", ["id"], [[1], [2]], 2)

    assert len(result) == 2
    assert list(result) == [[1], [2]]
    assert len(Result("insert", num_rows=3)) == 0


def test_map_rows_returns_new_result() -> None:
    result = Result("select", ["id", "name"], [[1, "a"]], 1, connection_id=7)

    mapped = result.map_rows(lambda row: {"id": row[0], "name": row[1]})

    assert mapped.rows == [{"id": 1, "name": "a"}]
    assert mapped.connection_id == 7
    assert result.rows == [[1, "a"]]


def test_map_rows_without_mapper_or_rows() -> None:
    result = Result("insert", num_rows=1)

    assert result.map_rows(tuple) is result
    assert result.map_rows(None) is result


def test_one() -> None:
    assert Result("select", ["n"], [[1]], 1).one() == [1]

    with pytest.raises(ValueError, match="exactly one row"):
        Result("select", ["n"], [[1], [2]], 2).one()
    with pytest.raises(ValueError, match="got 0"):
        Result("update", num_rows=0).one()


def test_equality_ignores_connection() -> None:
    assert Result("select", ["n"], [[1]], 1, connection_id=1) == Result("select", ["n"], [[1]], 1, connection_id=2)
    assert Result("select", ["n"], [[1]], 1) != Result("select", ["n"], [[2]], 1)
