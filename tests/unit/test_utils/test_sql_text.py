import pytest

from pgdispatch.utils.sql_text import CopyDirection, copy_direction, strip_leading_comments


@pytest.mark.parametrize(
    ("sql", "expected"),
    [
        ("SELECT 1", CopyDirection.NONE),
        ("INSERT INTO copy_log VALUES (1)", CopyDirection.NONE),
        ("COPY items FROM STDIN", CopyDirection.FROM_STDIN),
        ("copy items (id, name) from stdin with (format csv)", CopyDirection.FROM_STDIN),
        ("COPY items TO STDOUT", CopyDirection.TO_STDOUT),
        ("COPY (SELECT * FROM items WHERE id > 3) TO STDOUT WITH (FORMAT csv)", CopyDirection.TO_STDOUT),
        ("-- export\nCOPY items TO STDOUT", CopyDirection.TO_STDOUT),
        ("/* load */ COPY items FROM STDIN", CopyDirection.FROM_STDIN),
        ("COPY items FROM '/tmp/items.csv'", CopyDirection.FILE),
    ],
)
def test_copy_direction(sql, expected):
    assert copy_direction(sql) is expected


def test_strip_leading_comments():
    assert strip_leading_comments("  -- one\n/* two */\n SELECT 1 -- trailing") == "SELECT 1 -- trailing"
    assert strip_leading_comments("SELECT 1") == "SELECT 1"
