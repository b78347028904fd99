from pgdispatch.utils import logging, sql_text

__all__ = ("logging", "sql_text")
