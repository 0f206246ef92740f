"""Dialect-aware SQL constructs used by the search queries.

PostgreSQL gets the native pgvector operator and a date cast. Other dialects
(SQLite in tests) get plain function calls that the connection registers.
"""

from sqlalchemy import Date, Float
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql.functions import FunctionElement


class cosine_distance(FunctionElement):
    """Cosine distance between an embedding column and a query vector."""

    type = Float()
    name = "cosine_distance"
    inherit_cache = True


class as_date(FunctionElement):
    """Calendar-date part of a timestamp column."""

    type = Date()
    name = "as_date"
    inherit_cache = True


@compiles(cosine_distance)
def _compile_cosine_distance(element, compiler, **kw):
    return "cosine_distance(%s)" % compiler.process(element.clauses, **kw)


@compiles(cosine_distance, "postgresql")
def _compile_cosine_distance_pg(element, compiler, **kw):
    left, right = list(element.clauses)
    return "(%s <=> %s)" % (compiler.process(left, **kw), compiler.process(right, **kw))


@compiles(as_date)
def _compile_as_date(element, compiler, **kw):
    return "date(%s)" % compiler.process(element.clauses, **kw)


@compiles(as_date, "postgresql")
def _compile_as_date_pg(element, compiler, **kw):
    return "CAST(%s AS DATE)" % compiler.process(element.clauses, **kw)
