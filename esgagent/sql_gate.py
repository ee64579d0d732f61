"""Read-only SQL gate for the analytics tool.

The keyword check is a plain substring scan over the upper-cased query, not a
tokenizer: an identifier such as ``created_at`` or ``last_update`` is rejected
because it contains ``CREATE`` / ``UPDATE``. Queries should alias around such
names.
"""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from esgagent.errors import ForbiddenKeywordError, QueryExecutionError, UnsafeQueryError

log = logging.getLogger(__name__)

ALLOWED_PREFIXES = ("SELECT", "WITH")

FORBIDDEN_KEYWORDS = (
    "INSERT",
    "UPDATE",
    "DELETE",
    "DROP",
    "ALTER",
    "CREATE",
    "TRUNCATE",
    "PRAGMA",
    "ATTACH",
)

DEFAULT_LIMIT = 5000


def validate_and_prepare(sql: str) -> str:
    """Validate a candidate query and return the text to execute.

    Raises UnsafeQueryError or ForbiddenKeywordError. The only rewrite is a
    trailing ``LIMIT 5000`` when the query has no LIMIT.
    """
    prepared = (sql or "").strip()
    upper = prepared.upper()

    if not upper.startswith(ALLOWED_PREFIXES):
        statement = upper.split(None, 1)[0] if upper else ""
        raise UnsafeQueryError(statement)

    for keyword in FORBIDDEN_KEYWORDS:
        if keyword in upper:
            raise ForbiddenKeywordError(keyword)

    if "LIMIT" not in upper:
        prepared += f" LIMIT {DEFAULT_LIMIT}"
    return prepared


def execute_readonly(session: Session, sql: str) -> dict[str, Any]:
    """Gate and run *sql*, returning ``{columns, rows, rowCount}``."""
    prepared = validate_and_prepare(sql)
    try:
        result = session.connection().exec_driver_sql(prepared)
        columns = list(result.keys())
        rows = [dict(row._mapping) for row in result]
    except SQLAlchemyError as exc:
        session.rollback()
        message = str(getattr(exc, "orig", None) or exc)
        log.info("Read-only query rejected by store: %s", message)
        raise QueryExecutionError(message) from exc
    return {"columns": columns, "rows": rows, "rowCount": len(rows)}
