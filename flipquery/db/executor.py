"""
Read-only executor for generated flip queries.

`execute_readonly`:
  1. Refuses anything that is not a single SELECT / WITH statement, and,
     given the capabilities, any statement that uses a forbidden keyword
     or reads from a table other than the declared one
  2. Opens a READ ONLY transaction (Postgres-enforced) with a statement timeout
  3. Converts Decimal/date/datetime to JSON-safe Python types
"""
from __future__ import annotations

import datetime
import decimal
import re
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from flipquery.core.errors import QueryExecutionError
from flipquery.core.logging import get_logger
from flipquery.db.connection import is_postgres, readonly_connection
from flipquery.governance.capabilities import Capabilities

logger = get_logger(__name__)

_QUERY_TIMEOUT_MS = 10_000

_LEADING_COMMENTS_RE = re.compile(r"^\s*(?:--[^\n]*\n\s*|/\*.*?\*/\s*)*", re.DOTALL)
_READ_VERBS = ("select", "with")
_STRING_LITERAL_RE = re.compile(r"'(?:[^']|'')*'")
_FROM_JOIN_RE = re.compile(r"\b(?:FROM|JOIN)\s+([\w.\"]+)", re.IGNORECASE)
_CTE_NAME_RE = re.compile(r"(?:\bWITH|,)\s*(\w+)\s+AS\s*\(", re.IGNORECASE)


@dataclass
class QueryResult:
    columns: list[str] = field(default_factory=list)
    rows: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"columns": self.columns, "rows": self.rows}


def _serialise_value(val: Any) -> Any:
    """Convert DB types to JSON-serialisable Python types."""
    if isinstance(val, decimal.Decimal):
        return float(val)
    if isinstance(val, (datetime.date, datetime.datetime)):
        return val.isoformat()
    if isinstance(val, datetime.timedelta):
        return str(val)
    return val


def _table_refs(body: str, capabilities: Capabilities) -> list[str]:
    """Names read after FROM/JOIN, minus CTE names and column operands (EXTRACT(... FROM col))."""
    ctes = {name.lower() for name in _CTE_NAME_RE.findall(body)}
    refs = []
    for raw in _FROM_JOIN_RE.findall(body):
        name = raw.replace('"', "").split(".")[-1].lower()
        if not name or name.isdigit() or name in ctes or capabilities.has_column(name):
            continue
        refs.append(name)
    return refs


def check_readonly_sql(sql: str, capabilities: Capabilities | None = None) -> str:
    """Return *sql* without its trailing semicolon, or raise if it could write.

    With *capabilities*, the statement must also read from the declared
    table only and avoid every ``sql_engine.forbidden`` keyword.
    """
    body = _LEADING_COMMENTS_RE.sub("", sql).strip().rstrip(";").strip()
    if not body:
        raise QueryExecutionError("Empty SQL statement")
    first_word = body.split(None, 1)[0].lower()
    if first_word not in _READ_VERBS:
        raise QueryExecutionError(f"Only SELECT/WITH statements may run, got {first_word.upper()}")
    # literals may hold anything, including ';' and keywords
    code = _STRING_LITERAL_RE.sub("''", body)
    if ";" in code:
        raise QueryExecutionError("Multiple SQL statements are not allowed")
    if capabilities is None:
        return body

    for keyword in capabilities.sql_engine.forbidden:
        if re.search(rf"\b{re.escape(keyword)}\b", code, re.IGNORECASE):
            raise QueryExecutionError(f"Forbidden keyword: {keyword.upper()}")

    table = capabilities.table.lower()
    refs = _table_refs(code, capabilities)
    for ref in refs:
        if ref != table:
            raise QueryExecutionError(f"Table not allowed: {ref}")
    if not refs:
        raise QueryExecutionError(f"Query must read from {capabilities.table}")
    return body


def execute_readonly(
    sql: str,
    params: dict | None = None,
    timeout_ms: int = _QUERY_TIMEOUT_MS,
    capabilities: Capabilities | None = None,
) -> QueryResult:
    """Execute a read-only SQL query and return its columns and JSON-safe rows.

    Raises
    ------
    QueryExecutionError
        If the statement is refused or the database rejects it.
    """
    statement = check_readonly_sql(sql, capabilities)
    logger.info("Executing SQL (%d chars)", len(statement))

    try:
        with readonly_connection() as conn:
            if is_postgres(conn.engine):
                conn.execute(text(f"SET LOCAL statement_timeout = {int(timeout_ms)}"))
            result = conn.execute(text(statement), params or {})
            columns = list(result.keys())
            rows = [
                {col: _serialise_value(val) for col, val in zip(columns, row)}
                for row in result.fetchall()
            ]
    except SQLAlchemyError as exc:
        logger.warning("Query failed: %s", exc)
        raise QueryExecutionError(f"Query failed: {exc}") from exc

    logger.info("Returned %d rows", len(rows))
    return QueryResult(columns=columns, rows=rows)
