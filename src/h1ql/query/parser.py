"""
Parser adapter: raw query text -> generic AST.

The generic AST is sqlglot's expression tree. Nothing here validates the
query; that is the restriction stage's job.
"""
from __future__ import annotations

import logging
from typing import Optional

import sqlglot
import sqlglot.errors
from sqlglot import exp

from h1ql.errors import Err, Ok, ParseError, Result, SourceSpan, UnsupportedConstructError
from h1ql.query.nodes import NodeKind

logger = logging.getLogger(__name__)

_SET_OPERATIONS = (exp.Union, exp.Intersect, exp.Except)


def parse_query(sql: str, dialect: Optional[str] = None) -> Result[exp.Expression]:
    """
    Parse a single statement.

    Returns ``Err(ParseError)`` for malformed text and
    ``Err(UnsupportedConstructError)`` for stacked statements.
    """
    if not sql or not sql.strip():
        return Err(ParseError("Empty SQL query"))

    try:
        statements = [s for s in sqlglot.parse(sql, read=dialect) if s is not None]
    except (sqlglot.errors.ParseError, sqlglot.errors.TokenError) as exc:
        logger.warning("SQL parse error: %s", exc)
        return Err(ParseError(str(exc), source_span=_error_span(exc)))
    except Exception:
        # absolute safety net
        logger.exception("Unexpected SQL parser error")
        return Err(ParseError("Invalid SQL query"))

    if not statements:
        return Err(ParseError("Empty SQL query"))

    if len(statements) > 1:
        return Err(
            UnsupportedConstructError(
                "Statements",
                source_span=source_span(statements[1]),
                reason="multiple SQL statements are not allowed",
            )
        )

    return Ok(statements[0])


def node_kind(node: exp.Expression) -> NodeKind:
    """Classify a sqlglot node into the generic tag set."""
    if isinstance(node, exp.Select):
        return NodeKind.SELECT
    if isinstance(node, _SET_OPERATIONS):
        return NodeKind.SET_OPERATION
    if isinstance(node, exp.Alias):
        return NodeKind.PROJECTION
    if isinstance(node, exp.Table):
        return NodeKind.TABLE
    if isinstance(node, exp.Join):
        return NodeKind.JOIN
    if isinstance(node, exp.Where):
        return NodeKind.WHERE
    if isinstance(node, exp.Group):
        return NodeKind.GROUP
    if isinstance(node, exp.Having):
        return NodeKind.HAVING
    if isinstance(node, (exp.Order, exp.Ordered)):
        return NodeKind.ORDER
    if isinstance(node, (exp.Column, exp.Star)):
        return NodeKind.COLUMN
    if isinstance(node, (exp.Literal, exp.Boolean, exp.Null)):
        return NodeKind.LITERAL
    if isinstance(node, exp.Subquery):
        return NodeKind.SUBQUERY
    if isinstance(node, exp.Func):
        return NodeKind.FUNCTION
    return NodeKind.OTHER


def source_span(node: exp.Expression) -> Optional[SourceSpan]:
    """
    Best-effort span of ``node`` in the original text.

    sqlglot records token positions on leaf nodes (identifiers, literals),
    so the span covers every positioned descendant.
    """
    best: Optional[dict] = None
    end = -1
    for child in node.walk():
        # read the private attribute: ``.meta`` would create it on the input tree
        meta = getattr(child, "_meta", None) or {}
        if "start" not in meta or "end" not in meta:
            continue
        if best is None or meta["start"] < best["start"]:
            best = meta
        end = max(end, meta["end"])

    if best is None:
        return None

    return SourceSpan(
        start=best["start"],
        end=end + 1,
        line=best.get("line"),
        col=best.get("col"),
    )


def _error_span(exc: Exception) -> Optional[SourceSpan]:
    errors = getattr(exc, "errors", None) or []
    for err in errors:
        line = err.get("line")
        col = err.get("col")
        if line is not None and col is not None:
            return SourceSpan(start=0, end=0, line=line, col=col)
    return None
