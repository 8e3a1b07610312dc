# h1ql/query/emit.py
"""
SQL emitter: authorized AST -> PostgreSQL text.

Output is deterministic: keywords upper case, identifiers bare when they
are plain words and double-quoted otherwise, operands of nested
operators always parenthesized. Literals are rendered here and nowhere
else; no requester-supplied text reaches the output unescaped.
"""
from __future__ import annotations

import re
from typing import Union, assert_never

from h1ql.query import nodes as n

_PLAIN_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_NUMBER = re.compile(r"^-?(\d+(\.\d*)?|\.\d+)([eE][-+]?\d+)?$")

RESERVED_WORDS = frozenset(
    {
        "all", "and", "any", "array", "as", "asc", "between", "both", "case",
        "cast", "check", "collate", "column", "constraint", "create", "cross",
        "current_catalog", "current_date", "current_role", "current_schema",
        "current_time", "current_timestamp", "current_user",
        "default", "delete", "desc", "distinct", "do", "else", "end", "except",
        "exists", "false", "fetch", "filter", "for", "foreign", "from", "full",
        "grant", "group", "having", "ilike", "in", "inner", "insert", "intersect",
        "interval", "into", "is", "join", "lateral", "leading", "left", "like",
        "limit", "localtime", "localtimestamp", "natural", "not", "null", "nulls",
        "offset", "on", "only", "or",
        "order", "outer", "over", "partition", "primary", "references",
        "returning", "right", "select", "session_user", "some", "table", "then",
        "to", "trailing", "true", "union", "unique", "update", "user", "using",
        "values", "when", "where", "window", "with",
    }
)

# operands that need parentheses when nested inside another operator
_COMPOUND = (n.BinaryOp, n.UnaryOp, n.IsNull, n.Between, n.InList, n.InSubquery)


def quote_identifier(name: str) -> str:
    # unquoted names fold to lower case, so any upper case letter needs quotes
    if _PLAIN_IDENTIFIER.match(name) and name == name.lower() and name not in RESERVED_WORDS:
        return name
    return '"' + name.replace('"', '""') + '"'


def quote_string(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class SqlEmitter:
    def render(self, node: Union[n.Select, n.Expr]) -> str:
        if isinstance(node, n.Select):
            return self.select(node)
        return self.expr(node)

    # ------------------------------------------------------------------
    # Query structure
    # ------------------------------------------------------------------

    def select(self, node: n.Select) -> str:
        parts = ["SELECT"]
        if node.distinct:
            parts.append("DISTINCT")
        parts.append(", ".join(self.projection(p) for p in node.projections))

        if node.source is not None:
            parts.append("FROM " + self.from_item(node.source))
        for join in node.joins:
            parts.append(self.join(join))
        if node.where is not None:
            parts.append("WHERE " + self.expr(node.where))
        if node.group_by:
            parts.append("GROUP BY " + ", ".join(self.expr(e) for e in node.group_by))
        if node.having is not None:
            parts.append("HAVING " + self.expr(node.having))
        if node.order_by:
            parts.append("ORDER BY " + ", ".join(self.order_item(o) for o in node.order_by))
        if node.limit is not None:
            parts.append(f"LIMIT {int(node.limit)}")
        if node.offset is not None:
            parts.append(f"OFFSET {int(node.offset)}")
        return " ".join(parts)

    def projection(self, node: n.Projection) -> str:
        text = self.expr(node.expr)
        if node.alias is not None:
            return f"{text} AS {quote_identifier(node.alias)}"
        return text

    def table(self, node: n.TableRef) -> str:
        name = quote_identifier(node.name)
        if node.schema:
            return f"{quote_identifier(node.schema)}.{name}"
        return name

    def from_item(self, node: n.FromItem) -> str:
        match node:
            case n.TableRef():
                text = self.table(node)
                if node.alias is not None:
                    text += " AS " + quote_identifier(node.alias)
                return text
            case n.DerivedTable():
                return f"({self.select(node.query)}) AS {quote_identifier(node.alias)}"
            case n.FilteredTable():
                return (
                    f"(SELECT * FROM {self.table(node.table)} WHERE {self.expr(node.condition)})"
                    f" AS {quote_identifier(node.reference_name)}"
                )
            case _:
                assert_never(node)

    def join(self, node: n.Join) -> str:
        keyword = "JOIN" if node.kind is n.JoinKind.INNER else f"{node.kind.value} JOIN"
        text = f"{keyword} {self.from_item(node.item)}"
        if node.condition is not None:
            text += " ON " + self.expr(node.condition)
        if node.using:
            text += " USING (" + ", ".join(quote_identifier(u) for u in node.using) + ")"
        return text

    def order_item(self, node: n.OrderItem) -> str:
        text = self.expr(node.expr)
        if node.descending:
            text += " DESC"
        # postgres sorts NULLs first exactly when descending
        if node.nulls_first is not None and node.nulls_first != node.descending:
            text += " NULLS FIRST" if node.nulls_first else " NULLS LAST"
        return text

    # ------------------------------------------------------------------
    # Expressions
    # ------------------------------------------------------------------

    def operand(self, node: n.Expr) -> str:
        text = self.expr(node)
        if isinstance(node, _COMPOUND) or text.startswith("-"):
            return f"({text})"
        return text

    def literal(self, node: n.LiteralValue) -> str:
        match node.kind:
            case n.LiteralKind.STRING:
                return quote_string(node.text)
            case n.LiteralKind.NUMBER:
                if not _NUMBER.match(node.text):
                    raise ValueError(f"Invalid numeric literal {node.text!r}")
                return node.text
            case n.LiteralKind.BOOLEAN:
                return "TRUE" if node.truth else "FALSE"
            case n.LiteralKind.NULL:
                return "NULL"
            case _:
                assert_never(node.kind)

    def expr(self, node: n.Expr) -> str:
        match node:
            case n.ColumnRef():
                name = quote_identifier(node.name)
                return f"{quote_identifier(node.table)}.{name}" if node.table else name
            case n.StarRef():
                return f"{quote_identifier(node.table)}.*" if node.table else "*"
            case n.LiteralValue():
                return self.literal(node)
            case n.UnaryOp(op=n.UnaryOperator.NOT):
                return "NOT " + self.operand(node.operand)
            case n.UnaryOp():
                return "-" + self.operand(node.operand)
            case n.BinaryOp():
                return f"{self.operand(node.left)} {node.op.value} {self.operand(node.right)}"
            case n.IsNull():
                return f"{self.operand(node.operand)} IS NULL"
            case n.Between():
                return (
                    f"{self.operand(node.operand)} BETWEEN {self.operand(node.low)}"
                    f" AND {self.operand(node.high)}"
                )
            case n.InList():
                items = ", ".join(self.expr(i) for i in node.items)
                return f"{self.operand(node.operand)} IN ({items})"
            case n.InSubquery():
                return f"{self.operand(node.operand)} IN ({self.select(node.query)})"
            case n.FunctionCall():
                return self.function(node)
            case n.CaseExpr():
                parts = ["CASE"]
                if node.operand is not None:
                    parts.append(self.expr(node.operand))
                for when in node.whens:
                    parts.append(f"WHEN {self.expr(when.condition)} THEN {self.expr(when.result)}")
                if node.default is not None:
                    parts.append("ELSE " + self.expr(node.default))
                parts.append("END")
                return " ".join(parts)
            case n.ScalarSubquery():
                return f"({self.select(node.query)})"
            case n.MaskedColumn():
                return (
                    f"CASE WHEN {self.expr(node.condition)} THEN {self.expr(node.column)}"
                    " ELSE NULL END"
                )
            case n.ContextRef():
                raise ValueError(f"Unbound requester attribute '{node.attribute}'")
            case _:
                assert_never(node)

    def function(self, node: n.FunctionCall) -> str:
        args = ", ".join(self.expr(a) for a in node.args)
        if node.distinct:
            args = "DISTINCT " + args
        text = f"{node.name.upper()}({args})"
        if node.window is None:
            return text

        window = []
        if node.window.partition_by:
            window.append(
                "PARTITION BY " + ", ".join(self.expr(e) for e in node.window.partition_by)
            )
        if node.window.order_by:
            window.append(
                "ORDER BY " + ", ".join(self.order_item(o) for o in node.window.order_by)
            )
        return f"{text} OVER ({' '.join(window)})"


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------


def emit_sql(query: n.AuthorizedQuery) -> str:
    """Render an authorized query. Only authorized queries can be emitted."""
    if not isinstance(query, n.AuthorizedQuery):
        raise TypeError("emit_sql requires an AuthorizedQuery")
    return SqlEmitter().select(query.root)


def output_columns(select: n.Select) -> list[str]:
    """Result column names as PostgreSQL would label them."""
    names = []
    for projection in select.projections:
        expr = projection.expr
        if projection.alias is not None:
            names.append(projection.alias)
        elif isinstance(expr, n.ColumnRef):
            names.append(expr.name)
        elif isinstance(expr, n.MaskedColumn):
            names.append(expr.column.name)
        elif isinstance(expr, n.StarRef):
            names.append(f"{expr.table}.*" if expr.table else "*")
        elif isinstance(expr, n.FunctionCall):
            names.append(expr.name)
        else:
            names.append("?column?")
    return names
