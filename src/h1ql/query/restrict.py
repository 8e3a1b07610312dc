# h1ql/query/restrict.py
"""
Restriction stage: generic (sqlglot) AST -> restricted AST.

Guarantees:
- SELECT-only, single statement
- every accepted node is mapped onto the closed model in ``nodes``
- anything else is rejected; the first offending node in pre-order
  (a node's own clauses before its children, children left to right)
  is the one reported
- the input tree is never modified
"""
from __future__ import annotations

import logging
from typing import Any, NoReturn, Optional

from sqlglot import exp

from h1ql.core.config import settings
from h1ql.errors import Err, Ok, QueryError, Result, UnsupportedConstructError
from h1ql.query import nodes as n
from h1ql.query.parser import parse_query, source_span

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------

# Clauses of a SELECT the transformer understands. Any other clause that is
# set (WITH, INTO, hints, locks, QUALIFY, WINDOW, laterals, ...) is rejected.
_SELECT_CLAUSES = {
    "expressions",
    "distinct",
    "from",
    "from_",  # key was renamed in recent sqlglot releases
    "joins",
    "where",
    "group",
    "having",
    "order",
    "limit",
    "offset",
}

_TABLE_CLAUSES = {"this", "db", "alias"}

_JOIN_CLAUSES = {"this", "on", "using", "side", "kind"}

# typed/safe are division flags some dialects set while parsing
_BINARY_CLAUSES = {"this", "expression", "typed", "safe"}

_BINARY_OPERATORS: dict[type, n.BinaryOperator] = {
    exp.Add: n.BinaryOperator.ADD,
    exp.Sub: n.BinaryOperator.SUB,
    exp.Mul: n.BinaryOperator.MUL,
    exp.Div: n.BinaryOperator.DIV,
    exp.Mod: n.BinaryOperator.MOD,
    exp.EQ: n.BinaryOperator.EQ,
    exp.NEQ: n.BinaryOperator.NEQ,
    exp.LT: n.BinaryOperator.LT,
    exp.LTE: n.BinaryOperator.LTE,
    exp.GT: n.BinaryOperator.GT,
    exp.GTE: n.BinaryOperator.GTE,
    exp.Like: n.BinaryOperator.LIKE,
    exp.ILike: n.BinaryOperator.ILIKE,
    exp.And: n.BinaryOperator.AND,
    exp.Or: n.BinaryOperator.OR,
}

AGGREGATE_FUNCTIONS: dict[type, str] = {
    exp.Count: "count",
    exp.Sum: "sum",
    exp.Avg: "avg",
    exp.Min: "min",
    exp.Max: "max",
}

# name -> argument keys read, in call order
SCALAR_FUNCTIONS: dict[type, tuple[str, tuple[str, ...]]] = {
    exp.Lower: ("lower", ("this",)),
    exp.Upper: ("upper", ("this",)),
    exp.Abs: ("abs", ("this",)),
    exp.Coalesce: ("coalesce", ("this", "expressions")),
}

# date_trunc lands on either class depending on the read dialect
_TRUNC_FUNCTIONS = (exp.TimestampTrunc, exp.DateTrunc)

# Functions sqlglot does not model, accepted by name
ANONYMOUS_FUNCTIONS = {"time_bucket", "date_trunc"}

TIME_UNITS = {
    "microseconds",
    "milliseconds",
    "second",
    "minute",
    "hour",
    "day",
    "week",
    "month",
    "quarter",
    "year",
}


def _is_set(value: Any) -> bool:
    if value is None or value is False:
        return False
    if isinstance(value, (list, str)):
        return len(value) > 0
    return True


def _first_node(value: Any) -> Optional[exp.Expression]:
    if isinstance(value, exp.Expression):
        return value
    if isinstance(value, list):
        for item in value:
            if isinstance(item, exp.Expression):
                return item
    return None


def _name(node: Optional[exp.Expression]) -> str:
    """Identifier text as PostgreSQL resolves it: unquoted names fold to lower case."""
    if isinstance(node, (exp.Column, exp.TableAlias)):
        node = node.this
    if node is None:
        return ""
    if isinstance(node, exp.Identifier) and not node.args.get("quoted"):
        return node.name.lower()
    return node.name


def _kind(node: exp.Expression) -> str:
    if isinstance(node, exp.Anonymous):
        return f"{node.name.upper()}()"
    if isinstance(node, exp.Func):
        return f"{node.sql_name()}()"
    return type(node).__name__


class RestrictionTransformer:
    """
    Maps a sqlglot tree onto the restricted model, rejecting everything
    outside the whitelist.

    ``context_qualifier`` is only used when compiling policy predicates:
    columns qualified by it become ``ContextRef`` nodes.
    """

    def __init__(
        self,
        *,
        max_depth: Optional[int] = None,
        context_qualifier: Optional[str] = None,
    ):
        self.max_depth = max_depth if max_depth is not None else settings.max_query_depth
        self.context_qualifier = context_qualifier.lower() if context_qualifier else None

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def query(self, node: exp.Expression) -> n.Select:
        if not isinstance(node, exp.Select):
            self._reject(node, "only SELECT statements are allowed")
        return self._select(node, 0)

    def predicate(self, node: exp.Expression) -> n.Expr:
        return self._expr(node, 0)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _reject(self, node: exp.Expression, reason: Optional[str] = None) -> NoReturn:
        kind = _kind(node)
        logger.warning("SQL construct rejected: %s%s", kind, f" ({reason})" if reason else "")
        raise UnsupportedConstructError(kind, source_span=source_span(node), reason=reason)

    def _check_depth(self, node: exp.Expression, depth: int) -> None:
        if depth > self.max_depth:
            self._reject(node, f"nesting depth exceeds {self.max_depth}")

    def _only(self, node: exp.Expression, allowed: set[str]) -> None:
        """Reject ``node`` if it carries any clause outside ``allowed``."""
        for key, value in node.args.items():
            if key in allowed or not _is_set(value):
                continue
            offending = _first_node(value)
            if offending is not None:
                self._reject(offending)
            self._reject(node, f"{key} is not allowed")

    # ------------------------------------------------------------------
    # Query structure
    # ------------------------------------------------------------------

    def _select(self, node: exp.Select, depth: int) -> n.Select:
        self._check_depth(node, depth)
        self._only(node, _SELECT_CLAUSES)

        distinct = node.args.get("distinct")
        if distinct is not None and _is_set(distinct.args.get("on")):
            self._reject(distinct, "DISTINCT ON is not allowed")

        if not node.expressions:
            self._reject(node, "query must select at least one expression")

        projections = tuple(self._projection(p, depth + 1) for p in node.expressions)

        source: Optional[n.FromItem] = None
        from_ = node.args.get("from")
        if from_ is None:
            from_ = node.args.get("from_")
        if from_ is not None:
            self._only(from_, {"this"})
            source = self._from_item(from_.this, depth + 1)

        joins = tuple(self._join(j, depth + 1) for j in node.args.get("joins") or [])
        if joins and source is None:
            self._reject(node.args["joins"][0], "JOIN without FROM")

        where = None
        if node.args.get("where") is not None:
            where = self._expr(node.args["where"].this, depth + 1)

        group_by: tuple[n.Expr, ...] = ()
        group = node.args.get("group")
        if group is not None:
            self._only(group, {"expressions"})
            group_by = tuple(self._expr(e, depth + 1) for e in group.expressions)

        having = None
        if node.args.get("having") is not None:
            having = self._expr(node.args["having"].this, depth + 1)

        order_by: tuple[n.OrderItem, ...] = ()
        if node.args.get("order") is not None:
            order_by = self._order(node.args["order"], depth + 1)

        limit = None
        if node.args.get("limit") is not None:
            limit = self._row_count(node.args["limit"])

        offset = None
        if node.args.get("offset") is not None:
            offset = self._row_count(node.args["offset"])

        return n.Select(
            projections=projections,
            source=source,
            joins=joins,
            where=where,
            group_by=group_by,
            having=having,
            order_by=order_by,
            limit=limit,
            offset=offset,
            distinct=distinct is not None,
        )

    def _projection(self, node: exp.Expression, depth: int) -> n.Projection:
        if isinstance(node, exp.Alias):
            return n.Projection(self._expr(node.this, depth), _name(node.args.get("alias")))
        if isinstance(node, exp.Star):
            self._only(node, set())
            return n.Projection(n.StarRef())
        if isinstance(node, exp.Column) and isinstance(node.this, exp.Star):
            self._only(node.this, set())
            if node.args.get("db") is not None:
                self._reject(node, "schema-qualified columns are not allowed")
            return n.Projection(n.StarRef(_name(node.args.get("table")) or None))
        return n.Projection(self._expr(node, depth))

    def _from_item(self, node: exp.Expression, depth: int) -> n.FromItem:
        self._check_depth(node, depth)

        if isinstance(node, exp.Table):
            if not isinstance(node.this, exp.Identifier):
                # table functions, file readers, ...
                self._reject(node.this, "only plain tables can be read")
            if node.args.get("catalog") is not None:
                self._reject(node, "catalog-qualified tables are not allowed")
            self._only(node, _TABLE_CLAUSES)
            return n.TableRef(
                name=_name(node.this),
                schema=_name(node.args.get("db")) or None,
                alias=self._table_alias(node),
            )

        if isinstance(node, exp.Subquery):
            self._only(node, {"this", "alias"})
            alias = self._table_alias(node)
            if not alias:
                self._reject(node, "derived tables require an alias")
            return n.DerivedTable(self._subquery_select(node.this, depth + 1), alias)

        self._reject(node)

    def _table_alias(self, node: exp.Expression) -> Optional[str]:
        alias = node.args.get("alias")
        if alias is None:
            return None
        self._only(alias, {"this"})
        return _name(alias.this) or None

    def _join(self, node: exp.Join, depth: int) -> n.Join:
        self._check_depth(node, depth)
        self._only(node, _JOIN_CLAUSES)

        side = node.text("side").upper()
        kind = node.text("kind").upper()
        on = node.args.get("on")
        using = tuple(_name(u) for u in node.args.get("using") or [])

        if kind == "CROSS":
            join_kind = n.JoinKind.CROSS
        elif kind not in ("", "INNER", "OUTER"):
            self._reject(node, f"{kind} JOIN is not allowed")
        elif side in ("LEFT", "RIGHT", "FULL"):
            join_kind = n.JoinKind(side)
        elif on is None and not using:
            # comma join or bare JOIN without condition
            join_kind = n.JoinKind.CROSS
        else:
            join_kind = n.JoinKind.INNER

        if join_kind is n.JoinKind.CROSS and (on is not None or using):
            self._reject(node, "CROSS JOIN cannot carry a condition")
        if join_kind in (n.JoinKind.LEFT, n.JoinKind.RIGHT, n.JoinKind.FULL) and (
            on is None and not using
        ):
            self._reject(node, "outer joins require ON or USING")

        item = self._from_item(node.this, depth + 1)
        condition = self._expr(on, depth + 1) if on is not None else None
        return n.Join(kind=join_kind, item=item, condition=condition, using=using)

    def _order(self, node: exp.Order, depth: int) -> tuple[n.OrderItem, ...]:
        self._only(node, {"expressions"})
        return tuple(self._ordered(o, depth) for o in node.expressions)

    def _ordered(self, node: exp.Expression, depth: int) -> n.OrderItem:
        if not isinstance(node, exp.Ordered):
            return n.OrderItem(self._expr(node, depth))
        self._only(node, {"this", "desc", "nulls_first"})
        return n.OrderItem(
            expr=self._expr(node.this, depth),
            descending=bool(node.args.get("desc")),
            nulls_first=bool(node.args.get("nulls_first")),
        )

    def _row_count(self, node: exp.Expression) -> int:
        if not isinstance(node, (exp.Limit, exp.Offset)):
            self._reject(node)
        self._only(node, {"expression"})
        value = node.args.get("expression")
        if not isinstance(value, exp.Literal) or value.is_string:
            self._reject(value if value is not None else node, "row counts must be integer literals")
        try:
            count = int(value.this)
        except ValueError:
            self._reject(value, "row counts must be integer literals")
        if count < 0:
            self._reject(value, "row counts must not be negative")
        return count

    def _subquery_select(self, node: exp.Expression, depth: int) -> n.Select:
        if isinstance(node, exp.Subquery):
            self._only(node, {"this"})
            node = node.this
        if not isinstance(node, exp.Select):
            self._reject(node, "subqueries must be SELECT statements")
        return self._select(node, depth)

    # ------------------------------------------------------------------
    # Expressions
    # ------------------------------------------------------------------

    def _expr(self, node: exp.Expression, depth: int) -> n.Expr:
        self._check_depth(node, depth)
        d = depth + 1

        match node:
            case exp.Paren():
                return self._expr(node.this, depth)
            case exp.Column():
                return self._column(node)
            case exp.Literal():
                if node.is_string:
                    return n.LiteralValue.string(node.this)
                return n.LiteralValue.number(node.this)
            case exp.Boolean():
                return n.LiteralValue.boolean(bool(node.this))
            case exp.Null():
                return n.NULL
            case exp.Neg():
                return n.UnaryOp(n.UnaryOperator.NEG, self._expr(node.this, d))
            case exp.Not():
                return n.UnaryOp(n.UnaryOperator.NOT, self._expr(node.this, d))
            case exp.Is():
                if not isinstance(node.expression, exp.Null):
                    self._reject(node, "only IS NULL is allowed")
                return n.IsNull(self._expr(node.this, d))
            case exp.Between():
                self._only(node, {"this", "low", "high"})
                return n.Between(
                    self._expr(node.this, d),
                    self._expr(node.args["low"], d),
                    self._expr(node.args["high"], d),
                )
            case exp.In():
                return self._in(node, d)
            case exp.Case():
                return self._case(node, d)
            case exp.Subquery():
                return n.ScalarSubquery(self._subquery_select(node, d))
            case exp.Window():
                return self._window(node, d)
            case exp.Binary() if type(node) in _BINARY_OPERATORS:
                self._only(node, _BINARY_CLAUSES)
                return n.BinaryOp(
                    _BINARY_OPERATORS[type(node)],
                    self._expr(node.this, d),
                    self._expr(node.expression, d),
                )
            case exp.Func():
                return self._function(node, d)
            case _:
                self._reject(node)

    def _column(self, node: exp.Column) -> n.Expr:
        if isinstance(node.this, exp.Star):
            self._reject(node, "table.* is only allowed in the select list")
        if node.args.get("db") is not None or node.args.get("catalog") is not None:
            self._reject(node, "schema-qualified columns are not allowed")

        qualifier = _name(node.args.get("table")) or None
        if (
            qualifier is not None
            and self.context_qualifier is not None
            and qualifier.lower() == self.context_qualifier
        ):
            return n.ContextRef(node.name)
        return n.ColumnRef(_name(node.this), qualifier)

    def _in(self, node: exp.In, depth: int) -> n.Expr:
        self._only(node, {"this", "expressions", "query"})
        operand = self._expr(node.this, depth)
        query = node.args.get("query")
        if query is not None:
            return n.InSubquery(operand, self._subquery_select(query, depth))
        if not node.expressions:
            self._reject(node, "IN requires a value list or subquery")
        return n.InList(operand, tuple(self._expr(e, depth) for e in node.expressions))

    def _case(self, node: exp.Case, depth: int) -> n.CaseExpr:
        self._only(node, {"this", "ifs", "default"})
        operand = self._expr(node.this, depth) if node.this is not None else None

        whens = []
        for branch in node.args.get("ifs") or []:
            if not isinstance(branch, exp.If):
                self._reject(branch)
            self._only(branch, {"this", "true"})
            whens.append(
                n.WhenClause(
                    self._expr(branch.this, depth),
                    self._expr(branch.args["true"], depth),
                )
            )
        if not whens:
            self._reject(node, "CASE requires at least one WHEN")

        default = node.args.get("default")
        return n.CaseExpr(
            whens=tuple(whens),
            operand=operand,
            default=self._expr(default, depth) if default is not None else None,
        )

    def _window(self, node: exp.Window, depth: int) -> n.FunctionCall:
        self._only(node, {"this", "partition_by", "order", "over"})
        if not isinstance(node.this, tuple(AGGREGATE_FUNCTIONS)):
            self._reject(node.this, "only aggregate functions can be windowed")

        order_by: tuple[n.OrderItem, ...] = ()
        if node.args.get("order") is not None:
            order_by = self._order(node.args["order"], depth)

        window = n.WindowSpec(
            partition_by=tuple(
                self._expr(e, depth) for e in node.args.get("partition_by") or []
            ),
            order_by=order_by,
        )
        return self._function(node.this, depth, window=window)

    def _function(
        self,
        node: exp.Func,
        depth: int,
        window: Optional[n.WindowSpec] = None,
    ) -> n.FunctionCall:
        if type(node) in AGGREGATE_FUNCTIONS:
            return self._aggregate(node, depth, window)

        if type(node) in SCALAR_FUNCTIONS:
            name, keys = SCALAR_FUNCTIONS[type(node)]
            self._only(node, set(keys))
            args: list[n.Expr] = []
            for key in keys:
                value = node.args.get(key)
                if isinstance(value, list):
                    args.extend(self._expr(v, depth) for v in value)
                elif value is not None:
                    args.append(self._expr(value, depth))
            return n.FunctionCall(name, tuple(args))

        if isinstance(node, _TRUNC_FUNCTIONS):
            self._only(node, {"this", "unit"})
            unit = node.args.get("unit")
            if unit is None:
                self._reject(node, "date_trunc requires a unit")
            return n.FunctionCall(
                "date_trunc", (self._time_unit(unit), self._expr(node.this, depth))
            )

        if isinstance(node, exp.Anonymous) and node.name.lower() in ANONYMOUS_FUNCTIONS:
            self._only(node, {"this", "expressions"})
            name = node.name.lower()
            raw = list(node.expressions)
            if name == "date_trunc":
                if len(raw) != 2:
                    self._reject(node, "date_trunc takes two arguments")
                return n.FunctionCall(
                    name, (self._time_unit(raw[0]), self._expr(raw[1], depth))
                )
            return n.FunctionCall(name, tuple(self._expr(e, depth) for e in raw))

        self._reject(node, "function not allowed")

    def _aggregate(
        self,
        node: exp.Func,
        depth: int,
        window: Optional[n.WindowSpec],
    ) -> n.FunctionCall:
        name = AGGREGATE_FUNCTIONS[type(node)]
        for key, value in node.args.items():
            if key != "this" and isinstance(value, (exp.Expression, list)) and _is_set(value):
                self._reject(_first_node(value) or node, f"{name} takes a single argument")

        arg = node.this
        if arg is None:
            self._reject(node, f"{name} requires an argument")

        if isinstance(arg, exp.Star):
            if name != "count":
                self._reject(arg, f"{name}(*) is not allowed")
            return n.FunctionCall(name, (n.StarRef(),), window=window)

        if isinstance(arg, exp.Distinct):
            self._only(arg, {"expressions"})
            if len(arg.expressions) != 1:
                self._reject(arg, f"{name}(DISTINCT ...) takes a single argument")
            return n.FunctionCall(
                name, (self._expr(arg.expressions[0], depth),), distinct=True, window=window
            )

        return n.FunctionCall(name, (self._expr(arg, depth),), window=window)

    def _time_unit(self, node: exp.Expression) -> n.LiteralValue:
        if not isinstance(node, (exp.Literal, exp.Var)):
            self._reject(node, "time unit must be a literal")
        unit = node.name.lower()
        if unit not in TIME_UNITS:
            self._reject(node, f"unknown time unit '{unit}'")
        return n.LiteralValue.string(unit)


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------


def restrict(node: exp.Expression, *, max_depth: Optional[int] = None) -> Result[n.RestrictedQuery]:
    """Restrict a parsed statement to the safe subset."""
    try:
        root = RestrictionTransformer(max_depth=max_depth).query(node)
    except QueryError as exc:
        return Err(exc)
    except Exception:
        # absolute safety net: an unexpected tree shape is a rejection
        logger.exception("Unexpected error while restricting query")
        return Err(UnsupportedConstructError(type(node).__name__, reason="unrecognized query structure"))

    return Ok(n.RestrictedQuery(root))


def restrict_sql(
    sql: str,
    *,
    dialect: Optional[str] = None,
    max_depth: Optional[int] = None,
) -> Result[n.RestrictedQuery]:
    """Parse then restrict raw query text."""
    parsed = parse_query(sql, dialect or settings.sql_dialect)
    if isinstance(parsed, Err):
        return parsed
    return restrict(parsed.value, max_depth=max_depth)


def restrict_predicate(
    node: exp.Expression,
    *,
    context_qualifier: str = "requester",
    max_depth: Optional[int] = None,
) -> n.Expr:
    """
    Compile a policy predicate through the same whitelist.

    Raises ``UnsupportedConstructError``; predicates are compiled once at
    policy load time, where a bad template is a configuration error.
    """
    transformer = RestrictionTransformer(
        max_depth=max_depth, context_qualifier=context_qualifier
    )
    return transformer.predicate(node)
