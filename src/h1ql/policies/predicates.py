"""
Predicate templates: SQL boolean expressions evaluated against a requester.

A template is compiled once, at policy load time, through the same
whitelist as user queries. ``requester.<attr>`` becomes a ``ContextRef``
that ``bind`` replaces with a literal taken from the requester context.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, assert_never

from h1ql.errors import AuthorizationContextError, Err, PolicyConfigError, UnsupportedConstructError
from h1ql.query import nodes as n
from h1ql.query.parser import parse_query
from h1ql.query.restrict import restrict_predicate
from h1ql.query.walk import walk
from h1ql.security.models import RequesterContext

logger = logging.getLogger(__name__)

CONTEXT_QUALIFIER = "requester"


@dataclass(frozen=True)
class PredicateTemplate:
    source: str
    expression: n.Expr

    @classmethod
    def compile(cls, text: str, *, dialect: Optional[str] = None) -> "PredicateTemplate":
        parsed = parse_query(f"SELECT 1 WHERE {text}", dialect)
        if isinstance(parsed, Err):
            raise PolicyConfigError(f"Invalid predicate {text!r}: {parsed.error.message}")

        # anything besides the WHERE we wrapped means the text escaped it
        wrapper = parsed.value
        where = wrapper.args.get("where")
        extra = [
            key
            for key, value in wrapper.args.items()
            if key not in ("expressions", "where") and value not in (None, False, [])
        ]
        if where is None or extra:
            raise PolicyConfigError(f"Invalid predicate {text!r}")

        try:
            expression = restrict_predicate(where.this, context_qualifier=CONTEXT_QUALIFIER)
        except UnsupportedConstructError as exc:
            raise PolicyConfigError(f"Invalid predicate {text!r}: {exc.message}") from exc

        return cls(source=text, expression=expression)

    @classmethod
    def constant(cls, value: bool) -> "PredicateTemplate":
        literal = n.LiteralValue.boolean(value)
        return cls(source=literal.text, expression=literal)

    @property
    def attributes(self) -> frozenset[str]:
        """Requester attributes the template reads."""
        return frozenset(
            node.attribute for node in walk(self.expression) if isinstance(node, n.ContextRef)
        )

    def bind(self, context: RequesterContext) -> n.Expr:
        """Substitute requester attributes and fold constant parts."""
        return _Binder(context).expr(self.expression)


# -----------------------------------------------------------------------------
# Binding
# -----------------------------------------------------------------------------


def to_literal(value: Any) -> n.LiteralValue:
    if value is None:
        return n.NULL
    if isinstance(value, bool):
        return n.LiteralValue.boolean(value)
    if isinstance(value, int):
        return n.LiteralValue.number(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            return n.LiteralValue.string(repr(value))
        return n.LiteralValue.number(repr(value))
    if isinstance(value, Decimal):
        if not value.is_finite():
            return n.LiteralValue.string(str(value))
        return n.LiteralValue.number(str(value))
    return n.LiteralValue.string(str(value))


class _Binder:
    def __init__(self, context: RequesterContext):
        self.context = context

    def _lookup(self, name: str) -> Any:
        try:
            return self.context.attribute(name)
        except KeyError:
            logger.info("Requester %s lacks attribute %s", self.context.sub, name)
            raise AuthorizationContextError(
                f"Requester attribute '{name}' is required for this query",
                missing_attribute=name,
            ) from None

    def _scalar(self, name: str) -> n.LiteralValue:
        value = self._lookup(name)
        if isinstance(value, (list, tuple, set, frozenset)):
            raise AuthorizationContextError(
                f"Requester attribute '{name}' holds several values; use it inside IN (...)",
                missing_attribute=name,
            )
        return to_literal(value)

    def _items(self, items: tuple[n.Expr, ...]) -> tuple[n.Expr, ...]:
        out: list[n.Expr] = []
        for item in items:
            if isinstance(item, n.ContextRef):
                value = self._lookup(item.attribute)
                if isinstance(value, (set, frozenset)):
                    out.extend(to_literal(v) for v in sorted(value, key=str))
                    continue
                if isinstance(value, (list, tuple)):
                    out.extend(to_literal(v) for v in value)
                    continue
            out.append(self.expr(item))
        return tuple(out)

    def select(self, node: n.Select) -> n.Select:
        return replace(
            node,
            projections=tuple(replace(p, expr=self.expr(p.expr)) for p in node.projections),
            source=self.from_item(node.source) if node.source is not None else None,
            joins=tuple(
                replace(
                    j,
                    item=self.from_item(j.item),
                    condition=self.expr(j.condition) if j.condition is not None else None,
                )
                for j in node.joins
            ),
            where=self.expr(node.where) if node.where is not None else None,
            group_by=tuple(self.expr(e) for e in node.group_by),
            having=self.expr(node.having) if node.having is not None else None,
            order_by=tuple(self.order_item(o) for o in node.order_by),
        )

    def from_item(self, node: n.FromItem) -> n.FromItem:
        match node:
            case n.TableRef():
                return node
            case n.DerivedTable():
                return replace(node, query=self.select(node.query))
            case n.FilteredTable():
                return replace(node, condition=self.expr(node.condition))
            case _:
                assert_never(node)

    def order_item(self, node: n.OrderItem) -> n.OrderItem:
        return replace(node, expr=self.expr(node.expr))

    def expr(self, node: n.Expr) -> n.Expr:
        match node:
            case n.ContextRef():
                return self._scalar(node.attribute)
            case n.ColumnRef() | n.StarRef() | n.LiteralValue() | n.MaskedColumn():
                return node
            case n.UnaryOp():
                return fold(replace(node, operand=self.expr(node.operand)))
            case n.BinaryOp():
                return fold(replace(node, left=self.expr(node.left), right=self.expr(node.right)))
            case n.IsNull():
                return fold(replace(node, operand=self.expr(node.operand)))
            case n.Between():
                return n.Between(self.expr(node.operand), self.expr(node.low), self.expr(node.high))
            case n.InList():
                return fold(n.InList(self.expr(node.operand), self._items(node.items)))
            case n.InSubquery():
                return n.InSubquery(self.expr(node.operand), self.select(node.query))
            case n.FunctionCall():
                window = node.window
                if window is not None:
                    window = n.WindowSpec(
                        partition_by=tuple(self.expr(e) for e in window.partition_by),
                        order_by=tuple(self.order_item(o) for o in window.order_by),
                    )
                return replace(node, args=tuple(self.expr(a) for a in node.args), window=window)
            case n.CaseExpr():
                return n.CaseExpr(
                    whens=tuple(
                        n.WhenClause(self.expr(w.condition), self.expr(w.result))
                        for w in node.whens
                    ),
                    operand=self.expr(node.operand) if node.operand is not None else None,
                    default=self.expr(node.default) if node.default is not None else None,
                )
            case n.ScalarSubquery():
                return n.ScalarSubquery(self.select(node.query))
            case _:
                assert_never(node)


# -----------------------------------------------------------------------------
# Constant folding
# -----------------------------------------------------------------------------


def _compare_key(literal: n.LiteralValue) -> Any:
    if literal.kind is n.LiteralKind.NUMBER:
        try:
            return Decimal(literal.text)
        except InvalidOperation:
            return None
    if literal.kind is n.LiteralKind.BOOLEAN:
        return literal.truth
    if literal.kind is n.LiteralKind.STRING:
        return literal.text
    return None


def _comparable(left: n.Expr, right: n.Expr) -> Optional[tuple[Any, Any]]:
    if not isinstance(left, n.LiteralValue) or not isinstance(right, n.LiteralValue):
        return None
    if left.kind is not right.kind or left.kind is n.LiteralKind.NULL:
        return None
    lk, rk = _compare_key(left), _compare_key(right)
    if lk is None or rk is None:
        return None
    return lk, rk


_FOLDABLE = {
    n.BinaryOperator.EQ: lambda a, b: a == b,
    n.BinaryOperator.NEQ: lambda a, b: a != b,
    n.BinaryOperator.LT: lambda a, b: a < b,
    n.BinaryOperator.LTE: lambda a, b: a <= b,
    n.BinaryOperator.GT: lambda a, b: a > b,
    n.BinaryOperator.GTE: lambda a, b: a >= b,
}


def fold(node: n.Expr) -> n.Expr:
    """
    Fold a node whose children are already folded.

    Only boolean connectives, comparisons of two non-NULL literals of the
    same kind, IN lists of literals and IS NULL on literals are folded.
    """
    match node:
        case n.BinaryOp(op=n.BinaryOperator.AND, left=left, right=right):
            if n.FALSE in (left, right):
                return n.FALSE
            if left == n.TRUE:
                return right
            if right == n.TRUE:
                return left
            return node
        case n.BinaryOp(op=n.BinaryOperator.OR, left=left, right=right):
            if n.TRUE in (left, right):
                return n.TRUE
            if left == n.FALSE:
                return right
            if right == n.FALSE:
                return left
            return node
        case n.BinaryOp(op=op, left=left, right=right) if op in _FOLDABLE:
            keys = _comparable(left, right)
            if keys is None:
                return node
            try:
                return n.LiteralValue.boolean(_FOLDABLE[op](*keys))
            except TypeError:
                return node
        case n.UnaryOp(op=n.UnaryOperator.NOT, operand=operand):
            if isinstance(operand, n.LiteralValue) and operand.truth is not None:
                return n.LiteralValue.boolean(not operand.truth)
            return node
        case n.IsNull(operand=n.LiteralValue() as literal):
            return n.LiteralValue.boolean(literal.kind is n.LiteralKind.NULL)
        case n.InList(operand=operand, items=items):
            if not items:
                return n.FALSE
            results = [_comparable(operand, item) for item in items]
            if any(r is None for r in results):
                return node
            return n.LiteralValue.boolean(any(a == b for a, b in results))
        case _:
            return node


def conjunction(predicates: list[n.Expr]) -> n.Expr:
    """AND of ``predicates`` (TRUE when empty), folded."""
    result: n.Expr = n.TRUE
    for predicate in predicates:
        result = fold(n.BinaryOp(n.BinaryOperator.AND, result, predicate))
    return result
