from __future__ import annotations

from typing import Iterator, Union, assert_never

from h1ql.query import nodes as n

Node = Union[
    n.Expr,
    n.Select,
    n.Projection,
    n.OrderItem,
    n.WindowSpec,
    n.WhenClause,
    n.TableRef,
    n.DerivedTable,
    n.FilteredTable,
    n.Join,
]


def children(node: Node) -> tuple[Node, ...]:
    """Direct children of ``node`` in source order."""
    match node:
        case n.ColumnRef() | n.StarRef() | n.LiteralValue() | n.ContextRef() | n.TableRef():
            return ()
        case n.UnaryOp():
            return (node.operand,)
        case n.BinaryOp():
            return (node.left, node.right)
        case n.IsNull():
            return (node.operand,)
        case n.Between():
            return (node.operand, node.low, node.high)
        case n.InList():
            return (node.operand,) + node.items
        case n.InSubquery():
            return (node.operand, node.query)
        case n.FunctionCall():
            return node.args + ((node.window,) if node.window is not None else ())
        case n.WindowSpec():
            return node.partition_by + node.order_by
        case n.CaseExpr():
            out: tuple[Node, ...] = (node.operand,) if node.operand is not None else ()
            out += node.whens
            return out + ((node.default,) if node.default is not None else ())
        case n.WhenClause():
            return (node.condition, node.result)
        case n.ScalarSubquery():
            return (node.query,)
        case n.MaskedColumn():
            return (node.column, node.condition)
        case n.Projection():
            return (node.expr,)
        case n.OrderItem():
            return (node.expr,)
        case n.DerivedTable():
            return (node.query,)
        case n.FilteredTable():
            return (node.table, node.condition)
        case n.Join():
            out = (node.item,)
            return out + ((node.condition,) if node.condition is not None else ())
        case n.Select():
            out = tuple(node.projections)
            if node.source is not None:
                out += (node.source,)
            out += node.joins
            if node.where is not None:
                out += (node.where,)
            out += node.group_by
            if node.having is not None:
                out += (node.having,)
            return out + node.order_by
        case _:
            assert_never(node)


def walk(node: Node) -> Iterator[Node]:
    """Pre-order, left-to-right traversal."""
    yield node
    for child in children(node):
        yield from walk(child)
