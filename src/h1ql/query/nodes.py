# h1ql/query/nodes.py
"""
Restricted / authorized AST model.

The model is a closed set of frozen dataclasses. Anything the restriction
stage cannot map onto one of these classes is rejected, so there is no
"other" node kind past that stage.

``ContextRef`` only appears inside compiled policy predicates.
``MaskedColumn`` and ``FilteredTable`` only appear after authorization and
mark nodes that must not be rewritten again.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple, Union


class NodeKind(str, Enum):
    """Tags of the generic (parser-produced) AST."""

    SELECT = "select"
    PROJECTION = "projection"
    TABLE = "table"
    JOIN = "join"
    WHERE = "where"
    GROUP = "group"
    HAVING = "having"
    ORDER = "order"
    FUNCTION = "function"
    COLUMN = "column"
    LITERAL = "literal"
    SUBQUERY = "subquery"
    SET_OPERATION = "set_operation"
    OTHER = "other"


class LiteralKind(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    NULL = "null"


class UnaryOperator(str, Enum):
    NOT = "NOT"
    NEG = "-"


class BinaryOperator(str, Enum):
    # arithmetic
    ADD = "+"
    SUB = "-"
    MUL = "*"
    DIV = "/"
    MOD = "%"
    # comparison
    EQ = "="
    NEQ = "<>"
    LT = "<"
    LTE = "<="
    GT = ">"
    GTE = ">="
    LIKE = "LIKE"
    ILIKE = "ILIKE"
    # boolean
    AND = "AND"
    OR = "OR"

    @property
    def is_comparison(self) -> bool:
        return self in _COMPARISONS

    @property
    def is_boolean(self) -> bool:
        return self in (BinaryOperator.AND, BinaryOperator.OR)


_COMPARISONS = frozenset(
    {
        BinaryOperator.EQ,
        BinaryOperator.NEQ,
        BinaryOperator.LT,
        BinaryOperator.LTE,
        BinaryOperator.GT,
        BinaryOperator.GTE,
        BinaryOperator.LIKE,
        BinaryOperator.ILIKE,
    }
)


class JoinKind(str, Enum):
    INNER = "INNER"
    LEFT = "LEFT"
    RIGHT = "RIGHT"
    FULL = "FULL"
    CROSS = "CROSS"


# -----------------------------------------------------------------------------
# Expressions
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class ColumnRef:
    name: str
    table: Optional[str] = None


@dataclass(frozen=True)
class StarRef:
    table: Optional[str] = None


@dataclass(frozen=True)
class LiteralValue:
    """
    A constant. ``text`` keeps the source spelling of numbers so that
    ``1.50`` is emitted back as ``1.50``.
    """

    kind: LiteralKind
    text: str = ""

    @classmethod
    def string(cls, value: str) -> "LiteralValue":
        return cls(LiteralKind.STRING, value)

    @classmethod
    def number(cls, value: Union[int, float, str]) -> "LiteralValue":
        return cls(LiteralKind.NUMBER, str(value))

    @classmethod
    def boolean(cls, value: bool) -> "LiteralValue":
        return cls(LiteralKind.BOOLEAN, "TRUE" if value else "FALSE")

    @classmethod
    def null(cls) -> "LiteralValue":
        return cls(LiteralKind.NULL, "NULL")

    @property
    def truth(self) -> Optional[bool]:
        """Boolean value for boolean literals, ``None`` otherwise."""
        if self.kind is LiteralKind.BOOLEAN:
            return self.text == "TRUE"
        return None


TRUE = LiteralValue.boolean(True)
FALSE = LiteralValue.boolean(False)
NULL = LiteralValue.null()


@dataclass(frozen=True)
class UnaryOp:
    op: UnaryOperator
    operand: "Expr"


@dataclass(frozen=True)
class BinaryOp:
    op: BinaryOperator
    left: "Expr"
    right: "Expr"


@dataclass(frozen=True)
class IsNull:
    operand: "Expr"


@dataclass(frozen=True)
class Between:
    operand: "Expr"
    low: "Expr"
    high: "Expr"


@dataclass(frozen=True)
class InList:
    operand: "Expr"
    items: Tuple["Expr", ...]


@dataclass(frozen=True)
class InSubquery:
    operand: "Expr"
    query: "Select"


@dataclass(frozen=True)
class OrderItem:
    expr: "Expr"
    descending: bool = False
    nulls_first: Optional[bool] = None


@dataclass(frozen=True)
class WindowSpec:
    partition_by: Tuple["Expr", ...] = ()
    order_by: Tuple[OrderItem, ...] = ()


@dataclass(frozen=True)
class FunctionCall:
    """Call of a whitelisted function; ``name`` is lowercase."""

    name: str
    args: Tuple["Expr", ...] = ()
    distinct: bool = False
    window: Optional[WindowSpec] = None


@dataclass(frozen=True)
class WhenClause:
    condition: "Expr"
    result: "Expr"


@dataclass(frozen=True)
class CaseExpr:
    whens: Tuple[WhenClause, ...]
    operand: Optional["Expr"] = None
    default: Optional["Expr"] = None


@dataclass(frozen=True)
class ScalarSubquery:
    query: "Select"


@dataclass(frozen=True)
class ContextRef:
    """``requester.<attribute>`` inside a policy predicate template."""

    attribute: str


@dataclass(frozen=True)
class MaskedColumn:
    """A column visible only where ``condition`` holds, NULL elsewhere."""

    column: ColumnRef
    condition: "Expr"


Expr = Union[
    ColumnRef,
    StarRef,
    LiteralValue,
    UnaryOp,
    BinaryOp,
    IsNull,
    Between,
    InList,
    InSubquery,
    FunctionCall,
    CaseExpr,
    ScalarSubquery,
    ContextRef,
    MaskedColumn,
]


# -----------------------------------------------------------------------------
# Query structure
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class Projection:
    expr: Expr
    alias: Optional[str] = None


@dataclass(frozen=True)
class TableRef:
    name: str
    schema: Optional[str] = None
    alias: Optional[str] = None

    @property
    def reference_name(self) -> str:
        """Name sibling column references use to qualify this table."""
        return self.alias or self.name


@dataclass(frozen=True)
class DerivedTable:
    query: "Select"
    alias: str

    @property
    def reference_name(self) -> str:
        return self.alias


@dataclass(frozen=True)
class FilteredTable:
    """``(SELECT * FROM table WHERE condition) AS alias`` built by authorization."""

    table: TableRef
    condition: Expr

    @property
    def reference_name(self) -> str:
        return self.table.reference_name


FromItem = Union[TableRef, DerivedTable, FilteredTable]


@dataclass(frozen=True)
class Join:
    kind: JoinKind
    item: FromItem
    condition: Optional[Expr] = None
    using: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Select:
    projections: Tuple[Projection, ...]
    source: Optional[FromItem] = None
    joins: Tuple[Join, ...] = ()
    where: Optional[Expr] = None
    group_by: Tuple[Expr, ...] = ()
    having: Optional[Expr] = None
    order_by: Tuple[OrderItem, ...] = ()
    limit: Optional[int] = None
    offset: Optional[int] = None
    distinct: bool = False

    @property
    def from_items(self) -> Tuple[FromItem, ...]:
        if self.source is None:
            return ()
        return (self.source,) + tuple(j.item for j in self.joins)


# -----------------------------------------------------------------------------
# Stage outputs
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class RestrictedQuery:
    """Output of the restriction stage."""

    root: Select


@dataclass(frozen=True)
class AuthorizedQuery:
    """Output of the authorization stage, bound to one policy snapshot."""

    root: Select
    snapshot_version: str
