# h1ql/query/authorize.py
"""
Authorization stage: restricted AST -> authorized AST.

- every table reference carrying row rules is replaced by a filtered
  derived table keeping the original alias
- every column reference carrying column rules is replaced by a mask
- tables that are neither row-filtered nor public are rejected

Already authorized nodes (``FilteredTable``, ``MaskedColumn``) are left
alone, so running the stage twice is a no-op.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Optional, Union, assert_never

from h1ql.errors import AuthorizationContextError, Err, Ok, QueryError, Result
from h1ql.policies.models import RedactionPolicy, ResourceId, Rule
from h1ql.policies.predicates import conjunction
from h1ql.policies.registry import PolicySnapshot, column_rules, row_rules
from h1ql.query import nodes as n
from h1ql.security.models import RequesterContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Source:
    name: str  # reference name as written
    resource: Optional[ResourceId]  # None for derived tables


@dataclass
class _Scope:
    sources: list[_Source] = field(default_factory=list)
    parent: Optional["_Scope"] = None

    def chain(self):
        scope: Optional[_Scope] = self
        while scope is not None:
            yield scope
            scope = scope.parent

    def find(self, name: str) -> Optional[_Source]:
        key = name.lower()
        for scope in self.chain():
            for source in scope.sources:
                if source.name.lower() == key:
                    return source
        return None


def _display(table: n.TableRef) -> str:
    return f"{table.schema}.{table.name}" if table.schema else table.name


def qualify(node: n.Expr, table: str) -> n.Expr:
    """
    Qualify the bare column references of a predicate with ``table``.

    Subqueries inside the predicate keep their own scope and are left alone.
    """
    match node:
        case n.ColumnRef(table=None):
            return replace(node, table=table)
        case n.ColumnRef() | n.StarRef() | n.LiteralValue() | n.ContextRef() | n.MaskedColumn():
            return node
        case n.ScalarSubquery():
            return node
        case n.UnaryOp() | n.IsNull():
            return replace(node, operand=qualify(node.operand, table))
        case n.BinaryOp():
            return replace(node, left=qualify(node.left, table), right=qualify(node.right, table))
        case n.Between():
            return n.Between(
                qualify(node.operand, table), qualify(node.low, table), qualify(node.high, table)
            )
        case n.InList():
            return n.InList(
                qualify(node.operand, table), tuple(qualify(i, table) for i in node.items)
            )
        case n.InSubquery():
            return replace(node, operand=qualify(node.operand, table))
        case n.FunctionCall():
            window = node.window
            if window is not None:
                window = n.WindowSpec(
                    partition_by=tuple(qualify(e, table) for e in window.partition_by),
                    order_by=tuple(
                        replace(o, expr=qualify(o.expr, table)) for o in window.order_by
                    ),
                )
            return replace(node, args=tuple(qualify(a, table) for a in node.args), window=window)
        case n.CaseExpr():
            return n.CaseExpr(
                whens=tuple(
                    n.WhenClause(qualify(w.condition, table), qualify(w.result, table))
                    for w in node.whens
                ),
                operand=qualify(node.operand, table) if node.operand is not None else None,
                default=qualify(node.default, table) if node.default is not None else None,
            )
        case _:
            assert_never(node)


class AuthorizationTransformer:
    def __init__(self, snapshot: PolicySnapshot, context: RequesterContext):
        self.snapshot = snapshot
        self.context = context
        self._bound: dict[Rule, n.Expr] = {}

    def query(self, node: n.Select) -> n.Select:
        return self._select(node, None)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _bind(self, rule: Rule) -> n.Expr:
        bound = self._bound.get(rule)
        if bound is None:
            bound = rule.predicate.bind(self.context)
            self._bound[rule] = bound
        return bound

    def _source(self, item: n.FromItem) -> _Source:
        match item:
            case n.TableRef():
                return _Source(item.reference_name, self.snapshot.table(item.name, item.schema))
            case n.FilteredTable():
                table = item.table
                return _Source(table.reference_name, self.snapshot.table(table.name, table.schema))
            case n.DerivedTable():
                return _Source(item.alias, None)
            case _:
                assert_never(item)

    # ------------------------------------------------------------------
    # Query structure
    # ------------------------------------------------------------------

    def _select(self, node: n.Select, outer: Optional[_Scope]) -> n.Select:
        source = self._from_item(node.source, outer) if node.source is not None else None
        joins = tuple(replace(j, item=self._from_item(j.item, outer)) for j in node.joins)

        scope = _Scope(parent=outer)
        if source is not None:
            scope.sources.append(self._source(source))
        scope.sources.extend(self._source(j.item) for j in joins)

        for join in joins:
            self._check_using(join, scope)

        return replace(
            node,
            projections=self._projections(node.projections, scope),
            source=source,
            joins=tuple(
                replace(j, condition=self._expr(j.condition, scope) if j.condition is not None else None)
                for j in joins
            ),
            where=self._expr(node.where, scope) if node.where is not None else None,
            group_by=tuple(self._expr(e, scope) for e in node.group_by),
            having=self._expr(node.having, scope) if node.having is not None else None,
            order_by=tuple(self._order_item(o, scope) for o in node.order_by),
        )

    def _from_item(self, item: n.FromItem, outer: Optional[_Scope]) -> n.FromItem:
        match item:
            case n.TableRef():
                return self._table(item)
            case n.FilteredTable():
                return item
            case n.DerivedTable():
                return replace(item, query=self._select(item.query, outer))
            case _:
                assert_never(item)

    def _table(self, table: n.TableRef) -> n.FromItem:
        resource = self.snapshot.table(table.name, table.schema)
        rules = row_rules(self.snapshot, resource)

        if rules:
            condition = conjunction([self._bind(r) for r in rules])
            logger.debug(
                "Wrapping %s for %s with %d row rule(s)", resource, self.context.sub, len(rules)
            )
            return n.FilteredTable(table=table, condition=condition)

        if self.snapshot.is_public(resource):
            return table

        logger.warning("No access policy for table %s (requester %s)", resource, self.context.sub)
        raise AuthorizationContextError(f"No access policy covers table '{_display(table)}'")

    def _check_using(self, join: n.Join, scope: _Scope) -> None:
        for name in join.using:
            if self._rule_bearers(name, scope):
                raise AuthorizationContextError(
                    f"Column '{name}' is restricted and cannot be used in JOIN ... USING"
                )

    def _projections(
        self, projections: tuple[n.Projection, ...], scope: _Scope
    ) -> tuple[n.Projection, ...]:
        out: list[n.Projection] = []
        for projection in projections:
            expr = projection.expr
            if isinstance(expr, n.StarRef):
                self._check_star(expr, scope)
                out.append(projection)
                continue

            if isinstance(expr, n.ColumnRef):
                masked, omit = self._mask(expr, scope)
                if omit:
                    logger.debug("Omitting column %s for %s", expr.name, self.context.sub)
                    continue
                alias = projection.alias
                if alias is None and isinstance(masked, n.MaskedColumn):
                    alias = expr.name
                out.append(n.Projection(masked, alias))
                continue

            out.append(replace(projection, expr=self._expr(expr, scope)))

        if not out:
            raise AuthorizationContextError("No visible columns remain for this query")
        return tuple(out)

    def _check_star(self, star: n.StarRef, scope: _Scope) -> None:
        if star.table is not None:
            source = scope.find(star.table)
            if source is None:
                raise AuthorizationContextError(f"Unknown table reference '{star.table}'")
            targets = [source]
        else:
            targets = scope.sources

        for source in targets:
            if source.resource is not None and self.snapshot.has_column_rules(source.resource):
                raise AuthorizationContextError(
                    f"SELECT * is not allowed on '{source.name}' because some of its "
                    "columns are restricted; list the columns explicitly"
                )

    def _order_item(self, item: n.OrderItem, scope: _Scope) -> n.OrderItem:
        return replace(item, expr=self._expr(item.expr, scope))

    # ------------------------------------------------------------------
    # Columns
    # ------------------------------------------------------------------

    def _rule_bearers(self, name: str, scope: _Scope) -> list[tuple[_Source, tuple[Rule, ...]]]:
        bearers = []
        for s in scope.chain():
            for source in s.sources:
                if source.resource is None:
                    continue
                rules = column_rules(self.snapshot, source.resource.with_column(name))
                if rules:
                    bearers.append((source, rules))
        return bearers

    def _column_rules(
        self, column: n.ColumnRef, scope: _Scope
    ) -> tuple[Optional[_Source], tuple[Rule, ...]]:
        """Source the column resolves to and the rules it carries there."""
        if column.table is not None:
            source = scope.find(column.table)
            if source is None:
                raise AuthorizationContextError(f"Unknown table reference '{column.table}'")
            if source.resource is None:
                return source, ()
            return source, column_rules(self.snapshot, source.resource.with_column(column.name))

        bearers = self._rule_bearers(column.name, scope)
        if not bearers:
            return None, ()

        nearest = next((s for s in scope.chain() if s.sources), None)
        if (
            len(bearers) == 1
            and nearest is not None
            and len(nearest.sources) == 1
            and nearest.sources[0] is bearers[0][0]
        ):
            return bearers[0]

        raise AuthorizationContextError(
            f"Column reference '{column.name}' is ambiguous; qualify it with its table"
        )

    def _mask(self, column: n.ColumnRef, scope: _Scope) -> tuple[n.Expr, bool]:
        """Return the (possibly masked) column and whether it should be omitted."""
        source, rules = self._column_rules(column, scope)
        if not rules:
            return column, False
        assert source is not None

        condition = conjunction([self._bind(r) for r in rules])
        if condition == n.TRUE:
            return column, False

        omit = condition == n.FALSE and all(r.redaction is RedactionPolicy.OMIT for r in rules)
        # masks render at the use site; pin the predicate to the masked table
        return n.MaskedColumn(column, qualify(condition, source.name)), omit

    # ------------------------------------------------------------------
    # Expressions
    # ------------------------------------------------------------------

    def _expr(self, node: n.Expr, scope: _Scope) -> n.Expr:
        match node:
            case n.ColumnRef():
                return self._mask(node, scope)[0]
            case n.StarRef() | n.LiteralValue() | n.MaskedColumn():
                return node
            case n.ContextRef():
                raise AuthorizationContextError("Requester references are not allowed in queries")
            case n.UnaryOp():
                return replace(node, operand=self._expr(node.operand, scope))
            case n.BinaryOp():
                return replace(
                    node, left=self._expr(node.left, scope), right=self._expr(node.right, scope)
                )
            case n.IsNull():
                return n.IsNull(self._expr(node.operand, scope))
            case n.Between():
                return n.Between(
                    self._expr(node.operand, scope),
                    self._expr(node.low, scope),
                    self._expr(node.high, scope),
                )
            case n.InList():
                return n.InList(
                    self._expr(node.operand, scope),
                    tuple(self._expr(i, scope) for i in node.items),
                )
            case n.InSubquery():
                return n.InSubquery(self._expr(node.operand, scope), self._select(node.query, scope))
            case n.ScalarSubquery():
                return n.ScalarSubquery(self._select(node.query, scope))
            case n.FunctionCall():
                window = node.window
                if window is not None:
                    window = n.WindowSpec(
                        partition_by=tuple(self._expr(e, scope) for e in window.partition_by),
                        order_by=tuple(self._order_item(o, scope) for o in window.order_by),
                    )
                return replace(
                    node, args=tuple(self._expr(a, scope) for a in node.args), window=window
                )
            case n.CaseExpr():
                return n.CaseExpr(
                    whens=tuple(
                        n.WhenClause(self._expr(w.condition, scope), self._expr(w.result, scope))
                        for w in node.whens
                    ),
                    operand=self._expr(node.operand, scope) if node.operand is not None else None,
                    default=self._expr(node.default, scope) if node.default is not None else None,
                )
            case _:
                assert_never(node)


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------


def authorize(
    query: Union[n.RestrictedQuery, n.AuthorizedQuery],
    context: RequesterContext,
    snapshot: PolicySnapshot,
) -> Result[n.AuthorizedQuery]:
    """Apply ``snapshot``'s rules for ``context`` to a restricted query."""
    try:
        root = AuthorizationTransformer(snapshot, context).query(query.root)
    except QueryError as exc:
        return Err(exc)
    except Exception:
        logger.exception("Unexpected error while authorizing query")
        return Err(AuthorizationContextError("Query could not be authorized"))

    return Ok(n.AuthorizedQuery(root=root, snapshot_version=snapshot.version))
