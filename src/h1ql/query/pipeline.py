# h1ql/query/pipeline.py
"""
End-to-end compilation: text -> parse -> restrict -> authorize -> emit.

One policy snapshot is captured per call and used by every stage, so a
concurrent reload never splits a request across two snapshots.
"""
from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, replace
from typing import Optional

from h1ql.core.cache import TTLCache
from h1ql.core.config import settings
from h1ql.errors import Err, Ok, QueryError, Result
from h1ql.policies.registry import PolicySnapshot
from h1ql.policies.store import PolicyStore, get_policy_store
from h1ql.query import nodes as n
from h1ql.query.authorize import authorize
from h1ql.query.emit import emit_sql, output_columns
from h1ql.query.parser import parse_query
from h1ql.query.restrict import restrict
from h1ql.query.walk import walk
from h1ql.security.models import RequesterContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompiledQuery:
    sql: str
    columns: tuple[str, ...]
    # resources read, as schema.table
    tables: tuple[str, ...]
    snapshot_version: str


def _cache_key(
    text: str,
    requester: RequesterContext,
    version: str,
    limit: Optional[int],
    offset: Optional[int],
) -> str:
    payload = json.dumps(
        {
            "q": text,
            "r": requester.fingerprint(),
            "v": version,
            "l": limit,
            "o": offset,
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _tables_read(root: n.Select, snapshot: PolicySnapshot) -> tuple[str, ...]:
    found = {
        str(snapshot.table(node.name, node.schema))
        for node in walk(root)
        if isinstance(node, n.TableRef)
    }
    return tuple(sorted(found))


class QueryPipeline:
    """
    Compiles untrusted query text for one requester.

    Either pass a fixed ``snapshot`` (tests, one-off tools) or a
    ``store`` whose current snapshot is read at the start of each call.
    """

    def __init__(
        self,
        store: Optional[PolicyStore] = None,
        *,
        snapshot: Optional[PolicySnapshot] = None,
        dialect: Optional[str] = None,
        max_depth: Optional[int] = None,
        max_rows: Optional[int] = None,
        cache: Optional[TTLCache[CompiledQuery]] = None,
        cache_enabled: Optional[bool] = None,
    ):
        if store is None and snapshot is None:
            store = get_policy_store()
        self.store = store
        self.snapshot = snapshot
        self.dialect = dialect or settings.sql_dialect
        self.max_depth = max_depth
        self.max_rows = max_rows if max_rows is not None else settings.max_rows

        if cache_enabled is None:
            cache_enabled = settings.compile_cache_enabled
        if cache is None and cache_enabled:
            cache = TTLCache(maxsize=settings.compile_cache_maxsize)
        self.cache = cache if cache_enabled else None
        self.cache_ttl = settings.compile_cache_ttl

    def _current(self) -> PolicySnapshot:
        if self.snapshot is not None:
            return self.snapshot
        assert self.store is not None
        return self.store.current()

    def _bound_rows(self, root: n.Select, limit: Optional[int], offset: Optional[int]) -> n.Select:
        requested = limit if limit is not None else root.limit
        candidates = [v for v in (requested, self.max_rows) if v is not None]
        effective = min(candidates) if candidates else None
        return replace(
            root,
            limit=effective,
            offset=offset if offset is not None else root.offset,
        )

    def compile(
        self,
        text: str,
        requester: RequesterContext,
        *,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> Result[CompiledQuery]:
        if limit is not None and limit < 0:
            return Err(QueryError("limit must not be negative"))
        if offset is not None and offset < 0:
            return Err(QueryError("offset must not be negative"))

        snapshot = self._current()

        key = None
        if self.cache is not None:
            key = _cache_key(text, requester, snapshot.version, limit, offset)
            cached = self.cache.get(key)
            if cached is not None:
                logger.debug("Compile cache hit for %s", requester.sub)
                return Ok(cached)

        result = self._compile(text, requester, snapshot, limit, offset)

        if isinstance(result, Ok) and self.cache is not None and key is not None:
            self.cache.set(key, result.value, self.cache_ttl)
        return result

    def _compile(
        self,
        text: str,
        requester: RequesterContext,
        snapshot: PolicySnapshot,
        limit: Optional[int],
        offset: Optional[int],
    ) -> Result[CompiledQuery]:
        parsed = parse_query(text, self.dialect)
        if isinstance(parsed, Err):
            return self._failed(parsed, requester)

        restricted = restrict(parsed.value, max_depth=self.max_depth)
        if isinstance(restricted, Err):
            return self._failed(restricted, requester)

        authorized = authorize(restricted.value, requester, snapshot)
        if isinstance(authorized, Err):
            return self._failed(authorized, requester)

        query = authorized.value
        query = replace(query, root=self._bound_rows(query.root, limit, offset))

        try:
            sql = emit_sql(query)
        except (TypeError, ValueError):
            logger.exception("Failed to emit SQL for an authorized query")
            return Err(QueryError("Query could not be compiled"))

        compiled = CompiledQuery(
            sql=sql,
            columns=tuple(output_columns(query.root)),
            tables=_tables_read(query.root, snapshot),
            snapshot_version=snapshot.version,
        )
        logger.info(
            "Compiled query for %s against snapshot %s (%d tables)",
            requester.sub,
            snapshot.version,
            len(compiled.tables),
        )
        return Ok(compiled)

    def _failed(self, result: Err, requester: RequesterContext) -> Err:
        logger.info(
            "Query from %s rejected at %s: %s",
            requester.sub,
            result.error.stage,
            result.error.message,
        )
        return result


def compile_query(
    text: str,
    requester: RequesterContext,
    snapshot: PolicySnapshot,
    *,
    limit: Optional[int] = None,
    offset: Optional[int] = None,
) -> Result[CompiledQuery]:
    """Uncached one-shot compilation against ``snapshot``."""
    pipeline = QueryPipeline(snapshot=snapshot, cache_enabled=False)
    return pipeline.compile(text, requester, limit=limit, offset=offset)
