# h1ql/policies/registry.py
"""
Policy registry: immutable snapshots of row/column rules keyed by resource.

``load`` is the only place a snapshot is built. A snapshot is never
mutated afterwards; reloading produces a new one (see ``store``).
"""
from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional, Union

from pydantic import ValidationError

from h1ql.core.config import settings
from h1ql.errors import PolicyConfigError, PolicyConflictError
from h1ql.policies.models import RedactionPolicy, ResourceId, Rule, RuleLevel
from h1ql.policies.predicates import PredicateTemplate
from h1ql.policies.specs import PolicyConfig

logger = logging.getLogger(__name__)

DEFAULT_DENY = "default-deny"


@dataclass(frozen=True, eq=False)
class PolicySnapshot:
    """
    Read-only view of every rule known at load time.

    ``version`` is a content hash of the configuration, so two snapshots
    loaded from the same document share it.
    """

    rules: Mapping[ResourceId, tuple[Rule, ...]]
    public: frozenset[ResourceId]
    version: str
    default_schema: str
    # tables having at least one column rule
    masked_tables: frozenset[ResourceId] = field(default_factory=frozenset)

    def table(self, name: str, schema: Optional[str] = None) -> ResourceId:
        return ResourceId.for_table(name, schema, default_schema=self.default_schema)

    def is_public(self, resource: ResourceId) -> bool:
        return resource.table_resource in self.public

    def has_column_rules(self, table: ResourceId) -> bool:
        return table.table_resource in self.masked_tables

    @property
    def rule_count(self) -> int:
        return sum(len(v) for v in self.rules.values())


def lookup(snapshot: PolicySnapshot, resource: ResourceId) -> tuple[Rule, ...]:
    """Rules registered for ``resource``, in configuration order."""
    return snapshot.rules.get(resource, ())


def row_rules(snapshot: PolicySnapshot, table: ResourceId) -> tuple[Rule, ...]:
    return tuple(r for r in lookup(snapshot, table.table_resource) if r.level is RuleLevel.ROW)


def column_rules(snapshot: PolicySnapshot, column: ResourceId) -> tuple[Rule, ...]:
    return tuple(r for r in lookup(snapshot, column) if r.level is RuleLevel.COLUMN)


# -----------------------------------------------------------------------------
# Loading
# -----------------------------------------------------------------------------


def _fingerprint(config: PolicyConfig, default_schema: str, dialect: str) -> str:
    payload = json.dumps(
        {
            "schema": default_schema,
            "dialect": dialect,
            "config": config.model_dump(mode="json"),
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def _parse_resource(text: str, level: RuleLevel, default_schema: str) -> ResourceId:
    try:
        return ResourceId.parse(text, level=level, default_schema=default_schema)
    except ValueError as exc:
        raise PolicyConfigError(str(exc)) from exc


def load(
    config: Union[PolicyConfig, Mapping[str, Any]],
    *,
    dialect: Optional[str] = None,
    default_schema: Optional[str] = None,
) -> PolicySnapshot:
    """
    Build a snapshot from a policy document.

    Raises ``PolicyConfigError`` for malformed documents and
    ``PolicyConflictError`` for contradictory rules.
    """
    if not isinstance(config, PolicyConfig):
        try:
            config = PolicyConfig.model_validate(config)
        except ValidationError as exc:
            raise PolicyConfigError(f"Invalid policy document: {exc}") from exc

    schema = (config.default_schema or default_schema or settings.default_schema).lower()
    dialect = dialect or settings.sql_dialect

    public = {_parse_resource(p, RuleLevel.ROW, schema) for p in config.public}
    protected = [_parse_resource(p, RuleLevel.ROW, schema) for p in config.protected]
    protected_columns = [
        _parse_resource(p, RuleLevel.COLUMN, schema) for p in config.protected_columns
    ]

    for resource in protected:
        if resource in public:
            raise PolicyConflictError(str(resource), "listed as both public and protected")

    rules: dict[ResourceId, list[Rule]] = {}
    for spec in config.rules:
        resource = _parse_resource(spec.resource, spec.level, schema)
        rule = Rule(
            resource=resource,
            level=spec.level,
            predicate=PredicateTemplate.compile(spec.predicate, dialect=dialect),
            redaction=spec.redaction,
            name=spec.name,
        )
        _check_conflicts(rule, rules.get(resource, []), public)
        rules.setdefault(resource, []).append(rule)

    # default-deny for declared resources without any granting rule
    for resource in protected:
        if not any(r.level is RuleLevel.ROW for r in rules.get(resource, [])):
            rules.setdefault(resource, []).append(
                Rule(resource, RuleLevel.ROW, PredicateTemplate.constant(False), name=DEFAULT_DENY)
            )
    for resource in protected_columns:
        if resource not in rules:
            rules[resource] = [
                Rule(
                    resource,
                    RuleLevel.COLUMN,
                    PredicateTemplate.constant(False),
                    RedactionPolicy.MASK_AS_NULL,
                    name=DEFAULT_DENY,
                )
            ]

    masked_tables = frozenset(res.table_resource for res in rules if res.is_column)

    for table in sorted(masked_tables):
        if table not in public and table not in rules:
            logger.warning(
                "Table %s has column rules but is neither public nor row-filtered; "
                "queries reading it will be rejected",
                table,
            )

    snapshot = PolicySnapshot(
        rules=MappingProxyType({k: tuple(v) for k, v in rules.items()}),
        public=frozenset(public),
        version=_fingerprint(config, schema, dialect),
        default_schema=schema,
        masked_tables=masked_tables,
    )
    logger.info(
        "Policy snapshot %s loaded: %d rules, %d resources, %d public tables",
        snapshot.version,
        snapshot.rule_count,
        len(snapshot.rules),
        len(snapshot.public),
    )
    return snapshot


def _check_conflicts(rule: Rule, existing: list[Rule], public: set[ResourceId]) -> None:
    resource = str(rule.resource)

    if rule.level is RuleLevel.ROW and rule.resource in public:
        raise PolicyConflictError(resource, "public tables cannot carry row rules")

    if rule.name is not None and any(r.name == rule.name for r in existing):
        raise PolicyConflictError(resource, f"duplicate rule name '{rule.name}'")

    if rule.level is RuleLevel.COLUMN:
        for other in existing:
            if other.redaction is not rule.redaction:
                raise PolicyConflictError(
                    resource,
                    f"redaction '{rule.redaction.value}' contradicts '{other.redaction.value}'",
                )
