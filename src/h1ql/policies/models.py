from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from h1ql.policies.predicates import PredicateTemplate


class RuleLevel(str, Enum):
    ROW = "row"
    COLUMN = "column"


class RedactionPolicy(str, Enum):
    MASK_AS_NULL = "mask_as_null"
    OMIT = "omit"


@dataclass(frozen=True, order=True)
class ResourceId:
    """
    Qualified name of a table (``schema.table``) or a column
    (``schema.table.column``). Parts are stored lowercase.
    """

    schema: str
    table: str
    column: Optional[str] = None

    @classmethod
    def parse(cls, text: str, *, level: RuleLevel, default_schema: str) -> "ResourceId":
        """
        Parse a configured resource name.

        Row-level resources are ``table`` or ``schema.table``; column-level
        resources are ``table.column`` or ``schema.table.column``.
        """
        parts = [p.strip().lower() for p in text.split(".")]
        if any(not p for p in parts):
            raise ValueError(f"Invalid resource identifier: {text!r}")

        if level is RuleLevel.ROW:
            if len(parts) == 1:
                return cls(default_schema.lower(), parts[0])
            if len(parts) == 2:
                return cls(parts[0], parts[1])
        else:
            if len(parts) == 2:
                return cls(default_schema.lower(), parts[0], parts[1])
            if len(parts) == 3:
                return cls(parts[0], parts[1], parts[2])

        raise ValueError(f"Invalid {level.value} resource identifier: {text!r}")

    @classmethod
    def for_table(cls, name: str, schema: Optional[str], *, default_schema: str) -> "ResourceId":
        return cls((schema or default_schema).lower(), name.lower())

    @property
    def is_column(self) -> bool:
        return self.column is not None

    @property
    def table_resource(self) -> "ResourceId":
        return ResourceId(self.schema, self.table)

    def with_column(self, column: str) -> "ResourceId":
        return ResourceId(self.schema, self.table, column.lower())

    def __str__(self) -> str:
        if self.column is None:
            return f"{self.schema}.{self.table}"
        return f"{self.schema}.{self.table}.{self.column}"


@dataclass(frozen=True)
class Rule:
    """An immutable authorization rule attached to one resource."""

    resource: ResourceId
    level: RuleLevel
    predicate: "PredicateTemplate"
    redaction: RedactionPolicy = RedactionPolicy.MASK_AS_NULL
    name: Optional[str] = None

    @property
    def label(self) -> str:
        return self.name or f"{self.level.value}:{self.resource}"
