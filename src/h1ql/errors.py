# h1ql/errors.py
"""
Typed errors and stage results.

Every stage of the query pipeline returns either ``Ok(value)`` or
``Err(error)``. The carried errors are regular exceptions, so a caller that
prefers exceptions can call ``result.unwrap()``.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, NoReturn, Optional, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class SourceSpan:
    """Character offsets (end exclusive) into the original query text."""

    start: int
    end: int
    line: Optional[int] = None
    col: Optional[int] = None

    def __str__(self) -> str:
        if self.line is not None:
            return f"line {self.line}, col {self.col}"
        return f"chars {self.start}-{self.end}"


class QueryError(Exception):
    """Base class for every error surfaced by the pipeline."""

    stage: str = "pipeline"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ParseError(QueryError):
    """Malformed query text, as reported by the parser."""

    stage = "parse"

    def __init__(self, message: str, source_span: Optional[SourceSpan] = None):
        super().__init__(message)
        self.source_span = source_span


class UnsupportedConstructError(QueryError):
    """A construct outside the safe subset was found."""

    stage = "restrict"

    def __init__(
        self,
        node_kind: str,
        source_span: Optional[SourceSpan] = None,
        reason: Optional[str] = None,
    ):
        message = f"Unsupported SQL construct: {node_kind}"
        if reason:
            message = f"{message} ({reason})"
        if source_span is not None:
            message = f"{message} at {source_span}"
        super().__init__(message)
        self.node_kind = node_kind
        self.source_span = source_span
        self.reason = reason


class AuthorizationContextError(QueryError):
    """
    The requester context cannot satisfy an applicable rule, or a resource
    has no policy decision at all.
    """

    stage = "authorize"

    def __init__(self, message: str, missing_attribute: Optional[str] = None):
        super().__init__(message)
        self.missing_attribute = missing_attribute


class PolicyConflictError(QueryError):
    """Contradictory rule definitions detected while loading policies."""

    stage = "policy"

    def __init__(self, resource: str, detail: str):
        super().__init__(f"Conflicting policy for {resource}: {detail}")
        self.resource = resource
        self.detail = detail


class PolicyConfigError(QueryError):
    """Malformed policy configuration."""

    stage = "policy"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err:
    error: QueryError

    @property
    def ok(self) -> bool:
        return False

    def unwrap(self) -> NoReturn:
        raise self.error


Result = Union[Ok[T], Err]
