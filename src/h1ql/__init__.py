from __future__ import annotations

from h1ql.errors import (
    AuthorizationContextError,
    Err,
    Ok,
    ParseError,
    PolicyConfigError,
    PolicyConflictError,
    QueryError,
    UnsupportedConstructError,
)

__version__ = "0.1.0"

__all__ = [
    "AuthorizationContextError",
    "Err",
    "Ok",
    "ParseError",
    "PolicyConfigError",
    "PolicyConflictError",
    "QueryError",
    "UnsupportedConstructError",
]
