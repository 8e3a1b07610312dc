from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

# Attribute names resolving to the subject identifier
_SUBJECT_ALIASES = {"id", "sub"}


class RequesterContext(BaseModel):
    """
    Identity and attributes of the caller submitting a query.

    The transformers never inspect this structurally: it is only read by
    policy predicate templates through ``requester.<attribute>``.
    """

    sub: str = Field(..., description="Subject identifier (user id)")
    role: Optional[str] = None
    tenant: Optional[str] = None

    roles: List[str] = Field(default_factory=list)
    groups: List[str] = Field(default_factory=list)

    # Anything else a predicate may reference
    attributes: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
    )

    def attribute(self, name: str) -> Any:
        """
        Resolve an attribute by name.

        Explicit ``attributes`` win over declared fields; ``id`` and ``sub``
        both resolve to the subject. Raises ``KeyError`` when unset.
        """
        if name in self.attributes:
            return self.attributes[name]
        if name in _SUBJECT_ALIASES:
            return self.sub
        if name in ("role", "tenant"):
            value = getattr(self, name)
            if value is None:
                raise KeyError(name)
            return value
        if name in ("roles", "groups"):
            return list(getattr(self, name))
        raise KeyError(name)

    def fingerprint(self) -> str:
        payload = json.dumps(
            self.model_dump(mode="json"), sort_keys=True, separators=(",", ":")
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any]) -> "RequesterContext":
        """Build a context from validated JWT-style claims."""
        roles = claims.get("roles", [])
        if not isinstance(roles, list):
            roles = []

        groups = claims.get("groups", [])
        if not isinstance(groups, list):
            groups = []

        known = {"sub", "role", "tenant", "roles", "groups"}
        return cls(
            sub=str(claims["sub"]),
            role=claims.get("role"),
            tenant=claims.get("tenant"),
            roles=roles,
            groups=groups,
            attributes={k: v for k, v in claims.items() if k not in known},
        )
