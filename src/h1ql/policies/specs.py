# h1ql/policies/specs.py
from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from h1ql.policies.models import RedactionPolicy, RuleLevel


class RuleSpec(BaseModel):
    """One configured rule."""

    name: Optional[str] = None
    resource: str
    level: RuleLevel = RuleLevel.ROW
    predicate: str = Field(..., description="SQL boolean expression; requester.<attr> reads the requester")
    redaction: RedactionPolicy = RedactionPolicy.MASK_AS_NULL

    model_config = ConfigDict(extra="forbid")

    @field_validator("resource", "predicate")
    def not_blank(cls, v):
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @model_validator(mode="after")
    def redaction_only_for_columns(self):
        if self.level is RuleLevel.ROW and self.redaction is RedactionPolicy.OMIT:
            raise ValueError("redaction 'omit' only applies to column rules")
        return self


class PolicyConfig(BaseModel):
    """Full policy document: public tables, default-deny declarations and rules."""

    version: int = 1
    default_schema: Optional[str] = None

    # readable without any row rule
    public: List[str] = Field(default_factory=list)
    # tables / columns denied unless a rule grants access
    protected: List[str] = Field(default_factory=list)
    protected_columns: List[str] = Field(default_factory=list)

    rules: List[RuleSpec] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")
