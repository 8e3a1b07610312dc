from __future__ import annotations

from .models import RedactionPolicy, ResourceId, Rule, RuleLevel
from .predicates import PredicateTemplate
from .registry import PolicySnapshot, column_rules, load, lookup, row_rules
from .specs import PolicyConfig, RuleSpec
from .store import PolicyStore, get_policy_store, read_policy_file

__all__ = [
    "PolicyConfig",
    "PolicySnapshot",
    "PolicyStore",
    "PredicateTemplate",
    "RedactionPolicy",
    "ResourceId",
    "Rule",
    "RuleLevel",
    "RuleSpec",
    "column_rules",
    "get_policy_store",
    "load",
    "lookup",
    "read_policy_file",
    "row_rules",
]
