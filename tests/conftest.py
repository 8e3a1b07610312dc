# tests/conftest.py
import pytest

from h1ql.policies.registry import load
from h1ql.security.models import RequesterContext

POLICIES = {
    "public": ["products"],
    "protected": ["audit_log"],
    "protected_columns": ["products.cost"],
    "rules": [
        {"name": "visible-teams", "resource": "teams", "predicate": "visible = TRUE"},
        {
            "name": "same-tenant",
            "resource": "members",
            "predicate": "tenant_id = requester.tenant",
        },
        {
            "name": "own-or-admin",
            "resource": "users",
            "predicate": "requester.role = 'admin' OR id = requester.id",
        },
        {
            "name": "ssn-admin-only",
            "resource": "users.ssn",
            "level": "column",
            "predicate": "requester.role = 'admin'",
        },
        {
            "name": "salary-hr",
            "resource": "users.salary",
            "level": "column",
            "predicate": "requester.role IN ('admin', 'hr')",
            "redaction": "omit",
        },
    ],
}


@pytest.fixture
def policies():
    return POLICIES


@pytest.fixture
def snapshot():
    return load(POLICIES)


@pytest.fixture
def member():
    return RequesterContext(sub="u1", role="member", tenant="acme")


@pytest.fixture
def admin():
    return RequesterContext(sub="root", role="admin", tenant="acme")


@pytest.fixture
def hr():
    return RequesterContext(sub="h1", role="hr", tenant="acme")
