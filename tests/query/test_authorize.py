# tests/query/test_authorize.py
import re

import pytest

from h1ql.errors import AuthorizationContextError, Err, Ok
from h1ql.policies.registry import load
from h1ql.query import nodes as n
from h1ql.query.authorize import authorize
from h1ql.query.emit import emit_sql
from h1ql.query.restrict import restrict_sql
from h1ql.query.walk import walk
from h1ql.security.models import RequesterContext


def authorized(sql, requester, snapshot):
    return authorize(restrict_sql(sql).unwrap(), requester, snapshot)


def compile_sql(sql, requester, snapshot):
    return emit_sql(authorized(sql, requester, snapshot).unwrap())


# ----------------------------------------------------------------------
# Row filtering
# ----------------------------------------------------------------------


def test_table_with_row_rule_is_wrapped():
    snapshot = load({"rules": [{"resource": "teams", "predicate": "visible = TRUE"}]})
    requester = RequesterContext(sub="u1")

    assert compile_sql("SELECT id FROM teams", requester, snapshot) == (
        "SELECT id FROM (SELECT * FROM teams WHERE visible = TRUE) AS teams"
    )


def test_alias_is_preserved(snapshot, member):
    sql = compile_sql("SELECT t.id FROM teams AS t WHERE t.id > 3", member, snapshot)
    assert sql == "SELECT t.id FROM (SELECT * FROM teams WHERE visible = TRUE) AS t WHERE t.id > 3"


def test_requester_attributes_are_bound(snapshot, member):
    sql = compile_sql("SELECT name FROM members", member, snapshot)
    assert sql == "SELECT name FROM (SELECT * FROM members WHERE tenant_id = 'acme') AS members"


def test_requester_values_are_escaped(snapshot):
    requester = RequesterContext(sub="u1", tenant="x' OR '1'='1")
    sql = compile_sql("SELECT name FROM members", requester, snapshot)
    assert "WHERE tenant_id = 'x'' OR ''1''=''1'" in sql


def test_repeated_table_occurrences_are_wrapped_independently(snapshot, member):
    sql = compile_sql(
        "SELECT a.id, b.id FROM teams AS a JOIN teams AS b ON a.parent_id = b.id",
        member,
        snapshot,
    )
    assert sql == (
        "SELECT a.id, b.id FROM (SELECT * FROM teams WHERE visible = TRUE) AS a "
        "JOIN (SELECT * FROM teams WHERE visible = TRUE) AS b ON a.parent_id = b.id"
    )


def test_tables_in_subqueries_are_wrapped(snapshot, member):
    sql = compile_sql(
        "SELECT name FROM products WHERE id IN (SELECT product_id FROM members) "
        "AND (SELECT count(*) FROM teams) > 0",
        member,
        snapshot,
    )
    assert "(SELECT * FROM members WHERE tenant_id = 'acme') AS members" in sql
    assert "(SELECT * FROM teams WHERE visible = TRUE) AS teams" in sql


def test_protected_table_scan_never_escapes_wrapper(snapshot, member):
    sql = compile_sql(
        "SELECT t.id FROM teams t JOIN (SELECT id FROM teams) x ON x.id = t.id",
        member,
        snapshot,
    )
    scans = [m.start() for m in re.finditer(r"FROM teams\b", sql)]
    assert scans
    for pos in scans:
        assert sql[:pos].endswith("(SELECT * ")


def test_multiple_row_rules_are_combined_with_and():
    snapshot = load(
        {
            "rules": [
                {"name": "a", "resource": "docs", "predicate": "owner = requester.id"},
                {"name": "b", "resource": "docs", "predicate": "archived = FALSE"},
            ]
        }
    )
    sql = compile_sql("SELECT id FROM docs", RequesterContext(sub="u1"), snapshot)
    assert sql == (
        "SELECT id FROM (SELECT * FROM docs WHERE (owner = 'u1') AND (archived = FALSE)) AS docs"
    )


def test_predicate_folds_for_admin(snapshot, admin):
    sql = compile_sql("SELECT id FROM users", admin, snapshot)
    assert sql == "SELECT id FROM (SELECT * FROM users WHERE TRUE) AS users"


def test_protected_table_without_rules_denies_everything(snapshot, member):
    sql = compile_sql("SELECT id FROM audit_log", member, snapshot)
    assert sql == "SELECT id FROM (SELECT * FROM audit_log WHERE FALSE) AS audit_log"


def test_public_table_is_untouched(snapshot, member):
    sql = compile_sql("SELECT id, name FROM products", member, snapshot)
    assert sql == "SELECT id, name FROM products"


def test_unknown_table_is_a_configuration_fault(snapshot, member):
    result = authorized("SELECT id FROM salaries", member, snapshot)

    assert isinstance(result, Err)
    assert isinstance(result.error, AuthorizationContextError)
    assert "salaries" in result.error.message
    # no hint about other resources' rules
    assert "tenant" not in result.error.message


def test_missing_attribute(snapshot):
    requester = RequesterContext(sub="u1")
    result = authorized("SELECT name FROM members", requester, snapshot)

    assert isinstance(result, Err)
    assert result.error.missing_attribute == "tenant"


# ----------------------------------------------------------------------
# Column masking
# ----------------------------------------------------------------------


@pytest.fixture
def ssn_snapshot():
    return load(
        {
            "public": ["users"],
            "rules": [
                {
                    "resource": "users.ssn",
                    "level": "column",
                    "predicate": "requester.role = 'admin'",
                }
            ],
        }
    )


def test_column_is_masked_for_non_admin(ssn_snapshot, member):
    sql = compile_sql("SELECT ssn FROM users", member, ssn_snapshot)
    assert sql == "SELECT CASE WHEN FALSE THEN ssn ELSE NULL END AS ssn FROM users"


def test_column_is_plain_for_admin(ssn_snapshot, admin):
    sql = compile_sql("SELECT ssn FROM users", admin, ssn_snapshot)
    assert sql == "SELECT ssn FROM users"


def test_explicit_alias_is_kept(ssn_snapshot, member):
    sql = compile_sql("SELECT u.ssn AS code FROM users AS u", member, ssn_snapshot)
    assert sql == "SELECT CASE WHEN FALSE THEN u.ssn ELSE NULL END AS code FROM users AS u"


def test_row_filter_and_mask_compose(snapshot, member):
    sql = compile_sql("SELECT id, ssn FROM users", member, snapshot)
    assert sql == (
        "SELECT id, CASE WHEN FALSE THEN ssn ELSE NULL END AS ssn "
        "FROM (SELECT * FROM users WHERE id = 'u1') AS users"
    )


def test_masked_column_in_every_clause(snapshot, member):
    sql = compile_sql(
        "SELECT id FROM users WHERE ssn = '123' ORDER BY ssn", member, snapshot
    )
    assert "WHERE CASE WHEN FALSE THEN ssn ELSE NULL END = '123'" in sql
    assert "ORDER BY CASE WHEN FALSE THEN ssn ELSE NULL END" in sql


def test_masked_column_inside_function_and_subquery(snapshot, member):
    sql = compile_sql(
        "SELECT name FROM products WHERE id IN (SELECT count(ssn) FROM users)",
        member,
        snapshot,
    )
    assert "COUNT(CASE WHEN FALSE THEN ssn ELSE NULL END)" in sql


def test_omitted_column_is_dropped(snapshot, member):
    sql = compile_sql("SELECT id, salary FROM users", member, snapshot)
    assert sql == "SELECT id FROM (SELECT * FROM users WHERE id = 'u1') AS users"


def test_omitted_column_is_visible_to_granted_role(snapshot, hr):
    sql = compile_sql("SELECT id, salary FROM users", hr, snapshot)
    assert sql == "SELECT id, salary FROM (SELECT * FROM users WHERE id = 'h1') AS users"


def test_omitted_column_outside_projection_is_masked(snapshot, member):
    sql = compile_sql("SELECT id FROM users WHERE salary > 10", member, snapshot)
    assert "CASE WHEN FALSE THEN salary ELSE NULL END > 10" in sql


def test_query_with_only_omitted_columns_fails(snapshot, member):
    result = authorized("SELECT salary FROM users", member, snapshot)
    assert isinstance(result, Err)
    assert isinstance(result.error, AuthorizationContextError)


def test_star_over_table_with_column_rules_is_rejected(snapshot, member):
    for sql in ("SELECT * FROM users", "SELECT u.* FROM users AS u"):
        result = authorized(sql, member, snapshot)
        assert isinstance(result, Err)
        assert "explicitly" in result.error.message


def test_star_over_unmasked_table(snapshot, member):
    sql = compile_sql("SELECT * FROM teams", member, snapshot)
    assert sql == "SELECT * FROM (SELECT * FROM teams WHERE visible = TRUE) AS teams"


def test_unqualified_restricted_column_in_join_is_ambiguous(snapshot, member):
    result = authorized(
        "SELECT ssn FROM users JOIN teams ON teams.id = users.team_id", member, snapshot
    )
    assert isinstance(result, Err)
    assert "ambiguous" in result.error.message

    qualified = authorized(
        "SELECT users.ssn FROM users JOIN teams ON teams.id = users.team_id", member, snapshot
    )
    assert isinstance(qualified, Ok)


def test_correlated_reference_resolves_outer_table(snapshot, member):
    sql = compile_sql(
        "SELECT (SELECT count(*) FROM teams AS t WHERE t.owner = u.ssn) AS n FROM users AS u",
        member,
        snapshot,
    )
    assert "t.owner = CASE WHEN FALSE THEN u.ssn ELSE NULL END" in sql


@pytest.fixture
def owner_snapshot():
    return load(
        {
            "public": ["users", "teams"],
            "rules": [
                {
                    "resource": "users.ssn",
                    "level": "column",
                    "predicate": "owner_id = requester.id",
                }
            ],
        }
    )


def test_mask_predicate_is_qualified_with_its_table(owner_snapshot, member):
    sql = compile_sql("SELECT ssn FROM users", member, owner_snapshot)
    assert sql == "SELECT CASE WHEN users.owner_id = 'u1' THEN ssn ELSE NULL END AS ssn FROM users"


def test_mask_in_correlated_subquery_checks_the_outer_row(owner_snapshot, member):
    sql = compile_sql(
        "SELECT u.id, (SELECT u.ssn FROM teams t WHERE t.owner_id = 'u1') AS s FROM users u",
        member,
        owner_snapshot,
    )
    assert "CASE WHEN u.owner_id = 'u1' THEN u.ssn ELSE NULL END" in sql
    assert "WHEN owner_id" not in sql


def test_restricted_column_in_using_is_rejected(snapshot, member):
    result = authorized(
        "SELECT a.id FROM users AS a JOIN users AS b USING (ssn)", member, snapshot
    )
    assert isinstance(result, Err)


def test_derived_table_columns_are_masked_inside(snapshot, member):
    sql = compile_sql("SELECT x.ssn FROM (SELECT ssn FROM users) AS x", member, snapshot)
    assert sql == (
        "SELECT x.ssn FROM (SELECT CASE WHEN FALSE THEN ssn ELSE NULL END AS ssn "
        "FROM (SELECT * FROM users WHERE id = 'u1') AS users) AS x"
    )


def test_protected_column_defaults_to_null(snapshot, member):
    sql = compile_sql("SELECT cost FROM products", member, snapshot)
    assert sql == "SELECT CASE WHEN FALSE THEN cost ELSE NULL END AS cost FROM products"


# ----------------------------------------------------------------------
# Idempotence and determinism
# ----------------------------------------------------------------------


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT id, ssn FROM users WHERE ssn IS NOT NULL",
        "SELECT a.id FROM teams a JOIN members m ON m.team_id = a.id",
        "SELECT x.n FROM (SELECT count(*) AS n FROM members) AS x",
        "SELECT id FROM users",
    ],
)
def test_second_pass_is_a_no_op(sql, snapshot, member):
    once = authorized(sql, member, snapshot).unwrap()
    twice = authorize(once, member, snapshot).unwrap()

    assert twice == once
    filtered = [node for node in walk(twice.root) if isinstance(node, n.FilteredTable)]
    for node in filtered:
        assert not isinstance(node.table, n.FilteredTable)


def test_output_is_deterministic(snapshot, member):
    sql = "SELECT u.id, u.ssn FROM users u JOIN members m ON m.user_id = u.id"
    assert authorized(sql, member, snapshot) == authorized(sql, member, snapshot)


def test_different_predicate_results_give_different_text(snapshot):
    acme = RequesterContext(sub="u1", tenant="acme")
    globex = RequesterContext(sub="u1", tenant="globex")
    sql = "SELECT name FROM members"

    assert compile_sql(sql, acme, snapshot) != compile_sql(sql, globex, snapshot)


def test_same_predicate_results_give_identical_text(snapshot):
    alice = RequesterContext(sub="alice", role="member", tenant="acme")
    bob = RequesterContext(sub="bob", role="viewer", tenant="acme")
    sql = "SELECT name, team_id FROM members"

    assert compile_sql(sql, alice, snapshot) == compile_sql(sql, bob, snapshot)


def test_snapshot_version_is_recorded(snapshot, member):
    result = authorized("SELECT id FROM teams", member, snapshot).unwrap()
    assert result.snapshot_version == snapshot.version
