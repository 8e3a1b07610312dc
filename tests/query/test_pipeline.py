# tests/query/test_pipeline.py
import pytest

from h1ql.core.cache import TTLCache
from h1ql.errors import AuthorizationContextError, Err, Ok, QueryError, UnsupportedConstructError
from h1ql.policies.registry import load
from h1ql.policies.store import PolicyStore
from h1ql.query import pipeline as pipeline_module
from h1ql.query.pipeline import QueryPipeline, compile_query
from h1ql.query.restrict import restrict_sql
from h1ql.security.models import RequesterContext


@pytest.fixture
def pipeline(snapshot):
    return QueryPipeline(snapshot=snapshot, max_rows=100, cache=TTLCache(maxsize=16))


def test_compile(pipeline, member, snapshot):
    result = pipeline.compile("SELECT id, name FROM teams", member)

    assert isinstance(result, Ok)
    compiled = result.value
    assert compiled.sql == (
        "SELECT id, name FROM (SELECT * FROM teams WHERE visible = TRUE) AS teams LIMIT 100"
    )
    assert compiled.columns == ("id", "name")
    assert compiled.tables == ("public.teams",)
    assert compiled.snapshot_version == snapshot.version


def test_emitted_text_parses_back(pipeline, member):
    sql = pipeline.compile(
        "SELECT u.id, u.ssn FROM users u JOIN members m ON m.user_id = u.id WHERE m.active = TRUE",
        member,
    ).unwrap().sql

    assert isinstance(restrict_sql(sql), Ok)


# ----------------------------------------------------------------------
# Row cap
# ----------------------------------------------------------------------


@pytest.mark.parametrize(
    "sql, kwargs, expected",
    [
        ("SELECT id FROM teams", {}, "LIMIT 100"),
        ("SELECT id FROM teams LIMIT 5000", {}, "LIMIT 100"),
        ("SELECT id FROM teams LIMIT 7", {}, "LIMIT 7"),
        ("SELECT id FROM teams LIMIT 7", {"limit": 20}, "LIMIT 20"),
        ("SELECT id FROM teams", {"limit": 500}, "LIMIT 100"),
        ("SELECT id FROM teams", {"limit": 10, "offset": 30}, "LIMIT 10 OFFSET 30"),
    ],
)
def test_limit_is_clamped(pipeline, member, sql, kwargs, expected):
    compiled = pipeline.compile(sql, member, **kwargs).unwrap()
    assert compiled.sql.endswith(expected)


def test_only_root_limit_is_clamped(pipeline, member):
    compiled = pipeline.compile(
        "SELECT x.id FROM (SELECT id FROM teams LIMIT 5000) AS x", member
    ).unwrap()
    assert "LIMIT 5000) AS x LIMIT 100" in compiled.sql


@pytest.mark.parametrize("kwargs", [{"limit": -1}, {"offset": -5}])
def test_negative_row_bounds_are_refused(pipeline, member, kwargs):
    result = pipeline.compile("SELECT id FROM teams", member, **kwargs)

    assert isinstance(result, Err)
    assert type(result.error) is QueryError
    assert "negative" in result.error.message


# ----------------------------------------------------------------------
# Failures
# ----------------------------------------------------------------------


@pytest.mark.parametrize(
    "requester",
    [
        RequesterContext(sub="u1"),
        RequesterContext(sub="root", role="admin", tenant="acme"),
    ],
)
def test_delete_is_rejected_for_every_requester(pipeline, requester):
    result = pipeline.compile("DELETE FROM users", requester)

    assert isinstance(result, Err)
    assert isinstance(result.error, UnsupportedConstructError)


def test_emitter_is_not_invoked_on_rejection(pipeline, member, monkeypatch):
    calls = []
    monkeypatch.setattr(pipeline_module, "emit_sql", lambda q: calls.append(q))

    assert isinstance(pipeline.compile("DROP TABLE users", member), Err)
    assert isinstance(pipeline.compile("SELECT id FROM salaries", member), Err)
    assert isinstance(pipeline.compile("SELECT (1", member), Err)
    assert calls == []


def test_authorization_error_is_returned(pipeline):
    result = pipeline.compile("SELECT name FROM members", RequesterContext(sub="u1"))

    assert isinstance(result, Err)
    assert isinstance(result.error, AuthorizationContextError)
    with pytest.raises(AuthorizationContextError):
        result.unwrap()


# ----------------------------------------------------------------------
# Caching
# ----------------------------------------------------------------------


def test_compiled_queries_are_cached(pipeline, member, monkeypatch):
    calls = []
    real = pipeline_module.authorize

    def counting(*args, **kwargs):
        calls.append(args)
        return real(*args, **kwargs)

    monkeypatch.setattr(pipeline_module, "authorize", counting)

    first = pipeline.compile("SELECT id FROM teams", member).unwrap()
    second = pipeline.compile("SELECT id FROM teams", member).unwrap()

    assert second is first
    assert len(calls) == 1


def test_cache_is_keyed_by_requester(pipeline):
    acme = RequesterContext(sub="u1", tenant="acme")
    globex = RequesterContext(sub="u1", tenant="globex")

    a = pipeline.compile("SELECT name FROM members", acme).unwrap()
    b = pipeline.compile("SELECT name FROM members", globex).unwrap()

    assert "'acme'" in a.sql
    assert "'globex'" in b.sql


def test_errors_are_not_cached(pipeline):
    pipeline.compile("SELECT name FROM members", RequesterContext(sub="u1"))
    assert len(pipeline.cache) == 0


def test_cache_can_be_disabled(snapshot, member):
    pipeline = QueryPipeline(snapshot=snapshot, cache_enabled=False)
    assert pipeline.cache is None
    assert isinstance(pipeline.compile("SELECT id FROM teams", member), Ok)


# ----------------------------------------------------------------------
# Snapshots
# ----------------------------------------------------------------------


def test_reload_applies_to_new_requests(policies, member):
    store = PolicyStore()
    first = store.reload(policies)
    pipeline = QueryPipeline(store, cache=TTLCache(maxsize=16))

    before = pipeline.compile("SELECT id FROM teams", member).unwrap()

    changed = dict(policies)
    changed["rules"] = [
        {"resource": "teams", "predicate": "visible = TRUE AND archived = FALSE"}
    ]
    second = store.reload(changed)
    after = pipeline.compile("SELECT id FROM teams", member).unwrap()

    assert before.snapshot_version == first.version
    assert after.snapshot_version == second.version
    assert "archived = FALSE" in after.sql
    assert "archived" not in before.sql


def test_compile_query_helper(snapshot, member):
    result = compile_query("SELECT id FROM products", member, snapshot, limit=3)
    assert result.unwrap().sql == "SELECT id FROM products LIMIT 3"


def test_requester_values_in_predicate_joins_are_bound(member):
    snapshot = load(
        {
            "rules": [
                {
                    "resource": "docs",
                    "predicate": "team_id IN (SELECT m.team_id FROM memberships m "
                    "JOIN teams t ON t.id = m.team_id AND m.user_id = requester.id)",
                }
            ]
        }
    )

    compiled = compile_query("SELECT id FROM docs", member, snapshot).unwrap()
    assert "m.user_id = 'u1'" in compiled.sql


def test_quoted_mixed_case_identifiers_keep_their_quotes(snapshot, member):
    compiled = compile_query('SELECT "Name" FROM products', member, snapshot).unwrap()
    assert compiled.sql.startswith('SELECT "Name" FROM products')
    assert compiled.columns == ("Name",)
