# h1ql/cli/main.py
from __future__ import annotations

import json
from dataclasses import asdict
from pathlib import Path
from typing import Optional

import typer

from h1ql.cli.policies import EXIT_POLICY_ERROR, policies_app
from h1ql.cli.utils import load_requester, setup_cli_logging
from h1ql.core.config import settings
from h1ql.errors import Err, PolicyConfigError, PolicyConflictError
from h1ql.policies.registry import load
from h1ql.policies.store import read_policy_file
from h1ql.query.emit import SqlEmitter
from h1ql.query.parser import parse_query
from h1ql.query.pipeline import compile_query
from h1ql.query.restrict import restrict

EXIT_QUERY_ERROR = 1

app = typer.Typer(help="H1QL query safety utilities", no_args_is_help=True)

app.add_typer(policies_app, name="policies")


def _fail(result: Err) -> None:
    typer.echo(f"Error [{result.error.stage}]: {result.error.message}", err=True)
    raise typer.Exit(code=EXIT_QUERY_ERROR)


@app.command("check")
def check_cmd(
    sql: str = typer.Argument(..., help="Query text"),
    dialect: str = typer.Option(settings.sql_dialect, "--dialect", help="sqlglot read dialect"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """
    Run the restriction stage only and print the normalized query.
    """
    setup_cli_logging(verbose)

    parsed = parse_query(sql, dialect)
    if isinstance(parsed, Err):
        _fail(parsed)

    restricted = restrict(parsed.value)
    if isinstance(restricted, Err):
        _fail(restricted)

    typer.echo(SqlEmitter().select(restricted.value.root))


@app.command("compile")
def compile_cmd(
    sql: str = typer.Argument(..., help="Query text"),
    policies: Path = typer.Option(
        settings.policies_file, "--policies", "-p", help="Policy file (YAML or JSON)"
    ),
    requester: str = typer.Option(
        ..., "--requester", "-r", help="Requester claims: file path or inline JSON"
    ),
    limit: Optional[int] = typer.Option(None, "--limit", min=0),
    offset: Optional[int] = typer.Option(None, "--offset", min=0),
    as_json: bool = typer.Option(False, "--json", help="Print columns and tables too"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """
    Compile a query for one requester and print the SQL to execute.
    """
    setup_cli_logging(verbose)

    context = load_requester(requester)

    try:
        snapshot = load(read_policy_file(policies))
    except (PolicyConfigError, PolicyConflictError) as exc:
        typer.echo(f"Error: {exc.message}", err=True)
        raise typer.Exit(code=EXIT_POLICY_ERROR)

    result = compile_query(sql, context, snapshot, limit=limit, offset=offset)
    if isinstance(result, Err):
        _fail(result)

    compiled = result.value
    if as_json:
        typer.echo(json.dumps(asdict(compiled), indent=2))
    else:
        typer.echo(compiled.sql)


def run():
    app()


if __name__ == "__main__":
    run()
