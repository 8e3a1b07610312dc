# h1ql/cli/policies.py
from __future__ import annotations

import logging
from pathlib import Path

import typer

from h1ql.cli.utils import setup_cli_logging
from h1ql.errors import PolicyConfigError, PolicyConflictError
from h1ql.policies.models import RuleLevel
from h1ql.policies.registry import DEFAULT_DENY, load
from h1ql.policies.store import read_policy_file

logger = logging.getLogger(__name__)

EXIT_POLICY_ERROR = 2

policies_app = typer.Typer(name="policies", help="Inspect and validate policy files")


@policies_app.command("validate")
def validate_cmd(
    path: Path = typer.Argument(..., help="Policy file (YAML or JSON)"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """
    Load a policy file the way the service would and report conflicts.
    """
    setup_cli_logging(verbose)

    try:
        snapshot = load(read_policy_file(path))
    except (PolicyConfigError, PolicyConflictError) as exc:
        typer.echo(f"Error: {exc.message}", err=True)
        raise typer.Exit(code=EXIT_POLICY_ERROR)

    rows = cols = denied = 0
    for rules in snapshot.rules.values():
        for rule in rules:
            if rule.level is RuleLevel.ROW:
                rows += 1
            else:
                cols += 1
            if rule.name == DEFAULT_DENY:
                denied += 1

    typer.echo(f"{path} is valid (version {snapshot.version})")
    typer.echo(
        f"  {rows} row rules, {cols} column rules, "
        f"{len(snapshot.public)} public tables, {denied} default-deny"
    )
