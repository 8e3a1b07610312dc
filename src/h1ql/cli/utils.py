# h1ql/cli/utils.py
from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

import typer
import yaml
from pydantic import ValidationError

from h1ql.core.logging import setup_logging
from h1ql.security.models import RequesterContext


def setup_cli_logging(verbose: bool) -> None:
    setup_logging("DEBUG" if verbose else "WARNING", stream=sys.stderr)


def load_yaml_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"YAML file does not exist: {path}")
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def load_requester(value: str) -> RequesterContext:
    """
    Build a requester context from a JSON/YAML file path or inline JSON.

    The document holds the claims of the caller (``sub`` is required).
    """
    path = Path(value)
    try:
        if path.suffix.lower() in (".json", ".yaml", ".yml") or path.exists():
            claims = load_yaml_file(path)
        else:
            claims = json.loads(value)
    except (OSError, yaml.YAMLError, json.JSONDecodeError) as exc:
        raise typer.BadParameter(f"Cannot read requester: {exc}") from exc

    if not isinstance(claims, dict) or "sub" not in claims:
        raise typer.BadParameter("Requester must be a mapping with at least a 'sub' claim")

    try:
        return RequesterContext.from_claims(claims)
    except ValidationError as exc:
        raise typer.BadParameter(f"Invalid requester: {exc}") from exc
