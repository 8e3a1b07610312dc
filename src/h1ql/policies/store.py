from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Mapping, Optional, Union

import yaml

from h1ql.core.config import settings
from h1ql.errors import PolicyConfigError
from h1ql.policies.registry import PolicySnapshot, load
from h1ql.policies.specs import PolicyConfig

logger = logging.getLogger(__name__)


def read_policy_file(path: Path) -> dict[str, Any]:
    """Read a YAML (or JSON) policy document."""
    if not path.exists():
        raise PolicyConfigError(f"Policy file does not exist: {path}")
    with path.open("r", encoding="utf-8") as f:
        try:
            if path.suffix.lower() == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
        except (yaml.YAMLError, json.JSONDecodeError) as exc:
            raise PolicyConfigError(f"Cannot read policy file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise PolicyConfigError(f"Policy file {path} must hold a mapping")
    return data


class PolicyStore:
    """
    Holds the current policy snapshot.

    Readers grab ``current()`` once per request and keep that object; a
    reload builds a complete new snapshot before swapping the reference, so
    a reader sees either the old snapshot or the new one, never a mix.
    The lock only serializes concurrent reloads.
    """

    def __init__(self, snapshot: Optional[PolicySnapshot] = None):
        self._snapshot = snapshot
        self._reload_lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self._snapshot is not None

    def current(self) -> PolicySnapshot:
        snapshot = self._snapshot
        if snapshot is None:
            raise PolicyConfigError("No policy snapshot loaded")
        return snapshot

    def reload(
        self,
        config: Union[PolicyConfig, Mapping[str, Any]],
        **load_kwargs: Any,
    ) -> PolicySnapshot:
        with self._reload_lock:
            snapshot = load(config, **load_kwargs)
            previous = self._snapshot
            self._snapshot = snapshot

        logger.info(
            "Policy snapshot swapped: %s -> %s",
            previous.version if previous is not None else "none",
            snapshot.version,
        )
        return snapshot

    def reload_from_file(self, path: Optional[Path] = None, **load_kwargs: Any) -> PolicySnapshot:
        path = path or settings.policies_file
        return self.reload(read_policy_file(path), **load_kwargs)


_store: PolicyStore | None = None


def get_policy_store() -> PolicyStore:
    """Process-wide store, loaded from ``settings.policies_file`` on first use."""
    global _store
    if _store is not None:
        return _store

    store = PolicyStore()
    try:
        store.reload_from_file(settings.policies_file)
    except PolicyConfigError:
        logger.exception("Failed to load policies from %s", settings.policies_file)
        raise

    _store = store
    return store
