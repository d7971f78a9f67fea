"""In-memory configuration tree.

The live configuration of every managed component lives under
``services.<name>`` as the raw subtree produced by
:meth:`pyfleet.models.component.ComponentSpec.to_config`.  The store
supplies the live-vs-desired comparison for bootstrap detection and
deployment diffing, and the deep copies used as shadow configuration.
"""

from __future__ import annotations

import copy
import dataclasses
import json
import logging
import os
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path
from typing import Any

from pyfleet._atomic import write_atomically
from pyfleet._constants import BOOTSTRAP_STEP, LIFECYCLE_KEY, SERVICES_KEY, VERSION_KEY
from pyfleet.models.deployment import DesiredState

_logger = logging.getLogger(__name__)

ConfigPath = Sequence[str]


@dataclasses.dataclass(frozen=True)
class ChangeSet:
    """Difference between the live tree and a desired-state document.

    ``added`` and ``changed`` map component names to their new raw
    subtree; ``removed`` lists names that are currently present and
    explicitly removed.  Removal entries for unknown names are dropped.
    """

    added: Mapping[str, Mapping[str, Any]] = dataclasses.field(default_factory=dict)
    changed: Mapping[str, Mapping[str, Any]] = dataclasses.field(default_factory=dict)
    removed: tuple[str, ...] = ()

    @property
    def affected(self) -> frozenset[str]:
        return frozenset(self.added) | frozenset(self.changed) | frozenset(self.removed)

    @property
    def is_empty(self) -> bool:
        return not self.added and not self.changed and not self.removed

    def new_config(self, name: str) -> Mapping[str, Any] | None:
        if name in self.added:
            return self.added[name]
        return self.changed.get(name)

    def subset(self, names: Iterable[str]) -> ChangeSet:
        keep = set(names)
        return ChangeSet(
            added={k: v for k, v in self.added.items() if k in keep},
            changed={k: v for k, v in self.changed.items() if k in keep},
            removed=tuple(n for n in self.removed if n in keep),
        )


class ConfigStore:
    """Nested dict configuration with path lookups and atomic commits."""

    def __init__(self, initial: Mapping[str, Any] | None = None) -> None:
        self._tree: dict[str, Any] = copy.deepcopy(dict(initial)) if initial else {}
        self._tree.setdefault(SERVICES_KEY, {})

    def get(self, path: ConfigPath, default: Any = None) -> Any:
        """Return a deep copy of the value at *path*, or *default*."""
        node: Any = self._tree
        for key in path:
            if not isinstance(node, Mapping) or key not in node:
                return default
            node = node[key]
        return copy.deepcopy(node)

    def service(self, name: str) -> dict[str, Any]:
        value = self.get((SERVICES_KEY, name))
        return value if isinstance(value, dict) else {}

    def service_names(self) -> list[str]:
        return sorted(self._tree[SERVICES_KEY])

    def diff(self, document: DesiredState) -> ChangeSet:
        """Compare *document* against the live services subtree."""
        services: dict[str, Any] = self._tree[SERVICES_KEY]
        added: dict[str, dict[str, Any]] = {}
        changed: dict[str, dict[str, Any]] = {}
        for name, spec in document.components.items():
            new_config = spec.to_config()
            current = services.get(name)
            if current is None:
                added[name] = new_config
            elif current != new_config:
                changed[name] = new_config
        removed = tuple(name for name in document.removals if name in services)
        return ChangeSet(added=added, changed=changed, removed=removed)

    def commit(self, change_set: ChangeSet) -> None:
        services: dict[str, Any] = self._tree[SERVICES_KEY]
        for name, config in {**change_set.added, **change_set.changed}.items():
            services[name] = copy.deepcopy(dict(config))
        for name in change_set.removed:
            services.pop(name, None)
        _logger.debug(
            "Committed change set added=%s changed=%s removed=%s",
            sorted(change_set.added),
            sorted(change_set.changed),
            list(change_set.removed),
        )

    def snapshot(self) -> dict[str, Any]:
        """Deep copy of the whole tree (the shadow configuration)."""
        return copy.deepcopy(self._tree)

    def restore(self, snapshot: Mapping[str, Any]) -> None:
        tree = copy.deepcopy(dict(snapshot))
        if not isinstance(tree.get(SERVICES_KEY), dict):
            raise ValueError("snapshot has no services subtree")
        self._tree = tree

    def persist(self, path: str | os.PathLike[str], *, extra: Mapping[str, Any] | None = None) -> Path:
        """Write the tree (plus *extra* top-level keys) as JSON in one commit."""
        payload = {**self._tree, **(extra or {})}
        return write_atomically(path, json.dumps(payload, indent=2, sort_keys=True))

    @staticmethod
    def load(path: str | os.PathLike[str]) -> dict[str, Any] | None:
        """Read a tree previously written by :meth:`persist`."""
        target = Path(path)
        if not target.exists():
            return None
        data = json.loads(target.read_text(encoding="utf-8"))
        return data if isinstance(data, dict) else None


def declared_bootstrap(config: Mapping[str, Any]) -> Any:
    """Bootstrap step declared under a config's lifecycle namespace, or ``None``."""
    lifecycle = config.get(LIFECYCLE_KEY)
    if not isinstance(lifecycle, Mapping):
        return None
    value = lifecycle.get(BOOTSTRAP_STEP)
    if value is None or value == "" or value == {}:
        return None
    return value


def bootstrap_required(current: Mapping[str, Any], new: Mapping[str, Any]) -> bool:
    """Whether moving from *current* to *new* config requires a bootstrap.

    True only when *new* declares a non-empty bootstrap step and either
    the version differs from the applied one or the bootstrap step's own
    definition differs from the applied one.
    """
    new_bootstrap = declared_bootstrap(new)
    if new_bootstrap is None:
        return False
    if current.get(VERSION_KEY) != new.get(VERSION_KEY):
        return True
    current_lifecycle = current.get(LIFECYCLE_KEY)
    current_bootstrap = current_lifecycle.get(BOOTSTRAP_STEP) if isinstance(current_lifecycle, Mapping) else None
    return current_bootstrap != new_bootstrap
