"""Artifact store interface and the local directory implementation."""

from __future__ import annotations

import asyncio
import dataclasses
import os
from pathlib import Path
from typing import Protocol

from pyfleet.exceptions import ArtifactResolveError


@dataclasses.dataclass(frozen=True)
class ArtifactHandle:
    name: str
    version: str
    path: Path


class ArtifactStore(Protocol):
    """Supplies installable content for a component version."""

    async def resolve(self, name: str, version: str) -> ArtifactHandle: ...


class LocalArtifactStore:
    """Artifacts laid out as ``<root>/<name>/<version>/``."""

    def __init__(self, root: str | os.PathLike[str]) -> None:
        self._root = Path(root)

    async def resolve(self, name: str, version: str) -> ArtifactHandle:
        path = self._root / name / version
        exists = await asyncio.to_thread(path.is_dir)
        if not exists:
            raise ArtifactResolveError(f"No artifacts for {name}@{version} under {self._root}")
        return ArtifactHandle(name=name, version=version, path=path)
