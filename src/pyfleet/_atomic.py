"""Commit-or-abandon file writes.

Data is written to a sibling temporary file and only replaces the
target when the write is committed.  Used as a context manager the
write is committed on a clean exit and abandoned when the block raises,
so a crash mid-write never leaves a truncated state file behind.
"""

from __future__ import annotations

import contextlib
import os
import tempfile
from pathlib import Path
from types import TracebackType
from typing import IO


class CommitableFile:
    """Text file that only becomes visible at *path* on :meth:`commit`."""

    def __init__(self, path: str | os.PathLike[str], *, encoding: str = "utf-8") -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent)
        self._tmp_path = Path(tmp_name)
        self._fh: IO[str] = os.fdopen(fd, "w", encoding=encoding)
        self._open = True

    @property
    def path(self) -> Path:
        return self._path

    def write(self, text: str) -> int:
        return self._fh.write(text)

    def commit(self) -> None:
        """Flush, fsync and atomically move the temp file over the target."""
        if not self._open:
            return
        self._open = False
        try:
            self._fh.flush()
            os.fsync(self._fh.fileno())
        finally:
            self._fh.close()
        os.replace(self._tmp_path, self._path)

    def abandon(self) -> None:
        """Discard everything written so far; the target is left untouched."""
        if not self._open:
            return
        self._open = False
        self._fh.close()
        with contextlib.suppress(FileNotFoundError):
            self._tmp_path.unlink()

    def __enter__(self) -> CommitableFile:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc_type is None:
            self.commit()
        else:
            self.abandon()


def write_atomically(path: str | os.PathLike[str], text: str) -> Path:
    """Replace *path* with *text* in a single commit."""
    with CommitableFile(path) as out:
        out.write(text)
    return Path(path)
