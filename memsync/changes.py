"""
Change classification against a prior index.

The prior index maps a root-relative path to the marker recorded at the
last successful upsert. Markers are st_mtime_ns integers; a file is
modified only when its marker is strictly greater than the recorded one,
so re-runs within the same clock tick do no work.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from .scanner import relative_path
from .types import FileError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileState:
    """A candidate file with its current marker."""
    path: str
    rel_path: str
    marker: int


@dataclass
class Classification:
    new: list[FileState] = field(default_factory=list)
    modified: list[FileState] = field(default_factory=list)
    unchanged: list[FileState] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    errors: list[FileError] = field(default_factory=list)

    @property
    def to_upsert(self) -> list[FileState]:
        """New files first, then modified, each in candidate order."""
        return self.new + self.modified

    def summary(self) -> str:
        return (
            f"{len(self.new)} new, {len(self.modified)} modified, "
            f"{len(self.unchanged)} unchanged, {len(self.missing)} missing"
        )


def file_marker(path: str) -> int:
    """Modification marker for a file."""
    return os.stat(path).st_mtime_ns


class ChangeClassifier:
    """Sorts candidate files into new / modified / unchanged / missing."""

    def __init__(self, root: str):
        self.root = os.path.abspath(root)

    def state(self, path: str) -> FileState:
        return FileState(
            path=path,
            rel_path=relative_path(self.root, path),
            marker=file_marker(path),
        )

    def classify(
        self,
        candidates: Iterable[str],
        prior_index: Mapping[str, int],
    ) -> Classification:
        """
        Classify candidates against ``prior_index`` (rel_path -> marker).

        A candidate whose marker cannot be read (deleted mid-run,
        permissions) is recorded in ``errors`` rather than raising.
        ``missing`` lists indexed paths absent from the candidates, in
        sorted order; nothing is done about them here.
        """
        result = Classification()
        seen: set[str] = set()
        for path in candidates:
            try:
                state = self.state(path)
            except OSError as e:
                rel = relative_path(self.root, path)
                seen.add(rel)
                logger.warning("Cannot read marker for %s: %s", rel, e)
                result.errors.append(FileError(rel, f"cannot stat: {e.strerror or e}"))
                continue
            seen.add(state.rel_path)
            previous = prior_index.get(state.rel_path)
            if previous is None:
                result.new.append(state)
            elif state.marker > previous:
                result.modified.append(state)
            else:
                result.unchanged.append(state)
        result.missing = sorted(p for p in prior_index if p not in seen)
        logger.debug("Classified %s: %s", self.root, result.summary())
        return result
