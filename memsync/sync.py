"""
File synchronization to the remote store.

For each new or modified file the engine reads the content, rejects
empty/unreadable/binary files, derives a language, embeds the text and
upserts one IndexedFile record. Transient store failures are retried
with linear backoff (attempt x backoff); anything else fails the file
and the run moves on.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional

from .changes import FileState
from .protocol import EmbeddingProvider, RemoteStoreProtocol
from .scanner import detect_language, is_binary
from .store import StoreError, TransientStoreError
from .types import FileError, IndexedFile, content_hash, utc_now

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BACKOFF = 0.5  # seconds, multiplied by attempt number
DEFAULT_FILE_TIMEOUT = 10.0


class FileSkipped(Exception):
    """A file that cannot be indexed (empty, unreadable, binary)."""


@dataclass
class SyncResult:
    """Outcome of one sync() call."""
    attempted: int = 0
    succeeded: int = 0
    errors: list[FileError] = field(default_factory=list)
    cancelled: bool = False

    @property
    def failed(self) -> int:
        return len(self.errors)

    @property
    def systemic_failure(self) -> bool:
        """Work was attempted and none of it reached the store."""
        return self.attempted > 0 and self.succeeded == 0 and not self.cancelled


def read_file_content(path: str) -> str:
    """Read a file for indexing.

    Raises:
        FileSkipped: If the file is unreadable, empty or binary
    """
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as e:
        raise FileSkipped(f"unreadable: {e.strerror or e}") from e
    if not data.strip():
        raise FileSkipped("empty file")
    if is_binary(data):
        raise FileSkipped("binary content")
    return data.decode("utf-8", errors="replace")


class SyncEngine:
    """Upserts files into the project collection with bounded retries."""

    def __init__(
        self,
        store: RemoteStoreProtocol,
        embedder: EmbeddingProvider,
        collection: str,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_backoff: float = DEFAULT_RETRY_BACKOFF,
        file_timeout: float = DEFAULT_FILE_TIMEOUT,
    ):
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1: {max_attempts}")
        self._store = store
        self._embedder = embedder
        self._collection = collection
        self._max_attempts = max_attempts
        self._retry_backoff = retry_backoff
        self._file_timeout = file_timeout

    def build_record(
        self,
        state: FileState,
        project: str,
        tag: str = "",
    ) -> IndexedFile:
        content = read_file_content(state.path)
        return IndexedFile(
            id=IndexedFile.file_id(project, state.rel_path),
            path=state.rel_path,
            content=content,
            project=project,
            mod_time=state.marker,
            language=detect_language(state.rel_path),
            tag=tag,
            timestamp=utc_now(),
            content_hash=content_hash(content),
        )

    def _wait(self, delay: float, cancel: Optional[threading.Event]) -> bool:
        """Sleep for the backoff delay. Returns True if cancelled meanwhile."""
        if cancel is not None:
            return cancel.wait(delay)
        time.sleep(delay)
        return False

    def _upsert_with_retry(
        self,
        record: IndexedFile,
        vector: list[float],
        cancel: Optional[threading.Event],
    ) -> Optional[FileError]:
        """Upsert one record. Returns None on success, else the failure."""
        attempt = 0
        while True:
            attempt += 1
            try:
                self._store.upsert(
                    self._collection,
                    record.id,
                    vector,
                    record.to_payload(),
                    timeout=self._file_timeout,
                )
                return None
            except TransientStoreError as e:
                if attempt >= self._max_attempts:
                    return FileError(record.path, f"gave up after {attempt} attempts: {e}", attempt)
                delay = attempt * self._retry_backoff
                logger.info(
                    "Upsert of %s failed (attempt %d/%d), retrying in %.1fs: %s",
                    record.path, attempt, self._max_attempts, delay, e,
                )
                if self._wait(delay, cancel):
                    return FileError(record.path, "cancelled during retry", attempt)
            except StoreError as e:
                return FileError(record.path, str(e), attempt)

    def sync_one(
        self,
        state: FileState,
        project: str,
        tag: str = "",
        cancel: Optional[threading.Event] = None,
    ) -> Optional[FileError]:
        """Index a single file. Returns None on success, else the failure."""
        try:
            record = self.build_record(state, project, tag)
        except FileSkipped as e:
            return FileError(state.rel_path, str(e))
        try:
            vector = self._embedder.embed(record.content)
        except (RuntimeError, ValueError) as e:
            return FileError(state.rel_path, f"embedding failed: {e}")
        return self._upsert_with_retry(record, vector, cancel)

    def sync(
        self,
        files: Iterable[FileState],
        *,
        project: str,
        tag: str = "",
        tags_by_path: Optional[Mapping[str, str]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> SyncResult:
        """
        Upsert every file, continuing past per-file failures.

        ``tag`` labels every record; when empty, ``tags_by_path`` supplies
        the previously stored tag for a path. ``cancel`` is checked before
        each file, and a cancelled run returns the counts gathered so far.
        """
        result = SyncResult()
        tags_by_path = tags_by_path or {}
        for state in files:
            if cancel is not None and cancel.is_set():
                result.cancelled = True
                logger.info("Sync cancelled after %d files", result.attempted)
                break
            result.attempted += 1
            file_tag = tag or tags_by_path.get(state.rel_path, "")
            error = self.sync_one(state, project, file_tag, cancel)
            if error is None:
                result.succeeded += 1
                logger.debug("Indexed %s", state.rel_path)
            else:
                result.errors.append(error)
                logger.warning("Failed to index %s: %s", error.path, error.reason)
        if result.systemic_failure:
            logger.warning(
                "Failed to index any files (%d attempted); is the store reachable?",
                result.attempted,
            )
        return result
