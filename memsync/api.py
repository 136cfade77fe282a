"""
Core API for conversation memory and project mirroring.

MemoryClient owns every store-facing operation:
- messages: add, history, search, tag, delete
- project files: index/update (scan -> classify -> sync), prune, search, delete
- stats

MemoryService pairs a client with the conversation buffer and its
categorizer. One service is built at process start and handed to every
transport (MCP, HTTP, CLI); there is no module-level state.
"""

import logging
import os
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from .buffer import ConversationBuffer
from .categorizer import Categorizer, merge_categories
from .changes import ChangeClassifier
from .config import MemsyncConfig
from .embedding import create_embedding
from .filters import (
    EVERYTHING,
    Filter,
    conversation_only,
    match,
    project_files,
    range_,
)
from .protocol import EmbeddingProvider, RemoteStoreProtocol
from .scanner import FileScanner
from .store import QdrantStore, StoreError
from .sync import SyncEngine
from .types import (
    ROLE_PROJECT,
    ROLES,
    IndexedFile,
    Message,
    SyncRun,
    validate_ids,
    validate_limit,
    validate_query,
    validate_role,
    validate_tag,
)

logger = logging.getLogger(__name__)

MESSAGE_INDEXES = {
    "role": "keyword",
    "tags": "keyword",
    "unix_time": "float",
}

PROJECT_INDEXES = {
    "type": "keyword",
    "project": "keyword",
    "path": "keyword",
    "tag": "keyword",
}

PERIODS = ("day", "week", "month")

# Enough of a file record to classify changes
INDEX_FIELDS = ["path", "mod_time", "tag"]


def period_bounds(period: str, now: Optional[datetime] = None) -> tuple[datetime, datetime]:
    """
    Start and end of the current day, week (Monday-based) or month, in UTC.

    The end is the last microsecond of the period.
    """
    now = now or datetime.now(timezone.utc)
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "day":
        start, end = day_start, day_start + timedelta(days=1)
    elif period == "week":
        start = day_start - timedelta(days=day_start.weekday())
        end = start + timedelta(days=7)
    elif period == "month":
        start = day_start.replace(day=1)
        if start.month == 12:
            end = start.replace(year=start.year + 1, month=1)
        else:
            end = start.replace(month=start.month + 1)
    else:
        raise ValueError(f"Invalid period: {period!r}. Must be one of: {', '.join(PERIODS)}")
    return start, end - timedelta(microseconds=1)


def _as_utc(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


def _project_root(path: str) -> str:
    return os.path.abspath(os.path.expanduser(path))


def _normalize_rel_path(path: str) -> str:
    """Stored form of a relative path: forward slashes, no leading './'."""
    rel = (path or "").strip().replace("\\", "/")
    while rel.startswith("./"):
        rel = rel[2:]
    if not rel:
        raise ValueError("File path must not be empty")
    return rel


class MemoryClient:
    """
    Store-facing operations for messages and project files.

    Example:
        client = MemoryClient(QdrantStore("http://localhost:6333"), HashEmbedding())
        client.ensure_collections()
        client.add_message("user", "how do I fix this bug?")
        run = client.index_project("~/src/myproject")
    """

    def __init__(
        self,
        store: RemoteStoreProtocol,
        embedder: EmbeddingProvider,
        *,
        collection: str = "conversation_memory",
        project_collection: Optional[str] = None,
        scanner: Optional[FileScanner] = None,
        max_attempts: int = 3,
        retry_backoff: float = 0.5,
        file_timeout: float = 10.0,
        dedupe_messages: bool = False,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self.collection = collection
        self.project_collection = project_collection or f"{collection}_project"
        self._scanner = scanner or FileScanner()
        self._engine = SyncEngine(
            store,
            embedder,
            self.project_collection,
            max_attempts=max_attempts,
            retry_backoff=retry_backoff,
            file_timeout=file_timeout,
        )
        self._dedupe = dedupe_messages

    @classmethod
    def from_config(
        cls,
        config: MemsyncConfig,
        *,
        store: Optional[RemoteStoreProtocol] = None,
        embedder: Optional[EmbeddingProvider] = None,
    ) -> "MemoryClient":
        if store is None:
            store = QdrantStore(
                config.store_url,
                api_key=config.api_key or None,
                timeout=config.store_timeout,
            )
        if embedder is None:
            embedder = create_embedding(config.embedding.name, config.embedding.params)
        return cls(
            store,
            embedder,
            collection=config.collection,
            project_collection=config.project_collection,
            scanner=FileScanner(config.max_file_size, config.extra_ignored_extensions),
            max_attempts=config.max_attempts,
            retry_backoff=config.retry_backoff,
            file_timeout=config.file_timeout,
            dedupe_messages=config.dedupe_messages,
        )

    @property
    def store(self) -> RemoteStoreProtocol:
        return self._store

    def ensure_collections(self) -> None:
        """Create both collections and their payload indexes if missing."""
        dim = self._embedder.dimension
        self._store.ensure_collection(self.collection, dim, MESSAGE_INDEXES)
        self._store.ensure_collection(self.project_collection, dim, PROJECT_INDEXES)

    def ping(self) -> bool:
        return self._store.ping()

    def close(self) -> None:
        self._store.close()

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def find_duplicate(self, role: str, content: str) -> Optional[Message]:
        """An existing message with the same role and literal content."""
        points = self._store.query_by_filter(
            self.collection,
            Filter(must=[match("role", role), match("content", content)]),
            limit=1,
        )
        return Message.from_point(points[0]) if points else None

    def store_message(self, message: Message) -> Message:
        """
        Persist a message built by the caller.

        With duplicate suppression on, an existing message with the same
        role and content is returned instead and nothing is written.
        """
        if self._dedupe:
            existing = self.find_duplicate(message.role, message.content)
            if existing is not None:
                logger.debug("Duplicate %s message suppressed (%s)", message.role, existing.id)
                return existing
        vector = self._embedder.embed(message.content)
        self._store.upsert(self.collection, message.id, vector, message.to_payload())
        return message

    def add_message(
        self,
        role: str,
        content: str,
        *,
        tags: Optional[list[str]] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> Message:
        """Create and persist a message (no buffering or categorization)."""
        if not content or not content.strip():
            raise ValueError("Message content must not be empty")
        message = Message.create(
            role, content,
            tags=[validate_tag(t) for t in tags or []],
            metadata=metadata,
        )
        return self.store_message(message)

    def get_message(self, id: str) -> Optional[Message]:
        [id] = validate_ids([id])
        points = self._store.retrieve(self.collection, [id])
        return Message.from_point(points[0]) if points else None

    def get_history(
        self,
        limit: int = 10,
        *,
        role: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[Message]:
        """Most recent conversation messages first; project records excluded."""
        validate_limit(limit)
        conditions = []
        if role:
            role = validate_role(role)
            if role == ROLE_PROJECT:
                raise ValueError("History excludes project records")
            conditions.append(match("role", role))
        if since or until:
            conditions.append(range_(
                "unix_time",
                gte=_as_utc(since).timestamp() if since else None,
                lte=_as_utc(until).timestamp() if until else None,
            ))
        points, _ = self._store.scroll(
            self.collection,
            conversation_only(*conditions),
            limit=limit,
            order_by=("unix_time", "desc"),
        )
        return [Message.from_point(p) for p in points]

    def search(self, query: str, limit: int = 5) -> list[Message]:
        """Semantic search over conversation messages, best match first."""
        query = validate_query(query)
        validate_limit(limit)
        points = self._store.search(
            self.collection, self._embedder.embed(query), limit, conversation_only(),
        )
        return [Message.from_point(p) for p in points]

    def tag_messages(self, ids: list[str], tag: str) -> int:
        """
        Append a tag to every listed message in one batched write.

        Existing tags are kept and the tag is not duplicated. Unknown ids
        are ignored. Returns the number of messages that gained the tag.
        """
        ids = validate_ids(ids)
        tag = validate_tag(tag)
        messages = [Message.from_point(p) for p in self._store.retrieve(self.collection, ids)]
        updates = []
        for message in messages:
            if message.add_tag(tag):
                updates.append(([message.id], {"tags": message.tags}))
        self._store.set_payload_batch(self.collection, updates)
        if len(messages) < len(ids):
            logger.debug("tag_messages: %d of %d ids not found", len(ids) - len(messages), len(ids))
        if updates:
            logger.info("Tagged %d messages with %s", len(updates), tag)
        return len(updates)

    def get_messages_by_tag(self, tag: str, limit: int = 10) -> list[Message]:
        tag = validate_tag(tag)
        validate_limit(limit)
        points, _ = self._store.scroll(
            self.collection,
            conversation_only(match("tags", tag)),
            limit=limit,
            order_by=("unix_time", "desc"),
        )
        return [Message.from_point(p) for p in points]

    def summarize_and_tag(
        self,
        query: str,
        summary: str,
        tags: Sequence[str] = (),
        limit: int = 5,
    ) -> list[Message]:
        """
        Attach a summary and tags to the messages best matching a query.

        Returns the updated messages.
        """
        if not summary or not summary.strip():
            raise ValueError("Summary must not be empty")
        tags = [validate_tag(t) for t in tags]
        messages = self.search(query, limit)
        updates = []
        for message in messages:
            message.summary = summary.strip()
            for tag in tags:
                message.add_tag(tag)
            updates.append(([message.id], {"summary": message.summary, "tags": message.tags}))
        self._store.set_payload_batch(self.collection, updates)
        logger.info("Summarized %d messages matching %r", len(messages), query)
        return messages

    def delete_message(self, id: str) -> bool:
        """Delete one conversation message. Returns True if it existed."""
        message = self.get_message(id)
        if message is None:
            return False
        if message.role == ROLE_PROJECT:
            raise ValueError(f"Not a conversation message: {id}")
        self._store.delete_points(self.collection, [message.id])
        return True

    def _delete_conversation(self, filter: Filter) -> int:
        count = self._store.count_by_filter(self.collection, filter)
        if count:
            self._store.delete_by_filter(self.collection, filter)
        return count

    def delete_all_messages(self) -> int:
        """Delete every conversation message; project records survive."""
        deleted = self._delete_conversation(conversation_only())
        logger.info("Deleted all %d conversation messages", deleted)
        return deleted

    def delete_messages_in_range(self, start: datetime, end: datetime) -> int:
        """Delete conversation messages created in [start, end]."""
        start, end = _as_utc(start), _as_utc(end)
        if end < start:
            raise ValueError("Range end is before start")
        deleted = self._delete_conversation(
            conversation_only(range_("unix_time", gte=start.timestamp(), lte=end.timestamp()))
        )
        logger.info("Deleted %d messages between %s and %s", deleted, start, end)
        return deleted

    def delete_current_period(self, period: str, now: Optional[datetime] = None) -> int:
        """Delete messages from the current day, week or month."""
        start, end = period_bounds(period, now)
        return self.delete_messages_in_range(start, end)

    # -------------------------------------------------------------------------
    # Project files
    # -------------------------------------------------------------------------

    def prior_index(self, project: str) -> tuple[dict[str, int], dict[str, str]]:
        """
        What the store knows about one project.

        Returns (rel_path -> marker, rel_path -> tag). An empty result is
        normal for a first run.
        """
        markers: dict[str, int] = {}
        tags: dict[str, str] = {}
        points = self._store.query_by_filter(
            self.project_collection, project_files(project),
            payload_fields=INDEX_FIELDS,
        )
        for point in points:
            record = IndexedFile.from_point(point)
            markers[record.path] = record.mod_time
            tags[record.path] = record.tag
        return markers, tags

    def _sync_project(
        self,
        path: str,
        tag: str,
        *,
        force: bool,
        cancel: Optional[threading.Event],
    ) -> SyncRun:
        root = _project_root(path)
        scan = self._scanner.scan(root)
        prior, stored_tags = self.prior_index(root)
        classification = ChangeClassifier(root).classify(scan.files, prior)
        if force:
            classification.modified.extend(classification.unchanged)
            classification.unchanged = []

        result = self._engine.sync(
            classification.to_upsert,
            project=root,
            tag=tag,
            tags_by_path=stored_tags,
            cancel=cancel,
        )
        run = SyncRun(
            root=root,
            scanned=scan.scanned,
            filtered=len(scan.skipped),
            new=len(classification.new),
            modified=len(classification.modified),
            unchanged=len(classification.unchanged),
            succeeded=result.succeeded,
            errors=classification.errors + result.errors,
            missing=classification.missing,
            cancelled=result.cancelled,
        )
        logger.info(
            "Project %s: %d scanned, %d new, %d modified, %d skipped, %d succeeded, %d failed",
            root, run.scanned, run.new, run.modified, run.skipped, run.succeeded, run.failed,
        )
        return run

    def index_project(
        self,
        path: str,
        tag: str = "",
        *,
        force: bool = False,
        cancel: Optional[threading.Event] = None,
    ) -> SyncRun:
        """
        Index a project directory.

        New and modified files are upserted with ``tag`` (or their stored
        tag when ``tag`` is empty). ``force`` re-upserts unchanged files too.

        Raises:
            ValueError: If path is not a directory
            StoreError: If the prior index cannot be read
        """
        if tag:
            tag = validate_tag(tag)
        return self._sync_project(path, tag, force=force, cancel=cancel)

    def update_project(
        self,
        path: str,
        *,
        cancel: Optional[threading.Event] = None,
    ) -> SyncRun:
        """Upsert only files changed since the last run, keeping stored tags."""
        return self._sync_project(path, "", force=False, cancel=cancel)

    def prune_project(self, path: str) -> list[str]:
        """
        Delete records for files that no longer exist under the project.

        Uses the same scan and rules as update, so files that became
        filtered (too large, hidden) are pruned as well. Returns the
        deleted relative paths.
        """
        root = _project_root(path)
        scan = self._scanner.scan(root)
        prior, _ = self.prior_index(root)
        missing = ChangeClassifier(root).classify(scan.files, prior).missing
        if missing:
            self._store.delete_points(
                self.project_collection,
                [IndexedFile.file_id(root, rel) for rel in missing],
            )
        logger.info("Pruned %d vanished files from %s", len(missing), root)
        return missing

    def search_project_files(
        self,
        query: str,
        limit: int = 5,
        *,
        tag: Optional[str] = None,
        project: Optional[str] = None,
    ) -> list[IndexedFile]:
        query = validate_query(query)
        validate_limit(limit)
        extra = [match("tag", validate_tag(tag))] if tag else []
        filter = project_files(_project_root(project) if project else None, *extra)
        points = self._store.search(
            self.project_collection, self._embedder.embed(query), limit, filter,
        )
        return [IndexedFile.from_point(p) for p in points]

    def list_project_files(
        self,
        *,
        project: Optional[str] = None,
        tag: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[IndexedFile]:
        """Indexed files, sorted by path."""
        if limit is not None:
            validate_limit(limit)
        extra = [match("tag", validate_tag(tag))] if tag else []
        filter = project_files(_project_root(project) if project else None, *extra)
        points = self._store.query_by_filter(self.project_collection, filter, limit=limit)
        return sorted((IndexedFile.from_point(p) for p in points), key=lambda f: (f.project, f.path))

    def _delete_project_records(self, filter: Filter) -> int:
        count = self._store.count_by_filter(self.project_collection, filter)
        if count:
            self._store.delete_by_filter(self.project_collection, filter)
        return count

    def delete_project_file(self, path: str, *, project: Optional[str] = None) -> int:
        """
        Delete a project file by its relative path.

        Without ``project`` the path is deleted from every project.
        Returns the number of records removed.
        """
        rel = _normalize_rel_path(path)
        root = _project_root(project) if project else None
        return self._delete_project_records(project_files(root, match("path", rel)))

    def delete_all_project_files(self) -> int:
        deleted = self._delete_project_records(project_files())
        logger.info("Deleted all %d project files", deleted)
        return deleted

    def delete_project_files_by_tag(self, tag: str) -> int:
        tag = validate_tag(tag)
        return self._delete_project_records(project_files(None, match("tag", tag)))

    # -------------------------------------------------------------------------
    # Stats
    # -------------------------------------------------------------------------

    def get_stats(self) -> dict:
        """Point totals per collection and message counts per role."""
        message_count = {
            role: self._store.count_by_filter(self.collection, Filter(must=[match("role", role)]))
            for role in sorted(ROLES - {ROLE_PROJECT})
        }
        return {
            "collection": self.collection,
            "project_collection": self.project_collection,
            "total_vectors": self._store.count_by_filter(self.collection, EVERYTHING),
            "message_count": message_count,
            "project_file_count": self._store.count_by_filter(
                self.project_collection, project_files(),
            ),
        }


class MemoryService:
    """
    The object every transport is handed: a MemoryClient plus the shared
    conversation buffer (current tag, tagging mode, pending messages).

    Use as a context manager, or call close() to drain the buffer.
    """

    def __init__(
        self,
        client: MemoryClient,
        *,
        threshold: int = 5,
        mode: str = "automatic",
        workers: int = 1,
        categories: Optional[dict[str, list[str]]] = None,
        min_score: int = 2,
    ) -> None:
        self.client = client
        self.categorizer = Categorizer(client, merge_categories(categories), min_score)
        self.buffer = ConversationBuffer(
            self.categorizer.categorize,
            threshold=threshold,
            mode=mode,
            workers=workers,
        )

    @classmethod
    def from_config(
        cls,
        config: MemsyncConfig,
        *,
        store: Optional[RemoteStoreProtocol] = None,
        embedder: Optional[EmbeddingProvider] = None,
        ensure: bool = True,
    ) -> "MemoryService":
        """Build a service from config, creating collections unless ``ensure`` is off."""
        client = MemoryClient.from_config(config, store=store, embedder=embedder)
        if ensure:
            client.ensure_collections()
        return cls(
            client,
            threshold=config.tagging_threshold,
            mode=config.tagging_mode,
            workers=config.workers,
            categories=config.categories,
            min_score=config.min_score,
        )

    def add_message(
        self,
        role: str,
        content: str,
        *,
        tags: Optional[list[str]] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> Message:
        """
        Add a conversation message.

        The current conversation tag is applied before the message is
        stored, then the message enters the buffer, which may dispatch
        a batch for categorization. Project records bypass the buffer.
        """
        if not content or not content.strip():
            raise ValueError("Message content must not be empty")
        message = Message.create(
            role, content,
            tags=[validate_tag(t) for t in tags or []],
            metadata=metadata,
        )
        if message.role == ROLE_PROJECT:
            return self.client.store_message(message)
        self.buffer.stamp(message)
        stored = self.client.store_message(message)
        if stored is message:
            self.buffer.append(message, stamp=False)
        return stored

    def set_conversation_tag(self, tag: str) -> str:
        tag = (tag or "").strip()
        if tag:
            tag = validate_tag(tag)
        self.buffer.set_tag(tag)
        return tag

    def get_conversation_tag(self) -> str:
        return self.buffer.get_tag()

    def set_tagging_mode(self, mode: str) -> int:
        """Switch mode; returns the number of buffered messages dispatched."""
        return self.buffer.set_mode(mode)

    def get_tagging_mode(self) -> str:
        return self.buffer.get_mode()

    def flush(self) -> int:
        return self.buffer.flush()

    def health(self) -> dict:
        try:
            reachable = self.client.ping()
        except StoreError:
            reachable = False
        return {
            "status": "ok" if reachable else "degraded",
            "store": "reachable" if reachable else "unreachable",
            "tagging_mode": self.get_tagging_mode(),
            "conversation_tag": self.get_conversation_tag(),
            "pending_messages": self.buffer.pending,
        }

    def close(self) -> None:
        """Finish queued categorization, stop the workers, close the store."""
        self.buffer.close(drain=True)
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
