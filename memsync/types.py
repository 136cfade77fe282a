"""
Data types for conversation memory and project-file mirroring.
"""

import hashlib
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


# Message roles. "project" marks ingested file content and is excluded
# from every conversation-only query and delete.
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_SYSTEM = "system"
ROLE_PROJECT = "project"
ROLES = frozenset({ROLE_USER, ROLE_ASSISTANT, ROLE_SYSTEM, ROLE_PROJECT})

# Tagging modes for the conversation buffer
MODE_AUTOMATIC = "automatic"
MODE_MANUAL = "manual"
TAGGING_MODES = frozenset({MODE_AUTOMATIC, MODE_MANUAL})

# Payload discriminator for records in the project collection
PROJECT_FILE_TYPE = "project_file"

# Prefix for tags written by the categorizer
CATEGORY_TAG_PREFIX = "category:"

MAX_LIMIT = 10_000
MAX_TAG_LENGTH = 256


def utc_now() -> str:
    """Current UTC timestamp in canonical format: YYYY-MM-DDTHH:MM:SS.

    All timestamps are UTC, stored without timezone suffix.
    """
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime.

    Handles the canonical format (no suffix) as well as RFC 3339 values
    with 'Z' or '+00:00' suffixes.
    """
    ts = ts.replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def content_hash(content: str) -> str:
    """SHA-256 digest of text content (informational, stored with files)."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Input validation (runs before any network call)
# ---------------------------------------------------------------------------


def validate_role(role: str) -> str:
    role = (role or "").strip().lower()
    if role not in ROLES:
        raise ValueError(
            f"Invalid role: {role!r}. Must be one of: {', '.join(sorted(ROLES))}"
        )
    return role


def validate_mode(mode: str) -> str:
    mode = (mode or "").strip().lower()
    if mode not in TAGGING_MODES:
        raise ValueError("Invalid mode. Must be 'automatic' or 'manual'")
    return mode


def validate_query(query: str) -> str:
    if not query or not query.strip():
        raise ValueError("Query must not be empty")
    return query.strip()


def validate_limit(limit: int) -> int:
    if limit < 1 or limit > MAX_LIMIT:
        raise ValueError(f"Limit must be between 1 and {MAX_LIMIT}: {limit}")
    return limit


def validate_tag(tag: str) -> str:
    """Validate a single free-text tag."""
    tag = (tag or "").strip()
    if not tag:
        raise ValueError("Tag must not be empty")
    if len(tag) > MAX_TAG_LENGTH:
        raise ValueError(f"Tag too long (max {MAX_TAG_LENGTH}): {tag[:40]!r}...")
    return tag


def validate_ids(ids: list[str]) -> list[str]:
    """Validate a list of message ids; rejects empty lists and blank ids."""
    if not ids:
        raise ValueError("At least one message id is required")
    cleaned = []
    for id in ids:
        if not id or not str(id).strip():
            raise ValueError("Message id must not be empty")
        cleaned.append(str(id).strip())
    return cleaned


# ---------------------------------------------------------------------------
# Stored records
# ---------------------------------------------------------------------------


@dataclass
class Message:
    """
    A conversation turn stored in the message collection.

    Tags are an ordered set: append-only in normal operation, never
    duplicated. Only tags and summary change after creation.

    Attributes:
        id: UUID assigned at creation, never reused
        role: One of user, assistant, system, project
        content: Raw text
        tags: Ordered, duplicate-free tag list
        timestamp: Creation time (canonical UTC string)
        unix_time: Creation time as epoch seconds (range filters)
        summary: Optional summary set by summarize_and_tag
        metadata: Free-form string metadata
        score: Similarity score (search results only)
    """
    id: str
    role: str
    content: str
    tags: list[str] = field(default_factory=list)
    timestamp: str = field(default_factory=utc_now)
    unix_time: float = 0.0
    summary: str = ""
    metadata: dict[str, str] = field(default_factory=dict)
    score: Optional[float] = None

    @classmethod
    def create(
        cls,
        role: str,
        content: str,
        *,
        tags: Optional[list[str]] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> "Message":
        """Build a new message with a fresh id and the current time."""
        now = datetime.now(timezone.utc)
        msg = cls(
            id=str(uuid.uuid4()),
            role=validate_role(role),
            content=content,
            timestamp=now.strftime("%Y-%m-%dT%H:%M:%S"),
            unix_time=now.timestamp(),
            metadata=dict(metadata or {}),
        )
        for tag in tags or []:
            msg.add_tag(tag)
        return msg

    def add_tag(self, tag: str) -> bool:
        """Append a tag if not already present. Returns True if added."""
        if not tag or tag in self.tags:
            return False
        self.tags.append(tag)
        return True

    def to_payload(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "tags": list(self.tags),
            "timestamp": self.timestamp,
            "unix_time": self.unix_time,
            "summary": self.summary,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_point(cls, point: dict) -> "Message":
        """Rebuild a message from a store point ({id, payload, score?})."""
        payload = point.get("payload") or {}
        metadata = {
            str(k): v if isinstance(v, str) else str(v)
            for k, v in (payload.get("metadata") or {}).items()
        }
        return cls(
            id=str(point["id"]),
            role=payload.get("role", ""),
            content=payload.get("content", ""),
            tags=list(payload.get("tags") or []),
            timestamp=payload.get("timestamp", ""),
            unix_time=float(payload.get("unix_time") or 0.0),
            summary=payload.get("summary") or "",
            metadata=metadata,
            score=point.get("score"),
        )

    def to_dict(self) -> dict:
        d = asdict(self)
        if d["score"] is None:
            d.pop("score")
        return d


@dataclass
class IndexedFile:
    """
    A project file's representation in the project collection.

    ``path`` is project-root-relative with forward slashes and is unique
    within one project. ``mod_time`` is the change marker (st_mtime_ns).
    """
    id: str
    path: str
    content: str
    project: str
    mod_time: int
    language: str = "unknown"
    tag: str = ""
    timestamp: str = field(default_factory=utc_now)
    content_hash: str = ""
    score: Optional[float] = None

    @staticmethod
    def file_id(project: str, rel_path: str) -> str:
        """Deterministic point id for a file within a project."""
        return str(uuid.uuid5(uuid.NAMESPACE_URL, f"file://{project}#{rel_path}"))

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": PROJECT_FILE_TYPE,
            "path": self.path,
            "content": self.content,
            "project": self.project,
            "mod_time": self.mod_time,
            "language": self.language,
            "tag": self.tag,
            "timestamp": self.timestamp,
            "content_hash": self.content_hash,
        }

    @classmethod
    def from_point(cls, point: dict) -> "IndexedFile":
        payload = point.get("payload") or {}
        return cls(
            id=str(point["id"]),
            path=payload.get("path", ""),
            content=payload.get("content", ""),
            project=payload.get("project", ""),
            mod_time=int(payload.get("mod_time") or 0),
            language=payload.get("language") or "unknown",
            tag=payload.get("tag") or "",
            timestamp=payload.get("timestamp", ""),
            content_hash=payload.get("content_hash") or "",
            score=point.get("score"),
        )

    def to_dict(self, include_content: bool = True) -> dict:
        d = asdict(self)
        if not include_content:
            d.pop("content")
        if d["score"] is None:
            d.pop("score")
        return d


# ---------------------------------------------------------------------------
# Sync run reporting
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FileError:
    """A per-file failure recorded during a sync run."""
    path: str
    reason: str
    attempts: int = 0


@dataclass
class SyncRun:
    """
    Counters for one index/update run. Not persisted.

    ``skipped`` covers files never sent to the store: those rejected by
    the scanner (``filtered``) plus those classified unchanged. When a
    run completes, succeeded + failed + skipped == scanned.
    """
    root: str
    scanned: int = 0
    filtered: int = 0
    new: int = 0
    modified: int = 0
    unchanged: int = 0
    succeeded: int = 0
    errors: list[FileError] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def skipped(self) -> int:
        return self.filtered + self.unchanged

    @property
    def failed(self) -> int:
        return len(self.errors)

    @property
    def attempted(self) -> int:
        return self.new + self.modified

    @property
    def systemic_failure(self) -> bool:
        """True when there was work to upsert but nothing was upserted."""
        return self.attempted > 0 and self.succeeded == 0 and not self.cancelled

    @property
    def ok(self) -> bool:
        return not self.systemic_failure

    def to_dict(self) -> dict:
        return {
            "root": self.root,
            "ok": self.ok,
            "scanned": self.scanned,
            "skipped": self.skipped,
            "filtered": self.filtered,
            "new": self.new,
            "modified": self.modified,
            "unchanged": self.unchanged,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "errors": [asdict(e) for e in self.errors],
            "missing": list(self.missing),
            "cancelled": self.cancelled,
        }
