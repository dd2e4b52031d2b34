"""Data models for context entries, timelines, and analytics snapshots."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable, Optional


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)


class ContextType(Enum):
    """Category of a context entry."""
    TEXT = "text"
    VOICE = "voice"
    LINK = "link"
    CODE_SNIPPET = "code_snippet"
    COMMIT = "commit"
    MEETING_NOTE = "meeting_note"
    DECISION = "decision"
    BUG_REPORT = "bug_report"
    RESEARCH = "research"


class ContextSource(Enum):
    """Where an entry came from. Informational only."""
    MANUAL = "manual"
    GIT_HOOK = "git_hook"
    BROWSER_EXTENSION = "browser_extension"
    EDITOR_EXTENSION = "editor_extension"
    CLI = "cli"
    API = "api"


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


def generate_context_id() -> str:
    """Generate a new opaque context ID."""
    return str(uuid.uuid4())


def normalize_timestamp(dt: datetime) -> datetime:
    """Return dt as an aware UTC datetime truncated to milliseconds.

    Naive datetimes are taken to be UTC already.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)
    return dt.replace(microsecond=(dt.microsecond // 1000) * 1000)


def format_timestamp(dt: datetime) -> str:
    """Format datetime as ISO 8601 with timezone."""
    return dt.isoformat(timespec='milliseconds')


def parse_timestamp(s: str) -> datetime:
    """Parse ISO 8601 timestamp string."""
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    return normalize_timestamp(datetime.fromisoformat(s))


def to_epoch_ms(dt: datetime) -> int:
    """Milliseconds since the Unix epoch, the stored timestamp form."""
    return (normalize_timestamp(dt) - _EPOCH) // _ONE_MS


def from_epoch_ms(ms: int) -> datetime:
    return _EPOCH + timedelta(milliseconds=ms)


def normalize_tags(tags: Optional[Iterable[str]]) -> list[str]:
    """Trim tags, drop empty ones and collapse duplicates (first one wins)."""
    result: list[str] = []
    seen: set[str] = set()
    for tag in tags or []:
        tag = tag.strip()
        if tag and tag not in seen:
            seen.add(tag)
            result.append(tag)
    return result


def coerce_type(value: Any) -> ContextType:
    """Convert a string or ContextType into a ContextType.

    Raises:
        ValueError: If the value is not one of the known types
    """
    if isinstance(value, ContextType):
        return value
    try:
        return ContextType(value)
    except ValueError:
        valid = ", ".join(t.value for t in ContextType)
        raise ValueError(f"Unknown context type: {value!r} (expected one of: {valid})")


def coerce_source(value: Any) -> ContextSource:
    if isinstance(value, ContextSource):
        return value
    try:
        return ContextSource(value)
    except ValueError:
        valid = ", ".join(s.value for s in ContextSource)
        raise ValueError(f"Unknown context source: {value!r} (expected one of: {valid})")


@dataclass
class ContextMetadata:
    """Optional per-type fields of an entry."""
    author: Optional[str] = None
    email: Optional[str] = None
    commit_hash: Optional[str] = None
    branch: Optional[str] = None
    links: list[str] = field(default_factory=list)
    duration: Optional[int] = None          # voice notes, seconds
    audio_path: Optional[str] = None        # voice notes
    line_number: Optional[int] = None
    column_number: Optional[int] = None
    related_tickets: list[str] = field(default_factory=list)
    related_prs: list[str] = field(default_factory=list)
    related_threads: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "author": self.author,
            "email": self.email,
            "commit_hash": self.commit_hash,
            "branch": self.branch,
            "links": list(self.links),
            "duration": self.duration,
            "audio_path": self.audio_path,
            "line_number": self.line_number,
            "column_number": self.column_number,
            "related_tickets": list(self.related_tickets),
            "related_prs": list(self.related_prs),
            "related_threads": list(self.related_threads),
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> ContextMetadata:
        data = data or {}
        return cls(
            author=data.get("author"),
            email=data.get("email"),
            commit_hash=data.get("commit_hash"),
            branch=data.get("branch"),
            links=list(data.get("links") or []),
            duration=data.get("duration"),
            audio_path=data.get("audio_path"),
            line_number=data.get("line_number"),
            column_number=data.get("column_number"),
            related_tickets=list(data.get("related_tickets") or []),
            related_prs=list(data.get("related_prs") or []),
            related_threads=list(data.get("related_threads") or []),
        )


@dataclass
class FileAssociation:
    """Link from an entry to a project file, optionally a line range."""
    file_path: str
    line_start: Optional[int] = None
    line_end: Optional[int] = None
    content_hash: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "file_path": self.file_path,
            "line_start": self.line_start,
            "line_end": self.line_end,
            "content_hash": self.content_hash,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileAssociation:
        return cls(
            file_path=data["file_path"],
            line_start=data.get("line_start"),
            line_end=data.get("line_end"),
            content_hash=data.get("content_hash"),
        )


@dataclass
class ContextEntry:
    """A single recorded note.

    Construction validates content and type, normalizes the timestamp to
    millisecond UTC and collapses duplicate tags. An empty id means the
    storage layer assigns one on save.
    """
    content: str
    type: ContextType = ContextType.TEXT
    timestamp: datetime = field(default_factory=utc_now)
    source: ContextSource = ContextSource.MANUAL
    metadata: ContextMetadata = field(default_factory=ContextMetadata)
    tags: list[str] = field(default_factory=list)
    file_associations: list[FileAssociation] = field(default_factory=list)
    id: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.content, str) or not self.content.strip():
            raise ValueError("Context content must not be empty")
        self.type = coerce_type(self.type)
        self.source = coerce_source(self.source)
        self.timestamp = normalize_timestamp(self.timestamp)
        self.tags = normalize_tags(self.tags)

    @property
    def author(self) -> Optional[str]:
        return self.metadata.author

    @property
    def file_paths(self) -> list[str]:
        return [fa.file_path for fa in self.file_associations]

    def to_dict(self) -> dict:
        """Convert entry to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "timestamp": format_timestamp(self.timestamp),
            "type": self.type.value,
            "content": self.content,
            "source": self.source.value,
            "metadata": self.metadata.to_dict(),
            "tags": list(self.tags),
            "file_associations": [fa.to_dict() for fa in self.file_associations],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContextEntry:
        """Build an entry from its to_dict() form.

        Raises:
            ValueError: If content, type or source are invalid
            KeyError: If content is missing
        """
        timestamp = data.get("timestamp")
        if isinstance(timestamp, str):
            timestamp = parse_timestamp(timestamp)
        return cls(
            id=data.get("id") or "",
            content=data["content"],
            type=data.get("type", ContextType.TEXT.value),
            timestamp=timestamp or utc_now(),
            source=data.get("source", ContextSource.MANUAL.value),
            metadata=ContextMetadata.from_dict(data.get("metadata")),
            tags=list(data.get("tags") or []),
            file_associations=[
                FileAssociation.from_dict(fa) for fa in data.get("file_associations") or []
            ],
        )


@dataclass
class TimelineEntry:
    """An entry as shown on a file timeline."""
    entry: ContextEntry
    related_entries: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        result = self.entry.to_dict()
        result["related_entries"] = list(self.related_entries)
        return result


@dataclass
class Timeline:
    """All entries associated with one file, newest first."""
    file_path: str
    entries: list[TimelineEntry] = field(default_factory=list)
    total_entries: int = 0

    def to_dict(self) -> dict:
        return {
            "file_path": self.file_path,
            "entries": [e.to_dict() for e in self.entries],
            "total_entries": self.total_entries,
        }


@dataclass
class SearchOptions:
    """Structured filters applied after the full-text query."""
    file_pattern: Optional[str] = None      # regular expression
    types: list[ContextType] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    author: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    limit: Optional[int] = None
    offset: int = 0

    def __post_init__(self) -> None:
        self.types = [coerce_type(t) for t in self.types]
        if self.date_from is not None:
            self.date_from = normalize_timestamp(self.date_from)
        if self.date_to is not None:
            self.date_to = normalize_timestamp(self.date_to)


@dataclass
class AnalyticsData:
    """Aggregate snapshot computed from a full corpus scan. Not persisted."""
    total_contexts: int
    contexts_by_type: dict[str, int]
    most_contexted_files: list[dict[str, Any]]
    context_trend: list[dict[str, Any]]
    average_contexts_per_commit: float
    top_authors: list[dict[str, Any]]

    def to_dict(self) -> dict:
        return {
            "total_contexts": self.total_contexts,
            "contexts_by_type": dict(self.contexts_by_type),
            "most_contexted_files": list(self.most_contexted_files),
            "context_trend": list(self.context_trend),
            "average_contexts_per_commit": self.average_contexts_per_commit,
            "top_authors": list(self.top_authors),
        }
