"""Recorder facade: storage, search index and retrieval behind one object.

Every write goes to storage first and is then applied to the search index,
after which subscribers are notified synchronously.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from .config import ProjectConfig
from .locking import locked_atomic_write_text
from .models import (
    AnalyticsData,
    ContextEntry,
    ContextMetadata,
    ContextSource,
    ContextType,
    FileAssociation,
    SearchOptions,
    Timeline,
    utc_now,
)
from .retrieval import RetrievalService
from .search import IndexState, SearchIndex
from .storage import ContextStorage

logger = logging.getLogger(__name__)


class ContextEvent(Enum):
    """Notifications published by the recorder."""
    ENTRY_ADDED = "entry_added"
    ENTRY_DELETED = "entry_deleted"
    INDEX_REBUILT = "index_rebuilt"


Listener = Callable[..., Any]


class ContextRecorder:
    """Entry point for recording and retrieving context entries."""

    def __init__(self, config: ProjectConfig):
        self.config = config
        self.storage = ContextStorage(
            config.get_database_path(),
            lock_timeout=config.lock_timeout,
            content_search_limit=config.search.content_search_limit,
        )
        self.index = SearchIndex(
            self.storage,
            fuzzy=config.search.fuzzy,
            prefix=config.search.prefix,
            boosts=config.search.boost,
            on_built=self._on_index_built,
        )
        self.retrieval = RetrievalService(
            self.storage,
            self.index,
            default_limit=config.search.default_limit,
            suggestion_limit=config.search.suggestion_limit,
            trend_days=config.analytics.trend_days,
            top_files=config.analytics.top_files,
            top_authors=config.analytics.top_authors,
        )
        self._listeners: dict[ContextEvent, list[Listener]] = {e: [] for e in ContextEvent}
        self._subscribe_hooks()

    def _subscribe_hooks(self) -> None:
        """Attach hook_<event> functions from a Python config file."""
        for name, hook in self.config.hooks.items():
            try:
                event = ContextEvent(name)
            except ValueError:
                logger.warning("Ignoring hook for unknown event: %s", name)
                continue
            self.subscribe(event, lambda payload, _hook=hook: _hook(self, payload))

    # ========== Lifecycle ==========

    def initialize(self) -> None:
        """Open storage and, if configured, build the search index now."""
        self.storage.open()
        if self.config.search.build_on_open and self.index.state is IndexState.EMPTY:
            self.index.build()

    def close(self) -> None:
        """Close storage and discard the index."""
        self.index.reset()
        self.storage.close()

    def __enter__(self) -> ContextRecorder:
        self.initialize()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # ========== Events ==========

    def subscribe(self, event: ContextEvent, listener: Listener) -> Callable[[], None]:
        """Call `listener(payload)` whenever `event` happens.

        Payloads: ENTRY_ADDED -> ContextEntry, ENTRY_DELETED -> entry id,
        INDEX_REBUILT -> number of indexed documents. Listener exceptions
        propagate to the caller of the triggering operation.

        Returns:
            A function that removes the subscription
        """
        self._listeners[event].append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners[event]:
                self._listeners[event].remove(listener)

        return unsubscribe

    def _emit(self, event: ContextEvent, payload: Any) -> None:
        for listener in list(self._listeners[event]):
            listener(payload)

    def _on_index_built(self, document_count: int) -> None:
        self._emit(ContextEvent.INDEX_REBUILT, document_count)

    # ========== Writes ==========

    def save(self, entry: ContextEntry) -> str:
        """Persist an entry, index it and publish ENTRY_ADDED.

        Returns:
            The entry id (generated if the entry had none)
        """
        context_id = self.storage.save(entry)
        self.index.add_document(entry)
        self._emit(ContextEvent.ENTRY_ADDED, entry)
        return context_id

    def add_context(
        self,
        content: str,
        file_path: Optional[str] = None,
        type: ContextType | str = ContextType.TEXT,
        line_number: Optional[int] = None,
        tags: Optional[list[str]] = None,
        links: Optional[list[str]] = None,
        author: Optional[str] = None,
        source: ContextSource | str = ContextSource.MANUAL,
        timestamp: Optional[datetime] = None,
    ) -> ContextEntry:
        """Record a note, optionally attached to one file.

        Returns:
            The saved entry, with its id assigned
        """
        file_associations = []
        if file_path:
            file_associations.append(FileAssociation(
                file_path=file_path,
                line_start=line_number,
                line_end=line_number,
            ))
        entry = ContextEntry(
            content=content,
            type=type,
            timestamp=timestamp or utc_now(),
            source=source,
            metadata=ContextMetadata(
                author=author,
                links=list(links or []),
                line_number=line_number,
            ),
            tags=list(tags or []),
            file_associations=file_associations,
        )
        self.save(entry)
        return entry

    def add_decision(
        self,
        decision: str,
        reasoning: str,
        file_paths: Optional[list[str]] = None,
        alternatives: Optional[list[str]] = None,
        tags: Optional[list[str]] = None,
        links: Optional[list[str]] = None,
        author: Optional[str] = None,
    ) -> ContextEntry:
        """Record a decision with its reasoning and rejected alternatives.

        Tags default to ``["decision"]``.
        """
        content = f"Decision: {decision}\n\nReasoning:\n{reasoning}"
        if alternatives:
            numbered = "\n".join(f"{i}. {alt}" for i, alt in enumerate(alternatives, 1))
            content += f"\n\nAlternatives Considered:\n{numbered}"

        entry = ContextEntry(
            content=content,
            type=ContextType.DECISION,
            metadata=ContextMetadata(author=author, links=list(links or [])),
            tags=list(tags) if tags is not None else ["decision"],
            file_associations=[FileAssociation(file_path=p) for p in file_paths or []],
        )
        self.save(entry)
        return entry

    def link_ticket(
        self,
        ticket_id: str,
        ticket_url: str,
        file_path: Optional[str] = None,
        summary: Optional[str] = None,
    ) -> ContextEntry:
        """Attach an issue tracker ticket to a file as a bug report entry."""
        entry = ContextEntry(
            content=summary or f"Linked to ticket: {ticket_id}",
            type=ContextType.BUG_REPORT,
            metadata=ContextMetadata(related_tickets=[ticket_id], links=[ticket_url]),
            tags=["ticket", ticket_id],
            file_associations=[FileAssociation(file_path=file_path)] if file_path else [],
        )
        self.save(entry)
        return entry

    def add_voice_note(
        self,
        audio_path: str,
        duration: int,
        file_path: Optional[str] = None,
        transcript: Optional[str] = None,
        line_number: Optional[int] = None,
        tags: Optional[list[str]] = None,
    ) -> ContextEntry:
        """Record a voice note. Without a transcript the content is a placeholder."""
        entry = ContextEntry(
            content=transcript or "Voice note",
            type=ContextType.VOICE,
            source=ContextSource.EDITOR_EXTENSION,
            metadata=ContextMetadata(
                audio_path=audio_path,
                duration=duration,
                line_number=line_number,
            ),
            tags=list(tags or []),
            file_associations=[FileAssociation(
                file_path=file_path,
                line_start=line_number,
                line_end=line_number,
            )] if file_path else [],
        )
        self.save(entry)
        return entry

    def delete(self, context_id: str) -> bool:
        """Delete an entry everywhere. False if it did not exist."""
        deleted = self.storage.delete(context_id)
        if deleted:
            self.index.remove_document(context_id)
            self._emit(ContextEvent.ENTRY_DELETED, context_id)
        return deleted

    def update_content(self, context_id: str, content: str) -> bool:
        """Correct an entry's content and reindex it. False if missing."""
        updated = self.storage.update_content(context_id, content)
        if updated and self.index.is_ready:
            entry = self.storage.get(context_id)
            if entry is not None:
                self.index.add_document(entry)
        return updated

    def rebuild_index(self) -> int:
        """Rebuild the search index from storage.

        Returns:
            Number of documents indexed
        """
        return self.index.build()

    # ========== Direct reads ==========

    def get(self, context_id: str) -> Optional[ContextEntry]:
        return self.storage.get(context_id)

    def get_all(self) -> list[ContextEntry]:
        return self.storage.get_all()

    def get_by_file(self, file_path: str) -> list[ContextEntry]:
        return self.storage.get_by_file(file_path)

    def get_by_commit(self, commit_hash: str) -> list[ContextEntry]:
        return self.retrieval.get_commit_context(commit_hash)

    def get_by_date_range(self, start: datetime, end: datetime) -> list[ContextEntry]:
        return self.retrieval.get_by_date_range(start, end)

    def search_content(self, substring: str) -> list[ContextEntry]:
        """Plain substring search that does not use the index."""
        return self.storage.search_by_content(substring)

    # ========== Retrieval ==========

    def search(self, query: str, options: Optional[SearchOptions] = None) -> list[ContextEntry]:
        return self.retrieval.search(query, options)

    def find_related(self, context_id: str, limit: int = 5) -> list[ContextEntry]:
        return self.retrieval.find_related(context_id, limit)

    def search_by_tags(self, tags: list[str]) -> list[ContextEntry]:
        return self.retrieval.search_by_tags(tags)

    def get_recent(self, limit: int = 10) -> list[ContextEntry]:
        return self.retrieval.get_recent(limit)

    def get_by_author(self, author: str) -> list[ContextEntry]:
        return self.retrieval.get_by_author(author)

    def get_suggestions(self, partial: str, limit: Optional[int] = None) -> list[str]:
        return self.retrieval.get_suggestions(partial, limit)

    def get_file_timeline(self, file_path: str) -> Timeline:
        return self.retrieval.get_file_timeline(file_path)

    def get_analytics(self, now: Optional[datetime] = None) -> AnalyticsData:
        return self.retrieval.get_analytics(now)

    # ========== Export ==========

    def export_json(self, path: Optional[Path] = None) -> str:
        """Serialize every entry, newest first, as a JSON array.

        If `path` is given the JSON is also written there atomically.
        """
        text = json.dumps([e.to_dict() for e in self.storage.get_all()], indent=2)
        if path is not None:
            locked_atomic_write_text(path, text + "\n", timeout=self.config.lock_timeout)
            logger.info("Exported contexts to %s", path)
        return text

    def import_json(self, text: str) -> dict[str, int]:
        """Save entries from an export_json() dump.

        Entries whose id is already stored are skipped, so importing the
        same dump twice is harmless.

        Returns:
            Counts of imported and skipped entries

        Raises:
            ValueError: If the text is not a JSON array of entries
        """
        data = json.loads(text)
        if not isinstance(data, list):
            raise ValueError("Context export must be a JSON array")

        imported = skipped = 0
        for item in data:
            entry = ContextEntry.from_dict(item)
            if entry.id and self.storage.get(entry.id) is not None:
                skipped += 1
                continue
            self.save(entry)
            imported += 1
        logger.info("Imported %d contexts (%d already present)", imported, skipped)
        return {"imported": imported, "skipped": skipped}
