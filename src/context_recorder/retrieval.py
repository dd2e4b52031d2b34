"""Filtered search, timelines and analytics over stored context entries."""

from __future__ import annotations

import re
from collections import Counter
from datetime import datetime, timedelta
from typing import Callable, Optional

from .models import (
    AnalyticsData,
    ContextEntry,
    ContextType,
    SearchOptions,
    Timeline,
    TimelineEntry,
    normalize_timestamp,
    utc_now,
)
from .search import SearchIndex
from .storage import ContextStorage

EntryFilter = Callable[[ContextEntry], bool]


def build_filters(options: SearchOptions) -> list[EntryFilter]:
    """Turn search options into predicates. Missing options add nothing."""
    filters: list[EntryFilter] = []

    if options.file_pattern:
        pattern = re.compile(options.file_pattern)
        filters.append(
            lambda e: any(pattern.search(fa.file_path) for fa in e.file_associations)
        )

    if options.types:
        types = set(options.types)
        filters.append(lambda e: e.type in types)

    if options.tags:
        wanted = set(options.tags)
        filters.append(lambda e: not wanted.isdisjoint(e.tags))

    if options.author:
        author = options.author
        filters.append(lambda e: e.metadata.author == author)

    if options.date_from is not None:
        date_from = options.date_from
        filters.append(lambda e: e.timestamp >= date_from)

    if options.date_to is not None:
        date_to = options.date_to
        filters.append(lambda e: e.timestamp <= date_to)

    return filters


def _top(counter: Counter, key: str, limit: int) -> list[dict]:
    # Counter.most_common keeps first-seen order among equal counts
    return [{key: name, "count": count} for name, count in counter.most_common(limit)]


class RetrievalService:
    """Read side of the recorder: index-backed search plus direct scans."""

    def __init__(
        self,
        storage: ContextStorage,
        index: SearchIndex,
        default_limit: int = 50,
        suggestion_limit: int = 10,
        trend_days: int = 30,
        top_files: int = 10,
        top_authors: int = 5,
    ):
        self.storage = storage
        self.index = index
        self.default_limit = default_limit
        self.suggestion_limit = suggestion_limit
        self.trend_days = trend_days
        self.top_files = top_files
        self.top_authors = top_authors

    def search(self, query: str, options: Optional[SearchOptions] = None) -> list[ContextEntry]:
        """Full-text search narrowed by structured filters.

        The index supplies up to ``options.limit`` ranked ids (default
        ``default_limit``); each is loaded from storage and must then pass
        every supplied filter. Relevance order is kept.

        Args:
            query: Free text, matched with prefix and fuzzy tolerance
            options: File regex, types, tags (any of), author, date range

        Returns:
            Matching entries, most relevant first

        Raises:
            StorageError: If the store cannot be read
            re.error: If ``options.file_pattern`` is not a valid regex
        """
        options = options or SearchOptions()
        limit = options.limit if options.limit is not None else self.default_limit
        filters = build_filters(options)

        results: list[ContextEntry] = []
        for context_id in self.index.query(query, limit):
            entry = self.storage.get(context_id)
            if entry is None:
                # Index can briefly lag behind a delete made elsewhere
                continue
            if all(f(entry) for f in filters):
                results.append(entry)

        if options.offset:
            results = results[options.offset:]
        return results

    def find_related(self, context_id: str, limit: int = 5) -> list[ContextEntry]:
        """Entries whose text resembles the given entry's content."""
        entry = self.storage.get(context_id)
        if entry is None:
            return []
        results = self.search(entry.content, SearchOptions(limit=limit + 1))
        return [e for e in results if e.id != context_id][:limit]

    def search_by_tags(self, tags: list[str]) -> list[ContextEntry]:
        """Entries carrying any of `tags`."""
        return self.search(" ".join(tags), SearchOptions(tags=list(tags)))

    def get_recent(self, limit: int = 10) -> list[ContextEntry]:
        """Newest entries by timestamp. Does not touch the index."""
        entries = sorted(self.storage.get_all(), key=lambda e: e.timestamp, reverse=True)
        return entries[:limit]

    def get_by_author(self, author: str) -> list[ContextEntry]:
        """Entries whose author is exactly `author`, newest first."""
        return [e for e in self.storage.get_all() if e.metadata.author == author]

    def get_commit_context(self, commit_hash: str) -> list[ContextEntry]:
        return self.storage.get_by_commit(commit_hash)

    def get_by_date_range(self, start: datetime, end: datetime) -> list[ContextEntry]:
        return self.storage.get_by_date_range(start, end)

    def get_suggestions(self, partial: str, limit: Optional[int] = None) -> list[str]:
        """Typeahead completions from indexed tokens."""
        return self.index.suggest(partial, limit if limit is not None else self.suggestion_limit)

    def get_file_timeline(self, file_path: str) -> Timeline:
        """All entries for one file, newest first."""
        entries = [TimelineEntry(entry=e) for e in self.storage.get_by_file(file_path)]
        return Timeline(file_path=file_path, entries=entries, total_entries=len(entries))

    def get_analytics(self, now: Optional[datetime] = None) -> AnalyticsData:
        """Aggregate counts from a single scan of every entry.

        The trend covers the trailing ``trend_days`` calendar days (UTC)
        ending with the day of `now`, one bucket per day that has entries.
        """
        now = normalize_timestamp(now) if now is not None else utc_now()
        last_day = now.date()
        first_day = last_day - timedelta(days=self.trend_days - 1)

        entries = self.storage.get_all()
        by_type: Counter = Counter()
        by_file: Counter = Counter()
        by_author: Counter = Counter()
        by_day: Counter = Counter()

        for entry in entries:
            by_type[entry.type.value] += 1
            for fa in entry.file_associations:
                by_file[fa.file_path] += 1
            if entry.metadata.author:
                by_author[entry.metadata.author] += 1
            day = entry.timestamp.date()
            if first_day <= day <= last_day:
                by_day[day.isoformat()] += 1

        commit_count = by_type[ContextType.COMMIT.value]
        average = len(entries) / commit_count if commit_count else 0.0

        return AnalyticsData(
            total_contexts=len(entries),
            contexts_by_type=dict(by_type),
            most_contexted_files=_top(by_file, "file", self.top_files),
            context_trend=[
                {"date": day, "count": count} for day, count in sorted(by_day.items())
            ],
            average_contexts_per_commit=average,
            top_authors=_top(by_author, "author", self.top_authors),
        )
