"""Tests for the SQLite context store."""

import sqlite3
from datetime import datetime, timezone

import pytest

from context_recorder.models import (
    ContextEntry,
    ContextMetadata,
    ContextSource,
    ContextType,
    FileAssociation,
)
from context_recorder.storage import ContextStorage, StorageError, StorageErrorKind

from conftest import BASE_TIME, hours_after, make_entry


def child_row_counts(db_path, context_id):
    conn = sqlite3.connect(str(db_path))
    try:
        return {
            table: conn.execute(
                f"SELECT COUNT(*) FROM {table} WHERE context_id = ?", (context_id,)
            ).fetchone()[0]
            for table in ("file_associations", "tags", "links", "related_items")
        }
    finally:
        conn.close()


class TestLifecycle:
    """Opening, closing and the NOT_INITIALIZED guard."""

    def test_open_creates_database(self, temp_project):
        db_path = temp_project / ".ccr" / "contexts.db"
        store = ContextStorage(db_path)
        store.open()
        try:
            assert db_path.exists()
            assert store.is_open
        finally:
            store.close()

    def test_schema_tables(self, storage):
        conn = sqlite3.connect(str(storage.db_path))
        try:
            names = {row[0] for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            )}
        finally:
            conn.close()
        assert {"contexts", "file_associations", "tags", "links",
                "related_items", "schema_version"} <= names

    def test_open_is_idempotent(self, storage):
        storage.open()
        assert storage.is_open

    def test_call_before_open(self, temp_project):
        store = ContextStorage(temp_project / "contexts.db")
        with pytest.raises(StorageError) as exc_info:
            store.get("x")
        assert exc_info.value.kind is StorageErrorKind.NOT_INITIALIZED

    @pytest.mark.parametrize("call", [
        lambda s: s.save(make_entry()),
        lambda s: s.get("x"),
        lambda s: s.get_all(),
        lambda s: s.delete("x"),
        lambda s: s.update_content("x", "y"),
        lambda s: s.search_by_content("x"),
        lambda s: s.count(),
    ])
    def test_every_call_after_close(self, temp_project, call):
        """After close every operation fails with NOT_INITIALIZED."""
        store = ContextStorage(temp_project / "contexts.db")
        store.open()
        store.close()
        with pytest.raises(StorageError) as exc_info:
            call(store)
        assert exc_info.value.kind is StorageErrorKind.NOT_INITIALIZED

    def test_close_twice(self, storage):
        storage.close()
        storage.close()
        assert not storage.is_open

    def test_unavailable_when_path_unusable(self, temp_project):
        blocker = temp_project / "blocker"
        blocker.write_text("not a directory")
        store = ContextStorage(blocker / "contexts.db")
        with pytest.raises(StorageError) as exc_info:
            store.open()
        assert exc_info.value.kind is StorageErrorKind.UNAVAILABLE

    def test_data_survives_reopen(self, temp_project):
        db_path = temp_project / "contexts.db"
        with ContextStorage(db_path) as store:
            context_id = store.save(make_entry("persisted note"))
        with ContextStorage(db_path) as store:
            assert store.get(context_id).content == "persisted note"


class TestSave:
    """Tests for save and the round trip through get."""

    def test_save_assigns_id(self, storage):
        entry = make_entry()
        context_id = storage.save(entry)
        assert context_id
        assert entry.id == context_id

    def test_save_keeps_given_id(self, storage):
        entry = make_entry()
        entry.id = "fixed-id"
        assert storage.save(entry) == "fixed-id"

    def test_full_round_trip(self, storage):
        """Every field comes back exactly as saved."""
        entry = ContextEntry(
            content="Recorded standup notes",
            type=ContextType.MEETING_NOTE,
            timestamp=datetime(2026, 3, 15, 9, 30, 15, 123000, tzinfo=timezone.utc),
            source=ContextSource.EDITOR_EXTENSION,
            metadata=ContextMetadata(
                author="ana",
                email="ana@example.com",
                commit_hash="abc123",
                branch="main",
                links=["https://example.com/a", "https://example.com/b"],
                duration=90,
                audio_path="notes/standup.wav",
                line_number=12,
                column_number=4,
                related_tickets=["JIRA-1"],
                related_prs=["#7", "#8"],
                related_threads=["slack-42"],
            ),
            tags=["standup", "team"],
            file_associations=[
                FileAssociation("src/app.py", 10, 20, "sha1"),
                FileAssociation("README.md"),
            ],
        )
        context_id = storage.save(entry)
        assert storage.get(context_id) == entry

    def test_round_trip_with_empty_collections(self, storage):
        entry = make_entry("bare")
        context_id = storage.save(entry)
        loaded = storage.get(context_id)
        assert loaded.tags == []
        assert loaded.file_associations == []
        assert loaded.metadata.links == []
        assert loaded == entry

    def test_duplicate_id_is_constraint_violation(self, storage):
        first = make_entry("one")
        storage.save(first)
        second = make_entry("two")
        second.id = first.id
        with pytest.raises(StorageError) as exc_info:
            storage.save(second)
        assert exc_info.value.kind is StorageErrorKind.CONSTRAINT_VIOLATION
        assert storage.get(first.id).content == "one"

    def test_failed_save_writes_nothing(self, storage):
        """A child-row failure rolls back the parent row too."""
        entry = make_entry("half written")
        entry.id = "atomic"
        entry.file_associations.append(FileAssociation(file_path=None))
        with pytest.raises(StorageError) as exc_info:
            storage.save(entry)
        assert exc_info.value.kind is StorageErrorKind.CONSTRAINT_VIOLATION
        assert storage.get("atomic") is None
        assert storage.count() == 0

    def test_tags_added_after_construction_stored_once(self, storage):
        entry = make_entry("x", tags=["a", "b"])
        entry.tags.extend(["a", " b ", ""])
        context_id = storage.save(entry)
        assert child_row_counts(storage.db_path, context_id)["tags"] == 2
        assert storage.get(context_id).tags == ["a", "b"]

    def test_lock_file_created(self, storage):
        storage.save(make_entry())
        assert storage.db_path.with_name("contexts.db.lock").exists()


class TestReads:
    """Tests for the read operations."""

    def test_get_missing(self, storage):
        assert storage.get("nope") is None

    def test_get_all_newest_first(self, storage):
        ids = [storage.save(make_entry(f"note {i}", timestamp=hours_after(i))) for i in range(3)]
        assert [e.id for e in storage.get_all()] == list(reversed(ids))

    def test_get_all_ties_by_id(self, storage):
        for context_id in ("c", "a", "b"):
            entry = make_entry(context_id)
            entry.id = context_id
            storage.save(entry)
        assert [e.id for e in storage.get_all()] == ["a", "b", "c"]

    def test_get_by_file(self, storage):
        old = storage.save(make_entry("old", timestamp=hours_after(1), files=["a.py"]))
        new = storage.save(make_entry("new", timestamp=hours_after(2), files=["a.py", "b.py"]))
        storage.save(make_entry("other", files=["b.py"]))
        assert [e.id for e in storage.get_by_file("a.py")] == [new, old]

    def test_get_by_file_exact_match_only(self, storage):
        storage.save(make_entry("x", files=["src/a.py"]))
        assert storage.get_by_file("a.py") == []

    def test_get_by_file_no_duplicates(self, storage):
        storage.save(make_entry("x", files=["a.py", "a.py"]))
        assert len(storage.get_by_file("a.py")) == 1

    def test_get_by_commit(self, storage):
        hit = storage.save(make_entry("in commit", commit_hash="abc"))
        storage.save(make_entry("elsewhere", commit_hash="def"))
        assert [e.id for e in storage.get_by_commit("abc")] == [hit]

    def test_get_by_date_range_inclusive(self, storage):
        ids = [storage.save(make_entry(f"n{i}", timestamp=hours_after(i))) for i in range(5)]
        result = storage.get_by_date_range(hours_after(1), hours_after(3))
        assert [e.id for e in result] == [ids[3], ids[2], ids[1]]

    def test_get_by_date_range_empty(self, storage):
        storage.save(make_entry("x", timestamp=BASE_TIME))
        assert storage.get_by_date_range(hours_after(1), hours_after(2)) == []

    def test_count(self, storage):
        assert storage.count() == 0
        storage.save(make_entry("a"))
        storage.save(make_entry("b"))
        assert storage.count() == 2


class TestSearchByContent:
    """Tests for the LIKE-based fallback search."""

    def test_case_insensitive(self, storage):
        hit = storage.save(make_entry("Fixed the Database connection"))
        assert [e.id for e in storage.search_by_content("database")] == [hit]

    def test_percent_is_literal(self, storage):
        hit = storage.save(make_entry("coverage at 100% now"))
        storage.save(make_entry("coverage at 1000 lines"))
        assert [e.id for e in storage.search_by_content("100%")] == [hit]

    def test_underscore_is_literal(self, storage):
        hit = storage.save(make_entry("renamed user_id column"))
        storage.save(make_entry("renamed userXid column"))
        assert [e.id for e in storage.search_by_content("user_id")] == [hit]

    def test_backslash_is_literal(self, storage):
        hit = storage.save(make_entry(r"path C:\temp is wrong"))
        assert [e.id for e in storage.search_by_content("C:\\temp")] == [hit]

    def test_limit(self, temp_project):
        with ContextStorage(temp_project / "c.db", content_search_limit=3) as store:
            for i in range(5):
                store.save(make_entry(f"repeated note {i}"))
            assert len(store.search_by_content("repeated")) == 3


class TestDeleteAndUpdate:
    """Tests for delete (with cascade) and update_content."""

    def test_delete_cascades(self, storage):
        entry = make_entry(
            "to delete", files=["a.py"], tags=["x"],
            links=["https://example.com"], related_tickets=["T-1"],
        )
        context_id = storage.save(entry)
        assert child_row_counts(storage.db_path, context_id) == {
            "file_associations": 1, "tags": 1, "links": 1, "related_items": 1,
        }

        assert storage.delete(context_id) is True
        assert storage.get(context_id) is None
        assert set(child_row_counts(storage.db_path, context_id).values()) == {0}

    def test_delete_missing(self, storage):
        assert storage.delete("missing") is False

    def test_update_content_only(self, storage):
        entry = make_entry("before", tags=["keep"], files=["a.py"], author="ana")
        context_id = storage.save(entry)
        assert storage.update_content(context_id, "after") is True

        loaded = storage.get(context_id)
        assert loaded.content == "after"
        assert loaded.tags == ["keep"]
        assert loaded.file_paths == ["a.py"]
        assert loaded.timestamp == entry.timestamp

    def test_update_missing(self, storage):
        assert storage.update_content("missing", "text") is False

    def test_update_rejects_empty(self, storage):
        context_id = storage.save(make_entry("before"))
        with pytest.raises(ValueError):
            storage.update_content(context_id, "  ")
        assert storage.get(context_id).content == "before"
