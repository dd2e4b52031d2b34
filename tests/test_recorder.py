"""Tests for the recorder facade, its events and export/import."""

import json

import pytest

from context_recorder.config import ProjectConfig, load_config
from context_recorder.models import ContextSource, ContextType
from context_recorder.recorder import ContextEvent, ContextRecorder
from context_recorder.search import IndexState
from context_recorder.storage import StorageError, StorageErrorKind

from conftest import hours_after, make_entry


class TestLifecycle:
    """initialize/close and index build policy."""

    def test_initialize_builds_index(self, recorder):
        assert recorder.index.state is IndexState.READY

    def test_lazy_index(self, lazy_recorder):
        assert lazy_recorder.index.state is IndexState.EMPTY
        entry = lazy_recorder.add_context("lazy build note")
        assert lazy_recorder.index.state is IndexState.EMPTY
        assert [e.id for e in lazy_recorder.search("lazy")] == [entry.id]
        assert lazy_recorder.index.state is IndexState.READY

    def test_context_manager(self, config):
        with ContextRecorder(config) as rec:
            rec.add_context("inside")
            assert rec.storage.is_open
        assert not rec.storage.is_open

    def test_close_resets_index(self, config):
        rec = ContextRecorder(config)
        rec.initialize()
        rec.close()
        assert rec.index.state is IndexState.EMPTY

    def test_calls_after_close_fail(self, config):
        rec = ContextRecorder(config)
        rec.initialize()
        rec.close()
        with pytest.raises(StorageError) as exc_info:
            rec.search("anything")
        assert exc_info.value.kind is StorageErrorKind.NOT_INITIALIZED
        with pytest.raises(StorageError):
            rec.add_context("too late")

    def test_database_under_project(self, recorder, temp_project):
        assert recorder.storage.db_path == temp_project / ".ccr" / "contexts.db"


class TestWrites:
    """save, add_context, delete and update_content keep the index in step."""

    def test_save_is_searchable(self, recorder):
        entry = make_entry("websocket reconnect")
        context_id = recorder.save(entry)
        assert [e.id for e in recorder.search("websocket")] == [context_id]

    def test_add_context(self, recorder):
        entry = recorder.add_context(
            "Explain retry backoff",
            file_path="src/net.py",
            type="code_snippet",
            line_number=42,
            tags=["net", " net "],
            links=["https://example.com/rfc"],
            author="ana",
            source="cli",
        )
        loaded = recorder.get(entry.id)
        assert loaded == entry
        assert loaded.type is ContextType.CODE_SNIPPET
        assert loaded.source is ContextSource.CLI
        assert loaded.tags == ["net"]
        assert loaded.metadata.line_number == 42
        assert loaded.file_associations[0].line_start == 42
        assert loaded.file_associations[0].line_end == 42

    def test_add_context_without_file(self, recorder):
        entry = recorder.add_context("free-floating thought")
        assert entry.file_associations == []

    def test_add_context_rejects_empty(self, recorder):
        with pytest.raises(ValueError):
            recorder.add_context("   ")
        assert recorder.storage.count() == 0

    def test_delete(self, recorder):
        entry = recorder.add_context("temporary note", file_path="a.py")
        assert recorder.delete(entry.id) is True
        assert recorder.get(entry.id) is None
        assert recorder.search("temporary") == []
        assert recorder.get_file_timeline("a.py").total_entries == 0

    def test_delete_missing(self, recorder):
        assert recorder.delete("missing") is False

    def test_update_content_reindexes(self, recorder):
        entry = recorder.add_context("typo in hte title")
        assert recorder.update_content(entry.id, "fixed the heading") is True
        assert recorder.get(entry.id).content == "fixed the heading"
        assert [e.id for e in recorder.search("heading")] == [entry.id]
        assert recorder.search("hte") == []

    def test_update_missing(self, recorder):
        assert recorder.update_content("missing", "text") is False

    def test_rebuild_index(self, recorder):
        recorder.add_context("one")
        recorder.add_context("two")
        assert recorder.rebuild_index() == 2


class TestEntryBuilders:
    """add_decision, link_ticket and add_voice_note."""

    def test_add_decision(self, recorder):
        entry = recorder.add_decision(
            "Use SQLite",
            "Single file, no server to run",
            file_paths=["src/storage.py", "docs/adr.md"],
            alternatives=["Postgres", "Flat JSON files"],
            links=["https://sqlite.org/whentouse.html"],
        )
        loaded = recorder.get(entry.id)
        assert loaded.type is ContextType.DECISION
        assert loaded.content == (
            "Decision: Use SQLite\n\n"
            "Reasoning:\nSingle file, no server to run\n\n"
            "Alternatives Considered:\n1. Postgres\n2. Flat JSON files"
        )
        assert loaded.file_paths == ["src/storage.py", "docs/adr.md"]
        assert loaded.metadata.links == ["https://sqlite.org/whentouse.html"]
        assert loaded.tags == ["decision"]

    def test_add_decision_without_alternatives(self, recorder):
        entry = recorder.add_decision("Keep it", "Works fine", tags=["arch"])
        assert "Alternatives Considered" not in entry.content
        assert entry.tags == ["arch"]
        assert entry.file_associations == []

    def test_link_ticket(self, recorder):
        entry = recorder.link_ticket(
            "PAY-42", "https://tracker.example.com/PAY-42", file_path="src/pay.py",
        )
        loaded = recorder.get(entry.id)
        assert loaded.type is ContextType.BUG_REPORT
        assert loaded.content == "Linked to ticket: PAY-42"
        assert loaded.metadata.related_tickets == ["PAY-42"]
        assert loaded.metadata.links == ["https://tracker.example.com/PAY-42"]
        assert loaded.tags == ["ticket", "PAY-42"]
        assert loaded.file_paths == ["src/pay.py"]
        assert [e.id for e in recorder.search_by_tags(["ticket"])] == [entry.id]

    def test_link_ticket_with_summary(self, recorder):
        entry = recorder.link_ticket("PAY-7", "https://t/PAY-7", summary="Refund rounding error")
        assert entry.content == "Refund rounding error"

    def test_add_voice_note(self, recorder):
        entry = recorder.add_voice_note(
            "recordings/standup.m4a", 95, file_path="src/app.py",
            transcript="Talked about the flaky upload test", line_number=30,
        )
        loaded = recorder.get(entry.id)
        assert loaded.type is ContextType.VOICE
        assert loaded.source is ContextSource.EDITOR_EXTENSION
        assert loaded.content == "Talked about the flaky upload test"
        assert loaded.metadata.audio_path == "recordings/standup.m4a"
        assert loaded.metadata.duration == 95
        assert loaded.metadata.line_number == 30
        assert loaded.file_paths == ["src/app.py"]

    def test_add_voice_note_placeholder(self, recorder):
        entry = recorder.add_voice_note("memo.wav", 5)
        assert entry.content == "Voice note"

    def test_builders_publish_entry_added(self, recorder):
        received = []
        recorder.subscribe(ContextEvent.ENTRY_ADDED, received.append)
        recorder.add_decision("a", "b")
        recorder.link_ticket("T-1", "https://t/T-1")
        recorder.add_voice_note("v.wav", 1)
        assert [e.type for e in received] == [
            ContextType.DECISION, ContextType.BUG_REPORT, ContextType.VOICE,
        ]


class TestReads:
    def test_get_all_and_by_file(self, recorder):
        a = recorder.add_context("a", file_path="x.py", timestamp=hours_after(1))
        b = recorder.add_context("b", file_path="x.py", timestamp=hours_after(2))
        assert [e.id for e in recorder.get_all()] == [b.id, a.id]
        assert [e.id for e in recorder.get_by_file("x.py")] == [b.id, a.id]

    def test_get_by_commit(self, recorder):
        entry = make_entry("shipped", type=ContextType.COMMIT, commit_hash="abc")
        recorder.save(entry)
        assert [e.id for e in recorder.get_by_commit("abc")] == [entry.id]

    def test_get_by_date_range(self, recorder):
        entry = recorder.add_context("dated", timestamp=hours_after(5))
        result = recorder.get_by_date_range(hours_after(4), hours_after(6))
        assert [e.id for e in result] == [entry.id]

    def test_search_content_fallback(self, lazy_recorder):
        entry = lazy_recorder.add_context("Exact Substring here")
        assert [e.id for e in lazy_recorder.search_content("substring")] == [entry.id]
        assert lazy_recorder.index.state is IndexState.EMPTY

    def test_retrieval_delegates(self, recorder):
        entry = recorder.add_context("authentication rewrite", tags=["auth"], author="ana")
        other = recorder.add_context("authentication tests")
        assert [e.id for e in recorder.search_by_tags(["auth"])] == [entry.id]
        assert [e.id for e in recorder.get_by_author("ana")] == [entry.id]
        assert [e.id for e in recorder.find_related(entry.id)] == [other.id]
        assert "authentication" in recorder.get_suggestions("authen")
        assert recorder.get_recent(1)[0].id in {entry.id, other.id}
        assert recorder.get_analytics().total_contexts == 2


class TestEvents:
    """Subscribers are notified synchronously after each write."""

    def test_entry_added(self, recorder):
        received = []
        recorder.subscribe(ContextEvent.ENTRY_ADDED, received.append)
        entry = recorder.add_context("announce me")
        assert received == [entry]

    def test_entry_added_after_indexing(self, recorder):
        """Listeners can already find the new entry through search."""
        found = []
        recorder.subscribe(
            ContextEvent.ENTRY_ADDED,
            lambda entry: found.extend(e.id for e in recorder.search("observable")),
        )
        entry = recorder.add_context("observable write")
        assert found == [entry.id]

    def test_entry_deleted(self, recorder):
        received = []
        recorder.subscribe(ContextEvent.ENTRY_DELETED, received.append)
        entry = recorder.add_context("short lived")
        recorder.delete(entry.id)
        recorder.delete("missing")
        assert received == [entry.id]

    def test_index_rebuilt(self, recorder):
        received = []
        recorder.subscribe(ContextEvent.INDEX_REBUILT, received.append)
        recorder.add_context("a")
        recorder.add_context("b")
        recorder.rebuild_index()
        assert received == [2]

    def test_lazy_build_publishes_rebuilt(self, lazy_recorder):
        received = []
        lazy_recorder.subscribe(ContextEvent.INDEX_REBUILT, received.append)
        lazy_recorder.add_context("x")
        lazy_recorder.search("x")
        assert received == [1]

    def test_unsubscribe(self, recorder):
        received = []
        unsubscribe = recorder.subscribe(ContextEvent.ENTRY_ADDED, received.append)
        recorder.add_context("first")
        unsubscribe()
        unsubscribe()
        recorder.add_context("second")
        assert len(received) == 1

    def test_listener_error_propagates(self, recorder):
        def boom(entry):
            raise RuntimeError("listener failed")

        recorder.subscribe(ContextEvent.ENTRY_ADDED, boom)
        with pytest.raises(RuntimeError, match="listener failed"):
            recorder.add_context("still saved")
        # The write itself is already committed
        assert recorder.storage.count() == 1


class TestHooks:
    """hook_<event> functions from a Python config file."""

    def test_python_config_hooks(self, temp_project, recorder_factory):
        (temp_project / "context_config.py").write_text(
            "seen = []\n"
            "CONFIG = {'project': {'name': 'hooked'}}\n"
            "def hook_entry_added(recorder, entry):\n"
            "    seen.append(('added', entry.id))\n"
            "def hook_entry_deleted(recorder, context_id):\n"
            "    seen.append(('deleted', context_id))\n"
            "def hook_index_rebuilt(recorder, count):\n"
            "    seen.append(('rebuilt', count))\n"
        )
        config = load_config(temp_project)
        rec = recorder_factory(config)
        entry = rec.add_context("hooked note")
        rec.delete(entry.id)

        seen = config.hooks["entry_added"].__globals__["seen"]
        assert seen == [("rebuilt", 0), ("added", entry.id), ("deleted", entry.id)]

    def test_unknown_hook_ignored(self, temp_project, recorder_factory, caplog):
        config = ProjectConfig(project_root=temp_project, hooks={"not_an_event": lambda r, p: None})
        with caplog.at_level("WARNING", logger="context_recorder.recorder"):
            rec = recorder_factory(config)
        rec.add_context("still works")
        assert "not_an_event" in caplog.text


class TestExportImport:
    def test_export_json(self, recorder):
        a = recorder.add_context("first", timestamp=hours_after(1))
        b = recorder.add_context("second", timestamp=hours_after(2))
        data = json.loads(recorder.export_json())
        assert [item["id"] for item in data] == [b.id, a.id]

    def test_export_to_file(self, recorder, temp_project):
        recorder.add_context("to disk")
        target = temp_project / "exports" / "contexts.json"
        text = recorder.export_json(target)
        assert json.loads(target.read_text(encoding="utf-8")) == json.loads(text)

    def test_import_into_fresh_store(self, recorder, temp_project, recorder_factory):
        recorder.add_context("portable note", file_path="a.py", tags=["move"])
        dump = recorder.export_json()

        other_root = temp_project / "other"
        other_root.mkdir()
        other = recorder_factory(ProjectConfig(project_root=other_root))
        assert other.import_json(dump) == {"imported": 1, "skipped": 0}
        assert other.get_all() == recorder.get_all()
        assert [e.content for e in other.search("portable")] == ["portable note"]

    def test_import_twice_skips(self, recorder):
        recorder.add_context("once")
        dump = recorder.export_json()
        assert recorder.import_json(dump) == {"imported": 0, "skipped": 1}
        assert recorder.storage.count() == 1

    def test_import_rejects_non_array(self, recorder):
        with pytest.raises(ValueError, match="JSON array"):
            recorder.import_json('{"content": "x"}')
