"""Shared pytest fixtures for context recorder tests."""

import gc
import tempfile
import weakref
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from context_recorder.config import ProjectConfig
from context_recorder.models import (
    ContextEntry,
    ContextMetadata,
    ContextType,
    FileAssociation,
)
from context_recorder.recorder import ContextRecorder
from context_recorder.storage import ContextStorage


# Global tracking of recorders via weak references
_recorder_refs = []


# Patch ContextRecorder.__init__ at import time to track all instances
_original_init = ContextRecorder.__init__


def _tracking_init(self, *args, **kwargs):
    """Wrapper for ContextRecorder.__init__ that tracks created recorders."""
    _original_init(self, *args, **kwargs)
    _recorder_refs.append(weakref.ref(self))


ContextRecorder.__init__ = _tracking_init


def cleanup_all_recorders():
    """Close every recorder still alive so SQLite releases its files."""
    global _recorder_refs

    gc.collect()
    for ref in _recorder_refs:
        rec = ref()
        if rec is not None:
            rec.close()
    _recorder_refs = []
    gc.collect()


BASE_TIME = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def make_entry(
    content="Investigated flaky test",
    type=ContextType.TEXT,
    timestamp=None,
    files=(),
    tags=(),
    author=None,
    commit_hash=None,
    **metadata,
):
    """Build an entry with sensible defaults for tests."""
    return ContextEntry(
        content=content,
        type=type,
        timestamp=timestamp or BASE_TIME,
        metadata=ContextMetadata(author=author, commit_hash=commit_hash, **metadata),
        tags=list(tags),
        file_associations=[FileAssociation(file_path=f) for f in files],
    )


def hours_after(hours):
    return BASE_TIME + timedelta(hours=hours)


@pytest.fixture
def temp_project():
    """Create a temporary project directory."""
    global _recorder_refs
    _recorder_refs = [ref for ref in _recorder_refs if ref() is not None]

    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)
        # Close recorders BEFORE the temp directory is deleted
        cleanup_all_recorders()


@pytest.fixture
def config(temp_project):
    """Create a test configuration."""
    return ProjectConfig(
        project_name="test-project",
        project_root=temp_project,
    )


@pytest.fixture
def recorder(config):
    """An initialized recorder, closed after the test."""
    rec = ContextRecorder(config)
    rec.initialize()
    yield rec
    rec.close()


@pytest.fixture
def lazy_recorder(config):
    """A recorder whose index is only built on first query."""
    config.search.build_on_open = False
    rec = ContextRecorder(config)
    rec.initialize()
    yield rec
    rec.close()


@pytest.fixture
def storage(temp_project):
    """An open standalone store."""
    store = ContextStorage(temp_project / ".ccr" / "contexts.db")
    store.open()
    yield store
    store.close()


@pytest.fixture
def recorder_factory(temp_project):
    """Factory fixture that creates recorders and ensures cleanup.

    Usage:
        def test_example(recorder_factory, temp_project):
            config = ProjectConfig(project_root=temp_project, ...)
            rec = recorder_factory(config)
    """
    recorders = []

    def _create(config, initialize=True):
        rec = ContextRecorder(config)
        if initialize:
            rec.initialize()
        recorders.append(rec)
        return rec

    yield _create

    for rec in recorders:
        rec.close()
