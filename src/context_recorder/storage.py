"""SQLite storage for context entries.

The database is the only source of truth: the search index is rebuilt from
it. Each entry is a row in ``contexts`` plus child rows in
``file_associations``, ``tags``, ``links`` and ``related_items``, all
removed with the parent through ``ON DELETE CASCADE``.

Database location: <project>/.ccr/contexts.db
"""

from __future__ import annotations

import logging
import sqlite3
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Generator, Iterable, Optional

import portalocker

from .locking import write_lock
from .models import (
    ContextEntry,
    ContextMetadata,
    FileAssociation,
    format_timestamp,
    from_epoch_ms,
    generate_context_id,
    normalize_tags,
    to_epoch_ms,
    utc_now,
)

logger = logging.getLogger(__name__)

# related_items.item_type values and the metadata list each one fills
RELATED_ITEM_FIELDS = {
    "ticket": "related_tickets",
    "pr": "related_prs",
    "thread": "related_threads",
}

# Keeps IN (...) lists under SQLite's bound-parameter limit
_ID_CHUNK = 500


class StorageErrorKind(Enum):
    """Why a storage operation failed."""
    NOT_INITIALIZED = "not_initialized"
    UNAVAILABLE = "unavailable"
    CONSTRAINT_VIOLATION = "constraint_violation"


class StorageError(Exception):
    """Raised when the context store cannot complete an operation."""

    def __init__(self, kind: StorageErrorKind, message: str):
        super().__init__(message)
        self.kind = kind


class ContextStorage:
    """SQLite-backed persistence for context entries."""

    SCHEMA_VERSION = 1

    def __init__(
        self,
        db_path: Path,
        lock_timeout: float = 10.0,
        content_search_limit: int = 100,
    ):
        """Create a store for the database at `db_path`.

        Nothing is opened until open() is called.

        Args:
            db_path: Path to the SQLite database file
            lock_timeout: Seconds to wait for the cross-process write lock
            content_search_limit: Maximum rows from search_by_content()
        """
        self.db_path = db_path
        self.lock_timeout = lock_timeout
        self.content_search_limit = content_search_limit
        self._connection: Optional[sqlite3.Connection] = None

    # ========== Lifecycle ==========

    @property
    def is_open(self) -> bool:
        return self._connection is not None

    def open(self) -> None:
        """Open the database, creating the file and schema if needed."""
        if self._connection is not None:
            return
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("PRAGMA journal_mode = WAL")
            self._ensure_schema(conn)
        except (OSError, sqlite3.Error) as e:
            raise StorageError(
                StorageErrorKind.UNAVAILABLE,
                f"Cannot open context store at {self.db_path}: {e}",
            ) from e
        self._connection = conn
        logger.debug("Opened context store %s", self.db_path)

    def close(self) -> None:
        """Close the database connection.

        The WAL is checkpointed and the journal switched back to DELETE
        mode first so no -wal/-shm files are left behind.
        """
        if self._connection is None:
            return
        try:
            self._connection.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            self._connection.execute("PRAGMA journal_mode = DELETE")
        except sqlite3.Error as e:
            logger.debug("WAL checkpoint on close failed: %s", e)
        self._connection.close()
        self._connection = None
        logger.debug("Closed context store %s", self.db_path)

    def __enter__(self) -> ContextStorage:
        self.open()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        cursor = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
        )
        if cursor.fetchone() is None:
            self._init_schema(conn)
        else:
            row = conn.execute("SELECT version FROM schema_version").fetchone()
            if row is None or row[0] < self.SCHEMA_VERSION:
                self._migrate_schema(conn, row[0] if row else 0)

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            );
            INSERT INTO schema_version (version) VALUES (1);

            CREATE TABLE IF NOT EXISTS contexts (
                id TEXT PRIMARY KEY,
                timestamp INTEGER NOT NULL,     -- epoch milliseconds, UTC
                type TEXT NOT NULL,
                content TEXT NOT NULL,
                source TEXT NOT NULL,
                author TEXT,
                email TEXT,
                commit_hash TEXT,
                branch TEXT,
                duration INTEGER,
                audio_path TEXT,
                line_number INTEGER,
                column_number INTEGER,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS file_associations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                context_id TEXT NOT NULL,
                file_path TEXT NOT NULL,
                line_start INTEGER,
                line_end INTEGER,
                file_hash TEXT,
                FOREIGN KEY (context_id) REFERENCES contexts(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS tags (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                context_id TEXT NOT NULL,
                tag TEXT NOT NULL,
                FOREIGN KEY (context_id) REFERENCES contexts(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS links (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                context_id TEXT NOT NULL,
                url TEXT NOT NULL,
                title TEXT,
                FOREIGN KEY (context_id) REFERENCES contexts(id) ON DELETE CASCADE
            );

            -- tickets, PRs, chat threads
            CREATE TABLE IF NOT EXISTS related_items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                context_id TEXT NOT NULL,
                item_type TEXT NOT NULL,
                item_id TEXT NOT NULL,
                FOREIGN KEY (context_id) REFERENCES contexts(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_contexts_timestamp ON contexts(timestamp);
            CREATE INDEX IF NOT EXISTS idx_contexts_type ON contexts(type);
            CREATE INDEX IF NOT EXISTS idx_contexts_commit ON contexts(commit_hash);
            CREATE INDEX IF NOT EXISTS idx_contexts_author ON contexts(author);
            CREATE INDEX IF NOT EXISTS idx_file_associations_path ON file_associations(file_path);
            CREATE INDEX IF NOT EXISTS idx_file_associations_context ON file_associations(context_id);
            CREATE INDEX IF NOT EXISTS idx_tags_tag ON tags(tag);
            CREATE INDEX IF NOT EXISTS idx_tags_context ON tags(context_id);
            CREATE INDEX IF NOT EXISTS idx_links_context ON links(context_id);
            CREATE INDEX IF NOT EXISTS idx_related_items_context ON related_items(context_id);
        """)
        conn.commit()

    def _migrate_schema(self, conn: sqlite3.Connection, from_version: int) -> None:
        # Only version 1 exists so far
        if from_version < 1:
            self._init_schema(conn)

    # ========== Connection guards ==========

    def _require_connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise StorageError(
                StorageErrorKind.NOT_INITIALIZED,
                "Context store is not open. Call open() first.",
            )
        return self._connection

    @contextmanager
    def _translate_errors(self, action: str) -> Generator[None, None, None]:
        """Re-raise driver and lock errors as StorageError."""
        try:
            yield
        except sqlite3.IntegrityError as e:
            raise StorageError(
                StorageErrorKind.CONSTRAINT_VIOLATION, f"{action} failed: {e}"
            ) from e
        except sqlite3.Error as e:
            raise StorageError(StorageErrorKind.UNAVAILABLE, f"{action} failed: {e}") from e
        except portalocker.LockException as e:
            raise StorageError(
                StorageErrorKind.UNAVAILABLE,
                f"{action} failed: could not lock {self.db_path} within {self.lock_timeout}s",
            ) from e

    @contextmanager
    def _write(self, action: str) -> Generator[sqlite3.Connection, None, None]:
        """One locked write transaction: every statement commits or none do."""
        conn = self._require_connection()
        with self._translate_errors(action):
            with write_lock(self.db_path, timeout=self.lock_timeout):
                with conn:
                    yield conn

    @contextmanager
    def _read(self, action: str) -> Generator[sqlite3.Connection, None, None]:
        """Read inside one transaction so parent and child rows come from
        the same snapshot."""
        conn = self._require_connection()
        with self._translate_errors(action):
            conn.execute("BEGIN")
            try:
                yield conn
            finally:
                conn.execute("COMMIT")

    # ========== Writes ==========

    def save(self, entry: ContextEntry) -> str:
        """Insert an entry and all of its child rows atomically.

        An entry without an id is given a new one, which is also written
        back to ``entry.id``.

        Returns:
            The entry id

        Raises:
            StorageError: CONSTRAINT_VIOLATION if the id already exists
        """
        context_id = entry.id or generate_context_id()
        meta = entry.metadata
        now = format_timestamp(utc_now())

        with self._write(f"Saving context {context_id}") as conn:
            conn.execute(
                """
                INSERT INTO contexts (
                    id, timestamp, type, content, source, author, email,
                    commit_hash, branch, duration, audio_path,
                    line_number, column_number, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    context_id,
                    to_epoch_ms(entry.timestamp),
                    entry.type.value,
                    entry.content,
                    entry.source.value,
                    meta.author,
                    meta.email,
                    meta.commit_hash,
                    meta.branch,
                    meta.duration,
                    meta.audio_path,
                    meta.line_number,
                    meta.column_number,
                    now,
                    now,
                ),
            )
            conn.executemany(
                """
                INSERT INTO file_associations (context_id, file_path, line_start, line_end, file_hash)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (context_id, fa.file_path, fa.line_start, fa.line_end, fa.content_hash)
                    for fa in entry.file_associations
                ],
            )
            conn.executemany(
                "INSERT INTO tags (context_id, tag) VALUES (?, ?)",
                [(context_id, tag) for tag in normalize_tags(entry.tags)],
            )
            conn.executemany(
                "INSERT INTO links (context_id, url) VALUES (?, ?)",
                [(context_id, url) for url in meta.links],
            )
            conn.executemany(
                "INSERT INTO related_items (context_id, item_type, item_id) VALUES (?, ?, ?)",
                [
                    (context_id, item_type, item_id)
                    for item_type, attr in RELATED_ITEM_FIELDS.items()
                    for item_id in getattr(meta, attr)
                ],
            )

        entry.id = context_id
        logger.debug(
            "Saved context %s (%s, %d files, %d tags)",
            context_id, entry.type.value, len(entry.file_associations), len(entry.tags),
        )
        return context_id

    def delete(self, context_id: str) -> bool:
        """Delete an entry and, by cascade, all of its child rows.

        Returns:
            True if entry was deleted, False if not found
        """
        with self._write(f"Deleting context {context_id}") as conn:
            cursor = conn.execute("DELETE FROM contexts WHERE id = ?", (context_id,))
        deleted = cursor.rowcount > 0
        if deleted:
            logger.debug("Deleted context %s", context_id)
        return deleted

    def update_content(self, context_id: str, content: str) -> bool:
        """Replace an entry's content. No other field is touched.

        Returns:
            True if the entry exists and was updated

        Raises:
            ValueError: If the new content is empty
        """
        if not isinstance(content, str) or not content.strip():
            raise ValueError("Context content must not be empty")
        with self._write(f"Updating context {context_id}") as conn:
            cursor = conn.execute(
                "UPDATE contexts SET content = ?, updated_at = ? WHERE id = ?",
                (content, format_timestamp(utc_now()), context_id),
            )
        return cursor.rowcount > 0

    # ========== Reads ==========

    def get(self, context_id: str) -> Optional[ContextEntry]:
        """Get a single entry by ID, or None if it does not exist."""
        with self._read(f"Reading context {context_id}") as conn:
            row = conn.execute("SELECT * FROM contexts WHERE id = ?", (context_id,)).fetchone()
            if row is None:
                return None
            return self._hydrate(conn, [row])[0]

    def get_by_file(self, file_path: str) -> list[ContextEntry]:
        """Entries associated with exactly `file_path`, newest first."""
        return self._select(
            f"Reading contexts for file {file_path}",
            """
            SELECT DISTINCT c.* FROM contexts c
            JOIN file_associations fa ON c.id = fa.context_id
            WHERE fa.file_path = ?
            ORDER BY c.timestamp DESC, c.id
            """,
            (file_path,),
        )

    def get_by_commit(self, commit_hash: str) -> list[ContextEntry]:
        """Entries recorded against a commit, newest first."""
        return self._select(
            f"Reading contexts for commit {commit_hash}",
            "SELECT * FROM contexts WHERE commit_hash = ? ORDER BY timestamp DESC, id",
            (commit_hash,),
        )

    def get_by_date_range(self, start: datetime, end: datetime) -> list[ContextEntry]:
        """Entries with start <= timestamp <= end, newest first."""
        return self._select(
            "Reading contexts by date range",
            """
            SELECT * FROM contexts
            WHERE timestamp BETWEEN ? AND ?
            ORDER BY timestamp DESC, id
            """,
            (to_epoch_ms(start), to_epoch_ms(end)),
        )

    def search_by_content(self, substring: str) -> list[ContextEntry]:
        """Case-insensitive substring match on content.

        This is the plain fallback search; it works whether or not the
        search index has been built. Results are capped at
        ``content_search_limit``.
        """
        escaped = (
            substring.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        )
        return self._select(
            "Searching context content",
            r"""
            SELECT * FROM contexts
            WHERE content LIKE ? ESCAPE '\'
            ORDER BY timestamp DESC, id
            LIMIT ?
            """,
            (f"%{escaped}%", self.content_search_limit),
        )

    def get_all(self) -> list[ContextEntry]:
        """Every entry, newest first. Used for index builds and analytics."""
        return self._select(
            "Reading all contexts",
            "SELECT * FROM contexts ORDER BY timestamp DESC, id",
            (),
        )

    def count(self) -> int:
        """Number of stored entries."""
        with self._read("Counting contexts") as conn:
            return conn.execute("SELECT COUNT(*) FROM contexts").fetchone()[0]

    def _select(self, action: str, sql: str, params: Iterable[Any]) -> list[ContextEntry]:
        with self._read(action) as conn:
            rows = conn.execute(sql, tuple(params)).fetchall()
            return self._hydrate(conn, rows)

    # ========== Row reconstruction ==========

    def _hydrate(self, conn: sqlite3.Connection, rows: list[sqlite3.Row]) -> list[ContextEntry]:
        """Build full entries from context rows plus their child rows."""
        ids = [row["id"] for row in rows]
        files: dict[str, list[FileAssociation]] = defaultdict(list)
        tags: dict[str, list[str]] = defaultdict(list)
        links: dict[str, list[str]] = defaultdict(list)
        related: dict[str, dict[str, list[str]]] = defaultdict(lambda: defaultdict(list))

        for start in range(0, len(ids), _ID_CHUNK):
            chunk = ids[start:start + _ID_CHUNK]
            marks = ", ".join("?" * len(chunk))
            for fa in conn.execute(
                f"SELECT * FROM file_associations WHERE context_id IN ({marks}) ORDER BY id",
                chunk,
            ):
                files[fa["context_id"]].append(FileAssociation(
                    file_path=fa["file_path"],
                    line_start=fa["line_start"],
                    line_end=fa["line_end"],
                    content_hash=fa["file_hash"],
                ))
            for tag in conn.execute(
                f"SELECT context_id, tag FROM tags WHERE context_id IN ({marks}) ORDER BY id",
                chunk,
            ):
                tags[tag["context_id"]].append(tag["tag"])
            for link in conn.execute(
                f"SELECT context_id, url FROM links WHERE context_id IN ({marks}) ORDER BY id",
                chunk,
            ):
                links[link["context_id"]].append(link["url"])
            for item in conn.execute(
                f"SELECT context_id, item_type, item_id FROM related_items "
                f"WHERE context_id IN ({marks}) ORDER BY id",
                chunk,
            ):
                related[item["context_id"]][item["item_type"]].append(item["item_id"])

        return [
            self._row_to_entry(row, files[row["id"]], tags[row["id"]],
                               links[row["id"]], related[row["id"]])
            for row in rows
        ]

    def _row_to_entry(
        self,
        row: sqlite3.Row,
        files: list[FileAssociation],
        tags: list[str],
        links: list[str],
        related: dict[str, list[str]],
    ) -> ContextEntry:
        metadata = ContextMetadata(
            author=row["author"],
            email=row["email"],
            commit_hash=row["commit_hash"],
            branch=row["branch"],
            links=links,
            duration=row["duration"],
            audio_path=row["audio_path"],
            line_number=row["line_number"],
            column_number=row["column_number"],
        )
        for item_type, attr in RELATED_ITEM_FIELDS.items():
            setattr(metadata, attr, list(related.get(item_type, [])))

        return ContextEntry(
            id=row["id"],
            timestamp=from_epoch_ms(row["timestamp"]),
            type=row["type"],
            content=row["content"],
            source=row["source"],
            metadata=metadata,
            tags=tags,
            file_associations=files,
        )
