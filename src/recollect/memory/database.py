"""SQLite database handle shared by the fact store and conversation log."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)

IN_MEMORY = ":memory:"

SCHEMA = """
CREATE TABLE IF NOT EXISTS facts (
    id                      INTEGER PRIMARY KEY AUTOINCREMENT,
    content                 TEXT NOT NULL,
    category                TEXT NOT NULL DEFAULT 'general',
    confidence              REAL NOT NULL DEFAULT 1.0,
    source_conversation_id  TEXT,
    project_id              TEXT,
    created_at              TEXT NOT NULL,
    updated_at              TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS fact_vectors (
    fact_id     INTEGER PRIMARY KEY REFERENCES facts(id) ON DELETE CASCADE,
    dimension   INTEGER NOT NULL,
    embedding   BLOB NOT NULL
);

CREATE TABLE IF NOT EXISTS conversations (
    id              TEXT PRIMARY KEY,
    project_id      TEXT,
    title           TEXT NOT NULL,
    message_count   INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id                   INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id      TEXT NOT NULL REFERENCES conversations(id),
    role                 TEXT NOT NULL,
    content              TEXT NOT NULL,
    timestamp            TEXT NOT NULL,
    processed_for_facts  INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_facts_project ON facts(project_id);
CREATE INDEX IF NOT EXISTS idx_facts_category ON facts(category);
CREATE INDEX IF NOT EXISTS idx_messages_pending
    ON messages(conversation_id, processed_for_facts);
"""


class MemoryDatabase:
    """Owns the SQLite connection and schema.

    The process that assembles the memory system creates one handle,
    passes it to the stores, and closes it on shutdown.
    """

    def __init__(self, db_path: Path | str) -> None:
        """Initialize the handle with a database path.

        Args:
            db_path: Path to the SQLite file, or ":memory:".
        """
        self.db_path = db_path if db_path == IN_MEMORY else Path(db_path)
        self._conn: sqlite3.Connection | None = None
        self._depth = 0

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def connection(self) -> sqlite3.Connection:
        """Get or create the database connection."""
        if self._conn is None:
            if isinstance(self.db_path, Path):
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_path))
            self._conn.row_factory = sqlite3.Row
            logger.debug("Opened memory database at %s", self.db_path)
        return self._conn

    def init_db(self) -> None:
        """Apply pragmas and create tables if they don't exist."""
        conn = self.connection()
        if isinstance(self.db_path, Path):
            conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        conn.execute("PRAGMA foreign_keys = ON")
        conn.executescript(SCHEMA)
        conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block atomically: commit on success, roll back on error.

        Nested blocks join the outermost transaction, which alone commits
        or rolls back.
        """
        conn = self.connection()
        if self._depth:
            self._depth += 1
            try:
                yield conn
            finally:
                self._depth -= 1
            return

        self._depth = 1
        try:
            yield conn
        except BaseException:
            conn.rollback()
            raise
        else:
            conn.commit()
        finally:
            self._depth = 0

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
