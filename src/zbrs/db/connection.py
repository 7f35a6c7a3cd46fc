"""SQLite connection management and schema."""

from __future__ import annotations

import sqlite3
from pathlib import Path

SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

-- repositories: coordinating (parent) and translation records
CREATE TABLE IF NOT EXISTS repositories (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    version TEXT NOT NULL,
    type TEXT NOT NULL CHECK (type IN ('parent', 'translation')),
    parent_id TEXT REFERENCES repositories(id),
    language TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    imported_at TEXT NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}'
);

-- books: one row per imported book file
CREATE TABLE IF NOT EXISTS books (
    id INTEGER PRIMARY KEY,
    repository_id TEXT NOT NULL REFERENCES repositories(id),
    code TEXT NOT NULL,
    name TEXT NOT NULL,
    abbreviation TEXT NOT NULL,
    testament TEXT NOT NULL CHECK (testament IN ('old', 'new')),
    book_order INTEGER NOT NULL,
    chapter_count INTEGER NOT NULL,
    genre TEXT,
    author TEXT,
    metadata TEXT NOT NULL DEFAULT '{}'
);

-- verses: text of every verse, keyed by book/chapter/verse
CREATE TABLE IF NOT EXISTS verses (
    id INTEGER PRIMARY KEY,
    repository_id TEXT NOT NULL REFERENCES repositories(id),
    book_id INTEGER NOT NULL REFERENCES books(id),
    chapter INTEGER NOT NULL,
    verse INTEGER NOT NULL,
    text TEXT NOT NULL,
    annotations TEXT,
    UNIQUE(repository_id, book_id, chapter, verse)
);

-- repository_translations: parent -> translation links
CREATE TABLE IF NOT EXISTS repository_translations (
    parent_id TEXT NOT NULL REFERENCES repositories(id),
    translation_id TEXT NOT NULL REFERENCES repositories(id),
    directory TEXT NOT NULL,
    language TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    PRIMARY KEY (parent_id, translation_id)
);

CREATE INDEX IF NOT EXISTS idx_repositories_parent ON repositories(parent_id);
CREATE INDEX IF NOT EXISTS idx_books_repository ON books(repository_id, book_order);
CREATE INDEX IF NOT EXISTS idx_verses_ref ON verses(book_id, chapter, verse);
"""


def get_connection(db_path: Path | str) -> sqlite3.Connection:
    """
    Get a SQLite connection with row factory and WAL mode.

    ``":memory:"`` is accepted for tests.
    """
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    """Initialize database schema. Safe to call repeatedly."""
    conn.executescript(SCHEMA_SQL)
    conn.execute(
        "INSERT OR IGNORE INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    conn.commit()


def get_schema_version(conn: sqlite3.Connection) -> int | None:
    """Get current schema version, or None if not initialized."""
    try:
        row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    except sqlite3.OperationalError:
        return None
    return row[0] if row else None
