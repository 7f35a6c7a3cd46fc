"""Storage contract consumed by the importer, and its SQLite implementation.

The importer only needs a narrow set of operations, so it depends on the
RepositoryStore protocol rather than on SQLite. Tests substitute an in-memory
double; the CLI uses SQLiteRepositoryStore.

Each write commits on its own. A failure mid-book can therefore leave a
partially imported book behind.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Protocol, runtime_checkable

from zbrs.db.connection import get_schema_version, init_db
from zbrs.repository.errors import NotInitializedError
from zbrs.repository.models import RepositoryDbRecord, RepositoryTranslationRecord

logger = logging.getLogger(__name__)


class StoreNotInitializedError(NotInitializedError):
    """Store accessed before its schema was ensured."""

    def __init__(self) -> None:
        super().__init__("Repository store not initialized. Call ensure_schema() first.")


@runtime_checkable
class RepositoryStore(Protocol):
    """Operations the importer performs against persistent storage."""

    def get_repository(self, repository_id: str) -> RepositoryDbRecord | None:
        ...

    def upsert_repository(self, record: RepositoryDbRecord) -> None:
        ...

    def create_book(self, fields: dict[str, Any]) -> int:
        """Insert a book row and return its id.

        Expected keys: repository_id, code, name, abbreviation, testament,
        book_order, chapter_count; optional genre, author, metadata.
        """
        ...

    def create_verse(self, fields: dict[str, Any]) -> None:
        """Insert one verse: repository_id, book_id, chapter, verse, text."""
        ...

    def create_repository_translation(
        self, record: RepositoryTranslationRecord
    ) -> None:
        ...

    def get_translations(self, parent_id: str) -> list[RepositoryTranslationRecord]:
        ...

    def delete_books(self, repository_id: str) -> int:
        """Remove every book (and its verses) of a repository."""
        ...


class SQLiteRepositoryStore:
    """RepositoryStore over the schema in zbrs.db.connection."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self._ready = False

    def ensure_schema(self) -> None:
        """Create tables if needed; must be called before any accessor."""
        if get_schema_version(self.conn) is None:
            logger.info("Initializing repository database schema")
        init_db(self.conn)
        self._ready = True

    def _require_ready(self) -> None:
        if not self._ready:
            raise StoreNotInitializedError()

    # Repositories

    def get_repository(self, repository_id: str) -> RepositoryDbRecord | None:
        self._require_ready()
        row = self.conn.execute(
            "SELECT * FROM repositories WHERE id = ?", (repository_id,)
        ).fetchone()
        return RepositoryDbRecord.from_dict(dict(row)) if row else None

    def list_repositories(self) -> list[RepositoryDbRecord]:
        self._require_ready()
        rows = self.conn.execute(
            "SELECT * FROM repositories ORDER BY type, id"
        ).fetchall()
        return [RepositoryDbRecord.from_dict(dict(r)) for r in rows]

    def upsert_repository(self, record: RepositoryDbRecord) -> None:
        self._require_ready()
        self.conn.execute(
            """
            INSERT INTO repositories (
                id, name, description, version, type, parent_id, language,
                created_at, updated_at, imported_at, metadata
            )
            VALUES (
                :id, :name, :description, :version, :type, :parent_id, :language,
                :created_at, :updated_at, :imported_at, :metadata
            )
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                description = excluded.description,
                version = excluded.version,
                type = excluded.type,
                parent_id = excluded.parent_id,
                language = excluded.language,
                updated_at = excluded.updated_at,
                imported_at = excluded.imported_at,
                metadata = excluded.metadata
            """,
            record.to_dict(),
        )
        self.conn.commit()

    # Books and verses

    def create_book(self, fields: dict[str, Any]) -> int:
        self._require_ready()
        cursor = self.conn.execute(
            """
            INSERT INTO books (
                repository_id, code, name, abbreviation, testament,
                book_order, chapter_count, genre, author, metadata
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                fields["repository_id"],
                fields["code"],
                fields["name"],
                fields["abbreviation"],
                fields["testament"],
                fields["book_order"],
                fields["chapter_count"],
                fields.get("genre"),
                fields.get("author"),
                fields.get("metadata") or "{}",
            ),
        )
        self.conn.commit()
        return cursor.lastrowid

    def create_verse(self, fields: dict[str, Any]) -> None:
        self._require_ready()
        self.conn.execute(
            """
            INSERT OR REPLACE INTO verses (
                repository_id, book_id, chapter, verse, text, annotations
            )
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                fields["repository_id"],
                fields["book_id"],
                fields["chapter"],
                fields["verse"],
                fields["text"],
                fields.get("annotations"),
            ),
        )
        self.conn.commit()

    def delete_books(self, repository_id: str) -> int:
        self._require_ready()
        self.conn.execute(
            "DELETE FROM verses WHERE repository_id = ?", (repository_id,)
        )
        cursor = self.conn.execute(
            "DELETE FROM books WHERE repository_id = ?", (repository_id,)
        )
        self.conn.commit()
        return cursor.rowcount

    def count_books(self, repository_id: str) -> int:
        self._require_ready()
        row = self.conn.execute(
            "SELECT COUNT(*) FROM books WHERE repository_id = ?", (repository_id,)
        ).fetchone()
        return row[0]

    def count_verses(self, repository_id: str) -> int:
        self._require_ready()
        row = self.conn.execute(
            "SELECT COUNT(*) FROM verses WHERE repository_id = ?", (repository_id,)
        ).fetchone()
        return row[0]

    # Parent/translation links

    def create_repository_translation(
        self, record: RepositoryTranslationRecord
    ) -> None:
        self._require_ready()
        self.conn.execute(
            """
            INSERT INTO repository_translations (
                parent_id, translation_id, directory, language, status
            )
            VALUES (:parent_id, :translation_id, :directory, :language, :status)
            ON CONFLICT(parent_id, translation_id) DO UPDATE SET
                directory = excluded.directory,
                language = excluded.language,
                status = excluded.status
            """,
            record.to_dict(),
        )
        self.conn.commit()

    def get_translations(self, parent_id: str) -> list[RepositoryTranslationRecord]:
        self._require_ready()
        rows = self.conn.execute(
            """
            SELECT parent_id, translation_id, directory, language, status
            FROM repository_translations
            WHERE parent_id = ?
            ORDER BY translation_id
            """,
            (parent_id,),
        ).fetchall()
        return [RepositoryTranslationRecord(**dict(r)) for r in rows]
