"""Local SQLite storage for imported repositories."""

from zbrs.db.connection import get_connection, init_db
from zbrs.db.store import (
    RepositoryStore,
    SQLiteRepositoryStore,
    StoreNotInitializedError,
)

__all__ = [
    "get_connection",
    "init_db",
    "RepositoryStore",
    "SQLiteRepositoryStore",
    "StoreNotInitializedError",
]
