"""Database helpers."""

from visitwatch.db.schema import ensure_schema
from visitwatch.db.sqlite_client import DatabaseError, SQLiteClient

__all__ = ["DatabaseError", "SQLiteClient", "ensure_schema"]
