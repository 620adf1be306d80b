"""Database package: SQLite connection helpers and schema setup."""

from database.connection import get_db, init_database

__all__ = ["get_db", "init_database"]
