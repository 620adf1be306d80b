"""Shared test fixtures."""

from __future__ import annotations

import sqlite3
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest

from database.models import create_tagged_item, insert_counter
from utils.barcode import make_barcode_value

_SCHEMA_PATH = Path(__file__).resolve().parent.parent / "database" / "schema.sql"

RING_KEY = "MG-RNG-25"


class _NoCloseConnection:
    """Wrapper around a sqlite3.Connection that ignores .close() calls.

    This prevents code that owns its connection from closing the shared
    in-memory test fixture.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        object.__setattr__(self, "_conn", conn)

    def close(self) -> None:  # noqa: D102
        pass  # intentionally do nothing

    def __getattr__(self, name: str) -> object:
        return getattr(self._conn, name)

    def __setattr__(self, name: str, value: object) -> None:
        setattr(self._conn, name, value)


@pytest.fixture
def db() -> Generator[sqlite3.Connection, None, None]:
    """In-memory SQLite database with the full schema applied."""
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    schema = _SCHEMA_PATH.read_text()
    conn.executescript(schema)
    yield conn
    conn.close()


@pytest.fixture
def add_items(db: sqlite3.Connection) -> Callable[..., list[dict[str, Any]]]:
    """Factory that inserts tagged items holding the given serials."""

    def _add(
        serials: list[int] | range,
        category_code: str = "RNG",
        year: int = 2025,
        location_code: str = "MAL",
    ) -> list[dict[str, Any]]:
        return [
            create_tagged_item(
                db,
                category="Ring" if category_code == "RNG" else category_code,
                category_code=category_code,
                location="Mumbai Malad",
                location_code=location_code,
                year=year,
                serial=serial,
                barcode_value=make_barcode_value(
                    "MG", category_code, location_code, year, serial
                ),
            )
            for serial in serials
        ]

    return _add


@pytest.fixture
def ring_stream_with_gaps(
    db: sqlite3.Connection,
    add_items: Callable[..., list[dict[str, Any]]],
) -> int:
    """Ring 2025 counter at 10 with live items on every serial but 3, 5 and 7.

    Returns the counter value.
    """
    insert_counter(db, RING_KEY, 10)
    add_items([s for s in range(1, 11) if s not in {3, 5, 7}])
    return 10


@pytest.fixture
def client(db: sqlite3.Connection, monkeypatch: pytest.MonkeyPatch):
    """Flask test client backed by the in-memory database."""
    from api.app import create_app

    wrapper = _NoCloseConnection(db)
    monkeypatch.setattr("api.routes.get_db", lambda _path: wrapper)
    app = create_app()
    app.config["TESTING"] = True
    with app.test_client() as c:
        yield c
