"""Database CRUD operations.

Implements all data-access functions for counters, tagged items, serial
reservation markers, and the category/location code registry.

Write helpers that may run inside a caller-managed transaction take a
``commit`` keyword; pass ``commit=False`` there so the caller decides when
the transaction ends.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _row_to_dict(row: sqlite3.Row | None) -> dict[str, Any] | None:
    """Convert a sqlite3.Row to a plain dict, or return None."""
    if row is None:
        return None
    return dict(row)


def _rows_to_list(rows: list[sqlite3.Row]) -> list[dict[str, Any]]:
    """Convert a list of sqlite3.Row to a list of dicts."""
    return [dict(r) for r in rows]


def _now() -> str:
    """Return the current UTC timestamp as an ISO-8601 string."""
    return format_timestamp(datetime.now(UTC))


def format_timestamp(moment: datetime) -> str:
    """Format *moment* the way every timestamp column is stored."""
    return moment.strftime("%Y-%m-%d %H:%M:%S")


def _build_update(
    table: str,
    row_id: int,
    fields: dict[str, Any],
    allowed: set[str],
) -> tuple[str, list[Any]]:
    """Build a dynamic UPDATE statement from validated field names.

    Only columns in *allowed* are accepted. This whitelist check prevents
    SQL injection even though column names are interpolated into the query.

    Returns (sql, params) ready for ``conn.execute()``.
    """
    to_set: dict[str, Any] = {}
    for key, value in fields.items():
        if key in allowed:
            to_set[key] = value
    if not to_set:
        msg = "No valid fields to update"
        raise ValueError(msg)

    clauses = [f"{col} = ?" for col in to_set]
    params = list(to_set.values())
    params.append(row_id)
    sql = f"UPDATE {table} SET {', '.join(clauses)} WHERE id = ?"  # noqa: S608
    return sql, params


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------


def get_counter(conn: sqlite3.Connection, key: str) -> dict[str, Any] | None:
    """Return the counter row for *key*, or None if it was never created."""
    return _row_to_dict(
        conn.execute("SELECT * FROM counters WHERE key = ?", (key,)).fetchone()
    )


def list_counters(conn: sqlite3.Connection) -> list[dict[str, Any]]:
    """Return all counters ordered by key."""
    return _rows_to_list(conn.execute("SELECT * FROM counters ORDER BY key").fetchall())


def insert_counter(
    conn: sqlite3.Connection,
    key: str,
    value: int,
    *,
    commit: bool = True,
) -> None:
    """Create the counter row for *key*. Raises IntegrityError if it exists."""
    conn.execute(
        "INSERT INTO counters (key, value, updated_at) VALUES (?, ?, ?)",
        (key, value, _now()),
    )
    if commit:
        conn.commit()


def update_counter_value(
    conn: sqlite3.Connection,
    key: str,
    value: int,
    *,
    commit: bool = True,
) -> None:
    """Set an existing counter to *value* and refresh its timestamp."""
    cur = conn.execute(
        "UPDATE counters SET value = ?, updated_at = ? WHERE key = ?",
        (value, _now(), key),
    )
    if cur.rowcount == 0:
        msg = f"Counter {key} does not exist"
        raise LookupError(msg)
    if commit:
        conn.commit()


# ---------------------------------------------------------------------------
# Code registry (categories / locations)
# ---------------------------------------------------------------------------


def list_categories(conn: sqlite3.Connection, active_only: bool = True) -> list[dict[str, Any]]:
    """Return categories ordered by name."""
    sql = "SELECT * FROM categories"
    if active_only:
        sql += " WHERE active = 1"
    return _rows_to_list(conn.execute(sql + " ORDER BY name").fetchall())


def get_category_code(conn: sqlite3.Connection, name: str) -> str | None:
    """Return the code of an active category, or None when unknown."""
    row = conn.execute(
        "SELECT code FROM categories WHERE name = ? AND active = 1", (name,)
    ).fetchone()
    return row["code"] if row else None


def create_category(
    conn: sqlite3.Connection, name: str, code: str
) -> dict[str, Any] | None:
    """Insert a category and return it, or None on duplicate name/code."""
    try:
        cur = conn.execute(
            "INSERT INTO categories (name, code) VALUES (?, ?)", (name, code.upper())
        )
        conn.commit()
    except sqlite3.IntegrityError:
        return None
    return _row_to_dict(
        conn.execute("SELECT * FROM categories WHERE id = ?", (cur.lastrowid,)).fetchone()
    )


def list_locations(conn: sqlite3.Connection, active_only: bool = True) -> list[dict[str, Any]]:
    """Return locations ordered by name."""
    sql = "SELECT * FROM locations"
    if active_only:
        sql += " WHERE active = 1"
    return _rows_to_list(conn.execute(sql + " ORDER BY name").fetchall())


def get_location_code(conn: sqlite3.Connection, name: str) -> str | None:
    """Return the code of an active location, or None when unknown."""
    row = conn.execute(
        "SELECT code FROM locations WHERE name = ? AND active = 1", (name,)
    ).fetchone()
    return row["code"] if row else None


def create_location(
    conn: sqlite3.Connection, name: str, code: str
) -> dict[str, Any] | None:
    """Insert a location and return it, or None on duplicate name/code."""
    try:
        cur = conn.execute(
            "INSERT INTO locations (name, code) VALUES (?, ?)", (name, code.upper())
        )
        conn.commit()
    except sqlite3.IntegrityError:
        return None
    return _row_to_dict(
        conn.execute("SELECT * FROM locations WHERE id = ?", (cur.lastrowid,)).fetchone()
    )


# ---------------------------------------------------------------------------
# Tagged items
# ---------------------------------------------------------------------------

VALID_ITEM_STATUSES = {"pending", "approved", "rejected"}

# serial, category_code and year identify the item's slot in a serial
# stream and are not editable.
_ITEM_UPDATE_ALLOWED = {
    "label",
    "subcategory",
    "location",
    "weight",
    "purity",
    "price",
    "cost_price_type",
    "remark",
}

_ITEM_COLUMNS = (
    "label",
    "category",
    "subcategory",
    "category_code",
    "location",
    "location_code",
    "year",
    "serial",
    "barcode_value",
    "weight",
    "purity",
    "price",
    "cost_price_type",
    "remark",
    "status",
)

_ITEM_DEFAULTS: dict[str, Any] = {
    "subcategory": None,
    "location": None,
    "weight": "",
    "purity": "Gold Forming",
    "price": 0,
    "cost_price_type": None,
    "remark": None,
    "status": "pending",
}


def _item_params(item: dict[str, Any]) -> tuple[Any, ...]:
    merged = {**_ITEM_DEFAULTS, **item}
    if merged["status"] not in VALID_ITEM_STATUSES:
        msg = f"Invalid status: {merged['status']}"
        raise ValueError(msg)
    if "label" not in item:
        merged["label"] = merged["barcode_value"]
    return tuple(merged[col] for col in _ITEM_COLUMNS)


_INSERT_ITEM_SQL = (
    f"INSERT INTO tagged_items ({', '.join(_ITEM_COLUMNS)}) "  # noqa: S608
    f"VALUES ({', '.join('?' for _ in _ITEM_COLUMNS)})"
)


def create_tagged_item(
    conn: sqlite3.Connection,
    *,
    commit: bool = True,
    **item: Any,
) -> dict[str, Any]:
    """Insert a tagged item and return it.

    Required keys: category, category_code, location_code, year, serial,
    barcode_value.  Raises IntegrityError if the serial is already held by a
    live item in the same category/year.
    """
    cur = conn.execute(_INSERT_ITEM_SQL, _item_params(item))
    if commit:
        conn.commit()
    row = conn.execute("SELECT * FROM tagged_items WHERE id = ?", (cur.lastrowid,)).fetchone()
    return dict(row)


def create_tagged_items_bulk(
    conn: sqlite3.Connection,
    items: list[dict[str, Any]],
    *,
    commit: bool = True,
) -> list[dict[str, Any]]:
    """Insert multiple tagged items and return them in insertion order."""
    ids: list[int] = []
    for item in items:
        cur = conn.execute(_INSERT_ITEM_SQL, _item_params(item))
        ids.append(cur.lastrowid)
    if commit:
        conn.commit()
    return [get_tagged_item(conn, item_id) for item_id in ids]  # type: ignore[misc]


def get_tagged_item(conn: sqlite3.Connection, item_id: int) -> dict[str, Any] | None:
    """Return a single tagged item by ID."""
    return _row_to_dict(
        conn.execute("SELECT * FROM tagged_items WHERE id = ?", (item_id,)).fetchone()
    )


def get_tagged_item_by_barcode(
    conn: sqlite3.Connection, barcode_value: str
) -> dict[str, Any] | None:
    """Return a single tagged item by its barcode value."""
    return _row_to_dict(
        conn.execute(
            "SELECT * FROM tagged_items WHERE barcode_value = ?", (barcode_value,)
        ).fetchone()
    )


def list_tagged_items(
    conn: sqlite3.Connection,
    category_code: str | None = None,
    year: int | None = None,
    status: str | None = None,
    location_code: str | None = None,
) -> list[dict[str, Any]]:
    """Return tagged items with optional filters, ordered by stream and serial."""
    clauses: list[str] = []
    params: list[Any] = []
    if category_code is not None:
        clauses.append("category_code = ?")
        params.append(category_code)
    if year is not None:
        clauses.append("year = ?")
        params.append(year)
    if status is not None:
        clauses.append("status = ?")
        params.append(status)
    if location_code is not None:
        clauses.append("location_code = ?")
        params.append(location_code)

    sql = "SELECT * FROM tagged_items"
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY category_code, year, serial"
    return _rows_to_list(conn.execute(sql, params).fetchall())


def count_tagged_items(conn: sqlite3.Connection, category_code: str, year: int) -> int:
    """Return how many live items exist in a category/year stream."""
    row = conn.execute(
        "SELECT COUNT(*) AS n FROM tagged_items WHERE category_code = ? AND year = ?",
        (category_code, year),
    ).fetchone()
    return int(row["n"])


def get_used_serials(conn: sqlite3.Connection, category_code: str, year: int) -> set[int]:
    """Return the serials held by live items in a category/year stream."""
    rows = conn.execute(
        "SELECT serial FROM tagged_items WHERE category_code = ? AND year = ?",
        (category_code, year),
    ).fetchall()
    return {int(r["serial"]) for r in rows}


def update_tagged_item(
    conn: sqlite3.Connection,
    item_id: int,
    **fields: Any,
) -> dict[str, Any] | None:
    """Update a tagged item's editable fields and return the updated row."""
    sql, params = _build_update("tagged_items", item_id, fields, _ITEM_UPDATE_ALLOWED)
    conn.execute(sql, params)
    conn.commit()
    return get_tagged_item(conn, item_id)


def update_tagged_item_status(
    conn: sqlite3.Connection,
    item_id: int,
    status: str,
) -> dict[str, Any] | None:
    """Set an item's approval status and return the updated row."""
    if status not in VALID_ITEM_STATUSES:
        msg = f"Invalid status: {status}"
        raise ValueError(msg)
    conn.execute("UPDATE tagged_items SET status = ? WHERE id = ?", (status, item_id))
    conn.commit()
    return get_tagged_item(conn, item_id)


def mark_items_printed(conn: sqlite3.Connection, item_ids: Iterable[int]) -> int:
    """Flag items as printed. Returns the number of rows updated."""
    ids = list(item_ids)
    if not ids:
        return 0
    placeholders = ", ".join("?" for _ in ids)
    cur = conn.execute(
        f"UPDATE tagged_items SET printed = 1, printed_at = ? WHERE id IN ({placeholders})",  # noqa: S608
        [_now(), *ids],
    )
    conn.commit()
    return cur.rowcount


def delete_tagged_item(conn: sqlite3.Connection, item_id: int) -> bool:
    """Delete a tagged item by ID. Returns True if a row was deleted."""
    cur = conn.execute("DELETE FROM tagged_items WHERE id = ?", (item_id,))
    conn.commit()
    return cur.rowcount > 0


# ---------------------------------------------------------------------------
# Serial reservation markers
# ---------------------------------------------------------------------------


def add_reservations(
    conn: sqlite3.Connection,
    counter_key: str,
    serials: Iterable[int],
    expires_at: str,
    *,
    commit: bool = True,
) -> None:
    """Record provisional holds on handed-out serials until *expires_at*."""
    reserved_at = _now()
    conn.executemany(
        """
        INSERT OR REPLACE INTO serial_reservations
            (counter_key, serial, reserved_at, expires_at)
        VALUES (?, ?, ?, ?)
        """,
        [(counter_key, s, reserved_at, expires_at) for s in serials],
    )
    if commit:
        conn.commit()


def get_reserved_serials(
    conn: sqlite3.Connection,
    counter_key: str,
    now: str | None = None,
) -> set[int]:
    """Return serials held by unexpired reservation markers for *counter_key*."""
    rows = conn.execute(
        "SELECT serial FROM serial_reservations WHERE counter_key = ? AND expires_at > ?",
        (counter_key, now or _now()),
    ).fetchall()
    return {int(r["serial"]) for r in rows}


def list_reservations(conn: sqlite3.Connection, counter_key: str) -> list[dict[str, Any]]:
    """Return all reservation markers for *counter_key* ordered by serial."""
    return _rows_to_list(
        conn.execute(
            "SELECT * FROM serial_reservations WHERE counter_key = ? ORDER BY serial",
            (counter_key,),
        ).fetchall()
    )


def delete_reservations(
    conn: sqlite3.Connection,
    counter_key: str,
    serials: Iterable[int],
    *,
    commit: bool = True,
) -> int:
    """Remove markers for *serials*. Returns the number removed."""
    removed = 0
    for serial in serials:
        cur = conn.execute(
            "DELETE FROM serial_reservations WHERE counter_key = ? AND serial = ?",
            (counter_key, serial),
        )
        removed += cur.rowcount
    if commit:
        conn.commit()
    return removed


def purge_expired_reservations(
    conn: sqlite3.Connection,
    now: str | None = None,
    *,
    commit: bool = True,
) -> int:
    """Delete markers whose hold has lapsed. Returns the number removed."""
    cur = conn.execute(
        "DELETE FROM serial_reservations WHERE expires_at <= ?", (now or _now(),)
    )
    if commit:
        conn.commit()
    return cur.rowcount
