"""Tag batch generation and saving.

Consolidates the generate-batch and save-batch logic shared between the API
routes and the CLI commands.  Generating a batch reserves serials and builds
barcode values; saving turns the batch rows into tagged items and clears
the holds on its serials.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import UTC, date, datetime
from typing import Any

import database.models as models
from config import settings
from database.connection import write_transaction
from services.serial_allocator import reserve_serials
from utils.barcode import (
    check_year,
    make_barcode_value,
    make_counter_key,
    parse_counter_key,
)

logger = logging.getLogger(__name__)

UNKNOWN_CATEGORY_CODE = "UNK"
UNKNOWN_LOCATION_CODE = "LOC"


def resolve_codes(
    conn: sqlite3.Connection,
    category: str,
    location: str,
) -> tuple[str, str]:
    """Return (category_code, location_code), falling back to UNK/LOC."""
    category_code = models.get_category_code(conn, category) or UNKNOWN_CATEGORY_CODE
    location_code = models.get_location_code(conn, location) or UNKNOWN_LOCATION_CODE
    return category_code, location_code


def generate_batch(
    conn: sqlite3.Connection,
    category: str,
    location: str,
    quantity: int,
    year: int | None = None,
) -> dict[str, Any]:
    """Reserve *quantity* serials and build one barcode row per serial.

    Returns dict with keys: counter_key, category, category_code, location,
    location_code, year, reservation, rows.  Raises ValueError for a
    quantity below 1 or a year outside 2000-2099 before anything is
    reserved; any reservation failure aborts the whole batch.
    """
    if quantity < 1:
        msg = "quantity must be at least 1"
        raise ValueError(msg)

    year = check_year(year or date.today().year)
    category_code, location_code = resolve_codes(conn, category, location)
    counter_key = make_counter_key(settings.brand, category_code, year)

    reservation = reserve_serials(counter_key, quantity, conn=conn)

    rows = [
        {
            "serial": serial,
            "barcode_value": make_barcode_value(
                settings.brand,
                category_code,
                location_code,
                year,
                serial,
                settings.serial_pad,
            ),
        }
        for serial in reservation.serials
    ]
    return {
        "counter_key": counter_key,
        "category": category,
        "category_code": category_code,
        "location": location,
        "location_code": location_code,
        "year": year,
        "reservation": reservation.model_dump(),
        "rows": rows,
    }


class StaleBatchError(Exception):
    """Raised when a batch row's serial is no longer held for that batch.

    The hold was released, expired, or already consumed by an earlier save;
    the batch must be regenerated.
    """

    def __init__(self, counter_key: str, serials: list[int]) -> None:
        self.counter_key = counter_key
        self.serials = serials
        super().__init__(
            f"Serial(s) {', '.join(str(s) for s in serials)} of {counter_key} "
            "are no longer reserved; generate a new batch"
        )


def _check_rows(
    conn: sqlite3.Connection,
    batch: dict[str, Any],
    rows: list[dict[str, Any]],
    now: str,
) -> None:
    """Validate batch rows against the counter, the holds and the barcode format.

    Must run inside the save transaction so the holds cannot change
    between the check and the insert.
    """
    counter_key = batch["counter_key"]
    counter = models.get_counter(conn, counter_key)
    issued_up_to = counter["value"] if counter is not None else 0
    held = models.get_reserved_serials(conn, counter_key, now)

    unheld = []
    for row in rows:
        serial = row["serial"]
        if not isinstance(serial, int) or isinstance(serial, bool):
            msg = f"serial must be an integer (got {serial!r})"
            raise ValueError(msg)
        if not 1 <= serial <= issued_up_to:
            msg = f"Serial {serial} was never issued for {counter_key}"
            raise ValueError(msg)
        expected = make_barcode_value(
            settings.brand,
            batch["category_code"],
            batch["location_code"],
            batch["year"],
            serial,
            settings.serial_pad,
        )
        if row.get("barcode_value") != expected:
            msg = f"Barcode for serial {serial} must be {expected}"
            raise ValueError(msg)
        if serial not in held:
            unheld.append(serial)
    if unheld:
        raise StaleBatchError(counter_key, unheld)


def save_batch(
    conn: sqlite3.Connection,
    batch: dict[str, Any],
    *,
    subcategory: str | None = None,
    cost_price_type: str | None = None,
    remark: str | None = None,
    weight: str = "",
    purity: str = "Gold Forming",
    price: float = 0,
) -> list[dict[str, Any]]:
    """Persist a generated batch as pending tagged items.

    Every row must carry a serial this batch still holds and the barcode
    value built for it; otherwise nothing is saved (ValueError for a
    forged row, StaleBatchError for a released or expired hold).  All rows
    are inserted in one transaction under the write lock, and the holds
    on the saved serials are released in that same transaction.  A serial
    already held by a live item rolls back the whole save with
    sqlite3.IntegrityError.
    """
    rows = batch.get("rows") or []
    if not rows:
        msg = "Nothing to save"
        raise ValueError(msg)

    counter_key = batch["counter_key"]
    parsed = parse_counter_key(counter_key)
    if parsed.category_code != batch["category_code"] or parsed.year != batch["year"]:
        msg = f"Batch does not belong to counter {counter_key}"
        raise ValueError(msg)

    item_dicts = [
        {
            "label": row["barcode_value"],
            "category": batch["category"],
            "subcategory": subcategory,
            "category_code": batch["category_code"],
            "location": batch.get("location"),
            "location_code": batch["location_code"],
            "year": batch["year"],
            "serial": row["serial"],
            "barcode_value": row["barcode_value"],
            "weight": weight,
            "purity": purity,
            "price": price,
            "cost_price_type": cost_price_type,
            "remark": remark,
        }
        for row in rows
    ]

    with write_transaction(conn):
        now = models.format_timestamp(datetime.now(UTC))
        _check_rows(conn, batch, rows, now)
        items = models.create_tagged_items_bulk(conn, item_dicts, commit=False)
        models.delete_reservations(
            conn, counter_key, [row["serial"] for row in rows], commit=False
        )

    logger.info("Saved %d tagged item(s) for %s", len(items), counter_key)
    return items


def delete_item(conn: sqlite3.Connection, item_id: int) -> dict[str, Any] | None:
    """Delete a tagged item, freeing its serial for reuse.

    Returns the deleted item, or None if it did not exist.
    """
    item = models.get_tagged_item(conn, item_id)
    if item is None:
        return None
    models.delete_tagged_item(conn, item_id)
    logger.info(
        "Deleted item %s; serial %d of %s/%d is now a gap",
        item["barcode_value"],
        item["serial"],
        item["category_code"],
        item["year"],
    )
    return item
