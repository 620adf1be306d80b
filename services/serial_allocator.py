"""Category-wise serial number reservation with gap filling.

Every (category, year) stream has a counter keyed ``BRAND-CAT-YY`` holding
the highest serial ever issued by extension.  A reservation first reuses
gaps (serials at or below the counter that no live tagged item holds,
usually freed by deleting an item) and only then extends the counter.

The counter read, the gap scan, the counter write and the provisional
reservation markers for every serial handed out all happen inside one
``BEGIN IMMEDIATE`` transaction, so two concurrent reservations on the same
key can neither extend from the same base value nor pick the same gap.
A serial stays held until its batch is saved, released, or the hold
expires.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel

import database.models as models
from config import settings
from database.connection import get_db, write_transaction
from utils.barcode import CounterKey, InvalidCounterKeyError, parse_counter_key

logger = logging.getLogger(__name__)

__all__ = [
    "Counter",
    "GapScanError",
    "InvalidCounterKeyError",
    "Reservation",
    "find_gaps",
    "get_counter_status",
    "peek_serials",
    "release_reservation",
    "reserve_serials",
]


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class Counter(BaseModel):
    """Persisted state of one serial stream."""

    key: str
    value: int
    updated_at: str | None = None


class Reservation(BaseModel):
    """Serials handed out by a single reservation, ascending."""

    counter_key: str
    start: int | None = None
    end: int | None = None
    serials: list[int] = []
    gaps_used: int = 0
    counter_value: int | None = None


class GapScanError(RuntimeError):
    """Raised when the live-item lookup for a stream cannot be completed."""


class _Plan(BaseModel):
    counter: Counter | None
    from_gaps: list[int]
    extended: list[int]

    @property
    def base_value(self) -> int:
        return self.counter.value if self.counter is not None else 0

    @property
    def new_value(self) -> int:
        return self.base_value + len(self.extended)

    def to_reservation(self, counter_key: str) -> Reservation:
        serials = sorted(self.from_gaps + self.extended)
        return Reservation(
            counter_key=counter_key,
            start=serials[0] if serials else None,
            end=serials[-1] if serials else None,
            serials=serials,
            gaps_used=len(self.from_gaps),
            counter_value=self.new_value,
        )


# ---------------------------------------------------------------------------
# Gap scan
# ---------------------------------------------------------------------------


def find_gaps(used: Iterable[int], upper: int) -> list[int]:
    """Return the integers in ``[1, upper]`` missing from *used*, ascending."""
    taken = set(used)
    return [n for n in range(1, upper + 1) if n not in taken]


def _load_counter(conn: sqlite3.Connection, key: str) -> Counter | None:
    row = models.get_counter(conn, key)
    if row is None:
        return None
    return Counter(key=row["key"], value=row["value"], updated_at=row["updated_at"])


def _scan_gaps(
    conn: sqlite3.Connection,
    key: str,
    parsed: CounterKey,
    upper: int,
    now: str,
) -> list[int]:
    if upper == 0:
        return []
    try:
        used = models.get_used_serials(conn, parsed.category_code, parsed.year)
        used |= models.get_reserved_serials(conn, key, now)
    except sqlite3.Error as exc:
        if settings.gap_scan_fallback:
            logger.warning(
                "Gap scan for %s failed (%s); falling back to counter extension only",
                key,
                exc,
            )
            return []
        msg = f"Could not scan existing items for {key}"
        raise GapScanError(msg) from exc
    return find_gaps(used, upper)


def _plan(
    conn: sqlite3.Connection,
    key: str,
    parsed: CounterKey,
    count: int,
    now: str,
) -> _Plan:
    counter = _load_counter(conn, key)
    base = counter.value if counter is not None else 0
    from_gaps = _scan_gaps(conn, key, parsed, base, now)[:count]
    remainder = count - len(from_gaps)
    extended = list(range(base + 1, base + remainder + 1))
    return _Plan(counter=counter, from_gaps=from_gaps, extended=extended)


# ---------------------------------------------------------------------------
# Public operations
# ---------------------------------------------------------------------------


def reserve_serials(
    counter_key: str,
    count: int,
    conn: sqlite3.Connection | None = None,
) -> Reservation:
    """Atomically reserve *count* serials for *counter_key*.

    Gaps are filled smallest first; the counter is extended for the rest.
    Returns an empty reservation when *count* < 1 without touching the
    database.  Raises InvalidCounterKeyError for a malformed key,
    GapScanError when the live-item lookup fails (unless the gap-scan
    fallback is enabled) and sqlite3.OperationalError when the database
    stays locked past the busy timeout.  Nothing is committed on failure.
    """
    parsed = parse_counter_key(counter_key)
    if count < 1:
        return Reservation(counter_key=counter_key)

    owns_conn = conn is None
    if owns_conn:
        conn = get_db(settings.database_path)
    try:
        reservation = _reserve_in_transaction(conn, counter_key, parsed, count)
    finally:
        if owns_conn:
            conn.close()

    logger.info(
        "Reserved %d serial(s) for %s: %s-%s (%d from gaps, counter now %d)",
        count,
        counter_key,
        reservation.start,
        reservation.end,
        reservation.gaps_used,
        reservation.counter_value,
    )
    return reservation


def _reserve_in_transaction(
    conn: sqlite3.Connection,
    key: str,
    parsed: CounterKey,
    count: int,
) -> Reservation:
    with write_transaction(conn):
        moment = datetime.now(UTC)
        now = models.format_timestamp(moment)
        models.purge_expired_reservations(conn, now, commit=False)

        plan = _plan(conn, key, parsed, count, now)

        if plan.extended:
            if plan.counter is None:
                models.insert_counter(conn, key, plan.new_value, commit=False)
            else:
                models.update_counter_value(conn, key, plan.new_value, commit=False)

        # Every serial handed out is held, including fresh ones above the
        # old counter value; otherwise the next scan would see them as gaps.
        held = plan.from_gaps + plan.extended
        expires = moment + timedelta(seconds=settings.reservation_ttl_seconds)
        models.add_reservations(
            conn,
            key,
            held,
            models.format_timestamp(expires),
            commit=False,
        )
    return plan.to_reservation(key)


def peek_serials(
    counter_key: str,
    count: int,
    conn: sqlite3.Connection | None = None,
) -> Reservation:
    """Preview what ``reserve_serials`` would hand out right now.

    Nothing is written: the counter is not advanced and no gap is held.
    """
    parsed = parse_counter_key(counter_key)
    if count < 1:
        return Reservation(counter_key=counter_key)

    owns_conn = conn is None
    if owns_conn:
        conn = get_db(settings.database_path)
    try:
        now = models.format_timestamp(datetime.now(UTC))
        plan = _plan(conn, counter_key, parsed, count, now)
    finally:
        if owns_conn:
            conn.close()
    return plan.to_reservation(counter_key)


def release_reservation(
    counter_key: str,
    serials: Iterable[int],
    conn: sqlite3.Connection | None = None,
) -> int:
    """Drop the holds on serials from a discarded batch.

    Released serials become gaps for the next reservation; the counter is
    never rolled back.  Returns the number of holds removed.
    """
    parse_counter_key(counter_key)
    owns_conn = conn is None
    if owns_conn:
        conn = get_db(settings.database_path)
    try:
        removed = models.delete_reservations(conn, counter_key, list(serials))
    finally:
        if owns_conn:
            conn.close()
    if removed:
        logger.info("Released %d held serial(s) for %s", removed, counter_key)
    return removed


def get_counter_status(
    counter_key: str,
    conn: sqlite3.Connection | None = None,
) -> dict[str, Any]:
    """Summarise a stream: counter value, live items, gaps and active holds."""
    parsed = parse_counter_key(counter_key)
    owns_conn = conn is None
    if owns_conn:
        conn = get_db(settings.database_path)
    try:
        now = models.format_timestamp(datetime.now(UTC))
        counter = _load_counter(conn, counter_key)
        value = counter.value if counter is not None else 0
        used = models.get_used_serials(conn, parsed.category_code, parsed.year)
        holds = [
            {"serial": h["serial"], "expires_at": h["expires_at"]}
            for h in models.list_reservations(conn, counter_key)
            if h["expires_at"] > now
        ]
    finally:
        if owns_conn:
            conn.close()
    reserved = {h["serial"] for h in holds}
    return {
        "counter_key": counter_key,
        "brand": parsed.brand,
        "category_code": parsed.category_code,
        "year": parsed.year,
        "exists": counter is not None,
        "value": value,
        "updated_at": counter.updated_at if counter is not None else None,
        "live_items": len(used),
        "gaps": find_gaps(used | reserved, value),
        "reserved": sorted(reserved),
        "holds": holds,
    }
