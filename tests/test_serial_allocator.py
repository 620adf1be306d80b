"""Tests for services.serial_allocator."""

from __future__ import annotations

import random
import sqlite3
import threading
from pathlib import Path

import pytest

from database.connection import get_db, init_database
from database.models import (
    create_tagged_item,
    get_counter,
    insert_counter,
    list_reservations,
)
from services.serial_allocator import (
    GapScanError,
    InvalidCounterKeyError,
    find_gaps,
    get_counter_status,
    peek_serials,
    release_reservation,
    reserve_serials,
)
from tests.conftest import RING_KEY, _NoCloseConnection
from utils.barcode import make_barcode_value


def _counter_value(db: sqlite3.Connection, key: str = RING_KEY) -> int | None:
    row = get_counter(db, key)
    return None if row is None else row["value"]


# =========================================================================
# find_gaps
# =========================================================================


class TestFindGaps:
    def test_no_gaps(self) -> None:
        assert find_gaps({1, 2, 3}, 3) == []

    def test_gaps_ascending(self) -> None:
        assert find_gaps({9, 1, 4}, 6) == [2, 3, 5, 6]

    def test_zero_upper(self) -> None:
        assert find_gaps(set(), 0) == []

    def test_ignores_values_above_upper(self) -> None:
        assert find_gaps({1, 50}, 3) == [2, 3]


# =========================================================================
# reserve_serials
# =========================================================================


class TestReserveSerials:
    def test_cold_start(self, db: sqlite3.Connection) -> None:
        result = reserve_serials(RING_KEY, 10, conn=db)
        assert result.serials == list(range(1, 11))
        assert result.start == 1
        assert result.end == 10
        assert result.gaps_used == 0
        assert _counter_value(db) == 10

    def test_sequential_batches_extend(self, db: sqlite3.Connection) -> None:
        first = reserve_serials(RING_KEY, 3, conn=db)
        second = reserve_serials(RING_KEY, 2, conn=db)
        assert first.serials == [1, 2, 3]
        assert second.serials == [4, 5]
        assert _counter_value(db) == 5

    def test_gap_fill_preferred(self, db: sqlite3.Connection, ring_stream_with_gaps: int) -> None:
        result = reserve_serials(RING_KEY, 2, conn=db)
        assert result.serials == [3, 5]
        assert result.start == 3
        assert result.end == 5
        assert result.gaps_used == 2
        assert _counter_value(db) == ring_stream_with_gaps

    def test_overflow_beyond_gaps(self, db: sqlite3.Connection, ring_stream_with_gaps: int) -> None:
        v = ring_stream_with_gaps
        result = reserve_serials(RING_KEY, 5, conn=db)
        assert result.serials == [3, 5, 7, v + 1, v + 2]
        assert result.start == 3
        assert result.end == v + 2
        assert result.counter_value == v + 2
        assert _counter_value(db) == v + 2

    def test_gap_serials_are_held(self, db: sqlite3.Connection, ring_stream_with_gaps: int) -> None:
        first = reserve_serials(RING_KEY, 2, conn=db)
        second = reserve_serials(RING_KEY, 2, conn=db)
        assert first.serials == [3, 5]
        assert second.serials == [7, 11]
        held = [r["serial"] for r in list_reservations(db, RING_KEY)]
        assert held == [3, 5, 7, 11]

    def test_expired_holds_are_reused(
        self,
        db: sqlite3.Connection,
        ring_stream_with_gaps: int,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr("services.serial_allocator.settings.reservation_ttl_seconds", 0)
        first = reserve_serials(RING_KEY, 2, conn=db)
        second = reserve_serials(RING_KEY, 2, conn=db)
        assert first.serials == second.serials == [3, 5]

    def test_counter_extended_serials_are_held(self, db: sqlite3.Connection) -> None:
        reserve_serials(RING_KEY, 4, conn=db)
        held = [r["serial"] for r in list_reservations(db, RING_KEY)]
        assert held == [1, 2, 3, 4]

    def test_unsaved_extension_is_not_reissued(self, db: sqlite3.Connection) -> None:
        first = reserve_serials(RING_KEY, 3, conn=db)
        second = reserve_serials(RING_KEY, 3, conn=db)
        assert set(first.serials).isdisjoint(second.serials)
        assert second.gaps_used == 0

    def test_lapsed_extension_returns_as_gaps(
        self, db: sqlite3.Connection, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr("services.serial_allocator.settings.reservation_ttl_seconds", 0)
        reserve_serials(RING_KEY, 3, conn=db)
        result = reserve_serials(RING_KEY, 2, conn=db)
        assert result.serials == [1, 2]
        assert result.gaps_used == 2
        assert _counter_value(db) == 3

    def test_deleted_item_becomes_gap(self, db: sqlite3.Connection, add_items) -> None:
        insert_counter(db, RING_KEY, 4)
        items = add_items([1, 2, 3, 4])
        db.execute("DELETE FROM tagged_items WHERE id = ?", (items[1]["id"],))
        db.commit()
        result = reserve_serials(RING_KEY, 1, conn=db)
        assert result.serials == [2]
        assert _counter_value(db) == 4

    def test_zero_count_is_noop(self, db: sqlite3.Connection) -> None:
        result = reserve_serials(RING_KEY, 0, conn=db)
        assert result.serials == []
        assert result.start is None
        assert result.end is None
        assert get_counter(db, RING_KEY) is None

    def test_negative_count_is_noop(self, db: sqlite3.Connection) -> None:
        assert reserve_serials(RING_KEY, -3, conn=db).serials == []
        assert get_counter(db, RING_KEY) is None

    @pytest.mark.parametrize(
        "key",
        ["", "MGRNG25", "MG-RNG", "MG--25", "MG-RNG-2025", "MG-RNG-X5", "MG-RNG-25-01"],
    )
    def test_malformed_key_fails_fast(self, db: sqlite3.Connection, key: str) -> None:
        with pytest.raises(InvalidCounterKeyError):
            reserve_serials(key, 1, conn=db)
        assert db.execute("SELECT COUNT(*) FROM counters").fetchone()[0] == 0

    def test_malformed_key_is_value_error(self, db: sqlite3.Connection) -> None:
        with pytest.raises(ValueError, match="Malformed counter key"):
            reserve_serials("bogus", 1, conn=db)

    def test_keys_do_not_interfere(self, db: sqlite3.Connection, add_items) -> None:
        insert_counter(db, "MG-NCK-25", 5)
        add_items([1, 2, 4, 5], category_code="NCK")
        result = reserve_serials(RING_KEY, 2, conn=db)
        assert result.serials == [1, 2]
        assert _counter_value(db, "MG-NCK-25") == 5
        assert list_reservations(db, "MG-NCK-25") == []

    def test_other_year_items_ignored(self, db: sqlite3.Connection, add_items) -> None:
        insert_counter(db, RING_KEY, 3)
        add_items([1, 2, 3], year=2024)
        result = reserve_serials(RING_KEY, 3, conn=db)
        assert result.serials == [1, 2, 3]
        assert result.gaps_used == 3

    def test_result_invariants(self, db: sqlite3.Connection, ring_stream_with_gaps: int) -> None:
        for count in (1, 4, 7):
            result = reserve_serials(RING_KEY, count, conn=db)
            assert len(result.serials) == count
            assert result.start == min(result.serials)
            assert result.end == max(result.serials)
            assert all(a < b for a, b in zip(result.serials, result.serials[1:]))

    def test_uniqueness_across_many_reservations(self, db: sqlite3.Connection) -> None:
        rng = random.Random(1234)
        issued: list[int] = []
        for _ in range(30):
            issued.extend(reserve_serials(RING_KEY, rng.randint(1, 9), conn=db).serials)
        assert len(issued) == len(set(issued))
        assert _counter_value(db) == len(issued)

    def test_opens_own_connection(
        self, db: sqlite3.Connection, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        wrapper = _NoCloseConnection(db)
        monkeypatch.setattr("services.serial_allocator.get_db", lambda _path: wrapper)
        assert reserve_serials(RING_KEY, 2).serials == [1, 2]


# =========================================================================
# Gap scan failure
# =========================================================================


def _broken_scan(*_args, **_kwargs):
    raise sqlite3.OperationalError("disk I/O error")


class TestGapScanFailure:
    def test_aborts_without_commit(
        self,
        db: sqlite3.Connection,
        ring_stream_with_gaps: int,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr("services.serial_allocator.models.get_used_serials", _broken_scan)
        with pytest.raises(GapScanError):
            reserve_serials(RING_KEY, 5, conn=db)
        assert _counter_value(db) == ring_stream_with_gaps
        assert list_reservations(db, RING_KEY) == []
        assert not db.in_transaction

    def test_fallback_extends_counter(
        self,
        db: sqlite3.Connection,
        ring_stream_with_gaps: int,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr("services.serial_allocator.models.get_used_serials", _broken_scan)
        monkeypatch.setattr("services.serial_allocator.settings.gap_scan_fallback", True)
        result = reserve_serials(RING_KEY, 2, conn=db)
        assert result.serials == [11, 12]
        assert result.gaps_used == 0
        assert _counter_value(db) == 12

    def test_cold_key_needs_no_scan(
        self, db: sqlite3.Connection, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr("services.serial_allocator.models.get_used_serials", _broken_scan)
        assert reserve_serials(RING_KEY, 2, conn=db).serials == [1, 2]


# =========================================================================
# Concurrency
# =========================================================================


def _run_concurrently(db_path: str, key: str, workers: int) -> list[list[int]]:
    barrier = threading.Barrier(workers)
    results: list[list[int]] = []
    errors: list[BaseException] = []
    lock = threading.Lock()

    def worker() -> None:
        conn = get_db(db_path, timeout=30)
        try:
            barrier.wait()
            serials = reserve_serials(key, 1, conn=conn).serials
            with lock:
                results.append(serials)
        except BaseException as exc:  # noqa: BLE001
            with lock:
                errors.append(exc)
        finally:
            conn.close()

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []
    return results


class TestConcurrentReservations:
    def test_no_double_issue_from_counter(self, tmp_path: Path) -> None:
        db_path = str(tmp_path / "tags.db")
        init_database(db_path)
        workers = 16
        results = _run_concurrently(db_path, RING_KEY, workers)
        issued = sorted(s for batch in results for s in batch)
        assert issued == list(range(1, workers + 1))

        conn = get_db(db_path)
        try:
            assert _counter_value(conn) == workers
        finally:
            conn.close()

    def test_gap_never_handed_out_twice(self, tmp_path: Path) -> None:
        db_path = str(tmp_path / "tags.db")
        init_database(db_path)
        conn = get_db(db_path)
        try:
            insert_counter(conn, RING_KEY, 10)
            for serial in (s for s in range(1, 11) if s not in {3, 5, 7}):
                create_tagged_item(
                    conn,
                    category="Ring",
                    category_code="RNG",
                    location_code="MAL",
                    year=2025,
                    serial=serial,
                    barcode_value=make_barcode_value("MG", "RNG", "MAL", 2025, serial),
                )
        finally:
            conn.close()

        workers = 8
        results = _run_concurrently(db_path, RING_KEY, workers)
        issued = sorted(s for batch in results for s in batch)
        assert issued == [3, 5, 7, 11, 12, 13, 14, 15]


class TestLockedStore:
    def test_busy_timeout_raises_and_commits_nothing(self, tmp_path: Path) -> None:
        db_path = str(tmp_path / "tags.db")
        init_database(db_path)
        setup = get_db(db_path)
        try:
            insert_counter(setup, RING_KEY, 2)
        finally:
            setup.close()

        waiter = get_db(db_path, timeout=0.1)
        holder = get_db(db_path)
        holder.isolation_level = None
        holder.execute("BEGIN IMMEDIATE")
        try:
            with pytest.raises(sqlite3.OperationalError, match="locked"):
                reserve_serials(RING_KEY, 3, conn=waiter)
            assert not waiter.in_transaction
        finally:
            holder.execute("ROLLBACK")
            holder.close()

        try:
            assert _counter_value(waiter) == 2
            assert list_reservations(waiter, RING_KEY) == []
            assert reserve_serials(RING_KEY, 1, conn=waiter).serials == [3]
        finally:
            waiter.close()


# =========================================================================
# peek_serials / release_reservation / get_counter_status
# =========================================================================


class TestPeekSerials:
    def test_preview_does_not_write(self, db: sqlite3.Connection, ring_stream_with_gaps: int) -> None:
        preview = peek_serials(RING_KEY, 4, conn=db)
        assert preview.serials == [3, 5, 7, 11]
        assert _counter_value(db) == ring_stream_with_gaps
        assert list_reservations(db, RING_KEY) == []

    def test_preview_matches_reservation(self, db: sqlite3.Connection, ring_stream_with_gaps: int) -> None:
        preview = peek_serials(RING_KEY, 5, conn=db)
        assert reserve_serials(RING_KEY, 5, conn=db).serials == preview.serials

    def test_preview_skips_held_gaps(self, db: sqlite3.Connection, ring_stream_with_gaps: int) -> None:
        reserve_serials(RING_KEY, 1, conn=db)
        assert peek_serials(RING_KEY, 2, conn=db).serials == [5, 7]

    def test_cold_key(self, db: sqlite3.Connection) -> None:
        assert peek_serials(RING_KEY, 3, conn=db).serials == [1, 2, 3]
        assert get_counter(db, RING_KEY) is None


class TestReleaseReservation:
    def test_released_gap_is_reusable(self, db: sqlite3.Connection, ring_stream_with_gaps: int) -> None:
        held = reserve_serials(RING_KEY, 2, conn=db)
        assert release_reservation(RING_KEY, held.serials, conn=db) == 2
        assert reserve_serials(RING_KEY, 2, conn=db).serials == [3, 5]

    def test_released_extended_serials_become_gaps(self, db: sqlite3.Connection) -> None:
        held = reserve_serials(RING_KEY, 3, conn=db)
        assert release_reservation(RING_KEY, held.serials, conn=db) == 3
        assert _counter_value(db) == 3
        again = reserve_serials(RING_KEY, 2, conn=db)
        assert again.serials == [1, 2]
        assert _counter_value(db) == 3

    def test_release_unknown_serials_is_noop(self, db: sqlite3.Connection) -> None:
        assert release_reservation(RING_KEY, [40, 41], conn=db) == 0

    def test_rejects_malformed_key(self, db: sqlite3.Connection) -> None:
        with pytest.raises(InvalidCounterKeyError):
            release_reservation("nope", [1], conn=db)


class TestGetCounterStatus:
    def test_missing_counter(self, db: sqlite3.Connection) -> None:
        status = get_counter_status(RING_KEY, conn=db)
        assert status["exists"] is False
        assert status["value"] == 0
        assert status["gaps"] == []
        assert status["year"] == 2025
        assert status["category_code"] == "RNG"

    def test_reports_gaps_and_holds(self, db: sqlite3.Connection, ring_stream_with_gaps: int) -> None:
        reserve_serials(RING_KEY, 1, conn=db)
        status = get_counter_status(RING_KEY, conn=db)
        assert status["exists"] is True
        assert status["value"] == ring_stream_with_gaps
        assert status["live_items"] == 7
        assert status["gaps"] == [5, 7]
        assert status["reserved"] == [3]
        assert [h["serial"] for h in status["holds"]] == [3]
        assert status["holds"][0]["expires_at"]

    def test_lapsed_holds_not_reported(
        self,
        db: sqlite3.Connection,
        ring_stream_with_gaps: int,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr("services.serial_allocator.settings.reservation_ttl_seconds", 0)
        reserve_serials(RING_KEY, 1, conn=db)
        status = get_counter_status(RING_KEY, conn=db)
        assert status["holds"] == []
        assert status["gaps"] == [3, 5, 7]
