"""Barcode value and counter key helpers.

Barcode format: BRAND-CAT-LOC-YY-NNNNNN (e.g. ``MG-RNG-MAL-25-000123``).
Counter key format: BRAND-CAT-YY (e.g. ``MG-RNG-25``), one per serial stream.
"""

from __future__ import annotations

import re
from typing import NamedTuple

# Keys carry only YY, read back as 2000 + YY.
MIN_YEAR = 2000
MAX_YEAR = 2099


class InvalidCounterKeyError(ValueError):
    """Raised when a counter key cannot be split into brand/category/year."""


class CounterKey(NamedTuple):
    brand: str
    category_code: str
    year: int


def pad(n: int, size: int = 6) -> str:
    """Zero-pad *n* to *size* digits."""
    return str(n).zfill(size)


def check_year(year: int) -> int:
    """Return *year* if a counter key can represent it, else raise ValueError."""
    if not MIN_YEAR <= year <= MAX_YEAR:
        msg = f"year must be between {MIN_YEAR} and {MAX_YEAR} (got {year})"
        raise ValueError(msg)
    return year


def make_barcode_value(
    brand: str,
    category_code: str,
    location_code: str,
    year: int,
    serial: int,
    serial_pad: int = 6,
) -> str:
    """Build the printed barcode value for one tagged item.

    Raises ValueError for a negative serial.
    """
    if serial < 0:
        msg = f"serial must not be negative (got {serial})"
        raise ValueError(msg)
    yy = str(year)[-2:]
    return f"{brand}-{category_code}-{location_code}-{yy}-{pad(serial, serial_pad)}"


def make_counter_key(brand: str, category_code: str, year: int) -> str:
    """Build the counter key for a category/year stream.

    Raises ValueError for a year outside 2000-2099.
    """
    check_year(year)
    return f"{brand}-{category_code}-{year % 100:02d}"


def parse_counter_key(key: str) -> CounterKey:
    """Split *key* into brand, category code and four-digit year.

    The year segment is two ASCII digits and is read as ``2000 + YY``.
    """
    parts = key.split("-") if key else []
    if len(parts) != 3 or not all(parts):
        msg = f"Malformed counter key {key!r}: expected BRAND-CATEGORY-YY"
        raise InvalidCounterKeyError(msg)
    brand, category_code, yy = parts
    if not re.fullmatch(r"[0-9]{2}", yy):
        msg = f"Malformed counter key {key!r}: year segment must be two digits"
        raise InvalidCounterKeyError(msg)
    return CounterKey(brand, category_code, 2000 + int(yy))
