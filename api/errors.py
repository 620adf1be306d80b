"""API error handling utilities.

Maps allocator and tagging failures to JSON responses: malformed keys and
forged batch rows are 400s, stale batches and duplicate serials are 409s,
and a locked store or failed gap scan is a retryable 503.  Nothing has been
committed in any of these cases.
"""

from __future__ import annotations

import functools
import logging
import sqlite3
from typing import Any

from flask import jsonify

logger = logging.getLogger(__name__)

COUNTER_KEY_HINT = {"expected_format": "BRAND-CATEGORY-YY", "example": "MG-RNG-25"}


def error_response(
    message: str,
    status_code: int,
    details: Any = None,
) -> tuple:
    """Return a consistent JSON error response."""
    body: dict[str, Any] = {"error": message}
    if details is not None:
        body["details"] = details
    return jsonify(body), status_code


def _translate(exc: Exception) -> Exception:
    """Convert service-layer exceptions into AppError subclasses."""
    from api.exceptions import ConflictError, StoreUnavailableError, ValidationError
    from services.serial_allocator import GapScanError
    from services.tagging_service import StaleBatchError
    from utils.barcode import InvalidCounterKeyError

    if isinstance(exc, InvalidCounterKeyError):
        return ValidationError(str(exc), details=COUNTER_KEY_HINT)
    if isinstance(exc, StaleBatchError):
        return ConflictError(
            str(exc),
            details={"counter_key": exc.counter_key, "serials": exc.serials},
        )
    if isinstance(exc, sqlite3.IntegrityError):
        return ConflictError(str(exc))
    if isinstance(exc, GapScanError):
        return StoreUnavailableError(str(exc), details={"retry": True})
    if isinstance(exc, sqlite3.OperationalError):
        return StoreUnavailableError("Database unavailable", details={"retry": True})
    return exc


def handle_errors(f):
    """Decorator that catches common exceptions and returns JSON errors."""
    from api.exceptions import AppError
    from services.serial_allocator import GapScanError
    from services.tagging_service import StaleBatchError

    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except AppError as exc:
            return error_response(str(exc), exc.status_code, exc.details)
        except (StaleBatchError, GapScanError, sqlite3.Error) as exc:
            app_exc = _translate(exc)
            if not isinstance(app_exc, AppError):
                logger.exception("Database error in %s", f.__name__)
                return error_response("Internal server error", 500)
            if app_exc.status_code >= 500:
                logger.warning("%s in %s: %s", type(exc).__name__, f.__name__, exc)
            return error_response(str(app_exc), app_exc.status_code, app_exc.details)
        except ValueError as exc:
            app_exc = _translate(exc)
            details = getattr(app_exc, "details", None)
            return error_response(str(exc), 400, details)
        except (SystemExit, KeyboardInterrupt):
            raise
        except Exception:
            logger.exception("Unexpected error in %s", f.__name__)
            return error_response("Internal server error", 500)

    return wrapper
