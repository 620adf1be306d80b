"""Custom exception classes for structured API error handling."""

from __future__ import annotations

from typing import Any


class AppError(Exception):
    """Base application error with an associated HTTP status code.

    *details* is returned alongside the message in the JSON error body.
    """

    status_code: int = 500

    def __init__(self, message: str = "Internal server error", details: Any = None) -> None:
        super().__init__(message)
        self.details = details


class NotFoundError(AppError):
    status_code = 404


class ValidationError(AppError):
    status_code = 400


class ConflictError(AppError):
    """A write collides with existing items or holds, e.g. a stale batch."""

    status_code = 409


class StoreUnavailableError(AppError):
    """The serial store is locked or the gap scan failed; safe to retry."""

    status_code = 503
