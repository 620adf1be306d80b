"""API endpoints for the jewelry tagging service."""

from __future__ import annotations

import logging
from typing import Any

from flask import Blueprint, g, jsonify, request

import database.models as models
from api.errors import handle_errors
from api.exceptions import ConflictError, NotFoundError, ValidationError
from config import settings
from database.connection import get_db
from services.serial_allocator import (
    get_counter_status,
    peek_serials,
    release_reservation,
    reserve_serials,
)
from services.tagging_service import delete_item, generate_batch, save_batch

logger = logging.getLogger(__name__)

api_bp = Blueprint("api", __name__, url_prefix="/api")


# ---------------------------------------------------------------------------
# DB lifecycle
# ---------------------------------------------------------------------------


@api_bp.before_request
def _open_db() -> None:
    """Open a database connection and store it on flask.g."""
    g.db = get_db(settings.database_path)


@api_bp.teardown_request
def _close_db(exc: BaseException | None = None) -> None:
    """Close the per-request database connection."""
    db = g.pop("db", None)
    if db is not None:
        db.close()


def _json_body() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _require(data: dict[str, Any], *fields: str) -> None:
    for field in fields:
        if data.get(field) in (None, ""):
            raise ValidationError(f"Missing required field: {field}")


def _int_arg(data: dict[str, Any], field: str, default: int | None = None) -> int:
    raw = data.get(field, default)
    if isinstance(raw, bool):
        raise ValidationError(f"{field} must be an integer")
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer") from None


# ===========================================================================
# Code registry
# ===========================================================================


@api_bp.route("/categories", methods=["GET"])
@handle_errors
def list_categories() -> tuple:
    """List active categories with their codes."""
    return jsonify(models.list_categories(g.db)), 200


@api_bp.route("/categories", methods=["POST"])
@handle_errors
def create_category() -> tuple:
    """Register a new category code."""
    data = _json_body()
    _require(data, "name", "code")
    category = models.create_category(g.db, data["name"], data["code"])
    if category is None:
        raise ConflictError(f"Duplicate category: {data['name']} / {data['code']}")
    return jsonify(category), 201


@api_bp.route("/locations", methods=["GET"])
@handle_errors
def list_locations() -> tuple:
    """List active locations with their codes."""
    return jsonify(models.list_locations(g.db)), 200


@api_bp.route("/locations", methods=["POST"])
@handle_errors
def create_location() -> tuple:
    """Register a new location code."""
    data = _json_body()
    _require(data, "name", "code")
    location = models.create_location(g.db, data["name"], data["code"])
    if location is None:
        raise ConflictError(f"Duplicate location: {data['name']} / {data['code']}")
    return jsonify(location), 201


# ===========================================================================
# Serial reservation
# ===========================================================================


@api_bp.route("/serials/reserve", methods=["POST"])
@handle_errors
def reserve() -> tuple:
    """Reserve serials for a counter key, filling gaps first."""
    data = _json_body()
    _require(data, "counter_key")
    count = _int_arg(data, "count", 1)
    reservation = reserve_serials(data["counter_key"], count, conn=g.db)
    return jsonify(reservation.model_dump()), 201


@api_bp.route("/serials/<counter_key>/preview", methods=["GET"])
@handle_errors
def preview(counter_key: str) -> tuple:
    """Preview the serials the next reservation would receive."""
    count = _int_arg(request.args, "count", 1)
    return jsonify(peek_serials(counter_key, count, conn=g.db).model_dump()), 200


@api_bp.route("/serials/<counter_key>/release", methods=["POST"])
@handle_errors
def release(counter_key: str) -> tuple:
    """Release held serials from a discarded batch."""
    data = _json_body()
    serials = data.get("serials")
    if not isinstance(serials, list) or not all(
        isinstance(s, int) and not isinstance(s, bool) for s in serials
    ):
        raise ValidationError("serials must be a list of integers")
    removed = release_reservation(counter_key, serials, conn=g.db)
    return jsonify({"counter_key": counter_key, "released": removed}), 200


@api_bp.route("/counters", methods=["GET"])
@handle_errors
def list_counters() -> tuple:
    """List all counters."""
    return jsonify(models.list_counters(g.db)), 200


@api_bp.route("/counters/<counter_key>", methods=["GET"])
@handle_errors
def counter_status(counter_key: str) -> tuple:
    """Show a counter with its gaps and held serials."""
    return jsonify(get_counter_status(counter_key, conn=g.db)), 200


# ===========================================================================
# Tagging
# ===========================================================================


@api_bp.route("/tagging/batches", methods=["POST"])
@handle_errors
def create_batch() -> tuple:
    """Reserve serials and build barcode values for a new tag batch."""
    data = _json_body()
    _require(data, "category", "location", "quantity")
    quantity = _int_arg(data, "quantity")
    year = _int_arg(data, "year") if data.get("year") is not None else None
    batch = generate_batch(g.db, data["category"], data["location"], quantity, year=year)
    return jsonify(batch), 201


@api_bp.route("/tagging/batches/save", methods=["POST"])
@handle_errors
def save_tag_batch() -> tuple:
    """Save a generated batch as pending tagged items."""
    data = _json_body()
    _require(data, "batch")
    batch = data["batch"]
    if not isinstance(batch, dict):
        raise ValidationError("batch must be an object")
    _require(batch, "counter_key", "category", "category_code", "location_code", "year")
    items = save_batch(
        g.db,
        batch,
        subcategory=data.get("subcategory"),
        cost_price_type=data.get("cost_price_type"),
        remark=data.get("remark"),
        weight=data.get("weight", ""),
        purity=data.get("purity", "Gold Forming"),
        price=data.get("price", 0),
    )
    return jsonify({"saved": len(items), "items": items}), 201


# ===========================================================================
# Tagged items
# ===========================================================================


@api_bp.route("/tagged-items", methods=["GET"])
@handle_errors
def list_tagged_items() -> tuple:
    """List tagged items with optional filters."""
    year = request.args.get("year")
    items = models.list_tagged_items(
        g.db,
        category_code=request.args.get("category_code"),
        year=_int_arg(request.args, "year") if year else None,
        status=request.args.get("status"),
        location_code=request.args.get("location_code"),
    )
    return jsonify(items), 200


@api_bp.route("/tagged-items/<int:item_id>", methods=["GET"])
@handle_errors
def get_tagged_item(item_id: int) -> tuple:
    """Get a single tagged item."""
    item = models.get_tagged_item(g.db, item_id)
    if item is None:
        raise NotFoundError("Tagged item not found")
    return jsonify(item), 200


@api_bp.route("/tagged-items/barcode/<barcode_value>", methods=["GET"])
@handle_errors
def get_tagged_item_by_barcode(barcode_value: str) -> tuple:
    """Look up a tagged item by its scanned barcode value."""
    item = models.get_tagged_item_by_barcode(g.db, barcode_value.strip().upper())
    if item is None:
        raise NotFoundError(f"No tagged item with barcode {barcode_value}")
    return jsonify(item), 200


@api_bp.route("/tagged-items/<int:item_id>", methods=["PATCH"])
@handle_errors
def update_tagged_item(item_id: int) -> tuple:
    """Update editable fields or the approval status of a tagged item."""
    data = _json_body()
    if models.get_tagged_item(g.db, item_id) is None:
        raise NotFoundError("Tagged item not found")

    status = data.pop("status", None)
    if status is not None and status not in models.VALID_ITEM_STATUSES:
        raise ValidationError(
            f"Invalid status: {status}",
            details={"allowed": sorted(models.VALID_ITEM_STATUSES)},
        )
    item = None
    if data:
        item = models.update_tagged_item(g.db, item_id, **data)
    if status is not None:
        item = models.update_tagged_item_status(g.db, item_id, status)
    if item is None:
        raise ValidationError("No valid fields to update")
    return jsonify(item), 200


@api_bp.route("/tagged-items/<int:item_id>", methods=["DELETE"])
@handle_errors
def remove_tagged_item(item_id: int) -> tuple:
    """Delete a tagged item; its serial becomes reusable."""
    item = delete_item(g.db, item_id)
    if item is None:
        raise NotFoundError("Tagged item not found")
    return jsonify({"deleted": item_id, "freed_serial": item["serial"]}), 200


@api_bp.route("/tagged-items/print", methods=["POST"])
@handle_errors
def mark_printed() -> tuple:
    """Mark items as printed."""
    data = _json_body()
    ids = data.get("ids")
    if not isinstance(ids, list) or not ids:
        raise ValidationError("ids must be a non-empty list")
    updated = models.mark_items_printed(g.db, ids)
    return jsonify({"printed": updated}), 200
