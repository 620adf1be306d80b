"""CLI entry point for the Jewelry Tagging service."""

from __future__ import annotations

import click

from config import settings
from database import init_database


@click.group()
def cli() -> None:
    """Jewelry warehouse tagging and serial allocation."""


@cli.command()
def init_db() -> None:
    """Initialise the SQLite database (creates tables if missing)."""
    init_database(settings.database_path)
    print(f"Database initialised at {settings.database_path}")


@cli.command()
def web() -> None:
    """Start the Flask API server."""
    from api.app import create_app

    app = create_app()
    app.run(
        host=settings.flask_host,
        port=settings.flask_port,
        debug=settings.flask_debug,
    )


@cli.command()
@click.argument("counter_key")
@click.option("--count", default=1, help="Number of serials to reserve.")
def reserve(counter_key: str, count: int) -> None:
    """Reserve serials for COUNTER_KEY (e.g. MG-RNG-25)."""
    from services.serial_allocator import reserve_serials

    reservation = reserve_serials(counter_key, count)
    if not reservation.serials:
        print("Nothing reserved.")
        return
    print(f"Reserved {len(reservation.serials)} serial(s) for {counter_key}:")
    print(f"  Range:      {reservation.start}-{reservation.end}")
    print(f"  From gaps:  {reservation.gaps_used}")
    print(f"  Counter:    {reservation.counter_value}")
    print(f"  Serials:    {', '.join(str(s) for s in reservation.serials)}")


@cli.command()
@click.argument("counter_key")
@click.option("--count", default=1, help="Number of serials to preview.")
def peek(counter_key: str, count: int) -> None:
    """Preview the next serials for COUNTER_KEY without reserving them."""
    from services.serial_allocator import peek_serials

    preview = peek_serials(counter_key, count)
    print(f"Next {count} serial(s) for {counter_key}: {', '.join(str(s) for s in preview.serials)}")


@cli.command()
def counters() -> None:
    """List all serial counters."""
    from database.connection import get_db
    import database.models as models

    conn = get_db(settings.database_path)
    try:
        rows = models.list_counters(conn)
    finally:
        conn.close()

    if not rows:
        print("No counters yet.")
        return
    print(f"{'Key':<16} {'Value':>8}  {'Updated':<20}")
    print("-" * 46)
    for row in rows:
        print(f"{row['key']:<16} {row['value']:>8}  {row['updated_at']:<20}")


@cli.command()
@click.argument("counter_key")
def counter(counter_key: str) -> None:
    """Show the value, gaps and held serials of COUNTER_KEY."""
    from services.serial_allocator import get_counter_status

    status = get_counter_status(counter_key)
    state = "exists" if status["exists"] else "not created yet"
    print(f"{counter_key} ({state})")
    print(f"  Value:       {status['value']}")
    print(f"  Live items:  {status['live_items']}")
    print(f"  Gaps:        {', '.join(str(s) for s in status['gaps']) or '-'}")
    print(f"  Held:        {', '.join(str(s) for s in status['reserved']) or '-'}")
    if status["holds"]:
        print(f"  Holds lapse: {max(h['expires_at'] for h in status['holds'])}")


@cli.command()
@click.option("--category", required=True, help="Category name, e.g. Ring.")
@click.option("--location", required=True, help="Location name, e.g. Pune.")
@click.option("--quantity", required=True, type=int, help="Number of tags.")
@click.option("--year", type=int, default=None, help="Tagging year (default: current).")
@click.option("--save", is_flag=True, help="Save the batch as tagged items.")
@click.option("--design", default=None, help="Design / subcategory.")
@click.option("--type", "cost_price_type", default=None, help="Cost price type, e.g. CP-A.")
@click.option("--remark", default=None, help="Item name / remark.")
def generate_batch(
    category: str,
    location: str,
    quantity: int,
    year: int | None,
    save: bool,
    design: str | None,
    cost_price_type: str | None,
    remark: str | None,
) -> None:
    """Reserve serials and print barcode values for a tag batch."""
    from database.connection import get_db
    from services.tagging_service import generate_batch as _generate_batch
    from services.tagging_service import save_batch

    conn = get_db(settings.database_path)
    try:
        batch = _generate_batch(conn, category, location, quantity, year=year)
        reservation = batch["reservation"]
        print(
            f"Generated {quantity} {category} tag(s) "
            f"(Serial: {reservation['start']}-{reservation['end']}, "
            f"counter {batch['counter_key']})"
        )
        for row in batch["rows"]:
            print(f"  {row['barcode_value']}")

        if save:
            items = save_batch(
                conn,
                batch,
                subcategory=design,
                cost_price_type=cost_price_type,
                remark=remark,
            )
            print(f"\nSaved {len(items)} item(s) to the warehouse.")
    finally:
        conn.close()


@cli.command()
@click.argument("item_id", type=int)
def delete_item(item_id: int) -> None:
    """Delete a tagged item, freeing its serial for reuse."""
    from database.connection import get_db
    from services.tagging_service import delete_item as _delete_item

    conn = get_db(settings.database_path)
    try:
        item = _delete_item(conn, item_id)
    finally:
        conn.close()

    if item is None:
        print(f"Error: no tagged item with id {item_id}")
        return
    print(f"Deleted {item['barcode_value']} (serial {item['serial']} is now free)")


if __name__ == "__main__":
    cli()
