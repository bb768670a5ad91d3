"""Helpers shared by the services: clocks, dates, fines, ids and pagination."""

from __future__ import annotations

import math
import random
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

DAY_MS = 24 * 60 * 60 * 1000

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    # Fixed width so that string order matches time order in SQL comparisons
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))


def new_id() -> str:
    return uuid.uuid4().hex


def generate_membership_id(now: Optional[datetime] = None) -> str:
    """Return a membership id of the form ``LIB<year><5 digits>``."""
    year = (now or utcnow()).year
    return f"LIB{year}{random.randint(10000, 99999)}"


def calculate_due_date(borrow_date: datetime, days: int = 14) -> datetime:
    return borrow_date + timedelta(days=days)


def overdue_days(due_date: datetime, return_date: datetime) -> int:
    """Whole days overdue; any partial day counts as a full day."""
    due_date, return_date = ensure_utc(due_date), ensure_utc(return_date)
    if return_date <= due_date:
        return 0
    elapsed_ms = (return_date - due_date) // timedelta(milliseconds=1)
    return math.ceil(elapsed_ms / DAY_MS)


def calculate_fine(due_date: datetime, return_date: datetime, rate_per_day: float = 0.25) -> float:
    """Fine for a return; returning exactly on the due date is on time."""
    return round(overdue_days(due_date, return_date) * rate_per_day, 2)


def clamp_page(page: Optional[int], limit: Optional[int], default_limit: int, max_limit: int) -> tuple[int, int]:
    page = max(int(page or 1), 1)
    limit = int(limit or default_limit)
    limit = min(max(limit, 1), max_limit)
    return page, limit


def paginate(
    conn: sqlite3.Connection,
    table: str,
    where: Sequence[str],
    params: Sequence[Any],
    order_by: str,
    page: int,
    limit: int,
    factory: Callable[[sqlite3.Row], Any],
    embed: Optional[Callable[[sqlite3.Connection, List[Dict[str, Any]]], None]] = None,
) -> Dict[str, Any]:
    """Run a paged SELECT and return the standard page envelope.

    ``where`` holds SQL conditions joined with AND; items are passed through
    ``factory`` and serialized with ``to_dict()``. ``embed`` may add related
    records to the serialized items while the connection is still open.
    """
    clause = f" WHERE {' AND '.join(where)}" if where else ""
    total_items = conn.execute(f"SELECT COUNT(*) FROM {table}{clause}", tuple(params)).fetchone()[0]
    offset = (page - 1) * limit
    rows = conn.execute(
        f"SELECT * FROM {table}{clause} ORDER BY {order_by} LIMIT ? OFFSET ?",
        (*params, limit, offset),
    ).fetchall()
    items: List[Dict[str, Any]] = [factory(row).to_dict() for row in rows]
    if embed is not None:
        embed(conn, items)
    return page_envelope(items, page, limit, total_items)


def page_envelope(items: List[Any], page: int, limit: int, total_items: int) -> Dict[str, Any]:
    total_pages = math.ceil(total_items / limit) if limit > 0 else 0
    return {
        "items": items,
        "page": page,
        "limit": limit,
        "totalItems": total_items,
        "totalPages": total_pages,
        "hasNextPage": page < total_pages,
        "hasPrevPage": page > 1,
    }


def like_pattern(value: str) -> str:
    """Substring pattern for ``LIKE ? ESCAPE '\\'`` with wildcards escaped."""
    escaped = value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def summaries(
    conn: sqlite3.Connection, table: str, ids: Iterable[Optional[str]], columns: Dict[str, str]
) -> Dict[str, Dict[str, Any]]:
    """Load a few columns of the rows with the given ids, keyed by id.

    ``columns`` maps column names to the keys used in the returned dicts.
    """
    wanted = sorted({i for i in ids if i})
    if not wanted:
        return {}
    placeholders = ", ".join("?" for _ in wanted)
    rows = conn.execute(
        f"SELECT id, {', '.join(columns)} FROM {table} WHERE id IN ({placeholders})", wanted
    ).fetchall()
    return {row["id"]: {"id": row["id"], **{key: row[col] for col, key in columns.items()}} for row in rows}
