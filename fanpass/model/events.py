# model/events.py
from __future__ import annotations
from typing import Optional, Dict, Any, List

from sqlalchemy import text

from ..errors import NotFoundError, ValidationError
from ..helpers import now_ts, new_id
from ..infra.sql import GatedAsyncSession

EVENT_STATUSES = ("active", "cancelled", "completed")

_COLUMNS = """
    id, title, venue, starts_at, max_capacity, tickets_sold, price,
    price_coins, status, checked_in, seated, vip_seats_assigned,
    general_seats_assigned, created_at
"""


def _row(row) -> Dict[str, Any]:
    d = dict(row)
    d["seated"] = bool(d["seated"])
    d["remaining"] = int(d["max_capacity"]) - int(d["tickets_sold"])
    return d


async def create_event(
    db: GatedAsyncSession, *, title: str, starts_at: float,
    max_capacity: int, price: int, venue: str = "",
    price_coins: Optional[int] = None, seated: bool = False,
    event_id: Optional[str] = None,
) -> Dict[str, Any]:
    if max_capacity < 0:
        raise ValidationError("max_capacity must be >= 0")
    if price <= 0:
        raise ValidationError("price must be positive")
    if price_coins is not None and price_coins <= 0:
        raise ValidationError("price_coins must be positive")
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text(f"""
                INSERT INTO events(id, title, venue, starts_at, max_capacity,
                                   tickets_sold, price, price_coins, status,
                                   checked_in, seated, vip_seats_assigned,
                                   general_seats_assigned, created_at)
                VALUES (:id, :t, :v, :s, :cap, 0, :p, :pc, 'active', 0, :seated,
                        0, 0, :now)
                RETURNING {_COLUMNS}
            """), {
                "id": event_id or new_id(), "t": title, "v": venue,
                "s": starts_at, "cap": max_capacity, "p": price,
                "pc": price_coins, "seated": seated, "now": now_ts(),
            })).mappings().one()
    return _row(row)


async def get_event(
    db: GatedAsyncSession, event_id: str
) -> Optional[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text(f"""
                SELECT {_COLUMNS} FROM events WHERE id=:id
            """), {"id": event_id})).mappings().first()
    return _row(row) if row else None


async def list_events(
    db: GatedAsyncSession, status: Optional[str] = "active"
) -> List[Dict[str, Any]]:
    where = "WHERE status=:s" if status else ""
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text(f"""
                SELECT {_COLUMNS} FROM events {where} ORDER BY starts_at
            """), {"s": status} if status else {})).mappings().all()
    return [_row(r) for r in rows]


async def set_status(
    db: GatedAsyncSession, event_id: str, status: str
) -> Dict[str, Any]:
    if status not in EVENT_STATUSES:
        raise ValidationError(f"unknown event status: {status}")
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text(f"""
                UPDATE events SET status=:s WHERE id=:id
                RETURNING {_COLUMNS}
            """), {"s": status, "id": event_id})).mappings().first()
    if row is None:
        raise NotFoundError("event not found")
    return _row(row)
