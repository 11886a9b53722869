# model/payments.py
"""
Payment intents.

A payment moves pending -> success or pending -> failed exactly once. Every
transition is a conditional UPDATE on `status='pending'`, so of any number
of concurrent deliveries for the same reference only one sees a row come
back and gets to apply downstream effects.
"""
from __future__ import annotations
import json
from typing import Optional, Dict, Any, List

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts, new_id
from ..infra.sql import GatedAsyncSession
from .orm import P_PENDING, P_SUCCESS, P_FAILED, I_FAILED, I_NONE

PURPOSE_TICKET = "ticket"
PURPOSE_COINS = "coins"
PURPOSE_MEMBERSHIP = "membership"
PURPOSES = (PURPOSE_TICKET, PURPOSE_COINS, PURPOSE_MEMBERSHIP)

_COLUMNS = """
    id, user_id, purpose, event_id, amount, currency, external_ref, status,
    failure_reason, channel, meta, issuance_status, issuance_error,
    created_at, processed_at
"""


def _row_to_dict(row) -> Dict[str, Any]:
    d = dict(row)
    meta = d.get("meta")
    if isinstance(meta, str):
        # raw text() selects hand back the JSON column as text on sqlite
        d["meta"] = json.loads(meta) if meta else {}
    elif meta is None:
        d["meta"] = {}
    return d


# ------------------------------------------------------------------------------
# UN-GATED internal functions
# ------------------------------------------------------------------------------

async def insert_payment(
    session: AsyncSession, *, user_id: str, purpose: str, amount: int,
    external_ref: str, event_id: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None, status: str = P_PENDING,
    channel: Optional[str] = None, payment_id: Optional[str] = None,
    currency: str = "NGN",
) -> str:
    if purpose not in PURPOSES:
        raise ValueError(f"unknown payment purpose: {purpose}")
    if amount <= 0:
        raise ValueError("amount must be positive")
    pid = payment_id or new_id()
    now = now_ts()
    await session.execute(text("""
        INSERT INTO payments(id, user_id, purpose, event_id, amount, currency,
                             external_ref, status, channel, meta,
                             issuance_status, created_at, processed_at)
        VALUES (:id, :u, :p, :e, :a, :cur, :ref, :s, :ch, :m, :i, :now,
                :processed)
    """), {
        "id": pid, "u": user_id, "p": purpose, "e": event_id, "a": amount,
        "cur": currency, "ref": external_ref, "s": status, "ch": channel,
        "m": json.dumps(meta or {}), "i": I_NONE, "now": now,
        "processed": None if status == P_PENDING else now,
    })
    return pid


async def get_by_ref_in_tx(
    session: AsyncSession, external_ref: str
) -> Optional[Dict[str, Any]]:
    row = (await session.execute(text(f"""
        SELECT {_COLUMNS} FROM payments WHERE external_ref=:ref
    """), {"ref": external_ref})).mappings().first()
    return _row_to_dict(row) if row else None


async def get_by_id_in_tx(
    session: AsyncSession, payment_id: str
) -> Optional[Dict[str, Any]]:
    row = (await session.execute(text(f"""
        SELECT {_COLUMNS} FROM payments WHERE id=:id
    """), {"id": payment_id})).mappings().first()
    return _row_to_dict(row) if row else None


async def mark_success_in_tx(
    session: AsyncSession, payment_id: str, channel: Optional[str] = None
) -> bool:
    """True only for the single caller that performed the transition."""
    row = (await session.execute(text("""
        UPDATE payments
        SET status=:s, processed_at=:now, channel=COALESCE(:ch, channel)
        WHERE id=:id AND status=:pending
        RETURNING id
    """), {"s": P_SUCCESS, "now": now_ts(), "ch": channel, "id": payment_id,
           "pending": P_PENDING})).first()
    return row is not None


async def mark_failed_in_tx(
    session: AsyncSession, payment_id: str, reason: str
) -> bool:
    row = (await session.execute(text("""
        UPDATE payments
        SET status=:s, processed_at=:now, failure_reason=:r
        WHERE id=:id AND status=:pending
        RETURNING id
    """), {"s": P_FAILED, "now": now_ts(), "r": reason, "id": payment_id,
           "pending": P_PENDING})).first()
    return row is not None


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------

async def create_pending(
    db: GatedAsyncSession, *, user_id: str, purpose: str, amount: int,
    external_ref: str, event_id: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> str:
    async with db.gated():
        async with db.session.begin():
            return await insert_payment(
                db.session, user_id=user_id, purpose=purpose, amount=amount,
                external_ref=external_ref, event_id=event_id, meta=meta,
            )


async def get_by_ref(
    db: GatedAsyncSession, external_ref: str
) -> Optional[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            return await get_by_ref_in_tx(db.session, external_ref)


async def get_by_id(
    db: GatedAsyncSession, payment_id: str
) -> Optional[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            return await get_by_id_in_tx(db.session, payment_id)


async def list_unreconciled(
    db: GatedAsyncSession, limit: int = 100
) -> List[Dict[str, Any]]:
    """
    Paid ticket payments without a ticket: issuance failed (e.g. EventFull)
    or never ran. These need a manual retry or an off-platform refund.
    """
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text(f"""
                SELECT {_COLUMNS} FROM payments
                WHERE purpose=:p AND status=:s
                  AND issuance_status IN (:failed, :none)
                ORDER BY processed_at DESC
                LIMIT :lim
            """), {"p": PURPOSE_TICKET, "s": P_SUCCESS, "failed": I_FAILED,
                   "none": I_NONE, "lim": max(1, min(limit, 500))}
            )).mappings().all()
    return [_row_to_dict(r) for r in rows]


async def mark_failed(
    db: GatedAsyncSession, payment_id: str, reason: str
) -> bool:
    async with db.gated():
        async with db.session.begin():
            return await mark_failed_in_tx(db.session, payment_id, reason)
