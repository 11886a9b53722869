# model/issuance.py
"""
Ticket issuance: a confirmed payment becomes exactly one ticket.

Per payment the issuance state lives on the payment row:

    none --claim--> issuing --ok--> issued
                    issuing --full--> failed   (retryable by an admin)

Everything below runs inside the caller's transaction. The capacity
increment and the ticket insert therefore commit or roll back together:
a ticket never exists without its seat being counted and a seat is never
counted without its ticket.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, List

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ConflictError, FailureKind, NotFoundError, ValidationError
from ..helpers import now_ts, new_id, payment_reference, ticket_number
from ..infra.sql import GatedAsyncSession
from . import payments, wallet
from .orm import (
    I_ISSUING, I_ISSUED, I_FAILED, I_NONE, P_SUCCESS,
    T_INVALID, T_REFUNDED, T_UNUSED,
)
from .qrtoken import QrTokenService

logger = logging.getLogger(__name__)

# Seating priority per membership tier; VIP zone from VIP_PRIORITY up
TIER_PRIORITY = {
    "grassroot": 400,
    "pioneer": 600,
    "elder": 800,
    "blood_brotherhood": 1000,
}
VIP_PRIORITY = 800

TICKET_COLUMNS = """
    id, ticket_number, event_id, user_id, payment_id, status, admitted_at,
    admitted_by, seating_priority, seating_assignment, created_at
"""


@dataclass
class IssuanceResult:
    ticket: Optional[Dict[str, Any]]
    # raw QR token; only present when the ticket was created by this call
    token: Optional[str] = None
    created: bool = False
    failure: Optional[FailureKind] = None

    @property
    def ok(self) -> bool:
        return self.ticket is not None


async def get_ticket_in_tx(
    session: AsyncSession, ticket_id: str
) -> Optional[Dict[str, Any]]:
    row = (await session.execute(text(f"""
        SELECT {TICKET_COLUMNS} FROM tickets WHERE id=:id
    """), {"id": ticket_id})).mappings().first()
    return dict(row) if row else None


async def ticket_for_payment_in_tx(
    session: AsyncSession, payment_id: str
) -> Optional[Dict[str, Any]]:
    row = (await session.execute(text(f"""
        SELECT {TICKET_COLUMNS} FROM tickets WHERE payment_id=:pid
    """), {"pid": payment_id})).mappings().first()
    return dict(row) if row else None


async def _set_issuance(
    session: AsyncSession, payment_id: str, status: str,
    error: Optional[str] = None,
) -> None:
    await session.execute(text("""
        UPDATE payments SET issuance_status=:s, issuance_error=:e
        WHERE id=:id
    """), {"s": status, "e": error, "id": payment_id})


async def _claim(session: AsyncSession, payment_id: str) -> bool:
    row = (await session.execute(text("""
        UPDATE payments SET issuance_status=:issuing, issuance_error=NULL
        WHERE id=:id AND status=:success
          AND issuance_status IN (:none, :failed)
        RETURNING id
    """), {"issuing": I_ISSUING, "id": payment_id, "success": P_SUCCESS,
           "none": I_NONE, "failed": I_FAILED})).first()
    return row is not None


async def take_seat(session: AsyncSession, event_id: str) -> bool:
    """Atomically count one more sold ticket if the event has room."""
    row = (await session.execute(text("""
        UPDATE events SET tickets_sold = tickets_sold + 1
        WHERE id=:id AND tickets_sold < max_capacity
        RETURNING tickets_sold
    """), {"id": event_id})).first()
    return row is not None


async def assign_seating(
    session: AsyncSession, event_id: str, user_id: str
) -> tuple[int, Optional[str]]:
    tier = (await session.execute(
        text("SELECT tier FROM users WHERE id=:u"), {"u": user_id}
    )).scalar_one_or_none()
    priority = TIER_PRIORITY.get(tier or "", TIER_PRIORITY["grassroot"])

    seated = (await session.execute(
        text("SELECT seated FROM events WHERE id=:id"), {"id": event_id}
    )).scalar_one_or_none()
    if not seated:
        return priority, None

    if priority >= VIP_PRIORITY:
        counter, zone = "vip_seats_assigned", "VIP"
    else:
        counter, zone = "general_seats_assigned", "GEN"
    seat_no = (await session.execute(text(f"""
        UPDATE events SET {counter} = {counter} + 1
        WHERE id=:id
        RETURNING {counter}
    """), {"id": event_id})).scalar_one()
    return priority, f"{zone}-{int(seat_no):04d}"


async def create_ticket_in_tx(
    session: AsyncSession, qr: QrTokenService, *, event_id: str,
    user_id: str, payment_id: str,
) -> IssuanceResult:
    """
    Take a seat and insert the ticket. Returns EventFull without writing
    anything when the event has no room left.
    """
    if not await take_seat(session, event_id):
        return IssuanceResult(None, failure=FailureKind.EVENT_FULL)

    token, token_hash = qr.issue()
    priority, seat = await assign_seating(session, event_id, user_id)
    ticket_id = new_id()
    now = now_ts()
    await session.execute(text("""
        INSERT INTO tickets(id, ticket_number, event_id, user_id, payment_id,
                            qr_token_hash, status, seating_priority,
                            seating_assignment, created_at)
        VALUES (:id, :num, :e, :u, :p, :h, :s, :prio, :seat, :now)
    """), {
        "id": ticket_id, "num": ticket_number(now), "e": event_id,
        "u": user_id, "p": payment_id, "h": token_hash, "s": T_UNUSED,
        "prio": priority, "seat": seat, "now": now,
    })
    ticket = await get_ticket_in_tx(session, ticket_id)
    return IssuanceResult(ticket, token=token, created=True)


async def issue_for_payment_in_tx(
    session: AsyncSession, qr: QrTokenService, payment: Dict[str, Any]
) -> IssuanceResult:
    """
    Idempotent: an existing ticket for the payment is returned as-is, and a
    payment already being issued elsewhere yields no second ticket.
    """
    pid = payment["id"]
    existing = await ticket_for_payment_in_tx(session, pid)
    if existing:
        await _set_issuance(session, pid, I_ISSUED)
        return IssuanceResult(existing)

    if not await _claim(session, pid):
        # not paid, or another worker holds the claim
        logger.info("issuance claim lost payment=%s", pid)
        return IssuanceResult(None, failure=FailureKind.ALREADY_PROCESSED)

    event_id = payment.get("event_id")
    if not event_id:
        raise NotFoundError("payment has no event attached")

    result = await create_ticket_in_tx(
        session, qr, event_id=event_id, user_id=payment["user_id"],
        payment_id=pid,
    )
    if result.failure is FailureKind.EVENT_FULL:
        await _set_issuance(session, pid, I_FAILED,
                            FailureKind.EVENT_FULL.value)
        logger.warning(
            "event %s full; payment %s (ref %s) paid without ticket, needs "
            "manual reconciliation", event_id, pid, payment["external_ref"],
        )
        return result

    await _set_issuance(session, pid, I_ISSUED)
    logger.info("ticket %s issued for payment %s",
                result.ticket["ticket_number"], pid)
    return result


async def rotate_token_in_tx(
    session: AsyncSession, qr: QrTokenService, ticket_id: str, user_id: str
) -> str:
    """Replace the stored hash and hand the new raw token to the holder."""
    token, token_hash = qr.issue()
    row = (await session.execute(text("""
        UPDATE tickets SET qr_token_hash=:h
        WHERE id=:id AND user_id=:u AND status=:unused
        RETURNING id
    """), {"h": token_hash, "id": ticket_id, "u": user_id,
           "unused": T_UNUSED})).first()
    if row is None:
        ticket = await get_ticket_in_tx(session, ticket_id)
        if not ticket or ticket["user_id"] != user_id:
            raise NotFoundError("ticket not found")
        raise ConflictError(FailureKind.INVALID_STATE,
                            f"Ticket is {ticket['status']}")
    return token


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------

async def retry_issuance(
    db: GatedAsyncSession, qr: QrTokenService, payment_id: str
) -> IssuanceResult:
    """Admin retry for a paid ticket payment whose issuance failed."""
    async with db.gated():
        async with db.session.begin():
            payment = await payments.get_by_id_in_tx(db.session, payment_id)
            if payment is None:
                raise NotFoundError("payment not found")
            if payment["purpose"] != payments.PURPOSE_TICKET:
                raise ValidationError("not a ticket payment")
            if payment["status"] != P_SUCCESS:
                raise ConflictError(FailureKind.INVALID_STATE,
                                    f"Payment is {payment['status']}")
            result = await issue_for_payment_in_tx(db.session, qr, payment)
    if result.failure is FailureKind.EVENT_FULL:
        raise ConflictError(FailureKind.EVENT_FULL, "Event is sold out",
                            extra={"reference": payment["external_ref"]})
    if result.failure is not None:
        raise ConflictError(result.failure, "Issuance already in progress")
    return result


async def purchase_with_coins(
    db: GatedAsyncSession, qr: QrTokenService, *, user_id: str,
    event_id: str,
) -> IssuanceResult:
    """
    Debit, wallet payment and ticket in one transaction. EventFull rolls the
    whole thing back, debit included.
    """
    async with db.gated():
        async with db.session.begin():
            s = db.session
            event = (await s.execute(text("""
                SELECT id, status, price_coins FROM events WHERE id=:id
            """), {"id": event_id})).mappings().first()
            if event is None:
                raise NotFoundError("event not found")
            if event["status"] != "active":
                raise ConflictError(FailureKind.EVENT_CLOSED,
                                    f"Event is {event['status']}")
            price = event["price_coins"]
            if not price:
                raise ValidationError("event cannot be bought with coins")

            pid = await payments.insert_payment(
                s, user_id=user_id, purpose=payments.PURPOSE_TICKET,
                amount=int(price), currency="COIN",
                external_ref=payment_reference("WLT"), event_id=event_id,
                status=P_SUCCESS, channel="wallet",
            )
            await wallet.debit_in_tx(s, user_id, int(price), wallet.TX_SPEND,
                                     pid, f"Ticket for event {event_id}")
            payment = await payments.get_by_id_in_tx(s, pid)
            result = await issue_for_payment_in_tx(s, qr, payment)
            if result.failure is FailureKind.EVENT_FULL:
                raise ConflictError(FailureKind.EVENT_FULL,
                                    "Event is sold out")
    return result


async def refund_ticket(
    db: GatedAsyncSession, ticket_id: str, *, admin_id: str,
    invalidate: bool = False,
) -> Dict[str, Any]:
    """
    Only unused tickets can be refunded or invalidated. Coin-paid tickets
    get their coins back; gateway refunds happen off-platform. The seat
    stays counted in tickets_sold.
    """
    target = T_INVALID if invalidate else T_REFUNDED
    async with db.gated():
        async with db.session.begin():
            s = db.session
            row = (await s.execute(text("""
                UPDATE tickets SET status=:to
                WHERE id=:id AND status=:unused
                RETURNING payment_id, user_id
            """), {"to": target, "id": ticket_id,
                   "unused": T_UNUSED})).mappings().first()
            if row is None:
                ticket = await get_ticket_in_tx(s, ticket_id)
                if ticket is None:
                    raise NotFoundError("ticket not found")
                raise ConflictError(FailureKind.INVALID_STATE,
                                    f"Ticket is {ticket['status']}")

            refunded_coins = 0
            payment = await payments.get_by_id_in_tx(s, row["payment_id"])
            if target == T_REFUNDED and payment["channel"] == "wallet":
                res = await wallet.credit_in_tx(
                    s, row["user_id"], int(payment["amount"]),
                    wallet.TX_REFUND, ticket_id,
                    f"Refund for ticket {ticket_id}",
                )
                refunded_coins = int(payment["amount"]) if res.applied else 0
            ticket = await get_ticket_in_tx(s, ticket_id)
    logger.info("ticket %s -> %s by %s", ticket_id, target, admin_id)
    return {"ticket": ticket, "refunded_coins": refunded_coins}


async def rotate_token(
    db: GatedAsyncSession, qr: QrTokenService, ticket_id: str, user_id: str
) -> str:
    async with db.gated():
        async with db.session.begin():
            return await rotate_token_in_tx(db.session, qr, ticket_id,
                                            user_id)


async def get_ticket(
    db: GatedAsyncSession, ticket_id: str
) -> Optional[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            return await get_ticket_in_tx(db.session, ticket_id)


async def list_tickets(
    db: GatedAsyncSession, user_id: str
) -> List[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text(f"""
                SELECT {TICKET_COLUMNS} FROM tickets
                WHERE user_id=:u ORDER BY created_at DESC
            """), {"u": user_id})).mappings().all()
    return [dict(r) for r in rows]
