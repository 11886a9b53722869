# model/admission.py
"""
Check-in at the venue.

A ticket is admitted at most once: the only write that admits is
`UPDATE tickets ... WHERE status='unused'`, so two scanners racing on the
same ticket get one `admitted` and one `duplicate`. Every call, whatever
its outcome, leaves exactly one scan_logs row behind.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts
from ..infra.sql import GatedAsyncSession
from .issuance import TICKET_COLUMNS
from .orm import (
    S_ADMITTED, S_DUPLICATE, S_EXPIRED, S_INVALID,
    T_ADMITTED, T_UNUSED,
)
from .qrtoken import QrTokenService

logger = logging.getLogger(__name__)

CLOSED_EVENT_STATUSES = ("cancelled", "completed")


@dataclass
class AdmitResult:
    admitted: bool
    result: str
    ticket: Optional[Dict[str, Any]] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "admitted": self.admitted,
            "result": self.result,
            "ticket": self.ticket,
            "warnings": self.warnings,
        }


async def _log_scan(
    session: AsyncSession, *, ticket_id: Optional[str], presented: str,
    event_id: Optional[str], scanner_id: str, result: str,
    reason: Optional[str],
) -> None:
    await session.execute(text("""
        INSERT INTO scan_logs(ticket_id, presented_ticket_id, event_id,
                              scanner_id, result, reason, scanned_at)
        VALUES (:t, :p, :e, :s, :r, :why, :now)
    """), {"t": ticket_id, "p": presented, "e": event_id, "s": scanner_id,
           "r": result, "why": reason, "now": now_ts()})


async def _load(session: AsyncSession, ticket_id: str):
    return (await session.execute(text(f"""
        SELECT {TICKET_COLUMNS}, qr_token_hash FROM tickets WHERE id=:id
    """), {"id": ticket_id})).mappings().first()


def _public(row) -> Dict[str, Any]:
    t = dict(row)
    t.pop("qr_token_hash", None)
    return t


def _judge(
    qr: QrTokenService, ticket, token: str, event_id: Optional[str],
    event_status: Optional[str],
) -> Optional[tuple[str, str]]:
    """(result, reason) when the scan must be rejected, None to admit."""
    if ticket["status"] == T_ADMITTED:
        return S_DUPLICATE, "Ticket already admitted"
    if ticket["status"] != T_UNUSED:
        return S_INVALID, f"Ticket status is {ticket['status']}"
    if not qr.verify(token, ticket["qr_token_hash"]):
        return S_INVALID, "Invalid ticket token"
    if event_id and ticket["event_id"] != event_id:
        return S_INVALID, "Ticket is not valid for this event"
    if event_status in CLOSED_EVENT_STATUSES:
        return S_EXPIRED, f"Event is {event_status}"
    return None


async def admit(
    db: GatedAsyncSession, qr: QrTokenService, *, ticket_id: str,
    scanner_id: str, token: str, event_id: Optional[str] = None,
) -> AdmitResult:
    async with db.gated():
        async with db.session.begin():
            s = db.session
            ticket = await _load(s, ticket_id)
            if ticket is None:
                await _log_scan(s, ticket_id=None, presented=ticket_id,
                                event_id=event_id, scanner_id=scanner_id,
                                result=S_INVALID, reason="Ticket not found")
                return AdmitResult(False, S_INVALID,
                                   warnings=["Ticket not found"])

            event_status = (await s.execute(
                text("SELECT status FROM events WHERE id=:id"),
                {"id": ticket["event_id"]},
            )).scalar_one_or_none()

            rejection = _judge(qr, ticket, token, event_id, event_status)
            if rejection is None:
                row = (await s.execute(text("""
                    UPDATE tickets
                    SET status=:admitted, admitted_at=:now, admitted_by=:by
                    WHERE id=:id AND status=:unused
                    RETURNING id
                """), {"admitted": T_ADMITTED, "now": now_ts(),
                       "by": scanner_id, "id": ticket_id,
                       "unused": T_UNUSED})).first()
                if row is None:
                    # another scanner got there first
                    rejection = (S_DUPLICATE, "Ticket already admitted")

            if rejection is not None:
                result, reason = rejection
                # the door's event when given, so wrong-event scans show up
                # in that event's history
                await _log_scan(s, ticket_id=ticket_id, presented=ticket_id,
                                event_id=event_id or ticket["event_id"],
                                scanner_id=scanner_id, result=result,
                                reason=reason)
                logger.info("scan rejected ticket=%s result=%s reason=%s",
                            ticket_id, result, reason)
                return AdmitResult(False, result, _public(ticket), [reason])

            await s.execute(text("""
                UPDATE events SET checked_in = checked_in + 1 WHERE id=:id
            """), {"id": ticket["event_id"]})
            await _log_scan(s, ticket_id=ticket_id, presented=ticket_id,
                            event_id=ticket["event_id"],
                            scanner_id=scanner_id, result=S_ADMITTED,
                            reason=None)
            admitted = await _load(s, ticket_id)
    return AdmitResult(True, S_ADMITTED, _public(admitted))


async def scan_history(
    db: GatedAsyncSession, event_id: str, limit: int = 200
) -> List[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                SELECT id, ticket_id, presented_ticket_id, event_id,
                       scanner_id, result, reason, scanned_at
                FROM scan_logs
                WHERE event_id=:e
                ORDER BY id DESC
                LIMIT :lim
            """), {"e": event_id, "lim": max(1, min(limit, 1000))})).mappings()
            return [dict(r) for r in rows]
