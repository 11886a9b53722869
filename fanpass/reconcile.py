"""
Payment reconciliation.

The webhook push and the client's verify call both end in `apply_charge`.
Whichever arrives first performs the pending -> terminal transition and,
in the same transaction, the payment's downstream effect:

    ticket      -> issue exactly one ticket
    coins       -> credit the purchased coins (type purchase)
    membership  -> activate the plan and credit its bonus coins

The later arrival finds a terminal payment and reports what is already
there. Replays are therefore harmless no matter how often they happen.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any

from .errors import ConflictError, FailureKind, NotFoundError, ValidationError
from .helpers import payment_reference
from .infra.sql import GatedAsyncSession
from .model import issuance, memberships, payments, wallet
from .model.events import get_event
from .model.orm import P_FAILED, P_PENDING, P_SUCCESS, I_FAILED
from .model.qrtoken import QrTokenService
from .paystack import (
    CHARGE_FAILED, CHARGE_PENDING, Charge, PaymentAdapter,
)

logger = logging.getLogger(__name__)

REF_PREFIX = {
    payments.PURPOSE_TICKET: "TKT",
    payments.PURPOSE_COINS: "COIN",
    payments.PURPOSE_MEMBERSHIP: "MBR",
}


@dataclass
class Outcome:
    reference: str
    status: str                       # payment status after this call
    purpose: Optional[str] = None
    applied: bool = False             # this call performed the transition
    failure: Optional[FailureKind] = None
    detail: str = ""
    ticket: Optional[Dict[str, Any]] = None
    token: Optional[str] = None
    effect: Dict[str, Any] = field(default_factory=dict)

    @property
    def retry(self) -> bool:
        return self.status == P_PENDING

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "ok": self.failure is None and self.status != P_FAILED,
            "reference": self.reference,
            "status": self.status,
            "purpose": self.purpose,
            "applied": self.applied,
            "retry": self.retry,
        }
        if self.failure is not None:
            out["error"] = self.failure.value
        if self.detail:
            out["detail"] = self.detail
        if self.ticket is not None:
            out["ticket"] = self.ticket
        if self.token is not None:
            out["qr_token"] = self.token
        if self.effect:
            out.update(self.effect)
        return out


def _expected_coins(payment: Dict[str, Any]) -> int:
    coins = (payment.get("meta") or {}).get("coins")
    if not isinstance(coins, int) or coins <= 0:
        raise ValidationError("coin payment without a coin amount")
    return coins


async def _apply_effect(session, qr: QrTokenService, payment, out: Outcome):
    purpose = payment["purpose"]
    if purpose == payments.PURPOSE_TICKET:
        result = await issuance.issue_for_payment_in_tx(session, qr, payment)
        out.ticket, out.token = result.ticket, result.token
        if result.failure is FailureKind.EVENT_FULL:
            out.failure = FailureKind.EVENT_FULL
            out.detail = ("Event sold out after payment; contact support "
                          "with your reference")
    elif purpose == payments.PURPOSE_COINS:
        res = await wallet.credit_in_tx(
            session, payment["user_id"], _expected_coins(payment),
            wallet.TX_PURCHASE, payment["id"],
            f"Coin purchase {payment['external_ref']}",
        )
        out.effect = {"coins": _expected_coins(payment),
                      "balance_coins": res.balance}
    elif purpose == payments.PURPOSE_MEMBERSHIP:
        out.effect = {"membership": await memberships.activate_in_tx(
            session, payment)}


async def _describe_terminal(session, payment, out: Outcome) -> None:
    """Fill `out` for a payment some earlier call already settled."""
    if payment["status"] == P_FAILED:
        out.failure = FailureKind.PAYMENT_FAILED
        out.detail = payment.get("failure_reason") or "Payment failed"
        return
    if payment["purpose"] == payments.PURPOSE_TICKET:
        out.ticket = await issuance.ticket_for_payment_in_tx(
            session, payment["id"])
        if out.ticket is None and payment["issuance_status"] == I_FAILED:
            out.failure = FailureKind.EVENT_FULL
            out.detail = payment.get("issuance_error") or "Issuance failed"


async def apply_charge(
    db: GatedAsyncSession, qr: QrTokenService, charge: Charge, *,
    tolerance_kobo: int,
) -> Optional[Outcome]:
    """
    None when the reference is unknown to us. `tolerance_kobo` is the
    largest accepted difference between paid and expected amounts.
    """
    async with db.gated():
        async with db.session.begin():
            s = db.session
            payment = await payments.get_by_ref_in_tx(s, charge.reference)
            if payment is None:
                return None
            out = Outcome(reference=charge.reference,
                          status=payment["status"],
                          purpose=payment["purpose"])

            if payment["status"] != P_PENDING:
                await _describe_terminal(s, payment, out)
                return out

            if charge.outcome == CHARGE_PENDING:
                out.detail = "Payment not confirmed yet; retry shortly"
                return out

            if charge.outcome == CHARGE_FAILED:
                reason = charge.message or charge.gateway_status or "failed"
                out.applied = await payments.mark_failed_in_tx(
                    s, payment["id"], reason)
                out.status = P_FAILED
                out.failure = FailureKind.PAYMENT_FAILED
                out.detail = reason
                return out

            if abs(charge.amount - int(payment["amount"])) > tolerance_kobo:
                reason = (f"{FailureKind.AMOUNT_MISMATCH.value}: expected "
                          f"{payment['amount']} got {charge.amount}")
                out.applied = await payments.mark_failed_in_tx(
                    s, payment["id"], reason)
                out.status = P_FAILED
                out.failure = FailureKind.AMOUNT_MISMATCH
                out.detail = reason
                logger.warning("amount mismatch ref=%s expected=%s got=%s",
                               charge.reference, payment["amount"],
                               charge.amount)
                return out

            if not await payments.mark_success_in_tx(s, payment["id"],
                                                     charge.channel):
                # lost the race; report what the winner left
                payment = await payments.get_by_id_in_tx(s, payment["id"])
                out.status = payment["status"]
                await _describe_terminal(s, payment, out)
                return out

            out.applied = True
            out.status = P_SUCCESS
            payment["status"] = P_SUCCESS
            await _apply_effect(s, qr, payment, out)
    logger.info("payment %s settled purpose=%s failure=%s",
                charge.reference, out.purpose,
                out.failure.value if out.failure else None)
    return out


# ----------------------------
# Entry points
# ----------------------------
async def handle_webhook(
    db: GatedAsyncSession, adapter: PaymentAdapter, qr: QrTokenService,
    payload: bytes, headers: dict, *, tolerance_kobo: int,
) -> Dict[str, Any]:
    event = adapter.verify_webhook(payload, headers)
    kind = adapter.event_kind(event)
    if kind != "charge.success":
        logger.info("webhook %s acknowledged and ignored", kind)
        return {"ok": True, "ignored": kind}

    charge = adapter.event_charge(event)
    out = await apply_charge(db, qr, charge, tolerance_kobo=tolerance_kobo)
    if out is None:
        logger.warning("webhook for unknown reference %s", charge.reference)
        return {"ok": True, "ignored": "unknown reference"}
    # token from this path is never shown; holders rotate to get one
    body = {
        "ok": True,
        "reference": out.reference,
        "status": out.status,
        "idempotent": not out.applied,
        "error": out.failure.value if out.failure else None,
    }
    if not out.applied and out.status != P_PENDING:
        body["message"] = "already processed"
    return body


async def verify_reference(
    db: GatedAsyncSession, adapter: PaymentAdapter, qr: QrTokenService,
    reference: str, *, tolerance_kobo: int,
    user_id: Optional[str] = None,
) -> Outcome:
    """
    Client-driven verification. A settled payment is answered from the
    database without asking the gateway again.
    """
    payment = await payments.get_by_ref(db, reference)
    if payment is None or (user_id and payment["user_id"] != user_id):
        raise NotFoundError("payment not found", extra={"reference": reference})

    if payment["status"] == P_PENDING:
        charge = await adapter.verify_transaction(reference)
    else:
        charge = Charge(reference=reference, outcome=CHARGE_PENDING,
                        amount=0)
    out = await apply_charge(db, qr, charge, tolerance_kobo=tolerance_kobo)
    if out is None:
        raise NotFoundError("payment not found", extra={"reference": reference})
    return out


async def start_checkout(
    db: GatedAsyncSession, adapter: PaymentAdapter, *, user_id: str,
    email: str, purpose: str, amount: int, callback_url: str,
    event_id: Optional[str] = None, meta: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Create the pending payment, then ask the gateway for a payment page."""
    if purpose == payments.PURPOSE_TICKET:
        event = await get_event(db, event_id or "")
        if event is None:
            raise NotFoundError("event not found")
        if event["status"] != "active":
            raise ConflictError(FailureKind.EVENT_CLOSED,
                                f"Event is {event['status']}")
        if event["remaining"] <= 0:
            raise ConflictError(FailureKind.EVENT_FULL, "Event is sold out")

    ref = payment_reference(REF_PREFIX[purpose])
    pid = await payments.create_pending(
        db, user_id=user_id, purpose=purpose, amount=amount,
        external_ref=ref, event_id=event_id, meta=meta,
    )
    try:
        init = await adapter.initialize_transaction(
            reference=ref, email=email, amount=amount,
            metadata={"payment_id": pid, "purpose": purpose, **(meta or {})},
            callback_url=callback_url,
        )
    except Exception:
        await payments.mark_failed(db, pid, "initialization failed")
        raise
    logger.info("checkout %s started purpose=%s amount=%d", ref, purpose,
                amount)
    return {
        "reference": ref,
        "payment_id": pid,
        "amount": amount,
        "authorization_url": init["authorization_url"],
        "access_code": init["access_code"],
    }
