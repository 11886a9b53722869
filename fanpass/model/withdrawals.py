# model/withdrawals.py
"""
Coin withdrawals.

Creating a request and holding its coins is one transaction: the row insert
and the wallet debit commit together or not at all. A user has at most one
open (pending/processing) request; the partial unique index
`uq_withdrawals_one_open_per_user` settles races between two submissions.
Rejection returns the coins through a compensating `refund` credit, never
by editing the original debit.
"""
from __future__ import annotations
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Dict, Any, List

from sqlalchemy import Numeric, bindparam, text
from sqlalchemy.exc import IntegrityError

from ..errors import ConflictError, FailureKind, NotFoundError, ValidationError
from ..helpers import now_ts, new_id, withdrawal_reference
from ..infra.sql import GatedAsyncSession
from . import wallet
from .orm import W_PENDING, W_PROCESSING, W_PAID, W_REJECTED

logger = logging.getLogger(__name__)

OPEN_STATUSES = (W_PENDING, W_PROCESSING)
_OPEN_INDEX = "uq_withdrawals_one_open_per_user"

_COLUMNS = """
    id, user_id, bank_account_id, amount_coins, amount_naira, status,
    reference_code, admin_note, processed_by, created_at, processed_at
"""

# action -> (allowed from, to)
TRANSITIONS = {
    "process": ((W_PENDING,), W_PROCESSING),
    "pay": (OPEN_STATUSES, W_PAID),
    "reject": (OPEN_STATUSES, W_REJECTED),
}


def naira_for(coins: int, rate: Decimal) -> Decimal:
    return (Decimal(coins) * rate).quantize(Decimal("0.01"), ROUND_HALF_UP)


def _is_open_conflict(err: IntegrityError) -> bool:
    msg = str(err.orig)
    # postgres names the index; sqlite names the column
    return _OPEN_INDEX in msg or "withdrawal_requests.user_id" in msg


def _select(where: str):
    return text(f"""
        SELECT {_COLUMNS} FROM withdrawal_requests {where}
    """).columns(amount_naira=Numeric(14, 2))


def _row(row) -> Dict[str, Any]:
    d = dict(row)
    d["amount_naira"] = str(Decimal(d["amount_naira"]).quantize(Decimal("0.01")))
    return d


async def request_withdrawal(
    db: GatedAsyncSession, *, user_id: str, bank_account_id: str,
    amount_coins: int, rate: Decimal, min_coins: int,
) -> Dict[str, Any]:
    if not isinstance(amount_coins, int) or amount_coins <= 0:
        raise ValidationError("amountCoins must be a positive integer")
    if amount_coins < min_coins:
        raise ConflictError(
            FailureKind.BELOW_MINIMUM,
            f"Minimum withdrawal is {min_coins} coins",
            status_code=400, extra={"minimum": min_coins},
        )

    wid = new_id()
    naira = naira_for(amount_coins, rate)
    now = now_ts()
    ref = withdrawal_reference(now)
    try:
        async with db.gated():
            async with db.session.begin():
                s = db.session
                verified = (await s.execute(text("""
                    SELECT is_verified FROM bank_accounts
                    WHERE id=:id AND user_id=:u
                """), {"id": bank_account_id, "u": user_id})).scalar_one_or_none()
                if not verified:
                    raise ConflictError(
                        FailureKind.UNVERIFIED_ACCOUNT,
                        "Bank account is not verified", status_code=400,
                    )

                open_ref = (await s.execute(text("""
                    SELECT reference_code FROM withdrawal_requests
                    WHERE user_id=:u AND status IN (:p, :pr)
                """), {"u": user_id, "p": W_PENDING,
                       "pr": W_PROCESSING})).scalar_one_or_none()
                if open_ref:
                    raise ConflictError(
                        FailureKind.PENDING_EXISTS,
                        "A withdrawal is already pending",
                        extra={"reference_code": open_ref},
                    )

                balance = (await s.execute(text("""
                    SELECT balance_coins FROM wallets WHERE user_id=:u
                """), {"u": user_id})).scalar_one_or_none()
                if (balance or 0) < amount_coins:
                    raise wallet.InsufficientBalance(user_id, amount_coins,
                                                     int(balance or 0))

                await s.execute(text("""
                    INSERT INTO withdrawal_requests(
                        id, user_id, bank_account_id, amount_coins,
                        amount_naira, status, reference_code, created_at)
                    VALUES (:id, :u, :b, :c, :naira, :s, :ref, :now)
                """).bindparams(bindparam("naira", type_=Numeric(14, 2))), {
                    "id": wid, "u": user_id, "b": bank_account_id,
                    "c": amount_coins, "naira": naira, "s": W_PENDING,
                    "ref": ref, "now": now,
                })
                # balance may have moved since the read above; the debit's
                # own conditional update decides
                await wallet.debit_in_tx(
                    s, user_id, amount_coins, wallet.TX_WITHDRAWAL, wid,
                    f"Withdrawal {ref}",
                )
    except IntegrityError as e:
        if _is_open_conflict(e):
            logger.info("concurrent withdrawal lost on open index user=%s",
                        user_id)
            raise ConflictError(FailureKind.PENDING_EXISTS,
                                "A withdrawal is already pending") from e
        raise

    logger.info("withdrawal %s requested user=%s coins=%d naira=%s",
                ref, user_id, amount_coins, naira)
    return {
        "id": wid,
        "reference_code": ref,
        "status": W_PENDING,
        "amount_coins": amount_coins,
        "amount_naira": str(naira),
    }


async def transition(
    db: GatedAsyncSession, withdrawal_id: str, action: str, admin_id: str,
    note: Optional[str] = None,
) -> Dict[str, Any]:
    if action not in TRANSITIONS:
        raise ValidationError(f"unknown action: {action}")
    allowed, target = TRANSITIONS[action]
    params: Dict[str, Any] = {
        "to": target, "note": note, "by": admin_id, "now": now_ts(),
        "id": withdrawal_id,
    }
    params.update({f"a{i}": st for i, st in enumerate(allowed)})
    placeholders = ", ".join(f":a{i}" for i in range(len(allowed)))

    async with db.gated():
        async with db.session.begin():
            s = db.session
            row = (await s.execute(text(f"""
                UPDATE withdrawal_requests
                SET status=:to, admin_note=COALESCE(:note, admin_note),
                    processed_by=:by, processed_at=:now
                WHERE id=:id AND status IN ({placeholders})
                RETURNING user_id, amount_coins, reference_code
            """), params)).mappings().first()

            if row is None:
                current = (await s.execute(
                    text("SELECT status FROM withdrawal_requests WHERE id=:id"),
                    {"id": withdrawal_id},
                )).scalar_one_or_none()
                if current is None:
                    raise NotFoundError("withdrawal not found")
                raise ConflictError(
                    FailureKind.ALREADY_PROCESSED,
                    f"Withdrawal is {current}; cannot {action}",
                )

            if target == W_REJECTED:
                await wallet.credit_in_tx(
                    s, row["user_id"], int(row["amount_coins"]),
                    wallet.TX_REFUND, withdrawal_id,
                    f"Withdrawal {row['reference_code']} rejected",
                )

            out = (await s.execute(_select("WHERE id=:id"),
                                   {"id": withdrawal_id})).mappings().one()
    logger.info("withdrawal %s -> %s by %s", out["reference_code"], target,
                admin_id)
    return _row(out)


async def list_withdrawals(
    db: GatedAsyncSession, *, user_id: Optional[str] = None,
    status: Optional[str] = None, limit: int = 100,
) -> List[Dict[str, Any]]:
    clauses, params = [], {"lim": max(1, min(limit, 500))}
    if user_id:
        clauses.append("user_id=:u")
        params["u"] = user_id
    if status:
        clauses.append("status=:s")
        params["s"] = status
    where = ("WHERE " + " AND ".join(clauses)) if clauses else ""
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(
                _select(f"{where} ORDER BY created_at DESC LIMIT :lim"),
                params,
            )).mappings().all()
    return [_row(r) for r in rows]
