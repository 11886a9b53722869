# model/wallet.py
"""
Coin wallet ledger.

- every balance change is one ledger row plus one atomic increment of the
  cached balance, inside one transaction
- credits/debits carrying a ref_id are idempotent per (user, type, ref_id)
- debits never overdraw: the decrement is conditional on the balance
- the cached balance can always be rebuilt by summing the ledger
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, List

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ConflictError, FailureKind, InvariantError
from ..helpers import now_ts, new_id
from ..infra.sql import GatedAsyncSession

logger = logging.getLogger(__name__)

TX_PURCHASE = "purchase"
TX_BONUS = "bonus"
TX_WITHDRAWAL = "withdrawal"
TX_ADMIN_ADJUSTMENT = "admin_adjustment"
TX_VOTE = "vote"
TX_SPEND = "spend"
TX_REFUND = "refund"

TX_TYPES = {
    TX_PURCHASE, TX_BONUS, TX_WITHDRAWAL, TX_ADMIN_ADJUSTMENT, TX_VOTE,
    TX_SPEND, TX_REFUND,
}


class InsufficientBalance(ConflictError):
    def __init__(self, user_id: str, amount: int,
                 balance: Optional[int] = None) -> None:
        detail = f"Insufficient balance for debit of {amount} coins"
        extra = {} if balance is None else {"balance": balance}
        super().__init__(FailureKind.INSUFFICIENT_BALANCE, detail,
                         status_code=400, extra=extra)
        self.user_id = user_id
        self.amount = amount


@dataclass
class LedgerResult:
    applied: bool            # False: duplicate reference, nothing changed
    balance: int
    entry_id: Optional[str]

    @property
    def failure(self) -> Optional[FailureKind]:
        return None if self.applied else FailureKind.DUPLICATE_REFERENCE


# ------------------------------------------------------------------------------
# UN-GATED internal functions: run inside the caller's transaction
# ------------------------------------------------------------------------------

async def ensure_wallet(session: AsyncSession, user_id: str) -> None:
    await session.execute(text("""
        INSERT INTO wallets(user_id, balance_coins, total_earned, total_spent,
                            updated_at)
        VALUES (:u, 0, 0, 0, :now)
        ON CONFLICT (user_id) DO NOTHING
    """), {"u": user_id, "now": now_ts()})


async def _append_entry(
    session: AsyncSession, user_id: str, amount: int, tx_type: str,
    ref_id: Optional[str], description: str,
) -> Optional[str]:
    """Insert a ledger row; None when (user, type, ref_id) already exists."""
    entry_id = new_id()
    row = (await session.execute(text("""
        INSERT INTO wallet_transactions(id, user_id, amount, type, ref_id,
                                        description, created_at)
        VALUES (:id, :u, :a, :t, :r, :d, :now)
        ON CONFLICT (user_id, type, ref_id) DO NOTHING
        RETURNING id
    """), {
        "id": entry_id, "u": user_id, "a": amount, "t": tx_type,
        "r": ref_id, "d": description, "now": now_ts(),
    })).first()
    return None if row is None else str(row[0])


async def _current_balance(session: AsyncSession, user_id: str) -> int:
    bal = (await session.execute(
        text("SELECT balance_coins FROM wallets WHERE user_id=:u"),
        {"u": user_id},
    )).scalar_one_or_none()
    return int(bal or 0)


def _check_args(amount: int, tx_type: str) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValueError("amount must be a positive integer")
    if tx_type not in TX_TYPES:
        raise ValueError(f"unknown transaction type: {tx_type}")


async def credit_in_tx(
    session: AsyncSession, user_id: str, amount: int, tx_type: str,
    ref_id: Optional[str] = None, description: str = "",
) -> LedgerResult:
    _check_args(amount, tx_type)
    await ensure_wallet(session, user_id)
    entry_id = await _append_entry(session, user_id, amount, tx_type, ref_id,
                                   description)
    if entry_id is None:
        logger.info("credit replay ignored user=%s type=%s ref=%s",
                    user_id, tx_type, ref_id)
        return LedgerResult(False, await _current_balance(session, user_id),
                            None)

    row = (await session.execute(text("""
        UPDATE wallets
        SET balance_coins = balance_coins + :a,
            total_earned = total_earned + :a,
            updated_at = :now
        WHERE user_id = :u
        RETURNING balance_coins
    """), {"a": amount, "u": user_id, "now": now_ts()})).first()
    if row is None:
        raise InvariantError("wallet row vanished during credit",
                             user_id=user_id, amount=amount)
    return LedgerResult(True, int(row[0]), entry_id)


async def debit_in_tx(
    session: AsyncSession, user_id: str, amount: int, tx_type: str,
    ref_id: Optional[str] = None, description: str = "",
) -> LedgerResult:
    """
    Raises InsufficientBalance; the caller's transaction must then roll back
    so the ledger row written here disappears with it.
    """
    _check_args(amount, tx_type)
    await ensure_wallet(session, user_id)
    entry_id = await _append_entry(session, user_id, -amount, tx_type, ref_id,
                                   description)
    if entry_id is None:
        logger.info("debit replay ignored user=%s type=%s ref=%s",
                    user_id, tx_type, ref_id)
        return LedgerResult(False, await _current_balance(session, user_id),
                            None)

    row = (await session.execute(text("""
        UPDATE wallets
        SET balance_coins = balance_coins - :a,
            total_spent = total_spent + :a,
            updated_at = :now
        WHERE user_id = :u AND balance_coins >= :a
        RETURNING balance_coins
    """), {"a": amount, "u": user_id, "now": now_ts()})).first()
    if row is None:
        raise InsufficientBalance(user_id, amount)
    return LedgerResult(True, int(row[0]), entry_id)


async def adjust_in_tx(
    session: AsyncSession, user_id: str, delta: int, ref_id: str,
    description: str = "",
) -> LedgerResult:
    if delta > 0:
        return await credit_in_tx(session, user_id, delta,
                                  TX_ADMIN_ADJUSTMENT, ref_id, description)
    return await debit_in_tx(session, user_id, -delta, TX_ADMIN_ADJUSTMENT,
                             ref_id, description)


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------

async def credit(
    db: GatedAsyncSession, user_id: str, amount: int, tx_type: str,
    ref_id: Optional[str] = None, description: str = "",
) -> LedgerResult:
    async with db.gated():
        async with db.session.begin():
            return await credit_in_tx(db.session, user_id, amount, tx_type,
                                      ref_id, description)


async def debit(
    db: GatedAsyncSession, user_id: str, amount: int, tx_type: str,
    ref_id: Optional[str] = None, description: str = "",
) -> LedgerResult:
    async with db.gated():
        async with db.session.begin():
            return await debit_in_tx(db.session, user_id, amount, tx_type,
                                     ref_id, description)


async def adjust(
    db: GatedAsyncSession, user_id: str, delta: int, ref_id: str,
    description: str = "",
) -> LedgerResult:
    if delta == 0:
        raise ValueError("adjustment must be non-zero")
    async with db.gated():
        async with db.session.begin():
            return await adjust_in_tx(db.session, user_id, delta, ref_id,
                                      description)


async def get_wallet(db: GatedAsyncSession, user_id: str) -> Dict[str, Any]:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text("""
                SELECT balance_coins, total_earned, total_spent, updated_at
                FROM wallets WHERE user_id=:u
            """), {"u": user_id})).mappings().first()
    if not row:
        return {"user_id": user_id, "balance_coins": 0, "total_earned": 0,
                "total_spent": 0, "updated_at": None}
    return {
        "user_id": user_id,
        "balance_coins": int(row["balance_coins"]),
        "total_earned": int(row["total_earned"]),
        "total_spent": int(row["total_spent"]),
        "updated_at": row["updated_at"],
    }


async def history(
    db: GatedAsyncSession, user_id: str, limit: int = 50
) -> List[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                SELECT id, amount, type, ref_id, description, created_at
                FROM wallet_transactions
                WHERE user_id=:u
                ORDER BY created_at DESC
                LIMIT :lim
            """), {"u": user_id, "lim": max(1, min(limit, 500))})).mappings()
            return [dict(r) for r in rows]


async def audit(db: GatedAsyncSession, user_id: str) -> Dict[str, int]:
    """
    Replay the ledger and compare it with the cached balance.
    A mismatch or a negative replay raises InvariantError.
    """
    async with db.gated():
        async with db.session.begin():
            cached = await _current_balance(db.session, user_id)
            replayed = (await db.session.execute(text("""
                SELECT COALESCE(SUM(amount), 0) FROM wallet_transactions
                WHERE user_id=:u
            """), {"u": user_id})).scalar_one()
    replayed = int(replayed)
    if replayed != cached or replayed < 0:
        raise InvariantError(
            "wallet balance does not match ledger",
            user_id=user_id, cached=cached, replayed=replayed,
        )
    return {"balance_coins": cached, "ledger_sum": replayed}
