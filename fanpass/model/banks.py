# model/banks.py
from __future__ import annotations
from typing import Optional, Dict, Any, List

from sqlalchemy import text

from ..helpers import now_ts, new_id
from ..infra.sql import GatedAsyncSession

_COLUMNS = """
    id, user_id, bank_code, bank_name, account_number, account_name,
    is_verified, created_at
"""

# Nigerian bank codes accepted for payouts
BANK_NAMES = {
    "044": "Access Bank",
    "023": "Citibank",
    "050": "Ecobank",
    "011": "First Bank",
    "214": "First City Monument Bank",
    "070": "Fidelity Bank",
    "058": "Guaranty Trust Bank",
    "030": "Heritage Bank",
    "082": "Keystone Bank",
    "076": "Polaris Bank",
    "221": "Stanbic IBTC Bank",
    "068": "Standard Chartered",
    "232": "Sterling Bank",
    "032": "Union Bank",
    "033": "United Bank for Africa",
    "215": "Unity Bank",
    "035": "Wema Bank",
    "057": "Zenith Bank",
}


def _row(row) -> Dict[str, Any]:
    d = dict(row)
    d["is_verified"] = bool(d["is_verified"])
    return d


async def save_account(
    db: GatedAsyncSession, *, user_id: str, bank_code: str,
    account_number: str, account_name: str, verified: bool,
) -> Dict[str, Any]:
    """
    Upsert by (user, bank, number). `verified` is whatever the gateway's
    account resolution said; re-saving a resolved account verifies it.
    """
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text(f"""
                INSERT INTO bank_accounts(id, user_id, bank_code, bank_name,
                                          account_number, account_name,
                                          is_verified, created_at)
                VALUES (:id, :u, :code, :name, :num, :acct, :v, :now)
                ON CONFLICT (user_id, bank_code, account_number) DO UPDATE
                SET account_name=excluded.account_name,
                    is_verified=excluded.is_verified
                RETURNING {_COLUMNS}
            """), {
                "id": new_id(), "u": user_id, "code": bank_code,
                "name": BANK_NAMES.get(bank_code, "Unknown Bank"),
                "num": account_number, "acct": account_name, "v": verified,
                "now": now_ts(),
            })).mappings().one()
    return _row(row)


async def get_account(
    db: GatedAsyncSession, account_id: str
) -> Optional[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text(f"""
                SELECT {_COLUMNS} FROM bank_accounts WHERE id=:id
            """), {"id": account_id})).mappings().first()
    return _row(row) if row else None


async def list_accounts(
    db: GatedAsyncSession, user_id: str
) -> List[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text(f"""
                SELECT {_COLUMNS} FROM bank_accounts
                WHERE user_id=:u ORDER BY created_at
            """), {"u": user_id})).mappings().all()
    return [_row(r) for r in rows]
