# model/stats.py
from __future__ import annotations
from typing import Dict, Any

from sqlalchemy import text

from ..infra.sql import GatedAsyncSession
from .orm import P_SUCCESS, P_PENDING, W_PENDING, W_PROCESSING

STATS_KEY = "stats:overview"


async def _load_overview(db: GatedAsyncSession) -> Dict[str, Any]:
    async with db.gated():
        async with db.session.begin():
            s = db.session
            events = (await s.execute(text("""
                SELECT COUNT(*) AS events,
                       COALESCE(SUM(tickets_sold), 0) AS tickets_sold,
                       COALESCE(SUM(checked_in), 0) AS checked_in,
                       COALESCE(SUM(max_capacity), 0) AS capacity
                FROM events WHERE status='active'
            """))).mappings().one()
            payments = (await s.execute(text("""
                SELECT
                  COALESCE(SUM(CASE WHEN status=:ok AND currency=:ngn
                                    THEN amount END), 0) AS revenue_kobo,
                  COALESCE(SUM(CASE WHEN status=:ok AND currency=:coin
                                    THEN amount END), 0) AS coin_sales,
                  COALESCE(SUM(CASE WHEN status=:ok THEN 1 ELSE 0 END), 0)
                    AS successful,
                  COALESCE(SUM(CASE WHEN status=:pending THEN 1 ELSE 0 END), 0)
                    AS pending
                FROM payments
            """), {"ok": P_SUCCESS, "pending": P_PENDING, "ngn": "NGN",
                   "coin": "COIN"})).mappings().one()
            coins = (await s.execute(text("""
                SELECT COALESCE(SUM(balance_coins), 0) FROM wallets
            """))).scalar_one()
            open_wd = (await s.execute(text("""
                SELECT COUNT(*) FROM withdrawal_requests
                WHERE status IN (:p, :pr)
            """), {"p": W_PENDING, "pr": W_PROCESSING})).scalar_one()
    return {
        "events": int(events["events"]),
        "tickets_sold": int(events["tickets_sold"]),
        "checked_in": int(events["checked_in"]),
        "capacity": int(events["capacity"]),
        "revenue_kobo": int(payments["revenue_kobo"]),
        "coin_ticket_sales": int(payments["coin_sales"]),
        "payments_successful": int(payments["successful"]),
        "payments_pending": int(payments["pending"]),
        "coins_in_circulation": int(coins),
        "open_withdrawals": int(open_wd),
    }


async def overview(db: GatedAsyncSession, cache) -> Dict[str, Any]:
    """Dashboard numbers, served from `cache` for its TTL."""
    return await cache.get_or_load(STATS_KEY, lambda: _load_overview(db))
