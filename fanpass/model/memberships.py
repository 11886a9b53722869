# model/memberships.py
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, Tuple

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ValidationError
from ..helpers import now_ts
from ..infra.sql import GatedAsyncSession
from . import wallet

logger = logging.getLogger(__name__)

DAY = 24 * 3600


@dataclass(frozen=True)
class Plan:
    tier: str
    interval: str
    amount_kobo: int
    months: int
    coins_bonus: int

    @property
    def duration_seconds(self) -> int:
        return self.months * 30 * DAY


def _plan(tier, interval, naira, months, bonus) -> Tuple[Tuple[str, str], Plan]:
    return (tier, interval), Plan(tier, interval, naira * 100, months, bonus)


PLANS: Dict[Tuple[str, str], Plan] = dict([
    _plan("pioneer", "monthly", 2_500, 1, 250),
    _plan("pioneer", "quarterly", 7_200, 3, 750),
    _plan("pioneer", "annually", 27_000, 12, 3_000),
    _plan("elder", "monthly", 9_900, 1, 1_000),
    _plan("elder", "quarterly", 29_700, 3, 3_000),
    _plan("elder", "annually", 118_800, 12, 12_000),
    # blood brotherhood is annual only
    _plan("blood_brotherhood", "annually", 119_900, 12, 12_000),
])


def get_plan(tier: str, interval: str) -> Plan:
    plan = PLANS.get((tier, interval))
    if plan is None:
        raise ValidationError(f"no {interval} plan for tier {tier}")
    return plan


# ------------------------------------------------------------------------------
# UN-GATED internal function
# ------------------------------------------------------------------------------

async def activate_in_tx(
    session: AsyncSession, payment: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Apply a paid membership: extend (or start) the membership, raise the
    user's tier and credit the plan's bonus coins once per payment.
    """
    meta = payment.get("meta") or {}
    plan = get_plan(meta.get("tier", ""), meta.get("interval", ""))
    uid = payment["user_id"]
    now = now_ts()

    # renewals stack on top of time still left
    current: Optional[float] = (await session.execute(text("""
        SELECT expires_at FROM memberships
        WHERE user_id=:u AND status='active'
    """), {"u": uid})).scalar_one_or_none()
    start = current if current and current > now else now
    expires_at = start + plan.duration_seconds

    await session.execute(text("""
        INSERT INTO memberships(user_id, tier, billing_interval, status,
                                expires_at, payment_id, updated_at)
        VALUES (:u, :t, :i, 'active', :exp, :p, :now)
        ON CONFLICT (user_id) DO UPDATE
        SET tier=excluded.tier, billing_interval=excluded.billing_interval,
            status='active', expires_at=excluded.expires_at,
            payment_id=excluded.payment_id, updated_at=excluded.updated_at
    """), {"u": uid, "t": plan.tier, "i": plan.interval, "exp": expires_at,
           "p": payment["id"], "now": now})
    await session.execute(text("UPDATE users SET tier=:t WHERE id=:u"),
                          {"t": plan.tier, "u": uid})

    bonus = await wallet.credit_in_tx(
        session, uid, plan.coins_bonus, wallet.TX_BONUS, payment["id"],
        f"{plan.tier} {plan.interval} membership bonus",
    )
    logger.info("membership %s/%s active for user %s until %.0f",
                plan.tier, plan.interval, uid, expires_at)
    return {
        "tier": plan.tier,
        "billing_interval": plan.interval,
        "expires_at": expires_at,
        "bonus_coins": plan.coins_bonus if bonus.applied else 0,
        "balance_coins": bonus.balance,
    }


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------

async def get_membership(
    db: GatedAsyncSession, user_id: str
) -> Optional[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text("""
                SELECT user_id, tier, billing_interval, status, expires_at,
                       payment_id, updated_at
                FROM memberships WHERE user_id=:u
            """), {"u": user_id})).mappings().first()
    return dict(row) if row else None
