# model/identity.py
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional, FrozenSet, Iterable, Dict, Any

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from sqlalchemy import text

from ..helpers import is_valid_email, now_ts, new_id
from ..infra.sql import GatedAsyncSession

# Capabilities
CAN_SCAN = "tickets:scan"
CAN_REFUND = "tickets:refund"
CAN_MANAGE_EVENTS = "events:manage"
CAN_RECONCILE = "payments:reconcile"
CAN_PROCESS_WITHDRAWALS = "withdrawals:process"
CAN_ADJUST_WALLETS = "wallets:adjust"
CAN_VIEW_STATS = "stats:view"

ROLE_CAPABILITIES: Dict[str, FrozenSet[str]] = {
    "admin": frozenset({
        CAN_SCAN, CAN_REFUND, CAN_MANAGE_EVENTS, CAN_RECONCILE,
        CAN_PROCESS_WITHDRAWALS, CAN_ADJUST_WALLETS, CAN_VIEW_STATS,
    }),
    "scanner": frozenset({CAN_SCAN}),
}

TIERS = ("grassroot", "pioneer", "elder", "blood_brotherhood")


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: str
    tier: str
    roles: FrozenSet[str] = field(default_factory=frozenset)
    capabilities: FrozenSet[str] = field(default_factory=frozenset)

    def can(self, capability: str) -> bool:
        return capability in self.capabilities


def capabilities_for(roles: Iterable[str]) -> FrozenSet[str]:
    caps: set = set()
    for r in roles:
        caps |= ROLE_CAPABILITIES.get(r, frozenset())
    return frozenset(caps)


# ----------------------------
# Access tokens from the sign-in provider
# ----------------------------
class TokenSigner:
    """
    The sign-in provider hands clients an itsdangerous-signed user id.
    We only verify; minting exists for the provider side and for tests.
    """
    SALT = "fanpass-access"

    def __init__(self, secret: str, max_age_seconds: int = 7 * 24 * 3600):
        self._s = URLSafeTimedSerializer(secret, salt=self.SALT)
        self.max_age = max_age_seconds

    def mint(self, user_id: str) -> str:
        return self._s.dumps({"uid": user_id})

    def user_id_from(self, token: str) -> Optional[str]:
        try:
            data = self._s.loads(token, max_age=self.max_age)
        except (BadSignature, SignatureExpired):
            return None
        uid = data.get("uid") if isinstance(data, dict) else None
        return uid if isinstance(uid, str) and uid else None


# ----------------------------
# Canonical user lookup (one table, no fallbacks)
# ----------------------------
async def load_identity(
    db: GatedAsyncSession, user_id: str
) -> Optional[Identity]:
    async with db.gated():
        async with db.session.begin():
            user = (await db.session.execute(text("""
                SELECT id, email, tier FROM users WHERE id=:id
            """), {"id": user_id})).mappings().first()
            if not user:
                return None
            roles = (await db.session.execute(text("""
                SELECT role FROM user_roles WHERE user_id=:id
            """), {"id": user_id})).scalars().all()
    roles = frozenset(roles)
    return Identity(
        user_id=user["id"],
        email=user["email"],
        tier=user["tier"],
        roles=roles,
        capabilities=capabilities_for(roles),
    )


async def find_user_by_email(
    db: GatedAsyncSession, email: str
) -> Optional[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text("""
                SELECT id, email, display_name, tier FROM users
                WHERE email=:e
            """), {"e": email.strip().lower()})).mappings().first()
    return dict(row) if row else None


async def create_user(
    db: GatedAsyncSession, email: str, display_name: str = "",
    tier: str = "grassroot", roles: Iterable[str] = (),
    user_id: Optional[str] = None,
) -> str:
    if not is_valid_email(email):
        raise ValueError(f"invalid email: {email!r}")
    if tier not in TIERS:
        raise ValueError(f"unknown tier: {tier}")
    uid = user_id or new_id()
    async with db.gated():
        async with db.session.begin():
            await db.session.execute(text("""
                INSERT INTO users(id, email, display_name, tier, created_at)
                VALUES (:id, :e, :n, :t, :now)
            """), {"id": uid, "e": email.strip().lower(), "n": display_name,
                   "t": tier, "now": now_ts()})
            for role in roles:
                if role not in ROLE_CAPABILITIES:
                    raise ValueError(f"unknown role: {role}")
                await db.session.execute(text("""
                    INSERT INTO user_roles(user_id, role) VALUES (:id, :r)
                    ON CONFLICT (user_id, role) DO NOTHING
                """), {"id": uid, "r": role})
    return uid
