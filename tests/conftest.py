"""
Shared fixtures.

Every test gets its own SQLite file built through the same async engine
factory the server uses. The environment is prepared before anything from
`fanpass.server` is imported, because the server reads its config at import.
"""
import os
import tempfile
import time

_TMP = tempfile.mkdtemp(prefix="fanpass-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP}/server.db"
os.environ["PAYSTACK_SECRET_KEY"] = "sk_test_webhook_secret"
os.environ["PAYSTACK_BASE_URL"] = "https://paystack.test"
os.environ["QR_TOKEN_SECRET"] = "qr-test-secret"
os.environ["SESSION_SECRET"] = "session-test-secret"
os.environ["CACHE_BACKEND"] = "memory"
os.environ["MIN_WITHDRAWAL_COINS"] = "100000"

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from fanpass.infra.sql import GatedAsyncSession, make_async_engine  # noqa: E402
from fanpass.helpers import payment_reference  # noqa: E402
from fanpass.model import issuance, payments, wallet  # noqa: E402
from fanpass.model.events import create_event  # noqa: E402
from fanpass.model.identity import create_user  # noqa: E402
from fanpass.model.orm import Base, P_SUCCESS  # noqa: E402
from fanpass.model.qrtoken import QrTokenService  # noqa: E402

WEBHOOK_SECRET = os.environ["PAYSTACK_SECRET_KEY"]


@pytest_asyncio.fixture
async def store(tmp_path):
    """Factory for independent sessions on one fresh database."""
    engine, SessionAsync, _, gated = make_async_engine(
        f"sqlite:///{tmp_path}/fanpass.db"
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    sessions = []

    def new_db() -> GatedAsyncSession:
        s = SessionAsync()
        sessions.append(s)
        return GatedAsyncSession(session=s, gated=gated)

    yield new_db

    for s in sessions:
        await s.close()
    await engine.dispose()


@pytest_asyncio.fixture
async def db(store):
    return store()


@pytest.fixture
def qr():
    return QrTokenService("qr-test-secret")


@pytest_asyncio.fixture
async def user(db):
    return await create_user(db, "fan@example.com", "Fan")


@pytest_asyncio.fixture
async def scanner(db):
    return await create_user(db, "door@example.com", "Door",
                             roles=("scanner",))


async def make_event(db, *, capacity=100, price=500_000, price_coins=None,
                     seated=False, event_id=None):
    return await create_event(
        db, title="Warri Live", venue="Warri", starts_at=time.time() + 3600,
        max_capacity=capacity, price=price, price_coins=price_coins,
        seated=seated, event_id=event_id,
    )


async def fund(db, user_id, coins, ref="seed"):
    await wallet.credit(db, user_id, coins, wallet.TX_ADMIN_ADJUSTMENT, ref)


async def issue_ticket(db, qr, user_id, event_id):
    """A paid card payment turned into a ticket; returns (ticket, token)."""
    async with db.gated():
        async with db.session.begin():
            pid = await payments.insert_payment(
                db.session, user_id=user_id,
                purpose=payments.PURPOSE_TICKET, amount=500_000,
                external_ref=payment_reference("TKT"), event_id=event_id,
                status=P_SUCCESS, channel="card",
            )
            payment = await payments.get_by_id_in_tx(db.session, pid)
            res = await issuance.issue_for_payment_in_tx(db.session, qr,
                                                         payment)
    return res.ticket, res.token
