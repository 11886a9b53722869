import asyncio
from decimal import Decimal

import pytest

from fanpass.errors import ConflictError, FailureKind
from fanpass.model import banks, wallet, withdrawals
from fanpass.model.identity import create_user
from fanpass.model.orm import W_PAID, W_PROCESSING, W_REJECTED

from conftest import fund

RATE = Decimal("0.5")
MIN = 100_000


async def verified_account(db, user_id, verified=True):
    acct = await banks.save_account(
        db, user_id=user_id, bank_code="058", account_number="0123456789",
        account_name="ADA FAN", verified=verified,
    )
    return acct["id"]


async def request(db, user_id, account_id, coins):
    return await withdrawals.request_withdrawal(
        db, user_id=user_id, bank_account_id=account_id, amount_coins=coins,
        rate=RATE, min_coins=MIN,
    )


@pytest.mark.asyncio
async def test_request_holds_the_coins(db, user):
    await fund(db, user, 150_000)
    acct = await verified_account(db, user)

    wd = await request(db, user, acct, 100_000)

    assert wd["status"] == "pending"
    assert wd["amount_naira"] == "50000.00"
    assert wd["reference_code"].startswith("WD-")
    w = await wallet.get_wallet(db, user)
    assert w["balance_coins"] == 50_000
    hold = [h for h in await wallet.history(db, user)
            if h["type"] == wallet.TX_WITHDRAWAL]
    assert len(hold) == 1
    assert hold[0]["amount"] == -100_000
    assert hold[0]["ref_id"] == wd["id"]


@pytest.mark.asyncio
async def test_insufficient_balance_leaves_wallet_alone(db, user):
    await fund(db, user, 50_000)
    acct = await verified_account(db, user)

    with pytest.raises(ConflictError) as exc:
        await request(db, user, acct, 100_000)

    assert exc.value.kind is FailureKind.INSUFFICIENT_BALANCE
    assert (await wallet.get_wallet(db, user))["balance_coins"] == 50_000
    assert await withdrawals.list_withdrawals(db, user_id=user) == []


@pytest.mark.asyncio
async def test_check_order(db, user):
    acct = await verified_account(db, user, verified=False)

    with pytest.raises(ConflictError) as below:
        await request(db, user, acct, 99_999)
    assert below.value.kind is FailureKind.BELOW_MINIMUM

    with pytest.raises(ConflictError) as unverified:
        await request(db, user, acct, 100_000)
    assert unverified.value.kind is FailureKind.UNVERIFIED_ACCOUNT


@pytest.mark.asyncio
async def test_cannot_use_someone_elses_account(db, user):
    other = await create_user(db, "other@example.com")
    acct = await verified_account(db, other)
    await fund(db, user, 200_000)

    with pytest.raises(ConflictError) as exc:
        await request(db, user, acct, 100_000)
    assert exc.value.kind is FailureKind.UNVERIFIED_ACCOUNT


@pytest.mark.asyncio
async def test_one_open_request_per_user(db, user):
    await fund(db, user, 300_000)
    acct = await verified_account(db, user)
    first = await request(db, user, acct, 100_000)

    with pytest.raises(ConflictError) as exc:
        await request(db, user, acct, 100_000)

    assert exc.value.kind is FailureKind.PENDING_EXISTS
    assert exc.value.extra["reference_code"] == first["reference_code"]
    assert (await wallet.get_wallet(db, user))["balance_coins"] == 200_000


@pytest.mark.asyncio
async def test_concurrent_requests_one_wins(store, user):
    setup = store()
    await fund(setup, user, 300_000)
    acct = await verified_account(setup, user)

    async def one():
        try:
            return await request(store(), user, acct, 100_000)
        except ConflictError as e:
            return e.kind

    results = await asyncio.gather(one(), one(), one())

    won = [r for r in results if isinstance(r, dict)]
    lost = [r for r in results if r is FailureKind.PENDING_EXISTS]
    assert len(won) == 1
    assert len(lost) == 2
    assert (await wallet.get_wallet(setup, user))["balance_coins"] == 200_000


@pytest.mark.asyncio
async def test_admin_pays_out(db, user, scanner):
    await fund(db, user, 100_000)
    acct = await verified_account(db, user)
    wd = await request(db, user, acct, 100_000)

    processing = await withdrawals.transition(db, wd["id"], "process",
                                              scanner)
    assert processing["status"] == W_PROCESSING
    paid = await withdrawals.transition(db, wd["id"], "pay", scanner,
                                        note="sent via bank")
    assert paid["status"] == W_PAID
    assert paid["admin_note"] == "sent via bank"
    assert paid["amount_naira"] == "50000.00"

    with pytest.raises(ConflictError) as exc:
        await withdrawals.transition(db, wd["id"], "reject", scanner)
    assert exc.value.kind is FailureKind.ALREADY_PROCESSED
    assert (await wallet.get_wallet(db, user))["balance_coins"] == 0

    # a settled request no longer blocks a new one
    await fund(db, user, 100_000, ref="seed-2")
    assert (await request(db, user, acct, 100_000))["status"] == "pending"


@pytest.mark.asyncio
async def test_reject_refunds_through_the_ledger(db, user, scanner):
    await fund(db, user, 120_000)
    acct = await verified_account(db, user)
    wd = await request(db, user, acct, 100_000)

    out = await withdrawals.transition(db, wd["id"], "reject", scanner,
                                       note="name mismatch")

    assert out["status"] == W_REJECTED
    assert (await wallet.get_wallet(db, user))["balance_coins"] == 120_000
    types = [h["type"] for h in await wallet.history(db, user)]
    assert wallet.TX_REFUND in types and wallet.TX_WITHDRAWAL in types
    assert (await wallet.audit(db, user))["ledger_sum"] == 120_000
