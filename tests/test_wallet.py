import asyncio

import pytest
from sqlalchemy import text

from fanpass.errors import FailureKind, InvariantError
from fanpass.model import wallet

from conftest import fund


@pytest.mark.asyncio
async def test_credit_replay_is_a_noop(db, user):
    first = await wallet.credit(db, user, 500, wallet.TX_PURCHASE, "pay-1")
    again = await wallet.credit(db, user, 500, wallet.TX_PURCHASE, "pay-1")

    assert first.applied is True
    assert first.balance == 500
    assert again.applied is False
    assert again.balance == 500
    assert first.failure is None
    assert again.failure is FailureKind.DUPLICATE_REFERENCE

    w = await wallet.get_wallet(db, user)
    assert w["balance_coins"] == 500
    assert w["total_earned"] == 500
    assert len(await wallet.history(db, user)) == 1


@pytest.mark.asyncio
async def test_same_ref_different_type_both_apply(db, user):
    await wallet.credit(db, user, 100, wallet.TX_PURCHASE, "x")
    res = await wallet.credit(db, user, 50, wallet.TX_BONUS, "x")
    assert res.applied is True
    assert res.balance == 150


@pytest.mark.asyncio
async def test_debit_insufficient_leaves_nothing_behind(db, user):
    await fund(db, user, 100)

    with pytest.raises(wallet.InsufficientBalance) as exc:
        await wallet.debit(db, user, 101, wallet.TX_SPEND, "buy-1")
    assert exc.value.kind is FailureKind.INSUFFICIENT_BALANCE
    assert exc.value.status_code == 400

    w = await wallet.get_wallet(db, user)
    assert w["balance_coins"] == 100
    assert w["total_spent"] == 0
    # the ledger row written before the failed decrement was rolled back
    types = [h["type"] for h in await wallet.history(db, user)]
    assert types == [wallet.TX_ADMIN_ADJUSTMENT]


@pytest.mark.asyncio
async def test_debit_to_exactly_zero(db, user):
    await fund(db, user, 100)
    res = await wallet.debit(db, user, 100, wallet.TX_VOTE, "vote-1")
    assert res.applied is True
    assert res.balance == 0
    assert (await wallet.audit(db, user))["ledger_sum"] == 0


@pytest.mark.asyncio
async def test_rejects_non_positive_amounts(db, user):
    with pytest.raises(ValueError):
        await wallet.credit(db, user, 0, wallet.TX_BONUS)
    with pytest.raises(ValueError):
        await wallet.debit(db, user, -5, wallet.TX_SPEND)
    with pytest.raises(ValueError):
        await wallet.credit(db, user, 10, "gift")


@pytest.mark.asyncio
async def test_admin_adjustment_both_directions(db, user):
    await wallet.adjust(db, user, 300, "adj-1", "goodwill")
    res = await wallet.adjust(db, user, -120, "adj-2", "correction")
    assert res.balance == 180

    with pytest.raises(wallet.InsufficientBalance):
        await wallet.adjust(db, user, -1000, "adj-3")


@pytest.mark.asyncio
async def test_concurrent_debits_never_overdraw(store, user):
    setup = store()
    await fund(setup, user, 100)

    async def one(i):
        try:
            await wallet.debit(store(), user, 30, wallet.TX_SPEND, f"d-{i}")
            return True
        except wallet.InsufficientBalance:
            return False

    results = await asyncio.gather(*(one(i) for i in range(8)))

    assert sum(results) == 3
    w = await wallet.get_wallet(setup, user)
    assert w["balance_coins"] == 10
    audit = await wallet.audit(setup, user)
    assert audit == {"balance_coins": 10, "ledger_sum": 10}


@pytest.mark.asyncio
async def test_audit_flags_drift(db, user):
    await fund(db, user, 50)
    async with db.session.begin():
        await db.session.execute(text(
            "UPDATE wallets SET balance_coins = 70 WHERE user_id=:u"
        ), {"u": user})

    with pytest.raises(InvariantError):
        await wallet.audit(db, user)
