import asyncio

import pytest
from sqlalchemy import text

from fanpass.errors import ConflictError, FailureKind, NotFoundError
from fanpass.helpers import payment_reference
from fanpass.model import events, issuance, payments, wallet
from fanpass.model.identity import create_user
from fanpass.model.orm import I_FAILED, I_ISSUED, P_SUCCESS, T_REFUNDED

from conftest import fund, make_event


async def paid_ticket_payment(db, user_id, event_id, amount=500_000):
    async with db.gated():
        async with db.session.begin():
            pid = await payments.insert_payment(
                db.session, user_id=user_id,
                purpose=payments.PURPOSE_TICKET, amount=amount,
                external_ref=payment_reference("TKT"), event_id=event_id,
                status=P_SUCCESS, channel="card",
            )
    return await payments.get_by_id(db, pid)


async def issue(db, qr, payment):
    async with db.gated():
        async with db.session.begin():
            return await issuance.issue_for_payment_in_tx(db.session, qr,
                                                          payment)


@pytest.mark.asyncio
async def test_issues_one_ticket_and_counts_the_seat(db, qr, user):
    ev = await make_event(db, capacity=10)
    payment = await paid_ticket_payment(db, user, ev["id"])

    res = await issue(db, qr, payment)

    assert res.created is True
    assert res.ticket["status"] == "unused"
    assert res.ticket["ticket_number"].startswith("ELT-")
    assert res.ticket["seating_assignment"] is None
    assert "qr_token_hash" not in res.ticket
    assert (await events.get_event(db, ev["id"]))["tickets_sold"] == 1
    assert (await payments.get_by_id(db, payment["id"]))[
        "issuance_status"] == I_ISSUED


@pytest.mark.asyncio
async def test_second_issue_returns_the_same_ticket(db, qr, user):
    ev = await make_event(db, capacity=10)
    payment = await paid_ticket_payment(db, user, ev["id"])

    first = await issue(db, qr, payment)
    second = await issue(db, qr, payment)

    assert second.created is False
    assert second.token is None
    assert second.ticket["id"] == first.ticket["id"]
    assert (await events.get_event(db, ev["id"]))["tickets_sold"] == 1


@pytest.mark.asyncio
async def test_full_event_keeps_payment_and_flags_it(db, qr, user):
    ev = await make_event(db, capacity=0)
    payment = await paid_ticket_payment(db, user, ev["id"])

    res = await issue(db, qr, payment)

    assert res.ticket is None
    assert res.failure is FailureKind.EVENT_FULL
    stored = await payments.get_by_id(db, payment["id"])
    assert stored["status"] == P_SUCCESS
    assert stored["issuance_status"] == I_FAILED
    assert stored["issuance_error"] == "EventFull"
    assert (await events.get_event(db, ev["id"]))["tickets_sold"] == 0

    pending = await payments.list_unreconciled(db)
    assert [p["id"] for p in pending] == [payment["id"]]


@pytest.mark.asyncio
async def test_retry_after_capacity_is_raised(db, qr, user):
    ev = await make_event(db, capacity=0)
    payment = await paid_ticket_payment(db, user, ev["id"])
    await issue(db, qr, payment)

    with pytest.raises(ConflictError) as exc:
        await issuance.retry_issuance(db, qr, payment["id"])
    assert exc.value.kind is FailureKind.EVENT_FULL

    async with db.session.begin():
        await db.session.execute(
            text("UPDATE events SET max_capacity=1 WHERE id=:id"),
            {"id": ev["id"]},
        )
    res = await issuance.retry_issuance(db, qr, payment["id"])
    assert res.ticket is not None
    assert await payments.list_unreconciled(db) == []


@pytest.mark.asyncio
async def test_capacity_holds_under_concurrent_issuance(store, qr):
    setup = store()
    ev = await make_event(setup, capacity=3)
    pays = []
    for i in range(8):
        uid = await create_user(setup, f"fan{i}@example.com")
        pays.append(await paid_ticket_payment(setup, uid, ev["id"]))

    results = await asyncio.gather(*(issue(store(), qr, p) for p in pays))

    issued = [r for r in results if r.ticket is not None]
    full = [r for r in results if r.failure is FailureKind.EVENT_FULL]
    assert len(issued) == 3
    assert len(full) == 5
    assert (await events.get_event(setup, ev["id"]))["tickets_sold"] == 3


@pytest.mark.asyncio
async def test_seating_by_tier(db, qr):
    ev = await make_event(db, capacity=10, seated=True)
    elder = await create_user(db, "elder@example.com", tier="elder")
    fan = await create_user(db, "grass@example.com")

    vip = await issue(db, qr, await paid_ticket_payment(db, elder, ev["id"]))
    gen = await issue(db, qr, await paid_ticket_payment(db, fan, ev["id"]))
    gen2 = await issue(db, qr, await paid_ticket_payment(db, fan, ev["id"]))

    assert vip.ticket["seating_priority"] == 800
    assert vip.ticket["seating_assignment"] == "VIP-0001"
    assert gen.ticket["seating_assignment"] == "GEN-0001"
    assert gen2.ticket["seating_assignment"] == "GEN-0002"


@pytest.mark.asyncio
async def test_buy_with_coins(db, qr, user):
    ev = await make_event(db, capacity=5, price_coins=2_000)
    await fund(db, user, 5_000)

    res = await issuance.purchase_with_coins(db, qr, user_id=user,
                                             event_id=ev["id"])

    async with db.session.begin():
        stored_hash = (await db.session.execute(
            text("SELECT qr_token_hash FROM tickets WHERE id=:id"),
            {"id": res.ticket["id"]},
        )).scalar_one()
    assert qr.verify(res.token, stored_hash)
    assert stored_hash != res.token
    assert (await wallet.get_wallet(db, user))["balance_coins"] == 3_000
    assert (await events.get_event(db, ev["id"]))["tickets_sold"] == 1


@pytest.mark.asyncio
async def test_buy_with_coins_full_event_rolls_back_debit(db, qr, user):
    ev = await make_event(db, capacity=0, price_coins=2_000)
    await fund(db, user, 5_000)

    with pytest.raises(ConflictError) as exc:
        await issuance.purchase_with_coins(db, qr, user_id=user,
                                           event_id=ev["id"])

    assert exc.value.kind is FailureKind.EVENT_FULL
    assert (await wallet.get_wallet(db, user))["balance_coins"] == 5_000
    assert await issuance.list_tickets(db, user) == []


@pytest.mark.asyncio
async def test_buy_with_coins_needs_balance(db, qr, user):
    ev = await make_event(db, capacity=5, price_coins=2_000)
    with pytest.raises(wallet.InsufficientBalance):
        await issuance.purchase_with_coins(db, qr, user_id=user,
                                           event_id=ev["id"])
    assert (await events.get_event(db, ev["id"]))["tickets_sold"] == 0


@pytest.mark.asyncio
async def test_refund_coin_ticket_credits_back_once(db, qr, user, scanner):
    ev = await make_event(db, capacity=5, price_coins=2_000)
    await fund(db, user, 2_000)
    res = await issuance.purchase_with_coins(db, qr, user_id=user,
                                             event_id=ev["id"])

    out = await issuance.refund_ticket(db, res.ticket["id"],
                                       admin_id=scanner)
    assert out["ticket"]["status"] == T_REFUNDED
    assert out["refunded_coins"] == 2_000
    assert (await wallet.get_wallet(db, user))["balance_coins"] == 2_000

    with pytest.raises(ConflictError):
        await issuance.refund_ticket(db, res.ticket["id"], admin_id=scanner)
    # the seat is not released
    assert (await events.get_event(db, ev["id"]))["tickets_sold"] == 1


@pytest.mark.asyncio
async def test_rotate_token_replaces_the_old_one(db, qr, user):
    ev = await make_event(db)
    res = await issue(db, qr, await paid_ticket_payment(db, user, ev["id"]))

    new_token = await issuance.rotate_token(db, qr, res.ticket["id"], user)

    assert new_token != res.token
    other = await create_user(db, "other@example.com")
    with pytest.raises(NotFoundError):
        await issuance.rotate_token(db, qr, res.ticket["id"], other)
