import asyncio

import pytest

from fanpass.model import admission, events, issuance
from fanpass.model.orm import S_ADMITTED, S_DUPLICATE, S_EXPIRED, S_INVALID

from conftest import issue_ticket, make_event


@pytest.mark.asyncio
async def test_admit_then_duplicate(db, qr, user, scanner):
    ev = await make_event(db)
    ticket, token = await issue_ticket(db, qr, user, ev["id"])

    first = await admission.admit(db, qr, ticket_id=ticket["id"],
                                  scanner_id=scanner, token=token)
    second = await admission.admit(db, qr, ticket_id=ticket["id"],
                                   scanner_id=scanner, token=token)

    assert first.admitted is True
    assert first.result == S_ADMITTED
    assert first.ticket["status"] == "admitted"
    assert first.ticket["admitted_by"] == scanner
    assert first.warnings == []

    assert second.admitted is False
    assert second.result == S_DUPLICATE
    assert second.warnings == ["Ticket already admitted"]
    assert (await events.get_event(db, ev["id"]))["checked_in"] == 1


@pytest.mark.asyncio
async def test_admitted_ticket_is_duplicate_for_any_token(db, qr, user,
                                                          scanner):
    ev = await make_event(db)
    ticket, token = await issue_ticket(db, qr, user, ev["id"])
    await admission.admit(db, qr, ticket_id=ticket["id"], scanner_id=scanner,
                          token=token)

    res = await admission.admit(db, qr, ticket_id=ticket["id"],
                                scanner_id=scanner, token="forged")
    assert res.result == S_DUPLICATE


@pytest.mark.asyncio
async def test_rejections(db, qr, user, scanner):
    ev = await make_event(db)
    other = await make_event(db)
    ticket, token = await issue_ticket(db, qr, user, ev["id"])

    bad = await admission.admit(db, qr, ticket_id=ticket["id"],
                                scanner_id=scanner, token="nope")
    assert (bad.result, bad.warnings) == (S_INVALID, ["Invalid ticket token"])

    wrong = await admission.admit(db, qr, ticket_id=ticket["id"],
                                  scanner_id=scanner, token=token,
                                  event_id=other["id"])
    assert wrong.result == S_INVALID
    assert wrong.warnings == ["Ticket is not valid for this event"]

    missing = await admission.admit(db, qr, ticket_id="no-such-ticket",
                                    scanner_id=scanner, token=token)
    assert missing.result == S_INVALID
    assert missing.ticket is None
    assert missing.warnings == ["Ticket not found"]

    # none of the above consumed the ticket
    ok = await admission.admit(db, qr, ticket_id=ticket["id"],
                               scanner_id=scanner, token=token,
                               event_id=ev["id"])
    assert ok.admitted is True


@pytest.mark.asyncio
async def test_refunded_ticket_is_invalid(db, qr, user, scanner):
    ev = await make_event(db)
    ticket, token = await issue_ticket(db, qr, user, ev["id"])
    await issuance.refund_ticket(db, ticket["id"], admin_id=scanner)

    res = await admission.admit(db, qr, ticket_id=ticket["id"],
                                scanner_id=scanner, token=token)
    assert res.result == S_INVALID
    assert res.warnings == ["Ticket status is refunded"]


@pytest.mark.asyncio
async def test_cancelled_event_is_expired(db, qr, user, scanner):
    ev = await make_event(db)
    ticket, token = await issue_ticket(db, qr, user, ev["id"])
    await events.set_status(db, ev["id"], "cancelled")

    res = await admission.admit(db, qr, ticket_id=ticket["id"],
                                scanner_id=scanner, token=token)
    assert res.result == S_EXPIRED
    assert res.ticket["status"] == "unused"


@pytest.mark.asyncio
async def test_concurrent_scanners_admit_exactly_once(store, qr, user,
                                                      scanner):
    setup = store()
    ev = await make_event(setup)
    ticket, token = await issue_ticket(setup, qr, user, ev["id"])

    results = await asyncio.gather(*(
        admission.admit(store(), qr, ticket_id=ticket["id"],
                        scanner_id=f"{scanner}-{i}", token=token)
        for i in range(5)
    ))

    admitted = [r for r in results if r.admitted]
    dupes = [r for r in results if r.result == S_DUPLICATE]
    assert len(admitted) == 1
    assert len(dupes) == 4
    assert all(r.warnings == ["Ticket already admitted"] for r in dupes)

    log = await admission.scan_history(setup, ev["id"])
    assert len(log) == 5
    assert sorted(r["result"] for r in log) == [S_ADMITTED] + [S_DUPLICATE] * 4
    assert (await events.get_event(setup, ev["id"]))["checked_in"] == 1


@pytest.mark.asyncio
async def test_every_attempt_is_logged(db, qr, user, scanner):
    ev = await make_event(db)
    ticket, token = await issue_ticket(db, qr, user, ev["id"])

    await admission.admit(db, qr, ticket_id=ticket["id"], scanner_id=scanner,
                          token="bad")
    await admission.admit(db, qr, ticket_id=ticket["id"], scanner_id=scanner,
                          token=token)
    await admission.admit(db, qr, ticket_id=ticket["id"], scanner_id=scanner,
                          token=token)

    log = await admission.scan_history(db, ev["id"])
    # newest first
    assert [r["result"] for r in log] == [S_DUPLICATE, S_ADMITTED, S_INVALID]
    assert log[2]["reason"] == "Invalid ticket token"
