from datetime import timedelta

import pytest

from ticket_engine import holds, issuer, orders
from ticket_engine.clock import utcnow
from ticket_engine.config import get_settings
from ticket_engine.errors import OrderStateConflict
from ticket_engine.models import TICKET_ACTIVE, TICKET_EXPIRED
from ticket_engine.security import verify_qr_token
from ticket_engine.worker import run_sweep
from tests.helpers import create_event, create_tier, paid_order, pay


def test_unpaid_order_cannot_be_issued(db):
    ev = create_event(db)
    tier = create_tier(db, ev.id)
    hold = holds.create_hold(db, "user-a", tier.id, 1)
    order = orders.create_order(db, "user-a", ev.id, [hold.id])

    with pytest.raises(OrderStateConflict):
        issuer.issue_for_order(db, order.id)


def test_one_ticket_per_unit_and_reissue_is_stable(db):
    ev = create_event(db)
    ga = create_tier(db, ev.id, name="GA")
    vip = create_tier(db, ev.id, name="VIP", price="120.00")
    h1 = holds.create_hold(db, "user-a", ga.id, 3)
    h2 = holds.create_hold(db, "user-a", vip.id, 1)
    order = orders.create_order(db, "user-a", ev.id, [h1.id, h2.id])
    pay(db, order)

    first = issuer.issue_for_order(db, order.id)
    second = issuer.issue_for_order(db, order.id)

    assert len(first) == 4
    assert [t.id for t in first] == [t.id for t in second]
    assert sorted(t.sequence for t in first if t.tier_id == ga.id) == [1, 2, 3]
    assert [t.sequence for t in first if t.tier_id == vip.id] == [1]
    assert all(t.status == TICKET_ACTIVE and t.user_id == "user-a" for t in first)


def test_qr_token_carries_ticket_claims(db):
    ev = create_event(db)
    tier = create_tier(db, ev.id)
    _, tickets = paid_order(db, "user-a", tier, quantity=1)
    ticket = tickets[0]

    claims = verify_qr_token(ticket.qr_token, get_settings().TICKET_SIGNING_SECRET)

    assert claims["ticket_id"] == ticket.id
    assert claims["event_id"] == ev.id
    assert claims["tier_id"] == tier.id
    assert claims["user_id"] == "user-a"


def test_tokens_signed_with_another_secret_are_rejected(db):
    ev = create_event(db)
    tier = create_tier(db, ev.id)
    _, tickets = paid_order(db, "user-a", tier)

    with pytest.raises(ValueError, match="INVALID_TOKEN"):
        verify_qr_token(tickets[0].qr_token, "some-other-secret")


def test_tickets_for_user_filters_by_status(db):
    ev = create_event(db)
    tier = create_tier(db, ev.id)
    paid_order(db, "user-a", tier, quantity=2)
    paid_order(db, "user-b", tier, quantity=1)

    assert len(issuer.tickets_for_user(db, "user-a")) == 2
    assert len(issuer.tickets_for_user(db, "user-a", status=TICKET_ACTIVE)) == 2
    assert issuer.tickets_for_user(db, "user-a", status="used") == []


def test_sweep_expires_tickets_for_ended_events(db):
    ends = utcnow() + timedelta(days=31)
    ev = create_event(db, ends_at=ends)
    tier = create_tier(db, ev.id)
    _, tickets = paid_order(db, "user-a", tier, quantity=2)

    assert run_sweep(db, now=ends - timedelta(hours=1))["tickets_expired"] == 0
    result = run_sweep(db, now=ends + timedelta(hours=1))

    assert result["tickets_expired"] == 2
    for t in tickets:
        db.refresh(t)
        assert t.status == TICKET_EXPIRED
