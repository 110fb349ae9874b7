from decimal import Decimal

import pytest
from sqlalchemy import func, select

from ticket_engine import holds, inventory, orders, refunds, transfers
from ticket_engine.errors import PaymentProviderError, RefundIneligible, RefundInProgress, RefundNotAuthorized
from ticket_engine.issuer import tickets_for_order
from ticket_engine.models import (
    ORDER_PAID,
    ORDER_PARTIALLY_REFUNDED,
    ORDER_REFUNDED,
    TICKET_ACTIVE,
    TICKET_EXPIRED,
    TICKET_REFUNDED,
    TICKET_USED,
    TRANSFER_CANCELLED,
    Refund,
)
from ticket_engine.scanning import scan_ticket
from ticket_engine.webhooks import handle_event
from tests.helpers import FakeProvider, create_event, create_promo, create_tier, paid_order


@pytest.fixture
def tier(db):
    ev = create_event(db)
    return create_tier(db, ev.id, total=10, price="50.00")


def _refund_rows(db) -> int:
    count = db.execute(select(func.count(Refund.id))).scalar_one()
    db.commit()
    return count


def test_partial_then_full_refund(db, tier, provider):
    order, tickets = paid_order(db, "user-a", tier, quantity=4)

    first = refunds.refund(db, provider, order.id, "cannot attend", ticket_ids=[tickets[0].id, tickets[1].id])

    db.refresh(order)
    assert first.amount == Decimal("100.00")
    assert first.source == "api"
    assert order.status == ORDER_PARTIALLY_REFUNDED
    assert order.refunded_amount == Decimal("100.00")
    statuses = [t.status for t in tickets_for_order(db, order.id)]
    assert statuses.count(TICKET_REFUNDED) == 2
    assert statuses.count(TICKET_ACTIVE) == 2

    call = provider.calls[0]
    assert call["payment_ref"] == order.provider_ref
    assert call["idempotency_key"] == f"refund-{first.id}"

    second = refunds.refund(db, provider, order.id, "rest")
    db.refresh(order)
    assert second.amount == Decimal("100.00")
    assert order.status == ORDER_REFUNDED
    assert order.refunded_amount == order.total

    with pytest.raises(RefundIneligible):
        refunds.refund(db, provider, order.id, "again")


def test_full_refund_does_not_restock(db, tier, provider):
    order, _ = paid_order(db, "user-a", tier, quantity=2)

    refunds.refund(db, provider, order.id, "event moved")

    db.refresh(order)
    assert order.status == ORDER_REFUNDED
    snap = inventory.snapshot(db, tier.id)
    db.commit()
    assert snap["sold"] == 2
    assert snap["available"] == 8


def test_provider_failure_changes_nothing(db, tier):
    order, tickets = paid_order(db, "user-a", tier, quantity=2)
    failing = FakeProvider(fail=True)

    with pytest.raises(PaymentProviderError):
        refunds.refund(db, failing, order.id, "cannot attend")

    db.refresh(order)
    assert order.status == ORDER_PAID
    assert order.refunded_amount == Decimal("0.00")
    assert order.refund_claim_id is None
    assert all(t.status == TICKET_ACTIVE for t in tickets_for_order(db, order.id))
    assert _refund_rows(db) == 0

    # the order is free for the next attempt
    assert refunds.refund(db, FakeProvider(), order.id, "retry").amount == Decimal("100.00")


def test_discounted_order_refunds_sum_to_total(db, tier, provider):
    create_promo(db, code="SAVE10", event_id=tier.event_id)
    order, tickets = paid_order(db, "user-a", tier, quantity=2, promo_code="SAVE10")
    assert order.total == Decimal("90.00")

    one = refunds.refund(db, provider, order.id, "one", ticket_ids=[tickets[0].id])
    rest = refunds.refund(db, provider, order.id, "rest")

    assert one.amount == Decimal("50.00")
    assert rest.amount == Decimal("40.00")
    db.refresh(order)
    assert order.refunded_amount == Decimal("90.00")


def test_refund_eligibility(db, tier, provider):
    hold = holds.create_hold(db, "user-a", tier.id, 1)
    pending = orders.create_order(db, "user-a", tier.event_id, [hold.id])
    with pytest.raises(RefundIneligible):
        refunds.refund(db, provider, pending.id, "too early")

    order, tickets = paid_order(db, "user-b", tier, quantity=2)
    with pytest.raises(RefundIneligible):
        refunds.refund(db, provider, order.id, "bad ticket", ticket_ids=["not-in-order"])
    with pytest.raises(RefundIneligible):
        refunds.refund(db, provider, order.id, "too much", amount=Decimal("500.00"))
    with pytest.raises(RefundIneligible):
        refunds.refund(db, provider, order.id, "nothing", amount=Decimal("0"))

    refunds.refund(db, provider, order.id, "one", ticket_ids=[tickets[0].id])
    with pytest.raises(RefundIneligible):
        refunds.refund(db, provider, order.id, "twice", ticket_ids=[tickets[0].id])
    assert len(provider.calls) == 1


def test_refund_cancels_pending_transfer(db, tier, provider):
    order, tickets = paid_order(db, "user-a", tier, quantity=1)
    transfer = transfers.create_transfer(db, "user-a", "user-b", tickets[0].id)

    refunds.refund(db, provider, order.id, "cannot attend")

    db.refresh(transfer)
    assert transfer.status == TRANSFER_CANCELLED


def test_used_ticket_is_left_out_of_a_full_refund(db, tier, provider):
    order, tickets = paid_order(db, "user-a", tier, quantity=2)
    assert scan_ticket(db, tickets[0].qr_token, tier.event_id).status == "ACCEPTED"

    record = refunds.refund(db, provider, order.id, "rest")

    db.refresh(order)
    assert record.amount == Decimal("50.00")
    assert record.ticket_ids == [tickets[1].id]
    assert order.refunded_amount == Decimal("50.00")
    assert order.status == ORDER_PARTIALLY_REFUNDED
    statuses = {t.id: t.status for t in tickets_for_order(db, order.id)}
    assert statuses == {tickets[0].id: TICKET_USED, tickets[1].id: TICKET_REFUNDED}

    with pytest.raises(RefundIneligible):
        refunds.refund(db, provider, order.id, "again")
    assert len(provider.calls) == 1


def test_expired_ticket_keeps_its_value_out_of_the_refund(db, tier, provider):
    order, tickets = paid_order(db, "user-a", tier, quantity=3)
    tickets[0].status = TICKET_EXPIRED
    db.commit()

    with pytest.raises(RefundIneligible):
        refunds.refund(db, provider, order.id, "too late", ticket_ids=[tickets[0].id])

    record = refunds.refund(db, provider, order.id, "rest", ticket_ids=[tickets[1].id, tickets[2].id])
    assert record.amount == Decimal("100.00")
    db.refresh(order)
    assert order.refunded_amount == Decimal("100.00")
    assert order.status == ORDER_PARTIALLY_REFUNDED


def test_overlapping_refunds_reach_the_provider_once(db, session_factory, tier):
    order, _ = paid_order(db, "user-a", tier, quantity=2)
    other = session_factory()
    second_provider = FakeProvider()

    def refund_again(_confirmed):
        with pytest.raises(RefundInProgress):
            refunds.refund(other, second_provider, order.id, "double click")

    try:
        record = refunds.refund(db, FakeProvider(on_refund=refund_again), order.id, "cannot attend")
    finally:
        other.close()

    assert second_provider.calls == []
    db.refresh(order)
    assert record.amount == Decimal("100.00")
    assert record.status == "succeeded"
    assert order.refunded_amount == Decimal("100.00")
    assert order.status == ORDER_REFUNDED
    assert order.refund_claim_id is None
    assert _refund_rows(db) == 1


def test_provider_webhook_during_refund_is_counted_once(db, session_factory, tier, provider):
    order, _ = paid_order(db, "user-a", tier, quantity=2)
    other = session_factory()

    def webhook_arrives(confirmed):
        payload = {
            "object": "charge",
            "payment_intent": order.provider_ref,
            "amount": 10000,
            "amount_refunded": 10000,
            "refunds": {"data": [{"id": confirmed.id}]},
        }
        handle_event(other, "evt_early_refund", "charge.refunded", payload)

    try:
        record = refunds.refund(db, FakeProvider(on_refund=webhook_arrives), order.id, "cannot attend")
    finally:
        other.close()

    db.refresh(order)
    assert order.refunded_amount == Decimal("100.00")
    assert order.status == ORDER_REFUNDED
    assert _refund_rows(db) == 1

    # the same provider refund reported again after settlement
    again = {
        "object": "charge",
        "payment_intent": order.provider_ref,
        "amount": 10000,
        "amount_refunded": 10000,
        "refunds": {"data": [{"id": record.provider_refund_id}]},
    }
    handle_event(db, "evt_late_refund", "charge.refunded", again)
    db.refresh(order)
    assert order.refunded_amount == Decimal("100.00")
    assert _refund_rows(db) == 1


def test_lost_provider_response_keeps_the_order_claimed(db, tier, provider):
    order, _ = paid_order(db, "user-a", tier, quantity=1)

    def connection_dropped(_confirmed):
        raise ConnectionError("reset by peer")

    with pytest.raises(ConnectionError):
        refunds.refund(db, FakeProvider(on_refund=connection_dropped), order.id, "cannot attend")

    with pytest.raises(RefundInProgress):
        refunds.refund(db, provider, order.id, "retry")
    assert provider.calls == []


def test_only_buyer_or_organizer_may_refund(db, tier, provider):
    order, tickets = paid_order(db, "user-a", tier, quantity=2)

    with pytest.raises(RefundNotAuthorized):
        refunds.refund(db, provider, order.id, "not mine", requested_by="mallory")
    assert provider.calls == []

    by_buyer = refunds.refund(db, provider, order.id, "one", ticket_ids=[tickets[0].id], requested_by="user-a")
    by_organizer = refunds.refund(db, provider, order.id, "show cancelled", requested_by="org_1")
    assert by_buyer.amount == by_organizer.amount == Decimal("50.00")
