from datetime import timedelta
from decimal import Decimal

import pytest

from ticket_engine import holds, orders, promo
from ticket_engine.clock import utcnow
from ticket_engine.errors import InvalidPromoCode
from tests.helpers import create_event, create_promo, create_tier, pay


def _reason(db, code, event_id, user_id="user-a"):
    with pytest.raises(InvalidPromoCode) as exc:
        promo.validate(db, code, event_id, user_id)
    return exc.value.reason


def test_unknown_and_inactive_codes_are_not_found(db):
    ev = create_event(db)
    p = create_promo(db, code="OFF")
    p.is_active = False
    db.commit()

    assert _reason(db, "MISSING", ev.id) == "not-found"
    assert _reason(db, "OFF", ev.id) == "not-found"


def test_rules_apply_in_order(db):
    ev = create_event(db)
    other = create_event(db, name="Other")
    # expired and scoped elsewhere: expiry is reported first
    create_promo(
        db, code="OLD", event_id=other.id, max_uses=1, expires_at=utcnow() - timedelta(days=1)
    )
    create_promo(db, code="ELSEWHERE", event_id=other.id, max_uses=1)
    used = create_promo(db, code="USED", event_id=ev.id, max_uses=1)
    used.used_count = 1
    db.commit()

    assert _reason(db, "OLD", ev.id) == "expired"
    assert _reason(db, "ELSEWHERE", ev.id) == "wrong-event"
    assert _reason(db, "USED", ev.id) == "usage-limit"


def test_already_redeemed_is_per_user(db):
    ev = create_event(db)
    tier = create_tier(db, ev.id, total=10, price="45.00")
    p = create_promo(db, code="SAVE10", event_id=ev.id, max_uses=100)
    p.used_count = 99
    db.commit()

    hold = holds.create_hold(db, "user-x", tier.id, 1)
    orders.create_order(db, "user-x", ev.id, [hold.id], promo_code="SAVE10")

    assert _reason(db, "SAVE10", ev.id, user_id="user-x") == "already-redeemed"

    result = promo.validate(db, "SAVE10", ev.id, "user-y")
    assert result.valid
    assert result.discount_type == "percentage"
    assert result.discount_value == Decimal("10")


def test_single_use_code_blocked_by_own_pending_order_only(db):
    ev = create_event(db)
    tier = create_tier(db, ev.id, total=10, price="45.00")
    p = create_promo(db, code="SAVE10", event_id=ev.id, max_uses=1)

    hold = holds.create_hold(db, "user-x", tier.id, 1)
    order = orders.create_order(db, "user-x", ev.id, [hold.id], promo_code="SAVE10")
    assert order.total == Decimal("40.50")

    db.refresh(p)
    assert p.used_count == 0
    assert _reason(db, "SAVE10", ev.id, user_id="user-x") == "already-redeemed"
    assert promo.validate(db, "SAVE10", ev.id, "user-y").valid


def test_cancelled_order_frees_the_code_for_the_same_user(db):
    ev = create_event(db)
    tier = create_tier(db, ev.id)
    create_promo(db, code="SAVE10", event_id=ev.id)

    hold = holds.create_hold(db, "user-x", tier.id, 1)
    order = orders.create_order(db, "user-x", ev.id, [hold.id], promo_code="SAVE10")
    orders.cancel_order(db, order.id)

    assert promo.validate(db, "SAVE10", ev.id, "user-x").valid


def test_redemption_counted_on_payment_not_on_order(db):
    ev = create_event(db)
    tier = create_tier(db, ev.id)
    p = create_promo(db, code="SAVE10", event_id=ev.id, max_uses=5)

    hold = holds.create_hold(db, "user-x", tier.id, 1)
    order = orders.create_order(db, "user-x", ev.id, [hold.id], promo_code="SAVE10")
    db.refresh(p)
    assert p.used_count == 0

    pay(db, order)
    db.refresh(p)
    assert p.used_count == 1


def test_apply_discount_rounds_half_up_and_caps_at_subtotal():
    pct = promo.PromoResult("p1", "PCT", "percentage", Decimal("10"))
    fixed = promo.PromoResult("p2", "FIX", "fixed", Decimal("80"))

    assert promo.apply_discount(Decimal("45.55"), pct) == Decimal("4.56")
    assert promo.apply_discount(Decimal("50.00"), fixed) == Decimal("50.00")
    assert promo.apply_discount(Decimal("50.00"), None) == Decimal("0.00")


def test_record_redemption_respects_max_uses(db):
    p = create_promo(db, code="ONCE", max_uses=1)

    assert promo.record_redemption(db, p.id) is True
    assert promo.record_redemption(db, p.id) is False
    db.commit()

    db.refresh(p)
    assert p.used_count == 1
