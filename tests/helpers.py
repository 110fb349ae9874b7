import hashlib
import hmac
import json
import time
import uuid
from datetime import timedelta
from decimal import Decimal

from ticket_engine import holds, orders
from ticket_engine.clock import utcnow
from ticket_engine.config import get_settings
from ticket_engine.errors import PaymentProviderError
from ticket_engine.issuer import tickets_for_order
from ticket_engine.models import Event, PromoCode, TicketTier
from ticket_engine.payments import ProviderRefund
from ticket_engine.webhooks import handle_event


def create_event(db, name="Test Event", starts_in=timedelta(days=30), ends_at=None, org_id="org_1") -> Event:
    ev = Event(name=name, org_id=org_id, starts_at=utcnow() + starts_in, ends_at=ends_at)
    db.add(ev)
    db.commit()
    return ev


def create_tier(db, event_id: str, total=10, price="50.00", name="GA", currency="USD") -> TicketTier:
    tier = TicketTier(
        event_id=event_id,
        name=name,
        price=Decimal(price),
        currency=currency,
        total_quantity=total,
        sold_quantity=0,
        held_quantity=0,
    )
    db.add(tier)
    db.commit()
    return tier


def create_promo(db, code="SAVE10", discount_type="percentage", value="10", event_id=None, max_uses=None, expires_at=None) -> PromoCode:
    promo = PromoCode(
        code=code,
        event_id=event_id,
        discount_type=discount_type,
        discount_value=Decimal(value),
        max_uses=max_uses,
        used_count=0,
        expires_at=expires_at,
    )
    db.add(promo)
    db.commit()
    return promo


def pay(db, order, provider_event_id=None, payment_ref=None):
    payload = {
        "object": "payment_intent",
        "id": payment_ref or f"pi_{uuid.uuid4().hex[:12]}",
        "metadata": {"order_id": order.id},
    }
    return handle_event(db, provider_event_id or f"evt_{uuid.uuid4().hex}", "payment_succeeded", payload)


def paid_order(db, user_id: str, tier, quantity=1, promo_code=None):
    """Hold -> order -> payment webhook. Returns (order, tickets)."""
    hold = holds.create_hold(db, user_id, tier.id, quantity)
    order = orders.create_order(db, user_id, tier.event_id, [hold.id], promo_code=promo_code)
    pay(db, order)
    db.refresh(order)
    return order, tickets_for_order(db, order.id)


def sign_webhook(event: dict, secret: str | None = None, timestamp: int | None = None) -> tuple[bytes, str]:
    secret = secret or get_settings().STRIPE_WEBHOOK_SECRET
    body = json.dumps(event)
    ts = timestamp or int(time.time())
    sig = hmac.new(secret.encode("utf-8"), f"{ts}.{body}".encode("utf-8"), hashlib.sha256).hexdigest()
    return body.encode("utf-8"), f"t={ts},v1={sig}"


class FakeProvider:
    def __init__(self, fail: bool = False, on_refund=None):
        self.fail = fail
        self.on_refund = on_refund
        self.calls = []

    def refund(self, payment_ref, amount, currency, idempotency_key, metadata):
        self.calls.append({
            "payment_ref": payment_ref,
            "amount": amount,
            "currency": currency,
            "idempotency_key": idempotency_key,
            "metadata": metadata,
        })
        if self.fail:
            raise PaymentProviderError("card network unavailable")
        confirmed = ProviderRefund(id=f"re_{uuid.uuid4().hex[:12]}", status="succeeded", amount=amount)
        # runs while the caller waits on the provider
        if self.on_refund is not None:
            self.on_refund(confirmed)
        return confirmed
