from .clock import as_utc
from .models import CartHold, Order, Refund, Ticket, TicketTier, TicketTransfer


def _ts(value) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def hold_out(h: CartHold) -> dict:
    return {
        "hold_id": h.id,
        "user_id": h.user_id,
        "tier_id": h.tier_id,
        "quantity": h.quantity,
        "expires_at": _ts(h.expires_at),
        "released": h.released,
        "release_reason": h.release_reason,
        "order_id": h.order_id,
    }


def tier_out(t: TicketTier) -> dict:
    return {
        "tier_id": t.id,
        "event_id": t.event_id,
        "name": t.name,
        "price": str(t.price),
        "currency": t.currency,
        "total_quantity": t.total_quantity,
        "sold_quantity": t.sold_quantity,
        "held_quantity": t.held_quantity,
        "access_level": t.access_level,
        "is_active": t.is_active,
    }


def order_out(o: Order) -> dict:
    return {
        "order_id": o.id,
        "user_id": o.user_id,
        "event_id": o.event_id,
        "status": o.status,
        "line_items": [
            {"tier_id": i.tier_id, "quantity": i.quantity, "unit_price": str(i.unit_price)}
            for i in o.line_items
        ],
        "promo_code_id": o.promo_code_id,
        "currency": o.currency,
        "subtotal": str(o.subtotal),
        "discount_amount": str(o.discount_amount),
        "total": str(o.total),
        "refunded_amount": str(o.refunded_amount),
        "provider_ref": o.provider_ref,
        "metadata": o.extra or {},
        "created_at": _ts(o.created_at),
        "paid_at": _ts(o.paid_at),
    }


def ticket_out(t: Ticket) -> dict:
    return {
        "ticket_id": t.id,
        "order_id": t.order_id,
        "tier_id": t.tier_id,
        "event_id": t.event_id,
        "user_id": t.user_id,
        "qr_token": t.qr_token,
        "status": t.status,
        "used_at": _ts(t.used_at),
    }


def transfer_out(t: TicketTransfer) -> dict:
    return {
        "transfer_id": t.id,
        "ticket_id": t.ticket_id,
        "from_user_id": t.from_user_id,
        "to_user_id": t.to_user_id,
        "status": t.status,
        "message": t.message,
        "expires_at": _ts(t.expires_at),
        "created_at": _ts(t.created_at),
        "responded_at": _ts(t.responded_at),
    }


def refund_out(r: Refund) -> dict:
    return {
        "refund_id": r.id,
        "order_id": r.order_id,
        "provider_refund_id": r.provider_refund_id,
        "amount": str(r.amount),
        "reason": r.reason,
        "ticket_ids": list(r.ticket_ids or []),
        "status": r.status,
        "source": r.source,
    }
