"""Domain errors raised by the engine services.

Every error carries a stable code, a user-safe message and the HTTP status
the API layer answers with. Handlers never expose anything else.
"""

from enum import Enum
from typing import Any


class ErrorCode(Enum):
    INSUFFICIENT_INVENTORY = "INSUFFICIENT_INVENTORY"
    TIER_NOT_FOUND = "TIER_NOT_FOUND"
    HOLD_NOT_FOUND = "HOLD_NOT_FOUND"
    HOLD_EXPIRED = "HOLD_EXPIRED"
    INVALID_PROMO_CODE = "INVALID_PROMO_CODE"
    WEBHOOK_SIGNATURE_INVALID = "WEBHOOK_SIGNATURE_INVALID"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    ORDER_STATE_CONFLICT = "ORDER_STATE_CONFLICT"
    TICKET_NOT_FOUND = "TICKET_NOT_FOUND"
    TRANSFER_NOT_FOUND = "TRANSFER_NOT_FOUND"
    TRANSFER_NOT_AUTHORIZED = "TRANSFER_NOT_AUTHORIZED"
    TRANSFER_EXPIRED = "TRANSFER_EXPIRED"
    TRANSFER_ALREADY_PENDING = "TRANSFER_ALREADY_PENDING"
    TRANSFER_NOT_ALLOWED = "TRANSFER_NOT_ALLOWED"
    REFUND_INELIGIBLE = "REFUND_INELIGIBLE"
    REFUND_NOT_AUTHORIZED = "REFUND_NOT_AUTHORIZED"
    REFUND_IN_PROGRESS = "REFUND_IN_PROGRESS"
    PAYMENT_PROVIDER_ERROR = "PAYMENT_PROVIDER_ERROR"
    INVALID_REQUEST = "INVALID_REQUEST"


class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    code: ErrorCode = ErrorCode.INVALID_REQUEST
    http_status: int = 400

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"

    def to_dict(self) -> dict:
        return {"error": self.code.value, "message": self.message, **self.details}


class InvalidRequest(DomainError):
    code = ErrorCode.INVALID_REQUEST
    http_status = 400


class InsufficientInventory(DomainError):
    code = ErrorCode.INSUFFICIENT_INVENTORY
    http_status = 409

    def __init__(self, tier_id: str, requested: int) -> None:
        super().__init__("Not enough tickets available", tier_id=tier_id, requested=requested)


class TierNotFound(DomainError):
    code = ErrorCode.TIER_NOT_FOUND
    http_status = 404

    def __init__(self, tier_id: str) -> None:
        super().__init__("Ticket tier not found or inactive", tier_id=tier_id)


class HoldNotFound(DomainError):
    code = ErrorCode.HOLD_NOT_FOUND
    http_status = 404

    def __init__(self, hold_id: str) -> None:
        super().__init__("Cart hold not found", hold_id=hold_id)


class HoldExpired(DomainError):
    code = ErrorCode.HOLD_EXPIRED
    http_status = 409

    def __init__(self, hold_id: str | None = None, message: str = "Cart hold expired or already used") -> None:
        super().__init__(message, hold_id=hold_id)


class InvalidPromoCode(DomainError):
    code = ErrorCode.INVALID_PROMO_CODE
    http_status = 422

    NOT_FOUND = "not-found"
    EXPIRED = "expired"
    WRONG_EVENT = "wrong-event"
    USAGE_LIMIT = "usage-limit"
    ALREADY_REDEEMED = "already-redeemed"

    MESSAGES = {
        NOT_FOUND: "Promo code not found",
        EXPIRED: "Promo code expired",
        WRONG_EVENT: "Promo code not valid for this event",
        USAGE_LIMIT: "Promo code usage limit reached",
        ALREADY_REDEEMED: "Promo code already redeemed",
    }

    def __init__(self, reason: str) -> None:
        super().__init__(self.MESSAGES.get(reason, "Invalid promo code"), reason=reason)
        self.reason = reason


class WebhookSignatureInvalid(DomainError):
    code = ErrorCode.WEBHOOK_SIGNATURE_INVALID
    http_status = 400

    def __init__(self) -> None:
        super().__init__("Webhook signature verification failed")


class OrderNotFound(DomainError):
    code = ErrorCode.ORDER_NOT_FOUND
    http_status = 404

    def __init__(self, order_id: str | None) -> None:
        super().__init__("Order not found", order_id=order_id)


class OrderStateConflict(DomainError):
    code = ErrorCode.ORDER_STATE_CONFLICT
    http_status = 409

    def __init__(self, order_id: str, current: str, attempted: str) -> None:
        super().__init__(
            f"Cannot move order from {current} to {attempted}",
            order_id=order_id,
            current_status=current,
        )


class TicketNotFound(DomainError):
    code = ErrorCode.TICKET_NOT_FOUND
    http_status = 404

    def __init__(self, ticket_id: str) -> None:
        super().__init__("Ticket not found", ticket_id=ticket_id)


class TransferNotFound(DomainError):
    code = ErrorCode.TRANSFER_NOT_FOUND
    http_status = 404

    def __init__(self, transfer_id: str) -> None:
        super().__init__("Transfer not found", transfer_id=transfer_id)


class TransferNotAuthorized(DomainError):
    code = ErrorCode.TRANSFER_NOT_AUTHORIZED
    http_status = 403

    def __init__(self, message: str = "Not allowed to act on this ticket") -> None:
        super().__init__(message)


class TransferExpired(DomainError):
    code = ErrorCode.TRANSFER_EXPIRED
    http_status = 410

    def __init__(self, transfer_id: str) -> None:
        super().__init__("Transfer request has expired", transfer_id=transfer_id)


class TransferAlreadyPending(DomainError):
    code = ErrorCode.TRANSFER_ALREADY_PENDING
    http_status = 409

    def __init__(self, ticket_id: str) -> None:
        super().__init__("Ticket already has a pending transfer", ticket_id=ticket_id)


class TransferNotAllowed(DomainError):
    code = ErrorCode.TRANSFER_NOT_ALLOWED
    http_status = 422


class RefundIneligible(DomainError):
    code = ErrorCode.REFUND_INELIGIBLE
    http_status = 422


class RefundNotAuthorized(DomainError):
    code = ErrorCode.REFUND_NOT_AUTHORIZED
    http_status = 403

    def __init__(self, order_id: str) -> None:
        super().__init__("Only the buyer or the event organizer can refund this order", order_id=order_id)


class RefundInProgress(DomainError):
    code = ErrorCode.REFUND_IN_PROGRESS
    http_status = 409

    def __init__(self, order_id: str) -> None:
        super().__init__("Another refund for this order is still in progress", order_id=order_id)


class PaymentProviderError(DomainError):
    code = ErrorCode.PAYMENT_PROVIDER_ERROR
    http_status = 502

    def __init__(self, message: str = "Payment provider request failed") -> None:
        super().__init__(message)
