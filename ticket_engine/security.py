import json

import stripe
from jose import jwt
from jose.exceptions import JWTError

from .errors import WebhookSignatureInvalid

QR_ALGORITHM = "HS256"
QR_CLAIMS = ("ticket_id", "event_id", "tier_id", "user_id")


def mint_qr_token(ticket_id: str, event_id: str, tier_id: str, user_id: str, secret: str) -> str:
    # HS256 JWT: base64url(header).base64url(claims).base64url(HMAC-SHA256)
    payload = {
        "ticket_id": ticket_id,
        "event_id": event_id,
        "tier_id": tier_id,
        "user_id": user_id,
    }
    return jwt.encode(payload, secret, algorithm=QR_ALGORITHM)


def verify_qr_token(qr_token: str, secret: str) -> dict:
    try:
        payload = jwt.decode(qr_token, secret, algorithms=[QR_ALGORITHM])
    except JWTError:
        raise ValueError("INVALID_TOKEN")

    for k in QR_CLAIMS:
        if k not in payload:
            raise ValueError("INVALID_TOKEN")

    return payload


def parse_webhook(raw_body: bytes | str, signature: str | None, secret: str, tolerance: int) -> dict:
    """Check the provider's `t=...,v1=...` signature, then decode the event."""
    payload = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
    if not signature:
        raise WebhookSignatureInvalid()
    try:
        stripe.WebhookSignature.verify_header(payload, signature, secret, tolerance)
    except stripe.SignatureVerificationError:
        raise WebhookSignatureInvalid()

    try:
        event = json.loads(payload)
    except ValueError:
        raise WebhookSignatureInvalid()
    if not isinstance(event, dict) or "id" not in event or "type" not in event:
        raise WebhookSignatureInvalid()
    return event
