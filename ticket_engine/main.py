from contextlib import asynccontextmanager
from decimal import Decimal

from fastapi import Depends, FastAPI, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from redis.asyncio import Redis
from sqlalchemy.orm import Session

from . import holds, issuer, orders, promo, refunds, transfers
from .admin import router as admin_router
from .config import get_settings
from .db import Base, engine
from .deps import get_db, get_payment_provider, get_redis
from .errors import DomainError, WebhookSignatureInvalid
from .idempotency import get_cached_response, set_cached_response
from .log import get_logger, setup_logging
from .payments import PaymentProvider
from .rate_limit import token_bucket
from .scanning import ScanDecision, audit_rejection, scan_ticket
from .serializers import hold_out, order_out, refund_out, ticket_out, transfer_out
from .webhooks import handle_payment_webhook

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    Base.metadata.create_all(bind=engine)
    logger.info("ticket engine started")
    yield


app = FastAPI(title="Ticket Engine", version="1.0.0", lifespan=lifespan)
app.include_router(admin_router)


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    if exc.http_status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


# --- Holds & availability ---
class CreateHoldReq(BaseModel):
    user_id: str
    tier_id: str
    quantity: int
    ttl_minutes: int | None = None


@app.post("/holds", status_code=201)
def create_hold(req: CreateHoldReq, db: Session = Depends(get_db)):
    hold = holds.create_hold(db, req.user_id, req.tier_id, req.quantity, ttl_minutes=req.ttl_minutes)
    return hold_out(hold)


@app.delete("/holds/{hold_id}")
def release_hold(hold_id: str, db: Session = Depends(get_db)):
    return hold_out(holds.release_hold(db, hold_id))


@app.get("/tiers/{tier_id}/availability")
def tier_availability(tier_id: str, db: Session = Depends(get_db)):
    return holds.availability(db, tier_id)


class ValidatePromoReq(BaseModel):
    code: str
    event_id: str
    user_id: str


@app.post("/promo-codes/validate")
def validate_promo(req: ValidatePromoReq, db: Session = Depends(get_db)):
    return promo.validate(db, req.code, req.event_id, req.user_id).to_dict()


# --- Orders ---
class CreateOrderReq(BaseModel):
    user_id: str
    event_id: str
    hold_ids: list[str]
    promo_code: str | None = None
    provider_ref: str | None = None
    metadata: dict = Field(default_factory=dict)


@app.post("/orders", status_code=201)
async def create_order(
    req: CreateOrderReq,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
    redis: Redis = Depends(get_redis),
):
    if idempotency_key:
        cached = await get_cached_response(redis, "orders", idempotency_key)
        if cached:
            return cached

    def _create():
        order = orders.create_order(
            db,
            req.user_id,
            req.event_id,
            req.hold_ids,
            promo_code=req.promo_code,
            provider_ref=req.provider_ref,
            metadata=req.metadata,
        )
        return order_out(order)

    resp = await run_in_threadpool(_create)
    if idempotency_key:
        await set_cached_response(redis, "orders", idempotency_key, resp, get_settings().IDEMPOTENCY_TTL_SECONDS)
    return resp


@app.get("/orders/{order_id}")
def get_order(order_id: str, db: Session = Depends(get_db)):
    return order_out(orders.get_order(db, order_id))


class CancelOrderReq(BaseModel):
    user_id: str | None = None


@app.post("/orders/{order_id}/cancel")
def cancel_order(order_id: str, req: CancelOrderReq | None = None, db: Session = Depends(get_db)):
    user_id = req.user_id if req else None
    return order_out(orders.cancel_order(db, order_id, user_id=user_id))


@app.post("/orders/{order_id}/tickets")
def issue_tickets(order_id: str, db: Session = Depends(get_db)):
    tickets = issuer.issue_for_order(db, order_id)
    return {"order_id": order_id, "tickets": [ticket_out(t) for t in tickets]}


@app.get("/users/{user_id}/tickets")
def user_tickets(user_id: str, status: str | None = None, db: Session = Depends(get_db)):
    return [ticket_out(t) for t in issuer.tickets_for_user(db, user_id, status=status)]


# --- Payment webhooks ---
@app.post("/webhooks/payments")
async def payment_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    db: Session = Depends(get_db),
):
    raw_body = await request.body()
    try:
        outcome = await run_in_threadpool(handle_payment_webhook, db, stripe_signature, raw_body)
    except WebhookSignatureInvalid as e:
        logger.warning("webhook rejected ip=%s: %s", _client_ip(request), e)
        return JSONResponse(status_code=400, content=e.to_dict())
    except Exception:
        logger.exception("webhook processing error")
        return JSONResponse(status_code=500, content={"error": "WEBHOOK_PROCESSING_FAILED", "received": False})
    return outcome.to_dict()


# --- Transfers ---
class CreateTransferReq(BaseModel):
    from_user_id: str
    to_user_id: str
    ticket_id: str
    message: str | None = None
    ttl_hours: int | None = None


@app.post("/transfers", status_code=201)
def create_transfer(req: CreateTransferReq, db: Session = Depends(get_db)):
    transfer = transfers.create_transfer(
        db, req.from_user_id, req.to_user_id, req.ticket_id, ttl_hours=req.ttl_hours, message=req.message
    )
    return transfer_out(transfer)


class RespondTransferReq(BaseModel):
    user_id: str
    action: str


@app.post("/transfers/{transfer_id}/respond")
def respond_transfer(transfer_id: str, req: RespondTransferReq, db: Session = Depends(get_db)):
    return transfer_out(transfers.respond_to_transfer(db, transfer_id, req.user_id, req.action))


class CancelTransferReq(BaseModel):
    user_id: str


@app.post("/transfers/{transfer_id}/cancel")
def cancel_transfer(transfer_id: str, req: CancelTransferReq, db: Session = Depends(get_db)):
    return transfer_out(transfers.cancel_transfer(db, transfer_id, req.user_id))


@app.get("/users/{user_id}/transfers")
def user_transfers(user_id: str, status: str | None = None, db: Session = Depends(get_db)):
    listing = transfers.list_transfers(db, user_id, status=status)
    return {
        "incoming": [transfer_out(t) for t in listing["incoming"]],
        "outgoing": [transfer_out(t) for t in listing["outgoing"]],
        "stats": listing["stats"],
    }


# --- Refunds ---
class RefundReq(BaseModel):
    order_id: str
    requested_by: str
    reason: str
    ticket_ids: list[str] | None = None
    amount: Decimal | None = None


@app.post("/refunds", status_code=201)
async def create_refund(
    req: RefundReq,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
    redis: Redis = Depends(get_redis),
    provider: PaymentProvider = Depends(get_payment_provider),
):
    if idempotency_key:
        cached = await get_cached_response(redis, "refunds", idempotency_key)
        if cached:
            return cached

    def _refund():
        record = refunds.refund(
            db,
            provider,
            req.order_id,
            req.reason,
            ticket_ids=req.ticket_ids,
            amount=req.amount,
            requested_by=req.requested_by,
        )
        order = orders.get_order(db, req.order_id)
        return {**refund_out(record), "order_status": order.status}

    resp = await run_in_threadpool(_refund)
    if idempotency_key:
        await set_cached_response(redis, "refunds", idempotency_key, resp, get_settings().IDEMPOTENCY_TTL_SECONDS)
    return resp


# --- Gate scanning ---
class ScanReq(BaseModel):
    qr_token: str
    event_id: str


@app.post("/scan")
async def scan(
    req: ScanReq,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
    redis: Redis = Depends(get_redis),
):
    settings = get_settings()
    ip = _client_ip(request)
    ua = request.headers.get("user-agent", "")

    if idempotency_key:
        cached = await get_cached_response(redis, "scan", idempotency_key)
        if cached:
            return cached

    limit = settings.SCAN_RATE_LIMIT_PER_MINUTE
    allowed = await token_bucket(redis, key=f"scan:{ip}", capacity=limit, refill_per_sec=limit / 60)
    if allowed:
        decision = await run_in_threadpool(scan_ticket, db, req.qr_token, req.event_id, ip, ua)
    else:
        decision = ScanDecision.rejected("RATE_LIMITED")
        logger.warning("scan rate limited ip=%s event_id=%s", ip, req.event_id)
        await run_in_threadpool(audit_rejection, db, decision, req.event_id, ip, ua)

    resp = decision.to_dict()
    if idempotency_key:
        await set_cached_response(redis, "scan", idempotency_key, resp, settings.IDEMPOTENCY_TTL_SECONDS)
    return resp
