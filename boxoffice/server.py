from __future__ import annotations
import sys
from typing import Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse
from loguru import logger

from . import log
from .config import (
    DATABASE_URL, REDIS_URL, ADMIN_TOKEN,
    OUTBOX_WORKER_ENABLED, DELIVERY_RELAY_URL, DELIVERY_RELAY_TOKEN,
)
from .delivery import DeliveryAdapter, new_adapter
from .helpers import ct_equal
from .infra.sql import make_async_engine, GatedAsyncSession
from .model import availability, checkin as gate, orders, outbox
from .model.db import create_schema
from .model.errors import BoxOfficeError, ErrorCode
from .payments import PaymentWebhook, SignedWebhook
from .worker import OutboxWorker

log.setup()

if DATABASE_URL is None:
    logger.error("NEED DATABASE_URL! e.g. sqlite:///./boxoffice.db")
    sys.exit(1)

engine, SessionAsync, _, gated = make_async_engine(DATABASE_URL)

webhook: PaymentWebhook = SignedWebhook()

NOT_FOUND = {
    ErrorCode.TIER_NOT_FOUND, ErrorCode.ORDER_NOT_FOUND,
    ErrorCode.EVENT_NOT_FOUND, ErrorCode.EMAIL_NOT_QUEUED,
}
BAD_REQUEST = {
    ErrorCode.INVALID_QUANTITY, ErrorCode.INVALID_BUYER_INFO,
    ErrorCode.MISSING_IDENTIFIER,
}


def http_status(code: ErrorCode) -> int:
    if code in NOT_FOUND:
        return 404
    if code in BAD_REQUEST:
        return 400
    # precondition / capacity
    return 409


async def get_db() -> GatedAsyncSession:
    async with SessionAsync() as session:
        yield GatedAsyncSession(session=session, gated=gated)


app = FastAPI(
    title="BoxOffice",
    default_response_class=ORJSONResponse,
)


@app.exception_handler(BoxOfficeError)
async def _boxoffice_error(request: Request, exc: BoxOfficeError):
    return ORJSONResponse(status_code=http_status(exc.code),
                          content=exc.to_dict())


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _db_init():
    async with engine.begin() as conn:
        await create_schema(conn)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=10.0,
        limits=httpx.Limits(
            max_connections=64, max_keepalive_connections=16
        ),
    )


@app.on_event("startup")
async def _redis_start():
    app.state.redis = None
    if REDIS_URL:
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("startup")
async def _outbox_start():
    app.state.delivery = new_adapter(
        http=app.state.http,
        url=DELIVERY_RELAY_URL,
        token=DELIVERY_RELAY_TOKEN,
    )
    app.state.worker = OutboxWorker(SessionAsync, gated, app.state.delivery)
    if OUTBOX_WORKER_ENABLED:
        app.state.worker.start()
    logger.info("BoxOffice is starting up (outbox worker: {})",
                "on" if OUTBOX_WORKER_ENABLED else "off")


@app.on_event("shutdown")
async def _outbox_stop():
    worker: Optional[OutboxWorker] = getattr(app.state, "worker", None)
    if worker is not None:
        await worker.stop()


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.close()
        app.state.redis = None


@app.on_event("shutdown")
async def _db_stop():
    await engine.dispose()


# ----------------------------
# Helpers
# ----------------------------
def require_admin(request: Request) -> str:
    auth = request.headers.get("authorization", "")
    scheme, _, token = auth.partition(" ")
    if (not ADMIN_TOKEN or scheme.lower() != "bearer"
            or not ct_equal(token.strip(), ADMIN_TOKEN)):
        raise HTTPException(status_code=401, detail="admin token required")
    return "admin"


def delivery_adapter() -> DeliveryAdapter:
    return app.state.delivery


async def nudge_outbox(order_id: str) -> None:
    # the worker picks it up anyway, this only shortens the wait
    worker: Optional[OutboxWorker] = getattr(app.state, "worker", None)
    if worker is None:
        return
    try:
        await worker.run_once(order_id=order_id)
    except Exception:
        logger.exception("Immediate delivery attempt failed: order={}",
                         order_id)


def _int(payload: dict, key: str, default: int) -> int:
    try:
        return int(payload.get(key, default))
    except (TypeError, ValueError):
        raise BoxOfficeError(ErrorCode.INVALID_QUANTITY)


# ----------------------------
# API: Purchase
# ----------------------------
@app.post("/api/orders", status_code=201)
async def create_order(
    payload: dict,
    db: GatedAsyncSession = Depends(get_db),
):
    tier_id = payload.get("tier_id")
    if not tier_id:
        raise BoxOfficeError(ErrorCode.TIER_NOT_FOUND)
    buyer = orders.BuyerInfo(
        name=(payload.get("buyer_name") or "").strip(),
        email=(payload.get("buyer_email") or "").strip(),
        phone=payload.get("buyer_phone"),
        country=payload.get("buyer_country"),
    )
    created = await orders.create_order(
        db, tier_id, buyer,
        quantity=_int(payload, "quantity", 1),
        event_id=payload.get("event_id"),
    )
    await availability.invalidate(app.state.redis, tier_id)
    return {
        "success": True,
        "order": orders.order_to_dict(created.order),
        # shown once; only its hash is kept
        "credential": created.credential,
        "event_name": created.event_name,
        "tier_name": created.tier_name,
    }


@app.get("/api/orders/{order_id}")
async def get_order(order_id: str, db: GatedAsyncSession = Depends(get_db)):
    order = await orders.get_order(db, order_id)
    if order is None:
        raise BoxOfficeError(ErrorCode.ORDER_NOT_FOUND)
    return orders.order_to_dict(order)


@app.get("/api/tiers/{tier_id}/availability")
async def tier_availability(
    tier_id: str, db: GatedAsyncSession = Depends(get_db)
):
    snap = await availability.cached_availability(
        db, app.state.redis, tier_id
    )
    if snap is None:
        raise BoxOfficeError(ErrorCode.TIER_NOT_FOUND)
    return snap


# ----------------------------
# API: Check-in
# ----------------------------
@app.post("/api/checkin")
async def checkin(payload: dict, db: GatedAsyncSession = Depends(get_db)):
    result = await gate.checkin(
        db,
        order_number=payload.get("order_number"),
        credential=payload.get("credential") or payload.get("qr"),
        checked_in_by=payload.get("checked_in_by"),
        device_info=payload.get("device_info"),
    )
    return result.as_dict()


@app.get("/api/checkin/verify/{order_number}")
async def verify_ticket(
    order_number: str, db: GatedAsyncSession = Depends(get_db)
):
    return await gate.verify_ticket(db, order_number)


# ----------------------------
# Webhook endpoint
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    db: GatedAsyncSession = Depends(get_db),
):
    payload = await request.body()
    headers = dict(request.headers)

    event = webhook.verify_webhook(payload, headers)
    kind = webhook.event_kind(event)
    order_id, order_number, reference = webhook.event_ids(event)

    if kind == "ignored":
        return {"ok": True, "processed": False, "reason": "ignored event"}

    if order_id is None and order_number:
        order = await orders.get_order_by_number(db, order_number)
        order_id = order.id if order is not None else None
    if not order_id:
        logger.warning("Webhook for unknown order: {}", event.get("type"))
        return {"ok": True, "processed": False,
                "code": ErrorCode.ORDER_NOT_FOUND.value}

    if kind == "failed":
        logger.info("Payment failed for order {}, stays pending", order_id)
        return {"ok": True, "processed": False, "reason": "payment failed"}

    # business outcomes are acknowledged; infra errors propagate as 5xx so
    # the provider redelivers
    try:
        res = await orders.confirm_payment(
            db, order_id,
            orders.PaymentInfo(provider=webhook.provider, reference=reference),
            confirmed_by="webhook",
        )
    except BoxOfficeError as e:
        logger.warning("Webhook not applied: order={} {}",
                       order_id, e.code.value)
        return {"ok": True, "processed": False, "code": e.code.value}

    if not res.already_paid:
        await nudge_outbox(order_id)
    return {
        "ok": True,
        "processed": True,
        "already_paid": res.already_paid,
        "order_status": res.order.status,
    }


# ----------------------------
# Admin API
# ----------------------------
@app.post("/api/admin/orders/{order_id}/confirm")
async def admin_confirm(
    order_id: str,
    payload: Optional[dict] = None,
    db: GatedAsyncSession = Depends(get_db),
    admin: str = Depends(require_admin),
):
    payload = payload or {}
    res = await orders.confirm_payment(
        db, order_id,
        orders.PaymentInfo(
            provider=payload.get("provider", "manual"),
            reference=payload.get("reference"),
        ),
        confirmed_by=payload.get("confirmed_by") or admin,
    )
    if not res.already_paid:
        await nudge_outbox(order_id)
    return {"success": True, "already_paid": res.already_paid,
            "order": orders.order_to_dict(res.order)}


@app.post("/api/admin/orders/{order_id}/cancel")
async def admin_cancel(
    order_id: str,
    payload: Optional[dict] = None,
    db: GatedAsyncSession = Depends(get_db),
    _: str = Depends(require_admin),
):
    res = await orders.cancel_order(db, order_id,
                                    reason=(payload or {}).get("reason"))
    await availability.invalidate(app.state.redis, res.order.tier_id)
    return {"success": True, "already_applied": res.already_applied,
            "order": orders.order_to_dict(res.order)}


@app.post("/api/admin/orders/{order_id}/refund")
async def admin_refund(
    order_id: str,
    payload: Optional[dict] = None,
    db: GatedAsyncSession = Depends(get_db),
    _: str = Depends(require_admin),
):
    res = await orders.refund_order(db, order_id,
                                    reason=(payload or {}).get("reason"))
    await availability.invalidate(app.state.redis, res.order.tier_id)
    return {"success": True, "already_applied": res.already_applied,
            "order": orders.order_to_dict(res.order)}


@app.post("/api/admin/orders/{order_id}/resend")
async def admin_resend(
    order_id: str,
    db: GatedAsyncSession = Depends(get_db),
    adapter: DeliveryAdapter = Depends(delivery_adapter),
    _: str = Depends(require_admin),
):
    report = await outbox.force_resend(db, adapter, order_id)
    return {"success": report.sent > 0, **report.as_dict()}


@app.get("/api/admin/orders/{order_id}/delivery")
async def admin_delivery_status(
    order_id: str,
    db: GatedAsyncSession = Depends(get_db),
    _: str = Depends(require_admin),
):
    status = await outbox.get_delivery_status(db, order_id)
    if status is None:
        raise BoxOfficeError(ErrorCode.EMAIL_NOT_QUEUED)
    return status


@app.get("/api/admin/orders")
async def admin_orders(
    event_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
    db: GatedAsyncSession = Depends(get_db),
    _: str = Depends(require_admin),
):
    items = await orders.list_orders(db, event_id=event_id, status=status,
                                     limit=limit, offset=offset)
    return {
        "items": [orders.order_to_dict(o) for o in items],
        "limit": max(1, min(limit, 500)),
        "offset": max(0, offset),
    }


@app.get("/api/admin/events/{event_id}/summary")
async def admin_event_summary(
    event_id: str,
    db: GatedAsyncSession = Depends(get_db),
    _: str = Depends(require_admin),
):
    return await orders.event_summary(db, event_id)
