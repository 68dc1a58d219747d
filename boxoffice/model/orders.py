# model/orders.py
"""
Order state machine.

    pending -> paid -> refunded
    pending -> cancelled

Every mutating entry point opens one unit of work, locks the order row (or, for
create, the tier row via the ledger), branches on the current status, then
writes. Re-invoking a transition that already happened returns the order with
a flag and touches nothing, so webhook redelivery, client retries and admin
double-clicks are all safe to replay verbatim.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List

from loguru import logger
from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import (
    now_ts, new_id, to_iso, is_valid_email, generate_order_number
)
from ..delivery import ticket_subject
from ..infra.sql import GatedAsyncSession
from . import credentials, ledger, outbox
from .db import (
    Event, Tier, Order, CheckinRecord,
    EVENT_ACTIVE,
    ORDER_PENDING, ORDER_PAID, ORDER_CANCELLED, ORDER_REFUNDED,
)
from .errors import BoxOfficeError, ErrorCode


@dataclass
class BuyerInfo:
    name: str
    email: str
    phone: Optional[str] = None
    country: Optional[str] = None


@dataclass
class PaymentInfo:
    provider: str = "manual"
    reference: Optional[str] = None


@dataclass
class CreatedOrder:
    order: Order
    # one-time credential, only ever returned here
    credential: str = field(repr=False)
    event_name: str = ""
    tier_name: str = ""


@dataclass
class PaymentResult:
    order: Order
    already_paid: bool


@dataclass
class TransitionResult:
    order: Order
    already_applied: bool


# ------------------------------------------------------------------------------
# Create
# ------------------------------------------------------------------------------

def _validate_buyer(buyer: BuyerInfo) -> None:
    if not (buyer.name or "").strip() or not is_valid_email(buyer.email):
        raise BoxOfficeError(ErrorCode.INVALID_BUYER_INFO)


def _validate_sale(event: Event, tier: Tier, quantity: int,
                   now: float) -> None:
    if event.status != EVENT_ACTIVE:
        raise BoxOfficeError(ErrorCode.EVENT_NOT_ACTIVE)
    if not tier.active:
        raise BoxOfficeError(ErrorCode.TIER_NOT_ACTIVE)
    if tier.sale_starts_at is not None and tier.sale_starts_at > now:
        raise BoxOfficeError(ErrorCode.SALE_NOT_STARTED)
    if tier.sale_ends_at is not None and tier.sale_ends_at < now:
        raise BoxOfficeError(ErrorCode.SALE_ENDED)
    if quantity > tier.max_per_order:
        raise BoxOfficeError(
            ErrorCode.INVALID_QUANTITY,
            f"At most {tier.max_per_order} tickets per order",
            max_per_order=tier.max_per_order,
        )


ORDER_NUMBER_ATTEMPTS = 5


async def _insert_with_order_number(
    session: AsyncSession, fields: Dict[str, Any], now: float
) -> Order:
    # order numbers are short and random; a clash only redraws the number
    for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
        order = Order(
            id=new_id(), order_number=generate_order_number(now), **fields
        )
        try:
            async with session.begin_nested():
                session.add(order)
                await session.flush()
            return order
        except IntegrityError as e:
            if "order_number" not in str(e.orig):
                raise
            logger.warning("Order number {} taken (attempt {}/{})",
                           order.order_number, attempt, ORDER_NUMBER_ATTEMPTS)
    raise RuntimeError(
        f"no free order number after {ORDER_NUMBER_ATTEMPTS} attempts"
    )


async def create_order(
    db: GatedAsyncSession,
    tier_id: str,
    buyer: BuyerInfo,
    quantity: int = 1,
    event_id: Optional[str] = None,
) -> CreatedOrder:
    """
    Reserve capacity, issue a credential, insert the pending order and queue
    its ticket delivery, all in one unit of work. Any failure leaves no trace.
    """
    if not isinstance(quantity, int) or quantity < 1:
        raise BoxOfficeError(ErrorCode.INVALID_QUANTITY)
    _validate_buyer(buyer)

    async with db.gated():
        async with db.session.begin():
            s = db.session
            now = now_ts()

            row = (await s.execute(
                select(Tier, Event)
                .join(Event, Event.id == Tier.event_id)
                .where(Tier.id == tier_id)
            )).first()
            if row is None or (event_id is not None and
                               row[1].id != event_id):
                raise BoxOfficeError(ErrorCode.TIER_NOT_FOUND)
            tier, event = row
            _validate_sale(event, tier, quantity, now)

            # decision is taken on the locked row, not on `tier` above
            locked = await ledger.reserve_within_transaction(
                s, tier_id, quantity
            )

            cred = credentials.issue()
            unit_price = locked.price
            fields = dict(
                event_id=event.id,
                tier_id=locked.id,
                buyer_name=buyer.name.strip(),
                buyer_email=buyer.email.strip(),
                buyer_phone=buyer.phone,
                buyer_country=buyer.country,
                quantity=quantity,
                unit_price=unit_price,
                total_price=unit_price * quantity,
                currency=locked.currency,
                status=ORDER_PENDING,
                credential_hash=cred.hash,
                created_at=now,
            )
            order = await _insert_with_order_number(s, fields, now)

            await outbox.enqueue_within_transaction(
                s, order.id, order.buyer_email, cred.plaintext,
                ticket_subject(event.name),
            )

    logger.info(
        "Order created: {} id={} tier={} qty={} total={}",
        order.order_number, order.id, tier_id, quantity, order.total_price,
    )
    return CreatedOrder(
        order=order,
        credential=cred.plaintext,
        event_name=event.name,
        tier_name=locked.name,
    )


# ------------------------------------------------------------------------------
# Transitions
# ------------------------------------------------------------------------------

async def _lock_order(session: AsyncSession, order_id: str) -> Order:
    order = (await session.execute(
        select(Order)
        .where(Order.id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if order is None:
        raise BoxOfficeError(ErrorCode.ORDER_NOT_FOUND)
    return order


async def confirm_payment(
    db: GatedAsyncSession,
    order_id: str,
    payment: Optional[PaymentInfo] = None,
    confirmed_by: Optional[str] = None,
) -> PaymentResult:
    """
    pending -> paid. Already paid: returns already_paid=True and changes
    nothing. Capacity was reserved at creation and is not touched here.
    """
    payment = payment or PaymentInfo()
    async with db.gated():
        async with db.session.begin():
            s = db.session
            order = await _lock_order(s, order_id)

            if order.status == ORDER_PAID:
                logger.info(
                    "Payment already confirmed (idempotent): {}",
                    order.order_number,
                )
                return PaymentResult(order=order, already_paid=True)

            if order.status != ORDER_PENDING:
                raise BoxOfficeError(
                    ErrorCode.ORDER_NOT_PENDING, status=order.status
                )

            order.status = ORDER_PAID
            order.payment_provider = payment.provider
            order.payment_reference = payment.reference
            order.payment_confirmed_at = now_ts()
            order.payment_confirmed_by = confirmed_by

            # queued at creation; the drain sends it now that status is paid
            if await outbox.find_obligation(s, order.id) is None:
                logger.error(
                    "Paid order has no ticket delivery queued: {}",
                    order.order_number,
                )

    logger.info("Payment confirmed: {} provider={} ref={}",
                order.order_number, payment.provider, payment.reference)
    return PaymentResult(order=order, already_paid=False)


async def cancel_order(
    db: GatedAsyncSession,
    order_id: str,
    reason: Optional[str] = None,
) -> TransitionResult:
    """pending -> cancelled, releasing the reserved quantity exactly once."""
    async with db.gated():
        async with db.session.begin():
            s = db.session
            order = await _lock_order(s, order_id)

            if order.status == ORDER_CANCELLED:
                return TransitionResult(order=order, already_applied=True)
            if order.status != ORDER_PENDING:
                raise BoxOfficeError(
                    ErrorCode.CANNOT_CANCEL_NON_PENDING, status=order.status
                )

            await ledger.release_within_transaction(
                s, order.tier_id, order.quantity
            )
            order.status = ORDER_CANCELLED
            order.cancelled_at = now_ts()
            order.cancel_reason = reason
            await outbox.retire_within_transaction(
                s, order.id, "order cancelled"
            )

    logger.info("Order cancelled: {}", order.order_number)
    return TransitionResult(order=order, already_applied=False)


async def refund_order(
    db: GatedAsyncSession,
    order_id: str,
    reason: Optional[str] = None,
) -> TransitionResult:
    """
    paid -> refunded, releasing capacity. The payment provider side must be
    settled by the caller before calling this.
    """
    async with db.gated():
        async with db.session.begin():
            s = db.session
            order = await _lock_order(s, order_id)

            if order.status == ORDER_REFUNDED:
                return TransitionResult(order=order, already_applied=True)
            if order.status != ORDER_PAID:
                raise BoxOfficeError(
                    ErrorCode.CANNOT_REFUND_NON_PAID, status=order.status
                )

            await ledger.release_within_transaction(
                s, order.tier_id, order.quantity
            )
            order.status = ORDER_REFUNDED
            order.refunded_at = now_ts()
            order.refund_reason = reason
            await outbox.retire_within_transaction(
                s, order.id, "order refunded"
            )

    logger.info("Order refunded: {}", order.order_number)
    return TransitionResult(order=order, already_applied=False)


# ------------------------------------------------------------------------------
# Read APIs
# ------------------------------------------------------------------------------

def order_to_dict(order: Order) -> Dict[str, Any]:
    return {
        "id": order.id,
        "order_number": order.order_number,
        "event_id": order.event_id,
        "tier_id": order.tier_id,
        "buyer_name": order.buyer_name,
        "buyer_email": order.buyer_email,
        "quantity": order.quantity,
        "unit_price": order.unit_price,
        "total_price": order.total_price,
        "currency": order.currency,
        "status": order.status,
        "payment_provider": order.payment_provider,
        "payment_reference": order.payment_reference,
        "created_at": to_iso(order.created_at),
        "payment_confirmed_at": to_iso(order.payment_confirmed_at),
        "cancelled_at": to_iso(order.cancelled_at),
        "refunded_at": to_iso(order.refunded_at),
    }


async def get_order(db: GatedAsyncSession, order_id: str) -> Order | None:
    async with db.gated():
        async with db.session.begin():
            return (await db.session.execute(
                select(Order)
                .where(Order.id == order_id)
                .execution_options(populate_existing=True)
            )).scalar_one_or_none()


async def get_order_by_number(
    db: GatedAsyncSession, order_number: str
) -> Order | None:
    async with db.gated():
        async with db.session.begin():
            return (await db.session.execute(
                select(Order)
                .where(Order.order_number == order_number.strip().upper())
                .execution_options(populate_existing=True)
            )).scalar_one_or_none()


async def list_orders(
    db: GatedAsyncSession,
    event_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[Order]:
    stmt = select(Order)
    if event_id:
        stmt = stmt.where(Order.event_id == event_id)
    if status:
        stmt = stmt.where(Order.status == status)
    stmt = (
        stmt.order_by(Order.created_at.desc())
        .limit(max(1, min(limit, 500)))
        .offset(max(0, offset))
    )
    async with db.gated():
        async with db.session.begin():
            return list((await db.session.execute(stmt)).scalars().all())


async def event_summary(
    db: GatedAsyncSession, event_id: str
) -> Dict[str, Any]:
    """Orders per status, per-tier sold/capacity and the checked-in count."""
    async with db.gated():
        async with db.session.begin():
            s = db.session
            event = (await s.execute(
                select(Event).where(Event.id == event_id)
            )).scalar_one_or_none()
            if event is None:
                raise BoxOfficeError(ErrorCode.EVENT_NOT_FOUND)

            by_status = (await s.execute(
                select(Order.status, func.count(Order.id),
                       func.coalesce(func.sum(Order.quantity), 0))
                .where(Order.event_id == event_id)
                .group_by(Order.status)
            )).all()

            tiers = (await s.execute(
                select(Tier)
                .where(Tier.event_id == event_id)
                .order_by(Tier.created_at.asc())
                .execution_options(populate_existing=True)
            )).scalars().all()

            checked_in = (await s.execute(
                select(func.count(CheckinRecord.id))
                .join(Order, Order.id == CheckinRecord.order_id)
                .where(Order.event_id == event_id)
            )).scalar_one()

    orders = {
        st: {"count": 0, "tickets": 0}
        for st in (ORDER_PENDING, ORDER_PAID, ORDER_CANCELLED, ORDER_REFUNDED)
    }
    for status, count, tickets in by_status:
        orders[status] = {"count": int(count), "tickets": int(tickets)}

    return {
        "event_id": event.id,
        "name": event.name,
        "status": event.status,
        "orders": orders,
        "tiers": [ledger.tier_snapshot(t) for t in tiers],
        "sold": sum(t.sold for t in tiers),
        "capacity": sum(t.capacity for t in tiers),
        "checked_in": int(checked_in),
    }
