# model/outbox.py
"""
Ticket delivery outbox.

One obligation per order, written in the same unit of work that creates the
order, holding the one-time credential plaintext. The drain only sends for
paid orders and wipes the plaintext in the same UPDATE that marks the row
`sent`.

drain() is claim-then-process:
  1) claim: short txn, candidates locked with SKIP LOCKED (where the engine
     has it), flipped to `processing` with attempts+1
  2) send: outside any transaction
  3) record: short txn, only if the row is still `processing`

A claim older than DELIVERY_LEASE_SECONDS is claimable again, so a worker
crash between 1) and 3) leads to a resend, never to a lost ticket. If that
claim was the final attempt the row is moved to `failed` instead, plaintext
kept, for an admin resend.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, List, Dict, Any

from loguru import logger
from sqlalchemy import select, update, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import MAX_DELIVERY_ATTEMPTS, DELIVERY_LEASE_SECONDS
from ..delivery import DeliveryAdapter, TicketDelivery
from ..helpers import now_ts, new_id, to_iso
from ..infra.sql import GatedAsyncSession
from .db import (
    DeliveryObligation, Order, Tier, Event,
    ORDER_PAID,
    DELIVERY_PENDING, DELIVERY_PROCESSING, DELIVERY_SENT, DELIVERY_FAILED,
    DELIVERY_KIND_TICKET,
)
from .errors import BoxOfficeError, ErrorCode


@dataclass
class DrainReport:
    processed: int = 0
    sent: int = 0
    failed: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "processed": self.processed,
            "sent": self.sent,
            "failed": self.failed,
        }


# ------------------------------------------------------------------------------
# Enqueue
# ------------------------------------------------------------------------------

async def find_obligation(
    session: AsyncSession, order_id: str, lock: bool = False
) -> DeliveryObligation | None:
    stmt = select(DeliveryObligation).where(
        DeliveryObligation.order_id == order_id,
        DeliveryObligation.kind == DELIVERY_KIND_TICKET,
    ).execution_options(populate_existing=True)
    if lock:
        stmt = stmt.with_for_update()
    return (await session.execute(stmt)).scalar_one_or_none()


async def enqueue_within_transaction(
    session: AsyncSession,
    order_id: str,
    recipient: str,
    credential_plaintext: str,
    subject: str,
) -> str:
    """Returns the obligation id. At most one per order."""
    existing = await find_obligation(session, order_id)
    if existing is not None:
        logger.warning("Ticket delivery already queued: order={}", order_id)
        return existing.id

    ob = DeliveryObligation(
        id=new_id(),
        order_id=order_id,
        kind=DELIVERY_KIND_TICKET,
        recipient=recipient,
        subject=subject,
        credential_plaintext=credential_plaintext,
        status=DELIVERY_PENDING,
        attempts=0,
        created_at=now_ts(),
    )
    session.add(ob)
    await session.flush()
    logger.info("Ticket delivery queued: order={} delivery={}", order_id, ob.id)
    return ob.id


async def enqueue(
    db: GatedAsyncSession,
    order_id: str,
    recipient: str,
    credential_plaintext: str,
    subject: str,
) -> str:
    async with db.gated():
        async with db.session.begin():
            return await enqueue_within_transaction(
                db.session, order_id, recipient, credential_plaintext, subject
            )


async def retire_within_transaction(
    session: AsyncSession, order_id: str, note: str
) -> bool:
    """
    Wipe an unsent credential when its order can no longer be delivered
    (cancelled / refunded). Returns True when a plaintext was wiped.
    """
    res = await session.execute(
        update(DeliveryObligation)
        .where(
            DeliveryObligation.order_id == order_id,
            DeliveryObligation.credential_plaintext.is_not(None),
        )
        .values(
            credential_plaintext=None,
            status=DELIVERY_FAILED,
            error_message=note,
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount:
        logger.info("Unsent ticket credential wiped: order={} ({})",
                    order_id, note)
    return bool(res.rowcount)


# ------------------------------------------------------------------------------
# Drain
# ------------------------------------------------------------------------------

def _claimable(now: float):
    lease_expired = now - DELIVERY_LEASE_SECONDS
    return and_(
        or_(
            DeliveryObligation.status.in_((DELIVERY_PENDING, DELIVERY_FAILED)),
            and_(
                DeliveryObligation.status == DELIVERY_PROCESSING,
                DeliveryObligation.last_attempt_at < lease_expired,
            ),
        ),
        DeliveryObligation.attempts < MAX_DELIVERY_ATTEMPTS,
        DeliveryObligation.credential_plaintext.is_not(None),
        Order.status == ORDER_PAID,
    )


LEASE_EXPIRED_NOTE = "lease expired after final attempt"


async def _fail_exhausted_leases(session: AsyncSession, now: float) -> int:
    res = await session.execute(
        update(DeliveryObligation)
        .where(
            DeliveryObligation.status == DELIVERY_PROCESSING,
            DeliveryObligation.last_attempt_at < now - DELIVERY_LEASE_SECONDS,
            DeliveryObligation.attempts >= MAX_DELIVERY_ATTEMPTS,
        )
        .values(status=DELIVERY_FAILED, error_message=LEASE_EXPIRED_NOTE)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount:
        logger.warning("Ticket deliveries given up after final attempt: {}",
                       res.rowcount)
    return res.rowcount or 0


async def _claim(
    db: GatedAsyncSession, max_batch: int, order_id: Optional[str]
) -> List[TicketDelivery]:
    now = now_ts()
    stmt = (
        select(DeliveryObligation, Order, Tier, Event)
        .join(Order, Order.id == DeliveryObligation.order_id)
        .join(Tier, Tier.id == Order.tier_id)
        .join(Event, Event.id == Order.event_id)
        .where(_claimable(now))
        .order_by(DeliveryObligation.created_at.asc())
        .limit(max_batch)
        .with_for_update(skip_locked=True, of=DeliveryObligation)
        .execution_options(populate_existing=True)
    )
    if order_id is not None:
        stmt = stmt.where(DeliveryObligation.order_id == order_id)

    jobs: List[TicketDelivery] = []
    async with db.gated():
        async with db.session.begin():
            await _fail_exhausted_leases(db.session, now)
            rows = (await db.session.execute(stmt)).all()
            for ob, order, tier, event in rows:
                ob.status = DELIVERY_PROCESSING
                ob.attempts = ob.attempts + 1
                ob.last_attempt_at = now
                jobs.append(TicketDelivery(
                    obligation_id=ob.id,
                    order_id=order.id,
                    order_number=order.order_number,
                    recipient=ob.recipient,
                    subject=ob.subject,
                    credential=ob.credential_plaintext,
                    buyer_name=order.buyer_name,
                    quantity=order.quantity,
                    event_name=event.name,
                    location=event.location,
                    starts_at=event.starts_at,
                    tier_name=tier.name,
                ))
    return jobs


async def _mark_sent(db: GatedAsyncSession, obligation_id: str) -> bool:
    # status flip and plaintext wipe are one UPDATE
    async with db.gated():
        async with db.session.begin():
            res = await db.session.execute(
                update(DeliveryObligation)
                .where(
                    DeliveryObligation.id == obligation_id,
                    DeliveryObligation.status == DELIVERY_PROCESSING,
                )
                .values(
                    status=DELIVERY_SENT,
                    sent_at=now_ts(),
                    credential_plaintext=None,
                    error_message=None,
                )
                .execution_options(synchronize_session=False)
            )
    return bool(res.rowcount)


async def _mark_failed(
    db: GatedAsyncSession, obligation_id: str, error: str
) -> None:
    async with db.gated():
        async with db.session.begin():
            await db.session.execute(
                update(DeliveryObligation)
                .where(
                    DeliveryObligation.id == obligation_id,
                    DeliveryObligation.status == DELIVERY_PROCESSING,
                )
                .values(status=DELIVERY_FAILED, error_message=error[:1000])
                .execution_options(synchronize_session=False)
            )


async def drain(
    db: GatedAsyncSession,
    adapter: DeliveryAdapter,
    max_batch: int = 10,
    order_id: Optional[str] = None,
) -> DrainReport:
    """
    Deliver up to `max_batch` tickets. Delivery failures are recorded on the
    obligation, never raised.
    """
    report = DrainReport()
    jobs = await _claim(db, max_batch, order_id)
    report.processed = len(jobs)

    for job in jobs:
        try:
            await adapter.deliver(job)
        except Exception as e:
            report.failed += 1
            logger.error(
                "Ticket delivery failed: order={} delivery={} error={}",
                job.order_number, job.obligation_id, e,
            )
            try:
                await _mark_failed(db, job.obligation_id, str(e) or repr(e))
            except Exception:
                logger.exception(
                    "Could not record delivery failure: delivery={}",
                    job.obligation_id,
                )
            continue

        report.sent += 1
        try:
            if await _mark_sent(db, job.obligation_id):
                logger.info("Ticket delivered: order={} to={}",
                            job.order_number, job.recipient)
            else:
                logger.warning(
                    "Ticket delivered but claim was lost: delivery={}",
                    job.obligation_id,
                )
        except Exception:
            # row stays `processing`; lease expiry makes it claimable again
            logger.exception(
                "Ticket delivered but not recorded: delivery={}",
                job.obligation_id,
            )
    return report


# ------------------------------------------------------------------------------
# Admin
# ------------------------------------------------------------------------------

async def force_resend(
    db: GatedAsyncSession, adapter: DeliveryAdapter, order_id: str
) -> DrainReport:
    """
    Raises EMAIL_NOT_QUEUED if nothing was ever queued, CREDENTIAL_EXPIRED if
    the plaintext is gone (already delivered). Re-sending after that requires
    a new credential.
    """
    now = now_ts()
    async with db.gated():
        async with db.session.begin():
            ob = await find_obligation(db.session, order_id, lock=True)
            if ob is None:
                raise BoxOfficeError(ErrorCode.EMAIL_NOT_QUEUED)
            if ob.credential_plaintext is None:
                raise BoxOfficeError(ErrorCode.CREDENTIAL_EXPIRED)
            in_flight = (
                ob.status == DELIVERY_PROCESSING
                and ob.last_attempt_at is not None
                and ob.last_attempt_at >= now - DELIVERY_LEASE_SECONDS
            )
            if not in_flight:
                ob.status = DELIVERY_PENDING
                ob.attempts = 0
                ob.error_message = None

    if in_flight:
        logger.warning("Resend skipped, delivery in flight: order={}",
                       order_id)
        return DrainReport()

    logger.info("Ticket resend requested: order={}", order_id)
    return await drain(db, adapter, max_batch=1, order_id=order_id)


async def get_delivery_status(
    db: GatedAsyncSession, order_id: str
) -> Dict[str, Any] | None:
    async with db.gated():
        async with db.session.begin():
            ob = await find_obligation(db.session, order_id)
    if ob is None:
        return None
    return {
        "order_id": ob.order_id,
        "recipient": ob.recipient,
        "status": ob.status,
        "attempts": ob.attempts,
        "last_attempt_at": to_iso(ob.last_attempt_at),
        "sent_at": to_iso(ob.sent_at),
        "error_message": ob.error_message,
        "credential_available": ob.credential_plaintext is not None,
    }
