# model/checkin.py
"""
Single-use check-in gate.

The order row is locked while the existing check-in is looked up, and the
unique constraint on checkins.order_id backs that up: two scans of the same
ticket can never both insert. The loser sees ALREADY_CHECKED_IN carrying the
winner's timestamp.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Dict, Any

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts, new_id, to_iso
from ..infra.sql import GatedAsyncSession
from .credentials import hash_credential
from .db import Order, CheckinRecord, ORDER_PAID
from .errors import BoxOfficeError, ErrorCode


@dataclass
class CheckinResult:
    record: CheckinRecord
    order: Order

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "order_id": self.order.id,
            "order_number": self.order.order_number,
            "buyer_name": self.order.buyer_name,
            "quantity": self.order.quantity,
            "tier_id": self.order.tier_id,
            "checked_in_at": to_iso(self.record.checked_in_at),
            "checked_in_by": self.record.checked_in_by,
        }


def _order_lookup(order_number: Optional[str], credential: Optional[str]):
    if order_number and order_number.strip():
        return Order.order_number == order_number.strip().upper()
    if credential and credential.strip():
        return Order.credential_hash == hash_credential(credential)
    raise BoxOfficeError(ErrorCode.MISSING_IDENTIFIER)


async def _existing_checkin(
    session: AsyncSession, order_id: str
) -> CheckinRecord | None:
    return (await session.execute(
        select(CheckinRecord)
        .where(CheckinRecord.order_id == order_id)
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()


def _already(record: CheckinRecord) -> BoxOfficeError:
    return BoxOfficeError(
        ErrorCode.ALREADY_CHECKED_IN,
        checked_in_at=to_iso(record.checked_in_at),
        checked_in_by=record.checked_in_by,
    )


async def checkin(
    db: GatedAsyncSession,
    order_number: Optional[str] = None,
    credential: Optional[str] = None,
    checked_in_by: Optional[str] = None,
    device_info: Optional[str] = None,
) -> CheckinResult:
    """
    Check in by order number or by the presented credential (both
    case-insensitive). Raises MISSING_IDENTIFIER, ORDER_NOT_FOUND, NOT_PAID or
    ALREADY_CHECKED_IN.
    """
    where = _order_lookup(order_number, credential)
    order_id: Optional[str] = None

    try:
        async with db.gated():
            async with db.session.begin():
                s = db.session
                order = (await s.execute(
                    select(Order)
                    .where(where)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                )).scalar_one_or_none()
                if order is None:
                    raise BoxOfficeError(ErrorCode.ORDER_NOT_FOUND)
                order_id = order.id
                if order.status != ORDER_PAID:
                    raise BoxOfficeError(ErrorCode.NOT_PAID,
                                         status=order.status)

                existing = await _existing_checkin(s, order.id)
                if existing is not None:
                    raise _already(existing)

                record = CheckinRecord(
                    id=new_id(),
                    order_id=order.id,
                    checked_in_at=now_ts(),
                    checked_in_by=checked_in_by,
                    device_info=device_info,
                )
                s.add(record)
                await s.flush()
    except IntegrityError:
        # lost the insert race to a concurrent scan
        if order_id is None:
            raise
        async with db.gated():
            async with db.session.begin():
                winner = await _existing_checkin(db.session, order_id)
        if winner is None:
            raise
        logger.warning("Check-in rejected, already checked in: order={}",
                       order_id)
        raise _already(winner)
    except BoxOfficeError as e:
        logger.warning("Check-in rejected: {} order={}", e.code.value,
                       order_id or order_number)
        raise

    logger.info("Checked in: {} by={}", order.order_number, checked_in_by)
    return CheckinResult(record=record, order=order)


async def verify_ticket(
    db: GatedAsyncSession, order_number: str
) -> Dict[str, Any]:
    """Read-only: whether the ticket is valid and if it was used already."""
    async with db.gated():
        async with db.session.begin():
            s = db.session
            order = (await s.execute(
                select(Order)
                .where(Order.order_number == order_number.strip().upper())
                .execution_options(populate_existing=True)
            )).scalar_one_or_none()
            if order is None:
                raise BoxOfficeError(ErrorCode.ORDER_NOT_FOUND)
            record = await _existing_checkin(s, order.id)

    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "status": order.status,
        "valid": order.status == ORDER_PAID,
        "quantity": order.quantity,
        "tier_id": order.tier_id,
        "checked_in": record is not None,
        "checked_in_at": to_iso(record.checked_in_at) if record else None,
        "checked_in_by": record.checked_in_by if record else None,
    }
