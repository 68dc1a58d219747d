"""Named error signals raised by the core operations."""

from enum import Enum
from typing import Any


class ErrorCode(Enum):
    """Business error codes. Names are the wire values."""

    # not found
    TIER_NOT_FOUND = "TIER_NOT_FOUND"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    EVENT_NOT_FOUND = "EVENT_NOT_FOUND"
    EMAIL_NOT_QUEUED = "EMAIL_NOT_QUEUED"

    # precondition
    EVENT_NOT_ACTIVE = "EVENT_NOT_ACTIVE"
    TIER_NOT_ACTIVE = "TIER_NOT_ACTIVE"
    SALE_NOT_STARTED = "SALE_NOT_STARTED"
    SALE_ENDED = "SALE_ENDED"
    ORDER_NOT_PENDING = "ORDER_NOT_PENDING"
    CANNOT_CANCEL_NON_PENDING = "CANNOT_CANCEL_NON_PENDING"
    CANNOT_REFUND_NON_PAID = "CANNOT_REFUND_NON_PAID"
    NOT_PAID = "NOT_PAID"
    ALREADY_CHECKED_IN = "ALREADY_CHECKED_IN"
    CREDENTIAL_EXPIRED = "CREDENTIAL_EXPIRED"

    # capacity
    INSUFFICIENT_INVENTORY = "INSUFFICIENT_INVENTORY"

    # input
    INVALID_QUANTITY = "INVALID_QUANTITY"
    INVALID_BUYER_INFO = "INVALID_BUYER_INFO"
    MISSING_IDENTIFIER = "MISSING_IDENTIFIER"


_MESSAGES = {
    ErrorCode.TIER_NOT_FOUND: "Ticket tier not found",
    ErrorCode.ORDER_NOT_FOUND: "Order not found",
    ErrorCode.EVENT_NOT_FOUND: "Event not found",
    ErrorCode.EMAIL_NOT_QUEUED: "No ticket delivery queued for this order",
    ErrorCode.EVENT_NOT_ACTIVE: "Event is not on sale",
    ErrorCode.TIER_NOT_ACTIVE: "Ticket tier is not on sale",
    ErrorCode.SALE_NOT_STARTED: "Sale has not started yet",
    ErrorCode.SALE_ENDED: "Sale has ended",
    ErrorCode.ORDER_NOT_PENDING: "Order is not pending payment",
    ErrorCode.CANNOT_CANCEL_NON_PENDING: "Only pending orders can be cancelled",
    ErrorCode.CANNOT_REFUND_NON_PAID: "Only paid orders can be refunded",
    ErrorCode.NOT_PAID: "Payment not confirmed",
    ErrorCode.ALREADY_CHECKED_IN: "Already checked in",
    ErrorCode.CREDENTIAL_EXPIRED: (
        "Ticket credential was already delivered and wiped"
    ),
    ErrorCode.INSUFFICIENT_INVENTORY: "Not enough tickets left",
    ErrorCode.INVALID_QUANTITY: "Invalid quantity",
    ErrorCode.INVALID_BUYER_INFO: "Buyer name and a valid email are required",
    ErrorCode.MISSING_IDENTIFIER: "Order number or ticket code required",
}


class BoxOfficeError(Exception):
    """Business error with a code, a user-safe message and optional detail.

    Raising one inside a unit of work rolls the whole unit back.
    """

    def __init__(self, code: ErrorCode, message: str | None = None,
                 **detail: Any) -> None:
        self.code = code
        self.message = message or _MESSAGES.get(code, code.value)
        self.detail = detail
        super().__init__(f"{code.value}: {self.message}")

    def to_dict(self) -> dict:
        out = {"success": False, "code": self.code.value,
               "error": self.message}
        out.update(self.detail)
        return out
