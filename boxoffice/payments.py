from abc import ABC, abstractmethod
from typing import Optional, Tuple
import base64
import hashlib
import hmac

import orjson
from fastapi import HTTPException

from .config import WEBHOOK_SECRET

SIGNATURE_HEADER = "x-payment-signature"

# event types that mean "money arrived"
SUCCEEDED_TYPES = ("payment.succeeded", "checkout.completed")
FAILED_TYPES = ("payment.failed",)


# ----------------------------
# Payment Webhook Interface
# ----------------------------
class PaymentWebhook(ABC):

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # "succeeded" | "failed" | "ignored"
    @abstractmethod
    def event_kind(self, event: dict) -> str:
        ...

    # (order_id, order_number, payment_reference)
    @abstractmethod
    def event_ids(
        self, event: dict
    ) -> Tuple[Optional[str], Optional[str], Optional[str]]:
        ...


def sign(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


# ----------------------------
# HMAC-signed implementation
# ----------------------------
class SignedWebhook(PaymentWebhook):

    def __init__(self, secret: str = WEBHOOK_SECRET,
                 provider: str = "webhook") -> None:
        self.secret = secret
        self.provider = provider

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get(SIGNATURE_HEADER)
        expected = sign(payload, self.secret)
        if not sig or not hmac.compare_digest(expected, sig):
            raise HTTPException(status_code=400, detail="Invalid signature")
        try:
            event = orjson.loads(payload)
        except orjson.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Invalid JSON")
        if not isinstance(event, dict):
            raise HTTPException(status_code=400, detail="Invalid event")
        return event

    def event_kind(self, event: dict) -> str:
        t = event.get("type", "")
        if t in SUCCEEDED_TYPES:
            return "succeeded"
        if t in FAILED_TYPES:
            return "failed"
        return "ignored"

    def event_ids(
        self, event: dict
    ) -> Tuple[Optional[str], Optional[str], Optional[str]]:
        data = event.get("data") or {}
        return (
            data.get("order_id") or event.get("order_id"),
            data.get("order_number") or event.get("order_number"),
            data.get("payment_reference") or event.get("id"),
        )
