from __future__ import annotations
import base64
import io
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, List, TypedDict

import httpx
import segno
from loguru import logger

from .config import DELIVERY_FROM
from .helpers import to_iso
from .model.credentials import qr_payload


# ----------------------------
# What a delivery attempt sees
# ----------------------------
@dataclass
class TicketDelivery:
    obligation_id: str
    order_id: str
    order_number: str
    recipient: str
    subject: str
    credential: str = field(repr=False)
    buyer_name: str = ""
    quantity: int = 1
    event_name: str = ""
    location: str = ""
    starts_at: Optional[float] = None
    tier_name: str = ""


class TicketMessage(TypedDict):
    sender: str
    to: str
    subject: str
    text: str
    qr_payload: str
    # base64 PNG of qr_payload, sent as an attachment
    qr_png: str


def ticket_subject(event_name: str) -> str:
    return f"Your ticket: {event_name}"


def render_qr_png(payload: str, scale: int = 8) -> bytes:
    """QR code image for door scanners, error correction level H."""
    buf = io.BytesIO()
    segno.make_qr(payload, error="h").save(
        buf, kind="png", scale=scale, border=4
    )
    return buf.getvalue()


def render_ticket_message(job: TicketDelivery) -> TicketMessage:
    payload = qr_payload(
        job.order_number, job.credential, job.event_name, job.tier_name
    )
    when = to_iso(job.starts_at) or "TBA"
    lines = [
        f"Hi {job.buyer_name},",
        "",
        f"Your ticket for {job.event_name} is confirmed.",
        f"Where: {job.location or 'TBA'}",
        f"When:  {when}",
        f"Tier:  {job.tier_name} x{job.quantity}",
        f"Order: {job.order_number}",
        "",
        "Show the attached QR code at the entrance.",
        f"Ticket code: {job.credential}",
    ]
    return {
        "sender": DELIVERY_FROM,
        "to": job.recipient,
        "subject": job.subject,
        "text": "\n".join(lines),
        "qr_payload": payload,
        "qr_png": base64.b64encode(render_qr_png(payload)).decode("ascii"),
    }


# ----------------------------
# Delivery Adapter Interface
# ----------------------------
class DeliveryAdapter(ABC):
    """Raises on failure. Returning means the message was accepted."""

    @abstractmethod
    async def deliver(self, job: TicketDelivery) -> None: ...


# ----------------------------
# HTTP mail relay
# ----------------------------
class HttpRelayDelivery(DeliveryAdapter):

    def __init__(self, client: httpx.AsyncClient, url: str,
                 token: str = "") -> None:
        self.client = client
        self.url = url
        self.token = token

    async def deliver(self, job: TicketDelivery) -> None:
        headers = {"content-type": "application/json"}
        if self.token:
            headers["authorization"] = f"Bearer {self.token}"
        r = await self.client.post(
            self.url,
            json=render_ticket_message(job),
            headers=headers,
        )
        r.raise_for_status()


# ----------------------------
# Log-only (no relay configured)
# ----------------------------
class LogDelivery(DeliveryAdapter):

    def __init__(self) -> None:
        self.delivered: List[str] = []

    async def deliver(self, job: TicketDelivery) -> None:
        # never log the credential itself
        logger.info(
            "Ticket delivery (log only): order={} to={} subject={!r}",
            job.order_number, job.recipient, job.subject,
        )
        self.delivered.append(job.order_id)


def new_adapter(*, http: Optional[httpx.AsyncClient] = None,
                url: str = "", token: str = "") -> DeliveryAdapter:
    if url:
        if http is None:
            raise RuntimeError("HttpRelayDelivery requires http=AsyncClient")
        return HttpRelayDelivery(http, url, token)
    logger.warning("DELIVERY_RELAY_URL not set - tickets are only logged")
    return LogDelivery()
