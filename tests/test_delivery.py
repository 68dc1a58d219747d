import base64
import struct

import httpx
import orjson
import pytest
import segno

from boxoffice.delivery import (
    HttpRelayDelivery, LogDelivery, TicketDelivery,
    new_adapter, render_qr_png, render_ticket_message, ticket_subject,
)


@pytest.fixture
def job():
    return TicketDelivery(
        obligation_id="ob1",
        order_id="o1",
        order_number="BX261018-0A1B2C3D",
        recipient="ada@example.com",
        subject=ticket_subject("Launch Party"),
        credential="ABCDEF0123456789ABCDEF0123456789",
        buyer_name="Ada",
        quantity=2,
        event_name="Launch Party",
        location="Hall 1",
        tier_name="VIP",
    )


def test_credential_not_in_repr(job):
    assert job.credential not in repr(job)


def test_render_ticket_message(job):
    msg = render_ticket_message(job)
    assert msg["to"] == "ada@example.com"
    assert msg["subject"] == "Your ticket: Launch Party"
    assert "BX261018-0A1B2C3D" in msg["text"]
    assert "VIP x2" in msg["text"]
    assert "When:  TBA" in msg["text"]
    assert orjson.loads(msg["qr_payload"])["qr"] == job.credential

    png = base64.b64decode(msg["qr_png"])
    assert png.startswith(b"\x89PNG\r\n\x1a\n")
    assert png[12:16] == b"IHDR"
    width, height = struct.unpack(">II", png[16:24])
    assert width == height
    assert width > 0


def test_qr_png_uses_high_error_correction():
    payload = '{"id":"BX261018-0A1B2C3D","qr":"' + "A" * 32 + '"}'
    high = segno.make_qr(payload, error="h")
    low = segno.make_qr(payload, error="l")
    png = render_qr_png(payload, scale=1)
    width = struct.unpack(">I", png[16:20])[0]
    assert width == high.symbol_size(scale=1, border=4)[0]
    assert width > low.symbol_size(scale=1, border=4)[0]


@pytest.mark.asyncio
async def test_http_relay_posts_message(job):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as c:
        await HttpRelayDelivery(c, "http://relay/send", "tok").deliver(job)

    assert seen[0].headers["authorization"] == "Bearer tok"
    body = orjson.loads(seen[0].content)
    assert body["to"] == "ada@example.com"


@pytest.mark.asyncio
async def test_http_relay_raises_on_error(job):
    transport = httpx.MockTransport(lambda request: httpx.Response(503))
    async with httpx.AsyncClient(transport=transport) as c:
        with pytest.raises(httpx.HTTPStatusError):
            await HttpRelayDelivery(c, "http://relay/send").deliver(job)


@pytest.mark.asyncio
async def test_log_delivery_records_order(job):
    adapter = LogDelivery()
    await adapter.deliver(job)
    assert adapter.delivered == ["o1"]


def test_new_adapter():
    assert isinstance(new_adapter(), LogDelivery)
    with pytest.raises(RuntimeError):
        new_adapter(url="http://relay/send")
    client = httpx.AsyncClient()
    assert isinstance(new_adapter(http=client, url="http://relay/send"),
                      HttpRelayDelivery)
