import orjson
import pytest
from fastapi import HTTPException

from boxoffice.payments import SignedWebhook, sign, SIGNATURE_HEADER


@pytest.fixture
def hook():
    return SignedWebhook(secret="s3cret", provider="acme")


def test_valid_signature(hook):
    body = orjson.dumps({"type": "payment.succeeded",
                         "data": {"order_id": "o1"}})
    event = hook.verify_webhook(body, {SIGNATURE_HEADER: sign(body, "s3cret")})
    assert hook.event_kind(event) == "succeeded"
    assert hook.event_ids(event) == ("o1", None, None)


@pytest.mark.parametrize("headers", [
    {},
    {SIGNATURE_HEADER: "bogus"},
    {SIGNATURE_HEADER: sign(b"{}", "other-secret")},
])
def test_bad_signature(hook, headers):
    with pytest.raises(HTTPException) as exc:
        hook.verify_webhook(b"{}", headers)
    assert exc.value.status_code == 400


def test_signed_garbage_is_rejected(hook):
    body = b"not json"
    with pytest.raises(HTTPException) as exc:
        hook.verify_webhook(body, {SIGNATURE_HEADER: sign(body, "s3cret")})
    assert exc.value.detail == "Invalid JSON"


@pytest.mark.parametrize("etype,kind", [
    ("payment.succeeded", "succeeded"),
    ("checkout.completed", "succeeded"),
    ("payment.failed", "failed"),
    ("customer.created", "ignored"),
])
def test_event_kind(hook, etype, kind):
    assert hook.event_kind({"type": etype}) == kind


def test_event_ids_by_order_number(hook):
    event = {"id": "evt_1", "type": "checkout.completed",
             "data": {"order_number": "BX261018-0A1B2C3D"}}
    assert hook.event_ids(event) == (None, "BX261018-0A1B2C3D", "evt_1")
