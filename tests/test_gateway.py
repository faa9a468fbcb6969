import asyncio
import hashlib
import hmac
import json

import httpx
import pytest

from jpgtickets.errors import (
    ChargeNotFound,
    ConfigurationError,
    GatewayRejected,
    GatewayUnauthorized,
    GatewayUnavailable,
    ValidationError,
)
from jpgtickets.mercadopago import (
    MercadoPago,
    parse_signature_header,
    verify_signature,
)

from conftest import CPF, FakeMercadoPago


def run_with(mp, fn, **kw):
    async def _go():
        async with httpx.AsyncClient(
            base_url="https://api.mercadopago.test",
            transport=httpx.MockTransport(mp.handler),
        ) as http:
            gw = MercadoPago(http, "TEST-token", **kw)
            return await fn(gw)
    return asyncio.run(_go())


def charge(gw, **overrides):
    kw = dict(amount=25.0, description="Inscrição", payer_email="a@b.co",
              payer_name="Ana Maria Souza", payer_document_id=CPF,
              external_reference="p-1")
    kw.update(overrides)
    return gw.create_charge(**kw)


def test_create_charge_request():
    mp = FakeMercadoPago()
    result = run_with(mp, charge,
                      notification_url="https://x.example/payments/webhook")
    assert result["charge_id"] == "1001"
    assert result["status"] == "pending"
    assert result["copy_paste_code"] == "00020126PIX1001"

    req = mp.last_request
    assert req.method == "POST"
    assert req.url.path == "/v1/payments"
    assert req.headers["authorization"] == "Bearer TEST-token"
    assert req.headers["x-idempotency-key"]
    body = json.loads(req.content)
    assert body == {
        "transaction_amount": 25.0,
        "description": "Inscrição",
        "payment_method_id": "pix",
        "payer": {
            "email": "a@b.co",
            "first_name": "Ana",
            "last_name": "Maria Souza",
            "identification": {"type": "CPF", "number": "12345678909"},
        },
        "external_reference": "p-1",
        "notification_url": "https://x.example/payments/webhook",
    }


def test_each_charge_gets_its_own_idempotency_key():
    mp = FakeMercadoPago()

    async def twice(gw):
        await charge(gw)
        await charge(gw)

    run_with(mp, twice)
    keys = {r.headers["x-idempotency-key"] for r in mp.requests}
    assert len(keys) == 2


def test_fetch_status():
    mp = FakeMercadoPago()
    cid = mp.add_charge("approved", external_reference="p-9")
    result = run_with(mp, lambda gw: gw.fetch_charge_status(cid))
    assert result == {"charge_id": cid, "status": "approved",
                      "external_reference": "p-9"}
    assert mp.last_request.url.path == f"/v1/payments/{cid}"


@pytest.mark.parametrize("code, exc", [
    (404, ChargeNotFound),
    (401, GatewayUnauthorized),
    (403, GatewayUnauthorized),
    (500, GatewayUnavailable),
    (502, GatewayUnavailable),
    (400, GatewayRejected),
])
def test_error_mapping(code, exc):
    mp = FakeMercadoPago()
    mp.fail = code
    with pytest.raises(exc):
        run_with(mp, lambda gw: gw.fetch_charge_status("1"))


def test_timeout_is_unavailable():
    mp = FakeMercadoPago()
    mp.fail = "timeout"
    with pytest.raises(GatewayUnavailable):
        run_with(mp, charge)


def test_rejection_message_from_cause():
    mp = FakeMercadoPago()
    mp.fail = 400
    mp.fail_body = {"cause": [{"code": 4020,
                               "description": "notification_url invalid"}]}
    with pytest.raises(GatewayRejected) as e:
        run_with(mp, charge)
    assert e.value.message == "notification_url invalid"
    assert e.value.status_code == 400


def test_missing_pix_data():
    mp = FakeMercadoPago()
    mp.omit_pix = True
    with pytest.raises(GatewayUnavailable):
        run_with(mp, charge)


def test_local_validation():
    mp = FakeMercadoPago()
    with pytest.raises(ValidationError):
        run_with(mp, lambda gw: charge(gw, amount=0))
    with pytest.raises(ValidationError):
        run_with(mp, lambda gw: charge(gw, payer_document_id="123.456"))
    assert mp.requests == []


def test_requires_access_token():
    with pytest.raises(ConfigurationError):
        MercadoPago(None, None)


def test_signature():
    secret = "s3cret"
    manifest = "id:123;request-id:abc;ts:1704908010;"
    v1 = hmac.new(secret.encode(), manifest.encode(),
                  hashlib.sha256).hexdigest()
    header = f"ts=1704908010,v1={v1}"

    assert parse_signature_header(header) == {"ts": "1704908010", "v1": v1}
    assert verify_signature(header, "abc", "123", secret)
    assert not verify_signature(header, "abc", "124", secret)
    assert not verify_signature(header, "abc", "123", "other")
    assert not verify_signature("v1=" + v1, "abc", "123", secret)
    assert not verify_signature("garbage", "abc", "123", secret)
