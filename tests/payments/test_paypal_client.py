import json

import httpx
import pytest

from application.dtos.payments import CheckoutSessionParams, PayPalConfig
from domain.payment.entity import CheckoutStatus, OrderStatus
from domain.payment.exceptions import (
    PaymentProviderError,
    PaymentSignatureError,
    PaymentTimeoutError,
)
from infrastructure.external.payments.paypal_client import PayPalClient, encode_custom_id, format_amount
from infrastructure.external.payments.token_cache import TokenCache


CONFIG = PayPalConfig(client_id="cid", client_secret="csecret", sandbox=True, webhook_id="WH-1")


class Recorder:
    """Routes requests to per-path handlers and keeps every request seen."""

    def __init__(self, routes):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "TOKEN", "expires_in": 32400})
        handler = self.routes[(request.method, request.url.path)]
        return handler(request) if callable(handler) else handler

    def to(self, path):
        return [r for r in self.requests if r.url.path == path]


def _client(routes):
    recorder = Recorder(routes)
    client = PayPalClient(
        CONFIG,
        token_cache=TokenCache(margin_seconds=300),
        transport=httpx.MockTransport(recorder),
    )
    return client, recorder


def _params(**overrides):
    data = dict(
        amount_minor=1999,
        currency="usd",
        description="Drop-in class",
        success_url="https://gym.example/ok",
        cancel_url="https://gym.example/cancel",
        metadata={"memberId": "m1", "transactionId": "tx-1"},
    )
    data.update(overrides)
    return CheckoutSessionParams(**data)


def test_format_amount():
    assert format_amount(1999) == "19.99"
    assert format_amount(5) == "0.05"
    assert format_amount(100000) == "1000.00"


@pytest.mark.asyncio
async def test_create_checkout_builds_order():
    order = {
        "id": "ORDER-1",
        "status": "PAYER_ACTION_REQUIRED",
        "links": [
            {"rel": "self", "href": "https://api.sandbox.paypal.com/v2/checkout/orders/ORDER-1"},
            {"rel": "payer-action", "href": "https://www.sandbox.paypal.com/checkoutnow?token=ORDER-1"},
        ],
    }
    client, rec = _client({("POST", "/v2/checkout/orders"): httpx.Response(201, json=order)})

    result = await client.create_checkout(_params(), customer_id=None, idempotency_key="key-1")
    await client.aclose()

    assert result.url.endswith("token=ORDER-1")
    assert result.session_id == "ORDER-1"
    req = rec.to("/v2/checkout/orders")[0]
    assert req.url.host == "api-m.sandbox.paypal.com"
    assert req.headers["PayPal-Request-Id"] == "key-1"
    assert req.headers["Authorization"] == "Bearer TOKEN"
    body = json.loads(req.content)
    unit = body["purchase_units"][0]
    assert body["intent"] == "CAPTURE"
    assert unit["amount"] == {"currency_code": "USD", "value": "19.99"}
    assert json.loads(unit["custom_id"]) == {"memberId": "m1", "transactionId": "tx-1"}
    assert unit["reference_id"] == "tx-1"
    ctx = body["payment_source"]["paypal"]["experience_context"]
    assert ctx["user_action"] == "PAY_NOW"
    assert ctx["return_url"] == "https://gym.example/ok"


@pytest.mark.asyncio
async def test_oversized_custom_id_drops_whole_keys():
    order = {"id": "O", "links": [{"rel": "payer-action", "href": "https://p/x"}]}
    client, rec = _client({("POST", "/v2/checkout/orders"): httpx.Response(201, json=order)})
    await client.create_checkout(
        _params(metadata={"note": "x" * 300, "memberId": "m1"}), customer_id=None, idempotency_key="k"
    )
    unit = json.loads(rec.to("/v2/checkout/orders")[0].content)["purchase_units"][0]
    assert unit["custom_id"] == '{"memberId":"m1"}'
    assert json.loads(unit["custom_id"]) == {"memberId": "m1"}


def test_encode_custom_id_keeps_priority_keys():
    value, dropped = encode_custom_id({"source": "y" * 120, "invoiceId": "INV-1", "memberId": "m1"}, 127)
    assert json.loads(value) == {"memberId": "m1", "invoiceId": "INV-1"}
    assert dropped == ["source"]
    assert encode_custom_id({"note": "x" * 300}, 127) == (None, ["note"])


@pytest.mark.asyncio
async def test_metadata_near_limit_survives_checkout_round_trip():
    metadata = {
        "memberId": "cm1k2x9a80000abcd",
        "transactionId": "tx_8f3a9c2e1b7d",
        "invoiceId": "INV-2024-00042",
        "source": "portal-store-web",
    }
    order = {"id": "O-9", "links": [{"rel": "payer-action", "href": "https://p/x"}]}
    client, rec = _client({("POST", "/v2/checkout/orders"): httpx.Response(201, json=order)})
    await client.create_checkout(_params(metadata=metadata), customer_id=None, idempotency_key="k")
    custom_id = json.loads(rec.to("/v2/checkout/orders")[0].content)["purchase_units"][0]["custom_id"]
    assert len(custom_id) <= 127

    completed = {
        "id": "O-9",
        "status": "COMPLETED",
        "purchase_units": [{
            "custom_id": custom_id,
            "payments": {"captures": [{"id": "CAP-9", "status": "COMPLETED"}]},
        }],
    }
    reader, _ = _client({("GET", "/v2/checkout/orders/O-9"): httpx.Response(200, json=completed)})
    result = await reader.get_checkout_status("O-9")
    assert result.metadata == metadata


@pytest.mark.asyncio
async def test_access_token_is_cached_between_calls():
    order = {"id": "O", "links": [{"rel": "payer-action", "href": "https://p/x"}]}
    client, rec = _client({("POST", "/v2/checkout/orders"): httpx.Response(201, json=order)})
    await client.create_checkout(_params(), customer_id=None, idempotency_key="k1")
    await client.create_checkout(_params(), customer_id=None, idempotency_key="k2")
    assert len(rec.to("/v1/oauth2/token")) == 1
    token_req = rec.to("/v1/oauth2/token")[0]
    assert token_req.headers["Authorization"].startswith("Basic ")
    assert token_req.content == b"grant_type=client_credentials"


@pytest.mark.asyncio
async def test_error_message_comes_from_details():
    error = {"name": "UNPROCESSABLE_ENTITY", "message": "The requested action could not be performed",
             "details": [{"issue": "CURRENCY_NOT_SUPPORTED", "description": "Currency code is not supported"}]}
    client, _ = _client({("POST", "/v2/checkout/orders"): httpx.Response(422, json=error)})
    with pytest.raises(PaymentProviderError) as exc_info:
        await client.create_checkout(_params(), customer_id=None, idempotency_key="k")
    assert exc_info.value.message == "Currency code is not supported"
    assert exc_info.value.status_code == 422


@pytest.mark.asyncio
async def test_error_message_falls_back_to_status_text():
    client, _ = _client({("GET", "/v2/checkout/orders/O-1"): httpx.Response(503)})
    with pytest.raises(PaymentProviderError) as exc_info:
        await client.get_checkout_status("O-1")
    assert exc_info.value.message == "Service Unavailable"


@pytest.mark.asyncio
async def test_approved_order_is_captured():
    order = {"id": "O-1", "status": "APPROVED", "purchase_units": [{"custom_id": '{"memberId": "m1"}'}]}
    capture = {
        "status": "COMPLETED",
        "payer": {"email_address": "payer@example.com", "payer_id": "PAYER1"},
        "purchase_units": [{"payments": {"captures": [{"id": "CAP-1", "status": "COMPLETED"}]}}],
    }
    client, rec = _client({
        ("GET", "/v2/checkout/orders/O-1"): httpx.Response(200, json=order),
        ("POST", "/v2/checkout/orders/O-1/capture"): httpx.Response(201, json=capture),
    })
    result = await client.get_checkout_status("O-1")
    assert result.status is CheckoutStatus.COMPLETE
    assert result.order_status is OrderStatus.COMPLETED
    assert result.external_payment_id == "CAP-1"
    assert result.payer_id == "PAYER1"
    assert result.metadata == {"memberId": "m1"}
    assert len(rec.to("/v2/checkout/orders/O-1/capture")) == 1


@pytest.mark.asyncio
async def test_voided_and_created_orders():
    client, _ = _client({
        ("GET", "/v2/checkout/orders/V"): httpx.Response(200, json={"id": "V", "status": "VOIDED"}),
        ("GET", "/v2/checkout/orders/C"): httpx.Response(200, json={"id": "C", "status": "CREATED"}),
    })
    voided = await client.get_checkout_status("V")
    assert voided.status is CheckoutStatus.EXPIRED
    created = await client.get_checkout_status("C")
    assert created.status is CheckoutStatus.PENDING
    assert created.order_status is OrderStatus.CREATED


@pytest.mark.asyncio
async def test_refund_full_and_partial():
    client, rec = _client({
        ("POST", "/v2/payments/captures/CAP-1/refund"): httpx.Response(201, json={"id": "RF-1", "status": "COMPLETED"}),
    })
    assert await client.refund("CAP-1", amount_minor=None, currency=None, idempotency_key="r1") == "RF-1"
    assert await client.refund("CAP-1", amount_minor=250, currency="usd", idempotency_key="r2") == "RF-1"
    full, partial = rec.to("/v2/payments/captures/CAP-1/refund")
    assert json.loads(full.content) == {}
    assert json.loads(partial.content) == {"amount": {"value": "2.50", "currency_code": "USD"}}
    assert partial.headers["PayPal-Request-Id"] == "r2"


@pytest.mark.asyncio
async def test_vault_setup_and_confirm():
    client, rec = _client({
        ("POST", "/v3/vault/setup-tokens"): httpx.Response(
            201, json={"id": "ST-1", "links": [{"rel": "approve", "href": "https://paypal/approve?t=ST-1"}]}
        ),
        ("POST", "/v3/vault/payment-tokens"): httpx.Response(
            201, json={"id": "PT-1", "payment_source": {"paypal": {"email_address": "p@example.com"}}}
        ),
    })
    customer_id = await client.create_customer(member_id="m1", email=None, name="", idempotency_key="k")
    assert len(customer_id) <= 22
    assert customer_id == await client.create_customer(member_id="m1", email=None, name="", idempotency_key="k2")

    setup = await client.start_method_setup(customer_id=customer_id, return_url="https://r", cancel_url="https://c")
    assert setup.url == "https://paypal/approve?t=ST-1"
    body = json.loads(rec.to("/v3/vault/setup-tokens")[0].content)
    assert body["customer"] == {"id": customer_id}
    assert body["payment_source"]["paypal"]["usage_type"] == "MERCHANT"

    method = await client.complete_method_setup(customer_id=customer_id, setup_token="ST-1")
    assert method.id == "PT-1"
    assert method.kind == "wallet"


@pytest.mark.asyncio
async def test_charge_vaulted_token_captures_when_needed():
    client, rec = _client({
        ("POST", "/v2/checkout/orders"): httpx.Response(201, json={"id": "O-9", "status": "APPROVED"}),
        ("POST", "/v2/checkout/orders/O-9/capture"): httpx.Response(201, json={
            "status": "COMPLETED",
            "purchase_units": [{"payments": {"captures": [{"id": "CAP-9"}]}}],
        }),
    })
    result = await client.charge_stored(
        customer_id=None,
        payment_method_id="PT-1",
        amount_minor=4500,
        currency="usd",
        description="Monthly",
        reference="inv-1",
        idempotency_key="c1",
    )
    assert result.success is True
    assert result.external_payment_id == "CAP-9"
    body = json.loads(rec.to("/v2/checkout/orders")[0].content)
    assert body["payment_source"] == {"paypal": {"vault_id": "PT-1"}}


@pytest.mark.asyncio
async def test_webhook_verification():
    event = {"id": "WH-EVT-1", "event_type": "PAYMENT.CAPTURE.COMPLETED", "resource": {"id": "CAP-1", "status": "COMPLETED"}}
    headers = {
        "PAYPAL-TRANSMISSION-ID": "t-1",
        "PAYPAL-TRANSMISSION-TIME": "2024-01-01T00:00:00Z",
        "PAYPAL-CERT-URL": "https://api.paypal.com/cert",
        "PAYPAL-AUTH-ALGO": "SHA256withRSA",
        "PAYPAL-TRANSMISSION-SIG": "sig",
    }
    client, rec = _client({
        ("POST", "/v1/notifications/verify-webhook-signature"): httpx.Response(200, json={"verification_status": "SUCCESS"}),
    })
    parsed = await client.verify_webhook(headers, json.dumps(event).encode())
    assert parsed.type == "PAYMENT.CAPTURE.COMPLETED"
    assert parsed.reference == "CAP-1"
    assert parsed.status is OrderStatus.COMPLETED
    body = json.loads(rec.to("/v1/notifications/verify-webhook-signature")[0].content)
    assert body["webhook_id"] == "WH-1"
    assert body["transmission_sig"] == "sig"
    assert body["webhook_event"] == event


@pytest.mark.asyncio
async def test_webhook_verification_failure_raises():
    client, _ = _client({
        ("POST", "/v1/notifications/verify-webhook-signature"): httpx.Response(200, json={"verification_status": "FAILURE"}),
    })
    with pytest.raises(PaymentSignatureError):
        await client.verify_webhook({}, b'{"id": "x"}')


@pytest.mark.asyncio
async def test_timeout_retries_with_same_request_id():
    attempts = []

    def timeout(request):
        attempts.append(request.headers["PayPal-Request-Id"])
        raise httpx.ReadTimeout("slow", request=request)

    client, _ = _client({("POST", "/v2/checkout/orders"): timeout})
    with pytest.raises(PaymentTimeoutError):
        await client.create_checkout(_params(), customer_id=None, idempotency_key="same-key")
    assert len(attempts) == 3
    assert set(attempts) == {"same-key"}
