import pytest


stripe = pytest.importorskip("stripe")

from application.dtos.payments import (  # noqa: E402
    CheckoutAdjustment,
    CheckoutSessionParams,
    LineItem,
    StripeConfig,
)
from domain.payment.entity import CheckoutStatus, OrderStatus  # noqa: E402
from domain.payment.exceptions import PaymentNetworkError, PaymentSignatureError  # noqa: E402
from infrastructure.external.payments.stripe_client import StripeClient  # noqa: E402


CONFIG = StripeConfig(secret_key="sk_test_123", webhook_secret="whsec_test")


class Calls:
    def __init__(self):
        self.items = []

    def fake(self, name, result):
        def _fn(*args, **kwargs):
            self.items.append((name, args, kwargs))
            if isinstance(result, Exception):
                raise result
            return result(*args, **kwargs) if callable(result) else result
        return _fn

    def of(self, name):
        return [kw for n, _, kw in self.items if n == name]


@pytest.fixture
def calls(monkeypatch):
    c = Calls()
    monkeypatch.setattr(stripe.TaxRate, "list", c.fake("tax_list", {"data": []}))
    monkeypatch.setattr(stripe.TaxRate, "create", c.fake("tax_create", {"id": "txr_new"}))
    monkeypatch.setattr(
        stripe.checkout.Session,
        "create",
        c.fake("session_create", {"id": "cs_1", "url": "https://checkout.stripe.com/c/cs_1"}),
    )
    return c


def _params(**overrides):
    data = dict(
        amount_minor=5000,
        currency="usd",
        description="Membership",
        success_url="https://gym.example/ok",
        cancel_url="https://gym.example/cancel",
        metadata={"memberId": "m1"},
    )
    data.update(overrides)
    return CheckoutSessionParams(**data)


@pytest.mark.asyncio
async def test_single_line_checkout(calls):
    client = StripeClient(CONFIG)
    result = await client.create_checkout(_params(), customer_id="cus_1", idempotency_key="k1")
    assert result.session_id == "cs_1"
    kwargs = calls.of("session_create")[0]
    assert kwargs["api_key"] == "sk_test_123"
    assert kwargs["idempotency_key"] == "k1"
    assert kwargs["customer"] == "cus_1"
    assert kwargs["mode"] == "payment"
    assert kwargs["line_items"] == [{
        "price_data": {"currency": "usd", "product_data": {"name": "Membership"}, "unit_amount": 5000},
        "quantity": 1,
    }]
    assert calls.of("tax_list") == []


@pytest.mark.asyncio
async def test_itemized_checkout_with_discounts_and_tax(calls):
    client = StripeClient(CONFIG)
    params = _params(
        amount_minor=2900,
        line_items=[
            LineItem(name="Gloves", unit_amount_minor=1000, quantity=3, discount_minor=100),
            LineItem(name="Water", unit_amount_minor=200, quantity=1),
        ],
        adjustments=[CheckoutAdjustment(name="Gift Certificate Redemption", amount_minor=300)],
        tax_rate_percent=8.25,
    )
    await client.create_checkout(params, customer_id=None, idempotency_key="k2")

    kwargs = calls.of("session_create")[0]
    assert "customer" not in kwargs
    lines = [(li["price_data"]["product_data"]["name"], li["price_data"]["unit_amount"], li["quantity"], li.get("tax_rates"))
             for li in kwargs["line_items"]]
    assert lines == [
        ("Gloves", 967, 2, ["txr_new"]),
        ("Gloves", 966, 1, ["txr_new"]),
        ("Water", 200, 1, ["txr_new"]),
        ("Gift Certificate Redemption", -300, 1, None),
    ]
    assert calls.of("tax_create")[0]["percentage"] == 8.25
    assert calls.of("tax_create")[0]["inclusive"] is False


@pytest.mark.asyncio
async def test_existing_exclusive_tax_rate_is_reused(monkeypatch, calls):
    rates = {"data": [
        {"id": "txr_incl", "percentage": 8.25, "inclusive": True},
        {"id": "txr_excl", "percentage": 8.25, "inclusive": False},
    ]}
    monkeypatch.setattr(stripe.TaxRate, "list", calls.fake("tax_list", rates))
    client = StripeClient(CONFIG)
    await client.create_checkout(
        _params(line_items=[LineItem(name="Gloves", unit_amount_minor=1000)], tax_rate_percent=8.25),
        customer_id=None,
        idempotency_key="k3",
    )
    assert calls.of("tax_create") == []
    assert calls.of("session_create")[0]["line_items"][0]["tax_rates"] == ["txr_excl"]


@pytest.mark.asyncio
async def test_checkout_status(monkeypatch):
    sessions = {
        "cs_done": {"id": "cs_done", "status": "complete", "payment_intent": "pi_1", "metadata": {"memberId": "m1"}},
        "cs_old": {"id": "cs_old", "status": "expired", "payment_intent": None, "metadata": {}},
        "cs_open": {"id": "cs_open", "status": "open", "payment_intent": None, "metadata": {}},
    }
    monkeypatch.setattr(stripe.checkout.Session, "retrieve", lambda id, **kw: sessions[id])
    client = StripeClient(CONFIG)

    done = await client.get_checkout_status("cs_done")
    assert done.status is CheckoutStatus.COMPLETE
    assert done.order_status is OrderStatus.COMPLETED
    assert done.external_payment_id == "pi_1"
    assert done.metadata == {"memberId": "m1"}
    assert (await client.get_checkout_status("cs_old")).status is CheckoutStatus.EXPIRED
    assert (await client.get_checkout_status("cs_open")).status is CheckoutStatus.PENDING


@pytest.mark.asyncio
async def test_refund_by_payment_intent(monkeypatch):
    calls = Calls()
    monkeypatch.setattr(stripe.Refund, "create", calls.fake("refund", {"id": "re_1", "status": "succeeded"}))
    client = StripeClient(CONFIG)
    assert await client.refund("pi_1", amount_minor=None, currency=None, idempotency_key="r1") == "re_1"
    assert await client.refund("pi_1", amount_minor=500, currency="usd", idempotency_key="r2") == "re_1"
    full, partial = calls.of("refund")
    assert full["payment_intent"] == "pi_1" and "amount" not in full
    assert partial["amount"] == 500


@pytest.mark.asyncio
async def test_declined_off_session_charge_is_result(monkeypatch):
    decline = stripe.CardError("Your card was declined.", None, "card_declined", http_status=402)
    monkeypatch.setattr(stripe.PaymentIntent, "create", Calls().fake("pi", decline))
    client = StripeClient(CONFIG)
    result = await client.charge_stored(
        customer_id="cus_1",
        payment_method_id="pm_1",
        amount_minor=4500,
        currency="usd",
        description="Monthly",
        reference=None,
        idempotency_key="c1",
    )
    assert result.success is False
    assert "declined" in result.error


@pytest.mark.asyncio
async def test_successful_off_session_charge(monkeypatch):
    calls = Calls()
    monkeypatch.setattr(stripe.PaymentIntent, "create", calls.fake("pi", {"id": "pi_9", "status": "succeeded"}))
    client = StripeClient(CONFIG)
    result = await client.charge_stored(
        customer_id="cus_1",
        payment_method_id="pm_1",
        amount_minor=4500,
        currency="USD",
        description="Monthly",
        reference="inv-1",
        idempotency_key="c1",
    )
    assert result.success is True
    sent = calls.of("pi")[0]
    assert sent["off_session"] is True and sent["confirm"] is True
    assert sent["currency"] == "usd"
    assert sent["metadata"] == {"invoiceId": "inv-1"}


@pytest.mark.asyncio
async def test_default_method_is_set_on_customer_invoice_settings(monkeypatch):
    calls = Calls()
    monkeypatch.setattr(stripe.Customer, "modify", calls.fake("modify", {"id": "cus_1"}))
    await StripeClient(CONFIG).set_default_payment_method("cus_1", "pm_2")
    _, args, kwargs = calls.items[0]
    assert args == ("cus_1",)
    assert kwargs["invoice_settings"] == {"default_payment_method": "pm_2"}
    assert kwargs["api_key"] == "sk_test_123"


@pytest.mark.asyncio
async def test_connection_error_is_network_error(monkeypatch):
    monkeypatch.setattr(stripe.Balance, "retrieve", Calls().fake("balance", stripe.APIConnectionError("boom")))
    with pytest.raises(PaymentNetworkError):
        await StripeClient(CONFIG).check_credentials()


@pytest.mark.asyncio
async def test_webhook_verification(monkeypatch):
    class _FakeWebhook:
        @staticmethod
        def construct_event(payload, sig_header, secret, tolerance=None):
            if sig_header != "t=1,v1=good":
                raise stripe.SignatureVerificationError("No signatures found", sig_header)
            return {
                "id": "evt_1",
                "type": "checkout.session.completed",
                "data": {"object": {"id": "cs_1", "status": "complete", "payment_intent": "pi_1"}},
            }

    monkeypatch.setattr(stripe, "Webhook", _FakeWebhook)
    client = StripeClient(CONFIG)

    event = await client.verify_webhook({"Stripe-Signature": "t=1,v1=good"}, b"{}")
    assert event.type == "checkout.session.completed"
    assert event.reference == "pi_1"
    assert event.status is OrderStatus.COMPLETED

    with pytest.raises(PaymentSignatureError):
        await client.verify_webhook({"Stripe-Signature": "t=1,v1=bad"}, b"{}")
    with pytest.raises(PaymentSignatureError):
        await client.verify_webhook({}, b"{}")
