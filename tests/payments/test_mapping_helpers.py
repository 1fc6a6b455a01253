import pytest

from domain.common.exceptions import DomainValidationException
from domain.payment.entity import CachedToken, OrderStatus, ProcessorKind
from domain.payment.exceptions import PaymentProviderError
from domain.payment.service import allocate_line_discount
from infrastructure.external.payments.base import BasePaymentClient
from shared.codes.payment_codes import PaymentCode


class _MapClient(BasePaymentClient):
    processor = ProcessorKind.WALLET


class _SquareMapClient(BasePaymentClient):
    processor = ProcessorKind.LINK_BASED


def test_provider_status_mapping():
    c = _MapClient()
    assert c._map_status("PAYER_ACTION_REQUIRED") is OrderStatus.CREATED
    assert c._map_status("APPROVED") is OrderStatus.APPROVED
    assert c._map_status("VOIDED") is OrderStatus.CANCELED
    assert c._map_status("SOMETHING_NEW") is None
    assert c._map_status(None) is None

    s = _SquareMapClient()
    assert s._map_status("OPEN") is OrderStatus.CREATED
    assert s._map_status("CANCELED") is OrderStatus.CANCELED
    assert s._map_status("COMPLETED").is_terminal


def test_processor_kind_parse():
    assert ProcessorKind.parse("paypal") is ProcessorKind.WALLET
    assert ProcessorKind.parse("LINKBASED") is ProcessorKind.LINK_BASED
    assert ProcessorKind.parse("") is None
    assert ProcessorKind.parse("venmo") is None
    assert ProcessorKind.CARD.settings_prefix == "stripe"


def test_cached_token_freshness():
    token = CachedToken(token="t", expires_at_epoch_ms=10_000)
    assert token.is_fresh(now_ms=4_000, margin_ms=5_000)
    assert not token.is_fresh(now_ms=5_000, margin_ms=5_000)


@pytest.mark.parametrize(
    "unit, qty, discount, expected",
    [
        (1000, 3, 0, [(1000, 3)]),
        (1000, 3, 300, [(900, 3)]),
        (1000, 3, 100, [(967, 2), (966, 1)]),
        (500, 4, 3, [(500, 1), (499, 3)]),
        (100, 2, 500, [(0, 2)]),
    ],
)
def test_allocate_line_discount(unit, qty, discount, expected):
    groups = allocate_line_discount(unit, qty, discount)
    assert groups == expected
    assert sum(price * n for price, n in groups) == unit * qty - min(discount, unit * qty)


def test_allocate_line_discount_rejects_bad_quantity():
    with pytest.raises(DomainValidationException):
        allocate_line_discount(100, 0, 10)


def test_payment_error_log_context_carries_provider():
    exc = PaymentProviderError("Card declined", provider="Stripe", status_code=402, provider_code="card_declined")
    context = exc.log_context()
    assert context == {
        "code": int(PaymentCode.PROVIDER_ERROR),
        "error_type": "ProviderError",
        "error": "Card declined",
        "provider": "Stripe",
    }
