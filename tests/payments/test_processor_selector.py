import pytest

from application.services.processor_selector import ProcessorSelector
from domain.payment.entity import ProcessorKind
from tests.fakes import InMemorySettingsRepository


async def _select(values):
    return await ProcessorSelector(InMemorySettingsRepository(values)).get_active_processor()


@pytest.mark.asyncio
async def test_explicit_selection_wins_over_flags():
    kind = await _select({
        "payment_active_processor": "square",
        "payment_stripe_enabled": "true",
    })
    assert kind is ProcessorKind.LINK_BASED


@pytest.mark.asyncio
async def test_explicit_none_disables_even_with_flags():
    kind = await _select({
        "payment_active_processor": "none",
        "payment_stripe_enabled": "true",
        "payment_paypal_enabled": "true",
    })
    assert kind is None


@pytest.mark.asyncio
async def test_canonical_values_are_accepted():
    assert await _select({"payment_active_processor": "wallet"}) is ProcessorKind.WALLET
    assert await _select({"payment_active_processor": " Card "}) is ProcessorKind.CARD


@pytest.mark.asyncio
async def test_fallback_priority_order():
    assert await _select({
        "payment_paypal_enabled": "true",
        "payment_square_enabled": "true",
    }) is ProcessorKind.WALLET
    assert await _select({
        "payment_stripe_enabled": "true",
        "payment_square_enabled": "true",
    }) is ProcessorKind.CARD
    assert await _select({"payment_square_enabled": "TRUE"}) is ProcessorKind.LINK_BASED


@pytest.mark.asyncio
async def test_flags_must_be_literal_true():
    assert await _select({"payment_stripe_enabled": "yes", "payment_paypal_enabled": "1"}) is None


@pytest.mark.asyncio
async def test_unknown_explicit_value_falls_back_to_flags():
    kind = await _select({
        "payment_active_processor": "bitcoin",
        "payment_paypal_enabled": "true",
    })
    assert kind is ProcessorKind.WALLET


@pytest.mark.asyncio
async def test_nothing_configured():
    assert await _select({}) is None
