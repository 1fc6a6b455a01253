"""
Factory for payment gateway clients.
"""
from __future__ import annotations

from typing import Optional

import httpx

from application.ports.payment_gateway import PaymentGateway
from domain.payment.entity import ProcessorKind
from domain.payment.exceptions import PaymentConfigurationError
from domain.payment.repository import SettingsRepository
from infrastructure.external.payments.config import (
    load_paypal_config,
    load_square_config,
    load_stripe_config,
)
from infrastructure.external.payments.token_cache import TokenCache


class ConfiguredGatewayFactory:
    """Builds a gateway per call from the credentials currently stored."""

    def __init__(
        self,
        settings_repo: SettingsRepository,
        *,
        token_cache: Optional[TokenCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings_repo
        self.token_cache = token_cache
        self.transport = transport

    async def get_gateway(self, processor: ProcessorKind) -> PaymentGateway:
        if processor is ProcessorKind.CARD:
            config = await load_stripe_config(self.settings)
            if config:
                from .stripe_client import StripeClient
                return StripeClient(config)
        elif processor is ProcessorKind.WALLET:
            config = await load_paypal_config(self.settings)
            if config:
                from .paypal_client import PayPalClient
                return PayPalClient(config, token_cache=self.token_cache, transport=self.transport)
        elif processor is ProcessorKind.LINK_BASED:
            config = await load_square_config(self.settings)
            if config:
                from .square_client import SquareClient
                return SquareClient(config, transport=self.transport)
        raise PaymentConfigurationError(f"{processor.label} is not configured", provider=processor.label)


__all__ = ["ConfiguredGatewayFactory"]
