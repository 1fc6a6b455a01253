"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
Adapters raise `domain.payment.exceptions.PaymentError` subclasses; the
orchestrator turns them into result envelopes.
"""
from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable

from application.dtos.payments import (
    ChargeResult,
    CheckoutSessionParams,
    CheckoutSessionResult,
    CheckoutStatusResult,
    PaymentMethodSetup,
    VaultedPaymentMethod,
    WebhookEvent,
)
from domain.payment.entity import ProcessorKind


@runtime_checkable
class PaymentGateway(Protocol):
    """Gateway protocol for the three external payment processors.

    Implementations should be async and side-effect free beyond IO.
    """

    processor: ProcessorKind

    async def create_checkout(
        self,
        params: CheckoutSessionParams,
        *,
        customer_id: Optional[str],
        idempotency_key: str,
    ) -> CheckoutSessionResult: ...

    async def get_checkout_status(self, session_id: str, *, order_id: Optional[str] = None) -> CheckoutStatusResult: ...

    async def refund(
        self,
        charge_ref: str,
        *,
        amount_minor: Optional[int],
        currency: Optional[str],
        idempotency_key: str,
    ) -> str: ...

    async def create_customer(
        self,
        *,
        member_id: str,
        email: Optional[str],
        name: str,
        idempotency_key: str,
    ) -> str: ...

    async def charge_stored(
        self,
        *,
        customer_id: Optional[str],
        payment_method_id: str,
        amount_minor: int,
        currency: str,
        description: str,
        reference: Optional[str],
        idempotency_key: str,
    ) -> ChargeResult: ...

    async def start_method_setup(
        self,
        *,
        customer_id: str,
        return_url: str,
        cancel_url: str,
    ) -> PaymentMethodSetup: ...

    async def complete_method_setup(self, *, customer_id: str, setup_token: str) -> VaultedPaymentMethod: ...

    async def list_payment_methods(self, customer_id: str) -> list[VaultedPaymentMethod]: ...

    async def set_default_payment_method(self, customer_id: str, method_id: str) -> None: ...

    async def delete_payment_method(self, method_id: str) -> None: ...

    async def verify_webhook(
        self,
        headers: dict[str, Any],
        body: bytes,
        *,
        notification_url: Optional[str] = None,
    ) -> WebhookEvent: ...

    async def check_credentials(self) -> None: ...

    async def aclose(self) -> None: ...


class GatewayProvider(Protocol):
    """Builds a gateway for a processor from freshly loaded credentials.

    Raises PaymentConfigurationError when the processor's credentials are absent.
    """

    async def get_gateway(self, processor: ProcessorKind) -> PaymentGateway: ...
