"""
Stripe adapter (Card processor) using the official stripe-python SDK.

Notes on SDK usage:
- Module-level resources are called with a per-request `api_key`, so two
  configurations never share global state. Idempotency keys go through the
  `idempotency_key` kwarg.
- The SDK is synchronous; calls run in a worker thread.
- Webhook verification uses `stripe.Webhook.construct_event` with the
  `Stripe-Signature` header.
"""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

import stripe

from application.dtos.payments import (
    ChargeResult,
    CheckoutSessionParams,
    CheckoutSessionResult,
    CheckoutStatusResult,
    PaymentMethodSetup,
    StripeConfig,
    VaultedPaymentMethod,
    WebhookEvent,
)
from core.settings import payment_settings
from domain.payment.entity import CheckoutStatus, ProcessorKind
from domain.payment.exceptions import (
    PaymentNetworkError,
    PaymentProviderError,
    PaymentSignatureError,
    PaymentValidationError,
)
from domain.payment.service import allocate_line_discount
from infrastructure.external.payments.base import BasePaymentClient


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a StripeObject or a plain dict."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError):
        return default
    return default if value is None else value


def _id_of(value: Any) -> Optional[str]:
    # Expandable fields are either an id string or the expanded object
    if value is None or isinstance(value, str):
        return value
    return _get(value, "id")


class StripeClient(BasePaymentClient):
    processor = ProcessorKind.CARD

    def __init__(self, config: StripeConfig):
        super().__init__()
        self.config = config

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        kwargs["api_key"] = self.config.secret_key
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except stripe.APIConnectionError as exc:
            raise PaymentNetworkError(f"Stripe network error: {exc.user_message or exc}", provider=self.provider) from exc
        except stripe.StripeError as exc:
            raise PaymentProviderError(
                exc.user_message or str(exc),
                provider=self.provider,
                status_code=exc.http_status,
                provider_code=exc.code,
            ) from exc

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def build_line_items(self, params: CheckoutSessionParams) -> list[dict[str, Any]]:
        currency = params.currency

        def line(name: str, unit_amount: int, quantity: int, description: Optional[str] = None) -> dict[str, Any]:
            product: dict[str, Any] = {"name": name}
            if description:
                product["description"] = description
            return {
                "price_data": {"currency": currency, "product_data": product, "unit_amount": unit_amount},
                "quantity": quantity,
            }

        if not params.line_items:
            return [line(params.description, params.amount_minor, 1)]

        lines = []
        for item in params.line_items:
            for unit_amount, quantity in allocate_line_discount(
                item.unit_amount_minor, item.quantity, item.discount_minor
            ):
                lines.append(line(item.name, unit_amount, quantity, item.description))
        for adjustment in params.adjustments:
            lines.append(line(adjustment.name, -adjustment.amount_minor, 1))
        return lines

    async def _find_or_create_tax_rate(self, percent: float) -> str:
        rates = await self._call(stripe.TaxRate.list, limit=20, active=True)
        for rate in _get(rates, "data", []):
            if float(_get(rate, "percentage", -1)) == float(percent) and not _get(rate, "inclusive", False):
                return rate["id"]
        rate = await self._call(
            stripe.TaxRate.create,
            display_name=payment_settings.stripe.tax_display_name,
            percentage=percent,
            inclusive=False,
        )
        self._log("stripe_tax_rate_created", tax_rate_id=rate["id"], percentage=percent)
        return rate["id"]

    async def create_checkout(
        self,
        params: CheckoutSessionParams,
        *,
        customer_id: Optional[str],
        idempotency_key: str,
    ) -> CheckoutSessionResult:
        line_items = self.build_line_items(params)
        if params.tax_rate_percent and params.tax_rate_percent > 0:
            tax_rate_id = await self._find_or_create_tax_rate(params.tax_rate_percent)
            for li in line_items:
                if li["price_data"]["unit_amount"] > 0:
                    li["tax_rates"] = [tax_rate_id]

        kwargs: dict[str, Any] = {
            "mode": "payment",
            "line_items": line_items,
            "success_url": params.success_url,
            "cancel_url": params.cancel_url,
            "metadata": params.metadata,
            "idempotency_key": idempotency_key,
        }
        if customer_id:
            kwargs["customer"] = customer_id
        session = await self._call(stripe.checkout.Session.create, **kwargs)
        self._log("stripe_checkout_created", session_id=session["id"], lines=len(line_items))
        return CheckoutSessionResult(url=session["url"], session_id=session["id"], processor=self.processor)

    async def get_checkout_status(self, session_id: str, *, order_id: Optional[str] = None) -> CheckoutStatusResult:
        session = await self._call(stripe.checkout.Session.retrieve, id=session_id)
        native = _get(session, "status")
        metadata = dict(_get(session, "metadata", {})) or None
        if native == "complete":
            return CheckoutStatusResult(
                status=CheckoutStatus.COMPLETE,
                order_status=self._map_status(native),
                external_payment_id=_id_of(_get(session, "payment_intent")) or session_id,
                metadata=metadata,
                payer_email=_get(_get(session, "customer_details"), "email"),
            )
        if native == "expired":
            return CheckoutStatusResult(status=CheckoutStatus.EXPIRED, order_status=self._map_status(native))
        return CheckoutStatusResult(status=CheckoutStatus.PENDING, order_status=self._map_status(native))

    async def refund(
        self,
        charge_ref: str,
        *,
        amount_minor: Optional[int],
        currency: Optional[str],
        idempotency_key: str,
    ) -> str:
        kwargs: dict[str, Any] = {"payment_intent": charge_ref, "idempotency_key": idempotency_key}
        if amount_minor is not None:
            kwargs["amount"] = amount_minor
        refund = await self._call(stripe.Refund.create, **kwargs)
        self._log("stripe_refund_created", payment_intent=charge_ref, refund_id=refund["id"], status=_get(refund, "status"))
        return refund["id"]

    # ------------------------------------------------------------------
    # Customers and stored cards
    # ------------------------------------------------------------------

    async def create_customer(
        self,
        *,
        member_id: str,
        email: Optional[str],
        name: str,
        idempotency_key: str,
    ) -> str:
        kwargs: dict[str, Any] = {
            "name": name,
            "metadata": {"memberId": member_id},
            "idempotency_key": idempotency_key,
        }
        if email:
            kwargs["email"] = email
        customer = await self._call(stripe.Customer.create, **kwargs)
        return customer["id"]

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
    ) -> ChargeResult:
        if not customer_id:
            raise PaymentValidationError("Stripe off-session charges need a customer", provider=self.provider)
        metadata = {"invoiceId": reference} if reference else {}
        try:
            intent = await self._call(
                stripe.PaymentIntent.create,
                amount=amount_minor,
                currency=currency.lower(),
                customer=customer_id,
                payment_method=payment_method_id,
                off_session=True,
                confirm=True,
                description=description,
                metadata=metadata,
                idempotency_key=idempotency_key,
            )
        except PaymentProviderError as exc:
            # Declines are an outcome, not a failure of the call
            if exc.status_code == 402:
                return ChargeResult(success=False, processor=self.processor, status="failed", error=exc.message)
            raise
        status = _get(intent, "status")
        return ChargeResult(
            success=status == "succeeded",
            external_payment_id=intent["id"],
            processor=self.processor,
            status=status,
            error=None if status == "succeeded" else f"Stripe payment status {status}",
        )

    async def start_method_setup(self, *, customer_id: str, return_url: str, cancel_url: str) -> PaymentMethodSetup:
        session = await self._call(
            stripe.checkout.Session.create,
            mode="setup",
            customer=customer_id,
            payment_method_types=["card"],
            success_url=return_url,
            cancel_url=cancel_url,
        )
        return PaymentMethodSetup(processor=self.processor, setup_id=session["id"], url=session["url"])

    async def complete_method_setup(self, *, customer_id: str, setup_token: str) -> VaultedPaymentMethod:
        session = await self._call(stripe.checkout.Session.retrieve, id=setup_token, expand=["setup_intent"])
        method_id = _id_of(_get(_get(session, "setup_intent"), "payment_method"))
        if not method_id:
            raise PaymentValidationError("Setup session has no payment method yet", provider=self.provider)
        method = await self._call(stripe.PaymentMethod.retrieve, id=method_id)
        return self._to_method(method)

    async def list_payment_methods(self, customer_id: str) -> list[VaultedPaymentMethod]:
        methods = await self._call(stripe.PaymentMethod.list, customer=customer_id, type="card")
        return [self._to_method(m) for m in _get(methods, "data", [])]

    async def set_default_payment_method(self, customer_id: str, method_id: str) -> None:
        await self._call(
            stripe.Customer.modify,
            customer_id,
            invoice_settings={"default_payment_method": method_id},
        )

    async def delete_payment_method(self, method_id: str) -> None:
        await self._call(stripe.PaymentMethod.detach, method_id)

    @staticmethod
    def _to_method(method: Any) -> VaultedPaymentMethod:
        card = _get(method, "card", {})
        return VaultedPaymentMethod(
            id=method["id"],
            brand=_get(card, "brand", "unknown"),
            last4=_get(card, "last4", ""),
            exp_month=_get(card, "exp_month"),
            exp_year=_get(card, "exp_year"),
        )

    # ------------------------------------------------------------------
    # Webhooks / diagnostics
    # ------------------------------------------------------------------

    async def verify_webhook(
        self,
        headers: dict[str, Any],
        body: bytes,
        *,
        notification_url: Optional[str] = None,
    ) -> WebhookEvent:
        secret = self.config.webhook_secret or payment_settings.stripe.webhook_secret
        if not secret:
            raise PaymentSignatureError("Stripe webhook secret not configured", provider=self.provider)
        h = {k.lower(): v for k, v in headers.items()}
        sig = h.get("stripe-signature")
        if not sig:
            raise PaymentSignatureError("Missing Stripe-Signature header", provider=self.provider)
        try:
            event = stripe.Webhook.construct_event(
                payload=body,
                sig_header=sig,
                secret=secret,
                tolerance=payment_settings.webhook.tolerance_seconds,
            )
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise PaymentSignatureError(str(exc), provider=self.provider) from exc

        obj = _get(_get(event, "data"), "object", {})
        return WebhookEvent(
            id=str(_get(event, "id")),
            type=str(_get(event, "type")),
            processor=self.processor,
            status=self._map_status(_get(obj, "status")),
            reference=_id_of(_get(obj, "payment_intent")) or _get(obj, "id"),
            data=dict(_get(event, "data", {})),
            raw_headers=dict(headers),
            raw_body=body,
        )

    async def check_credentials(self) -> None:
        await self._call(stripe.Balance.retrieve)
