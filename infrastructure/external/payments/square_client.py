"""
Square REST adapter (LinkBased processor).

Checkout goes through hosted payment links; stored cards are charged through
the Payments API. All requests pin `Square-Version`.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
from typing import Any, Optional

import httpx

from application.dtos.payments import (
    ChargeResult,
    CheckoutSessionParams,
    CheckoutSessionResult,
    CheckoutStatusResult,
    PaymentMethodSetup,
    SquareConfig,
    VaultedPaymentMethod,
    WebhookEvent,
)
from application.services.payment_service import parse_metadata
from core.settings import payment_settings
from domain.payment.entity import CheckoutStatus, ProcessorKind
from domain.payment.exceptions import (
    PaymentProviderError,
    PaymentSignatureError,
    PaymentValidationError,
)
from infrastructure.external.payments.base import BasePaymentClient


SIGNATURE_HEADER = "x-square-hmacsha256-signature"


def compute_signature(signature_key: str, notification_url: str, body: bytes) -> str:
    digest = hmac.new(
        signature_key.encode("utf-8"),
        notification_url.encode("utf-8") + body,
        hashlib.sha256,
    ).digest()
    return base64.b64encode(digest).decode("ascii")


class SquareClient(BasePaymentClient):
    processor = ProcessorKind.LINK_BASED

    def __init__(self, config: SquareConfig, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        cfg = payment_settings.square
        super().__init__(base_url=cfg.sandbox_url if config.sandbox else cfg.live_url, transport=transport)
        self.config = config
        self._api_version = cfg.api_version
        self._key_max = cfg.idempotency_key_max_length

    def _key(self, idempotency_key: str) -> str:
        return idempotency_key[: self._key_max]

    async def _api(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self.config.access_token}",
            "Square-Version": self._api_version,
            "Content-Type": "application/json",
        }
        return await self._request(method, path, json=json_body, params=params, headers=headers)

    def _extract_error_message(self, response: httpx.Response) -> str:
        errors = self._json_or_empty(response).get("errors") or [{}]
        return errors[0].get("detail") or response.reason_phrase or f"HTTP {response.status_code}"

    def _money(self, amount_minor: int, currency: str) -> dict[str, Any]:
        return {"amount": amount_minor, "currency": currency.upper()}

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    async def create_checkout(
        self,
        params: CheckoutSessionParams,
        *,
        customer_id: Optional[str],
        idempotency_key: str,
    ) -> CheckoutSessionResult:
        body: dict[str, Any] = {
            "idempotency_key": self._key(idempotency_key),
            "quick_pay": {
                "name": params.description,
                "price_money": self._money(params.amount_minor, params.currency),
                "location_id": self.config.location_id,
            },
            "checkout_options": {"redirect_url": params.success_url},
        }
        if params.metadata:
            body["payment_note"] = json.dumps(params.metadata)
        data = await self._api("POST", "/v2/online-checkout/payment-links", json_body=body)
        link = data.get("payment_link") or {}
        if not link.get("url"):
            raise PaymentProviderError("Square returned no payment link", provider=self.provider)
        self._log("square_payment_link_created", link_id=link.get("id"), order_id=link.get("order_id"))
        return CheckoutSessionResult(
            url=link["url"],
            session_id=link["id"],
            order_id=link.get("order_id"),
            processor=self.processor,
        )

    async def get_checkout_status(self, session_id: str, *, order_id: Optional[str] = None) -> CheckoutStatusResult:
        if not order_id:
            link = (await self._api("GET", f"/v2/online-checkout/payment-links/{session_id}")).get("payment_link") or {}
            order_id = link.get("order_id")
            if not order_id:
                raise PaymentValidationError("Square payment link has no order", provider=self.provider)

        order = (await self._api("GET", f"/v2/orders/{order_id}")).get("order") or {}
        state = order.get("state")
        tenders = order.get("tenders") or []
        payment_id = tenders[0].get("payment_id") if tenders else None

        if state == "COMPLETED":
            receipt_url = None
            note = None
            if payment_id:
                payment = (await self._api("GET", f"/v2/payments/{payment_id}")).get("payment") or {}
                receipt_url = payment.get("receipt_url")
                note = payment.get("note")
            return CheckoutStatusResult(
                status=CheckoutStatus.COMPLETE,
                order_status=self._map_status(state),
                external_payment_id=payment_id,
                receipt_url=receipt_url,
                metadata=parse_metadata(note) or None,
            )
        if state == "CANCELED":
            return CheckoutStatusResult(status=CheckoutStatus.EXPIRED, order_status=self._map_status(state))
        return CheckoutStatusResult(status=CheckoutStatus.PENDING, order_status=self._map_status(state))

    async def refund(
        self,
        charge_ref: str,
        *,
        amount_minor: Optional[int],
        currency: Optional[str],
        idempotency_key: str,
    ) -> str:
        if amount_minor is None or not currency:
            raise PaymentValidationError("Amount and currency required for Square refund", provider=self.provider)
        data = await self._api(
            "POST",
            "/v2/refunds",
            json_body={
                "idempotency_key": self._key(idempotency_key),
                "payment_id": charge_ref,
                "amount_money": self._money(amount_minor, currency),
            },
        )
        refund = data.get("refund") or {}
        self._log("square_refund_created", payment_id=charge_ref, refund_id=refund.get("id"), status=refund.get("status"))
        return refund["id"]

    # ------------------------------------------------------------------
    # Customers and cards
    # ------------------------------------------------------------------

    async def find_customer(self, member_id: str) -> Optional[str]:
        data = await self._api(
            "POST",
            "/v2/customers/search",
            json_body={"query": {"filter": {"reference_id": {"exact": member_id}}}},
        )
        customers = data.get("customers") or []
        return customers[0]["id"] if customers else None

    async def create_customer(
        self,
        *,
        member_id: str,
        email: Optional[str],
        name: str,
        idempotency_key: str,
    ) -> str:
        existing = await self.find_customer(member_id)
        if existing:
            return existing
        given, _, family = name.strip().partition(" ")
        body: dict[str, Any] = {
            "idempotency_key": self._key(idempotency_key),
            "given_name": given,
            "family_name": family,
            "reference_id": member_id,
        }
        if email:
            body["email_address"] = email
        data = await self._api("POST", "/v2/customers", json_body=body)
        return data["customer"]["id"]

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
        body: dict[str, Any] = {
            "idempotency_key": self._key(idempotency_key),
            "source_id": payment_method_id,
            "customer_id": customer_id,
            "amount_money": self._money(amount_minor, currency),
            "autocomplete": True,
            "location_id": self.config.location_id,
        }
        if description:
            body["note"] = description
        if reference:
            body["reference_id"] = reference
        payment = (await self._api("POST", "/v2/payments", json_body=body)).get("payment") or {}
        status = payment.get("status")
        return ChargeResult(
            success=status == "COMPLETED",
            external_payment_id=payment.get("id"),
            processor=self.processor,
            status=status,
            receipt_url=payment.get("receipt_url"),
            error=None if status == "COMPLETED" else f"Square payment status {status}",
        )

    async def start_method_setup(self, *, customer_id: str, return_url: str, cancel_url: str) -> PaymentMethodSetup:
        """Square cards are tokenized in-page by the Web Payments SDK; return its parameters."""
        return PaymentMethodSetup(
            processor=self.processor,
            setup_id=customer_id,
            client_params={
                "application_id": self.config.application_id,
                "location_id": self.config.location_id,
                "sandbox": self.config.sandbox,
            },
        )

    async def complete_method_setup(self, *, customer_id: str, setup_token: str) -> VaultedPaymentMethod:
        data = await self._api(
            "POST",
            "/v2/cards",
            json_body={
                "idempotency_key": self._key(f"card-{setup_token}"),
                "source_id": setup_token,
                "card": {"customer_id": customer_id},
            },
        )
        return self._to_method(data.get("card") or {})

    async def list_payment_methods(self, customer_id: str) -> list[VaultedPaymentMethod]:
        data = await self._api("GET", "/v2/cards", params={"customer_id": customer_id})
        return [self._to_method(card) for card in data.get("cards") or []]

    async def set_default_payment_method(self, customer_id: str, method_id: str) -> None:
        """Square cards on file have no default flag; the CustomerLink carries it."""
        return None

    async def delete_payment_method(self, method_id: str) -> None:
        try:
            await self._api("DELETE", f"/v2/cards/{method_id}")
        except PaymentProviderError as exc:
            if exc.status_code != 404:
                raise

    @staticmethod
    def _to_method(card: dict[str, Any]) -> VaultedPaymentMethod:
        return VaultedPaymentMethod(
            id=card["id"],
            brand=card.get("card_brand") or "unknown",
            last4=card.get("last_4") or "",
            exp_month=card.get("exp_month"),
            exp_year=card.get("exp_year"),
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
        if not self.config.webhook_signature_key or not notification_url:
            raise PaymentSignatureError("Square webhook signature key not configured", provider=self.provider)
        h = {k.lower(): v for k, v in headers.items()}
        received = h.get(SIGNATURE_HEADER)
        if not received:
            raise PaymentSignatureError("Missing Square signature header", provider=self.provider)
        expected = compute_signature(self.config.webhook_signature_key, notification_url, body)
        # Header values are latin-1 decoded and may hold non-ASCII characters
        if not hmac.compare_digest(expected.encode("utf-8"), str(received).encode("utf-8")):
            raise PaymentSignatureError("Square webhook signature mismatch", provider=self.provider)

        try:
            event = json.loads(body)
        except ValueError as exc:
            raise PaymentValidationError("Webhook body is not JSON", provider=self.provider) from exc
        obj = (event.get("data") or {}).get("object") or {}
        # data.object holds a single typed entity, e.g. {"payment": {...}}
        entity = next(iter(obj.values()), {}) if obj else {}
        return WebhookEvent(
            id=str(event.get("event_id")),
            type=str(event.get("type")),
            processor=self.processor,
            status=self._map_status(entity.get("status") or entity.get("state")),
            reference=entity.get("id"),
            data=event.get("data") or {},
            raw_headers=dict(headers),
            raw_body=body,
        )

    async def check_credentials(self) -> None:
        await self._api("GET", f"/v2/locations/{self.config.location_id}")
