"""
PayPal REST adapter (Wallet processor).

Orders v2 for hosted checkout, Payments v2 for refunds and Vault v3 for stored
PayPal accounts. Access tokens come from the shared TokenCache; the
`PayPal-Request-Id` header carries idempotency keys.
"""
from __future__ import annotations

import hashlib
import json
from typing import Any, Optional

import httpx

from application.dtos.payments import (
    ChargeResult,
    CheckoutSessionParams,
    CheckoutSessionResult,
    CheckoutStatusResult,
    PayPalConfig,
    PaymentMethodSetup,
    VaultedPaymentMethod,
    WebhookEvent,
)
from application.services.payment_service import parse_metadata
from core.settings import payment_settings
from domain.payment.entity import CheckoutStatus, OrderStatus, ProcessorKind
from domain.payment.exceptions import (
    PaymentProviderError,
    PaymentSignatureError,
    PaymentValidationError,
)
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.token_cache import TokenCache, paypal_token_cache


def format_amount(amount_minor: int) -> str:
    """Minor units to PayPal's decimal string, e.g. 1999 -> "19.99"."""
    return f"{amount_minor // 100}.{amount_minor % 100:02d}"


# Kept first when custom_id has to shed keys to fit PayPal's length limit
CUSTOM_ID_PRIORITY = ("memberId", "transactionId", "invoiceId")


def _compact_json(data: dict[str, str]) -> str:
    return json.dumps(data, separators=(",", ":"))


def encode_custom_id(metadata: dict[str, str], limit: int) -> tuple[Optional[str], list[str]]:
    """Metadata as compact JSON no longer than ``limit``.

    Keys that would overflow are dropped whole, priority keys considered
    first, so the result always decodes. Returns the encoded value and the
    dropped keys.
    """
    ordered = [k for k in CUSTOM_ID_PRIORITY if k in metadata]
    ordered += [k for k in metadata if k not in CUSTOM_ID_PRIORITY]
    kept: dict[str, str] = {}
    dropped: list[str] = []
    for key in ordered:
        candidate = {**kept, key: metadata[key]}
        if len(_compact_json(candidate)) <= limit:
            kept = candidate
        else:
            dropped.append(key)
    return (_compact_json(kept) if kept else None), dropped


def _find_link(links: Optional[list[dict[str, Any]]], rel: str) -> Optional[str]:
    for link in links or []:
        if link.get("rel") == rel:
            return link.get("href")
    return None


def _first_capture(order: dict[str, Any]) -> dict[str, Any]:
    units = order.get("purchase_units") or [{}]
    captures = (units[0].get("payments") or {}).get("captures") or [{}]
    return captures[0]


class PayPalClient(BasePaymentClient):
    processor = ProcessorKind.WALLET

    def __init__(
        self,
        config: PayPalConfig,
        *,
        token_cache: Optional[TokenCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        cfg = payment_settings.paypal
        super().__init__(
            base_url=cfg.sandbox_url if config.sandbox else cfg.live_url,
            transport=transport,
        )
        self.config = config
        self.tokens = token_cache or paypal_token_cache

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _fetch_token(self) -> tuple[str, int]:
        data = await self._request(
            "POST",
            "/v1/oauth2/token",
            auth=(self.config.client_id, self.config.client_secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )
        token = data.get("access_token")
        if not token:
            raise PaymentProviderError("PayPal auth returned no access token", provider=self.provider)
        return token, int(data.get("expires_in") or 0)

    async def _access_token(self) -> str:
        return await self.tokens.get_or_refresh(self.config.cache_key, self._fetch_token)

    async def _api(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {await self._access_token()}",
            "Content-Type": "application/json",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        try:
            return await self._request(method, path, json=json_body, params=params, headers=headers)
        except PaymentProviderError as exc:
            if exc.status_code == 401:
                # Token revoked before expiry; next call fetches a new one
                self.tokens.invalidate(self.config.cache_key)
            raise

    def _extract_error_message(self, response: httpx.Response) -> str:
        err = self._json_or_empty(response)
        details = err.get("details") or [{}]
        return (
            details[0].get("description")
            or err.get("message")
            or err.get("error_description")
            or response.reason_phrase
            or f"HTTP {response.status_code}"
        )

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def create_checkout(
        self,
        params: CheckoutSessionParams,
        *,
        customer_id: Optional[str],
        idempotency_key: str,
    ) -> CheckoutSessionResult:
        unit: dict[str, Any] = {
            "amount": {
                "currency_code": params.currency.upper(),
                "value": format_amount(params.amount_minor),
            },
            "description": params.description,
        }
        if params.metadata:
            custom_id, dropped = encode_custom_id(params.metadata, payment_settings.paypal.custom_id_max_length)
            if custom_id:
                unit["custom_id"] = custom_id
            if dropped:
                self._log("paypal_custom_id_keys_dropped", keys=dropped)
        if params.metadata.get("transactionId"):
            unit["reference_id"] = params.metadata["transactionId"]

        order = await self._api(
            "POST",
            "/v2/checkout/orders",
            json_body={
                "intent": "CAPTURE",
                "purchase_units": [unit],
                "payment_source": {
                    "paypal": {
                        "experience_context": {
                            "return_url": params.success_url,
                            "cancel_url": params.cancel_url,
                            "user_action": "PAY_NOW",
                            "landing_page": "LOGIN",
                        }
                    }
                },
            },
            request_id=idempotency_key,
        )
        url = _find_link(order.get("links"), "payer-action")
        if not url:
            raise PaymentProviderError("PayPal order has no approval link", provider=self.provider)
        self._log("paypal_order_created", order_id=order.get("id"), status=order.get("status"))
        return CheckoutSessionResult(url=url, session_id=order["id"], order_id=order["id"], processor=self.processor)

    async def capture_order(self, order_id: str) -> dict[str, Any]:
        data = await self._api(
            "POST",
            f"/v2/checkout/orders/{order_id}/capture",
            json_body={},
            request_id=f"capture-{order_id}",
        )
        payer = data.get("payer") or {}
        return {
            "status": data.get("status"),
            "capture_id": _first_capture(data).get("id"),
            "payer_email": payer.get("email_address"),
            "payer_id": payer.get("payer_id"),
        }

    async def get_checkout_status(self, session_id: str, *, order_id: Optional[str] = None) -> CheckoutStatusResult:
        order_id = order_id or session_id
        order = await self._api("GET", f"/v2/checkout/orders/{order_id}")
        native = order.get("status")
        units = order.get("purchase_units") or [{}]
        metadata = parse_metadata(units[0].get("custom_id"))

        if native == "APPROVED":
            captured = await self.capture_order(order_id)
            self._log("paypal_order_captured", order_id=order_id, capture_id=captured["capture_id"])
            return CheckoutStatusResult(
                status=CheckoutStatus.COMPLETE,
                order_status=self._map_status(captured["status"]) or OrderStatus.COMPLETED,
                external_payment_id=captured["capture_id"],
                metadata=metadata,
                payer_email=captured["payer_email"],
                payer_id=captured["payer_id"],
            )
        if native == "COMPLETED":
            payer = order.get("payer") or {}
            return CheckoutStatusResult(
                status=CheckoutStatus.COMPLETE,
                order_status=OrderStatus.COMPLETED,
                external_payment_id=_first_capture(order).get("id"),
                metadata=metadata,
                payer_email=payer.get("email_address"),
                payer_id=payer.get("payer_id"),
            )
        if native == "VOIDED":
            return CheckoutStatusResult(status=CheckoutStatus.EXPIRED, order_status=OrderStatus.CANCELED, metadata=metadata)
        return CheckoutStatusResult(status=CheckoutStatus.PENDING, order_status=self._map_status(native), metadata=metadata)

    async def refund(
        self,
        charge_ref: str,
        *,
        amount_minor: Optional[int],
        currency: Optional[str],
        idempotency_key: str,
    ) -> str:
        body: dict[str, Any] = {}
        if amount_minor is not None and currency:
            body["amount"] = {"value": format_amount(amount_minor), "currency_code": currency.upper()}
        data = await self._api(
            "POST",
            f"/v2/payments/captures/{charge_ref}/refund",
            json_body=body,
            request_id=idempotency_key,
        )
        self._log("paypal_refund_created", capture_id=charge_ref, refund_id=data.get("id"), status=data.get("status"))
        return data["id"]

    # ------------------------------------------------------------------
    # Vault
    # ------------------------------------------------------------------

    async def create_customer(
        self,
        *,
        member_id: str,
        email: Optional[str],
        name: str,
        idempotency_key: str,
    ) -> str:
        """PayPal has no customer endpoint; the vault accepts a merchant-chosen id.

        The id is derived from the member id (PayPal allows up to 22 characters).
        """
        return "m" + hashlib.sha256(member_id.encode("utf-8")).hexdigest()[:21]

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
        unit: dict[str, Any] = {
            "amount": {"currency_code": currency.upper(), "value": format_amount(amount_minor)},
            "description": description,
        }
        if reference:
            unit["reference_id"] = reference
        order = await self._api(
            "POST",
            "/v2/checkout/orders",
            json_body={
                "intent": "CAPTURE",
                "purchase_units": [unit],
                "payment_source": {"paypal": {"vault_id": payment_method_id}},
            },
            request_id=idempotency_key,
        )
        status = order.get("status")
        capture_id = _first_capture(order).get("id")
        if status != "COMPLETED":
            captured = await self.capture_order(order["id"])
            status, capture_id = captured["status"], captured["capture_id"]
        return ChargeResult(
            success=status == "COMPLETED",
            external_payment_id=capture_id,
            processor=self.processor,
            status=status,
            error=None if status == "COMPLETED" else f"PayPal order status {status}",
        )

    async def start_method_setup(self, *, customer_id: str, return_url: str, cancel_url: str) -> PaymentMethodSetup:
        data = await self._api(
            "POST",
            "/v3/vault/setup-tokens",
            json_body={
                "customer": {"id": customer_id},
                "payment_source": {
                    "paypal": {
                        "usage_type": "MERCHANT",
                        "experience_context": {"return_url": return_url, "cancel_url": cancel_url},
                    }
                },
            },
        )
        url = _find_link(data.get("links"), "approve")
        if not url:
            raise PaymentProviderError("PayPal setup token has no approval link", provider=self.provider)
        return PaymentMethodSetup(processor=self.processor, setup_id=data["id"], url=url)

    async def complete_method_setup(self, *, customer_id: str, setup_token: str) -> VaultedPaymentMethod:
        data = await self._api(
            "POST",
            "/v3/vault/payment-tokens",
            json_body={"payment_source": {"token": {"id": setup_token, "type": "SETUP_TOKEN"}}},
            request_id=f"vault-{setup_token}",
        )
        email = ((data.get("payment_source") or {}).get("paypal") or {}).get("email_address") or ""
        return VaultedPaymentMethod(id=data["id"], brand="paypal", last4=email, kind="wallet")

    async def list_payment_methods(self, customer_id: str) -> list[VaultedPaymentMethod]:
        data = await self._api("GET", "/v3/vault/payment-tokens", params={"customer_id": customer_id})
        methods = []
        for token in data.get("payment_tokens") or []:
            email = ((token.get("payment_source") or {}).get("paypal") or {}).get("email_address") or ""
            methods.append(VaultedPaymentMethod(id=token["id"], brand="paypal", last4=email, kind="wallet"))
        return methods

    async def set_default_payment_method(self, customer_id: str, method_id: str) -> None:
        """Vault v3 has no per-customer default; the CustomerLink carries it."""
        return None

    async def delete_payment_method(self, method_id: str) -> None:
        await self._api("DELETE", f"/v3/vault/payment-tokens/{method_id}")

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
        if not self.config.webhook_id:
            raise PaymentSignatureError("PayPal webhook id not configured", provider=self.provider)
        h = {k.lower(): v for k, v in headers.items()}
        try:
            event = json.loads(body)
        except ValueError as exc:
            raise PaymentValidationError("Webhook body is not JSON", provider=self.provider) from exc

        result = await self._api(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            json_body={
                "auth_algo": h.get("paypal-auth-algo"),
                "cert_url": h.get("paypal-cert-url"),
                "transmission_id": h.get("paypal-transmission-id"),
                "transmission_sig": h.get("paypal-transmission-sig"),
                "transmission_time": h.get("paypal-transmission-time"),
                "webhook_id": self.config.webhook_id,
                "webhook_event": event,
            },
        )
        if result.get("verification_status") != "SUCCESS":
            raise PaymentSignatureError(
                "PayPal webhook signature verification failed",
                provider=self.provider,
                details={"verification_status": result.get("verification_status")},
            )
        resource = event.get("resource") or {}
        return WebhookEvent(
            id=str(event.get("id")),
            type=str(event.get("event_type")),
            processor=self.processor,
            status=self._map_status(resource.get("status")),
            reference=resource.get("id"),
            data=resource,
            raw_headers=dict(headers),
            raw_body=body,
        )

    async def check_credentials(self) -> None:
        # Always hit the token endpoint so stale cache entries can't mask bad credentials
        await self._fetch_token()
