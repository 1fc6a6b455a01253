"""
Application service orchestrating payment use-cases.

This class depends only on the application ports, domain repositories and
DTOs. Gateway implementations are provided by infrastructure and must be
injected from the composition root (API/tasks), keeping dependencies one-way.

Expected failures (nothing configured, missing fields, provider declines,
network trouble) come back as result envelopes; callers never need to catch
provider exceptions for them.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import secrets
import time
import weakref
from typing import Any, Callable, Optional, Union

from application.dtos.payments import (
    ChargeResult,
    CheckoutFailure,
    CheckoutSessionParams,
    CheckoutSessionResult,
    CheckoutStatusResult,
    OperationResult,
    PaymentMethodSetup,
    RefundResult,
    VaultedPaymentMethod,
    WebhookEvent,
)
from application.ports.payment_gateway import GatewayProvider, PaymentGateway
from application.services.processor_selector import ProcessorSelector
from domain.payment.entity import CheckoutStatus, CustomerLink, ProcessorKind
from domain.payment.exceptions import (
    PaymentConfigurationError,
    PaymentError,
    PaymentOwnershipError,
    PaymentValidationError,
)
from domain.payment.repository import CustomerLinkRepository, SettingsRepository
from core.logging_config import get_logger
from core.settings import payment_settings


logger = get_logger(__name__)

CURRENCY_KEY = "currency"
TAX_RATE_KEY = "taxRate"

# Metadata keys that identify one logical operation across caller retries
_IDEMPOTENCY_HINT_KEYS = ("idempotency_hint", "transactionId", "invoiceId")


def derive_idempotency_key(
    op: str,
    *parts: Any,
    metadata: Optional[dict[str, str]] = None,
    clock: Callable[[], float] = time.time,
) -> str:
    """Key for one logical operation.

    When metadata names the business object being paid for, the key is a
    stable hash so that a caller's retry maps to the same provider request.
    Otherwise a timestamp plus random suffix is used; the caller should keep
    and resend it on retry.
    """
    hints = [f"{k}={metadata[k]}" for k in _IDEMPOTENCY_HINT_KEYS if metadata and metadata.get(k)]
    if hints:
        base = "|".join([op, *(str(p) for p in parts), *hints])
        return hashlib.sha256(base.encode("utf-8")).hexdigest()
    return f"{op}_{int(clock() * 1000)}_{secrets.token_hex(4)}"


class KeyedLocks:
    """One asyncio.Lock per key, released for collection once unused."""

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[Any, asyncio.Lock]" = weakref.WeakValueDictionary()

    def get(self, key: Any) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock


# Shared by every orchestrator in the process; customer creation is serialized per member
customer_creation_locks = KeyedLocks()


class CheckoutOrchestrator:
    def __init__(
        self,
        *,
        settings_repo: SettingsRepository,
        customer_links: CustomerLinkRepository,
        gateways: GatewayProvider,
        selector: Optional[ProcessorSelector] = None,
        locks: Optional[KeyedLocks] = None,
    ) -> None:
        self.settings = settings_repo
        self.customer_links = customer_links
        self.gateways = gateways
        self.selector = selector or ProcessorSelector(settings_repo)
        self._locks = locks or customer_creation_locks

    # ------------------------------------------------------------------
    # Configuration lookups
    # ------------------------------------------------------------------

    async def get_active_processor(self) -> Optional[ProcessorKind]:
        return await self.selector.get_active_processor()

    async def get_currency(self) -> str:
        value = await self.settings.get(CURRENCY_KEY)
        return (value or payment_settings.default_currency).strip().lower()

    async def _get_tax_rate(self) -> Optional[float]:
        raw = await self.settings.get(TAX_RATE_KEY)
        if not raw:
            return None
        try:
            return float(raw)
        except ValueError:
            logger.warning("payment_tax_rate_invalid", value=raw)
            return None

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    async def create_checkout_session(
        self, params: CheckoutSessionParams
    ) -> Union[CheckoutSessionResult, CheckoutFailure]:
        processor = await self.get_active_processor()
        if processor is None:
            return CheckoutFailure(error="No payment processor configured", error_type="ConfigurationError")

        key = params.idempotency_key or derive_idempotency_key(
            "checkout", params.amount_minor, params.currency, processor.value, metadata=params.metadata
        )
        logger.info(
            "payment_checkout_request",
            processor=processor.value,
            amount_minor=params.amount_minor,
            currency=params.currency,
            member_id=params.member_id,
            idempotency_key=key,
        )
        try:
            gateway = await self.gateways.get_gateway(processor)
            try:
                customer_id = params.customer_id
                if customer_id is None and params.member_id and processor is ProcessorKind.CARD:
                    customer_id = await self._ensure_customer(
                        processor,
                        gateway,
                        member_id=params.member_id,
                        email=params.member_email,
                        name=params.member_name or "",
                    )
                if params.line_items and params.tax_rate_percent is None:
                    tax_rate = await self._get_tax_rate()
                    if tax_rate:
                        params = params.model_copy(update={"tax_rate_percent": tax_rate})
                result = await gateway.create_checkout(params, customer_id=customer_id, idempotency_key=key)
            finally:
                await gateway.aclose()
        except PaymentError as exc:
            logger.warning(
                "payment_checkout_failed",
                processor=processor.value,
                error=exc.message,
                error_type=exc.error_type,
            )
            return CheckoutFailure(error=exc.message, error_type=exc.error_type, processor=processor)

        logger.info(
            "payment_checkout_response",
            processor=result.processor.value,
            session_id=result.session_id,
            order_id=result.order_id,
        )
        return result

    async def get_checkout_status(
        self,
        session_id: str,
        *,
        processor: Optional[ProcessorKind] = None,
        order_id: Optional[str] = None,
    ) -> CheckoutStatusResult:
        """Poll a checkout created earlier; ``processor`` should be the tag the
        session was created with, falling back to the active processor."""
        processor = processor or await self.get_active_processor()
        if processor is None:
            return CheckoutStatusResult(status=CheckoutStatus.FAILED)
        try:
            gateway = await self.gateways.get_gateway(processor)
        except PaymentConfigurationError:
            return CheckoutStatusResult(status=CheckoutStatus.FAILED)
        try:
            result = await gateway.get_checkout_status(session_id, order_id=order_id)
        finally:
            await gateway.aclose()
        logger.info(
            "payment_checkout_status",
            processor=processor.value,
            session_id=session_id,
            status=result.status.value,
        )
        if processor is ProcessorKind.WALLET and result.payer_id:
            await self._seed_link_from_payer(result)
        return result

    async def _seed_link_from_payer(self, result: CheckoutStatusResult) -> None:
        member_id = (result.metadata or {}).get("memberId")
        if not member_id:
            return
        link = await self.customer_links.create_or_get(
            CustomerLink(member_id=member_id, processor=ProcessorKind.WALLET, external_customer_id=result.payer_id)
        )
        logger.info("payment_customer_link_seeded", member_id=member_id, external_customer_id=link.external_customer_id)

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    async def create_refund(
        self,
        charge_ref: str,
        processor: ProcessorKind,
        amount_minor: Optional[int] = None,
        currency: Optional[str] = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        if processor is ProcessorKind.LINK_BASED and (amount_minor is None or not currency):
            return RefundResult.failed(f"Amount and currency required for {processor.label} refund")

        # Two partial refunds of one charge are distinct operations; only a caller key deduplicates
        key = idempotency_key or derive_idempotency_key("refund")
        logger.info(
            "payment_refund_request",
            processor=processor.value,
            charge_ref=charge_ref,
            amount_minor=amount_minor,
        )
        try:
            gateway = await self.gateways.get_gateway(processor)
            try:
                refund_id = await gateway.refund(
                    charge_ref,
                    amount_minor=amount_minor,
                    currency=currency,
                    idempotency_key=key,
                )
            finally:
                await gateway.aclose()
        except PaymentError as exc:
            logger.error(
                "payment_refund_failed",
                processor=processor.value,
                charge_ref=charge_ref,
                error=exc.message,
                error_type=exc.error_type,
            )
            return RefundResult.failed(exc.message)

        logger.info("payment_refund_response", processor=processor.value, refund_id=refund_id)
        return RefundResult.ok(refund_id)

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    async def ensure_processor_customer(
        self,
        *,
        member_id: str,
        email: Optional[str] = None,
        name: str = "",
    ) -> Optional[str]:
        """Return the active processor's customer id for a member, creating it once.

        Returns None when no processor is active or it is not configured.
        Provider failures propagate as PaymentError.
        """
        processor = await self.get_active_processor()
        if processor is None:
            return None
        try:
            gateway = await self.gateways.get_gateway(processor)
        except PaymentConfigurationError:
            return None
        try:
            return await self._ensure_customer(processor, gateway, member_id=member_id, email=email, name=name)
        finally:
            await gateway.aclose()

    async def _ensure_customer(
        self,
        processor: ProcessorKind,
        gateway: PaymentGateway,
        *,
        member_id: str,
        email: Optional[str],
        name: str,
    ) -> str:
        async with self._locks.get((member_id, processor)):
            link = await self.customer_links.get(member_id, processor)
            if link is not None:
                return link.external_customer_id

            external_id = await gateway.create_customer(
                member_id=member_id,
                email=email,
                name=name,
                idempotency_key=derive_idempotency_key(
                    "customer", processor.value, metadata={"idempotency_hint": member_id}
                ),
            )
            stored = await self.customer_links.create_or_get(
                CustomerLink(member_id=member_id, processor=processor, external_customer_id=external_id)
            )
            if stored.external_customer_id != external_id:
                # Lost an insert race against another process; the stored link wins
                logger.warning(
                    "payment_customer_duplicate_discarded",
                    member_id=member_id,
                    processor=processor.value,
                    kept=stored.external_customer_id,
                    discarded=external_id,
                )
            else:
                logger.info(
                    "payment_customer_created",
                    member_id=member_id,
                    processor=processor.value,
                    external_customer_id=external_id,
                )
            return stored.external_customer_id

    # ------------------------------------------------------------------
    # Stored payment methods
    # ------------------------------------------------------------------

    async def _require_owned_method(
        self,
        gateway: PaymentGateway,
        processor: ProcessorKind,
        link: Optional[CustomerLink],
        member_id: str,
        method_id: str,
    ) -> CustomerLink:
        """The method must be stored under the member's own gateway customer."""
        if link is not None:
            methods = await gateway.list_payment_methods(link.external_customer_id)
            if any(m.id == method_id for m in methods):
                return link
        logger.warning(
            "payment_method_not_owned",
            processor=processor.value,
            member_id=member_id,
            method_id=method_id,
        )
        raise PaymentOwnershipError("Payment method does not belong to this member", provider=processor.label)

    async def charge_stored_payment_method(
        self,
        *,
        member_id: str,
        amount_minor: int,
        currency: str,
        payment_method_id: Optional[str] = None,
        description: str = "Membership payment",
        reference: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> ChargeResult:
        """Off-session charge (auto-billing, dunning) against a stored method.

        Without ``payment_method_id`` the member's default method is charged.
        A method stored under another member raises PaymentOwnershipError.
        """
        processor = await self.get_active_processor()
        if processor is None:
            return ChargeResult(success=False, error="No payment processor configured")

        link = await self.customer_links.get(member_id, processor)
        if link is None:
            return ChargeResult(
                success=False, processor=processor, error=f"No stored {processor.label} payment method"
            )
        method_id = payment_method_id or link.default_payment_method_id
        if not method_id:
            return ChargeResult(success=False, processor=processor, error="No default payment method for this member")

        # Each attempt is a new charge; a dunning retry must not replay an earlier decline
        key = idempotency_key or derive_idempotency_key("charge")
        try:
            gateway = await self.gateways.get_gateway(processor)
            try:
                await self._require_owned_method(gateway, processor, link, member_id, method_id)
                result = await gateway.charge_stored(
                    customer_id=link.external_customer_id,
                    payment_method_id=method_id,
                    amount_minor=amount_minor,
                    currency=currency,
                    description=description,
                    reference=reference,
                    idempotency_key=key,
                )
            finally:
                await gateway.aclose()
        except PaymentOwnershipError:
            raise
        except PaymentError as exc:
            logger.warning("payment_stored_charge_failed", processor=processor.value, member_id=member_id, error=exc.message)
            return ChargeResult(success=False, processor=processor, error=exc.message)

        logger.info(
            "payment_stored_charge",
            processor=processor.value,
            member_id=member_id,
            method_id=method_id,
            success=result.success,
            status=result.status,
        )
        return result

    async def start_payment_method_setup(
        self,
        *,
        member_id: str,
        return_url: str,
        cancel_url: str,
        email: Optional[str] = None,
        name: str = "",
    ) -> PaymentMethodSetup:
        processor = await self._require_processor()
        gateway = await self.gateways.get_gateway(processor)
        try:
            customer_id = await self._ensure_customer(processor, gateway, member_id=member_id, email=email, name=name)
            return await gateway.start_method_setup(
                customer_id=customer_id, return_url=return_url, cancel_url=cancel_url
            )
        finally:
            await gateway.aclose()

    async def complete_payment_method_setup(self, *, member_id: str, setup_token: str) -> VaultedPaymentMethod:
        processor = await self._require_processor()
        link = await self.customer_links.get(member_id, processor)
        if link is None:
            raise PaymentValidationError("Payment method setup was not started for this member", provider=processor.label)
        gateway = await self.gateways.get_gateway(processor)
        try:
            method = await gateway.complete_method_setup(customer_id=link.external_customer_id, setup_token=setup_token)
        finally:
            await gateway.aclose()
        logger.info("payment_method_stored", processor=processor.value, member_id=member_id, method_id=method.id)
        return method

    async def list_payment_methods(self, member_id: str) -> list[VaultedPaymentMethod]:
        processor = await self.get_active_processor()
        if processor is None:
            return []
        link = await self.customer_links.get(member_id, processor)
        if link is None:
            return []
        try:
            gateway = await self.gateways.get_gateway(processor)
        except PaymentConfigurationError:
            return []
        try:
            methods = await gateway.list_payment_methods(link.external_customer_id)
        finally:
            await gateway.aclose()
        return [
            m.model_copy(update={"is_default": m.id == link.default_payment_method_id})
            for m in methods
        ]

    async def set_default_payment_method(self, member_id: str, method_id: str) -> OperationResult:
        """Make a stored method the one charged when no method is named.

        The default is kept on the member's CustomerLink; Card also records it
        as the customer's invoice default at the gateway.
        """
        processor = await self._require_processor()
        link = await self.customer_links.get(member_id, processor)
        try:
            gateway = await self.gateways.get_gateway(processor)
            try:
                link = await self._require_owned_method(gateway, processor, link, member_id, method_id)
                await gateway.set_default_payment_method(link.external_customer_id, method_id)
            finally:
                await gateway.aclose()
        except PaymentOwnershipError:
            raise
        except PaymentError as exc:
            return OperationResult(success=False, error=exc.message)
        await self.customer_links.set_default_payment_method(member_id, processor, method_id)
        logger.info("payment_method_default_set", processor=processor.value, member_id=member_id, method_id=method_id)
        return OperationResult(success=True)

    async def delete_payment_method(self, member_id: str, method_id: str) -> OperationResult:
        processor = await self.get_active_processor()
        if processor is None:
            return OperationResult(success=False, error="No payment processor configured")
        link = await self.customer_links.get(member_id, processor)
        try:
            gateway = await self.gateways.get_gateway(processor)
            try:
                link = await self._require_owned_method(gateway, processor, link, member_id, method_id)
                await gateway.delete_payment_method(method_id)
            finally:
                await gateway.aclose()
        except PaymentOwnershipError:
            raise
        except PaymentError as exc:
            return OperationResult(success=False, error=exc.message)
        if link.default_payment_method_id == method_id:
            await self.customer_links.set_default_payment_method(member_id, processor, None)
        logger.info("payment_method_deleted", processor=processor.value, member_id=member_id, method_id=method_id)
        return OperationResult(success=True)

    # ------------------------------------------------------------------
    # Webhooks and diagnostics
    # ------------------------------------------------------------------

    async def handle_webhook(
        self,
        processor: ProcessorKind,
        headers: dict[str, Any],
        body: bytes,
        *,
        notification_url: Optional[str] = None,
    ) -> WebhookEvent:
        """Verify and normalize an inbound event.

        Raises PaymentSignatureError when verification fails; the event must
        then be rejected.
        """
        gateway = await self.gateways.get_gateway(processor)
        try:
            event = await gateway.verify_webhook(headers, body, notification_url=notification_url)
        finally:
            await gateway.aclose()
        logger.info(
            "payment_webhook_parsed",
            processor=processor.value,
            event_type=event.type,
            event_id=event.id,
            status=event.status.value if event.status else None,
        )
        return event

    async def verify_processor_credentials(self, processor: ProcessorKind) -> OperationResult:
        try:
            gateway = await self.gateways.get_gateway(processor)
            try:
                await gateway.check_credentials()
            finally:
                await gateway.aclose()
        except PaymentError as exc:
            return OperationResult(success=False, error=exc.message)
        return OperationResult(success=True)

    async def _require_processor(self) -> ProcessorKind:
        processor = await self.get_active_processor()
        if processor is None:
            raise PaymentConfigurationError("No payment processor configured")
        return processor


def parse_metadata(raw: Optional[str]) -> dict[str, str]:
    """Decode metadata that a gateway carried as a JSON string (custom_id, note)."""
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except ValueError:
        return {}
    if not isinstance(value, dict):
        return {}
    return {str(k): str(v) for k, v in value.items()}
