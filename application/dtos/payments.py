"""
Payment DTOs (Pydantic v2) used at application boundaries.

All amounts are integers in minor currency units (cents).
"""
from __future__ import annotations

import hashlib
from typing import Any, Optional, Literal
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator

from domain.payment.entity import CheckoutStatus, OrderStatus, ProcessorKind


def _lower_currency(v: Optional[str]) -> Optional[str]:
    if v is None:
        return None
    u = v.strip().lower()
    if len(u) != 3 or not u.isalpha():
        raise ValueError("currency must be ISO-4217 alpha-3")
    return u


class StripeConfig(BaseModel):
    secret_key: str
    webhook_secret: Optional[str] = None


class PayPalConfig(BaseModel):
    client_id: str
    client_secret: str
    sandbox: bool = False
    webhook_id: Optional[str] = None

    @property
    def cache_key(self) -> str:
        digest = hashlib.sha256(self.client_secret.encode("utf-8")).hexdigest()[:12]
        return f"{'sandbox' if self.sandbox else 'live'}:{self.client_id}:{digest}"


class SquareConfig(BaseModel):
    access_token: str
    location_id: str
    application_id: str = ""
    sandbox: bool = False
    webhook_signature_key: Optional[str] = None


class LineItem(BaseModel):
    name: str
    description: Optional[str] = None
    unit_amount_minor: int = Field(ge=0)
    quantity: int = Field(default=1, gt=0)
    # Whole-line discount, spread across units by the Card gateway
    discount_minor: int = Field(default=0, ge=0)

    @property
    def total_minor(self) -> int:
        return max(0, self.unit_amount_minor * self.quantity - self.discount_minor)


class CheckoutAdjustment(BaseModel):
    """Order-level reduction such as a section discount or gift redemption."""
    name: str
    amount_minor: int = Field(gt=0)


class CheckoutSessionParams(BaseModel):
    amount_minor: int = Field(gt=0)
    currency: str = "usd"
    description: str
    success_url: str
    cancel_url: str
    member_id: Optional[str] = None
    member_email: Optional[str] = None
    member_name: Optional[str] = None
    customer_id: Optional[str] = None  # processor-specific, skips CustomerLink lookup
    line_items: list[LineItem] = Field(default_factory=list)
    adjustments: list[CheckoutAdjustment] = Field(default_factory=list)
    tax_rate_percent: Optional[float] = Field(default=None, ge=0)
    metadata: dict[str, str] = Field(default_factory=dict)
    idempotency_key: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def _validate_currency(cls, v: str) -> str:
        return _lower_currency(v)  # type: ignore[return-value]


class CheckoutSessionResult(BaseModel):
    url: str
    session_id: str
    order_id: Optional[str] = None
    processor: ProcessorKind


class CheckoutFailure(BaseModel):
    success: Literal[False] = False
    error: str
    error_type: str
    processor: Optional[ProcessorKind] = None


class CheckoutStatusResult(BaseModel):
    status: CheckoutStatus
    order_status: Optional[OrderStatus] = None
    external_payment_id: Optional[str] = None
    metadata: Optional[dict[str, str]] = None
    payer_email: Optional[str] = None
    payer_id: Optional[str] = None
    receipt_url: Optional[str] = None


class RefundResult(BaseModel):
    success: bool
    refund_id: Optional[str] = None
    error: Optional[str] = None

    @model_validator(mode="after")
    def _exactly_one_outcome(self) -> "RefundResult":
        if self.success and (not self.refund_id or self.error):
            raise ValueError("successful refund requires refund_id and no error")
        if not self.success and (self.refund_id or not self.error):
            raise ValueError("failed refund requires error and no refund_id")
        return self

    @classmethod
    def ok(cls, refund_id: str) -> "RefundResult":
        return cls(success=True, refund_id=refund_id)

    @classmethod
    def failed(cls, error: str) -> "RefundResult":
        return cls(success=False, error=error)


class ChargeResult(BaseModel):
    success: bool
    external_payment_id: Optional[str] = None
    processor: Optional[ProcessorKind] = None
    status: Optional[str] = None
    receipt_url: Optional[str] = None
    error: Optional[str] = None


class PaymentMethodSetup(BaseModel):
    processor: ProcessorKind
    setup_id: str
    # Hosted approval page; None when the client tokenizes in-page
    url: Optional[str] = None
    client_params: dict[str, Any] = Field(default_factory=dict)


class VaultedPaymentMethod(BaseModel):
    id: str
    brand: str
    last4: str
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None
    kind: Literal["card", "wallet"] = "card"
    is_default: bool = False


class OperationResult(BaseModel):
    success: bool
    error: Optional[str] = None


class WebhookEvent(BaseModel):
    id: str
    type: str
    processor: ProcessorKind
    status: Optional[OrderStatus] = None
    # External payment/capture reference the event is about
    reference: Optional[str] = None
    data: dict[str, Any]
    raw_headers: Optional[dict[str, Any]] = None
    raw_body: Optional[bytes] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)
