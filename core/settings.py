"""
Payment-related settings using pydantic-settings v2 with nested env keys.

Credentials are not kept here: they live in the settings table and are loaded
per call. This module only tunes transport, endpoints and caching.
"""
from __future__ import annotations

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field


class PaymentTimeouts(BaseModel):
    connect: float = 2.0
    read: float = 10.0
    write: float = 10.0
    total: float = 15.0


class PaymentRetry(BaseModel):
    max: int = 2
    base_backoff: float = 0.2


class WebhookSettings(BaseModel):
    tolerance_seconds: int = 300
    ip_allowlist: list[str] | None = None  # Optional IPs/CIDRs allowed to post webhooks


class PayPalSettings(BaseModel):
    live_url: str = "https://api-m.paypal.com"
    sandbox_url: str = "https://api-m.sandbox.paypal.com"
    token_safety_margin_seconds: int = 300
    custom_id_max_length: int = 127


class SquareSettings(BaseModel):
    live_url: str = "https://connect.squareup.com"
    sandbox_url: str = "https://connect.squareupsandbox.com"
    api_version: str = "2024-01-18"
    idempotency_key_max_length: int = 45


class StripeSettings(BaseModel):
    # Used only when the settings table has no payment_stripe_secret_key
    secret_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    tax_display_name: str = "Sales Tax"


class PaymentSettings(BaseSettings):
    default_currency: str = Field(default="usd", validation_alias="PAYMENT__DEFAULT_CURRENCY")
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)

    paypal: PayPalSettings = Field(default_factory=PayPalSettings)
    square: SquareSettings = Field(default_factory=SquareSettings)
    stripe: StripeSettings = Field(default_factory=StripeSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )


payment_settings = PaymentSettings()
