"""
Gateway credential loaders.

Credentials are read from the settings store on every call, never cached, so
an administrator's change applies to the next request. A loader returns None
when a required field is missing.
"""
from __future__ import annotations

from typing import Optional

from application.dtos.payments import PayPalConfig, SquareConfig, StripeConfig
from core.settings import payment_settings
from domain.payment.entity import ProcessorKind
from domain.payment.repository import SettingsRepository


def setting_key(kind: ProcessorKind, field: str) -> str:
    return f"payment_{kind.settings_prefix}_{field}"


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() == "true"


async def _load(repo: SettingsRepository, kind: ProcessorKind, *fields: str) -> dict[str, str]:
    values = await repo.get_many([setting_key(kind, f) for f in fields])
    prefix = f"payment_{kind.settings_prefix}_"
    return {k[len(prefix):]: v for k, v in values.items() if v is not None and v.strip()}


async def load_stripe_config(repo: SettingsRepository) -> Optional[StripeConfig]:
    values = await _load(repo, ProcessorKind.CARD, "secret_key", "webhook_secret")
    secret_key = values.get("secret_key") or payment_settings.stripe.secret_key
    if not secret_key:
        return None
    return StripeConfig(
        secret_key=secret_key,
        webhook_secret=values.get("webhook_secret") or payment_settings.stripe.webhook_secret,
    )


async def load_paypal_config(repo: SettingsRepository) -> Optional[PayPalConfig]:
    values = await _load(repo, ProcessorKind.WALLET, "client_id", "client_secret", "sandbox", "webhook_id")
    if not values.get("client_id") or not values.get("client_secret"):
        return None
    return PayPalConfig(
        client_id=values["client_id"],
        client_secret=values["client_secret"],
        sandbox=_flag(values.get("sandbox")),
        webhook_id=values.get("webhook_id"),
    )


async def load_square_config(repo: SettingsRepository) -> Optional[SquareConfig]:
    values = await _load(
        repo,
        ProcessorKind.LINK_BASED,
        "access_token",
        "location_id",
        "application_id",
        "sandbox",
        "webhook_signature_key",
    )
    if not values.get("access_token") or not values.get("location_id"):
        return None
    return SquareConfig(
        access_token=values["access_token"],
        location_id=values["location_id"],
        application_id=values.get("application_id", ""),
        sandbox=_flag(values.get("sandbox")),
        webhook_signature_key=values.get("webhook_signature_key"),
    )
