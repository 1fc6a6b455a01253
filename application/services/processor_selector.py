"""
Resolves which payment processor is active from the settings store.
"""
from __future__ import annotations

from typing import Optional

from domain.payment.entity import FALLBACK_PRIORITY, ProcessorKind
from domain.payment.repository import SettingsRepository
from core.logging_config import get_logger


logger = get_logger(__name__)

ACTIVE_PROCESSOR_KEY = "payment_active_processor"
PAYMENTS_DISABLED = "none"


def enabled_flag_key(processor: ProcessorKind) -> str:
    return f"payment_{processor.settings_prefix}_enabled"


class ProcessorSelector:
    def __init__(self, settings_repo: SettingsRepository) -> None:
        self.settings = settings_repo

    async def get_active_processor(self) -> Optional[ProcessorKind]:
        """Explicit selection wins; ``none`` disables payments outright.

        Without an explicit selection the per-provider enabled flags are
        scanned in fixed priority order (Card, Wallet, LinkBased).
        """
        raw = await self.settings.get(ACTIVE_PROCESSOR_KEY)
        if raw and raw.strip():
            value = raw.strip().lower()
            if value == PAYMENTS_DISABLED:
                return None
            kind = ProcessorKind.parse(value)
            if kind is not None:
                return kind
            logger.warning("payment_active_processor_unknown", value=raw)

        flags = await self.settings.get_many(enabled_flag_key(k) for k in FALLBACK_PRIORITY)
        for kind in FALLBACK_PRIORITY:
            if (flags.get(enabled_flag_key(kind)) or "").strip().lower() == "true":
                return kind
        return None
