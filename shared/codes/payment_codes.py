"""
Payment specific codes and provider status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Local checks (6xxxx)
    NOT_CONFIGURED = 60010
    VALIDATION_ERROR = 60011
    METHOD_NOT_OWNED = 60012

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    NETWORK_ERROR = 60001
    SIGNATURE_ERROR = 60002
    TIMEOUT = 60003


# Provider→internal order status vocabularies, keyed by settings prefix
PROVIDER_STATUS_TO_INTERNAL = {
    "stripe": {
        # Checkout Session status
        "open": "created",
        "complete": "completed",
        "expired": "canceled",
        # PaymentIntent status
        "requires_capture": "approved",
        "succeeded": "completed",
        "canceled": "canceled",
        "requires_payment_method": "failed",
    },
    "paypal": {
        "CREATED": "created",
        "SAVED": "created",
        "PAYER_ACTION_REQUIRED": "created",
        "APPROVED": "approved",
        "COMPLETED": "completed",
        "VOIDED": "canceled",
        # Capture status (webhooks)
        "PENDING": "approved",
        "DECLINED": "failed",
        "FAILED": "failed",
    },
    "square": {
        # Order state
        "DRAFT": "created",
        "OPEN": "created",
        "COMPLETED": "completed",
        "CANCELED": "canceled",
        # Payment status
        "APPROVED": "approved",
        "PENDING": "approved",
        "FAILED": "failed",
    },
}
