"""
Business codes shared by the domain, core and API layers.

Generic codes live here; payment failures use `PaymentCode` (6xxxx) from
`shared.codes.payment_codes`, re-exported for convenience.
"""
from enum import IntEnum

from .payment_codes import PaymentCode


class BusinessCode(IntEnum):
    """Generic status codes carried in the response envelope."""

    SUCCESS = 0

    # Request errors (1xxxx)
    PARAM_ERROR = 10000
    PARAM_VALIDATION_ERROR = 10003

    # Business errors (2xxxx)
    BUSINESS_ERROR = 20000
    NOT_FOUND = 20006

    # System errors (4xxxx)
    SYSTEM_ERROR = 40000
    NETWORK_ERROR = 40002
    SERVICE_UNAVAILABLE = 40003


__all__ = ["BusinessCode", "PaymentCode"]
