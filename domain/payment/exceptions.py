"""
Payment error taxonomy mapped to unified BusinessException variants.

Configuration and validation errors are detected locally; provider, network
and signature errors originate at the gateway boundary.
"""
from __future__ import annotations

from typing import Optional

from domain.common.exceptions import BusinessException
from shared.codes.payment_codes import PaymentCode


class PaymentError(BusinessException):
    """Base class for every payment failure; carries the provider label."""

    def __init__(
        self,
        message: str,
        *,
        code: int,
        error_type: str,
        provider: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        full_details = {"provider": provider}
        if details:
            full_details.update(details)
        self.provider = provider
        super().__init__(
            code=code,
            message=message,
            error_type=error_type,
            details=full_details,
        )


class PaymentConfigurationError(PaymentError):
    def __init__(self, message: str, *, provider: Optional[str] = None):
        super().__init__(
            message,
            code=PaymentCode.NOT_CONFIGURED,
            error_type="ConfigurationError",
            provider=provider,
        )


class PaymentValidationError(PaymentError):
    def __init__(self, message: str, *, provider: Optional[str] = None, field: Optional[str] = None):
        super().__init__(
            message,
            code=PaymentCode.VALIDATION_ERROR,
            error_type="ValidationError",
            provider=provider,
        )
        self.field = field


class PaymentOwnershipError(PaymentError):
    """A stored payment method was addressed through a member that does not own it."""

    def __init__(self, message: str, *, provider: Optional[str] = None):
        super().__init__(
            message,
            code=PaymentCode.METHOD_NOT_OWNED,
            error_type="ForbiddenError",
            provider=provider,
        )


class PaymentProviderError(PaymentError):
    def __init__(
        self,
        message: str,
        *,
        provider: str,
        status_code: Optional[int] = None,
        provider_code: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        full_details = {"status_code": status_code, "provider_code": provider_code}
        if details:
            full_details.update(details)
        self.status_code = status_code
        super().__init__(
            message,
            code=PaymentCode.PROVIDER_ERROR,
            error_type="ProviderError",
            provider=provider,
            details=full_details,
        )


class PaymentNetworkError(PaymentError):
    def __init__(self, message: str, *, provider: str, code: int = PaymentCode.NETWORK_ERROR, error_type: str = "NetworkError"):
        super().__init__(message, code=code, error_type=error_type, provider=provider)


class PaymentTimeoutError(PaymentNetworkError):
    def __init__(self, message: str, *, provider: str):
        super().__init__(message, provider=provider, code=PaymentCode.TIMEOUT, error_type="TimeoutError")


class PaymentSignatureError(PaymentError):
    def __init__(self, message: str, *, provider: str, details: Optional[dict] = None):
        super().__init__(
            message,
            code=PaymentCode.SIGNATURE_ERROR,
            error_type="VerificationError",
            provider=provider,
            details=details,
        )
