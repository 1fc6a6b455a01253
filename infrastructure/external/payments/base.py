"""
Base payment client implementing shared concerns: http, retry, logging, mapping.

Concrete providers subclass and implement provider-specific logic. Every
transport failure leaves here as a payment error: timeouts as
PaymentTimeoutError, other transport failures as PaymentNetworkError and
non-2xx responses as PaymentProviderError.
"""
from __future__ import annotations

from typing import Any, Optional

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from core.logging_config import get_logger
from core.settings import payment_settings
from domain.payment.entity import OrderStatus, ProcessorKind
from domain.payment.exceptions import (
    PaymentNetworkError,
    PaymentProviderError,
    PaymentTimeoutError,
)
from shared.codes.payment_codes import PROVIDER_STATUS_TO_INTERNAL


logger = get_logger(__name__)


class BasePaymentClient:
    processor: ProcessorKind

    def __init__(
        self,
        *,
        base_url: str = "",
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeouts_cfg = timeouts or payment_settings.timeouts.model_dump()
        self._retry_cfg = retry or {
            "max": payment_settings.retry.max,
            "base": payment_settings.retry.base_backoff,
        }
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def provider(self) -> str:
        return self.processor.label

    @property
    def timeouts(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self._timeouts_cfg["connect"],
            read=self._timeouts_cfg["read"],
            write=self._timeouts_cfg["write"],
            timeout=self._timeouts_cfg["total"],
        )

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeouts,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        """Close underlying HTTP client if created."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send with retries on transport failures only.

        The request (headers included, so the idempotency key too) is identical
        on every attempt.
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(int(self._retry_cfg["max"]) + 1),
                wait=wait_exponential(multiplier=self._retry_cfg["base"], min=0.1, max=2.0),
                retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
                reraise=True,
            ):
                with attempt:
                    return await self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("payment_http_timeout", provider=self.provider, method=method, path=path)
            raise PaymentTimeoutError(f"{self.provider} request timed out", provider=self.provider) from exc
        except httpx.TransportError as exc:
            logger.warning("payment_http_transport_error", provider=self.provider, method=method, path=path, error=str(exc))
            raise PaymentNetworkError(f"{self.provider} network error: {exc}", provider=self.provider) from exc
        raise AssertionError("unreachable")  # pragma: no cover

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        response = await self._send(method, path, **kwargs)
        if response.is_success:
            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError:
                return {}
        message = self._extract_error_message(response)
        logger.warning(
            "payment_http_error",
            provider=self.provider,
            method=method,
            path=path,
            status_code=response.status_code,
            error=message,
        )
        raise PaymentProviderError(message, provider=self.provider, status_code=response.status_code)

    def _extract_error_message(self, response: httpx.Response) -> str:
        return response.reason_phrase or f"HTTP {response.status_code}"

    @staticmethod
    def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    # Helpers
    def _map_status(self, provider_status: Optional[str]) -> Optional[OrderStatus]:
        if not provider_status:
            return None
        mapping = PROVIDER_STATUS_TO_INTERNAL.get(self.processor.settings_prefix, {})
        value = mapping.get(provider_status)
        return OrderStatus(value) if value else None

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            **kwargs,
        )
