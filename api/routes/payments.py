"""
Payments API routes.

Thin layer over CheckoutOrchestrator: request models in, unified Response out.
No gateway SDK details here.
"""
from __future__ import annotations

import ipaddress
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from api.dependencies import get_checkout_orchestrator
from application.dtos.payments import CheckoutSessionParams
from application.services.payment_service import CheckoutOrchestrator
from core.config import settings
from core.logging_config import get_logger
from core.exceptions import business_code_to_http_status
from core.response import error_response, success_response
from core.settings import payment_settings
from domain.payment.entity import ProcessorKind
from domain.payment.exceptions import PaymentValidationError
from shared.codes.payment_codes import PaymentCode


router = APIRouter(prefix="/payments", tags=["Payments"])
logger = get_logger(__name__)


def _failure(code: int, message: str, error_type: str, details: Optional[dict] = None) -> JSONResponse:
    response = error_response(code=code, message=message, error_type=error_type, details=details)
    return JSONResponse(status_code=business_code_to_http_status(code), content=response.model_dump(mode="json"))


def _parse_processor(value: str) -> ProcessorKind:
    kind = ProcessorKind.parse(value)
    if kind is None:
        raise PaymentValidationError(f"Unknown payment processor: {value}", field="processor")
    return kind


class RefundRequest(BaseModel):
    charge_ref: str
    processor: str
    amount_minor: Optional[int] = Field(default=None, gt=0)
    currency: Optional[str] = None
    idempotency_key: Optional[str] = None


class EnsureCustomerRequest(BaseModel):
    member_id: str
    email: Optional[str] = None
    name: str = ""


class StoredChargeRequest(BaseModel):
    member_id: str
    payment_method_id: Optional[str] = None
    amount_minor: int = Field(gt=0)
    currency: Optional[str] = None
    description: str = "Membership payment"
    reference: Optional[str] = None
    idempotency_key: Optional[str] = None


class MethodSetupRequest(BaseModel):
    member_id: str
    return_url: str
    cancel_url: str
    email: Optional[str] = None
    name: str = ""


class CompleteMethodSetupRequest(BaseModel):
    member_id: str
    setup_token: str


@router.get("/processor", summary="Active processor and currency")
async def get_processor(orchestrator: CheckoutOrchestrator = Depends(get_checkout_orchestrator)):
    processor = await orchestrator.get_active_processor()
    return success_response(
        data={
            "processor": processor.value if processor else None,
            "label": processor.label if processor else None,
            "currency": await orchestrator.get_currency(),
        }
    )


@router.post("/processors/{processor}/verify", summary="Check stored gateway credentials")
async def verify_processor(processor: str, orchestrator: CheckoutOrchestrator = Depends(get_checkout_orchestrator)):
    result = await orchestrator.verify_processor_credentials(_parse_processor(processor))
    return success_response(data=result.model_dump(mode="json"))


@router.post("/checkout", summary="Create hosted checkout")
async def create_checkout(
    payload: CheckoutSessionParams,
    orchestrator: CheckoutOrchestrator = Depends(get_checkout_orchestrator),
):
    result = await orchestrator.create_checkout_session(payload)
    data = result.model_dump(mode="json")
    if data.get("success") is False:
        return _failure(
            PaymentCode.NOT_CONFIGURED if result.error_type == "ConfigurationError" else PaymentCode.PROVIDER_ERROR,
            result.error,
            result.error_type,
            details=data,
        )
    return success_response(data=data, message="Checkout created")


@router.get("/checkout/{session_id}", summary="Poll checkout status")
async def checkout_status(
    session_id: str,
    processor: Optional[str] = Query(default=None),
    order_id: Optional[str] = Query(default=None),
    orchestrator: CheckoutOrchestrator = Depends(get_checkout_orchestrator),
):
    kind = _parse_processor(processor) if processor else None
    result = await orchestrator.get_checkout_status(session_id, processor=kind, order_id=order_id)
    return success_response(data=result.model_dump(mode="json"))


@router.post("/refunds", summary="Refund a charge")
async def create_refund(payload: RefundRequest, orchestrator: CheckoutOrchestrator = Depends(get_checkout_orchestrator)):
    result = await orchestrator.create_refund(
        payload.charge_ref,
        _parse_processor(payload.processor),
        payload.amount_minor,
        payload.currency,
        idempotency_key=payload.idempotency_key,
    )
    if not result.success:
        return _failure(PaymentCode.PROVIDER_ERROR, result.error, "RefundFailed")
    return success_response(data=result.model_dump(mode="json"), message="Refund created")


@router.post("/customers", summary="Ensure gateway customer for a member")
async def ensure_customer(payload: EnsureCustomerRequest, orchestrator: CheckoutOrchestrator = Depends(get_checkout_orchestrator)):
    customer_id = await orchestrator.ensure_processor_customer(
        member_id=payload.member_id, email=payload.email, name=payload.name
    )
    return success_response(data={"customer_id": customer_id})


@router.post("/charges", summary="Charge a stored payment method")
async def charge_stored(payload: StoredChargeRequest, orchestrator: CheckoutOrchestrator = Depends(get_checkout_orchestrator)):
    result = await orchestrator.charge_stored_payment_method(
        member_id=payload.member_id,
        payment_method_id=payload.payment_method_id,
        amount_minor=payload.amount_minor,
        currency=payload.currency or await orchestrator.get_currency(),
        description=payload.description,
        reference=payload.reference,
        idempotency_key=payload.idempotency_key,
    )
    return success_response(data=result.model_dump(mode="json"))


@router.post("/methods/setup", summary="Start storing a payment method")
async def start_method_setup(payload: MethodSetupRequest, orchestrator: CheckoutOrchestrator = Depends(get_checkout_orchestrator)):
    setup = await orchestrator.start_payment_method_setup(
        member_id=payload.member_id,
        return_url=payload.return_url,
        cancel_url=payload.cancel_url,
        email=payload.email,
        name=payload.name,
    )
    return success_response(data=setup.model_dump(mode="json"))


@router.post("/methods/complete", summary="Finish storing a payment method")
async def complete_method_setup(
    payload: CompleteMethodSetupRequest,
    orchestrator: CheckoutOrchestrator = Depends(get_checkout_orchestrator),
):
    method = await orchestrator.complete_payment_method_setup(member_id=payload.member_id, setup_token=payload.setup_token)
    return success_response(data=method.model_dump(mode="json"))


@router.get("/members/{member_id}/methods", summary="List stored payment methods")
async def list_methods(member_id: str, orchestrator: CheckoutOrchestrator = Depends(get_checkout_orchestrator)):
    methods = await orchestrator.list_payment_methods(member_id)
    return success_response(data=[m.model_dump(mode="json") for m in methods])


@router.post("/members/{member_id}/methods/{method_id}/default", summary="Set the default payment method")
async def set_default_method(member_id: str, method_id: str, orchestrator: CheckoutOrchestrator = Depends(get_checkout_orchestrator)):
    result = await orchestrator.set_default_payment_method(member_id, method_id)
    return success_response(data=result.model_dump(mode="json"))


@router.delete("/members/{member_id}/methods/{method_id}", summary="Remove a stored payment method")
async def delete_method(member_id: str, method_id: str, orchestrator: CheckoutOrchestrator = Depends(get_checkout_orchestrator)):
    result = await orchestrator.delete_payment_method(member_id, method_id)
    return success_response(data=result.model_dump(mode="json"))


def _ip_permitted(remote_ip: str, allowlist: list[str]) -> bool:
    try:
        rip = ipaddress.ip_address(remote_ip)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            if "/" in entry:
                if rip in ipaddress.ip_network(entry, strict=False):
                    return True
            elif remote_ip == entry:
                return True
        except ValueError:
            continue
    return False


@router.post("/webhooks/{processor}", summary="Inbound gateway webhook")
async def payments_webhook(
    processor: str,
    request: Request,
    orchestrator: CheckoutOrchestrator = Depends(get_checkout_orchestrator),
):
    kind = _parse_processor(processor)

    allowlist = payment_settings.webhook.ip_allowlist or []
    remote_ip = request.client.host if request.client else None
    if allowlist and (remote_ip is None or not _ip_permitted(remote_ip, allowlist)):
        logger.warning("webhook_ip_rejected", processor=kind.value, remote_ip=remote_ip)
        return _failure(PaymentCode.SIGNATURE_ERROR, "Webhook source not allowed", "VerificationError")

    raw_body = await request.body()
    headers = {k: v for k, v in request.headers.items()}
    # Square signs the public URL it posted to, not the one behind a proxy
    base = settings.PUBLIC_BASE_URL or str(request.base_url).rstrip("/")
    notification_url = f"{base}{request.url.path}"

    # Signature failures raise PaymentSignatureError -> 400 via exception handler
    event = await orchestrator.handle_webhook(kind, headers, raw_body, notification_url=notification_url)
    return success_response(
        data={
            "id": event.id,
            "type": event.type,
            "processor": event.processor.value,
            "status": event.status.value if event.status else None,
            "reference": event.reference,
        },
        message="Webhook received",
    )
