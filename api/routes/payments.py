"""
Payments API routes.

Thin HTTP surface over PaymentOrchestrator: checkout creation and provider
notifications. No provider SDK details here.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.dependencies import get_payment_orchestrator
from application.dtos.payments import CheckoutOptions, CreatePaymentRequest
from application.services.payment_service import PaymentOrchestrator
from core.logging_config import get_logger
from core.response import success_response


router = APIRouter(prefix="/payments", tags=["Payments"])
logger = get_logger(__name__)


@router.post("/{provider}/checkout", summary="Create checkout")
async def create_checkout(
    provider: str,
    payload: CreatePaymentRequest,
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    options = CheckoutOptions(
        blik_code=payload.blik_code,
        customer_ip=request.client.host if request.client else None,
    )
    handle = await orchestrator.create_payment(
        payload.plan,
        payload.email,
        provider,
        nonce=payload.nonce,
        options=options,
    )
    return success_response(data=handle.model_dump(mode="json"), message="Checkout created")


@router.post("/webhooks/{provider}", summary="Provider notification")
async def payments_webhook(
    provider: str,
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    # signatures cover the exact bytes; never parse before verification
    raw_body = await request.body()
    headers = {k: v for k, v in request.headers.items() if k != "x-real-ip"}
    # the socket peer, never a client-supplied value
    if request.client and request.client.host:
        headers["x-real-ip"] = request.client.host

    ack = await orchestrator.handle_notification(provider, raw_body, headers)
    return success_response(data=ack.model_dump(mode="json"), message="Notification received")
