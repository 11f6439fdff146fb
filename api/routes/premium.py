"""
Premium entitlement status route.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends

from api.dependencies import get_payment_orchestrator
from application.services.payment_service import PaymentOrchestrator
from core.response import success_response


router = APIRouter(prefix="/premium", tags=["Premium"])


@router.get("/status/{email}", summary="Premium status")
async def premium_status(
    email: str,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    view = await orchestrator.get_entitlement(email)
    return success_response(data=view.model_dump(mode="json"))
