"""
API dependencies
"""
from fastapi import Request

from application.services.payment_service import PaymentOrchestrator


async def get_payment_orchestrator(request: Request) -> PaymentOrchestrator:
    """The orchestrator is built once by the lifespan and stored on app.state."""
    return request.app.state.orchestrator
