"""Domain-level business exceptions shared by every layer.

The core layer only maps these to HTTP responses; domain code never imports
from core.
"""
from __future__ import annotations

from typing import Optional

from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


class BusinessException(Exception):
    """Base class for every business error."""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        super().__init__(self.message)


class DomainValidationException(BusinessException):
    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="DomainValidationError",
            details=details,
            field=field,
        )


class UnknownPlanException(BusinessException):
    """Plan identifier outside the catalog; raised before any provider call."""

    def __init__(self, plan_id: object):
        super().__init__(
            code=PaymentCode.UNKNOWN_PLAN,
            message=f"Unknown plan: {plan_id!r}",
            error_type="UnknownPlan",
            details={"plan": str(plan_id)},
            field="plan",
        )


class UnknownProviderException(BusinessException):
    def __init__(self, provider: object):
        super().__init__(
            code=PaymentCode.UNKNOWN_PROVIDER,
            message=f"Unknown or disabled payment provider: {provider!r}",
            error_type="UnknownProvider",
            details={"provider": str(provider)},
            field="provider",
        )


class StateConflictException(BusinessException):
    """Concurrent entitlement write detected (stale version or racing insert)."""

    def __init__(self, payer: str, *, reason: str = "concurrent_update"):
        super().__init__(
            code=PaymentCode.STATE_CONFLICT,
            message="Entitlement was modified concurrently",
            error_type="StateConflict",
            details={"payer": payer, "reason": reason},
        )


class StorageUnavailableException(BusinessException):
    """Ledger/entitlement storage did not answer within its timeout."""

    def __init__(self, operation: str):
        super().__init__(
            code=BusinessCode.SERVICE_UNAVAILABLE,
            message=f"Storage unavailable during {operation}",
            error_type="StorageUnavailable",
            details={"operation": operation},
        )
