"""
Payment provider and notification exceptions mapped to unified BusinessException variants.

Adapters and verifiers raise these unchanged; the orchestration facade lets
them propagate to the caller.
"""
from __future__ import annotations

from typing import Optional

from domain.common.exceptions import BusinessException
from shared.codes.payment_codes import PaymentCode


class PaymentProviderError(BusinessException):
    """Upstream non-2xx, timeout or transport failure. Safe to retry."""

    def __init__(self, message: str, *, provider: str, provider_code: str | None = None, details: Optional[dict] = None):
        full_details = {"provider": provider, "provider_code": provider_code}
        if details:
            full_details.update(details)
        super().__init__(
            code=PaymentCode.PROVIDER_ERROR,
            message=message,
            error_type="ProviderUnavailable",
            details=full_details,
        )


class PlanNotSupportedByProviderError(BusinessException):
    def __init__(self, *, provider: str, plan: str, reason: str):
        super().__init__(
            code=PaymentCode.PLAN_NOT_SUPPORTED,
            message=f"Plan '{plan}' is not supported by provider '{provider}': {reason}",
            error_type="PlanNotSupportedByProvider",
            details={"provider": provider, "plan": plan, "reason": reason},
            field="plan",
        )


class PaymentSignatureError(BusinessException):
    """Base of every authenticity failure; never acknowledged as success."""

    error_code: int = PaymentCode.SIGNATURE_ERROR
    error_name: str = "InvalidSignature"

    def __init__(self, message: str, *, provider: str, details: Optional[dict] = None):
        full_details = {"provider": provider}
        if details:
            full_details.update(details)
        super().__init__(
            code=self.error_code,
            message=message,
            error_type=self.error_name,
            details=full_details,
        )


class InvalidSignatureError(PaymentSignatureError):
    pass


class MissingSignatureHeaderError(PaymentSignatureError):
    error_code = PaymentCode.SIGNATURE_MISSING
    error_name = "MissingSignatureHeader"


class ClockSkewExceededError(PaymentSignatureError):
    error_code = PaymentCode.CLOCK_SKEW
    error_name = "ClockSkewExceeded"


class MalformedNotificationError(BusinessException):
    def __init__(self, message: str, *, provider: str, missing: Optional[str] = None):
        super().__init__(
            code=PaymentCode.MALFORMED_NOTIFICATION,
            message=message,
            error_type="MalformedNotification",
            details={"provider": provider, "missing": missing},
        )


class NotificationCorrelationError(BusinessException):
    """Verified notification whose payer/plan cannot be resolved yet.

    Raised before anything is committed so the provider redelivers later.
    """

    def __init__(self, message: str, *, provider: str, external_ref: str):
        super().__init__(
            code=PaymentCode.CORRELATION_FAILED,
            message=message,
            error_type="NotificationCorrelationFailed",
            details={"provider": provider, "external_ref": external_ref},
        )
