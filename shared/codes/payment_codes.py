"""
Payment specific codes and provider status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    PROVIDER_TIMEOUT = 60001
    SIGNATURE_ERROR = 60002
    SIGNATURE_MISSING = 60003
    CLOCK_SKEW = 60004
    MALFORMED_NOTIFICATION = 60005
    CORRELATION_FAILED = 60006
    STATE_CONFLICT = 60007

    # Catalog/routing validation (61xxx)
    UNKNOWN_PLAN = 61000
    UNKNOWN_PROVIDER = 61001
    PLAN_NOT_SUPPORTED = 61002


# Provider notification status -> internal outcome ("completed" | "failed").
# Statuses absent from a table are not terminal and are ignored.
PROVIDER_STATUS_TO_OUTCOME = {
    "stripe": {
        "checkout.session.completed": "completed",
        "checkout.session.async_payment_succeeded": "completed",
        "checkout.session.async_payment_failed": "failed",
        "checkout.session.expired": "failed",
    },
    "paypal": {
        "CHECKOUT.ORDER.COMPLETED": "completed",
        "PAYMENT.CAPTURE.COMPLETED": "completed",
        "PAYMENT.CAPTURE.DENIED": "failed",
        "PAYMENT.CAPTURE.DECLINED": "failed",
    },
    "paysafecard": {
        "PAYMENT_COMPLETED": "completed",
        "PAYMENT_CAPTURED": "completed",
        "PAYMENT_FAILED": "failed",
        "PAYMENT_EXPIRED": "failed",
        "PAYMENT_CANCELED": "failed",
    },
    "payu": {
        "COMPLETED": "completed",
        "CANCELED": "failed",
        "REJECTED": "failed",
    },
}
