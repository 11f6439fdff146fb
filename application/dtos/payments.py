"""
Payment DTOs (Pydantic v2) used at application boundaries.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from domain.common.exceptions import UnknownProviderException


class ProviderId(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"
    PAYSAFECARD = "paysafecard"
    PAYU = "payu"


# Payment-method names accepted from clients
PROVIDER_ALIASES = {
    "card": ProviderId.STRIPE,
    "wallet": ProviderId.PAYPAL,
    "voucher": ProviderId.PAYSAFECARD,
    "blik": ProviderId.PAYU,
}


def normalize_provider(value: object) -> ProviderId:
    if isinstance(value, ProviderId):
        return value
    key = str(value or "").strip().lower()
    if key in PROVIDER_ALIASES:
        return PROVIDER_ALIASES[key]
    try:
        return ProviderId(key)
    except ValueError:
        raise UnknownProviderException(value) from None


class CreatePaymentRequest(BaseModel):
    plan: str
    email: EmailStr
    nonce: Optional[str] = Field(default=None, min_length=8, max_length=128)
    blik_code: Optional[str] = None

    @field_validator("blik_code")
    @classmethod
    def _six_digits(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        if len(v) != 6 or not v.isdigit():
            raise ValueError("blik_code must be 6 digits")
        return v


class CheckoutOptions(BaseModel):
    """Provider-specific extras for createPayment; ignored by providers that do not use them."""

    blik_code: Optional[str] = None
    customer_ip: Optional[str] = None


class ProviderHandle(BaseModel):
    provider: str
    external_ref: str
    redirect_url: Optional[str] = None
    session_id: Optional[str] = None
    reused: bool = False

    model_config = ConfigDict(frozen=True)


class NotificationAck(BaseModel):
    accepted: bool = True
    duplicate: bool = False
    activated: bool = False
    ignored: bool = False
    idempotency_key: Optional[str] = None
    reason: Optional[str] = None


class EntitlementView(BaseModel):
    email: str
    is_premium: bool
    plan: Optional[str] = None
    expiry: Optional[datetime] = None
