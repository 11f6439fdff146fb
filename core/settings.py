"""
Payment-related settings using pydantic-settings v2 with nested env keys,
e.g. PAYMENT__STRIPE__SECRET_KEY or PAYMENT__TIMEOUTS__TOTAL.

Kept apart from core.config.Settings; the composition root turns these into
explicit constructor arguments, no payment component reads them directly.
"""
from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PaymentTimeouts(BaseModel):
    connect: float = 3.0
    read: float = 8.0
    write: float = 8.0
    total: float = 10.0


class PaymentRetry(BaseModel):
    max: int = 2
    base_backoff: float = 0.2


class WebhookSettings(BaseModel):
    tolerance_seconds: int = 300


class PlanSettings(BaseModel):
    # One catalog currency for every provider. PayU only takes payu.currency
    # (PLN), so a PayU deployment sets PAYMENT__PLANS__CURRENCY=PLN too;
    # otherwise every PayU checkout fails with PlanNotSupportedByProvider.
    currency: str = "EUR"
    # Minor-unit overrides keyed by plan id (monthly/quarterly/yearly)
    prices: dict[str, int] = Field(default_factory=dict)


class StripeSettings(BaseModel):
    secret_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    price_ids: dict[str, str] = Field(default_factory=dict)

    @property
    def enabled(self) -> bool:
        return bool(self.secret_key and self.webhook_secret)


class PayPalSettings(BaseModel):
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    webhook_id: Optional[str] = None
    brand_name: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return bool(self.client_id and self.client_secret and self.webhook_id)


class PaysafecardSettings(BaseModel):
    api_key: Optional[str] = None
    webhook_secret: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return bool(self.api_key and self.webhook_secret)


class PayUSettings(BaseModel):
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    pos_id: Optional[str] = None
    second_key: Optional[str] = None
    currency: str = "PLN"
    ip_allowlist: list[str] | None = None  # Optional IPs/CIDRs allowed to post notifications
    # Reverse proxies (IPs/CIDRs) whose X-Forwarded-For is believed; empty means the socket peer is used
    trusted_proxies: list[str] | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.client_id and self.client_secret and self.pos_id and self.second_key)


class PaymentSettings(BaseSettings):
    environment: Literal["sandbox", "live"] = "sandbox"
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    plans: PlanSettings = Field(default_factory=PlanSettings)
    storage_timeout_seconds: float = 5.0
    intent_ttl_seconds: int = 86400

    stripe: StripeSettings = Field(default_factory=StripeSettings)
    paypal: PayPalSettings = Field(default_factory=PayPalSettings)
    paysafecard: PaysafecardSettings = Field(default_factory=PaysafecardSettings)
    payu: PayUSettings = Field(default_factory=PayUSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAYMENT__",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )

    @property
    def is_live(self) -> bool:
        return self.environment == "live"


payment_settings = PaymentSettings()
