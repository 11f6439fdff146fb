"""
Factory for payment provider adapters and their notification verifiers.

Only providers whose credentials are configured are registered; a request for
any other provider id is answered with UnknownProvider.
"""
from __future__ import annotations

from typing import Optional

import httpx

from core.logging_config import get_logger
from core.settings import PaymentSettings
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.paypal_client import PayPalClient
from infrastructure.external.payments.paysafecard_client import PaysafecardClient
from infrastructure.external.payments.payu_client import PayUClient
from infrastructure.external.payments.stripe_client import StripeClient
from infrastructure.external.payments.verifiers import (
    CompositeNotificationVerifier,
    HmacSignatureVerifier,
    PayPalWebhookVerifier,
    PayUSignatureVerifier,
    StripeSignatureVerifier,
)


logger = get_logger(__name__)

WEBHOOK_PATH = "/api/v1/payments/webhooks/{provider}"


def notify_url(backend_url: str, provider: str) -> str:
    return backend_url.rstrip("/") + WEBHOOK_PATH.format(provider=provider)


def currency_mismatches(settings: PaymentSettings) -> dict[str, str]:
    """Enabled providers pinned to a currency other than the catalog's, mapped to that currency."""
    catalog = settings.plans.currency.upper()
    pinned = {}
    if settings.payu.enabled and settings.payu.currency.upper() != catalog:
        pinned["payu"] = settings.payu.currency.upper()
    return pinned


def build_payment_adapters(
    settings: PaymentSettings,
    *,
    frontend_url: str,
    backend_url: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict[str, BasePaymentClient]:
    front = frontend_url.rstrip("/")
    common = {
        "timeouts": settings.timeouts.model_dump(),
        "retry": {"max": settings.retry.max, "base": settings.retry.base_backoff},
        "transport": transport,
    }
    adapters: dict[str, BasePaymentClient] = {}

    if settings.stripe.enabled:
        adapters["stripe"] = StripeClient(
            secret_key=settings.stripe.secret_key,
            success_url=f"{front}/premium/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{front}/premium/cancel",
            price_ids=settings.stripe.price_ids,
            **common,
        )
    if settings.paypal.enabled:
        adapters["paypal"] = PayPalClient(
            client_id=settings.paypal.client_id,
            client_secret=settings.paypal.client_secret,
            return_url=f"{front}/premium/paypal/success",
            cancel_url=f"{front}/premium/paypal/cancel",
            environment=settings.environment,
            brand_name=settings.paypal.brand_name,
            **common,
        )
    if settings.paysafecard.enabled:
        adapters["paysafecard"] = PaysafecardClient(
            api_key=settings.paysafecard.api_key,
            success_url=f"{front}/premium/paysafecard/success",
            failure_url=f"{front}/premium/paysafecard/failure",
            notification_url=notify_url(backend_url, "paysafecard"),
            environment=settings.environment,
            **common,
        )
    if settings.payu.enabled:
        adapters["payu"] = PayUClient(
            client_id=settings.payu.client_id,
            client_secret=settings.payu.client_secret,
            pos_id=settings.payu.pos_id,
            notify_url=notify_url(backend_url, "payu"),
            continue_url=f"{front}/premium/success",
            currency=settings.payu.currency,
            environment=settings.environment,
            **common,
        )

    for provider, currency in currency_mismatches(settings).items():
        logger.warning(
            "provider_currency_mismatch",
            provider=provider,
            provider_currency=currency,
            catalog_currency=settings.plans.currency,
        )
    logger.info("payment_adapters_configured", providers=sorted(adapters), environment=settings.environment)
    return adapters


def build_notification_verifier(
    settings: PaymentSettings,
    adapters: dict[str, BasePaymentClient],
) -> CompositeNotificationVerifier:
    tolerance = settings.webhook.tolerance_seconds
    verifiers = []
    if "stripe" in adapters:
        verifiers.append(StripeSignatureVerifier(settings.stripe.webhook_secret, tolerance=tolerance))
    if "paypal" in adapters:
        verifiers.append(PayPalWebhookVerifier(adapters["paypal"], settings.paypal.webhook_id, tolerance=tolerance))
    if "paysafecard" in adapters:
        verifiers.append(HmacSignatureVerifier(
            "paysafecard",
            settings.paysafecard.webhook_secret,
            signature_header="X-Paysafecard-Signature",
            timestamp_header="X-Paysafecard-Timestamp",
            tolerance=tolerance,
        ))
    if "payu" in adapters:
        verifiers.append(PayUSignatureVerifier(
            settings.payu.second_key,
            ip_allowlist=settings.payu.ip_allowlist,
            trusted_proxies=settings.payu.trusted_proxies,
        ))
    return CompositeNotificationVerifier(verifiers)


__all__ = [
    "build_payment_adapters",
    "build_notification_verifier",
    "currency_mismatches",
    "notify_url",
]
