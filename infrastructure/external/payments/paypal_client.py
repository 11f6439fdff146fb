"""
PayPal Orders v2 adapter over httpx.

Flow: OAuth2 client-credentials token (cached) -> POST /v2/checkout/orders with
intent CAPTURE -> payer approves at the returned link. Webhook authenticity is
confirmed by PayPal's verify-webhook-signature endpoint (see verifiers).
"""
from __future__ import annotations

from typing import Mapping, Optional, Tuple

import httpx

from application.dtos.payments import CheckoutOptions, ProviderHandle
from domain.payment.entity import Payer, PaymentEvent
from domain.payment.exceptions import MalformedNotificationError, PaymentProviderError
from domain.payment.plan import Plan
from infrastructure.external.payments.base import BasePaymentClient, OAuthTokenCache, format_major_amount


PAYPAL_API_BASE = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "live": "https://api-m.paypal.com",
}

_CAPTURE_EVENTS = ("PAYMENT.CAPTURE.COMPLETED", "PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.DECLINED")


class PayPalClient(BasePaymentClient):
    provider = "paypal"

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        return_url: str,
        cancel_url: str,
        environment: str = "sandbox",
        brand_name: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        if not client_id or not client_secret:
            raise ValueError("paypal client_id and client_secret are required")
        self._client_id = client_id
        self._client_secret = client_secret
        self._return_url = return_url
        self._cancel_url = cancel_url
        self._brand_name = brand_name
        self.base_url = PAYPAL_API_BASE[environment]
        self._tokens = OAuthTokenCache(self._fetch_token)

    async def _fetch_token(self) -> Tuple[str, float]:
        response = await self._request(
            "POST",
            f"{self.base_url}/v1/oauth2/token",
            operation="oauth_token",
            data={"grant_type": "client_credentials"},
            auth=httpx.BasicAuth(self._client_id, self._client_secret),
            headers={"Accept": "application/json"},
        )
        self._raise_for_status(response, operation="oauth_token", ok=(200,))
        data = self._json(response, operation="oauth_token")
        if not data.get("access_token"):
            raise PaymentProviderError("PayPal token response without access_token", provider=self.provider)
        return data["access_token"], float(data.get("expires_in", 300))

    async def access_token(self) -> str:
        return await self._tokens.get()

    def _order_body(self, plan: Plan, payer: Payer) -> dict:
        context = {
            "return_url": self._return_url,
            "cancel_url": self._cancel_url,
            "user_action": "PAY_NOW",
            "shipping_preference": "NO_SHIPPING",
        }
        if self._brand_name:
            context["brand_name"] = self._brand_name
        return {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": plan.id.value,
                "custom_id": payer.email,
                "description": f"Premium - {plan.id.value}",
                "amount": {
                    "currency_code": plan.currency,
                    "value": format_major_amount(plan.amount_minor, plan.currency),
                },
            }],
            "application_context": context,
        }

    async def create_payment(
        self,
        plan: Plan,
        payer: Payer,
        *,
        idempotency_token: str,
        options: Optional[CheckoutOptions] = None,
    ) -> ProviderHandle:
        token = await self.access_token()
        response = await self._request(
            "POST",
            f"{self.base_url}/v2/checkout/orders",
            operation="create_order",
            json=self._order_body(plan, payer),
            headers={
                "Authorization": f"Bearer {token}",
                "PayPal-Request-Id": idempotency_token,
                "Prefer": "return=representation",
            },
        )
        if response.status_code == 401:
            self._tokens.invalidate()
        self._raise_for_status(response, operation="create_order")
        order = self._json(response, operation="create_order")
        if not order.get("id"):
            raise PaymentProviderError("PayPal order response without id", provider=self.provider)

        approve = next(
            (link.get("href") for link in order.get("links") or [] if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        self._log("paypal_order_created", external_ref=order["id"], plan=plan.id.value)
        return ProviderHandle(provider=self.provider, external_ref=order["id"], redirect_url=approve)

    async def verify_webhook_signature(self, verification: dict) -> str:
        """POST /v1/notifications/verify-webhook-signature; returns verification_status."""
        token = await self.access_token()
        response = await self._request(
            "POST",
            f"{self.base_url}/v1/notifications/verify-webhook-signature",
            operation="verify_webhook",
            json=verification,
            headers={"Authorization": f"Bearer {token}"},
        )
        if response.status_code == 401:
            self._tokens.invalidate()
        self._raise_for_status(response, operation="verify_webhook", ok=(200,))
        return str(self._json(response, operation="verify_webhook").get("verification_status", ""))

    def parse_notification(self, body: bytes, headers: Mapping[str, str]) -> Optional[PaymentEvent]:
        payload = self._load_notification(body)
        event_type = payload.get("event_type")
        outcome = self._outcome(event_type)
        if outcome is None:
            return None

        resource = payload.get("resource")
        if not isinstance(resource, dict):
            raise MalformedNotificationError("PayPal event without resource", provider=self.provider, missing="resource")

        if event_type in _CAPTURE_EVENTS:
            # captures reference their order; the order id is the correlation key
            related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
            order_id = related.get("order_id")
            unit = resource
        else:
            order_id = resource.get("id")
            units = resource.get("purchase_units") or [{}]
            unit = units[0] if isinstance(units[0], dict) else {}
        if not order_id:
            raise MalformedNotificationError(
                "PayPal event without order id",
                provider=self.provider,
                missing="resource.supplementary_data.related_ids.order_id" if event_type in _CAPTURE_EVENTS else "resource.id",
            )

        return self._event(
            order_id,
            outcome,
            payer_hint=unit.get("custom_id"),
            plan_hint=unit.get("reference_id"),
            event_type=event_type,
        )
