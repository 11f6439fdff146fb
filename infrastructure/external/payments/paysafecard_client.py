"""
paysafecard REST adapter (Payment API v1) over httpx.

Amounts are sent in minor units. The customer is redirected to auth_url to
redeem the voucher; completion is only known from the server-to-server
notification posted to notification_url.
"""
from __future__ import annotations

from typing import Mapping, Optional

import httpx

from application.dtos.payments import CheckoutOptions, ProviderHandle
from domain.payment.entity import Payer, PaymentEvent
from domain.payment.exceptions import PaymentProviderError
from domain.payment.plan import Plan
from infrastructure.external.payments.base import BasePaymentClient, content_hash_ref


PAYSAFECARD_API_BASE = {
    "sandbox": "https://apitest.paysafecard.com",
    "live": "https://api.paysafecard.com",
}


class PaysafecardClient(BasePaymentClient):
    provider = "paysafecard"

    def __init__(
        self,
        *,
        api_key: str,
        success_url: str,
        failure_url: str,
        notification_url: str,
        environment: str = "sandbox",
        **kwargs,
    ):
        super().__init__(**kwargs)
        if not api_key:
            raise ValueError("paysafecard api_key is required")
        self._auth = httpx.BasicAuth(api_key, "")
        self._success_url = success_url
        self._failure_url = failure_url
        self._notification_url = notification_url
        self.base_url = PAYSAFECARD_API_BASE[environment]

    async def create_payment(
        self,
        plan: Plan,
        payer: Payer,
        *,
        idempotency_token: str,
        options: Optional[CheckoutOptions] = None,
    ) -> ProviderHandle:
        body = {
            "type": "PAYSAFECARD",
            "amount": plan.amount_minor,
            "currency": plan.currency,
            "redirect": {
                "success_url": self._success_url,
                "failure_url": self._failure_url,
            },
            "notification_url": self._notification_url,
            "customer": {"id": payer.email},
        }
        response = await self._request(
            "POST",
            f"{self.base_url}/v1/payments",
            operation="create_payment",
            json=body,
            auth=self._auth,
            headers={"Correlation-ID": idempotency_token},
        )
        self._raise_for_status(response, operation="create_payment")
        data = self._json(response, operation="create_payment")
        payment_id = data.get("id")
        if not payment_id:
            raise PaymentProviderError("paysafecard response without payment id", provider=self.provider)

        self._log("paysafecard_payment_created", external_ref=payment_id, plan=plan.id.value)
        return ProviderHandle(
            provider=self.provider,
            external_ref=payment_id,
            redirect_url=(data.get("redirect") or {}).get("auth_url"),
        )

    def parse_notification(self, body: bytes, headers: Mapping[str, str]) -> Optional[PaymentEvent]:
        payload = self._load_notification(body)
        event_type = payload.get("eventType") or payload.get("event_type")
        outcome = self._outcome(event_type)
        if outcome is None:
            return None

        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        payment_id = data.get("payment_id") or data.get("mtid") or payload.get("id")
        if not payment_id:
            # no stable id in this callback: fall back to a content hash; the
            # orchestrator then matches the customer's single open intent
            payment_id = content_hash_ref(body)
            self._log("paysafecard_notification_without_id", external_ref=payment_id)

        customer = data.get("customer") if isinstance(data.get("customer"), dict) else {}
        return self._event(
            payment_id,
            outcome,
            payer_hint=customer.get("id"),
            # the callback carries no plan; it is taken from the recorded intent
            plan_hint=None,
            event_type=event_type,
        )
