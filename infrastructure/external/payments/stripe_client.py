"""
Stripe Checkout adapter using the official stripe-python SDK.

Notes on SDK usage:
- The SDK is synchronous; calls run in a worker thread via asyncio.to_thread.
- The secret key is passed per request (`api_key=`), never set globally.
- Idempotency keys go through the `idempotency_key` request option; Stripe
  returns the original session for a repeated key within 24h.
"""
from __future__ import annotations

import asyncio
from typing import Mapping, Optional

import stripe

from application.dtos.payments import CheckoutOptions, ProviderHandle
from domain.payment.entity import Payer, PaymentEvent
from domain.payment.exceptions import MalformedNotificationError, PaymentProviderError
from domain.payment.plan import Plan
from infrastructure.external.payments.base import BasePaymentClient


class StripeClient(BasePaymentClient):
    provider = "stripe"

    def __init__(
        self,
        *,
        secret_key: str,
        success_url: str,
        cancel_url: str,
        price_ids: Optional[Mapping[str, str]] = None,
        product_name: str = "Premium",
        **kwargs,
    ):
        super().__init__(**kwargs)
        if not secret_key:
            raise ValueError("stripe secret_key is required")
        self._secret_key = secret_key
        self._success_url = success_url
        self._cancel_url = cancel_url
        self._price_ids = dict(price_ids or {})
        self._product_name = product_name

    def _line_item(self, plan: Plan) -> dict:
        price_id = self._price_ids.get(plan.id.value)
        if price_id:
            return {"price": price_id, "quantity": 1}
        return {
            "price_data": {
                "currency": plan.currency.lower(),
                "unit_amount": plan.amount_minor,
                "product_data": {"name": f"{self._product_name} {plan.id.value}"},
            },
            "quantity": 1,
        }

    async def create_payment(
        self,
        plan: Plan,
        payer: Payer,
        *,
        idempotency_token: str,
        options: Optional[CheckoutOptions] = None,
    ) -> ProviderHandle:
        metadata = {"plan": plan.id.value, "payer_email": payer.email}
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.create,
                api_key=self._secret_key,
                idempotency_key=idempotency_token,
                mode="payment",
                line_items=[self._line_item(plan)],
                customer_email=payer.email,
                client_reference_id=idempotency_token,
                success_url=self._success_url,
                cancel_url=self._cancel_url,
                metadata=metadata,
                payment_intent_data={"metadata": metadata},
            )
        except stripe.StripeError as exc:
            self._log("stripe_session_create_failed", error=exc.__class__.__name__, http_status=exc.http_status)
            raise PaymentProviderError(
                exc.user_message or str(exc) or "Stripe request failed",
                provider=self.provider,
                provider_code=exc.code or (str(exc.http_status) if exc.http_status else None),
            ) from exc

        self._log("stripe_session_created", external_ref=session["id"], plan=plan.id.value)
        return ProviderHandle(
            provider=self.provider,
            external_ref=session["id"],
            redirect_url=session.get("url"),
            session_id=session["id"],
        )

    def parse_notification(self, body: bytes, headers: Mapping[str, str]) -> Optional[PaymentEvent]:
        payload = self._load_notification(body)
        event_type = payload.get("type")
        outcome = self._outcome(event_type)
        if outcome is None:
            return None

        session = (payload.get("data") or {}).get("object")
        if not isinstance(session, dict) or not session.get("id"):
            raise MalformedNotificationError(
                "Stripe event without checkout session object",
                provider=self.provider,
                missing="data.object.id",
            )
        # delayed methods (SEPA, bank debits) complete later via async_payment_succeeded
        if event_type == "checkout.session.completed" and session.get("payment_status") not in ("paid", "no_payment_required"):
            self._log("stripe_session_awaiting_payment", external_ref=session["id"])
            return None

        metadata = session.get("metadata") or {}
        details = session.get("customer_details") or {}
        return self._event(
            session["id"],
            outcome,
            payer_hint=metadata.get("payer_email") or metadata.get("userEmail") or details.get("email"),
            plan_hint=metadata.get("plan"),
            event_type=event_type,
        )
