"""
PayU REST adapter (API v2.1) over httpx, used for BLIK payments.

Two-step flow: OAuth client-credentials token (cached until shortly before
expiry) -> POST /api/v2_1/orders. PayU answers order creation with 302 plus a
JSON body; redirects are not followed. Only the configured currency (PLN) is
accepted.
"""
from __future__ import annotations

from typing import Mapping, Optional, Tuple

from application.dtos.payments import CheckoutOptions, ProviderHandle
from domain.payment.entity import Payer, PaymentEvent
from domain.payment.exceptions import (
    MalformedNotificationError,
    PaymentProviderError,
    PlanNotSupportedByProviderError,
)
from domain.payment.plan import Plan
from infrastructure.external.payments.base import BasePaymentClient, OAuthTokenCache


PAYU_API_BASE = {
    "sandbox": "https://secure.snd.payu.com",
    "live": "https://secure.payu.com",
}


class PayUClient(BasePaymentClient):
    provider = "payu"

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        pos_id: str,
        notify_url: str,
        continue_url: Optional[str] = None,
        currency: str = "PLN",
        environment: str = "sandbox",
        **kwargs,
    ):
        super().__init__(**kwargs)
        if not client_id or not client_secret or not pos_id:
            raise ValueError("payu client_id, client_secret and pos_id are required")
        self._client_id = client_id
        self._client_secret = client_secret
        self._pos_id = pos_id
        self._notify_url = notify_url
        self._continue_url = continue_url
        self.currency = currency.upper()
        self.base_url = PAYU_API_BASE[environment]
        self._tokens = OAuthTokenCache(self._fetch_token)

    async def _fetch_token(self) -> Tuple[str, float]:
        response = await self._request(
            "POST",
            f"{self.base_url}/pl/standard/user/oauth/authorize",
            operation="oauth_token",
            data={
                "grant_type": "client_credentials",
                "client_id": self._client_id,
                "client_secret": self._client_secret,
            },
        )
        self._raise_for_status(response, operation="oauth_token", ok=(200,))
        data = self._json(response, operation="oauth_token")
        if not data.get("access_token"):
            raise PaymentProviderError("PayU token response without access_token", provider=self.provider)
        return data["access_token"], float(data.get("expires_in", 300))

    def _order_body(self, plan: Plan, payer: Payer, token: str, options: CheckoutOptions) -> dict:
        body = {
            "notifyUrl": self._notify_url,
            "customerIp": options.customer_ip or "127.0.0.1",
            "merchantPosId": self._pos_id,
            "extOrderId": token,
            "description": f"Premium - {plan.id.value}",
            "additionalDescription": plan.id.value,
            "currencyCode": plan.currency,
            "totalAmount": str(plan.amount_minor),
            "buyer": {"email": payer.email},
            "products": [{
                "name": f"Premium {plan.id.value}",
                "unitPrice": str(plan.amount_minor),
                "quantity": "1",
            }],
        }
        if self._continue_url:
            body["continueUrl"] = self._continue_url
        if options.blik_code:
            body["payMethods"] = {
                "payMethod": {
                    "type": "BLIK_AUTHORIZATION_CODE",
                    "value": options.blik_code,
                }
            }
        return body

    async def create_payment(
        self,
        plan: Plan,
        payer: Payer,
        *,
        idempotency_token: str,
        options: Optional[CheckoutOptions] = None,
    ) -> ProviderHandle:
        if plan.currency != self.currency:
            raise PlanNotSupportedByProviderError(
                provider=self.provider,
                plan=plan.id.value,
                reason=f"only {self.currency} is accepted, catalog currency is {plan.currency}",
            )

        access_token = await self._tokens.get()
        response = await self._request(
            "POST",
            f"{self.base_url}/api/v2_1/orders",
            operation="create_order",
            json=self._order_body(plan, payer, idempotency_token, options or CheckoutOptions()),
            headers={"Authorization": f"Bearer {access_token}"},
            follow_redirects=False,
        )
        if response.status_code == 401:
            self._tokens.invalidate()
        self._raise_for_status(response, operation="create_order", ok=(200, 201, 302))
        data = self._json(response, operation="create_order")

        status_code = str((data.get("status") or {}).get("statusCode", ""))
        if status_code != "SUCCESS" and not status_code.startswith("WARNING_CONTINUE"):
            raise PaymentProviderError(
                f"PayU rejected order: {status_code or 'no status'}",
                provider=self.provider,
                provider_code=status_code or None,
                details={"status_desc": (data.get("status") or {}).get("statusDesc")},
            )
        if not data.get("orderId"):
            raise PaymentProviderError("PayU response without orderId", provider=self.provider)

        self._log("payu_order_created", external_ref=data["orderId"], plan=plan.id.value, status_code=status_code)
        return ProviderHandle(
            provider=self.provider,
            external_ref=data["orderId"],
            redirect_url=data.get("redirectUri"),
        )

    def parse_notification(self, body: bytes, headers: Mapping[str, str]) -> Optional[PaymentEvent]:
        payload = self._load_notification(body)
        order = payload.get("order")
        if not isinstance(order, dict):
            # refund and other notifications carry no order status
            return None
        outcome = self._outcome(order.get("status"))
        if outcome is None:
            return None
        if not order.get("orderId"):
            raise MalformedNotificationError("PayU order without orderId", provider=self.provider, missing="order.orderId")

        buyer = order.get("buyer") if isinstance(order.get("buyer"), dict) else {}
        return self._event(
            order["orderId"],
            outcome,
            payer_hint=buyer.get("email"),
            plan_hint=order.get("additionalDescription"),
            event_type=order.get("status"),
        )
