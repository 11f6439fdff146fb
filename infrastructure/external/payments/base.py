"""
Base payment client implementing shared concerns: http, retry, logging,
notification decoding and outcome mapping.

Concrete providers subclass and implement create_payment / parse_notification.
Shared helpers for amount units and OAuth token caching live here as well.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import time
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, Tuple

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from application.dtos.payments import CheckoutOptions, ProviderHandle
from core.logging_config import get_logger
from domain.payment.entity import (
    Payer,
    PaymentEvent,
    PaymentOutcome,
    idempotency_key_for,
)
from domain.payment.exceptions import MalformedNotificationError, PaymentProviderError
from domain.payment.plan import Plan
from shared.codes.payment_codes import PROVIDER_STATUS_TO_OUTCOME


logger = get_logger(__name__)

# ISO-4217 currencies without a minor unit
ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "KRW", "HUF", "CLP", "VND"})


def currency_exponent(currency: str) -> int:
    return 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2


def format_major_amount(amount_minor: int, currency: str) -> str:
    """999 EUR minor units -> "9.99"; used by providers that take decimal strings."""
    exponent = currency_exponent(currency)
    value = Decimal(amount_minor).scaleb(-exponent)
    return f"{value:.{exponent}f}"


def content_hash_ref(body: bytes) -> str:
    """Synthesized external reference for callbacks without a stable order id."""
    return "sha256:" + hashlib.sha256(body).hexdigest()


def header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup (ASGI servers lower-case names)."""
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, val in headers.items():
        if key.lower() == lowered:
            return val
    return None


class OAuthTokenCache:
    """Caches a bearer token until shortly before it expires.

    fetch returns (access_token, expires_in_seconds). Concurrent callers share
    one refresh.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[Tuple[str, float]]],
        *,
        leeway: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch = fetch
        self._leeway = leeway
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    def _valid(self) -> bool:
        return self._token is not None and self._clock() < self._expires_at

    async def get(self) -> str:
        if self._valid():
            return self._token  # type: ignore[return-value]
        async with self._lock:
            if not self._valid():
                token, expires_in = await self._fetch()
                self._token = token
                self._expires_at = self._clock() + max(0.0, float(expires_in) - self._leeway)
            return self._token  # type: ignore[return-value]

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0


class BasePaymentClient:
    provider: str = "base"

    def __init__(
        self,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeouts_cfg = timeouts or {"connect": 3.0, "read": 8.0, "write": 8.0, "total": 10.0}
        self._retry_cfg = retry or {"max": 2, "base": 0.2}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def timeouts(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self._timeouts_cfg["connect"],
            read=self._timeouts_cfg["read"],
            write=self._timeouts_cfg["write"],
            timeout=self._timeouts_cfg["total"],
        )

    @asynccontextmanager
    async def client(self):
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeouts, transport=self._transport)
        # kept open for reuse; aclose() releases it
        yield self._client

    async def aclose(self) -> None:
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _retry(self, fn: Callable[[], Any]):
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg["max"]) + 1),
            wait=wait_exponential(multiplier=self._retry_cfg["base"], min=0.1, max=2.0),
            retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
            reraise=True,
        ):
            with attempt:
                return await fn()

    async def _request(self, method: str, url: str, *, operation: str, **kwargs) -> httpx.Response:
        async def _send() -> httpx.Response:
            async with self.client() as client:
                return await client.request(method, url, **kwargs)

        try:
            return await self._retry(_send)
        except httpx.HTTPError as exc:
            logger.warning("provider_transport_failed", provider=self.provider, operation=operation, error=str(exc))
            raise PaymentProviderError(
                f"{self.provider} {operation} failed: {exc.__class__.__name__}",
                provider=self.provider,
                provider_code="transport",
            ) from exc

    def _raise_for_status(self, response: httpx.Response, *, operation: str, ok: Iterable[int] = (200, 201)) -> None:
        if response.status_code in tuple(ok):
            return
        logger.warning(
            "provider_http_error",
            provider=self.provider,
            operation=operation,
            status_code=response.status_code,
        )
        raise PaymentProviderError(
            f"{self.provider} {operation} returned HTTP {response.status_code}",
            provider=self.provider,
            provider_code=str(response.status_code),
            details={"operation": operation, "body": response.text[:500]},
        )

    def _json(self, response: httpx.Response, *, operation: str) -> dict:
        try:
            data = response.json()
        except ValueError as exc:
            raise PaymentProviderError(
                f"{self.provider} {operation} returned invalid JSON",
                provider=self.provider,
                provider_code="invalid_json",
            ) from exc
        if not isinstance(data, dict):
            raise PaymentProviderError(
                f"{self.provider} {operation} returned unexpected payload",
                provider=self.provider,
                provider_code="invalid_json",
            )
        return data

    # ---- notification helpers

    def _load_notification(self, body: bytes) -> dict:
        try:
            payload = json.loads(body or b"")
        except ValueError as exc:
            raise MalformedNotificationError("Notification body is not JSON", provider=self.provider) from exc
        if not isinstance(payload, dict):
            raise MalformedNotificationError("Notification body is not a JSON object", provider=self.provider)
        return payload

    def _outcome(self, provider_status: Optional[str]) -> Optional[PaymentOutcome]:
        mapped = PROVIDER_STATUS_TO_OUTCOME.get(self.provider, {}).get(provider_status or "")
        return PaymentOutcome(mapped) if mapped else None

    def _event(
        self,
        external_ref: str,
        outcome: PaymentOutcome,
        *,
        payer_hint: Optional[str] = None,
        plan_hint: Optional[str] = None,
        event_type: Optional[str] = None,
    ) -> PaymentEvent:
        return PaymentEvent(
            provider=self.provider,
            external_ref=external_ref,
            outcome=outcome,
            raw_idempotency_key=idempotency_key_for(self.provider, external_ref),
            payer_hint=payer_hint,
            plan_hint=plan_hint,
            event_type=event_type,
        )

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            **kwargs,
        )

    async def create_payment(
        self,
        plan: Plan,
        payer: Payer,
        *,
        idempotency_token: str,
        options: Optional[CheckoutOptions] = None,
    ) -> ProviderHandle:
        raise NotImplementedError

    def parse_notification(self, body: bytes, headers: Mapping[str, str]) -> Optional[PaymentEvent]:
        raise NotImplementedError
