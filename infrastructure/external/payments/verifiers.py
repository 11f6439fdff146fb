"""
Notification authenticity checks, one strategy per provider.

Every verifier works on the raw, unparsed request body and raises a
PaymentSignatureError subclass on failure. CompositeNotificationVerifier
dispatches by provider id and implements the application NotificationVerifier
port.
"""
from __future__ import annotations

import hashlib
import hmac
import ipaddress
import json
import time
from datetime import datetime
from typing import Callable, Iterable, Mapping, Optional, Protocol

import stripe

from application.ports.payment_gateway import VerifiedNotification
from core.logging_config import get_logger
from domain.common.exceptions import UnknownProviderException
from domain.payment.exceptions import (
    ClockSkewExceededError,
    InvalidSignatureError,
    MissingSignatureHeaderError,
)
from infrastructure.external.payments.base import header
from infrastructure.external.payments.paypal_client import PayPalClient


logger = get_logger(__name__)


class ProviderVerifier(Protocol):
    provider: str

    async def verify(self, body: bytes, headers: Mapping[str, str]) -> None: ...


class StripeSignatureVerifier:
    """`Stripe-Signature: t=<ts>,v1=<hmac>` checked by the SDK against the exact body bytes."""

    provider = "stripe"

    def __init__(self, webhook_secret: str, *, tolerance: int = 300):
        self._secret = webhook_secret
        self._tolerance = tolerance

    async def verify(self, body: bytes, headers: Mapping[str, str]) -> None:
        sig = header(headers, "Stripe-Signature")
        if not sig:
            raise MissingSignatureHeaderError("Missing Stripe-Signature header", provider=self.provider)
        try:
            payload = body.decode("utf-8")
        except UnicodeDecodeError:
            raise InvalidSignatureError("Body is not valid UTF-8", provider=self.provider) from None
        try:
            stripe.WebhookSignature.verify_header(payload, sig, self._secret, self._tolerance)
        except stripe.SignatureVerificationError as exc:
            if "tolerance" in str(exc).lower():
                raise ClockSkewExceededError(
                    "Stripe signature timestamp outside tolerance",
                    provider=self.provider,
                    details={"tolerance_seconds": self._tolerance},
                ) from exc
            raise InvalidSignatureError("Stripe signature mismatch", provider=self.provider) from exc


class HmacSignatureVerifier:
    """HMAC-SHA256 hex over `<timestamp>.<body>` (or the bare body when no timestamp header is sent)."""

    def __init__(
        self,
        provider: str,
        secret: str,
        *,
        signature_header: str,
        timestamp_header: Optional[str] = None,
        tolerance: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        self.provider = provider
        self._secret = secret.encode("utf-8")
        self._signature_header = signature_header
        self._timestamp_header = timestamp_header
        self._tolerance = tolerance
        self._clock = clock

    def sign(self, body: bytes, timestamp: Optional[str] = None) -> str:
        content = f"{timestamp}.".encode("utf-8") + body if timestamp else body
        return hmac.new(self._secret, content, hashlib.sha256).hexdigest()

    async def verify(self, body: bytes, headers: Mapping[str, str]) -> None:
        received = header(headers, self._signature_header)
        if not received:
            raise MissingSignatureHeaderError(f"Missing {self._signature_header} header", provider=self.provider)

        timestamp = header(headers, self._timestamp_header) if self._timestamp_header else None
        if timestamp is not None:
            try:
                sent_at = float(timestamp)
            except ValueError:
                raise InvalidSignatureError("Unparseable signature timestamp", provider=self.provider) from None
            if abs(self._clock() - sent_at) > self._tolerance:
                raise ClockSkewExceededError(
                    "Signature timestamp outside tolerance",
                    provider=self.provider,
                    details={"tolerance_seconds": self._tolerance},
                )

        received = received.strip()
        if received.lower().startswith("sha256="):
            received = received[len("sha256="):]
        if not hmac.compare_digest(self.sign(body, timestamp), received.lower()):
            raise InvalidSignatureError("Signature mismatch", provider=self.provider)


def parse_openpayu_signature(value: str) -> dict[str, str]:
    """`sender=..;signature=..;algorithm=MD5;content=DOCUMENT` -> dict"""
    parts = {}
    for item in value.split(";"):
        key, sep, val = item.partition("=")
        if sep:
            parts[key.strip().lower()] = val.strip()
    return parts


def client_ip(headers: Mapping[str, str], trusted_proxies: Iterable[str] = ()) -> Optional[str]:
    """
    Source address of a notification.

    X-Real-IP is set by the webhook route from the socket peer. X-Forwarded-For
    is honoured only when that peer is a trusted proxy, and then the rightmost
    hop that is not a trusted proxy is the client.
    """
    peer = header(headers, "X-Real-IP")
    trusted = list(trusted_proxies)
    if not trusted or not ip_allowed(peer, trusted):
        return peer
    forwarded = header(headers, "X-Forwarded-For")
    hops = [h.strip() for h in (forwarded or "").split(",") if h.strip()]
    for hop in reversed(hops):
        if not ip_allowed(hop, trusted):
            return hop
    return hops[0] if hops else peer


def ip_allowed(remote_ip: Optional[str], allowlist: Iterable[str]) -> bool:
    if not remote_ip:
        return False
    try:
        rip = ipaddress.ip_address(remote_ip)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            if "/" in entry:
                if rip in ipaddress.ip_network(entry, strict=False):
                    return True
            elif rip == ipaddress.ip_address(entry):
                return True
        except ValueError:
            logger.warning("ip_allowlist_entry_invalid", entry=entry)
    return False


class PayUSignatureVerifier:
    """OpenPayu-Signature: hash(body + second_key) with MD5 or SHA-256, plus optional source-IP allowlist."""

    provider = "payu"

    _ALGORITHMS = {"MD5": hashlib.md5, "SHA256": hashlib.sha256, "SHA-256": hashlib.sha256}

    def __init__(
        self,
        second_key: str,
        *,
        ip_allowlist: Optional[Iterable[str]] = None,
        trusted_proxies: Optional[Iterable[str]] = None,
    ):
        self._second_key = second_key.encode("utf-8")
        self._ip_allowlist = list(ip_allowlist or [])
        self._trusted_proxies = list(trusted_proxies or [])

    async def verify(self, body: bytes, headers: Mapping[str, str]) -> None:
        if self._ip_allowlist:
            remote_ip = client_ip(headers, self._trusted_proxies)
            if not ip_allowed(remote_ip, self._ip_allowlist):
                raise InvalidSignatureError(
                    "Notification source IP not allowed",
                    provider=self.provider,
                    details={"remote_ip": remote_ip},
                )

        raw = header(headers, "OpenPayu-Signature")
        if not raw:
            raise MissingSignatureHeaderError("Missing OpenPayu-Signature header", provider=self.provider)
        parts = parse_openpayu_signature(raw)
        received = parts.get("signature")
        if not received:
            raise MissingSignatureHeaderError("OpenPayu-Signature without signature", provider=self.provider)
        algorithm = self._ALGORITHMS.get(parts.get("algorithm", "MD5").upper())
        if algorithm is None:
            raise InvalidSignatureError(
                "Unsupported signature algorithm",
                provider=self.provider,
                details={"algorithm": parts.get("algorithm")},
            )
        expected = algorithm(body + self._second_key).hexdigest()
        if not hmac.compare_digest(expected, received.lower()):
            raise InvalidSignatureError("Signature mismatch", provider=self.provider)


class PayPalWebhookVerifier:
    """Transmission headers + skew check locally, signature via PayPal's verify-webhook-signature API."""

    provider = "paypal"

    _HEADERS = {
        "transmission_id": "PAYPAL-TRANSMISSION-ID",
        "transmission_time": "PAYPAL-TRANSMISSION-TIME",
        "transmission_sig": "PAYPAL-TRANSMISSION-SIG",
        "cert_url": "PAYPAL-CERT-URL",
        "auth_algo": "PAYPAL-AUTH-ALGO",
    }

    def __init__(
        self,
        client: PayPalClient,
        webhook_id: str,
        *,
        tolerance: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        self._client = client
        self._webhook_id = webhook_id
        self._tolerance = tolerance
        self._clock = clock

    async def verify(self, body: bytes, headers: Mapping[str, str]) -> None:
        values = {}
        for field, name in self._HEADERS.items():
            value = header(headers, name)
            if not value:
                raise MissingSignatureHeaderError(f"Missing {name} header", provider=self.provider)
            values[field] = value

        try:
            sent_at = datetime.fromisoformat(values["transmission_time"].replace("Z", "+00:00")).timestamp()
        except ValueError:
            raise InvalidSignatureError("Unparseable transmission time", provider=self.provider) from None
        if abs(self._clock() - sent_at) > self._tolerance:
            raise ClockSkewExceededError(
                "Transmission time outside tolerance",
                provider=self.provider,
                details={"tolerance_seconds": self._tolerance},
            )

        try:
            event = json.loads(body)
        except ValueError:
            raise InvalidSignatureError("Body is not JSON", provider=self.provider) from None

        status = await self._client.verify_webhook_signature({
            **values,
            "webhook_id": self._webhook_id,
            "webhook_event": event,
        })
        if status != "SUCCESS":
            raise InvalidSignatureError(
                "PayPal rejected webhook signature",
                provider=self.provider,
                details={"verification_status": status},
            )


class CompositeNotificationVerifier:
    def __init__(self, verifiers: Iterable[ProviderVerifier]):
        self._verifiers = {v.provider: v for v in verifiers}

    async def verify(self, provider: str, body: bytes, headers: Mapping[str, str]) -> VerifiedNotification:
        verifier = self._verifiers.get(provider)
        if verifier is None:
            raise UnknownProviderException(provider)
        await verifier.verify(body, headers)
        return VerifiedNotification(provider=provider, body=body)
