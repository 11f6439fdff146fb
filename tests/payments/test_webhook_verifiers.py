import hashlib
import hmac
import json
import time
from datetime import datetime, timezone

import httpx
import pytest

from application.ports.payment_gateway import VerifiedNotification
from domain.common.exceptions import UnknownProviderException
from domain.payment.exceptions import (
    ClockSkewExceededError,
    InvalidSignatureError,
    MissingSignatureHeaderError,
)
from infrastructure.external.payments.paypal_client import PayPalClient
from infrastructure.external.payments.verifiers import (
    CompositeNotificationVerifier,
    HmacSignatureVerifier,
    PayPalWebhookVerifier,
    PayUSignatureVerifier,
    StripeSignatureVerifier,
    parse_openpayu_signature,
)


BODY = json.dumps({"id": "evt_1", "type": "checkout.session.completed"}).encode()
NOW = 1_700_000_000.0


class TestStripeSignature:
    secret = "whsec_test"

    @pytest.mark.asyncio
    async def test_valid_signature(self, stripe_signature):
        verifier = StripeSignatureVerifier(self.secret)
        await verifier.verify(BODY, {"stripe-signature": stripe_signature(BODY, self.secret)})

    @pytest.mark.asyncio
    async def test_tampered_body(self, stripe_signature):
        verifier = StripeSignatureVerifier(self.secret)
        with pytest.raises(InvalidSignatureError):
            await verifier.verify(BODY + b" ", {"Stripe-Signature": stripe_signature(BODY, self.secret)})

    @pytest.mark.asyncio
    async def test_wrong_secret(self, stripe_signature):
        verifier = StripeSignatureVerifier(self.secret)
        with pytest.raises(InvalidSignatureError):
            await verifier.verify(BODY, {"Stripe-Signature": stripe_signature(BODY, "whsec_other")})

    @pytest.mark.asyncio
    async def test_missing_header(self):
        with pytest.raises(MissingSignatureHeaderError):
            await StripeSignatureVerifier(self.secret).verify(BODY, {})

    @pytest.mark.asyncio
    async def test_stale_timestamp(self, stripe_signature):
        header = stripe_signature(BODY, self.secret, timestamp=time.time() - 3600)
        with pytest.raises(ClockSkewExceededError):
            await StripeSignatureVerifier(self.secret, tolerance=300).verify(BODY, {"Stripe-Signature": header})


class TestHmacSignature:

    def verifier(self):
        return HmacSignatureVerifier(
            "paysafecard",
            "psc_secret",
            signature_header="X-Paysafecard-Signature",
            timestamp_header="X-Paysafecard-Timestamp",
            clock=lambda: NOW,
        )

    def sign(self, content: bytes) -> str:
        return hmac.new(b"psc_secret", content, hashlib.sha256).hexdigest()

    @pytest.mark.asyncio
    async def test_timestamped_signature(self):
        ts = str(int(NOW))
        headers = {"x-paysafecard-signature": self.sign(f"{ts}.".encode() + BODY), "x-paysafecard-timestamp": ts}
        await self.verifier().verify(BODY, headers)

    @pytest.mark.asyncio
    async def test_bare_body_signature_with_prefix(self):
        await self.verifier().verify(BODY, {"X-Paysafecard-Signature": "sha256=" + self.sign(BODY).upper()})

    @pytest.mark.asyncio
    async def test_timestamp_is_covered_by_signature(self):
        headers = {"X-Paysafecard-Signature": self.sign(BODY), "X-Paysafecard-Timestamp": str(int(NOW))}
        with pytest.raises(InvalidSignatureError):
            await self.verifier().verify(BODY, headers)

    @pytest.mark.asyncio
    async def test_old_timestamp(self):
        ts = str(int(NOW) - 301)
        headers = {"X-Paysafecard-Signature": self.sign(f"{ts}.".encode() + BODY), "X-Paysafecard-Timestamp": ts}
        with pytest.raises(ClockSkewExceededError):
            await self.verifier().verify(BODY, headers)

    @pytest.mark.asyncio
    async def test_missing_signature(self):
        with pytest.raises(MissingSignatureHeaderError):
            await self.verifier().verify(BODY, {"X-Paysafecard-Timestamp": str(int(NOW))})


class TestPayUSignature:
    second_key = "b6ca15b0d1020e8094d9b5f8d163db54"

    def header(self, body, algorithm="MD5"):
        fn = hashlib.md5 if algorithm == "MD5" else hashlib.sha256
        digest = fn(body + self.second_key.encode()).hexdigest()
        return f"sender=checkout;signature={digest};algorithm={algorithm};content=DOCUMENT"

    def test_header_parsing(self):
        parts = parse_openpayu_signature("sender=checkout; signature=abc ;algorithm=MD5;content=DOCUMENT")
        assert parts == {"sender": "checkout", "signature": "abc", "algorithm": "MD5", "content": "DOCUMENT"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("algorithm", ["MD5", "SHA-256", "SHA256"])
    async def test_valid_signature(self, algorithm):
        await PayUSignatureVerifier(self.second_key).verify(BODY, {"OpenPayu-Signature": self.header(BODY, algorithm)})

    @pytest.mark.asyncio
    async def test_tampered_body(self):
        with pytest.raises(InvalidSignatureError):
            await PayUSignatureVerifier(self.second_key).verify(BODY + b"x", {"OpenPayu-Signature": self.header(BODY)})

    @pytest.mark.asyncio
    async def test_unsupported_algorithm(self):
        header = self.header(BODY).replace("algorithm=MD5", "algorithm=SHA1")
        with pytest.raises(InvalidSignatureError):
            await PayUSignatureVerifier(self.second_key).verify(BODY, {"OpenPayu-Signature": header})

    @pytest.mark.asyncio
    async def test_missing_header(self):
        with pytest.raises(MissingSignatureHeaderError):
            await PayUSignatureVerifier(self.second_key).verify(BODY, {})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("headers", [
        {"X-Real-IP": "185.68.14.10"},
        {"X-Real-IP": "10.0.0.5", "X-Forwarded-For": "185.68.12.26, 10.0.0.1"},
    ])
    async def test_allowlisted_source(self, headers):
        verifier = PayUSignatureVerifier(
            self.second_key,
            ip_allowlist=["185.68.14.0/24", "185.68.12.26"],
            trusted_proxies=["10.0.0.0/8"],
        )
        await verifier.verify(BODY, {**headers, "OpenPayu-Signature": self.header(BODY)})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("headers", [{"X-Real-IP": "203.0.113.9"}, {"X-Real-IP": "garbage"}, {}])
    async def test_source_outside_allowlist(self, headers):
        verifier = PayUSignatureVerifier(self.second_key, ip_allowlist=["185.68.14.0/24"])
        with pytest.raises(InvalidSignatureError):
            await verifier.verify(BODY, {**headers, "OpenPayu-Signature": self.header(BODY)})

    @pytest.mark.asyncio
    async def test_forwarded_header_from_untrusted_peer_is_ignored(self):
        verifier = PayUSignatureVerifier(self.second_key, ip_allowlist=["185.68.14.0/24"])
        headers = {
            "x-real-ip": "203.0.113.9",
            "x-forwarded-for": "185.68.14.10",
            "OpenPayu-Signature": self.header(BODY),
        }
        with pytest.raises(InvalidSignatureError):
            await verifier.verify(BODY, headers)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("peer, forwarded", [
        ("203.0.113.9", "185.68.14.10"),
        ("10.0.0.5", "185.68.14.10, 203.0.113.9"),
    ])
    async def test_spoofed_hop_behind_trusted_proxy_is_rejected(self, peer, forwarded):
        verifier = PayUSignatureVerifier(
            self.second_key, ip_allowlist=["185.68.14.0/24"], trusted_proxies=["10.0.0.0/8"]
        )
        headers = {"X-Real-IP": peer, "X-Forwarded-For": forwarded, "OpenPayu-Signature": self.header(BODY)}
        with pytest.raises(InvalidSignatureError):
            await verifier.verify(BODY, headers)


class TestPayPalWebhook:

    def headers(self, transmission_time="2023-11-14T22:13:20Z"):
        return {
            "PAYPAL-TRANSMISSION-ID": "69cd13f0-d67a-11e5-baa3-778b53f4ae55",
            "PAYPAL-TRANSMISSION-TIME": transmission_time,
            "PAYPAL-TRANSMISSION-SIG": "lmI95Jx3Y9nhR5SJWlHVIWpg4AgFk7n9bCHSRxbrd8A9zrhdu2rMyFrmz+Zjh3s3boXB07VXCXUZy/UFzUlnGJn0wDugt7FlSvdKeIJenLRemUxYCPVoEZzg9VFNqOa48gMkvF+XTpxBeUx/kWy6B5cp7GkT2+pOowfRK7OaynuxUoKW3JcMWw272VKjLTtTAShncla7tGF+55rxyt2KNZIIqxNMJ48RDZheGU5w1npu9dZHnPgTXB9iomeVRoD8O/jhRpnKsGrDschyNdkeh81BJJMH4Ctc6lnCCquoP/GzCzz33MMsNdid7vL/NIWaCsekQpW26FpWPi/tfj8nLA==",
            "PAYPAL-CERT-URL": "https://api.sandbox.paypal.com/v1/notifications/certs/CERT-360caa42-fca2a594-a5cafa77",
            "PAYPAL-AUTH-ALGO": "SHA256withRSA",
        }

    def verifier(self, status="SUCCESS"):
        self.requests = []

        def handler(request):
            self.requests.append(request)
            if request.url.path == "/v1/oauth2/token":
                return httpx.Response(200, json={"access_token": "A21", "expires_in": 32400})
            return httpx.Response(200, json={"verification_status": status})

        client = PayPalClient(
            client_id="client",
            client_secret="secret",
            return_url="https://app.example/ok",
            cancel_url="https://app.example/cancel",
            transport=httpx.MockTransport(handler),
        )
        sent = datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc).timestamp()
        return PayPalWebhookVerifier(client, "WH-1", clock=lambda: sent + 10)

    @pytest.mark.asyncio
    async def test_successful_verification(self):
        await self.verifier().verify(BODY, self.headers())
        payload = json.loads(self.requests[-1].content)
        assert payload["webhook_id"] == "WH-1"
        assert payload["webhook_event"] == json.loads(BODY)
        assert payload["auth_algo"] == "SHA256withRSA"
        assert payload["transmission_id"] == "69cd13f0-d67a-11e5-baa3-778b53f4ae55"

    @pytest.mark.asyncio
    async def test_failed_verification(self):
        with pytest.raises(InvalidSignatureError):
            await self.verifier(status="FAILURE").verify(BODY, self.headers())

    @pytest.mark.asyncio
    async def test_missing_header_skips_remote_call(self):
        verifier = self.verifier()
        headers = self.headers()
        del headers["PAYPAL-CERT-URL"]
        with pytest.raises(MissingSignatureHeaderError):
            await verifier.verify(BODY, headers)
        assert self.requests == []

    @pytest.mark.asyncio
    async def test_stale_transmission(self):
        verifier = self.verifier()
        with pytest.raises(ClockSkewExceededError):
            await verifier.verify(BODY, self.headers(transmission_time="2023-11-14T20:00:00Z"))
        assert self.requests == []


class _Accepting:
    provider = "stripe"

    async def verify(self, body, headers):
        return None


@pytest.mark.asyncio
async def test_composite_dispatches_by_provider():
    composite = CompositeNotificationVerifier([_Accepting()])
    verified = await composite.verify("stripe", BODY, {})
    assert verified == VerifiedNotification(provider="stripe", body=BODY)
    with pytest.raises(UnknownProviderException):
        await composite.verify("payu", BODY, {})
