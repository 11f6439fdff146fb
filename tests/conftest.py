"""Shared fixtures: frozen clock, plan catalog, in-memory billing store and
an orchestrator wired to fake provider adapter / verifier doubles."""
import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone
from functools import partial

import pytest

from application.dtos.payments import ProviderHandle
from application.ports.payment_gateway import VerifiedNotification
from application.services.payment_service import PaymentOrchestrator
from domain.payment.entity import PaymentEvent, PaymentOutcome, idempotency_key_for
from domain.payment.plan import PlanCatalog
from infrastructure.locks import LocalPayerLocks
from infrastructure.repositories.memory import InMemoryBillingStore
from infrastructure.unit_of_work import InMemoryUnitOfWork


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeAdapter:
    """Issues sequential refs; notifications are JSON `{ref, outcome, email?, plan?}`."""

    def __init__(self, provider: str = "stripe"):
        self.provider = provider
        self.created = []
        self.fail_with = None
        self.closed = False

    async def create_payment(self, plan, payer, *, idempotency_token, options=None):
        if self.fail_with is not None:
            raise self.fail_with
        self.created.append((plan.id.value, payer.email, idempotency_token))
        ref = f"{self.provider}_ref_{len(self.created)}"
        return ProviderHandle(provider=self.provider, external_ref=ref, redirect_url=f"https://pay.example/{ref}")

    def parse_notification(self, body, headers):
        payload = json.loads(body)
        if payload.get("outcome") is None:
            return None
        return PaymentEvent(
            provider=self.provider,
            external_ref=payload["ref"],
            outcome=PaymentOutcome(payload["outcome"]),
            raw_idempotency_key=idempotency_key_for(self.provider, payload["ref"]),
            payer_hint=payload.get("email"),
            plan_hint=payload.get("plan"),
        )

    async def aclose(self):
        self.closed = True


class FakeVerifier:
    def __init__(self):
        self.reject = None
        self.calls = []

    async def verify(self, provider, body, headers):
        self.calls.append(provider)
        if self.reject is not None:
            raise self.reject
        return VerifiedNotification(provider=provider, body=body)


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 1, 31, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def catalog():
    return PlanCatalog.build("EUR")


@pytest.fixture
def store():
    return InMemoryBillingStore()


@pytest.fixture
def uow_factory(store):
    return partial(InMemoryUnitOfWork, store)


@pytest.fixture
def adapter():
    return FakeAdapter("stripe")


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def orchestrator(catalog, adapter, verifier, uow_factory, clock):
    return PaymentOrchestrator(
        catalog=catalog,
        adapters={"stripe": adapter},
        verifier=verifier,
        uow_factory=uow_factory,
        payer_locks=LocalPayerLocks(),
        clock=clock,
    )


@pytest.fixture
def notification():
    def _build(ref: str, outcome="completed", **extra) -> bytes:
        return json.dumps({"ref": ref, "outcome": outcome, **extra}).encode()
    return _build


@pytest.fixture
def stripe_signature():
    """Builds a `Stripe-Signature` header the way Stripe signs webhooks."""
    def _sign(body: bytes, secret: str, timestamp=None) -> str:
        ts = int(time.time() if timestamp is None else timestamp)
        digest = hmac.new(secret.encode(), f"{ts}.".encode() + body, hashlib.sha256).hexdigest()
        return f"t={ts},v1={digest}"
    return _sign
