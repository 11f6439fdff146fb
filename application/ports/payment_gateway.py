"""
Payment ports (application/ports) exposing replaceable protocols.

Application depends on these Protocols; infrastructure implements adapters,
verifiers and locks.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncContextManager, Mapping, Optional, Protocol, runtime_checkable

from application.dtos.payments import CheckoutOptions, ProviderHandle
from domain.payment.entity import Payer, PaymentEvent
from domain.payment.plan import Plan


@runtime_checkable
class ProviderAdapter(Protocol):
    """One implementation per payment network.

    create_payment raises PlanNotSupportedByProviderError before any network
    I/O when the plan cannot be charged, PaymentProviderError on upstream
    failure. parse_notification returns None for event types that carry no
    payment outcome and raises MalformedNotificationError when a relevant
    payload lacks the fields needed to build an event.
    """

    provider: str

    async def create_payment(
        self,
        plan: Plan,
        payer: Payer,
        *,
        idempotency_token: str,
        options: Optional[CheckoutOptions] = None,
    ) -> ProviderHandle: ...

    def parse_notification(self, body: bytes, headers: Mapping[str, str]) -> Optional[PaymentEvent]: ...

    async def aclose(self) -> None: ...


@dataclass(frozen=True)
class VerifiedNotification:
    provider: str
    body: bytes


@runtime_checkable
class NotificationVerifier(Protocol):
    """Authenticates a raw notification; raises a PaymentSignatureError subclass on failure."""

    async def verify(self, provider: str, body: bytes, headers: Mapping[str, str]) -> VerifiedNotification: ...


@runtime_checkable
class PayerLocks(Protocol):
    """Per-payer mutual exclusion held across read-modify-write of an entitlement."""

    def hold(self, payer_email: str) -> AsyncContextManager[None]: ...
