"""
Billing domain entities: payer, pending intent, verified payment event,
ledger receipt and the entitlement aggregate.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from domain.common.exceptions import DomainValidationException
from domain.payment.periods import add_months
from domain.payment.plan import Plan, PlanId


class IntentStatus(str, Enum):
    PENDING = "pending"
    AWAITING_NOTIFICATION = "awaiting_notification"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class LedgerResult(str, Enum):
    ACCEPTED = "accepted"
    ALREADY_PROCESSED = "already_processed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Normalize to aware UTC (SQLite hands back naive datetimes)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def idempotency_key_for(provider: str, external_ref: str) -> str:
    return f"{provider}:{external_ref}"


@dataclass(frozen=True)
class Payer:
    """Entitlement subject, identified by a lower-cased e-mail address."""

    email: str

    def __post_init__(self) -> None:
        normalized = (self.email or "").strip().lower()
        local, _, domain = normalized.partition("@")
        if not local or "." not in domain or " " in normalized:
            raise DomainValidationException(f"Invalid payer e-mail: {self.email!r}", field="email")
        object.__setattr__(self, "email", normalized)


@dataclass
class PaymentIntent:
    """
    Pending intent recorded when a provider order/session is created.

    Business rules:
    1. external_ref is attached exactly once (pending -> awaiting_notification)
    2. only open intents (pending / awaiting_notification) can fail; a failed
       intent can still complete when the provider retries the same order
    3. open intents older than the TTL are expired and never activatable
    """

    provider: str
    plan: PlanId
    payer: Payer
    idempotency_token: str
    created_at: datetime
    external_ref: Optional[str] = None
    status: IntentStatus = IntentStatus.PENDING
    redirect_url: Optional[str] = None
    session_id: Optional[str] = None
    id: Optional[int] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at) or self.created_at

    @property
    def is_open(self) -> bool:
        return self.status in (IntentStatus.PENDING, IntentStatus.AWAITING_NOTIFICATION)

    @property
    def can_complete(self) -> bool:
        return self.is_open or self.status is IntentStatus.FAILED

    def is_expired(self, now: datetime, ttl: timedelta) -> bool:
        return self.is_open and now >= self.created_at + ttl

    def attach_external_ref(
        self,
        external_ref: str,
        *,
        redirect_url: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> None:
        if self.status != IntentStatus.PENDING:
            raise DomainValidationException(
                f"Cannot attach external reference in status {self.status.value}",
                field="status",
            )
        if not external_ref:
            raise DomainValidationException("Provider returned an empty external reference", field="external_ref")
        self.external_ref = external_ref
        self.redirect_url = redirect_url
        self.session_id = session_id
        self.status = IntentStatus.AWAITING_NOTIFICATION

    def mark_completed(self, now: datetime) -> None:
        if self.status is IntentStatus.FAILED:
            self.status = IntentStatus.COMPLETED
            self.updated_at = now
            return
        self._close(IntentStatus.COMPLETED, now)

    def mark_failed(self, now: datetime) -> None:
        self._close(IntentStatus.FAILED, now)

    def _close(self, status: IntentStatus, now: datetime) -> None:
        if not self.is_open:
            raise DomainValidationException(
                f"Cannot move intent from {self.status.value} to {status.value}",
                field="status",
            )
        self.status = status
        self.updated_at = now


@dataclass(frozen=True)
class PaymentEvent:
    """Verified, provider-neutral payment notification. Never persisted."""

    provider: str
    external_ref: str
    outcome: PaymentOutcome
    raw_idempotency_key: str
    payer_hint: Optional[str] = None
    plan_hint: Optional[str] = None
    event_type: Optional[str] = None

    @property
    def ledger_key(self) -> str:
        # a failure never consumes the success key of the same ref
        if self.outcome is PaymentOutcome.FAILED:
            return f"{self.raw_idempotency_key}:failed"
        return self.raw_idempotency_key


@dataclass(frozen=True)
class LedgerEntry:
    idempotency_key: str
    processed_at: datetime
    provider: Optional[str] = None


@dataclass
class LedgerReceipt:
    """Outcome of a ledger insert; an accepted receipt unlocks exactly one transition."""

    idempotency_key: str
    result: LedgerResult
    processed_at: datetime
    _consumed: bool = field(default=False, repr=False, compare=False)

    @property
    def accepted(self) -> bool:
        return self.result is LedgerResult.ACCEPTED

    def consume(self) -> None:
        if not self.accepted:
            raise DomainValidationException(
                "Entitlement transitions require an accepted ledger receipt",
                details={"idempotency_key": self.idempotency_key, "result": self.result.value},
            )
        if self._consumed:
            raise DomainValidationException(
                "Ledger receipt already used",
                details={"idempotency_key": self.idempotency_key},
            )
        self._consumed = True


@dataclass
class Entitlement:
    """
    Premium entitlement aggregate, one per payer.

    is_premium is the stored flag; whether access is live is decided lazily by
    is_active(now), so no sweep ever rewrites expired rows.
    """

    payer: Payer
    is_premium: bool = False
    plan: Optional[PlanId] = None
    expiry: Optional[datetime] = None
    version: int = 0
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.expiry = _ensure_utc(self.expiry)
        self.updated_at = _ensure_utc(self.updated_at)

    def is_active(self, now: datetime) -> bool:
        return self.is_premium and self.expiry is not None and self.expiry > now

    def activate(self, plan: Plan, now: datetime) -> None:
        self.is_premium = True
        self.plan = plan.id
        self.expiry = add_months(now, plan.duration_months)
        self.updated_at = now

    def renew(self, plan: Plan, now: datetime) -> None:
        # Remaining paid time is kept on early renewal
        base = now if self.expiry is None else max(now, self.expiry)
        self.is_premium = True
        self.plan = plan.id
        self.expiry = add_months(base, plan.duration_months)
        self.updated_at = now
