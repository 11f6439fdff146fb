"""
In-memory billing repositories for single-process deployments and tests.

All repositories of one InMemoryUnitOfWork write straight into a shared
InMemoryBillingStore and register an undo step; rollback replays the undo log
in reverse. Entities are copied on the way in and out so callers never hold
references into the store.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Dict, List, Optional

from domain.common.exceptions import DomainValidationException, StateConflictException
from domain.payment.entity import (
    Entitlement,
    LedgerEntry,
    LedgerReceipt,
    LedgerResult,
    Payer,
    PaymentIntent,
    utcnow,
)
from domain.payment.repository import (
    EntitlementRepository,
    IdempotencyLedger,
    PaymentIntentRepository,
)


UndoLog = List[Callable[[], None]]


@dataclass
class InMemoryBillingStore:
    intents: Dict[int, PaymentIntent] = field(default_factory=dict)
    ledger: Dict[str, LedgerEntry] = field(default_factory=dict)
    entitlements: Dict[str, Entitlement] = field(default_factory=dict)
    _next_intent_id: int = 1

    def allocate_intent_id(self) -> int:
        value = self._next_intent_id
        self._next_intent_id += 1
        return value


class InMemoryPaymentIntentRepository(PaymentIntentRepository):

    def __init__(self, store: InMemoryBillingStore, undo: UndoLog):
        self._store = store
        self._undo = undo

    async def add(self, intent: PaymentIntent) -> PaymentIntent:
        if intent.external_ref is not None and any(
            i.provider == intent.provider and i.external_ref == intent.external_ref
            for i in self._store.intents.values()
        ):
            raise DomainValidationException(
                "Intent already recorded for this provider reference",
                field="external_ref",
            )
        intent.id = self._store.allocate_intent_id()
        self._store.intents[intent.id] = replace(intent)
        self._undo.append(lambda key=intent.id: self._store.intents.pop(key, None))
        return intent

    async def get_by_external_ref(self, provider: str, external_ref: str) -> Optional[PaymentIntent]:
        for intent in self._store.intents.values():
            if intent.provider == provider and intent.external_ref == external_ref:
                return replace(intent)
        return None

    async def get_by_idempotency_token(self, token: str) -> Optional[PaymentIntent]:
        matches = [i for i in self._store.intents.values() if i.idempotency_token == token]
        if not matches:
            return None
        return replace(max(matches, key=lambda i: i.created_at))

    async def list_open_for_payer(self, provider: str, payer: Payer) -> List[PaymentIntent]:
        matches = [
            i for i in self._store.intents.values()
            if i.provider == provider and i.payer == payer and i.is_open
        ]
        return [replace(i) for i in sorted(matches, key=lambda i: i.created_at, reverse=True)]

    async def update(self, intent: PaymentIntent) -> PaymentIntent:
        previous = self._store.intents.get(intent.id)
        if previous is None:
            raise DomainValidationException(f"Payment intent not found: {intent.id}", field="id")
        self._store.intents[intent.id] = replace(intent)
        self._undo.append(lambda: self._store.intents.__setitem__(intent.id, previous))
        return intent

    async def purge_expired(self, cutoff: datetime) -> int:
        expired = {
            key: intent for key, intent in self._store.intents.items()
            if intent.is_open and intent.created_at < cutoff
        }
        for key in expired:
            del self._store.intents[key]
        self._undo.append(lambda: self._store.intents.update(expired))
        return len(expired)


class InMemoryIdempotencyLedger(IdempotencyLedger):
    """Check-and-insert runs without awaiting, so it is atomic on one event loop."""

    def __init__(self, store: InMemoryBillingStore, undo: UndoLog):
        self._store = store
        self._undo = undo

    async def record_if_new(
        self,
        idempotency_key: str,
        *,
        provider: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> LedgerReceipt:
        processed_at = now or utcnow()
        if idempotency_key in self._store.ledger:
            return LedgerReceipt(idempotency_key, LedgerResult.ALREADY_PROCESSED, processed_at)
        self._store.ledger[idempotency_key] = LedgerEntry(
            idempotency_key=idempotency_key,
            processed_at=processed_at,
            provider=provider,
        )
        self._undo.append(lambda: self._store.ledger.pop(idempotency_key, None))
        return LedgerReceipt(idempotency_key, LedgerResult.ACCEPTED, processed_at)

    async def contains(self, idempotency_key: str) -> bool:
        return idempotency_key in self._store.ledger


class InMemoryEntitlementRepository(EntitlementRepository):

    def __init__(self, store: InMemoryBillingStore, undo: UndoLog):
        self._store = store
        self._undo = undo

    async def get(self, payer: Payer) -> Optional[Entitlement]:
        current = self._store.entitlements.get(payer.email)
        return replace(current) if current else None

    async def get_for_update(self, payer: Payer) -> Optional[Entitlement]:
        return await self.get(payer)

    async def save(self, entitlement: Entitlement) -> Entitlement:
        email = entitlement.payer.email
        current = self._store.entitlements.get(email)
        if entitlement.version == 0 and current is not None:
            raise StateConflictException(email, reason="concurrent_insert")
        if entitlement.version != 0 and (current is None or current.version != entitlement.version):
            raise StateConflictException(email, reason="stale_version")

        entitlement.version += 1
        self._store.entitlements[email] = replace(entitlement)
        if current is None:
            self._undo.append(lambda: self._store.entitlements.pop(email, None))
        else:
            self._undo.append(lambda: self._store.entitlements.__setitem__(email, current))
        return entitlement
