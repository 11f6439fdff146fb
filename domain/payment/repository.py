"""
Billing repository interfaces: pending intents, the idempotency ledger and
entitlements.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from .entity import Entitlement, LedgerReceipt, Payer, PaymentIntent


class PaymentIntentRepository(ABC):

    @abstractmethod
    async def add(self, intent: PaymentIntent) -> PaymentIntent:
        """Persist a new intent; (provider, external_ref) is unique."""
        pass

    @abstractmethod
    async def get_by_external_ref(self, provider: str, external_ref: str) -> Optional[PaymentIntent]:
        pass

    @abstractmethod
    async def get_by_idempotency_token(self, token: str) -> Optional[PaymentIntent]:
        pass

    @abstractmethod
    async def list_open_for_payer(self, provider: str, payer: Payer) -> List[PaymentIntent]:
        """Open intents of one payer at one provider, newest first."""
        pass

    @abstractmethod
    async def update(self, intent: PaymentIntent) -> PaymentIntent:
        pass

    @abstractmethod
    async def purge_expired(self, cutoff: datetime) -> int:
        """Delete open intents created before cutoff; returns the number removed."""
        pass


class IdempotencyLedger(ABC):
    """Append-only set of processed notification keys.

    record_if_new must be atomic: of any number of concurrent callers with the
    same key, exactly one sees ACCEPTED.
    """

    @abstractmethod
    async def record_if_new(
        self,
        idempotency_key: str,
        *,
        provider: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> LedgerReceipt:
        pass

    @abstractmethod
    async def contains(self, idempotency_key: str) -> bool:
        pass


class EntitlementRepository(ABC):

    @abstractmethod
    async def get(self, payer: Payer) -> Optional[Entitlement]:
        pass

    @abstractmethod
    async def get_for_update(self, payer: Payer) -> Optional[Entitlement]:
        """Read with a row lock where the backend supports one."""
        pass

    @abstractmethod
    async def save(self, entitlement: Entitlement) -> Entitlement:
        """Insert or update, bumping version.

        Raises StateConflictException when the stored version differs from
        entitlement.version or a concurrent insert won.
        """
        pass
