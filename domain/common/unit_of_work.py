"""Unit of Work abstraction"""
from __future__ import annotations

from abc import ABC, abstractmethod

from domain.payment.repository import (
    EntitlementRepository,
    IdempotencyLedger,
    PaymentIntentRepository,
)


class AbstractUnitOfWork(ABC):
    """Transaction boundary for the application layer.

    Ledger insert, entitlement write and intent update made inside one unit
    become visible together or not at all.
    """

    intents: PaymentIntentRepository
    ledger: IdempotencyLedger
    entitlements: EntitlementRepository

    def __init__(self, *, readonly: bool = False) -> None:
        self._committed = False
        self._readonly = readonly
        self.intents = None  # type: ignore[assignment]
        self.ledger = None  # type: ignore[assignment]
        self.entitlements = None  # type: ignore[assignment]

    async def __aenter__(self) -> "AbstractUnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc:
            await self.rollback()
        else:
            # auto-commit only for writable units not committed explicitly
            if not self._readonly and not self._committed:
                await self.commit()

    @abstractmethod
    async def commit(self) -> None:
        ...

    @abstractmethod
    async def rollback(self) -> None:
        ...
