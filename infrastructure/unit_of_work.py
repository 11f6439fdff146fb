"""Unit of Work implementations (SQLAlchemy and in-memory)"""
from __future__ import annotations

from typing import Callable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.repositories.memory import (
    InMemoryBillingStore,
    InMemoryEntitlementRepository,
    InMemoryIdempotencyLedger,
    InMemoryPaymentIntentRepository,
)
from infrastructure.repositories.payment_repository import (
    SQLAlchemyEntitlementRepository,
    SQLAlchemyIdempotencyLedger,
    SQLAlchemyPaymentIntentRepository,
)


class SQLAlchemyUnitOfWork(AbstractUnitOfWork):

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        session: Optional[AsyncSession] = None,
        *,
        readonly: bool = False,
    ) -> None:
        super().__init__(readonly=readonly)
        self._session_factory = session_factory
        self._external_session = session
        self.session: Optional[AsyncSession] = session

    async def __aenter__(self) -> "SQLAlchemyUnitOfWork":
        if self.session is None:
            self.session = self._session_factory()
        self.intents = SQLAlchemyPaymentIntentRepository(self.session)
        self.ledger = SQLAlchemyIdempotencyLedger(self.session)
        self.entitlements = SQLAlchemyEntitlementRepository(self.session)
        # explicit transaction only for writable units
        if not self._readonly:
            await self.session.begin()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await super().__aexit__(exc_type, exc, tb)
        finally:
            if self._external_session is None and self.session is not None:
                await self.session.close()
                self.session = None
            self.intents = None  # type: ignore[assignment]
            self.ledger = None  # type: ignore[assignment]
            self.entitlements = None  # type: ignore[assignment]

    async def commit(self) -> None:
        if self._readonly:
            self._committed = True
            return
        if self.session and self.session.in_transaction():
            await self.session.commit()
        self._committed = True

    async def rollback(self) -> None:
        if self.session and self.session.in_transaction():
            await self.session.rollback()
        self._committed = False


class InMemoryUnitOfWork(AbstractUnitOfWork):
    """Same contract over an InMemoryBillingStore; rollback replays the undo log."""

    def __init__(self, store: InMemoryBillingStore, *, readonly: bool = False) -> None:
        super().__init__(readonly=readonly)
        self.store = store
        self._undo: List[Callable[[], None]] = []

    async def __aenter__(self) -> "InMemoryUnitOfWork":
        self._undo = []
        self.intents = InMemoryPaymentIntentRepository(self.store, self._undo)
        self.ledger = InMemoryIdempotencyLedger(self.store, self._undo)
        self.entitlements = InMemoryEntitlementRepository(self.store, self._undo)
        return self

    async def commit(self) -> None:
        self._undo.clear()
        self._committed = True

    async def rollback(self) -> None:
        while self._undo:
            self._undo.pop()()
        self._committed = False
