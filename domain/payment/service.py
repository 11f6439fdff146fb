"""
Entitlement state machine - the only writer of entitlement state.
"""
from datetime import datetime
from typing import Callable, List, Optional

from .entity import Entitlement, LedgerReceipt, Payer, utcnow
from .events import EntitlementEvent, PremiumActivated, PremiumRenewed
from .plan import Plan
from .repository import EntitlementRepository


class EntitlementStateMachine:
    """
    States per payer: NotPremium -> Active -> Expired (lazy) -> Active ...

    Rules:
    1. every transition needs an ACCEPTED ledger receipt, usable once
    2. activate sets expiry = now + plan duration
    3. renew extends from max(now, current expiry); early renewal keeps remaining time
    4. expiry is never written by a sweep, reads compare against the clock
    """

    def __init__(
        self,
        entitlement_repository: EntitlementRepository,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.entitlement_repository = entitlement_repository
        self._clock = clock
        self.events: List[EntitlementEvent] = []

    async def apply(self, payer: Payer, plan: Plan, *, receipt: LedgerReceipt) -> Entitlement:
        """Activate or renew depending on whether the payer is currently active."""
        receipt.consume()
        now = self._clock()
        entitlement = await self.entitlement_repository.get_for_update(payer)
        if entitlement is None:
            entitlement = Entitlement(payer=payer)

        previous_expiry = entitlement.expiry
        if entitlement.is_active(now):
            entitlement.renew(plan, now)
            event_cls = PremiumRenewed
        else:
            entitlement.activate(plan, now)
            event_cls = PremiumActivated

        saved = await self.entitlement_repository.save(entitlement)
        self.events.append(event_cls(
            payer_email=payer.email,
            plan=plan.id.value,
            expiry=saved.expiry,
            idempotency_key=receipt.idempotency_key,
            previous_expiry=previous_expiry,
        ))
        return saved

    async def get(self, payer: Payer) -> Optional[Entitlement]:
        return await self.entitlement_repository.get(payer)

    async def is_active(self, payer: Payer) -> bool:
        entitlement = await self.entitlement_repository.get(payer)
        return entitlement is not None and entitlement.is_active(self._clock())
