"""
Plan catalog - static mapping of plan identifier to price, currency and duration.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Iterable, Iterator, Mapping, Optional

from domain.common.exceptions import DomainValidationException, UnknownPlanException


class PlanId(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


PLAN_DURATIONS: Mapping[PlanId, int] = MappingProxyType({
    PlanId.MONTHLY: 1,
    PlanId.QUARTERLY: 3,
    PlanId.YEARLY: 12,
})

# Minor units of the catalog currency
DEFAULT_PRICES: Mapping[PlanId, int] = MappingProxyType({
    PlanId.MONTHLY: 999,
    PlanId.QUARTERLY: 2499,
    PlanId.YEARLY: 8999,
})


@dataclass(frozen=True)
class Plan:
    id: PlanId
    amount_minor: int
    currency: str
    duration_months: int

    def __post_init__(self) -> None:
        if not isinstance(self.amount_minor, int) or self.amount_minor <= 0:
            raise DomainValidationException(f"Plan amount must be a positive integer: {self.amount_minor}", field="amount_minor")
        if not self.currency or len(self.currency) != 3 or not self.currency.isalpha() or not self.currency.isupper():
            raise DomainValidationException(f"Invalid ISO-4217 currency: {self.currency}", field="currency")
        if self.duration_months not in set(PLAN_DURATIONS.values()):
            raise DomainValidationException(f"Unsupported plan duration: {self.duration_months}", field="duration_months")


class PlanCatalog:
    """Immutable plan lookup built once at process start.

    `resolve` is total over the enumerated plan ids; anything else, including
    differently cased strings, is rejected before any provider is contacted.
    """

    def __init__(self, plans: Iterable[Plan]) -> None:
        table = {}
        for plan in plans:
            if plan.id in table:
                raise DomainValidationException(f"Duplicate plan in catalog: {plan.id.value}", field="plans")
            table[plan.id] = plan
        missing = set(PlanId) - set(table)
        if missing:
            raise DomainValidationException(
                "Catalog must define every plan",
                field="plans",
                details={"missing": sorted(p.value for p in missing)},
            )
        self._plans: Mapping[PlanId, Plan] = MappingProxyType(table)

    @classmethod
    def build(cls, currency: str = "EUR", prices: Optional[Mapping[str, int]] = None) -> "PlanCatalog":
        overrides = {PlanId(k): v for k, v in (prices or {}).items()}
        return cls(
            Plan(
                id=plan_id,
                amount_minor=overrides.get(plan_id, DEFAULT_PRICES[plan_id]),
                currency=currency.upper(),
                duration_months=PLAN_DURATIONS[plan_id],
            )
            for plan_id in PlanId
        )

    def resolve(self, plan_id: object) -> Plan:
        if isinstance(plan_id, PlanId):
            return self._plans[plan_id]
        if not isinstance(plan_id, str):
            raise UnknownPlanException(plan_id)
        try:
            key = PlanId(plan_id)
        except ValueError:
            raise UnknownPlanException(plan_id) from None
        return self._plans[key]

    def __contains__(self, plan_id: object) -> bool:
        try:
            self.resolve(plan_id)
        except UnknownPlanException:
            return False
        return True

    def __iter__(self) -> Iterator[Plan]:
        return iter(self._plans.values())
