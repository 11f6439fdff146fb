"""
Entitlement domain events.

Collected by the state machine after each successful transition so callers can
log or fan them out. Domain remains free of infrastructure imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
import uuid


@dataclass
class EntitlementEvent:
    payer_email: str
    plan: str
    expiry: datetime
    idempotency_key: str
    previous_expiry: Optional[datetime] = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class PremiumActivated(EntitlementEvent):
    pass


@dataclass
class PremiumRenewed(EntitlementEvent):
    pass
