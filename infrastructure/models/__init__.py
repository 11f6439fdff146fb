"""Infrastructure models package exports."""
from .base import Base, metadata
from .payment import EntitlementModel, LedgerEntryModel, PaymentIntentModel

__all__ = [
    "Base",
    "metadata",
    "PaymentIntentModel",
    "EntitlementModel",
    "LedgerEntryModel",
]
