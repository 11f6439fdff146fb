"""
Billing database models - SQLAlchemy ORM mappings.
Infrastructure detail only; business rules live in domain.payment.entity.
"""
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, UniqueConstraint

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentIntentModel(Base):
    __tablename__ = "payment_intents"

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(32), nullable=False, comment="stripe/paypal/paysafecard/payu")
    external_ref = Column(String(255), nullable=True, comment="provider order/session id")
    idempotency_token = Column(String(64), nullable=False, comment="sha256 of provider, payer, plan and nonce")
    plan = Column(String(16), nullable=False)
    payer_email = Column(String(320), nullable=False, index=True)
    status = Column(String(32), nullable=False, default="pending", index=True)
    redirect_url = Column(String(2048), nullable=True)
    session_id = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("provider", "external_ref", name="uq_payment_intents_provider_ref"),
        Index("ix_payment_intents_idempotency_token", "idempotency_token"),
        Index("ix_payment_intents_status_created", "status", "created_at"),
    )

    def __repr__(self):
        return f"<PaymentIntent(provider={self.provider}, external_ref={self.external_ref}, status={self.status})>"


class EntitlementModel(Base):
    __tablename__ = "entitlements"

    id = Column(Integer, primary_key=True, index=True)
    payer_email = Column(String(320), nullable=False, unique=True, index=True)
    is_premium = Column(Boolean, nullable=False, default=False)
    plan = Column(String(16), nullable=True)
    expiry = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False, default=1, comment="optimistic concurrency counter")
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    def __repr__(self):
        return f"<Entitlement(payer_email={self.payer_email}, plan={self.plan}, expiry={self.expiry})>"


class LedgerEntryModel(Base):
    """Append-only; the unique key is the exactly-once anchor."""

    __tablename__ = "processed_notifications"

    id = Column(Integer, primary_key=True, index=True)
    idempotency_key = Column(String(320), nullable=False, unique=True)
    provider = Column(String(32), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
