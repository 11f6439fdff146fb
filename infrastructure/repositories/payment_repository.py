"""
Billing repositories implemented with SQLAlchemy
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.common.exceptions import DomainValidationException, StateConflictException
from domain.payment.entity import (
    Entitlement,
    IntentStatus,
    LedgerReceipt,
    LedgerResult,
    Payer,
    PaymentIntent,
    utcnow,
)
from domain.payment.plan import PlanId
from domain.payment.repository import (
    EntitlementRepository,
    IdempotencyLedger,
    PaymentIntentRepository,
)
from infrastructure.models.payment import EntitlementModel, LedgerEntryModel, PaymentIntentModel


logger = get_logger(__name__)

_OPEN_STATUSES = (IntentStatus.PENDING.value, IntentStatus.AWAITING_NOTIFICATION.value)


class SQLAlchemyPaymentIntentRepository(PaymentIntentRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentIntentModel) -> PaymentIntent:
        return PaymentIntent(
            id=model.id,
            provider=model.provider,
            plan=PlanId(model.plan),
            payer=Payer(model.payer_email),
            idempotency_token=model.idempotency_token,
            created_at=model.created_at,
            updated_at=model.updated_at,
            external_ref=model.external_ref,
            status=IntentStatus(model.status),
            redirect_url=model.redirect_url,
            session_id=model.session_id,
        )

    def _apply_to_model(self, entity: PaymentIntent, model: PaymentIntentModel) -> None:
        model.provider = entity.provider
        model.external_ref = entity.external_ref
        model.idempotency_token = entity.idempotency_token
        model.plan = entity.plan.value
        model.payer_email = entity.payer.email
        model.status = entity.status.value
        model.redirect_url = entity.redirect_url
        model.session_id = entity.session_id
        model.created_at = entity.created_at
        model.updated_at = entity.updated_at

    async def add(self, intent: PaymentIntent) -> PaymentIntent:
        model = PaymentIntentModel()
        self._apply_to_model(intent, model)
        self.session.add(model)
        try:
            await self.session.flush()
        except IntegrityError as e:
            logger.warning(
                "payment_intent_insert_conflict",
                provider=intent.provider,
                external_ref=intent.external_ref,
                error=str(e.orig),
            )
            raise DomainValidationException(
                "Intent already recorded for this provider reference",
                field="external_ref",
            ) from e
        intent.id = model.id
        return intent

    async def get_by_external_ref(self, provider: str, external_ref: str) -> Optional[PaymentIntent]:
        result = await self.session.execute(
            select(PaymentIntentModel).where(
                PaymentIntentModel.provider == provider,
                PaymentIntentModel.external_ref == external_ref,
            )
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def get_by_idempotency_token(self, token: str) -> Optional[PaymentIntent]:
        result = await self.session.execute(
            select(PaymentIntentModel)
            .where(PaymentIntentModel.idempotency_token == token)
            .order_by(PaymentIntentModel.created_at.desc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def list_open_for_payer(self, provider: str, payer: Payer) -> List[PaymentIntent]:
        result = await self.session.execute(
            select(PaymentIntentModel)
            .where(
                PaymentIntentModel.provider == provider,
                PaymentIntentModel.payer_email == payer.email,
                PaymentIntentModel.status.in_(_OPEN_STATUSES),
            )
            .order_by(PaymentIntentModel.created_at.desc())
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def update(self, intent: PaymentIntent) -> PaymentIntent:
        model = await self.session.get(PaymentIntentModel, intent.id)
        if model is None:
            raise DomainValidationException(f"Payment intent not found: {intent.id}", field="id")
        self._apply_to_model(intent, model)
        await self.session.flush()
        return intent

    async def purge_expired(self, cutoff: datetime) -> int:
        result = await self.session.execute(
            delete(PaymentIntentModel).where(
                PaymentIntentModel.status.in_(_OPEN_STATUSES),
                PaymentIntentModel.created_at < cutoff,
            )
        )
        return result.rowcount or 0


class SQLAlchemyIdempotencyLedger(IdempotencyLedger):
    """Unique-key ledger; atomic via INSERT .. ON CONFLICT DO NOTHING where available."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record_if_new(
        self,
        idempotency_key: str,
        *,
        provider: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> LedgerReceipt:
        processed_at = now or utcnow()
        values = {"idempotency_key": idempotency_key, "provider": provider, "processed_at": processed_at}
        dialect = self.session.get_bind().dialect.name

        if dialect in ("postgresql", "sqlite"):
            insert = pg_insert if dialect == "postgresql" else sqlite_insert
            stmt = insert(LedgerEntryModel).values(**values).on_conflict_do_nothing(
                index_elements=["idempotency_key"]
            )
            result = await self.session.execute(stmt)
            inserted = result.rowcount == 1
        else:
            try:
                async with self.session.begin_nested():
                    self.session.add(LedgerEntryModel(**values))
                    await self.session.flush()
                inserted = True
            except IntegrityError:
                inserted = False

        return LedgerReceipt(
            idempotency_key=idempotency_key,
            result=LedgerResult.ACCEPTED if inserted else LedgerResult.ALREADY_PROCESSED,
            processed_at=processed_at,
        )

    async def contains(self, idempotency_key: str) -> bool:
        result = await self.session.execute(
            select(LedgerEntryModel.id).where(LedgerEntryModel.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none() is not None


class SQLAlchemyEntitlementRepository(EntitlementRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: EntitlementModel) -> Entitlement:
        return Entitlement(
            payer=Payer(model.payer_email),
            is_premium=model.is_premium,
            plan=PlanId(model.plan) if model.plan else None,
            expiry=model.expiry,
            version=model.version,
            updated_at=model.updated_at,
        )

    async def get(self, payer: Payer) -> Optional[Entitlement]:
        result = await self.session.execute(
            select(EntitlementModel)
            .where(EntitlementModel.payer_email == payer.email)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def get_for_update(self, payer: Payer) -> Optional[Entitlement]:
        # FOR UPDATE is dropped by dialects without row locks (SQLite)
        result = await self.session.execute(
            select(EntitlementModel)
            .where(EntitlementModel.payer_email == payer.email)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def save(self, entitlement: Entitlement) -> Entitlement:
        email = entitlement.payer.email
        updated_at = entitlement.updated_at or utcnow()

        if entitlement.version == 0:
            self.session.add(EntitlementModel(
                payer_email=email,
                is_premium=entitlement.is_premium,
                plan=entitlement.plan.value if entitlement.plan else None,
                expiry=entitlement.expiry,
                version=1,
                updated_at=updated_at,
            ))
            try:
                await self.session.flush()
            except IntegrityError:
                raise StateConflictException(email, reason="concurrent_insert") from None
            entitlement.version = 1
            return entitlement

        result = await self.session.execute(
            update(EntitlementModel)
            .where(
                EntitlementModel.payer_email == email,
                EntitlementModel.version == entitlement.version,
            )
            .values(
                is_premium=entitlement.is_premium,
                plan=entitlement.plan.value if entitlement.plan else None,
                expiry=entitlement.expiry,
                version=entitlement.version + 1,
                updated_at=updated_at,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StateConflictException(email, reason="stale_version")
        entitlement.version += 1
        return entitlement
