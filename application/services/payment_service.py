"""
Application service orchestrating payment use-cases.

PaymentOrchestrator is the single entry point for the HTTP layer. It depends
only on application ports, domain objects and the Unit of Work abstraction;
adapters, verifier, locks and storage are injected by the composition root.
"""
from __future__ import annotations

import asyncio
import hashlib
import uuid
from datetime import datetime, timedelta
from typing import Callable, Mapping, Optional

from application.dtos.payments import (
    CheckoutOptions,
    EntitlementView,
    NotificationAck,
    ProviderHandle,
    normalize_provider,
)
from application.ports.payment_gateway import NotificationVerifier, PayerLocks, ProviderAdapter
from core.logging_config import get_logger
from domain.common.exceptions import (
    DomainValidationException,
    StateConflictException,
    StorageUnavailableException,
    UnknownPlanException,
    UnknownProviderException,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import (
    Payer,
    PaymentEvent,
    PaymentIntent,
    PaymentOutcome,
    IntentStatus,
    LedgerResult,
    utcnow,
)
from domain.payment.exceptions import (
    NotificationCorrelationError,
    PaymentProviderError,
    PaymentSignatureError,
)
from domain.payment.plan import Plan, PlanCatalog
from domain.payment.events import PremiumRenewed
from domain.payment.service import EntitlementStateMachine


logger = get_logger(__name__)


def derive_idempotency_token(provider: str, payer: Payer, plan: Plan, nonce: str) -> str:
    """Stable token bound to (provider, payer, plan, nonce); same inputs reuse the provider order."""
    base = f"create|{provider}|{payer.email}|{plan.id.value}|{plan.amount_minor}|{plan.currency}|{nonce}"
    return hashlib.sha256(base.encode("utf-8")).hexdigest()


class PaymentOrchestrator:
    def __init__(
        self,
        *,
        catalog: PlanCatalog,
        adapters: Mapping[str, ProviderAdapter],
        verifier: NotificationVerifier,
        uow_factory: Callable[..., AbstractUnitOfWork],
        payer_locks: PayerLocks,
        clock: Callable[[], datetime] = utcnow,
        intent_ttl: timedelta = timedelta(hours=24),
        provider_timeout: float = 10.0,
        storage_timeout: float = 5.0,
    ) -> None:
        self.catalog = catalog
        self._adapters = dict(adapters)
        self._verifier = verifier
        self._uow_factory = uow_factory
        self._payer_locks = payer_locks
        self._clock = clock
        self._intent_ttl = intent_ttl
        self._provider_timeout = provider_timeout
        self._storage_timeout = storage_timeout

    @property
    def providers(self) -> list[str]:
        return sorted(self._adapters)

    def _adapter(self, provider_id: object) -> ProviderAdapter:
        adapter = self._adapters.get(normalize_provider(provider_id).value)
        if adapter is None:
            raise UnknownProviderException(provider_id)
        return adapter

    async def _bounded(self, coro, operation: str):
        try:
            return await asyncio.wait_for(coro, timeout=self._storage_timeout)
        except asyncio.TimeoutError:
            logger.error("storage_timeout", operation=operation, timeout=self._storage_timeout)
            raise StorageUnavailableException(operation) from None

    # ---------------------------------------------------------------- create

    async def create_payment(
        self,
        plan_id: object,
        payer_email: str,
        provider_id: object,
        *,
        nonce: Optional[str] = None,
        options: Optional[CheckoutOptions] = None,
    ) -> ProviderHandle:
        plan = self.catalog.resolve(plan_id)
        adapter = self._adapter(provider_id)
        payer = Payer(payer_email)
        token = derive_idempotency_token(adapter.provider, payer, plan, nonce or uuid.uuid4().hex)
        logger.info(
            "payment_create_request",
            provider=adapter.provider,
            plan=plan.id.value,
            payer_email=payer.email,
            idempotency_token=token,
        )

        if nonce:
            existing = await self._bounded(self._find_reusable(token), "intent_lookup")
            if existing is not None:
                logger.info(
                    "payment_intent_reused",
                    provider=existing.provider,
                    external_ref=existing.external_ref,
                )
                return ProviderHandle(
                    provider=existing.provider,
                    external_ref=existing.external_ref,
                    redirect_url=existing.redirect_url,
                    session_id=existing.session_id,
                    reused=True,
                )

        try:
            handle = await asyncio.wait_for(
                adapter.create_payment(plan, payer, idempotency_token=token, options=options),
                timeout=self._provider_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("payment_create_timeout", provider=adapter.provider, timeout=self._provider_timeout)
            raise PaymentProviderError(
                "Payment provider did not respond in time",
                provider=adapter.provider,
                provider_code="timeout",
            ) from None

        intent = PaymentIntent(
            provider=adapter.provider,
            plan=plan.id,
            payer=payer,
            idempotency_token=token,
            created_at=self._clock(),
        )
        intent.attach_external_ref(
            handle.external_ref,
            redirect_url=handle.redirect_url,
            session_id=handle.session_id,
        )
        await self._bounded(self._record_intent(intent), "intent_record")
        logger.info(
            "payment_intent_recorded",
            provider=intent.provider,
            external_ref=intent.external_ref,
            plan=plan.id.value,
        )
        return handle

    async def _find_reusable(self, token: str) -> Optional[PaymentIntent]:
        async with self._uow_factory(readonly=True) as uow:
            intent = await uow.intents.get_by_idempotency_token(token)
        if intent is None or intent.status != IntentStatus.AWAITING_NOTIFICATION:
            return None
        if intent.is_expired(self._clock(), self._intent_ttl):
            return None
        return intent

    async def _record_intent(self, intent: PaymentIntent) -> None:
        async with self._uow_factory() as uow:
            # an idempotent provider may hand back an order recorded by an earlier attempt
            if await uow.intents.get_by_external_ref(intent.provider, intent.external_ref) is not None:
                logger.info(
                    "payment_intent_already_recorded",
                    provider=intent.provider,
                    external_ref=intent.external_ref,
                )
                return
            await uow.intents.add(intent)
            await uow.commit()

    # ---------------------------------------------------------- notification

    async def handle_notification(
        self,
        provider_id: object,
        body: bytes,
        headers: Mapping[str, str],
    ) -> NotificationAck:
        adapter = self._adapter(provider_id)
        try:
            await self._verifier.verify(adapter.provider, body, headers)
        except PaymentSignatureError as exc:
            logger.warning(
                "notification_rejected",
                provider=adapter.provider,
                reason=exc.error_type,
                detail=exc.message,
                potential_spoofing=True,
            )
            raise

        event = adapter.parse_notification(body, headers)
        if event is None:
            logger.info("notification_ignored", provider=adapter.provider)
            return NotificationAck(accepted=True, ignored=True, reason="irrelevant_event")

        try:
            return await self._bounded(self._apply(event), "notification_apply")
        except StateConflictException:
            logger.warning(
                "entitlement_state_conflict_retry",
                provider=event.provider,
                idempotency_key=event.ledger_key,
            )
        # second conflict propagates
        return await self._bounded(self._apply(event), "notification_apply")

    async def _apply(self, event: PaymentEvent) -> NotificationAck:
        key = event.ledger_key
        async with self._uow_factory() as uow:
            now = self._clock()
            receipt = await uow.ledger.record_if_new(key, provider=event.provider, now=now)
            if receipt.result is LedgerResult.ALREADY_PROCESSED:
                logger.info("notification_duplicate_ignored", provider=event.provider, idempotency_key=key)
                return NotificationAck(accepted=True, duplicate=True, idempotency_key=key)

            intent = await uow.intents.get_by_external_ref(event.provider, event.external_ref)
            if intent is None and event.payer_hint and not event.plan_hint:
                intent = await self._correlate_by_payer(uow, event)

            if event.outcome is PaymentOutcome.FAILED:
                if intent is not None and intent.is_open:
                    intent.mark_failed(now)
                    await uow.intents.update(intent)
                await uow.commit()
                logger.info(
                    "payment_failed_recorded",
                    provider=event.provider,
                    external_ref=event.external_ref,
                    event_type=event.event_type,
                )
                return NotificationAck(accepted=True, idempotency_key=key, reason="payment_failed")

            if intent is not None and not intent.can_complete:
                await uow.commit()
                logger.warning(
                    "notification_for_closed_intent",
                    provider=event.provider,
                    external_ref=event.external_ref,
                    status=intent.status.value,
                )
                return NotificationAck(accepted=True, idempotency_key=key, reason=f"intent_{intent.status.value}")

            if intent is not None and intent.is_expired(now, self._intent_ttl):
                await uow.commit()
                logger.error(
                    "payment_intent_expired",
                    provider=event.provider,
                    external_ref=event.external_ref,
                    created_at=intent.created_at.isoformat(),
                )
                return NotificationAck(accepted=True, idempotency_key=key, reason="intent_expired")

            payer, plan = self._resolve_subject(event, intent)

            async with self._payer_locks.hold(payer.email):
                machine = EntitlementStateMachine(uow.entitlements, clock=self._clock)
                entitlement = await machine.apply(payer, plan, receipt=receipt)
                if intent is not None:
                    if intent.status is IntentStatus.FAILED:
                        logger.warning(
                            "payment_completed_after_failure",
                            provider=event.provider,
                            external_ref=event.external_ref,
                        )
                    intent.mark_completed(now)
                    await uow.intents.update(intent)
                await uow.commit()

            for domain_event in machine.events:
                logger.info(
                    "entitlement_renewed" if isinstance(domain_event, PremiumRenewed) else "entitlement_activated",
                    provider=event.provider,
                    payer_email=domain_event.payer_email,
                    plan=domain_event.plan,
                    expiry=domain_event.expiry.isoformat(),
                    idempotency_key=key,
                )
            return NotificationAck(accepted=True, activated=entitlement.is_premium, idempotency_key=key)

    async def _correlate_by_payer(self, uow: AbstractUnitOfWork, event: PaymentEvent) -> Optional[PaymentIntent]:
        """Callbacks without a known ref or plan match the payer's only open intent at that provider."""
        try:
            payer = Payer(event.payer_hint)
        except DomainValidationException:
            return None
        candidates = await uow.intents.list_open_for_payer(event.provider, payer)
        if len(candidates) != 1:
            logger.warning(
                "notification_payer_correlation_failed",
                provider=event.provider,
                external_ref=event.external_ref,
                payer_email=payer.email,
                open_intents=len(candidates),
            )
            return None
        logger.info(
            "notification_correlated_by_payer",
            provider=event.provider,
            external_ref=event.external_ref,
            intent_ref=candidates[0].external_ref,
        )
        return candidates[0]

    def _resolve_subject(self, event: PaymentEvent, intent: Optional[PaymentIntent]) -> tuple[Payer, Plan]:
        if intent is not None:
            if (event.plan_hint and event.plan_hint != intent.plan.value) or (
                event.payer_hint and event.payer_hint.strip().lower() != intent.payer.email
            ):
                logger.warning(
                    "notification_hint_mismatch",
                    provider=event.provider,
                    external_ref=event.external_ref,
                    plan_hint=event.plan_hint,
                    intent_plan=intent.plan.value,
                )
            return intent.payer, self.catalog.resolve(intent.plan)

        if event.payer_hint and event.plan_hint:
            try:
                payer = Payer(event.payer_hint)
                plan = self.catalog.resolve(event.plan_hint)
            except (DomainValidationException, UnknownPlanException):
                pass
            else:
                logger.warning(
                    "notification_uncorrelated",
                    provider=event.provider,
                    external_ref=event.external_ref,
                    payer_email=payer.email,
                    plan=plan.id.value,
                )
                return payer, plan

        raise NotificationCorrelationError(
            "No pending intent and no usable payer/plan hints for notification",
            provider=event.provider,
            external_ref=event.external_ref,
        )

    # ------------------------------------------------------------------ read

    async def get_entitlement(self, payer_email: str) -> EntitlementView:
        payer = Payer(payer_email)

        async def _read():
            async with self._uow_factory(readonly=True) as uow:
                return await uow.entitlements.get(payer)

        entitlement = await self._bounded(_read(), "entitlement_read")
        if entitlement is None:
            return EntitlementView(email=payer.email, is_premium=False)
        return EntitlementView(
            email=payer.email,
            is_premium=entitlement.is_active(self._clock()),
            plan=entitlement.plan.value if entitlement.plan else None,
            expiry=entitlement.expiry,
        )

    async def purge_expired_intents(self) -> int:
        cutoff = self._clock() - self._intent_ttl
        async with self._uow_factory() as uow:
            removed = await uow.intents.purge_expired(cutoff)
            await uow.commit()
        logger.info("payment_intents_purged", removed=removed, cutoff=cutoff.isoformat())
        return removed

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await adapter.aclose()
