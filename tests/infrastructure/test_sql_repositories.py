from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from functools import partial

import pytest

from application.services.payment_service import PaymentOrchestrator
from domain.common.exceptions import DomainValidationException, StateConflictException
from domain.payment.entity import (
    Entitlement,
    IntentStatus,
    LedgerResult,
    Payer,
    PaymentIntent,
)
from domain.payment.plan import PlanCatalog, PlanId
from infrastructure.database import _build_async_url, build_engine, build_session_factory, create_tables
from infrastructure.locks import LocalPayerLocks
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


NOW = datetime(2024, 1, 31, 12, 0, tzinfo=timezone.utc)


@asynccontextmanager
async def sqlite_uow_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'billing.db'}")
    try:
        await create_tables(engine)
        yield partial(SQLAlchemyUnitOfWork, build_session_factory(engine))
    finally:
        await engine.dispose()


def make_intent(ref="cs_1", token="tok-1", created_at=NOW, email="a@example.com"):
    intent = PaymentIntent(
        provider="stripe",
        plan=PlanId.MONTHLY,
        payer=Payer(email),
        idempotency_token=token,
        created_at=created_at,
    )
    intent.attach_external_ref(ref, redirect_url=f"https://checkout.example/{ref}", session_id=ref)
    return intent


def test_async_driver_urls():
    assert _build_async_url("sqlite:///./x.db") == "sqlite+aiosqlite:///./x.db"
    assert _build_async_url("postgresql://u:p@db/app").startswith("postgresql+asyncpg://u:p@db/app")
    assert _build_async_url("sqlite+aiosqlite:///./x.db") == "sqlite+aiosqlite:///./x.db"
    with pytest.raises(ValueError):
        _build_async_url("mysql://u:p@db/app")


@pytest.mark.asyncio
async def test_ledger_accepts_each_key_once(tmp_path):
    async with sqlite_uow_factory(tmp_path) as uow_factory:
        async with uow_factory() as uow:
            first = await uow.ledger.record_if_new("stripe:cs_1", provider="stripe", now=NOW)
        async with uow_factory() as uow:
            second = await uow.ledger.record_if_new("stripe:cs_1", provider="stripe", now=NOW)
            other = await uow.ledger.record_if_new("paypal:cs_1", provider="paypal", now=NOW)

        assert first.result is LedgerResult.ACCEPTED
        assert second.result is LedgerResult.ALREADY_PROCESSED
        assert other.result is LedgerResult.ACCEPTED


@pytest.mark.asyncio
async def test_ledger_insert_rolls_back_with_the_unit(tmp_path):
    async with sqlite_uow_factory(tmp_path) as uow_factory:
        with pytest.raises(RuntimeError):
            async with uow_factory() as uow:
                await uow.ledger.record_if_new("stripe:cs_1", now=NOW)
                raise RuntimeError("boom")

        async with uow_factory(readonly=True) as uow:
            assert not await uow.ledger.contains("stripe:cs_1")


@pytest.mark.asyncio
async def test_intent_roundtrip_and_lookup(tmp_path):
    async with sqlite_uow_factory(tmp_path) as uow_factory:
        async with uow_factory() as uow:
            await uow.intents.add(make_intent())

        async with uow_factory(readonly=True) as uow:
            by_ref = await uow.intents.get_by_external_ref("stripe", "cs_1")
            by_token = await uow.intents.get_by_idempotency_token("tok-1")
            missing = await uow.intents.get_by_external_ref("paypal", "cs_1")

        assert missing is None
        assert by_ref.id == by_token.id
        assert by_ref.status is IntentStatus.AWAITING_NOTIFICATION
        assert by_ref.payer.email == "a@example.com"
        assert by_ref.created_at == NOW
        assert by_ref.redirect_url == "https://checkout.example/cs_1"

        by_ref.mark_completed(NOW + timedelta(minutes=5))
        async with uow_factory() as uow:
            await uow.intents.update(by_ref)
        async with uow_factory(readonly=True) as uow:
            reloaded = await uow.intents.get_by_external_ref("stripe", "cs_1")
        assert reloaded.status is IntentStatus.COMPLETED


@pytest.mark.asyncio
async def test_duplicate_intent_reference_is_rejected(tmp_path):
    async with sqlite_uow_factory(tmp_path) as uow_factory:
        async with uow_factory() as uow:
            await uow.intents.add(make_intent())
        with pytest.raises(DomainValidationException):
            async with uow_factory() as uow:
                await uow.intents.add(make_intent(token="tok-2"))


@pytest.mark.asyncio
async def test_purge_removes_only_stale_open_intents(tmp_path):
    async with sqlite_uow_factory(tmp_path) as uow_factory:
        done = make_intent("cs_done", "tok-done", created_at=NOW - timedelta(days=2))
        done.mark_completed(NOW - timedelta(days=2))
        async with uow_factory() as uow:
            await uow.intents.add(make_intent("cs_old", "tok-old", created_at=NOW - timedelta(days=2)))
            await uow.intents.add(make_intent("cs_new", "tok-new", created_at=NOW))
            await uow.intents.add(done)

        async with uow_factory() as uow:
            removed = await uow.intents.purge_expired(NOW - timedelta(days=1))
        assert removed == 1

        async with uow_factory(readonly=True) as uow:
            assert await uow.intents.get_by_external_ref("stripe", "cs_old") is None
            assert await uow.intents.get_by_external_ref("stripe", "cs_new") is not None
            assert await uow.intents.get_by_external_ref("stripe", "cs_done") is not None


@pytest.mark.asyncio
async def test_open_intents_for_payer(tmp_path):
    async with sqlite_uow_factory(tmp_path) as uow_factory:
        done = make_intent("cs_done", "tok-done")
        done.mark_completed(NOW)
        async with uow_factory() as uow:
            await uow.intents.add(make_intent("cs_old", "tok-old", created_at=NOW - timedelta(hours=2)))
            await uow.intents.add(make_intent("cs_new", "tok-new", created_at=NOW))
            await uow.intents.add(make_intent("cs_other", "tok-other", email="b@example.com"))
            await uow.intents.add(done)

        async with uow_factory(readonly=True) as uow:
            found = await uow.intents.list_open_for_payer("stripe", Payer("A@example.com"))
            assert [i.external_ref for i in found] == ["cs_new", "cs_old"]
            assert await uow.intents.list_open_for_payer("paypal", Payer("a@example.com")) == []

@pytest.mark.asyncio
async def test_entitlement_versioning(tmp_path):
    payer = Payer("a@example.com")
    plan = PlanCatalog.build().resolve("monthly")
    async with sqlite_uow_factory(tmp_path) as uow_factory:
        fresh = Entitlement(payer)
        fresh.activate(plan, NOW)
        async with uow_factory() as uow:
            saved = await uow.entitlements.save(fresh)
        assert saved.version == 1

        async with uow_factory() as uow:
            current = await uow.entitlements.get_for_update(payer)
            current.renew(plan, NOW)
            await uow.entitlements.save(current)
        assert current.version == 2

        async with uow_factory(readonly=True) as uow:
            stored = await uow.entitlements.get(payer)
        assert stored.version == 2
        assert stored.expiry == datetime(2024, 3, 29, 12, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_stale_version_and_racing_insert_conflict(tmp_path):
    payer = Payer("a@example.com")
    plan = PlanCatalog.build().resolve("monthly")
    async with sqlite_uow_factory(tmp_path) as uow_factory:
        first = Entitlement(payer)
        first.activate(plan, NOW)
        async with uow_factory() as uow:
            await uow.entitlements.save(first)

        racing = Entitlement(payer)
        racing.activate(plan, NOW)
        with pytest.raises(StateConflictException):
            async with uow_factory() as uow:
                await uow.entitlements.save(racing)

        stale = Entitlement(payer, is_premium=True, plan=PlanId.MONTHLY, expiry=NOW, version=7)
        with pytest.raises(StateConflictException):
            async with uow_factory() as uow:
                await uow.entitlements.save(stale)


@pytest.mark.asyncio
async def test_orchestrator_over_sqlite(tmp_path, adapter, verifier, notification, clock):
    async with sqlite_uow_factory(tmp_path) as uow_factory:
        orchestrator = PaymentOrchestrator(
            catalog=PlanCatalog.build(),
            adapters={"stripe": adapter},
            verifier=verifier,
            uow_factory=uow_factory,
            payer_locks=LocalPayerLocks(),
            clock=clock,
        )
        handle = await orchestrator.create_payment("yearly", "a@example.com", "stripe", nonce="nonce-123456")
        reused = await orchestrator.create_payment("yearly", "a@example.com", "stripe", nonce="nonce-123456")
        assert reused.reused and reused.external_ref == handle.external_ref

        body = notification(handle.external_ref)
        first = await orchestrator.handle_notification("stripe", body, {})
        second = await orchestrator.handle_notification("stripe", body, {})

        assert first.activated
        assert second.duplicate
        view = await orchestrator.get_entitlement("a@example.com")
        assert view.is_premium
        assert view.expiry == datetime(2025, 1, 31, 12, 0, tzinfo=timezone.utc)

        async with uow_factory(readonly=True) as uow:
            intent = await uow.intents.get_by_external_ref("stripe", handle.external_ref)
            assert intent.status is IntentStatus.COMPLETED
            assert await uow.ledger.contains(f"stripe:{handle.external_ref}")
