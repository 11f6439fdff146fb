from datetime import datetime, timedelta, timezone

import pytest

from domain.common.exceptions import DomainValidationException
from domain.payment.entity import (
    Entitlement,
    IntentStatus,
    LedgerReceipt,
    LedgerResult,
    Payer,
    PaymentEvent,
    PaymentIntent,
    PaymentOutcome,
)
from domain.payment.events import PremiumActivated, PremiumRenewed
from domain.payment.plan import PlanCatalog, PlanId
from domain.payment.service import EntitlementStateMachine
from infrastructure.repositories.memory import InMemoryBillingStore, InMemoryEntitlementRepository


NOW = datetime(2024, 1, 31, 12, 0, tzinfo=timezone.utc)
CATALOG = PlanCatalog.build("EUR")


def receipt(key="stripe:cs_1", result=LedgerResult.ACCEPTED):
    return LedgerReceipt(key, result, NOW)


def test_payer_email_is_normalized():
    assert Payer("  User@Example.COM ").email == "user@example.com"


@pytest.mark.parametrize("email", ["", "nope", "@example.com", "user@localhost", "a b@example.com"])
def test_payer_rejects_invalid_email(email):
    with pytest.raises(DomainValidationException):
        Payer(email)


def test_activate_sets_expiry_from_now():
    ent = Entitlement(Payer("a@example.com"))
    ent.activate(CATALOG.resolve("monthly"), NOW)
    assert ent.is_premium and ent.plan is PlanId.MONTHLY
    assert ent.expiry == datetime(2024, 2, 29, 12, 0, tzinfo=timezone.utc)


def test_early_renewal_keeps_remaining_time():
    expiry = datetime(2024, 2, 10, tzinfo=timezone.utc)
    ent = Entitlement(Payer("a@example.com"), is_premium=True, plan=PlanId.MONTHLY, expiry=expiry, version=1)
    ent.renew(CATALOG.resolve("quarterly"), NOW)
    assert ent.expiry == datetime(2024, 5, 10, tzinfo=timezone.utc)


def test_late_renewal_starts_from_now():
    expiry = datetime(2024, 1, 1, tzinfo=timezone.utc)
    ent = Entitlement(Payer("a@example.com"), is_premium=True, plan=PlanId.MONTHLY, expiry=expiry, version=1)
    ent.renew(CATALOG.resolve("monthly"), NOW)
    assert ent.expiry == datetime(2024, 2, 29, 12, 0, tzinfo=timezone.utc)


def test_expiry_is_evaluated_lazily():
    ent = Entitlement(Payer("a@example.com"), is_premium=True, plan=PlanId.MONTHLY, expiry=NOW)
    assert ent.is_premium
    assert not ent.is_active(NOW)
    assert ent.is_active(NOW - timedelta(seconds=1))


def test_naive_datetimes_are_treated_as_utc():
    ent = Entitlement(Payer("a@example.com"), is_premium=True, expiry=datetime(2024, 3, 1))
    assert ent.expiry.tzinfo is timezone.utc
    assert ent.is_active(NOW)


def test_receipt_is_single_use():
    r = receipt()
    r.consume()
    with pytest.raises(DomainValidationException):
        r.consume()


def test_already_processed_receipt_cannot_be_consumed():
    with pytest.raises(DomainValidationException):
        receipt(result=LedgerResult.ALREADY_PROCESSED).consume()


def test_intent_lifecycle():
    intent = PaymentIntent(
        provider="stripe",
        plan=PlanId.MONTHLY,
        payer=Payer("a@example.com"),
        idempotency_token="tok",
        created_at=NOW,
    )
    assert intent.status is IntentStatus.PENDING
    intent.attach_external_ref("cs_1", redirect_url="https://checkout.example/cs_1")
    assert intent.status is IntentStatus.AWAITING_NOTIFICATION
    with pytest.raises(DomainValidationException):
        intent.attach_external_ref("cs_2")

    assert not intent.is_expired(NOW + timedelta(hours=23), timedelta(hours=24))
    assert intent.is_expired(NOW + timedelta(hours=24), timedelta(hours=24))

    intent.mark_completed(NOW)
    assert not intent.is_open
    assert not intent.is_expired(NOW + timedelta(days=30), timedelta(hours=24))
    with pytest.raises(DomainValidationException):
        intent.mark_failed(NOW)


def test_failed_intent_can_still_complete():
    intent = PaymentIntent(
        provider="paypal",
        plan=PlanId.MONTHLY,
        payer=Payer("a@example.com"),
        idempotency_token="tok",
        created_at=NOW,
    )
    intent.attach_external_ref("ORDER-1")
    intent.mark_failed(NOW)
    assert intent.can_complete and not intent.is_open

    intent.mark_completed(NOW + timedelta(minutes=5))
    assert intent.status is IntentStatus.COMPLETED
    assert intent.updated_at == NOW + timedelta(minutes=5)
    assert not intent.can_complete
    with pytest.raises(DomainValidationException):
        intent.mark_completed(NOW)


def test_failure_gets_its_own_ledger_key():
    completed = PaymentEvent("paypal", "ORDER-1", PaymentOutcome.COMPLETED, "paypal:ORDER-1")
    failed = PaymentEvent("paypal", "ORDER-1", PaymentOutcome.FAILED, "paypal:ORDER-1")
    assert completed.ledger_key == "paypal:ORDER-1"
    assert failed.ledger_key == "paypal:ORDER-1:failed"


class TestEntitlementStateMachine:

    def machine(self, now=NOW):
        repo = InMemoryEntitlementRepository(InMemoryBillingStore(), [])
        return EntitlementStateMachine(repo, clock=lambda: now), repo

    @pytest.mark.asyncio
    async def test_first_payment_activates(self):
        machine, _ = self.machine()
        payer = Payer("a@example.com")
        ent = await machine.apply(payer, CATALOG.resolve("yearly"), receipt=receipt())
        assert ent.version == 1
        assert ent.expiry == datetime(2025, 1, 31, 12, 0, tzinfo=timezone.utc)
        assert isinstance(machine.events[-1], PremiumActivated)
        assert await machine.is_active(payer)

    @pytest.mark.asyncio
    async def test_second_payment_renews(self):
        machine, _ = self.machine()
        payer = Payer("a@example.com")
        await machine.apply(payer, CATALOG.resolve("monthly"), receipt=receipt("k1"))
        ent = await machine.apply(payer, CATALOG.resolve("monthly"), receipt=receipt("k2"))
        assert ent.version == 2
        assert ent.expiry == datetime(2024, 3, 29, 12, 0, tzinfo=timezone.utc)
        event = machine.events[-1]
        assert isinstance(event, PremiumRenewed)
        assert event.previous_expiry == datetime(2024, 2, 29, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_reused_receipt_changes_nothing(self):
        machine, _ = self.machine()
        payer = Payer("a@example.com")
        r = receipt()
        await machine.apply(payer, CATALOG.resolve("monthly"), receipt=r)
        with pytest.raises(DomainValidationException):
            await machine.apply(payer, CATALOG.resolve("yearly"), receipt=r)
        ent = await machine.get(payer)
        assert ent.plan is PlanId.MONTHLY and ent.version == 1
