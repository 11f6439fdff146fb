import json

import pytest

stripe = pytest.importorskip("stripe")

from domain.payment.entity import Payer, PaymentOutcome
from domain.payment.exceptions import MalformedNotificationError, PaymentProviderError
from domain.payment.plan import PlanCatalog
from infrastructure.external.payments.stripe_client import StripeClient


CATALOG = PlanCatalog.build("EUR")


def make_client(**kwargs):
    return StripeClient(
        secret_key="sk_test_123",
        success_url="https://app.example/premium/success?session_id={CHECKOUT_SESSION_ID}",
        cancel_url="https://app.example/premium/cancel",
        **kwargs,
    )


def event(event_type, session):
    return json.dumps({"id": "evt_1", "type": event_type, "data": {"object": session}}).encode()


@pytest.mark.asyncio
async def test_create_checkout_session(monkeypatch):
    calls = []

    def fake_create(**params):
        calls.append(params)
        return {"id": "cs_test_1", "url": "https://checkout.stripe.com/c/pay/cs_test_1"}

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)

    handle = await make_client().create_payment(
        CATALOG.resolve("monthly"), Payer("a@example.com"), idempotency_token="tok-1"
    )

    assert handle.external_ref == "cs_test_1"
    assert handle.session_id == "cs_test_1"
    assert handle.redirect_url == "https://checkout.stripe.com/c/pay/cs_test_1"
    [params] = calls
    assert params["api_key"] == "sk_test_123"
    assert params["idempotency_key"] == "tok-1"
    assert params["mode"] == "payment"
    assert params["customer_email"] == "a@example.com"
    assert params["metadata"] == {"plan": "monthly", "payer_email": "a@example.com"}
    assert params["line_items"] == [{
        "price_data": {
            "currency": "eur",
            "unit_amount": 999,
            "product_data": {"name": "Premium monthly"},
        },
        "quantity": 1,
    }]


@pytest.mark.asyncio
async def test_configured_price_id_is_used(monkeypatch):
    calls = []
    monkeypatch.setattr(stripe.checkout.Session, "create", lambda **p: calls.append(p) or {"id": "cs_2", "url": None})

    await make_client(price_ids={"yearly": "price_123"}).create_payment(
        CATALOG.resolve("yearly"), Payer("a@example.com"), idempotency_token="tok-2"
    )
    assert calls[0]["line_items"] == [{"price": "price_123", "quantity": 1}]


@pytest.mark.asyncio
async def test_sdk_error_becomes_provider_error(monkeypatch):
    def failing_create(**params):
        raise stripe.InvalidRequestError("No such price", "price", code="resource_missing", http_status=400)

    monkeypatch.setattr(stripe.checkout.Session, "create", failing_create)

    with pytest.raises(PaymentProviderError) as exc_info:
        await make_client().create_payment(CATALOG.resolve("monthly"), Payer("a@example.com"), idempotency_token="t")
    assert exc_info.value.details["provider"] == "stripe"
    assert exc_info.value.details["provider_code"] == "resource_missing"


def test_parse_paid_session():
    body = event("checkout.session.completed", {
        "id": "cs_1",
        "payment_status": "paid",
        "metadata": {"plan": "quarterly", "payer_email": "a@example.com"},
    })
    parsed = make_client().parse_notification(body, {})
    assert parsed.external_ref == "cs_1"
    assert parsed.outcome is PaymentOutcome.COMPLETED
    assert parsed.raw_idempotency_key == "stripe:cs_1"
    assert (parsed.payer_hint, parsed.plan_hint) == ("a@example.com", "quarterly")


def test_parse_falls_back_to_customer_details_email():
    body = event("checkout.session.async_payment_succeeded", {
        "id": "cs_1",
        "customer_details": {"email": "b@example.com"},
    })
    parsed = make_client().parse_notification(body, {})
    assert parsed.payer_hint == "b@example.com"
    assert parsed.plan_hint is None


def test_unpaid_completed_session_waits_for_async_result():
    body = event("checkout.session.completed", {"id": "cs_1", "payment_status": "unpaid"})
    assert make_client().parse_notification(body, {}) is None


def test_async_failure_maps_to_failed():
    parsed = make_client().parse_notification(event("checkout.session.async_payment_failed", {"id": "cs_1"}), {})
    assert parsed.outcome is PaymentOutcome.FAILED


def test_irrelevant_event_type_is_ignored():
    assert make_client().parse_notification(event("customer.created", {"id": "cus_1"}), {}) is None


@pytest.mark.parametrize("body", [b"not json", b"[]", event("checkout.session.completed", {"payment_status": "paid"})])
def test_malformed_notifications(body):
    with pytest.raises(MalformedNotificationError):
        make_client().parse_notification(body, {})
