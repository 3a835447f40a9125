"""
Tests for webhook signature verification and webhook event dispatch
"""
import json
import time
from datetime import timedelta

import pytest

from config.settings import settings
from models.billing import BillingPlan, BillingStatus
from utils.errors import AppError
from tests.conftest import build_signature_header, compute_signature
from utils.stripe_signature import verify_stripe_signature

SECRET = "whsec_test"
PAYLOAD = json.dumps({"id": "evt_1", "type": "invoice.paid"})


def _flip_last_hex_digit(signature: str) -> str:
    last = signature[-1]
    return signature[:-1] + ("0" if last != "0" else "1")


def test_valid_signature_is_accepted():
    timestamp = int(time.time())
    header = build_signature_header(PAYLOAD, SECRET, timestamp)

    assert verify_stripe_signature(PAYLOAD, header, SECRET) == timestamp


def test_any_matching_v1_candidate_is_enough():
    timestamp = 1_767_225_600
    good = compute_signature(PAYLOAD, SECRET, timestamp)
    header = f"t={timestamp},v1={'0' * 64},v1={good}"

    assert verify_stripe_signature(PAYLOAD, header, SECRET, now=timestamp + 10) == timestamp


def test_flipped_signature_is_rejected():
    timestamp = int(time.time())
    signature = compute_signature(PAYLOAD, SECRET, timestamp)
    header = f"t={timestamp},v1={_flip_last_hex_digit(signature)}"

    with pytest.raises(AppError) as exc_info:
        verify_stripe_signature(PAYLOAD, header, SECRET)

    assert exc_info.value.code == "invalid_signature"
    assert "verification failed" in exc_info.value.message.lower()


def test_tampered_payload_is_rejected():
    timestamp = int(time.time())
    header = build_signature_header(PAYLOAD, SECRET, timestamp)

    with pytest.raises(AppError, match="verification failed"):
        verify_stripe_signature(PAYLOAD.replace("evt_1", "evt_2"), header, SECRET)


def test_stale_and_future_timestamps_are_rejected():
    now = 1_767_225_600
    stale = build_signature_header(PAYLOAD, SECRET, now - 301)
    future = build_signature_header(PAYLOAD, SECRET, now + 301)
    edge = build_signature_header(PAYLOAD, SECRET, now - 300)

    with pytest.raises(AppError, match="tolerance"):
        verify_stripe_signature(PAYLOAD, stale, SECRET, now=now)
    with pytest.raises(AppError, match="tolerance"):
        verify_stripe_signature(PAYLOAD, future, SECRET, now=now)
    assert verify_stripe_signature(PAYLOAD, edge, SECRET, now=now) == now - 300


@pytest.mark.parametrize("header", [None, "", "garbage", "t=123", "v1=abc", "t=notanumber,v1=abc"])
def test_missing_or_malformed_header_is_rejected(header):
    with pytest.raises(AppError) as exc_info:
        verify_stripe_signature(PAYLOAD, header, SECRET, now=123)

    assert exc_info.value.code == "invalid_signature"
    assert exc_info.value.status_code == 400


def _event(event_type: str, user_id: str = "user-1", **metadata) -> str:
    return json.dumps({
        "id": f"evt_{event_type}",
        "type": event_type,
        "data": {"object": {"metadata": {"user_id": user_id, **metadata}}},
    })


@pytest.fixture
def send_signed(billing_service, clock, monkeypatch):
    """Deliver a payload to the service signed with the configured secret"""
    monkeypatch.setattr(settings, "stripe_webhook_secret", SECRET)

    async def send(payload: str):
        header = build_signature_header(payload, SECRET, int(clock.now.timestamp()))
        return await billing_service.handle_webhook_event(header, payload)

    return send


@pytest.mark.asyncio
async def test_webhook_with_secret_requires_valid_signature(billing_service, clock, monkeypatch):
    monkeypatch.setattr(settings, "stripe_webhook_secret", SECRET)
    payload = _event("customer.subscription.deleted")

    with pytest.raises(AppError) as exc_info:
        await billing_service.handle_webhook_event(None, payload)
    assert exc_info.value.code == "invalid_signature"

    header = build_signature_header(payload, SECRET, int(clock.now.timestamp()))
    result = await billing_service.handle_webhook_event(header, payload.encode("utf-8"))

    assert result.received is True
    assert result.provider == "mock"
    assert result.event_type == "customer.subscription.deleted"
    assert result.applied is True


@pytest.mark.asyncio
async def test_webhook_signed_with_wrong_secret_changes_nothing(billing_service, clock, monkeypatch):
    monkeypatch.setattr(settings, "stripe_webhook_secret", SECRET)
    await billing_service.subscribe_user("user-1", BillingPlan.MONTH)
    payload = _event("customer.subscription.deleted")
    header = build_signature_header(payload, "whsec_other", int(clock.now.timestamp()))

    with pytest.raises(AppError) as exc_info:
        await billing_service.handle_webhook_event(header, payload)

    assert exc_info.value.code == "invalid_signature"
    record = await billing_service.get_subscription_record("user-1")
    assert record.status == BillingStatus.ACTIVE


@pytest.mark.asyncio
async def test_unsigned_events_are_acknowledged_but_not_applied(billing_service, repository, monkeypatch):
    monkeypatch.setattr(settings, "env", "production")
    await billing_service.subscribe_user("victim", BillingPlan.MONTH)

    upgrade = await billing_service.handle_webhook_event(
        None, _event("checkout.session.completed", user_id="victim", plan="YEAR")
    )
    cancel = await billing_service.handle_webhook_event(
        "t=1,v1=whatever", _event("customer.subscription.deleted", user_id="victim")
    )
    stranger = await billing_service.handle_webhook_event(
        None, _event("checkout.session.completed", user_id="stranger", plan="YEAR")
    )

    for result in (upgrade, cancel, stranger):
        assert result.received is True
        assert result.applied is False
    record = await billing_service.get_subscription_record("victim")
    assert record.plan == BillingPlan.MONTH
    assert record.status == BillingStatus.ACTIVE
    assert await repository.get("stranger") is None


@pytest.mark.asyncio
async def test_webhook_rejects_non_json_payload(billing_service):
    with pytest.raises(AppError) as exc_info:
        await billing_service.handle_webhook_event(None, b"not json")

    assert exc_info.value.code == "invalid_payload"


@pytest.mark.asyncio
@pytest.mark.parametrize("event", [
    [],
    {"id": "evt_1"},
    {"type": ""},
    {"type": 5},
    {"type": "invoice.paid", "data": "x"},
    {"type": "invoice.paid", "data": {"object": ["user-1"]}},
    {"type": "invoice.paid", "data": {"object": {"metadata": "m"}}},
])
async def test_malformed_events_are_invalid_payload(send_signed, event):
    with pytest.raises(AppError) as exc_info:
        await send_signed(json.dumps(event))

    assert exc_info.value.code == "invalid_payload"
    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_checkout_completed_subscribes_user(billing_service, send_signed):
    result = await send_signed(_event("checkout.session.completed", plan="YEAR"))

    assert result.applied is True
    record = await billing_service.get_subscription_record("user-1")
    assert record.plan == BillingPlan.YEAR
    assert record.status == BillingStatus.ACTIVE


@pytest.mark.asyncio
async def test_checkout_completed_uses_client_reference_id(billing_service, send_signed):
    payload = json.dumps({
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {"object": {"client_reference_id": "user-9", "metadata": {"plan": "MONTH"}}},
    })

    result = await send_signed(payload)

    assert result.applied is True
    record = await billing_service.get_subscription_record("user-9")
    assert record.plan == BillingPlan.MONTH


@pytest.mark.asyncio
async def test_payment_failed_then_paid_round_trip(billing_service, send_signed, clock):
    await billing_service.subscribe_user("user-1", BillingPlan.MONTH)

    failed = await send_signed(_event("invoice.payment_failed"))
    assert failed.applied is True
    record = await billing_service.get_subscription_record("user-1")
    assert record.status == BillingStatus.PAST_DUE
    assert record.grace_period_ends_at == clock.now + timedelta(days=7)

    clock.advance(timedelta(days=2))
    paid = await send_signed(_event("invoice.paid"))
    assert paid.applied is True
    record = await billing_service.get_subscription_record("user-1")
    assert record.status == BillingStatus.ACTIVE
    assert record.plan == BillingPlan.MONTH
    assert record.grace_period_ends_at is None


@pytest.mark.asyncio
async def test_invoice_paid_on_active_subscription_is_a_no_op(billing_service, send_signed):
    await billing_service.subscribe_user("user-1", BillingPlan.MONTH)

    result = await send_signed(_event("invoice.paid"))

    assert result.received is True
    assert result.applied is False


@pytest.mark.asyncio
async def test_subscription_deleted_cancels(billing_service, send_signed):
    await billing_service.subscribe_user("user-1", BillingPlan.SIX_MONTHS)

    await send_signed(_event("customer.subscription.deleted"))

    record = await billing_service.get_subscription_record("user-1")
    assert record.status == BillingStatus.CANCELED
    assert record.plan == BillingPlan.SIX_MONTHS


@pytest.mark.asyncio
async def test_unknown_event_and_missing_user_are_acknowledged_only(send_signed, repository):
    unknown = await send_signed(_event("customer.created"))
    anonymous = await send_signed(json.dumps({"id": "evt_2", "type": "invoice.paid", "data": {"object": {}}}))
    numeric_user = await send_signed(json.dumps({
        "id": "evt_3",
        "type": "invoice.paid",
        "data": {"object": {"metadata": {"user_id": 42}}},
    }))

    for result in (unknown, anonymous, numeric_user):
        assert result.received is True
        assert result.applied is False
    assert len(repository) == 0
