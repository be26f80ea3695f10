import json
from datetime import datetime, timezone

import pytest
from unittest.mock import MagicMock

import crud
from billing.records import MembershipType, SubscriptionInfo
from billing.stripe_gateway import StripeGateway
from billing.webhooks import WebhookProcessor

from conftest import make_config, sign_payload, stripe_event

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
PERIOD_END = datetime(2024, 3, 31, tzinfo=timezone.utc)


def checkout_session(user_id="u1", subscription_id="sub_abc", customer_id="cus_1", mode="subscription"):
    return {
        "id": "cs_test_1",
        "object": "checkout.session",
        "mode": mode,
        "client_reference_id": user_id,
        "metadata": {"userId": user_id, "plan": "monthly"},
        "customer": customer_id,
        "customer_details": {"email": "reader@example.com"},
        "subscription": subscription_id,
    }


def subscription_object(status="active", cancel_at_period_end=False, subscription_id="sub_abc",
                        customer_id="cus_1", user_id="u1"):
    return {
        "id": subscription_id,
        "object": "subscription",
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "customer": customer_id,
        "metadata": {"userId": user_id, "plan": "monthly"} if user_id else {},
        "items": {"data": [{"current_period_end": int(PERIOD_END.timestamp())}]},
    }


def event(event_type, obj):
    return json.loads(stripe_event(event_type, obj))


@pytest.fixture
def processor(db_session):
    return WebhookProcessor(db_session, StripeGateway(make_config()), clock=lambda: NOW)


# --- Processing ---

def test_checkout_completed_upgrades_user(processor, db_session):
    result = processor.process(event("checkout.session.completed", checkout_session()))

    assert result == {"eventType": "checkout.session.completed", "applied": True}
    record = crud.get_record(db_session, "u1")
    assert record.membership_type == MembershipType.PREMIUM
    assert record.subscription_id == "sub_abc"
    assert record.stripe_customer_id == "cus_1"
    assert record.email == "reader@example.com"
    assert record.subscription.plan == "monthly"


def test_checkout_completed_payment_mode_is_ignored(processor, db_session):
    result = processor.process(event("checkout.session.completed", checkout_session(mode="payment")))

    assert result["applied"] is False
    assert crud.get_record(db_session, "u1") is None


def test_subscription_updated_twice_is_idempotent(processor, db_session):
    processor.process(event("checkout.session.completed", checkout_session()))
    first = processor.process(event("customer.subscription.updated", subscription_object()))
    before = crud.get_record(db_session, "u1")
    second = processor.process(event("customer.subscription.updated", subscription_object()))

    assert first["applied"] is True
    assert second["applied"] is False
    assert crud.get_record(db_session, "u1") == before
    assert before.subscription.current_period_end == PERIOD_END


def test_subscription_created_before_checkout_completed(processor, db_session):
    processor.process(event("customer.subscription.created", subscription_object()))
    result = processor.process(event("checkout.session.completed", checkout_session()))

    assert result["applied"] is False
    assert crud.get_record(db_session, "u1").is_premium


def test_cancel_at_period_end_then_deleted(processor, db_session):
    processor.process(event("checkout.session.completed", checkout_session()))
    processor.process(event("customer.subscription.updated", subscription_object(cancel_at_period_end=True)))

    grace = crud.get_record(db_session, "u1")
    assert grace.is_premium
    assert grace.subscription.cancel_at_period_end is True
    assert grace.cancelled_at == NOW

    processor.process(event("customer.subscription.deleted", subscription_object(status="canceled")))
    ended = crud.get_record(db_session, "u1")
    assert ended.membership_type == MembershipType.BASIC
    assert ended.subscription_id is None
    assert ended.subscription.id == "sub_abc"
    assert ended.subscription.status == "canceled"

    # Late redelivery of the earlier update does not resurrect premium
    late = processor.process(event("customer.subscription.updated", subscription_object(cancel_at_period_end=True)))
    assert late["applied"] is False
    assert not crud.get_record(db_session, "u1").is_premium


def test_checkout_redelivered_after_deletion_stays_basic(processor, db_session):
    processor.process(event("checkout.session.completed", checkout_session()))
    processor.process(event("customer.subscription.deleted", subscription_object(status="canceled")))

    replay = processor.process(event("checkout.session.completed", checkout_session()))

    assert replay["applied"] is False
    record = crud.get_record(db_session, "u1")
    assert record.membership_type == MembershipType.BASIC
    assert record.subscription.status == "canceled"
    assert record.cancelled_at == NOW


def test_past_due_downgrades(processor, db_session):
    processor.process(event("checkout.session.completed", checkout_session()))
    processor.process(event("customer.subscription.updated", subscription_object(status="past_due")))

    record = crud.get_record(db_session, "u1")
    assert record.membership_type == MembershipType.BASIC
    assert record.subscription.status == "past_due"


def test_resolves_user_by_customer_id(processor, db_session):
    processor.process(event("checkout.session.completed", checkout_session()))
    result = processor.process(event("customer.subscription.updated", subscription_object(
        cancel_at_period_end=True, user_id=None,
    )))

    assert result["applied"] is True
    assert crud.get_record(db_session, "u1").subscription.cancel_at_period_end is True


def test_resolves_legacy_user_by_subscription_scan(processor, db_session):
    record = crud.get_or_create_record(db_session, "legacy", "old@example.com")
    crud.save_record(db_session, record.model_copy(update={
        "membership_type": MembershipType.PREMIUM,
        "subscription": SubscriptionInfo(id="sub_legacy", status="active"),
    }))

    result = processor.process(event("customer.subscription.deleted", subscription_object(
        status="canceled", subscription_id="sub_legacy", customer_id="cus_unknown", user_id=None,
    )))

    assert result["applied"] is True
    assert crud.get_record(db_session, "legacy").membership_type == MembershipType.BASIC


def test_unresolvable_user_is_acknowledged(processor, db_session):
    result = processor.process(event("customer.subscription.deleted", subscription_object(
        status="canceled", subscription_id="sub_ghost", customer_id="cus_ghost", user_id=None,
    )))

    assert result == {"eventType": "customer.subscription.deleted", "applied": False}


def test_unhandled_and_invoice_events(processor):
    assert processor.process(event("customer.created", {"id": "cus_1"}))["applied"] is False
    invoice = {"id": "in_1", "status": "paid", "subscription": "sub_abc"}
    assert processor.process(event("invoice.payment_succeeded", invoice))["applied"] is False


# --- Endpoint ---

def test_webhook_endpoint_applies_signed_event(client, db_session):
    payload = stripe_event("checkout.session.completed", checkout_session())
    response = client.post(
        "/api/webhook",
        content=payload,
        headers={"stripe-signature": sign_payload(payload), "content-type": "application/json"},
    )

    assert response.status_code == 200
    assert response.json() == {"received": True, "eventType": "checkout.session.completed"}
    record = crud.get_record(db_session, "u1")
    assert record.is_premium
    assert record.subscription_id == "sub_abc"


def test_webhook_endpoint_unresolvable_user_returns_200(client):
    payload = stripe_event("customer.subscription.updated", subscription_object(
        subscription_id="sub_ghost", customer_id="cus_ghost", user_id=None,
    ))
    response = client.post("/api/webhook", content=payload, headers={"stripe-signature": sign_payload(payload)})

    assert response.status_code == 200


def test_webhook_endpoint_missing_signature(client):
    response = client.post("/api/webhook", content=stripe_event("customer.created", {}))

    assert response.status_code == 400
    assert response.json()["error"] == "Missing signature"


def test_webhook_endpoint_bad_signature(client, db_session):
    payload = stripe_event("checkout.session.completed", checkout_session())
    response = client.post(
        "/api/webhook",
        content=payload,
        headers={"stripe-signature": sign_payload(payload, secret="whsec_wrong")},
    )

    assert response.status_code == 400
    assert response.json()["error"] == "Invalid webhook signature"
    assert crud.get_record(db_session, "u1") is None


def test_webhook_endpoint_tampered_body(client):
    payload = stripe_event("checkout.session.completed", checkout_session())
    signature = sign_payload(payload)
    tampered = payload.replace("u1", "u2")
    response = client.post("/api/webhook", content=tampered, headers={"stripe-signature": signature})

    assert response.status_code == 400


def test_webhook_endpoint_without_secret_configured(client, use_config):
    use_config(stripe_webhook_secret="")
    payload = stripe_event("customer.created", {})
    response = client.post("/api/webhook", content=payload, headers={"stripe-signature": "t=1,v1=abc"})

    assert response.status_code == 500
    assert response.json()["details"] == {"missing": "STRIPE_WEBHOOK_SECRET"}


def test_webhook_endpoint_store_failure_returns_500(client, mocker):
    mocker.patch("billing.webhooks.crud.save_record", side_effect=RuntimeError("store down"))
    payload = stripe_event("checkout.session.completed", checkout_session())
    response = client.post("/api/webhook", content=payload, headers={"stripe-signature": sign_payload(payload)})

    assert response.status_code == 500
    assert response.json()["error"] == "Webhook processing failed"
