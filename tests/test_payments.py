import uuid
from datetime import date, timedelta
from decimal import Decimal

import pytest

from geofoncier.errors import InvalidSignature, InvalidTransition, SubscriptionNotFound, ValidationError
from geofoncier.payments import (
    SubscriptionService,
    generate_signature,
    has_active_subscription,
    subscription_to_dict,
    verify_signature,
)
from geofoncier.schemas import BillingPeriod, Customer, PaymentInitiate, PlanType

from conftest import WEBHOOK_SECRET


@pytest.fixture
def subscriptions(session, gateway, settings):
    return SubscriptionService(session, gateway, settings)


def owner_plan(area="500", period=BillingPeriod.MONTHLY):
    return PaymentInitiate(
        plan_type=PlanType.OWNER_AREA,
        period=period,
        declared_area_m2=Decimal(area),
        customer=Customer(email="owner@example.cm", name="Aminatou Owner"),
    )


def callback(tx_ref, transaction_id=9001, status="successful"):
    return {"event": "charge.completed", "data": {"id": transaction_id, "tx_ref": tx_ref, "status": status}}


# =============================================================================
# Signatures
# =============================================================================


def test_signature_round_trip():
    body = b'{"data": {"tx_ref": "geofoncier_1"}}'
    verify_signature(body, generate_signature(body, WEBHOOK_SECRET), WEBHOOK_SECRET)


@pytest.mark.parametrize(
    "body, signature, secret",
    [
        (b'{"amount": 1}', generate_signature(b'{"amount": 2}', WEBHOOK_SECRET), WEBHOOK_SECRET),
        (b'{"amount": 1}', generate_signature(b'{"amount": 1}', "other-secret"), WEBHOOK_SECRET),
        (b'{"amount": 1}', None, WEBHOOK_SECRET),
        (b'{"amount": 1}', generate_signature(b'{"amount": 1}', ""), ""),
    ],
)
def test_bad_signatures_are_rejected(body, signature, secret):
    with pytest.raises(InvalidSignature):
        verify_signature(body, signature, secret)


# =============================================================================
# Checkout
# =============================================================================


def test_initiate_records_pending_subscription(subscriptions, owner):
    result = subscriptions.initiate(owner.id, owner_plan("3000", BillingPeriod.ANNUAL))

    config = result["payment_config"]
    assert config["tx_ref"].startswith("geofoncier_")
    assert config["amount"] == 59400.0
    assert config["currency"] == "XAF"
    assert config["public_key"] == "FLWPUBK_TEST"
    assert config["meta"]["user_id"] == str(owner.id)

    [subscription] = subscriptions.history(owner.id)
    assert str(subscription.id) == result["subscription_id"]
    assert subscription.status == "pending"
    assert subscription.pricing_tier.startswith("Tier 2")
    assert subscription.ends_on - subscription.starts_on == timedelta(days=365)
    assert not subscriptions.is_active(owner.id)


def test_client_plan_uses_its_own_period(subscriptions, buyer):
    result = subscriptions.initiate(buyer.id, PaymentInitiate(
        plan_type=PlanType.CLIENT_ANNUAL_WORLD,
        customer=Customer(email="client@example.cm", name="Blaise Client"),
    ))
    assert result["payment_config"]["amount"] == 500000.0
    assert subscriptions.history(buyer.id)[0].period == "annual"


def test_owner_plan_needs_declared_area(subscriptions, owner):
    with pytest.raises(ValidationError):
        subscriptions.initiate(owner.id, PaymentInitiate(
            plan_type=PlanType.OWNER_AREA, customer=Customer(email="o@example.cm", name="O"),
        ))


# =============================================================================
# Webhooks
# =============================================================================


def test_verified_webhook_activates(subscriptions, gateway, owner):
    tx_ref = subscriptions.initiate(owner.id, owner_plan())["payment_config"]["tx_ref"]
    gateway.verified.add("9001")

    outcome = subscriptions.handle_webhook(callback(tx_ref))
    assert outcome["status"] == "active"
    assert outcome["changed"] is True
    assert gateway.calls == ["9001"]
    assert subscriptions.is_active(owner.id)
    assert subscriptions.history(owner.id)[0].gateway_transaction_id == "9001"


def test_replayed_webhook_changes_nothing(subscriptions, gateway, owner):
    tx_ref = subscriptions.initiate(owner.id, owner_plan())["payment_config"]["tx_ref"]
    gateway.verified.add("9001")
    subscriptions.handle_webhook(callback(tx_ref))

    replay = subscriptions.handle_webhook(callback(tx_ref))
    assert replay == {"subscription_id": replay["subscription_id"], "status": "active", "changed": False}

    # A late failure report cannot undo an activation
    late = subscriptions.handle_webhook(callback(tx_ref, status="failed"))
    assert late["status"] == "active"
    assert late["changed"] is False


def test_unverified_webhook_fails_subscription(subscriptions, gateway, owner):
    tx_ref = subscriptions.initiate(owner.id, owner_plan())["payment_config"]["tx_ref"]

    outcome = subscriptions.handle_webhook(callback(tx_ref))
    assert outcome["status"] == "failed"
    assert gateway.calls == ["9001"]
    assert not subscriptions.is_active(owner.id)


def test_failed_status_skips_gateway_check(subscriptions, gateway, owner):
    tx_ref = subscriptions.initiate(owner.id, owner_plan())["payment_config"]["tx_ref"]
    assert subscriptions.handle_webhook(callback(tx_ref, status="failed"))["status"] == "failed"
    assert gateway.calls == []


def test_webhook_for_unknown_reference(subscriptions):
    with pytest.raises(SubscriptionNotFound):
        subscriptions.handle_webhook(callback("geofoncier_missing"))
    with pytest.raises(ValidationError):
        subscriptions.handle_webhook({"data": {"status": "successful"}})


def test_webhook_accepts_flat_payload(subscriptions, gateway, owner):
    tx_ref = subscriptions.initiate(owner.id, owner_plan())["payment_config"]["tx_ref"]
    gateway.verified.add("77")
    flat = {"tx_ref": tx_ref, "transaction_id": 77, "status": "successful"}
    assert subscriptions.handle_webhook(flat)["status"] == "active"


# =============================================================================
# Expiry
# =============================================================================


def activate(subscriptions, gateway, user_id, transaction_id="9001"):
    tx_ref = subscriptions.initiate(user_id, owner_plan())["payment_config"]["tx_ref"]
    gateway.verified.add(transaction_id)
    return subscriptions.handle_webhook(callback(tx_ref, transaction_id=transaction_id))["subscription_id"]


def test_expire_only_from_active(subscriptions, gateway, owner):
    subscription_id = uuid.UUID(activate(subscriptions, gateway, owner.id))
    expired = subscriptions.expire(subscription_id)
    assert expired.status == "expired"
    assert not subscriptions.is_active(owner.id)

    with pytest.raises(InvalidTransition):
        subscriptions.expire(subscription_id)
    with pytest.raises(SubscriptionNotFound):
        subscriptions.expire(uuid.uuid4())


def test_expire_due(subscriptions, gateway, owner, buyer):
    activate(subscriptions, gateway, owner.id, "1")
    activate(subscriptions, gateway, buyer.id, "2")

    assert subscriptions.expire_due(date.today()) == 0
    assert subscriptions.expire_due(date.today() + timedelta(days=31)) == 2
    assert subscriptions.expire_due(date.today() + timedelta(days=31)) == 0
    assert not has_active_subscription(subscriptions.session, owner.id)


def test_subscription_to_dict(subscriptions, owner):
    subscriptions.initiate(owner.id, owner_plan())
    data = subscription_to_dict(subscriptions.history(owner.id)[0])
    assert data["amount"] == 2000.0
    assert data["status"] == "pending"
    assert data["tx_ref"].startswith("geofoncier_")
