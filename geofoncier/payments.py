"""Payment gateway integration and subscription lifecycle.

The gateway captures the money; this module records what it reports.

Lifecycle (forward only):
    pending -> active | failed
    active  -> expired

A failed or expired subscription is never reactivated: the user starts a new
one. Every transition is a single conditional UPDATE on the expected status,
so replayed webhooks and concurrent callbacks cannot apply a change twice.
"""

import hashlib
import hmac
import logging
import uuid
from datetime import date, timedelta
from typing import Any

import httpx
from sqlalchemy import exists, select, update
from sqlalchemy.orm import Session

from .config import Settings
from .errors import (
    InvalidSignature,
    InvalidTransition,
    SubscriptionNotFound,
    UpstreamFailure,
    UpstreamTimeout,
    ValidationError,
)
from .models import Subscription, utcnow
from .pricing import CLIENT_PLAN_TYPES, plan_amount
from .schemas import BillingPeriod, PaymentInitiate, SubscriptionStatus

logger = logging.getLogger(__name__)

VALID_SUBSCRIPTION_TRANSITIONS = {
    SubscriptionStatus.PENDING: {SubscriptionStatus.ACTIVE, SubscriptionStatus.FAILED},
    SubscriptionStatus.ACTIVE: {SubscriptionStatus.EXPIRED},
    SubscriptionStatus.FAILED: set(),   # terminal
    SubscriptionStatus.EXPIRED: set(),  # terminal
}

PERIOD_LENGTH = {BillingPeriod.MONTHLY: timedelta(days=30), BillingPeriod.ANNUAL: timedelta(days=365)}


# =============================================================================
# Signature Generation and Verification
# =============================================================================


def generate_signature(body: bytes, secret: str) -> str:
    """HMAC-SHA256 hex digest of the raw request body."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str | None, secret: str) -> None:
    """Raise InvalidSignature unless ``signature`` matches ``body``.

    A missing secret rejects everything rather than accepting unsigned calls.
    """
    if not secret:
        logger.error("Webhook received but no webhook secret is configured")
        raise InvalidSignature("Webhook verification is not configured")
    if not signature:
        raise InvalidSignature("Missing webhook signature")
    expected = generate_signature(body, secret)
    if not hmac.compare_digest(expected, signature.strip()):
        logger.warning("Webhook signature mismatch")
        raise InvalidSignature()


# =============================================================================
# Gateway client
# =============================================================================


class PaymentGateway:
    """Thin client over the gateway's transaction API."""

    def __init__(self, api_url: str, secret_key: str | None, timeout: float = 30.0):
        self.api_url = api_url.rstrip("/")
        self.secret_key = secret_key
        self.timeout = timeout

    def verify_transaction(self, transaction_id: str) -> dict[str, Any]:
        """Ask the gateway whether a transaction really succeeded."""
        try:
            response = httpx.get(
                f"{self.api_url}/transactions/{transaction_id}/verify",
                headers={"Authorization": f"Bearer {self.secret_key}", "Content-Type": "application/json"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            body = response.json()
        except httpx.TimeoutException as e:
            raise UpstreamTimeout(f"Verification of transaction {transaction_id} timed out") from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Verification of transaction %s failed: %s", transaction_id, e)
            raise UpstreamFailure(f"Could not verify transaction {transaction_id}") from e

        data = body.get("data") or {}
        return {
            "verified": body.get("status") == "success" and data.get("status") == "successful",
            "data": data,
        }


def build_gateway(settings: Settings) -> PaymentGateway:
    return PaymentGateway(settings.payment_api_url, settings.payment_secret_key, settings.http_timeout_seconds)


# =============================================================================
# Subscriptions
# =============================================================================


def has_active_subscription(session: Session, user_id: uuid.UUID) -> bool:
    today = date.today()
    return bool(session.scalar(
        select(exists().where(
            Subscription.user_id == user_id,
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            (Subscription.ends_on.is_(None)) | (Subscription.ends_on >= today),
        ))
    ))


def subscription_to_dict(subscription: Subscription) -> dict[str, Any]:
    return {
        "id": str(subscription.id),
        "user_id": str(subscription.user_id),
        "plan_type": subscription.plan_type,
        "period": subscription.period,
        "amount": float(subscription.amount),
        "currency": subscription.currency,
        "status": subscription.status,
        "tx_ref": subscription.gateway_reference,
        "transaction_id": subscription.gateway_transaction_id,
        "pricing_tier": subscription.pricing_tier,
        "starts_on": subscription.starts_on.isoformat() if subscription.starts_on else None,
        "ends_on": subscription.ends_on.isoformat() if subscription.ends_on else None,
        "created_at": subscription.created_at.isoformat() if subscription.created_at else None,
    }


class SubscriptionService:
    def __init__(self, session: Session, gateway: PaymentGateway, settings: Settings):
        self.session = session
        self.gateway = gateway
        self.settings = settings

    def _get(self, subscription_id) -> Subscription:
        subscription = self.session.get(Subscription, subscription_id)
        if subscription is None:
            raise SubscriptionNotFound(f"Subscription {subscription_id} not found")
        return subscription

    def _transition(
        self,
        where,
        current: SubscriptionStatus,
        target: SubscriptionStatus,
        **values: Any,
    ) -> bool:
        """Conditional write. Returns False when the row was not in ``current``."""
        if target not in VALID_SUBSCRIPTION_TRANSITIONS[current]:
            raise InvalidTransition(f"Subscription cannot move from {current.value} to {target.value}")
        result = self.session.execute(
            update(Subscription)
            .where(where, Subscription.status == current.value)
            .values(status=target.value, updated_at=utcnow(), **values)
        )
        self.session.commit()
        return result.rowcount == 1

    def initiate(self, user_id: uuid.UUID, payload: PaymentInitiate) -> dict[str, Any]:
        """Record a pending subscription and return the checkout configuration."""
        amount, tier = plan_amount(payload.plan_type, payload.period, payload.declared_area_m2)
        # Client plans carry their own billing period
        period = CLIENT_PLAN_TYPES.get(payload.plan_type, (None, payload.period))[1]
        tx_ref = f"geofoncier_{uuid.uuid4().hex}"
        today = date.today()

        subscription = Subscription(
            user_id=user_id,
            plan_type=payload.plan_type.value,
            period=period.value,
            amount=amount,
            currency=payload.currency,
            status=SubscriptionStatus.PENDING.value,
            gateway_reference=tx_ref,
            declared_area_m2=payload.declared_area_m2,
            pricing_tier=tier,
            starts_on=today,
            ends_on=today + PERIOD_LENGTH[period],
        )
        self.session.add(subscription)
        self.session.commit()
        logger.info("Subscription %s pending for user %s (%s %s)", tx_ref, user_id, amount, payload.currency)

        return {
            "subscription_id": str(subscription.id),
            "payment_config": {
                "public_key": self.settings.payment_public_key,
                "tx_ref": tx_ref,
                "amount": float(amount),
                "currency": payload.currency,
                "payment_options": "card,mobilemoney,ussd",
                "customer": {
                    "email": payload.customer.email,
                    "phone_number": payload.customer.phone,
                    "name": payload.customer.name,
                },
                "customizations": {
                    "title": "GéoFoncier",
                    "description": f"Subscription {payload.plan_type.value} ({period.value})",
                    "logo": f"{self.settings.app_url}/images/logo.png",
                },
                "redirect_url": f"{self.settings.app_url}/payment/callback",
                "meta": {"user_id": str(user_id), "plan_type": payload.plan_type.value},
            },
        }

    def handle_webhook(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Apply a verified gateway callback. Replays leave the subscription unchanged."""
        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        tx_ref = data.get("tx_ref")
        if not tx_ref:
            raise ValidationError("Webhook payload has no tx_ref")

        subscription = self.session.scalar(
            select(Subscription).where(Subscription.gateway_reference == tx_ref)
        )
        if subscription is None:
            raise SubscriptionNotFound(f"No subscription for transaction reference {tx_ref}")

        transaction_id = data.get("id") or data.get("transaction_id")
        verified = False
        if data.get("status") == "successful" and transaction_id is not None:
            verification = self.gateway.verify_transaction(str(transaction_id))
            verified = verification["verified"]

        target = SubscriptionStatus.ACTIVE if verified else SubscriptionStatus.FAILED
        changed = self._transition(
            Subscription.gateway_reference == tx_ref,
            SubscriptionStatus.PENDING,
            target,
            gateway_transaction_id=str(transaction_id) if transaction_id is not None else None,
        )
        self.session.refresh(subscription)
        if changed:
            logger.info("Subscription %s is now %s", tx_ref, subscription.status)
        else:
            logger.info("Webhook for %s ignored: subscription already %s", tx_ref, subscription.status)
        return {"subscription_id": str(subscription.id), "status": subscription.status, "changed": changed}

    def expire(self, subscription_id) -> Subscription:
        subscription = self._get(subscription_id)
        if not self._transition(
            Subscription.id == subscription.id, SubscriptionStatus.ACTIVE, SubscriptionStatus.EXPIRED
        ):
            self.session.refresh(subscription)
            raise InvalidTransition(f"Only active subscriptions can expire (currently {subscription.status})")
        self.session.refresh(subscription)
        logger.info("Subscription %s expired", subscription.gateway_reference)
        return subscription

    def expire_due(self, today: date | None = None) -> int:
        """Expire every active subscription whose period has ended. Safe to repeat."""
        today = today or date.today()
        result = self.session.execute(
            update(Subscription)
            .where(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.ends_on.is_not(None),
                Subscription.ends_on < today,
            )
            .values(status=SubscriptionStatus.EXPIRED.value, updated_at=utcnow())
        )
        self.session.commit()
        if result.rowcount:
            logger.info("Expired %d subscription(s) ending before %s", result.rowcount, today)
        return result.rowcount

    def is_active(self, user_id: uuid.UUID) -> bool:
        return has_active_subscription(self.session, user_id)

    def history(self, user_id: uuid.UUID) -> list[Subscription]:
        return list(self.session.scalars(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
        ))
