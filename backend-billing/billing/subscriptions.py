import logging
from datetime import datetime
from typing import Callable, Optional
import stripe
from sqlalchemy.orm import Session

import crud
from errors import NotFoundError, PermissionDeniedError, ValidationError
from .config import BillingConfig
from .lifecycle import GRACE_PERIOD, Signal, SubscriptionEvent, resolve, signal_for_status
from .records import (
    TEST_SUBSCRIPTION_PREFIX,
    MembershipType,
    SubscriptionInfo,
    SubscriptionRecord,
    from_unix,
    utcnow,
)
from .stripe_gateway import StripeGateway, field, subscription_period_end, upstream_error

logger = logging.getLogger(__name__)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class SubscriptionService:
    """Cancel / reactivate on behalf of a signed-in user."""

    def __init__(self, db: Session, config: BillingConfig, gateway: StripeGateway, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.config = config
        self.gateway = gateway
        self.clock = clock

    def _load(self, user_id: str) -> SubscriptionRecord:
        record = crud.get_record(self.db, user_id)
        if record is None:
            logger.info(f"User document not found for ID: {user_id}")
            raise NotFoundError("No billing record exists for this account.", error="User not found")
        return record

    def _retrieve(self, subscription_id: str):
        try:
            return self.gateway.retrieve_subscription(subscription_id)
        except stripe.InvalidRequestError as e:
            logger.error(f"Stripe subscription retrieve error: {e}")
            raise ValidationError(str(e), error="Subscription not found in Stripe")
        except stripe.StripeError as e:
            raise upstream_error(e, "Failed to retrieve subscription")

    def _sync(self, record: SubscriptionRecord, subscription, signal: Signal) -> SubscriptionRecord:
        """Applies Stripe's answer locally so the UI does not wait for the webhook."""
        event = SubscriptionEvent(
            signal=signal,
            subscription_id=field(subscription, "id"),
            status=field(subscription, "status"),
            current_period_end=from_unix(subscription_period_end(subscription)),
        )
        updated = resolve(record, event, self.clock())
        if updated is not record:
            updated = crud.save_record(self.db, updated)
        return updated

    def cancel(self, user_id: str) -> dict:
        record = self._load(user_id)
        subscription_id = record.effective_subscription_id
        if not subscription_id:
            raise ValidationError("There is no subscription on this account.", error="No active subscription found")

        now = self.clock()
        if record.has_test_subscription:
            # Test subscriptions never reach Stripe
            crud.save_record(self.db, record.model_copy(update={
                "membership_type": MembershipType.BASIC,
                "subscription_id": None,
                "subscription": None,
                "cancelled_at": now,
                "updated_at": now,
            }))
            logger.info(f"Test subscription {subscription_id} canceled for user {user_id}")
            return {
                "message": "Test subscription canceled",
                "cancelDate": now.isoformat(),
                "status": "canceled",
                "isTestMode": True,
            }

        self.config.require("stripe_secret_key")
        existing = self._retrieve(subscription_id)
        if field(existing, "status") == "canceled":
            raise ValidationError("This subscription has already ended.", error="Subscription is already canceled")
        if field(existing, "cancel_at_period_end"):
            raise ValidationError(
                "This subscription will already end with the current billing period.",
                error="Subscription is already set to cancel at period end",
            )

        try:
            subscription = self.gateway.set_cancel_at_period_end(subscription_id, True)
        except stripe.InvalidRequestError as e:
            raise ValidationError(str(e), error="Invalid subscription. It may already be canceled.")
        except stripe.StripeError as e:
            logger.error(f"Cancel subscription error for user {user_id}: {e}", exc_info=True)
            raise upstream_error(e, "Failed to cancel subscription")

        logger.info(f"Subscription {subscription_id} set to cancel at period end for user {user_id}")
        signal = signal_for_status(field(subscription, "status"), bool(field(subscription, "cancel_at_period_end")))
        updated = self._sync(record, subscription, signal)
        period_end = from_unix(subscription_period_end(subscription))
        return {
            "message": "Subscription will be canceled at the end of the billing period",
            "cancelDate": _isoformat(period_end or (updated.cancelled_at or now) + GRACE_PERIOD),
            "status": field(subscription, "status"),
        }

    def reactivate(self, user_id: str) -> dict:
        record = self._load(user_id)
        subscription_id = record.effective_subscription_id
        if not subscription_id:
            raise ValidationError(
                "You do not have an active subscription to reactivate. Please create a new subscription.",
                error="No active subscription found",
            )

        if record.has_test_subscription:
            updated = resolve(record, SubscriptionEvent(signal=Signal.REACTIVATE, subscription_id=subscription_id), self.clock())
            if updated is not record:
                updated = crud.save_record(self.db, updated)
            return {
                "message": "Subscription reactivated successfully",
                "status": updated.subscription_status,
                "cancel_at_period_end": False,
                "current_period_end": _isoformat(updated.subscription.current_period_end if updated.subscription else None),
                "isTestMode": True,
            }

        self.config.require("stripe_secret_key")
        existing = self._retrieve(subscription_id)
        status = field(existing, "status")
        cancel_at_period_end = bool(field(existing, "cancel_at_period_end"))
        if status == "canceled":
            raise ValidationError(
                "This subscription has been canceled. Please create a new subscription.",
                error="Subscription is already canceled",
            )
        if not cancel_at_period_end:
            if status == "active":
                raise ValidationError(
                    "Your subscription is already active and not scheduled for cancellation.",
                    error="Subscription is already active",
                )
            raise ValidationError(
                "This subscription is not scheduled for cancellation.",
                error="Subscription cannot be reactivated",
            )

        try:
            subscription = self.gateway.set_cancel_at_period_end(subscription_id, False)
        except stripe.InvalidRequestError as e:
            raise ValidationError(str(e), error="Invalid subscription. It may have been canceled.")
        except stripe.StripeError as e:
            logger.error(f"Reactivate subscription error for user {user_id}: {e}", exc_info=True)
            raise upstream_error(e, "Failed to reactivate subscription")

        logger.info(f"Subscription {subscription_id} reactivated for user {user_id}")
        if field(subscription, "status") == "active":
            signal = Signal.REACTIVATE
        else:
            signal = signal_for_status(field(subscription, "status"))
        self._sync(record, subscription, signal)
        return {
            "message": "Subscription reactivated successfully",
            "status": field(subscription, "status"),
            "cancel_at_period_end": bool(field(subscription, "cancel_at_period_end")),
            "current_period_end": _isoformat(from_unix(subscription_period_end(subscription))),
        }

    def grant_test_premium(self, user_id: str, email: Optional[str] = None) -> dict:
        """Development shortcut: premium with a local test subscription."""
        if not self.config.development:
            raise PermissionDeniedError(
                "This endpoint is only available in development mode",
                error="Not allowed in production",
            )

        now = self.clock()
        record = crud.get_or_create_record(self.db, user_id, email)
        subscription_id = f"{TEST_SUBSCRIPTION_PREFIX}premium_{int(now.timestamp() * 1000)}"
        crud.save_record(self.db, record.model_copy(update={
            "membership_type": MembershipType.PREMIUM,
            "subscription_id": subscription_id,
            "subscription": SubscriptionInfo(id=subscription_id, status="active", plan="monthly", updated_at=now),
            "cancelled_at": None,
            "updated_at": now,
        }))
        logger.info(f"User {user_id} granted test premium ({subscription_id})")
        return {
            "success": True,
            "message": "User membership updated to premium",
            "membershipType": MembershipType.PREMIUM.value,
            "subscriptionId": subscription_id,
        }
