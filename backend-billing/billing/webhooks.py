"""
Stripe webhook processing.

Events arrive at least once and in any order. Each one is mapped to a
lifecycle signal and applied through the resolver, which is idempotent, so
redeliveries are harmless. Events whose user cannot be resolved are logged
and acknowledged: Stripe retrying them would never succeed.
"""
import json
import logging
from datetime import datetime
from typing import Callable, Optional
import stripe
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import crud
from errors import UpstreamError, ValidationError
from .lifecycle import Signal, SubscriptionEvent, resolve, signal_for_status
from .records import SubscriptionRecord, from_unix, utcnow
from .stripe_gateway import StripeGateway, field, subscription_period_end

logger = logging.getLogger(__name__)


def _object_id(value) -> Optional[str]:
    # Stripe sends either the id or the expanded object
    if value is None or isinstance(value, str):
        return value
    return field(value, "id")


class WebhookProcessor:
    def __init__(self, db: Session, gateway: StripeGateway, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.gateway = gateway
        self.clock = clock
        self.handlers = {
            "checkout.session.completed": self.handle_checkout_completed,
            "customer.subscription.created": self.handle_subscription_changed,
            "customer.subscription.updated": self.handle_subscription_changed,
            "customer.subscription.deleted": self.handle_subscription_deleted,
            "invoice.payment_succeeded": self.handle_invoice,
            "invoice.payment_failed": self.handle_invoice,
        }

    def verify(self, payload: bytes, signature: Optional[str]) -> dict:
        """Checks the signature on the raw body and returns the parsed event."""
        self.gateway.config.require("stripe_webhook_secret")
        if not signature:
            logger.error("Missing Stripe-Signature header")
            raise ValidationError("Missing Stripe-Signature header.", error="Missing signature")
        try:
            self.gateway.construct_event(payload, signature)
        except stripe.SignatureVerificationError as e:
            logger.error(f"Stripe webhook signature verification failed: {e}")
            raise ValidationError("Webhook signature verification failed.", error="Invalid webhook signature")
        except ValueError as e:
            logger.error(f"Invalid webhook payload: {e}")
            raise ValidationError("Webhook payload could not be parsed.", error="Invalid payload")
        return json.loads(payload)

    def process(self, event: dict) -> dict:
        event_type = field(event, "type")
        handler = self.handlers.get(event_type)
        if handler is None:
            logger.info(f"Unhandled event type: {event_type}")
            return {"eventType": event_type, "applied": False}

        obj = field(field(event, "data"), "object", {})
        logger.info(f"Processing Stripe event {field(event, 'id')} ({event_type})")
        try:
            applied = handler(obj)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to apply {event_type}: {e}", exc_info=True)
            raise UpstreamError("Could not update the user record.", error="Webhook processing failed")
        return {"eventType": event_type, "applied": applied}

    # --- User resolution ---

    def find_record(
        self,
        user_id: Optional[str],
        customer_id: Optional[str],
        subscription_id: Optional[str],
        email: Optional[str] = None,
    ) -> Optional[SubscriptionRecord]:
        if user_id:
            return crud.get_or_create_record(self.db, user_id, email)
        if customer_id:
            record = crud.get_record_by_customer_id(self.db, customer_id)
            if record:
                return record
        if subscription_id:
            # Rare fallback, scans premium users
            record = crud.find_premium_record_by_subscription(self.db, subscription_id)
            if record:
                return record
        logger.warning(
            f"Could not resolve user for customer {customer_id} / subscription {subscription_id}; acknowledging"
        )
        return None

    def apply(self, record: SubscriptionRecord, event: SubscriptionEvent) -> bool:
        updated = resolve(record, event, self.clock())
        if updated is record:
            logger.info(f"No change for user {record.user_id} ({event.signal.value})")
            return False
        crud.save_record(self.db, updated)
        return True

    # --- Handlers ---

    def handle_checkout_completed(self, session: dict) -> bool:
        if field(session, "mode") != "subscription":
            logger.info(f"Ignoring checkout session {field(session, 'id')} in mode {field(session, 'mode')}")
            return False

        metadata = field(session, "metadata", {})
        subscription_id = _object_id(field(session, "subscription"))
        customer_id = _object_id(field(session, "customer"))
        email = field(field(session, "customer_details"), "email") or field(session, "customer_email")

        record = self.find_record(
            field(metadata, "userId") or field(session, "client_reference_id"),
            customer_id,
            subscription_id,
            email,
        )
        if record is None:
            return False

        return self.apply(record, SubscriptionEvent(
            signal=Signal.CHECKOUT_COMPLETED,
            subscription_id=subscription_id,
            status="active",
            customer_id=customer_id,
            plan=field(metadata, "plan"),
        ))

    def _subscription_event(self, subscription: dict, signal: Signal) -> bool:
        metadata = field(subscription, "metadata", {})
        subscription_id = field(subscription, "id")
        customer_id = _object_id(field(subscription, "customer"))

        record = self.find_record(field(metadata, "userId"), customer_id, subscription_id)
        if record is None:
            return False

        return self.apply(record, SubscriptionEvent(
            signal=signal,
            subscription_id=subscription_id,
            status=field(subscription, "status"),
            current_period_end=from_unix(subscription_period_end(subscription)),
            customer_id=customer_id,
            plan=field(metadata, "plan"),
        ))

    def handle_subscription_changed(self, subscription: dict) -> bool:
        signal = signal_for_status(
            field(subscription, "status"),
            bool(field(subscription, "cancel_at_period_end", False)),
        )
        return self._subscription_event(subscription, signal)

    def handle_subscription_deleted(self, subscription: dict) -> bool:
        return self._subscription_event(subscription, Signal.CANCELED)

    def handle_invoice(self, invoice: dict) -> bool:
        # Status changes follow as customer.subscription.updated
        logger.info(
            f"Invoice {field(invoice, 'id')} status {field(invoice, 'status')} "
            f"for subscription {_object_id(field(invoice, 'subscription'))}"
        )
        return False
