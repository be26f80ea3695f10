"""
Checkout Session Issuer.

Duplicate prevention is a best-effort check-then-act: two checkouts for
the same email racing each other can both pass. A hard guarantee would
need a unique constraint on (email, active subscription) in the store.
"""
import logging
from typing import Optional
import stripe
from sqlalchemy.orm import Session

import crud
from errors import ConflictError, ConfigurationError, ValidationError
from .config import BillingConfig
from .records import SubscriptionRecord
from .stripe_gateway import StripeGateway, field, upstream_error

logger = logging.getLogger(__name__)

TERMS_MESSAGE = (
    "By subscribing, you agree to our Terms of Service and authorize Readung "
    "to charge your account according to your selected plan."
)


def _duplicate(source: str) -> ConflictError:
    return ConflictError(
        "An active subscription already exists for this email address.",
        details={"code": "duplicate_subscription", "source": source},
    )


def blocks_checkout(existing: SubscriptionRecord, user_id: str) -> bool:
    """Whether an existing premium record with the same email blocks a new checkout."""
    if existing.user_id == user_id:
        return False  # upgrade / renewal path
    if existing.has_test_subscription:
        return False
    return bool(existing.effective_subscription_id) and existing.subscription_status == "active"


class CheckoutService:
    def __init__(self, db: Session, config: BillingConfig, gateway: StripeGateway):
        self.db = db
        self.config = config
        self.gateway = gateway

    def check_duplicate(self, user_id: str, email: str) -> None:
        for existing in crud.find_premium_records_by_email(self.db, email):
            if blocks_checkout(existing, user_id):
                logger.warning(
                    f"Checkout blocked for user {user_id}: {email} already subscribed on user {existing.user_id}"
                )
                raise _duplicate("store")

        if self.config.is_test_mode:
            return

        # The store and Stripe can disagree; ask Stripe as well
        try:
            active = self.gateway.find_active_subscriptions(email)
        except stripe.StripeError as e:
            logger.error(f"Stripe duplicate lookup failed for {email}: {e}")
            raise upstream_error(e, "Could not verify existing subscriptions")

        if active:
            # Any active subscription blocks, including one owned by this user
            logger.warning(
                f"Checkout blocked for user {user_id}: Stripe subscription {field(active[0], 'id')} is active for {email}"
            )
            raise _duplicate("processor")

    def create_checkout_session(self, plan: str, user_id: str, email: str, return_url: Optional[str] = None) -> str:
        if not plan or not user_id or not email:
            raise ValidationError("plan, userId and userEmail are required.", error="Missing required fields")

        if plan not in self.config.plans:
            raise ValidationError(
                f"Unknown plan '{plan}'.",
                error="Invalid plan selected",
                details={"availablePlans": self.config.plans},
            )

        price_id = self.config.price_for(plan)
        if not price_id:
            raise ConfigurationError(f"No price configured for plan '{plan}'.", details={"missing": f"STRIPE_PRICE_{plan.upper()}"})
        self.config.require("stripe_secret_key")

        self.check_duplicate(user_id, email)

        base_url = self.config.app_base_url
        try:
            session = self.gateway.create_checkout_session(
                payment_method_types=["card"],
                mode="subscription",
                customer_email=email,
                locale="en",
                client_reference_id=user_id,
                metadata={"userId": user_id, "plan": plan},
                subscription_data={"metadata": {"userId": user_id, "plan": plan}},
                line_items=[{"price": price_id, "quantity": 1}],
                success_url=f"{base_url}/profile?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=return_url or f"{base_url}/profile",
                custom_text={"submit": {"message": TERMS_MESSAGE}},
            )
        except stripe.StripeError as e:
            logger.error(f"Checkout session error for user {user_id}: {e}", exc_info=True)
            raise upstream_error(e, "Failed to create checkout session")

        logger.info(f"Checkout session created for user {user_id}: {field(session, 'id')}")
        return field(session, "url")
