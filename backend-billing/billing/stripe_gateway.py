import logging
from typing import Any, List, Optional
import stripe
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type, before_sleep_log

from errors import UpstreamError
from .config import BillingConfig

logger = logging.getLogger(__name__)


def field(obj: Any, key: str, default=None):
    """Item access that works for Stripe objects and plain webhook dicts."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError):
        return default
    return default if value is None else value


def subscription_period_end(subscription) -> Optional[int]:
    # Newer API versions report the period on the subscription items
    value = field(subscription, "current_period_end")
    if value is None:
        items = field(field(subscription, "items"), "data") or []
        if items:
            value = field(items[0], "current_period_end")
    return value


def upstream_error(exc: Exception, error: str) -> UpstreamError:
    """Wraps a Stripe failure, keeping its code and type for diagnostics."""
    details = {
        "code": getattr(exc, "code", None),
        "type": type(exc).__name__,
    }
    error_body = getattr(exc, "error", None)
    if error_body is not None and getattr(error_body, "type", None):
        details["type"] = error_body.type
    message = getattr(exc, "user_message", None) or str(exc) or error
    return UpstreamError(message, error=error, details=details)


def configure_stripe(config: BillingConfig) -> None:
    # Fail fast instead of retrying; Stripe redelivers webhooks on its own
    stripe.max_network_retries = 0
    stripe.default_http_client = stripe.RequestsClient(timeout=config.stripe_timeout_seconds)


class StripeGateway:
    def __init__(self, config: BillingConfig):
        self.config = config

    @property
    def api_key(self) -> str:
        self.config.require("stripe_secret_key")
        return self.config.stripe_secret_key

    def construct_event(self, payload: bytes, signature: str):
        """Raises stripe.SignatureVerificationError or ValueError on bad input."""
        self.config.require("stripe_webhook_secret")
        return stripe.Webhook.construct_event(payload, signature, self.config.stripe_webhook_secret)

    def create_checkout_session(self, **params):
        return stripe.checkout.Session.create(api_key=self.api_key, **params)

    def retrieve_subscription(self, subscription_id: str):
        return stripe.Subscription.retrieve(subscription_id, api_key=self.api_key)

    def set_cancel_at_period_end(self, subscription_id: str, cancel_at_period_end: bool):
        return stripe.Subscription.modify(
            subscription_id,
            api_key=self.api_key,
            cancel_at_period_end=cancel_at_period_end,
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        retry=retry_if_exception_type(stripe.APIConnectionError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    def find_active_subscriptions(self, email: str) -> List[Any]:
        """Active subscriptions across every Stripe customer with this email (read-only)."""
        active = []
        customers = stripe.Customer.list(api_key=self.api_key, email=email, limit=10)
        for customer in field(customers, "data", []):
            subscriptions = stripe.Subscription.list(
                api_key=self.api_key,
                customer=field(customer, "id"),
                status="active",
                limit=10,
            )
            active.extend(field(subscriptions, "data", []))
        return active
