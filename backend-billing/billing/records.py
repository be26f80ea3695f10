from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict

# Subscriptions created by the development grant; never sent to Stripe
TEST_SUBSCRIPTION_PREFIX = "sub_test_"


class MembershipType(str, Enum):
    FREE = "free"
    BASIC = "basic"
    PREMIUM = "premium"


def is_test_subscription(subscription_id: Optional[str]) -> bool:
    return bool(subscription_id) and subscription_id.startswith(TEST_SUBSCRIPTION_PREFIX)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on the way back; every stored timestamp is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_unix(timestamp: Optional[int]) -> Optional[datetime]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc)


class SubscriptionInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None  # legacy location of the subscription id
    status: Optional[str] = None
    cancel_at_period_end: bool = False
    current_period_end: Optional[datetime] = None
    plan: Optional[str] = None
    updated_at: Optional[datetime] = None


class SubscriptionRecord(BaseModel):
    """The billing-relevant slice of a user document."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    email: Optional[str] = None
    membership_type: MembershipType = MembershipType.FREE
    subscription_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    subscription: Optional[SubscriptionInfo] = None
    cancelled_at: Optional[datetime] = None
    downgraded_at: Optional[datetime] = None
    downgrade_reason: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def effective_subscription_id(self) -> Optional[str]:
        # Older documents only carry subscription.id
        if self.subscription_id:
            return self.subscription_id
        if self.subscription is not None:
            return self.subscription.id
        return None

    @property
    def is_premium(self) -> bool:
        return self.membership_type == MembershipType.PREMIUM

    @property
    def has_test_subscription(self) -> bool:
        return is_test_subscription(self.effective_subscription_id)

    @property
    def subscription_status(self) -> Optional[str]:
        return self.subscription.status if self.subscription is not None else None
