"""
Subscription lifecycle resolver.

Pure decision logic: given the stored record and an incoming signal,
compute the next record. Nothing here touches the store or Stripe, and
nothing here raises; every transition is state-driven so replaying the
same signal is a no-op (webhooks are at-least-once and unordered).

Any status other than active or canceled (incomplete, trialing, past_due,
unpaid, ...) maps to the inactive signal and downgrades to basic, even when
it arrives late after a checkout already granted premium.

Grace period boundary: when Stripe has reported `current_period_end` for
the cancelled subscription, that is the boundary. `cancelled_at + 30 days`
is only used when no period end was ever recorded (test subscriptions,
legacy documents).
"""
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Optional, Tuple
from pydantic import BaseModel, ConfigDict

from .records import MembershipType, SubscriptionInfo, SubscriptionRecord, ensure_utc

logger = logging.getLogger(__name__)

GRACE_PERIOD = timedelta(days=30)
INACTIVE_STATUSES = ("canceled", "inactive")

REASON_GRACE_EXPIRED = "Grace period expired"
REASON_STATUS_INACTIVE = "Subscription status inactive"
REASON_NO_SUBSCRIPTION = "No active subscription ID"


class Signal(str, Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    ACTIVE = "active"
    CANCEL_AT_PERIOD_END = "cancel_at_period_end"
    CANCELED = "canceled"
    INACTIVE = "inactive"
    REACTIVATE = "reactivate"


class MembershipState(str, Enum):
    PREMIUM = "premium"
    GRACE = "grace"  # premium until the period ends
    BASIC = "basic"


class SubscriptionEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    signal: Signal
    subscription_id: Optional[str] = None
    status: Optional[str] = None
    current_period_end: Optional[datetime] = None
    customer_id: Optional[str] = None
    plan: Optional[str] = None


def signal_for_status(status: Optional[str], cancel_at_period_end: bool = False) -> Signal:
    if status == "active":
        return Signal.CANCEL_AT_PERIOD_END if cancel_at_period_end else Signal.ACTIVE
    if status == "canceled":
        return Signal.CANCELED
    return Signal.INACTIVE


def membership_state(record: SubscriptionRecord) -> MembershipState:
    if not record.is_premium:
        return MembershipState.BASIC
    if record.subscription is not None and record.subscription.cancel_at_period_end:
        return MembershipState.GRACE
    return MembershipState.PREMIUM


# --- Transitions ---

def _subscription(record: SubscriptionRecord) -> SubscriptionInfo:
    return record.subscription or SubscriptionInfo()


def _to_premium(record: SubscriptionRecord, event: SubscriptionEvent, now: datetime) -> SubscriptionRecord:
    current = _subscription(record)
    subscription_id = event.subscription_id or record.effective_subscription_id
    subscription = current.model_copy(update={
        "id": subscription_id,
        "status": "active",
        "cancel_at_period_end": False,
        "current_period_end": event.current_period_end or current.current_period_end,
        "plan": event.plan or current.plan,
    })
    return record.model_copy(update={
        "membership_type": MembershipType.PREMIUM,
        "subscription_id": subscription_id,
        "stripe_customer_id": event.customer_id or record.stripe_customer_id,
        "subscription": subscription,
        "cancelled_at": None,
    })


def _to_grace(record: SubscriptionRecord, event: SubscriptionEvent, now: datetime) -> SubscriptionRecord:
    current = _subscription(record)
    subscription_id = event.subscription_id or record.effective_subscription_id
    subscription = current.model_copy(update={
        "id": subscription_id,
        "status": "active",
        "cancel_at_period_end": True,
        "current_period_end": event.current_period_end or current.current_period_end,
        "plan": event.plan or current.plan,
    })
    return record.model_copy(update={
        "membership_type": MembershipType.PREMIUM,
        "subscription_id": subscription_id,
        "stripe_customer_id": event.customer_id or record.stripe_customer_id,
        "subscription": subscription,
        # First observed cancellation wins
        "cancelled_at": record.cancelled_at or now,
    })


def _to_canceled(record: SubscriptionRecord, event: SubscriptionEvent, now: datetime) -> SubscriptionRecord:
    current = _subscription(record)
    subscription = current.model_copy(update={
        # subscription.id keeps the ended subscription so late events for it are recognised
        "id": event.subscription_id or current.id or record.subscription_id,
        "status": "canceled",
        "cancel_at_period_end": False,
    })
    return record.model_copy(update={
        "membership_type": MembershipType.BASIC,
        "subscription_id": None,
        "subscription": subscription,
        "cancelled_at": record.cancelled_at or now,
    })


def _to_inactive(record: SubscriptionRecord, event: SubscriptionEvent, now: datetime) -> SubscriptionRecord:
    current = _subscription(record)
    subscription = current.model_copy(update={
        "id": event.subscription_id or current.id or record.subscription_id,
        "status": event.status or "inactive",
    })
    return record.model_copy(update={
        "membership_type": MembershipType.BASIC,
        "subscription_id": None,
        "subscription": subscription,
    })


Transition = Callable[[SubscriptionRecord, SubscriptionEvent, datetime], SubscriptionRecord]

TRANSITIONS: Dict[Signal, Tuple[MembershipState, Transition]] = {
    Signal.CHECKOUT_COMPLETED: (MembershipState.PREMIUM, _to_premium),
    Signal.ACTIVE: (MembershipState.PREMIUM, _to_premium),
    Signal.REACTIVATE: (MembershipState.PREMIUM, _to_premium),
    Signal.CANCEL_AT_PERIOD_END: (MembershipState.GRACE, _to_grace),
    Signal.CANCELED: (MembershipState.BASIC, _to_canceled),
    Signal.INACTIVE: (MembershipState.BASIC, _to_inactive),
}


def next_state(signal: Signal) -> MembershipState:
    return TRANSITIONS[signal][0]


def is_stale(record: SubscriptionRecord, event: SubscriptionEvent) -> bool:
    """True when the event is about a subscription the record has moved past."""
    if not event.subscription_id:
        return False
    current = record.effective_subscription_id
    if not current:
        return False
    if record.subscription_status == "canceled":
        # Canceled is terminal on Stripe's side for every signal, checkout included
        return current == event.subscription_id
    if event.signal == Signal.CHECKOUT_COMPLETED:
        return False
    return current != event.subscription_id


def _comparable(record: SubscriptionRecord) -> dict:
    data = record.model_dump(exclude={"updated_at"})
    if data["subscription"] is not None:
        data["subscription"].pop("updated_at", None)
    return data


def resolve(record: SubscriptionRecord, event: SubscriptionEvent, now: datetime) -> SubscriptionRecord:
    """
    Returns the next record. When the event changes nothing (replay, stale
    delivery) the input record itself is returned so callers can skip the write.
    """
    now = ensure_utc(now)
    if is_stale(record, event):
        logger.info(
            f"Ignoring stale {event.signal.value} for subscription {event.subscription_id} "
            f"(user {record.user_id} holds {record.effective_subscription_id})"
        )
        return record

    target, transition = TRANSITIONS[event.signal]
    candidate = transition(record, event, now)
    if _comparable(candidate) == _comparable(record):
        return record

    logger.info(f"User {record.user_id}: {membership_state(record).value} -> {target.value} ({event.signal.value})")
    return candidate.model_copy(update={
        "updated_at": now,
        "subscription": candidate.subscription.model_copy(update={"updated_at": now}),
    })


# --- Grace period (evaluated by the sweeper) ---

def grace_period_end(record: SubscriptionRecord) -> Tuple[Optional[datetime], Optional[str]]:
    """Returns (boundary, source) for a cancelled record, (None, None) otherwise."""
    if record.cancelled_at is None:
        return None, None
    subscription = record.subscription
    if subscription is not None and subscription.current_period_end is not None:
        return ensure_utc(subscription.current_period_end), "current_period_end"
    return ensure_utc(record.cancelled_at) + GRACE_PERIOD, "cancelled_at"


def downgrade_reason(record: SubscriptionRecord, now: datetime) -> Optional[str]:
    """First matching reason a premium record should be downgraded, else None."""
    now = ensure_utc(now)
    boundary, _ = grace_period_end(record)
    if boundary is not None and now > boundary:
        return REASON_GRACE_EXPIRED
    if record.subscription_status in INACTIVE_STATUSES:
        return REASON_STATUS_INACTIVE
    if not record.effective_subscription_id:
        return REASON_NO_SUBSCRIPTION
    return None


def downgrade(record: SubscriptionRecord, reason: str, now: datetime) -> SubscriptionRecord:
    now = ensure_utc(now)
    return record.model_copy(update={
        "membership_type": MembershipType.BASIC,
        "downgraded_at": now,
        "downgrade_reason": reason,
        "updated_at": now,
    })
