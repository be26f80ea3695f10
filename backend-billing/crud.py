from typing import List, Optional
from sqlalchemy import func
from sqlalchemy.orm import Session
from models import User
from billing.records import MembershipType, SubscriptionInfo, SubscriptionRecord, ensure_utc
import logging

logger = logging.getLogger(__name__)

def to_record(user: User) -> SubscriptionRecord:
    subscription = None
    if any(value is not None for value in (
        user.subscription_ref_id,
        user.subscription_status,
        user.cancel_at_period_end,
        user.current_period_end,
        user.subscription_plan,
    )):
        subscription = SubscriptionInfo(
            id=user.subscription_ref_id,
            status=user.subscription_status,
            cancel_at_period_end=bool(user.cancel_at_period_end),
            current_period_end=ensure_utc(user.current_period_end),
            plan=user.subscription_plan,
            updated_at=ensure_utc(user.subscription_updated_at),
        )
    return SubscriptionRecord(
        user_id=user.id,
        email=user.email,
        membership_type=user.membership_type or MembershipType.FREE.value,
        subscription_id=user.subscription_id,
        stripe_customer_id=user.stripe_customer_id,
        subscription=subscription,
        cancelled_at=ensure_utc(user.cancelled_at),
        downgraded_at=ensure_utc(user.downgraded_at),
        downgrade_reason=user.downgrade_reason,
        updated_at=ensure_utc(user.updated_at),
    )

def get_user(db: Session, user_id: str):
    return db.query(User).filter(User.id == user_id).first()

def get_record(db: Session, user_id: str) -> Optional[SubscriptionRecord]:
    user = get_user(db, user_id)
    return to_record(user) if user else None

def create_user(db: Session, user_id: str, email: str = None):
    db_user = User(id=user_id, email=email, membership_type=MembershipType.FREE.value)
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    return db_user

def get_or_create_record(db: Session, user_id: str, email: str = None) -> SubscriptionRecord:
    user = get_user(db, user_id)
    if not user:
        logger.info(f"Creating record for unknown user {user_id}")
        user = create_user(db, user_id, email)
    elif email and not user.email:
        user.email = email
        db.commit()
        db.refresh(user)
    return to_record(user)

def get_record_by_customer_id(db: Session, stripe_customer_id: str) -> Optional[SubscriptionRecord]:
    user = db.query(User).filter(User.stripe_customer_id == stripe_customer_id).first()
    return to_record(user) if user else None

def list_premium_records(db: Session) -> List[SubscriptionRecord]:
    users = db.query(User).filter(User.membership_type == MembershipType.PREMIUM.value).all()
    return [to_record(user) for user in users]

def find_premium_records_by_email(db: Session, email: str) -> List[SubscriptionRecord]:
    users = (
        db.query(User)
        .filter(func.lower(User.email) == email.lower(), User.membership_type == MembershipType.PREMIUM.value)
        .all()
    )
    return [to_record(user) for user in users]

def find_premium_record_by_subscription(db: Session, subscription_id: str) -> Optional[SubscriptionRecord]:
    # Full scan: legacy documents only carry subscription.id
    for record in list_premium_records(db):
        if record.effective_subscription_id == subscription_id:
            return record
    return None

def save_record(db: Session, record: SubscriptionRecord) -> SubscriptionRecord:
    """Writes the whole billing slice of the record (last writer wins)."""
    user = get_user(db, record.user_id)
    if not user:
        user = User(id=record.user_id)
        db.add(user)

    subscription = record.subscription
    user.email = record.email or user.email
    user.membership_type = MembershipType(record.membership_type).value
    user.subscription_id = record.subscription_id
    user.stripe_customer_id = record.stripe_customer_id
    user.subscription_ref_id = subscription.id if subscription else None
    user.subscription_status = subscription.status if subscription else None
    user.cancel_at_period_end = subscription.cancel_at_period_end if subscription else None
    user.current_period_end = subscription.current_period_end if subscription else None
    user.subscription_plan = subscription.plan if subscription else None
    user.subscription_updated_at = subscription.updated_at if subscription else None
    user.cancelled_at = record.cancelled_at
    user.downgraded_at = record.downgraded_at
    user.downgrade_reason = record.downgrade_reason
    if record.updated_at is not None:
        user.updated_at = record.updated_at

    db.commit()
    db.refresh(user)
    return to_record(user)
