from sqlalchemy import Boolean, Column, String, DateTime
from sqlalchemy.sql import func
from database import Base

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, index=True)  # Firebase uid
    email = Column(String, index=True, nullable=True)
    membership_type = Column(String, default="free", index=True)  # free, basic, premium
    subscription_id = Column(String, nullable=True, index=True)
    stripe_customer_id = Column(String, nullable=True, index=True)

    # Nested subscription object; all columns null means "no subscription"
    subscription_ref_id = Column(String, nullable=True)  # legacy subscription.id
    subscription_status = Column(String, nullable=True)  # active, past_due, canceled, inactive, ...
    cancel_at_period_end = Column(Boolean, nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    subscription_plan = Column(String, nullable=True)
    subscription_updated_at = Column(DateTime(timezone=True), nullable=True)

    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    downgraded_at = Column(DateTime(timezone=True), nullable=True)
    downgrade_reason = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
