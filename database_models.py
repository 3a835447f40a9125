from sqlalchemy import Column, String, Boolean, DateTime
from database import Base


class BillingSubscription(Base):
    """
    Billing subscription row - exactly one per user id.
    Cancellation is a status, rows are never deleted.
    """
    __tablename__ = "billing_subscriptions"

    user_id = Column(String, primary_key=True, index=True)
    plan = Column(String, nullable=False, default="FREE")
    status = Column(String, nullable=False, default="ACTIVE")
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    past_due_marked_at = Column(DateTime(timezone=True), nullable=True)
    grace_period_ends_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)
