from uuid import uuid4

from sqlalchemy import Column, DateTime, Numeric, String
from sqlalchemy.sql import func

from paywall.core.database import Base


def _new_subscription_id() -> str:
    return uuid4().hex


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String, primary_key=True, index=True, default=_new_subscription_id)
    user_id = Column(String, index=True)
    email = Column(String, index=True)
    plan_id = Column(String, index=True)
    # Deduplication key: one subscription per gateway payment.
    payment_id = Column(String, index=True, unique=True, nullable=False)
    payment_method = Column(String, nullable=True)
    amount = Column(Numeric(10, 2), nullable=True)
    status = Column(String, index=True, default="active")
    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), index=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
