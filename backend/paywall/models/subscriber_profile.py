from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, String
from sqlalchemy.sql import func

from paywall.core.database import Base


class SubscriberProfile(Base):
    """Denormalized subscriber flags for fast UI reads.

    Rows are written alongside subscription changes and may lag behind the
    ``subscriptions`` table; ``cached_at`` records when the flags were last
    confirmed against it.
    """

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, index=True, unique=True, nullable=False)
    user_id = Column(String, index=True, nullable=True)
    display_name = Column(String, nullable=True)
    is_subscriber = Column(Boolean, default=False)
    subscription_status = Column(String, nullable=True)
    plan_id = Column(String, nullable=True)
    payment_id = Column(String, nullable=True)
    payment_method = Column(String, nullable=True)
    subscription_start_date = Column(DateTime(timezone=True), nullable=True)
    subscription_end_date = Column(DateTime(timezone=True), nullable=True)
    amount = Column(Numeric(10, 2), nullable=True)
    cached_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
