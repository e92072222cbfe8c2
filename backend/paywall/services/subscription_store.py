from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from paywall.core.errors import ValidationError
from paywall.core.settings import settings
from paywall.models.subscriber_profile import SubscriberProfile
from paywall.models.subscription import Subscription
from paywall.schemas.subscription import PaymentMethod, SubscriptionStatus
from paywall.services.plans import find_plan, get_plan

logger = logging.getLogger(__name__)

MANUAL_FIX_PREFIX = "manual-fix-"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_email(value: str | None) -> str:
    return str(value or "").strip().lower()


@dataclass(frozen=True)
class SubscriberIdentity:
    """Who a subscription belongs to: an email address or an account id."""

    kind: str
    value: str

    EMAIL = "email"
    USER_ID = "user_id"

    @classmethod
    def email(cls, value: str) -> "SubscriberIdentity":
        email = normalize_email(value)
        if not email:
            raise ValidationError("Email is required")
        return cls(kind=cls.EMAIL, value=email)

    @classmethod
    def user_id(cls, value: str) -> "SubscriberIdentity":
        uid = str(value or "").strip()
        if not uid:
            raise ValidationError("userId is required")
        return cls(kind=cls.USER_ID, value=uid)

    @classmethod
    def parse(cls, value: str) -> "SubscriberIdentity":
        raw = str(value or "").strip()
        if "@" in raw:
            return cls.email(raw)
        return cls.user_id(raw)


def is_subscription_active(sub: Subscription, now: datetime | None = None) -> bool:
    now = now or utcnow()
    if (sub.status or "") == SubscriptionStatus.CANCELLED.value:
        return False
    end = as_utc(sub.end_date)
    return end is not None and end > now


def get_subscription_by_payment_id(db: Session, payment_id: str) -> Subscription | None:
    pid = str(payment_id or "").strip()
    if not pid:
        return None
    return db.query(Subscription).filter(Subscription.payment_id == pid).first()


def list_by_email(db: Session, email: str) -> list[Subscription]:
    return (
        db.query(Subscription)
        .filter(Subscription.email == normalize_email(email))
        .order_by(Subscription.end_date.desc())
        .all()
    )


def subscriptions_for_identity(db: Session, identity: SubscriberIdentity) -> list[Subscription]:
    """All rows that belong to the identity, whichever key they were stored under."""
    if identity.kind == SubscriberIdentity.EMAIL:
        criteria = [Subscription.email == identity.value, Subscription.user_id == identity.value]
    else:
        criteria = [Subscription.user_id == identity.value]
        profile = db.query(SubscriberProfile).filter(SubscriberProfile.user_id == identity.value).first()
        if profile is not None and profile.email:
            criteria.append(Subscription.email == normalize_email(profile.email))
    return db.query(Subscription).filter(or_(*criteria)).all()


def get_active_subscription(
    db: Session,
    identity: SubscriberIdentity | str,
    now: datetime | None = None,
) -> Subscription | None:
    if isinstance(identity, str):
        identity = SubscriberIdentity.parse(identity)
    now = now or utcnow()
    active = [s for s in subscriptions_for_identity(db, identity) if is_subscription_active(s, now)]
    if not active:
        return None
    return max(active, key=lambda s: as_utc(s.end_date))


def has_active_subscription(db: Session, identity: SubscriberIdentity | str, now: datetime | None = None) -> bool:
    return get_active_subscription(db, identity, now=now) is not None


def ensure_subscription(
    db: Session,
    *,
    user_id: str | None,
    email: str,
    plan_id: str,
    payment_id: str,
    payment_method: str,
    amount: Decimal | float | None = None,
    now: datetime | None = None,
) -> tuple[Subscription, bool]:
    """Create the subscription for ``payment_id`` unless one already exists.

    Returns the row and whether this call inserted it. The unique index on
    ``payment_id`` decides concurrent inserts: the loser rolls back and gets
    the winner's row.
    """
    pid = str(payment_id or "").strip()
    if not pid:
        raise ValidationError("paymentId is required")
    existing = get_subscription_by_payment_id(db, pid)
    if existing is not None:
        logger.info("subscriptions.create.exists payment_id=%s subscription_id=%s", pid, existing.id)
        return (existing, False)
    plan = get_plan(plan_id)

    email_norm = normalize_email(email)
    now = now or utcnow()
    sub = Subscription(
        user_id=(str(user_id).strip() if user_id else email_norm),
        email=email_norm,
        plan_id=plan.id,
        payment_id=pid,
        payment_method=(payment_method or PaymentMethod.PIX.value),
        amount=(Decimal(str(amount)) if amount is not None else plan.price),
        status=SubscriptionStatus.ACTIVE.value,
        start_date=now,
        end_date=now + timedelta(days=plan.duration_days),
    )
    db.add(sub)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        winner = get_subscription_by_payment_id(db, pid)
        if winner is None:
            raise
        logger.info("subscriptions.create.lost_race payment_id=%s subscription_id=%s", pid, winner.id)
        return (winner, False)
    db.refresh(sub)
    logger.info(
        "subscriptions.create.done payment_id=%s subscription_id=%s plan_id=%s email=%s",
        pid,
        sub.id,
        sub.plan_id,
        sub.email,
    )
    return (sub, True)


def create_subscription(
    db: Session,
    *,
    user_id: str | None,
    email: str,
    plan_id: str,
    payment_id: str,
    payment_method: str,
    amount: Decimal | float | None = None,
    now: datetime | None = None,
) -> str:
    sub, _created = ensure_subscription(
        db,
        user_id=user_id,
        email=email,
        plan_id=plan_id,
        payment_id=payment_id,
        payment_method=payment_method,
        amount=amount,
        now=now,
    )
    return sub.id


def upsert_manual_subscription(
    db: Session,
    *,
    email: str,
    days: int | None = None,
    now: datetime | None = None,
) -> tuple[Subscription, bool]:
    """Trusted support write: give ``email`` a fresh validity window.

    Bypasses the payment gateway entirely. The subscriber's latest row gets
    its dates reset; with no row, one is created under a synthetic
    ``manual-fix-<millis>`` payment id.
    """
    email_norm = SubscriberIdentity.email(email).value
    now = now or utcnow()
    end = now + timedelta(days=int(days or settings.manual_fix_days))

    rows = list_by_email(db, email_norm)
    if rows:
        sub = rows[0]
        sub.status = SubscriptionStatus.ACTIVE.value
        sub.start_date = now
        sub.end_date = end
        db.commit()
        db.refresh(sub)
        logger.info("subscriptions.manual_fix.updated email=%s subscription_id=%s", email_norm, sub.id)
        return (sub, False)

    plan = get_plan(settings.default_plan_id)
    payment_id = f"{MANUAL_FIX_PREFIX}{int(now.timestamp() * 1000)}"
    sub, created = ensure_subscription(
        db,
        user_id=email_norm,
        email=email_norm,
        plan_id=plan.id,
        payment_id=payment_id,
        payment_method=PaymentMethod.MANUAL.value,
        amount=plan.price,
        now=now,
    )
    if sub.end_date is None or as_utc(sub.end_date) != end:
        sub.end_date = end
        db.commit()
        db.refresh(sub)
    logger.info("subscriptions.manual_fix.created email=%s subscription_id=%s", email_norm, sub.id)
    return (sub, created)


def cleanup_expired_subscriptions(db: Session, now: datetime | None = None) -> list[Subscription]:
    """Flip stored ``active`` rows whose window has passed to ``expired``."""
    now = now or utcnow()
    rows = (
        db.query(Subscription)
        .filter(Subscription.status == SubscriptionStatus.ACTIVE.value)
        .filter(Subscription.end_date <= now)
        .all()
    )
    for sub in rows:
        sub.status = SubscriptionStatus.EXPIRED.value
    if rows:
        db.commit()
    logger.info("subscriptions.cleanup.done expired=%s", len(rows))
    return rows


def serialize_subscription(sub: Subscription, now: datetime | None = None) -> dict[str, Any]:
    now = now or utcnow()
    start = as_utc(sub.start_date)
    end = as_utc(sub.end_date)
    return {
        "id": sub.id,
        "userId": sub.user_id,
        "email": sub.email,
        "planId": sub.plan_id,
        "paymentId": sub.payment_id,
        "paymentMethod": sub.payment_method,
        "amount": (float(sub.amount) if sub.amount is not None else None),
        "status": sub.status,
        "isActive": is_subscription_active(sub, now),
        "startDate": (start.isoformat() if start else None),
        "endDate": (end.isoformat() if end else None),
    }


def get_all_subscriptions(db: Session, now: datetime | None = None) -> list[dict[str, Any]]:
    now = now or utcnow()
    rows = db.query(Subscription).order_by(Subscription.start_date.desc()).all()
    out: list[dict[str, Any]] = []
    for sub in rows:
        item = serialize_subscription(sub, now)
        plan = find_plan(sub.plan_id)
        item["plan"] = plan.as_dict() if plan else None
        out.append(item)
    return out
