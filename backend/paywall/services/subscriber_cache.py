from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from paywall.core.settings import settings
from paywall.models.subscriber_profile import SubscriberProfile
from paywall.models.subscription import Subscription
from paywall.schemas.subscription import SubscriptionStatus
from paywall.services.subscription_store import (
    SubscriberIdentity,
    as_utc,
    get_active_subscription,
    normalize_email,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriberStatus:
    is_subscriber: bool
    source: str
    subscriber: dict[str, Any] | None = None


def get_profile(db: Session, identity: SubscriberIdentity) -> SubscriberProfile | None:
    if identity.kind == SubscriberIdentity.EMAIL:
        return db.query(SubscriberProfile).filter(SubscriberProfile.email == identity.value).first()
    return db.query(SubscriberProfile).filter(SubscriberProfile.user_id == identity.value).first()


def find_user_id_for_email(db: Session, email: str) -> str | None:
    profile = get_profile(db, SubscriberIdentity.email(email))
    if profile is None:
        return None
    return (profile.user_id or "").strip() or None


def list_profiles_by_email(db: Session, email: str) -> list[SubscriberProfile]:
    return db.query(SubscriberProfile).filter(SubscriberProfile.email == normalize_email(email)).all()


def _apply_subscription(profile: SubscriberProfile, sub: Subscription, now: datetime) -> None:
    profile.is_subscriber = True
    profile.subscription_status = SubscriptionStatus.ACTIVE.value
    profile.plan_id = sub.plan_id
    profile.payment_id = sub.payment_id
    profile.payment_method = sub.payment_method
    profile.subscription_start_date = sub.start_date
    profile.subscription_end_date = sub.end_date
    profile.amount = sub.amount
    profile.cached_at = now


def record_activation(db: Session, sub: Subscription, now: datetime | None = None) -> None:
    """Mirror an active subscription onto the subscriber's ``users`` row.

    Failures are logged and swallowed: the subscription row is already
    committed and stays authoritative.
    """
    now = now or utcnow()
    email = normalize_email(sub.email)
    try:
        profile = db.query(SubscriberProfile).filter(SubscriberProfile.email == email).first()
        if profile is None:
            profile = SubscriberProfile(
                email=email,
                user_id=(sub.user_id if sub.user_id and sub.user_id != email else None),
                display_name=email.split("@")[0],
            )
            db.add(profile)
        _apply_subscription(profile, sub, now)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("subscriber_cache.record_activation.failed email=%s", email)


def mark_inactive(db: Session, email: str, now: datetime | None = None) -> bool:
    now = now or utcnow()
    profile = db.query(SubscriberProfile).filter(SubscriberProfile.email == normalize_email(email)).first()
    if profile is None:
        return False
    profile.is_subscriber = False
    profile.subscription_status = "inactive"
    profile.cached_at = now
    db.commit()
    return True


def _is_fresh(profile: SubscriberProfile, now: datetime, ttl_s: int) -> bool:
    cached_at = as_utc(profile.cached_at)
    if cached_at is None or ttl_s <= 0:
        return False
    if now - cached_at > timedelta(seconds=ttl_s):
        return False
    if profile.is_subscriber:
        end = as_utc(profile.subscription_end_date)
        return end is not None and end > now
    return True


def _profile_payload(profile: SubscriberProfile) -> dict[str, Any]:
    start = as_utc(profile.subscription_start_date)
    end = as_utc(profile.subscription_end_date)
    return {
        "email": profile.email,
        "name": profile.display_name,
        "planType": profile.plan_id,
        "paymentMethod": profile.payment_method,
        "subscriptionStartDate": (start.isoformat() if start else None),
        "subscriptionEndDate": (end.isoformat() if end else None),
    }


def _subscription_payload(sub: Subscription) -> dict[str, Any]:
    start = as_utc(sub.start_date)
    end = as_utc(sub.end_date)
    return {
        "email": sub.email,
        "name": None,
        "planType": sub.plan_id,
        "paymentMethod": sub.payment_method,
        "subscriptionStartDate": (start.isoformat() if start else None),
        "subscriptionEndDate": (end.isoformat() if end else None),
    }


def read_through(
    db: Session,
    identity: SubscriberIdentity,
    *,
    strict: bool = False,
    now: datetime | None = None,
    ttl_s: int | None = None,
) -> SubscriberStatus:
    """Answer "is this a subscriber?" from the cache when it is fresh.

    ``strict`` skips the cache; callers gating paid content should use it.
    """
    now = now or utcnow()
    ttl = settings.subscriber_cache_ttl_s if ttl_s is None else ttl_s
    profile = get_profile(db, identity)
    if not strict and profile is not None and _is_fresh(profile, now, ttl):
        return SubscriberStatus(
            is_subscriber=bool(profile.is_subscriber),
            source="cache",
            subscriber=(_profile_payload(profile) if profile.is_subscriber else None),
        )

    active = get_active_subscription(db, identity, now=now)
    if active is not None:
        record_activation(db, active, now=now)
        return SubscriberStatus(is_subscriber=True, source="store", subscriber=_subscription_payload(active))

    if profile is not None:
        try:
            mark_inactive(db, profile.email, now=now)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("subscriber_cache.mark_inactive.failed email=%s", profile.email)
    return SubscriberStatus(is_subscriber=False, source="store", subscriber=None)


def record_manual_fix(db: Session, sub: Subscription, now: datetime | None = None) -> SubscriberProfile:
    """Admin fix counterpart of :func:`record_activation`; errors propagate."""
    now = now or utcnow()
    email = normalize_email(sub.email)
    profile = db.query(SubscriberProfile).filter(SubscriberProfile.email == email).first()
    if profile is None:
        profile = SubscriberProfile(email=email, display_name=email.split("@")[0])
        db.add(profile)
    _apply_subscription(profile, sub, now)
    db.commit()
    db.refresh(profile)
    return profile


def serialize_profile(profile: SubscriberProfile) -> dict[str, Any]:
    payload = _profile_payload(profile)
    cached_at = as_utc(profile.cached_at)
    payload.update(
        {
            "id": profile.id,
            "userId": profile.user_id,
            "isSubscriber": bool(profile.is_subscriber),
            "subscriptionStatus": profile.subscription_status,
            "paymentId": profile.payment_id,
            "amount": (float(profile.amount) if profile.amount is not None else None),
            "cachedAt": (cached_at.isoformat() if cached_at else None),
        }
    )
    return payload
