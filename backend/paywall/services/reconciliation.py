"""Turn payment notifications of any origin into at most one subscription.

Webhook deliveries, client polls and admin actions may arrive in any order
and concurrently for the same payment. Every path funnels through
:func:`reconcile_payment`, which is safe to call repeatedly: the subscription
store refuses a second row for the same payment id.

Gateway failures are not retried here. The gateway client already retries
transient errors; the caller (provider redelivery, a client poll) retries at
a higher level.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy.orm import Session

from paywall.core.errors import ValidationError
from paywall.core.settings import settings
from paywall.schemas.subscription import PaymentMethod
from paywall.services import subscriber_cache
from paywall.services.mercadopago import MercadoPagoClient, PaymentRecord
from paywall.services.plans import resolve_plan_id
from paywall.services.subscription_store import (
    SubscriberIdentity,
    cleanup_expired_subscriptions,
    ensure_subscription,
    get_subscription_by_payment_id,
    has_active_subscription,
    list_by_email,
    serialize_subscription,
    upsert_manual_subscription,
    utcnow,
)

logger = logging.getLogger(__name__)

CARD_METHOD_IDS = {"visa", "master", "amex", "elo", "hipercard", "debvisa", "debmaster"}


class ReconciliationOutcome(str, Enum):
    CREATED = "created"
    ALREADY_PROCESSED = "already_processed"
    PENDING = "pending"
    NOT_APPROVED = "not_approved"


@dataclass(frozen=True)
class ReconciliationResult:
    outcome: ReconciliationOutcome
    payment_id: str
    message: str
    subscription_id: str | None = None
    payment: PaymentRecord | None = None

    @property
    def activated(self) -> bool:
        return self.outcome in {ReconciliationOutcome.CREATED, ReconciliationOutcome.ALREADY_PROCESSED}

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "outcome": self.outcome.value,
            "paymentId": self.payment_id,
            "subscriptionId": self.subscription_id,
            "activated": self.activated,
            "payment": (self.payment.as_dict() if self.payment else None),
            "message": self.message,
        }


def _payment_method_for(record: PaymentRecord) -> str:
    method = (record.payment_method_id or "").lower()
    if not method or method == PaymentMethod.PIX.value:
        return PaymentMethod.PIX.value
    if method in CARD_METHOD_IDS:
        return PaymentMethod.CARD.value
    return PaymentMethod.MERCADOPAGO.value


def _already_processed(payment_id: str, subscription_id: str, payment: PaymentRecord | None = None) -> ReconciliationResult:
    return ReconciliationResult(
        outcome=ReconciliationOutcome.ALREADY_PROCESSED,
        payment_id=payment_id,
        subscription_id=subscription_id,
        payment=payment,
        message="Subscription already exists for this payment",
    )


async def reconcile_payment(
    db: Session,
    gateway: MercadoPagoClient,
    payment_id: Any,
    *,
    source: str = "webhook",
    max_retries: int | None = None,
    retry_delay_ms: int | None = None,
    now: datetime | None = None,
) -> ReconciliationResult:
    """Activate the subscription paid for by ``payment_id`` if the gateway approved it.

    Payer email and amount always come from the gateway's record, never from
    the caller, so a client cannot grant itself a subscription.
    """
    pid = str(payment_id or "").strip()
    if not pid:
        raise ValidationError("paymentId is required")

    existing = get_subscription_by_payment_id(db, pid)
    if existing is not None:
        logger.info("reconcile.already_processed payment_id=%s source=%s", pid, source)
        return _already_processed(pid, existing.id)

    record = await gateway.get_payment_status(pid, max_retries=max_retries, retry_delay_ms=retry_delay_ms)

    if not record.is_approved:
        if record.status.is_terminal_failure:
            outcome = ReconciliationOutcome.NOT_APPROVED
            message = f"Payment was not approved (status: {record.status.value})"
        else:
            outcome = ReconciliationOutcome.PENDING
            message = f"Payment status: {record.status.value}"
        logger.info("reconcile.not_approved payment_id=%s status=%s source=%s", pid, record.status.value, source)
        return ReconciliationResult(outcome=outcome, payment_id=pid, payment=record, message=message)

    if not record.payer_email:
        raise ValidationError(f"Approved payment {pid} has no payer email")

    user_id = subscriber_cache.find_user_id_for_email(db, record.payer_email)
    plan_id = resolve_plan_id(record.external_reference, record.amount)
    sub, created = ensure_subscription(
        db,
        user_id=user_id,
        email=record.payer_email,
        plan_id=plan_id,
        payment_id=pid,
        payment_method=_payment_method_for(record),
        amount=record.amount,
        now=now,
    )
    if not created:
        return _already_processed(pid, sub.id, record)

    subscriber_cache.record_activation(db, sub, now=now)
    logger.info(
        "reconcile.created payment_id=%s subscription_id=%s plan_id=%s source=%s",
        pid,
        sub.id,
        sub.plan_id,
        source,
    )
    return ReconciliationResult(
        outcome=ReconciliationOutcome.CREATED,
        payment_id=pid,
        subscription_id=sub.id,
        payment=record,
        message="Subscription activated",
    )


def check_subscription_data(db: Session, email: str, now: datetime | None = None) -> dict[str, Any]:
    identity = SubscriberIdentity.email(email)
    now = now or utcnow()
    profiles = subscriber_cache.list_profiles_by_email(db, identity.value)
    return {
        "email": identity.value,
        "users": [subscriber_cache.serialize_profile(p) for p in profiles],
        "subscriptions": [serialize_subscription(s, now) for s in list_by_email(db, identity.value)],
        "hasActiveSubscription": has_active_subscription(db, identity, now=now),
        "timestamp": now.isoformat(),
    }


def manual_fix(db: Session, email: str, *, days: int | None = None, now: datetime | None = None) -> dict[str, Any]:
    """Admin-only escape hatch: activate ``email`` without asking the gateway."""
    now = now or utcnow()
    days = int(days or settings.manual_fix_days)
    sub, created = upsert_manual_subscription(db, email=email, days=days, now=now)
    subscriber_cache.record_manual_fix(db, sub, now=now)
    logger.warning(
        "reconcile.manual_fix email=%s subscription_id=%s created=%s days=%s",
        sub.email,
        sub.id,
        created,
        days,
    )
    return {
        "email": sub.email,
        "subscriptionId": sub.id,
        "paymentId": sub.payment_id,
        "created": created,
        "subscriptionEndDate": serialize_subscription(sub, now)["endDate"],
        "status": "active",
    }


def sweep_expired_subscriptions(db: Session, now: datetime | None = None) -> int:
    now = now or utcnow()
    expired = cleanup_expired_subscriptions(db, now=now)
    for email in sorted({s.email for s in expired if s.email}):
        if not has_active_subscription(db, SubscriberIdentity.email(email), now=now):
            subscriber_cache.mark_inactive(db, email, now=now)
    return len(expired)
