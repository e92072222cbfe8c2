import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from paywall.core.database import Base
from paywall.models.subscription import Subscription
from paywall.schemas.payment import PaymentStatus
from paywall.services.mercadopago import PaymentRecord
from paywall.services.reconciliation import ReconciliationOutcome, reconcile_payment, sweep_expired_subscriptions
from paywall.services.subscription_store import has_active_subscription


class _Gateway:
    def __init__(self, record: PaymentRecord) -> None:
        self.record = record

    async def get_payment_status(self, payment_id, *, max_retries=None, retry_delay_ms=None):
        return self.record


async def main() -> None:
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    db = TestingSessionLocal()
    try:
        now = datetime.now(timezone.utc)
        pending = PaymentRecord(id="p-1", status=PaymentStatus.PENDING, payer_email="a@b.com", amount=Decimal("99.00"))
        res = await reconcile_payment(db, _Gateway(pending), "p-1", now=now)
        assert res.outcome == ReconciliationOutcome.PENDING, res

        approved = PaymentRecord(id="p-1", status=PaymentStatus.APPROVED, payer_email="a@b.com", amount=Decimal("99.00"))
        results = [await reconcile_payment(db, _Gateway(approved), "p-1", now=now) for _ in range(3)]
        assert [r.outcome for r in results] == [
            ReconciliationOutcome.CREATED,
            ReconciliationOutcome.ALREADY_PROCESSED,
            ReconciliationOutcome.ALREADY_PROCESSED,
        ], results
        assert db.query(Subscription).count() == 1

        assert has_active_subscription(db, "a@b.com", now=now + timedelta(days=29))
        assert not has_active_subscription(db, "a@b.com", now=now + timedelta(days=31))

        swept = sweep_expired_subscriptions(db, now=now + timedelta(days=31))
        assert swept == 1, swept
    finally:
        db.close()


if __name__ == "__main__":
    asyncio.run(main())
    print("OK")
