from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from paywall.core.auth import require_cron_secret
from paywall.core.database import get_db
from paywall.services.reconciliation import sweep_expired_subscriptions


router = APIRouter(dependencies=[Depends(require_cron_secret)])


@router.api_route("/cron/cleanup-subscriptions", methods=["GET", "POST"])
async def cleanup_subscriptions(db: Session = Depends(get_db)) -> dict:
    count = sweep_expired_subscriptions(db)
    return {
        "success": True,
        "cleanupCount": count,
        "message": f"Cleanup finished, {count} subscriptions expired",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
