from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from paywall.core.database import get_db
from paywall.core.errors import ValidationError
from paywall.schemas.subscription import CheckSubscriberRequest
from paywall.services.subscriber_cache import read_through
from paywall.services.subscription_store import SubscriberIdentity


router = APIRouter()


@router.post("/check-subscriber")
async def check_subscriber(body: CheckSubscriberRequest, db: Session = Depends(get_db)) -> dict:
    if not (body.email or "").strip() and not (body.user_id or "").strip():
        raise ValidationError("Email or userId is required")
    if (body.email or "").strip():
        identity = SubscriberIdentity.email(body.email)
    else:
        identity = SubscriberIdentity.user_id(body.user_id)

    status = read_through(db, identity, strict=body.strict)
    return {
        "success": True,
        "isSubscriber": status.is_subscriber,
        "subscriber": status.subscriber,
        "source": status.source,
        "message": ("Active subscription found" if status.is_subscriber else "No active subscription found"),
    }
