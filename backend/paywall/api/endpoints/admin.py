from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from paywall.core.auth import require_admin
from paywall.core.database import get_db
from paywall.core.errors import ValidationError
from paywall.schemas.subscription import DebugAction, DebugSubscriptionRequest
from paywall.services.mercadopago import MercadoPagoClient, get_gateway_client
from paywall.services.reconciliation import check_subscription_data, manual_fix
from paywall.services.subscription_store import get_all_subscriptions


router = APIRouter(dependencies=[Depends(require_admin)])


@router.post("/admin/debug-subscription")
async def debug_subscription(body: DebugSubscriptionRequest, db: Session = Depends(get_db)) -> dict:
    email = (body.email or "").strip()
    if not email:
        raise ValidationError("Email is required")
    action = (body.action or "").strip().lower()

    if action == DebugAction.CHECK.value:
        return {"success": True, "message": "Subscription data", "data": check_subscription_data(db, email)}
    if action == DebugAction.FIX.value:
        return {"success": True, "message": "Subscription fixed", "data": manual_fix(db, email)}
    raise ValidationError("Unknown action, expected 'check' or 'fix'")


@router.get("/admin/subscriptions")
async def admin_list_subscriptions(db: Session = Depends(get_db)) -> dict:
    items = get_all_subscriptions(db)
    return {
        "success": True,
        "total": len(items),
        "active": sum(1 for s in items if s.get("isActive")),
        "subscriptions": items,
    }


@router.get("/admin/payments/recent")
async def admin_recent_payments(
    limit: int = 10,
    status: str | None = None,
    gateway: MercadoPagoClient = Depends(get_gateway_client),
) -> dict:
    records = await gateway.search_payments(limit=limit, status=status, payment_method_id="pix")
    return {"success": True, "payments": [r.as_dict() for r in records]}
