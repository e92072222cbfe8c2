from __future__ import annotations

import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from paywall.core.database import get_db
from paywall.core.errors import GatewayError, PaywallError
from paywall.core.settings import settings
from paywall.services.mercadopago import MercadoPagoClient, get_gateway_client
from paywall.services.reconciliation import reconcile_payment

logger = logging.getLogger(__name__)

router = APIRouter()


def _parse_signature_header(raw: str | None) -> dict[str, str]:
    parts: dict[str, str] = {}
    for chunk in (raw or "").split(","):
        if "=" not in chunk:
            continue
        key, value = chunk.split("=", 1)
        parts[key.strip()] = value.strip()
    return parts


def _verify_mercadopago_signature(request: Request, data_id: str) -> None:
    secret = settings.mercadopago_webhook_secret
    if not secret:
        return
    sig = _parse_signature_header(request.headers.get("x-signature"))
    ts = sig.get("ts", "")
    v1 = sig.get("v1", "")
    if not ts or not v1:
        raise HTTPException(status_code=401, detail="Missing x-signature")
    manifest = f"id:{data_id.lower()};request-id:{request.headers.get('x-request-id') or ''};ts:{ts};"
    digest = hmac.new(secret.encode("utf-8"), manifest.encode("utf-8"), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(digest, v1):
        raise HTTPException(status_code=401, detail="Invalid signature")


@router.post("/webhook/mercadopago")
async def mercadopago_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: MercadoPagoClient = Depends(get_gateway_client),
) -> dict:
    # Always 200 once authenticated, so the provider does not redeliver
    # notifications that will never succeed.
    raw_body = await request.body()
    try:
        payload = json.loads(raw_body) if raw_body else {}
    except ValueError:
        payload = {}
    if not isinstance(payload, dict):
        payload = {}

    params = request.query_params
    event_type = str(payload.get("type") or params.get("type") or params.get("topic") or "").strip().lower()
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    payment_id = str(data.get("id") or params.get("data.id") or params.get("id") or "").strip()

    _verify_mercadopago_signature(request, payment_id)

    if event_type != "payment":
        logger.info("webhook.ignored type=%s", event_type or "-")
        return {"received": True, "status": "ignored", "message": "Notification ignored: not a payment event"}
    if not payment_id:
        return {"received": True, "status": "ignored", "message": "Notification has no payment id"}

    try:
        result = await reconcile_payment(db, gateway, payment_id, source="webhook")
    except GatewayError as e:
        logger.warning("webhook.gateway_error payment_id=%s retryable=%s error=%s", payment_id, e.retryable, e.message)
        return {
            "received": True,
            "status": "gateway_error",
            "paymentId": payment_id,
            "retryable": e.retryable,
            "message": e.message,
        }
    except PaywallError as e:
        logger.error("webhook.failed payment_id=%s error=%s", payment_id, e.message)
        return {"received": True, "status": "error", "paymentId": payment_id, "message": e.message}

    out = result.as_dict()
    out["received"] = True
    out["status"] = result.outcome.value
    return out


@router.get("/webhook/mercadopago")
async def mercadopago_webhook_probe() -> dict:
    return {
        "message": "Mercado Pago webhook is up",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
