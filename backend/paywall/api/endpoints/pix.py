from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from paywall.core.database import get_db
from paywall.core.errors import ValidationError
from paywall.schemas.payment import CreatePixRequest, VerifyPaymentRequest
from paywall.services.mercadopago import (
    MercadoPagoClient,
    get_gateway_client,
    normalize_tax_id,
    validate_amount,
)
from paywall.services.plans import get_plan
from paywall.services.reconciliation import reconcile_payment


router = APIRouter()

MAX_CLIENT_RETRIES = 10
MAX_CLIENT_DELAY_MS = 10_000


def _clamp_retries(value: int | None) -> int | None:
    if value is None:
        return None
    return max(1, min(int(value), MAX_CLIENT_RETRIES))


def _clamp_delay(value: int | None) -> int | None:
    if value is None:
        return None
    return max(0, min(int(value), MAX_CLIENT_DELAY_MS))


def _require_payment_id(body: VerifyPaymentRequest) -> str:
    pid = str(body.payment_id or "").strip()
    if not pid:
        raise ValidationError("paymentId is required")
    return pid


@router.post("/pix/create")
async def create_pix(
    body: CreatePixRequest,
    gateway: MercadoPagoClient = Depends(get_gateway_client),
) -> dict:
    plan = get_plan(body.plan_id) if body.plan_id else None
    email = (body.email or "").strip()
    name = (body.name or "").strip()
    amount = body.amount if body.amount is not None else (plan.price if plan else None)
    if not email or not name or amount is None or not body.cpf:
        raise ValidationError("Email, name, amount and CPF are required")
    cpf = normalize_tax_id(body.cpf)
    value = validate_amount(amount)

    pix = await gateway.create_pix_payment(
        amount=value,
        payer_email=email,
        payer_name=name,
        tax_id=cpf,
        description=(body.description or (plan.name if plan else None)),
        external_reference=(f"plan:{plan.id}" if plan else None),
    )
    return {
        "success": True,
        "paymentId": pix.payment_id,
        "pixData": {
            "qrCode": pix.qr_code,
            "qrCodeBase64": pix.qr_code_image,
            "status": pix.status.value,
            "amount": float(pix.amount),
        },
        "message": "PIX payment created",
    }


@router.post("/pix/verify")
async def verify_pix(
    body: VerifyPaymentRequest,
    gateway: MercadoPagoClient = Depends(get_gateway_client),
) -> dict:
    pid = _require_payment_id(body)
    record = await gateway.get_payment_status(
        pid,
        max_retries=_clamp_retries(body.max_retries),
        retry_delay_ms=_clamp_delay(body.delay_ms),
    )
    return {
        "success": True,
        "payment": record.as_dict(),
        "isApproved": record.is_approved,
        "message": ("Payment approved" if record.is_approved else f"Payment status: {record.status.value}"),
    }


@router.get("/pix/verify")
async def verify_pix_probe() -> dict:
    return {
        "message": "PIX verification endpoint is up",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.post("/pix/confirm")
async def confirm_pix(
    body: VerifyPaymentRequest,
    db: Session = Depends(get_db),
    gateway: MercadoPagoClient = Depends(get_gateway_client),
) -> dict:
    pid = _require_payment_id(body)
    result = await reconcile_payment(
        db,
        gateway,
        pid,
        source="client",
        max_retries=_clamp_retries(body.max_retries),
        retry_delay_ms=_clamp_delay(body.delay_ms),
    )
    out = result.as_dict()
    out["isApproved"] = result.activated
    return out
