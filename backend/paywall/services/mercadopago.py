from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable
from uuid import uuid4

import httpx

from paywall.core.errors import ConfigurationError, GatewayError, ValidationError
from paywall.core.settings import settings
from paywall.schemas.payment import PaymentStatus

logger = logging.getLogger(__name__)

DEFAULT_PIX_DESCRIPTION = "Monthly subscription"
RETRYABLE_STATUS_CODES = {404, 408, 425, 429}


def _is_retryable_status(status: int) -> bool:
    return status in RETRYABLE_STATUS_CODES or status >= 500


def _parse_iso8601(raw: Any) -> datetime | None:
    if not raw:
        return None
    v = str(raw).strip()
    if not v:
        return None
    try:
        if v.endswith("Z"):
            v = v[:-1] + "+00:00"
        dt = datetime.fromisoformat(v)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except ValueError:
        return None


def _to_decimal(raw: Any) -> Decimal | None:
    if raw is None or raw == "":
        return None
    try:
        return Decimal(str(raw)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        return None


def normalize_tax_id(raw: Any) -> str:
    digits = re.sub(r"\D", "", str(raw or ""))
    if len(digits) != 11:
        raise ValidationError("CPF must have exactly 11 digits")
    return digits


def validate_amount(raw: Any) -> Decimal:
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        raise ValidationError("Amount must be a number")
    if not value.is_finite() or value <= 0:
        raise ValidationError("Amount must be greater than zero")
    return value.quantize(Decimal("0.01"))


def _split_name(name: str) -> tuple[str, str]:
    parts = name.split()
    if not parts:
        return (name, "")
    return (parts[0], " ".join(parts[1:]))


@dataclass(frozen=True)
class PaymentRecord:
    id: str
    status: PaymentStatus
    payer_email: str | None = None
    amount: Decimal | None = None
    created_at: datetime | None = None
    approved_at: datetime | None = None
    external_reference: str | None = None
    payment_method_id: str | None = None
    status_detail: str | None = None

    @property
    def is_approved(self) -> bool:
        return self.status == PaymentStatus.APPROVED

    @classmethod
    def from_api(cls, payload: Any) -> "PaymentRecord":
        if not isinstance(payload, dict) or payload.get("id") in (None, ""):
            raise GatewayError("Gateway returned a payment without an id", details=payload)
        raw_status = str(payload.get("status") or "").strip().lower()
        try:
            status = PaymentStatus(raw_status)
        except ValueError:
            raise GatewayError(f"Gateway returned an unknown payment status: {raw_status!r}")
        payer = payload.get("payer") or {}
        email = str((payer.get("email") if isinstance(payer, dict) else "") or "").strip()
        return cls(
            id=str(payload.get("id")),
            status=status,
            payer_email=email or None,
            amount=_to_decimal(payload.get("transaction_amount")),
            created_at=_parse_iso8601(payload.get("date_created")),
            approved_at=_parse_iso8601(payload.get("date_approved")),
            external_reference=(str(payload.get("external_reference") or "").strip() or None),
            payment_method_id=(str(payload.get("payment_method_id") or "").strip() or None),
            status_detail=(str(payload.get("status_detail") or "").strip() or None),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "amount": (float(self.amount) if self.amount is not None else None),
            "email": self.payer_email,
            "created": (self.created_at.isoformat() if self.created_at else None),
            "approved": (self.approved_at.isoformat() if self.approved_at else None),
            "externalReference": self.external_reference,
        }


@dataclass(frozen=True)
class PixPayment:
    payment_id: str
    qr_code: str
    qr_code_image: str | None
    status: PaymentStatus
    amount: Decimal


class MercadoPagoClient:
    def __init__(
        self,
        *,
        access_token: str | None,
        api_base: str = "https://api.mercadopago.com",
        notification_url: str | None = None,
        max_retries: int = 3,
        retry_delay_ms: int = 2000,
        timeout_s: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self._access_token = (access_token or "").strip()
        self._notification_url = (notification_url or "").strip() or None
        self._max_retries = max(1, int(max_retries or 1))
        self._retry_delay_ms = max(0, int(retry_delay_ms or 0))
        self._sleep = sleep or asyncio.sleep
        self._client = httpx.AsyncClient(
            base_url=(api_base or "").rstrip("/"),
            timeout=httpx.Timeout(timeout_s),
            transport=transport,
        )

    @classmethod
    def from_settings(cls, **overrides: Any) -> "MercadoPagoClient":
        kwargs: dict[str, Any] = {
            "access_token": settings.mercadopago_access_token,
            "api_base": settings.mercadopago_api_base,
            "notification_url": settings.mercadopago_notification_url,
            "max_retries": settings.gateway_max_retries,
            "retry_delay_ms": settings.gateway_retry_delay_ms,
            "timeout_s": settings.gateway_timeout_s,
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    async def aclose(self) -> None:
        await self._client.aclose()

    def _require_token(self) -> str:
        if not self._access_token:
            raise ConfigurationError("MERCADOPAGO_ACCESS_TOKEN is not configured")
        return self._access_token

    def _headers(self, *, idempotency_key: str | None = None) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._require_token()}",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key
        return headers

    @staticmethod
    def _error_message(resp: httpx.Response) -> str:
        fallback = f"Payment gateway error ({resp.status_code})"
        try:
            body = resp.json()
        except ValueError:
            return fallback
        if not isinstance(body, dict):
            return fallback
        causes = body.get("cause")
        if isinstance(causes, list):
            for cause in causes:
                if isinstance(cause, dict) and cause.get("description"):
                    return str(cause["description"])
        for key in ("message", "error"):
            if body.get(key):
                return str(body[key])
        return fallback

    @staticmethod
    def _body_excerpt(resp: httpx.Response) -> str:
        try:
            return resp.text[:500]
        except Exception:
            return ""

    def _error_from_response(self, resp: httpx.Response, *, attempts: int = 1) -> GatewayError:
        return GatewayError(
            self._error_message(resp),
            upstream_status=resp.status_code,
            retryable=_is_retryable_status(resp.status_code),
            attempts=attempts,
            details=self._body_excerpt(resp),
        )

    @staticmethod
    def _json(resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError as e:
            raise GatewayError(f"Payment gateway returned invalid JSON: {e}", upstream_status=resp.status_code)

    async def create_pix_payment(
        self,
        *,
        amount: Any,
        payer_email: str,
        payer_name: str,
        tax_id: str,
        description: str | None = None,
        external_reference: str | None = None,
    ) -> PixPayment:
        value = validate_amount(amount)
        cpf = normalize_tax_id(tax_id)
        email = (payer_email or "").strip()
        if not email or "@" not in email:
            raise ValidationError("A valid payer email is required")
        name = (payer_name or "").strip()
        if not name:
            raise ValidationError("Payer name is required")
        headers = self._headers(idempotency_key=f"pix-{uuid4()}")

        first_name, last_name = _split_name(name)
        payload: dict[str, Any] = {
            "transaction_amount": float(value),
            "description": (description or "").strip() or DEFAULT_PIX_DESCRIPTION,
            "payment_method_id": "pix",
            "payer": {
                "email": email,
                "first_name": first_name,
                "last_name": last_name,
                "identification": {"type": "CPF", "number": cpf},
            },
        }
        if external_reference:
            payload["external_reference"] = external_reference
        if self._notification_url:
            payload["notification_url"] = self._notification_url

        try:
            resp = await self._client.post("/v1/payments", headers=headers, json=payload)
        except httpx.TransportError as e:
            logger.warning("gateway.create_pix.transport_error email=%s error=%s", email, e)
            raise GatewayError(f"Payment gateway request failed: {e}", retryable=True)

        if resp.status_code >= 300:
            err = self._error_from_response(resp)
            logger.warning(
                "gateway.create_pix.failed status=%s error=%s",
                resp.status_code,
                err.message,
            )
            raise err

        data = self._json(resp)
        poi = (data.get("point_of_interaction") or {}) if isinstance(data, dict) else {}
        tx = poi.get("transaction_data") or {}
        qr_code = str(tx.get("qr_code") or "").strip()
        if not qr_code:
            raise GatewayError("QR code missing from payment gateway response", upstream_status=resp.status_code)
        record = PaymentRecord.from_api(data)
        logger.info("gateway.create_pix.done payment_id=%s status=%s", record.id, record.status.value)
        return PixPayment(
            payment_id=record.id,
            qr_code=qr_code,
            qr_code_image=(str(tx.get("qr_code_base64") or "") or None),
            status=record.status,
            amount=record.amount if record.amount is not None else value,
        )

    async def get_payment_status(
        self,
        payment_id: str,
        *,
        max_retries: int | None = None,
        retry_delay_ms: int | None = None,
    ) -> PaymentRecord:
        pid = str(payment_id or "").strip()
        if not pid:
            raise ValidationError("paymentId is required")
        headers = self._headers()
        attempts = max(1, int(max_retries if max_retries is not None else self._max_retries))
        delay_ms = max(0, int(retry_delay_ms if retry_delay_ms is not None else self._retry_delay_ms))

        last_err: GatewayError | None = None
        for attempt in range(1, attempts + 1):
            logger.info("gateway.get_payment.attempt payment_id=%s attempt=%s/%s", pid, attempt, attempts)
            try:
                resp = await self._client.get(f"/v1/payments/{pid}", headers=headers)
            except httpx.TransportError as e:
                last_err = GatewayError(f"Payment gateway request failed: {e}", retryable=True, attempts=attempt)
            else:
                if resp.status_code < 300:
                    record = PaymentRecord.from_api(self._json(resp))
                    logger.info(
                        "gateway.get_payment.done payment_id=%s status=%s attempt=%s",
                        pid,
                        record.status.value,
                        attempt,
                    )
                    return record
                last_err = self._error_from_response(resp, attempts=attempt)
                if not last_err.retryable:
                    logger.warning(
                        "gateway.get_payment.rejected payment_id=%s status=%s error=%s",
                        pid,
                        resp.status_code,
                        last_err.message,
                    )
                    raise last_err

            logger.warning(
                "gateway.get_payment.retryable_failure payment_id=%s attempt=%s/%s status=%s error=%s",
                pid,
                attempt,
                attempts,
                last_err.upstream_status,
                last_err.message,
            )
            if attempt < attempts:
                await self._sleep(delay_ms / 1000.0)

        assert last_err is not None
        # A payment still invisible after every attempt is treated as unknown.
        still_missing = last_err.upstream_status == 404
        logger.error("gateway.get_payment.gave_up payment_id=%s attempts=%s error=%s", pid, attempts, last_err.message)
        raise GatewayError(
            f"Could not fetch payment {pid} after {attempts} attempts: {last_err.message}",
            upstream_status=last_err.upstream_status,
            retryable=not still_missing,
            attempts=attempts,
            details=last_err.details,
        )

    async def is_payment_approved(self, payment_id: str) -> bool:
        try:
            record = await self.get_payment_status(payment_id, max_retries=1)
        except GatewayError:
            return False
        return record.is_approved

    async def search_payments(
        self,
        *,
        limit: int = 10,
        status: str | None = None,
        payment_method_id: str | None = None,
    ) -> list[PaymentRecord]:
        params: dict[str, Any] = {
            "sort": "date_created",
            "criteria": "desc",
            "limit": max(1, min(int(limit or 10), 100)),
        }
        if status:
            params["status"] = status
        if payment_method_id:
            params["payment_method_id"] = payment_method_id

        try:
            resp = await self._client.get("/v1/payments/search", headers=self._headers(), params=params)
        except httpx.TransportError as e:
            raise GatewayError(f"Payment gateway request failed: {e}", retryable=True)
        if resp.status_code >= 300:
            raise self._error_from_response(resp)

        data = self._json(resp)
        results = (data.get("results") or []) if isinstance(data, dict) else []
        out: list[PaymentRecord] = []
        for item in results:
            try:
                out.append(PaymentRecord.from_api(item))
            except GatewayError as e:
                logger.warning("gateway.search.skip_item error=%s", e.message)
        return out


async def get_gateway_client():
    client = MercadoPagoClient.from_settings()
    try:
        yield client
    finally:
        await client.aclose()
