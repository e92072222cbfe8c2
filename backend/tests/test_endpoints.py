import base64
import hashlib
import hmac
import logging
import unittest

import httpx
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from paywall.core.database import Base, get_db
from paywall.core.settings import settings
from paywall.models.subscription import Subscription
from paywall.services.mercadopago import MercadoPagoClient, get_gateway_client
from paywall.services.subscription_store import ensure_subscription

_OVERRIDDEN_SETTINGS = (
    "basic_auth_enabled",
    "admin_username",
    "admin_password",
    "cron_secret",
    "mercadopago_webhook_secret",
)


def _basic(username: str, password: str) -> dict:
    token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    return {"Authorization": f"Basic {token}"}


class EndpointTestCase(unittest.TestCase):
    def setUp(self):
        self._saved = {name: getattr(settings, name) for name in _OVERRIDDEN_SETTINGS}
        settings.basic_auth_enabled = False
        settings.admin_username = "admin"
        settings.admin_password = "s3cret"
        settings.cron_secret = None
        settings.mercadopago_webhook_secret = None

        engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
        Base.metadata.create_all(bind=engine)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

        # Gateway state: payment id -> API payload.
        self.payments: dict[str, dict] = {}
        self.gateway_down = False
        self.gateway_calls: list[str] = []
        self.next_payment_id = 1000

        def override_get_db():
            db = self.SessionLocal()
            try:
                yield db
            finally:
                db.close()

        async def override_gateway():
            client = MercadoPagoClient(
                access_token="test-token",
                api_base="https://api.test",
                max_retries=3,
                retry_delay_ms=0,
                transport=httpx.MockTransport(self._handle_gateway),
            )
            try:
                yield client
            finally:
                await client.aclose()

        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_gateway_client] = override_gateway
        self.client = TestClient(app)

    def tearDown(self):
        app.dependency_overrides.clear()
        for name, value in self._saved.items():
            setattr(settings, name, value)

    def _handle_gateway(self, request: httpx.Request) -> httpx.Response:
        self.gateway_calls.append(f"{request.method} {request.url.path}")
        if self.gateway_down:
            return httpx.Response(500, json={"message": "internal_error"})
        if request.method == "POST" and request.url.path == "/v1/payments":
            self.next_payment_id += 1
            pid = str(self.next_payment_id)
            self.payments[pid] = {
                "id": int(pid),
                "status": "pending",
                "transaction_amount": 99.0,
                "payer": {"email": "buyer@example.com"},
                "external_reference": "plan:monthly",
                "payment_method_id": "pix",
            }
            body = dict(self.payments[pid])
            body["point_of_interaction"] = {"transaction_data": {"qr_code": "00020126pix", "qr_code_base64": "aGVsbG8="}}
            return httpx.Response(201, json=body)
        if request.method == "GET" and request.url.path == "/v1/payments/search":
            return httpx.Response(200, json={"results": list(self.payments.values())})
        if request.method == "GET" and request.url.path.startswith("/v1/payments/"):
            pid = request.url.path.rsplit("/", 1)[-1]
            if pid not in self.payments:
                return httpx.Response(404, json={"message": "Payment not found"})
            return httpx.Response(200, json=self.payments[pid])
        return httpx.Response(404, json={"message": "no route"})

    def _approve(self, pid: str) -> None:
        self.payments[pid]["status"] = "approved"
        self.payments[pid]["date_approved"] = "2026-01-01T12:05:00.000-03:00"

    def _create_pix(self) -> str:
        resp = self.client.post(
            "/api/pix/create",
            json={"email": "buyer@example.com", "name": "Ana Souza", "amount": 99, "cpf": "123.456.789-01"},
        )
        self.assertEqual(resp.status_code, 200, resp.text)
        return resp.json()["paymentId"]

    def _subscription_count(self) -> int:
        db = self.SessionLocal()
        try:
            return db.query(Subscription).count()
        finally:
            db.close()


class TestPixFlow(EndpointTestCase):
    def test_create_pix_returns_qr_code(self):
        resp = self.client.post(
            "/api/pix/create",
            json={"email": "buyer@example.com", "name": "Ana Souza", "cpf": "12345678901", "planId": "monthly"},
        )
        self.assertEqual(resp.status_code, 200, resp.text)
        data = resp.json()
        self.assertTrue(data["success"])
        self.assertEqual(data["pixData"]["qrCode"], "00020126pix")
        self.assertEqual(data["pixData"]["status"], "pending")
        self.assertEqual(data["pixData"]["amount"], 99.0)

    def test_create_pix_rejects_bad_cpf(self):
        resp = self.client.post(
            "/api/pix/create",
            json={"email": "buyer@example.com", "name": "Ana", "amount": 99, "cpf": "123.456.789-0"},
        )
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json(), {"success": False, "error": "CPF must have exactly 11 digits"})
        self.assertEqual(self.gateway_calls, [])

    def test_malformed_bodies_use_error_shape(self):
        cases = [
            ("/api/pix/create", {"email": "buyer@example.com", "name": "Ana", "amount": "abc", "cpf": "12345678901"}),
            ("/api/pix/create", {"email": "buyer@example.com", "name": "Ana", "amount": 99, "cpf": 12345678901}),
        ]
        for path, body in cases:
            with self.subTest(body=body):
                resp = self.client.post(path, json=body)
                self.assertEqual(resp.status_code, 400)
                data = resp.json()
                self.assertFalse(data["success"])
                self.assertEqual(data["error"], "Invalid request body")
                self.assertTrue(data["details"])
        self.assertEqual(self.gateway_calls, [])

    def test_invalid_json_uses_error_shape(self):
        for path in ("/api/pix/verify", "/api/pix/confirm"):
            with self.subTest(path=path):
                resp = self.client.post(path, content=b"{not json", headers={"Content-Type": "application/json"})
                self.assertEqual(resp.status_code, 400)
                self.assertEqual(resp.json()["success"], False)
                self.assertEqual(resp.json()["error"], "Invalid request body")

    def test_validation_details_hidden_in_production(self):
        saved = settings.environment
        settings.environment = "production"
        try:
            resp = self.client.post("/api/pix/create", json={"amount": "abc"})
        finally:
            settings.environment = saved
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json(), {"success": False, "error": "Invalid request body"})

    def test_create_pix_requires_fields(self):
        resp = self.client.post("/api/pix/create", json={"email": "buyer@example.com"})
        self.assertEqual(resp.status_code, 400)
        self.assertFalse(resp.json()["success"])

    def test_webhook_activates_subscription(self):
        pid = self._create_pix()
        self._approve(pid)

        resp = self.client.post("/api/webhook/mercadopago", json={"type": "payment", "data": {"id": pid}})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "created")
        self.assertEqual(self._subscription_count(), 1)

        resp = self.client.post("/api/check-subscriber", json={"email": "buyer@example.com"})
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertTrue(data["isSubscriber"])
        self.assertEqual(data["subscriber"]["planType"], "monthly")

    def test_webhook_replay_and_client_confirm_create_one_subscription(self):
        pid = self._create_pix()
        self._approve(pid)

        first = self.client.post("/api/webhook/mercadopago", json={"type": "payment", "data": {"id": pid}})
        again = self.client.post("/api/webhook/mercadopago", json={"type": "payment", "data": {"id": pid}})
        confirm = self.client.post("/api/pix/confirm", json={"paymentId": pid})

        self.assertEqual(first.json()["status"], "created")
        self.assertEqual(again.json()["status"], "already_processed")
        self.assertEqual(confirm.json()["outcome"], "already_processed")
        self.assertTrue(confirm.json()["isApproved"])
        self.assertEqual(first.json()["subscriptionId"], confirm.json()["subscriptionId"])
        self.assertEqual(self._subscription_count(), 1)

    def test_confirm_before_approval(self):
        pid = self._create_pix()

        resp = self.client.post("/api/pix/confirm", json={"paymentId": pid, "maxRetries": 1})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["outcome"], "pending")
        self.assertFalse(resp.json()["isApproved"])
        self.assertEqual(self._subscription_count(), 0)

        self._approve(pid)
        resp = self.client.post("/api/pix/confirm", json={"paymentId": pid})
        self.assertEqual(resp.json()["outcome"], "created")
        self.assertTrue(resp.json()["isApproved"])
        self.assertEqual(self._subscription_count(), 1)

    def test_verify_reports_status(self):
        pid = self._create_pix()
        resp = self.client.post("/api/pix/verify", json={"paymentId": pid})
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(resp.json()["isApproved"])
        self.assertEqual(resp.json()["payment"]["status"], "pending")

    def test_verify_gateway_outage(self):
        pid = self._create_pix()
        self.gateway_down = True
        self.gateway_calls.clear()

        resp = self.client.post("/api/pix/verify", json={"paymentId": pid, "maxRetries": 2, "delayMs": 0})
        self.assertEqual(resp.status_code, 503)
        data = resp.json()
        self.assertFalse(data["success"])
        self.assertIn("suggestion", data)
        self.assertEqual(len(self.gateway_calls), 2)
        self.assertEqual(self._subscription_count(), 0)

    def test_verify_requires_payment_id(self):
        resp = self.client.post("/api/pix/verify", json={})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "paymentId is required")


class TestWebhook(EndpointTestCase):
    def test_non_payment_events_ignored(self):
        resp = self.client.post("/api/webhook/mercadopago", json={"type": "merchant_order", "data": {"id": "1"}})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "ignored")
        self.assertEqual(self.gateway_calls, [])

    def test_query_string_notification(self):
        pid = self._create_pix()
        self._approve(pid)
        resp = self.client.post(f"/api/webhook/mercadopago?topic=payment&id={pid}")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "created")

    def test_gateway_outage_still_acknowledged(self):
        self.gateway_down = True
        resp = self.client.post("/api/webhook/mercadopago", json={"type": "payment", "data": {"id": "77"}})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "gateway_error")
        self.assertTrue(resp.json()["retryable"])
        self.assertEqual(self._subscription_count(), 0)

    def test_signature_checked_when_secret_configured(self):
        settings.mercadopago_webhook_secret = "whsec"
        pid = self._create_pix()
        self._approve(pid)
        body = {"type": "payment", "data": {"id": pid}}

        resp = self.client.post("/api/webhook/mercadopago", json=body, headers={"x-signature": "ts=1,v1=deadbeef"})
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(self._subscription_count(), 0)

        manifest = f"id:{pid};request-id:req-1;ts:1700000000;"
        digest = hmac.new(b"whsec", manifest.encode("utf-8"), hashlib.sha256).hexdigest()
        resp = self.client.post(
            "/api/webhook/mercadopago",
            json=body,
            headers={"x-signature": f"ts=1700000000,v1={digest}", "x-request-id": "req-1"},
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "created")

    def test_probe(self):
        resp = self.client.get("/api/webhook/mercadopago")
        self.assertEqual(resp.status_code, 200)


class TestCheckSubscriber(EndpointTestCase):
    def test_requires_identity(self):
        resp = self.client.post("/api/check-subscriber", json={})
        self.assertEqual(resp.status_code, 400)

    def test_store_then_cache(self):
        db = self.SessionLocal()
        try:
            ensure_subscription(
                db,
                user_id="uid-1",
                email="buyer@example.com",
                plan_id="monthly",
                payment_id="pay-1",
                payment_method="pix",
            )
        finally:
            db.close()

        first = self.client.post("/api/check-subscriber", json={"email": "Buyer@Example.com"}).json()
        second = self.client.post("/api/check-subscriber", json={"email": "buyer@example.com"}).json()
        strict = self.client.post("/api/check-subscriber", json={"email": "buyer@example.com", "strict": True}).json()
        by_user = self.client.post("/api/check-subscriber", json={"userId": "uid-1"}).json()

        self.assertTrue(first["isSubscriber"])
        self.assertEqual(first["source"], "store")
        self.assertEqual(second["source"], "cache")
        self.assertEqual(strict["source"], "store")
        self.assertTrue(by_user["isSubscriber"])

    def test_unknown_subscriber(self):
        data = self.client.post("/api/check-subscriber", json={"email": "nobody@example.com"}).json()
        self.assertFalse(data["isSubscriber"])
        self.assertIsNone(data["subscriber"])


class TestAdmin(EndpointTestCase):
    def test_requires_credentials(self):
        resp = self.client.post("/api/admin/debug-subscription", json={"action": "check", "email": "a@b.com"})
        self.assertEqual(resp.status_code, 401)
        resp = self.client.post(
            "/api/admin/debug-subscription",
            json={"action": "check", "email": "a@b.com"},
            headers=_basic("admin", "wrong"),
        )
        self.assertEqual(resp.status_code, 401)

    def test_unconfigured_admin(self):
        settings.admin_password = None
        resp = self.client.get("/api/admin/subscriptions", headers=_basic("admin", "s3cret"))
        self.assertEqual(resp.status_code, 503)

    def test_check_then_fix(self):
        auth = _basic("admin", "s3cret")
        resp = self.client.post(
            "/api/admin/debug-subscription",
            json={"action": "check", "email": "late@example.com"},
            headers=auth,
        )
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(resp.json()["data"]["hasActiveSubscription"])

        resp = self.client.post(
            "/api/admin/debug-subscription",
            json={"action": "fix", "email": "late@example.com"},
            headers=auth,
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["message"], "Subscription fixed")
        self.assertTrue(resp.json()["data"]["paymentId"].startswith("manual-fix-"))

        check = self.client.post("/api/check-subscriber", json={"email": "late@example.com", "strict": True}).json()
        self.assertTrue(check["isSubscriber"])

        listing = self.client.get("/api/admin/subscriptions", headers=auth).json()
        self.assertEqual(listing["total"], 1)
        self.assertEqual(listing["active"], 1)

    def test_unknown_action(self):
        resp = self.client.post(
            "/api/admin/debug-subscription",
            json={"action": "delete", "email": "a@b.com"},
            headers=_basic("admin", "s3cret"),
        )
        self.assertEqual(resp.status_code, 400)

    def test_recent_payments(self):
        self._create_pix()
        resp = self.client.get("/api/admin/payments/recent?limit=5", headers=_basic("admin", "s3cret"))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(len(resp.json()["payments"]), 1)


class TestCronAndGate(EndpointTestCase):
    def test_cleanup_requires_secret(self):
        settings.cron_secret = "cron-token"
        resp = self.client.get("/api/cron/cleanup-subscriptions")
        self.assertEqual(resp.status_code, 401)

        resp = self.client.post("/api/cron/cleanup-subscriptions", headers={"Authorization": "Bearer cron-token"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["cleanupCount"], 0)

    def test_site_gate_exempts_health_and_webhook(self):
        settings.basic_auth_enabled = True
        saved = (settings.basic_auth_username, settings.basic_auth_password)
        settings.basic_auth_username, settings.basic_auth_password = "site", "pw"
        try:
            self.assertEqual(self.client.get("/health").status_code, 200)
            self.assertEqual(self.client.get("/healthz").status_code, 401)
            self.assertEqual(self.client.get("/health-admin").status_code, 401)
            self.assertEqual(self.client.get("/api/webhook/mercadopago").status_code, 200)
            self.assertEqual(self.client.get("/api/pix/verify").status_code, 401)
            self.assertEqual(self.client.get("/api/pix/verify", headers=_basic("site", "pw")).status_code, 200)
        finally:
            settings.basic_auth_username, settings.basic_auth_password = saved


class TestLogging(unittest.TestCase):
    def test_paywall_events_reach_a_handler(self):
        log = logging.getLogger("paywall")
        self.assertTrue(any(isinstance(h, logging.StreamHandler) for h in log.handlers))
        self.assertEqual(log.level, logging.getLevelName(settings.log_level))


if __name__ == "__main__":
    unittest.main()
