"""Shared fixtures: an in-memory billing store, a fake Dodo API and signed requests."""

import base64
import hashlib
import hmac
import json
import os
import time
from collections import defaultdict
from datetime import datetime, timezone

import psycopg
import pytest

WEBHOOK_SECRET = "whsec_" + base64.b64encode(b"dodo-test-webhook-secret-0123456").decode("ascii")
JWT_SECRET = "test-supabase-jwt-secret"
ADMIN_SECRET = "test-admin-secret-value"

os.environ["ENVIRONMENT"] = "test"
os.environ["DODO_WEBHOOK_SECRET"] = WEBHOOK_SECRET
os.environ["DODO_PAYMENTS_API_KEY"] = "test_dodo_api_key"
os.environ["DODO_PAYMENTS_ENVIRONMENT"] = "test_mode"
os.environ["DODO_PAYMENTS_RETURN_URL"] = "https://app.example.com/success"
os.environ["SUPABASE_JWT_SECRET"] = JWT_SECRET
os.environ["ADMIN_SECRET"] = ADMIN_SECRET
os.environ["DATABASE_URL"] = "postgresql://unused.invalid/billing"
os.environ.pop("DODO_API_BASE_URL", None)
os.environ.pop("ALERT_EMAIL_TO", None)

from fastapi.testclient import TestClient  # noqa: E402
from standardwebhooks.webhooks import Webhook  # noqa: E402

import db  # noqa: E402
import main  # noqa: E402
import payments  # noqa: E402
import webhooks  # noqa: E402

WEBHOOK_URL = "/api/webhook/dodo-payments"
REAL_GET_CONNECTION = db.get_connection


class FakeStore:
    """Dict-backed stand-in for the db module with upsert-by-key semantics."""

    KEYS = {
        "customers": "customer_id",
        "products": "product_id",
        "subscriptions": "subscription_id",
        "transactions": "transaction_id",
        "refunds": "refund_id",
        "disputes": "dispute_id",
    }

    def __init__(self):
        self.tables = defaultdict(dict)
        self.calls = []
        self.events = {}
        self.fail_tables = set()

    def _upsert(self, table, row, update=True):
        self.calls.append((table, dict(row)))
        if table in self.fail_tables:
            raise psycopg.OperationalError(f"could not write to {table}")
        key = row[self.KEYS[table]]
        existing = self.tables[table].get(key)
        if existing is None:
            self.tables[table][key] = dict(row)
        elif update:
            existing.update({k: v for k, v in row.items() if k != "created_at"})

    def writes(self, table):
        return [row for name, row in self.calls if name == table]

    def upsert_customer(self, row):
        self._upsert("customers", row)

    def ensure_product(self, product_id):
        self._upsert("products", {"product_id": product_id, "name": product_id}, update=False)

    def upsert_subscription(self, row):
        self._upsert("subscriptions", row)

    def ensure_subscription(self, row):
        self._upsert("subscriptions", row, update=False)

    def upsert_transaction(self, row):
        self._upsert("transactions", row)

    def upsert_refund(self, row):
        self._upsert("refunds", row)

    def upsert_dispute(self, row):
        self._upsert("disputes", row)

    def claim_webhook_event(self, *, event_id, event_type, raw):
        event = self.events.get(event_id)
        if event is None:
            self.events[event_id] = {
                "id": event_id,
                "event_type": event_type,
                "status": "received",
                "raw": raw,
                "error": None,
                "attempts": 1,
                "processed_at": None,
            }
            return True
        event["attempts"] += 1
        return event["processed_at"] is None

    def mark_webhook_event(self, event_id, status, processed_at=None, error=None):
        self.events[event_id].update(status=status, processed_at=processed_at, error=error)

    def get_webhook_event(self, event_id):
        return self.events.get(event_id)

    def get_customer_by_email(self, email):
        for row in self.tables["customers"].values():
            if row["email"].lower() == email.lower():
                return dict(row)
        return None

    def get_subscription(self, subscription_id):
        row = self.tables["subscriptions"].get(subscription_id)
        if row is None:
            return None
        customer = self.tables["customers"].get(row["customer_id"], {})
        return {**row, "customer_email": customer.get("email")}

    def list_subscriptions_for_email(self, email):
        customer = self.get_customer_by_email(email)
        if not customer:
            return []
        return [
            dict(row)
            for row in self.tables["subscriptions"].values()
            if row["customer_id"] == customer["customer_id"]
        ]

    def update_subscription_cancellation(
        self, subscription_id, *, cancel_at_next_billing_date, status=None, cancelled_at=None
    ):
        if "subscriptions" in self.fail_tables:
            raise psycopg.OperationalError("could not update subscriptions")
        row = self.tables["subscriptions"].get(subscription_id)
        if row is None:
            return False
        row["cancel_at_next_billing_date"] = cancel_at_next_billing_date
        if status is not None:
            row["subscription_status"] = status
        if cancelled_at is not None:
            row["cancelled_at"] = cancelled_at
        return True


PATCHED_NAMES = {
    webhooks: (
        "ensure_product",
        "ensure_subscription",
        "upsert_customer",
        "upsert_dispute",
        "upsert_refund",
        "upsert_subscription",
        "upsert_transaction",
    ),
    main: (
        "claim_webhook_event",
        "get_customer_by_email",
        "get_subscription",
        "get_webhook_event",
        "list_subscriptions_for_email",
        "mark_webhook_event",
    ),
    payments: ("update_subscription_cancellation",),
}


@pytest.fixture(autouse=True)
def no_real_database(monkeypatch):
    def refuse():
        raise AssertionError("tests must not open a database connection")

    monkeypatch.setattr(db, "get_connection", refuse)


@pytest.fixture
def store(monkeypatch):
    fake = FakeStore()
    for module, names in PATCHED_NAMES.items():
        for name in names:
            monkeypatch.setattr(module, name, getattr(fake, name))
    return fake


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        if text is None:
            text = json.dumps(payload) if payload is not None else ""
        self.text = text
        self.content = text.encode("utf-8")
        self.reason = "OK" if status_code < 400 else "Error"

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload


class FakeDodoAPI:
    def __init__(self):
        self.calls = []
        self.responses = []

    def queue(self, *responses):
        self.responses.extend(responses)

    def __call__(self, method, url, headers=None, timeout=None, **kwargs):
        self.calls.append({"method": method, "url": url, "headers": headers, **kwargs})
        item = self.responses.pop(0) if self.responses else FakeResponse(200, {})
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def dodo_api(monkeypatch):
    fake = FakeDodoAPI()
    monkeypatch.setattr(payments.requests, "request", fake)
    return fake


@pytest.fixture
def client():
    return TestClient(main.app)


def event_body(event_type, data, timestamp="2025-01-15T10:00:00Z"):
    return json.dumps(
        {"business_id": "bus_test", "type": event_type, "timestamp": timestamp, "data": data}
    )


def signed_headers(body, msg_id="msg_001", when=None, secret=WEBHOOK_SECRET):
    when = when or datetime.now(timezone.utc)
    text = body.decode("utf-8") if isinstance(body, bytes) else body
    return {
        "content-type": "application/json",
        "webhook-id": msg_id,
        "webhook-timestamp": str(int(when.timestamp())),
        "webhook-signature": Webhook(secret).sign(msg_id, when, text),
    }


def make_token(claims=None, secret=JWT_SECRET, alg="HS256"):
    def encode(segment):
        raw = json.dumps(segment, separators=(",", ":")).encode("utf-8")
        return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")

    body = {
        "sub": "user-123",
        "email": "jane@example.com",
        "aud": "authenticated",
        "exp": int(time.time()) + 3600,
    }
    body.update(claims or {})
    signing_input = f"{encode({'alg': alg, 'typ': 'JWT'})}.{encode(body)}"
    digest = hmac.new(secret.encode("utf-8"), signing_input.encode("utf-8"), hashlib.sha256).digest()
    signature = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return f"{signing_input}.{signature}"


def auth_headers(**claims):
    return {"authorization": f"Bearer {make_token(claims)}"}


CUSTOMER = {"customer_id": "cus_001", "email": "Jane@Example.com", "name": "Jane Doe"}


def payment_data(**overrides):
    data = {
        "payment_id": "pay_001",
        "total_amount": 4999,
        "currency": "usd",
        "status": "succeeded",
        "customer": dict(CUSTOMER),
        "subscription_id": "sub_001",
        "product_id": "pdt_pro",
        "payment_method": "card",
        "card_last_four": "4242",
        "card_network": "visa",
        "card_type": "credit",
        "metadata": {"plan": "pro"},
    }
    data.update(overrides)
    return data


def subscription_data(**overrides):
    data = {
        "subscription_id": "sub_001",
        "status": "active",
        "customer": dict(CUSTOMER),
        "product_id": "pdt_pro",
        "quantity": 1,
        "currency": "EUR",
        "start_date": "2025-01-15T10:00:00Z",
        "next_billing_date": "2025-02-15T10:00:00Z",
        "trial_period_days": 14,
        "metadata": {},
        "created_at": "2025-01-15T09:59:00Z",
    }
    data.update(overrides)
    return data
