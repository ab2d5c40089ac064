"""Dodo Payments webhook ingestion.

Deliveries are signed with the Standard Webhooks scheme: HMAC-SHA256 over
``{webhook-id}.{webhook-timestamp}.{body}`` keyed by the base64 secret.
Each verified event is classified by its ``type`` and normalized into rows
that are upserted by natural id, so a redelivered event converges on the
same stored state.
"""

from __future__ import annotations

import binascii
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Mapping

import psycopg
from pydantic import BaseModel, Field, field_validator
from standardwebhooks.webhooks import EmptyWebhookSecretError, Webhook, WebhookVerificationError

from db import (
    ensure_product,
    ensure_subscription,
    upsert_customer,
    upsert_dispute,
    upsert_refund,
    upsert_subscription,
    upsert_transaction,
)

logger = logging.getLogger("dodobilling")

WEBHOOK_HEADERS = ("webhook-id", "webhook-timestamp", "webhook-signature")

ZERO_DECIMAL_CURRENCIES = frozenset(
    {"BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA", "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF"}
)


class WebhookSignatureError(Exception):
    pass


class WebhookConfigError(Exception):
    pass


class Customer(BaseModel):
    customer_id: str
    email: str
    name: str | None = None


class PaymentData(BaseModel):
    payment_id: str
    total_amount: int
    currency: str | None = None
    status: str | None = None
    customer: Customer
    subscription_id: str | None = None
    product_id: str | None = None
    payment_method: str | None = None
    card_last_four: str | None = None
    card_network: str | None = None
    card_type: str | None = None
    metadata: dict[str, Any] | None = None
    created_at: datetime | None = None


class SubscriptionData(BaseModel):
    subscription_id: str
    status: str
    customer: Customer
    product_id: str | None = None
    quantity: int | None = None
    currency: str | None = None
    start_date: datetime | None = None
    next_billing_date: datetime | None = None
    trial_period_days: int | None = None
    cancel_at_next_billing_date: bool | None = None
    cancelled_at: datetime | None = None
    metadata: dict[str, Any] | None = None
    created_at: datetime | None = None


class RefundData(BaseModel):
    refund_id: str
    payment_id: str
    amount: int
    customer: Customer | None = None
    currency: str | None = None
    is_partial: bool | None = None
    reason: str | None = None
    status: str | None = None
    created_at: datetime | None = None


class DisputeData(BaseModel):
    dispute_id: str
    payment_id: str
    amount: int | str | None = None
    currency: str | None = None
    dispute_stage: str | None = None
    dispute_status: str | None = None
    remarks: str | None = None
    created_at: datetime | None = None

    @field_validator("amount")
    @classmethod
    def _numeric_amount(cls, value: int | str | None) -> int | str | None:
        if isinstance(value, str) and value.strip():
            try:
                Decimal(value.strip())
            except InvalidOperation as exc:
                raise ValueError("amount must be numeric") from exc
        return value


class WebhookEnvelope(BaseModel):
    type: str
    timestamp: datetime
    business_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


@dataclass
class ClassifiedEvent:
    event_type: str
    data: BaseModel
    handler: Callable[[Any, WebhookEnvelope], "ApplyResult"]


@dataclass
class ApplyResult:
    event_type: str
    writes: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def webhook_headers(headers: Mapping[str, str]) -> dict[str, str] | None:
    """Pick the three signature headers; None when any of them is missing."""
    picked = {name: (headers.get(name) or "").strip() for name in WEBHOOK_HEADERS}
    if not all(picked.values()):
        return None
    return picked


def verify_webhook(raw_body: bytes, headers: Mapping[str, str], secret: str) -> None:
    try:
        verifier = Webhook(secret)
    except (binascii.Error, ValueError, RuntimeError, EmptyWebhookSecretError) as exc:
        raise WebhookConfigError("Webhook secret is empty or not valid base64.") from exc
    try:
        verifier.verify(raw_body, dict(headers))
    except WebhookVerificationError as exc:
        raise WebhookSignatureError(str(exc)) from exc
    except json.JSONDecodeError:
        # Signature matched; a non-JSON body is a payload error, not a forgery.
        return
    except ValueError as exc:
        raise WebhookSignatureError("Malformed webhook signature.") from exc


def to_major_units(amount: int | str | None, currency: str | None) -> Decimal | None:
    if amount is None or amount == "":
        return None
    try:
        minor = Decimal(str(amount).strip())
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {amount!r}") from exc
    if (currency or "").upper() in ZERO_DECIMAL_CURRENCIES:
        return minor
    return (minor / 100).quantize(Decimal("0.01"))


def _currency(value: str | None, default: str | None = None) -> str | None:
    return value.strip().upper() if value else default


def customer_row(customer: Customer) -> dict[str, Any]:
    return {
        "customer_id": customer.customer_id,
        "email": customer.email.strip().lower(),
        "name": customer.name,
    }


def subscription_row(data: SubscriptionData, envelope: WebhookEnvelope) -> dict[str, Any]:
    start_date = data.start_date or data.created_at or envelope.timestamp
    trial_end_date = None
    if data.trial_period_days:
        trial_end_date = start_date + timedelta(days=data.trial_period_days)
    return {
        "subscription_id": data.subscription_id,
        "customer_id": data.customer.customer_id,
        "product_id": data.product_id,
        "subscription_status": data.status.strip().lower(),
        "quantity": data.quantity or 1,
        "currency": _currency(data.currency),
        "start_date": start_date,
        "next_billing_date": data.next_billing_date,
        "trial_end_date": trial_end_date,
        "cancel_at_next_billing_date": bool(data.cancel_at_next_billing_date),
        "cancelled_at": data.cancelled_at,
        "metadata": data.metadata or {},
        "created_at": data.created_at or envelope.timestamp,
    }


def transaction_row(data: PaymentData, envelope: WebhookEnvelope) -> dict[str, Any]:
    currency = _currency(data.currency, "USD")
    return {
        "transaction_id": data.payment_id,
        "subscription_id": data.subscription_id,
        "customer_id": data.customer.customer_id,
        "status": (data.status or "unknown").lower(),
        "amount": to_major_units(data.total_amount, currency),
        "currency": currency,
        "payment_method": data.payment_method,
        "card_last_four": data.card_last_four,
        "card_network": data.card_network,
        "card_type": data.card_type,
        "billed_at": envelope.timestamp,
        "metadata": data.metadata or {},
        "created_at": data.created_at or envelope.timestamp,
    }


def refund_row(data: RefundData, envelope: WebhookEnvelope) -> dict[str, Any]:
    return {
        "refund_id": data.refund_id,
        "transaction_id": data.payment_id,
        "customer_id": data.customer.customer_id if data.customer else None,
        "amount": to_major_units(data.amount, data.currency),
        "currency": _currency(data.currency),
        "is_partial": bool(data.is_partial),
        "reason": data.reason,
        "status": data.status,
        "created_at": data.created_at or envelope.timestamp,
    }


def dispute_row(data: DisputeData, envelope: WebhookEnvelope) -> dict[str, Any]:
    return {
        "dispute_id": data.dispute_id,
        "transaction_id": data.payment_id,
        "amount": to_major_units(data.amount, data.currency),
        "currency": _currency(data.currency),
        "dispute_stage": data.dispute_stage,
        "dispute_status": data.dispute_status,
        "remarks": data.remarks,
        "created_at": data.created_at or envelope.timestamp,
    }


def _write(result: ApplyResult, label: str, write: Callable[..., None], *args: Any) -> bool:
    try:
        write(*args)
    except psycopg.Error as exc:
        logger.exception("Failed to write %s for %s event.", label, result.event_type)
        result.errors.append(f"{label}: {exc}")
        return False
    result.writes.append(label)
    return True


def _handle_payment(data: PaymentData, envelope: WebhookEnvelope) -> ApplyResult:
    result = ApplyResult(envelope.type)
    _write(result, "customer", upsert_customer, customer_row(data.customer))
    if data.subscription_id and envelope.type == "payment.succeeded":
        stub = {
            "subscription_id": data.subscription_id,
            "customer_id": data.customer.customer_id,
            "product_id": data.product_id,
            "subscription_status": "active",
            "metadata": {},
            "created_at": envelope.timestamp,
        }
        _write(result, "subscription", ensure_subscription, stub)
    _write(result, "transaction", upsert_transaction, transaction_row(data, envelope))
    return result


def _handle_subscription(data: SubscriptionData, envelope: WebhookEnvelope) -> ApplyResult:
    result = ApplyResult(envelope.type)
    if data.product_id:
        _write(result, "product", ensure_product, data.product_id)
    _write(result, "customer", upsert_customer, customer_row(data.customer))
    _write(result, "subscription", upsert_subscription, subscription_row(data, envelope))
    return result


def _handle_refund(data: RefundData, envelope: WebhookEnvelope) -> ApplyResult:
    result = ApplyResult(envelope.type)
    if data.customer:
        _write(result, "customer", upsert_customer, customer_row(data.customer))
    _write(result, "refund", upsert_refund, refund_row(data, envelope))
    return result


def _handle_dispute(data: DisputeData, envelope: WebhookEnvelope) -> ApplyResult:
    result = ApplyResult(envelope.type)
    _write(result, "dispute", upsert_dispute, dispute_row(data, envelope))
    return result


PAYMENT_EVENTS = ("payment.succeeded", "payment.failed", "payment.processing", "payment.cancelled")
SUBSCRIPTION_EVENTS = (
    "subscription.created",
    "subscription.active",
    "subscription.cancelled",
    "subscription.renewed",
    "subscription.on_hold",
    "subscription.failed",
    "subscription.expired",
    "subscription.plan_changed",
)
REFUND_EVENTS = ("payment.refund", "refund.succeeded", "refund.failed")
DISPUTE_EVENTS = (
    "payment.dispute",
    "dispute.opened",
    "dispute.expired",
    "dispute.accepted",
    "dispute.cancelled",
    "dispute.challenged",
    "dispute.won",
    "dispute.lost",
)

EVENT_HANDLERS: dict[str, tuple[type[BaseModel], Callable[[Any, WebhookEnvelope], ApplyResult]]] = {}
EVENT_HANDLERS.update({name: (PaymentData, _handle_payment) for name in PAYMENT_EVENTS})
EVENT_HANDLERS.update({name: (SubscriptionData, _handle_subscription) for name in SUBSCRIPTION_EVENTS})
EVENT_HANDLERS.update({name: (RefundData, _handle_refund) for name in REFUND_EVENTS})
EVENT_HANDLERS.update({name: (DisputeData, _handle_dispute) for name in DISPUTE_EVENTS})


def parse_envelope(payload: Any) -> WebhookEnvelope:
    return WebhookEnvelope.model_validate(payload)


def classify_event(envelope: WebhookEnvelope) -> ClassifiedEvent | None:
    """Validate ``data`` against the model for ``type``; None for unknown types.

    Raises pydantic.ValidationError when a known event carries malformed data.
    """
    entry = EVENT_HANDLERS.get(envelope.type)
    if entry is None:
        return None
    model, handler = entry
    return ClassifiedEvent(envelope.type, model.model_validate(envelope.data), handler)


def apply_event(event: ClassifiedEvent, envelope: WebhookEnvelope) -> ApplyResult:
    result = event.handler(event.data, envelope)
    if result.ok:
        logger.info("Applied %s event: %s", event.event_type, ", ".join(result.writes))
    else:
        logger.error("Partially applied %s event: %s", event.event_type, "; ".join(result.errors))
    return result
