from __future__ import annotations

import hmac
import inspect
import json
import logging
import os
import smtplib
from datetime import datetime, timezone
from email.message import EmailMessage
from functools import lru_cache
from typing import Any, Literal, TYPE_CHECKING

import psycopg
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from pydantic import BaseModel, Field, ValidationError

from auth import read_bearer_token, verify_access_token
from config import (
    admin_secret,
    cors_origins,
    dodo_webhook_secret,
    env,
    is_development,
    supabase_jwt_secret,
    validate_env,
)
from db import (
    claim_webhook_event,
    get_customer_by_email,
    get_subscription,
    get_webhook_event,
    list_subscriptions_for_email,
    mark_webhook_event,
)
from payments import (
    CancelOption,
    CancelSubscriptionResult,
    DodoAPIError,
    cancel_subscription,
    create_checkout_session,
    create_customer_portal_session,
    list_products,
    static_checkout_url,
)
from webhooks import (
    WebhookConfigError,
    WebhookSignatureError,
    apply_event,
    classify_event,
    parse_envelope,
    verify_webhook,
    webhook_headers,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("dodobilling")

if TYPE_CHECKING:
    from langchain_openai import ChatOpenAI

ACTIVE_SUBSCRIPTION_STATUSES = {"active", "trialing"}


class CancelSubscriptionRequest(BaseModel):
    option: CancelOption = "next_billing"


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    messages: list[ChatMessage] = Field(default_factory=list)
    model: str | None = None
    temperature: float | None = Field(default=None, ge=0, le=2)
    max_tokens: int | None = Field(default=None, gt=0)


class ChatUsage(BaseModel):
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None


class ChatResponse(BaseModel):
    content: str
    usage: ChatUsage | None = None


class CheckoutItem(BaseModel):
    product_id: str
    quantity: int = Field(default=1, ge=1)


class CheckoutCustomer(BaseModel):
    email: str
    name: str | None = None


class CheckoutSessionRequest(BaseModel):
    product_cart: list[CheckoutItem] = Field(min_length=1)
    customer: CheckoutCustomer | None = None
    metadata: dict[str, str] | None = None


class CheckoutSessionResponse(BaseModel):
    checkout_url: str
    session_id: str | None = None


class Product(BaseModel):
    product_id: str | None = None
    name: str | None = None
    price: float
    currency: str | None = None
    description: str | None = None
    pricing_type: str | None = None


class ProductsResponse(BaseModel):
    products: list[Product]


class ReplayResponse(BaseModel):
    event_id: str
    status: str
    error: str | None = None


app = FastAPI(title="Dodo Billing Backend")

validate_env()

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _smtp_settings() -> dict[str, Any]:
    host = env("SMTP_HOST")
    sender = env("SMTP_FROM")
    if not host or not sender:
        raise RuntimeError("SMTP is not configured.")
    return {
        "host": host,
        "port": int(env("SMTP_PORT", "587") or 587),
        "user": env("SMTP_USER"),
        "password": env("SMTP_PASSWORD"),
        "sender": sender,
        "use_tls": (env("SMTP_USE_TLS", "true") or "true").lower() in {"1", "true", "yes"},
    }


def _send_email(to_address: str, subject: str, body: str) -> None:
    settings = _smtp_settings()
    message = EmailMessage()
    message["From"] = settings["sender"]
    message["To"] = to_address
    message["Subject"] = subject
    message.set_content(body)
    with smtplib.SMTP(settings["host"], settings["port"]) as smtp:
        if settings["use_tls"]:
            smtp.starttls()
        if settings["user"] and settings["password"]:
            smtp.login(settings["user"], settings["password"])
        smtp.send_message(message)


def _alert_admin(subject: str, body: str) -> None:
    alert_email = env("ALERT_EMAIL_TO")
    if not alert_email:
        logger.error("%s: %s", subject, body)
        return
    try:
        _send_email(alert_email, subject, body)
    except (OSError, RuntimeError, smtplib.SMTPException):
        logger.exception("Failed to send admin alert.")


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def _require_user(request: Request) -> dict[str, Any]:
    token = read_bearer_token(request.headers.get("authorization")) or request.cookies.get(
        "sb-access-token"
    )
    if not token:
        raise HTTPException(status_code=401, detail="Missing auth token.")
    try:
        secret = supabase_jwt_secret()
    except RuntimeError as exc:
        logger.error("Authenticated route called without SUPABASE_JWT_SECRET.")
        raise HTTPException(status_code=503, detail="Authentication is not configured.") from exc
    try:
        claims = verify_access_token(token, secret)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    if not claims.get("email"):
        raise HTTPException(status_code=401, detail="Token has no email.")
    return claims


def _require_admin(request: Request) -> None:
    try:
        expected = admin_secret()
    except RuntimeError as exc:
        raise HTTPException(status_code=503, detail="Admin endpoints are disabled.") from exc
    provided = request.headers.get("x-admin-secret") or ""
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Invalid admin secret.")


def _has_active_subscription(email: str) -> bool:
    try:
        subscriptions = list_subscriptions_for_email(email)
    except (psycopg.Error, RuntimeError):
        logger.exception("Subscription check failed.")
        return False
    return any(
        (row.get("subscription_status") or "").lower() in ACTIVE_SUBSCRIPTION_STATUSES
        for row in subscriptions
    )


def _apply_payload(payload: Any) -> tuple[str, str | None]:
    """Classify and upsert one event payload; returns the ledger status and error."""
    try:
        envelope = parse_envelope(payload)
        event = classify_event(envelope)
    except ValidationError as exc:
        logger.warning("Webhook payload failed validation: %s", exc.errors()[:3])
        return "invalid_payload", str(exc)
    if event is None:
        logger.info("Ignoring unhandled webhook event type: %s", envelope.type)
        return "ignored", None
    result = apply_event(event, envelope)
    if not result.ok:
        return "failed", "; ".join(result.errors)
    return "processed", None


def _finish_event(event_id: str, status: str, error: str | None) -> None:
    processed_at = _now_utc() if status in {"processed", "ignored"} else None
    try:
        mark_webhook_event(event_id, status, processed_at=processed_at, error=error)
    except (psycopg.Error, RuntimeError):
        logger.exception("Failed to update webhook event %s.", event_id)
    if status == "failed":
        _alert_admin("Dodo webhook processing failed", f"Event {event_id}: {error}")


def _ingest_delivery(event_id: str, raw_body: bytes) -> JSONResponse:
    try:
        payload: Any = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        payload = None

    if isinstance(payload, dict):
        raw = payload
        event_type = payload.get("type") if isinstance(payload.get("type"), str) else None
    else:
        raw = {"raw": raw_body.decode("utf-8", errors="replace")}
        event_type = None

    try:
        fresh = claim_webhook_event(event_id=event_id, event_type=event_type, raw=raw)
    except (psycopg.Error, RuntimeError) as exc:
        logger.exception("Failed to record webhook event %s.", event_id)
        _alert_admin("Dodo webhook ledger unavailable", str(exc))
        return _error(500, "Webhook processing failed")
    if not fresh:
        logger.info("Webhook event %s already processed; acknowledging.", event_id)
        return JSONResponse({"status": "ok"})

    if payload is None:
        _finish_event(event_id, "invalid_payload", "Invalid JSON payload.")
        return _error(400, "Invalid webhook payload")

    status, error = _apply_payload(payload)
    _finish_event(event_id, status, error)
    if status == "invalid_payload":
        return _error(400, "Invalid webhook payload")
    return JSONResponse({"status": "ok"})


def _llm_kwargs(
    api_key: str,
    model: str,
    base_url: str,
    temperature: float,
    max_tokens: int | None,
    headers: dict[str, str],
) -> dict:
    from langchain_openai import ChatOpenAI

    params = inspect.signature(ChatOpenAI.__init__).parameters
    kwargs: dict[str, object] = {"model": model}

    if "api_key" in params:
        kwargs["api_key"] = api_key
    if "openai_api_key" in params:
        kwargs["openai_api_key"] = api_key
    if "base_url" in params:
        kwargs["base_url"] = base_url
    if "openai_api_base" in params:
        kwargs["openai_api_base"] = base_url
    if "temperature" in params:
        kwargs["temperature"] = temperature
    if max_tokens is not None:
        if "max_tokens" in params:
            kwargs["max_tokens"] = max_tokens
        elif "max_completion_tokens" in params:
            kwargs["max_completion_tokens"] = max_tokens
    if headers and "default_headers" in params:
        kwargs["default_headers"] = headers

    return kwargs


@lru_cache(maxsize=8)
def _get_llm(model: str, temperature: float, max_tokens: int) -> "ChatOpenAI":
    from langchain_openai import ChatOpenAI

    api_key = env("OPENROUTER_API_KEY")
    if not api_key:
        raise RuntimeError("OPENROUTER_API_KEY is not set.")
    base_url = env("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1") or ""

    headers: dict[str, str] = {}
    app_url = env("OPENROUTER_APP_URL")
    app_name = env("OPENROUTER_APP_NAME")
    if app_url:
        headers["HTTP-Referer"] = app_url
    if app_name:
        headers["X-Title"] = app_name

    os.environ.setdefault("OPENAI_API_KEY", api_key)
    os.environ.setdefault("OPENAI_BASE_URL", base_url)

    return ChatOpenAI(
        **_llm_kwargs(
            api_key=api_key,
            model=model,
            base_url=base_url,
            temperature=temperature,
            max_tokens=max_tokens,
            headers=headers,
        )
    )


def _to_langchain(messages: list[ChatMessage]) -> list[BaseMessage]:
    converted: list[BaseMessage] = []
    for message in messages:
        if message.role == "system":
            converted.append(SystemMessage(content=message.content))
        elif message.role == "assistant":
            converted.append(AIMessage(content=message.content))
        else:
            converted.append(HumanMessage(content=message.content))
    return converted


def _chat_usage(response: Any) -> ChatUsage | None:
    usage = getattr(response, "usage_metadata", None)
    if not usage:
        return None
    return ChatUsage(
        prompt_tokens=usage.get("input_tokens"),
        completion_tokens=usage.get("output_tokens"),
        total_tokens=usage.get("total_tokens"),
    )


@app.get("/health")
def health_check() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/api/webhook/dodo-payments")
async def dodo_payments_webhook(request: Request) -> JSONResponse:
    raw_body = await request.body()
    headers = webhook_headers(request.headers)
    if headers is None:
        logger.warning("Webhook rejected: missing webhook headers.")
        return _error(400, "Missing webhook headers")

    try:
        verify_webhook(raw_body, headers, dodo_webhook_secret())
    except (RuntimeError, WebhookConfigError) as exc:
        logger.error("Webhook secret unavailable: %s", exc)
        return _error(500, "Server configuration error")
    except WebhookSignatureError as exc:
        logger.warning("Invalid webhook signature for %s: %s", headers["webhook-id"], exc)
        return _error(403, "Invalid webhook signature")

    return _ingest_delivery(headers["webhook-id"], raw_body)


@app.post("/api/admin/webhooks/{event_id}/replay", response_model=ReplayResponse)
def replay_webhook_event(event_id: str, raw_request: Request) -> ReplayResponse:
    _require_admin(raw_request)
    try:
        row = get_webhook_event(event_id)
    except (psycopg.Error, RuntimeError) as exc:
        logger.exception("Failed to load webhook event %s.", event_id)
        raise HTTPException(status_code=503, detail="Database unavailable.") from exc
    if not row:
        raise HTTPException(status_code=404, detail="Webhook event not found.")
    status, error = _apply_payload(row["raw"])
    _finish_event(event_id, status, error)
    logger.info("Replayed webhook event %s: %s", event_id, status)
    return ReplayResponse(event_id=event_id, status=status, error=error)


@app.post("/api/subscriptions/{subscription_id}/cancel", response_model=CancelSubscriptionResult)
def cancel_subscription_route(
    subscription_id: str,
    payload: CancelSubscriptionRequest,
    raw_request: Request,
) -> CancelSubscriptionResult:
    user = _require_user(raw_request)
    try:
        subscription = get_subscription(subscription_id)
    except (psycopg.Error, RuntimeError) as exc:
        logger.exception("Failed to load subscription %s.", subscription_id)
        raise HTTPException(status_code=503, detail="Database unavailable.") from exc
    owner = (subscription or {}).get("customer_email") or ""
    if not subscription or owner.lower() != str(user["email"]).lower():
        raise HTTPException(status_code=404, detail="Subscription not found.")
    return cancel_subscription(subscription_id, payload.option)


@app.get("/api/products", response_model=ProductsResponse)
def get_products() -> ProductsResponse:
    return ProductsResponse(products=[Product(**product) for product in list_products()])


@app.get("/checkout")
def static_checkout(
    product_id: str = Query(alias="productId", min_length=1),
    quantity: int = Query(default=1, ge=1),
) -> RedirectResponse:
    return RedirectResponse(static_checkout_url(product_id, quantity), status_code=307)


@app.post("/checkout", response_model=CheckoutSessionResponse)
def session_checkout(payload: CheckoutSessionRequest) -> CheckoutSessionResponse:
    try:
        session = create_checkout_session(
            [item.model_dump() for item in payload.product_cart],
            customer=payload.customer.model_dump(exclude_none=True) if payload.customer else None,
            metadata=payload.metadata,
        )
    except (DodoAPIError, RuntimeError) as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return CheckoutSessionResponse(
        checkout_url=session["checkout_url"],
        session_id=session.get("session_id"),
    )


@app.get("/customer-portal")
def customer_portal(raw_request: Request) -> RedirectResponse:
    user = _require_user(raw_request)
    try:
        customer = get_customer_by_email(str(user["email"]))
    except (psycopg.Error, RuntimeError) as exc:
        logger.exception("Failed to load customer for portal.")
        raise HTTPException(status_code=503, detail="Database unavailable.") from exc
    if not customer:
        raise HTTPException(status_code=404, detail="No billing customer for this account.")
    try:
        link = create_customer_portal_session(customer["customer_id"])
    except (DodoAPIError, RuntimeError) as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return RedirectResponse(link, status_code=307)


@app.post("/api/ai/chat", response_model=ChatResponse)
def ai_chat(payload: ChatRequest, raw_request: Request) -> ChatResponse:
    user = _require_user(raw_request)
    if is_development():
        logger.warning("Development mode: skipping subscription check.")
    elif not _has_active_subscription(str(user["email"])):
        raise HTTPException(status_code=403, detail="Subscription required")

    if not payload.messages:
        raise HTTPException(status_code=400, detail="No messages provided")
    if not env("OPENROUTER_API_KEY"):
        raise HTTPException(
            status_code=500,
            detail="Server is not configured with an OpenRouter API key.",
        )

    llm = _get_llm(
        payload.model or env("OPENROUTER_MODEL", "openai/gpt-4o-mini") or "openai/gpt-4o-mini",
        payload.temperature if payload.temperature is not None else 0.7,
        payload.max_tokens or 1000,
    )
    try:
        response = llm.invoke(_to_langchain(payload.messages))
    except Exception as exc:
        if getattr(exc, "status_code", None) == 429:
            raise HTTPException(
                status_code=429,
                detail="Rate limit exceeded. Please wait a bit before trying again.",
            ) from exc
        logger.exception("AI provider call failed.")
        raise HTTPException(status_code=502, detail=f"AI provider error: {exc}") from exc

    content = getattr(response, "content", None) or "No response generated"
    return ChatResponse(content=str(content), usage=_chat_usage(response))
