from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Literal
from urllib.parse import urlencode

import psycopg
import requests
from pydantic import BaseModel

from config import (
    dodo_api_base,
    dodo_api_key,
    dodo_checkout_base,
    dodo_return_url,
    dodo_timeout_seconds,
    env,
)
from db import update_subscription_cancellation

logger = logging.getLogger("dodobilling")

CancelOption = Literal["next_billing", "immediately"]
CANCEL_OPTIONS = ("next_billing", "immediately")

PRODUCTS_PAGE_SIZE = 100
PRODUCTS_MAX_PAGES = 20

FALLBACK_PRODUCTS: list[dict[str, Any]] = [
    {
        "product_id": "prod_basic",
        "name": "Basic Plan",
        "price": 9.99,
        "currency": "USD",
        "description": "Basic subscription plan",
    },
    {
        "product_id": "prod_premium",
        "name": "Premium Plan",
        "price": 19.99,
        "currency": "USD",
        "description": "Premium subscription plan",
    },
    {
        "product_id": "prod_pro",
        "name": "Pro Plan",
        "price": 29.99,
        "currency": "USD",
        "description": "Professional subscription plan",
    },
]


class DodoAPIError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CancelSubscriptionResult(BaseModel):
    success: bool
    error: str | None = None


def _headers() -> dict[str, str]:
    return {
        "Authorization": f"Bearer {dodo_api_key()}",
        "Content-Type": "application/json",
    }


def _request(method: str, path: str, **kwargs: Any) -> Any:
    url = f"{dodo_api_base()}{path}"
    try:
        resp = requests.request(
            method,
            url,
            headers=_headers(),
            timeout=dodo_timeout_seconds(),
            **kwargs,
        )
    except requests.RequestException as exc:
        logger.exception("Failed to reach Dodo API: %s %s", method, path)
        raise DodoAPIError("Payment provider unavailable.") from exc

    if resp.status_code >= 400:
        logger.error("Dodo API error (%s) on %s %s: %s", resp.status_code, method, path, resp.text)
        raise DodoAPIError(
            f"Dodo API error ({resp.status_code}): {resp.text or resp.reason}",
            status_code=resp.status_code,
        )
    if not resp.content:
        return {}
    try:
        return resp.json()
    except ValueError as exc:
        raise DodoAPIError("Dodo API returned a non-JSON response.") from exc


def update_subscription(subscription_id: str, payload: dict[str, Any]) -> Any:
    return _request("PATCH", f"/subscriptions/{subscription_id}", json=payload)


def extract_subscription(response: Any) -> dict[str, Any] | None:
    if not isinstance(response, dict):
        return None
    if "subscription_id" in response:
        return response
    for key in ("subscription", "data"):
        nested = response.get(key)
        if isinstance(nested, dict) and "subscription_id" in nested:
            return nested
    return None


def cancel_subscription(
    subscription_id: str,
    option: CancelOption = "next_billing",
) -> CancelSubscriptionResult:
    """Cancel at the provider, then mirror the outcome into the local row.

    There is no compensation: when the provider call succeeds and the local
    update fails, the row stays stale until the next subscription webhook.
    """
    if not subscription_id:
        return CancelSubscriptionResult(success=False, error="Subscription ID is required")
    if option not in CANCEL_OPTIONS:
        return CancelSubscriptionResult(success=False, error=f"Unsupported cancel option: {option}")

    immediately = option == "immediately"
    if immediately:
        payload: dict[str, Any] = {"status": "cancelled"}
    else:
        payload = {"cancel_at_next_billing_date": True}

    try:
        response = update_subscription(subscription_id, payload)
        subscription = extract_subscription(response)
        if not subscription or not subscription.get("subscription_id"):
            raise DodoAPIError(f"Invalid response from Dodo: {json.dumps(response, default=str)}")

        found = update_subscription_cancellation(
            str(subscription["subscription_id"]),
            cancel_at_next_billing_date=not immediately,
            status="cancelled" if immediately else None,
            cancelled_at=datetime.now(timezone.utc) if immediately else None,
        )
        if not found:
            logger.warning("Cancelled subscription %s has no local row yet.", subscription_id)
    except (DodoAPIError, RuntimeError) as exc:
        logger.error("Cancel subscription %s failed: %s", subscription_id, exc)
        return CancelSubscriptionResult(success=False, error=str(exc))
    except psycopg.Error as exc:
        logger.exception("Cancel subscription %s: local update failed.", subscription_id)
        return CancelSubscriptionResult(success=False, error=f"Database update failed: {exc}")

    logger.info("Subscription %s cancelled (%s).", subscription_id, option)
    return CancelSubscriptionResult(success=True)


def _page_items(page: Any) -> list[dict[str, Any]]:
    if isinstance(page, list):
        return [item for item in page if isinstance(item, dict)]
    if isinstance(page, dict):
        for key in ("items", "data", "products"):
            if isinstance(page.get(key), list):
                return [item for item in page[key] if isinstance(item, dict)]
        if "product_id" in page:
            return [page]
    return []


def normalize_product(product: dict[str, Any]) -> dict[str, Any]:
    detail = product.get("price_detail")
    raw_price = product.get("price")
    currency = product.get("currency")
    if isinstance(detail, dict) and detail.get("price") is not None:
        raw_price = detail["price"]
        currency = detail.get("currency") or currency
    price = (Decimal(str(raw_price)) / 100).quantize(Decimal("0.01")) if raw_price else Decimal("0.00")
    return {
        "product_id": product.get("product_id"),
        "name": product.get("name"),
        "price": float(price),
        "currency": str(currency).upper() if currency else None,
        "description": product.get("description"),
        "pricing_type": product.get("pricing_type") or (detail or {}).get("type"),
        "archived": bool(product.get("archived")),
    }


def list_products() -> list[dict[str, Any]]:
    """Active products from Dodo, or the fallback catalogue when the API is unusable."""
    if not env("DODO_PAYMENTS_API_KEY"):
        logger.warning("DODO_PAYMENTS_API_KEY not configured; returning fallback products.")
        return list(FALLBACK_PRODUCTS)

    products: list[dict[str, Any]] = []
    try:
        for page_number in range(PRODUCTS_MAX_PAGES):
            page = _request(
                "GET",
                "/products",
                params={"page_number": page_number, "page_size": PRODUCTS_PAGE_SIZE},
            )
            items = _page_items(page)
            products.extend(normalize_product(item) for item in items)
            if not isinstance(page, dict) or "items" not in page or len(items) < PRODUCTS_PAGE_SIZE:
                break
    except DodoAPIError:
        logger.warning("Product listing failed; returning fallback products.")
        return list(FALLBACK_PRODUCTS)

    active = [product for product in products if not product["archived"]]
    logger.info("Fetched %d active products from Dodo.", len(active))
    return active


def static_checkout_url(product_id: str, quantity: int = 1, redirect_url: str | None = None) -> str:
    params = {"quantity": str(quantity), "redirect_url": redirect_url or dodo_return_url()}
    return f"{dodo_checkout_base()}/buy/{product_id}?{urlencode(params)}"


def create_checkout_session(
    product_cart: list[dict[str, Any]],
    customer: dict[str, Any] | None = None,
    metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {"product_cart": product_cart, "return_url": dodo_return_url()}
    if customer:
        payload["customer"] = customer
    if metadata:
        payload["metadata"] = metadata
    response = _request("POST", "/checkouts", json=payload)
    if not isinstance(response, dict) or not response.get("checkout_url"):
        raise DodoAPIError("Checkout session response has no checkout_url.")
    return response


def create_customer_portal_session(customer_id: str) -> str:
    response = _request("POST", f"/customers/{customer_id}/customer-portal/session")
    link = response.get("link") if isinstance(response, dict) else None
    if not link:
        raise DodoAPIError("Customer portal response has no link.")
    return str(link)
