from __future__ import annotations

import os
from collections.abc import Iterable
from datetime import datetime
from functools import lru_cache
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

JSON_COLUMNS = frozenset({"metadata", "raw"})


def _database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not set.")
    return url


def get_connection():
    return psycopg.connect(_database_url(), row_factory=dict_row)


@lru_cache(maxsize=1)
def ensure_schema() -> None:
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS customers (
                    customer_id TEXT PRIMARY KEY,
                    email TEXT NOT NULL,
                    name TEXT,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS customers_email_idx
                ON customers (lower(email));
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS products (
                    product_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS subscriptions (
                    subscription_id TEXT PRIMARY KEY,
                    customer_id TEXT NOT NULL REFERENCES customers(customer_id),
                    product_id TEXT,
                    subscription_status TEXT NOT NULL,
                    quantity INTEGER NOT NULL DEFAULT 1,
                    currency TEXT,
                    start_date TIMESTAMPTZ,
                    next_billing_date TIMESTAMPTZ,
                    trial_end_date TIMESTAMPTZ,
                    cancel_at_next_billing_date BOOLEAN NOT NULL DEFAULT false,
                    cancelled_at TIMESTAMPTZ,
                    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS subscriptions_customer_idx
                ON subscriptions (customer_id);
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS transactions (
                    transaction_id TEXT PRIMARY KEY,
                    subscription_id TEXT,
                    customer_id TEXT NOT NULL REFERENCES customers(customer_id),
                    status TEXT NOT NULL,
                    amount NUMERIC(14, 2) NOT NULL,
                    currency TEXT NOT NULL,
                    payment_method TEXT,
                    card_last_four TEXT,
                    card_network TEXT,
                    card_type TEXT,
                    billed_at TIMESTAMPTZ NOT NULL,
                    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS refunds (
                    refund_id TEXT PRIMARY KEY,
                    transaction_id TEXT NOT NULL,
                    customer_id TEXT,
                    amount NUMERIC(14, 2) NOT NULL,
                    currency TEXT,
                    is_partial BOOLEAN NOT NULL DEFAULT false,
                    reason TEXT,
                    status TEXT,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS disputes (
                    dispute_id TEXT PRIMARY KEY,
                    transaction_id TEXT NOT NULL,
                    amount NUMERIC(14, 2),
                    currency TEXT,
                    dispute_stage TEXT,
                    dispute_status TEXT,
                    remarks TEXT,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS webhook_events (
                    id TEXT PRIMARY KEY,
                    event_type TEXT,
                    status TEXT NOT NULL,
                    raw JSONB NOT NULL,
                    error TEXT,
                    attempts INTEGER NOT NULL DEFAULT 1,
                    received_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    processed_at TIMESTAMPTZ
                );
                """
            )


def _adapt(column: str, value: Any) -> Any:
    if column in JSON_COLUMNS and value is not None:
        return Jsonb(value)
    return value


def _upsert(
    table: str,
    key: str,
    row: dict[str, Any],
    *,
    update: bool = True,
    keep: Iterable[str] = ("created_at",),
) -> None:
    """INSERT ... ON CONFLICT on the natural key; conflicting rows are merged or left alone."""
    ensure_schema()
    columns = list(row)
    kept = set(keep) | {key}
    assignments = [
        sql.SQL("{col} = EXCLUDED.{col}").format(col=sql.Identifier(col))
        for col in columns
        if col not in kept
    ]
    if update:
        assignments.append(sql.SQL("updated_at = now()"))
        conflict = sql.SQL("DO UPDATE SET {}").format(sql.SQL(", ").join(assignments))
    else:
        conflict = sql.SQL("DO NOTHING")
    query = sql.SQL(
        "INSERT INTO {table} ({columns}) VALUES ({values}) ON CONFLICT ({key}) {conflict}"
    ).format(
        table=sql.Identifier(table),
        columns=sql.SQL(", ").join(sql.Identifier(col) for col in columns),
        values=sql.SQL(", ").join(sql.Placeholder() for _ in columns),
        key=sql.Identifier(key),
        conflict=conflict,
    )
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(query, [_adapt(col, row[col]) for col in columns])


def upsert_customer(row: dict[str, Any]) -> None:
    _upsert("customers", "customer_id", row)


def ensure_product(product_id: str) -> None:
    _upsert("products", "product_id", {"product_id": product_id, "name": product_id}, update=False)


def upsert_subscription(row: dict[str, Any]) -> None:
    _upsert("subscriptions", "subscription_id", row)


def ensure_subscription(row: dict[str, Any]) -> None:
    _upsert("subscriptions", "subscription_id", row, update=False)


def upsert_transaction(row: dict[str, Any]) -> None:
    _upsert("transactions", "transaction_id", row)


def upsert_refund(row: dict[str, Any]) -> None:
    _upsert("refunds", "refund_id", row)


def upsert_dispute(row: dict[str, Any]) -> None:
    _upsert("disputes", "dispute_id", row)


def get_customer_by_email(email: str) -> dict[str, Any] | None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT *
                FROM customers
                WHERE lower(email) = lower(%s)
                ORDER BY updated_at DESC
                LIMIT 1
                """,
                (email,),
            )
            row = cur.fetchone()
            return dict(row) if row else None


def get_subscription(subscription_id: str) -> dict[str, Any] | None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.*, c.email AS customer_email
                FROM subscriptions s
                LEFT JOIN customers c ON c.customer_id = s.customer_id
                WHERE s.subscription_id = %s
                """,
                (subscription_id,),
            )
            row = cur.fetchone()
            return dict(row) if row else None


def list_subscriptions_for_email(email: str) -> list[dict[str, Any]]:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.subscription_id, s.subscription_status, s.created_at
                FROM subscriptions s
                JOIN customers c ON c.customer_id = s.customer_id
                WHERE lower(c.email) = lower(%s)
                ORDER BY s.created_at DESC
                """,
                (email,),
            )
            return [dict(row) for row in cur.fetchall()]


def update_subscription_cancellation(
    subscription_id: str,
    *,
    cancel_at_next_billing_date: bool,
    status: str | None = None,
    cancelled_at: datetime | None = None,
) -> bool:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE subscriptions
                SET subscription_status = COALESCE(%s, subscription_status),
                    cancel_at_next_billing_date = %s,
                    cancelled_at = COALESCE(%s, cancelled_at),
                    updated_at = now()
                WHERE subscription_id = %s
                """,
                (status, cancel_at_next_billing_date, cancelled_at, subscription_id),
            )
            return cur.rowcount > 0


def claim_webhook_event(*, event_id: str, event_type: str | None, raw: dict[str, Any]) -> bool:
    """Record a delivery; returns False when the event was already processed."""
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO webhook_events (id, event_type, status, raw)
                VALUES (%s, %s, 'received', %s)
                ON CONFLICT (id) DO UPDATE
                SET attempts = webhook_events.attempts + 1
                RETURNING processed_at
                """,
                (event_id, event_type, Jsonb(raw)),
            )
            row = cur.fetchone()
            return row is None or row["processed_at"] is None


def mark_webhook_event(
    event_id: str,
    status: str,
    processed_at: datetime | None = None,
    error: str | None = None,
) -> None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE webhook_events
                SET status = %s, error = %s, processed_at = %s
                WHERE id = %s
                """,
                (status, error, processed_at, event_id),
            )


def get_webhook_event(event_id: str) -> dict[str, Any] | None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM webhook_events WHERE id = %s", (event_id,))
            row = cur.fetchone()
            return dict(row) if row else None
