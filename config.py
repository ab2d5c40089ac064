from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger("dodobilling")

DODO_ENVIRONMENTS = ("test_mode", "live_mode")


def env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value


def bool_env(name: str, default: str | None = None) -> bool:
    raw = env(name, default)
    if raw is None:
        return False
    return raw.strip().lower() in {"1", "true", "yes"}


def environment() -> str:
    return (env("ENVIRONMENT", "development") or "development").strip().lower()


def is_development() -> bool:
    return environment() in {"development", "dev", "local"}


def strict_env() -> bool:
    if os.getenv("STRICT_ENV_VALIDATION") is not None:
        return bool_env("STRICT_ENV_VALIDATION", "true")
    return environment() in {"production", "prod"}


def parse_origins(value: str | None) -> list[str]:
    if not value:
        return []
    origins: list[str] = []
    for origin in value.split(","):
        origin = origin.strip()
        if not origin or origin == "*":
            continue
        origins.append(origin.rstrip("/"))
    return origins


def frontend_url() -> str:
    return (env("FRONTEND_URL", "http://localhost:3000") or "").rstrip("/")


def cors_origins() -> list[str]:
    origins = [frontend_url()]
    for origin in parse_origins(env("CORS_ORIGINS")):
        if origin not in origins:
            origins.append(origin)
    return origins


def dodo_environment() -> str:
    value = (env("DODO_PAYMENTS_ENVIRONMENT") or "test_mode").strip().lower()
    if value not in DODO_ENVIRONMENTS:
        raise RuntimeError('DODO_PAYMENTS_ENVIRONMENT must be "test_mode" or "live_mode".')
    return value


def dodo_api_key() -> str:
    api_key = env("DODO_PAYMENTS_API_KEY")
    if not api_key:
        raise RuntimeError("DODO_PAYMENTS_API_KEY is not set.")
    return api_key


def dodo_webhook_secret() -> str:
    secret = env("DODO_WEBHOOK_SECRET") or env("DODO_PAYMENTS_WEBHOOK_KEY")
    if not secret:
        raise RuntimeError("DODO_WEBHOOK_SECRET is not set.")
    return secret


def dodo_api_base() -> str:
    override = env("DODO_API_BASE_URL")
    if override:
        return override.rstrip("/")
    if dodo_environment() == "live_mode":
        return "https://live.dodopayments.com"
    return "https://test.dodopayments.com"


def dodo_checkout_base() -> str:
    if dodo_environment() == "live_mode":
        return "https://checkout.dodopayments.com"
    return "https://test.checkout.dodopayments.com"


def dodo_return_url() -> str:
    return env("DODO_PAYMENTS_RETURN_URL") or f"{frontend_url()}/success"


def dodo_timeout_seconds() -> float:
    return float(env("DODO_API_TIMEOUT_SECONDS", "15") or 15)


def supabase_jwt_secret() -> str:
    secret = env("SUPABASE_JWT_SECRET")
    if not secret:
        raise RuntimeError("SUPABASE_JWT_SECRET is not set.")
    return secret


def admin_secret() -> str:
    secret = env("ADMIN_SECRET")
    if not secret:
        raise RuntimeError("ADMIN_SECRET is not set.")
    return secret


def validate_env() -> None:
    """Fail fast on broken configuration; strict mode treats missing secrets as errors."""
    errors: list[str] = []
    warnings: list[str] = []
    strict = strict_env()

    try:
        dodo_environment()
    except RuntimeError as exc:
        errors.append(str(exc))

    required = {
        "DODO_PAYMENTS_API_KEY": "cancellation, checkout and product sync disabled",
        "DATABASE_URL": "webhook ingestion disabled",
        "SUPABASE_JWT_SECRET": "authenticated routes disabled",
    }
    for name, impact in required.items():
        if env(name):
            continue
        if strict:
            errors.append(f"{name} is required.")
        else:
            warnings.append(f"{name} is not set; {impact}.")

    if not (env("DODO_WEBHOOK_SECRET") or env("DODO_PAYMENTS_WEBHOOK_KEY")):
        if strict:
            errors.append("DODO_WEBHOOK_SECRET is required.")
        else:
            warnings.append("DODO_WEBHOOK_SECRET is not set; webhooks will be rejected.")

    admin = env("ADMIN_SECRET")
    if not admin:
        warnings.append("ADMIN_SECRET is not set; admin endpoints disabled.")
    elif strict and len(admin) < 16:
        errors.append("ADMIN_SECRET must be at least 16 characters.")

    try:
        dodo_timeout_seconds()
    except ValueError:
        errors.append("DODO_API_TIMEOUT_SECONDS must be a number.")

    if errors:
        raise RuntimeError("Config errors: " + "; ".join(errors))
    for warning in warnings:
        logger.warning(warning)
