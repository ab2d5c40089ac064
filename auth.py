from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any

SUPABASE_AUDIENCE = "authenticated"


def _b64decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def _decode_segment(segment: str) -> dict[str, Any]:
    try:
        decoded = json.loads(_b64decode(segment).decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValueError("Invalid token encoding.") from exc
    if not isinstance(decoded, dict):
        raise ValueError("Invalid token encoding.")
    return decoded


def read_bearer_token(authorization: str | None) -> str | None:
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip()
        return token or None
    return None


def verify_access_token(
    token: str,
    secret: str,
    audience: str | None = SUPABASE_AUDIENCE,
    leeway_seconds: int = 30,
) -> dict[str, Any]:
    """Verify a Supabase HS256 access token and return its claims."""
    try:
        header_segment, payload_segment, signature_segment = token.split(".")
    except ValueError as exc:
        raise ValueError("Invalid token format.") from exc

    header = _decode_segment(header_segment)
    if header.get("alg") != "HS256":
        raise ValueError("Unsupported token algorithm.")

    signing_input = f"{header_segment}.{payload_segment}".encode("utf-8")
    expected = hmac.new(secret.encode("utf-8"), signing_input, hashlib.sha256).digest()
    try:
        signature = _b64decode(signature_segment)
    except ValueError as exc:
        raise ValueError("Invalid token signature.") from exc
    if not hmac.compare_digest(expected, signature):
        raise ValueError("Invalid token signature.")

    claims = _decode_segment(payload_segment)
    exp = claims.get("exp")
    if exp is None or int(exp) + leeway_seconds < int(time.time()):
        raise ValueError("Token expired.")

    if audience is not None:
        token_audience = claims.get("aud")
        audiences = token_audience if isinstance(token_audience, list) else [token_audience]
        if audience not in audiences:
            raise ValueError("Invalid token audience.")

    if not claims.get("sub"):
        raise ValueError("Token has no subject.")
    return claims
