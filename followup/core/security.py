"""
Access tokens for the follow-up API.

A token names its caller (``sub``, ``user_id``), a role and the tenant whose
connections, mappings and rules it may touch. ``PLATFORM_ADMIN`` tokens may
omit the tenant and act across tenants. Tokens are compact HS256 JWTs issued
with ``iss = "followup"``; tokens minted by another service that happens to
share the secret are refused.

The signing key comes from ``FOLLOWUP_JWT_SECRET``. In prod a missing or weak
secret disables token handling entirely. In dev a key is derived from the
ledger ``DATABASE_URL``, so dev tokens only work against the ledger they were
minted for.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from .config import env_int, get_app_env, is_weak_secret, settings


logger = logging.getLogger("security")

TOKEN_ISSUER = "followup"
DEFAULT_EXP_MINUTES = 720

_dev_key_logged = False


class TokenError(ValueError):
    """Token cannot be issued or does not verify."""


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    try:
        return base64.urlsafe_b64decode(value + padding)
    except (ValueError, TypeError) as exc:
        raise TokenError("Malformed token") from exc


def _jwt_secret() -> bytes:
    global _dev_key_logged
    secret = (os.getenv("FOLLOWUP_JWT_SECRET") or "").strip()
    if get_app_env() == "prod":
        if is_weak_secret(secret):
            raise TokenError("FOLLOWUP_JWT_SECRET must be set to a strong value in prod")
        seed = secret
    elif secret:
        seed = secret
    else:
        ledger_url = os.getenv("DATABASE_URL") or settings.database_url
        seed = "dev-token-key:" + ledger_url
        if not _dev_key_logged:
            logger.warning("FOLLOWUP_JWT_SECRET missing; signing tokens with a key derived from the ledger URL")
            _dev_key_logged = True
    # Signing key stays distinct from the credential key crypto.py derives from the same secret.
    return hashlib.sha256(f"{TOKEN_ISSUER}:access-token:{seed}".encode("utf-8")).digest()


def _jwt_exp_minutes() -> int:
    return max(1, env_int("FOLLOWUP_JWT_EXP_MIN", DEFAULT_EXP_MINUTES))


def _sign(key: bytes, signing_input: str) -> bytes:
    return hmac.new(key, signing_input.encode("ascii"), hashlib.sha256).digest()


def _encode_segment(data: dict) -> str:
    return _b64url_encode(json.dumps(data, separators=(",", ":")).encode("utf-8"))


def create_access_token(*, sub: str, role: str, user_id: str, tenant_id: Optional[str]) -> str:
    key = _jwt_secret()
    now = datetime.now(timezone.utc)
    payload = {
        "iss": TOKEN_ISSUER,
        "sub": sub,
        "role": role,
        "user_id": user_id,
        "tenant_id": tenant_id,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=_jwt_exp_minutes())).timestamp()),
    }
    signing_input = f"{_encode_segment({'alg': 'HS256', 'typ': 'JWT'})}.{_encode_segment(payload)}"
    return f"{signing_input}.{_b64url_encode(_sign(key, signing_input))}"


def decode_access_token(token: str) -> dict[str, Any]:
    """Verify ``token`` and return its claims; raises ``TokenError`` otherwise."""
    key = _jwt_secret()
    parts = (token or "").split(".")
    if len(parts) != 3:
        raise TokenError("Malformed token")
    header_b64, payload_b64, signature_b64 = parts
    if not hmac.compare_digest(_sign(key, f"{header_b64}.{payload_b64}"), _b64url_decode(signature_b64)):
        raise TokenError("Invalid signature")
    try:
        header = json.loads(_b64url_decode(header_b64).decode("utf-8"))
        payload = json.loads(_b64url_decode(payload_b64).decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise TokenError("Malformed token") from exc
    if not isinstance(header, dict) or header.get("alg") != "HS256":
        raise TokenError("Unsupported token algorithm")
    if not isinstance(payload, dict):
        raise TokenError("Invalid payload")
    if payload.get("iss") != TOKEN_ISSUER:
        raise TokenError("Token was not issued by the follow-up service")
    exp = int(payload.get("exp") or 0)
    if exp <= 0:
        raise TokenError("Missing exp")
    if int(datetime.now(timezone.utc).timestamp()) >= exp:
        raise TokenError("Token expired")
    return payload
