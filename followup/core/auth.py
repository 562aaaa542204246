"""
Bearer-token auth and tenant scoping for the HTTP surface.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException

from .config import env_flag
from .security import decode_access_token


ADMIN_ROLE = "PLATFORM_ADMIN"


@dataclass
class UserContext:
    role: str
    user_id: Optional[str] = None
    username: Optional[str] = None
    tenant_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return (self.role or "").upper() == ADMIN_ROLE


def _auth_disabled() -> bool:
    return env_flag("FOLLOWUP_AUTH_DISABLED", "true")


def _extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    if not authorization.lower().startswith("bearer "):
        return None
    token = authorization.split(" ", 1)[1].strip()
    return token or None


def _auth_error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"field": "authorization", "code": code, "message": message},
    )


def get_current_user(
    authorization: Optional[str] = Header(None),
    x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-Id"),
    x_user_name: Optional[str] = Header(None, alias="X-User-Name"),
) -> UserContext:
    if _auth_disabled():
        # Local development: tenant comes from a header, otherwise the caller acts as admin.
        if x_tenant_id:
            return UserContext(role="TENANT_USER", user_id=x_user_name or "dev", username=x_user_name, tenant_id=x_tenant_id)
        return UserContext(role=ADMIN_ROLE, user_id="dev", username=x_user_name)
    token = _extract_bearer_token(authorization)
    if not token:
        raise _auth_error(401, "AUTH_REQUIRED", "Missing bearer token")
    try:
        claims = decode_access_token(token)
    except ValueError:
        raise _auth_error(401, "AUTH_INVALID", "Invalid token")
    role = str(claims.get("role") or "").strip().upper()
    username = str(claims.get("sub") or "").strip() or None
    user_id = str(claims.get("user_id") or "").strip() or None
    tenant_id = str(claims.get("tenant_id") or "").strip() or None
    if not role or not username or not user_id:
        raise _auth_error(401, "AUTH_INVALID", "Invalid token claims")
    if role != ADMIN_ROLE and not tenant_id:
        raise _auth_error(403, "TENANT_REQUIRED", "Token is not bound to a tenant")
    return UserContext(role=role, user_id=user_id, username=username, tenant_id=tenant_id)

