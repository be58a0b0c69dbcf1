"""
Identity and access dependencies.

The gateway authenticates callers and forwards the verified identity in
headers; this service trusts those headers.
"""
import hmac
from typing import Optional

from fastapi import Header, HTTPException

from chainfund.core.config import get_settings

settings = get_settings()


def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> Optional[str]:
    return x_user_id


def get_current_user_role(x_user_role: Optional[str] = Header(None)) -> Optional[str]:
    return x_user_role


def require_user(x_user_id: Optional[str] = Header(None)) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return x_user_id


def require_admin(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    if (x_user_role or "").lower() != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return x_user_id


def require_cron_secret(authorization: Optional[str] = Header(None)):
    if not settings.cron_secret:
        raise HTTPException(status_code=503, detail="Cron secret not configured")
    expected = f"Bearer {settings.cron_secret}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")
