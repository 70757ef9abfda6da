# app/deps/admin_auth.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException

from app.config import get_allowed_admin_emails
from app.core.logging import logger
from app.deps.auth import decode_token

__all__ = ["AdminUser", "verify_admin_user"]

ADMIN_ROLE = "admin"


@dataclass
class AdminUser:
    email: str
    user_id: Optional[str] = None


async def verify_admin_user(authorization: Optional[str] = Header(None)) -> AdminUser:
    """
    Validate the Supabase JWT and enforce the admin allowlist.
    Tokens whose app_metadata.role is "admin" pass without being on the list.
    """
    if not authorization or not str(authorization).startswith("Bearer "):
        logger.info("auth_missing_or_malformed")
        raise HTTPException(status_code=401, detail="missing bearer token")

    payload = decode_token(authorization)
    if payload is None:
        logger.info("auth_token_invalid")
        raise HTTPException(status_code=401, detail="invalid token")

    email = payload.get("email")
    if not email:
        logger.info("auth_email_missing")
        raise HTTPException(status_code=401, detail="email missing in token")

    app_metadata = payload.get("app_metadata")
    role = app_metadata.get("role") if isinstance(app_metadata, dict) else None
    if role != ADMIN_ROLE and str(email).lower() not in set(get_allowed_admin_emails()):
        logger.info("auth_email_forbidden", email=email)
        raise HTTPException(status_code=403, detail="forbidden")

    return AdminUser(email=str(email), user_id=payload.get("sub"))
