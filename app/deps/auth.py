# app/deps/auth.py
from __future__ import annotations

from typing import Any, Dict, Optional

import jwt  # type: ignore
from fastapi import Header, HTTPException

from app.config import require_supabase_jwt
from app.core.logging import logger

__all__ = ["User", "decode_token", "get_current_user", "get_current_user_optional"]


class User:
    """Authenticated learner, as identified by the platform's access token."""
    def __init__(self, user_id: str, email: Optional[str] = None, role: Optional[str] = None):
        self.user_id = user_id
        self.email = email
        self.role = role


def decode_token(authorization: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Decode a Supabase HS256 bearer token.
    Returns the claims if valid, None if missing/invalid.
    """
    if not authorization or not str(authorization).startswith("Bearer "):
        return None

    token_only = str(authorization).split(" ", 1)[1].strip()

    secret = require_supabase_jwt()
    try:
        # Supabase access tokens carry "aud": "authenticated"; signature and expiry are still checked
        payload = jwt.decode(
            token_only,
            secret,
            algorithms=["HS256"],
            options={"verify_aud": False},
        )  # type: ignore[arg-type]
    except jwt.PyJWTError as e:
        logger.debug("user_auth_token_invalid", error=str(e))
        return None

    return payload if isinstance(payload, dict) else None


def _role_from_claims(payload: Dict[str, Any]) -> Optional[str]:
    app_metadata = payload.get("app_metadata")
    if isinstance(app_metadata, dict) and app_metadata.get("role"):
        return str(app_metadata["role"])
    role = payload.get("role")
    return str(role) if role else None


def extract_user_from_token(authorization: Optional[str]) -> Optional[User]:
    payload = decode_token(authorization)
    if payload is None:
        return None

    sub = payload.get("sub")
    if not sub or not str(sub).strip():
        logger.debug("user_auth_invalid_sub", sub=sub)
        return None

    return User(user_id=str(sub), email=payload.get("email"), role=_role_from_claims(payload))


async def get_current_user(authorization: Optional[str] = Header(None)) -> User:
    """
    Required auth dependency - raises 401 if not authenticated.
    """
    user = extract_user_from_token(authorization)

    if not user:
        raise HTTPException(status_code=401, detail="Authentication required")

    return user


async def get_current_user_optional(authorization: Optional[str] = Header(None)) -> Optional[User]:
    return extract_user_from_token(authorization)
