from __future__ import annotations

import jwt
import pytest
from fastapi import HTTPException

from app.config import settings
from app.deps.admin_auth import verify_admin_user
from app.deps.auth import extract_user_from_token

SECRET = "test-secret-0123456789abcdef0123456789"


def _bearer(claims: dict, secret: str = SECRET) -> str:
    return "Bearer " + jwt.encode(claims, secret, algorithm="HS256")


@pytest.fixture(autouse=True)
def _jwt_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "SUPABASE_JWT_SECRET", SECRET)
    monkeypatch.setattr(settings, "ALLOWED_ADMIN_EMAILS", ["admin@example.com"])


def test_user_from_token_reads_role():
    user = extract_user_from_token(
        _bearer({"sub": "user-7", "email": "a@example.com", "app_metadata": {"role": "teacher"}})
    )
    assert user is not None
    assert user.user_id == "user-7"
    assert user.role == "teacher"


def test_bad_signature_is_anonymous():
    assert extract_user_from_token(_bearer({"sub": "user-7"}, secret="other")) is None
    assert extract_user_from_token(None) is None
    assert extract_user_from_token("Token abc") is None


@pytest.mark.asyncio
async def test_admin_allowlist():
    admin = await verify_admin_user(_bearer({"sub": "a-1", "email": "Admin@Example.com"}))
    assert admin.email == "Admin@Example.com"

    with pytest.raises(HTTPException) as exc_info:
        await verify_admin_user(_bearer({"sub": "u-1", "email": "learner@example.com"}))
    assert exc_info.value.status_code == 403


@pytest.mark.asyncio
async def test_admin_role_claim_passes_without_allowlist():
    admin = await verify_admin_user(
        _bearer({"sub": "a-2", "email": "ops@example.com", "app_metadata": {"role": "admin"}})
    )
    assert admin.user_id == "a-2"


@pytest.mark.asyncio
async def test_admin_requires_token():
    with pytest.raises(HTTPException) as exc_info:
        await verify_admin_user(None)
    assert exc_info.value.status_code == 401
