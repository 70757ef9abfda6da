# app/config.py
from __future__ import annotations

import os
from pathlib import Path
from typing import List, Literal, Optional

from dotenv import load_dotenv
from pydantic import EmailStr, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# .env lives in the project root, next to pyproject.toml
ENV_FILE = Path(__file__).resolve().parents[1] / ".env"
load_dotenv(ENV_FILE, override=False)


class Settings(BaseSettings):
    # ---- App / Infra ----
    APP_VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: List[str] = Field(
        default_factory=lambda: ["http://localhost:5173", "http://127.0.0.1:5173"]
    )

    # ---- Persistence ----
    # Only required when LEDGER_STORE=postgres
    DATABASE_URL: Optional[str] = None
    LEDGER_STORE: Literal["memory", "postgres"] = "memory"

    # ---- Ledger behaviour ----
    LEDGER_MAX_RETRIES: int = Field(default=3, ge=0)
    LEDGER_OPERATION_TIMEOUT_SECONDS: float = Field(default=5.0, gt=0)
    LEVEL_CURVE_BASE_POINTS: float = Field(default=10.0, gt=0)
    LEVEL_CURVE_SCALING: float = Field(default=1.2, ge=1.0)

    # ---- Auth (Supabase JWT) ----
    SUPABASE_JWT_SECRET: Optional[str] = Field(
        default_factory=lambda: os.getenv("SUPABASE_JWT_SECRET")
    )
    ALLOWED_ADMIN_EMAILS: List[EmailStr] = Field(default_factory=list)

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("LOG_LEVEL")
    @classmethod
    def _upper_log_level(cls, v: str) -> str:
        return str(v).strip().upper() or "INFO"


settings = Settings()


def require_database_url() -> str:
    """
    Runtime check with a clear message when the postgres store is selected without a DSN.
    """
    if not settings.DATABASE_URL:
        raise RuntimeError(
            "DATABASE_URL is missing. Set it in the environment or in "
            f"{ENV_FILE} when LEDGER_STORE=postgres."
        )
    return settings.DATABASE_URL


def require_supabase_jwt() -> str:
    """
    Make sure SUPABASE_JWT_SECRET is present whenever auth needs it.
    """
    secret = settings.SUPABASE_JWT_SECRET
    if not secret:
        raise RuntimeError(
            "SUPABASE_JWT_SECRET is missing. Set it in the environment or in "
            f"{ENV_FILE}."
        )
    return secret


def get_allowed_admin_emails() -> list[str]:
    """
    Parsed admin allowlist (lowercase, without empty values).
    """
    return [
        str(email).strip().lower()
        for email in settings.ALLOWED_ADMIN_EMAILS
        if str(email).strip()
    ]
