from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent
DATA_DIR = BASE_DIR / "data"

load_dotenv()

INSECURE_SECRET_KEY = "change-me"


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_list(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    """Runtime settings read from the environment (and `.env`, if present)."""

    app_env: str = "development"
    database_url: str = f"sqlite:///{DATA_DIR / 'lendingdesk.db'}"
    secret_key: str = INSECURE_SECRET_KEY
    jwt_algorithm: str = "HS256"
    access_token_minutes: int = 15
    refresh_token_days: int = 7
    password_reset_minutes: int = 60
    bcrypt_salt_rounds: int = 10
    app_url: str = "http://localhost:5173"
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:5173"])
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_from: str = "no-reply@lendingdesk.local"
    default_admin_email: str = "admin@lendingdesk.local"
    default_admin_password: str = "admin12345"
    default_account_id: Optional[int] = None
    postal_code_base_url: str = "https://viacep.com.br/ws"
    postal_code_timeout: float = 10.0
    app_timezone: str = "America/Sao_Paulo"
    log_level: str = "INFO"
    log_format: str = "standard"
    refresh_cookie_secure: bool = False
    rate_limit_enabled: bool = True
    api_rate_limit: str = "1000 per 15 minutes"
    login_rate_limit: str = "50 per 15 minutes"

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        app_url = os.getenv("APP_URL", "http://localhost:5173").rstrip("/")
        default_account = os.getenv("DEFAULT_ACCOUNT_ID")
        return cls(
            app_env=os.getenv("APP_ENV", "development").strip().lower(),
            database_url=os.getenv("DATABASE_URL") or f"sqlite:///{DATA_DIR / 'lendingdesk.db'}",
            secret_key=os.getenv("SECRET_KEY", INSECURE_SECRET_KEY),
            jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
            access_token_minutes=_env_int("ACCESS_TOKEN_MINUTES", 15),
            refresh_token_days=_env_int("REFRESH_TOKEN_DAYS", 7),
            password_reset_minutes=_env_int("PASSWORD_RESET_MINUTES", 60),
            bcrypt_salt_rounds=_env_int("BCRYPT_SALT_ROUNDS", 10),
            app_url=app_url,
            cors_origins=_env_list("CORS_ORIGINS", app_url),
            smtp_host=os.getenv("SMTP_HOST") or None,
            smtp_port=_env_int("SMTP_PORT", 587),
            smtp_user=os.getenv("SMTP_USER") or None,
            smtp_password=os.getenv("SMTP_PASSWORD") or None,
            smtp_from=os.getenv("SMTP_FROM", "no-reply@lendingdesk.local"),
            default_admin_email=os.getenv("DEFAULT_ADMIN_EMAIL", "admin@lendingdesk.local"),
            default_admin_password=os.getenv("DEFAULT_ADMIN_PASSWORD", "admin12345"),
            default_account_id=int(default_account) if default_account else None,
            postal_code_base_url=os.getenv("POSTAL_CODE_BASE_URL", "https://viacep.com.br/ws").rstrip("/"),
            postal_code_timeout=float(os.getenv("POSTAL_CODE_TIMEOUT", "10")),
            app_timezone=os.getenv("APP_TIMEZONE", "America/Sao_Paulo"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "standard"),
            refresh_cookie_secure=_env_bool("REFRESH_COOKIE_SECURE"),
            rate_limit_enabled=_env_bool("RATE_LIMIT_ENABLED", True),
            api_rate_limit=os.getenv("API_RATE_LIMIT", "1000 per 15 minutes"),
            login_rate_limit=os.getenv("LOGIN_RATE_LIMIT", "50 per 15 minutes"),
        )


settings = Settings.from_env()
