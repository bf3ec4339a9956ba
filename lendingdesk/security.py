from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from .config import settings

pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=settings.bcrypt_salt_rounds,
)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    if not password or not hashed:
        return False
    try:
        return pwd_context.verify(password, hashed)
    except ValueError:
        # unrecognised hash format
        return False


def create_access_token(data: Dict[str, Any], *, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.access_token_minutes))
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise ValueError("Invalid token") from exc


def generate_refresh_token() -> str:
    return secrets.token_hex(64)


def refresh_token_hash(raw_token: str) -> str:
    return hmac.new(settings.secret_key.encode("utf-8"), raw_token.encode("utf-8"), hashlib.sha256).hexdigest()


def refresh_expiry_datetime() -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=settings.refresh_token_days)


def generate_reset_token() -> str:
    return secrets.token_hex(32)


def reset_token_hash(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def reset_expiry_datetime() -> datetime:
    return datetime.now(timezone.utc) + timedelta(minutes=settings.password_reset_minutes)
