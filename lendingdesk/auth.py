from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, update
from sqlmodel import Session, select

from . import mail
from .config import settings
from .errors import NotFound, Unauthorized, ValidationError
from .models import Address, PasswordResetToken, RefreshToken, User, UserRole
from .security import (
    create_access_token,
    decode_token,
    generate_refresh_token,
    generate_reset_token,
    hash_password,
    refresh_expiry_datetime,
    refresh_token_hash,
    reset_expiry_datetime,
    reset_token_hash,
    verify_password,
)
from .timezone_utils import is_expired, now_local

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid email or password"
INVALID_RESET_TOKEN = "Invalid or expired token"


@dataclass
class IssuedSession:
    access_token: str
    refresh_token: str
    refresh_expires_at: datetime
    user: User


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def ensure_default_super_admin(session: Session) -> User:
    admin = session.exec(select(User).where(User.role == UserRole.SUPER_ADMIN)).first()
    if admin:
        return admin
    email = normalize_email(settings.default_admin_email)
    password = settings.default_admin_password.strip()
    if not email or not password:
        raise RuntimeError("DEFAULT_ADMIN_EMAIL and DEFAULT_ADMIN_PASSWORD must be set")
    admin = User(
        email=email,
        name="Super Admin",
        first_name="Super",
        last_name="Admin",
        role=UserRole.SUPER_ADMIN,
        password_hash=hash_password(password),
    )
    session.add(admin)
    session.commit()
    session.refresh(admin)
    logger.warning("Created default super admin %s; change the password immediately", email)
    return admin


def get_user(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if not user:
        raise NotFound("User not found")
    return user


def get_user_by_email(session: Session, email: str) -> Optional[User]:
    normalized = normalize_email(email)
    if not normalized:
        return None
    return session.exec(select(User).where(User.email == normalized)).first()


def authenticate_user(session: Session, *, email: str, password: str) -> User:
    user = get_user_by_email(session, email)
    if not user or not user.is_active or not verify_password(password, user.password_hash):
        logger.warning("Rejected login for %s", normalize_email(email))
        raise Unauthorized(INVALID_CREDENTIALS)
    return user


def build_access_token(user: User) -> str:
    return create_access_token({"sub": str(user.id), "email": user.email, "role": user.role.value})


def _store_refresh_token(session: Session, user: User) -> tuple[str, datetime]:
    raw_token = generate_refresh_token()
    expires_at = refresh_expiry_datetime()
    session.add(RefreshToken(token_hash=refresh_token_hash(raw_token), user_id=user.id, expires_at=expires_at))
    return raw_token, expires_at


def issue_session(session: Session, user: User) -> IssuedSession:
    """Issue an access/refresh pair; the user's previous refresh tokens are dropped."""
    session.exec(delete(RefreshToken).where(RefreshToken.user_id == user.id))
    raw_token, expires_at = _store_refresh_token(session, user)
    session.commit()
    session.refresh(user)
    return IssuedSession(
        access_token=build_access_token(user),
        refresh_token=raw_token,
        refresh_expires_at=expires_at,
        user=user,
    )


def login(session: Session, *, email: str, password: str) -> IssuedSession:
    user = authenticate_user(session, email=email, password=password)
    issued = issue_session(session, user)
    logger.info("User %s logged in", user.id)
    return issued


def refresh_session(session: Session, raw_token: str) -> IssuedSession:
    if not raw_token:
        raise Unauthorized("Missing refresh token")
    record = session.exec(
        select(RefreshToken).where(RefreshToken.token_hash == refresh_token_hash(raw_token))
    ).first()
    if not record or record.revoked:
        logger.warning("Rejected unknown or revoked refresh token")
        raise Unauthorized("Invalid refresh token")
    if is_expired(record.expires_at):
        session.delete(record)
        session.commit()
        raise Unauthorized("Refresh token expired")
    user = session.get(User, record.user_id)
    if not user or not user.is_active:
        raise Unauthorized("Invalid refresh token")

    # the row is consumed by exactly one caller; a concurrent refresh loses the delete
    consumed = session.exec(delete(RefreshToken).where(RefreshToken.id == record.id))
    if consumed.rowcount != 1:
        session.rollback()
        logger.warning("Refresh token for user %s was already used", record.user_id)
        raise Unauthorized("Invalid refresh token")
    raw_next, expires_at = _store_refresh_token(session, user)
    session.commit()
    session.refresh(user)
    return IssuedSession(
        access_token=build_access_token(user),
        refresh_token=raw_next,
        refresh_expires_at=expires_at,
        user=user,
    )


def logout(session: Session, user_id: int, raw_token: Optional[str] = None) -> None:
    statement = delete(RefreshToken).where(RefreshToken.user_id == user_id)
    if raw_token:
        statement = statement.where(RefreshToken.token_hash == refresh_token_hash(raw_token))
    session.exec(statement)
    session.commit()


def get_user_from_access_token(session: Session, token: Optional[str]) -> User:
    if not token:
        raise Unauthorized("Authentication required")
    try:
        payload = decode_token(token)
    except ValueError:
        raise Unauthorized("Invalid or expired token")
    if payload.get("type") != "access":
        raise Unauthorized("Invalid or expired token")
    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        raise Unauthorized("Invalid token subject")
    user = session.get(User, user_id)
    if not user or not user.is_active:
        raise Unauthorized("User not found")
    return user


def get_user_address(session: Session, user_id: int) -> Optional[Address]:
    return session.exec(select(Address).where(Address.user_id == user_id)).first()


def request_password_reset(session: Session, email: str) -> None:
    user = get_user_by_email(session, email)
    if not user:
        # same outcome as a known address
        logger.info("Password reset requested for unknown email")
        return

    raw_token = generate_reset_token()
    session.exec(
        update(PasswordResetToken)
        .where(PasswordResetToken.user_id == user.id, PasswordResetToken.used == False)  # noqa: E712
        .values(used=True)
    )
    session.add(
        PasswordResetToken(
            token_hash=reset_token_hash(raw_token),
            user_id=user.id,
            expires_at=reset_expiry_datetime(),
        )
    )
    session.commit()

    reset_link = f"{settings.app_url}/reset-password?token={raw_token}"
    minutes = settings.password_reset_minutes
    html = (
        f"<p>Hello, {user.name or user.email}!</p>"
        "<p>We received a request to reset your password.</p>"
        f"<p>Follow the link below to choose a new one. It expires in {minutes} minutes.</p>"
        f'<p><a href="{reset_link}">Reset password</a></p>'
        "<p>If you did not ask for this, ignore this email.</p>"
    )
    try:
        mail.send_mail(
            user.email,
            "Password recovery",
            html,
            text_body=f"Reset your password at: {reset_link}",
        )
    except (smtplib.SMTPException, OSError):
        # the caller answers 202 either way; the token stays valid for a retry
        logger.exception("Could not deliver password reset mail to user %s", user.id)


def reset_password(session: Session, raw_token: str, new_password: str) -> None:
    record = session.exec(
        select(PasswordResetToken).where(PasswordResetToken.token_hash == reset_token_hash(raw_token))
    ).first()
    if not record or record.used or is_expired(record.expires_at):
        raise ValidationError(INVALID_RESET_TOKEN)
    user = get_user(session, record.user_id)
    password_hash = hash_password(new_password)

    claimed = session.exec(
        update(PasswordResetToken)
        .where(PasswordResetToken.id == record.id, PasswordResetToken.used == False)  # noqa: E712
        .values(used=True)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        session.rollback()
        logger.warning("Reset token for user %s was already redeemed", record.user_id)
        raise ValidationError(INVALID_RESET_TOKEN)
    user.password_hash = password_hash
    user.updated_at = now_local()
    session.add(user)
    session.commit()
    logger.info("Password reset completed for user %s", user.id)


def change_password(session: Session, user_id: int, current_password: str, new_password: str) -> None:
    user = get_user(session, user_id)
    if not verify_password(current_password, user.password_hash):
        raise ValidationError("Current password is incorrect")
    user.password_hash = hash_password(new_password)
    user.updated_at = now_local()
    session.add(user)
    session.commit()
