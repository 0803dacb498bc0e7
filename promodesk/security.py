"""Login attempt tracking and temporary account lockout."""
from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from promodesk.auth import User
from promodesk.core.formatting import format_display_datetime
from promodesk.models import LoginAttempt

MAX_FAILED_ATTEMPTS = 5
LOCKOUT_DURATION_MINUTES = 15


def record_login_attempt(
    db: Session,
    username: str,
    success: bool,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> None:
    attempt = LoginAttempt(
        username=username,
        success=success,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    db.add(attempt)
    db.commit()


def is_account_locked(db: Session, username: str) -> tuple[bool, str | None]:
    """Return ``(locked, reason)``; expired lockouts are cleared on the way."""
    user = db.query(User).filter(User.username == username).first()
    if not user or not user.is_locked:
        return False, None

    if user.locked_until and user.locked_until > datetime.now():
        return True, f"Account is locked until {format_display_datetime(user.locked_until)}"

    user.is_locked = False
    user.locked_until = None
    user.failed_login_count = 0
    db.add(user)
    db.commit()
    return False, None


def lock_account(db: Session, user: User, duration_minutes: int = LOCKOUT_DURATION_MINUTES) -> None:
    user.is_locked = True
    user.locked_until = datetime.now() + timedelta(minutes=duration_minutes)
    user.failed_login_count = 0
    db.add(user)
    db.commit()


def increment_failed_login(db: Session, username: str) -> int:
    """Count a failed login and lock the account at the limit.

    Returns the attempts left before lockout.
    """
    user = db.query(User).filter(User.username == username).first()
    if not user:
        return MAX_FAILED_ATTEMPTS

    user.failed_login_count += 1
    user.last_failed_login = datetime.now()
    db.add(user)
    db.commit()

    remaining = max(0, MAX_FAILED_ATTEMPTS - user.failed_login_count)
    if user.failed_login_count >= MAX_FAILED_ATTEMPTS:
        lock_account(db, user)
    return remaining


def reset_failed_login(db: Session, user: User) -> None:
    user.failed_login_count = 0
    user.last_failed_login = None
    db.add(user)
    db.commit()
