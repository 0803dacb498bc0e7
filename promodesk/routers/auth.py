"""Authentication routes and session management."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Form, HTTPException, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from promodesk.auth import User
from promodesk.database import DATABASE_URL, get_session
from promodesk.dependencies import get_roster_registry, templates
from promodesk.security import (
    increment_failed_login,
    is_account_locked,
    record_login_attempt,
    reset_failed_login,
)
from promodesk.services import RosterSessionRegistry

router = APIRouter(tags=["Auth"])

SESSION_COOKIE = "user_id"


def _safe_next(value: str | None) -> str:
    """Only same-site paths are allowed as post-login targets."""
    if not value or "://" in value or not value.startswith("/") or value.startswith("//"):
        return "/dashboard"
    return value


@router.get("/login")
def login_page(request: Request):
    next_param = request.query_params.get("next")
    return templates.TemplateResponse(request, "auth/login.html", {"next": next_param})


@router.post("/login")
def login(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    next: str | None = Form(default=None),
    db: Session = Depends(get_session),
):
    """Handle login with lockout; only admins may sign in."""
    client_ip = request.client.host if request.client else "unknown"
    user_agent = request.headers.get("user-agent", "")
    context = {"next": next, "username": username}

    locked, lock_reason = is_account_locked(db, username)
    if locked:
        record_login_attempt(db, username, False, client_ip, user_agent)
        return templates.TemplateResponse(
            request,
            "auth/login.html",
            {**context, "error": f"Account locked due to too many failed login attempts. {lock_reason}"},
            status_code=403,
        )

    user = db.query(User).filter(User.username == username).first()
    if not user or not user.verify_password(password):
        remaining = increment_failed_login(db, username)
        record_login_attempt(db, username, False, client_ip, user_agent)
        error_msg = "Invalid username or password"
        if user and remaining > 0:
            error_msg += f" ({remaining} attempt{'s' if remaining != 1 else ''} remaining)"
        return templates.TemplateResponse(
            request,
            "auth/login.html",
            {**context, "error": error_msg},
            status_code=401,
        )

    if not user.is_admin():
        record_login_attempt(db, username, False, client_ip, user_agent)
        return templates.TemplateResponse(
            request,
            "auth/login.html",
            {**context, "error": "Access denied. Admin privileges required."},
            status_code=403,
        )

    reset_failed_login(db, user)
    record_login_attempt(db, username, True, client_ip, user_agent)

    response = RedirectResponse(url=_safe_next(next), status_code=303)
    response.set_cookie(
        key=SESSION_COOKIE,
        value=str(user.id),
        httponly=True,
        path="/",
        secure=DATABASE_URL.startswith("postgresql"),
        samesite="lax",
        max_age=86400,
    )
    return response


@router.get("/logout")
def logout(request: Request, registry: RosterSessionRegistry = Depends(get_roster_registry)):
    user_id = request.cookies.get(SESSION_COOKIE)
    if user_id and user_id.isdigit():
        registry.discard_user(int(user_id))
    response = RedirectResponse(url="/login", status_code=303)
    response.delete_cookie(SESSION_COOKIE)
    return response


def get_current_user(request: Request, db: Session = Depends(get_session)) -> User:
    """Dependency to get current authenticated user."""
    user_id = request.cookies.get(SESSION_COOKIE)
    if not user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")

    try:
        user_id = int(user_id)
    except (ValueError, TypeError):
        raise HTTPException(status_code=401, detail="Invalid session")

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def get_admin_user(user: User = Depends(get_current_user)) -> User:
    """Dependency to ensure user is listed in the admins table."""
    if not user.is_admin():
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
