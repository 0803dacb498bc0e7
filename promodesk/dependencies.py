"""Shared FastAPI dependencies."""
from __future__ import annotations

from pathlib import Path

from fastapi import Request
from fastapi.templating import Jinja2Templates

from promodesk.core.formatting import month_label
from promodesk.database import SessionLocal
from promodesk.services import RosterSessionRegistry
from promodesk.store import RecordStore

TEMPLATES_PATH = Path(__file__).parent / "templates"
STATIC_PATH = Path(__file__).parent / "static"
templates = Jinja2Templates(directory=str(TEMPLATES_PATH))


def _format_month_label(value) -> str:
    """Render a ``(year, month)`` pair as e.g. ``March 2025``."""

    if not value:
        return ""
    year, month = value
    return month_label(year, month)


templates.env.filters["month_label"] = _format_month_label


def get_record_store() -> RecordStore:
    return RecordStore(SessionLocal)


def get_roster_registry(request: Request) -> RosterSessionRegistry:
    registry = getattr(request.app.state, "roster_sessions", None)
    if registry is None:
        registry = RosterSessionRegistry()
        request.app.state.roster_sessions = registry
    return registry
