"""Routes for a single group's monthly roster."""
from __future__ import annotations

from datetime import date
from typing import Any
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Form, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from promodesk.auth import User
from promodesk.core.formatting import MONTH_CHOICES, parse_optional_int, year_choices
from promodesk.core.roster import DAYS_FILTER_OPTIONS
from promodesk.dependencies import get_record_store, get_roster_registry, templates
from promodesk.exporting import build_payment_report, report_filename
from promodesk.routers.auth import get_admin_user
from promodesk.schemas import MergedMember, PaymentToggleRequest
from promodesk.services import Notification, RosterSession, RosterSessionRegistry
from promodesk.store import RecordStore

router = APIRouter(prefix="/groups", tags=["Groups"])


def get_roster_session(
    group_id: int,
    user: User = Depends(get_admin_user),
    store: RecordStore = Depends(get_record_store),
    registry: RosterSessionRegistry = Depends(get_roster_registry),
) -> RosterSession:
    return registry.get(user.id, group_id, store)


def _parse_selection(year: Any, month: Any) -> tuple[int | None, int | None]:
    selected_year = parse_optional_int(year)
    selected_month = parse_optional_int(month)
    if selected_month is not None and not 1 <= selected_month <= 12:
        raise HTTPException(status_code=400, detail="Month must be between 1 and 12.")
    return selected_year, selected_month


def _roster_url(group_id: int, suffix: str = "", **params: Any) -> str:
    filtered = {key: value for key, value in params.items() if value not in (None, "")}
    url = f"/groups/{group_id}{suffix}"
    if filtered:
        url = f"{url}?{urlencode(filtered)}"
    return url


def _redirect_to_roster(group_id: int, year: int | None, month: int | None) -> RedirectResponse:
    return RedirectResponse(url=_roster_url(group_id, year=year, month=month), status_code=303)


def _notifications_payload(notifications: list[Notification]) -> list[dict[str, str]]:
    return [
        {"level": item.level, "action": item.action, "message": item.message}
        for item in notifications
    ]


async def _require_group(roster: RosterSession, group_id: int):
    group = await roster.fetch_group(group_id)
    if group is None:
        raise HTTPException(status_code=404, detail="Group not found")
    return group


async def _resolve_member(
    roster: RosterSession,
    group_id: int,
    promoter_id: int,
    year: int | None,
    month: int | None,
) -> MergedMember:
    """Find a member of the cached roster, loading the month when needed."""

    stale = year is not None and month is not None and (roster.year, roster.month) != (year, month)
    if not roster.loaded or stale:
        await roster.load_roster(group_id, year or roster.year, month or roster.month)
    member = roster.find_member(promoter_id)
    if member is None:
        raise HTTPException(status_code=404, detail="Member not found for the selected month")
    return member


@router.get("/{group_id}")
async def group_detail(
    request: Request,
    group_id: int,
    year: str | None = None,
    month: str | None = None,
    q: str = "",
    days: str = "all",
    custom_days: str = "",
    user: User = Depends(get_admin_user),
    roster: RosterSession = Depends(get_roster_session),
):
    group = await _require_group(roster, group_id)
    selected_year, selected_month = _parse_selection(year, month)

    members: list[MergedMember] = []
    selection_complete = selected_year is not None and selected_month is not None
    if selection_complete:
        members = await roster.load_roster(group_id, selected_year, selected_month, q, days, custom_days)

    today = date.today()
    return templates.TemplateResponse(
        request,
        "groups/detail.html",
        {
            "user": user,
            "group": group,
            "members": members,
            "loaded": roster.loaded and selection_complete,
            "selected_year": selected_year,
            "selected_month": selected_month,
            "selection_complete": selection_complete,
            "filters": {"q": q, "days": days, "custom_days": custom_days},
            "year_options": year_choices(today),
            "current_year": today.year,
            "month_options": MONTH_CHOICES,
            "days_filter_options": DAYS_FILTER_OPTIONS,
            "notifications": roster.drain_notifications(),
            "report_url": _roster_url(
                group_id,
                "/report.xlsx",
                year=selected_year,
                month=selected_month,
                q=q,
                days=days,
                custom_days=custom_days,
            ),
        },
    )


@router.get("/{group_id}/members.json")
async def group_members_json(
    group_id: int,
    year: str | None = None,
    month: str | None = None,
    q: str = "",
    days: str = "all",
    custom_days: str = "",
    roster: RosterSession = Depends(get_roster_session),
):
    group = await _require_group(roster, group_id)
    selected_year, selected_month = _parse_selection(year, month)
    members = await roster.load_roster(group_id, selected_year, selected_month, q, days, custom_days)
    selection_complete = selected_year is not None and selected_month is not None
    return {
        "group": group.model_dump(mode="json"),
        "year": selected_year,
        "month": selected_month,
        "loaded": roster.loaded and selection_complete,
        "members": [member.model_dump(mode="json") for member in members],
        "notifications": _notifications_payload(roster.drain_notifications()),
    }


@router.post("/{group_id}/members")
async def add_member(
    group_id: int,
    name: str | None = Form(default=None),
    phone: str | None = Form(default=None),
    upi_id: str | None = Form(default=None),
    days: str | None = Form(default=None),
    year: str | None = Form(default=None),
    month: str | None = Form(default=None),
    roster: RosterSession = Depends(get_roster_session),
):
    await _require_group(roster, group_id)
    selected_year, selected_month = _parse_selection(year, month)
    await roster.add_member(
        {"name": name, "phone": phone, "upi_id": upi_id, "days": days},
        selected_year,
        selected_month,
    )
    return _redirect_to_roster(group_id, selected_year, selected_month)


@router.post("/{group_id}/members/{promoter_id}/edit")
async def edit_member(
    group_id: int,
    promoter_id: int,
    name: str | None = Form(default=None),
    phone: str | None = Form(default=None),
    upi_id: str | None = Form(default=None),
    days: str | None = Form(default=None),
    year: str | None = Form(default=None),
    month: str | None = Form(default=None),
    roster: RosterSession = Depends(get_roster_session),
):
    selected_year, selected_month = _parse_selection(year, month)
    member = await _resolve_member(roster, group_id, promoter_id, selected_year, selected_month)
    await roster.edit_member(member, {"name": name, "phone": phone, "upi_id": upi_id, "days": days})
    return _redirect_to_roster(group_id, roster.year, roster.month)


@router.post("/{group_id}/members/{promoter_id}/remove")
async def remove_member(
    group_id: int,
    promoter_id: int,
    year: str | None = Form(default=None),
    month: str | None = Form(default=None),
    roster: RosterSession = Depends(get_roster_session),
):
    selected_year, selected_month = _parse_selection(year, month)
    if selected_year is not None and selected_month is not None:
        await _resolve_member(roster, group_id, promoter_id, selected_year, selected_month)
    await roster.remove_member(promoter_id, selected_year, selected_month)
    return _redirect_to_roster(group_id, selected_year, selected_month)


@router.post("/{group_id}/members/{promoter_id}/payment")
async def toggle_payment(
    group_id: int,
    promoter_id: int,
    payload: PaymentToggleRequest,
    year: str | None = None,
    month: str | None = None,
    roster: RosterSession = Depends(get_roster_session),
):
    selected_year, selected_month = _parse_selection(year, month)
    if roster.is_payment_pending(promoter_id):
        return JSONResponse(
            status_code=409,
            content={"ok": False, "detail": "Payment update already in progress"},
        )
    member = await _resolve_member(roster, group_id, promoter_id, selected_year, selected_month)
    ok = await roster.toggle_member_paid(member, payload.paid)
    updated = roster.find_member(promoter_id)
    return JSONResponse(
        status_code=200 if ok else 502,
        content={
            "ok": ok,
            "member": updated.model_dump(mode="json") if updated else None,
            "notifications": _notifications_payload(roster.drain_notifications()),
        },
    )


@router.get("/{group_id}/report.xlsx")
async def payment_report(
    group_id: int,
    year: str | None = None,
    month: str | None = None,
    q: str = "",
    days: str = "all",
    custom_days: str = "",
    roster: RosterSession = Depends(get_roster_session),
):
    group = await _require_group(roster, group_id)
    selected_year, selected_month = _parse_selection(year, month)
    members = await roster.load_roster(group_id, selected_year, selected_month, q, days, custom_days)
    if not members:
        if selected_year is not None and selected_month is not None:
            roster.notify("error", "generate report", "No members found to generate a report.")
        return _redirect_to_roster(group_id, selected_year, selected_month)

    content = build_payment_report(group.name, selected_year, selected_month, members)
    filename = report_filename(group.name, selected_year, selected_month)
    return Response(
        content,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )
