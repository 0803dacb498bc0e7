"""Dashboard routes: the list of promoter groups."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Form, HTTPException, Request
from fastapi.responses import RedirectResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from promodesk import crud
from promodesk.auth import User
from promodesk.database import get_session
from promodesk.dependencies import templates
from promodesk.routers.auth import get_admin_user
from promodesk.schemas import GroupCreate

router = APIRouter(tags=["Dashboard"])


@router.get("/dashboard")
def dashboard(request: Request, db: Session = Depends(get_session), user: User = Depends(get_admin_user)):
    groups = crud.list_groups(db)
    return templates.TemplateResponse(
        request,
        "dashboard/index.html",
        {"user": user, "groups": groups},
    )


@router.post("/dashboard/groups", dependencies=[Depends(get_admin_user)])
def create_group(
    name: str = Form(...),
    description: str | None = Form(default=None),
    db: Session = Depends(get_session),
):
    try:
        payload = GroupCreate(name=name, description=description)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.errors()[0]["msg"]) from exc
    group = crud.create_group(db, payload)
    return RedirectResponse(url=f"/groups/{group.id}", status_code=303)
