"""FastAPI entry point for the promoter dashboard."""
from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from urllib.parse import urlencode

from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles

from promodesk import __version__
from promodesk.database import init_db
from promodesk.dependencies import STATIC_PATH
from promodesk.routers import auth, dashboard, groups
from promodesk.services import RosterSessionRegistry

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    level = os.getenv("PROMODESK_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=level, format=LOG_FORMAT)


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    yield


configure_logging()

app = FastAPI(title="PromoDesk", version=__version__, lifespan=lifespan)
app.state.roster_sessions = RosterSessionRegistry()

app.include_router(auth.router)
app.include_router(dashboard.router)
app.include_router(groups.router)

app.mount("/static", StaticFiles(directory=str(STATIC_PATH)), name="static")


@app.get("/")
def root() -> RedirectResponse:
    return RedirectResponse(url="/login")


@app.get("/health")
def health() -> Response:
    """Simple health endpoint for load balancers and platform checks."""
    return Response(content='{"status":"ok"}', media_type="application/json")


@app.exception_handler(HTTPException)
async def http_exception_redirect_login(request: Request, exc: HTTPException):
    """Send browsers without a session to the login page.

    401s for HTML navigation become a 303 to ``/login?next=<path>``; API
    callers keep the JSON error body.
    """
    if exc.status_code != status.HTTP_401_UNAUTHORIZED:
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    accept = request.headers.get("accept", "")
    wants_html = "text/html" in accept
    if wants_html:
        target = request.url.path
        if request.url.query:
            target = f"{target}?{request.url.query}"
        return RedirectResponse(
            url=f"/login?{urlencode({'next': target})}",
            status_code=status.HTTP_303_SEE_OTHER,
        )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


if __name__ == "__main__":
    import uvicorn

    port = int(os.environ.get("PORT", 8000))
    uvicorn.run("promodesk.main:app", host="0.0.0.0", port=port, log_level="info")
