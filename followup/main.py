"""
Entry point for the follow-up engine HTTP service.

This script creates the FastAPI application, includes all API routers and
starts the follow-up scheduler. Run with:

    uvicorn followup.main:app --reload

"""

from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .core.db import engine
from .models import Base
from .services.connection_registry import get_connection_registry
from .services.followup_scheduler import initialize_followup_scheduler, shutdown_followup_scheduler
from .scripts.run_migrations import run_migrations_to_head

from .api import api_router
from .core.config import env_flag, get_app_env
from .api.v1.scoping import http_error
from .core.errors import FollowupError, log_exception


def _issues_from_detail(detail) -> list[dict]:
    if isinstance(detail, list):
        return detail
    if isinstance(detail, dict):
        return [detail]
    return [{"field": "", "code": "ERROR", "message": str(detail)}]


def _validation_issues(exc: RequestValidationError) -> list[dict]:
    issues = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        issues.append(
            {
                "field": ".".join(loc),
                "code": "INVALID_" + str(err.get("type", "value")).split(".")[-1].upper(),
                "message": err.get("msg", "Invalid value"),
            }
        )
    return issues


def create_app() -> FastAPI:
    app = FastAPI(title="Follow-up Engine", version="0.1.0")
    # Include API routers
    app.include_router(api_router)
    app.state.scheduler = None

    @app.exception_handler(HTTPException)
    async def _http_error(_request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"ok": False, "issues": _issues_from_detail(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"ok": False, "issues": _validation_issues(exc)})

    @app.exception_handler(FollowupError)
    async def _followup_error(_request: Request, exc: FollowupError) -> JSONResponse:
        translated = http_error(exc)
        return JSONResponse(status_code=translated.status_code, content={"ok": False, "issues": [exc.as_issue()]})

    @app.exception_handler(Exception)
    async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        log_exception(
            logging.getLogger("api"),
            "Unhandled API error",
            extra={"method": request.method, "path": request.url.path},
            exc=exc,
        )
        return JSONResponse(
            status_code=500,
            content={
                "ok": False,
                "issues": [{"field": "", "code": "INTERNAL_ERROR", "message": "Internal server error"}],
            },
        )

    @app.on_event("startup")
    def _init_db() -> None:
        logger = logging.getLogger("startup")
        env = get_app_env()
        if env_flag("AUTO_CREATE_DB", "true"):
            try:
                Base.metadata.create_all(bind=engine)
            except Exception as exc:
                log_exception(logger, "DB create_all failed", exc=exc)
                if env == "prod":
                    raise
        if env_flag("AUTO_RUN_MIGRATIONS", "true"):
            try:
                run_migrations_to_head()
            except Exception as exc:
                log_exception(logger, "DB migrations failed", exc=exc)
                if env == "prod":
                    raise
        app.state.scheduler = initialize_followup_scheduler()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        shutdown_followup_scheduler()
        app.state.scheduler = None
        get_connection_registry().dispose_all()

    return app


app = create_app()
