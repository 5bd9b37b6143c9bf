import asyncio
from contextlib import suppress
from datetime import datetime, timezone
import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dutywatch.audit import audit_system_action
from dutywatch.db import SessionLocal
from dutywatch.errors import ApiError, error_response
from dutywatch.logging_utils import setup_json_logging
from dutywatch.routers import duty, strikes
from dutywatch.services.notifications import DatabaseNotifier
from dutywatch.services.reminders import send_hourly_reminders
from dutywatch.services.suspensions import expire_lapsed_suspensions
from dutywatch.settings import get_cors_origins, get_settings

settings = get_settings()
setup_json_logging(service=settings.app_name)
logger = logging.getLogger("dutywatch.request")
worker_logger = logging.getLogger("dutywatch.reminder_worker")

app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    request.state.actor = getattr(request.state, "actor", "anonymous")
    request.state.actor_id = getattr(request.state, "actor_id", None)

    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "latency_ms": latency_ms,
                "actor": getattr(request.state, "actor", "anonymous"),
                "actor_id": getattr(request.state, "actor_id", None),
            },
        )


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


@app.exception_handler(HTTPException)
async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    status_code = exc.status_code
    code_map = {
        401: "INVALID_TOKEN",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
    }
    code = code_map.get(status_code, "HTTP_ERROR")
    message = str(exc.detail) if exc.detail else "Request failed."
    return error_response(request, status_code=status_code, code=code, message=message)


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        code="VALIDATION_ERROR",
        message=str(exc.errors()),
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "path": request.url.path,
            "method": request.method,
        },
    )
    return error_response(
        request,
        status_code=500,
        code="INTERNAL_ERROR",
        message="Unexpected server error.",
    )


app.include_router(duty.router)
app.include_router(strikes.router)


def run_reminder_tick(now_utc: datetime | None = None) -> dict[str, int]:
    reference = now_utc or datetime.now(timezone.utc)
    with SessionLocal() as db:
        reminded = send_hourly_reminders(db, notifier=DatabaseNotifier(db), now_utc=reference)
        expired = expire_lapsed_suspensions(db, now_utc=reference)
        audit_system_action(db, action="HOURLY_REMINDERS_SENT", entity_type="duty_session", entity_ids=reminded)
        audit_system_action(db, action="SUSPENSIONS_EXPIRED", entity_type="user", entity_ids=expired)
    return {"reminded_sessions": len(reminded), "expired_suspensions": len(expired)}


async def _reminder_worker_loop(stop_event: asyncio.Event) -> None:
    interval_seconds = max(15, int(settings.reminder_worker_interval_seconds))
    while not stop_event.is_set():
        try:
            summary: dict[str, Any] = await asyncio.to_thread(run_reminder_tick)
        except Exception:
            worker_logger.exception("reminder_worker_tick_failed")
        else:
            if any(summary.values()):
                worker_logger.info("reminder_worker_tick", extra=summary)

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue


@app.on_event("startup")
async def start_reminder_worker() -> None:
    if not settings.reminder_worker_enabled:
        return
    if getattr(app.state, "reminder_worker_task", None) is not None:
        return

    stop_event = asyncio.Event()
    task = asyncio.create_task(_reminder_worker_loop(stop_event))
    app.state.reminder_worker_stop_event = stop_event
    app.state.reminder_worker_task = task
    worker_logger.info(
        "reminder_worker_started",
        extra={"interval_seconds": max(15, int(settings.reminder_worker_interval_seconds))},
    )


@app.on_event("shutdown")
async def stop_reminder_worker() -> None:
    stop_event: asyncio.Event | None = getattr(app.state, "reminder_worker_stop_event", None)
    task: asyncio.Task[None] | None = getattr(app.state, "reminder_worker_task", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.reminder_worker_stop_event = None
    app.state.reminder_worker_task = None


@app.get("/health")
def health() -> dict[str, Any]:
    worker_task = getattr(app.state, "reminder_worker_task", None)
    return {
        "status": "ok",
        "reminder_worker_running": worker_task is not None and not worker_task.done(),
    }
