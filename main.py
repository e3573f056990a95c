import logging
import os
import time
import traceback
import uuid
from typing import Optional

import sentry_sdk
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi import HTTPException as FastAPIHTTPException
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sentry_sdk.integrations.starlette import StarletteIntegration

from db import new_session, release_session
from eventlens.api import admin, events, guests, misc, payments
from eventlens.core.errors import EventLensError
from eventlens.core.logging_utils import configure_logging
from eventlens.core.settings import settings
from eventlens.models import AppErrorLog
from eventlens.services.payments.registry import build_providers
from eventlens.services.s3_storage import ObjectStorage

load_dotenv()


app = FastAPI(title="EventLens")

# Configure logging (console + rotating file; JSON by default)
configure_logging(settings)
logger = logging.getLogger("app")

# Initialize Sentry if DSN provided
if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        integrations=[StarletteIntegration()],
        traces_sample_rate=float(settings.SENTRY_TRACES_SAMPLE_RATE or 0.0),
        send_default_pii=False,
    )

# Shared services for dependency injection in routes
app.state.storage = ObjectStorage.from_settings(settings)
app.state.payments = build_providers(settings)

# Local uploads are served directly when no bucket is configured
os.makedirs(settings.LOCAL_STORAGE_DIR, exist_ok=True)
app.mount("/storage", StaticFiles(directory=settings.LOCAL_STORAGE_DIR), name="storage")

app.include_router(events.router)
app.include_router(payments.router)
app.include_router(guests.router)
app.include_router(admin.router)
app.include_router(misc.router)


# Request logging middleware with request id and caller context
@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    start = time.perf_counter()
    # Stash request_id for downstream handlers
    request.state.request_id = request_id

    extra_ctx = {
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
        "client": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }
    logger.info("request.start", extra=extra_ctx)
    try:
        response = await call_next(request)
    except Exception:
        duration_ms = int((time.perf_counter() - start) * 1000)
        logger.exception("request.error", extra={**extra_ctx, "duration_ms": duration_ms})
        # Re-raise to be handled by 500 handler
        raise

    duration_ms = int((time.perf_counter() - start) * 1000)
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "request.end",
        extra={
            **extra_ctx,
            "user_id": getattr(request.state, "user_id", None),
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        },
    )
    return response


def _record_app_error(
    request: Request,
    status: int,
    message: str,
    error_code: Optional[str] = None,
    stack: Optional[str] = None,
) -> None:
    """Best-effort write of an AppErrorLog row; never masks the original error."""
    db = new_session()
    try:
        # Drop anything the failed request left pending before writing the log row
        db.rollback()
        request_id = getattr(request.state, "request_id", None)
        db.add(
            AppErrorLog(
                RequestID=str(request_id) if request_id else None,
                Path=str(request.url.path),
                Method=request.method,
                StatusCode=int(status),
                ErrorCode=error_code,
                UserID=getattr(request.state, "user_id", None),
                ClientIP=request.client.host if request.client else None,
                UserAgent=(request.headers.get("user-agent") or "")[:255] or None,
                Message=message,
                StackTrace=stack,
            )
        )
        db.commit()
    except Exception:
        logger.warning("app_error_log.write_failed", exc_info=True)
        db.rollback()
    finally:
        release_session(db)


def _with_request_id(request: Request, resp: JSONResponse) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        resp.headers["X-Request-ID"] = str(request_id)
    return resp


@app.exception_handler(EventLensError)
async def eventlens_error_handler(request: Request, exc: EventLensError):
    status = exc.status_code
    log = logger.error if status >= 500 else logger.info
    log(
        "request.domain_error",
        extra={
            "request_id": getattr(request.state, "request_id", None),
            "path": request.url.path,
            "code": exc.code,
            "status_code": status,
        },
    )
    if status != 404:
        _record_app_error(request, status, exc.message, error_code=exc.code)
    return _with_request_id(request, JSONResponse(exc.to_dict(), status_code=status))


@app.exception_handler(FastAPIHTTPException)
async def http_exception_handler(request: Request, exc: FastAPIHTTPException):
    """Log HTTPException (>=400, except 404) to DB, then return a JSON response."""
    status = getattr(exc, "status_code", 500) or 500
    if status >= 400 and status != 404:
        _record_app_error(request, status, str(getattr(exc, "detail", "HTTP error")))
    # Mirror FastAPI default JSON structure
    resp = JSONResponse({"detail": exc.detail}, status_code=status, headers=getattr(exc, "headers", None))
    return _with_request_id(request, resp)


@app.exception_handler(500)
async def server_error_handler(request: Request, exc: Exception):
    _record_app_error(
        request,
        500,
        str(exc),
        error_code="internal_error",
        stack="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
    )
    resp = JSONResponse(
        {
            "detail": "Internal Server Error",
            "code": "internal_error",
            "requestId": getattr(request.state, "request_id", None),
        },
        status_code=500,
    )
    return _with_request_id(request, resp)
