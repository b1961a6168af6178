from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from psycopg import errors as pg_errors
import time
import uuid
from datetime import datetime, timezone
from .routers import (
    audit,
    auth,
    categories,
    customers,
    dashboard,
    expenses,
    invoices,
    loyalty,
    orders,
    products,
    purchases,
    reports,
    sales,
    store_settings,
    sync,
    users,
    vendors,
    whatsapp,
)
from .channels.base import ChannelError
from .whatsapp_client import WhatsAppError
from .config import settings
from .deps import require_company_access
from .db import get_admin_conn, close_pools
from .jsonlog import json_log

SERVICE_NAME = "luminila-api"

# Store-scoped routers: every request must belong to a store the user is a member of.
STORE_ROUTERS = (
    products.router,
    categories.router,
    customers.router,
    vendors.router,
    sales.router,
    orders.router,
    invoices.router,
    purchases.router,
    expenses.router,
    loyalty.router,
    reports.router,
    dashboard.router,
    store_settings.router,
    sync.router,
    whatsapp.router,
    audit.router,
    users.router,
)

# Postgres errors that are the client's fault.
PG_ERROR_RESPONSES = (
    (pg_errors.InvalidTextRepresentation, 400, "invalid value"),
    (pg_errors.ForeignKeyViolation, 400, "invalid reference"),
    (pg_errors.CheckViolation, 400, "constraint violation"),
    (pg_errors.NotNullViolation, 400, "missing required value"),
    (pg_errors.UniqueViolation, 409, "already exists"),
)

app = FastAPI(title="Luminila Back Office API", version=settings.api_version)
STARTED_AT_UTC = datetime.now(timezone.utc)


def _debug() -> bool:
    return settings.env in {"local", "dev"}


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def _pg_error_handler(status_code: int, detail: str):
    def _handler(req: Request, exc: Exception):
        content = {"detail": detail, "request_id": _current_request_id(req)}
        if _debug():
            content["error"] = str(exc)
        return JSONResponse(status_code=status_code, content=content)
    return _handler


for _exc_type, _status, _detail in PG_ERROR_RESPONSES:
    app.add_exception_handler(_exc_type, _pg_error_handler(_status, _detail))


def _upstream_error(req: Request, exc, event: str, **fields):
    json_log("warning", event, request_id=_current_request_id(req), status=exc.status, error=str(exc), **fields)
    return JSONResponse(status_code=502, content={"detail": str(exc), "upstream_status": exc.status})


@app.exception_handler(ChannelError)
def _channel_error(req: Request, exc: ChannelError):
    return _upstream_error(req, exc, "channel.error", channel=exc.channel)


@app.exception_handler(WhatsAppError)
def _whatsapp_error(req: Request, exc: WhatsAppError):
    return _upstream_error(req, exc, "whatsapp.error")


@app.exception_handler(RequestValidationError)
def _request_validation_error(_req: Request, exc: RequestValidationError):
    content = {"detail": "validation failed"}
    if _debug():
        content["errors"] = exc.errors()
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(Exception)
def _unhandled_exception(req: Request, exc: Exception):
    rid = _current_request_id(req)
    json_log("error", "http.request.unhandled", request_id=rid, method=req.method, path=req.url.path, error=str(exc))
    content = {"detail": "internal error", "request_id": rid}
    if _debug():
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)


@app.middleware("http")
async def _request_logging(request: Request, call_next):
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    started = time.time()
    fields = {
        "request_id": rid,
        "method": request.method,
        "path": request.url.path,
        "client_ip": request.client.host if request.client else None,
    }

    try:
        response = await call_next(request)
    except Exception as exc:
        json_log("error", "http.request.error", duration_ms=int((time.time() - started) * 1000), error=str(exc), **fields)
        raise

    response.headers["X-Request-Id"] = rid
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    # Load balancer health checks hit /health every few seconds.
    if not request.url.path.startswith("/health"):
        json_log(
            "info",
            "http.request",
            status_code=response.status_code,
            duration_ms=int((time.time() - started) * 1000),
            **fields,
        )
    return response


# The admin web app is served from its own origin.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(auth.router)
for _router in STORE_ROUTERS:
    app.include_router(_router, dependencies=[Depends(require_company_access)])
# Authenticated by its shared secret, not a session.
app.include_router(whatsapp.webhook_router)


def _db_ok():
    try:
        with get_admin_conn() as conn:
            conn.execute("SELECT 1")
        return True, None
    except Exception as exc:
        return False, str(exc)


@app.on_event("startup")
def _startup():
    ok, err = _db_ok()
    if ok:
        json_log("info", "startup.db_connected", env=settings.env, version=settings.api_version)
    else:
        json_log("warning", "startup.db_unreachable", env=settings.env, error=err)


@app.on_event("shutdown")
def _shutdown():
    close_pools()


@app.get("/")
def root():
    return {"status": "ok", "service": SERVICE_NAME}


def _health(req: Request, ok_status: str):
    ok, err = _db_ok()
    content = {
        "status": ok_status if ok else "degraded",
        "env": settings.env,
        "db": "ok" if ok else "down",
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "started_at": STARTED_AT_UTC.isoformat(),
        "request_id": _current_request_id(req),
    }
    if ok:
        return content
    if _debug():
        content["error"] = err
    return JSONResponse(status_code=503, content=content)


@app.get("/health")
def health(req: Request):
    return _health(req, "ok")


@app.get("/health/ready")
def health_ready(req: Request):
    return _health(req, "ready")


@app.get("/health/live")
def health_live(req: Request):
    # Process is up; does not touch the database.
    return {"status": "ok", "service": SERVICE_NAME, "request_id": _current_request_id(req)}


@app.get("/meta")
def meta():
    return {
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "env": settings.env,
        "uptime_seconds": int((datetime.now(timezone.utc) - STARTED_AT_UTC).total_seconds()),
        "started_at": STARTED_AT_UTC.isoformat(),
        "channels": {"shopify": settings.shopify_configured, "woocommerce": settings.woocommerce_configured},
        "whatsapp": {"session": settings.whatsapp_session, "webhook": bool(settings.whatsapp_webhook_secret)},
    }
