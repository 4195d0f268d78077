import time
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from psycopg import errors as pg_errors
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import settings
from .db import Database
from .jsonlog import json_log
from .routers.expenses import router as expenses_router
from .routers.invoices import router as invoices_router
from .routers.items import router as items_router
from .routers.parties import router as parties_router
from .routers.payments import router as payments_router
from .routers.reports import router as reports_router
from .routers.returns import router as returns_router
from .routers.stock import router as stock_router
from .routers.suppliers import router as suppliers_router
from .routers.users import router as users_router

SERVICE_NAME = "quickbill-backend"
STARTED_AT_UTC = datetime.now(timezone.utc)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def _db_error_response(status_code: int, message: str, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"message": message, "error": str(exc)})


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    def _http_exception(_req: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"message": exc.detail}, headers=exc.headers)

    # Map common DB constraint/cast errors to 4xx so clients get actionable responses
    # instead of generic 500s.
    @app.exception_handler(pg_errors.InvalidTextRepresentation)
    def _invalid_text_representation(_req: Request, exc: Exception):
        return _db_error_response(400, "invalid value", exc)

    @app.exception_handler(pg_errors.ForeignKeyViolation)
    def _foreign_key_violation(_req: Request, exc: Exception):
        return _db_error_response(400, "invalid reference", exc)

    @app.exception_handler(pg_errors.UniqueViolation)
    def _unique_violation(_req: Request, exc: Exception):
        return _db_error_response(409, "conflict", exc)

    @app.exception_handler(pg_errors.CheckViolation)
    def _check_violation(_req: Request, exc: Exception):
        return _db_error_response(400, "constraint violation", exc)

    @app.exception_handler(RequestValidationError)
    def _request_validation_error(_req: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"message": "validation failed", "errors": _jsonable_errors(exc)})

    @app.exception_handler(Exception)
    def _unhandled_exception(req: Request, exc: Exception):
        rid = _current_request_id(req)
        json_log(
            "error",
            "http.request.unhandled",
            request_id=rid,
            method=req.method,
            path=req.url.path,
            error=str(exc),
        )
        return JSONResponse(status_code=500, content={"message": "internal error", "error": str(exc), "requestId": rid})


def _jsonable_errors(exc: RequestValidationError) -> list:
    out = []
    for e in exc.errors():
        out.append({"loc": list(e.get("loc") or []), "msg": e.get("msg"), "type": e.get("type")})
    return out


def _register_health_routes(app: FastAPI) -> None:
    def _db_health(req: Request):
        try:
            req.app.state.db.ping()
            return True, None
        except Exception as exc:
            return False, str(exc)

    @app.get("/health")
    def health(req: Request):
        request_id = _current_request_id(req)
        ok, err = _db_health(req)
        content = {
            "status": "ok" if ok else "degraded",
            "env": settings.env,
            "db": "ok" if ok else "down",
            "service": SERVICE_NAME,
            "version": settings.api_version,
            "started_at": STARTED_AT_UTC.isoformat(),
            "request_id": request_id,
        }
        if not ok:
            content["error"] = err
            return JSONResponse(status_code=503, content=content)
        return content

    @app.get("/health/live")
    def health_live(req: Request):
        return {
            "status": "ok",
            "env": settings.env,
            "service": SERVICE_NAME,
            "request_id": _current_request_id(req),
        }

    @app.get("/health/ready")
    def health_ready(req: Request):
        request_id = _current_request_id(req)
        ok, err = _db_health(req)
        if not ok:
            return JSONResponse(
                status_code=503,
                content={
                    "status": "degraded",
                    "env": settings.env,
                    "db": "down",
                    "service": SERVICE_NAME,
                    "version": settings.api_version,
                    "request_id": request_id,
                    "error": err,
                },
            )
        return {
            "status": "ready",
            "env": settings.env,
            "db": "ok",
            "service": SERVICE_NAME,
            "version": settings.api_version,
            "request_id": request_id,
        }

    @app.get("/meta")
    def meta():
        return {
            "service": SERVICE_NAME,
            "version": settings.api_version,
            "env": settings.env,
            "uptime_seconds": int((datetime.now(timezone.utc) - STARTED_AT_UTC).total_seconds()),
            "started_at": STARTED_AT_UTC.isoformat(),
        }


def create_app(db: Optional[Database] = None) -> FastAPI:
    app = FastAPI(title="QuickBill API", version=settings.api_version)
    app.state.db = db if db is not None else Database.from_settings(settings)

    _register_exception_handlers(app)

    # Correlation id + basic structured request logging.
    @app.middleware("http")
    async def _request_logging(request: Request, call_next):
        rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
        request.state.request_id = rid
        started = time.time()
        path = request.url.path
        method = request.method
        client_ip = (request.client.host if request.client else None)

        try:
            response = await call_next(request)
        except Exception as exc:
            dur_ms = int((time.time() - started) * 1000)
            json_log(
                "error",
                "http.request.error",
                request_id=rid,
                method=method,
                path=path,
                client_ip=client_ip,
                duration_ms=dur_ms,
                error=str(exc),
            )
            raise

        response.headers["X-Request-Id"] = rid
        response.headers["X-Content-Type-Options"] = "nosniff"
        if path != "/health":
            dur_ms = int((time.time() - started) * 1000)
            json_log(
                "info",
                "http.request",
                request_id=rid,
                method=method,
                path=path,
                status_code=response.status_code,
                client_ip=client_ip,
                duration_ms=dur_ms,
            )
        return response

    # Dev CORS: the billing UI runs on a different port during development.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(invoices_router)
    app.include_router(returns_router)
    app.include_router(items_router)
    app.include_router(parties_router)
    app.include_router(suppliers_router)
    app.include_router(payments_router)
    app.include_router(expenses_router)
    app.include_router(users_router)
    app.include_router(stock_router)
    app.include_router(reports_router)

    @app.on_event("startup")
    def _startup():
        app.state.db.open()
        try:
            app.state.db.ping()
            json_log("info", "startup.db_connected", env=settings.env, version=settings.api_version)
        except Exception as exc:
            json_log("warning", "startup.db_probe_failed", env=settings.env, error=str(exc))

    @app.on_event("shutdown")
    def _shutdown():
        app.state.db.close()

    _register_health_routes(app)
    return app


app = create_app()
