import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Callable, Iterable

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from marketplace.api.problem_details import (
    PROBLEM_TYPE_DOMAIN,
    PROBLEM_TYPE_SERVER,
    PROBLEM_TYPE_VALIDATION,
    problem_details,
)
from marketplace.api.routes_bookings import router as bookings_router
from marketplace.api.routes_chat import router as chat_router
from marketplace.api.routes_health import router as health_router
from marketplace.api.routes_metrics import router as metrics_router
from marketplace.api.routes_parties import router as parties_router
from marketplace.api.routes_payments import router as payments_router
from marketplace.api.routes_workers import router as workers_router
from marketplace.domain.errors import DomainError
from marketplace.infra.db import dispose_engine, get_session_factory
from marketplace.infra.logging import clear_log_context, configure_logging, update_log_context
from marketplace.infra.metrics import configure_metrics
from marketplace.services import build_app_services
from marketplace.settings import settings

logger = logging.getLogger(__name__)


def _resolve_log_identity(request: Request) -> dict[str, str]:
    party_id = getattr(request.state, "party_id", None)
    return {"party_id": str(party_id)} if party_id else {}


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_logger = logging.getLogger("marketplace.request")
        start = time.time()
        request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")
        if not request_id:
            request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        update_log_context(request_id=request_id, method=request.method, path=request.url.path)

        response = None
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            update_log_context(status_code=status_code, **_resolve_log_identity(request))
            latency_ms = int((time.time() - start) * 1000)
            update_log_context(latency_ms=latency_ms)
            request_logger.info("request", extra={"latency_ms": latency_ms})
            if response is not None:
                response.headers.setdefault("X-Request-ID", request_id)
            clear_log_context()


class MetricsMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: FastAPI, metrics_client) -> None:
        super().__init__(app)
        self.metrics = metrics_client

    async def dispatch(self, request: Request, call_next: Callable):
        route_label = "unmatched"
        start = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception:
            route = request.scope.get("route")
            route_label = getattr(route, "path", route_label)
            self.metrics.record_http_5xx(request.method, route_label)
            raise
        finally:
            route = request.scope.get("route")
            route_label = getattr(route, "path", route_label)
            duration = time.perf_counter() - start
            self.metrics.record_http_latency(request.method, route_label, status_code, duration)
            self.metrics.record_http_request(request.method, route_label, status_code)
        if status_code >= 500:
            self.metrics.record_http_5xx(request.method, route_label)
        return response


def _resolve_cors_origins(app_settings) -> Iterable[str]:
    if app_settings.cors_origins:
        return app_settings.cors_origins
    if app_settings.app_env == "dev":
        return ["http://localhost:3000"]
    return []


def create_app(app_settings, *, services=None) -> FastAPI:
    configure_logging(app_settings.log_level)
    metrics_client = configure_metrics(app_settings.metrics_enabled)
    services = services or build_app_services(app_settings, metrics=metrics_client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.services = getattr(app.state, "services", None) or services
        app.state.metrics = getattr(app.state, "metrics", None) or app.state.services.metrics
        app.state.app_settings = getattr(app.state, "app_settings", app_settings)
        app.state.db_session_factory = getattr(app.state, "db_session_factory", None) or get_session_factory()
        yield
        await dispose_engine()

    app = FastAPI(title="Local Services Marketplace", version="1.0.0", lifespan=lifespan)
    app.state.services = services
    app.state.metrics = services.metrics
    app.state.app_settings = app_settings

    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware, metrics_client=services.metrics)
    app.add_middleware(RequestIdMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(_resolve_cors_origins(app_settings)),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            loc = error.get("loc", [])
            field = ".".join(str(part) for part in loc if part not in {"body", "query", "path"}) or "body"
            errors.append({"field": field, "message": error.get("msg", "Invalid value")})
        return problem_details(
            request=request,
            status=422,
            title="Validation Error",
            detail="Request validation failed",
            errors=errors,
            type_=PROBLEM_TYPE_VALIDATION,
        )

    @app.exception_handler(DomainError)
    async def domain_exception_handler(request: Request, exc: DomainError):
        if exc.status_code >= 500:
            logger.warning(
                "domain_error",
                extra={"extra": {"title": exc.title, "status_code": exc.status_code, "path": request.url.path}},
            )
        return problem_details(
            request=request,
            status=exc.status_code,
            title=exc.title,
            detail=exc.detail,
            errors=exc.errors or [],
            type_=exc.type or PROBLEM_TYPE_DOMAIN,
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return problem_details(
            request=request,
            status=exc.status_code,
            title=exc.detail if isinstance(exc.detail, str) else "HTTP Error",
            detail=exc.detail if isinstance(exc.detail, str) else "Request failed",
            type_=None if exc.status_code < 500 else PROBLEM_TYPE_SERVER,
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        identity_context = _resolve_log_identity(request)
        request_id = getattr(request.state, "request_id", None)
        error_type = type(exc).__name__
        update_log_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status_code=500,
            error_type=error_type,
            **identity_context,
        )
        logger.exception(
            "unhandled_exception",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "error_type": error_type,
                **identity_context,
            },
        )
        return problem_details(
            request=request,
            status=500,
            title="Internal Server Error",
            detail="Unexpected error",
            type_=PROBLEM_TYPE_SERVER,
        )

    app.include_router(health_router)
    app.include_router(parties_router)
    app.include_router(workers_router)
    app.include_router(bookings_router)
    app.include_router(payments_router)
    app.include_router(chat_router)
    if app_settings.metrics_enabled:
        app.include_router(metrics_router)
    return app


app = create_app(settings)
