from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Optional
import logging

# Setup logging
logger = logging.getLogger(__name__)

from ...domain.exceptions import InvalidInputError
from ...application.dto.security_dto import (
    HealthResponse, RequestStats, SystemHealthResponse
)
from ...infrastructure.config import SecuritySettings

# Security imports
from ...infrastructure.security.audit_logger import AuditLogger
from ...infrastructure.security.rate_limiter import RateLimiter

# Monitoring imports
from ...infrastructure.monitoring.performance_monitor import PerformanceMonitor

from .dependencies import format_validation_errors
from .errors import ERROR_CODES, build_error_response
from .middleware import RateLimitMiddleware, SecurityMiddleware

def _log_error(request: Request, status_code: int, message: Any, exc: Optional[Exception] = None):
    line = f"{request.method} {request.url.path} - {status_code} - {message}"
    if status_code >= 500:
        logger.error(line, exc_info=exc)
    else:
        logger.warning(line)

def register_exception_handlers(app: FastAPI):
    @app.exception_handler(InvalidInputError)
    async def invalid_input_handler(request: Request, exc: InvalidInputError):
        _log_error(request, 400, exc.message)
        details = {"field": exc.field_name} if exc.field_name else None
        return build_error_response(request, 400, exc.message, "INPUT_SANITIZATION_ERROR", details)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        default_code = ERROR_CODES.get(exc.status_code, "UNKNOWN_ERROR")
        if isinstance(exc.detail, dict):
            message = exc.detail.get("message") or exc.detail.get("error") or default_code
            code = exc.detail.get("code") or default_code
            details = exc.detail
        else:
            message = exc.detail
            code = default_code
            details = None

        _log_error(request, exc.status_code, message)
        return build_error_response(
            request, exc.status_code, message, code, details, getattr(exc, "headers", None)
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = format_validation_errors(exc.errors())
        _log_error(request, 400, errors)
        return build_error_response(request, 400, "Validation failed", "VALIDATION_ERROR", errors)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        _log_error(request, 500, exc, exc)
        return build_error_response(request, 500, "Internal server error", "INTERNAL_SERVER_ERROR")

def create_app(settings: Optional[SecuritySettings] = None,
               rate_limiter: Optional[RateLimiter] = None) -> FastAPI:
    """Build the portal API with the request guard installed"""
    settings = settings or SecuritySettings.from_env()

    app = FastAPI(title="Resident Portal API", version="1.0.0")

    # Security components
    audit_logger = AuditLogger(settings.audit_log_file)
    performance_monitor = PerformanceMonitor(slow_request_ms=settings.slow_request_ms)

    app.state.settings = settings
    app.state.audit_logger = audit_logger
    app.state.performance_monitor = performance_monitor
    app.state.rate_limiter = None

    if settings.rate_limit_enabled:
        rate_limiter = rate_limiter or RateLimiter(
            settings.redis_url,
            blacklist=settings.ip_blacklist,
            whitelist=settings.ip_whitelist,
        )
        app.state.rate_limiter = rate_limiter
        app.add_middleware(RateLimitMiddleware, rate_limiter=rate_limiter, audit_logger=audit_logger)

    app.add_middleware(
        SecurityMiddleware,
        audit_logger=audit_logger,
        performance_monitor=performance_monitor,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    @app.get("/api/health", response_model=HealthResponse)
    async def health_check():
        return HealthResponse(
            status="healthy",
            timestamp=datetime.now(timezone.utc).isoformat(),
            requests=RequestStats(**performance_monitor.get_request_stats()),
        )

    @app.get("/api/health/system", response_model=SystemHealthResponse)
    def system_health():
        performance_monitor.collect_metrics()
        health = performance_monitor.get_system_health()
        metrics = health.get("metrics")
        return SystemHealthResponse(
            status=health["status"],
            message=health["message"],
            issues=health.get("issues", []),
            metrics=asdict(metrics) if metrics else None,
            slowest_endpoints=performance_monitor.get_slowest_endpoints(),
        )

    logger.info("Resident portal API created (rate limiting %s)",
                "enabled" if settings.rate_limit_enabled else "disabled")
    return app
