import time
import uuid
import logging
from typing import Iterable, Optional
from urllib.parse import unquote

from fastapi import HTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Match

from ...infrastructure.monitoring.performance_monitor import PerformanceMonitor
from ...infrastructure.security.audit_logger import AuditLogger
from ...infrastructure.security.input_sanitizer import input_sanitizer
from ...infrastructure.security.rate_limiter import RateLimiter
from ...infrastructure.security.threat_detector import (
    check_suspicious_headers,
    contains_suspicious_patterns,
    extract_suspicious_patterns,
)

from .errors import build_error_response

logger = logging.getLogger(__name__)

SLOW_REQUEST_EVENT_MS = 5000
DEFAULT_RETRY_AFTER_SECONDS = 60
UNMATCHED_ROUTE = "unmatched"

# Longest prefix first
LIMIT_TYPE_PREFIXES = (
    ("/api/auth/password-reset", "password_reset"),
    ("/api/auth", "auth"),
    ("/api/payments", "payment"),
    ("/api/upload", "upload"),
    ("/api/files", "upload"),
    ("/api/admin", "admin"),
    ("/api/", "api"),
)


def resolve_limit_type(path: str) -> str:
    """Determine rate limit type based on path"""
    for prefix, limit_type in LIMIT_TYPE_PREFIXES:
        if path.startswith(prefix):
            return limit_type
    return "general"


def resolve_route_path(request: Request) -> str:
    """Route template serving the request, e.g. /api/residents/{resident_id}"""
    router = getattr(request.scope.get("app"), "router", None)
    partial = None
    for route in getattr(router, "routes", ()):
        match, _ = route.matches(request.scope)
        if match == Match.FULL:
            return route.path
        if match == Match.PARTIAL and partial is None:
            partial = route.path
    return partial or UNMATCHED_ROUTE


def _request_target(request: Request) -> str:
    query = request.url.query
    return f"{request.url.path}?{query}" if query else request.url.path


class SecurityMiddleware(BaseHTTPMiddleware):
    """Tags requests with a correlation id, flags suspicious ones and audits completion"""

    def __init__(self, app, audit_logger: AuditLogger, performance_monitor: PerformanceMonitor,
                 slow_request_event_ms: float = SLOW_REQUEST_EVENT_MS):
        super().__init__(app)
        self.audit_logger = audit_logger
        self.performance_monitor = performance_monitor
        self.slow_request_event_ms = slow_request_event_ms

    async def dispatch(self, request: Request, call_next) -> Response:
        start = time.monotonic()
        correlation_id = uuid.uuid4().hex
        request.state.correlation_id = correlation_id

        client_ip = input_sanitizer.get_client_ip(request)
        user_agent = input_sanitizer.get_user_agent(request)

        self.perform_security_checks(request, correlation_id, client_ip, user_agent)

        try:
            response = await call_next(request)
        except Exception:
            self._complete(request, 500, start, correlation_id, client_ip, user_agent)
            raise

        self._complete(request, response.status_code, start, correlation_id, client_ip, user_agent)
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    def perform_security_checks(self, request: Request, correlation_id: str,
                                client_ip: str, user_agent: str):
        target = _request_target(request)
        decoded_target = unquote(target)

        if contains_suspicious_patterns(target) or contains_suspicious_patterns(decoded_target):
            self.audit_logger.log_security_event(
                "suspicious_activity",
                {
                    "type": "suspicious_url",
                    "url": decoded_target,
                    "method": request.method,
                    "patterns": extract_suspicious_patterns(decoded_target),
                },
                ip_address=client_ip,
                user_agent=user_agent,
                correlation_id=correlation_id,
                severity="warning",
                risk_score=60,
            )

        suspicious_headers = check_suspicious_headers(request.headers)
        if suspicious_headers:
            self.audit_logger.log_security_event(
                "suspicious_activity",
                {
                    "type": "suspicious_headers",
                    "headers": suspicious_headers,
                },
                ip_address=client_ip,
                user_agent=user_agent,
                correlation_id=correlation_id,
                severity="warning",
                risk_score=40,
            )

    def _complete(self, request: Request, status_code: int, start: float,
                  correlation_id: str, client_ip: str, user_agent: str):
        duration_ms = round((time.monotonic() - start) * 1000, 2)
        endpoint = f"{request.method} {request.url.path}"

        self.audit_logger.log_request(
            request.method, request.url.path, status_code, duration_ms,
            ip_address=client_ip,
            user_agent=user_agent,
            correlation_id=correlation_id,
        )
        # Keyed by route template so per-endpoint figures stay bounded
        self.performance_monitor.record_request(
            duration_ms / 1000, is_error=status_code >= 500,
            endpoint=f"{request.method} {resolve_route_path(request)}"
        )

        if duration_ms > self.slow_request_event_ms:
            self.audit_logger.log_system_event(
                "slow_request",
                {"endpoint": endpoint, "duration_ms": duration_ms, "status_code": status_code},
                severity="warning",
                correlation_id=correlation_id,
            )

        if status_code in (401, 403):
            self.audit_logger.log_security_event(
                "unauthorized_access",
                {"endpoint": endpoint, "status_code": status_code},
                ip_address=client_ip,
                user_agent=user_agent,
                correlation_id=correlation_id,
                severity="warning",
                risk_score=50,
            )


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, rate_limiter: RateLimiter,
                 audit_logger: Optional[AuditLogger] = None,
                 exempt_paths: Iterable[str] = ("/api/health",)):
        super().__init__(app)
        self.rate_limiter = rate_limiter
        self.audit_logger = audit_logger
        self.exempt_paths = tuple(exempt_paths)

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path
        if path.startswith(self.exempt_paths):
            return await call_next(request)

        limit_type = resolve_limit_type(path)

        try:
            info = self.rate_limiter.check_client_rate_limit(request, limit_type)
        except HTTPException as e:
            if e.status_code != 429:
                raise
            return self._limit_exceeded(request, e, limit_type)
        except Exception as e:
            # Limiter backend unavailable: let the request through
            logger.error(f"Rate limiting error: {e}")
            return await call_next(request)

        response = await call_next(request)
        response.headers["X-RateLimit-Remaining"] = str(max(0, info["remaining"]))
        response.headers["X-RateLimit-Reset"] = str(info["reset_time"])
        response.headers["X-RateLimit-Type"] = limit_type
        return response

    def _limit_exceeded(self, request: Request, error: HTTPException, limit_type: str) -> JSONResponse:
        detail = error.detail if isinstance(error.detail, dict) else {"error": str(error.detail)}
        retry_after = int(detail.get("remaining_block_seconds") or DEFAULT_RETRY_AFTER_SECONDS)

        if self.audit_logger:
            self.audit_logger.log_security_event(
                "rate_limit_exceeded",
                {"limit_type": limit_type, "endpoint": f"{request.method} {request.url.path}", **detail},
                ip_address=input_sanitizer.get_client_ip(request),
                user_agent=input_sanitizer.get_user_agent(request),
                correlation_id=getattr(request.state, "correlation_id", None),
            )

        return build_error_response(
            request, 429, detail.get("error", "Rate limit exceeded"), "RATE_LIMIT_EXCEEDED", detail,
            headers={
                "Retry-After": str(retry_after),
                "X-RateLimit-Type": limit_type
            }
        )
