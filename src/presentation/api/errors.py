from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from ...application.dto.security_dto import ErrorResponse

ERROR_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMIT_EXCEEDED",
    500: "INTERNAL_SERVER_ERROR",
}

def build_error_response(request: Request, status_code: int, message: Any, code: str,
                         details: Optional[Any] = None,
                         headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    """Uniform error body for every failure leaving the API"""
    request_id = getattr(request.state, "correlation_id", None) or request.headers.get("x-request-id")
    body = ErrorResponse(
        statusCode=status_code,
        timestamp=datetime.now(timezone.utc).isoformat(),
        path=request.url.path,
        method=request.method,
        message=message,
        code=code,
        details=details,
        requestId=request_id,
    )
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(exclude_none=True),
        headers=headers,
    )
