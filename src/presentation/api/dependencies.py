import json
import logging
from dataclasses import asdict
from typing import Any, Dict, List, Optional, Type

from fastapi import HTTPException, Request, status
from pydantic import BaseModel, ValidationError

from ...domain.exceptions import InvalidInputError
from ...infrastructure.security.audit_logger import AuditLogger
from ...infrastructure.security.input_sanitizer import input_sanitizer
from ...infrastructure.security.threat_detector import (
    calculate_risk_score,
    detect_injection_attempts,
)

logger = logging.getLogger(__name__)


def get_audit_logger(request: Request) -> AuditLogger:
    return request.app.state.audit_logger


def get_correlation_id(request: Request) -> Optional[str]:
    return getattr(request.state, "correlation_id", None)


def format_validation_errors(errors: List[Dict[str, Any]]) -> List[str]:
    """Flatten pydantic errors into "field.path: message" strings"""
    messages = []
    for error in errors:
        path = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        messages.append(f"{path}: {error.get('msg')}" if path else str(error.get("msg")))
    return messages


class SecurityValidation:
    """FastAPI dependency that sanitizes a JSON request body.

    The decoded body is scanned for injection signatures (logged as security
    events), passed through ``InputSanitizer.sanitize_object`` and, when a
    model is given, validated into it. Any rejection is audited and answered
    with a 400 before the endpoint runs.

    Usage::

        @app.post("/api/meetings")
        async def create_meeting(payload: MeetingCreate = Depends(SecurityValidation(MeetingCreate))):
            ...
    """

    def __init__(self, model: Optional[Type[BaseModel]] = None):
        self.model = model

    async def __call__(self, request: Request) -> Any:
        body = await self._read_json(request)
        audit_logger = get_audit_logger(request)
        context = {
            "ip_address": input_sanitizer.get_client_ip(request),
            "user_agent": input_sanitizer.get_user_agent(request),
            "correlation_id": get_correlation_id(request),
        }
        endpoint = f"{request.method} {request.url.path}"

        # Both scans stop at the sanitizer's limits, which reject the rest
        attempts = detect_injection_attempts(body)
        if attempts:
            audit_logger.log_security_event(
                "sql_injection_attempt" if any(a.type == "sql" for a in attempts) else "xss_attempt",
                {
                    "type": "injection_attempt",
                    "attempts": [asdict(attempt) for attempt in attempts],
                    "endpoint": endpoint,
                },
                severity="error",
                risk_score=85,
                **context
            )

        try:
            sanitized = input_sanitizer.sanitize_object(body)
        except InvalidInputError as e:
            logger.warning(f"Sanitization failed for field {e.field_name}: {e.message}")
            audit_logger.log_security_event(
                "malicious_request",
                {
                    "validation_errors": [e.message],
                    "original_value": body,
                    "field_name": e.field_name,
                    "endpoint": endpoint,
                },
                severity="warning",
                risk_score=calculate_risk_score(0, body),
                **context
            )
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={
                    "message": f"Invalid input format in {e.field_name or 'request'}",
                    "code": "INPUT_SANITIZATION_ERROR",
                    "errors": [e.message],
                },
            )

        if self.model is None:
            return sanitized

        try:
            return self.model.model_validate(sanitized)
        except ValidationError as e:
            errors = format_validation_errors(e.errors())
            audit_logger.log_security_event(
                "malicious_request",
                {
                    "validation_errors": errors,
                    "original_value": body,
                    "endpoint": endpoint,
                },
                severity="warning",
                risk_score=calculate_risk_score(len(errors), body),
                **context
            )
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={
                    "message": "Validation failed",
                    "code": "VALIDATION_ERROR",
                    "errors": errors,
                },
            )

    async def _read_json(self, request: Request) -> Any:
        raw = await request.body()
        if not raw:
            return None
        # ValueError covers bad JSON, bad encoding and oversized integers;
        # RecursionError covers nesting beyond the interpreter's limit
        try:
            return json.loads(raw)
        except (ValueError, RecursionError):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"message": "Malformed JSON body", "code": "BAD_REQUEST"},
            )
