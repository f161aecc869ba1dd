import json
import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from dataclasses import dataclass, asdict, field, replace

from .threat_detector import redact_sensitive

SEVERITY_LEVELS = {
    'info': logging.INFO,
    'warning': logging.WARNING,
    'error': logging.ERROR,
    'critical': logging.CRITICAL,
}

# Default severity for security events logged without an explicit one
SECURITY_EVENT_SEVERITY = {
    'sql_injection_attempt': 'error',
    'xss_attempt': 'error',
    'malicious_request': 'warning',
    'suspicious_activity': 'warning',
    'unauthorized_access': 'warning',
    'rate_limit_exceeded': 'warning',
    'data_breach_attempt': 'critical',
}

@dataclass
class AuditEvent:
    type: str  # security_event, user_action, system_event
    action: str
    details: Dict[str, Any]
    severity: str = 'info'
    outcome: str = 'success'  # success, failure
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    correlation_id: Optional[str] = None
    risk_score: Optional[int] = None

class AuditLogger:
    def __init__(self, log_file: Optional[str] = None, logger_name: str = 'audit_logger'):
        self.log_file = log_file
        self.logger = self._setup_logger(logger_name)

    def _setup_logger(self, logger_name: str) -> logging.Logger:
        """Setup audit logger"""
        logger = logging.getLogger(logger_name)
        logger.setLevel(logging.INFO)

        if self.log_file and not any(
            isinstance(handler, logging.FileHandler) for handler in logger.handlers
        ):
            file_handler = logging.FileHandler(self.log_file)
            file_handler.setLevel(logging.INFO)
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s - %(levelname)s - %(message)s'
            ))
            logger.addHandler(file_handler)

        return logger

    def log_event(self, event: AuditEvent):
        """Log an audit event"""
        try:
            # Details are copied by the bounded redaction, not by asdict
            event_dict = asdict(replace(event, details={}))
            event_dict['timestamp'] = event.timestamp.isoformat()
            event_dict['details'] = redact_sensitive(event.details)
            event_dict = {key: value for key, value in event_dict.items() if value is not None}

            log_entry = {
                'type': 'audit_event',
                'data': event_dict
            }

            level = SEVERITY_LEVELS.get(event.severity, logging.INFO)
            self.logger.log(level, json.dumps(log_entry, default=str))
        except Exception as e:
            # Fallback logging if audit logging fails
            logging.error(f"Failed to log audit event: {e}")

    def log_security_event(self, action: str, details: Dict[str, Any],
                           ip_address: Optional[str] = None,
                           user_agent: Optional[str] = None,
                           correlation_id: Optional[str] = None,
                           user_id: Optional[str] = None,
                           severity: Optional[str] = None,
                           risk_score: Optional[int] = None) -> AuditEvent:
        """Log a security event (injection attempt, suspicious request, ...)"""
        event = AuditEvent(
            type='security_event',
            action=action,
            details=details,
            severity=severity or SECURITY_EVENT_SEVERITY.get(action, 'warning'),
            outcome='failure',
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            correlation_id=correlation_id,
            risk_score=risk_score
        )
        self.log_event(event)
        return event

    def log_request(self, method: str, path: str, status_code: int, duration_ms: float,
                    ip_address: str, user_agent: str,
                    correlation_id: Optional[str] = None,
                    user_id: Optional[str] = None) -> AuditEvent:
        """Log completion of an HTTP request"""
        failed = status_code >= 400
        event = AuditEvent(
            type='user_action',
            action=f"{method.lower()}_request",
            details={
                'endpoint': f"{method} {path}",
                'status_code': status_code,
                'duration_ms': duration_ms,
            },
            severity='warning' if failed else 'info',
            outcome='failure' if failed else 'success',
            user_id=user_id or 'anonymous',
            ip_address=ip_address,
            user_agent=user_agent,
            correlation_id=correlation_id
        )
        self.log_event(event)
        return event

    def log_system_event(self, action: str, details: Dict[str, Any],
                         severity: str = 'info',
                         correlation_id: Optional[str] = None) -> AuditEvent:
        """Log a system event (slow request, limiter backend failure, ...)"""
        event = AuditEvent(
            type='system_event',
            action=action,
            details=details,
            severity=severity,
            correlation_id=correlation_id
        )
        self.log_event(event)
        return event
