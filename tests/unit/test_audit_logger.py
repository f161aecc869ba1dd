import json
import logging
import pytest
from unittest.mock import patch

from src.infrastructure.security.audit_logger import AuditEvent, AuditLogger
from src.infrastructure.security.threat_detector import REDACTED, TRUNCATED

LOGGER_NAME = "test_audit_logger"


def audit_entries(caplog, name=LOGGER_NAME):
    return [
        json.loads(record.getMessage())
        for record in caplog.records
        if record.name == name
    ]


class TestAuditLogger:
    @pytest.fixture
    def audit_logger(self):
        return AuditLogger(logger_name=LOGGER_NAME)

    @pytest.fixture(autouse=True)
    def capture(self, caplog):
        caplog.set_level(logging.INFO, logger=LOGGER_NAME)

    def test_log_event_structure(self, audit_logger, caplog):
        """Test events are written as one JSON object per line"""
        audit_logger.log_event(AuditEvent(type="system_event", action="startup", details={"pid": 1}))

        entries = audit_entries(caplog)
        assert len(entries) == 1
        assert entries[0]["type"] == "audit_event"

        data = entries[0]["data"]
        assert data["action"] == "startup"
        assert data["details"] == {"pid": 1}
        assert data["severity"] == "info"
        assert "timestamp" in data
        # Unset optional fields are omitted
        assert "ip_address" not in data
        assert "risk_score" not in data

    def test_security_event_default_severity(self, audit_logger, caplog):
        """Test injection attempts are logged at error level"""
        event = audit_logger.log_security_event(
            "sql_injection_attempt",
            {"field": "name"},
            ip_address="192.168.1.1",
            user_agent="Mozilla/5.0",
            correlation_id="abc123",
            risk_score=85,
        )

        assert event.severity == "error"
        assert event.outcome == "failure"

        record = [r for r in caplog.records if r.name == LOGGER_NAME][0]
        assert record.levelno == logging.ERROR

        data = audit_entries(caplog)[0]["data"]
        assert data["type"] == "security_event"
        assert data["ip_address"] == "192.168.1.1"
        assert data["correlation_id"] == "abc123"
        assert data["risk_score"] == 85

    def test_security_event_unknown_action(self, audit_logger):
        event = audit_logger.log_security_event("odd_behaviour", {})
        assert event.severity == "warning"

    def test_security_event_explicit_severity(self, audit_logger):
        event = audit_logger.log_security_event("suspicious_activity", {}, severity="critical")
        assert event.severity == "critical"

    def test_sensitive_details_are_redacted(self, audit_logger, caplog):
        audit_logger.log_security_event(
            "malicious_request",
            {"original_value": {"email": "a@b.co", "password": "hunter2"}},
        )

        data = audit_entries(caplog)[0]["data"]
        assert data["details"]["original_value"] == {"email": "a@b.co", "password": REDACTED}
        assert "hunter2" not in caplog.text

    def test_log_request_success(self, audit_logger, caplog):
        event = audit_logger.log_request("GET", "/api/meetings", 200, 12.5, "10.0.0.1", "Mozilla/5.0")

        assert event.action == "get_request"
        assert event.outcome == "success"
        assert event.severity == "info"
        assert event.user_id == "anonymous"

        data = audit_entries(caplog)[0]["data"]
        assert data["details"] == {
            "endpoint": "GET /api/meetings",
            "status_code": 200,
            "duration_ms": 12.5,
        }

    def test_log_request_failure(self, audit_logger, caplog):
        event = audit_logger.log_request(
            "POST", "/api/payments", 404, 3.0, "10.0.0.1", "Mozilla/5.0", user_id="resident-7"
        )

        assert event.action == "post_request"
        assert event.outcome == "failure"
        assert event.user_id == "resident-7"
        assert [r.levelno for r in caplog.records if r.name == LOGGER_NAME] == [logging.WARNING]

    def test_log_system_event(self, audit_logger, caplog):
        event = audit_logger.log_system_event(
            "slow_request", {"duration_ms": 6200}, severity="warning", correlation_id="c1"
        )

        assert event.type == "system_event"
        assert audit_entries(caplog)[0]["data"]["correlation_id"] == "c1"

    def test_deep_details_are_truncated(self, audit_logger, caplog):
        """Test a payload nested past the interpreter's limit is still logged"""
        payload = "x"
        for _ in range(5000):
            payload = {"a": payload}

        audit_logger.log_security_event("malicious_request", {"original_value": payload})

        entries = audit_entries(caplog)
        assert len(entries) == 1
        assert TRUNCATED in json.dumps(entries[0]["data"]["details"])

    def test_logging_failure_is_contained(self, audit_logger, caplog):
        """Test a broken audit sink never propagates to the caller"""
        with patch.object(audit_logger.logger, "log", side_effect=RuntimeError("disk full")):
            audit_logger.log_system_event("startup", {})

        assert "Failed to log audit event: disk full" in caplog.text


class TestAuditLogFile:
    @pytest.fixture
    def file_logger(self, tmp_path):
        audit_logger = AuditLogger(str(tmp_path / "audit.log"), logger_name="test_audit_file")
        yield audit_logger
        for handler in list(audit_logger.logger.handlers):
            handler.close()
            audit_logger.logger.removeHandler(handler)

    def test_write_to_file(self, file_logger, tmp_path):
        file_logger.log_security_event("xss_attempt", {"field": "bio"})

        content = (tmp_path / "audit.log").read_text()
        assert "ERROR" in content
        assert '"action": "xss_attempt"' in content

    def test_file_handler_added_once(self, file_logger, tmp_path):
        AuditLogger(str(tmp_path / "audit.log"), logger_name="test_audit_file")

        handlers = [h for h in file_logger.logger.handlers if isinstance(h, logging.FileHandler)]
        assert len(handlers) == 1
