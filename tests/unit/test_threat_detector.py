import pytest

from src.infrastructure.security.threat_detector import (
    REDACTED,
    TRUNCATED,
    InjectionAttempt,
    calculate_risk_score,
    check_suspicious_headers,
    contains_suspicious_patterns,
    detect_injection_attempts,
    extract_suspicious_patterns,
    is_sensitive_field,
    redact_sensitive,
)


class TestSuspiciousUrls:
    @pytest.mark.parametrize("url", [
        "/api/files?path=../../etc/passwd",
        "/api/files?path=..\\..\\boot.ini",
        "/api/files?path=%2e%2e%2fsecret",
        "/api/search?q=<script>alert(1)</script>",
        "/api/redirect?to=javascript:alert(1)",
        "/api/search?q=1 UNION SELECT password FROM users",
        "/api/residents?sort=1;DROP TABLE residents",
        "/proc/self/environ",
    ])
    def test_flag_suspicious_urls(self, url):
        assert contains_suspicious_patterns(url) is True

    @pytest.mark.parametrize("url", [
        "/api/health",
        "/api/meetings?page=2&limit=20",
        "/api/residents/123e4567-e89b-12d3-a456-426614174000",
    ])
    def test_ordinary_urls_pass(self, url):
        assert contains_suspicious_patterns(url) is False

    def test_extract_named_patterns(self):
        """Test only the named patterns are reported, in table order"""
        url = "/api/../etc/passwd?q=union select 1"
        assert extract_suspicious_patterns(url) == ["path_traversal", "sql_injection", "file_access"]

    def test_extract_nothing_from_clean_url(self):
        assert extract_suspicious_patterns("/api/meetings") == []


class TestSuspiciousHeaders:
    def test_scanner_user_agent(self):
        headers = {"user-agent": "sqlmap/1.7.2#stable", "accept": "text/html"}
        assert check_suspicious_headers(headers) == ["suspicious_user_agent"]

    def test_missing_common_headers(self):
        assert check_suspicious_headers({}) == ["missing_common_headers"]

    def test_wildcard_accept_without_html(self):
        headers = {"user-agent": "Mozilla/5.0", "accept": "*/*"}
        assert check_suspicious_headers(headers) == ["suspicious_accept_header"]

    def test_browser_headers(self):
        headers = {
            "user-agent": "Mozilla/5.0 (X11; Linux x86_64) Firefox/120.0",
            "accept": "text/html,application/xhtml+xml,*/*;q=0.8",
        }
        assert check_suspicious_headers(headers) == []

    def test_multiple_findings(self):
        headers = {"user-agent": "curl/8.4.0", "accept": "*/*"}
        assert check_suspicious_headers(headers) == [
            "suspicious_user_agent", "suspicious_accept_header"
        ]


class TestDetectInjectionAttempts:
    def test_report_field_paths(self):
        body = {
            "name": "Jane",
            "nested": {"value": "1 UNION SELECT secret"},
            "tags": ["a", "b", "<script>steal()</script>"],
        }

        attempts = detect_injection_attempts(body)

        assert attempts == [
            InjectionAttempt("sql", "nested.value", "union_select"),
            InjectionAttempt("xss", "tags[2]", "script_tag"),
        ]

    def test_multiple_patterns_in_one_field(self):
        attempts = detect_injection_attempts({"q": '<img onerror="x"><iframe src=y>'})

        assert {a.pattern for a in attempts} == {"event_handler", "iframe_tag"}
        assert all(a.field == "q" for a in attempts)

    @pytest.mark.parametrize("body", [None, {}, [], 42, {"title": "Monthly meeting", "floor": 3}])
    def test_clean_bodies(self, body):
        assert detect_injection_attempts(body) == []


class TestRiskScore:
    def test_error_count_contribution_is_capped(self):
        assert calculate_risk_score(2, "hello") == 20
        assert calculate_risk_score(9, "hello") == 50

    def test_xss_markers(self):
        # "script" keyword plus the "<script" marker
        assert calculate_risk_score(0, {"q": "<script>"}) == 35

    def test_path_traversal(self):
        assert calculate_risk_score(0, "../secret") == 25
        assert calculate_risk_score(0, "..\\secret") == 25

    def test_oversized_payload(self):
        assert calculate_risk_score(0, "a" * 10001) == 30

    def test_score_is_capped(self):
        assert calculate_risk_score(10, "union select drop <script onerror") == 100


class TestRedaction:
    @pytest.mark.parametrize("name", ["password", "newPassword", "API_KEY", "Authorization", "cvv"])
    def test_sensitive_names(self, name):
        assert is_sensitive_field(name) is True

    @pytest.mark.parametrize("name", ["username", "unit", "email"])
    def test_plain_names(self, name):
        assert is_sensitive_field(name) is False

    def test_redact_nested_payload(self):
        payload = {
            "username": "jane",
            "password": "hunter2",
            "profile": {"apiKey": "abc", "name": "Jane"},
            "cards": [{"cardNumber": "4111111111111111", "label": "main"}],
        }

        redacted = redact_sensitive(payload)

        assert redacted == {
            "username": "jane",
            "password": REDACTED,
            "profile": {"apiKey": REDACTED, "name": "Jane"},
            "cards": [{"cardNumber": REDACTED, "label": "main"}],
        }
        # The input is left untouched
        assert payload["password"] == "hunter2"


def nested(depth, leaf):
    value = leaf
    for _ in range(depth):
        value = {"a": value}
    return value


class TestBoundedWalk:
    def test_strings_past_nesting_limit_are_not_scanned(self):
        assert detect_injection_attempts(nested(60, "<script>x</script>")) == []

    def test_strings_within_nesting_limit_are_scanned(self):
        attempts = detect_injection_attempts(nested(3, "<script>x</script>"))

        assert attempts == [InjectionAttempt("xss", "a.a.a", "script_tag")]

    def test_only_leading_array_items_are_scanned(self):
        body = ["plain"] * 1000 + ["1 UNION SELECT secret"]

        assert detect_injection_attempts(body) == []

    def test_risk_score_of_deep_payload(self):
        assert calculate_risk_score(1, nested(5000, "x")) == 10

    def test_redaction_truncates_deep_payload(self):
        redacted = redact_sensitive(nested(5000, "x"))

        depth = 0
        while isinstance(redacted, dict):
            redacted = redacted["a"]
            depth += 1
        assert redacted == TRUNCATED
        assert depth == 10

    def test_redaction_caps_container_size(self):
        redacted = redact_sensitive({"items": list(range(5000))})

        assert len(redacted["items"]) == 1000
