import re
from dataclasses import dataclass
from itertools import islice
from typing import Any, Dict, Iterator, List, Mapping, Tuple

from .input_sanitizer import MAX_ARRAY_LENGTH, MAX_OBJECT_DEPTH, MAX_OBJECT_PROPERTIES, MAX_STRING_LENGTH

REDACTED = "[REDACTED]"
TRUNCATED = "[TRUNCATED]"

SENSITIVE_FIELDS = (
    'password', 'token', 'secret', 'key', 'credential', 'authorization',
    'cookie', 'session', 'jwt', 'bearer', 'apikey', 'privatekey',
    'cardnumber', 'cvv', 'ssn', 'taxid', 'bankaccount',
)

SUSPICIOUS_URL_PATTERNS = (
    re.compile(r'\.\./'),
    re.compile(r'\.\.\\'),
    re.compile(r'%2e%2e%2f', re.IGNORECASE),
    re.compile(r'%2e%2e%5c', re.IGNORECASE),
    re.compile(r'/etc/passwd'),
    re.compile(r'/proc/self/environ'),
    re.compile(r'/windows/system32', re.IGNORECASE),
    re.compile(r'<script', re.IGNORECASE),
    re.compile(r'javascript:', re.IGNORECASE),
    re.compile(r'vbscript:', re.IGNORECASE),
    re.compile(r'data:', re.IGNORECASE),
    re.compile(r'union.*select', re.IGNORECASE),
    re.compile(r'insert.*into', re.IGNORECASE),
    re.compile(r'delete.*from', re.IGNORECASE),
    re.compile(r'drop.*table', re.IGNORECASE),
)

NAMED_URL_PATTERNS = (
    ('path_traversal', re.compile(r'\.\./')),
    ('script_injection', re.compile(r'<script', re.IGNORECASE)),
    ('sql_injection', re.compile(r'union.*select', re.IGNORECASE)),
    ('file_access', re.compile(r'/etc/passwd')),
)

SCANNER_USER_AGENTS = (
    'sqlmap', 'nikto', 'nmap', 'masscan', 'zap', 'burp',
    'wget', 'curl', 'python-requests', 'go-http-client',
)

BODY_SQL_PATTERNS = (
    ('union_select', re.compile(r'union.*select', re.IGNORECASE)),
    ('insert_into', re.compile(r'insert.*into', re.IGNORECASE)),
    ('delete_from', re.compile(r'delete.*from', re.IGNORECASE)),
    ('drop_table', re.compile(r'drop.*table', re.IGNORECASE)),
    ('exec_procedure', re.compile(r'exec.*xp_', re.IGNORECASE)),
)

BODY_XSS_PATTERNS = (
    ('script_tag', re.compile(r'<script.*>', re.IGNORECASE)),
    ('javascript_protocol', re.compile(r'javascript:', re.IGNORECASE)),
    ('event_handler', re.compile(r'on\w+\s*=', re.IGNORECASE)),
    ('iframe_tag', re.compile(r'<iframe.*>', re.IGNORECASE)),
)

RISK_SQL_KEYWORDS = ('select', 'insert', 'update', 'delete', 'drop', 'union', 'script')
RISK_XSS_MARKERS = ('<script', 'javascript:', 'onerror', 'onload', '<iframe')


@dataclass(frozen=True)
class InjectionAttempt:
    type: str  # sql, xss
    field: str
    pattern: str


def contains_suspicious_patterns(url: str) -> bool:
    """Check a raw request URL for traversal, file access or injection markers"""
    return any(pattern.search(url) for pattern in SUSPICIOUS_URL_PATTERNS)


def extract_suspicious_patterns(url: str) -> List[str]:
    return [name for name, pattern in NAMED_URL_PATTERNS if pattern.search(url)]


def check_suspicious_headers(headers: Mapping[str, str]) -> List[str]:
    """Flag scanner user agents and header sets no browser sends"""
    suspicious = []

    user_agent = (headers.get('user-agent') or '').lower()
    if any(scanner in user_agent for scanner in SCANNER_USER_AGENTS):
        suspicious.append('suspicious_user_agent')

    if not headers.get('accept') and not headers.get('user-agent'):
        suspicious.append('missing_common_headers')

    accept = (headers.get('accept') or '').lower()
    if '*/*' in accept and 'text/html' not in accept:
        suspicious.append('suspicious_accept_header')

    return suspicious


def _walk_strings(value: Any, path: str = '', depth: int = 0) -> Iterator[Tuple[str, str]]:
    """Yield (field path, text) for string leaves within the sanitizer's limits"""
    if isinstance(value, str):
        yield path, value
    elif depth >= MAX_OBJECT_DEPTH:
        return
    elif isinstance(value, dict):
        for key, item in islice(value.items(), MAX_OBJECT_PROPERTIES):
            yield from _walk_strings(item, f"{path}.{key}" if path else str(key), depth + 1)
    elif isinstance(value, (list, tuple)):
        for index, item in enumerate(islice(value, MAX_ARRAY_LENGTH)):
            yield from _walk_strings(item, f"{path}[{index}]", depth + 1)


def detect_injection_attempts(body: Any) -> List[InjectionAttempt]:
    """Report SQL/XSS signatures per field of a decoded request body"""
    attempts: List[InjectionAttempt] = []

    for field_path, text in _walk_strings(body):
        for name, pattern in BODY_SQL_PATTERNS:
            if pattern.search(text):
                attempts.append(InjectionAttempt('sql', field_path, name))
        for name, pattern in BODY_XSS_PATTERNS:
            if pattern.search(text):
                attempts.append(InjectionAttempt('xss', field_path, name))

    return attempts


def calculate_risk_score(error_count: int, value: Any) -> int:
    """Score a rejected payload from 0 to 100"""
    score = min(error_count * 10, 50)

    text = '\n'.join(text for _, text in _walk_strings(value)).lower()

    score += sum(15 for keyword in RISK_SQL_KEYWORDS if keyword in text)
    score += sum(20 for marker in RISK_XSS_MARKERS if marker in text)

    if '../' in text or '..\\' in text:
        score += 25

    if len(text) > MAX_STRING_LENGTH:
        score += 30

    return min(score, 100)


def is_sensitive_field(name: str) -> bool:
    lower_name = name.lower()
    return any(field in lower_name for field in SENSITIVE_FIELDS)


def redact_sensitive(value: Any, depth: int = 0) -> Any:
    """Copy of a payload with credential-like values replaced.

    The copy stops at the sanitizer's depth and size limits, so oversized
    payloads can be audited safely.
    """
    if isinstance(value, (dict, list, tuple)) and depth >= MAX_OBJECT_DEPTH:
        return TRUNCATED

    if isinstance(value, dict):
        redacted: Dict[Any, Any] = {}
        for key, item in islice(value.items(), MAX_OBJECT_PROPERTIES):
            if isinstance(key, str) and is_sensitive_field(key):
                redacted[key] = REDACTED
            else:
                redacted[key] = redact_sensitive(item, depth + 1)
        return redacted

    if isinstance(value, (list, tuple)):
        return [redact_sensitive(item, depth + 1) for item in islice(value, MAX_ARRAY_LENGTH)]

    return value
