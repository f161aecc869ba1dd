import re
import math
import ipaddress
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Union

from ...domain.exceptions import InvalidInputError

Number = Union[int, float]

UNKNOWN = "unknown"

MAX_STRING_LENGTH = 10000
MAX_FILENAME_LENGTH = 255
MAX_OBJECT_DEPTH = 10
MAX_ARRAY_LENGTH = 1000
MAX_OBJECT_PROPERTIES = 100
MAX_USER_AGENT_LENGTH = 500

SQL_INJECTION_PATTERNS = (
    re.compile(r'\b(SELECT|INSERT|UPDATE|DELETE|DROP|CREATE|ALTER|EXEC|UNION|SCRIPT)\b', re.IGNORECASE),
    re.compile(r'(--|/\*|\*/|;|\'|"|`)'),
    re.compile(r'(\bOR\b|\bAND\b).*[=<>]', re.IGNORECASE),
    re.compile(r'\bUNION\b.*\bSELECT\b', re.IGNORECASE),
    re.compile(r'\bINSERT\b.*\bINTO\b', re.IGNORECASE),
    re.compile(r'\bDROP\b.*\bTABLE\b', re.IGNORECASE),
)

XSS_PATTERNS = (
    re.compile(r'<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>', re.IGNORECASE),
    re.compile(r'javascript:', re.IGNORECASE),
    re.compile(r'\bon\w+\s*=', re.IGNORECASE),
    re.compile(r'<iframe\b[^<]*(?:(?!</iframe>)<[^<]*)*</iframe>', re.IGNORECASE),
    re.compile(r'<object\b[^<]*(?:(?!</object>)<[^<]*)*</object>', re.IGNORECASE),
    re.compile(r'<embed\b[^<]*(?:(?!</embed>)<[^<]*)*</embed>', re.IGNORECASE),
    re.compile(r'<form\b[^<]*(?:(?!</form>)<[^<]*)*</form>', re.IGNORECASE),
    re.compile(r'<meta\b[^<]*>', re.IGNORECASE),
    re.compile(r'<link\b[^<]*>', re.IGNORECASE),
)

# Markup that is never allowed, even in rich-text fields
HTML_REJECT_PATTERNS = (
    re.compile(r'<\s*(script|iframe|object|embed|form|meta|link)\b', re.IGNORECASE),
    re.compile(r'\bon\w+\s*=', re.IGNORECASE),
    re.compile(r'\b(java|vb)script\s*:', re.IGNORECASE),
    re.compile(r'\bdata:(?:[\w.+-]+/[\w.+-]+)?[;,]', re.IGNORECASE),
)

DANGEROUS_FILE_EXTENSIONS = frozenset({
    '.exe', '.bat', '.cmd', '.com', '.pif', '.scr', '.vbs', '.js', '.jar',
    '.php', '.asp', '.aspx', '.jsp', '.py', '.rb', '.pl', '.sh', '.ps1',
})

CONTROL_CHARS = re.compile(r'[\x00-\x1F\x7F]')
PATH_TRAVERSAL = re.compile(r'\.\.[/\\]')
ILLEGAL_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1F\x7F]')
UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$',
    re.IGNORECASE,
)
EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')


def _field(field_name: Optional[str]) -> str:
    return field_name or 'field'


class InputSanitizer:
    """Validates and cleans untrusted request input.

    Every method is a pure function of its arguments and the module-level
    pattern tables, so a single instance is shared across requests.
    """

    def sanitize_string(self, value: Any, field_name: Optional[str] = None) -> str:
        """Sanitize a plain-text string input"""
        if not value or not isinstance(value, str):
            return ""

        sanitized = CONTROL_CHARS.sub('', value)
        # Removing control characters can join a signature ("DR\x00OP"), so
        # both forms are checked
        candidates = (value, sanitized)

        if any(self.detect_sql_injection(candidate) for candidate in candidates):
            raise InvalidInputError(
                f"Invalid input detected in {_field(field_name)}: potential SQL injection",
                field_name,
            )

        if any(self.detect_xss(candidate) for candidate in candidates):
            raise InvalidInputError(
                f"Invalid input detected in {_field(field_name)}: potential XSS attack",
                field_name,
            )

        self._check_length(sanitized, field_name)
        return sanitized.strip()

    def sanitize_html(self, value: Any, field_name: Optional[str] = None) -> str:
        """Sanitize rich-text markup, rejecting anything executable"""
        if not value or not isinstance(value, str):
            return ""

        sanitized = CONTROL_CHARS.sub('', value)
        if any(self.detect_unsafe_markup(candidate) for candidate in (value, sanitized)):
            raise InvalidInputError(
                f"Invalid input detected in {_field(field_name)}: potential XSS attack",
                field_name,
            )

        self._check_length(sanitized, field_name)
        return sanitized.strip()

    def sanitize_filename(self, filename: Any) -> str:
        """Sanitize an uploaded file name"""
        if not filename or not isinstance(filename, str):
            return ""

        self._check_extension(filename)

        sanitized = PATH_TRAVERSAL.sub('', filename)
        sanitized = ILLEGAL_FILENAME_CHARS.sub('', sanitized)
        sanitized = sanitized.strip('.')

        # Stripping trailing dots can expose a blocked extension ("run.php.")
        self._check_extension(sanitized)

        if len(sanitized) > MAX_FILENAME_LENGTH:
            dot = sanitized.rfind('.')
            # An extension that cannot fit is cut along with the rest
            if 0 < dot and len(sanitized) - dot < MAX_FILENAME_LENGTH:
                extension = sanitized[dot:]
                stem = sanitized[:dot]
                sanitized = stem[:MAX_FILENAME_LENGTH - len(extension)] + extension
            else:
                sanitized = sanitized[:MAX_FILENAME_LENGTH]

        return sanitized

    def sanitize_number(self, value: Any, min_value: Optional[Number] = None,
                        max_value: Optional[Number] = None,
                        field_name: Optional[str] = None) -> Number:
        """Sanitize numeric input, enforcing optional inclusive bounds"""
        number = self._coerce_number(value, field_name)

        if min_value is not None and number < min_value:
            raise InvalidInputError(
                f"Value too small in {_field(field_name)}: minimum {min_value}", field_name
            )

        if max_value is not None and number > max_value:
            raise InvalidInputError(
                f"Value too large in {_field(field_name)}: maximum {max_value}", field_name
            )

        return number

    def sanitize_date(self, value: Any, field_name: Optional[str] = None) -> datetime:
        """Sanitize date input into a datetime"""
        if value is None or (isinstance(value, str) and not value.strip()):
            raise InvalidInputError(f"Date required in {_field(field_name)}", field_name)

        if isinstance(value, datetime):
            return value
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day)

        invalid = InvalidInputError(f"Invalid date format in {_field(field_name)}", field_name)

        if isinstance(value, (int, float)) and not isinstance(value, bool):
            # Numeric dates are epoch milliseconds, as sent by browser clients
            try:
                return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
            except (OverflowError, OSError, ValueError):
                raise invalid

        if isinstance(value, str):
            text = value.strip()
            if text.endswith(('Z', 'z')):
                text = text[:-1] + '+00:00'
            try:
                return datetime.fromisoformat(text)
            except ValueError:
                raise invalid

        raise invalid

    def sanitize_uuid(self, value: Any, field_name: Optional[str] = None) -> str:
        """Sanitize a canonical textual UUID"""
        if not value or not isinstance(value, str):
            raise InvalidInputError(f"UUID required in {_field(field_name)}", field_name)

        sanitized = self.sanitize_string(value, field_name)
        if not UUID_PATTERN.match(sanitized):
            raise InvalidInputError(f"Invalid UUID format in {_field(field_name)}", field_name)

        return sanitized

    def sanitize_email(self, value: Any, field_name: Optional[str] = None) -> str:
        """Sanitize and normalize an email address"""
        if not value or not isinstance(value, str):
            raise InvalidInputError(f"Email required in {_field(field_name)}", field_name)

        sanitized = self.sanitize_string(value, field_name).lower()
        if not EMAIL_PATTERN.match(sanitized):
            raise InvalidInputError(f"Invalid email format in {_field(field_name)}", field_name)

        return sanitized

    def sanitize_object(self, value: Any, depth: int = 0, field_name: Optional[str] = None) -> Any:
        """Recursively sanitize a decoded request payload"""
        if depth > MAX_OBJECT_DEPTH:
            raise InvalidInputError("Object nesting too deep", field_name)

        if value is None or isinstance(value, (bool, datetime, date)):
            return value

        if isinstance(value, str):
            return self.sanitize_string(value, field_name)

        if isinstance(value, (int, float)):
            return self.sanitize_number(value, field_name=field_name)

        if isinstance(value, (list, tuple)):
            return self.sanitize_list(value, depth, field_name)

        if isinstance(value, dict):
            return self.sanitize_dict(value, depth, field_name)

        return value

    def sanitize_dict(self, data: Dict[Any, Any], depth: int = 0,
                      field_name: Optional[str] = None) -> Dict[str, Any]:
        """Sanitize mapping keys and values"""
        if len(data) > MAX_OBJECT_PROPERTIES:
            raise InvalidInputError("Object has too many properties", field_name)

        sanitized = {}
        for key, item in data.items():
            path = f"{field_name}.{key}" if field_name else str(key)
            sanitized_key = self.sanitize_string(str(key), path)
            sanitized[sanitized_key] = self.sanitize_object(item, depth + 1, path)

        return sanitized

    def sanitize_list(self, data: Union[List[Any], tuple], depth: int = 0,
                      field_name: Optional[str] = None) -> List[Any]:
        """Sanitize every element of a sequence"""
        if len(data) > MAX_ARRAY_LENGTH:
            raise InvalidInputError("Array too large", field_name)

        return [
            self.sanitize_object(item, depth + 1, f"{field_name or ''}[{index}]")
            for index, item in enumerate(data)
        ]

    def detect_sql_injection(self, value: str) -> bool:
        return any(pattern.search(value) for pattern in SQL_INJECTION_PATTERNS)

    def detect_xss(self, value: str) -> bool:
        return any(pattern.search(value) for pattern in XSS_PATTERNS)

    def detect_unsafe_markup(self, value: str) -> bool:
        return self.detect_xss(value) or any(
            pattern.search(value) for pattern in HTML_REJECT_PATTERNS
        )

    def validate_ip_address(self, value: Any) -> bool:
        """Check for a well-formed IPv4 or IPv6 address"""
        if not value or not isinstance(value, str):
            return False
        try:
            ipaddress.ip_address(value)
        except ValueError:
            return False
        return True

    def get_client_ip(self, request: Any) -> str:
        """Best-effort originating address of a request"""
        headers = getattr(request, 'headers', None)
        if headers is None:
            return UNKNOWN

        client = getattr(request, 'client', None)
        remote_address = getattr(client, 'host', None) if client else None

        ip = (
            headers.get('x-forwarded-for')
            or headers.get('x-real-ip')
            or remote_address
            or UNKNOWN
        )

        # X-Forwarded-For: client, proxy1, proxy2
        ip = ip.split(',')[0].strip()

        return ip if self.validate_ip_address(ip) else UNKNOWN

    def get_user_agent(self, request: Any) -> str:
        """Control-character-free, length-capped User-Agent header"""
        headers = getattr(request, 'headers', None)
        if headers is None:
            return UNKNOWN

        user_agent = headers.get('user-agent')
        if not user_agent:
            return UNKNOWN

        # No injection checks: real user agents contain ';' and keywords
        sanitized = CONTROL_CHARS.sub('', user_agent).strip()
        return sanitized[:MAX_USER_AGENT_LENGTH]

    def _check_length(self, value: str, field_name: Optional[str]):
        if len(value) > MAX_STRING_LENGTH:
            raise InvalidInputError(
                f"Input too long in {_field(field_name)}: "
                f"maximum {MAX_STRING_LENGTH} characters allowed",
                field_name,
            )

    def _check_extension(self, filename: str):
        lower_name = filename.lower()
        if any(lower_name.endswith(ext) for ext in DANGEROUS_FILE_EXTENSIONS):
            raise InvalidInputError("File type not allowed", "filename")

    def _coerce_number(self, value: Any, field_name: Optional[str]) -> Number:
        invalid = InvalidInputError(f"Invalid number format in {_field(field_name)}", field_name)

        if isinstance(value, bool):
            raise invalid

        if isinstance(value, str):
            text = value.strip()
            if '_' in text:
                raise invalid
            try:
                number = int(text)
            except ValueError:
                try:
                    number = float(text)
                except ValueError:
                    raise invalid
        elif isinstance(value, (int, float)):
            number = value
        else:
            raise invalid

        if isinstance(number, float) and not math.isfinite(number):
            raise invalid

        return number


# Global sanitizer instance
input_sanitizer = InputSanitizer()
