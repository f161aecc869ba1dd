import os
from dataclasses import dataclass, field
from typing import List, Optional


def _env_list(name: str, default: str = "") -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class SecuritySettings:
    redis_url: str = "redis://localhost:6379"
    audit_log_file: Optional[str] = None
    app_log_file: Optional[str] = None
    log_level: str = "INFO"
    rate_limit_enabled: bool = True
    slow_request_ms: float = 1000.0
    ip_blacklist: List[str] = field(default_factory=list)
    ip_whitelist: List[str] = field(default_factory=list)
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    host: str = "0.0.0.0"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "SecuritySettings":
        return cls(
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379"),
            audit_log_file=os.getenv("AUDIT_LOG_FILE") or None,
            app_log_file=os.getenv("APP_LOG_FILE") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            rate_limit_enabled=_env_bool("RATE_LIMIT_ENABLED", True),
            slow_request_ms=float(os.getenv("SLOW_REQUEST_MS", "1000")),
            ip_blacklist=_env_list("IP_BLACKLIST"),
            ip_whitelist=_env_list("IP_WHITELIST"),
            cors_origins=_env_list("CORS_ORIGINS", "*"),
            host=os.getenv("PORTAL_HOST", "0.0.0.0"),
            port=int(os.getenv("PORTAL_PORT", "8000")),
        )
