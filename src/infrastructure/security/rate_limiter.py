import time
import uuid
import hashlib
import logging
from typing import Any, Dict, Iterable, Optional, Set, Tuple
from dataclasses import dataclass
from fastapi import Request, HTTPException, status
import redis

from .input_sanitizer import input_sanitizer

MAX_BLOCK_MULTIPLIER = 10
VIOLATION_TTL_SECONDS = 86400
UNLIMITED = 999999
BLACKLIST_RETRY_SECONDS = 3600

@dataclass
class RateLimitConfig:
    """Configuration for rate limiting"""
    max_requests: int
    window_seconds: int
    block_duration: int = 0  # 0 means no blocking, just rate limiting

DEFAULT_LIMITS = {
    "auth": RateLimitConfig(max_requests=5, window_seconds=900, block_duration=1800),  # login, signup: 5 per 15min, block 30min
    "password_reset": RateLimitConfig(max_requests=3, window_seconds=3600, block_duration=7200),  # 3 per hour, block 2h
    "payment": RateLimitConfig(max_requests=10, window_seconds=600, block_duration=3600),  # dues and fees: 10 per 10min, block 1h
    "api": RateLimitConfig(max_requests=100, window_seconds=900, block_duration=900),  # 100 per 15min, block 15min
    "general": RateLimitConfig(max_requests=1000, window_seconds=900, block_duration=300),  # 1000 per 15min, block 5min
    "upload": RateLimitConfig(max_requests=50, window_seconds=3600, block_duration=1800),  # documents, photos: 50 per hour
    "admin": RateLimitConfig(max_requests=500, window_seconds=900, block_duration=600),  # board tools: 500 per 15min
}

def _too_many_requests(detail: Dict[str, Any]) -> HTTPException:
    return HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=detail)

class RateLimiter:
    """Sliding-window rate limiting backed by Redis sorted sets.

    Each request is a member of ``rate_limit:<type>:<identifier>`` scored by
    its arrival time. Exceeding a limit increments a violation counter and,
    for limit types with a block duration, blocks the identifier for
    ``block_duration * min(violations, 10)`` seconds.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379",
                 redis_client: Optional[redis.Redis] = None,
                 blacklist: Iterable[str] = (), whitelist: Iterable[str] = ()):
        self.redis_client = redis_client or redis.from_url(redis_url)
        self.logger = logging.getLogger(__name__)
        self.default_limits: Dict[str, RateLimitConfig] = dict(DEFAULT_LIMITS)
        self.blacklist: Set[str] = set(blacklist)
        self.whitelist: Set[str] = set(whitelist)

    def _get_client_identifier(self, request: Request) -> str:
        """Sanitized client address plus a digest of its user agent"""
        client_ip = input_sanitizer.get_client_ip(request)
        user_agent = input_sanitizer.get_user_agent(request)
        digest = hashlib.sha256(user_agent.encode('utf-8')).hexdigest()[:12]
        return f"{client_ip}:{digest}"

    def _get_user_identifier(self, user_id: str) -> str:
        return f"user:{user_id}"

    def _get_rate_limit_key(self, identifier: str, limit_type: str) -> str:
        return f"rate_limit:{limit_type}:{identifier}"

    def _get_block_key(self, identifier: str, limit_type: str) -> str:
        return f"block:{limit_type}:{identifier}"

    def _get_violation_key(self, identifier: str, limit_type: str) -> str:
        return f"violations:{limit_type}:{identifier}"

    def is_blocked(self, identifier: str, limit_type: str) -> bool:
        return bool(self.redis_client.exists(self._get_block_key(identifier, limit_type)))

    def get_remaining_requests(self, identifier: str, limit_type: str) -> Tuple[int, int]:
        """Requests left in the current window and the epoch second it resets"""
        config = self.default_limits.get(limit_type)
        if not config:
            return UNLIMITED, 0

        key = self._get_rate_limit_key(identifier, limit_type)
        now = time.time()
        window_start = now - config.window_seconds
        # Members older than the window are dropped before counting
        self.redis_client.zremrangebyscore(key, 0, window_start)
        in_window = self.redis_client.zrangebyscore(
            key, window_start, now, withscores=True
        )
        remaining = max(0, config.max_requests - len(in_window))

        # The window frees up when its oldest request ages out
        oldest = min((score for _, score in in_window), default=now)
        return remaining, int(oldest) + config.window_seconds

    def calculate_block_duration(self, config: RateLimitConfig, violations: int) -> int:
        """Each repeated violation extends the block, capped at 10x"""
        return config.block_duration * min(max(violations, 1), MAX_BLOCK_MULTIPLIER)

    def _check_block(self, identifier: str, limit_type: str):
        if not self.is_blocked(identifier, limit_type):
            return

        block_key = self._get_block_key(identifier, limit_type)
        block_until = self.redis_client.get(block_key)
        if not block_until:
            return

        block_until = int(block_until)
        now = int(time.time())
        if now < block_until:
            raise _too_many_requests({
                "error": "Rate limit exceeded",
                "blocked_until": block_until,
                "remaining_block_seconds": block_until - now,
                "limit_type": limit_type
            })

        # Block key outlived its deadline
        self.redis_client.delete(block_key)

    def _register_violation(self, identifier: str, limit_type: str,
                            config: RateLimitConfig, reset_time: int) -> HTTPException:
        violation_key = self._get_violation_key(identifier, limit_type)
        violations = int(self.redis_client.incr(violation_key))
        self.redis_client.expire(violation_key, VIOLATION_TTL_SECONDS)

        if config.block_duration <= 0:
            return _too_many_requests({
                "error": "Rate limit exceeded",
                "reset_time": reset_time,
                "remaining_block_seconds": max(0, reset_time - int(time.time())),
                "limit_type": limit_type
            })

        block_duration = self.calculate_block_duration(config, violations)
        block_until = int(time.time()) + block_duration
        self.redis_client.setex(self._get_block_key(identifier, limit_type), block_duration, block_until)

        self.logger.warning(
            f"Rate limit exceeded and blocked: {identifier}, type: {limit_type}, "
            f"violations: {violations}, block: {block_duration}s"
        )
        return _too_many_requests({
            "error": "Rate limit exceeded - blocked",
            "blocked_until": block_until,
            "block_duration": block_duration,
            "remaining_block_seconds": block_duration,
            "violations": violations,
            "limit_type": limit_type
        })

    def _record_request(self, identifier: str, limit_type: str, config: RateLimitConfig):
        key = self._get_rate_limit_key(identifier, limit_type)
        now = time.time()
        # Unique members keep same-instant requests distinct
        self.redis_client.zadd(key, {f"{now}:{uuid.uuid4().hex[:8]}": now})
        self.redis_client.expire(key, config.window_seconds)

    def check_rate_limit(self, identifier: str, limit_type: str) -> Dict[str, Any]:
        """Admit or reject one request; raises HTTPException(429) when limited"""
        config = self.default_limits.get(limit_type)
        if not config:
            return {"remaining": UNLIMITED, "reset_time": 0, "limit_type": limit_type}

        self._check_block(identifier, limit_type)

        remaining, reset_time = self.get_remaining_requests(identifier, limit_type)
        if remaining <= 0:
            raise self._register_violation(identifier, limit_type, config, reset_time)

        self._record_request(identifier, limit_type, config)
        return {
            "remaining": remaining - 1,
            "reset_time": reset_time,
            "limit_type": limit_type
        }

    def check_client_rate_limit(self, request: Request, limit_type: str) -> Dict[str, Any]:
        """Check rate limit for the requesting client"""
        client_ip = input_sanitizer.get_client_ip(request)

        if client_ip in self.blacklist:
            self.logger.warning(f"Blocked request from blacklisted IP: {client_ip}")
            raise _too_many_requests({
                "error": "IP blacklisted",
                "remaining_block_seconds": BLACKLIST_RETRY_SECONDS,
                "limit_type": limit_type
            })

        if client_ip in self.whitelist:
            return {"remaining": UNLIMITED, "reset_time": 0, "limit_type": limit_type}

        return self.check_rate_limit(self._get_client_identifier(request), limit_type)

    def check_user_rate_limit(self, user_id: str, limit_type: str) -> Dict[str, Any]:
        """Check rate limit for an authenticated resident"""
        return self.check_rate_limit(self._get_user_identifier(user_id), limit_type)

    def update_rate_limit_config(self, limit_type: str, config: RateLimitConfig):
        self.default_limits[limit_type] = config
        self.logger.info(f"Updated rate limit config for {limit_type}: {config}")

    def blacklist_ip(self, ip: str):
        if ip not in self.blacklist:
            self.blacklist.add(ip)
            self.logger.warning(f"Added IP to blacklist: {ip}")

    def remove_from_blacklist(self, ip: str):
        if ip in self.blacklist:
            self.blacklist.discard(ip)
            self.logger.info(f"Removed IP from blacklist: {ip}")

    def get_rate_limit_stats(self, identifier: str, limit_type: str) -> Dict[str, Any]:
        config = self.default_limits.get(limit_type)
        if not config:
            return {"error": "Unknown limit type"}

        remaining, reset_time = self.get_remaining_requests(identifier, limit_type)
        violations = self.redis_client.get(self._get_violation_key(identifier, limit_type))

        return {
            "limit_type": limit_type,
            "max_requests": config.max_requests,
            "window_seconds": config.window_seconds,
            "remaining_requests": remaining,
            "reset_time": reset_time,
            "is_blocked": self.is_blocked(identifier, limit_type),
            "violations": int(violations) if violations else 0,
            "block_duration": config.block_duration
        }

    def reset_rate_limit(self, identifier: str, limit_type: str):
        """Forget the window, block and violations of an identifier"""
        self.redis_client.delete(
            self._get_rate_limit_key(identifier, limit_type),
            self._get_block_key(identifier, limit_type),
            self._get_violation_key(identifier, limit_type),
        )
        self.logger.info(f"Reset rate limit for {identifier}, type: {limit_type}")
