import time
import logging
import psutil
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Any
from dataclasses import dataclass
from collections import deque

RATE_WINDOW_SECONDS = 60
MAX_TRACKED_ENDPOINTS = 200
OVERFLOW_ENDPOINT = "other"

# (metric attribute, label, limit in percent)
HEALTH_THRESHOLDS = (
    ("cpu_percent", "CPU usage", 80.0),
    ("memory_percent", "memory usage", 85.0),
    ("disk_usage_percent", "disk usage", 90.0),
    ("error_rate", "error rate", 5.0),
)

@dataclass
class PerformanceMetrics:
    timestamp: datetime
    cpu_percent: float
    memory_percent: float
    disk_usage_percent: float
    network_bytes_sent: int
    network_bytes_recv: int
    active_connections: int
    response_time_avg: float
    requests_per_second: float
    error_rate: float

@dataclass
class EndpointStats:
    endpoint: str
    count: int = 0
    errors: int = 0
    slow: int = 0
    total_time: float = 0.0
    max_time: float = 0.0

    @property
    def avg_time(self) -> float:
        return self.total_time / self.count if self.count else 0.0

class PerformanceMonitor:
    """Request timing and host resource sampling for the portal API.

    Request figures are fed by the security middleware through
    ``record_request``. System snapshots are taken on demand by
    ``collect_metrics`` or periodically once ``start_monitoring`` is called.
    """

    def __init__(self, history_size: int = 1000, slow_request_ms: float = 1000.0,
                 interval_seconds: int = 60):
        self.slow_request_ms = slow_request_ms
        self.interval_seconds = interval_seconds
        self.metrics_history = deque(maxlen=history_size)
        self.request_times = deque(maxlen=1000)
        self.request_timestamps = deque(maxlen=1000)
        self.endpoint_stats: Dict[str, EndpointStats] = {}
        self.error_count = 0
        self.total_requests = 0
        self.slow_requests = 0
        self.lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

        self._last_network = None
        self.monitoring_active = False
        self.monitoring_thread = None

    def start_monitoring(self):
        """Start periodic system metric collection"""
        if self.monitoring_active:
            return

        self.monitoring_active = True
        self.monitoring_thread = threading.Thread(target=self._monitoring_loop, daemon=True)
        self.monitoring_thread.start()
        self.logger.info("Performance monitoring started")

    def stop_monitoring(self):
        self.monitoring_active = False
        if self.monitoring_thread:
            self.monitoring_thread.join(timeout=self.interval_seconds)
        self.logger.info("Performance monitoring stopped")

    def _monitoring_loop(self):
        while self.monitoring_active:
            try:
                self.collect_metrics()
            except Exception as e:
                self.logger.error(f"Error collecting system metrics: {e}")
            time.sleep(self.interval_seconds)

    def collect_metrics(self) -> PerformanceMetrics:
        """Sample host resources and combine them with request figures"""
        disk = psutil.disk_usage('/')

        # Network counters are cumulative; report the delta since the last sample
        network = psutil.net_io_counters()
        if self._last_network is not None:
            bytes_sent = network.bytes_sent - self._last_network.bytes_sent
            bytes_recv = network.bytes_recv - self._last_network.bytes_recv
        else:
            bytes_sent = bytes_recv = 0
        self._last_network = network

        try:
            active_connections = len(psutil.net_connections())
        except (psutil.AccessDenied, PermissionError):
            active_connections = 0

        with self.lock:
            response_time_avg = self._avg_response_time()
            requests_per_second = self._requests_per_second()
            error_rate = self._error_rate()

        metrics = PerformanceMetrics(
            timestamp=datetime.now(),
            cpu_percent=psutil.cpu_percent(interval=None),
            memory_percent=psutil.virtual_memory().percent,
            disk_usage_percent=(disk.used / disk.total) * 100,
            network_bytes_sent=bytes_sent,
            network_bytes_recv=bytes_recv,
            active_connections=active_connections,
            response_time_avg=response_time_avg,
            requests_per_second=requests_per_second,
            error_rate=error_rate
        )

        self.metrics_history.append(metrics)
        return metrics

    def record_request(self, response_time: float, is_error: bool = False,
                       endpoint: Optional[str] = None) -> bool:
        """Record a request duration in seconds; returns True when it was slow"""
        endpoint = endpoint or "unknown"
        duration_ms = response_time * 1000
        is_slow = duration_ms > self.slow_request_ms

        with self.lock:
            self.request_times.append(response_time)
            self.request_timestamps.append(time.time())
            self.total_requests += 1
            self.error_count += int(is_error)
            self.slow_requests += int(is_slow)

            stats = self.endpoint_stats.get(endpoint)
            if stats is None and len(self.endpoint_stats) >= MAX_TRACKED_ENDPOINTS:
                endpoint = OVERFLOW_ENDPOINT
                stats = self.endpoint_stats.get(endpoint)
            if stats is None:
                stats = self.endpoint_stats[endpoint] = EndpointStats(endpoint)
            stats.count += 1
            stats.errors += int(is_error)
            stats.slow += int(is_slow)
            stats.total_time += response_time
            stats.max_time = max(stats.max_time, response_time)

        if is_slow:
            self.logger.warning(f"Slow request: {endpoint} took {duration_ms:.0f}ms")
        else:
            self.logger.debug(f"{endpoint} - {duration_ms:.0f}ms")

        return is_slow

    def _avg_response_time(self) -> float:
        if not self.request_times:
            return 0.0
        return sum(self.request_times) / len(self.request_times)

    def _requests_per_second(self) -> float:
        cutoff_time = time.time() - RATE_WINDOW_SECONDS
        recent = sum(1 for ts in self.request_timestamps if ts > cutoff_time)
        return recent / RATE_WINDOW_SECONDS

    def _error_rate(self) -> float:
        """Percentage of requests that ended in a server error"""
        if self.total_requests == 0:
            return 0.0
        return (self.error_count / self.total_requests) * 100

    def get_request_stats(self) -> Dict[str, Any]:
        with self.lock:
            return {
                "total_requests": self.total_requests,
                "error_count": self.error_count,
                "slow_requests": self.slow_requests,
                "response_time_avg": self._avg_response_time(),
                "requests_per_second": self._requests_per_second(),
                "error_rate": self._error_rate(),
            }

    def get_slowest_endpoints(self, limit: int = 5) -> List[Dict[str, Any]]:
        """Endpoints ordered by average response time, slowest first"""
        with self.lock:
            ranked = sorted(self.endpoint_stats.values(), key=lambda s: s.avg_time, reverse=True)
            return [
                {
                    "endpoint": stats.endpoint,
                    "count": stats.count,
                    "errors": stats.errors,
                    "slow": stats.slow,
                    "avg_time": stats.avg_time,
                    "max_time": stats.max_time,
                }
                for stats in ranked[:limit]
            ]

    def get_current_metrics(self) -> Optional[PerformanceMetrics]:
        return self.metrics_history[-1] if self.metrics_history else None

    def get_metrics_history(self, hours: int = 24) -> List[PerformanceMetrics]:
        """Get performance metrics history for the specified hours"""
        cutoff_time = datetime.now() - timedelta(hours=hours)
        return [m for m in self.metrics_history if m.timestamp >= cutoff_time]

    def get_system_health(self) -> Dict[str, Any]:
        """Judge the latest snapshot against HEALTH_THRESHOLDS"""
        current = self.get_current_metrics()
        if not current:
            return {"status": "unknown", "message": "No metrics available"}

        issues = [
            f"High {label}: {getattr(current, attribute):.1f}%"
            for attribute, label, limit in HEALTH_THRESHOLDS
            if getattr(current, attribute) > limit
        ]

        if issues:
            return {
                "status": "warning",
                "message": "System performance issues detected",
                "issues": issues,
                "metrics": current
            }
        return {
            "status": "healthy",
            "message": "System is performing well",
            "metrics": current
        }
