import time
import psutil
import pytest
from datetime import datetime, timedelta
from unittest.mock import Mock, patch

from src.infrastructure.monitoring.performance_monitor import (
    MAX_TRACKED_ENDPOINTS,
    OVERFLOW_ENDPOINT,
    PerformanceMetrics,
    PerformanceMonitor,
)


def make_metrics(timestamp=None, cpu=10.0, memory=40.0, disk=50.0, error_rate=0.0):
    return PerformanceMetrics(
        timestamp=timestamp or datetime.now(),
        cpu_percent=cpu,
        memory_percent=memory,
        disk_usage_percent=disk,
        network_bytes_sent=0,
        network_bytes_recv=0,
        active_connections=0,
        response_time_avg=0.0,
        requests_per_second=0.0,
        error_rate=error_rate,
    )


class TestPerformanceMonitor:
    @pytest.fixture
    def monitor(self):
        return PerformanceMonitor(slow_request_ms=1000)

    @pytest.fixture
    def mock_psutil(self):
        with patch("src.infrastructure.monitoring.performance_monitor.psutil") as mock:
            mock.AccessDenied = psutil.AccessDenied
            mock.cpu_percent.return_value = 12.5
            mock.virtual_memory.return_value = Mock(percent=40.0)
            mock.disk_usage.return_value = Mock(used=25, total=100)
            mock.net_io_counters.side_effect = [
                Mock(bytes_sent=1000, bytes_recv=5000),
                Mock(bytes_sent=1500, bytes_recv=5600),
            ]
            mock.net_connections.return_value = [Mock(), Mock(), Mock()]
            yield mock

    def test_collect_metrics(self, monitor, mock_psutil):
        """Test system metrics are sampled and stored"""
        metrics = monitor.collect_metrics()

        assert metrics.cpu_percent == 12.5
        assert metrics.memory_percent == 40.0
        assert metrics.disk_usage_percent == 25.0
        assert metrics.active_connections == 3
        assert metrics.network_bytes_sent == 0
        assert monitor.get_current_metrics() is metrics

    def test_network_deltas(self, monitor, mock_psutil):
        monitor.collect_metrics()
        metrics = monitor.collect_metrics()

        assert metrics.network_bytes_sent == 500
        assert metrics.network_bytes_recv == 600

    def test_connections_access_denied(self, monitor, mock_psutil):
        mock_psutil.net_connections.side_effect = psutil.AccessDenied()

        assert monitor.collect_metrics().active_connections == 0

    def test_record_fast_request(self, monitor):
        assert monitor.record_request(0.2, endpoint="GET /api/health") is False
        assert monitor.slow_requests == 0

    def test_record_slow_request(self, monitor, caplog):
        """Test requests over the threshold are counted and logged"""
        assert monitor.record_request(1.5, endpoint="POST /api/payments") is True

        assert monitor.slow_requests == 1
        assert "Slow request: POST /api/payments took 1500ms" in caplog.text

    def test_request_stats(self, monitor):
        for is_error in (False, False, False, True):
            monitor.record_request(0.1, is_error=is_error)

        stats = monitor.get_request_stats()

        assert stats["total_requests"] == 4
        assert stats["error_count"] == 1
        assert stats["error_rate"] == 25.0
        assert stats["response_time_avg"] == pytest.approx(0.1)
        assert stats["requests_per_second"] == pytest.approx(4 / 60)

    def test_slowest_endpoints(self, monitor):
        """Test per-endpoint figures are ranked by average duration"""
        monitor.record_request(0.1, endpoint="GET /api/meetings")
        monitor.record_request(0.3, endpoint="GET /api/meetings")
        monitor.record_request(1.2, is_error=True, endpoint="POST /api/payments")
        monitor.record_request(0.05, endpoint="GET /api/health")

        slowest = monitor.get_slowest_endpoints(limit=2)

        assert [s["endpoint"] for s in slowest] == ["POST /api/payments", "GET /api/meetings"]
        assert slowest[0]["errors"] == 1
        assert slowest[0]["slow"] == 1
        assert slowest[1]["count"] == 2
        assert slowest[1]["avg_time"] == pytest.approx(0.2)
        assert slowest[1]["max_time"] == 0.3

    def test_tracked_endpoints_are_capped(self, monitor):
        for i in range(MAX_TRACKED_ENDPOINTS + 50):
            monitor.record_request(0.01, endpoint=f"GET /api/items/{i}")
        monitor.record_request(0.01, endpoint="GET /api/items/0")

        assert len(monitor.endpoint_stats) == MAX_TRACKED_ENDPOINTS + 1
        assert monitor.endpoint_stats[OVERFLOW_ENDPOINT].count == 50
        assert monitor.endpoint_stats["GET /api/items/0"].count == 2

    def test_empty_stats(self, monitor):
        stats = monitor.get_request_stats()

        assert stats["response_time_avg"] == 0.0
        assert stats["error_rate"] == 0.0

    def test_metrics_history_window(self, monitor):
        old = make_metrics(timestamp=datetime.now() - timedelta(hours=30))
        recent = make_metrics()
        monitor.metrics_history.extend([old, recent])

        assert monitor.get_metrics_history(hours=24) == [recent]
        assert len(monitor.get_metrics_history(hours=48)) == 2

    def test_history_is_bounded(self):
        monitor = PerformanceMonitor(history_size=2)
        for _ in range(5):
            monitor.metrics_history.append(make_metrics())

        assert len(monitor.metrics_history) == 2


class TestSystemHealth:
    @pytest.fixture
    def monitor(self):
        return PerformanceMonitor()

    def test_unknown_without_metrics(self, monitor):
        assert monitor.get_system_health() == {"status": "unknown", "message": "No metrics available"}

    def test_healthy(self, monitor):
        monitor.metrics_history.append(make_metrics())

        health = monitor.get_system_health()

        assert health["status"] == "healthy"
        assert "issues" not in health

    def test_warning_lists_issues(self, monitor):
        monitor.metrics_history.append(make_metrics(cpu=95.0, error_rate=12.0))

        health = monitor.get_system_health()

        assert health["status"] == "warning"
        assert health["issues"] == ["High CPU usage: 95.0%", "High error rate: 12.0%"]


class TestMonitoringThread:
    def test_start_and_stop(self):
        monitor = PerformanceMonitor(interval_seconds=0.01)

        with patch.object(monitor, "collect_metrics") as mock_collect:
            monitor.start_monitoring()
            thread = monitor.monitoring_thread
            monitor.start_monitoring()
            time.sleep(0.05)
            monitor.stop_monitoring()
            thread.join(timeout=1)

        assert monitor.monitoring_thread is thread
        assert mock_collect.called
        assert not thread.is_alive()

    def test_loop_survives_collection_errors(self):
        monitor = PerformanceMonitor(interval_seconds=0.01)

        with patch.object(monitor, "collect_metrics", side_effect=RuntimeError("boom")) as mock_collect:
            monitor.start_monitoring()
            time.sleep(0.05)
            monitor.stop_monitoring()
            monitor.monitoring_thread.join(timeout=1)

        assert mock_collect.call_count > 1
