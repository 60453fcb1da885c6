"""
Tests for bottleneck rules, target alerts and load test recommendations.
"""

import pytest

from surgecore.analysis.bottlenecks import BottleneckDetector, check_performance_targets, load_recommendations
from surgecore.definition import PerformanceTargets
from surgecore.metrics.collector import MetricsCollector, ResourceStats, ResourceUsage
from surgecore.protocols import BottleneckCategory, ErrorCategory, RequestSample, Severity


def metrics_for(latencies, *, failures=0, status_code=None):
    collector = MetricsCollector("t-bn", "bottlenecks", 10, seed=1)
    for i, latency in enumerate(latencies):
        failed = i < failures
        collector.record(
            RequestSample(
                endpoint="GET /api",
                user_id=f"vu-{i}",
                region="eu",
                issued_at=0.0,
                latency_ms=latency,
                success=not failed,
                status_code=status_code if failed else 200,
                error=ErrorCategory.STATUS_MISMATCH if failed else None,
            )
        )
    return collector


@pytest.mark.unit
class TestBottleneckDetector:
    def test_healthy_run_has_no_bottlenecks(self):
        assert BottleneckDetector().analyze(metrics_for([100.0] * 100).snapshot()) == []

    def test_no_traffic_no_bottlenecks(self):
        assert BottleneckDetector().analyze(metrics_for([]).snapshot()) == []

    def test_high_error_rate_is_an_api_bottleneck(self):
        metrics = metrics_for([100.0] * 100, failures=10, status_code=404).snapshot()
        bottlenecks = BottleneckDetector().analyze(metrics)

        assert len(bottlenecks) == 1
        assert bottlenecks[0].category is BottleneckCategory.API
        assert bottlenecks[0].severity is Severity.CRITICAL
        assert bottlenecks[0].affected_requests == 10

    def test_slow_p95_is_a_network_bottleneck(self):
        metrics = metrics_for([100.0] * 90 + [1500.0] * 10).snapshot()
        bottlenecks = BottleneckDetector().analyze(metrics)

        assert [b.category for b in bottlenecks] == [BottleneckCategory.NETWORK]
        assert bottlenecks[0].severity is Severity.HIGH

    def test_server_errors_are_a_database_bottleneck(self):
        metrics = metrics_for([100.0] * 100, failures=3, status_code=500).snapshot()
        bottlenecks = BottleneckDetector().analyze(metrics)

        # 3% errors is below the API threshold but above the 2% server error share
        assert [b.category for b in bottlenecks] == [BottleneckCategory.DATABASE]
        assert bottlenecks[0].affected_requests == 3

    def test_rules_are_not_exclusive(self):
        metrics = metrics_for([2000.0] * 100, failures=50, status_code=503).snapshot()
        categories = [b.category for b in BottleneckDetector().analyze(metrics)]

        assert categories == [BottleneckCategory.API, BottleneckCategory.NETWORK, BottleneckCategory.DATABASE]

    def test_custom_thresholds(self):
        metrics = metrics_for([300.0] * 10).snapshot()
        assert BottleneckDetector(p95_threshold_ms=200).analyze(metrics)[0].category is BottleneckCategory.NETWORK


@pytest.mark.unit
class TestPerformanceTargets:
    def test_all_targets_breached(self):
        metrics = metrics_for([800.0] * 10, failures=5, status_code=500).snapshot()
        events = check_performance_targets(metrics, PerformanceTargets())

        assert [e.category for e in events] == ["response_time", "error_rate", "availability"]
        assert events[0].data == {"current": 800.0, "target": 500.0}

    def test_targets_met(self):
        assert check_performance_targets(metrics_for([10.0] * 10).snapshot(), PerformanceTargets()) == []

    def test_resource_saturation(self):
        collector = metrics_for([10.0])
        collector.set_resources(ResourceUsage(cpu=ResourceStats(max=97.0), memory=ResourceStats(max=40.0), samples=1))
        events = check_performance_targets(collector.snapshot(), PerformanceTargets(), resource_limit=90.0)

        assert [e.category for e in events] == ["resource_utilization"]
        assert events[0].data["cpu"] == 97.0


@pytest.mark.unit
class TestLoadRecommendations:
    def test_recommendations_follow_targets_and_bottlenecks(self):
        collector = metrics_for([2000.0] * 100, failures=50, status_code=503)
        collector.set_bottlenecks(BottleneckDetector().analyze(collector.snapshot()))
        recommendations = load_recommendations(collector.snapshot(), PerformanceTargets())

        assert recommendations[0] == "Optimize API response times through caching and query optimization"
        assert "Investigate and fix high error rates in API endpoints" in recommendations
        assert "Optimize database queries and add connection pooling" in recommendations
        assert len(recommendations) == len(set(recommendations))

    def test_healthy_run_needs_nothing(self):
        assert load_recommendations(metrics_for([10.0] * 10).snapshot(), PerformanceTargets()) == []
