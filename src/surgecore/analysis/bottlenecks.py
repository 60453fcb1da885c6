"""
Rule-based bottleneck classification and performance-target checks.

Rules are evaluated in a fixed order and are not mutually exclusive:

1. error rate above the API threshold        -> api, critical
2. p95 latency above the network threshold   -> network, high
3. server errors above a share of all traffic -> database, critical
"""

from __future__ import annotations

from typing import List, Optional

import structlog

from surgecore.definition import PerformanceTargets
from surgecore.metrics.collector import TestMetrics
from surgecore.protocols import AlertEvent, Bottleneck, BottleneckCategory, Severity

logger = structlog.get_logger(__name__)

RECOMMENDATIONS = {
    BottleneckCategory.API: "Scale API servers and optimize database queries",
    BottleneckCategory.NETWORK: "Optimize CDN configuration and enable compression",
    BottleneckCategory.DATABASE: "Optimize database queries and add connection pooling",
    BottleneckCategory.CACHE: "Review cache sizing and invalidation policy",
}


class BottleneckDetector:
    def __init__(
        self,
        error_rate_threshold: float = 5.0,
        p95_threshold_ms: float = 1000.0,
        server_error_threshold: float = 2.0,
    ) -> None:
        self.error_rate_threshold = error_rate_threshold
        self.p95_threshold_ms = p95_threshold_ms
        self.server_error_threshold = server_error_threshold

    def analyze(self, metrics: TestMetrics) -> List[Bottleneck]:
        bottlenecks: List[Bottleneck] = []
        if metrics.total == 0:
            return bottlenecks

        if metrics.error_rate > self.error_rate_threshold:
            bottlenecks.append(
                Bottleneck(
                    category=BottleneckCategory.API,
                    severity=Severity.CRITICAL,
                    description="High error rate indicates API bottleneck",
                    affected_requests=int(metrics.total * metrics.error_rate / 100),
                    recommendation=RECOMMENDATIONS[BottleneckCategory.API],
                )
            )

        if metrics.latency.p95 > self.p95_threshold_ms:
            bottlenecks.append(
                Bottleneck(
                    category=BottleneckCategory.NETWORK,
                    severity=Severity.HIGH,
                    description="Slow response times indicate network bottleneck",
                    affected_requests=metrics.total,
                    recommendation=RECOMMENDATIONS[BottleneckCategory.NETWORK],
                )
            )

        if metrics.server_errors > metrics.total * self.server_error_threshold / 100:
            bottlenecks.append(
                Bottleneck(
                    category=BottleneckCategory.DATABASE,
                    severity=Severity.CRITICAL,
                    description="High database error rate",
                    affected_requests=metrics.server_errors,
                    recommendation=RECOMMENDATIONS[BottleneckCategory.DATABASE],
                )
            )

        if bottlenecks:
            logger.info(
                "Bottlenecks detected",
                test_id=metrics.test_id,
                categories=[b.category.value for b in bottlenecks],
            )
        return bottlenecks


def check_performance_targets(
    metrics: TestMetrics, targets: PerformanceTargets, resource_limit: Optional[float] = None
) -> List[AlertEvent]:
    """Alert events for p95, error rate and availability targets, plus host saturation."""
    events: List[AlertEvent] = []
    if metrics.total > 0:
        if metrics.latency.p95 > targets.response_time.p95:
            events.append(
                AlertEvent(
                    category="response_time",
                    message="P95 response time exceeded target",
                    data={"current": metrics.latency.p95, "target": targets.response_time.p95},
                    test_id=metrics.test_id,
                )
            )
        if metrics.error_rate > targets.error_rate.critical:
            events.append(
                AlertEvent(
                    category="error_rate",
                    message="Error rate exceeded critical threshold",
                    data={"current": metrics.error_rate, "target": targets.error_rate.critical},
                    test_id=metrics.test_id,
                )
            )
        if metrics.availability < targets.availability.minimum:
            events.append(
                AlertEvent(
                    category="availability",
                    message="Availability below minimum threshold",
                    data={"current": metrics.availability, "target": targets.availability.minimum},
                    test_id=metrics.test_id,
                )
            )

    if resource_limit is not None and metrics.resources.samples:
        peak = max(metrics.resources.cpu.max, metrics.resources.memory.max)
        if peak > resource_limit:
            events.append(
                AlertEvent(
                    category="resource_utilization",
                    message="Load generator host saturated",
                    data={
                        "cpu": metrics.resources.cpu.max,
                        "memory": metrics.resources.memory.max,
                        "target": resource_limit,
                    },
                    test_id=metrics.test_id,
                )
            )
    return events


def load_recommendations(metrics: TestMetrics, targets: PerformanceTargets) -> List[str]:
    recommendations: List[str] = []
    if metrics.latency.p95 > targets.response_time.p95:
        recommendations.append("Optimize API response times through caching and query optimization")
    if metrics.error_rate > targets.error_rate.acceptable:
        recommendations.append("Investigate and fix high error rates in API endpoints")
    if metrics.total and metrics.availability < targets.availability.target:
        recommendations.append("Improve system availability through redundancy and failover mechanisms")
    for bottleneck in metrics.bottlenecks:
        if bottleneck.recommendation not in recommendations:
            recommendations.append(bottleneck.recommendation)
    return recommendations
