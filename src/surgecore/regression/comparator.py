"""
Regression comparator.

Every tracked metric goes through the same routine, `compare_metric`,
parameterized by direction and thresholds:

- fail / critical  when the current value breaches the absolute limit
                   (a ceiling, or a floor for lower-is-worse metrics)
- fail / high      when the regression exceeds twice the relative threshold
- warn / medium    when the regression exceeds the relative threshold
- pass / low       otherwise

For higher-is-worse metrics the regression is the percent increase over the
baseline; for lower-is-worse metrics (throughput, cache hit rate,
availability) it is the percent decrease. Tier boundaries are strict, so a
change of exactly the threshold passes.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Collection, Dict, Iterable, List, Optional, Sequence

import structlog

from surgecore.exceptions import ComparisonError
from surgecore.protocols import Severity
from surgecore.regression.models import (
    BaselineMetrics,
    Comparison,
    ComparisonStatus,
    Direction,
    EnforcementConfig,
    RegressionSummary,
    RegressionThresholds,
    Violation,
)

logger = structlog.get_logger(__name__)

HIGHER = Direction.HIGHER_IS_WORSE
LOWER = Direction.LOWER_IS_WORSE


@dataclass(frozen=True)
class Guidance:
    impact: str
    recommendation: str


GUIDANCE: Dict[str, Guidance] = {
    "api": Guidance(
        "Users may experience slow response times",
        "Optimize database queries, add caching, or scale API servers",
    ),
    "database": Guidance(
        "Slow database queries affect overall system performance",
        "Optimize query execution plans, add indexes, or improve caching",
    ),
    "vitals": Guidance(
        "Poor user experience and lower search rankings",
        "Optimize resource loading, reduce JavaScript execution time, or improve server response",
    ),
    "bundle": Guidance(
        "Slower page load times, especially on mobile networks",
        "Implement code splitting, tree shaking, and remove unused dependencies",
    ),
    "dispatch_latency": Guidance(
        "Delayed emergency notifications can affect response times",
        "Optimize alert processing, improve connection pooling, or scale alert infrastructure",
    ),
    "dispatch_throughput": Guidance(
        "Reduced capacity to handle emergency alerts during high-load scenarios",
        "Optimize alert processing pipeline and scale alert infrastructure",
    ),
    "cache_hit_rate": Guidance(
        "Increased origin server load and slower response times",
        "Optimize cache keys, increase cache TTL, or review cache invalidation strategy",
    ),
    "edge_ttfb": Guidance(
        "Slower page load times for users globally",
        "Optimize edge routing, improve server response time, or enable compression",
    ),
    "load": Guidance(
        "The system no longer sustains the configured load profile",
        "Review the load test bottleneck analysis and scale the affected tier",
    ),
}

CRITICAL_RECOMMENDATION = "Address critical performance issues before deploying to production"
SPRINT_RECOMMENDATION = "Consider performance optimization sprint to address multiple high-severity issues"
CATEGORY_RECOMMENDATIONS = {
    "api": "Implement API response caching and consider microservices architecture",
    "database": "Optimize database schema, add missing indexes, and implement query caching",
    "frontend": "Implement comprehensive frontend optimization including code splitting and lazy loading",
}


def change_percent(baseline: float, current: float) -> float:
    """Signed percent change from baseline to current. A zero baseline yields 0 or +/-inf."""
    delta = current - baseline
    if baseline == 0:
        if delta == 0:
            return 0.0
        return math.copysign(math.inf, delta)
    return delta * 100.0 / baseline


def compare_metric(
    category: str,
    metric: str,
    baseline: Optional[float],
    current: float,
    *,
    relative: Optional[float] = None,
    absolute: Optional[float] = None,
    direction: Direction = HIGHER,
    subject: str = "",
    guidance: Optional[Guidance] = None,
) -> Comparison:
    """Classify one metric. Raises ComparisonError when the baseline has no value for it."""
    if baseline is None:
        raise ComparisonError(category, metric)

    signed = change_percent(baseline, current)
    regression = signed if direction is HIGHER else -signed

    if absolute is not None and (current > absolute if direction is HIGHER else current < absolute):
        status, severity, kind = ComparisonStatus.FAIL, Severity.CRITICAL, "absolute"
    elif relative is not None and regression > relative * 2:
        status, severity, kind = ComparisonStatus.FAIL, Severity.HIGH, "relative"
    elif relative is not None and regression > relative:
        status, severity, kind = ComparisonStatus.WARN, Severity.MEDIUM, "relative"
    else:
        status, severity, kind = ComparisonStatus.PASS, Severity.LOW, None

    guidance = guidance or GUIDANCE.get(category) or Guidance("", "")
    return Comparison(
        category=category,
        metric=metric,
        baseline=baseline,
        current=current,
        change=current - baseline,
        change_percent=signed,
        threshold=relative,
        absolute_threshold=absolute,
        direction=direction,
        status=status,
        severity=severity,
        violation_type=kind,  # type: ignore[arg-type]
        subject=subject or metric,
        impact=guidance.impact,
        recommendation=guidance.recommendation,
    )


def _safe(
    comparisons: List[Comparison],
    category: str,
    metric: str,
    baseline: Optional[float],
    current: float,
    **kwargs,
) -> None:
    try:
        comparisons.append(compare_metric(category, metric, baseline, current, **kwargs))
    except ComparisonError as e:
        logger.warning("Skipping metric without baseline", category=e.category, metric=e.metric)


def compare(
    baseline: BaselineMetrics, current: BaselineMetrics, thresholds: Optional[RegressionThresholds] = None
) -> List[Comparison]:
    """Compare every measured metric family of `current` against `baseline`."""
    thresholds = thresholds or RegressionThresholds()
    out: List[Comparison] = []

    api = thresholds.api
    for endpoint, metrics in current.api_response_times.items():
        base = baseline.api_response_times.get(endpoint)
        _safe(
            out,
            "api",
            f"{endpoint}_p95_response_time",
            base.p95 if base else None,
            metrics.p95,
            relative=api.relative,
            absolute=api.absolute.get(endpoint),
            subject=f"API endpoint {endpoint} P95 response time",
        )

    db = thresholds.database
    for query, metrics in current.database_queries.items():
        base_db = baseline.database_queries.get(query)
        _safe(
            out,
            "database",
            f"{query}_p95_query_time",
            base_db.query_time.p95 if base_db else None,
            metrics.query_time.p95,
            relative=db.relative,
            absolute=db.absolute.get(query),
            subject=f"Database query {query} P95 execution time",
        )

    if current.frontend is not None:
        fe = thresholds.frontend
        base_fe = baseline.frontend
        for vital in ("lcp", "fid", "cls", "fcp", "ttfb"):
            _safe(
                out,
                "frontend",
                f"core_web_vital_{vital}",
                getattr(base_fe.core_web_vitals, vital) if base_fe else None,
                getattr(current.frontend.core_web_vitals, vital),
                absolute=getattr(fe.core_web_vitals, vital),
                subject=f"Core Web Vital {vital.upper()}",
                guidance=GUIDANCE["vitals"],
            )
        _safe(
            out,
            "frontend",
            "bundle_size_total",
            base_fe.bundle_size.total if base_fe else None,
            current.frontend.bundle_size.total,
            absolute=fe.bundle_size.total,
            subject="Bundle size",
            guidance=GUIDANCE["bundle"],
        )
        for chunk, size in current.frontend.bundle_size.chunks.items():
            _safe(
                out,
                "frontend",
                f"bundle_chunk_{chunk}",
                base_fe.bundle_size.chunks.get(chunk) if base_fe else None,
                size,
                relative=fe.bundle_size.chunk_increase,
                subject=f"Bundle chunk {chunk}",
                guidance=GUIDANCE["bundle"],
            )

    if current.alert_dispatch is not None:
        ad = thresholds.alert_dispatch
        base_ad = baseline.alert_dispatch
        for pct in ("p95", "p99"):
            _safe(
                out,
                "alert",
                f"dispatch_latency_{pct}",
                getattr(base_ad.dispatch_latency, pct) if base_ad else None,
                getattr(current.alert_dispatch.dispatch_latency, pct),
                absolute=getattr(ad.dispatch_latency, pct),
                subject=f"Alert dispatch {pct.upper()} latency",
                guidance=GUIDANCE["dispatch_latency"],
            )
        _safe(
            out,
            "alert",
            "alert_throughput",
            base_ad.throughput if base_ad else None,
            current.alert_dispatch.throughput,
            relative=ad.throughput.relative_decrease,
            absolute=ad.throughput.minimum,
            direction=LOWER,
            subject="Alert throughput",
            guidance=GUIDANCE["dispatch_throughput"],
        )

    if current.edge is not None:
        edge = thresholds.edge
        base_edge = baseline.edge
        _safe(
            out,
            "edge",
            "cache_hit_rate",
            base_edge.cache_hit_rate if base_edge else None,
            current.edge.cache_hit_rate,
            relative=edge.cache_hit_rate.relative_decrease,
            absolute=edge.cache_hit_rate.minimum,
            direction=LOWER,
            subject="Edge cache hit rate",
            guidance=GUIDANCE["cache_hit_rate"],
        )
        _safe(
            out,
            "edge",
            "time_to_first_byte_p95",
            base_edge.time_to_first_byte.p95 if base_edge else None,
            current.edge.time_to_first_byte.p95,
            relative=edge.time_to_first_byte.relative_increase,
            absolute=edge.time_to_first_byte.p95,
            subject="Edge TTFB",
            guidance=GUIDANCE["edge_ttfb"],
        )

    lt = thresholds.load
    for name, summary in current.load.items():
        base_load = baseline.load.get(name)
        for pct in ("p50", "p95", "p99"):
            _safe(
                out,
                "load",
                f"{name}_{pct}_response_time",
                getattr(base_load, pct) if base_load else None,
                getattr(summary, pct),
                relative=lt.latency_relative,
                absolute=lt.p95_max if pct == "p95" else None,
                subject=f"Load test {name} {pct.upper()} response time",
            )
        _safe(
            out,
            "load",
            f"{name}_error_rate",
            base_load.error_rate if base_load else None,
            summary.error_rate,
            absolute=lt.error_rate_max,
            subject=f"Load test {name} error rate",
        )
        _safe(
            out,
            "load",
            f"{name}_throughput",
            base_load.throughput if base_load else None,
            summary.throughput,
            relative=lt.throughput_relative_decrease,
            direction=LOWER,
            subject=f"Load test {name} throughput",
        )
        _safe(
            out,
            "load",
            f"{name}_availability",
            base_load.availability if base_load else None,
            summary.availability,
            relative=lt.availability_relative_decrease,
            absolute=lt.availability_minimum,
            direction=LOWER,
            subject=f"Load test {name} availability",
        )

    return out


def violation_from(comparison: Comparison) -> Optional[Violation]:
    """The violation a non-passing comparison represents, or None."""
    if comparison.status is ComparisonStatus.PASS or comparison.violation_type is None:
        return None
    verb = "exceeded" if comparison.status is ComparisonStatus.FAIL else "approached"
    if comparison.violation_type == "absolute":
        threshold = comparison.absolute_threshold
        verb = "breached"
    else:
        threshold = comparison.threshold
    return Violation(
        category=comparison.category,
        metric=comparison.metric,
        type=comparison.violation_type,
        threshold=threshold if threshold is not None else 0.0,
        actual=comparison.current,
        severity=comparison.severity,
        description=f"{comparison.subject} {verb} threshold",
        impact=comparison.impact,
        recommendation=comparison.recommendation,
        change_percent=comparison.change_percent,
    )


def violations_from(comparisons: Iterable[Comparison]) -> List[Violation]:
    return [v for v in (violation_from(c) for c in comparisons) if v is not None]


def execution_failure_violation(category: str, test_name: str, error: str) -> Violation:
    return Violation(
        category=category,
        metric=test_name,
        type="absolute",
        threshold=0.0,
        actual=1.0,
        severity=Severity.CRITICAL,
        description=f"Test execution failed: {error}",
        impact="Unable to measure performance for this component",
        recommendation="Fix test execution issues before proceeding",
    )


def recommendations(violations: Sequence[Violation]) -> List[str]:
    out: List[str] = []

    def add(text: str) -> None:
        if text and text not in out:
            out.append(text)

    for violation in violations:
        add(violation.recommendation)
    if any(v.severity is Severity.CRITICAL for v in violations):
        add(CRITICAL_RECOMMENDATION)
    if sum(1 for v in violations if v.severity is Severity.HIGH) > 3:
        add(SPRINT_RECOMMENDATION)
    for category, text in CATEGORY_RECOMMENDATIONS.items():
        if sum(1 for v in violations if v.category == category) > 2:
            add(text)
    return out


def verdict(
    violations: Collection[Violation], summary: RegressionSummary, enforcement: EnforcementConfig
) -> bool:
    """True when the run passes under the enforcement policy."""
    if not enforcement.enabled:
        return True
    if enforcement.failure_threshold == "any":
        return not violations
    if enforcement.failure_threshold == "critical":
        return not any(v.severity is Severity.CRITICAL for v in violations)
    return summary.failed_tests == 0
