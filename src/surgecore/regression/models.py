"""
Data models for performance regression testing.

Baselines, metric families, thresholds and suites are pydantic models so they
round-trip through the JSON baseline store and YAML regression configs.
Comparisons, violations and results are plain dataclasses produced by the
comparator and runner.
"""

from __future__ import annotations

import math
import platform
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, Dict, List, Literal, Optional

import psutil
from pydantic import BaseModel, ConfigDict, Field

from surgecore.protocols import Severity

if TYPE_CHECKING:
    from surgecore.metrics.collector import LatencySummary, TestMetrics


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _finite(value: Optional[float]) -> Optional[float]:
    """JSON has no infinity: report unbounded changes as null."""
    if value is None or math.isfinite(value):
        return value
    return None


# ============================================================================
# Metric families
# ============================================================================


class ResponseTimeMetrics(BaseModel):
    """Latency distribution in milliseconds."""

    p50: float = 0.0
    p95: float = 0.0
    p99: float = 0.0
    mean: float = 0.0
    max: float = 0.0
    min: float = 0.0

    @classmethod
    def from_summary(cls, summary: LatencySummary) -> "ResponseTimeMetrics":
        return cls(
            p50=summary.p50,
            p95=summary.p95,
            p99=summary.p99,
            mean=summary.mean,
            max=summary.max,
            min=summary.min,
        )


class DatabaseMetrics(BaseModel):
    query_time: ResponseTimeMetrics
    connection_pool_utilization: float = 0.0
    cache_hit_rate: float = 0.0
    index_usage: Dict[str, float] = Field(default_factory=dict)


class CoreWebVitals(BaseModel):
    lcp: float = Field(description="Largest Contentful Paint, ms")
    fid: float = Field(description="First Input Delay, ms")
    cls: float = Field(description="Cumulative Layout Shift")
    fcp: float = Field(description="First Contentful Paint, ms")
    ttfb: float = Field(description="Time to First Byte, ms")


class BundleSize(BaseModel):
    total: float
    compressed: float = 0.0
    chunks: Dict[str, float] = Field(default_factory=dict)


class FrontendMetrics(BaseModel):
    core_web_vitals: CoreWebVitals
    bundle_size: BundleSize
    resource_load_times: Dict[str, float] = Field(default_factory=dict)


class AlertDispatchMetrics(BaseModel):
    dispatch_latency: ResponseTimeMetrics
    throughput: float = Field(description="Alerts per second")
    error_rate: float = 0.0
    delivery_rate: Dict[str, float] = Field(default_factory=dict)


class EdgePerformanceMetrics(BaseModel):
    cache_hit_rate: float
    time_to_first_byte: ResponseTimeMetrics
    geographic_latency: Dict[str, float] = Field(default_factory=dict)
    compression_ratio: float = 0.0


class LoadSummary(BaseModel):
    """Whole-run numbers of one load test."""

    p50: float = 0.0
    p95: float = 0.0
    p99: float = 0.0
    throughput: float = 0.0
    error_rate: float = 0.0
    availability: float = 0.0
    total_requests: int = 0

    @classmethod
    def from_metrics(cls, metrics: TestMetrics) -> "LoadSummary":
        return cls(
            p50=metrics.latency.p50,
            p95=metrics.latency.p95,
            p99=metrics.latency.p99,
            throughput=metrics.throughput,
            error_rate=metrics.error_rate,
            availability=metrics.availability,
            total_requests=metrics.total,
        )


class BaselineMetrics(BaseModel):
    """Every tracked metric family. Families that were not measured stay empty."""

    api_response_times: Dict[str, ResponseTimeMetrics] = Field(default_factory=dict)
    database_queries: Dict[str, DatabaseMetrics] = Field(default_factory=dict)
    frontend: Optional[FrontendMetrics] = None
    alert_dispatch: Optional[AlertDispatchMetrics] = None
    edge: Optional[EdgePerformanceMetrics] = None
    load: Dict[str, LoadSummary] = Field(default_factory=dict)

    @classmethod
    def from_load_test(cls, metrics: TestMetrics) -> "BaselineMetrics":
        """API response times per endpoint URL plus the load summary, keyed by test name."""
        api: Dict[str, ResponseTimeMetrics] = {}
        for key, breakdown in metrics.endpoints.items():
            url = key.split(" ", 1)[-1]
            name = key if url in api else url
            api[name] = ResponseTimeMetrics.from_summary(breakdown.latency)
        return cls(api_response_times=api, load={metrics.name: LoadSummary.from_metrics(metrics)})

    def merge(self, other: "BaselineMetrics") -> "BaselineMetrics":
        """Combine two measurements; keyed families are unioned, single families replaced when present."""
        return BaselineMetrics(
            api_response_times={**self.api_response_times, **other.api_response_times},
            database_queries={**self.database_queries, **other.database_queries},
            frontend=other.frontend or self.frontend,
            alert_dispatch=other.alert_dispatch or self.alert_dispatch,
            edge=other.edge or self.edge,
            load={**self.load, **other.load},
        )

    def is_empty(self) -> bool:
        return not (
            self.api_response_times
            or self.database_queries
            or self.frontend
            or self.alert_dispatch
            or self.edge
            or self.load
        )


class EnvironmentDescriptor(BaseModel):
    cpu: str = "unknown"
    memory: str = "unknown"
    network: str = "unknown"
    database: str = "unknown"

    @classmethod
    def from_host(cls) -> "EnvironmentDescriptor":
        memory_gb = psutil.virtual_memory().total / (1024**3)
        return cls(
            cpu=f"{platform.processor() or platform.machine()} x{psutil.cpu_count() or 1}",
            memory=f"{memory_gb:.0f}GB",
            network="unknown",
            database="unknown",
        )


class Baseline(BaseModel):
    """Immutable, versioned snapshot of accepted performance numbers."""

    model_config = ConfigDict(frozen=True)

    version: str = Field(min_length=1)
    timestamp: datetime = Field(default_factory=_utcnow)
    metrics: BaselineMetrics = Field(default_factory=BaselineMetrics)
    environment: EnvironmentDescriptor = Field(default_factory=EnvironmentDescriptor)


# ============================================================================
# Thresholds
# ============================================================================


class ApiThresholds(BaseModel):
    absolute: Dict[str, float] = Field(
        default_factory=lambda: {"/api/emergency": 500.0, "/api/alerts/dispatch": 200.0, "/api/users/nearby": 800.0},
        description="p95 ceiling in ms per endpoint",
    )
    relative: float = Field(default=20.0, description="Allowed p95 increase in percent")


class DatabaseThresholds(BaseModel):
    absolute: Dict[str, float] = Field(default_factory=lambda: {"emergency_spatial_query": 400.0})
    relative: float = 25.0


class CoreWebVitalsThresholds(BaseModel):
    lcp: float = 2500.0
    fid: float = 100.0
    cls: float = 0.1
    fcp: float = 1800.0
    ttfb: float = 600.0


class BundleSizeThresholds(BaseModel):
    total: float = 300000.0
    chunk_increase: float = Field(default=15.0, description="Allowed growth per chunk in percent")


class FrontendThresholds(BaseModel):
    core_web_vitals: CoreWebVitalsThresholds = Field(default_factory=CoreWebVitalsThresholds)
    bundle_size: BundleSizeThresholds = Field(default_factory=BundleSizeThresholds)


class DispatchLatencyThresholds(BaseModel):
    p95: float = 150.0
    p99: float = 300.0


class ThroughputThresholds(BaseModel):
    minimum: float = 800.0
    relative_decrease: float = 10.0


class AlertDispatchThresholds(BaseModel):
    dispatch_latency: DispatchLatencyThresholds = Field(default_factory=DispatchLatencyThresholds)
    throughput: ThroughputThresholds = Field(default_factory=ThroughputThresholds)


class CacheHitRateThresholds(BaseModel):
    minimum: float = 80.0
    relative_decrease: float = 10.0


class TimeToFirstByteThresholds(BaseModel):
    p95: float = 300.0
    relative_increase: float = 20.0


class EdgeThresholds(BaseModel):
    cache_hit_rate: CacheHitRateThresholds = Field(default_factory=CacheHitRateThresholds)
    time_to_first_byte: TimeToFirstByteThresholds = Field(default_factory=TimeToFirstByteThresholds)


class LoadThresholds(BaseModel):
    latency_relative: float = Field(default=20.0, description="Allowed p50/p95/p99 increase in percent")
    p95_max: Optional[float] = Field(default=None, description="Optional p95 ceiling in ms")
    error_rate_max: float = 5.0
    throughput_relative_decrease: float = 10.0
    availability_minimum: float = 99.5
    availability_relative_decrease: float = 1.0


class RegressionThresholds(BaseModel):
    api: ApiThresholds = Field(default_factory=ApiThresholds)
    database: DatabaseThresholds = Field(default_factory=DatabaseThresholds)
    frontend: FrontendThresholds = Field(default_factory=FrontendThresholds)
    alert_dispatch: AlertDispatchThresholds = Field(default_factory=AlertDispatchThresholds)
    edge: EdgeThresholds = Field(default_factory=EdgeThresholds)
    load: LoadThresholds = Field(default_factory=LoadThresholds)


# ============================================================================
# Suites and configuration
# ============================================================================


TestType = Literal["api", "database", "frontend", "alert", "edge"]


class PerformanceTest(BaseModel):
    __test__: ClassVar[bool] = False

    name: str
    type: TestType
    config: Dict[str, Any] = Field(default_factory=dict)
    expected_metrics: Dict[str, Any] = Field(default_factory=dict)
    skip_on_failure: bool = False


class PerformanceTestSuite(BaseModel):
    __test__: ClassVar[bool] = False

    name: str
    description: str = ""
    tests: List[PerformanceTest] = Field(default_factory=list)
    parallel: bool = False
    timeout: float = Field(default=300.0, gt=0, description="Seconds allowed per test")


class RegressionReporting(BaseModel):
    formats: List[Literal["junit", "json", "html", "markdown"]] = Field(
        default_factory=lambda: ["junit", "json", "html"]
    )
    include_recommendations: bool = True


class EnforcementConfig(BaseModel):
    enabled: bool = True
    failure_threshold: Literal["any", "critical", "all"] = "critical"
    block_merge: bool = True


class RegressionConfig(BaseModel):
    name: str
    description: str = ""
    baseline_version: Optional[str] = Field(default=None, description="Latest baseline when unset")
    thresholds: RegressionThresholds = Field(default_factory=RegressionThresholds)
    test_suites: List[PerformanceTestSuite] = Field(default_factory=list)
    reporting: RegressionReporting = Field(default_factory=RegressionReporting)
    enforcement: EnforcementConfig = Field(default_factory=EnforcementConfig)


# ============================================================================
# Comparison results
# ============================================================================


class Direction(Enum):
    """Which way a metric moves when performance regresses."""

    HIGHER_IS_WORSE = "higher_is_worse"
    LOWER_IS_WORSE = "lower_is_worse"


class ComparisonStatus(Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


@dataclass(frozen=True)
class Comparison:
    category: str
    metric: str
    baseline: float
    current: float
    change: float
    change_percent: float
    threshold: Optional[float]
    absolute_threshold: Optional[float]
    direction: Direction
    status: ComparisonStatus
    severity: Severity
    violation_type: Optional[Literal["absolute", "relative"]] = None
    subject: str = ""
    impact: str = ""
    recommendation: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "metric": self.metric,
            "baseline": self.baseline,
            "current": self.current,
            "change": self.change,
            "change_percent": _finite(self.change_percent),
            "threshold": self.threshold,
            "absolute_threshold": self.absolute_threshold,
            "direction": self.direction.value,
            "status": self.status.value,
            "severity": self.severity.value,
        }


@dataclass(frozen=True)
class Violation:
    category: str
    metric: str
    type: Literal["absolute", "relative"]
    threshold: float
    actual: float
    severity: Severity
    description: str
    impact: str
    recommendation: str
    change_percent: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "metric": self.metric,
            "type": self.type,
            "threshold": self.threshold,
            "actual": self.actual,
            "severity": self.severity.value,
            "description": self.description,
            "impact": self.impact,
            "recommendation": self.recommendation,
            "change_percent": _finite(self.change_percent),
        }


@dataclass
class RegressionSummary:
    total_tests: int = 0
    passed_tests: int = 0
    failed_tests: int = 0
    skipped_tests: int = 0
    critical_failures: int = 0


@dataclass
class RegressionResult:
    test_id: str
    config: RegressionConfig
    status: Literal["running", "passed", "failed"] = "running"
    timestamp: datetime = field(default_factory=_utcnow)
    duration: float = 0.0
    baseline: Optional[Baseline] = None
    current: BaselineMetrics = field(default_factory=BaselineMetrics)
    comparisons: List[Comparison] = field(default_factory=list)
    violations: List[Violation] = field(default_factory=list)
    summary: RegressionSummary = field(default_factory=RegressionSummary)
    recommendations: List[str] = field(default_factory=list)
    load_tests: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    artifacts: Dict[str, str] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return self.status == "passed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "test_id": self.test_id,
            "name": self.config.name,
            "description": self.config.description,
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
            "duration": self.duration,
            "baseline": self.baseline.model_dump(mode="json") if self.baseline else None,
            "current": self.current.model_dump(mode="json"),
            "comparisons": [c.to_dict() for c in self.comparisons],
            "violations": [v.to_dict() for v in self.violations],
            "summary": {
                "total_tests": self.summary.total_tests,
                "passed_tests": self.summary.passed_tests,
                "failed_tests": self.summary.failed_tests,
                "skipped_tests": self.summary.skipped_tests,
                "critical_failures": self.summary.critical_failures,
            },
            "recommendations": list(self.recommendations),
            "load_tests": self.load_tests,
            "enforcement": self.config.enforcement.model_dump(mode="json"),
            "artifacts": dict(self.artifacts),
        }
