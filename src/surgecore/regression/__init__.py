"""Baselines, regression comparison and regression runs."""

from .comparator import (
    change_percent,
    compare,
    compare_metric,
    execution_failure_violation,
    recommendations,
    verdict,
    violation_from,
    violations_from,
)
from .models import (
    Baseline,
    BaselineMetrics,
    Comparison,
    ComparisonStatus,
    Direction,
    EnforcementConfig,
    EnvironmentDescriptor,
    LoadSummary,
    PerformanceTest,
    PerformanceTestSuite,
    RegressionConfig,
    RegressionResult,
    RegressionSummary,
    RegressionThresholds,
    ResponseTimeMetrics,
    Violation,
)
from .runner import MetricProbe, RegressionRunner, ci_default_config, definition_for
from .store import (
    DEFAULT_BASELINE_VERSION,
    BaselineStore,
    InMemoryBaselineStore,
    JsonBaselineStore,
    default_baseline,
)

__all__ = [
    "DEFAULT_BASELINE_VERSION",
    "Baseline",
    "BaselineMetrics",
    "BaselineStore",
    "Comparison",
    "ComparisonStatus",
    "Direction",
    "EnforcementConfig",
    "EnvironmentDescriptor",
    "InMemoryBaselineStore",
    "JsonBaselineStore",
    "LoadSummary",
    "MetricProbe",
    "PerformanceTest",
    "PerformanceTestSuite",
    "RegressionConfig",
    "RegressionResult",
    "RegressionRunner",
    "RegressionSummary",
    "RegressionThresholds",
    "ResponseTimeMetrics",
    "Violation",
    "change_percent",
    "ci_default_config",
    "compare",
    "compare_metric",
    "default_baseline",
    "definition_for",
    "execution_failure_violation",
    "recommendations",
    "verdict",
    "violation_from",
    "violations_from",
]
