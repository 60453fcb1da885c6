"""
Regression run orchestration.

A run executes every suite of a RegressionConfig, gathers the current metric
families, compares them with the stored baseline and applies the enforcement
policy. `api` tests are real load tests run through the engine; the other test
types are measured by probes registered per type.
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict, deque
from typing import Any, Deque, Dict, List, Mapping, Optional, Protocol
from uuid import uuid4

import structlog

from surgecore.config.config import ReportingConfig
from surgecore.definition import TestDefinition, TestEndpoint, build_definition
from surgecore.engine.service import LoadTestService
from surgecore.exceptions import SurgeCoreError, TestNotFoundError
from surgecore.notifications import AlertNotifier
from surgecore.protocols import AlertEvent, Severity, TestStatus
from surgecore.regression.comparator import (
    compare,
    execution_failure_violation,
    recommendations,
    verdict,
    violations_from,
)
from surgecore.regression.models import (
    Baseline,
    BaselineMetrics,
    EnvironmentDescriptor,
    PerformanceTest,
    PerformanceTestSuite,
    RegressionConfig,
    RegressionResult,
    RegressionSummary,
    Violation,
)
from surgecore.regression.store import BaselineStore
from surgecore.scenarios import get_scenario

logger = structlog.get_logger(__name__)


class MetricProbe(Protocol):
    """Measures one non-load test type and returns the metric family it covers."""

    async def measure(self, test: PerformanceTest) -> BaselineMetrics: ...


def definition_for(test: PerformanceTest) -> TestDefinition:
    """Build the load test an `api` regression test describes."""
    config = test.config
    if "definition" in config:
        return build_definition(config["definition"])
    if "scenario" in config:
        return get_scenario(config["scenario"], **config.get("options", {}))

    endpoints = config.get("endpoints") or ["/api/emergency"]
    data: Dict[str, Any] = {
        "name": test.name,
        "target_concurrency": config.get("concurrency", 10),
        "ramp_up": config.get("ramp_up", 0.0),
        "duration": config.get("duration", 10.0),
        "endpoints": [e if isinstance(e, Mapping) else TestEndpoint(url=e).model_dump() for e in endpoints],
    }
    if "think_time" in config:
        low, high = config["think_time"]
        data["user_behavior"] = {"think_time": {"min": low, "max": high}}
    return build_definition(data)


def ci_default_config() -> RegressionConfig:
    """The pipeline gate: API, database and frontend suites with critical-only enforcement."""
    return RegressionConfig.model_validate(
        {
            "name": "CI/CD Performance Regression Test",
            "description": "Automated performance regression test for CI/CD pipeline",
            "test_suites": [
                {
                    "name": "API Performance Tests",
                    "description": "Test API endpoint response times",
                    "parallel": True,
                    "timeout": 300,
                    "tests": [
                        {
                            "name": "Emergency API Response Time",
                            "type": "api",
                            "config": {"endpoints": ["/api/emergency"]},
                            "expected_metrics": {"p95": 300},
                        },
                        {
                            "name": "Alert Dispatch API Response Time",
                            "type": "api",
                            "config": {"endpoints": ["/api/alerts/dispatch"]},
                            "expected_metrics": {"p95": 100},
                        },
                    ],
                },
                {
                    "name": "Database Performance Tests",
                    "description": "Test database query performance",
                    "timeout": 300,
                    "tests": [
                        {
                            "name": "Emergency Spatial Query Performance",
                            "type": "database",
                            "config": {"queries": ["emergency_spatial_query"]},
                            "expected_metrics": {"p95": 200},
                        }
                    ],
                },
                {
                    "name": "Frontend Performance Tests",
                    "description": "Test frontend loading performance",
                    "timeout": 600,
                    "tests": [
                        {
                            "name": "Core Web Vitals",
                            "type": "frontend",
                            "expected_metrics": {"lcp": 2500, "fid": 100, "cls": 0.1},
                        }
                    ],
                },
            ],
            "enforcement": {"enabled": True, "failure_threshold": "critical", "block_merge": True},
        }
    )


class RegressionRunner:
    """Runs regression configs and keeps their results."""

    def __init__(
        self,
        store: BaselineStore,
        service: Optional[LoadTestService] = None,
        *,
        probes: Optional[Mapping[str, MetricProbe]] = None,
        notifier: Optional[AlertNotifier] = None,
        reporting: Optional[ReportingConfig] = None,
        history_limit: int = 50,
    ) -> None:
        self.store = store
        self.service = service
        self.probes: Dict[str, MetricProbe] = dict(probes or {})
        self.notifier = notifier
        self.reporting = reporting
        self.history_limit = history_limit
        self._results: "OrderedDict[str, RegressionResult]" = OrderedDict()
        self._history: Dict[str, Deque[RegressionResult]] = {}
        self.logger = structlog.get_logger(self.__class__.__name__)

    # --- baselines ---------------------------------------------------------

    def update_baseline(
        self, version: str, metrics: BaselineMetrics, environment: Optional[EnvironmentDescriptor] = None
    ) -> Baseline:
        baseline = Baseline(
            version=version,
            metrics=metrics,
            environment=environment or EnvironmentDescriptor.from_host(),
        )
        stored = self.store.put_baseline(version, baseline)
        self.logger.info("Baseline updated", version=version)
        return stored

    def get_baseline(self, version: Optional[str] = None) -> Optional[Baseline]:
        return self.store.get_baseline(version)

    def report_formats(self, config: RegressionConfig) -> List[str]:
        """Formats set on the regression config win over the service-wide reporting defaults."""
        if "formats" in config.reporting.model_fields_set or self.reporting is None:
            return list(config.reporting.formats)
        return list(self.reporting.formats)

    # --- results -----------------------------------------------------------

    def get_result(self, test_id: str) -> RegressionResult:
        result = self._results.get(test_id)
        if result is None:
            raise TestNotFoundError(test_id)
        return result

    def history(self, name: Optional[str] = None, limit: int = 10) -> List[RegressionResult]:
        """Most recent results first, optionally for one configuration name."""
        if name is not None:
            results = list(self._history.get(name, ()))
        else:
            results = list(self._results.values())
        results.sort(key=lambda r: r.timestamp, reverse=True)
        return results[:limit]

    def _remember(self, result: RegressionResult) -> None:
        self._results[result.test_id] = result
        while len(self._results) > self.history_limit:
            self._results.popitem(last=False)
        bucket = self._history.setdefault(result.config.name, deque(maxlen=self.history_limit))
        bucket.append(result)

    # --- run ---------------------------------------------------------------

    async def run(self, config: RegressionConfig) -> RegressionResult:
        started = time.monotonic()
        result = RegressionResult(test_id=f"regression-{uuid4().hex[:12]}", config=config)
        self._remember(result)
        structlog.contextvars.bind_contextvars(regression_id=result.test_id)
        self.logger.info("Regression test starting", name=config.name, suites=len(config.test_suites))

        try:
            result.baseline = self.store.get_baseline(config.baseline_version)
            failures: List[Violation] = []
            for suite in config.test_suites:
                failures.extend(await self._run_suite(result, suite))
            self.evaluate(result, failures)
        except BaseException:
            result.status = "failed"
            raise
        finally:
            result.duration = time.monotonic() - started
            structlog.contextvars.unbind_contextvars("regression_id")

        if self.reporting is not None:
            from surgecore.reporting import write_reports

            paths = write_reports(result, self.reporting.output_dir, self.report_formats(config))
            result.artifacts.update({fmt: str(path) for fmt, path in paths.items()})

        await self._notify(result)
        self.logger.info(
            "Regression test completed",
            name=config.name,
            status=result.status,
            violations=len(result.violations),
            critical=result.summary.critical_failures,
            duration=round(result.duration, 3),
        )
        return result

    def evaluate(self, result: RegressionResult, failures: Optional[List[Violation]] = None) -> RegressionResult:
        """Compare, derive violations and recommendations, and apply the verdict policy."""
        config = result.config
        if result.baseline is None:
            self.logger.warning(
                "No baseline available, skipping comparison", requested_version=config.baseline_version
            )
            result.comparisons = []
        else:
            result.comparisons = compare(result.baseline.metrics, result.current, config.thresholds)

        result.violations = list(failures or []) + violations_from(result.comparisons)
        result.recommendations = (
            recommendations(result.violations) if config.reporting.include_recommendations else []
        )
        passed = verdict(result.violations, result.summary, config.enforcement)
        result.status = "passed" if passed else "failed"
        result.summary.critical_failures = sum(1 for v in result.violations if v.severity is Severity.CRITICAL)
        return result

    def compare_metrics(
        self, config: RegressionConfig, current: BaselineMetrics, baseline: Optional[Baseline] = None
    ) -> RegressionResult:
        """Evaluate already-measured metrics without running any suite."""
        result = RegressionResult(test_id=f"regression-{uuid4().hex[:12]}", config=config, current=current)
        result.baseline = baseline if baseline is not None else self.store.get_baseline(config.baseline_version)
        self.evaluate(result)
        self._remember(result)
        return result

    async def _run_suite(self, result: RegressionResult, suite: PerformanceTestSuite) -> List[Violation]:
        self.logger.info("Executing test suite", suite=suite.name, tests=len(suite.tests), parallel=suite.parallel)
        if suite.parallel:
            outcomes = await asyncio.gather(*(self._run_test(result, test, suite.timeout) for test in suite.tests))
        else:
            outcomes = [await self._run_test(result, test, suite.timeout) for test in suite.tests]
        return [v for v in outcomes if v is not None]

    async def _run_test(self, result: RegressionResult, test: PerformanceTest, timeout: float) -> Optional[Violation]:
        summary: RegressionSummary = result.summary
        summary.total_tests += 1
        try:
            async with asyncio.timeout(timeout):
                measured = await self._measure(result, test)
        except Exception as e:
            message = str(e) or type(e).__name__
            self.logger.error("Performance test failed", test=test.name, type=test.type, error=message)
            if test.skip_on_failure:
                summary.skipped_tests += 1
                return None
            summary.failed_tests += 1
            return execution_failure_violation(test.type, test.name, message)

        result.current = result.current.merge(measured)
        summary.passed_tests += 1
        return None

    async def _measure(self, result: RegressionResult, test: PerformanceTest) -> BaselineMetrics:
        if test.type == "api":
            return await self._run_load_test(result, test)
        probe = self.probes.get(test.type)
        if probe is None:
            raise SurgeCoreError(f"No probe registered for test type '{test.type}'")
        return await probe.measure(test)

    async def _run_load_test(self, result: RegressionResult, test: PerformanceTest) -> BaselineMetrics:
        if self.service is None:
            raise SurgeCoreError("API tests need a load test service")
        definition = definition_for(test)
        test_id = await self.service.start(definition)
        try:
            metrics = await self.service.wait(test_id)
        except asyncio.CancelledError:
            # Suite timeout: do not leave the load test running
            await self.service.stop(test_id)
            raise

        result.load_tests[test.name] = self.service.report(test_id)
        if metrics.status is TestStatus.FAILED:
            raise SurgeCoreError(f"Load test failed: {metrics.failure_reason}")
        if metrics.total == 0:
            raise SurgeCoreError("Load test recorded no requests")
        return BaselineMetrics.from_load_test(metrics)

    async def _notify(self, result: RegressionResult) -> None:
        if self.notifier is None:
            return
        for violation in result.violations:
            await self.notifier.notify(
                AlertEvent(
                    category="performance_regression",
                    message=violation.description,
                    data={**violation.to_dict(), "regression": result.config.name},
                    test_id=result.test_id,
                )
            )
