"""
Tests for regression runs: suites, probes, load tests, verdicts and artifacts.
"""

import asyncio
from typing import List

import pytest
import pytest_asyncio

from surgecore.config.config import ReportingConfig
from surgecore.engine.service import LoadTestService
from surgecore.exceptions import TestNotFoundError
from surgecore.notifications import AlertNotifier
from surgecore.protocols import AlertEvent, Severity
from surgecore.regression import (
    BaselineMetrics,
    InMemoryBaselineStore,
    PerformanceTest,
    RegressionConfig,
    RegressionRunner,
    ResponseTimeMetrics,
    ci_default_config,
    definition_for,
    default_baseline,
)
from surgecore.regression.models import DatabaseMetrics


class DatabaseProbe:
    def __init__(self, p95: float = 200.0) -> None:
        self.p95 = p95
        self.measured: List[str] = []

    async def measure(self, test: PerformanceTest) -> BaselineMetrics:
        self.measured.append(test.name)
        queries = test.config.get("queries", ["emergency_spatial_query"])
        return BaselineMetrics(
            database_queries={q: DatabaseMetrics(query_time=ResponseTimeMetrics(p95=self.p95)) for q in queries}
        )


class SlowProbe:
    async def measure(self, test: PerformanceTest) -> BaselineMetrics:
        await asyncio.sleep(5)
        return BaselineMetrics()


class FailingVitals:
    async def measure(self, test: PerformanceTest) -> BaselineMetrics:
        raise ValueError("unparseable vitals payload")


class RecordingSink:
    def __init__(self) -> None:
        self.events: List[AlertEvent] = []

    async def emit(self, event: AlertEvent) -> None:
        self.events.append(event)


def regression_config(*tests, **overrides) -> RegressionConfig:
    data = {
        "name": "Unit Regression",
        "test_suites": [{"name": "Suite", "timeout": 30, "tests": list(tests)}],
    }
    data.update(overrides)
    return RegressionConfig.model_validate(data)


DB_TEST = {"name": "Spatial Query", "type": "database", "config": {"queries": ["emergency_spatial_query"]}}


@pytest.fixture
def store():
    return InMemoryBaselineStore(seed_default=True)


@pytest_asyncio.fixture
async def service(config, target):
    async with LoadTestService(config, executor=target, sample_resources=False) as svc:
        yield svc


@pytest.mark.unit
class TestProbeRuns:
    @pytest.mark.asyncio
    async def test_unchanged_metrics_pass(self, store):
        probe = DatabaseProbe(p95=200.0)
        runner = RegressionRunner(store, probes={"database": probe})

        result = await runner.run(regression_config(DB_TEST))

        assert result.passed
        assert result.baseline.version == "1.0.0"
        assert probe.measured == ["Spatial Query"]
        assert [c.metric for c in result.comparisons] == ["emergency_spatial_query_p95_query_time"]
        assert result.violations == []
        assert result.summary.total_tests == result.summary.passed_tests == 1
        assert result.duration >= 0

    @pytest.mark.asyncio
    async def test_high_regression_passes_critical_policy(self, store):
        runner = RegressionRunner(store, probes={"database": DatabaseProbe(p95=300.0)})

        result = await runner.run(regression_config(DB_TEST))

        assert result.passed
        assert [v.severity for v in result.violations] == [Severity.HIGH]
        assert result.recommendations

    @pytest.mark.asyncio
    async def test_any_policy_fails_on_warning(self, store):
        runner = RegressionRunner(store, probes={"database": DatabaseProbe(p95=260.0)})

        result = await runner.run(regression_config(DB_TEST, enforcement={"failure_threshold": "any"}))

        assert not result.passed
        assert [v.severity for v in result.violations] == [Severity.MEDIUM]

    @pytest.mark.asyncio
    async def test_absolute_breach_fails(self, store):
        runner = RegressionRunner(store, probes={"database": DatabaseProbe(p95=450.0)})

        result = await runner.run(regression_config(DB_TEST))

        assert result.status == "failed"
        assert result.summary.critical_failures == 1

    @pytest.mark.asyncio
    async def test_recommendations_can_be_disabled(self, store):
        runner = RegressionRunner(store, probes={"database": DatabaseProbe(p95=300.0)})

        result = await runner.run(regression_config(DB_TEST, reporting={"include_recommendations": False}))

        assert result.violations
        assert result.recommendations == []

    @pytest.mark.asyncio
    async def test_no_baseline_passes_without_comparisons(self):
        runner = RegressionRunner(InMemoryBaselineStore(), probes={"database": DatabaseProbe(p95=9999.0)})

        result = await runner.run(regression_config(DB_TEST))

        assert result.passed
        assert result.baseline is None
        assert result.comparisons == []

    @pytest.mark.asyncio
    async def test_pinned_baseline_version(self, store):
        runner = RegressionRunner(store, probes={"database": DatabaseProbe()})

        result = await runner.run(regression_config(DB_TEST, baseline_version="7.7.7"))

        assert result.baseline is None
        assert result.passed


@pytest.mark.unit
class TestExecutionFailures:
    @pytest.mark.asyncio
    async def test_missing_probe_is_a_critical_failure(self, store):
        runner = RegressionRunner(store)

        result = await runner.run(regression_config({"name": "Vitals", "type": "frontend"}))

        assert result.status == "failed"
        assert result.summary.failed_tests == 1
        (violation,) = result.violations
        assert violation.severity is Severity.CRITICAL
        assert violation.metric == "Vitals"
        assert "No probe registered" in violation.description

    @pytest.mark.asyncio
    async def test_skip_on_failure(self, store):
        runner = RegressionRunner(store)

        result = await runner.run(
            regression_config({"name": "Vitals", "type": "frontend", "skip_on_failure": True})
        )

        assert result.passed
        assert result.summary.skipped_tests == 1
        assert result.violations == []

    @pytest.mark.asyncio
    async def test_suite_timeout(self, store):
        runner = RegressionRunner(store, probes={"edge": SlowProbe()})
        config = RegressionConfig.model_validate(
            {
                "name": "Timeouts",
                "test_suites": [{"name": "Slow", "timeout": 0.05, "tests": [{"name": "CDN", "type": "edge"}]}],
            }
        )

        result = await asyncio.wait_for(runner.run(config), timeout=5)

        assert result.status == "failed"
        assert result.violations[0].description == "Test execution failed: TimeoutError"

    @pytest.mark.asyncio
    async def test_api_test_without_service(self, store):
        runner = RegressionRunner(store)

        result = await runner.run(regression_config({"name": "API", "type": "api"}))

        assert "need a load test service" in result.violations[0].description

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_suite(self, store):
        probe = DatabaseProbe()
        runner = RegressionRunner(store, probes={"database": probe})

        result = await runner.run(regression_config({"name": "Vitals", "type": "frontend"}, DB_TEST))

        assert probe.measured == ["Spatial Query"]
        assert result.summary.total_tests == 2
        assert result.summary.passed_tests == 1
        assert result.summary.failed_tests == 1

    @pytest.mark.asyncio
    async def test_unexpected_measurement_error_counts_as_failure(self, store):
        probe = DatabaseProbe()
        runner = RegressionRunner(store, probes={"database": probe, "frontend": FailingVitals()})
        config = RegressionConfig.model_validate(
            {
                "name": "Broken Vitals",
                "test_suites": [
                    {
                        "name": "Frontend",
                        "tests": [
                            {"name": "Vitals", "type": "frontend"},
                            {"name": "Bundle", "type": "frontend", "skip_on_failure": True},
                        ],
                    },
                    {"name": "Database", "tests": [DB_TEST]},
                ],
            }
        )

        result = await runner.run(config)

        assert probe.measured == ["Spatial Query"]
        assert result.summary.failed_tests == 1
        assert result.summary.skipped_tests == 1
        assert result.summary.passed_tests == 1
        (violation,) = result.violations
        assert violation.severity is Severity.CRITICAL
        assert violation.description == "Test execution failed: unparseable vitals payload"


@pytest.mark.unit
class TestLoadTests:
    @pytest.mark.asyncio
    async def test_api_tests_run_through_the_engine(self, store, service, target):
        runner = RegressionRunner(store, service)
        api_test = {
            "name": "Emergency API",
            "type": "api",
            "config": {"endpoints": ["/api/emergency"], "concurrency": 2, "duration": 0.2, "think_time": [0.01, 0.02]},
        }

        result = await asyncio.wait_for(runner.run(regression_config(api_test)), timeout=10)

        assert result.passed
        assert target.calls and set(target.calls) == {"GET /api/emergency"}
        assert "/api/emergency" in result.current.api_response_times
        assert result.current.load["Emergency API"].total_requests == len(target.calls)
        assert result.load_tests["Emergency API"]["status"] == "completed"
        assert [c.metric for c in result.comparisons] == ["/api/emergency_p95_response_time"]

    @pytest.mark.asyncio
    async def test_parallel_suite(self, store, service):
        runner = RegressionRunner(store, service, probes={"database": DatabaseProbe()})
        config = RegressionConfig.model_validate(
            {
                "name": "Parallel",
                "test_suites": [
                    {
                        "name": "Mixed",
                        "parallel": True,
                        "tests": [
                            {"name": "Items", "type": "api", "config": {"endpoints": ["/api/items"], "duration": 0.1}},
                            DB_TEST,
                        ],
                    }
                ],
            }
        )

        result = await asyncio.wait_for(runner.run(config), timeout=10)

        assert result.summary.passed_tests == 2
        assert "/api/items" in result.current.api_response_times
        assert "emergency_spatial_query" in result.current.database_queries


@pytest.mark.unit
class TestResultsAndArtifacts:
    @pytest.mark.asyncio
    async def test_history_and_lookup(self, store):
        runner = RegressionRunner(store, probes={"database": DatabaseProbe()})
        first = await runner.run(regression_config(DB_TEST))
        second = await runner.run(regression_config(DB_TEST))
        other = await runner.run(regression_config(DB_TEST, name="Other"))

        assert runner.get_result(first.test_id) is first
        assert [r.test_id for r in runner.history("Unit Regression")] == [second.test_id, first.test_id]
        assert runner.history(limit=1)[0] is other
        with pytest.raises(TestNotFoundError):
            runner.get_result("regression-missing")

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, store):
        runner = RegressionRunner(store, probes={"database": DatabaseProbe()}, history_limit=2)
        results = [await runner.run(regression_config(DB_TEST)) for _ in range(3)]

        with pytest.raises(TestNotFoundError):
            runner.get_result(results[0].test_id)
        assert len(runner.history("Unit Regression")) == 2

    @pytest.mark.asyncio
    async def test_reports_use_service_formats(self, store, tmp_path):
        reporting = ReportingConfig(output_dir=tmp_path, formats=["json", "markdown"])
        runner = RegressionRunner(store, probes={"database": DatabaseProbe()}, reporting=reporting)

        result = await runner.run(regression_config(DB_TEST))

        assert set(result.artifacts) == {"json", "markdown"}
        assert result.artifacts["json"].endswith(f"unit-regression-{result.test_id}.json")
        assert (tmp_path / f"unit-regression-{result.test_id}.md").exists()

    @pytest.mark.asyncio
    async def test_config_formats_win(self, store, tmp_path):
        reporting = ReportingConfig(output_dir=tmp_path, formats=["json"])
        runner = RegressionRunner(store, probes={"database": DatabaseProbe()}, reporting=reporting)

        result = await runner.run(regression_config(DB_TEST, reporting={"formats": ["junit"]}))

        assert set(result.artifacts) == {"junit"}

    @pytest.mark.asyncio
    async def test_no_reporting_no_artifacts(self, store):
        runner = RegressionRunner(store, probes={"database": DatabaseProbe()})
        result = await runner.run(regression_config(DB_TEST))
        assert result.artifacts == {}

    @pytest.mark.asyncio
    async def test_violations_are_notified(self, store):
        sink = RecordingSink()
        runner = RegressionRunner(store, probes={"database": DatabaseProbe(p95=450.0)}, notifier=AlertNotifier([sink]))

        result = await runner.run(regression_config(DB_TEST))

        (event,) = sink.events
        assert event.category == "performance_regression"
        assert event.test_id == result.test_id
        assert event.data["regression"] == "Unit Regression"
        assert event.data["severity"] == "critical"


@pytest.mark.unit
class TestBaselinesAndOfflineComparison:
    def test_update_baseline(self, store):
        runner = RegressionRunner(store)
        metrics = BaselineMetrics(api_response_times={"/api/items": ResponseTimeMetrics(p95=80)})

        stored = runner.update_baseline("1.1.0", metrics)

        assert runner.get_baseline("1.1.0") == stored
        assert stored.environment.memory.endswith("GB")

    def test_compare_metrics(self, store):
        runner = RegressionRunner(store)
        current = BaselineMetrics(api_response_times={"/api/emergency": ResponseTimeMetrics(p95=600)})

        result = runner.compare_metrics(RegressionConfig(name="Offline"), current)

        assert result.status == "failed"
        assert result.violations[0].type == "absolute"
        assert runner.get_result(result.test_id) is result

    def test_compare_metrics_with_explicit_baseline(self):
        runner = RegressionRunner(InMemoryBaselineStore())
        current = BaselineMetrics(api_response_times={"/api/emergency": ResponseTimeMetrics(p95=300)})

        result = runner.compare_metrics(RegressionConfig(name="Offline"), current, baseline=default_baseline())

        assert result.passed
        assert len(result.comparisons) == 1


@pytest.mark.unit
class TestDefinitions:
    def test_endpoints_list(self):
        test = PerformanceTest(
            name="Nearby",
            type="api",
            config={"endpoints": ["/api/users/nearby"], "concurrency": 5, "duration": 2, "think_time": [0.1, 0.2]},
        )

        definition = definition_for(test)

        assert definition.name == "Nearby"
        assert definition.target_concurrency == 5
        assert [e.url for e in definition.endpoints] == ["/api/users/nearby"]
        assert definition.user_behavior.think_time.max == 0.2

    def test_default_endpoint(self):
        definition = definition_for(PerformanceTest(name="Default", type="api"))
        assert [e.url for e in definition.endpoints] == ["/api/emergency"]

    def test_scenario(self):
        test = PerformanceTest(
            name="Burst", type="api", config={"scenario": "emergency_alert_burst", "options": {"concurrency": 7}}
        )
        assert definition_for(test).target_concurrency == 7

    def test_ci_default_config(self):
        config = ci_default_config()

        assert config.name == "CI/CD Performance Regression Test"
        assert [s.name for s in config.test_suites] == [
            "API Performance Tests",
            "Database Performance Tests",
            "Frontend Performance Tests",
        ]
        assert config.enforcement.failure_threshold == "critical"
