"""
Tests for the JUnit, JSON, HTML and Markdown report renderers.
"""

import json
import xml.etree.ElementTree as ET

import pytest

from surgecore.regression import (
    BaselineMetrics,
    InMemoryBaselineStore,
    RegressionConfig,
    RegressionRunner,
    ResponseTimeMetrics,
    execution_failure_violation,
)
from surgecore.regression.models import BundleSize, CoreWebVitals, FrontendMetrics
from surgecore.reporting import (
    render_html,
    render_json,
    render_junit,
    render_load_markdown,
    render_markdown,
    write_load_report,
    write_reports,
)


LOAD_REPORT = {
    "test_id": "load-123",
    "name": "Smoke",
    "status": "completed",
    "scenario": None,
    "failure_reason": None,
    "summary": {
        "duration": 1.5,
        "total_requests": 10,
        "successful_requests": 9,
        "failed_requests": 1,
        "error_rate": 10.0,
        "availability": 90.0,
        "peak_concurrency": 2,
    },
    "performance": {
        "response_times": {"min": 1, "mean": 2, "p50": 2, "p95": 3, "p99": 4, "max": 5},
        "throughput": 6.5,
        "endpoints": {"GET /api/items": {"requests": 10, "errors": 1, "latency": {"p95": 3.0}}},
    },
    "geographic": {},
    "bottlenecks": [{"severity": "critical", "category": "api", "description": "High error rate"}],
    "recommendations": ["Investigate"],
}


def result_for(current: BaselineMetrics, name: str = "Release <Gate>"):
    runner = RegressionRunner(InMemoryBaselineStore(seed_default=True))
    return runner.compare_metrics(RegressionConfig(name=name), current)


@pytest.fixture
def failing_result():
    return result_for(
        BaselineMetrics(
            api_response_times={
                "/api/emergency": ResponseTimeMetrics(p95=450),
                "/api/alerts/dispatch": ResponseTimeMetrics(p95=125),
            }
        )
    )


@pytest.fixture
def passing_result():
    return result_for(BaselineMetrics(), name="Quiet")


@pytest.fixture
def unbounded_result():
    vitals = CoreWebVitals(lcp=2000, fid=50, cls=0.05, fcp=1500, ttfb=400)

    def metrics(lazy_chunk: float) -> BaselineMetrics:
        bundle = BundleSize(total=200000, chunks={"lazy": lazy_chunk})
        return BaselineMetrics(frontend=FrontendMetrics(core_web_vitals=vitals, bundle_size=bundle))

    runner = RegressionRunner(InMemoryBaselineStore())
    runner.update_baseline("0.1.0", metrics(0.0))
    return runner.compare_metrics(RegressionConfig(name="Chunks"), metrics(5000.0))


@pytest.mark.unit
class TestJUnit:
    def test_structure(self, failing_result):
        suite = ET.fromstring(render_junit(failing_result))

        assert suite.tag == "testsuite"
        assert suite.get("name") == "Performance Regression Test - Release <Gate>"
        assert suite.get("failures") == "1"
        cases = suite.findall("testcase")
        assert [c.get("name") for c in cases] == [
            "/api/emergency_p95_response_time",
            "/api/alerts/dispatch_p95_response_time",
        ]
        failure = cases[0].find("failure")
        assert failure.get("type") == "high"
        assert "Change: +50.00%" in failure.text
        assert cases[1].find("failure") is None
        assert "Warning" in cases[1].find("system-out").text

    def test_execution_failures_are_errors(self, passing_result):
        passing_result.violations.append(execution_failure_violation("database", "Spatial Query", "boom"))
        passing_result.summary.failed_tests = 1

        suite = ET.fromstring(render_junit(passing_result))

        assert suite.get("errors") == "1"
        error = suite.find("testcase/error")
        assert error.get("message") == "Test execution failed: boom"


@pytest.mark.unit
class TestJson:
    def test_round_trips_result(self, failing_result):
        payload = json.loads(render_json(failing_result))

        assert payload["name"] == "Release <Gate>"
        assert payload["status"] == "passed"
        assert payload["baseline"]["version"] == "1.0.0"
        assert len(payload["comparisons"]) == 2
        assert payload["violations"][0]["severity"] == "high"

    def test_infinite_changes_become_null(self, unbounded_result):
        payload = json.loads(render_json(unbounded_result))

        (chunk,) = [c for c in payload["comparisons"] if c["metric"] == "bundle_chunk_lazy"]
        assert chunk["change_percent"] is None
        assert chunk["status"] == "fail"


@pytest.mark.unit
class TestTemplates:
    def test_markdown(self, failing_result):
        text = render_markdown(failing_result)

        assert text.startswith("# Performance Regression Report: Release <Gate>")
        assert "**Status:** PASSED" in text
        assert "| /api/emergency_p95_response_time | 300.00 | 450.00 | +50.00% | 500.00 / 20% | FAIL |" in text
        assert "- **HIGH** `/api/emergency_p95_response_time`" in text
        assert "## Recommendations" in text

    def test_markdown_without_comparisons(self, passing_result):
        text = render_markdown(passing_result)

        assert "No comparisons were made." in text
        assert "No violations." in text
        assert "## Recommendations" not in text

    def test_markdown_infinite_change(self, unbounded_result):
        assert "+inf%" in render_markdown(unbounded_result)

    def test_html_is_escaped(self, failing_result):
        html = render_html(failing_result)

        assert html.lstrip().startswith("<!DOCTYPE html>")
        assert "Release &lt;Gate&gt;" in html
        assert "Release <Gate>" not in html

    def test_load_markdown(self):
        text = render_load_markdown(LOAD_REPORT)

        assert text.startswith("# Load Test Report: Smoke")
        assert "**Status:** COMPLETED" in text
        assert "| GET /api/items | 10 | 1 | 3.00 |" in text
        assert "- **CRITICAL** api: High error rate" in text
        assert "- Investigate" in text


@pytest.mark.unit
class TestWriting:
    def test_write_reports(self, failing_result, tmp_path):
        paths = write_reports(failing_result, tmp_path, ["junit", "json", "html", "markdown", "pdf"])

        stem = f"release-gate-{failing_result.test_id}"
        assert {fmt: p.name for fmt, p in paths.items()} == {
            "junit": f"{stem}.xml",
            "json": f"{stem}.json",
            "html": f"{stem}.html",
            "markdown": f"{stem}.md",
        }
        assert all(p.exists() for p in paths.values())
        assert not list(tmp_path.glob(".*.tmp"))

    def test_write_load_report(self, tmp_path):
        summary = {**LOAD_REPORT["summary"], "error_rate": float("nan")}
        report = {**LOAD_REPORT, "test_id": "load-9", "name": "Peak Load", "summary": summary}

        paths = write_load_report(report, tmp_path)

        assert paths["json"].name == "peak-load-load-9.json"
        assert json.loads(paths["json"].read_text(encoding="utf-8"))["summary"]["error_rate"] is None
        assert "# Load Test Report: Peak Load" in paths["markdown"].read_text(encoding="utf-8")
