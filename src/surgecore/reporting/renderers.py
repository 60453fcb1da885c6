"""
Report projections of a regression result.

JUnit XML, JSON, HTML and Markdown are all rendered from the same in-memory
RegressionResult and never modify it.
"""

from __future__ import annotations

import json
import math
import xml.etree.ElementTree as ET
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

import structlog
from jinja2 import Environment, PackageLoader, select_autoescape

from surgecore.regression.models import ComparisonStatus, RegressionResult
from surgecore.utils.atomic import atomic_write_json, atomic_write_text
from surgecore.utils.slugify import slugify

logger = structlog.get_logger(__name__)

EXTENSIONS = {"junit": "xml", "json": "json", "html": "html", "markdown": "md"}


def _format_number(value: Optional[float], digits: int = 2) -> str:
    if value is None:
        return "-"
    if math.isinf(value):
        return "inf" if value > 0 else "-inf"
    return f"{value:.{digits}f}"


def _format_percentage(value: Optional[float]) -> str:
    if value is None:
        return "-"
    if math.isinf(value):
        return "+inf%" if value > 0 else "-inf%"
    sign = "+" if value > 0 else ""
    return f"{sign}{value:.2f}%"


def _format_threshold(comparison: Any) -> str:
    parts = []
    if comparison.absolute_threshold is not None:
        parts.append(_format_number(comparison.absolute_threshold))
    if comparison.threshold is not None:
        parts.append(f"{comparison.threshold:g}%")
    return " / ".join(parts) or "-"


@lru_cache(maxsize=1)
def _environment() -> Environment:
    env = Environment(
        loader=PackageLoader("surgecore.reporting", "templates"),
        autoescape=select_autoescape(enabled_extensions=("html", "html.j2"), default_for_string=False),
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )
    env.filters["format_number"] = _format_number
    env.filters["format_percentage"] = _format_percentage
    env.filters["format_threshold"] = _format_threshold
    return env


def render_json(result: RegressionResult) -> str:
    return json.dumps(_finite(result.to_dict()), indent=2, default=str)


def render_junit(result: RegressionResult) -> str:
    """One <testcase> per comparison, failing comparisons carry a <failure>."""
    summary = result.summary
    suite = ET.Element(
        "testsuite",
        {
            "name": f"Performance Regression Test - {result.config.name}",
            "tests": str(max(summary.total_tests, len(result.comparisons))),
            "failures": str(sum(1 for c in result.comparisons if c.status is ComparisonStatus.FAIL)),
            "errors": str(summary.failed_tests),
            "skipped": str(summary.skipped_tests),
            "time": f"{result.duration:.3f}",
            "timestamp": result.timestamp.isoformat(),
        },
    )
    for comparison in result.comparisons:
        case = ET.SubElement(
            suite, "testcase", {"classname": comparison.category, "name": comparison.metric, "time": "0"}
        )
        if comparison.status is ComparisonStatus.FAIL:
            failure = ET.SubElement(
                case,
                "failure",
                {
                    "message": (
                        f"Performance threshold exceeded: {_format_number(comparison.current)} "
                        f"({_format_threshold(comparison)})"
                    ),
                    "type": comparison.severity.value,
                },
            )
            failure.text = (
                f"Baseline: {_format_number(comparison.baseline)}, Current: {_format_number(comparison.current)}, "
                f"Change: {_format_percentage(comparison.change_percent)}"
            )
        elif comparison.status is ComparisonStatus.WARN:
            out = ET.SubElement(case, "system-out")
            out.text = f"Warning: change {_format_percentage(comparison.change_percent)}"

    for violation in result.violations:
        if violation.description.startswith("Test execution failed"):
            case = ET.SubElement(suite, "testcase", {"classname": violation.category, "name": violation.metric})
            error = ET.SubElement(case, "error", {"message": violation.description})
            error.text = violation.recommendation

    ET.indent(suite)
    return ET.tostring(suite, encoding="unicode", xml_declaration=True) + "\n"


def _context(result: RegressionResult) -> Dict[str, Any]:
    return {
        "result": result,
        "config": result.config,
        "summary": result.summary,
        "comparisons": result.comparisons,
        "violations": result.violations,
        "recommendations": result.recommendations,
    }


def render_html(result: RegressionResult) -> str:
    return _environment().get_template("report.html.j2").render(**_context(result))


def render_markdown(result: RegressionResult) -> str:
    return _environment().get_template("report.md.j2").render(**_context(result))


def render_load_markdown(report: Mapping[str, Any]) -> str:
    """Human-readable summary of a single load test report."""
    return _environment().get_template("load.md.j2").render(report=report)


RENDERERS: Dict[str, Callable[[RegressionResult], str]] = {
    "junit": render_junit,
    "json": render_json,
    "html": render_html,
    "markdown": render_markdown,
}


def write_reports(result: RegressionResult, output_dir: Path, formats: Iterable[str]) -> Dict[str, Path]:
    """Render and atomically write each requested format. Returns the paths by format."""
    output_dir = Path(output_dir)
    stem = f"{slugify(result.config.name) or 'regression'}-{result.test_id}"
    written: Dict[str, Path] = {}
    for fmt in formats:
        renderer = RENDERERS.get(fmt)
        if renderer is None:
            logger.warning("Unknown report format", format=fmt)
            continue
        path = output_dir / f"{stem}.{EXTENSIONS[fmt]}"
        atomic_write_text(path, renderer(result))
        written[fmt] = path
    logger.info("Reports written", test_id=result.test_id, formats=list(written), directory=str(output_dir))
    return written


def write_load_report(report: Mapping[str, Any], output_dir: Path) -> Dict[str, Path]:
    output_dir = Path(output_dir)
    stem = f"{slugify(str(report.get('name', 'load-test'))) or 'load-test'}-{report['test_id']}"
    json_path = output_dir / f"{stem}.json"
    md_path = output_dir / f"{stem}.md"
    atomic_write_json(json_path, _finite(report))
    atomic_write_text(md_path, render_load_markdown(report))
    return {"json": json_path, "markdown": md_path}


def _finite(value: Any) -> Any:
    """Replace non-finite floats, which JSON cannot represent, with None."""
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, dict):
        return {k: _finite(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_finite(v) for v in value]
    return value
