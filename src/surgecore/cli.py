"""Command-line interface for surgecore."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import click
import structlog
import uvicorn
import yaml
from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from surgecore import __version__
from surgecore.config import Config
from surgecore.container import DependencyContainer
from surgecore.definition import TestDefinition, load_definition
from surgecore.exceptions import BaselineError, ConfigurationError
from surgecore.metrics.collector import TestMetrics
from surgecore.protocols import TestStatus
from surgecore.regression import (
    DEFAULT_BASELINE_VERSION,
    BaselineMetrics,
    ComparisonStatus,
    RegressionConfig,
    RegressionResult,
    ci_default_config,
    default_baseline,
)
from surgecore.reporting import write_load_report, write_reports
from surgecore.scenarios import get_scenario, list_scenarios

console = Console()
logger = structlog.get_logger(__name__)

STATUS_STYLES = {
    TestStatus.COMPLETED: "green",
    TestStatus.STOPPED: "yellow",
    TestStatus.FAILED: "red",
}


def _load_config(ctx: click.Context) -> Config:
    config_path: Optional[Path] = ctx.obj["config_path"]
    config = Config.from_yaml(config_path) if config_path else Config()
    if ctx.obj.get("log_level"):
        config.monitoring.log_level = ctx.obj["log_level"]
    return config


def _container(ctx: click.Context, **kwargs: Any) -> DependencyContainer:
    return DependencyContainer(ctx.obj["config_path"], config=_load_config(ctx), **kwargs)


def _fail(message: str) -> None:
    console.print(f"[red]❌ {message}[/red]")
    sys.exit(1)


def _read_json(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", type=click.Path(exists=True, dir_okay=False), help="Configuration file path")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level (overrides the configuration file)",
)
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], log_level: Optional[str]) -> None:
    """surgecore - Synthetic load generation and performance regression engine."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = Path(config) if config else None
    ctx.obj["log_level"] = log_level


# ============================================================================
# Load tests
# ============================================================================


def _status_table(metrics: TestMetrics) -> Table:
    table = Table(title=f"Load Test {metrics.name}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="magenta")
    table.add_row("Test ID", metrics.test_id)
    table.add_row("Status", metrics.status.value)
    table.add_row("Elapsed", f"{metrics.elapsed_seconds:.1f}s")
    table.add_row("Users", f"{metrics.concurrency.current} / {metrics.concurrency.target}")
    table.add_row("Peak users", str(metrics.concurrency.peak))
    table.add_row("Requests", f"{metrics.total} ({metrics.failed} failed)")
    table.add_row("Throughput", f"{metrics.throughput:.1f} req/s")
    table.add_row("Error rate", f"{metrics.error_rate:.2f}%")
    latency = metrics.latency
    table.add_row("p50 / p95 / p99", f"{latency.p50:.0f} / {latency.p95:.0f} / {latency.p99:.0f} ms")
    return table


def _print_load_report(report: Dict[str, Any]) -> None:
    summary = report["summary"]
    times = report["performance"]["response_times"]
    status = TestStatus(report["status"])
    style = STATUS_STYLES.get(status, "white")
    console.print(
        Panel(
            f"Status: [{style}]{status.value}[/{style}]\n"
            f"Duration: {summary['duration']:.2f}s\n"
            f"Requests: {summary['total_requests']} "
            f"({summary['successful_requests']} ok, {summary['failed_requests']} failed)\n"
            f"Error rate: {summary['error_rate']:.2f}%  Availability: {summary['availability']:.2f}%\n"
            f"Response times: p50 {times['p50']:.0f} ms, p95 {times['p95']:.0f} ms, p99 {times['p99']:.0f} ms\n"
            f"Peak concurrency: {summary['peak_concurrency']}",
            title=f"Results - {report['name']}",
            border_style=style,
        )
    )
    if report["failure_reason"]:
        console.print(f"[red]Failure: {report['failure_reason']}[/red]")
    for bottleneck in report["bottlenecks"]:
        console.print(
            f"[yellow]Bottleneck ({bottleneck['severity']}) {bottleneck['category']}: "
            f"{bottleneck['description']}[/yellow]"
        )
    for recommendation in report["recommendations"]:
        console.print(f"  • {recommendation}")


async def _execute(ctx: click.Context, definition: TestDefinition, output: Optional[str]) -> Dict[str, Any]:
    container = _container(ctx, handle_signals=True)
    async with container.lifecycle():
        service = await container.get_service()
        test_id = await service.start(definition)
        with Live(_status_table(service.status(test_id)), console=console, refresh_per_second=2) as live:
            while True:
                try:
                    await service.wait(test_id, timeout=0.5)
                    break
                except TimeoutError:
                    live.update(_status_table(service.status(test_id)))
            live.update(_status_table(service.status(test_id)))
        report = service.report(test_id)

    if output:
        paths = write_load_report(report, Path(output))
        console.print(f"[green]Report saved to {paths['markdown']}[/green]")
    return report


def _run_definition(ctx: click.Context, definition: TestDefinition, output: Optional[str], as_json: bool) -> None:
    console.print(
        Panel.fit(
            f"[bold blue]{definition.name}[/bold blue]\n"
            f"Users: {definition.target_concurrency}\n"
            f"Ramp up / steady / ramp down: {definition.ramp_up:g}s / {definition.duration:g}s / "
            f"{definition.ramp_down:g}s\n"
            f"Endpoints: {len(definition.endpoints)}",
            title="Starting Load Test",
        )
    )
    report = asyncio.run(_execute(ctx, definition, output))
    if as_json:
        click.echo(json.dumps(report, indent=2, default=str))
    else:
        _print_load_report(report)
    if report["status"] == TestStatus.FAILED.value:
        sys.exit(1)


@cli.command()
@click.argument("definition_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--output", "-o", type=click.Path(file_okay=False), help="Directory for the JSON and Markdown report")
@click.option("--json", "as_json", is_flag=True, help="Print the full report as JSON")
@click.pass_context
def run(ctx: click.Context, definition_file: str, output: Optional[str], as_json: bool) -> None:
    """Run the load test described in a YAML or JSON file."""
    try:
        definition = load_definition(Path(definition_file))
    except ConfigurationError as e:
        _fail(str(e))
    _run_definition(ctx, definition, output, as_json)


@cli.command()
@click.argument("name", required=False)
@click.option("--concurrency", type=int, help="Override the target number of virtual users")
@click.option("--duration", type=float, help="Override the steady-state duration in seconds")
@click.option("--region", help="Send all users from a single region")
@click.option("--output", "-o", type=click.Path(file_okay=False), help="Directory for the JSON and Markdown report")
@click.option("--json", "as_json", is_flag=True, help="Print the full report as JSON")
@click.pass_context
def scenario(
    ctx: click.Context,
    name: Optional[str],
    concurrency: Optional[int],
    duration: Optional[float],
    region: Optional[str],
    output: Optional[str],
    as_json: bool,
) -> None:
    """Run a predefined scenario, or list them when no name is given."""
    if name is None:
        table = Table(title="Scenarios")
        table.add_column("Name", style="cyan")
        table.add_column("Users", style="magenta")
        table.add_column("Duration", style="magenta")
        for scenario_name in list_scenarios():
            definition = get_scenario(scenario_name)
            table.add_row(scenario_name, str(definition.target_concurrency), f"{definition.total_seconds:g}s")
        console.print(table)
        return

    try:
        definition = get_scenario(name, concurrency=concurrency, duration=duration, geographic_focus=region)
    except ConfigurationError as e:
        _fail(str(e))
    _run_definition(ctx, definition, output, as_json)


# ============================================================================
# Regression
# ============================================================================


def _load_regression_config(path: Optional[str]) -> RegressionConfig:
    if path is None:
        return ci_default_config()
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) if not path.endswith(".json") else json.load(f)
    return RegressionConfig.model_validate(data or {})


def _print_result(result: RegressionResult) -> None:
    table = Table(title=f"Regression - {result.config.name}")
    table.add_column("Metric", style="cyan")
    table.add_column("Baseline", justify="right")
    table.add_column("Current", justify="right")
    table.add_column("Change", justify="right")
    table.add_column("Status")
    styles = {ComparisonStatus.PASS: "green", ComparisonStatus.WARN: "yellow", ComparisonStatus.FAIL: "red"}
    for c in result.comparisons:
        style = styles[c.status]
        table.add_row(
            c.metric,
            f"{c.baseline:.2f}",
            f"{c.current:.2f}",
            f"{c.change_percent:+.2f}%",
            f"[{style}]{c.status.value.upper()}[/{style}]",
        )
    console.print(table)

    for violation in result.violations:
        console.print(f"[red]{violation.severity.value.upper()}[/red] {violation.metric}: {violation.description}")
    for recommendation in result.recommendations:
        console.print(f"  • {recommendation}")

    if result.passed:
        console.print(f"[green]✅ Regression check passed ({len(result.comparisons)} comparisons)[/green]")
    else:
        console.print(
            f"[red]❌ Regression check failed: {len(result.violations)} violations, "
            f"{result.summary.critical_failures} critical[/red]"
        )
    for fmt, path in result.artifacts.items():
        console.print(f"[blue]{fmt} report: {path}[/blue]")


@cli.command()
@click.argument("config_file", required=False, type=click.Path(exists=True, dir_okay=False))
@click.option("--json", "as_json", is_flag=True, help="Print the full result as JSON")
@click.pass_context
def regress(ctx: click.Context, config_file: Optional[str], as_json: bool) -> None:
    """Run a regression configuration (the CI gate when no file is given)."""
    try:
        regression_config = _load_regression_config(config_file)
    except (OSError, ValueError, yaml.YAMLError) as e:
        _fail(f"Invalid regression configuration: {e}")

    async def _regress() -> RegressionResult:
        container = _container(ctx, handle_signals=True)
        async with container.lifecycle():
            runner = await container.get_runner()
            return await runner.run(regression_config)

    result = asyncio.run(_regress())
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        _print_result(result)
    if not result.passed:
        sys.exit(1)


@cli.command()
@click.argument("current_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--baseline", "baseline_version", help="Baseline version (latest when omitted)")
@click.option("--regression-config", type=click.Path(exists=True, dir_okay=False), help="Thresholds and enforcement")
@click.option("--report-dir", type=click.Path(file_okay=False), help="Write reports in the configured formats")
@click.pass_context
def compare(
    ctx: click.Context,
    current_file: str,
    baseline_version: Optional[str],
    regression_config: Optional[str],
    report_dir: Optional[str],
) -> None:
    """Compare measured metrics (JSON) against a stored baseline."""
    try:
        current = BaselineMetrics.model_validate(_read_json(current_file))
        config = (
            _load_regression_config(regression_config)
            if regression_config
            else RegressionConfig(name=f"Compare {Path(current_file).name}")
        )
    except (OSError, ValueError, yaml.YAMLError) as e:
        _fail(f"Invalid input: {e}")
    if baseline_version:
        config = config.model_copy(update={"baseline_version": baseline_version})

    async def _compare() -> Tuple[RegressionResult, List[str]]:
        container = _container(ctx)
        async with container.lifecycle():
            runner = await container.get_runner()
            if config.baseline_version and runner.get_baseline(config.baseline_version) is None:
                _fail(f"Baseline {config.baseline_version} not found")
            return runner.compare_metrics(config, current), runner.report_formats(config)

    result, runner_formats = asyncio.run(_compare())
    if report_dir:
        paths = write_reports(result, Path(report_dir), runner_formats)
        result.artifacts.update({fmt: str(path) for fmt, path in paths.items()})
    _print_result(result)
    if not result.passed:
        sys.exit(1)


# ============================================================================
# Baselines
# ============================================================================


@cli.group()
def baseline() -> None:
    """Manage stored performance baselines."""


@baseline.command("list")
@click.pass_context
def baseline_list(ctx: click.Context) -> None:
    """List stored baselines."""

    async def _list() -> None:
        container = _container(ctx)
        async with container.lifecycle():
            store = await container.get_store()
            versions = store.list_versions()
            if not versions:
                console.print("[yellow]No baselines stored[/yellow]")
                return
            latest = store.get_baseline()
            table = Table(title="Baselines")
            table.add_column("Version", style="cyan")
            table.add_column("Timestamp")
            table.add_column("Environment")
            for version in versions:
                stored = store.get_baseline(version)
                if stored is None:
                    continue
                marker = " (latest)" if latest is not None and latest.version == version else ""
                table.add_row(
                    f"{version}{marker}",
                    stored.timestamp.isoformat(),
                    f"{stored.environment.cpu}, {stored.environment.memory}",
                )
            console.print(table)

    asyncio.run(_list())


@baseline.command("show")
@click.argument("version", required=False)
@click.pass_context
def baseline_show(ctx: click.Context, version: Optional[str]) -> None:
    """Print a baseline as JSON (the latest when no version is given)."""

    async def _show() -> None:
        container = _container(ctx)
        async with container.lifecycle():
            store = await container.get_store()
            stored = store.get_baseline(version)
            if stored is None:
                _fail(f"Baseline {version or '(latest)'} not found")
            click.echo(json.dumps(stored.model_dump(mode="json"), indent=2))

    asyncio.run(_show())


@baseline.command("seed")
@click.pass_context
def baseline_seed(ctx: click.Context) -> None:
    """Store the built-in reference baseline."""

    async def _seed() -> None:
        container = _container(ctx)
        async with container.lifecycle():
            store = await container.get_store()
            try:
                store.put_baseline(DEFAULT_BASELINE_VERSION, default_baseline())
            except BaselineError as e:
                console.print(f"[yellow]{e}[/yellow]")
                return
            console.print(f"[green]✅ Stored baseline {DEFAULT_BASELINE_VERSION}[/green]")

    asyncio.run(_seed())


@baseline.command("create")
@click.argument("version")
@click.argument("metrics_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def baseline_create(ctx: click.Context, version: str, metrics_file: str) -> None:
    """Store measured metrics (JSON) as a new baseline version."""
    try:
        metrics = BaselineMetrics.model_validate(_read_json(metrics_file))
    except (OSError, ValueError) as e:
        _fail(f"Invalid metrics file: {e}")

    async def _create() -> None:
        container = _container(ctx)
        async with container.lifecycle():
            runner = await container.get_runner()
            try:
                runner.update_baseline(version, metrics)
            except BaselineError as e:
                _fail(str(e))
            console.print(f"[green]✅ Stored baseline {version}[/green]")

    asyncio.run(_create())


@baseline.command("capture")
@click.argument("version")
@click.argument("definition_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def baseline_capture(ctx: click.Context, version: str, definition_file: str) -> None:
    """Run a load test and store its results as a new baseline version."""
    try:
        definition = load_definition(Path(definition_file))
    except ConfigurationError as e:
        _fail(str(e))

    async def _capture() -> None:
        container = _container(ctx, handle_signals=True)
        async with container.lifecycle():
            service = await container.get_service()
            runner = await container.get_runner()
            test_id = await service.start(definition)
            with console.status(f"Running {definition.name}..."):
                metrics = await service.wait(test_id)
            if metrics.status is not TestStatus.COMPLETED or metrics.total == 0:
                _fail(f"Load test did not complete cleanly ({metrics.status.value}), baseline not stored")
            try:
                runner.update_baseline(version, BaselineMetrics.from_load_test(metrics))
            except BaselineError as e:
                _fail(str(e))
            console.print(f"[green]✅ Stored baseline {version} from {metrics.total} requests[/green]")

    asyncio.run(_capture())


# ============================================================================
# Server and configuration
# ============================================================================


@cli.command()
@click.option("--host", default=None, help="Host to bind to")
@click.option("--port", default=None, type=int, help="Port to bind to")
@click.option("--watch", is_flag=True, help="Reload the configuration file when it changes")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int], watch: bool) -> None:
    """Start the HTTP control API."""
    from surgecore.web import create_app

    config = _load_config(ctx)
    host = host or config.web.host
    port = port or config.web.port
    console.print(f"[green]🚀 Starting control API at http://{host}:{port}[/green]")
    container = DependencyContainer(ctx.obj["config_path"], config=config, watch_config=watch)
    uvicorn.run(create_app(container), host=host, port=port, log_level=config.monitoring.log_level.lower())


@cli.command("validate-config")
@click.pass_context
def validate_config(ctx: click.Context) -> None:
    """Validate the configuration file."""
    try:
        config = _load_config(ctx)
    except (OSError, ValueError, yaml.YAMLError) as e:
        _fail(f"Configuration validation failed: {e}")

    table = Table(title="Configuration")
    table.add_column("Section", style="cyan")
    table.add_column("Settings", style="magenta")
    for section in ("engine", "analysis", "baselines", "notifications", "reporting", "monitoring", "web"):
        table.add_row(section, json.dumps(getattr(config, section).model_dump(mode="json"), default=str))
    console.print(table)
    console.print("[green]✅ Configuration is valid![/green]")


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
