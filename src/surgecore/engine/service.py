"""
Control surface for load tests: start, stop, status and listing.

One LoadTestService is created explicitly by whoever hosts it (CLI, web app,
tests) and holds the registry of runs it started.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, ClassVar, Dict, List, Optional
from uuid import uuid4

import structlog

from surgecore.analysis.bottlenecks import load_recommendations
from surgecore.config.config import Config
from surgecore.definition import TestDefinition
from surgecore.engine.dispatcher import RequestDispatcher
from surgecore.engine.http_client import HttpExecutor
from surgecore.engine.scheduler import RampScheduler
from surgecore.engine.users import VirtualUserFactory
from surgecore.exceptions import TestNotFoundError
from surgecore.metrics.collector import MetricsCollector, TestMetrics
from surgecore.metrics.resources import ResourceSampler
from surgecore.notifications import AlertNotifier, build_sinks
from surgecore.protocols import RequestExecutor

logger = structlog.get_logger(__name__)


@dataclass
class TestRun:
    """Bookkeeping for one started test."""

    __test__: ClassVar[bool] = False

    test_id: str
    definition: TestDefinition
    collector: MetricsCollector
    scheduler: RampScheduler
    task: "asyncio.Task[TestMetrics]"
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[float] = None

    @property
    def done(self) -> bool:
        return self.task.done()


class LoadTestService:
    """Starts and tracks load tests against one request executor."""

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        executor: Optional[RequestExecutor] = None,
        notifier: Optional[AlertNotifier] = None,
        executor_factory: Optional[Callable[[], RequestExecutor]] = None,
        sample_resources: bool = True,
    ) -> None:
        self.config = config or Config()
        self._executor = executor
        self._executor_factory = executor_factory
        self._owns_executor = False
        self._notifier = notifier
        self._sample_resources = sample_resources
        self._runs: Dict[str, TestRun] = {}
        self._seed_rng = random.Random(self.config.engine.seed)
        self.logger = structlog.get_logger(self.__class__.__name__)

    async def __aenter__(self) -> "LoadTestService":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _get_executor(self) -> RequestExecutor:
        if self._executor is None:
            if self._executor_factory is not None:
                self._executor = self._executor_factory()
            else:
                http = HttpExecutor.from_config(self.config.engine)
                await http.initialize()
                self._executor = http
                self._owns_executor = True
        return self._executor

    def _notifier_for(self, definition: TestDefinition) -> Optional[AlertNotifier]:
        if self._notifier is not None:
            return self._notifier
        alerting = definition.alerting
        if not alerting.enabled:
            return None
        return AlertNotifier(
            build_sinks(
                alerting.channels,
                file_path=alerting.file_path,
                webhook_url=alerting.webhook_url,
                webhook_timeout=self.config.notifications.webhook_timeout,
            )
        )

    def _get(self, test_id: str) -> TestRun:
        run = self._runs.get(test_id)
        if run is None:
            raise TestNotFoundError(test_id)
        return run

    # --- control operations --------------------------------------------------

    async def start(self, definition: TestDefinition) -> str:
        """Validate and launch a test. Returns its id once it is running in the background."""
        engine = self.config.engine
        test_id = f"load-{uuid4().hex[:12]}"
        seed = self._seed_rng.getrandbits(32) if engine.seed is not None else None

        collector = MetricsCollector(
            test_id,
            definition.name,
            definition.target_concurrency,
            shards=engine.metric_shards,
            reservoir_size=engine.reservoir_size,
            endpoint_reservoir_size=engine.endpoint_reservoir_size,
            seed=seed,
        )
        factory = VirtualUserFactory(definition, random.Random(seed))
        dispatcher = RequestDispatcher(definition, collector, await self._get_executor(), engine)
        notifier = self._notifier_for(definition)
        scheduler = RampScheduler(
            test_id,
            definition,
            collector,
            dispatcher,
            factory,
            config=engine,
            analysis=self.config.analysis,
            notifier=notifier,
            sampler=ResourceSampler() if self._sample_resources else None,
        )

        task = asyncio.create_task(self._run(test_id, scheduler, notifier), name=f"loadtest-{test_id}")
        self._runs[test_id] = TestRun(test_id, definition, collector, scheduler, task)
        self.logger.info(
            "Load test started",
            test_id=test_id,
            name=definition.name,
            scenario=definition.scenario,
            target_concurrency=definition.target_concurrency,
        )
        return test_id

    async def _run(self, test_id: str, scheduler: RampScheduler, notifier: Optional[AlertNotifier]) -> TestMetrics:
        try:
            return await scheduler.run()
        finally:
            run = self._runs.get(test_id)
            if run is not None:
                run.finished_at = time.monotonic()
            if notifier is not None and notifier is not self._notifier:
                await notifier.close()

    async def stop(self, test_id: str) -> TestMetrics:
        """Stop a test and return its frozen metrics. Stopping a finished test is a no-op."""
        run = self._get(test_id)
        run.scheduler.stop()
        return await self.wait(test_id)

    async def wait(self, test_id: str, timeout: Optional[float] = None) -> TestMetrics:
        run = self._get(test_id)
        async with asyncio.timeout(timeout):
            await asyncio.wait([run.task])
        return run.collector.snapshot()

    def status(self, test_id: str) -> TestMetrics:
        return self._get(test_id).collector.snapshot()

    def definition(self, test_id: str) -> TestDefinition:
        return self._get(test_id).definition

    def list_active(self) -> List[TestMetrics]:
        return [run.collector.snapshot() for run in self._runs.values() if not run.done]

    def list_all(self) -> List[TestMetrics]:
        return [run.collector.snapshot() for run in self._runs.values()]

    def summary(self) -> Dict[str, Any]:
        """Aggregate view across all running tests."""
        everything = self.list_all()
        active = [m for m in everything if not m.status.is_terminal]
        by_status = {status: 0 for status in ("running", "completed", "failed", "stopped")}
        for m in everything:
            key = m.status.value if m.status.is_terminal else "running"
            by_status[key] += 1
        return {
            "active_tests": len(active),
            "total_tests": len(everything),
            **by_status,
            "target_users": sum(m.concurrency.target for m in active),
            "peak_concurrency": max((m.concurrency.peak for m in everything), default=0),
            "active_users": sum(m.concurrency.current for m in active),
            "requests": sum(m.total for m in active),
            "throughput": sum(m.throughput for m in active),
            "tests": [
                {
                    "test_id": m.test_id,
                    "name": m.name,
                    "status": m.status.value,
                    "active_users": m.concurrency.current,
                    "total_requests": m.total,
                    "error_rate": m.error_rate,
                }
                for m in active
            ],
        }

    def report(self, test_id: str) -> Dict[str, Any]:
        """Load test report: metrics, targets, bottlenecks and recommendations."""
        run = self._get(test_id)
        metrics = run.collector.snapshot()
        targets = run.definition.performance_targets
        data = metrics.to_dict()
        return {
            "test_id": test_id,
            "name": run.definition.name,
            "scenario": run.definition.scenario,
            "status": metrics.status.value,
            "configuration": run.definition.model_dump(mode="json", by_alias=True),
            "summary": {
                "duration": metrics.elapsed_seconds,
                "total_requests": metrics.total,
                "successful_requests": metrics.successful,
                "failed_requests": metrics.failed,
                "error_rate": metrics.error_rate,
                "availability": metrics.availability,
                "peak_concurrency": metrics.concurrency.peak,
            },
            "performance": {
                "response_times": data["latency"],
                "throughput": metrics.throughput,
                "bytes_transferred": metrics.bytes_transferred,
                "errors": data["errors"],
                "endpoints": data["endpoints"],
            },
            "geographic": data["regions"],
            "resources": data["resources"],
            "targets": targets.model_dump(mode="json"),
            "bottlenecks": [b.to_dict() for b in metrics.bottlenecks],
            "recommendations": load_recommendations(metrics, targets),
            "failure_reason": metrics.failure_reason,
        }

    def purge_finished(self, older_than: float = 0.0) -> int:
        """Forget finished tests that ended more than `older_than` seconds ago."""
        now = time.monotonic()
        expired = [
            test_id
            for test_id, run in self._runs.items()
            if run.done and run.finished_at is not None and now - run.finished_at >= older_than
        ]
        for test_id in expired:
            del self._runs[test_id]
        if expired:
            self.logger.debug("Purged finished tests", count=len(expired))
        return len(expired)

    async def close(self) -> None:
        """Stop every running test and release the executor."""
        running = [run for run in self._runs.values() if not run.done]
        for run in running:
            run.scheduler.stop()
        if running:
            await asyncio.wait([run.task for run in running])
        if self._owns_executor and isinstance(self._executor, HttpExecutor):
            await self._executor.close()
            self._executor = None
            self._owns_executor = False
