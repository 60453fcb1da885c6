"""
Ramp scheduler: decides how many virtual users are active over time.

Lifecycle of one test::

    preparing -> ramping_up -> steady -> ramping_down -> completed
            \\___________\\_________\\____________\\-> stopped | failed

Ramp-up releases users at `target_concurrency / ramp_up` per second. During
steady state users run their own think/request loops until their session ends.
Ramp-down closes admission and lets sessions drain for at most `ramp_down`
seconds before the remaining users are told to stop.
"""

from __future__ import annotations

import asyncio
import time
from typing import Dict, FrozenSet, Optional, Set

import structlog

from surgecore.analysis.bottlenecks import BottleneckDetector, check_performance_targets
from surgecore.config.config import AnalysisConfig, EngineConfig
from surgecore.definition import TestDefinition
from surgecore.engine.dispatcher import RequestDispatcher, wait_for_stop
from surgecore.engine.users import VirtualUserFactory
from surgecore.exceptions import AggregationError
from surgecore.metrics.collector import MetricsCollector, TestMetrics
from surgecore.metrics.resources import ResourceSampler
from surgecore.notifications import AlertNotifier
from surgecore.observability.metrics import gauge, increment
from surgecore.protocols import TestStatus, VirtualUser

_TRANSITIONS: Dict[TestStatus, FrozenSet[TestStatus]] = {
    TestStatus.PREPARING: frozenset({TestStatus.RAMPING_UP}),
    TestStatus.RAMPING_UP: frozenset({TestStatus.STEADY}),
    TestStatus.STEADY: frozenset({TestStatus.RAMPING_DOWN}),
    TestStatus.RAMPING_DOWN: frozenset({TestStatus.COMPLETED}),
}

# Extra time granted to in-flight requests after the stop signal
DRAIN_SLACK_SECONDS = 1.0


class RampScheduler:
    """Owns the virtual users of one test for the duration of its run."""

    def __init__(
        self,
        test_id: str,
        definition: TestDefinition,
        collector: MetricsCollector,
        dispatcher: RequestDispatcher,
        factory: VirtualUserFactory,
        *,
        config: Optional[EngineConfig] = None,
        analysis: Optional[AnalysisConfig] = None,
        notifier: Optional[AlertNotifier] = None,
        sampler: Optional[ResourceSampler] = None,
    ) -> None:
        self.test_id = test_id
        self.definition = definition
        self.collector = collector
        self.dispatcher = dispatcher
        self.factory = factory
        self.config = config or EngineConfig()
        analysis = analysis or AnalysisConfig()
        self.detector = BottleneckDetector(
            analysis.error_rate_threshold, analysis.p95_threshold_ms, analysis.server_error_threshold
        )
        self.notifier = notifier
        self.sampler = sampler
        self.logger = structlog.get_logger(self.__class__.__name__)

        self._tasks: Set[asyncio.Task[None]] = set()
        self._users: Dict[str, VirtualUser] = {}
        self._halt = asyncio.Event()
        self._stop = asyncio.Event()
        self._idle = asyncio.Event()
        self._admitting = True
        self._ramped = False
        self._stop_requested = False
        self._failure: Optional[str] = None
        self._alerted: Set[str] = set()

    # --- state -------------------------------------------------------------

    @property
    def status(self) -> TestStatus:
        return self.collector.status

    @property
    def active_users(self) -> int:
        return len(self._tasks)

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def _transition(self, new: TestStatus) -> bool:
        current = self.status
        if current.is_terminal:
            return False
        if new not in _TRANSITIONS.get(current, frozenset()):
            raise ValueError(f"Illegal status transition {current.value} -> {new.value}")
        self.collector.set_status(new)
        self.logger.info("Test phase changed", test_id=self.test_id, status=new.value)
        return True

    def _fail(self, reason: str) -> None:
        if self.status.is_terminal:
            return
        self._failure = reason
        self.collector.set_status(TestStatus.FAILED, failure_reason=reason)
        self.logger.error("Load test failed", test_id=self.test_id, reason=reason)
        self._halt.set()

    def stop(self) -> None:
        """Request a stop. The run winds down and ends in `stopped`."""
        if self.status.is_terminal or self._stop_requested:
            return
        self._stop_requested = True
        self._admitting = False
        self._halt.set()
        self._stop.set()
        self.logger.info("Stop requested", test_id=self.test_id, active_users=self.active_users)

    # --- run ---------------------------------------------------------------

    async def run(self) -> TestMetrics:
        structlog.contextvars.bind_contextvars(test_id=self.test_id)
        self.logger.info(
            "Load test starting",
            name=self.definition.name,
            target_concurrency=self.definition.target_concurrency,
            capacity=self.dispatcher.capacity,
            total_seconds=self.definition.total_seconds,
        )
        monitor: Optional[asyncio.Task[None]] = None
        try:
            await self.dispatcher.start()
            monitor = asyncio.create_task(self._monitor(), name=f"monitor-{self.test_id}")
            self._transition(TestStatus.RAMPING_UP)
            await self._ramp_up()
            if not self._halt.is_set():
                self._transition(TestStatus.STEADY)
                await self._steady()
            if not self._halt.is_set():
                self._transition(TestStatus.RAMPING_DOWN)
                await self._ramp_down()
        except AggregationError as e:
            self._fail(f"Aggregation error: {e}")
        except asyncio.CancelledError:
            self._stop_requested = True
            raise
        finally:
            self._admitting = False
            if monitor is not None:
                monitor.cancel()
                await asyncio.gather(monitor, return_exceptions=True)
            await self._drain()
            await self.dispatcher.shutdown(cancel=True)
            self.collector.freeze()
            self._finalize()
            structlog.contextvars.unbind_contextvars("test_id")
        return self.collector.snapshot()

    async def _ramp_up(self) -> None:
        target = self.definition.target_concurrency
        interval = self.definition.ramp_up / target if self.definition.ramp_up > 0 else 0.0
        started = time.monotonic()
        for i in range(target):
            delay = started + i * interval - time.monotonic()
            if delay > 0 and await wait_for_stop(self._halt, delay):
                break
            if self._halt.is_set():
                break
            self._launch()
            if interval == 0 and i % 100 == 99:
                await asyncio.sleep(0)
        self._ramped = True
        if not self._tasks:
            self._idle.set()
        self.logger.info("Ramp-up finished", released=self.factory.created, active_users=self.active_users)

    async def _steady(self) -> None:
        if self.definition.duration <= 0:
            return
        finished = await self._wait_any(self.definition.duration, idle=not self.config.replace_terminated_users)
        if finished and self._idle.is_set():
            self.logger.info("All virtual users finished their sessions before steady state ended")

    async def _ramp_down(self) -> None:
        self._admitting = False
        if self._tasks and self.definition.ramp_down > 0:
            await self._wait_any(self.definition.ramp_down, idle=True)

    async def _wait_any(self, timeout: float, *, idle: bool) -> bool:
        """Wait for a halt (or, with `idle`, for every user to finish). True if woken early."""
        waiters = [asyncio.create_task(self._halt.wait())]
        if idle:
            waiters.append(asyncio.create_task(self._idle.wait()))
        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)
        return bool(done)

    async def _drain(self) -> None:
        self._stop.set()
        if not self._tasks:
            return
        endpoints = self.definition.endpoints
        grace = max(
            e.timeout / 1000.0 * (e.retry_count + 1) + self.config.retry_delay_seconds * e.retry_count
            for e in endpoints
        )
        _, pending = await asyncio.wait(set(self._tasks), timeout=grace + DRAIN_SLACK_SECONDS)
        if pending:
            self.logger.warning("Cancelling virtual users that did not stop in time", count=len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    def _finalize(self) -> None:
        try:
            metrics = self.collector.snapshot()
            self.collector.set_bottlenecks(self.detector.analyze(metrics))
        except AggregationError as e:
            self._fail(f"Aggregation error: {e}")
        if self.sampler is not None:
            self.collector.set_resources(self.sampler.sample())

        if self._failure is None and not self.status.is_terminal:
            if self._stop_requested:
                self.collector.set_status(TestStatus.STOPPED)
            else:
                self._transition(TestStatus.COMPLETED)

        status = self.status
        increment("tests_finished_total", labels={"status": status.value})
        gauge("active_virtual_users", 0, labels={"test_id": self.test_id})
        self.logger.info(
            "Load test finished",
            status=status.value,
            users_created=self.factory.created,
            discarded_samples=self.collector.discarded,
        )

    # --- virtual users -----------------------------------------------------

    def _launch(self) -> None:
        user = self.factory.create_user()
        current = self.collector.user_started(user.region)
        gauge("active_virtual_users", current, labels={"test_id": self.test_id})
        self._users[user.user_id] = user
        task = asyncio.create_task(self._run_user(user), name=f"vu-{self.test_id}-{user.user_id}")
        self._tasks.add(task)
        task.add_done_callback(self._on_user_done)

    async def _run_user(self, user: VirtualUser) -> None:
        try:
            await self.dispatcher.run_user(user, self._stop)
        except AggregationError as e:
            self._fail(f"Aggregation error: {e}")
        except Exception as e:
            self.logger.exception("Virtual user crashed", user_id=user.user_id)
            self._fail(f"Virtual user {user.user_id} crashed: {type(e).__name__}: {e}")
        finally:
            self._users.pop(user.user_id, None)
            current = self.collector.user_finished()
            gauge("active_virtual_users", current, labels={"test_id": self.test_id})

    def _on_user_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if (
            self._admitting
            and self.config.replace_terminated_users
            and not self._halt.is_set()
            and not task.cancelled()
            and self.status in (TestStatus.RAMPING_UP, TestStatus.STEADY)
        ):
            self._launch()
        elif self._ramped and not self._tasks:
            self._idle.set()

    # --- periodic analysis -------------------------------------------------

    async def _monitor(self) -> None:
        interval = self.config.metrics_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.check()
            except AggregationError as e:
                self._fail(f"Aggregation error: {e}")
                return

    async def check(self) -> TestMetrics:
        """One analysis pass: bottlenecks, resource sample and target alerts."""
        metrics = self.collector.snapshot()
        self.collector.set_bottlenecks(self.detector.analyze(metrics))
        if self.sampler is not None:
            self.collector.set_resources(self.sampler.sample())
        metrics = self.collector.snapshot()

        alerting = self.definition.alerting
        if alerting.enabled and self.notifier is not None:
            events = check_performance_targets(
                metrics, self.definition.performance_targets, alerting.resource_utilization
            )
            fresh = [event for event in events if event.category not in self._alerted]
            self._alerted.update(event.category for event in fresh)
            await self.notifier.notify_all(fresh)
        return metrics
