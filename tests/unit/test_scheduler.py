"""
Tests for the ramp scheduler lifecycle and periodic analysis.
"""

import asyncio
import random
import time
from typing import List

import pytest

from surgecore.config import AnalysisConfig
from surgecore.engine.dispatcher import RequestDispatcher
from surgecore.engine.scheduler import RampScheduler
from surgecore.engine.users import VirtualUserFactory
from surgecore.metrics.collector import MetricsCollector
from surgecore.notifications import AlertNotifier
from surgecore.protocols import AlertEvent, RequestSample, TestStatus
from tests.conftest import fast_engine, make_definition
from tests.helpers.mock_target import MockTarget


class RecordingSink:
    def __init__(self) -> None:
        self.events: List[AlertEvent] = []

    async def emit(self, event: AlertEvent) -> None:
        self.events.append(event)


class CrashingDispatcher(RequestDispatcher):
    async def run_user(self, user, stop):
        raise RuntimeError("user loop exploded")


class IssueLoggingDispatcher(RequestDispatcher):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.issued: List[float] = []

    async def dispatch(self, user, endpoint, delay_ms, issued_at=None):
        self.issued.append(issued_at)
        return await super().dispatch(user, endpoint, delay_ms, issued_at)


def build(definition, target=None, *, dispatcher_cls=RequestDispatcher, notifier=None, **engine):
    config = fast_engine(**engine)
    collector = MetricsCollector("t-sched", definition.name, definition.target_concurrency, seed=1)
    dispatcher = dispatcher_cls(definition, collector, target or MockTarget(latency=0.001), config)
    factory = VirtualUserFactory(definition, random.Random(1))
    return RampScheduler(
        "t-sched",
        definition,
        collector,
        dispatcher,
        factory,
        config=config,
        analysis=AnalysisConfig(),
        notifier=notifier,
    )


@pytest.mark.unit
class TestLifecycle:
    @pytest.mark.asyncio
    async def test_runs_to_completion(self):
        definition = make_definition(target_concurrency=4, duration=0.3)
        scheduler = build(definition)

        metrics = await asyncio.wait_for(scheduler.run(), timeout=10)

        assert metrics.status is TestStatus.COMPLETED
        assert metrics.total > 0
        assert metrics.total == metrics.successful + metrics.failed
        assert metrics.concurrency.peak == 4
        assert metrics.concurrency.current == 0
        assert scheduler.active_users == 0
        assert scheduler.collector.frozen

    @pytest.mark.asyncio
    async def test_ramp_up_releases_users_gradually(self):
        definition = make_definition(target_concurrency=4, ramp_up=0.4, duration=0.1)
        scheduler = build(definition)

        task = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.05)
        early = scheduler.factory.created
        metrics = await asyncio.wait_for(task, timeout=10)

        assert early < 4
        assert scheduler.factory.created == 4
        assert metrics.status is TestStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_stop_ends_in_stopped(self):
        definition = make_definition(duration=30)
        scheduler = build(definition)

        task = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.1)
        scheduler.stop()
        metrics = await asyncio.wait_for(task, timeout=10)

        assert metrics.status is TestStatus.STOPPED
        assert metrics.elapsed_seconds < 10
        assert metrics.concurrency.current == 0

    @pytest.mark.asyncio
    async def test_no_requests_issued_after_stop(self):
        definition = make_definition(
            target_concurrency=3, duration=30, user_behavior={"think_time": {"min": 0.001, "max": 0.005}}
        )
        scheduler = build(definition, dispatcher_cls=IssueLoggingDispatcher)

        task = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.1)
        stopped_at = time.time()
        scheduler.stop()
        metrics = await asyncio.wait_for(task, timeout=10)

        issued = scheduler.dispatcher.issued
        assert issued
        assert max(issued) <= stopped_at
        assert metrics.status is TestStatus.STOPPED

    @pytest.mark.asyncio
    async def test_stop_after_finish_is_a_no_op(self):
        scheduler = build(make_definition(duration=0.05))
        await asyncio.wait_for(scheduler.run(), timeout=10)

        scheduler.stop()

        assert scheduler.status is TestStatus.COMPLETED
        assert not scheduler.stop_requested

    @pytest.mark.asyncio
    async def test_user_crash_fails_the_test(self):
        scheduler = build(make_definition(duration=5), dispatcher_cls=CrashingDispatcher)

        metrics = await asyncio.wait_for(scheduler.run(), timeout=10)

        assert metrics.status is TestStatus.FAILED
        assert "user loop exploded" in metrics.failure_reason

    @pytest.mark.asyncio
    async def test_samples_after_stop_are_discarded(self):
        scheduler = build(make_definition(duration=0.05))
        metrics = await asyncio.wait_for(scheduler.run(), timeout=10)

        late = RequestSample(
            endpoint="GET /api/items", user_id="late", region="default", issued_at=0.0, latency_ms=1.0, success=True
        )
        assert scheduler.collector.record(late) is False
        assert scheduler.collector.snapshot().total == metrics.total

    @pytest.mark.asyncio
    async def test_replacement_keeps_population_at_target(self):
        definition = make_definition(
            target_concurrency=2,
            duration=0.4,
            user_behavior={
                "think_time": {"min": 0.005, "max": 0.01},
                "session_duration": {"min": 0.05, "max": 0.05},
            },
        )
        scheduler = build(definition, replace_terminated_users=True)

        metrics = await asyncio.wait_for(scheduler.run(), timeout=10)

        assert scheduler.factory.created > 2
        assert metrics.concurrency.peak <= 2

    @pytest.mark.asyncio
    async def test_users_finishing_early_end_steady_state(self):
        definition = make_definition(
            duration=30,
            user_behavior={
                "think_time": {"min": 0.005, "max": 0.01},
                "session_duration": {"min": 0.05, "max": 0.05},
            },
        )
        metrics = await asyncio.wait_for(build(definition).run(), timeout=10)

        assert metrics.status is TestStatus.COMPLETED
        assert metrics.elapsed_seconds < 10


@pytest.mark.unit
class TestPeriodicChecks:
    @pytest.mark.asyncio
    async def test_target_alerts_are_sent_once_per_category(self):
        sink = RecordingSink()
        definition = make_definition(
            alerting={"enabled": True, "channels": ["console"]},
            performance_targets={"response_time": {"p95": 5}},
        )
        scheduler = build(definition, notifier=AlertNotifier([sink]))
        for i in range(10):
            scheduler.collector.record(
                RequestSample(
                    endpoint="GET /api/items",
                    user_id=f"vu-{i}",
                    region="default",
                    issued_at=0.0,
                    latency_ms=50.0,
                    success=True,
                )
            )

        await scheduler.check()
        await scheduler.check()

        assert [e.category for e in sink.events] == ["response_time"]
        assert sink.events[0].test_id == "t-sched"
        assert sink.events[0].data == {"current": 50.0, "target": 5.0}

    @pytest.mark.asyncio
    async def test_disabled_alerting_sends_nothing(self):
        sink = RecordingSink()
        definition = make_definition(performance_targets={"response_time": {"p95": 5}})
        scheduler = build(definition, notifier=AlertNotifier([sink]))
        scheduler.collector.record(
            RequestSample(
                endpoint="GET /api/items", user_id="vu", region="default", issued_at=0.0, latency_ms=50.0, success=True
            )
        )

        await scheduler.check()

        assert sink.events == []

    @pytest.mark.asyncio
    async def test_check_publishes_bottlenecks(self):
        scheduler = build(make_definition())
        for i in range(10):
            scheduler.collector.record(
                RequestSample(
                    endpoint="GET /api/items",
                    user_id=f"vu-{i}",
                    region="default",
                    issued_at=0.0,
                    latency_ms=2000.0,
                    success=True,
                )
            )

        metrics = await scheduler.check()

        assert [b.category.value for b in metrics.bottlenecks] == ["network"]
