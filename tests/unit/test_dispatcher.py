"""
Tests for the request dispatcher, worker pools and request classification.
"""

import asyncio
import random

import pytest
import pytest_asyncio

from surgecore.engine.dispatcher import (
    DEFAULT_NETWORK_DELAY_MS,
    CycleResult,
    RequestDispatcher,
    WorkerPool,
    network_delay_ms,
    select_endpoint,
    wait_for_stop,
)
from surgecore.engine.users import VirtualUserFactory
from surgecore.exceptions import CapacityError, ConfigurationError
from surgecore.metrics.collector import MetricsCollector
from surgecore.observability.metrics import METRICS
from surgecore.protocols import CapacityPolicy, ErrorCategory, NetworkClass, UserState
from tests.conftest import fast_engine, make_definition
from tests.helpers.metric_delta import histogram_observes, metric_delta
from tests.helpers.mock_target import MockTarget


def endpoint_definition(**endpoint):
    endpoint.setdefault("url", "/api/items")
    return make_definition(endpoints=[endpoint])


@pytest_asyncio.fixture
async def make_dispatcher():
    """Build started dispatchers and shut them all down after the test."""
    created = []

    async def _make(definition, target, **engine):
        collector = MetricsCollector("t-dispatch", definition.name, definition.target_concurrency, seed=1)
        dispatcher = RequestDispatcher(definition, collector, target, fast_engine(**engine))
        await dispatcher.start()
        created.append(dispatcher)
        user = VirtualUserFactory(definition, random.Random(1)).create_user()
        return dispatcher, collector, user

    yield _make
    for dispatcher in created:
        await dispatcher.shutdown(cancel=True)


@pytest.mark.unit
class TestSelection:
    def test_weighted_endpoint_mix(self):
        definition = make_definition(
            endpoints=[{"url": "/a", "weight": 70}, {"url": "/b", "weight": 30}]
        )
        rng = random.Random(8)
        picks = [select_endpoint(definition.endpoints, rng).url for _ in range(5000)]

        assert picks.count("/a") / len(picks) == pytest.approx(0.7, abs=0.03)

    def test_network_delay_uses_profile_range(self):
        profiles = {"4g": (50.0, 150.0)}
        rng = random.Random(2)
        delays = [network_delay_ms(NetworkClass.FOUR_G, rng, profiles) for _ in range(100)]
        assert all(50.0 <= d <= 150.0 for d in delays)

    def test_network_delay_default_for_unknown_profile(self):
        assert network_delay_ms(NetworkClass.BROADBAND, random.Random(0), {}) == DEFAULT_NETWORK_DELAY_MS


@pytest.mark.unit
class TestWaitForStop:
    @pytest.mark.asyncio
    async def test_returns_early_when_stopped(self):
        stop = asyncio.Event()
        asyncio.get_running_loop().call_later(0.01, stop.set)
        assert await wait_for_stop(stop, 5.0) is True

    @pytest.mark.asyncio
    async def test_times_out(self):
        assert await wait_for_stop(asyncio.Event(), 0.01) is False

    @pytest.mark.asyncio
    async def test_zero_wait(self):
        assert await wait_for_stop(asyncio.Event(), 0) is False


@pytest.mark.unit
class TestRouting:
    def test_url_patterns_pick_sub_pools(self):
        definition = make_definition(
            endpoints=[
                {"url": "/api/alerts/dispatch"},
                {"url": "/api/users/nearby"},
                {"url": "/api/emergency"},
                {"url": "/api/profile"},
            ]
        )
        collector = MetricsCollector("t", "n", 1)
        dispatcher = RequestDispatcher(definition, collector, MockTarget(), fast_engine())

        assert [dispatcher.pool_name(e) for e in definition.endpoints] == [
            "alert",
            "geographic",
            "emergency",
            "general",
        ]
        assert dispatcher.capacity == 2 + 2 + 4 + 4

    def test_only_used_pools_are_created(self):
        dispatcher = RequestDispatcher(make_definition(), MetricsCollector("t", "n", 1), MockTarget(), fast_engine())
        assert set(dispatcher.pools) == {"general"}
        assert dispatcher.capacity == 4

    def test_explicit_pool(self):
        definition = endpoint_definition(url="/api/profile", pool="emergency")
        dispatcher = RequestDispatcher(definition, MetricsCollector("t", "n", 1), MockTarget(), fast_engine())
        assert dispatcher.pool_name(definition.endpoints[0]) == "emergency"

    def test_unknown_explicit_pool(self):
        definition = endpoint_definition(pool="missing")
        with pytest.raises(ConfigurationError, match="unknown worker pool"):
            RequestDispatcher(definition, MetricsCollector("t", "n", 1), MockTarget(), fast_engine())


@pytest.mark.unit
class TestDispatch:
    @pytest.mark.asyncio
    async def test_success_is_recorded(self, make_dispatcher):
        definition = endpoint_definition()
        dispatcher, collector, user = await make_dispatcher(definition, MockTarget(size=64))

        with histogram_observes(METRICS["request_latency_seconds"]):
            sample = await dispatcher.dispatch(user, definition.endpoints[0], 25.0)

        assert sample.success
        assert sample.status_code == 200
        assert sample.bytes_transferred == 64
        assert sample.attempts == 1
        assert sample.latency_ms >= 25.0
        assert sample.endpoint == "GET /api/items"
        assert collector.snapshot().total == 1

    @pytest.mark.asyncio
    async def test_retries_until_success(self, make_dispatcher):
        definition = endpoint_definition(retry_count=2)
        target = MockTarget(fail_first=2)
        dispatcher, collector, user = await make_dispatcher(definition, target)

        sample = await dispatcher.dispatch(user, definition.endpoints[0], 0.0)

        assert sample.success
        assert sample.attempts == 3
        assert len(target.calls) == 3
        # One logical request, one sample
        assert collector.snapshot().total == 1

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, make_dispatcher):
        definition = endpoint_definition(retry_count=1)
        dispatcher, collector, user = await make_dispatcher(definition, MockTarget(fail_first=10))

        sample = await dispatcher.dispatch(user, definition.endpoints[0], 0.0)

        assert not sample.success
        assert sample.error is ErrorCategory.TRANSPORT
        assert sample.attempts == 2
        assert collector.snapshot().errors == {"transport": 1}

    @pytest.mark.asyncio
    async def test_timeout(self, make_dispatcher):
        definition = endpoint_definition(timeout=20, retry_count=1)
        dispatcher, _, user = await make_dispatcher(definition, MockTarget(latency=0.5))

        sample = await dispatcher.dispatch(user, definition.endpoints[0], 0.0)

        assert sample.error is ErrorCategory.TIMEOUT
        assert sample.attempts == 2
        assert sample.latency_ms < 500

    @pytest.mark.asyncio
    async def test_status_mismatch(self, make_dispatcher):
        definition = endpoint_definition(expected_status=201)
        dispatcher, collector, user = await make_dispatcher(definition, MockTarget(status=503))

        sample = await dispatcher.dispatch(user, definition.endpoints[0], 0.0)

        assert not sample.success
        assert sample.error is ErrorCategory.STATUS_MISMATCH
        assert sample.status_code == 503
        assert collector.snapshot().server_errors == 1

    @pytest.mark.asyncio
    async def test_unexpected_executor_error(self, make_dispatcher):
        definition = endpoint_definition()
        dispatcher, _, user = await make_dispatcher(definition, MockTarget(error=ValueError("bad payload")))

        sample = await dispatcher.dispatch(user, definition.endpoints[0], 0.0)

        assert sample.error is ErrorCategory.UNKNOWN

    @pytest.mark.asyncio
    async def test_frozen_collector_keeps_sample_out(self, make_dispatcher):
        definition = endpoint_definition()
        dispatcher, collector, user = await make_dispatcher(definition, MockTarget())
        collector.freeze()

        await dispatcher.dispatch(user, definition.endpoints[0], 0.0)

        assert collector.snapshot().total == 0
        assert collector.discarded == 1


@pytest.mark.unit
class TestCapacity:
    @pytest.mark.asyncio
    async def test_in_flight_requests_bounded_by_pool_size(self, make_dispatcher):
        definition = endpoint_definition()
        target = MockTarget(latency=0.01)
        dispatcher, collector, user = await make_dispatcher(definition, target, worker_pools={"general": 3})

        await asyncio.gather(*(dispatcher.dispatch(user, definition.endpoints[0], 0.0) for _ in range(30)))

        assert target.max_in_flight == 3
        assert collector.snapshot().successful == 30

    @pytest.mark.asyncio
    async def test_reject_policy_records_capacity_exceeded(self, make_dispatcher):
        definition = endpoint_definition()
        dispatcher, collector, user = await make_dispatcher(
            definition,
            MockTarget(latency=0.05),
            worker_pools={"general": 1},
            capacity_policy=CapacityPolicy.REJECT,
        )

        with metric_delta(METRICS["capacity_rejections_total"].labels(pool="general"), 1):
            first, second = await asyncio.gather(
                dispatcher.dispatch(user, definition.endpoints[0], 0.0),
                dispatcher.dispatch(user, definition.endpoints[0], 0.0),
            )

        assert first.success
        assert second.error is ErrorCategory.CAPACITY_EXCEEDED
        assert second.attempts == 0
        assert collector.snapshot().errors == {"capacity_exceeded": 1}

    @pytest.mark.asyncio
    async def test_queue_policy_waits_for_a_worker(self, make_dispatcher):
        definition = endpoint_definition()
        dispatcher, _, user = await make_dispatcher(
            definition, MockTarget(latency=0.02), worker_pools={"general": 1}
        )

        samples = await asyncio.gather(*(dispatcher.dispatch(user, definition.endpoints[0], 0.0) for _ in range(3)))

        assert all(s.success for s in samples)
        # Queue wait is not part of the measured latency
        assert max(s.latency_ms for s in samples) < 60

    @pytest.mark.asyncio
    async def test_full_queue_records_capacity_exceeded(self):
        release = asyncio.Event()

        async def handler(endpoint):
            await release.wait()
            return CycleResult(success=True, status=200, error=None, size=0, attempts=1, elapsed_ms=1.0)

        pool = WorkerPool("general", 1, handler, queue_size=1)
        pool.start()
        endpoint = make_definition().endpoints[0]
        try:
            running = asyncio.create_task(pool.submit(endpoint))
            await asyncio.sleep(0.01)
            queued = asyncio.create_task(pool.submit(endpoint))
            await asyncio.sleep(0.01)
            assert pool.busy == 1

            with metric_delta(METRICS["capacity_rejections_total"].labels(pool="general"), 1):
                with pytest.raises(CapacityError):
                    await pool.submit(endpoint)

            release.set()
            results = await asyncio.wait_for(asyncio.gather(running, queued), timeout=2)
            assert all(r.success for r in results)
            assert pool.outstanding == 0
        finally:
            await pool.shutdown(cancel=True)


@pytest.mark.unit
class TestBehaviourLoop:
    @pytest.mark.asyncio
    async def test_user_loop_stops_on_signal(self, make_dispatcher):
        definition = make_definition(user_behavior={"think_time": {"min": 0.005, "max": 0.01}})
        target = MockTarget()
        dispatcher, collector, user = await make_dispatcher(definition, target)
        stop = asyncio.Event()

        task = asyncio.create_task(dispatcher.run_user(user, stop))
        await asyncio.sleep(0.1)
        stop.set()
        await asyncio.wait_for(task, timeout=2)

        assert user.state is UserState.TERMINATED
        assert user.session.requests > 0
        assert collector.snapshot().total == user.session.requests

    @pytest.mark.asyncio
    async def test_user_loop_ends_with_session(self, make_dispatcher):
        definition = make_definition(
            user_behavior={
                "think_time": {"min": 0.005, "max": 0.005},
                "session_duration": {"min": 0.05, "max": 0.05},
            }
        )
        dispatcher, _, user = await make_dispatcher(definition, MockTarget())

        await asyncio.wait_for(dispatcher.run_user(user, asyncio.Event()), timeout=2)

        assert user.state is UserState.TERMINATED
