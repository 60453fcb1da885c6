"""
Request dispatcher and bounded worker pools.

Virtual users are cheap asyncio tasks; the outbound requests they issue are
executed by a fixed set of worker tasks per sub-pool pulling from a bounded
queue. The number of simultaneous requests therefore never exceeds the sum of
the pool sizes, however many virtual users are active.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from surgecore.config.config import EngineConfig
from surgecore.definition import TestDefinition, TestEndpoint
from surgecore.engine.users import weighted_choice
from surgecore.exceptions import CapacityError, ConfigurationError, RequestError
from surgecore.metrics.collector import MetricsCollector
from surgecore.observability.metrics import gauge, increment, observe
from surgecore.protocols import (
    CapacityPolicy,
    ErrorCategory,
    ExecutorResponse,
    NetworkClass,
    RequestExecutor,
    RequestSample,
    UserState,
    VirtualUser,
)

logger = structlog.get_logger(__name__)

DEFAULT_NETWORK_DELAY_MS = 100.0
GENERAL_POOL = "general"


def select_endpoint(endpoints: Sequence[TestEndpoint], rng: random.Random) -> TestEndpoint:
    """Weighted endpoint draw, deterministic for a seeded rng."""
    return weighted_choice([(endpoint, endpoint.weight) for endpoint in endpoints], rng)


def network_delay_ms(
    network: NetworkClass, rng: random.Random, profiles: Mapping[str, Tuple[float, float]]
) -> float:
    profile = profiles.get(network.value)
    if profile is None:
        return DEFAULT_NETWORK_DELAY_MS
    low, high = profile
    return rng.uniform(low, high)


async def wait_for_stop(stop: asyncio.Event, seconds: float) -> bool:
    """Sleep up to `seconds`, returning True as soon as `stop` is set."""
    if stop.is_set():
        return True
    if seconds <= 0:
        return False
    try:
        async with asyncio.timeout(seconds):
            await stop.wait()
        return True
    except TimeoutError:
        return False


@dataclass(frozen=True)
class CycleResult:
    """Outcome of one request including its retries."""

    success: bool
    status: Optional[int]
    error: Optional[ErrorCategory]
    size: int
    attempts: int
    elapsed_ms: float


@dataclass
class _WorkItem:
    endpoint: TestEndpoint
    future: asyncio.Future[CycleResult]


class WorkerPool:
    """Fixed number of worker tasks consuming a bounded queue."""

    def __init__(
        self,
        name: str,
        size: int,
        handler: Callable[[TestEndpoint], Awaitable[CycleResult]],
        *,
        queue_size: int = 1000,
        policy: CapacityPolicy = CapacityPolicy.QUEUE,
    ) -> None:
        if size <= 0:
            raise ConfigurationError(f"Worker pool '{name}' must have a positive size")
        self.name = name
        self.size = size
        self.policy = policy
        self._handler = handler
        self._queue: asyncio.Queue[Optional[_WorkItem]] = asyncio.Queue(maxsize=queue_size)
        self._workers: List[asyncio.Task[None]] = []
        self._outstanding = 0
        self._busy = 0
        self.logger = structlog.get_logger(self.__class__.__name__)

    @property
    def busy(self) -> int:
        return self._busy

    @property
    def outstanding(self) -> int:
        return self._outstanding

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(f"{self.name}-{i}"), name=f"worker-{self.name}-{i}")
            for i in range(self.size)
        ]

    async def submit(self, endpoint: TestEndpoint) -> CycleResult:
        if self.policy is CapacityPolicy.REJECT and self._outstanding >= self.size:
            increment("capacity_rejections_total", labels={"pool": self.name})
            raise CapacityError(self.name, self.size)

        future: asyncio.Future[CycleResult] = asyncio.get_running_loop().create_future()
        try:
            self._queue.put_nowait(_WorkItem(endpoint, future))
        except asyncio.QueueFull:
            increment("capacity_rejections_total", labels={"pool": self.name})
            self.logger.warning("Worker queue full", pool=self.name, queue_size=self._queue.maxsize)
            raise CapacityError(self.name, self.size) from None
        self._outstanding += 1
        gauge("worker_queue_depth", self._queue.qsize(), labels={"pool": self.name})
        return await future

    async def _worker(self, worker_id: str) -> None:
        while True:
            item = await self._queue.get()
            if item is None:
                self._queue.task_done()
                break
            try:
                if item.future.cancelled():
                    continue
                self._busy += 1
                try:
                    result = await self._handler(item.endpoint)
                except Exception as exc:
                    if not item.future.done():
                        item.future.set_exception(exc)
                else:
                    if not item.future.done():
                        item.future.set_result(result)
                finally:
                    self._busy -= 1
            finally:
                self._outstanding -= 1
                self._queue.task_done()

    async def shutdown(self, *, cancel: bool = False) -> None:
        """Stop all workers. Without `cancel`, queued work is drained first."""
        if not self._workers:
            return
        if cancel:
            for task in self._workers:
                task.cancel()
        else:
            for _ in self._workers:
                await self._queue.put(None)
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        gauge("worker_queue_depth", 0, labels={"pool": self.name})


class RequestDispatcher:
    """Runs virtual-user behaviour loops and executes their requests through the worker pools."""

    def __init__(
        self,
        definition: TestDefinition,
        collector: MetricsCollector,
        executor: RequestExecutor,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self.definition = definition
        self.collector = collector
        self.executor = executor
        self.config = config or EngineConfig()
        self.logger = structlog.get_logger(self.__class__.__name__)

        self._routes: Dict[str, str] = {}
        for endpoint in definition.endpoints:
            self._routes[endpoint.key] = self._route(endpoint)

        self._pools: Dict[str, WorkerPool] = {
            name: WorkerPool(
                name,
                size,
                self._execute,
                queue_size=self.config.queue_size,
                policy=self.config.capacity_policy,
            )
            for name, size in self.config.worker_pools.items()
            if name in set(self._routes.values())
        }

    def _route(self, endpoint: TestEndpoint) -> str:
        if endpoint.pool is not None:
            if endpoint.pool not in self.config.worker_pools:
                raise ConfigurationError(f"Endpoint {endpoint.key} references unknown worker pool '{endpoint.pool}'")
            return endpoint.pool
        for route in self.config.pool_routes:
            if route.pattern in endpoint.url and route.pool in self.config.worker_pools:
                return route.pool
        return GENERAL_POOL

    def pool_name(self, endpoint: TestEndpoint) -> str:
        return self._routes.get(endpoint.key) or self._route(endpoint)

    @property
    def pools(self) -> Dict[str, WorkerPool]:
        return dict(self._pools)

    @property
    def capacity(self) -> int:
        return sum(pool.size for pool in self._pools.values())

    async def start(self) -> None:
        for pool in self._pools.values():
            pool.start()
        self.logger.debug("Worker pools started", pools={n: p.size for n, p in self._pools.items()})

    async def shutdown(self, *, cancel: bool = False) -> None:
        for pool in self._pools.values():
            await pool.shutdown(cancel=cancel)

    # --- request execution ------------------------------------------------

    async def _attempt(self, endpoint: TestEndpoint) -> ExecutorResponse:
        try:
            async with asyncio.timeout(endpoint.timeout / 1000.0):
                response = await self.executor.execute(endpoint)
        except TimeoutError as e:
            raise RequestError(ErrorCategory.TIMEOUT, f"Request timed out after {endpoint.timeout}ms") from e
        except RequestError:
            raise
        except Exception as e:
            raise RequestError(ErrorCategory.UNKNOWN, f"{type(e).__name__}: {e}") from e

        if response.status != endpoint.expected_status:
            raise RequestError(
                ErrorCategory.STATUS_MISMATCH,
                f"Expected status {endpoint.expected_status}, got {response.status}",
                status=response.status,
            )
        return response

    async def _execute(self, endpoint: TestEndpoint) -> CycleResult:
        start = time.perf_counter()
        attempts = 0
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(endpoint.retry_count + 1),
                wait=wait_fixed(self.config.retry_delay_seconds),
                retry=retry_if_exception_type(RequestError),
                reraise=True,
            ):
                with attempt:
                    attempts += 1
                    response = await self._attempt(endpoint)
        except RequestError as e:
            return CycleResult(
                success=False,
                status=e.status,
                error=e.category,
                size=0,
                attempts=attempts,
                elapsed_ms=(time.perf_counter() - start) * 1000.0,
            )
        return CycleResult(
            success=True,
            status=response.status,
            error=None,
            size=response.size,
            attempts=attempts,
            elapsed_ms=(time.perf_counter() - start) * 1000.0,
        )

    async def dispatch(
        self, user: VirtualUser, endpoint: TestEndpoint, delay_ms: float, issued_at: Optional[float] = None
    ) -> RequestSample:
        """Execute one request for `user` and record it. Latency includes the simulated network delay."""
        pool = self._pools[self.pool_name(endpoint)]
        issued_at = time.time() if issued_at is None else issued_at
        try:
            result = await pool.submit(endpoint)
        except CapacityError:
            sample = RequestSample(
                endpoint=endpoint.key,
                user_id=user.user_id,
                region=user.region,
                issued_at=issued_at,
                latency_ms=delay_ms,
                success=False,
                error=ErrorCategory.CAPACITY_EXCEEDED,
                attempts=0,
            )
        else:
            sample = RequestSample(
                endpoint=endpoint.key,
                user_id=user.user_id,
                region=user.region,
                issued_at=issued_at,
                latency_ms=delay_ms + result.elapsed_ms,
                success=result.success,
                status_code=result.status,
                error=result.error,
                bytes_transferred=result.size,
                attempts=result.attempts,
            )

        if self.collector.record(sample):
            increment(
                "requests_total",
                labels={"endpoint": endpoint.key, "outcome": "success" if sample.success else sample.error.value},  # type: ignore[union-attr]
            )
            observe("request_latency_seconds", sample.latency_ms / 1000.0)
        return sample

    # --- behaviour loop ----------------------------------------------------

    async def run_user(self, user: VirtualUser, stop: asyncio.Event) -> None:
        """think -> pick endpoint -> network delay -> request, until the session ends or `stop` is set."""
        rng = random.Random(user.seed)
        endpoints = self.definition.endpoints
        session_end = user.session.started_at + user.session.planned_duration
        try:
            while not stop.is_set() and time.monotonic() < session_end:
                user.state = UserState.THINKING
                if await wait_for_stop(stop, rng.uniform(*user.think_time)):
                    break

                endpoint = select_endpoint(endpoints, rng)
                delay = network_delay_ms(user.network, rng, self.config.network_profiles)
                issued_at = time.time()
                user.state = UserState.REQUESTING
                if await wait_for_stop(stop, delay / 1000.0):
                    break

                await self.dispatch(user, endpoint, delay, issued_at)
                user.state = UserState.PROCESSING
                user.session.requests += 1
                user.session.last_activity = time.monotonic()
        finally:
            user.state = UserState.TERMINATED
