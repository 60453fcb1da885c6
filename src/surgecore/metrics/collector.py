"""
Streaming, thread-safe aggregation of request samples.

Writers are spread over independent shards, each guarded by its own lock, so
concurrent `record()` calls rarely contend. `snapshot()` takes every shard lock
in a fixed order, copies the raw counters, releases the locks and only then
computes percentiles, so readers see a consistent cut and block writers briefly.
"""

from __future__ import annotations

import math
import random
import threading
import time
import zlib
from collections import Counter
from contextlib import ExitStack
from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, List, Optional, Sequence, Tuple

import structlog

from surgecore.exceptions import AggregationError
from surgecore.metrics.reservoir import LatencyReservoir, weighted_percentiles
from surgecore.protocols import Bottleneck, RequestSample, TestStatus

logger = structlog.get_logger(__name__)

SERVER_ERROR_STATUS = 500


# ============================================================================
# Snapshot records
# ============================================================================


@dataclass(frozen=True)
class LatencySummary:
    """Latency distribution in milliseconds. `exact` is False once sampling kicked in."""

    min: float = 0.0
    max: float = 0.0
    mean: float = 0.0
    p50: float = 0.0
    p95: float = 0.0
    p99: float = 0.0
    sample_count: int = 0
    exact: bool = True


@dataclass(frozen=True)
class RegionBreakdown:
    users: int = 0
    requests: int = 0
    errors: int = 0
    avg_response_time: float = 0.0


@dataclass(frozen=True)
class EndpointBreakdown:
    requests: int = 0
    errors: int = 0
    latency: LatencySummary = field(default_factory=LatencySummary)


@dataclass(frozen=True)
class ConcurrencyGauge:
    target: int = 0
    current: int = 0
    peak: int = 0


@dataclass(frozen=True)
class ResourceStats:
    min: float = 0.0
    max: float = 0.0
    mean: float = 0.0


@dataclass(frozen=True)
class ResourceUsage:
    cpu: ResourceStats = field(default_factory=ResourceStats)
    memory: ResourceStats = field(default_factory=ResourceStats)
    samples: int = 0


@dataclass(frozen=True)
class TestMetrics:
    """Consistent, read-only view of a test's aggregates."""

    __test__: ClassVar[bool] = False

    test_id: str
    name: str
    status: TestStatus
    started_at: datetime
    elapsed_seconds: float
    concurrency: ConcurrencyGauge
    total: int
    successful: int
    failed: int
    bytes_transferred: int
    errors: Dict[str, int]
    server_errors: int
    latency: LatencySummary
    throughput: float
    error_rate: float
    availability: float
    regions: Dict[str, RegionBreakdown]
    endpoints: Dict[str, EndpointBreakdown]
    bottlenecks: Tuple[Bottleneck, ...] = ()
    resources: ResourceUsage = field(default_factory=ResourceUsage)
    failure_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(self)


def _jsonable(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return {k: _jsonable(v) for k, v in asdict(value).items()}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(_jsonable(k)): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


# ============================================================================
# Shard internals
# ============================================================================


class _KeyedStats:
    """Count, errors and incremental mean for one region or endpoint."""

    __slots__ = ("count", "errors", "mean", "min", "max", "reservoir")

    def __init__(self, reservoir: Optional[LatencyReservoir] = None) -> None:
        self.count = 0
        self.errors = 0
        self.mean = 0.0
        self.min = math.inf
        self.max = 0.0
        self.reservoir = reservoir

    def add(self, latency: float, failed: bool) -> None:
        self.count += 1
        if failed:
            self.errors += 1
        self.mean += (latency - self.mean) / self.count
        self.min = min(self.min, latency)
        self.max = max(self.max, latency)
        if self.reservoir is not None:
            self.reservoir.add(latency)


class _Shard:
    def __init__(self, reservoir_size: int, endpoint_reservoir_size: int, rng: random.Random) -> None:
        self.lock = threading.Lock()
        self.total = 0
        self.successful = 0
        self.failed = 0
        self.bytes = 0
        self.latency_sum = 0.0
        self.latency_min = math.inf
        self.latency_max = 0.0
        self.errors: Counter[str] = Counter()
        self.server_errors = 0
        self.reservoir = LatencyReservoir(reservoir_size, rng)
        self.regions: Dict[str, _KeyedStats] = {}
        self.endpoints: Dict[str, _KeyedStats] = {}
        self._endpoint_reservoir_size = endpoint_reservoir_size
        self._rng = rng

    def add(self, sample: RequestSample) -> None:
        latency = sample.latency_ms
        self.total += 1
        if sample.success:
            self.successful += 1
        else:
            self.failed += 1
            category = sample.error.value if sample.error else "unknown"
            self.errors[category] += 1
            if sample.status_code is not None and sample.status_code >= SERVER_ERROR_STATUS:
                self.server_errors += 1
        self.bytes += sample.bytes_transferred
        self.latency_sum += latency
        self.latency_min = min(self.latency_min, latency)
        self.latency_max = max(self.latency_max, latency)
        self.reservoir.add(latency)

        region = self.regions.get(sample.region)
        if region is None:
            region = self.regions[sample.region] = _KeyedStats()
        region.add(latency, not sample.success)

        endpoint = self.endpoints.get(sample.endpoint)
        if endpoint is None:
            endpoint = self.endpoints[sample.endpoint] = _KeyedStats(
                LatencyReservoir(self._endpoint_reservoir_size, self._rng)
            )
        endpoint.add(latency, not sample.success)

        if self.total != self.successful + self.failed:
            raise AggregationError(
                f"Shard counters diverged: total={self.total} successful={self.successful} failed={self.failed}"
            )


@dataclass
class _ShardCopy:
    total: int
    successful: int
    failed: int
    bytes: int
    latency_sum: float
    latency_min: float
    latency_max: float
    errors: Dict[str, int]
    server_errors: int
    reservoir: Tuple[List[float], int]
    regions: Dict[str, Tuple[int, int, float]]
    endpoints: Dict[str, Tuple[int, int, float, float, float, List[float], int]]


def _copy_shard(shard: _Shard) -> _ShardCopy:
    return _ShardCopy(
        total=shard.total,
        successful=shard.successful,
        failed=shard.failed,
        bytes=shard.bytes,
        latency_sum=shard.latency_sum,
        latency_min=shard.latency_min,
        latency_max=shard.latency_max,
        errors=dict(shard.errors),
        server_errors=shard.server_errors,
        reservoir=(shard.reservoir.values, shard.reservoir.seen),
        regions={k: (v.count, v.errors, v.mean) for k, v in shard.regions.items()},
        endpoints={
            k: (v.count, v.errors, v.mean, v.min, v.max, v.reservoir.values, v.reservoir.seen)
            for k, v in shard.endpoints.items()
            if v.reservoir is not None
        },
    )


def _summarize(
    reservoirs: Sequence[Tuple[List[float], int]], count: int, latency_sum: float, lo: float, hi: float
) -> LatencySummary:
    if count == 0:
        return LatencySummary()
    groups = [(values, seen / len(values)) for values, seen in reservoirs if values]
    pct = weighted_percentiles(groups, [50, 95, 99])
    retained = sum(len(values) for values, _ in reservoirs)
    return LatencySummary(
        min=lo,
        max=hi,
        mean=latency_sum / count,
        p50=pct[50],
        p95=pct[95],
        p99=pct[99],
        sample_count=retained,
        exact=all(len(values) == seen for values, seen in reservoirs),
    )


# ============================================================================
# Collector
# ============================================================================


class MetricsCollector:
    """
    Aggregates RequestSamples for one test.

    `record()` is safe to call from any number of tasks or threads. After
    `freeze()` further samples are discarded and elapsed time stops advancing.
    """

    def __init__(
        self,
        test_id: str,
        name: str,
        target_concurrency: int,
        *,
        shards: int = 8,
        reservoir_size: int = 10000,
        endpoint_reservoir_size: int = 2000,
        seed: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if shards <= 0:
            raise ValueError("shards must be positive")
        self.test_id = test_id
        self.name = name
        self.target_concurrency = target_concurrency
        self._clock = clock
        self._started = clock()
        self._started_wall = datetime.now(timezone.utc)
        self._frozen_at: Optional[float] = None
        per_shard = max(1, reservoir_size // shards)
        per_shard_endpoint = max(1, endpoint_reservoir_size // shards)
        self._shards = [
            _Shard(
                per_shard,
                per_shard_endpoint,
                random.Random(seed + i) if seed is not None else random.Random(),
            )
            for i in range(shards)
        ]

        self._gauge_lock = threading.Lock()
        self._current = 0
        self._peak = 0
        self._region_users: Counter[str] = Counter()

        self._state_lock = threading.Lock()
        self._status = TestStatus.PREPARING
        self._bottlenecks: Tuple[Bottleneck, ...] = ()
        self._failure_reason: Optional[str] = None
        self._resources = ResourceUsage()
        self.discarded = 0

    # --- writers -----------------------------------------------------------

    def record(self, sample: RequestSample) -> bool:
        """Aggregate one sample. Returns False when the collector is frozen and the sample was discarded."""
        if not math.isfinite(sample.latency_ms) or sample.latency_ms < 0:
            raise AggregationError(f"Invalid latency {sample.latency_ms!r} for {sample.endpoint}")
        shard = self._shards[zlib.crc32(sample.user_id.encode("utf-8")) % len(self._shards)]
        with shard.lock:
            if self._frozen_at is not None:
                with self._state_lock:
                    self.discarded += 1
                return False
            shard.add(sample)
        return True

    def user_started(self, region: str) -> int:
        with self._gauge_lock:
            self._current += 1
            self._peak = max(self._peak, self._current)
            self._region_users[region] += 1
            return self._current

    def user_finished(self) -> int:
        with self._gauge_lock:
            if self._current == 0:
                raise AggregationError("Concurrency gauge would drop below zero")
            self._current -= 1
            return self._current

    def set_status(self, status: TestStatus, failure_reason: Optional[str] = None) -> None:
        with self._state_lock:
            self._status = status
            if failure_reason is not None:
                self._failure_reason = failure_reason

    def set_bottlenecks(self, bottlenecks: Sequence[Bottleneck]) -> None:
        with self._state_lock:
            self._bottlenecks = tuple(bottlenecks)

    def set_resources(self, resources: ResourceUsage) -> None:
        with self._state_lock:
            self._resources = resources

    def freeze(self) -> None:
        """Stop accepting samples. Idempotent."""
        with ExitStack() as stack:
            for shard in self._shards:
                stack.enter_context(shard.lock)
            if self._frozen_at is None:
                self._frozen_at = self._clock()

    # --- readers -----------------------------------------------------------

    @property
    def status(self) -> TestStatus:
        return self._status

    @property
    def frozen(self) -> bool:
        return self._frozen_at is not None

    @property
    def current_concurrency(self) -> int:
        return self._current

    def snapshot(self) -> TestMetrics:
        with ExitStack() as stack:
            for shard in self._shards:
                stack.enter_context(shard.lock)
            copies = [_copy_shard(shard) for shard in self._shards]
            end = self._frozen_at if self._frozen_at is not None else self._clock()
        with self._gauge_lock:
            gauge = ConcurrencyGauge(target=self.target_concurrency, current=self._current, peak=self._peak)
            region_users = dict(self._region_users)
        with self._state_lock:
            status = self._status
            bottlenecks = self._bottlenecks
            failure_reason = self._failure_reason
            resources = self._resources

        total = sum(c.total for c in copies)
        successful = sum(c.successful for c in copies)
        failed = sum(c.failed for c in copies)
        if total != successful + failed:
            raise AggregationError(f"Merged counters diverged: total={total} successful={successful} failed={failed}")

        errors: Counter[str] = Counter()
        for c in copies:
            errors.update(c.errors)

        latency = _summarize(
            [c.reservoir for c in copies],
            total,
            sum(c.latency_sum for c in copies),
            min((c.latency_min for c in copies), default=0.0) if total else 0.0,
            max((c.latency_max for c in copies), default=0.0),
        )

        regions: Dict[str, RegionBreakdown] = {}
        for region in sorted(set(region_users) | {r for c in copies for r in c.regions}):
            parts = [c.regions[region] for c in copies if region in c.regions]
            count = sum(p[0] for p in parts)
            regions[region] = RegionBreakdown(
                users=region_users.get(region, 0),
                requests=count,
                errors=sum(p[1] for p in parts),
                avg_response_time=sum(p[0] * p[2] for p in parts) / count if count else 0.0,
            )

        endpoints: Dict[str, EndpointBreakdown] = {}
        for key in sorted({k for c in copies for k in c.endpoints}):
            parts_e = [c.endpoints[key] for c in copies if key in c.endpoints]
            count = sum(p[0] for p in parts_e)
            endpoints[key] = EndpointBreakdown(
                requests=count,
                errors=sum(p[1] for p in parts_e),
                latency=_summarize(
                    [(p[5], p[6]) for p in parts_e],
                    count,
                    sum(p[0] * p[2] for p in parts_e),
                    min(p[3] for p in parts_e),
                    max(p[4] for p in parts_e),
                ),
            )

        elapsed = max(0.0, end - self._started)
        return TestMetrics(
            test_id=self.test_id,
            name=self.name,
            status=status,
            started_at=self._started_wall,
            elapsed_seconds=elapsed,
            concurrency=gauge,
            total=total,
            successful=successful,
            failed=failed,
            bytes_transferred=sum(c.bytes for c in copies),
            errors=dict(sorted(errors.items())),
            server_errors=sum(c.server_errors for c in copies),
            latency=latency,
            throughput=total / elapsed if elapsed > 0 else 0.0,
            error_rate=failed / total * 100.0 if total else 0.0,
            availability=successful / total * 100.0 if total else 0.0,
            regions=regions,
            endpoints=endpoints,
            bottlenecks=bottlenecks,
            resources=resources,
            failure_reason=failure_reason,
        )
