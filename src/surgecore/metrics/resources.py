"""
Host resource sampling for the load generator itself.

A saturated generator distorts latency numbers, so CPU and memory of the
machine issuing the load are tracked alongside the request metrics.
"""

from __future__ import annotations

import math

import psutil
import structlog

from surgecore.metrics.collector import ResourceStats, ResourceUsage
from surgecore.observability.metrics import gauge

logger = structlog.get_logger(__name__)


class _Running:
    __slots__ = ("count", "min", "max", "mean")

    def __init__(self) -> None:
        self.count = 0
        self.min = math.inf
        self.max = 0.0
        self.mean = 0.0

    def add(self, value: float) -> None:
        self.count += 1
        self.min = min(self.min, value)
        self.max = max(self.max, value)
        self.mean += (value - self.mean) / self.count

    def stats(self) -> ResourceStats:
        if self.count == 0:
            return ResourceStats()
        return ResourceStats(min=self.min, max=self.max, mean=self.mean)


class ResourceSampler:
    """Accumulates min/max/mean CPU and memory utilization over a run."""

    def __init__(self) -> None:
        self._cpu = _Running()
        self._memory = _Running()
        # Prime psutil so the first interval-less reading is meaningful
        psutil.cpu_percent(interval=None)

    def sample(self) -> ResourceUsage:
        try:
            cpu = psutil.cpu_percent(interval=None)
            memory = psutil.virtual_memory().percent
        except (OSError, psutil.Error) as e:
            logger.warning("Resource sampling failed", error=str(e))
            return self.usage()
        self._cpu.add(cpu)
        self._memory.add(memory)
        gauge("host_cpu_percent", cpu)
        gauge("host_memory_percent", memory)
        return self.usage()

    def usage(self) -> ResourceUsage:
        return ResourceUsage(cpu=self._cpu.stats(), memory=self._memory.stats(), samples=self._cpu.count)
