"""Streaming metrics aggregation."""

from .collector import (
    ConcurrencyGauge,
    EndpointBreakdown,
    LatencySummary,
    MetricsCollector,
    RegionBreakdown,
    ResourceStats,
    ResourceUsage,
    TestMetrics,
)
from .reservoir import LatencyReservoir, weighted_percentiles
from .resources import ResourceSampler

__all__ = [
    "ConcurrencyGauge",
    "EndpointBreakdown",
    "LatencyReservoir",
    "LatencySummary",
    "MetricsCollector",
    "RegionBreakdown",
    "ResourceSampler",
    "ResourceStats",
    "ResourceUsage",
    "TestMetrics",
    "weighted_percentiles",
]
