"""
Baseline store boundary: a versioned key-value store of immutable baselines.

`get_baseline()` without a version returns the most recently stored baseline
(latest timestamp, ties broken by version string).
"""

from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Protocol

import structlog
from pydantic import ValidationError

from surgecore.exceptions import BaselineError
from surgecore.regression.models import (
    AlertDispatchMetrics,
    Baseline,
    BaselineMetrics,
    BundleSize,
    CoreWebVitals,
    DatabaseMetrics,
    EdgePerformanceMetrics,
    EnvironmentDescriptor,
    FrontendMetrics,
    ResponseTimeMetrics,
)
from surgecore.utils.atomic import atomic_write_json
from surgecore.utils.slugify import slugify

logger = structlog.get_logger(__name__)

DEFAULT_BASELINE_VERSION = "1.0.0"


class BaselineStore(Protocol):
    def get_baseline(self, version: Optional[str] = None) -> Optional[Baseline]: ...

    def put_baseline(self, version: str, baseline: Baseline) -> Baseline: ...

    def list_versions(self) -> List[str]: ...


def _latest(baselines: List[Baseline]) -> Optional[Baseline]:
    if not baselines:
        return None
    return max(baselines, key=lambda b: (b.timestamp, b.version))


def _rt(p50: float, p95: float, p99: float, mean: float, max_: float, min_: float) -> ResponseTimeMetrics:
    return ResponseTimeMetrics(p50=p50, p95=p95, p99=p99, mean=mean, max=max_, min=min_)


def default_baseline(timestamp: Optional[datetime] = None) -> Baseline:
    """The built-in reference baseline, version 1.0.0."""
    return Baseline(
        version=DEFAULT_BASELINE_VERSION,
        timestamp=timestamp or datetime(2024, 1, 1, tzinfo=timezone.utc),
        metrics=BaselineMetrics(
            api_response_times={
                "/api/emergency": _rt(150, 300, 500, 180, 800, 50),
                "/api/alerts/dispatch": _rt(50, 100, 200, 70, 300, 20),
                "/api/users/nearby": _rt(200, 400, 600, 250, 1000, 100),
            },
            database_queries={
                "emergency_spatial_query": DatabaseMetrics(
                    query_time=_rt(100, 200, 300, 120, 400, 50),
                    connection_pool_utilization=70,
                    cache_hit_rate=85,
                    index_usage={"emergency_location_idx": 95, "emergency_severity_idx": 88},
                )
            },
            frontend=FrontendMetrics(
                core_web_vitals=CoreWebVitals(lcp=2500, fid=100, cls=0.1, fcp=1800, ttfb=600),
                bundle_size=BundleSize(
                    total=250000,
                    compressed=75000,
                    chunks={"main": 150000, "vendor": 80000, "common": 20000},
                ),
                resource_load_times={"css": 300, "js": 500, "images": 800},
            ),
            alert_dispatch=AlertDispatchMetrics(
                dispatch_latency=_rt(50, 100, 200, 70, 300, 20),
                throughput=1000,
                error_rate=0.5,
                delivery_rate={"push": 98, "email": 95, "sms": 92},
            ),
            edge=EdgePerformanceMetrics(
                cache_hit_rate=90,
                time_to_first_byte=_rt(100, 200, 300, 120, 400, 50),
                geographic_latency={
                    "na-east": 50,
                    "na-west": 100,
                    "eu-west": 150,
                    "eu-central": 120,
                    "asia-east": 200,
                    "asia-southeast": 180,
                },
                compression_ratio=0.7,
            ),
        ),
        environment=EnvironmentDescriptor(
            cpu="Intel Xeon E5-2670", memory="32GB DDR4", network="1Gbps", database="PostgreSQL 14"
        ),
    )


class InMemoryBaselineStore:
    """Process-local store, mostly for tests and one-shot CLI runs."""

    def __init__(self, seed_default: bool = False) -> None:
        self._baselines: Dict[str, Baseline] = {}
        self._lock = threading.Lock()
        if seed_default:
            self.put_baseline(DEFAULT_BASELINE_VERSION, default_baseline())

    def get_baseline(self, version: Optional[str] = None) -> Optional[Baseline]:
        with self._lock:
            if version is not None:
                return self._baselines.get(version)
            return _latest(list(self._baselines.values()))

    def put_baseline(self, version: str, baseline: Baseline) -> Baseline:
        if baseline.version != version:
            baseline = baseline.model_copy(update={"version": version})
        with self._lock:
            if version in self._baselines:
                raise BaselineError(f"Baseline {version} already exists")
            self._baselines[version] = baseline
        logger.info("Baseline stored", version=version)
        return baseline

    def list_versions(self) -> List[str]:
        with self._lock:
            return sorted(self._baselines)


class JsonBaselineStore:
    """One JSON file per version in a directory, written atomically."""

    def __init__(self, path: Path, seed_default: bool = False) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        if seed_default and not any(self.path.glob("*.json")):
            self.put_baseline(DEFAULT_BASELINE_VERSION, default_baseline())

    def _file(self, version: str) -> Path:
        name = slugify(version, lowercase=False)
        if not name:
            raise BaselineError(f"Invalid baseline version: {version!r}")
        return self.path / f"{name}.json"

    def _read(self, file: Path) -> Baseline:
        try:
            with open(file, "r", encoding="utf-8") as f:
                return Baseline.model_validate(json.load(f))
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise BaselineError(f"Unreadable baseline file {file}: {e}") from e

    def _all(self) -> List[Baseline]:
        if not self.path.is_dir():
            return []
        baselines = []
        for file in sorted(self.path.glob("*.json")):
            try:
                baselines.append(self._read(file))
            except BaselineError as e:
                logger.warning("Ignoring unreadable baseline", file=str(file), error=str(e))
        return baselines

    def get_baseline(self, version: Optional[str] = None) -> Optional[Baseline]:
        with self._lock:
            if version is None:
                return _latest(self._all())
            file = self._file(version)
            if not file.exists():
                return None
            return self._read(file)

    def put_baseline(self, version: str, baseline: Baseline) -> Baseline:
        if baseline.version != version:
            baseline = baseline.model_copy(update={"version": version})
        file = self._file(version)
        with self._lock:
            if file.exists():
                raise BaselineError(f"Baseline {version} already exists")
            atomic_write_json(file, baseline.model_dump(mode="json"))
        logger.info("Baseline stored", version=version, path=str(file))
        return baseline

    def list_versions(self) -> List[str]:
        with self._lock:
            return sorted(b.version for b in self._all())
