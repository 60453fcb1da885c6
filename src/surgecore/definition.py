"""
Immutable test definitions.

A TestDefinition is pure data: concurrency target, ramp timings, the weighted
endpoint mix, geographic and behavioural distributions, performance targets and
alerting. Durations are seconds, endpoint timeouts are milliseconds. Weight and
percentage sets need not sum to 100 on input, they are normalized before use.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, ClassVar, Dict, List, Literal, Mapping, Optional

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from surgecore.exceptions import ConfigurationError
from surgecore.protocols import DeviceClass, NetworkClass

logger = structlog.get_logger(__name__)


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")


def normalize(weights: Mapping[str, float]) -> Dict[str, float]:
    """Scale a weight mapping so that it sums to 100."""
    total = sum(weights.values())
    if total <= 0:
        raise ConfigurationError(f"Weights must sum to a positive value, got {total}")
    return {key: value * 100.0 / total for key, value in weights.items()}


class Coordinates(_Frozen):
    lat: float = Field(default=0.0, ge=-90, le=90)
    lng: float = Field(default=0.0, ge=-180, le=180)


class RegionShare(_Frozen):
    region: str = Field(min_length=1)
    percentage: float = Field(ge=0)
    coordinates: Coordinates = Field(default_factory=Coordinates)


class GeographicDistribution(_Frozen):
    regions: List[RegionShare] = Field(
        default_factory=lambda: [RegionShare(region="default", percentage=100.0)], min_length=1
    )

    @field_validator("regions")
    @classmethod
    def unique_regions(cls, v: List[RegionShare]) -> List[RegionShare]:
        names = [r.region for r in v]
        if len(names) != len(set(names)):
            raise ValueError("Region names must be unique")
        return v


class Range(_Frozen):
    min: float = Field(ge=0)
    max: float = Field(ge=0)

    @model_validator(mode="after")
    def ordered(self) -> "Range":
        if self.max < self.min:
            raise ValueError(f"Range max ({self.max}) is below min ({self.min})")
        return self


class DeviceDistribution(_Frozen):
    mobile: float = Field(default=60.0, ge=0)
    desktop: float = Field(default=30.0, ge=0)
    tablet: float = Field(default=10.0, ge=0)


class NetworkDistribution(_Frozen):
    fast3g: float = Field(default=10.0, ge=0)
    four_g: float = Field(default=40.0, ge=0, alias="4g")
    broadband: float = Field(default=50.0, ge=0)


class UserBehavior(_Frozen):
    think_time: Range = Field(default_factory=lambda: Range(min=0.5, max=3.0), description="Seconds between requests")
    session_duration: Range = Field(default_factory=lambda: Range(min=300, max=900), description="Session seconds")
    page_views: Range = Field(default_factory=lambda: Range(min=5, max=15))
    interaction_pattern: Literal["realistic", "aggressive", "conservative"] = "realistic"
    device_distribution: DeviceDistribution = Field(default_factory=DeviceDistribution)
    network_conditions: NetworkDistribution = Field(default_factory=NetworkDistribution)


class ResponseTimeTargets(_Frozen):
    p50: float = 200.0
    p95: float = 500.0
    p99: float = 1000.0


class ThroughputTargets(_Frozen):
    requests_per_second: float = 0.0
    data_transfer_rate: float = Field(default=0.0, description="MB/s")


class ErrorRateTargets(_Frozen):
    acceptable: float = 1.0
    critical: float = 5.0


class AvailabilityTargets(_Frozen):
    target: float = 99.9
    minimum: float = 99.5


class PerformanceTargets(_Frozen):
    response_time: ResponseTimeTargets = Field(default_factory=ResponseTimeTargets)
    throughput: ThroughputTargets = Field(default_factory=ThroughputTargets)
    error_rate: ErrorRateTargets = Field(default_factory=ErrorRateTargets)
    availability: AvailabilityTargets = Field(default_factory=AvailabilityTargets)


class AlertingConfig(_Frozen):
    enabled: bool = False
    channels: List[Literal["console", "file", "webhook"]] = Field(default_factory=lambda: ["console"])
    file_path: Optional[Path] = None
    webhook_url: Optional[str] = None
    resource_utilization: float = Field(default=90.0, description="Host CPU/memory percent that raises an alert")

    @model_validator(mode="after")
    def sink_targets(self) -> "AlertingConfig":
        if self.enabled and "file" in self.channels and self.file_path is None:
            raise ValueError("The file alert channel needs file_path")
        if self.enabled and "webhook" in self.channels and not self.webhook_url:
            raise ValueError("The webhook alert channel needs webhook_url")
        return self


class TestEndpoint(_Frozen):
    """One weighted request template."""

    __test__: ClassVar[bool] = False

    url: str = Field(min_length=1)
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"] = "GET"
    weight: float = Field(default=1.0, gt=0)
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = None
    expected_status: int = Field(default=200, ge=100, le=599)
    timeout: float = Field(default=5000.0, gt=0, description="Per-attempt timeout in milliseconds")
    retry_count: int = Field(default=0, ge=0)
    pool: Optional[str] = Field(default=None, description="Worker sub-pool; routed by URL when unset")

    @field_validator("method", mode="before")
    @classmethod
    def upper_method(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @property
    def key(self) -> str:
        return f"{self.method} {self.url}"


class TestDefinition(_Frozen):
    """Complete, immutable description of a load test."""

    __test__: ClassVar[bool] = False

    name: str = Field(min_length=1)
    description: str = ""
    scenario: Optional[str] = None
    target_concurrency: int = Field(gt=0)
    ramp_up: float = Field(default=0.0, ge=0, description="Ramp-up seconds")
    duration: float = Field(default=60.0, ge=0, description="Steady-state seconds")
    ramp_down: float = Field(default=0.0, ge=0, description="Ramp-down grace seconds")
    endpoints: List[TestEndpoint] = Field(min_length=1)
    geographic_distribution: GeographicDistribution = Field(default_factory=GeographicDistribution)
    user_behavior: UserBehavior = Field(default_factory=UserBehavior)
    performance_targets: PerformanceTargets = Field(default_factory=PerformanceTargets)
    alerting: AlertingConfig = Field(default_factory=AlertingConfig)

    @model_validator(mode="after")
    def positive_weight_sets(self) -> "TestDefinition":
        # normalize() raises on all-zero sets, surface those at build time
        try:
            self.region_weights()
            self.device_weights()
            self.network_weights()
        except ConfigurationError as exc:
            raise ValueError(str(exc)) from exc
        return self

    def region_weights(self) -> Dict[str, float]:
        return normalize({r.region: r.percentage for r in self.geographic_distribution.regions})

    def device_weights(self) -> Dict[DeviceClass, float]:
        dist = self.user_behavior.device_distribution
        weights = normalize({"mobile": dist.mobile, "desktop": dist.desktop, "tablet": dist.tablet})
        return {DeviceClass(k): v for k, v in weights.items()}

    def network_weights(self) -> Dict[NetworkClass, float]:
        dist = self.user_behavior.network_conditions
        weights = normalize({"fast3g": dist.fast3g, "4g": dist.four_g, "broadband": dist.broadband})
        return {NetworkClass(k): v for k, v in weights.items()}

    @property
    def total_seconds(self) -> float:
        return self.ramp_up + self.duration + self.ramp_down


def build_definition(data: Mapping[str, Any]) -> TestDefinition:
    """Validate raw data into a TestDefinition, raising ConfigurationError on any problem."""
    try:
        return TestDefinition.model_validate(dict(data))
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid test definition: {exc}") from exc


def load_definition(path: Path) -> TestDefinition:
    """Load a definition from a YAML or JSON file."""
    path = Path(path)
    if not path.is_file():
        raise ConfigurationError(f"Test definition not found: {path}")
    logger.debug("Loading test definition", path=str(path))
    try:
        with open(path, "r", encoding="utf-8") as f:
            if path.suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Unparseable test definition {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Test definition must be a mapping: {path}")
    return build_definition(data)
