"""
Configuration management for surgecore using Pydantic.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Literal, Optional, Tuple

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from surgecore.protocols import CapacityPolicy

# --- Setup Logging ---
log = logging.getLogger(__name__)

# --- Nested Configuration Models ---


class PoolRoute(BaseModel):
    """Routes endpoints whose URL contains `pattern` to worker sub-pool `pool`."""

    pattern: str
    pool: str


class EngineConfig(BaseModel):
    """Load generation engine configuration."""

    worker_pools: Dict[str, int] = Field(
        default_factory=lambda: {"general": 10, "emergency": 20, "geographic": 10, "alert": 10},
        description="Worker sub-pool sizes, bounding simultaneous outbound requests.",
    )
    pool_routes: List[PoolRoute] = Field(
        default_factory=lambda: [
            PoolRoute(pattern="/alerts/dispatch", pool="alert"),
            PoolRoute(pattern="/users/nearby", pool="geographic"),
            PoolRoute(pattern="/emergency", pool="emergency"),
        ],
        description="First matching route wins; unmatched endpoints use the 'general' pool.",
    )
    queue_size: int = Field(default=1000, ge=1, description="Bounded queue length per sub-pool.")
    capacity_policy: CapacityPolicy = Field(
        default=CapacityPolicy.QUEUE,
        description="Queue when workers are busy (capacity_exceeded once the queue is full), or reject at once.",
    )
    retry_delay_seconds: float = Field(default=0.05, ge=0, description="Fixed delay between request retries.")
    metrics_interval_seconds: float = Field(default=5.0, gt=0, description="Bottleneck and alert check interval.")
    reservoir_size: int = Field(default=10000, ge=10, description="Latency samples kept for percentiles.")
    endpoint_reservoir_size: int = Field(default=2000, ge=10, description="Latency samples kept per endpoint.")
    metric_shards: int = Field(default=8, ge=1, description="Counter shards merged on read.")
    replace_terminated_users: bool = Field(default=False, description="Replace users whose session ended.")
    seed: Optional[int] = Field(default=None, description="Random seed for reproducible runs.")
    network_profiles: Dict[str, Tuple[float, float]] = Field(
        default_factory=lambda: {"fast3g": (200.0, 500.0), "4g": (50.0, 150.0), "broadband": (10.0, 50.0)},
        description="Simulated network delay range in milliseconds per network class.",
    )
    base_url: Optional[str] = Field(default=None, description="Prefix for relative endpoint URLs.")
    connection_limit: int = Field(default=0, ge=0, description="aiohttp connector limit, 0 for unlimited.")
    user_agent: str = "surgecore/0.1"

    @field_validator("worker_pools")
    @classmethod
    def validate_pools(cls, v: Dict[str, int]) -> Dict[str, int]:
        if "general" not in v:
            raise ValueError("worker_pools must define a 'general' pool")
        for name, size in v.items():
            if size <= 0:
                raise ValueError(f"Worker pool '{name}' must have a positive size")
        return v


class AnalysisConfig(BaseModel):
    """Bottleneck rule thresholds."""

    error_rate_threshold: float = Field(default=5.0, description="Error rate percent above which the API is flagged.")
    p95_threshold_ms: float = Field(default=1000.0, description="p95 above which the network is flagged.")
    server_error_threshold: float = Field(default=2.0, description="Server error percent flagging the database.")


class BaselineConfig(BaseModel):
    path: Path = Field(default=Path("baselines"), description="Directory holding one JSON file per baseline.")
    seed_default: bool = Field(default=False, description="Store the built-in 1.0.0 baseline when empty.")


class NotificationConfig(BaseModel):
    channels: List[Literal["console", "file", "webhook"]] = Field(default_factory=lambda: ["console"])
    file_path: Optional[Path] = None
    webhook_url: Optional[str] = None
    webhook_timeout: float = 5.0


class ReportingConfig(BaseModel):
    output_dir: Path = Path("reports")
    formats: List[Literal["junit", "json", "html", "markdown"]] = Field(
        default_factory=lambda: ["junit", "json", "html"]
    )


class WebConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8000


class MonitoringConfig(BaseModel):
    """Monitoring and observability configuration."""

    log_level: str = "INFO"
    log_file: Optional[Path] = None
    prometheus_port: Optional[int] = None

    @field_validator("log_file", mode="before")
    @classmethod
    def create_parent_dir(cls, v: str | Path | None) -> str | None:
        if v:
            path = Path(v)
            path.parent.mkdir(parents=True, exist_ok=True)
            return str(path)
        return None


class Config(BaseSettings):
    project_name: str = "surgecore"
    version: str = "0.1.0"
    engine: EngineConfig = Field(default_factory=EngineConfig)
    analysis: AnalysisConfig = Field(default_factory=AnalysisConfig)
    baselines: BaselineConfig = Field(default_factory=BaselineConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    reporting: ReportingConfig = Field(default_factory=ReportingConfig)
    web: WebConfig = Field(default_factory=WebConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(env_prefix="SURGE_", env_nested_delimiter="__", case_sensitive=False)

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        log.debug("Loading configuration from YAML file: %s", path)
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found or is not a file: {path}")
        with open(path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
        if not yaml_data:
            log.warning("Configuration file is empty: %s. Using default settings.", path)
            return cls.model_validate({})
        return cls.model_validate(yaml_data)


def find_config_file() -> Path | None:
    current_dir = Path.cwd()
    paths_to_check = [
        current_dir / "surgecore.yaml",
        current_dir / "surgecore.yml",
        current_dir / "config.yaml",
        current_dir / "config.yml",
    ]
    for path in paths_to_check:
        if path.exists():
            return path
    return None
