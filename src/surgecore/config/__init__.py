"""Application configuration."""

from .config import (
    AnalysisConfig,
    BaselineConfig,
    Config,
    EngineConfig,
    MonitoringConfig,
    NotificationConfig,
    PoolRoute,
    ReportingConfig,
    WebConfig,
    find_config_file,
)

__all__ = [
    "AnalysisConfig",
    "BaselineConfig",
    "Config",
    "EngineConfig",
    "MonitoringConfig",
    "NotificationConfig",
    "PoolRoute",
    "ReportingConfig",
    "WebConfig",
    "find_config_file",
]
