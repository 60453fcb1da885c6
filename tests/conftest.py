"""
Shared fixtures for surgecore tests.

Load tests run against an in-process mock target with simulated network delay
switched off, so a whole ramp -> steady -> drain cycle finishes in well under
a second.
"""

from pathlib import Path
from typing import Any, Dict

import pytest

from surgecore.config import Config, EngineConfig
from surgecore.config.config import BaselineConfig, ReportingConfig
from surgecore.definition import TestDefinition, build_definition
from tests.helpers.mock_target import MockTarget

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests across modules")
    config.addinivalue_line("markers", "slow: Tests that take more than a few seconds")


# ============================================================================
# Engine fixtures
# ============================================================================


def fast_engine(**overrides: Any) -> EngineConfig:
    """Engine settings for tests: no simulated network delay, no retry back-off."""
    settings: Dict[str, Any] = {
        "worker_pools": {"general": 4, "emergency": 4, "geographic": 2, "alert": 2},
        "retry_delay_seconds": 0.0,
        "metrics_interval_seconds": 0.05,
        "network_profiles": {"fast3g": (0.0, 0.0), "4g": (0.0, 0.0), "broadband": (0.0, 0.0)},
        "seed": 1234,
    }
    settings.update(overrides)
    return EngineConfig(**settings)


def make_definition(**overrides: Any) -> TestDefinition:
    """A small, quick load test against a single general-pool endpoint."""
    data: Dict[str, Any] = {
        "name": "Unit Load Test",
        "target_concurrency": 3,
        "ramp_up": 0.0,
        "duration": 0.3,
        "ramp_down": 0.0,
        "endpoints": [{"url": "/api/items", "method": "GET", "timeout": 1000}],
        "user_behavior": {"think_time": {"min": 0.01, "max": 0.02}},
    }
    data.update(overrides)
    return build_definition(data)


@pytest.fixture
def engine_config() -> EngineConfig:
    return fast_engine()


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(
        engine=fast_engine(),
        baselines=BaselineConfig(path=tmp_path / "baselines"),
        reporting=ReportingConfig(output_dir=tmp_path / "reports"),
    )


@pytest.fixture
def target() -> MockTarget:
    return MockTarget(latency=0.001)


@pytest.fixture
def definition() -> TestDefinition:
    return make_definition()
