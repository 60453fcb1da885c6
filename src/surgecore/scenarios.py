"""
Predefined load scenarios.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from surgecore.definition import (
    GeographicDistribution,
    RegionShare,
    TestDefinition,
    build_definition,
)
from surgecore.exceptions import ConfigurationError

_REGIONS: Dict[str, Dict[str, float]] = {
    "na-east": {"lat": 40.7128, "lng": -74.0060},
    "na-west": {"lat": 37.7749, "lng": -122.4194},
    "eu-west": {"lat": 51.5074, "lng": -0.1278},
    "eu-central": {"lat": 52.5200, "lng": 13.4050},
    "asia-east": {"lat": 35.6762, "lng": 139.6503},
    "asia-southeast": {"lat": 1.3521, "lng": 103.8198},
}


def _regions(shares: Dict[str, float]) -> Dict[str, Any]:
    return {
        "regions": [
            {"region": name, "percentage": pct, "coordinates": _REGIONS[name]} for name, pct in shares.items()
        ]
    }


SCENARIOS: Dict[str, Dict[str, Any]] = {
    "emergency_alert_burst": {
        "name": "Emergency Alert Burst",
        "description": "Simulate massive emergency alert notifications",
        "scenario": "emergency_alert_burst",
        "target_concurrency": 10000,
        "ramp_up": 60,
        "duration": 300,
        "ramp_down": 60,
        "endpoints": [
            {
                "url": "/api/alerts/dispatch",
                "method": "POST",
                "weight": 100,
                "expected_status": 200,
                "timeout": 100,
                "retry_count": 3,
            }
        ],
        "geographic_distribution": _regions({"na-east": 40, "eu-west": 30, "asia-east": 20, "asia-southeast": 10}),
        "user_behavior": {
            "think_time": {"min": 0.1, "max": 0.5},
            "session_duration": {"min": 60, "max": 180},
            "page_views": {"min": 1, "max": 3},
            "interaction_pattern": "aggressive",
            "device_distribution": {"mobile": 70, "desktop": 25, "tablet": 5},
            "network_conditions": {"fast3g": 5, "4g": 35, "broadband": 60},
        },
        "performance_targets": {
            "response_time": {"p50": 50, "p95": 100, "p99": 200},
            "throughput": {"requests_per_second": 5000, "data_transfer_rate": 50},
            "error_rate": {"acceptable": 0.5, "critical": 2},
            "availability": {"target": 99.9, "minimum": 99.5},
        },
        "alerting": {"enabled": True, "channels": ["console"], "resource_utilization": 85},
    },
    "massive_geographic_query": {
        "name": "Massive Geographic Query",
        "description": "High-volume spatial queries for emergency events",
        "scenario": "massive_geographic_query",
        "target_concurrency": 25000,
        "ramp_up": 180,
        "duration": 600,
        "ramp_down": 180,
        "endpoints": [
            {"url": "/api/emergency", "method": "GET", "weight": 60, "timeout": 2000, "retry_count": 2},
            {"url": "/api/users/nearby", "method": "GET", "weight": 40, "timeout": 3000, "retry_count": 1},
        ],
        "geographic_distribution": _regions(
            {"na-east": 25, "na-west": 20, "eu-west": 20, "eu-central": 15, "asia-east": 15, "asia-southeast": 5}
        ),
        "user_behavior": {
            "think_time": {"min": 1, "max": 5},
            "session_duration": {"min": 180, "max": 600},
            "page_views": {"min": 10, "max": 30},
            "device_distribution": {"mobile": 50, "desktop": 40, "tablet": 10},
            "network_conditions": {"fast3g": 15, "4g": 45, "broadband": 40},
        },
        "performance_targets": {
            "response_time": {"p50": 150, "p95": 300, "p99": 600},
            "throughput": {"requests_per_second": 8000, "data_transfer_rate": 80},
            "error_rate": {"acceptable": 1, "critical": 3},
            "availability": {"target": 99.5, "minimum": 99.0},
        },
        "alerting": {"enabled": True, "channels": ["console"], "resource_utilization": 85},
    },
    "peak_load_stress": {
        "name": "50K Concurrent Users Stress Test",
        "description": "Validate system performance with 50,000 concurrent users",
        "scenario": "peak_load_stress",
        "target_concurrency": 50000,
        "ramp_up": 300,
        "duration": 1800,
        "ramp_down": 300,
        "endpoints": [
            {"url": "/api/emergency", "method": "GET", "weight": 40, "timeout": 5000, "retry_count": 2},
            {
                "url": "/api/emergency",
                "method": "POST",
                "weight": 30,
                "expected_status": 201,
                "timeout": 10000,
                "retry_count": 3,
            },
            {"url": "/api/users/nearby", "method": "GET", "weight": 20, "timeout": 3000, "retry_count": 1},
            {"url": "/api/alerts/dispatch", "method": "POST", "weight": 10, "timeout": 2000, "retry_count": 2},
        ],
        "geographic_distribution": _regions(
            {"na-east": 30, "na-west": 25, "eu-west": 20, "eu-central": 15, "asia-east": 7, "asia-southeast": 3}
        ),
        "user_behavior": {
            "think_time": {"min": 0.5, "max": 3.0},
            "session_duration": {"min": 300, "max": 900},
            "page_views": {"min": 5, "max": 15},
            "device_distribution": {"mobile": 60, "desktop": 30, "tablet": 10},
            "network_conditions": {"fast3g": 10, "4g": 40, "broadband": 50},
        },
        "performance_targets": {
            "response_time": {"p50": 200, "p95": 500, "p99": 1000},
            "throughput": {"requests_per_second": 10000, "data_transfer_rate": 100},
            "error_rate": {"acceptable": 1, "critical": 5},
            "availability": {"target": 99.9, "minimum": 99.5},
        },
        "alerting": {"enabled": True, "channels": ["console"], "resource_utilization": 90},
    },
}


def list_scenarios() -> List[str]:
    return sorted(SCENARIOS)


def get_scenario(
    name: str,
    *,
    concurrency: Optional[int] = None,
    duration: Optional[float] = None,
    geographic_focus: Optional[str] = None,
) -> TestDefinition:
    """Build a predefined scenario, optionally overriding concurrency, duration or region mix.

    A geographic focus keeps only the named region at 100%. An unknown focus
    region leaves the distribution untouched.
    """
    try:
        data = SCENARIOS[name]
    except KeyError:
        raise ConfigurationError(f"Scenario {name} not found") from None

    definition = build_definition(data)
    update: Dict[str, Any] = {}
    if concurrency is not None:
        if concurrency <= 0:
            raise ConfigurationError("Concurrency must be positive")
        update["target_concurrency"] = concurrency
    if duration is not None:
        update["duration"] = duration
    if geographic_focus:
        focus = next((r for r in definition.geographic_distribution.regions if r.region == geographic_focus), None)
        if focus is not None:
            update["geographic_distribution"] = GeographicDistribution(
                regions=[RegionShare(region=focus.region, percentage=100.0, coordinates=focus.coordinates)]
            )
    return definition.model_copy(update=update) if update else definition
