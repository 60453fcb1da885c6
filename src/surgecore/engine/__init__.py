"""Load generation engine: virtual users, ramp scheduling and request dispatch."""

from .dispatcher import CycleResult, RequestDispatcher, WorkerPool, network_delay_ms, select_endpoint
from .http_client import HttpExecutor
from .scheduler import RampScheduler
from .service import LoadTestService, TestRun
from .users import VirtualUserFactory, weighted_choice

__all__ = [
    "CycleResult",
    "HttpExecutor",
    "LoadTestService",
    "RampScheduler",
    "RequestDispatcher",
    "TestRun",
    "VirtualUserFactory",
    "WorkerPool",
    "network_delay_ms",
    "select_endpoint",
    "weighted_choice",
]
