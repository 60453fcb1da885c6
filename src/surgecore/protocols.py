"""
Core contracts and records shared across the engine.

The data flow is: Test Definition -> Virtual User Factory -> Ramp Scheduler ->
Request Dispatcher -> Metrics Collector -> Bottleneck Detector -> Regression
Comparator. The records below are what moves between those stages.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional, Protocol, Tuple

if TYPE_CHECKING:
    from surgecore.definition import TestEndpoint

# ============================================================================
# Enums
# ============================================================================


class TestStatus(Enum):
    """Lifecycle of a single load test."""

    __test__ = False

    PREPARING = "preparing"
    RAMPING_UP = "ramping_up"
    STEADY = "steady"
    RAMPING_DOWN = "ramping_down"
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TestStatus.COMPLETED, TestStatus.STOPPED, TestStatus.FAILED)


class UserState(Enum):
    IDLE = "idle"
    THINKING = "thinking"
    REQUESTING = "requesting"
    PROCESSING = "processing"
    TERMINATED = "terminated"


class DeviceClass(Enum):
    MOBILE = "mobile"
    DESKTOP = "desktop"
    TABLET = "tablet"


class NetworkClass(Enum):
    FAST_3G = "fast3g"
    FOUR_G = "4g"
    BROADBAND = "broadband"


class ErrorCategory(Enum):
    """Buckets a failed request is classified into."""

    TIMEOUT = "timeout"
    STATUS_MISMATCH = "status_mismatch"
    TRANSPORT = "transport"
    UNKNOWN = "unknown"
    CAPACITY_EXCEEDED = "capacity_exceeded"


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class BottleneckCategory(Enum):
    API = "api"
    DATABASE = "database"
    NETWORK = "network"
    CACHE = "cache"


class CapacityPolicy(Enum):
    """What happens to a request when every worker of its pool is busy."""

    QUEUE = "queue"
    REJECT = "reject"


# ============================================================================
# Runtime records
# ============================================================================


@dataclass
class SessionState:
    started_at: float
    planned_duration: float
    requests: int = 0
    last_activity: float = 0.0


@dataclass
class VirtualUser:
    """One simulated actor. Owned by the scheduler while it is active."""

    user_id: str
    index: int
    region: str
    device: DeviceClass
    network: NetworkClass
    think_time: Tuple[float, float]
    seed: int
    session: SessionState
    state: UserState = UserState.IDLE


@dataclass(frozen=True)
class RequestSample:
    """One completed request cycle, immutable once recorded."""

    endpoint: str
    user_id: str
    region: str
    issued_at: float
    latency_ms: float
    success: bool
    status_code: Optional[int] = None
    error: Optional[ErrorCategory] = None
    bytes_transferred: int = 0
    attempts: int = 1


@dataclass(frozen=True)
class ExecutorResponse:
    """What the target system answered."""

    status: int
    size: int = 0


@dataclass(frozen=True)
class Bottleneck:
    category: BottleneckCategory
    severity: Severity
    description: str
    affected_requests: int
    recommendation: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.value,
            "severity": self.severity.value,
            "description": self.description,
            "affected_requests": self.affected_requests,
            "recommendation": self.recommendation,
        }


@dataclass(frozen=True)
class AlertEvent:
    """Structured alert handed to the notification sinks."""

    category: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    test_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["timestamp"] = self.timestamp.isoformat()
        return payload


# ============================================================================
# Protocols
# ============================================================================


class RequestExecutor(Protocol):
    """Issues one request against the system under test."""

    async def execute(self, endpoint: TestEndpoint) -> ExecutorResponse:
        """Raise RequestError for transport failures, return the response otherwise."""
        ...


class AlertSink(Protocol):
    async def emit(self, event: AlertEvent) -> None: ...
