"""
Virtual user factory.

Region, device class and network class are drawn independently per user from
the definition's normalized distributions. The population therefore matches the
configured percentages statistically, not exactly.
"""

from __future__ import annotations

import random
import time
from typing import Dict, List, Optional, Sequence, Tuple, TypeVar

import structlog

from surgecore.definition import TestDefinition
from surgecore.exceptions import ConfigurationError
from surgecore.protocols import DeviceClass, NetworkClass, SessionState, UserState, VirtualUser

logger = structlog.get_logger(__name__)

K = TypeVar("K")


def weighted_choice(items: Sequence[Tuple[K, float]], rng: random.Random) -> K:
    """Pick the first item whose cumulative weight exceeds a uniform draw in [0, total)."""
    total = sum(weight for _, weight in items)
    if total <= 0:
        raise ConfigurationError("Cannot draw from an empty or zero-weight distribution")
    draw = rng.random() * total
    cumulative = 0.0
    for item, weight in items:
        cumulative += weight
        if draw < cumulative:
            return item
    # Float rounding can leave draw == total; fall back to the last positive weight
    return next(item for item, weight in reversed(items) if weight > 0)


class VirtualUserFactory:
    """Creates VirtualUser records for a definition from an injectable random source."""

    def __init__(self, definition: TestDefinition, rng: Optional[random.Random] = None) -> None:
        self._validate(definition)
        self.definition = definition
        self._rng = rng or random.Random()
        self._regions: List[Tuple[str, float]] = list(definition.region_weights().items())
        self._devices: List[Tuple[DeviceClass, float]] = list(definition.device_weights().items())
        self._networks: List[Tuple[NetworkClass, float]] = list(definition.network_weights().items())
        self._created = 0

    @staticmethod
    def _validate(definition: TestDefinition) -> None:
        # Definitions built with model_construct skip pydantic validation
        if not definition.endpoints:
            raise ConfigurationError("Test definition has no endpoints")
        if definition.target_concurrency <= 0:
            raise ConfigurationError(
                f"Target concurrency must be positive, got {definition.target_concurrency}"
            )
        if sum(e.weight for e in definition.endpoints) <= 0:
            raise ConfigurationError("Endpoint weights must sum to a positive value")

    @property
    def created(self) -> int:
        return self._created

    def create_user(self, now: Optional[float] = None) -> VirtualUser:
        behavior = self.definition.user_behavior
        index = self._created
        self._created += 1
        started = time.monotonic() if now is None else now
        return VirtualUser(
            user_id=f"vu-{index:06d}",
            index=index,
            region=weighted_choice(self._regions, self._rng),
            device=weighted_choice(self._devices, self._rng),
            network=weighted_choice(self._networks, self._rng),
            think_time=(behavior.think_time.min, behavior.think_time.max),
            seed=self._rng.getrandbits(64),
            session=SessionState(
                started_at=started,
                planned_duration=self._rng.uniform(behavior.session_duration.min, behavior.session_duration.max),
                last_activity=started,
            ),
            state=UserState.IDLE,
        )

    def create_population(self, size: Optional[int] = None) -> List[VirtualUser]:
        size = self.definition.target_concurrency if size is None else size
        if size <= 0:
            raise ConfigurationError(f"Population size must be positive, got {size}")
        users = [self.create_user() for _ in range(size)]
        logger.debug("Virtual users created", count=size, distribution=self.describe(users))
        return users

    @staticmethod
    def describe(users: Sequence[VirtualUser]) -> Dict[str, Dict[str, int]]:
        summary: Dict[str, Dict[str, int]] = {"region": {}, "device": {}, "network": {}}
        for user in users:
            summary["region"][user.region] = summary["region"].get(user.region, 0) + 1
            summary["device"][user.device.value] = summary["device"].get(user.device.value, 0) + 1
            summary["network"][user.network.value] = summary["network"].get(user.network.value, 0) + 1
        return summary
