"""
Workload instance lifecycle and rolling-replacement capacity.

ECS runs the real health checks; this module models the contract the stack
configures so the grace period and surge budget can be checked before
deploying:

  pending -> provisioning -> starting -> health_checking -> healthy -> steady
                                                 |                       |
                                                 +------> unhealthy <----+
                                                              |
                                                           replaced
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field
from typing import List, Tuple

# ECS rejects container health checks with a longer startPeriod
MAX_CONTAINER_START_PERIOD = 300


class LifecycleError(RuntimeError):
    """Illegal state transition or impossible rollout budget."""


class InstanceState(enum.Enum):
    PENDING = "pending"
    PROVISIONING = "provisioning"
    STARTING = "starting"
    HEALTH_CHECKING = "health_checking"
    HEALTHY = "healthy"
    STEADY = "steady"
    UNHEALTHY = "unhealthy"
    REPLACED = "replaced"


def split_grace_period(grace_s: int) -> Tuple[int, int]:
    """
    Return (container start period, service health-check grace period).

    The container check can only wait MAX_CONTAINER_START_PERIOD seconds,
    so the load balancer grace carries the whole startup window.
    """
    if grace_s < 0:
        raise LifecycleError("grace period must not be negative")
    return min(grace_s, MAX_CONTAINER_START_PERIOD), grace_s


@dataclass
class WorkloadInstance:
    """
    One task as ECS health-checks it: checks are ignored until the start
    period has passed, `retries` consecutive passes make it serve, and
    `retries` consecutive failures get it replaced.
    """

    retries: int
    start_period_s: int
    state: InstanceState = InstanceState.PENDING
    elapsed_s: float = 0.0
    passes: int = 0
    failures: int = 0
    history: List[InstanceState] = field(default_factory=list)

    def _move(self, new: InstanceState) -> None:
        self.history.append(self.state)
        self.state = new

    def _expect(self, *states: InstanceState) -> None:
        if self.state not in states:
            raise LifecycleError(f"unexpected event in state {self.state.value}")

    @property
    def serving(self) -> bool:
        return self.state in (InstanceState.HEALTHY, InstanceState.STEADY)

    def begin(self) -> None:
        self._expect(InstanceState.PENDING)
        self._move(InstanceState.PROVISIONING)

    def image_pulled(self) -> None:
        self._expect(InstanceState.PROVISIONING)
        self._move(InstanceState.STARTING)

    def tick(self, seconds: float) -> None:
        if self.state is InstanceState.STARTING:
            self.elapsed_s += seconds
            if self.elapsed_s >= self.start_period_s:
                self._move(InstanceState.HEALTH_CHECKING)

    def record_check(self, ok: bool) -> None:
        # checks inside the start period are not counted
        if self.state is InstanceState.STARTING:
            return
        self._expect(InstanceState.HEALTH_CHECKING, InstanceState.HEALTHY, InstanceState.STEADY)
        if ok:
            self.failures = 0
            self.passes += 1
            if self.state is InstanceState.HEALTH_CHECKING and self.passes >= self.retries:
                self._move(InstanceState.HEALTHY)
            elif self.state is InstanceState.HEALTHY:
                self._move(InstanceState.STEADY)
            return

        self.passes = 0
        self.failures += 1
        if self.failures >= self.retries:
            self._move(InstanceState.UNHEALTHY)

    def replace(self) -> None:
        self._expect(InstanceState.UNHEALTHY)
        self._move(InstanceState.REPLACED)


def time_to_serving(start_period_s: int, interval_s: int, retries: int) -> int:
    """Seconds from container start until a task that always passes its checks is serving."""
    instance = WorkloadInstance(retries=retries, start_period_s=start_period_s)
    instance.begin()
    instance.image_pulled()
    elapsed = 0
    while not instance.serving:
        elapsed += interval_s
        instance.tick(interval_s)
        instance.record_check(True)
    return elapsed


@dataclass(frozen=True)
class RolloutBudget:
    desired: int
    min_healthy_percent: int
    max_healthy_percent: int

    @property
    def min_healthy(self) -> int:
        return math.ceil(self.desired * self.min_healthy_percent / 100)

    @property
    def max_running(self) -> int:
        return math.floor(self.desired * self.max_healthy_percent / 100)

    @property
    def surge(self) -> int:
        return max(self.max_running - self.desired, 0)

    def simulate_replacement(self, count: int, unhealthy: bool = False) -> List[Tuple[int, int]]:
        """
        Replace `count` instances and return (running, healthy) after each phase.

        Replacements start while running < max_running; old instances stop only
        while that keeps healthy >= min_healthy.  `unhealthy` means the
        instances being replaced are already failing their checks.
        """
        if count > self.desired:
            raise LifecycleError("cannot replace more instances than are desired")

        running = self.desired
        healthy = self.desired - (count if unhealthy else 0)
        to_start = to_retire = count
        timeline = [(running, healthy)]

        while to_start or to_retire:
            progressed = False

            started = 0
            while to_start and running < self.max_running:
                running += 1
                started += 1
                to_start -= 1
            if started:
                progressed = True
                timeline.append((running, healthy))
                healthy += started
                timeline.append((running, healthy))

            loss = 0 if unhealthy else 1
            while to_retire and healthy - loss >= self.min_healthy:
                running -= 1
                healthy -= loss
                to_retire -= 1
                progressed = True
            timeline.append((running, healthy))

            if not progressed:
                raise LifecycleError(
                    f"rollout stuck at running={running} healthy={healthy}: "
                    f"budget {self.min_healthy_percent}%-{self.max_healthy_percent}% leaves no room"
                )
        return timeline
