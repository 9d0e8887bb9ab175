# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the SAGE project

"""
Aggregate load signal for the autoscaler.

The signal is the mean utilization reported by the Ready instances of a
snapshot, counting only instances whose last probe is recent enough. The
raw per-tick value can be smoothed over a window of previous ticks:

- constant: next load equals the current load
- moving_average: mean of the window
- exponential_smoothing: more weight to recent samples
"""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .types import PoolSnapshot

if TYPE_CHECKING:
    from .pool import WorkerPool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoadSample:
    """Aggregate load observed on one tick."""

    timestamp: float
    load: float
    instances: int
    snapshot_version: int


def _constant(values: list[float]) -> float:
    return values[-1]


def _moving_average(values: list[float]) -> float:
    return sum(values) / len(values)


def _exponential_smoothing(values: list[float], alpha: float = 0.3) -> float:
    smoothed = values[0]
    for value in values[1:]:
        smoothed = alpha * value + (1 - alpha) * smoothed
    return smoothed


SMOOTHERS: dict[str, Callable[[list[float]], float]] = {
    "constant": _constant,
    "moving_average": _moving_average,
    "exponential_smoothing": _exponential_smoothing,
}


class FleetMetricsCollector:
    """Computes the aggregate load signal from pool snapshots."""

    def __init__(
        self,
        pool: WorkerPool,
        max_age_sec: float = 60.0,
        smoothing: str = "constant",
        window_size: int = 5,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the collector.

        Args:
            pool: Pool whose instances report load through health probes.
            max_age_sec: Samples older than this are not a signal.
            smoothing: Name of the smoothing strategy (see ``SMOOTHERS``).
            window_size: Number of ticks kept for smoothing.
            clock: Time source.
        """
        self.pool = pool
        self.max_age_sec = max_age_sec
        self._clock = clock
        self.history: deque[LoadSample] = deque(maxlen=window_size)

        smoother = SMOOTHERS.get(smoothing)
        if smoother is None:
            logger.warning("Unknown load smoothing '%s', using 'constant'", smoothing)
            smoothing, smoother = "constant", _constant
        self.smoothing = smoothing
        self._smoother = smoother

    def current_load(self, snapshot: PoolSnapshot, now: float | None = None) -> float | None:
        """Mean load over Ready instances with a fresh probe, or None."""
        now = self._clock() if now is None else now
        loads = []
        for view in snapshot.instances:
            instance = self.pool.find_instance(view.instance_id)
            if instance is None or instance.last_health_check is None:
                continue
            if now - instance.last_health_check > self.max_age_sec:
                continue
            if math.isnan(instance.load_metric):
                continue
            loads.append(instance.load_metric)

        if not loads:
            return None
        return sum(loads) / len(loads)

    def aggregate_load(self, snapshot: PoolSnapshot, now: float | None = None) -> float | None:
        """
        Sample the current load and return the smoothed signal.

        Returns:
            Smoothed load, or None when this tick has no fresh sample.
            A tick without a sample also clears the smoothing window so a
            stale history never stands in for a missing signal.
        """
        now = self._clock() if now is None else now
        load = self.current_load(snapshot, now)
        if load is None:
            if self.history:
                logger.debug("No fresh load samples; clearing smoothing window")
            self.history.clear()
            return None

        self.history.append(LoadSample(now, load, snapshot.ready_count, snapshot.version))
        smoothed = self._smoother([sample.load for sample in self.history])
        logger.debug(
            "Aggregate load: raw=%.3f smoothed=%.3f (%s, %d samples)",
            load,
            smoothed,
            self.smoothing,
            len(self.history),
        )
        return smoothed

    def get_history(self) -> list[LoadSample]:
        return list(self.history)
